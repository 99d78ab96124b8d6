from __future__ import annotations

import logging

from sqlalchemy import func

from slotkeeper.context.core import ContextServicesMixin
from slotkeeper.db.models import DeviceBooking, Holiday, RoomBooking


from typing import TypeVar
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Collection
    from datetime import date, datetime
    from sqlalchemy.orm import Query

    from slotkeeper.context.core import Context
    from slotkeeper.db.models import BookingMixin

_T = TypeVar('_T')


log = logging.getLogger('slotkeeper')


class Queries(ContextServicesMixin):
    """ Contains helper methods independent of the resource domain (as owned
    by :class:`.store.BookingStore`).

    Some contained methods require the current context (for the session).
    Some contained methods do not require any context, they are marked
    as staticmethods.

    """

    def __init__(self, context: Context):
        self.context = context

    @staticmethod
    def range_overlap_filter(
        query: Query[_T],
        start: date,
        end: date | None = None
    ) -> Query[_T]:
        """ Takes a device booking query and limits it to the bookings
        sharing at least one day with start to end (both inclusive).

        """
        end = end or start

        return query.filter(
            DeviceBooking.start_date <= end,
            func.coalesce(
                DeviceBooking.end_date,
                DeviceBooking.start_date
            ) >= start
        )

    @staticmethod
    def hourly_overlap_filter(
        query: Query[_T],
        start: datetime,
        end: datetime
    ) -> Query[_T]:
        """ Takes a room booking query and limits it to the bookings
        overlapping the half-open interval start to end. Bookings touching
        the interval at its boundaries are not included.

        """
        return query.filter(
            RoomBooking.start < end,
            start < RoomBooking.end
        )

    @staticmethod
    def status_filter(
        query: Query[_T],
        cls: type[BookingMixin],
        statuses: Collection[str]
    ) -> Query[_T]:
        return query.filter(cls.status.in_(statuses))

    def holiday_for(self, day: date) -> Holiday | None:
        query = self.session.query(Holiday)
        query = query.filter(Holiday.day == day)

        return query.first()

    def holidays_in_range(self, start: date, end: date) -> Query[Holiday]:
        query = self.session.query(Holiday)
        query = query.filter(Holiday.day >= start, Holiday.day <= end)

        return query.order_by(Holiday.day)

    def add_holiday(self, day: date, label: str) -> Holiday:
        """ Adds a holiday, or relabels the existing one on the same day. """
        holiday = self.holiday_for(day)

        if holiday is None:
            holiday = Holiday(day=day, label=label)
            self.session.add(holiday)
        else:
            holiday.label = label

        self.session.flush()
        log.info('Holiday %s (%s) added', day, label)

        return holiday

    def remove_holiday(self, day: date) -> bool:
        query = self.session.query(Holiday)
        query = query.filter(Holiday.day == day)

        return bool(query.delete('fetch'))
