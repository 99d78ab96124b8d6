from __future__ import annotations

import logging

from datetime import timedelta
from sqlalchemy import func

from slotkeeper.context.session import serialized
from slotkeeper.db.models import Device
from slotkeeper.db.models import DeviceBooking
from slotkeeper.db.models import DeviceSchedule
from slotkeeper.db.models import DeviceScheduleOverride
from slotkeeper.db.store import BookingStore
from slotkeeper.modules import errors
from slotkeeper.modules import statemachine
from slotkeeper.modules.intervals import days_in_range
from slotkeeper.modules.intervals import peak_occupancy
from slotkeeper.modules.workhours import ALL_DAY


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from datetime import date
    from sqlalchemy.orm import Query


log = logging.getLogger('slotkeeper')


class DeviceStore(BookingStore[DeviceBooking]):
    """ Books devices for whole days, optionally for a range of days.

    A device may have several identical units (its quantity). At no day may
    more accepted bookings cover a device than it has units. Devices without
    any weekly schedule are open every day, unless an override or a holiday
    closes them.

    """

    resource_cls = Device
    booking_cls = DeviceBooking
    schedule_cls = DeviceSchedule
    override_cls = DeviceScheduleOverride

    default_hours = ALL_DAY

    def add_device(
        self,
        name: str,
        quantity: int = 1,
        description: str | None = None,
        sort_order: int = 0,
        permanent_reserved: bool = False
    ) -> Device:
        return self.add_resource(  # type: ignore[no-any-return]
            name,
            quantity=quantity,
            description=description,
            sort_order=sort_order,
            permanent_reserved=permanent_reserved
        )

    def devices(
        self,
        include_reserved: bool = False,
        include_inactive: bool = False
    ) -> list[Device]:

        query = self.managed_resources()

        if not include_inactive:
            query = query.filter(Device.is_active.is_(True))

        if not include_reserved:
            query = query.filter(Device.permanent_reserved.is_(False))

        return query.all()

    def device_by_id(self, device_id: int) -> Device:
        return self.resource_by_id(device_id)  # type: ignore[no-any-return]

    def device_by_name(self, name: str) -> Device:
        return self.resource_by_name(name)  # type: ignore[no-any-return]

    def not_ended_filter(
        self,
        query: Query[DeviceBooking]
    ) -> Query[DeviceBooking]:
        return query.filter(func.coalesce(
            DeviceBooking.end_date,
            DeviceBooking.start_date
        ) >= self.today())

    def accepted_bookings(
        self,
        device_id: int,
        start: date,
        end: date | None = None,
        exclude: int | None = None
    ) -> Query[DeviceBooking]:
        """ The accepted bookings of the device sharing a day with start to
        end.

        """
        query = self.managed_bookings()
        query = query.filter(DeviceBooking.resource_id == device_id)
        query = self.queries.status_filter(
            query, DeviceBooking, statemachine.ACCEPTED
        )
        query = self.queries.range_overlap_filter(query, start, end)

        if exclude is not None:
            query = query.filter(DeviceBooking.id != exclude)

        return query

    def units_in_use(
        self,
        device_id: int,
        start: date,
        end: date | None = None,
        exclude: int | None = None
    ) -> int:
        """ The highest number of units held on a single day between start
        and end (inclusive).

        """
        query = self.accepted_bookings(device_id, start, end, exclude)
        query = query.with_entities(
            DeviceBooking.start_date,
            DeviceBooking.end_date
        )

        return peak_occupancy(
            ((s, e) for s, e in query),
            start, end
        )

    def occupied_units(
        self,
        booking: DeviceBooking,
        exclude: int | None = None
    ) -> int:
        return self.units_in_use(
            booking.resource_id,
            booking.start_date,
            booking.end_date,
            exclude
        )

    def peak_accepted_units(self, device_id: int) -> int:
        query = self.managed_bookings()
        query = query.filter(DeviceBooking.resource_id == device_id)
        query = self.queries.status_filter(
            query, DeviceBooking, statemachine.ACCEPTED
        )
        query = self.not_ended_filter(query)
        ranges = query.with_entities(
            DeviceBooking.start_date,
            DeviceBooking.end_date
        ).all()

        if not ranges:
            return 0

        last = max(end or start for start, end in ranges)
        return peak_occupancy(ranges, self.today(), last)

    def free_units(
        self,
        device_id: int,
        start: date,
        end: date | None = None
    ) -> int:
        """ The number of units which can still be booked for every day from
        start to end. Closed days and devices not offered to the public have
        no free units.

        """
        device = self.device_by_id(device_id)

        if not device.is_public:
            return 0

        for day in days_in_range(start, end):
            if not self.is_open(device_id, day):
                return 0

        in_use = self.units_in_use(device_id, start, end)
        return max(device.quantity - in_use, 0)

    def is_available(
        self,
        device_id: int,
        start: date,
        end: date | None = None
    ) -> bool:
        return self.free_units(device_id, start, end) > 0

    def availability(
        self,
        day: date,
        include_reserved: bool = False
    ) -> list[tuple[Device, bool]]:
        """ Lists the devices with their availability on the given day. """
        return [
            (device, self.is_available(device.id, day))
            for device in self.devices(include_reserved=include_reserved)
        ]

    def availability_for_period(
        self,
        device_id: int,
        start: date,
        days: int
    ) -> dict[date, bool]:
        """ The availability of the device for each of the given number of
        days beginning with start.

        """
        end = start + timedelta(days=days - 1)
        return {
            day: self.is_available(device_id, day)
            for day in days_in_range(start, end)
        }

    def bookings_in_range(
        self,
        start: date,
        end: date | None = None,
        device_id: int | None = None,
        statuses: frozenset[str] = statemachine.ACTIVE
    ) -> list[DeviceBooking]:

        query = self.managed_bookings()
        query = self.queries.range_overlap_filter(query, start, end)
        query = self.queries.status_filter(query, DeviceBooking, statuses)

        if device_id is not None:
            query = query.filter(DeviceBooking.resource_id == device_id)

        return query.order_by(DeviceBooking.start_date, DeviceBooking.id).all()

    def assert_date_window(self, start: date, end: date | None = None) -> None:
        """ Both ends of the booking have to lie between today and
        :ref:`settings.max_advance_days` ahead, the whole booking may not
        span more than :ref:`settings.availability_max_days`.

        """
        today = self.today()
        last = end or start

        if start < today:
            raise errors.PastDate(f'{start} is in the past')

        limit = self.setting('max_advance_days')
        if limit and last > today + timedelta(days=limit):
            raise errors.TooFarInFuture(
                f'{last} is more than {limit} days ahead'
            )

        max_days = self.setting('availability_max_days')
        if max_days and (last - start).days >= max_days:
            raise errors.InvalidBookingRange(
                f'At most {max_days} days can be booked at once'
            )

    def reserve(
        self,
        device_id: int,
        start_date: date,
        end_date: date | None = None,
        user_id: str | None = None,
        client_name: str | None = None,
        client_phone: str | None = None,
        comment: str | None = None,
        external_booking_id: str | None = None,
        approved: bool = False
    ) -> DeviceBooking:
        """ Books a device for start_date or for start_date to end_date
        (inclusive) and returns the booking.

        :device_id:
            The device to book.

        :start_date, end_date:
            The days to book. Without an end date, a single day is booked.

        :user_id, client_name, client_phone, comment:
            Who booked and why. The user id is subject to
            :ref:`settings.max_active_bookings`.

        :external_booking_id:
            The idempotency key of a booking made by another system. If a
            booking with this key exists, it is returned and nothing else
            happens.

        :approved:
            Creates the booking as approved instead of pending, as done for
            bookings made by managers or by another system.

        Raises :class:`~.errors.NotAvailable` if the device is closed or all
        units are taken on one of the days, :class:`~.errors.PastDate` or
        :class:`~.errors.TooFarInFuture` if the start is outside the advance
        booking window and :class:`~.errors.ActiveLimitReached` if the user
        holds too many active bookings.

        """

        def create() -> tuple[DeviceBooking, bool]:
            return self._reserve(
                device_id, start_date, end_date,
                user_id=user_id,
                client_name=client_name,
                client_phone=client_phone,
                comment=comment,
                external_booking_id=external_booking_id,
                approved=approved
            )

        return self.reserve_booking(create, external_booking_id)

    @serialized
    def _reserve(
        self,
        device_id: int,
        start_date: date,
        end_date: date | None,
        user_id: str | None,
        client_name: str | None,
        client_phone: str | None,
        comment: str | None,
        external_booking_id: str | None,
        approved: bool
    ) -> tuple[DeviceBooking, bool]:

        existing = self.find_replay(external_booking_id)
        if existing is not None:
            return existing, False

        if end_date is not None and end_date < start_date:
            raise errors.InvalidBookingRange(
                f'{end_date} is before {start_date}'
            )

        if end_date == start_date:
            end_date = None

        self.assert_date_window(start_date, end_date)
        self.assert_below_active_limit(user_id)

        device = self.lock_resource(device_id)
        self.assert_bookable(device)

        for day in days_in_range(start_date, end_date):
            if not self.is_open(device_id, day):
                raise errors.NotAvailable(f'{device.name} is closed on {day}')

        booking = DeviceBooking(
            resource_id=device_id,
            start_date=start_date,
            end_date=end_date,
            status=statemachine.APPROVED if approved else statemachine.PENDING,
            user_id=user_id,
            client_name=client_name,
            client_phone=client_phone,
            comment=comment,
            external_booking_id=external_booking_id,
            reminder_sent=False
        )

        # only accepted bookings hold units, pending ones compete
        self.assert_capacity(booking, device)

        self.insert_booking(booking)

        log.info(
            'Device %s booked from %s to %s (booking %s)',
            device.name, start_date, end_date or start_date, booking.id
        )

        return booking, True

    def cancel_external(self, external_booking_id: str) -> DeviceBooking:
        """ Cancels the booking created with the given external booking id.
        The status change commits on its own, listeners of
        :attr:`~.events.on_booking_status_changed` see the committed state.

        Raises :class:`~.errors.UnknownBooking` if there is no such booking
        or if it was canceled already.

        """
        booking = self.booking_by_external_id(external_booking_id)

        if booking is None or booking.status == statemachine.CANCELED:
            raise errors.UnknownBooking(external_booking_id)

        self.update_status(booking.id, booking.version, statemachine.CANCELED)

        log.info('External booking %s canceled', external_booking_id)

        return booking

    def bookings_due_for_reminder(
        self,
        within: timedelta = timedelta(days=1)
    ) -> list[DeviceBooking]:
        """ Accepted bookings starting between today and today + within,
        for which no reminder was sent yet.

        """
        today = self.today()

        query = self.managed_bookings()
        query = self.queries.status_filter(
            query, DeviceBooking, statemachine.ACCEPTED
        )
        query = query.filter(DeviceBooking.reminder_sent.is_(False))
        query = query.filter(DeviceBooking.start_date >= today)
        query = query.filter(DeviceBooking.start_date <= today + within)

        return query.order_by(DeviceBooking.start_date).all()
