from __future__ import annotations

from datetime import date, time
from sqlalchemy import CheckConstraint
from sqlalchemy import ForeignKey
from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import Mapped

from slotkeeper.db.models.base import ORMBase
from slotkeeper.db.models.timestamp import TimestampMixin
from slotkeeper.modules.workhours import DEFAULT_SLOT_DURATION
from slotkeeper.modules.workhours import WorkHours


from typing import TYPE_CHECKING


class ScheduleMixin(TimestampMixin):
    """ The weekly opening hours of a resource on one day of the week.

    The day of the week follows ISO 8601: monday is 1, sunday is 7.

    """

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True
    )

    if TYPE_CHECKING:
        # declared by each table with its own column name
        resource_id: Mapped[int]

    day_of_week: Mapped[int]

    start_time: Mapped[time]

    end_time: Mapped[time]

    lunch_start: Mapped[time | None]

    lunch_end: Mapped[time | None]

    slot_duration: Mapped[int] = mapped_column(default=DEFAULT_SLOT_DURATION)

    is_active: Mapped[bool] = mapped_column(default=True)

    @property
    def hours(self) -> WorkHours:
        return WorkHours(
            start=self.start_time,
            end=self.end_time,
            lunch_start=self.lunch_start,
            lunch_end=self.lunch_end,
            slot_duration=self.slot_duration
        )


class ScheduleOverrideMixin(TimestampMixin):
    """ Replaces the weekly schedule of a resource on a single day.

    Either the resource is closed the whole day, or it opens with the given
    hours. An open override without hours keeps the weekly hours, which is
    how a holiday is lifted for a single resource.

    """

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True
    )

    if TYPE_CHECKING:
        # declared by each table with its own column name
        resource_id: Mapped[int]

    day: Mapped[date]

    is_closed: Mapped[bool] = mapped_column(default=False)

    start_time: Mapped[time | None]

    end_time: Mapped[time | None]

    lunch_start: Mapped[time | None]

    lunch_end: Mapped[time | None]

    reason: Mapped[str | None]


def _schedule_checks(table: str) -> tuple[CheckConstraint, ...]:
    return (
        CheckConstraint(
            'day_of_week BETWEEN 1 AND 7',
            name=f'{table}_day_of_week_check'
        ),
        CheckConstraint(
            'end_time > start_time',
            name=f'{table}_hours_check'
        ),
        CheckConstraint(
            'slot_duration > 0',
            name=f'{table}_slot_duration_check'
        ),
    )


class RoomSchedule(ScheduleMixin, ORMBase):

    __tablename__ = 'room_schedules'

    resource_id: Mapped[int] = mapped_column(
        'room_id',
        ForeignKey('rooms.id', ondelete='CASCADE')
    )

    __table_args__ = (
        UniqueConstraint('room_id', 'day_of_week'),
        *_schedule_checks('room_schedules'),
    )


class DeviceSchedule(ScheduleMixin, ORMBase):

    __tablename__ = 'device_schedules'

    resource_id: Mapped[int] = mapped_column(
        'device_id',
        ForeignKey('devices.id', ondelete='CASCADE')
    )

    __table_args__ = (
        UniqueConstraint('device_id', 'day_of_week'),
        *_schedule_checks('device_schedules'),
    )


class RoomScheduleOverride(ScheduleOverrideMixin, ORMBase):

    __tablename__ = 'room_schedule_overrides'

    resource_id: Mapped[int] = mapped_column(
        'room_id',
        ForeignKey('rooms.id', ondelete='CASCADE')
    )

    __table_args__ = (
        UniqueConstraint('room_id', 'day'),
    )


class DeviceScheduleOverride(ScheduleOverrideMixin, ORMBase):

    __tablename__ = 'device_schedule_overrides'

    resource_id: Mapped[int] = mapped_column(
        'device_id',
        ForeignKey('devices.id', ondelete='CASCADE')
    )

    __table_args__ = (
        UniqueConstraint('device_id', 'day'),
    )


class Holiday(ORMBase):
    """ A day on which all resources are closed, unless a resource has an
    override of its own for that day.

    """

    __tablename__ = 'holidays'

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True
    )

    day: Mapped[date] = mapped_column(unique=True)

    label: Mapped[str]

    def __repr__(self) -> str:
        return f'<Holiday {self.day} {self.label!r}>'
