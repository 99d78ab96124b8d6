from __future__ import annotations

from datetime import date, datetime, timedelta
from sqlalchemy import types
from sqlalchemy import CheckConstraint
from sqlalchemy import ForeignKey
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import relationship
from sqlalchemy.orm import Mapped
from sqlalchemy.schema import Index

from slotkeeper.db.models.base import ORMBase
from slotkeeper.db.models.resource import Device, Room
from slotkeeper.db.models.timestamp import TimestampMixin
from slotkeeper.modules import statemachine
from slotkeeper.modules.intervals import days_in_range
from slotkeeper.modules.intervals import hourly_overlaps
from slotkeeper.modules.intervals import range_overlaps


from typing import Union
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterator


# shared by both tables, created once with the metadata
BookingStatus = types.Enum(
    *statemachine.STATUSES,
    name='booking_status',
    metadata=ORMBase.metadata
)


class BookingMixin(TimestampMixin):
    """ The lifecycle fields shared by device and room bookings.

    The version is incremented with every status change. Status updates
    are conditioned on the version the caller has seen, which is how
    concurrent changes to the same booking are detected.

    The external booking id is the idempotency key of bookings created by
    the sibling system. It is unique, a retry with the same id returns the
    existing booking.

    """

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True
    )

    status: Mapped[str] = mapped_column(
        BookingStatus,
        default=statemachine.PENDING
    )

    version: Mapped[int] = mapped_column(default=1)

    user_id: Mapped[str | None] = mapped_column(index=True)

    client_name: Mapped[str | None]

    client_phone: Mapped[str | None]

    comment: Mapped[str | None]

    manager_comment: Mapped[str | None]

    external_booking_id: Mapped[str | None] = mapped_column(unique=True)

    reminder_sent: Mapped[bool] = mapped_column(default=False)

    if TYPE_CHECKING:
        # declared by each table with its own column name
        resource_id: Mapped[int]

    @property
    def is_accepted(self) -> bool:
        return statemachine.is_accepted(self.status)

    @property
    def is_terminal(self) -> bool:
        return statemachine.is_terminal(self.status)

    def __repr__(self) -> str:
        return (
            f'<{self.__class__.__name__} {self.id} '
            f'{self.status} v{self.version}>'
        )


class DeviceBooking(BookingMixin, ORMBase):
    """ A device lent out for one or more whole days.

    A missing end date means a single day. The range is inclusive on both
    ends.

    """

    __tablename__ = 'device_bookings'

    resource_id: Mapped[int] = mapped_column(
        'device_id',
        ForeignKey('devices.id')
    )

    start_date: Mapped[date]

    end_date: Mapped[date | None]

    device: Mapped[Device] = relationship()

    __table_args__ = (
        CheckConstraint(
            'end_date IS NULL OR end_date >= start_date',
            name='device_bookings_range_check'
        ),
        Index('device_bookings_range_ix', 'device_id', 'start_date'),
    )

    @property
    def effective_end_date(self) -> date:
        return self.end_date or self.start_date

    @property
    def days(self) -> Iterator[date]:
        return days_in_range(self.start_date, self.end_date)

    def overlaps(self, start: date, end: date | None = None) -> bool:
        return range_overlaps(self.start_date, self.end_date, start, end)

    def covers(self, day: date) -> bool:
        return self.overlaps(day)


class RoomBooking(BookingMixin, ORMBase):
    """ A room booked from start to end, spanning one or more adjacent
    slots. The interval is half-open.

    A room booking may bring a device along, booked with the device
    service. ``device_booking_ref`` is the external booking id sent there,
    ``device_confirmed`` tells if the device service accepted it (None if
    no device was requested).

    """

    __tablename__ = 'room_bookings'

    resource_id: Mapped[int] = mapped_column(
        'room_id',
        ForeignKey('rooms.id')
    )

    start: Mapped[datetime]

    end: Mapped[datetime]

    device_id: Mapped[int | None]

    device_name: Mapped[str | None]

    device_booking_ref: Mapped[str | None] = mapped_column(unique=True)

    device_booking_id: Mapped[int | None]

    device_confirmed: Mapped[bool | None]

    room: Mapped[Room] = relationship()

    __table_args__ = (
        CheckConstraint('"end" > start', name='room_bookings_range_check'),
        Index('room_bookings_range_ix', 'room_id', 'start', 'end'),
    )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def has_device(self) -> bool:
        return self.device_id is not None or self.device_name is not None

    @property
    def device_unconfirmed(self) -> bool:
        return self.has_device and not self.device_confirmed

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return hourly_overlaps(self.start, self.end, start, end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def slot_count(self, slot_duration: int) -> int:
        return int(self.duration / timedelta(minutes=slot_duration))


Booking = Union[DeviceBooking, RoomBooking]
