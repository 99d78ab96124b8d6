from slotkeeper.db.models.base import ORMBase, UTCDateTime
from slotkeeper.db.models.resource import Device, ResourceMixin, Room
from slotkeeper.db.models.schedule import (
    DeviceSchedule,
    DeviceScheduleOverride,
    Holiday,
    RoomSchedule,
    RoomScheduleOverride,
    ScheduleMixin,
    ScheduleOverrideMixin,
)
from slotkeeper.db.models.booking import (
    Booking,
    BookingMixin,
    DeviceBooking,
    RoomBooking,
)


__all__ = [
    'Booking',
    'BookingMixin',
    'Device',
    'DeviceBooking',
    'DeviceSchedule',
    'DeviceScheduleOverride',
    'Holiday',
    'ORMBase',
    'ResourceMixin',
    'Room',
    'RoomBooking',
    'RoomSchedule',
    'RoomScheduleOverride',
    'ScheduleMixin',
    'ScheduleOverrideMixin',
    'UTCDateTime',
]
