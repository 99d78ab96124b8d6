from __future__ import annotations

import logging
import sedate

from datetime import datetime, time, timedelta
from uuid import uuid4 as new_uuid

from slotkeeper.bridge.reservations import DeviceReservationBridge
from slotkeeper.context.session import serialized
from slotkeeper.db.models import Room
from slotkeeper.db.models import RoomBooking
from slotkeeper.db.models import RoomSchedule
from slotkeeper.db.models import RoomScheduleOverride
from slotkeeper.db.store import BookingStore
from slotkeeper.modules import errors
from slotkeeper.modules import events
from slotkeeper.modules import statemachine
from slotkeeper.modules import workhours
from slotkeeper.modules.slots import aligned_slots
from slotkeeper.modules.slots import generate_slots


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from datetime import date
    from sqlalchemy.orm import Query

    from slotkeeper.context.core import Context
    from slotkeeper.modules.slots import Slot


log = logging.getLogger('slotkeeper')


def new_device_booking_ref() -> str:
    return f'room-{new_uuid().hex}'


class RoomStore(BookingStore[RoomBooking]):
    """ Books rooms by the slot.

    Bookings cover one or more adjacent slots of a single day. A booking may
    reserve a device from the device service along with the room, see
    :class:`slotkeeper.bridge.reservations.DeviceReservationBridge`.

    """

    resource_cls = Room
    booking_cls = RoomBooking
    schedule_cls = RoomSchedule
    override_cls = RoomScheduleOverride

    def __init__(
        self,
        context: Context,
        timezone: str | None = None,
        bridge: DeviceReservationBridge | None = None
    ):
        super().__init__(context, timezone)
        self.bridge = bridge or DeviceReservationBridge(
            context, self.device_client, self.timezone
        )

    def add_room(
        self,
        name: str,
        quantity: int = 1,
        description: str | None = None,
        sort_order: int = 0
    ) -> Room:
        return self.add_resource(  # type: ignore[no-any-return]
            name,
            quantity=quantity,
            description=description,
            sort_order=sort_order
        )

    def rooms(self, include_inactive: bool = False) -> list[Room]:
        query = self.managed_resources()

        if not include_inactive:
            query = query.filter(Room.is_active.is_(True))

        return query.all()

    def room_by_id(self, room_id: int) -> Room:
        return self.resource_by_id(room_id)  # type: ignore[no-any-return]

    def room_by_name(self, name: str) -> Room:
        return self.resource_by_name(name)  # type: ignore[no-any-return]

    @serialized
    def ensure_default_schedules(self) -> int:
        """ Gives each active room without any weekly schedule the default
        hours (10:00 to 22:00) on every day of the week. Returns the number
        of rooms changed.

        """
        changed = 0

        for room in self.rooms():
            if self.schedules(room.id).first() is not None:
                continue

            for day_of_week in range(1, 8):
                self.set_schedule(
                    room.id,
                    day_of_week,
                    workhours.DEFAULT_START,
                    workhours.DEFAULT_END,
                    slot_duration=self.setting('slot_duration')
                )

            changed += 1

        return changed

    def not_ended_filter(
        self,
        query: Query[RoomBooking]
    ) -> Query[RoomBooking]:
        return query.filter(RoomBooking.end > self.now())

    def overlapping_bookings(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        statuses: frozenset[str],
        exclude: int | None = None
    ) -> Query[RoomBooking]:

        query = self.managed_bookings()
        query = query.filter(RoomBooking.resource_id == room_id)
        query = self.queries.status_filter(query, RoomBooking, statuses)
        query = self.queries.hourly_overlap_filter(
            query, self.localize(start), self.localize(end)
        )

        if exclude is not None:
            query = query.filter(RoomBooking.id != exclude)

        return query

    def is_slot_booked(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        exclude: int | None = None
    ) -> bool:
        """ True if a booking which is neither rejected, canceled nor
        completed overlaps the given interval. Pending bookings count, so a
        slot with an open request is not offered again.

        """
        query = self.overlapping_bookings(
            room_id, start, end, statemachine.ACTIVE, exclude
        )
        return bool(self.session.query(query.exists()).scalar())

    def occupied_units(
        self,
        booking: RoomBooking,
        exclude: int | None = None
    ) -> int:
        return self.overlapping_bookings(
            booking.resource_id,
            booking.start,
            booking.end,
            statemachine.ACCEPTED,
            exclude
        ).count()

    def peak_accepted_units(self, room_id: int) -> int:
        query = self.managed_bookings()
        query = query.filter(RoomBooking.resource_id == room_id)
        query = self.queries.status_filter(
            query, RoomBooking, statemachine.ACCEPTED
        )
        query = self.not_ended_filter(query)

        # ends sort before starts at equal times, the intervals are half-open
        boundaries = sorted(
            boundary
            for start, end in query.with_entities(
                RoomBooking.start, RoomBooking.end
            )
            for boundary in ((start, 1), (end, -1))
        )

        peak = current = 0
        for _, change in boundaries:
            current += change
            peak = max(peak, current)

        return peak

    def slots(self, room_id: int, day: date) -> list[Slot]:
        """ Returns all slots of the room on the given day, each flagged
        available if no active booking overlaps it and it has not started
        yet. Empty if the room is closed that day.

        """
        return generate_slots(
            day,
            self.work_hours(room_id, day),
            self.timezone,
            is_occupied=lambda start, end: self.is_slot_booked(
                room_id, start, end
            ),
            now=self.now()
        )

    def bookings_in_range(
        self,
        start: datetime,
        end: datetime,
        room_id: int | None = None,
        statuses: frozenset[str] = statemachine.ACTIVE
    ) -> list[RoomBooking]:

        query = self.managed_bookings()
        query = self.queries.hourly_overlap_filter(
            query, self.localize(start), self.localize(end)
        )
        query = self.queries.status_filter(query, RoomBooking, statuses)

        if room_id is not None:
            query = query.filter(RoomBooking.resource_id == room_id)

        return query.order_by(RoomBooking.start, RoomBooking.id).all()

    def bookings_for_day(
        self,
        day: date,
        room_id: int | None = None
    ) -> list[RoomBooking]:
        start = sedate.replace_timezone(
            datetime.combine(day, time.min), self.timezone
        )
        return self.bookings_in_range(
            start, start + timedelta(days=1), room_id
        )

    def assert_time_window(self, start: datetime) -> None:
        now = self.now()

        min_advance = self.setting('min_advance_minutes') or 0
        if start < now + timedelta(minutes=min_advance):
            raise errors.PastDate(
                f'{start} is less than {min_advance} minutes ahead'
            )

        max_advance = self.setting('max_advance_days')
        if max_advance and start > now + timedelta(days=max_advance):
            raise errors.TooFarInFuture(
                f'{start} is more than {max_advance} days ahead'
            )

    def reserve(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        user_id: str | None = None,
        client_name: str | None = None,
        client_phone: str | None = None,
        comment: str | None = None,
        device_id: int | None = None,
        device_name: str | None = None,
        external_booking_id: str | None = None,
        approved: bool = False
    ) -> RoomBooking:
        """ Books the room from start to end and returns the booking.

        :room_id:
            The room to book.

        :start, end:
            The interval to book, which has to match one or more adjacent
            slots of the room. Naive datetimes are taken to be in the
            timezone of the store.

        :user_id, client_name, client_phone, comment:
            Who booked and why. The user id is subject to
            :ref:`settings.max_active_bookings`.

        :device_id, device_name:
            A device to book with the device service for the day of the
            booking. If the device service fails, the room booking is kept
            and flagged with ``device_confirmed = False``.

        :external_booking_id:
            Idempotency key. If a booking with this key exists, it is
            returned and nothing else happens.

        :approved:
            Creates the booking as approved instead of pending.

        Raises :class:`~.errors.SlotMisaligned` if the interval does not
        match the slot grid, :class:`~.errors.NotAvailable` if the room is
        closed or taken, :class:`~.errors.PastDate` or
        :class:`~.errors.TooFarInFuture` if the start is outside the
        advance booking window and :class:`~.errors.ActiveLimitReached` if
        the user holds too many active bookings.

        """

        # generated once, so retries of the transaction send the same key
        # to the device service
        device_booking_ref = None
        if device_id is not None or device_name is not None:
            device_booking_ref = new_device_booking_ref()

        def create() -> tuple[RoomBooking, bool]:
            return self._reserve(
                room_id, start, end,
                user_id=user_id,
                client_name=client_name,
                client_phone=client_phone,
                comment=comment,
                device_id=device_id,
                device_name=device_name,
                device_booking_ref=device_booking_ref,
                external_booking_id=external_booking_id,
                approved=approved
            )

        try:
            booking = self.reserve_booking(create, external_booking_id)
        except Exception:
            if device_booking_ref is not None:
                self.bridge.compensate(device_booking_ref)
            raise

        return booking

    @serialized
    def _reserve(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        user_id: str | None,
        client_name: str | None,
        client_phone: str | None,
        comment: str | None,
        device_id: int | None,
        device_name: str | None,
        device_booking_ref: str | None,
        external_booking_id: str | None,
        approved: bool
    ) -> tuple[RoomBooking, bool]:

        existing = self.find_replay(external_booking_id)
        if existing is not None:
            return existing, False

        start = self.localize(start)
        end = self.localize(end)

        if end <= start:
            raise errors.InvalidBookingRange(f'{end} is not after {start}')

        self.assert_time_window(start)
        self.assert_below_active_limit(user_id)

        room = self.lock_resource(room_id)
        self.assert_bookable(room)

        day = sedate.to_timezone(start, self.timezone).date()
        hours = self.work_hours(room_id, day)

        if hours is None:
            raise errors.NotAvailable(f'{room.name} is closed on {day}')

        aligned_slots(
            generate_slots(day, hours, self.timezone, now=self.now()),
            start, end
        )

        booking = RoomBooking(
            resource_id=room_id,
            start=start,
            end=end,
            status=statemachine.APPROVED if approved else statemachine.PENDING,
            user_id=user_id,
            client_name=client_name,
            client_phone=client_phone,
            comment=comment,
            device_id=device_id,
            device_name=device_name,
            device_booking_ref=device_booking_ref,
            external_booking_id=external_booking_id,
            reminder_sent=False
        )

        self.assert_capacity(booking, room)
        self.insert_booking(booking)

        log.info(
            'Room %s booked from %s to %s (booking %s)',
            room.name, start, end, booking.id
        )

        if device_booking_ref is not None:
            self.bridge.reserve(booking)
            self.session.flush()

        return booking, True

    def assert_changeable(
        self,
        booking: RoomBooking,
        expected_version: int
    ) -> None:
        if booking.version != expected_version:
            raise errors.ConcurrencyConflict(booking.id, expected_version)

        if booking.is_terminal:
            raise errors.BookingIsFinal(
                f'Booking {booking.id} is {booking.status}'
            )

    def reschedule(
        self,
        booking_id: int,
        expected_version: int,
        start: datetime,
        end: datetime
    ) -> int:
        """ Moves the booking to the slots from start to end, returning the
        new version.

        The new interval has to pass the same checks as a new booking: it
        has to match the slot grid of its day, lie within the advance
        booking window and fit into the capacity of the room (the booking
        itself does not count against it). The status is kept.

        A linked device is released and booked again for the new day under
        a new ``device_booking_ref``. If the device service fails, the
        booking is moved anyway and flagged with ``device_confirmed =
        False``.

        Raises :class:`~.errors.ConcurrencyConflict` if the booking is not
        at the expected version anymore and :class:`~.errors.BookingIsFinal`
        if it was rejected, canceled or completed.

        """
        device_booking_ref = None
        if self.booking_by_id(booking_id).has_device:
            device_booking_ref = new_device_booking_ref()

        try:
            booking = self._reschedule(
                booking_id, expected_version, start, end, device_booking_ref
            )
        except Exception:
            if device_booking_ref is not None:
                self.bridge.compensate(device_booking_ref)
            raise

        events.on_booking_changed(self.context, booking)

        return expected_version + 1

    @serialized
    def _reschedule(
        self,
        booking_id: int,
        expected_version: int,
        start: datetime,
        end: datetime,
        device_booking_ref: str | None
    ) -> RoomBooking:

        booking = self.booking_by_id(booking_id)
        self.assert_changeable(booking, expected_version)

        start = self.localize(start)
        end = self.localize(end)

        if end <= start:
            raise errors.InvalidBookingRange(f'{end} is not after {start}')

        self.assert_time_window(start)

        room = self.lock_resource(booking.resource_id)
        self.assert_bookable(room)

        day = sedate.to_timezone(start, self.timezone).date()
        hours = self.work_hours(room.id, day)

        if hours is None:
            raise errors.NotAvailable(f'{room.name} is closed on {day}')

        aligned_slots(
            generate_slots(day, hours, self.timezone, now=self.now()),
            start, end
        )

        target = RoomBooking(resource_id=room.id, start=start, end=end)
        self.assert_capacity(target, room, exclude=booking.id)

        old_ref = booking.device_booking_ref
        old_start = booking.start

        self.write_version(booking, expected_version, {
            RoomBooking.start: start,
            RoomBooking.end: end,
            RoomBooking.reminder_sent: False,
            RoomBooking.device_booking_ref: device_booking_ref,
            RoomBooking.device_booking_id: None,
            RoomBooking.device_confirmed: None
        })

        log.info(
            'Room booking %s moved from %s to %s',
            booking_id, old_start, start
        )

        self.swap_device(booking, old_ref)

        return booking

    def change_device(
        self,
        booking_id: int,
        expected_version: int,
        device_id: int | None = None,
        device_name: str | None = None
    ) -> int:
        """ Links another device to the booking, returning the new version.
        Without a device id or name the device is removed from the booking.

        The previous device is released, the new one is booked under a new
        ``device_booking_ref``. A failure of the device service is handled
        as when the booking was created.

        """
        device_booking_ref = None
        if device_id is not None or device_name is not None:
            device_booking_ref = new_device_booking_ref()

        try:
            booking = self._change_device(
                booking_id, expected_version,
                device_id, device_name, device_booking_ref
            )
        except Exception:
            if device_booking_ref is not None:
                self.bridge.compensate(device_booking_ref)
            raise

        events.on_booking_changed(self.context, booking)

        return expected_version + 1

    @serialized
    def _change_device(
        self,
        booking_id: int,
        expected_version: int,
        device_id: int | None,
        device_name: str | None,
        device_booking_ref: str | None
    ) -> RoomBooking:

        booking = self.booking_by_id(booking_id)
        self.assert_changeable(booking, expected_version)

        old_ref = booking.device_booking_ref

        self.write_version(booking, expected_version, {
            RoomBooking.device_id: device_id,
            RoomBooking.device_name: device_name,
            RoomBooking.device_booking_ref: device_booking_ref,
            RoomBooking.device_booking_id: None,
            RoomBooking.device_confirmed: None
        })

        log.info(
            'Room booking %s changed its device to %s',
            booking_id, device_name or device_id
        )

        self.swap_device(booking, old_ref)

        return booking

    def swap_device(self, booking: RoomBooking, old_ref: str | None) -> None:
        # the old device goes first, the new one may be the same device on
        # the same day
        if old_ref is not None:
            self.bridge.release(booking, device_booking_ref=old_ref)

        if booking.device_booking_ref is not None:
            self.bridge.reserve(booking)
            self.session.flush()

    def status_changed(
        self,
        booking: RoomBooking,
        old_status: str,
        status: str
    ) -> None:

        # the device side is released before the local change commits, a
        # failure there is logged and does not stop the change
        if status in statemachine.RELEASING and booking.device_booking_ref:
            self.bridge.release(booking)

    @serialized
    def retry_device_reservation(self, booking_id: int) -> bool:
        """ Tries again to reserve the device of a booking flagged as device
        unconfirmed. Returns True if the device is now confirmed.

        """
        booking = self.booking_by_id(booking_id)

        if not booking.device_booking_ref or booking.is_terminal:
            return False

        if booking.device_confirmed:
            return True

        return self.bridge.reserve(booking)

    def unconfirmed_device_bookings(self) -> list[RoomBooking]:
        """ Active bookings whose device could not be reserved, for manual
        follow-up.

        """
        query = self.managed_bookings()
        query = self.queries.status_filter(
            query, RoomBooking, statemachine.ACTIVE
        )
        query = query.filter(RoomBooking.device_booking_ref.isnot(None))
        query = query.filter(RoomBooking.device_confirmed.is_(False))

        return query.order_by(RoomBooking.start).all()

    def bookings_due_for_reminder(
        self,
        within: timedelta = timedelta(days=1)
    ) -> list[RoomBooking]:
        """ Accepted bookings starting within the given time from now, for
        which no reminder was sent yet.

        """
        now = self.now()

        query = self.managed_bookings()
        query = self.queries.status_filter(
            query, RoomBooking, statemachine.ACCEPTED
        )
        query = query.filter(RoomBooking.reminder_sent.is_(False))
        query = query.filter(RoomBooking.start > now)
        query = query.filter(RoomBooking.start <= now + within)

        return query.order_by(RoomBooking.start).all()
