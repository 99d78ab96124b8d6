from __future__ import annotations

import logging
import sedate

from datetime import timedelta
from sqlalchemy.exc import IntegrityError

from slotkeeper.context.core import ContextServicesMixin
from slotkeeper.context.session import serialized
from slotkeeper.db.models import BookingMixin, ORMBase
from slotkeeper.db.queries import Queries
from slotkeeper.modules import errors
from slotkeeper.modules import events
from slotkeeper.modules import statemachine
from slotkeeper.modules.workhours import resolve_work_hours
from slotkeeper.modules.workhours import validate_work_hours
from slotkeeper.modules.workhours import weekly_hours
from slotkeeper.modules.workhours import WorkHours


from typing import Any
from typing import Generic
from typing import TypeVar
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import date, datetime, time
    from sqlalchemy.orm import Query

    from slotkeeper.context.core import Context
    from slotkeeper.db.models import Holiday
    from slotkeeper.db.models import ResourceMixin
    from slotkeeper.db.models import ScheduleMixin
    from slotkeeper.db.models import ScheduleOverrideMixin

_B = TypeVar('_B', bound=BookingMixin)


log = logging.getLogger('slotkeeper')


class BookingStore(ContextServicesMixin, Generic[_B]):
    """ The transactional boundary of one resource domain. It is the main
    part of the API, specialized by :class:`.devices.DeviceStore` and
    :class:`.rooms.RoomStore`.

    Methods changing data run as a single serializable transaction each and
    commit on success (see :func:`slotkeeper.context.session.serialized`).
    Methods only reading data leave the session open, call
    :meth:`~slotkeeper.context.core.ContextServicesMixin.commit` or
    :meth:`~slotkeeper.context.core.ContextServicesMixin.rollback` to end
    the read transaction.

    """

    resource_cls: type[ResourceMixin]
    booking_cls: type[_B]
    schedule_cls: type[ScheduleMixin]
    override_cls: type[ScheduleOverrideMixin]

    #: Hours of resources without any weekly schedule, None means closed
    default_hours: WorkHours | None = None

    def __init__(self, context: Context, timezone: str | None = None):
        """ Initializes a new store.

        :context:
            The :class:`slotkeeper.context.core.Context` this store should
            operate on. Acquire a context by using
            :func:`slotkeeper.context.registry.Registry.register_context`.

        :timezone:
            The timezone of the opening hours, defaults to
            :ref:`settings.timezone`. Naive datetimes passed to the store are
            assumed to be in this timezone.

        """

        self.context = context
        self.queries = Queries(context)
        self.timezone = timezone or context.get_setting('timezone')

        assert isinstance(self.timezone, str)

    def setup_database(self) -> None:
        """ Creates the tables and indices required for slotkeeper. This
        needs to be called once per database. Multiple invocations won't hurt
        but they are unnecessary.

        """
        ORMBase.metadata.create_all(self.session.bind)

    def today(self) -> date:
        return sedate.to_timezone(self.now(), self.timezone).date()

    def localize(self, value: datetime) -> datetime:
        """ Returns the given datetime as UTC, naive datetimes are taken to
        be in the timezone of the store.

        """
        return sedate.standardize_date(value, self.timezone)

    # Resources

    def managed_resources(self) -> Query[Any]:
        query = self.session.query(self.resource_cls)
        return query.order_by(
            self.resource_cls.sort_order,
            self.resource_cls.name
        )

    def resource_by_id(self, resource_id: int) -> Any:
        resource = self.session.get(self.resource_cls, resource_id)

        if resource is None:
            raise errors.UnknownResource(resource_id)

        return resource

    def resource_by_name(self, name: str) -> Any:
        query = self.session.query(self.resource_cls)
        resource = query.filter(self.resource_cls.name == name).first()

        if resource is None:
            raise errors.UnknownResource(name)

        return resource

    def lock_resource(self, resource_id: int) -> Any:
        """ Loads the resource and locks its row until the end of the
        transaction. Capacity checks of the same resource queue up behind
        the lock, so no two of them count the same free unit.

        """
        query = self.session.query(self.resource_cls)
        query = query.filter(self.resource_cls.id == resource_id)
        resource = query.with_for_update().first()

        if resource is None:
            raise errors.UnknownResource(resource_id)

        return resource

    @serialized
    def add_resource(
        self,
        name: str,
        quantity: int = 1,
        description: str | None = None,
        sort_order: int = 0,
        permanent_reserved: bool = False
    ) -> Any:

        if quantity < 1:
            raise errors.InvalidQuantity(
                'A resource needs a quantity of at least 1'
            )

        resource = self.resource_cls(
            name=name,
            quantity=quantity,
            description=description,
            sort_order=sort_order,
            is_active=True,
            permanent_reserved=permanent_reserved
        )

        self.session.add(resource)
        self.session.flush()

        return resource

    @serialized
    def set_active(self, resource_id: int, is_active: bool) -> None:
        self.resource_by_id(resource_id).is_active = is_active

    @serialized
    def set_permanent_reserved(self, resource_id: int, reserved: bool) -> None:
        self.resource_by_id(resource_id).permanent_reserved = reserved

    @serialized
    def set_quantity(self, resource_id: int, quantity: int) -> None:
        """ Changes the number of units. Lowering it below the number of
        units in use is refused with NotAvailable.

        """
        if quantity < 1:
            raise errors.InvalidQuantity(
                'A resource needs a quantity of at least 1'
            )

        resource = self.lock_resource(resource_id)

        if quantity < self.peak_accepted_units(resource_id):
            raise errors.NotAvailable(
                f'More than {quantity} units of {resource.name} are booked'
            )

        resource.quantity = quantity

    # Schedules

    def schedules(self, resource_id: int) -> Query[Any]:
        query = self.session.query(self.schedule_cls)
        query = query.filter(self.schedule_cls.resource_id == resource_id)

        return query.order_by(self.schedule_cls.day_of_week)

    def schedule_for(
        self,
        resource_id: int,
        day_of_week: int
    ) -> ScheduleMixin | None:

        query = self.schedules(resource_id)
        query = query.filter(self.schedule_cls.day_of_week == day_of_week)

        return query.first()

    @serialized
    def set_schedule(
        self,
        resource_id: int,
        day_of_week: int,
        start: time,
        end: time,
        lunch_start: time | None = None,
        lunch_end: time | None = None,
        slot_duration: int | None = None,
        is_active: bool = True
    ) -> ScheduleMixin:
        """ Sets the weekly hours of a resource on the given day of the
        week (1 is monday, 7 is sunday), replacing existing hours.

        """

        if not 1 <= day_of_week <= 7:
            raise errors.InvalidSchedule(f'Invalid day of week {day_of_week}')

        hours = validate_work_hours(WorkHours(
            start=start,
            end=end,
            lunch_start=lunch_start,
            lunch_end=lunch_end,
            slot_duration=slot_duration or self.setting('slot_duration')
        ))

        self.resource_by_id(resource_id)
        schedule = self.schedule_for(resource_id, day_of_week)

        if schedule is None:
            schedule = self.schedule_cls(
                resource_id=resource_id,
                day_of_week=day_of_week
            )
            self.session.add(schedule)

        schedule.start_time = hours.start
        schedule.end_time = hours.end
        schedule.lunch_start = hours.lunch_start
        schedule.lunch_end = hours.lunch_end
        schedule.slot_duration = hours.slot_duration
        schedule.is_active = is_active

        self.session.flush()

        return schedule

    def override_for(
        self,
        resource_id: int,
        day: date
    ) -> ScheduleOverrideMixin | None:

        query = self.session.query(self.override_cls)
        query = query.filter(self.override_cls.resource_id == resource_id)
        query = query.filter(self.override_cls.day == day)

        return query.first()

    def overrides_in_range(
        self,
        resource_id: int,
        start: date,
        end: date
    ) -> Query[Any]:

        query = self.session.query(self.override_cls)
        query = query.filter(self.override_cls.resource_id == resource_id)
        query = query.filter(self.override_cls.day >= start)
        query = query.filter(self.override_cls.day <= end)

        return query.order_by(self.override_cls.day)

    @serialized
    def set_override(
        self,
        resource_id: int,
        day: date,
        is_closed: bool = False,
        start: time | None = None,
        end: time | None = None,
        lunch_start: time | None = None,
        lunch_end: time | None = None,
        reason: str | None = None
    ) -> ScheduleOverrideMixin:
        """ Overrides the weekly hours of a resource on a single day. There
        is at most one override per resource and day, setting it again
        replaces the previous one.

        :is_closed:
            Closes the resource for the whole day. Any hours are ignored.

        :start, end, lunch_start, lunch_end:
            The hours of the day. Without hours (and not closed) the weekly
            hours apply, even if the day is a holiday.

        """

        if (start is None) != (end is None):
            raise errors.InvalidSchedule('Special hours need a start and end')

        if is_closed:
            start = end = lunch_start = lunch_end = None

        elif start is not None and end is not None:
            validate_work_hours(WorkHours(start, end, lunch_start, lunch_end))

        elif lunch_start is not None or lunch_end is not None:
            raise errors.InvalidSchedule('A lunch break needs special hours')

        self.resource_by_id(resource_id)
        override = self.override_for(resource_id, day)

        if override is None:
            override = self.override_cls(resource_id=resource_id, day=day)
            self.session.add(override)

        override.is_closed = is_closed
        override.start_time = start
        override.end_time = end
        override.lunch_start = lunch_start
        override.lunch_end = lunch_end
        override.reason = reason

        self.session.flush()

        return override

    def set_day_off(
        self,
        resource_id: int,
        day: date,
        reason: str | None = None
    ) -> ScheduleOverrideMixin:
        return self.set_override(resource_id, day, True, reason=reason)

    def set_special_hours(
        self,
        resource_id: int,
        day: date,
        start: time,
        end: time,
        lunch_start: time | None = None,
        lunch_end: time | None = None,
        reason: str | None = None
    ) -> ScheduleOverrideMixin:
        return self.set_override(
            resource_id, day, False,
            start=start,
            end=end,
            lunch_start=lunch_start,
            lunch_end=lunch_end,
            reason=reason
        )

    @serialized
    def remove_override(self, resource_id: int, day: date) -> bool:
        query = self.session.query(self.override_cls)
        query = query.filter(self.override_cls.resource_id == resource_id)
        query = query.filter(self.override_cls.day == day)

        return bool(query.delete('fetch'))

    @serialized
    def add_holiday(self, day: date, label: str) -> Holiday:
        return self.queries.add_holiday(day, label)

    @serialized
    def remove_holiday(self, day: date) -> bool:
        return self.queries.remove_holiday(day)

    def holidays_in_range(self, start: date, end: date) -> list[Holiday]:
        return self.queries.holidays_in_range(start, end).all()

    def work_hours(self, resource_id: int, day: date) -> WorkHours | None:
        """ Returns the hours the resource is open on the given day, or None
        if it is closed.

        """
        has_schedules = self.session.query(
            self.schedules(resource_id).exists()
        ).scalar()

        return resolve_work_hours(
            weekly=weekly_hours(self.schedule_for(
                resource_id, day.isoweekday()
            )),
            override=self.override_for(resource_id, day),
            holiday=self.queries.holiday_for(day) is not None,
            default=None if has_schedules else self.default_hours
        )

    def is_open(self, resource_id: int, day: date) -> bool:
        return self.work_hours(resource_id, day) is not None

    # Bookings

    def managed_bookings(self) -> Query[_B]:
        return self.session.query(self.booking_cls)

    def booking_by_id(self, booking_id: int) -> _B:
        booking = self.session.get(self.booking_cls, booking_id)

        if booking is None:
            raise errors.UnknownBooking(booking_id)

        return booking

    def booking_by_external_id(self, external_booking_id: str) -> _B | None:
        query = self.managed_bookings()
        query = query.filter(
            self.booking_cls.external_booking_id == external_booking_id
        )

        return query.first()

    def bookings_for_user(
        self,
        user_id: str,
        active_only: bool = False
    ) -> Query[_B]:

        query = self.managed_bookings()
        query = query.filter(self.booking_cls.user_id == user_id)

        if active_only:
            query = self.queries.status_filter(
                query, self.booking_cls, statemachine.ACTIVE
            )
            query = self.not_ended_filter(query)

        return query.order_by(self.booking_cls.id)

    def count_active_bookings(self, user_id: str) -> int:
        return self.bookings_for_user(user_id, active_only=True).count()

    def assert_below_active_limit(self, user_id: str | None) -> None:
        limit = self.setting('max_active_bookings')

        if not limit or user_id is None:
            return

        if self.count_active_bookings(user_id) >= limit:
            raise errors.ActiveLimitReached(limit)

    def assert_bookable(self, resource: ResourceMixin) -> None:
        if not resource.is_active:
            raise errors.NotAvailable(f'{resource.name} is not active')

        if resource.permanent_reserved:
            raise errors.NotAvailable(f'{resource.name} is reserved')

    def not_ended_filter(self, query: Query[_B]) -> Query[_B]:
        raise NotImplementedError

    def occupied_units(
        self,
        booking: _B,
        exclude: int | None = None
    ) -> int:
        """ Returns the number of units of the booking's resource held by
        accepted bookings during the booking's extent.

        """
        raise NotImplementedError

    def peak_accepted_units(self, resource_id: int) -> int:
        raise NotImplementedError

    def assert_capacity(
        self,
        booking: _B,
        resource: ResourceMixin,
        exclude: int | None = None
    ) -> None:
        if self.occupied_units(booking, exclude) >= resource.quantity:
            raise errors.NotAvailable(f'{resource.name} is fully booked')

    def reserve_booking(
        self,
        create: Callable[[], tuple[_B, bool]],
        external_booking_id: str | None
    ) -> _B:
        """ Runs the given serialized creation and fires the created event
        for new bookings.

        A concurrent creation with the same external booking id may win the
        race for the unique index, in which case its booking is returned.

        """

        try:
            booking, created = create()
        except IntegrityError:
            if external_booking_id is None:
                raise

            existing = self.booking_by_external_id(external_booking_id)

            if existing is None:
                raise

            log.info(
                'Booking %s replayed by %s',
                existing.id, external_booking_id
            )
            return existing

        if created:
            events.on_booking_created(self.context, booking)

        return booking

    def find_replay(self, external_booking_id: str | None) -> _B | None:
        if external_booking_id is None:
            return None

        existing = self.booking_by_external_id(external_booking_id)

        if existing is not None:
            log.info(
                'Booking %s replayed by %s',
                existing.id, external_booking_id
            )

        return existing

    def insert_booking(self, booking: _B) -> _B:
        booking.version = 1
        self.session.add(booking)
        self.session.flush()

        return booking

    def update_status(
        self,
        booking_id: int,
        expected_version: int,
        status: str,
        comment: str | None = None
    ) -> int:
        """ Changes the status of a booking, returning the new version.

        The change only happens if the booking is still at the version the
        caller has seen. Otherwise :class:`~.errors.ConcurrencyConflict` is
        raised and the caller has to re-read the booking.

        :booking_id:
            The id of the booking.

        :expected_version:
            The version of the booking as last read by the caller.

        :status:
            The new status, which must be reachable from the current status
            (see :mod:`slotkeeper.modules.statemachine`).

        :comment:
            Stored as manager comment, if given.

        Accepting a booking checks the capacity of its resource again.
        :class:`~.errors.NotAvailable` is raised if other accepted bookings
        took all units in the meantime.

        """
        booking, old_status = self._update_status(
            booking_id, expected_version, status, comment
        )

        events.on_booking_status_changed(
            self.context, booking, old_status, status
        )

        return expected_version + 1

    @serialized
    def _update_status(
        self,
        booking_id: int,
        expected_version: int,
        status: str,
        comment: str | None = None
    ) -> tuple[_B, str]:

        booking = self.booking_by_id(booking_id)
        old_status = booking.status

        if booking.version != expected_version:
            raise errors.ConcurrencyConflict(booking_id, expected_version)

        statemachine.assert_transition(old_status, status)

        if statemachine.is_accepted(status):
            if not statemachine.is_accepted(old_status):
                resource = self.lock_resource(booking.resource_id)
                self.assert_capacity(booking, resource, exclude=booking.id)

        values: dict[Any, Any] = {self.booking_cls.status: status}

        if comment is not None:
            values[self.booking_cls.manager_comment] = comment

        self.write_version(booking, expected_version, values)
        self.status_changed(booking, old_status, status)

        log.info(
            '%s %s changed from %s to %s',
            self.booking_cls.__name__, booking_id, old_status, status
        )

        return booking, old_status

    def write_version(
        self,
        booking: _B,
        expected_version: int,
        values: dict[Any, Any]
    ) -> None:
        """ Writes the given column values and the next version, but only if
        the booking is still at the expected version. The booking is expired
        afterwards and reloads on the next access.

        """
        values = {
            **values,
            self.booking_cls.version: self.booking_cls.version + 1
        }

        query = self.managed_bookings()
        query = query.filter(self.booking_cls.id == booking.id)
        query = query.filter(self.booking_cls.version == expected_version)

        if not query.update(values, synchronize_session=False):
            raise errors.ConcurrencyConflict(booking.id, expected_version)

        self.session.expire(booking)

    def status_changed(
        self,
        booking: _B,
        old_status: str,
        status: str
    ) -> None:
        """ Called within the transaction of a status change, after the
        change was written.

        """

    def approve(
        self,
        booking_id: int,
        expected_version: int,
        comment: str | None = None
    ) -> int:
        return self.update_status(
            booking_id, expected_version, statemachine.APPROVED, comment
        )

    def confirm(
        self,
        booking_id: int,
        expected_version: int,
        comment: str | None = None
    ) -> int:
        return self.update_status(
            booking_id, expected_version, statemachine.CONFIRMED, comment
        )

    def reject(
        self,
        booking_id: int,
        expected_version: int,
        comment: str | None = None
    ) -> int:
        return self.update_status(
            booking_id, expected_version, statemachine.REJECTED, comment
        )

    def request_revision(
        self,
        booking_id: int,
        expected_version: int,
        comment: str | None = None
    ) -> int:
        return self.update_status(
            booking_id, expected_version, statemachine.NEEDS_REVISION, comment
        )

    def resubmit(self, booking_id: int, expected_version: int) -> int:
        return self.update_status(
            booking_id, expected_version, statemachine.PENDING
        )

    def cancel(
        self,
        booking_id: int,
        expected_version: int,
        comment: str | None = None
    ) -> int:
        return self.update_status(
            booking_id, expected_version, statemachine.CANCELED, comment
        )

    def complete(self, booking_id: int, expected_version: int) -> int:
        return self.update_status(
            booking_id, expected_version, statemachine.COMPLETED
        )

    # Reminders

    def bookings_due_for_reminder(
        self,
        within: timedelta = timedelta(days=1)
    ) -> list[_B]:
        raise NotImplementedError

    @serialized
    def mark_reminder_sent(self, booking_id: int) -> None:
        self.booking_by_id(booking_id).reminder_sent = True

    def extinguish_managed_records(self) -> None:
        """ WARNING:
        Completely removes any trace of the records of this store's domain.
        That means all bookings, overrides, schedules and resources! Used
        for testing.

        """
        self.managed_bookings().delete('fetch')
        self.session.query(self.override_cls).delete('fetch')
        self.session.query(self.schedule_cls).delete('fetch')
        self.session.query(self.resource_cls).delete('fetch')
