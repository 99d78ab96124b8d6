from __future__ import annotations

import pytest

from datetime import date, time
from slotkeeper.db.models import DeviceBooking
from slotkeeper.modules import errors
from slotkeeper.modules import events
from slotkeeper.modules import statemachine


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from slotkeeper.db import DeviceStore

    from .conftest import Clock


def test_add_device(device_store: DeviceStore) -> None:
    projector = device_store.add_device('Projector', quantity=2)

    assert projector.id is not None
    assert projector.quantity == 2
    assert projector.is_active
    assert projector.is_public

    assert device_store.device_by_name('Projector').id == projector.id
    assert device_store.device_by_id(projector.id).name == 'Projector'

    with pytest.raises(errors.UnknownResource):
        device_store.device_by_name('Screen')

    with pytest.raises(errors.UnknownResource):
        device_store.device_by_id(projector.id + 1)

    with pytest.raises(errors.InvalidQuantity):
        device_store.add_device('Screen', quantity=0)


def test_devices_listing(device_store: DeviceStore) -> None:
    device_store.add_device('Projector', sort_order=2)
    device_store.add_device('Camera', sort_order=1)
    reserved = device_store.add_device('Drone', permanent_reserved=True)
    inactive = device_store.add_device('Mixer')
    device_store.set_active(inactive.id, False)

    assert [d.name for d in device_store.devices()] == [
        'Camera', 'Projector'
    ]
    assert [d.name for d in device_store.devices(include_reserved=True)] == [
        'Drone', 'Camera', 'Projector'
    ]
    assert len(device_store.devices(True, True)) == 4

    # reserved devices are listed as unavailable
    availability = dict(
        (device.name, available)
        for device, available
        in device_store.availability(date(2024, 5, 7), include_reserved=True)
    )
    assert availability == {'Drone': False, 'Camera': True, 'Projector': True}

    with pytest.raises(errors.NotAvailable):
        device_store.reserve(reserved.id, date(2024, 5, 7))

    with pytest.raises(errors.NotAvailable):
        device_store.reserve(inactive.id, date(2024, 5, 7))


def test_reserve_single_day(device_store: DeviceStore) -> None:
    created = []
    events.on_booking_created.append(
        lambda context, booking: created.append(booking.id)
    )

    device = device_store.add_device('Projector')
    booking = device_store.reserve(
        device.id, date(2024, 5, 7),
        user_id='42',
        client_name='Ada',
        client_phone='+41 44 000 00 00'
    )

    assert booking.status == statemachine.PENDING
    assert booking.version == 1
    assert booking.start_date == date(2024, 5, 7)
    assert booking.end_date is None
    assert booking.effective_end_date == date(2024, 5, 7)
    assert created == [booking.id]

    # an end equal to the start is stored as single day
    other = device_store.add_device('Camera')
    booking = device_store.reserve(
        other.id, date(2024, 5, 7), date(2024, 5, 7)
    )
    assert booking.end_date is None


def test_reserve_invalid_range(device_store: DeviceStore) -> None:
    device = device_store.add_device('Projector')

    with pytest.raises(errors.InvalidBookingRange):
        device_store.reserve(device.id, date(2024, 5, 10), date(2024, 5, 9))

    with pytest.raises(errors.UnknownResource):
        device_store.reserve(device.id + 1, date(2024, 5, 10))


def test_reserve_date_window(device_store: DeviceStore, clock: Clock) -> None:
    device = device_store.add_device('Projector')

    with pytest.raises(errors.PastDate):
        device_store.reserve(device.id, date(2024, 5, 5))

    # today is fine for devices
    device_store.reserve(device.id, date(2024, 5, 6), approved=True)

    with pytest.raises(errors.TooFarInFuture):
        device_store.reserve(device.id, date(2024, 6, 6))

    device_store.reserve(device.id, date(2024, 6, 5))

    clock.advance(days=1)
    with pytest.raises(errors.PastDate):
        device_store.reserve(device.id, date(2024, 5, 6))


def test_reserve_end_date_window(device_store: DeviceStore) -> None:
    device = device_store.add_device('Projector')

    # the start is within the window, the end is not
    with pytest.raises(errors.TooFarInFuture):
        device_store.reserve(device.id, date(2024, 5, 7), date(2024, 6, 20))

    with pytest.raises(errors.TooFarInFuture):
        device_store.reserve(device.id, date(2024, 5, 7), date(9999, 12, 31))

    assert device_store.managed_bookings().count() == 0

    booking = device_store.reserve(
        device.id, date(2024, 5, 7), date(2024, 6, 5)
    )
    assert booking.end_date == date(2024, 6, 5)


def test_reserve_longest_span(device_store: DeviceStore) -> None:
    device_store.context.set_setting('max_advance_days', 0)
    device = device_store.add_device('Projector')

    with pytest.raises(errors.InvalidBookingRange):
        device_store.reserve(device.id, date(2024, 5, 7), date(2024, 8, 5))

    # 90 days including the first one
    booking = device_store.reserve(
        device.id, date(2024, 5, 7), date(2024, 8, 4)
    )
    assert booking.end_date == date(2024, 8, 4)


def test_capacity(device_store: DeviceStore) -> None:
    device = device_store.add_device('Projector', quantity=2)

    device_store.reserve(
        device.id, date(2024, 5, 15), date(2024, 5, 20), approved=True
    )
    device_store.reserve(
        device.id, date(2024, 5, 20), date(2024, 5, 25), approved=True
    )

    # the 20th is taken twice
    with pytest.raises(errors.NotAvailable):
        device_store.reserve(device.id, date(2024, 5, 18), date(2024, 5, 22))

    assert device_store.free_units(device.id, date(2024, 5, 20)) == 0
    assert device_store.free_units(device.id, date(2024, 5, 19)) == 1
    assert device_store.free_units(device.id, date(2024, 5, 26)) == 2

    # only the first booking covers these days
    assert device_store.free_units(
        device.id, date(2024, 5, 15), date(2024, 5, 19)
    ) == 1


def test_pending_bookings_compete(device_store: DeviceStore) -> None:
    device = device_store.add_device('Projector')

    first = device_store.reserve(device.id, date(2024, 5, 10))
    second = device_store.reserve(device.id, date(2024, 5, 10))

    assert device_store.is_available(device.id, date(2024, 5, 10))

    device_store.approve(second.id, second.version)
    assert not device_store.is_available(device.id, date(2024, 5, 10))

    with pytest.raises(errors.NotAvailable):
        device_store.confirm(first.id, first.version)

    version = device_store.reject(first.id, first.version, 'Taken')
    booking = device_store.booking_by_id(first.id)
    assert booking.version == version == 2
    assert booking.status == statemachine.REJECTED
    assert booking.manager_comment == 'Taken'


def test_closed_days(device_store: DeviceStore) -> None:
    device = device_store.add_device('Projector')

    # without a weekly schedule devices are open every day
    assert device_store.is_open(device.id, date(2024, 5, 11))

    device_store.add_holiday(date(2024, 5, 9), 'Ascension')
    assert not device_store.is_open(device.id, date(2024, 5, 9))
    assert not device_store.is_available(device.id, date(2024, 5, 9))

    with pytest.raises(errors.NotAvailable):
        device_store.reserve(device.id, date(2024, 5, 8), date(2024, 5, 10))

    # an open override lifts the holiday for this device
    device_store.set_override(device.id, date(2024, 5, 9))
    device_store.reserve(device.id, date(2024, 5, 8), date(2024, 5, 10))

    device_store.set_day_off(device.id, date(2024, 5, 14), 'Maintenance')
    with pytest.raises(errors.NotAvailable):
        device_store.reserve(device.id, date(2024, 5, 14))

    assert device_store.remove_override(device.id, date(2024, 5, 14))
    assert not device_store.remove_override(device.id, date(2024, 5, 14))
    device_store.reserve(device.id, date(2024, 5, 14))

    assert [h.label for h in device_store.holidays_in_range(
        date(2024, 5, 1), date(2024, 5, 31)
    )] == ['Ascension']
    assert device_store.remove_holiday(date(2024, 5, 9))


def test_weekly_schedule(device_store: DeviceStore) -> None:
    device = device_store.add_device('Projector')

    # once a device has a schedule, days without one are closed
    device_store.set_schedule(device.id, 1, time(8), time(17))

    assert device_store.is_open(device.id, date(2024, 5, 13))
    assert not device_store.is_open(device.id, date(2024, 5, 14))

    with pytest.raises(errors.NotAvailable):
        device_store.reserve(device.id, date(2024, 5, 13), date(2024, 5, 14))

    with pytest.raises(errors.InvalidSchedule):
        device_store.set_schedule(device.id, 8, time(8), time(17))

    with pytest.raises(errors.InvalidSchedule):
        device_store.set_schedule(device.id, 2, time(17), time(8))

    # setting it again replaces the hours
    device_store.set_schedule(device.id, 1, time(9), time(12), is_active=False)
    assert device_store.schedules(device.id).count() == 1
    assert not device_store.is_open(device.id, date(2024, 5, 13))


def test_availability_for_period(device_store: DeviceStore) -> None:
    device = device_store.add_device('Projector')
    device_store.reserve(device.id, date(2024, 5, 8), approved=True)
    device_store.set_day_off(device.id, date(2024, 5, 10))

    assert device_store.availability_for_period(
        device.id, date(2024, 5, 7), 5
    ) == {
        date(2024, 5, 7): True,
        date(2024, 5, 8): False,
        date(2024, 5, 9): True,
        date(2024, 5, 10): False,
        date(2024, 5, 11): True,
    }


def test_idempotent_reservation(device_store: DeviceStore) -> None:
    created = []
    events.on_booking_created.append(
        lambda context, booking: created.append(booking.id)
    )

    device = device_store.add_device('Projector')

    first = device_store.reserve(
        device.id, date(2024, 5, 7),
        external_booking_id='room-1',
        approved=True
    )
    second = device_store.reserve(
        device.id, date(2024, 5, 7),
        external_booking_id='room-1',
        approved=True
    )

    assert first.id == second.id
    assert created == [first.id]
    assert device_store.managed_bookings().filter(
        DeviceBooking.external_booking_id == 'room-1'
    ).count() == 1


def test_cancel_external(device_store: DeviceStore) -> None:
    device = device_store.add_device('Projector')
    booking = device_store.reserve(
        device.id, date(2024, 5, 7),
        external_booking_id='room-1',
        approved=True
    )
    assert not device_store.is_available(device.id, date(2024, 5, 7))

    device_store.cancel_external('room-1')

    booking = device_store.booking_by_id(booking.id)
    assert booking.status == statemachine.CANCELED
    assert booking.version == 2
    assert device_store.is_available(device.id, date(2024, 5, 7))

    with pytest.raises(errors.UnknownBooking):
        device_store.cancel_external('room-1')

    with pytest.raises(errors.UnknownBooking):
        device_store.cancel_external('room-2')


def test_cancel_external_event_after_commit(
    device_store: DeviceStore
) -> None:

    device = device_store.add_device('Projector')
    device_store.reserve(
        device.id, date(2024, 5, 7), external_booking_id='room-1'
    )

    seen = []
    events.on_booking_status_changed.append(
        lambda context, booking, old, new: seen.append(
            (new, device_store.session.info.get('serialized', False))
        )
    )

    device_store.cancel_external('room-1')

    assert seen == [(statemachine.CANCELED, False)]


def test_state_machine(device_store: DeviceStore) -> None:
    changes = []
    events.on_booking_status_changed.append(
        lambda context, booking, old, new: changes.append((old, new))
    )

    device = device_store.add_device('Projector')
    booking = device_store.reserve(device.id, date(2024, 5, 7))

    version = device_store.request_revision(booking.id, 1, 'Which room?')
    version = device_store.resubmit(booking.id, version)
    version = device_store.approve(booking.id, version)
    version = device_store.complete(booking.id, version)

    assert version == 5
    assert changes == [
        (statemachine.PENDING, statemachine.NEEDS_REVISION),
        (statemachine.NEEDS_REVISION, statemachine.PENDING),
        (statemachine.PENDING, statemachine.APPROVED),
        (statemachine.APPROVED, statemachine.COMPLETED),
    ]

    with pytest.raises(errors.InvalidTransition):
        device_store.cancel(booking.id, version)

    with pytest.raises(errors.UnknownBooking):
        device_store.cancel(booking.id + 1, 1)


def test_stale_version(device_store: DeviceStore) -> None:
    device = device_store.add_device('Projector')
    booking = device_store.reserve(device.id, date(2024, 5, 7))

    assert device_store.approve(booking.id, 1) == 2

    # a caller still holding version 1 loses, nothing changes
    with pytest.raises(errors.ConcurrencyConflict) as e:
        device_store.cancel(booking.id, 1)

    assert e.value.booking_id == booking.id
    assert e.value.expected_version == 1

    booking = device_store.booking_by_id(booking.id)
    assert booking.status == statemachine.APPROVED

    # after reading the booking again it works
    assert device_store.cancel(booking.id, booking.version) == 3


def test_active_limit(device_store: DeviceStore) -> None:
    device_store.context.set_setting('max_active_bookings', 2)

    device = device_store.add_device('Projector', quantity=5)
    first = device_store.reserve(device.id, date(2024, 5, 7), user_id='1')
    device_store.reserve(device.id, date(2024, 5, 8), user_id='1')

    with pytest.raises(errors.ActiveLimitReached) as e:
        device_store.reserve(device.id, date(2024, 5, 9), user_id='1')

    assert e.value.limit == 2

    # other users are not affected
    device_store.reserve(device.id, date(2024, 5, 9), user_id='2')

    # canceled bookings do not count
    device_store.cancel(first.id, first.version)
    device_store.reserve(device.id, date(2024, 5, 9), user_id='1')

    assert device_store.count_active_bookings('1') == 2
    assert device_store.bookings_for_user('1').count() == 3


def test_set_quantity(device_store: DeviceStore) -> None:
    device = device_store.add_device('Projector', quantity=3)
    device_store.reserve(
        device.id, date(2024, 5, 7), date(2024, 5, 9), approved=True
    )
    device_store.reserve(device.id, date(2024, 5, 8), approved=True)

    with pytest.raises(errors.NotAvailable):
        device_store.set_quantity(device.id, 1)

    with pytest.raises(errors.InvalidQuantity):
        device_store.set_quantity(device.id, 0)

    device_store.set_quantity(device.id, 2)
    assert device_store.device_by_id(device.id).quantity == 2


def test_bookings_in_range(device_store: DeviceStore) -> None:
    device = device_store.add_device('Projector', quantity=2)
    a = device_store.reserve(device.id, date(2024, 5, 7), date(2024, 5, 9))
    b = device_store.reserve(device.id, date(2024, 5, 9))
    c = device_store.reserve(device.id, date(2024, 5, 12))
    device_store.reject(c.id, c.version)

    assert [
        booking.id for booking in
        device_store.bookings_in_range(date(2024, 5, 9), date(2024, 5, 12))
    ] == [a.id, b.id]

    assert [
        booking.id for booking in
        device_store.bookings_in_range(
            date(2024, 5, 12),
            statuses=frozenset((statemachine.REJECTED, ))
        )
    ] == [c.id]


def test_reminders(device_store: DeviceStore, clock: Clock) -> None:
    device = device_store.add_device('Projector', quantity=3)
    today = device_store.reserve(device.id, date(2024, 5, 6), approved=True)
    tomorrow = device_store.reserve(
        device.id, date(2024, 5, 7), approved=True
    )
    device_store.reserve(device.id, date(2024, 5, 7))
    device_store.reserve(device.id, date(2024, 5, 9), approved=True)

    due = device_store.bookings_due_for_reminder()
    assert [b.id for b in due] == [today.id, tomorrow.id]

    device_store.mark_reminder_sent(today.id)
    due = device_store.bookings_due_for_reminder()
    assert [b.id for b in due] == [tomorrow.id]

    clock.advance(days=4)
    assert device_store.bookings_due_for_reminder() == []
