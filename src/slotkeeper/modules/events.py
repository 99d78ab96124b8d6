""" Events are called by the booking stores whenever something interesting
occurs.

The implementation is very simple:

To add an event::

    from slotkeeper.modules import events

    def on_booking_created(context, booking):
        pass

    events.on_booking_created.append(on_booking_created)

To remove the same event::

    events.on_booking_created.remove(on_booking_created)

Events are called in the order they were added.
"""
from __future__ import annotations


from typing import overload
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from typing_extensions import ParamSpec

    from slotkeeper.context.core import Context
    from slotkeeper.db.models import Booking, RoomBooking
    from slotkeeper.modules.errors import SlotkeeperError

    _P = ParamSpec('_P')


class Event(list['Callable[_P, object]']):
    """Event subscription. By http://stackoverflow.com/a/2022629

    A list of callable objects. Calling an instance of this will cause a
    call to each item in the list in ascending order by index.

    """
    # NOTE: This is only used for binding the correct `ParamSpec` for callback
    #       protocols
    @overload
    def __init__(self, f: type[Callable[_P, object]]) -> None: ...
    @overload
    def __init__(self) -> None: ...

    def __init__(self, f: object = None) -> None:
        return

    def __call__(self, *args: _P.args, **kwargs: _P.kwargs) -> None:
        for f in self:
            f(*args, **kwargs)


on_booking_created: Event[Context, Booking] = Event()
""" Called when a new booking was inserted (not on idempotent replays), with
the following arguments:

    :context:
        The :class:`slotkeeper.context.core.Context` of the store.

    :booking:
        The new :class:`slotkeeper.db.models.DeviceBooking` or
        :class:`slotkeeper.db.models.RoomBooking`.

"""

on_booking_status_changed: Event[Context, Booking, str, str] = Event()
""" Called after the status of a booking changed, with the following
arguments:

    :context:
        The :class:`slotkeeper.context.core.Context` of the store.

    :booking:
        The changed booking.

    :old_status:
        The status before the change.

    :new_status:
        The status after the change.

"""

on_booking_changed: Event[Context, RoomBooking] = Event()
""" Called after a room booking was moved to other slots or got another
device, once the change is committed.

    :context:
        The :class:`slotkeeper.context.core.Context` of the store.

    :booking:
        The changed :class:`slotkeeper.db.models.RoomBooking`.

"""

on_device_reservation_failed: Event[
    Context, RoomBooking, SlotkeeperError
] = Event()
""" Called when the device of a composite room booking could not be
reserved. The room booking is kept, flagged as device unconfirmed.

    :context:
        The :class:`slotkeeper.context.core.Context` of the store.

    :booking:
        The :class:`slotkeeper.db.models.RoomBooking`.

    :error:
        The error raised by the device service client.

"""

on_device_release_failed: Event[
    Context, RoomBooking, SlotkeeperError
] = Event()
""" Called when the device booking linked to a room booking could not be
cancelled. The local change goes ahead, this event exists for manual
reconciliation.

    :context:
        The :class:`slotkeeper.context.core.Context` of the store.

    :booking:
        The :class:`slotkeeper.db.models.RoomBooking`.

    :error:
        The error raised by the device service client.

"""
