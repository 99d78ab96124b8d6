from __future__ import annotations

from slotkeeper.db.devices import DeviceStore
from slotkeeper.db.rooms import RoomStore


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from slotkeeper.context.core import Context


def new_device_store(
    context: Context,
    *args: Any,
    **kwargs: Any
) -> DeviceStore:
    return DeviceStore(context, *args, **kwargs)


def new_room_store(
    context: Context,
    *args: Any,
    **kwargs: Any
) -> RoomStore:
    return RoomStore(context, *args, **kwargs)


__all__ = (
    'DeviceStore',
    'RoomStore',
    'new_device_store',
    'new_room_store',
)
