from __future__ import annotations

from slotkeeper.context.registry import create_default_registry
from slotkeeper.db import new_device_store, new_room_store

registry = create_default_registry()

__version__ = '0.1.0'
__all__ = (
    'new_device_store',
    'new_room_store',
    'registry'
)
