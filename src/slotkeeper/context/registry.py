from __future__ import annotations

import threading

from slotkeeper.modules import errors
from slotkeeper.context.core import Context


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from slotkeeper.bridge.client import DeviceClient
    from slotkeeper.context.session import SessionProvider


def create_default_registry() -> Registry:
    """ Creates a registry whose locked master context provides the
    default settings and the session provider, clock and device client
    services.

    """

    import sedate

    from slotkeeper.bridge.client import DeviceClient
    from slotkeeper.context.session import SessionProvider
    from slotkeeper.context.settings import set_default_settings

    registry = Registry()

    def session_provider(context: Context) -> SessionProvider:
        return SessionProvider(context.get_setting('dsn'))

    def clock_factory(context: Context) -> Callable[[], datetime]:
        return sedate.utcnow

    def device_client_factory(context: Context) -> DeviceClient | None:
        url = context.get_setting('device_api_url')

        if not url:
            return None

        return DeviceClient(
            url,
            api_key=context.get_setting('device_api_key'),
            api_extra=context.get_setting('device_api_extra'),
            timeout=context.get_setting('device_api_timeout')
        )

    master = registry.master_context
    master.set_service('session_provider', session_provider, cache=True)
    master.set_service('clock', clock_factory)
    master.set_service('device_client', device_client_factory, cache=True)

    set_default_settings(master)

    master.lock()

    return registry


class Registry:
    """ Holds the contexts of a process by name. Every context inherits
    from the master context::

        from slotkeeper import registry
        context = registry.register_context('crm')

    """

    contexts: dict[str, Context]
    master_context: Context

    def __init__(self) -> None:
        self.thread_lock = threading.RLock()
        self.contexts = {}
        self.master_context = Context('master')
        self.contexts['master'] = self.master_context

    def is_existing_context(self, name: str) -> bool:
        return name in self.contexts

    def register_context(self, name: str, replace: bool = False) -> Context:
        """ Registers a new context with the given name and returns it.

        If replace is True, an existing (unlocked) context of the same name
        is discarded, including the services it cached.

        """
        with self.thread_lock:
            existing = self.contexts.get(name)

            if existing is not None:
                if not replace:
                    raise errors.ContextAlreadyExists(name)
                if existing.locked:
                    raise errors.ContextIsLocked(name)

            self.contexts[name] = Context(name, parent=self.master_context)

            return self.contexts[name]

    def get_context(self, name: str) -> Context:
        if not self.is_existing_context(name):
            raise errors.UnknownContext(name)

        return self.contexts[name]
