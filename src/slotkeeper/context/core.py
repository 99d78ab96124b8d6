from __future__ import annotations

import enum
import threading
from functools import cached_property

from slotkeeper.modules import errors


from typing import Any
from typing import Literal
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from sqlalchemy.orm import Session
    from typing_extensions import TypeAlias

    from slotkeeper.bridge.client import DeviceClient
    from slotkeeper.context.session import SessionProvider


class _Marker(enum.Enum):
    missing = enum.auto()
    required = enum.auto()


missing_t: TypeAlias = Literal[_Marker.missing]  # noqa: PYI042
required_t: TypeAlias = Literal[_Marker.required]  # noqa: PYI042
missing: missing_t = _Marker.missing
required: required_t = _Marker.required


class StoppableService:
    """ A service holding connections or sockets. The context calls
    :meth:`stop_service` when it replaces the service, never at exit.

    """

    def stop_service(self) -> None:
        pass


class ContextServicesMixin:
    """ Provides access methods to the context's services. Expects
    the class that uses the mixin to provide self.context.

    The clock and the device client are cached per instance, so changing
    them on the context requires a call to :meth:`clear_cache`.

    """

    context: Context

    @cached_property
    def clock(self) -> Callable[[], datetime]:
        return self.context.get_service('clock')  # type: ignore[no-any-return]

    @cached_property
    def device_client(self) -> DeviceClient | None:
        client = self.context.get_service('device_client')
        return client  # type: ignore[no-any-return]

    def clear_cache(self) -> None:
        """ Clears the cache of the mixin. """

        for name in ('clock', 'device_client'):
            try:
                delattr(self, name)
            except AttributeError:
                pass

    def now(self) -> datetime:
        """ The current time in UTC, as told by the context's clock. """
        return self.clock()

    def setting(self, name: str) -> Any:
        return self.context.get_setting(name)

    @property
    def session_provider(self) -> SessionProvider:
        provider = self.context.get_service('session_provider')
        return provider  # type: ignore[no-any-return]

    @property
    def session(self) -> Session:
        """ Returns the current session. """
        return self.session_provider.session()

    def close(self) -> None:
        """ Closes the current session. """
        self.session.close()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()


class Context:
    """ A named set of settings (`settings.<name>`) and service factories
    (`service/<name>`). Lookups missing on a context fall back to its
    parent, normally the locked master context with the defaults::

        from slotkeeper import registry
        crm = registry.register_context('crm')
        crm.set_setting('dsn', 'postgresql+psycopg2://...')

    Stores keep the clock and the device client once fetched, call
    :meth:`~.ContextServicesMixin.clear_cache` after replacing those.

    """

    def __init__(
        self,
        name: str,
        parent: Context | None = None,
        locked: bool = False
    ):
        self.name = name
        self.values: dict[str, Any] = {}
        self.parent = parent
        self.locked = locked
        self.thread_lock = threading.RLock()

    def __repr__(self) -> str:
        return f"<Slotkeeper Context(name='{self.name}')>"

    def lock(self) -> None:
        with self.thread_lock:
            self.locked = True

    def get(self, key: str) -> Any | missing_t:
        if key in self.values:
            return self.values[key]
        elif self.parent:
            return self.parent.get(key)
        else:
            return missing

    def set(self, key: str, value: Any) -> None:
        if self.locked:
            raise errors.ContextIsLocked(self.name)

        with self.thread_lock:

            # replaced services get a chance to release their resources
            if isinstance(self.values.get(key), StoppableService):
                self.values[key].stop_service()

            self.values[key] = value

    def get_setting(self, name: str) -> Any:
        return self.get(f'settings.{name}')

    def set_setting(self, name: str, value: Any) -> None:
        with self.thread_lock:
            self.set(f'settings.{name}', value)

    def get_service(self, name: str) -> Any:
        service_id = f'service/{name}'
        service = self.get(service_id)

        if service is missing:
            raise errors.UnknownService(service_id)

        cache_id = f'service/{name}/cache'
        cache = self.get(cache_id)

        # no cache
        if cache is missing:
            return service(self)

        # the cache lives on the context asking for the service, so a
        # context inheriting a cached service gets its own instance
        if cache_id not in self.values or cache is required:
            self.set(cache_id, service(self))

        return self.get(cache_id)

    def set_service(
        self,
        name: str,
        factory: Callable[..., Any],
        cache: bool = False
    ) -> None:
        with self.thread_lock:
            service_id = f'service/{name}'
            self.set(service_id, factory)

            if cache:
                cache_id = f'service/{name}/cache'
                self.set(cache_id, required)
