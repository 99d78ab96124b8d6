from __future__ import annotations

import mock
import pytest
import sedate

from datetime import datetime, timedelta
from slotkeeper import registry
from slotkeeper.bridge.client import DeviceClient
from slotkeeper.bridge.reservations import DeviceReservationBridge
from slotkeeper.db import DeviceStore, RoomStore
from slotkeeper.db.models import Holiday
# FIXME: Switch to pytest-postgresql, testing.postgresql is unmaintained
from testing.postgresql import Postgresql  # type: ignore[import-untyped]
from uuid import uuid4 as new_uuid


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Generator
    from slotkeeper.context.core import Context


TIMEZONE = 'Europe/Zurich'


class Clock:
    """ A clock standing still until told to move. """

    def __init__(self, now: datetime) -> None:
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: Any) -> None:
        self.current += timedelta(**kwargs)


def new_test_context(
    dsn: str,
    context_name: str | None = None,
    clock: Clock | None = None
) -> Context:

    context = registry.register_context(
        context_name or new_uuid().hex, replace=True
    )
    context.set_setting('dsn', dsn)
    context.set_setting('timezone', TIMEZONE)

    if clock is not None:
        context.set_service('clock', lambda context: clock)

    return context


@pytest.fixture
def clock() -> Clock:
    # monday, 08:00 in Zurich
    return Clock(sedate.replace_timezone(datetime(2024, 5, 6, 8), TIMEZONE))


@pytest.fixture
def context(
    request: pytest.FixtureRequest,
    dsn: str,
    clock: Clock
) -> Generator[Context, None, None]:

    # clear the events before each test
    from slotkeeper.modules import events
    for event in (e for e in dir(events) if e.startswith('on_')):
        del getattr(events, event)[:]

    context = new_test_context(dsn, clock=clock)

    yield context

    provider = context.get_service('session_provider')
    session = provider.session()
    session.rollback()
    session.query(Holiday).delete('fetch')
    session.commit()
    provider.stop_service()


@pytest.fixture
def device_store(context: Context) -> Generator[DeviceStore, None, None]:
    store = DeviceStore(context)

    yield store

    store.rollback()
    store.extinguish_managed_records()
    store.commit()
    store.close()


@pytest.fixture
def device_client() -> mock.Mock:
    client = mock.Mock(spec=DeviceClient)
    client.book_device.return_value = 4711
    return client


@pytest.fixture
def room_store(
    context: Context,
    device_client: mock.Mock
) -> Generator[RoomStore, None, None]:

    bridge = DeviceReservationBridge(context, device_client, TIMEZONE)
    store = RoomStore(context, bridge=bridge)

    yield store

    store.rollback()
    store.extinguish_managed_records()
    store.commit()
    store.close()


@pytest.fixture(scope="session")
def dsn() -> Generator[str, None, None]:
    postgres = Postgresql()

    context = new_test_context(postgres.url())
    store = DeviceStore(context)
    store.setup_database()
    store.commit()

    yield postgres.url()

    store.close()
    context.get_service('session_provider').stop_service()

    postgres.stop()
