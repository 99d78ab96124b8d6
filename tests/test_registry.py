from __future__ import annotations

import pytest

from slotkeeper.context.core import StoppableService
from slotkeeper.context.registry import create_default_registry
from slotkeeper.modules import errors


def test_master_context_defaults() -> None:
    registry = create_default_registry()
    master = registry.master_context

    assert master.locked
    assert master.get_setting('timezone') == 'Europe/Moscow'
    assert master.get_setting('slot_duration') == 30
    assert master.get_setting('min_advance_minutes') == 60
    assert master.get_setting('max_advance_days') == 30
    assert master.get_setting('availability_max_days') == 90
    assert master.get_setting('device_api_url') is None

    with pytest.raises(errors.ContextIsLocked):
        master.set_setting('timezone', 'UTC')


def test_context_inherits_settings() -> None:
    registry = create_default_registry()
    context = registry.register_context('app')

    context.set_setting('timezone', 'Europe/Zurich')
    assert context.get_setting('timezone') == 'Europe/Zurich'
    assert context.get_setting('slot_duration') == 30

    assert registry.master_context.get_setting('timezone') == 'Europe/Moscow'

    with pytest.raises(errors.ContextAlreadyExists):
        registry.register_context('app')

    assert registry.register_context('app', replace=True) is not context

    with pytest.raises(errors.ContextIsLocked):
        registry.register_context('master', replace=True)


def test_get_context() -> None:
    registry = create_default_registry()
    context = registry.register_context('app')

    assert registry.get_context('app') is context
    assert registry.get_context('master') is registry.master_context
    assert context.parent is registry.master_context

    with pytest.raises(errors.UnknownContext):
        registry.get_context('other')


def test_services() -> None:
    registry = create_default_registry()
    context = registry.register_context('app')

    with pytest.raises(errors.UnknownService):
        context.get_service('mailer')

    class Mailer(StoppableService):
        stopped = False

        def stop_service(self) -> None:
            self.stopped = True

    context.set_service('mailer', lambda context: Mailer(), cache=True)
    mailer = context.get_service('mailer')
    assert context.get_service('mailer') is mailer

    # replacing a cached service stops it
    context.set_service('mailer', lambda context: Mailer(), cache=True)
    assert mailer.stopped
    assert context.get_service('mailer') is not mailer

    context.set_service('counter', lambda context: object())
    assert context.get_service('counter') is not context.get_service('counter')


def test_device_client_service() -> None:
    registry = create_default_registry()
    context = registry.register_context('app')

    assert context.get_service('device_client') is None

    other = registry.register_context('other')
    other.set_setting('device_api_url', 'http://devices:8080/')
    other.set_setting('device_api_key', 'secret')

    client = other.get_service('device_client')
    assert client.base_url == 'http://devices:8080'
    assert client.session.headers['X-API-Key'] == 'secret'
    assert other.get_service('device_client') is client


def test_settings_documentation() -> None:
    from slotkeeper.context import settings

    assert settings.__doc__ is not None
    assert 'settings.max_active_bookings' in settings.__doc__
