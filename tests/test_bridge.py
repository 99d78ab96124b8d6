from __future__ import annotations

import json
import mock
import pytest
import requests
import sedate

from datetime import date, datetime
from slotkeeper.bridge.client import DeviceClient
from slotkeeper.bridge.reservations import DeviceReservationBridge
from slotkeeper.db.models import RoomBooking
from slotkeeper.modules import errors
from slotkeeper.modules import events


from typing import Any


def response(status_code: int, payload: Any = None) -> requests.Response:
    result = requests.Response()
    result.status_code = status_code
    result.headers['Content-Type'] = 'application/json'
    result._content = json.dumps(payload).encode('utf-8')
    return result


def new_client(*responses: requests.Response | Exception) -> DeviceClient:
    session = requests.Session()
    session.request = mock.Mock(  # type: ignore[method-assign]
        side_effect=responses
    )
    return DeviceClient(
        'http://devices:8080/',
        api_key='secret',
        api_extra='extra',
        timeout=5,
        session=session
    )


def request_mock(client: DeviceClient) -> mock.Mock:
    return client.session.request  # type: ignore[return-value]


def new_booking() -> RoomBooking:
    return RoomBooking(
        id=1,
        resource_id=1,
        start=sedate.replace_timezone(datetime(2024, 5, 7, 23), 'UTC'),
        end=sedate.replace_timezone(datetime(2024, 5, 8), 'UTC'),
        device_id=3,
        device_booking_ref='room-abc',
        client_name='Ada',
        client_phone='+41 44 000 00 00'
    )


@pytest.fixture(autouse=True)
def clear_events() -> None:
    for event in (e for e in dir(events) if e.startswith('on_')):
        del getattr(events, event)[:]


def test_headers() -> None:
    client = new_client()

    assert client.base_url == 'http://devices:8080'
    assert client.session.headers['X-API-Key'] == 'secret'
    assert client.session.headers['X-API-Extra'] == 'extra'


def test_book_device() -> None:
    client = new_client(response(200, {'success': True, 'booking_id': 12}))

    assert client.book_device(
        date(2024, 5, 7), 'room-abc', device_id=3, client_name='Ada'
    ) == 12

    request_mock(client).assert_called_once_with(
        'POST', 'http://devices:8080/api/book-device',
        timeout=5,
        json={
            'date': '2024-05-07',
            'external_booking_id': 'room-abc',
            'client_name': 'Ada',
            'client_phone': '',
            'device_id': 3,
        }
    )


def test_book_device_without_id() -> None:
    client = new_client(response(200, {'success': True}))

    with pytest.raises(errors.DownstreamUnavailable):
        client.book_device(date(2024, 5, 7), 'room-abc', device_name='Beamer')


@pytest.mark.parametrize('status_code,error', [
    (400, errors.DownstreamRejected),
    (401, errors.DownstreamRejected),
    (404, errors.UnknownResource),
    (409, errors.NotAvailable),
    (500, errors.DownstreamUnavailable),
    (503, errors.DownstreamUnavailable),
])
def test_error_mapping(
    status_code: int,
    error: type[errors.SlotkeeperError]
) -> None:

    client = new_client(response(status_code, {'error': 'Nope'}))

    with pytest.raises(error) as e:
        client.book_device(date(2024, 5, 7), 'room-abc', device_id=3)

    assert str(e.value) == 'Nope'


def test_rejected_status_code() -> None:
    client = new_client(response(422, ['not an object']))

    with pytest.raises(errors.DownstreamRejected) as e:
        client.availability(3, date(2024, 5, 7))

    assert e.value.status_code == 422
    assert str(e.value) == 'Device service answered 422'


def test_connection_errors() -> None:
    client = new_client(
        requests.exceptions.ConnectTimeout('timeout'),
        requests.exceptions.ConnectionError('refused'),
    )

    with pytest.raises(errors.DownstreamUnavailable):
        client.book_device(date(2024, 5, 7), 'room-abc', device_id=3)

    with pytest.raises(errors.DownstreamUnavailable):
        client.cancel_device_booking('room-abc')


def test_cancel_device_booking() -> None:
    client = new_client(response(200, {'success': True}), response(404))

    client.cancel_device_booking('room-abc')
    request_mock(client).assert_called_with(
        'DELETE', 'http://devices:8080/api/book-device/room-abc', timeout=5
    )

    with pytest.raises(errors.UnknownBooking):
        client.cancel_device_booking('room-abc')


def test_devices_and_availability() -> None:
    client = new_client(
        response(200, {'devices': [{'id': 3, 'name': 'Beamer'}]}),
        response(200, {'device_id': 3, 'available': False}),
    )

    assert client.devices(date(2024, 5, 7), include_reserved=True) == [
        {'id': 3, 'name': 'Beamer'}
    ]
    assert request_mock(client).call_args.kwargs['params'] == {
        'date': '2024-05-07',
        'include_reserved': 'true'
    }

    assert client.availability(3, date(2024, 5, 7)) is False


def test_health_check() -> None:
    client = new_client(
        response(200, {'status': 'ok'}),
        response(502),
        requests.exceptions.ReadTimeout('timeout'),
    )

    assert client.health_check()
    assert not client.health_check()
    assert not client.health_check()


def test_bridge_reserve() -> None:
    client = mock.Mock(spec=DeviceClient)
    client.book_device.return_value = 99

    bridge = DeviceReservationBridge(mock.Mock(), client, 'Europe/Zurich')
    booking = new_booking()

    assert bridge.reserve(booking)
    assert booking.device_booking_id == 99
    assert booking.device_confirmed is True

    # the day is the one of the local start
    assert client.book_device.call_args.kwargs['day'] == date(2024, 5, 8)


def test_bridge_reserve_failure() -> None:
    failures = []
    events.on_device_reservation_failed.append(
        lambda context, booking, error: failures.append(error.code)
    )

    client = mock.Mock(spec=DeviceClient)
    client.book_device.side_effect = errors.NotAvailable('Taken')

    bridge = DeviceReservationBridge(mock.Mock(), client, 'Europe/Zurich')
    booking = new_booking()

    assert not bridge.reserve(booking)
    assert booking.device_confirmed is False
    assert booking.device_booking_id is None
    assert failures == ['not-available']


def test_bridge_without_client() -> None:
    bridge = DeviceReservationBridge(mock.Mock(), None, 'Europe/Zurich')
    booking = new_booking()

    assert not bridge.reserve(booking)
    assert booking.device_confirmed is False
    assert not bridge.release(booking)

    # nothing to compensate without a client
    bridge.compensate('room-abc')


def test_bridge_release() -> None:
    failures = []
    events.on_device_release_failed.append(
        lambda context, booking, error: failures.append(error.code)
    )

    client = mock.Mock(spec=DeviceClient)
    bridge = DeviceReservationBridge(mock.Mock(), client, 'Europe/Zurich')
    booking = new_booking()

    assert bridge.release(booking)
    client.cancel_device_booking.assert_called_once_with('room-abc')

    # already gone on the device side
    client.cancel_device_booking.side_effect = errors.UnknownBooking()
    assert bridge.release(booking)

    client.cancel_device_booking.side_effect = errors.DownstreamUnavailable()
    assert not bridge.release(booking)
    assert failures == ['downstream-unavailable']

    booking.device_booking_ref = None
    assert bridge.release(booking)
    assert client.cancel_device_booking.call_count == 3


def test_bridge_compensate() -> None:
    client = mock.Mock(spec=DeviceClient)
    bridge = DeviceReservationBridge(mock.Mock(), client, 'Europe/Zurich')

    client.cancel_device_booking.side_effect = errors.UnknownBooking()
    bridge.compensate('room-abc')

    client.cancel_device_booking.side_effect = errors.DownstreamUnavailable()
    bridge.compensate('room-abc')

    assert client.cancel_device_booking.call_count == 2
