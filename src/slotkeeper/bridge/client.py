from __future__ import annotations

import logging
import requests

from slotkeeper.context.core import StoppableService
from slotkeeper.modules import errors


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from datetime import date


log = logging.getLogger('slotkeeper.bridge')


class DeviceClient(StoppableService):
    """ Talks to the device booking service of the sibling system.

    Failures are raised as slotkeeper errors: timeouts, connection problems
    and server errors as :class:`~.errors.DownstreamUnavailable`, conflicts
    as :class:`~.errors.NotAvailable`, missing records as
    :class:`~.errors.UnknownResource` or :class:`~.errors.UnknownBooking`
    and other refusals as :class:`~.errors.DownstreamRejected`.

    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        api_extra: str | None = None,
        timeout: float = 10,
        session: requests.Session | None = None
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

        if api_key:
            self.session.headers['X-API-Key'] = api_key

        if api_extra:
            self.session.headers['X-API-Extra'] = api_extra

    def stop_service(self) -> None:
        self.session.close()

    def request(
        self,
        method: str,
        path: str,
        not_found: type[errors.SlotkeeperError] = errors.UnknownResource,
        **kwargs: Any
    ) -> dict[str, Any]:

        url = f'{self.base_url}{path}'

        try:
            response = self.session.request(
                method, url, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            log.error('Device service %s %s failed: %s', method, url, e)
            raise errors.DownstreamUnavailable(str(e)) from e

        payload = self.parse(response)
        message = str(payload.get('error') or '')

        if response.status_code >= 500:
            log.error(
                'Device service %s %s answered %i: %s',
                method, url, response.status_code, message
            )
            raise errors.DownstreamUnavailable(
                message or f'Device service answered {response.status_code}'
            )

        if response.status_code == 409:
            raise errors.NotAvailable(message)

        if response.status_code == 404:
            raise not_found(message)

        if response.status_code >= 400:
            raise errors.DownstreamRejected(response.status_code, message)

        return payload

    @staticmethod
    def parse(response: requests.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}

        return payload if isinstance(payload, dict) else {}

    def devices(
        self,
        day: date | None = None,
        include_reserved: bool = False
    ) -> list[dict[str, Any]]:
        """ Lists the devices, with their availability on the given day. """

        params: dict[str, str] = {}

        if day is not None:
            params['date'] = day.isoformat()

        if include_reserved:
            params['include_reserved'] = 'true'

        return self.request(  # type: ignore[no-any-return]
            'GET', '/api/devices', params=params
        ).get('devices', [])

    def availability(self, device_id: int, day: date) -> bool:
        payload = self.request(
            'GET', f'/api/devices/{device_id}/availability',
            params={'date': day.isoformat()}
        )
        return bool(payload.get('available'))

    def book_device(
        self,
        day: date,
        external_booking_id: str,
        device_id: int | None = None,
        device_name: str | None = None,
        client_name: str | None = None,
        client_phone: str | None = None
    ) -> int:
        """ Books a device for a single day and returns the id of the
        device booking. Booking again with the same external booking id
        returns the same id.

        """

        assert device_id is not None or device_name is not None

        body: dict[str, Any] = {
            'date': day.isoformat(),
            'external_booking_id': external_booking_id,
            'client_name': client_name or '',
            'client_phone': client_phone or '',
        }

        if device_id is not None:
            body['device_id'] = device_id
        else:
            body['device_name'] = device_name

        payload = self.request('POST', '/api/book-device', json=body)

        if 'booking_id' not in payload:
            raise errors.DownstreamUnavailable(
                'Device service did not return a booking id'
            )

        log.info(
            'Device booking %s created for %s',
            payload['booking_id'], external_booking_id
        )

        return int(payload['booking_id'])

    def cancel_device_booking(self, external_booking_id: str) -> None:
        self.request(
            'DELETE', f'/api/book-device/{external_booking_id}',
            not_found=errors.UnknownBooking
        )

        log.info('Device booking %s canceled', external_booking_id)

    def health_check(self) -> bool:
        try:
            self.request('GET', '/healthz')
        except errors.SlotkeeperError:
            return False

        return True
