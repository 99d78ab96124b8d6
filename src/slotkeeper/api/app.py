""" The HTTP endpoints through which the sibling system books devices.

All responses are JSON. Errors have the form
``{"success": false, "error": "...", "code": "not-available"}`` and use the
status code of :data:`STATUS_CODES`.

"""
from __future__ import annotations

import logging

from datetime import date, timedelta
from flask import Flask, jsonify, request
from hmac import compare_digest

from slotkeeper.modules import errors


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from flask import Response

    from slotkeeper.db.devices import DeviceStore


log = logging.getLogger('slotkeeper.api')


STATUS_CODES: dict[type[errors.SlotkeeperError], int] = {
    errors.InvalidRequest: 400,
    errors.InvalidBookingRange: 400,
    errors.InvalidSchedule: 400,
    errors.InvalidQuantity: 400,
    errors.PastDate: 400,
    errors.TooFarInFuture: 400,
    errors.SlotMisaligned: 400,
    errors.UnknownResource: 404,
    errors.UnknownBooking: 404,
    errors.NotAvailable: 409,
    errors.ConcurrencyConflict: 409,
    errors.InvalidTransition: 409,
    errors.BookingIsFinal: 409,
    errors.ActiveLimitReached: 409,
    errors.DownstreamRejected: 502,
    errors.DownstreamUnavailable: 503,
}


def status_code_for(error: errors.SlotkeeperError) -> int:
    for cls in type(error).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]

    return 500


def parse_date(value: Any, field: str) -> date:
    if not isinstance(value, str):
        raise errors.InvalidRequest(f'{field} is required (YYYY-MM-DD)')

    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise errors.InvalidRequest(f'{field} is not a valid date') from e


def parse_flag(value: str | None) -> bool:
    return (value or '').lower() in ('1', 'true', 'yes')


def json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)

    if not isinstance(body, dict):
        raise errors.InvalidRequest('Expected a JSON object')

    return body


def create_app(store: DeviceStore) -> Flask:
    """ Creates the Flask application serving the given device store.

    If :ref:`settings.api_key` is set on the store's context, every request
    but the health check has to send it as ``X-API-Key`` header, together
    with :ref:`settings.api_extra` as ``X-API-Extra``.

    """

    app = Flask(__name__)
    context = store.context

    @app.before_request
    def authenticate() -> tuple[Response, int] | None:
        if request.endpoint == 'healthz':
            return None

        api_key = context.get_setting('api_key')

        if not api_key:
            return None

        api_extra = context.get_setting('api_extra') or ''

        key_ok = compare_digest(request.headers.get('X-API-Key', ''), api_key)
        extra_ok = compare_digest(
            request.headers.get('X-API-Extra', ''), api_extra
        )

        if key_ok and extra_ok:
            return None

        log.warning('Unauthorized request to %s', request.path)
        return jsonify(
            success=False, error='Unauthorized', code='unauthorized'
        ), 401

    @app.teardown_request
    def end_transaction(exception: BaseException | None) -> None:
        store.session_provider.session.remove()

    @app.errorhandler(errors.SlotkeeperError)
    def handle_error(error: errors.SlotkeeperError) -> tuple[Response, int]:
        status = status_code_for(error)

        if status >= 500:
            log.error('%s failed: %s', request.path, error)
        else:
            log.info('%s refused (%s): %s', request.path, error.code, error)

        body = jsonify(success=False, error=str(error), code=error.code)
        return body, status

    @app.route('/healthz')
    def healthz() -> Response:
        return jsonify(status='ok')

    @app.route('/api/devices')
    def devices() -> Response:
        day_value = request.args.get('date')
        day = parse_date(day_value, 'date') if day_value else store.today()
        include_reserved = parse_flag(request.args.get('include_reserved'))

        return jsonify(devices=[
            {
                'id': device.id,
                'name': device.name,
                'description': device.description or '',
                'available': available,
                'permanent_reserved': device.permanent_reserved,
            }
            for device, available in store.availability(day, include_reserved)
        ])

    @app.route('/api/devices/<int:device_id>/availability')
    def device_availability(device_id: int) -> Response:
        day = parse_date(request.args.get('date'), 'date')
        free = store.free_units(device_id, day)

        return jsonify(
            device_id=device_id,
            date=day.isoformat(),
            available=free > 0,
            free=free
        )

    @app.route('/api/devices/availability', methods=['POST'])
    def period_availability() -> Response:
        body = json_body()
        start = parse_date(body.get('start_date'), 'start_date')
        end = parse_date(body.get('end_date'), 'end_date')

        if end < start:
            raise errors.InvalidRequest('end_date is before start_date')

        days = (end - start).days + 1
        max_days = context.get_setting('availability_max_days')

        if max_days and days > max_days:
            raise errors.InvalidRequest(
                f'At most {max_days} days can be requested at once'
            )

        device_ids = body.get('device_ids')

        if device_ids is None:
            devices = store.devices()
        elif isinstance(device_ids, list):
            try:
                ids = [int(i) for i in device_ids]
            except (TypeError, ValueError) as e:
                raise errors.InvalidRequest('device_ids is invalid') from e

            devices = [store.device_by_id(i) for i in ids]
        else:
            raise errors.InvalidRequest('device_ids must be a list')

        return jsonify(devices=[
            {
                'id': device.id,
                'name': device.name,
                'dates': {
                    day.isoformat(): available
                    for day, available in store.availability_for_period(
                        device.id, start, days
                    ).items()
                }
            }
            for device in devices
        ])

    @app.route('/api/book-device', methods=['POST'])
    def book_device() -> Response:
        body = json_body()

        external_booking_id = body.get('external_booking_id')
        if not isinstance(external_booking_id, str) or not external_booking_id:
            raise errors.InvalidRequest('external_booking_id is required')

        start = parse_date(body.get('date'), 'date')
        end = None
        if body.get('end_date'):
            end = parse_date(body['end_date'], 'end_date')

        if body.get('device_id') is not None:
            try:
                device = store.device_by_id(int(body['device_id']))
            except (TypeError, ValueError) as e:
                raise errors.InvalidRequest('device_id is invalid') from e
        elif body.get('device_name'):
            device = store.device_by_name(str(body['device_name']))
        else:
            raise errors.InvalidRequest('device_id or device_name is required')

        booking = store.reserve(
            device.id, start, end,
            client_name=body.get('client_name') or None,
            client_phone=body.get('client_phone') or None,
            comment=body.get('comment') or None,
            external_booking_id=external_booking_id,
            approved=True
        )

        return jsonify(
            success=True,
            booking_id=booking.id,
            status=booking.status
        )

    @app.route('/api/book-device/<external_booking_id>', methods=['DELETE'])
    def cancel_device_booking(external_booking_id: str) -> Response:
        store.cancel_external(external_booking_id)
        return jsonify(success=True)

    return app
