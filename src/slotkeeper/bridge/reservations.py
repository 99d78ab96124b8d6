from __future__ import annotations

import logging
import sedate

from slotkeeper.modules import errors
from slotkeeper.modules import events


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from slotkeeper.bridge.client import DeviceClient
    from slotkeeper.context.core import Context
    from slotkeeper.db.models import RoomBooking


log = logging.getLogger('slotkeeper.bridge')


class DeviceReservationBridge:
    """ Reserves and releases the device linked to a room booking.

    The device service is keyed by the ``device_booking_ref`` of the room
    booking, so repeating a reservation never books a second device.

    Neither direction lets a failure of the device service fail the room
    booking: a failed reservation leaves the booking flagged as device
    unconfirmed, a failed release is logged for manual reconciliation. Both
    fire an event (see :mod:`slotkeeper.modules.events`).

    """

    def __init__(
        self,
        context: Context,
        client: DeviceClient | None,
        timezone: str
    ):
        self.context = context
        self.client = client
        self.timezone = timezone

    def assert_client(self) -> DeviceClient:
        if self.client is None:
            raise errors.DownstreamUnavailable(
                'No device service configured'
            )
        return self.client

    def reserve(self, booking: RoomBooking) -> bool:
        """ Books the device of the room booking for the day of the room
        booking. Returns True if the device service confirmed it.

        """
        assert booking.device_booking_ref is not None

        try:
            device_booking_id = self.assert_client().book_device(
                day=sedate.to_timezone(booking.start, self.timezone).date(),
                external_booking_id=booking.device_booking_ref,
                device_id=booking.device_id,
                device_name=booking.device_name,
                client_name=booking.client_name,
                client_phone=booking.client_phone
            )
        except errors.SlotkeeperError as e:
            log.warning(
                'Device of room booking %s unconfirmed (%s): %s',
                booking.id, e.code, e
            )
            booking.device_confirmed = False
            events.on_device_reservation_failed(self.context, booking, e)
            return False

        booking.device_booking_id = device_booking_id
        booking.device_confirmed = True

        return True

    def release(
        self,
        booking: RoomBooking,
        device_booking_ref: str | None = None
    ) -> bool:
        """ Cancels the device booking of the room booking. Returns False if
        the device service could not do it.

        :device_booking_ref:
            The reference to cancel, if not the current one of the booking
            (e.g. the one it had before it was moved).

        """
        ref = device_booking_ref or booking.device_booking_ref

        if not ref:
            return True

        try:
            self.assert_client().cancel_device_booking(ref)
        except errors.UnknownBooking:
            log.info(
                'Device booking %s of room booking %s was already gone',
                ref, booking.id
            )
        except errors.SlotkeeperError as e:
            log.error(
                'Device booking %s of room booking %s needs to be canceled '
                'manually (%s): %s',
                ref, booking.id, e.code, e
            )
            events.on_device_release_failed(self.context, booking, e)
            return False

        return True

    def compensate(self, device_booking_ref: str) -> None:
        """ Cancels a device booking whose room booking was never committed.
        """
        if self.client is None:
            return

        try:
            self.client.cancel_device_booking(device_booking_ref)
        except errors.UnknownBooking:
            # the device was never booked
            pass
        except errors.SlotkeeperError as e:
            log.error(
                'Device booking %s of a failed room booking needs to be '
                'canceled manually (%s): %s',
                device_booking_ref, e.code, e
            )
