from __future__ import annotations

from typing import ClassVar
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from slotkeeper.db.models import Booking


class SlotkeeperError(Exception):
    """ Base class of all errors raised by slotkeeper.

    Every subclass carries a distinct :attr:`code`, which callers may use to
    drive their retry logic without resorting to string matching.

    """

    __slots__ = ('booking',)
    code: ClassVar[str] = 'error'
    booking: Booking
    """
    This attribute is not guaranteed to exist
    """


class ContextAlreadyExists(SlotkeeperError):
    code = 'context-already-exists'


class UnknownContext(SlotkeeperError):
    code = 'unknown-context'


class ContextIsLocked(SlotkeeperError):
    code = 'context-is-locked'


class UnknownService(SlotkeeperError):
    code = 'unknown-service'


class InvalidRequest(SlotkeeperError):
    """ A request to the HTTP api is missing or has malformed fields. """
    code = 'invalid-request'


class InvalidSchedule(SlotkeeperError):
    code = 'invalid-schedule'


class InvalidBookingRange(SlotkeeperError):
    code = 'invalid-booking-range'


class InvalidQuantity(SlotkeeperError):
    code = 'invalid-quantity'


class UnknownResource(SlotkeeperError):
    code = 'unknown-resource'


class UnknownBooking(SlotkeeperError):
    code = 'unknown-booking'


class NotAvailable(SlotkeeperError):
    """ The requested extent is closed or its capacity is exhausted. """
    code = 'not-available'


class PastDate(SlotkeeperError):
    code = 'past-date'


class TooFarInFuture(SlotkeeperError):
    code = 'too-far-in-future'


class ActiveLimitReached(SlotkeeperError):
    code = 'active-limit-reached'

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f'At most {limit} active bookings are allowed')


class ConcurrencyConflict(SlotkeeperError):
    """ The booking was changed by someone else since it was read. Re-read
    the booking and try again with the current version.

    """
    code = 'concurrency-conflict'

    def __init__(self, booking_id: int, expected_version: int):
        self.booking_id = booking_id
        self.expected_version = expected_version
        super().__init__(
            f'Booking {booking_id} is no longer at version {expected_version}'
        )


class BookingIsFinal(SlotkeeperError):
    """ The booking was rejected, canceled or completed and cannot be changed
    anymore.

    """
    code = 'booking-is-final'


class InvalidTransition(SlotkeeperError):
    code = 'invalid-transition'

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f'Cannot change status from {current} to {target}')


class SlotMisaligned(SlotkeeperError):
    code = 'slot-misaligned'


class DownstreamUnavailable(SlotkeeperError):
    """ The device service could not be reached, timed out or failed. """
    code = 'downstream-unavailable'


class DownstreamRejected(SlotkeeperError):
    """ The device service refused the request for a reason not covered by
    a more specific error.

    """
    code = 'downstream-rejected'

    def __init__(self, status_code: int, message: str = ''):
        self.status_code = status_code
        super().__init__(message or f'Device service answered {status_code}')
