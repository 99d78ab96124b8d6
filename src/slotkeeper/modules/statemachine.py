""" The lifecycle of a booking.

A booking starts out pending (or approved when a manager or the sibling
system creates it directly). Pending bookings are approved or confirmed,
rejected, sent back for revision or canceled. A booking needing revision
returns to pending once the user edited it. Accepted bookings end up
completed or canceled. Rejected, canceled and completed bookings are final.

"""
from __future__ import annotations

from slotkeeper.modules import errors


from typing import Literal
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from typing_extensions import TypeAlias

    Status: TypeAlias = Literal[
        'pending',
        'approved',
        'confirmed',
        'rejected',
        'needs_revision',
        'canceled',
        'completed',
    ]


PENDING: Literal['pending'] = 'pending'
APPROVED: Literal['approved'] = 'approved'
CONFIRMED: Literal['confirmed'] = 'confirmed'
REJECTED: Literal['rejected'] = 'rejected'
NEEDS_REVISION: Literal['needs_revision'] = 'needs_revision'
CANCELED: Literal['canceled'] = 'canceled'
COMPLETED: Literal['completed'] = 'completed'

STATUSES: tuple[Status, ...] = (
    PENDING,
    APPROVED,
    CONFIRMED,
    REJECTED,
    NEEDS_REVISION,
    CANCELED,
    COMPLETED,
)

TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset((
        APPROVED, CONFIRMED, REJECTED, NEEDS_REVISION, CANCELED
    )),
    NEEDS_REVISION: frozenset((PENDING, )),
    APPROVED: frozenset((COMPLETED, CANCELED)),
    CONFIRMED: frozenset((COMPLETED, CANCELED)),
    REJECTED: frozenset(),
    CANCELED: frozenset(),
    COMPLETED: frozenset(),
}

# statuses which hold a unit of the resource
ACCEPTED = frozenset((APPROVED, CONFIRMED))

# statuses which keep a slot from being offered to others
ACTIVE = frozenset((PENDING, NEEDS_REVISION, APPROVED, CONFIRMED))

TERMINAL = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

# transitions which end the claim on a linked device
RELEASING = frozenset((REJECTED, CANCELED))


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, ())


def assert_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise errors.InvalidTransition(current, target)


def is_terminal(status: str) -> bool:
    return status in TERMINAL


def is_accepted(status: str) -> bool:
    return status in ACCEPTED
