from __future__ import annotations

import pytest

from slotkeeper.modules import statemachine as sm
from slotkeeper.modules.errors import InvalidTransition


def test_transitions_from_pending() -> None:
    for target in (
        sm.APPROVED, sm.CONFIRMED, sm.REJECTED, sm.NEEDS_REVISION, sm.CANCELED
    ):
        assert sm.can_transition(sm.PENDING, target)

    assert not sm.can_transition(sm.PENDING, sm.COMPLETED)
    assert not sm.can_transition(sm.PENDING, sm.PENDING)


def test_revision_returns_to_pending() -> None:
    assert sm.can_transition(sm.NEEDS_REVISION, sm.PENDING)
    assert not sm.can_transition(sm.NEEDS_REVISION, sm.APPROVED)


def test_accepted_bookings_end() -> None:
    for accepted in (sm.APPROVED, sm.CONFIRMED):
        assert sm.is_accepted(accepted)
        assert sm.can_transition(accepted, sm.COMPLETED)
        assert sm.can_transition(accepted, sm.CANCELED)
        assert not sm.can_transition(accepted, sm.REJECTED)
        assert not sm.can_transition(accepted, sm.PENDING)


@pytest.mark.parametrize('status', [sm.REJECTED, sm.CANCELED, sm.COMPLETED])
def test_terminal_states(status: str) -> None:
    assert sm.is_terminal(status)

    for target in sm.STATUSES:
        assert not sm.can_transition(status, target)

        with pytest.raises(InvalidTransition) as e:
            sm.assert_transition(status, target)

        assert e.value.current == status
        assert e.value.target == target


def test_unknown_status() -> None:
    with pytest.raises(InvalidTransition):
        sm.assert_transition(sm.PENDING, 'archived')

    with pytest.raises(InvalidTransition):
        sm.assert_transition('archived', sm.PENDING)


def test_status_groups() -> None:
    assert sm.TERMINAL == {sm.REJECTED, sm.CANCELED, sm.COMPLETED}
    assert sm.ACTIVE.isdisjoint(sm.TERMINAL)
    assert sm.ACCEPTED <= sm.ACTIVE
