"""Legal event status transitions."""

from typing import Dict, FrozenSet, List

from eventplanner.errors import IllegalTransitionError
from eventplanner.models import EventStatus

S = EventStatus

TRANSITIONS: Dict[EventStatus, FrozenSet[EventStatus]] = {
    S.DISCOVERED: frozenset({S.PROPOSED, S.CANCELLED}),
    S.PROPOSED: frozenset({S.APPROVED, S.REJECTED, S.CANCELLED}),
    S.APPROVED: frozenset({S.REGISTERING, S.REGISTRATION_FAILED, S.MANUAL_REGISTRATION_SENT}),
    S.REGISTERING: frozenset({S.REGISTERED, S.REGISTRATION_FAILED}),
    S.REGISTRATION_FAILED: frozenset({S.REGISTERING, S.MANUAL_REGISTRATION_SENT}),
    S.REGISTERED: frozenset(),
    S.REJECTED: frozenset(),
    S.CANCELLED: frozenset(),
    S.MANUAL_REGISTRATION_SENT: frozenset(),
}


def can_transition(from_status, to_status) -> bool:
    return EventStatus(to_status) in TRANSITIONS[EventStatus(from_status)]


def allowed_sources(to_status) -> List[str]:
    """Statuses from which `to_status` may be entered, as plain values for store filters."""
    target = EventStatus(to_status)
    return sorted(status.value for status, targets in TRANSITIONS.items() if target in targets)


def assert_transition(entity_id: str, from_status, to_status) -> None:
    if not can_transition(from_status, to_status):
        raise IllegalTransitionError(entity_id, EventStatus(from_status).value, EventStatus(to_status).value)
