"""
Application status state machine.

    Draft -> Submitted -> {Approved, Rejected}

Same-state writes are allowed so an identical resubmit is a no-op transition.
Approved and Rejected are terminal here; review happens downstream.
"""

DRAFT = "Draft"
SUBMITTED = "Submitted"
APPROVED = "Approved"
REJECTED = "Rejected"

STATUSES = (DRAFT, SUBMITTED, APPROVED, REJECTED)

# Statuses a brand-new application may start in.
INITIAL_STATUSES = frozenset({DRAFT, SUBMITTED})

# Rejected applications do not hold a seat.
SEAT_HOLDING_STATUSES = frozenset({DRAFT, SUBMITTED, APPROVED})

_TRANSITIONS = {
    DRAFT: frozenset({DRAFT, SUBMITTED}),
    SUBMITTED: frozenset({SUBMITTED, APPROVED, REJECTED}),
    APPROVED: frozenset({APPROVED}),
    REJECTED: frozenset({REJECTED}),
}

_BY_LOWER = {s.lower(): s for s in STATUSES}


def normalize_status(value: str | None) -> str | None:
    """Canonical spelling of a status, or None if it isn't one."""
    if not isinstance(value, str):
        return None
    return _BY_LOWER.get(value.strip().lower())


def can_transition(current: str, target: str) -> bool:
    current = normalize_status(current) or DRAFT
    return target in _TRANSITIONS.get(current, frozenset())


def leaves_draft(status: str) -> bool:
    return status != DRAFT
