"""Status machines for transactions and payouts.

Both only move forward, and only once: `pending` to one terminal state.
"""

from creatorpay.common.errors import InvalidTransition

TRANSACTION_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}

PAYOUT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}

ACCOUNT_TRANSITIONS: dict[str, set[str]] = {
    "none": {"pending", "active"},
    "pending": {"pending", "active"},
    "active": {"active", "pending"},
}


def is_terminal(transitions: dict[str, set[str]], status: str) -> bool:
    """A status with no outgoing edges is terminal."""

    return not transitions.get(status, set())


def validate_transition(transitions: dict[str, set[str]], current: str, new: str) -> None:
    """Raise when a transition is not allowed by the given machine."""

    if new not in transitions.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
