from __future__ import annotations

from enum import IntEnum
from typing import Dict, FrozenSet


class TransactionStatus(IntEnum):
    """Hotel transaction status codes as persisted in `hotel_transactions.status`.

    Code 2 is intentionally unused; older records used it for cancellations.
    """

    CREATED = 0
    CONFIRMED = 1
    PAYMENT_PENDING = 3
    PAYMENT_CONFIRMED = 4
    BOOKING_FAILED = 5
    PAYMENT_FAILED = 6
    POLICY_FETCHED = 7
    HELD = 8

    @property
    def label(self) -> str:
        return self.name.lower()


TERMINAL_STATUSES: FrozenSet[TransactionStatus] = frozenset(
    {
        TransactionStatus.CONFIRMED,
        TransactionStatus.BOOKING_FAILED,
        TransactionStatus.PAYMENT_FAILED,
    }
)


_ALLOWED_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.CREATED: frozenset({TransactionStatus.POLICY_FETCHED, TransactionStatus.BOOKING_FAILED}),
    TransactionStatus.POLICY_FETCHED: frozenset({TransactionStatus.HELD, TransactionStatus.BOOKING_FAILED}),
    TransactionStatus.HELD: frozenset(
        {
            TransactionStatus.PAYMENT_PENDING,
            TransactionStatus.PAYMENT_CONFIRMED,
            TransactionStatus.PAYMENT_FAILED,
            TransactionStatus.BOOKING_FAILED,
        }
    ),
    TransactionStatus.PAYMENT_PENDING: frozenset(
        {
            TransactionStatus.PAYMENT_CONFIRMED,
            TransactionStatus.PAYMENT_FAILED,
            TransactionStatus.BOOKING_FAILED,
        }
    ),
    TransactionStatus.PAYMENT_CONFIRMED: frozenset({TransactionStatus.CONFIRMED, TransactionStatus.BOOKING_FAILED}),
    TransactionStatus.CONFIRMED: frozenset(),
    TransactionStatus.BOOKING_FAILED: frozenset(),
    TransactionStatus.PAYMENT_FAILED: frozenset(),
}


class BookingStateTransitionError(ValueError):
    """Raised when an invalid transaction state transition is requested."""

    def __init__(self, current: TransactionStatus, target: TransactionStatus) -> None:
        super().__init__(f"Invalid transaction state transition: {current.label} -> {target.label}")
        self.current = current
        self.target = target


def is_terminal(status: int) -> bool:
    return TransactionStatus(status) in TERMINAL_STATUSES


def can_transition(current: int, target: int) -> bool:
    return TransactionStatus(target) in _ALLOWED_TRANSITIONS.get(TransactionStatus(current), frozenset())


def validate_transition(current: int, target: int) -> None:
    """Validate that a transition from current -> target is allowed.

    Raises BookingStateTransitionError if not allowed.
    """

    if not can_transition(current, target):
        raise BookingStateTransitionError(current=TransactionStatus(current), target=TransactionStatus(target))
