"""Order payment status transitions enforced by the order store."""

from enum import Enum


class OrderPaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[OrderPaymentStatus, set[OrderPaymentStatus]] = {
    OrderPaymentStatus.PENDING: {
        OrderPaymentStatus.PROCESSING,
        OrderPaymentStatus.COMPLETED,
        OrderPaymentStatus.FAILED,
    },
    OrderPaymentStatus.PROCESSING: {OrderPaymentStatus.COMPLETED, OrderPaymentStatus.FAILED},
    OrderPaymentStatus.COMPLETED: set(),
    OrderPaymentStatus.FAILED: set(),
}

TERMINAL_STATES = frozenset({OrderPaymentStatus.COMPLETED, OrderPaymentStatus.FAILED})


def is_terminal(status: str) -> bool:
    return OrderPaymentStatus(status) in TERMINAL_STATES


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if OrderPaymentStatus(new) not in ALLOWED_TRANSITIONS.get(OrderPaymentStatus(current), set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
