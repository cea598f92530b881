"""Payment, settlement and reconciliation state machines"""

from typing import Dict, FrozenSet

from fxpay_gateway.domain.exceptions import InsufficientStateError
from fxpay_gateway.utils.money import round_money

# Merchant statuses
PENDING_MERCHANT = "pending"
ACTIVE_MERCHANT = "active"
SUSPENDED_MERCHANT = "suspended"
TERMINATED_MERCHANT = "terminated"

MERCHANT_STATUSES = frozenset({PENDING_MERCHANT, ACTIVE_MERCHANT, SUSPENDED_MERCHANT, TERMINATED_MERCHANT})

# Payment statuses
INITIATED = "initiated"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
REFUNDED = "refunded"
SETTLED = "settled"

PAYMENT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    INITIATED: frozenset({PROCESSING, FAILED}),
    PROCESSING: frozenset({COMPLETED, FAILED}),
    COMPLETED: frozenset({SETTLED, REFUNDED}),
    SETTLED: frozenset({REFUNDED}),
    FAILED: frozenset(),
    CANCELLED: frozenset(),
    REFUNDED: frozenset(),
}

REFUNDABLE_STATUSES = frozenset({COMPLETED, SETTLED})

# Settlement statuses
SETTLEMENT_PENDING = "pending"
SETTLEMENT_PROCESSING = "processing"
SETTLEMENT_COMPLETED = "completed"
SETTLEMENT_FAILED = "failed"

SETTLEMENT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    SETTLEMENT_PENDING: frozenset({SETTLEMENT_PROCESSING}),
    SETTLEMENT_PROCESSING: frozenset({SETTLEMENT_COMPLETED, SETTLEMENT_FAILED}),
    SETTLEMENT_COMPLETED: frozenset(),
    SETTLEMENT_FAILED: frozenset(),
}

# Reconciliation statuses
RECONCILIATION_PENDING = "pending"
RECONCILIATION_IN_PROGRESS = "in_progress"
RECONCILIATION_COMPLETED = "completed"
RECONCILIATION_DISCREPANCY = "discrepancy_found"

RECONCILIATION_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    RECONCILIATION_PENDING: frozenset({RECONCILIATION_IN_PROGRESS}),
    RECONCILIATION_IN_PROGRESS: frozenset({RECONCILIATION_COMPLETED, RECONCILIATION_DISCREPANCY}),
    RECONCILIATION_COMPLETED: frozenset(),
    RECONCILIATION_DISCREPANCY: frozenset(),
}


def _ensure(transitions: Dict[str, FrozenSet[str]], entity: str, current: str, new: str) -> None:
    if new not in transitions.get(current, frozenset()):
        raise InsufficientStateError(
            f"Cannot move {entity} from {current} to {new}",
            {"current": current, "requested": new},
        )


def ensure_payment_transition(current: str, new: str) -> None:
    """Raise InsufficientStateError unless the payment may move from current to new"""
    _ensure(PAYMENT_TRANSITIONS, "payment", current, new)


def ensure_settlement_transition(current: str, new: str) -> None:
    _ensure(SETTLEMENT_TRANSITIONS, "settlement", current, new)


def ensure_reconciliation_transition(current: str, new: str) -> None:
    _ensure(RECONCILIATION_TRANSITIONS, "reconciliation", current, new)


def can_refund(status: str, source_amount: float, total_refunded: float, amount: float) -> bool:
    """Refunds need a completed/settled payment and must stay within the source amount"""
    if status not in REFUNDABLE_STATUSES:
        return False
    return amount <= round_money(source_amount - total_refunded)
