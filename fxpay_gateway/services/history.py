"""Append-only status history shared by payments and settlements"""

from typing import Any, Optional

from fxpay_gateway.domain.lifecycle import ensure_payment_transition, ensure_settlement_transition
from fxpay_gateway.infrastructure.database.models import Settlement
from fxpay_gateway.utils.date_utils import utcnow

# Status -> timestamp column stamped on entry
_STATUS_TIMESTAMPS = {
    "processing": "processed_at",
    "completed": "completed_at",
    "failed": "failed_at",
    "settled": "settled_at",
}


def apply_status(entity: Any, status: str, reason: str, actor: Optional[str] = None) -> None:
    """
    Move an ORM entity to a new status and append the history entry.

    Raises InsufficientStateError when the entity's state machine does not
    allow the move; nothing is changed in that case. The JSON list is
    reassigned rather than mutated so SQLAlchemy sees the change.
    """
    if isinstance(entity, Settlement):
        ensure_settlement_transition(entity.status, status)
    else:
        ensure_payment_transition(entity.status, status)

    now = utcnow()
    entity.status_history = [
        *(entity.status_history or []),
        {"status": status, "timestamp": now.isoformat(), "reason": reason, "actor": actor},
    ]
    entity.status = status

    column = _STATUS_TIMESTAMPS.get(status)
    if column and hasattr(entity, column):
        setattr(entity, column, now)
