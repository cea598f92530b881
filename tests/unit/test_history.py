"""Unit tests for status history bookkeeping"""

import pytest

from fxpay_gateway.domain.exceptions import InsufficientStateError
from fxpay_gateway.infrastructure.database.models import Payment, Settlement
from fxpay_gateway.services.history import apply_status


def test_apply_status_appends_history_and_stamps_time():
    payment = Payment(status="initiated", status_history=[])

    apply_status(payment, "processing", "Payment execution started", actor="ops")

    assert payment.status == "processing"
    assert payment.processed_at is not None
    assert payment.status_history[-1]["status"] == "processing"
    assert payment.status_history[-1]["actor"] == "ops"


def test_illegal_payment_move_changes_nothing():
    payment = Payment(status="failed", status_history=[{"status": "failed"}])

    with pytest.raises(InsufficientStateError) as exc_info:
        apply_status(payment, "completed", "late completion")

    assert exc_info.value.details == {"current": "failed", "requested": "completed"}
    assert payment.status == "failed"
    assert payment.status_history == [{"status": "failed"}]


def test_settlements_use_their_own_state_machine():
    settlement = Settlement(status="pending", status_history=[])

    # a payout cannot skip the processing step
    with pytest.raises(InsufficientStateError):
        apply_status(settlement, "completed", "skipped processing")

    apply_status(settlement, "processing", "Bank transfer initiated")
    assert settlement.status == "processing"
