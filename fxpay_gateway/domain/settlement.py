"""Settlement batch arithmetic and reconciliation"""

from datetime import datetime
from typing import Iterable, Optional

from fxpay_gateway.domain.lifecycle import RECONCILIATION_COMPLETED, RECONCILIATION_DISCREPANCY
from fxpay_gateway.domain.models import ReconciliationResult, SettlementTotals
from fxpay_gateway.utils.money import round_money

DISCREPANCY_TOLERANCE = 0.01


def compute_settlement_totals(payments: Iterable) -> SettlementTotals:
    """
    Sum a batch of completed payments.

    net = gross - fees - refunds, where gross is the sum of target amounts.
    Each component is rounded to 2 decimals and net is derived from the
    rounded components so the identity holds exactly on the stored values.
    """
    gross = 0.0
    fees = 0.0
    refunds = 0.0
    count = 0
    refunded = 0

    for payment in payments:
        gross += payment.target_amount or 0.0
        fees += payment.total_fee or 0.0
        refunds += payment.total_refunded or 0.0
        count += 1
        if (payment.total_refunded or 0.0) > 0:
            refunded += 1

    gross = round_money(gross)
    fees = round_money(fees)
    refunds = round_money(refunds)

    return SettlementTotals(
        gross_amount=gross,
        total_fees=fees,
        refund_amount=refunds,
        net_amount=round_money(gross - fees - refunds),
        transaction_count=count,
        refunded_transactions=refunded,
    )


def reconcile_amounts(
    expected_amount: float,
    actual_amount: float,
    reconciled_by: Optional[str],
    reconciled_at: datetime,
    notes: Optional[str] = None,
) -> ReconciliationResult:
    """
    Compare the declared net amount with what the bank actually moved.

    Example:
        expected 1000.00, actual 1000.02 -> discrepancy 0.02 -> discrepancy_found
    """
    discrepancy = round_money(actual_amount - expected_amount)
    status = RECONCILIATION_DISCREPANCY if abs(discrepancy) > DISCREPANCY_TOLERANCE else RECONCILIATION_COMPLETED

    return ReconciliationResult(
        status=status,
        expected_amount=expected_amount,
        actual_amount=actual_amount,
        discrepancy=discrepancy,
        reconciled_by=reconciled_by,
        reconciled_at=reconciled_at,
        notes=notes,
    )
