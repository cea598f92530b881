"""Settlement batching, payout execution and reconciliation"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fxpay_gateway.config import Settings, settings
from fxpay_gateway.domain.exceptions import (
    BankTransferError,
    DomainException,
    InsufficientStateError,
    NotFoundError,
    ValidationError,
)
from fxpay_gateway.domain.lifecycle import (
    COMPLETED,
    RECONCILIATION_COMPLETED,
    RECONCILIATION_DISCREPANCY,
    RECONCILIATION_IN_PROGRESS,
    SETTLED,
    SETTLEMENT_COMPLETED,
    SETTLEMENT_FAILED,
    SETTLEMENT_PENDING,
    SETTLEMENT_PROCESSING,
    ensure_reconciliation_transition,
)
from fxpay_gateway.domain.settlement import compute_settlement_totals, reconcile_amounts
from fxpay_gateway.infrastructure.clients.audit import AuditEvent, AuditSink
from fxpay_gateway.infrastructure.clients.bank import BankTransferClient, TransferOutcome
from fxpay_gateway.infrastructure.database.models import Settlement
from fxpay_gateway.infrastructure.database.repositories import (
    CompletionRepository,
    MerchantRepository,
    PaymentRepository,
    SettlementFilters,
    SettlementRepository,
    clamp_pagination,
)
from fxpay_gateway.infrastructure.observability.logging import log_settlement_event
from fxpay_gateway.infrastructure.observability.metrics import (
    bank_transfer_failures_counter,
    payment_transition_counter,
    reconciliation_counter,
    settlement_counter,
)
from fxpay_gateway.services.history import apply_status
from fxpay_gateway.utils.date_utils import previous_day_bounds, utcnow
from fxpay_gateway.utils.identifiers import generate_settlement_id, generate_transfer_reference
from fxpay_gateway.utils.money import round_money

logger = logging.getLogger(__name__)

SETTLEMENT_TRANSFER = "settlement_transfer"


def _last4(account_number: Optional[str]) -> Optional[str]:
    return account_number[-4:] if account_number else None


class SettlementBatcher:
    """Groups completed payments into merchant settlements and drives them to payout"""

    def __init__(self, db: Session, audit: Optional[AuditSink] = None, config: Settings = settings):
        self.db = db
        self.audit = audit
        self.config = config
        self.settlements = SettlementRepository(db)
        self.payments = PaymentRepository(db)
        self.merchants = MerchantRepository(db)
        self.completions = CompletionRepository(db)

    def create_settlement_batch(
        self,
        merchant_id: str,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        actor: Optional[str] = None,
    ) -> Optional[Settlement]:
        """
        Settle a merchant's completed, unsettled payments for a period.

        The period defaults to the previous calendar day. Payments are claimed
        with a conditional update in the same transaction as the settlement
        insert; totals cover only the rows this batch actually claimed.
        Returns None when there is nothing to settle.
        """
        if period_start is None or period_end is None:
            default_start, default_end = previous_day_bounds()
            period_start = period_start or default_start
            period_end = period_end or default_end
        if period_start > period_end:
            raise ValidationError(
                "period_start must not be after period_end",
                {"period_start": period_start.isoformat(), "period_end": period_end.isoformat()},
            )

        merchant = self.merchants.get(merchant_id)
        if merchant is None:
            raise NotFoundError("Merchant", merchant_id)

        eligible = self.payments.find_settleable(merchant.id, period_start, period_end)
        if not eligible:
            return None

        now = utcnow()
        settlement = self.settlements.create(
            settlement_id=generate_settlement_id(now),
            merchant_id=merchant.id,
            period_start=period_start,
            period_end=period_end,
            gross_amount=0.0,
            total_fees=0.0,
            net_amount=0.0,
            currency=merchant.default_currency,
            transaction_count=0,
            status=SETTLEMENT_PENDING,
            status_history=[
                {
                    "status": SETTLEMENT_PENDING,
                    "timestamp": now.isoformat(),
                    "reason": "Settlement batch created",
                    "actor": actor,
                }
            ],
            bank_transfer={"bank_name": merchant.bank_name, "account_last4": _last4(merchant.account_number)},
            scheduled_at=now,
        )

        claimed = self.payments.claim_for_settlement([p.id for p in eligible], settlement.id)
        if not claimed:
            # Every eligible payment went to a concurrent batch
            self.db.rollback()
            return None

        totals = compute_settlement_totals(claimed)
        settlement.gross_amount = totals.gross_amount
        settlement.total_fees = totals.total_fees
        settlement.refund_amount = totals.refund_amount
        settlement.net_amount = totals.net_amount
        settlement.transaction_count = totals.transaction_count
        settlement.successful_transactions = sum(1 for p in claimed if p.status == COMPLETED)
        settlement.refunded_transactions = totals.refunded_transactions

        self.db.commit()
        self.db.refresh(settlement)

        settlement_counter.labels(status=SETTLEMENT_PENDING).inc()
        log_settlement_event(
            settlement.settlement_id,
            merchant.id,
            "created",
            transaction_count=settlement.transaction_count,
            net_amount=settlement.net_amount,
        )
        self._audit(
            "settlement_created",
            settlement,
            actor,
            {
                "net_amount": settlement.net_amount,
                "transaction_count": settlement.transaction_count,
                "claimed": len(claimed),
                "eligible": len(eligible),
            },
        )
        return settlement

    def process_settlement(self, settlement_id: str, actor: Optional[str] = None):
        """
        Start the payout: pending -> processing, with a transfer reference.

        Returns (settlement, completion_id); the transfer itself runs from the
        completion worker.
        """
        settlement = self.settlements.get_for_update(settlement_id)
        if settlement is None:
            raise NotFoundError("Settlement", settlement_id)
        if settlement.status != SETTLEMENT_PENDING:
            raise InsufficientStateError(
                f"Cannot process settlement in {settlement.status} status",
                {"current": settlement.status, "requested": SETTLEMENT_PROCESSING},
            )

        apply_status(settlement, SETTLEMENT_PROCESSING, "Bank transfer initiated", actor)
        settlement.bank_transfer = {
            **(settlement.bank_transfer or {}),
            "reference": generate_transfer_reference(),
            "initiated_at": utcnow().isoformat(),
        }
        completion = self.completions.enqueue(SETTLEMENT_TRANSFER, settlement.id)
        self.db.commit()

        settlement_counter.labels(status=SETTLEMENT_PROCESSING).inc()
        log_settlement_event(
            settlement.settlement_id,
            settlement.merchant_id,
            "processing",
            reference=settlement.bank_transfer["reference"],
        )
        self._audit("settlement_processing", settlement, actor, {"reference": settlement.bank_transfer["reference"]})
        return settlement, completion.id

    async def execute_transfer(self, settlement_id: str, bank_client: BankTransferClient) -> Optional[Settlement]:
        """Submit the payout to the bank and record the outcome; redelivery is a no-op"""
        settlement = self.settlements.get(settlement_id)
        if settlement is None or settlement.status != SETTLEMENT_PROCESSING:
            logger.info("Skipping settlement transfer", extra={"settlement_id": settlement_id})
            return None

        transfer = settlement.bank_transfer or {}
        reference = transfer.get("reference") or generate_transfer_reference()
        try:
            outcome = await bank_client.submit_transfer(
                reference=reference,
                amount=settlement.net_amount,
                currency=settlement.currency,
                account_last4=transfer.get("account_last4"),
            )
        except BankTransferError as e:
            logger.warning(f"Bank transfer failed: {e}", extra={"settlement_id": settlement.settlement_id})
            outcome = TransferOutcome(reference=reference, succeeded=False, failure_reason=e.message)

        return self.complete_transfer(settlement.id, outcome.succeeded, outcome.failure_reason)

    def complete_transfer(
        self,
        settlement_id: str,
        succeeded: bool,
        failure_reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Settlement:
        """
        Apply the bank's verdict to a processing settlement.

        Success completes the settlement and marks its member payments settled.
        Failure records the reason on the transfer; payments stay tagged.
        """
        settlement = self.settlements.get_for_update(settlement_id)
        if settlement is None:
            raise NotFoundError("Settlement", settlement_id)

        new_status = SETTLEMENT_COMPLETED if succeeded else SETTLEMENT_FAILED
        now = utcnow()
        if succeeded:
            apply_status(settlement, SETTLEMENT_COMPLETED, "Bank transfer completed", actor)
            settlement.bank_transfer = {**(settlement.bank_transfer or {}), "completed_at": now.isoformat()}
            members = self.payments.in_settlement(settlement.id, COMPLETED)
            for payment in members:
                apply_status(payment, SETTLED, f"Included in settlement {settlement.settlement_id}", actor)
        else:
            reason = failure_reason or "Bank transfer failed"
            apply_status(settlement, SETTLEMENT_FAILED, reason, actor)
            settlement.bank_transfer = {**(settlement.bank_transfer or {}), "failure_reason": reason}
            members = []

        self.db.commit()

        settlement_counter.labels(status=new_status).inc()
        if members:
            payment_transition_counter.labels(status=SETTLED).inc(len(members))
        if not succeeded:
            bank_transfer_failures_counter.inc()
        log_settlement_event(settlement.settlement_id, settlement.merchant_id, new_status, settled_payments=len(members))
        self._audit(
            f"settlement_{new_status}",
            settlement,
            actor,
            {"failure_reason": settlement.bank_transfer.get("failure_reason"), "settled_payments": len(members)},
            severity="info" if succeeded else "warning",
        )
        return settlement

    def reconcile_settlement(
        self,
        settlement_id: str,
        actual_amount: float,
        reconciled_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Compare the amount the bank actually moved against the net amount.

        Only completed settlements can be reconciled, and only once; a
        discrepancy beyond 0.01 is recorded for manual follow-up.
        """
        if actual_amount is None or not math.isfinite(actual_amount):
            raise ValidationError("actual_amount must be a number", {"actual_amount": actual_amount})

        settlement = self.settlements.get_for_update(settlement_id)
        if settlement is None:
            raise NotFoundError("Settlement", settlement_id)
        if settlement.status != SETTLEMENT_COMPLETED:
            raise InsufficientStateError(
                "Can only reconcile completed settlements",
                {"current": settlement.status},
            )

        ensure_reconciliation_transition(settlement.reconciliation_status, RECONCILIATION_IN_PROGRESS)
        settlement.reconciliation_status = RECONCILIATION_IN_PROGRESS
        self.db.flush()

        result = reconcile_amounts(settlement.net_amount, actual_amount, reconciled_by, utcnow(), notes)
        ensure_reconciliation_transition(RECONCILIATION_IN_PROGRESS, result.status)
        settlement.reconciliation_status = result.status
        settlement.reconciliation = {
            "status": result.status,
            "expected_amount": result.expected_amount,
            "actual_amount": result.actual_amount,
            "discrepancy": result.discrepancy,
            "notes": result.notes,
            "reconciled_by": result.reconciled_by,
            "reconciled_at": result.reconciled_at.isoformat(),
        }
        self.db.commit()

        reconciliation_counter.labels(status=result.status).inc()
        log_settlement_event(
            settlement.settlement_id,
            settlement.merchant_id,
            "reconciled",
            reconciliation_status=result.status,
            discrepancy=result.discrepancy,
        )
        self._audit(
            "settlement_reconciled",
            settlement,
            reconciled_by,
            settlement.reconciliation,
            severity="warning" if result.status == RECONCILIATION_DISCREPANCY else "info",
        )
        return {"settlement": settlement, "reconciliation": settlement.reconciliation}

    def get_settlement(self, settlement_id: str) -> Settlement:
        settlement = self.settlements.get(settlement_id)
        if settlement is None:
            raise NotFoundError("Settlement", settlement_id)
        return settlement

    def list_settlements(self, filters: SettlementFilters, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        page, limit = clamp_pagination(page, limit)
        items, total = self.settlements.list(filters, page, limit)
        return {
            "settlements": items,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        }

    def get_reconciliation_report(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Summary, per-merchant net totals and open discrepancies over completed settlements"""
        completed = self.settlements.completed_between(start_date, end_date)

        by_merchant: Dict[str, Dict[str, Any]] = {}
        for settlement in completed:
            entry = by_merchant.setdefault(
                settlement.merchant_id,
                {
                    "merchant_id": settlement.merchant_id,
                    "merchant_name": settlement.merchant.business_name if settlement.merchant else None,
                    "count": 0,
                    "total_net": 0.0,
                    "transactions": 0,
                },
            )
            entry["count"] += 1
            entry["total_net"] = round_money(entry["total_net"] + settlement.net_amount)
            entry["transactions"] += settlement.transaction_count

        return {
            "summary": {
                "total_settlements": len(completed),
                "total_gross": round_money(sum(s.gross_amount for s in completed)),
                "total_fees": round_money(sum(s.total_fees for s in completed)),
                "total_net": round_money(sum(s.net_amount for s in completed)),
                "total_transactions": sum(s.transaction_count for s in completed),
                "reconciled_count": sum(
                    1 for s in completed if s.reconciliation_status == RECONCILIATION_COMPLETED
                ),
            },
            "by_merchant": sorted(by_merchant.values(), key=lambda entry: -entry["total_net"]),
            "discrepancies": [
                {
                    "settlement_id": s.settlement_id,
                    "merchant_id": s.merchant_id,
                    "net_amount": s.net_amount,
                    "reconciliation": s.reconciliation,
                }
                for s in completed
                if s.reconciliation_status == RECONCILIATION_DISCREPANCY
            ],
            "generated_at": utcnow().isoformat(),
        }

    def run_daily_settlement_batch(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Create and start a settlement for every merchant with payments completed yesterday.

        Each merchant reports its own outcome; the returned completion ids
        must be handed to the completion worker.
        """
        period_start, period_end = previous_day_bounds(now)
        results = []

        for merchant_id in self.payments.merchants_with_settleable(period_start, period_end):
            try:
                settlement = self.create_settlement_batch(merchant_id, period_start, period_end, actor="system")
                if settlement is None:
                    continue
                settlement, completion_id = self.process_settlement(settlement.id, actor="system")
                results.append(
                    {
                        "merchant_id": merchant_id,
                        "success": True,
                        "settlement_id": settlement.settlement_id,
                        "amount": settlement.net_amount,
                        "completion_id": completion_id,
                    }
                )

            except (DomainException, SQLAlchemyError) as e:
                self.db.rollback()
                logger.exception("Daily settlement failed for merchant", extra={"merchant_id": merchant_id})
                results.append({"merchant_id": merchant_id, "success": False, "error": str(e)})

        logger.info(
            f"Daily settlement batch completed. Processed {len(results)} merchants.",
            extra={"period_start": period_start.isoformat(), "period_end": period_end.isoformat()},
        )
        return results

    def _audit(
        self,
        action: str,
        settlement: Settlement,
        actor: Optional[str],
        metadata: Dict[str, Any],
        severity: str = "info",
    ) -> None:
        if self.audit is None:
            return
        self.audit.record(
            AuditEvent(
                action=action,
                category="settlement",
                severity=severity,
                resource_type="settlement",
                resource_id=settlement.settlement_id,
                actor=actor,
                metadata=metadata,
            )
        )
