"""Payment creation, execution, refund and lookup"""

import logging
import math
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from fxpay_gateway.config import Settings, settings
from fxpay_gateway.domain.exceptions import (
    ConflictError,
    InsufficientStateError,
    NotFoundError,
    ValidationError,
)
from fxpay_gateway.domain.fees import calculate_fee
from fxpay_gateway.domain.lifecycle import (
    ACTIVE_MERCHANT,
    COMPLETED,
    FAILED,
    INITIATED,
    PROCESSING,
    REFUNDABLE_STATUSES,
    REFUNDED,
    can_refund,
)
from fxpay_gateway.domain.models import FraudAssessment, PaymentCandidate
from fxpay_gateway.infrastructure.clients.audit import AuditEvent, AuditSink
from fxpay_gateway.infrastructure.database.models import Payment
from fxpay_gateway.infrastructure.database.repositories import (
    CompletionRepository,
    MerchantRepository,
    PaymentFilters,
    PaymentRepository,
    clamp_pagination,
)
from fxpay_gateway.infrastructure.observability.logging import log_payment_created
from fxpay_gateway.infrastructure.observability.metrics import (
    payment_transition_counter,
    record_payment,
    refund_counter,
)
from fxpay_gateway.services.fraud import FraudScoringEngine
from fxpay_gateway.services.history import apply_status
from fxpay_gateway.services.rates import RateResolver
from fxpay_gateway.utils.date_utils import utcnow
from fxpay_gateway.utils.identifiers import generate_refund_id, generate_transaction_id
from fxpay_gateway.utils.money import round_money

logger = logging.getLogger(__name__)

CURRENCY_CODE = re.compile(r"^[A-Za-z]{3}$")

FRAUD_DETECTED = "FRAUD_DETECTED"
PROCESSING_ERROR = "PROCESSING_ERROR"
PAYMENT_EXECUTION = "payment_execution"


@dataclass
class PaymentRequest:
    """Inputs for a new payment"""

    merchant_id: str
    source_amount: float
    source_currency: str
    target_currency: str
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    payment_method: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None


@dataclass
class PaymentCreationResult:
    payment: Payment
    fraud: FraudAssessment
    creation_time_ms: float


def _validate_request(request: PaymentRequest) -> None:
    if not request.merchant_id:
        raise ValidationError("merchant_id is required")
    amount = request.source_amount
    if amount is None or not math.isfinite(amount) or amount <= 0:
        raise ValidationError("source_amount must be greater than zero", {"source_amount": amount})
    for name in ("source_currency", "target_currency"):
        code = getattr(request, name)
        if not code or not CURRENCY_CODE.match(code):
            raise ValidationError(f"{name} must be a 3-letter ISO currency code", {name: code})


class PaymentPipeline:
    """
    Orchestrates payment creation and lifecycle changes.

    Creation resolves the rate, computes the fee and screens for fraud before
    anything is written; a fraud block is stored as a failed payment rather
    than raised.
    """

    def __init__(
        self,
        db: Session,
        rate_resolver: RateResolver,
        fraud_engine: FraudScoringEngine,
        audit: Optional[AuditSink] = None,
        config: Settings = settings,
    ):
        self.db = db
        self.rate_resolver = rate_resolver
        self.fraud_engine = fraud_engine
        self.audit = audit
        self.config = config
        self.payments = PaymentRepository(db)
        self.merchants = MerchantRepository(db)
        self.completions = CompletionRepository(db)

    async def create_payment(
        self,
        request: PaymentRequest,
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentCreationResult:
        """
        Create a payment at initiated, or at failed when fraud screening blocks it.

        Fees are computed on the source amount and currency; the total fee is
        charged in the target currency and subtracted from the converted amount.

        Raises:
            ValidationError: Malformed amount or currency
            NotFoundError: Unknown merchant
            InsufficientStateError: Merchant is not active
            RateUnavailableError: No rate for the currency pair
            ConflictError: Idempotency key already used by another payment
        """
        start_time = time.perf_counter()
        _validate_request(request)

        merchant = self.merchants.get_profile(request.merchant_id)
        if merchant is None:
            raise NotFoundError("Merchant", request.merchant_id)
        if merchant.status != ACTIVE_MERCHANT:
            raise InsufficientStateError(
                "Merchant is not active",
                {"merchant_id": request.merchant_id, "status": merchant.status},
            )

        if idempotency_key:
            self._claim_idempotency_key(idempotency_key)

        source_currency = request.source_currency.upper()
        target_currency = request.target_currency.upper()

        fee = calculate_fee(merchant, request.source_amount, source_currency)
        quote = self.rate_resolver.resolve(source_currency, target_currency)

        target_amount = round_money(request.source_amount * quote.rate)
        net_amount = round_money(target_amount - fee.total_fee)
        transaction_id = generate_transaction_id()

        candidate = PaymentCandidate(
            transaction_id=transaction_id,
            merchant_id=merchant.merchant_id,
            source_amount=request.source_amount,
            source_currency=source_currency,
            target_currency=target_currency,
            customer_id=request.customer_id,
            customer_email=request.customer_email,
            ip_address=request.ip_address,
            rate_source=quote.provider_source or quote.source,
        )
        assessment = await self.fraud_engine.assess(candidate, merchant)

        now = utcnow()
        payment = Payment(
            transaction_id=transaction_id,
            idempotency_key=idempotency_key,
            idempotency_expiry=(
                now + timedelta(seconds=self.config.idempotency_ttl_seconds) if idempotency_key else None
            ),
            merchant_id=merchant.merchant_id,
            customer_id=request.customer_id,
            customer_email=request.customer_email,
            customer_name=request.customer_name,
            ip_address=request.ip_address,
            source_amount=request.source_amount,
            source_currency=source_currency,
            target_amount=target_amount,
            target_currency=target_currency,
            exchange_rate={
                "rate": quote.rate,
                "inverse_rate": quote.inverse_rate,
                "source": quote.source,
                "provider_source": quote.provider_source,
                "fetched_at": quote.fetched_at.isoformat() if quote.fetched_at else now.isoformat(),
                "rate_id": quote.rate_id,
            },
            percentage_fee=fee.percentage_fee,
            flat_fee=fee.flat_fee,
            fee_discount=fee.discount,
            fee_currency_override=fee.currency_override,
            total_fee=fee.total_fee,
            fee_currency=target_currency,
            net_amount=net_amount,
            status=INITIATED,
            status_history=[
                {"status": INITIATED, "timestamp": now.isoformat(), "reason": "Payment created", "actor": actor}
            ],
            payment_method=request.payment_method,
            description=request.description,
            reference=request.reference,
            payment_metadata=request.metadata,
            risk_score=assessment.risk_score,
            fraud_flags=[flag.to_dict() for flag in assessment.flags],
            initiated_at=now,
        )

        if assessment.blocked:
            apply_status(payment, FAILED, assessment.reason)
            payment.error_code = FRAUD_DETECTED
            payment.error_message = assessment.reason

        try:
            self.db.add(payment)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(
                "Payment conflicts with an existing record",
                {"idempotency_key": idempotency_key},
            ) from e
        self.db.refresh(payment)

        duration = time.perf_counter() - start_time
        record_payment(payment.status, payment.risk_score, duration)
        log_payment_created(
            payment.transaction_id,
            payment.merchant_id,
            payment.status,
            payment.risk_score,
            duration * 1000,
        )
        self._audit(
            "payment_created",
            payment,
            actor,
            {
                "status": payment.status,
                "source_amount": payment.source_amount,
                "source_currency": payment.source_currency,
                "target_amount": payment.target_amount,
                "target_currency": payment.target_currency,
                "risk_score": payment.risk_score,
            },
        )

        return PaymentCreationResult(payment=payment, fraud=assessment, creation_time_ms=duration * 1000)

    def execute_payment(self, payment_id: str, actor: Optional[str] = None):
        """
        Move an initiated payment to processing and queue its completion.

        The status change and the completion intent are committed together;
        returns (payment, completion_id).
        """
        payment = self.payments.get_for_update(payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        if payment.status != INITIATED:
            raise InsufficientStateError(
                "Payment cannot be executed in current state",
                {"current": payment.status, "requested": PROCESSING},
            )

        apply_status(payment, PROCESSING, "Payment execution started", actor)
        completion = self.completions.enqueue(PAYMENT_EXECUTION, payment.id)
        self.db.commit()

        payment_transition_counter.labels(status=PROCESSING).inc()
        self._audit("payment_executed", payment, actor, {"status": payment.status})

        return payment, completion.id

    def refund_payment(
        self,
        payment_id: str,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Record a refund against a completed or settled payment.

        The amount defaults to whatever is still refundable. A refund that
        brings total_refunded up to the source amount moves the payment to
        refunded; partial refunds leave the status unchanged.
        """
        payment = self.payments.get_for_update(payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        if payment.status not in REFUNDABLE_STATUSES:
            raise InsufficientStateError(
                "Refund not allowed for this payment",
                {"current": payment.status},
            )

        remaining = round_money(payment.source_amount - payment.total_refunded)
        if amount is not None and not math.isfinite(amount):
            raise ValidationError("Refund amount must be a finite number", {"amount": amount})
        # refund records and total_refunded share cent precision
        refund_amount = remaining if amount is None else round_money(amount)
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be greater than zero", {"amount": amount})
        if not can_refund(payment.status, payment.source_amount, payment.total_refunded, refund_amount):
            raise InsufficientStateError(
                "Refund exceeds remaining refundable amount",
                {"requested": refund_amount, "remaining": remaining},
            )

        refund = {
            "refund_id": generate_refund_id(),
            "amount": refund_amount,
            "currency": payment.source_currency,
            "reason": reason,
            "status": "pending",
            "created_at": utcnow().isoformat(),
        }
        payment.refunds = [*(payment.refunds or []), refund]
        payment.total_refunded = round_money(payment.total_refunded + refund_amount)

        full = payment.total_refunded >= payment.source_amount
        if full:
            apply_status(payment, REFUNDED, "Full refund processed", actor)

        self.db.commit()

        refund_counter.labels(kind="full" if full else "partial").inc()
        if full:
            payment_transition_counter.labels(status=REFUNDED).inc()
        self._audit(
            "payment_refunded",
            payment,
            actor,
            {
                "refund_id": refund["refund_id"],
                "refund_amount": refund_amount,
                "total_refunded": payment.total_refunded,
            },
        )

        return {"payment": payment, "refund": refund}

    def get_payment(self, payment_id: str) -> Payment:
        payment = self.payments.get(payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    def list_payments(self, filters: PaymentFilters, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        page, limit = clamp_pagination(page, limit)
        items, total = self.payments.list(filters, page, limit)
        return {
            "payments": items,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        }

    def get_payment_analytics(
        self,
        merchant_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if self.merchants.get(merchant_id) is None:
            raise NotFoundError("Merchant", merchant_id)
        return self.payments.analytics(merchant_id, start_date, end_date)

    def _claim_idempotency_key(self, idempotency_key: str) -> None:
        """
        Keys are unique while live. A payment whose key has expired gives it
        up so the key can start a brand-new request.
        """
        holder = self.payments.get_by_idempotency_key(idempotency_key)
        if holder is None:
            return
        if holder.idempotency_expiry is None or holder.idempotency_expiry > utcnow():
            raise ConflictError("Idempotency key already used", {"idempotency_key": idempotency_key})

        logger.info(
            "Releasing expired idempotency key",
            extra={"transaction_id": holder.transaction_id},
        )
        holder.idempotency_key = None
        self.db.flush()

    def _audit(self, action: str, payment: Payment, actor: Optional[str], changes: Dict[str, Any]) -> None:
        if self.audit is None:
            return
        self.audit.record(
            AuditEvent(
                action=action,
                category="payment",
                resource_type="payment",
                resource_id=payment.transaction_id,
                actor=actor,
                metadata=changes,
            )
        )


def finalize_execution(db: Session, payment_id: str, audit: Optional[AuditSink] = None) -> Optional[Payment]:
    """
    Complete a processing payment and add it to the merchant's volume.

    Runs from the completion worker and may be redelivered, so a payment no
    longer in processing is left untouched. A storage error during completion
    records the payment as failed.
    """
    payments = PaymentRepository(db)
    payment = payments.get_for_update(payment_id)
    if payment is None or payment.status != PROCESSING:
        logger.info("Skipping payment completion", extra={"payment_id": payment_id})
        return None

    try:
        apply_status(payment, COMPLETED, "Payment processed successfully")
        MerchantRepository(db).increment_volume(payment.merchant_id, payment.target_amount)
        db.commit()
        action = "payment_completed"

    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Payment completion failed", extra={"payment_id": payment_id})
        payment = payments.get_for_update(payment_id)
        apply_status(payment, FAILED, str(e))
        payment.error_code = PROCESSING_ERROR
        payment.error_message = str(e)
        db.commit()
        action = "payment_failed"

    payment_transition_counter.labels(status=payment.status).inc()
    if audit is not None:
        audit.record(
            AuditEvent(
                action=action,
                category="payment",
                resource_type="payment",
                resource_id=payment.transaction_id,
                metadata={"status": payment.status},
            )
        )
    return payment
