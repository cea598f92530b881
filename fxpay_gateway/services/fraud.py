"""Fraud screening: velocity, duplicate, amount, rate and pattern checks"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from fxpay_gateway.config import Settings, settings
from fxpay_gateway.domain.lifecycle import CANCELLED, COMPLETED, FAILED
from fxpay_gateway.domain.models import FraudAssessment, FraudFlag, MerchantProfile, PaymentCandidate
from fxpay_gateway.domain.scoring import HIGH, LOW, MEDIUM, alert_severity, assess_flags
from fxpay_gateway.infrastructure.cache.expiring import ExpiringStore
from fxpay_gateway.infrastructure.clients.audit import AuditEvent, AuditSink
from fxpay_gateway.infrastructure.database.repositories import PaymentRepository
from fxpay_gateway.infrastructure.observability.metrics import fraud_flag_counter
from fxpay_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

ROUND_AMOUNT_UNIT = 100
ROUND_AMOUNT_MINIMUM = 1000
UNUSUAL_HOUR_START = 2
UNUSUAL_HOUR_END = 5
ANONYMOUS_HIGH_AMOUNT = 5000
UNUSUAL_AMOUNT_SIGMAS = 3


def local_clock_for(config: Settings) -> Callable[[], datetime]:
    offset = config.local_utc_offset_minutes
    if offset is None:
        return datetime.now
    return lambda: utcnow() + timedelta(minutes=offset)


class VelocityTracker:
    """
    Sliding-window transaction counters per key.

    Each key holds the (timestamp, amount) events of the last window. Reading
    the totals and recording the new event happen under one lock acquisition,
    so two concurrent payments for the same merchant both see each other.
    """

    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: ExpiringStore[List[Tuple[float, float]]] = ExpiringStore(clock)

    def check_and_record(self, key: str, amount: float) -> Tuple[int, float]:
        """Record an event and return (count, amount) of the window before it"""
        now = self._clock()
        cutoff = now - self.window_seconds

        def update(events: Optional[List[Tuple[float, float]]]):
            live = [event for event in events or [] if event[0] > cutoff]
            before = (len(live), sum(event_amount for _, event_amount in live))
            live.append((now, amount))
            return live, self.window_seconds, before

        return self._windows.mutate(key, update)

    def purge_stale(self) -> int:
        return self._windows.purge_expired()

    def clear(self) -> None:
        self._windows.clear()


class FraudScoringEngine:
    """Runs the independent fraud checks for a candidate payment and scores the findings"""

    def __init__(
        self,
        db: Session,
        velocity: VelocityTracker,
        audit: Optional[AuditSink] = None,
        config: Settings = settings,
        local_clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.velocity = velocity
        self.audit = audit
        self.config = config
        self.local_clock = local_clock or local_clock_for(config)
        self.payments = PaymentRepository(db)

    async def assess(self, candidate: PaymentCandidate, merchant: MerchantProfile) -> FraudAssessment:
        """
        Screen a payment before it is persisted.

        Flags are concatenated in check order (velocity, duplicate, amount,
        rate, pattern). Assessments scoring 50 or more are reported to the
        audit sink.
        """
        results = await asyncio.gather(
            self._check_velocity(candidate, merchant),
            self._check_duplicate(candidate, merchant),
            self._check_amount(candidate, merchant),
            self._check_rate(candidate),
            self._check_patterns(candidate),
        )
        flags = [flag for check_flags in results for flag in check_flags]

        assessment = assess_flags(flags, utcnow(), self.config.fraud_block_score)

        for flag in flags:
            fraud_flag_counter.labels(type=flag.type, severity=flag.severity).inc()

        if assessment.risk_score >= self.config.fraud_alert_score:
            logger.warning(
                "High-risk payment",
                extra={
                    "transaction_id": candidate.transaction_id,
                    "merchant_id": candidate.merchant_id,
                    "risk_score": assessment.risk_score,
                    "blocked": assessment.blocked,
                },
            )
            self._audit_alert(candidate, assessment)

        return assessment

    async def _check_velocity(self, candidate: PaymentCandidate, merchant: MerchantProfile) -> List[FraudFlag]:
        flags = []
        config = self.config
        amount = candidate.source_amount
        customer = candidate.customer_id or candidate.ip_address or "unknown"

        # Counters accrue every attempt, flagged or not
        merchant_count, merchant_amount = self.velocity.check_and_record(
            f"merchant:{merchant.merchant_id}:hour", amount
        )
        customer_count, _ = self.velocity.check_and_record(f"customer:{customer}:hour", amount)

        if merchant_count >= config.max_transactions_per_hour:
            flags.append(
                FraudFlag(
                    type="MERCHANT_VELOCITY_EXCEEDED",
                    message=f"Merchant exceeded {config.max_transactions_per_hour} transactions/hour",
                    severity=HIGH,
                )
            )

        if merchant_amount + amount > config.max_amount_per_hour:
            flags.append(
                FraudFlag(
                    type="MERCHANT_AMOUNT_VELOCITY",
                    message="Merchant approaching hourly amount limit",
                    severity=MEDIUM,
                )
            )

        if customer_count >= config.max_customer_transactions_per_hour:
            flags.append(
                FraudFlag(
                    type="CUSTOMER_VELOCITY_EXCEEDED",
                    message=f"Customer exceeded {config.max_customer_transactions_per_hour} transactions/hour",
                    severity=HIGH,
                )
            )

        return flags

    async def _check_duplicate(self, candidate: PaymentCandidate, merchant: MerchantProfile) -> List[FraudFlag]:
        window_minutes = self.config.duplicate_window_minutes
        similar = self.payments.find_similar_recent(
            merchant_id=merchant.merchant_id,
            amount=candidate.source_amount,
            currency=candidate.source_currency,
            customer_email=candidate.customer_email,
            since=utcnow() - timedelta(minutes=window_minutes),
            exclude_statuses=[FAILED, CANCELLED],
        )
        if not similar:
            return []

        return [
            FraudFlag(
                type="POTENTIAL_DUPLICATE",
                message=f"{len(similar)} similar transaction(s) in last {window_minutes} minutes",
                severity=MEDIUM,
                related_transactions=[payment.transaction_id for payment in similar],
            )
        ]

    async def _check_amount(self, candidate: PaymentCandidate, merchant: MerchantProfile) -> List[FraudFlag]:
        flags = []
        amount = candidate.source_amount
        limit = self.config.max_amount_per_transaction

        if amount > limit:
            flags.append(
                FraudFlag(
                    type="AMOUNT_EXCEEDS_LIMIT",
                    message=f"Transaction amount {amount} exceeds limit {limit}",
                    severity=HIGH,
                )
            )

        stats = self.payments.amount_stats(merchant.merchant_id, COMPLETED)
        if stats.count and stats.stddev > 0 and amount > stats.mean + UNUSUAL_AMOUNT_SIGMAS * stats.stddev:
            flags.append(
                FraudFlag(
                    type="UNUSUAL_AMOUNT",
                    message=f"Amount significantly higher than merchant average ({stats.mean:.2f})",
                    severity=MEDIUM,
                )
            )

        return flags

    async def _check_rate(self, candidate: PaymentCandidate) -> List[FraudFlag]:
        if candidate.rate_source != "fallback":
            return []
        return [
            FraudFlag(
                type="FALLBACK_RATE_USED",
                message="Exchange rate from fallback source",
                severity=LOW,
            )
        ]

    async def _check_patterns(self, candidate: PaymentCandidate) -> List[FraudFlag]:
        flags = []
        amount = candidate.source_amount

        if amount % ROUND_AMOUNT_UNIT == 0 and amount >= ROUND_AMOUNT_MINIMUM:
            flags.append(
                FraudFlag(type="ROUND_AMOUNT", message="Suspiciously round transaction amount", severity=LOW)
            )

        hour = self.local_clock().hour
        if UNUSUAL_HOUR_START <= hour <= UNUSUAL_HOUR_END:
            flags.append(
                FraudFlag(type="UNUSUAL_HOUR", message="Transaction at unusual hour (2-5 AM)", severity=LOW)
            )

        if not candidate.customer_id and amount > ANONYMOUS_HIGH_AMOUNT:
            flags.append(
                FraudFlag(
                    type="NEW_CUSTOMER_HIGH_AMOUNT",
                    message="Anonymous customer with high transaction amount",
                    severity=MEDIUM,
                )
            )

        return flags

    def _audit_alert(self, candidate: PaymentCandidate, assessment: FraudAssessment) -> None:
        if self.audit is None:
            return
        self.audit.record(
            AuditEvent(
                action="fraud_alert",
                category="payment",
                severity=alert_severity(assessment.risk_score, self.config.fraud_block_score),
                resource_type="payment",
                resource_id=candidate.transaction_id,
                metadata={
                    "risk_score": assessment.risk_score,
                    "flags": [flag.to_dict() for flag in assessment.flags],
                    "blocked": assessment.blocked,
                },
                tags=["fraud", "security"],
            )
        )

    def get_fraud_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        stats = self.payments.fraud_stats(start_date, end_date)
        stats["generated_at"] = utcnow().isoformat()
        return stats
