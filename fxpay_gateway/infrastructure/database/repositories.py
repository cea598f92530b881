"""Data access layer for merchants, payments, exchange rates and settlements"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from fxpay_gateway.domain.models import CurrencyFee, MerchantProfile, VolumeIncentive
from fxpay_gateway.infrastructure.database.models import (
    ExchangeRate,
    Merchant,
    Payment,
    PendingCompletion,
    Settlement,
)
from fxpay_gateway.utils.date_utils import utcnow

MAX_PAGE_SIZE = 100


@dataclass
class AmountStats:
    """Aggregate over payment source amounts"""

    count: int
    total: float
    mean: float
    stddev: float  # population standard deviation


@dataclass
class PaymentFilters:
    merchant_id: Optional[str] = None
    status: Optional[str] = None
    source_currency: Optional[str] = None
    target_currency: Optional[str] = None
    customer_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None


@dataclass
class SettlementFilters:
    merchant_id: Optional[str] = None
    status: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


def clamp_pagination(page: int, limit: int) -> Tuple[int, int]:
    """Page is 1-based; limit defaults to 20 and is capped at 100"""
    page = max(page or 1, 1)
    limit = min(max(limit or 20, 1), MAX_PAGE_SIZE)
    return page, limit


class MerchantRepository:
    """Repository for merchant accounts"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **fields: Any) -> Merchant:
        db_merchant = Merchant(**fields)
        self.db.add(db_merchant)
        self.db.flush()
        return db_merchant

    def get(self, merchant_id: str) -> Optional[Merchant]:
        return self.db.get(Merchant, merchant_id)

    def get_profile(self, merchant_id: str) -> Optional[MerchantProfile]:
        """Merchant as a domain object for fee calculation and screening"""
        merchant = self.get(merchant_id)
        if merchant is None:
            return None
        return to_profile(merchant)

    def increment_volume(self, merchant_id: str, amount: float) -> None:
        """Add a completed payment to the running counters in a single UPDATE"""
        self.db.execute(
            update(Merchant)
            .where(Merchant.id == merchant_id)
            .values(
                monthly_volume=Merchant.monthly_volume + amount,
                total_volume=Merchant.total_volume + amount,
                transaction_count=Merchant.transaction_count + 1,
            )
        )

    def apply_changes(self, merchant: Merchant, changes: Dict[str, Any]) -> Merchant:
        for field_name, value in changes.items():
            setattr(merchant, field_name, value)
        self.db.flush()
        return merchant


def to_profile(merchant: Merchant) -> MerchantProfile:
    return MerchantProfile(
        merchant_id=merchant.id,
        status=merchant.status,
        percentage_fee=merchant.percentage_fee,
        flat_fee=merchant.flat_fee,
        currency_fees=[
            CurrencyFee(
                currency=fee["currency"],
                percentage_fee=fee.get("percentage_fee"),
                flat_fee=fee.get("flat_fee"),
            )
            for fee in merchant.currency_fees or []
        ],
        volume_incentives=[
            VolumeIncentive(
                min_volume=tier["min_volume"],
                max_volume=tier.get("max_volume"),
                discount_percent=tier["discount_percent"],
            )
            for tier in merchant.volume_incentives or []
        ],
        monthly_volume=merchant.monthly_volume or 0.0,
        default_currency=merchant.default_currency,
    )


class PaymentRepository:
    """Repository for payments"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **fields: Any) -> Payment:
        db_payment = Payment(**fields)
        self.db.add(db_payment)
        self.db.flush()  # Get ID without committing
        return db_payment

    def get(self, payment_id: str) -> Optional[Payment]:
        """Look up by primary key or by TXN- transaction id"""
        return (
            self.db.query(Payment)
            .filter(or_(Payment.id == payment_id, Payment.transaction_id == payment_id))
            .first()
        )

    def get_for_update(self, payment_id: str) -> Optional[Payment]:
        """Row-locked lookup (no-op lock on SQLite)"""
        return (
            self.db.query(Payment)
            .filter(or_(Payment.id == payment_id, Payment.transaction_id == payment_id))
            .with_for_update()
            .first()
        )

    def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.idempotency_key == idempotency_key).first()

    def list(self, filters: PaymentFilters, page: int = 1, limit: int = 20) -> Tuple[List[Payment], int]:
        query = self.db.query(Payment)

        if filters.merchant_id:
            query = query.filter(Payment.merchant_id == filters.merchant_id)
        if filters.status:
            query = query.filter(Payment.status == filters.status)
        if filters.source_currency:
            query = query.filter(Payment.source_currency == filters.source_currency.upper())
        if filters.target_currency:
            query = query.filter(Payment.target_currency == filters.target_currency.upper())
        if filters.customer_id:
            query = query.filter(Payment.customer_id == filters.customer_id)
        if filters.start_date:
            query = query.filter(Payment.created_at >= filters.start_date)
        if filters.end_date:
            query = query.filter(Payment.created_at <= filters.end_date)
        if filters.min_amount is not None:
            query = query.filter(Payment.source_amount >= filters.min_amount)
        if filters.max_amount is not None:
            query = query.filter(Payment.source_amount <= filters.max_amount)

        total = query.count()
        items = (
            query.order_by(Payment.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def find_similar_recent(
        self,
        merchant_id: str,
        amount: float,
        currency: str,
        customer_email: Optional[str],
        since: datetime,
        exclude_statuses: Sequence[str],
        limit: int = 5,
    ) -> List[Payment]:
        """Payments matching amount, currency and customer email inside the window"""
        email_filter = (
            Payment.customer_email.is_(None) if customer_email is None else Payment.customer_email == customer_email
        )
        return (
            self.db.query(Payment)
            .filter(
                Payment.merchant_id == merchant_id,
                Payment.source_amount == amount,
                Payment.source_currency == currency,
                email_filter,
                Payment.created_at >= since,
                Payment.status.notin_(exclude_statuses),
            )
            .order_by(Payment.created_at.desc())
            .limit(limit)
            .all()
        )

    def amount_stats(self, merchant_id: str, status: str) -> AmountStats:
        """count/sum/mean/population stddev of source amounts, portable across backends"""
        count, total, mean, mean_sq = (
            self.db.query(
                func.count(Payment.id),
                func.sum(Payment.source_amount),
                func.avg(Payment.source_amount),
                func.avg(Payment.source_amount * Payment.source_amount),
            )
            .filter(Payment.merchant_id == merchant_id, Payment.status == status)
            .one()
        )
        if not count:
            return AmountStats(count=0, total=0.0, mean=0.0, stddev=0.0)

        mean = float(mean)
        variance = max(float(mean_sq) - mean * mean, 0.0)
        return AmountStats(count=count, total=float(total), mean=mean, stddev=math.sqrt(variance))

    def find_settleable(self, merchant_id: str, period_start: datetime, period_end: datetime) -> List[Payment]:
        """Completed, unsettled payments completed inside the period"""
        return (
            self.db.query(Payment)
            .filter(
                Payment.merchant_id == merchant_id,
                Payment.status == "completed",
                Payment.settlement_id.is_(None),
                Payment.completed_at >= period_start,
                Payment.completed_at <= period_end,
            )
            .order_by(Payment.created_at)
            .all()
        )

    def claim_for_settlement(self, payment_ids: List[str], settlement_pk: str) -> List[Payment]:
        """
        Tag payments with a settlement in one conditional UPDATE.

        Rows already claimed by a concurrent batch (or no longer completed)
        are skipped; the payments actually claimed are returned.
        """
        if not payment_ids:
            return []
        self.db.execute(
            update(Payment)
            .where(
                Payment.id.in_(payment_ids),
                Payment.settlement_id.is_(None),
                Payment.status == "completed",
            )
            .values(settlement_id=settlement_pk)
            .execution_options(synchronize_session=False)
        )
        self.db.expire_all()
        return (
            self.db.query(Payment)
            .filter(Payment.settlement_id == settlement_pk)
            .order_by(Payment.created_at)
            .all()
        )

    def merchants_with_settleable(self, period_start: datetime, period_end: datetime) -> List[str]:
        rows = (
            self.db.query(Payment.merchant_id)
            .filter(
                Payment.status == "completed",
                Payment.settlement_id.is_(None),
                Payment.completed_at >= period_start,
                Payment.completed_at <= period_end,
            )
            .distinct()
            .all()
        )
        return [row[0] for row in rows]

    def in_settlement(self, settlement_pk: str, status: str) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.settlement_id == settlement_pk, Payment.status == status)
            .all()
        )

    def analytics(
        self,
        merchant_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Totals plus breakdowns by status and by source currency"""
        base = self.db.query(Payment).filter(Payment.merchant_id == merchant_id)
        if start_date:
            base = base.filter(Payment.created_at >= start_date)
        if end_date:
            base = base.filter(Payment.created_at <= end_date)

        total_count, total_volume, total_fees, avg_amount = base.with_entities(
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.source_amount), 0.0),
            func.coalesce(func.sum(Payment.total_fee), 0.0),
            func.coalesce(func.avg(Payment.source_amount), 0.0),
        ).one()
        completed = base.filter(Payment.status == "completed").count()

        by_status = (
            base.with_entities(Payment.status, func.count(Payment.id), func.sum(Payment.source_amount))
            .group_by(Payment.status)
            .order_by(func.count(Payment.id).desc())
            .all()
        )
        by_currency = (
            base.with_entities(Payment.source_currency, func.count(Payment.id), func.sum(Payment.source_amount))
            .group_by(Payment.source_currency)
            .order_by(func.sum(Payment.source_amount).desc())
            .all()
        )

        return {
            "summary": {
                "total_count": total_count,
                "total_volume": float(total_volume),
                "total_fees": float(total_fees),
                "avg_amount": float(avg_amount),
                "success_rate": completed / total_count if total_count else 0.0,
            },
            "by_status": [{"status": s, "count": c, "volume": float(v or 0)} for s, c, v in by_status],
            "by_currency": [{"currency": cur, "count": c, "volume": float(v or 0)} for cur, c, v in by_currency],
        }

    def fraud_stats(self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None) -> Dict[str, Any]:
        query = self.db.query(Payment)
        if start_date:
            query = query.filter(Payment.created_at >= start_date)
        if end_date:
            query = query.filter(Payment.created_at <= end_date)

        high_risk = query.filter(Payment.risk_score >= 50).count()
        blocked = query.filter(Payment.error_code == "FRAUD_DETECTED").count()

        # Flags live in a JSON list, so the distribution is counted in Python
        distribution: Dict[str, int] = {}
        for (flags,) in query.with_entities(Payment.fraud_flags).all():
            for flag in flags or []:
                distribution[flag["type"]] = distribution.get(flag["type"], 0) + 1

        return {
            "high_risk_transactions": high_risk,
            "blocked_transactions": blocked,
            "flag_distribution": [
                {"type": flag_type, "count": count}
                for flag_type, count in sorted(distribution.items(), key=lambda item: -item[1])
            ],
        }


class ExchangeRateRepository:
    """Repository for stored exchange rate quotes"""

    def __init__(self, db: Session):
        self.db = db

    def get_current_rate(self, base_currency: str, target_currency: str) -> Optional[ExchangeRate]:
        """Most recent active quote for the pair"""
        return (
            self.db.query(ExchangeRate)
            .filter(
                ExchangeRate.base_currency == base_currency.upper(),
                ExchangeRate.target_currency == target_currency.upper(),
                ExchangeRate.status == "active",
            )
            .order_by(ExchangeRate.fetched_at.desc())
            .first()
        )

    def latest_quote(self, base_currency: str, target_currency: str) -> Optional[ExchangeRate]:
        """Most recent quote for the pair regardless of status"""
        return (
            self.db.query(ExchangeRate)
            .filter(
                ExchangeRate.base_currency == base_currency.upper(),
                ExchangeRate.target_currency == target_currency.upper(),
            )
            .order_by(ExchangeRate.fetched_at.desc())
            .first()
        )

    def active_for_base(self, base_currency: str) -> List[ExchangeRate]:
        return (
            self.db.query(ExchangeRate)
            .filter(ExchangeRate.base_currency == base_currency.upper(), ExchangeRate.status == "active")
            .order_by(ExchangeRate.target_currency)
            .all()
        )

    def recent_for_base(self, base_currency: str, limit: int = 30) -> List[ExchangeRate]:
        return (
            self.db.query(ExchangeRate)
            .filter(ExchangeRate.base_currency == base_currency.upper(), ExchangeRate.status == "active")
            .order_by(ExchangeRate.fetched_at.desc())
            .limit(limit)
            .all()
        )

    def expire_active(self, base_currency: str) -> int:
        result = self.db.execute(
            update(ExchangeRate)
            .where(ExchangeRate.base_currency == base_currency.upper(), ExchangeRate.status == "active")
            .values(status="expired")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def add_all(self, quotes: List[ExchangeRate]) -> None:
        self.db.add_all(quotes)
        self.db.flush()

    def history(self, base_currency: str, target_currency: str, since: datetime) -> List[ExchangeRate]:
        return (
            self.db.query(ExchangeRate)
            .filter(
                ExchangeRate.base_currency == base_currency.upper(),
                ExchangeRate.target_currency == target_currency.upper(),
                ExchangeRate.fetched_at >= since,
            )
            .order_by(ExchangeRate.fetched_at.desc())
            .all()
        )


class SettlementRepository:
    """Repository for settlements"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **fields: Any) -> Settlement:
        db_settlement = Settlement(**fields)
        self.db.add(db_settlement)
        self.db.flush()
        return db_settlement

    def get(self, settlement_id: str) -> Optional[Settlement]:
        """Look up by primary key or by STL- settlement id"""
        return (
            self.db.query(Settlement)
            .filter(or_(Settlement.id == settlement_id, Settlement.settlement_id == settlement_id))
            .first()
        )

    def get_for_update(self, settlement_id: str) -> Optional[Settlement]:
        return (
            self.db.query(Settlement)
            .filter(or_(Settlement.id == settlement_id, Settlement.settlement_id == settlement_id))
            .with_for_update()
            .first()
        )

    def list(self, filters: SettlementFilters, page: int = 1, limit: int = 20) -> Tuple[List[Settlement], int]:
        query = self.db.query(Settlement)
        if filters.merchant_id:
            query = query.filter(Settlement.merchant_id == filters.merchant_id)
        if filters.status:
            query = query.filter(Settlement.status == filters.status)
        if filters.start_date:
            query = query.filter(Settlement.created_at >= filters.start_date)
        if filters.end_date:
            query = query.filter(Settlement.created_at <= filters.end_date)

        total = query.count()
        items = (
            query.order_by(Settlement.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def completed_between(self, start_date: Optional[datetime], end_date: Optional[datetime]) -> List[Settlement]:
        query = self.db.query(Settlement).filter(Settlement.status == "completed")
        if start_date:
            query = query.filter(Settlement.completed_at >= start_date)
        if end_date:
            query = query.filter(Settlement.completed_at <= end_date)
        return query.all()


class CompletionRepository:
    """Repository for durable asynchronous completion intents"""

    def __init__(self, db: Session):
        self.db = db

    def enqueue(self, kind: str, target_id: str) -> PendingCompletion:
        completion = PendingCompletion(kind=kind, target_id=target_id)
        self.db.add(completion)
        self.db.flush()
        return completion

    def get(self, completion_id: str) -> Optional[PendingCompletion]:
        return self.db.get(PendingCompletion, completion_id)

    def pending(self, max_attempts: int, limit: int = 100) -> List[PendingCompletion]:
        return (
            self.db.query(PendingCompletion)
            .filter(PendingCompletion.status == "pending", PendingCompletion.attempts < max_attempts)
            .order_by(PendingCompletion.created_at)
            .limit(limit)
            .all()
        )

    def record_attempt(self, completion: PendingCompletion) -> None:
        completion.attempts += 1
        completion.last_attempt_at = utcnow()

    def mark_done(self, completion: PendingCompletion) -> None:
        completion.status = "done"

    def mark_failed(self, completion: PendingCompletion, error: str, max_attempts: int) -> None:
        """Keep the intent pending for the recovery sweep until attempts run out"""
        completion.last_error = error
        if completion.attempts >= max_attempts:
            completion.status = "failed"
