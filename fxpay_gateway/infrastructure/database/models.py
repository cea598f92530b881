"""SQLAlchemy ORM models for merchants, payments, rates and settlements"""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

from fxpay_gateway.utils.date_utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class Merchant(Base):
    """Merchant account with fee schedule and running volume counters"""

    __tablename__ = "merchant"

    id = Column(String(36), primary_key=True, default=_uuid)
    business_name = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    default_currency = Column(String(3), nullable=False, default="USD")
    percentage_fee = Column(Float, nullable=False, default=2.9)
    flat_fee = Column(Float, nullable=False, default=0.30)
    currency_fees = Column(JSON, nullable=False, default=list)
    volume_incentives = Column(JSON, nullable=False, default=list)
    monthly_volume = Column(Float, nullable=False, default=0.0)
    total_volume = Column(Float, nullable=False, default=0.0)
    transaction_count = Column(Integer, nullable=False, default=0)
    settlement_schedule = Column(String(20), nullable=False, default="daily")
    bank_name = Column(Text, nullable=True)
    account_number = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    payments = relationship("Payment", back_populates="merchant")


class Payment(Base):
    """Currency conversion transaction; never deleted, only superseded by status entries"""

    __tablename__ = "payment"
    __table_args__ = (
        Index("ix_payment_merchant_status_created", "merchant_id", "status", "created_at"),
        Index("ix_payment_settlement_status", "settlement_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    transaction_id = Column(String(40), nullable=False, unique=True, index=True)
    idempotency_key = Column(Text, nullable=True, unique=True)  # actor:endpoint:client key
    idempotency_expiry = Column(DateTime, nullable=True)
    merchant_id = Column(String(36), ForeignKey("merchant.id"), nullable=False, index=True)

    customer_id = Column(Text, nullable=True, index=True)
    customer_email = Column(Text, nullable=True)
    customer_name = Column(Text, nullable=True)
    ip_address = Column(Text, nullable=True)

    source_amount = Column(Float, nullable=False)
    source_currency = Column(String(3), nullable=False)
    target_amount = Column(Float, nullable=False)
    target_currency = Column(String(3), nullable=False)
    exchange_rate = Column(JSON, nullable=True)  # rate, inverse_rate, source, fetched_at, rate_id

    # Fee breakdown, recorded in fee_currency
    percentage_fee = Column(Float, nullable=False, default=0.0)
    flat_fee = Column(Float, nullable=False, default=0.0)
    fee_discount = Column(Float, nullable=False, default=0.0)
    fee_currency_override = Column(String(3), nullable=True)
    total_fee = Column(Float, nullable=False, default=0.0)
    fee_currency = Column(String(3), nullable=False)
    net_amount = Column(Float, nullable=False)

    status = Column(String(20), nullable=False, default="initiated", index=True)
    status_history = Column(JSON, nullable=False, default=list)

    payment_method = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)
    reference = Column(Text, nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=True)

    risk_score = Column(Integer, nullable=False, default=0)
    fraud_flags = Column(JSON, nullable=False, default=list)

    refunds = Column(JSON, nullable=False, default=list)
    total_refunded = Column(Float, nullable=False, default=0.0)

    settlement_id = Column(String(36), ForeignKey("settlement.id"), nullable=True, index=True)

    error_code = Column(String(40), nullable=True)
    error_message = Column(Text, nullable=True)

    initiated_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    settled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    merchant = relationship("Merchant", back_populates="payments")
    settlement = relationship("Settlement", back_populates="payments")


class ExchangeRate(Base):
    """Stored quote for a currency pair; only the newest per base currency stays active"""

    __tablename__ = "exchange_rate"
    __table_args__ = (
        Index("ix_rate_pair_status", "base_currency", "target_currency", "status"),
        Index("ix_rate_pair_fetched", "base_currency", "target_currency", "fetched_at"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    base_currency = Column(String(3), nullable=False, index=True)
    target_currency = Column(String(3), nullable=False, index=True)
    rate = Column(Float, nullable=False)
    inverse_rate = Column(Float, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    fetched_at = Column(DateTime, nullable=False)
    valid_from = Column(DateTime, nullable=False)
    valid_until = Column(DateTime, nullable=True)
    source = Column(String(20), nullable=False, default="api")
    status = Column(String(20), nullable=False, default="active")
    previous_rate = Column(Float, nullable=True)
    change_percent = Column(Float, nullable=True)
    is_anomaly = Column(Boolean, nullable=False, default=False)
    anomaly_reason = Column(Text, nullable=True)
    batch_id = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Settlement(Base):
    """Batched payout of a merchant's completed payments"""

    __tablename__ = "settlement"

    id = Column(String(36), primary_key=True, default=_uuid)
    settlement_id = Column(String(40), nullable=False, unique=True, index=True)
    merchant_id = Column(String(36), ForeignKey("merchant.id"), nullable=False, index=True)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)

    gross_amount = Column(Float, nullable=False)
    total_fees = Column(Float, nullable=False)
    refund_amount = Column(Float, nullable=False, default=0.0)
    net_amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)

    transaction_count = Column(Integer, nullable=False)
    successful_transactions = Column(Integer, nullable=False, default=0)
    refunded_transactions = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default="pending", index=True)
    status_history = Column(JSON, nullable=False, default=list)

    reconciliation_status = Column(String(20), nullable=False, default="pending")
    reconciliation = Column(JSON, nullable=True)  # expected, actual, discrepancy, notes, reconciled_by/at
    bank_transfer = Column(JSON, nullable=False, default=dict)

    scheduled_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    merchant = relationship("Merchant")
    payments = relationship("Payment", back_populates="settlement", order_by="Payment.created_at")


class PendingCompletion(Base):
    """Durable intent for an asynchronous completion, re-driven until done"""

    __tablename__ = "pending_completion"

    id = Column(String(36), primary_key=True, default=_uuid)
    kind = Column(String(40), nullable=False)  # payment_execution | settlement_transfer
    target_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
