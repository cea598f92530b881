"""Dependency injection for FastAPI endpoints"""

from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from fxpay_gateway.config import settings
from fxpay_gateway.infrastructure.clients.audit import AuditSink
from fxpay_gateway.infrastructure.clients.bank import BankTransferClient
from fxpay_gateway.infrastructure.clients.rates import UpstreamRateClient
from fxpay_gateway.infrastructure.database.session import SessionLocal, get_db
from fxpay_gateway.services.completions import CompletionWorker
from fxpay_gateway.services.fraud import FraudScoringEngine, VelocityTracker
from fxpay_gateway.services.idempotency import IdempotencyGuard
from fxpay_gateway.services.merchants import MerchantDirectory
from fxpay_gateway.services.payments import PaymentPipeline
from fxpay_gateway.services.rates import RateCache, RateResolver
from fxpay_gateway.services.settlements import SettlementBatcher


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_actor(x_actor_id: Optional[str] = Header(None)) -> Optional[str]:
    """Caller identity; authentication happens upstream of this service"""
    return x_actor_id


def get_client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# Process-wide shared state


@lru_cache
def get_rate_cache() -> RateCache:
    return RateCache(settings.rate_cache_ttl_seconds)


@lru_cache
def get_velocity_tracker() -> VelocityTracker:
    return VelocityTracker(settings.velocity_window_seconds)


@lru_cache
def get_idempotency_guard() -> IdempotencyGuard:
    return IdempotencyGuard(settings.idempotency_ttl_seconds)


@lru_cache
def get_audit_sink() -> AuditSink:
    return AuditSink()


def get_session_factory() -> Callable[[], Session]:
    """Session factory for work that outlives the request"""
    return SessionLocal


def get_bank_client() -> BankTransferClient:
    """Provide bank payout client instance"""
    return BankTransferClient()


def get_upstream_rate_client() -> UpstreamRateClient:
    return UpstreamRateClient()


# Per-request services


def get_completion_worker(
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    bank_client: BankTransferClient = Depends(get_bank_client),
    audit: AuditSink = Depends(get_audit_sink),
) -> CompletionWorker:
    return CompletionWorker(session_factory, bank_client, audit, settings)


def get_rate_resolver(
    db: Session = Depends(get_db),
    cache: RateCache = Depends(get_rate_cache),
    audit: AuditSink = Depends(get_audit_sink),
    upstream: UpstreamRateClient = Depends(get_upstream_rate_client),
) -> RateResolver:
    return RateResolver(db, cache, audit, upstream, settings)


def get_fraud_engine(
    db: Session = Depends(get_db),
    velocity: VelocityTracker = Depends(get_velocity_tracker),
    audit: AuditSink = Depends(get_audit_sink),
) -> FraudScoringEngine:
    return FraudScoringEngine(db, velocity, audit, settings)


def get_payment_pipeline(
    db: Session = Depends(get_db),
    rate_resolver: RateResolver = Depends(get_rate_resolver),
    fraud_engine: FraudScoringEngine = Depends(get_fraud_engine),
    audit: AuditSink = Depends(get_audit_sink),
) -> PaymentPipeline:
    return PaymentPipeline(db, rate_resolver, fraud_engine, audit, settings)


def get_settlement_batcher(
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink),
) -> SettlementBatcher:
    return SettlementBatcher(db, audit, settings)


def get_merchant_directory(
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink),
) -> MerchantDirectory:
    return MerchantDirectory(db, audit)
