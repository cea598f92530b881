"""Pytest fixtures for testing"""

from datetime import datetime, timedelta
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from fxpay_gateway.api.dependencies import (
    get_idempotency_guard,
    get_rate_cache,
    get_session_factory,
    get_velocity_tracker,
)
from fxpay_gateway.api.main import create_app
from fxpay_gateway.config import settings
from fxpay_gateway.infrastructure.database.models import Base, ExchangeRate, Merchant, Payment
from fxpay_gateway.infrastructure.database.session import get_db
from fxpay_gateway.services.fraud import FraudScoringEngine, VelocityTracker
from fxpay_gateway.services.payments import PaymentPipeline
from fxpay_gateway.services.rates import RateCache, RateResolver
from fxpay_gateway.utils.date_utils import utcnow
from fxpay_gateway.utils.identifiers import generate_transaction_id


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Mid-afternoon, outside the 02:00-05:00 unusual-hour window
AFTERNOON = datetime(2026, 3, 10, 14, 30)


class FakeClock:
    """Monotonic clock that only moves when told to"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """No artificial completion delays and no outbound HTTP in tests"""
    monkeypatch.setattr(settings, "payment_execution_delay_seconds", 0.0)
    monkeypatch.setattr(settings, "settlement_transfer_delay_seconds", 0.0)
    monkeypatch.setattr(settings, "bank_api_base", None)
    monkeypatch.setattr(settings, "audit_webhook_url", None)


@pytest.fixture(autouse=True)
def reset_shared_state():
    """Process-wide caches survive between requests, so clear them between tests"""
    yield
    get_rate_cache().clear()
    get_velocity_tracker().clear()
    get_idempotency_guard().clear()


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db: Session) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()

    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    return TestClient(app)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def merchant(db: Session) -> Merchant:
    """Active merchant on the default 2.9% + 0.30 schedule"""
    merchant = Merchant(
        business_name="Acme Imports",
        status="active",
        default_currency="EUR",
        percentage_fee=2.9,
        flat_fee=0.30,
        bank_name="First Bank",
        account_number="DE001234567890",
    )
    db.add(merchant)
    db.commit()
    return merchant


@pytest.fixture
def usd_eur_rate(db: Session) -> ExchangeRate:
    """Active USD->EUR quote at 0.92"""
    now = utcnow()
    quote = ExchangeRate(
        base_currency="USD",
        target_currency="EUR",
        rate=0.92,
        inverse_rate=1 / 0.92,
        version=1,
        fetched_at=now,
        valid_from=now,
        valid_until=now + timedelta(hours=24),
        source="api",
        status="active",
    )
    db.add(quote)
    db.commit()
    return quote


@pytest.fixture
def velocity() -> VelocityTracker:
    return VelocityTracker(settings.velocity_window_seconds)


@pytest.fixture
def pipeline(db: Session, velocity: VelocityTracker, usd_eur_rate: ExchangeRate) -> PaymentPipeline:
    """Pipeline with private caches and an afternoon local clock"""
    resolver = RateResolver(db, RateCache(settings.rate_cache_ttl_seconds))
    fraud = FraudScoringEngine(db, velocity, local_clock=lambda: AFTERNOON)
    return PaymentPipeline(db, resolver, fraud)


def make_payment(db: Session, merchant: Merchant, **overrides) -> Payment:
    """Persist a payment directly, completed yesterday unless overridden"""
    completed_at = utcnow().replace(hour=12, minute=0, second=0, microsecond=0) - timedelta(days=1)
    fields = dict(
        transaction_id=generate_transaction_id(),
        merchant_id=merchant.id,
        source_amount=100.0,
        source_currency="USD",
        target_amount=92.0,
        target_currency="EUR",
        total_fee=3.2,
        fee_currency="EUR",
        net_amount=88.8,
        status="completed",
        status_history=[],
        completed_at=completed_at,
        created_at=completed_at - timedelta(minutes=5),
    )
    fields.update(overrides)
    payment = Payment(**fields)
    db.add(payment)
    db.commit()
    return payment


@pytest.fixture
def payment_factory(db: Session):
    """make_payment bound to the test session"""

    def factory(merchant: Merchant, **overrides) -> Payment:
        return make_payment(db, merchant, **overrides)

    return factory
