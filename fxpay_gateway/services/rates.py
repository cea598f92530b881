"""Exchange rate resolution with tiered fallback, conversion and upstream refresh"""

import logging
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fxpay_gateway.config import Settings, settings
from fxpay_gateway.domain.exceptions import RateProviderError, RateUnavailableError, ValidationError
from fxpay_gateway.domain.models import ExchangeRateQuote
from fxpay_gateway.infrastructure.cache.expiring import ExpiringStore
from fxpay_gateway.infrastructure.clients.audit import AuditEvent, AuditSink
from fxpay_gateway.infrastructure.clients.rates import UpstreamRateClient
from fxpay_gateway.infrastructure.database.models import ExchangeRate
from fxpay_gateway.infrastructure.database.repositories import ExchangeRateRepository
from fxpay_gateway.infrastructure.observability.metrics import (
    rate_anomaly_counter,
    rate_refresh_counter,
    rate_resolution_counter,
)
from fxpay_gateway.utils.date_utils import utcnow
from fxpay_gateway.utils.identifiers import generate_batch_id
from fxpay_gateway.utils.money import round_money

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = (
    "USD", "EUR", "GBP", "JPY", "CHF", "CAD", "AUD", "NZD", "CNY", "HKD",
    "SGD", "SEK", "NOK", "DKK", "KRW", "INR", "MXN", "BRL", "ZAR", "AED",
    "SAR", "THB", "MYR", "PHP", "IDR", "PLN", "CZK", "HUF", "ILS", "TRY",
)

QUOTE_VALIDITY = timedelta(hours=24)


class RateCache:
    """In-memory rate maps keyed by base currency, one timestamp per base"""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._store: ExpiringStore[Dict[str, float]] = ExpiringStore(clock)

    def put(self, base_currency: str, rates: Dict[str, float]) -> None:
        self._store.set(
            base_currency.upper(),
            {currency.upper(): rate for currency, rate in rates.items()},
            self.ttl_seconds,
        )

    def get_rate(self, base_currency: str, target_currency: str) -> Optional[float]:
        entry = self._store.get(base_currency.upper())
        if entry is None:
            return None
        return entry.get(target_currency.upper())

    def purge_expired(self) -> int:
        return self._store.purge_expired()

    def clear(self) -> None:
        self._store.clear()


class RateResolver:
    """
    Resolves currency-pair rates, stopping at the first tier that has data:

    1. identity (same currency)
    2. cache for from->to
    3. cache for to->from, inverted
    4. active stored quote for from->to
    5. active stored quote for to->from, inverted
    """

    def __init__(
        self,
        db: Session,
        cache: RateCache,
        audit: Optional[AuditSink] = None,
        upstream: Optional[UpstreamRateClient] = None,
        config: Settings = settings,
    ):
        self.db = db
        self.cache = cache
        self.audit = audit
        self.upstream = upstream
        self.config = config
        self.rates = ExchangeRateRepository(db)

    def resolve(self, from_currency: str, to_currency: str) -> ExchangeRateQuote:
        """
        Raises:
            RateUnavailableError: When no tier has a quote for the pair
        """
        start = time.perf_counter()
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()

        def elapsed_ms() -> float:
            return (time.perf_counter() - start) * 1000

        if from_currency == to_currency:
            return self._resolved(ExchangeRateQuote(1.0, 1.0, "identity", elapsed_ms()))

        cached = self.cache.get_rate(from_currency, to_currency)
        if cached:
            return self._resolved(ExchangeRateQuote(cached, 1 / cached, "cache", elapsed_ms()))

        inverse_cached = self.cache.get_rate(to_currency, from_currency)
        if inverse_cached:
            return self._resolved(
                ExchangeRateQuote(1 / inverse_cached, inverse_cached, "cache-inverse", elapsed_ms())
            )

        stored = self.rates.get_current_rate(from_currency, to_currency)
        if stored is not None:
            return self._resolved(
                ExchangeRateQuote(
                    rate=stored.rate,
                    inverse_rate=stored.inverse_rate,
                    source="database",
                    latency_ms=elapsed_ms(),
                    fetched_at=stored.fetched_at,
                    rate_id=stored.id,
                    version=stored.version,
                    provider_source=stored.source,
                )
            )

        inverse_stored = self.rates.get_current_rate(to_currency, from_currency)
        if inverse_stored is not None:
            return self._resolved(
                ExchangeRateQuote(
                    rate=inverse_stored.inverse_rate,
                    inverse_rate=inverse_stored.rate,
                    source="database-inverse",
                    latency_ms=elapsed_ms(),
                    fetched_at=inverse_stored.fetched_at,
                    rate_id=inverse_stored.id,
                    version=inverse_stored.version,
                    provider_source=inverse_stored.source,
                )
            )

        rate_resolution_counter.labels(source="unavailable").inc()
        raise RateUnavailableError(from_currency, to_currency)

    def convert(self, amount: float, from_currency: str, to_currency: str) -> Dict[str, Any]:
        if amount is None or amount <= 0:
            raise ValidationError("amount must be greater than zero", {"amount": amount})

        quote = self.resolve(from_currency, to_currency)
        return {
            "original_amount": amount,
            "original_currency": from_currency.upper(),
            "converted_amount": round_money(amount * quote.rate),
            "target_currency": to_currency.upper(),
            "rate": quote.rate,
            "inverse_rate": quote.inverse_rate,
            "rate_id": quote.rate_id,
            "source": quote.source,
            "latency_ms": quote.latency_ms,
            "timestamp": utcnow().isoformat(),
        }

    def get_all_rates(self, base_currency: str = "USD") -> Dict[str, Any]:
        quotes = self.rates.active_for_base(base_currency)
        return {
            "base_currency": base_currency.upper(),
            "rates": [
                {
                    "currency": q.target_currency,
                    "rate": q.rate,
                    "inverse_rate": q.inverse_rate,
                    "change_percent": q.change_percent,
                    "updated_at": q.fetched_at.isoformat(),
                }
                for q in quotes
            ],
            "count": len(quotes),
            "last_updated": max((q.fetched_at for q in quotes), default=None),
        }

    def get_rate_history(self, from_currency: str, to_currency: str, days: int = 30) -> List[Dict[str, Any]]:
        since = utcnow() - timedelta(days=days)
        return [
            {"rate": q.rate, "change_percent": q.change_percent, "fetched_at": q.fetched_at.isoformat(), "status": q.status}
            for q in self.rates.history(from_currency, to_currency, since)
        ]

    async def refresh_rates(self) -> List[Dict[str, Any]]:
        """
        Pull fresh rates for every configured base currency.

        Each base reports its own outcome; a provider or storage failure for
        one base never stops the others.
        """
        upstream = self.upstream or UpstreamRateClient()
        results = []

        for base in self.config.fx_base_currencies:
            base = base.upper()
            try:
                fetched = await upstream.fetch_rates(base)
                stored = self.store_rates(base, fetched.rates, source="api")
                self.db.commit()
                rate_refresh_counter.labels(base=base, outcome="success").inc()
                results.append(
                    {
                        "base": base,
                        "success": True,
                        "stored": stored["stored"],
                        "anomalies": stored["anomalies"],
                        "batch_id": stored["batch_id"],
                        "fetch_duration_ms": fetched.fetch_duration_ms,
                    }
                )

            except (RateProviderError, SQLAlchemyError) as e:
                self.db.rollback()
                rate_refresh_counter.labels(base=base, outcome="failure").inc()
                fallback = self.get_fallback_rates(base)
                logger.warning(
                    f"Rate refresh failed for {base}: {e}",
                    extra={"base": base, "fallback_available": fallback is not None},
                )
                results.append(
                    {
                        "base": base,
                        "success": False,
                        "error": str(e),
                        "fallback_available": fallback is not None,
                    }
                )

        return results

    def store_rates(self, base_currency: str, rates: Dict[str, float], source: str = "api") -> Dict[str, Any]:
        """
        Replace the active quotes for a base currency.

        Change percent and version are computed against the newest previous
        quote for the same pair; moves beyond the anomaly threshold are flagged
        and audited. The cache is repopulated with the stored rates.
        """
        base_currency = base_currency.upper()
        now = utcnow()
        batch_id = generate_batch_id(now)
        threshold = self.config.rate_anomaly_threshold_percent

        quotes: List[ExchangeRate] = []
        for target, raw_rate in rates.items():
            target = target.upper()
            if target not in SUPPORTED_CURRENCIES or target == base_currency:
                continue
            rate = float(raw_rate)
            if rate <= 0:
                continue

            quote = ExchangeRate(
                base_currency=base_currency,
                target_currency=target,
                rate=rate,
                inverse_rate=1 / rate,
                version=1,
                fetched_at=now,
                valid_from=now,
                valid_until=now + QUOTE_VALIDITY,
                source=source,
                status="active",
                batch_id=batch_id,
            )

            previous = self.rates.latest_quote(base_currency, target)
            if previous is not None:
                quote.previous_rate = previous.rate
                quote.change_percent = (rate - previous.rate) / previous.rate * 100
                quote.version = previous.version + 1
                if abs(quote.change_percent) > threshold:
                    quote.is_anomaly = True
                    quote.anomaly_reason = (
                        f"Rate changed by {quote.change_percent:.2f}% (threshold: {threshold}%)"
                    )

            quotes.append(quote)

        self.rates.expire_active(base_currency)
        if quotes:
            self.rates.add_all(quotes)

        anomalies = [q for q in quotes if q.is_anomaly]
        for quote in anomalies:
            rate_anomaly_counter.inc()
            self._audit_anomaly(quote)

        self.cache.put(base_currency, {q.target_currency: q.rate for q in quotes})

        return {"stored": len(quotes), "anomalies": len(anomalies), "batch_id": batch_id}

    def get_fallback_rates(self, base_currency: str) -> Optional[Dict[str, Any]]:
        """Most recent persisted active quotes for a base, used when the provider is down"""
        quotes = self.rates.recent_for_base(base_currency)
        if not quotes:
            return None

        rate_map: Dict[str, float] = {}
        for quote in quotes:
            rate_map.setdefault(quote.target_currency, quote.rate)

        return {"rates": rate_map, "source": "fallback", "fetched_at": quotes[0].fetched_at}

    def _resolved(self, quote: ExchangeRateQuote) -> ExchangeRateQuote:
        rate_resolution_counter.labels(source=quote.source).inc()
        return quote

    def _audit_anomaly(self, quote: ExchangeRate) -> None:
        if self.audit is None:
            return
        self.audit.record(
            AuditEvent(
                action="exchange_rate_anomaly",
                category="currency",
                severity="warning",
                resource_type="exchange_rate",
                resource_id=quote.id,
                metadata={
                    "base_currency": quote.base_currency,
                    "target_currency": quote.target_currency,
                    "change_percent": quote.change_percent,
                    "reason": quote.anomaly_reason,
                },
                tags=["fx", "anomaly"],
            )
        )
