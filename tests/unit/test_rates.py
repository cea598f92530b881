"""Unit tests for exchange rate resolution, storage and refresh"""

from unittest.mock import AsyncMock

import pytest

from fxpay_gateway.config import settings
from fxpay_gateway.domain.exceptions import RateProviderError, RateUnavailableError, ValidationError
from fxpay_gateway.infrastructure.clients.rates import UpstreamRates
from fxpay_gateway.infrastructure.database.models import ExchangeRate
from fxpay_gateway.services.rates import RateCache, RateResolver


@pytest.fixture
def cache(clock) -> RateCache:
    return RateCache(ttl_seconds=3600, clock=clock)


@pytest.fixture
def resolver(db, cache) -> RateResolver:
    return RateResolver(db, cache)


def upstream_returning(rates_by_base):
    """Upstream client stub that serves a rate map per base, or raises"""
    upstream = AsyncMock()

    async def fetch_rates(base):
        outcome = rates_by_base[base]
        if isinstance(outcome, Exception):
            raise outcome
        return UpstreamRates(base_currency=base, rates=outcome, as_of="2026-03-10", fetch_duration_ms=12.0)

    upstream.fetch_rates.side_effect = fetch_rates
    return upstream


def test_identity_rate(resolver):
    quote = resolver.resolve("usd", "USD")

    assert quote.rate == 1.0
    assert quote.inverse_rate == 1.0
    assert quote.source == "identity"


def test_cache_hit(resolver, cache):
    cache.put("USD", {"EUR": 0.92})

    quote = resolver.resolve("USD", "EUR")

    assert quote.source == "cache"
    assert quote.rate == 0.92
    assert quote.inverse_rate == pytest.approx(1 / 0.92)


def test_cache_inverse_hit(resolver, cache):
    """Only EUR->USD cached, so USD->EUR is derived by inversion"""
    cache.put("EUR", {"USD": 1.25})

    quote = resolver.resolve("USD", "EUR")

    assert quote.source == "cache-inverse"
    assert quote.rate == pytest.approx(0.8)
    assert quote.inverse_rate == 1.25


def test_database_hit(resolver, usd_eur_rate):
    quote = resolver.resolve("USD", "EUR")

    assert quote.source == "database"
    assert quote.rate == 0.92
    assert quote.rate_id == usd_eur_rate.id
    assert quote.provider_source == "api"


def test_database_inverse_hit(resolver, usd_eur_rate):
    quote = resolver.resolve("EUR", "USD")

    assert quote.source == "database-inverse"
    assert quote.rate == pytest.approx(1 / 0.92)
    assert quote.inverse_rate == 0.92


def test_cache_wins_over_database(resolver, cache, usd_eur_rate):
    cache.put("USD", {"EUR": 0.93})

    assert resolver.resolve("USD", "EUR").source == "cache"


def test_expired_cache_falls_through_to_database(resolver, cache, clock, usd_eur_rate):
    cache.put("USD", {"EUR": 0.93})
    clock.advance(3600)

    quote = resolver.resolve("USD", "EUR")

    assert quote.source == "database"
    assert quote.rate == 0.92


def test_expired_quotes_are_not_used(resolver, db, usd_eur_rate):
    usd_eur_rate.status = "expired"
    db.commit()

    with pytest.raises(RateUnavailableError) as exc_info:
        resolver.resolve("USD", "EUR")

    assert exc_info.value.details == {"from": "USD", "to": "EUR"}


def test_unavailable_pair(resolver):
    with pytest.raises(RateUnavailableError):
        resolver.resolve("USD", "JPY")


def test_convert(resolver, usd_eur_rate):
    result = resolver.convert(1000.0, "usd", "eur")

    assert result["converted_amount"] == 920.0
    assert result["original_currency"] == "USD"
    assert result["target_currency"] == "EUR"
    assert result["source"] == "database"


@pytest.mark.parametrize("amount", [0, -5.0])
def test_convert_rejects_non_positive_amount(resolver, amount):
    with pytest.raises(ValidationError):
        resolver.convert(amount, "USD", "EUR")


def test_store_rates_versions_and_flags_anomalies(resolver, db, cache, usd_eur_rate):
    """0.92 -> 0.99 is a 7.6% move, above the 5% threshold"""
    result = resolver.store_rates("USD", {"EUR": 0.99, "GBP": 0.79, "XXX": 3.0, "USD": 1.0})
    db.commit()

    assert result["stored"] == 2
    assert result["anomalies"] == 1
    assert result["batch_id"].startswith("BATCH-")

    eur = db.query(ExchangeRate).filter_by(target_currency="EUR", status="active").one()
    assert eur.version == 2
    assert eur.previous_rate == 0.92
    assert eur.change_percent == pytest.approx((0.99 - 0.92) / 0.92 * 100)
    assert eur.is_anomaly is True
    assert "threshold" in eur.anomaly_reason

    gbp = db.query(ExchangeRate).filter_by(target_currency="GBP", status="active").one()
    assert gbp.version == 1
    assert gbp.change_percent is None

    db.refresh(usd_eur_rate)
    assert usd_eur_rate.status == "expired"

    assert cache.get_rate("USD", "GBP") == 0.79


def test_small_move_is_not_an_anomaly(resolver, db, usd_eur_rate):
    result = resolver.store_rates("USD", {"EUR": 0.93})
    db.commit()

    assert result["anomalies"] == 0
    eur = db.query(ExchangeRate).filter_by(target_currency="EUR", status="active").one()
    assert not eur.is_anomaly


def test_get_all_rates(resolver, db):
    resolver.store_rates("USD", {"EUR": 0.92, "GBP": 0.79})
    db.commit()

    result = resolver.get_all_rates("usd")

    assert result["base_currency"] == "USD"
    assert result["count"] == 2
    assert [r["currency"] for r in result["rates"]] == ["EUR", "GBP"]


def test_rate_history_includes_expired_quotes(resolver, db, usd_eur_rate):
    resolver.store_rates("USD", {"EUR": 0.93})
    db.commit()

    history = resolver.get_rate_history("USD", "EUR", days=30)

    assert [entry["rate"] for entry in history] == [0.93, 0.92]
    assert history[1]["status"] == "expired"


async def test_refresh_rates_stores_every_base(db, cache, monkeypatch):
    monkeypatch.setattr(settings, "fx_base_currencies", ["USD", "EUR"])
    upstream = upstream_returning({"USD": {"EUR": 0.92, "GBP": 0.79}, "EUR": {"USD": 1.087}})
    resolver = RateResolver(db, cache, upstream=upstream)

    results = await resolver.refresh_rates()

    assert [r["base"] for r in results] == ["USD", "EUR"]
    assert all(r["success"] for r in results)
    assert results[0]["stored"] == 2
    assert cache.get_rate("EUR", "USD") == 1.087
    assert db.query(ExchangeRate).filter_by(status="active").count() == 3


async def test_refresh_failure_reports_fallback(db, cache, monkeypatch, usd_eur_rate):
    """A failing base does not stop the others and reports whether stored rates exist"""
    monkeypatch.setattr(settings, "fx_base_currencies", ["USD", "GBP"])
    upstream = upstream_returning(
        {"USD": RateProviderError("FX API timeout after 10.0s"), "GBP": RateProviderError("FX API error: 503")}
    )
    resolver = RateResolver(db, cache, upstream=upstream)

    results = await resolver.refresh_rates()

    assert results[0] == {
        "base": "USD",
        "success": False,
        "error": "FX API timeout after 10.0s",
        "fallback_available": True,
    }
    assert results[1]["fallback_available"] is False

    # Stored quotes stay usable
    assert resolver.resolve("USD", "EUR").rate == 0.92


def test_fallback_rates(resolver, usd_eur_rate):
    fallback = resolver.get_fallback_rates("USD")

    assert fallback["rates"] == {"EUR": 0.92}
    assert fallback["source"] == "fallback"
    assert resolver.get_fallback_rates("JPY") is None
