"""Upstream FX provider HTTP client"""

import time
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from fxpay_gateway.config import settings
from fxpay_gateway.domain.exceptions import RateProviderError


@dataclass
class UpstreamRates:
    """Rate map for one base currency as returned by the provider"""

    base_currency: str
    rates: Dict[str, float]  # upper-case currency code -> units per 1 base
    as_of: Optional[str]
    fetch_duration_ms: float


class UpstreamRateClient:
    """Client for the public currency-api rate feed"""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.fx_api_base_url
        self.timeout = timeout or settings.fx_api_timeout_seconds

    async def fetch_rates(self, base_currency: str) -> UpstreamRates:
        """
        Fetch the latest rates for a base currency.

        Raises:
            RateProviderError: On timeout, HTTP errors, or invalid response
        """
        code = base_currency.lower()
        url = f"{self.base_url}@latest/v1/currencies/{code}.json"
        start_time = time.perf_counter()

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.get(url, headers={"Accept": "application/json"})
                response.raise_for_status()
                data = response.json()

                return UpstreamRates(
                    base_currency=base_currency.upper(),
                    rates={currency.upper(): float(rate) for currency, rate in data[code].items()},
                    as_of=data.get("date"),
                    fetch_duration_ms=(time.perf_counter() - start_time) * 1000,
                )

            except httpx.TimeoutException as e:
                raise RateProviderError(f"FX API timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise RateProviderError(f"FX API error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise RateProviderError(f"FX API unreachable: {e}") from e
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                raise RateProviderError(f"Invalid rate data from FX API: {e}") from e
