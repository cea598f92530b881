"""Periodic sweeps, rate refresh and the daily settlement run"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from fxpay_gateway.config import Settings, settings
from fxpay_gateway.infrastructure.clients.audit import AuditSink
from fxpay_gateway.infrastructure.clients.rates import UpstreamRateClient
from fxpay_gateway.services.completions import CompletionWorker
from fxpay_gateway.services.fraud import VelocityTracker
from fxpay_gateway.services.idempotency import IdempotencyGuard
from fxpay_gateway.services.rates import RateCache, RateResolver
from fxpay_gateway.services.settlements import SettlementBatcher
from fxpay_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

DAILY_SETTLEMENT_HOUR = 2  # UTC


def seconds_until(hour: int, now: datetime) -> float:
    """Seconds from now until the next occurrence of hour:00"""
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class MaintenanceScheduler:
    """
    Owns the background loops started in the application lifespan.

    None of the loops share state with request handling beyond the
    thread-safe stores, and each loop survives a failed iteration.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        rate_cache: RateCache,
        velocity: VelocityTracker,
        idempotency: IdempotencyGuard,
        worker: CompletionWorker,
        audit: Optional[AuditSink] = None,
        upstream: Optional[UpstreamRateClient] = None,
        config: Settings = settings,
    ):
        self.session_factory = session_factory
        self.rate_cache = rate_cache
        self.velocity = velocity
        self.idempotency = idempotency
        self.worker = worker
        self.audit = audit
        self.upstream = upstream
        self.config = config
        self._tasks: List[asyncio.Task] = []

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._every(self.config.sweep_interval_seconds, self.sweep), name="sweep"),
            asyncio.create_task(
                self._every(self.config.fx_refresh_interval_seconds, self.refresh_rates), name="rate-refresh"
            ),
            asyncio.create_task(self._daily_settlements(), name="daily-settlement"),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def sweep(self) -> None:
        """Drop expired in-memory state and redeliver pending completions"""
        purged = {
            "idempotency": self.idempotency.purge_expired(),
            "velocity": self.velocity.purge_stale(),
            "rates": self.rate_cache.purge_expired(),
        }
        recovered = await self.worker.drain_pending()
        logger.info("Maintenance sweep finished", extra={"purged": purged, "recovered": recovered})

    async def refresh_rates(self) -> None:
        db = self.session_factory()
        try:
            resolver = RateResolver(db, self.rate_cache, self.audit, self.upstream, self.config)
            results = await resolver.refresh_rates()
        finally:
            db.close()
        failed = [result["base"] for result in results if not result["success"]]
        logger.info("Exchange rates refreshed", extra={"bases": len(results), "failed": failed})

    async def run_daily_settlements(self) -> None:
        results = await asyncio.to_thread(self._settle_yesterday)
        for result in results:
            if result["success"]:
                await self.worker.run(result["completion_id"])

    def _settle_yesterday(self):
        db = self.session_factory()
        try:
            return SettlementBatcher(db, self.audit, self.config).run_daily_settlement_batch()
        finally:
            db.close()

    async def _daily_settlements(self) -> None:
        while True:
            await asyncio.sleep(seconds_until(DAILY_SETTLEMENT_HOUR, utcnow()))
            await self._guarded("daily-settlement", self.run_daily_settlements)

    async def _every(self, interval_seconds: float, job) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            await self._guarded(job.__name__, job)

    async def _guarded(self, name: str, job) -> None:
        try:
            await job()
        except Exception:
            logger.exception("Background job failed", extra={"job": name})
