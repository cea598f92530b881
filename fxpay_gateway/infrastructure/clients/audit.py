"""Audit sink: structured audit log plus optional webhook delivery with exponential backoff"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Set

import httpx

from fxpay_gateway.config import settings
from fxpay_gateway.infrastructure.observability.metrics import (
    audit_webhook_failure_counter,
    audit_webhook_latency_histogram,
)
from fxpay_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    """Single auditable action"""

    action: str
    category: str
    severity: str = "info"  # info | warning | critical
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    actor: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = utcnow().isoformat()
        return payload


class AuditSink:
    """
    Fire-and-forget recorder for audit events.

    Every event is written to the "audit" logger. When a webhook URL is
    configured the event is also delivered in a background task; delivery
    failures are logged and never reach the caller.
    """

    def __init__(self, webhook_url: str | None = None):
        self.webhook_url = webhook_url if webhook_url is not None else settings.audit_webhook_url
        self.max_retries = settings.webhook_max_retries
        self.backoff_base = settings.webhook_backoff_base
        self._tasks: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        """Loop that receives deliveries recorded from worker threads"""
        self._loop = loop

    def record(self, event: AuditEvent) -> None:
        payload = event.to_payload()
        logging.getLogger("audit").info(event.action, extra={"audit": payload})

        if not self.webhook_url:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Sync endpoints run in a threadpool
            if self._loop is None or self._loop.is_closed():
                logger.warning("No event loop, audit webhook skipped", extra={"action": event.action})
                return
            asyncio.run_coroutine_threadsafe(self._deliver(payload), self._loop)
            return

        task = loop.create_task(self._deliver(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (used on shutdown)"""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _deliver(self, payload: Dict[str, Any]) -> None:
        try:
            await self.send_event(payload)
        except (httpx.HTTPStatusError, httpx.RequestError) as e:
            logger.warning(f"Audit webhook delivery failed: {e}", extra={"action": payload["action"]})

    async def send_event(self, payload: Dict[str, Any]) -> None:
        """
        Send an audit event to the webhook with retry logic.

        Retry strategy:
        - Exponential backoff: 1s, 2s, 4s, 8s, 16s (base^attempt)
        - Retries on 5xx errors and network failures
        - Tracks latency histogram and failure counter
        """
        attempt = 0
        async with httpx.AsyncClient() as client:
            while attempt < self.max_retries:
                try:
                    with audit_webhook_latency_histogram.time():
                        response = await client.post(
                            self.webhook_url,
                            json=payload,
                            timeout=10.0,
                        )
                        response.raise_for_status()
                        return  # Success

                except (httpx.HTTPStatusError, httpx.RequestError):
                    attempt += 1
                    audit_webhook_failure_counter.inc()

                    if attempt >= self.max_retries:
                        # Final failure after all retries
                        raise

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)
