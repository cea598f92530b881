"""Idempotent request handling keyed by actor, endpoint and client key"""

import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

from fxpay_gateway.domain.exceptions import ConflictError, ValidationError
from fxpay_gateway.infrastructure.cache.expiring import ExpiringStore
from fxpay_gateway.infrastructure.observability.metrics import idempotency_counter
from fxpay_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,255}$")

PROCESSING = "processing"
COMPLETED = "completed"
ERROR = "error"

PROCEED = "proceed"
REPLAY = "replay"

RATE_LIMITED = 429


def derive_key(client_key: str, actor: Optional[str], endpoint: str) -> str:
    """actor:endpoint:client_key, with anonymous callers sharing the 'anon' actor"""
    return f"{actor or 'anon'}:{endpoint}:{client_key}"


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    status: str  # processing | completed | error
    created_at: Any
    expires_at: float
    status_code: Optional[int] = None
    body: Any = None
    retryable: bool = False


@dataclass
class IdempotencyDecision:
    action: str  # proceed | replay
    record: IdempotencyRecord

    @property
    def should_replay(self) -> bool:
        return self.action == REPLAY


class IdempotencyGuard:
    """
    Deduplicates creation requests.

    begin() and complete() each run as a single atomic step on the shared
    store, so two concurrent retries of one key can never both proceed.
    Records expire after the TTL; an expired key is a brand-new request.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: ExpiringStore[IdempotencyRecord] = ExpiringStore(clock)

    def begin(self, client_key: str, actor: Optional[str], endpoint: str) -> IdempotencyDecision:
        """
        Claim a key or return the cached outcome.

        Raises:
            ValidationError: When the client key is malformed
            ConflictError: When the same key is still being processed
        """
        if not client_key or not KEY_PATTERN.match(client_key):
            raise ValidationError(
                "Idempotency key must be 1-255 characters of letters, digits, '-' or '_'",
                {"idempotency_key": client_key},
            )

        key = derive_key(client_key, actor, endpoint)

        def claim(current: Optional[IdempotencyRecord]):
            now = self._clock()
            if current is None:
                record = IdempotencyRecord(
                    key=key,
                    status=PROCESSING,
                    created_at=utcnow(),
                    expires_at=now + self.ttl_seconds,
                )
                return record, self.ttl_seconds, PROCEED

            # Existing records keep their original expiry
            remaining = current.expires_at - now
            if current.status == PROCESSING:
                return current, remaining, "conflict"
            if current.status == ERROR and current.retryable:
                return current, remaining, PROCEED
            return current, remaining, REPLAY

        outcome = self._records.mutate(key, claim)
        idempotency_counter.labels(outcome=outcome).inc()

        if outcome == "conflict":
            logger.info("Idempotent request still processing", extra={"idempotency_key": key})
            raise ConflictError(
                "A request with this idempotency key is already being processed",
                {"idempotency_key": client_key},
            )

        return IdempotencyDecision(action=outcome, record=self._records.get(key))

    def complete(self, key: str, status_code: int, body: Any) -> None:
        """
        Cache the final response for a derived key.

        Status >= 400 is stored as an error, retryable for 429 and 5xx.
        """
        if status_code >= 400:
            status = ERROR
            retryable = status_code >= 500 or status_code == RATE_LIMITED
        else:
            status = COMPLETED
            retryable = False

        def finish(current: Optional[IdempotencyRecord]):
            now = self._clock()
            if current is None:
                record = IdempotencyRecord(
                    key=key,
                    status=status,
                    created_at=utcnow(),
                    expires_at=now + self.ttl_seconds,
                    status_code=status_code,
                    body=body,
                    retryable=retryable,
                )
                return record, self.ttl_seconds, None

            record = replace(current, status=status, status_code=status_code, body=body, retryable=retryable)
            return record, current.expires_at - now, None

        self._records.mutate(key, finish)

    def get_status(self, client_key: str, actor: Optional[str], endpoint: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(derive_key(client_key, actor, endpoint))
        if record is None:
            return None
        return {
            "key": record.key,
            "status": record.status,
            "status_code": record.status_code,
            "retryable": record.retryable,
            "created_at": record.created_at.isoformat(),
            "expires_in_seconds": max(record.expires_at - self._clock(), 0.0),
        }

    def purge_expired(self) -> int:
        purged = self._records.purge_expired()
        if purged:
            logger.info("Purged expired idempotency records", extra={"purged": purged})
        return purged

    def clear(self) -> None:
        self._records.clear()
