"""Background completion of payment executions and settlement transfers"""

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fxpay_gateway.config import Settings, settings
from fxpay_gateway.domain.exceptions import DomainException
from fxpay_gateway.infrastructure.clients.audit import AuditSink
from fxpay_gateway.infrastructure.clients.bank import BankTransferClient
from fxpay_gateway.infrastructure.database.repositories import CompletionRepository
from fxpay_gateway.services.payments import PAYMENT_EXECUTION, finalize_execution
from fxpay_gateway.services.settlements import SETTLEMENT_TRANSFER, SettlementBatcher

logger = logging.getLogger(__name__)


class CompletionWorker:
    """
    Drives durable completion intents to their final state.

    Each run opens its own session. An intent stays pending until its handler
    succeeds or it runs out of attempts, so the recovery sweep can redeliver
    anything interrupted by a crash or restart.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        bank_client: BankTransferClient,
        audit: Optional[AuditSink] = None,
        config: Settings = settings,
    ):
        self.session_factory = session_factory
        self.bank_client = bank_client
        self.audit = audit
        self.config = config

    async def run(self, completion_id: str, delay: bool = True) -> bool:
        """Process one intent; returns True once it is done"""
        db = self.session_factory()
        try:
            completions = CompletionRepository(db)
            completion = completions.get(completion_id)
            if completion is None or completion.status != "pending":
                return False

            if delay:
                await asyncio.sleep(self._delay_for(completion.kind))

            completions.record_attempt(completion)
            db.commit()

            try:
                await self._dispatch(db, completion.kind, completion.target_id)
            except (DomainException, SQLAlchemyError) as e:
                db.rollback()
                logger.exception(
                    "Completion attempt failed",
                    extra={"completion_id": completion_id, "kind": completion.kind, "attempts": completion.attempts},
                )
                completion = completions.get(completion_id)
                completions.mark_failed(completion, str(e), self.config.completion_max_attempts)
                db.commit()
                return False

            completion = completions.get(completion_id)
            completions.mark_done(completion)
            db.commit()
            return True
        finally:
            db.close()

    async def drain_pending(self) -> int:
        """Redeliver every pending intent that still has attempts left"""
        db = self.session_factory()
        try:
            pending_ids = [c.id for c in CompletionRepository(db).pending(self.config.completion_max_attempts)]
        finally:
            db.close()

        done = 0
        for completion_id in pending_ids:
            if await self.run(completion_id, delay=False):
                done += 1
        if pending_ids:
            logger.info("Recovered pending completions", extra={"pending": len(pending_ids), "done": done})
        return done

    async def _dispatch(self, db: Session, kind: str, target_id: str) -> None:
        if kind == PAYMENT_EXECUTION:
            finalize_execution(db, target_id, self.audit)
        elif kind == SETTLEMENT_TRANSFER:
            await SettlementBatcher(db, self.audit, self.config).execute_transfer(target_id, self.bank_client)
        else:
            raise ValueError(f"Unknown completion kind: {kind}")

    def _delay_for(self, kind: str) -> float:
        if kind == SETTLEMENT_TRANSFER:
            return self.config.settlement_transfer_delay_seconds
        return self.config.payment_execution_delay_seconds
