import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

import sentry_sdk
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from dotke.config import settings
from dotke.models.models import Payment
from dotke.services.booking_store import utcnow
from dotke.services.reconciler import Outcome, PaymentReconciler, TERMINAL_STATES

logger = logging.getLogger(__name__)


@dataclass
class PaymentAttempt:
    attempt_id: str
    reconciler: PaymentReconciler
    task: asyncio.Task
    started_at: datetime = field(default_factory=utcnow)

    @property
    def done(self) -> bool:
        return self.reconciler.state in TERMINAL_STATES


class AttemptRegistry:
    """In-process home of running payment attempts.

    Each attempt runs its reconciler in a background task; when it finishes
    the outcome is written to the payments ledger and, if money moved without
    a booking, queued for an operator. Finished attempts stay visible for
    ``retention`` seconds and are then dropped; the ledger keeps the record.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None, redis=None, retention: Optional[float] = None):
        self._session_factory = session_factory
        self._redis = redis
        self.retention = retention if retention is not None else settings.ATTEMPT_RETENTION_SECONDS
        self._attempts: Dict[str, PaymentAttempt] = {}

    def __len__(self) -> int:
        return len(self._attempts)

    def start(self, reconciler: PaymentReconciler) -> PaymentAttempt:
        attempt_id = uuid4().hex
        task = asyncio.create_task(self._run(attempt_id, reconciler))
        attempt = PaymentAttempt(attempt_id=attempt_id, reconciler=reconciler, task=task)
        self._attempts[attempt_id] = attempt
        logger.info(
            "payment attempt started",
            extra={
                "attempt_id": attempt_id,
                "domain_name": reconciler.request.domain_name,
                "owner_id": reconciler.request.owner_id,
                "account_reference": reconciler.request.account_reference,
            },
        )
        return attempt

    def get(self, attempt_id: str) -> Optional[PaymentAttempt]:
        return self._attempts.get(attempt_id)

    def find_pending(self, owner_id: str, domain_name: str) -> Optional[PaymentAttempt]:
        for attempt in self._attempts.values():
            req = attempt.reconciler.request
            if not attempt.done and req.owner_id == owner_id and req.domain_name == domain_name:
                return attempt
        return None

    def cancel(self, attempt_id: str, reason: str = "cancelled by user") -> Optional[PaymentAttempt]:
        attempt = self._attempts.get(attempt_id)
        if attempt is not None and not attempt.done:
            attempt.reconciler.cancel(reason)
        return attempt

    async def wait(self, attempt_id: str) -> Outcome:
        attempt = self._attempts[attempt_id]
        return await attempt.task

    async def shutdown(self) -> None:
        pending = [a for a in self._attempts.values() if not a.task.done()]
        for attempt in pending:
            attempt.reconciler.cancel("service shutting down")
        if pending:
            await asyncio.gather(*(a.task for a in pending), return_exceptions=True)

    async def _run(self, attempt_id: str, reconciler: PaymentReconciler) -> Outcome:
        outcome = await reconciler.run()
        await self._record(attempt_id, reconciler, outcome)
        asyncio.get_running_loop().call_later(self.retention, self._evict, attempt_id)
        return outcome

    def _evict(self, attempt_id: str) -> None:
        if self._attempts.pop(attempt_id, None) is not None:
            logger.debug("payment attempt evicted", extra={"attempt_id": attempt_id})

    async def _record(self, attempt_id: str, reconciler: PaymentReconciler, outcome: Outcome) -> None:
        # each sink is written independently; a failure in one never skips the others
        log_extra = {"attempt_id": attempt_id, "outcome": outcome.kind.value, "correlation_id": outcome.correlation_id}
        try:
            await self._write_ledger(attempt_id, reconciler, outcome)
        except (SQLAlchemyError, OSError):
            logger.exception("failed to write payment ledger row", extra=log_extra)

        if not outcome.requires_manual_reconciliation:
            return
        # no-op unless SENTRY_DSN initialised the client
        sentry_sdk.capture_message(f"payment_{outcome.kind.value}", level="error")
        try:
            await self._queue_for_reconciliation(attempt_id, reconciler, outcome)
        except (RedisError, OSError):
            logger.exception("failed to queue payment for manual reconciliation", extra=log_extra)

    async def _write_ledger(self, attempt_id: str, reconciler: PaymentReconciler, outcome: Outcome) -> None:
        if self._session_factory is None:
            return
        req = reconciler.request
        payment = Payment(
            domain_name=req.domain_name,
            owner_id=req.owner_id,
            amount=req.amount,
            currency=settings.CURRENCY,
            provider=reconciler.provider,
            provider_ref=req.correlation_id,
            account_reference=req.account_reference,
            payer_phone=req.payer_phone,
            status=outcome.kind.value,
            outcome_message=outcome.message[:1024],
            receipt=outcome.receipt,
            booking_id=outcome.booking.id if outcome.booking else None,
            paid_at=utcnow() if outcome.charged else None,
            meta={"attempt_id": attempt_id},
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(payment)

    async def _queue_for_reconciliation(self, attempt_id: str, reconciler: PaymentReconciler, outcome: Outcome) -> None:
        if self._redis is None:
            return
        req = reconciler.request
        entry = {
            "attempt_id": attempt_id,
            "kind": outcome.kind.value,
            "domain_name": req.domain_name,
            "owner_id": req.owner_id,
            "amount": req.amount,
            "payer_phone": req.payer_phone,
            "correlation_id": req.correlation_id,
            "account_reference": req.account_reference,
            "receipt": outcome.receipt,
            "message": outcome.message,
            "recorded_at": utcnow().isoformat(),
        }
        await self._redis.rpush(settings.MANUAL_RECONCILIATION_KEY, json.dumps(entry))


async def list_manual_reconciliation(redis, limit: int = 100) -> List[Dict]:
    raw = await redis.lrange(settings.MANUAL_RECONCILIATION_KEY, 0, limit - 1)
    return [json.loads(r) for r in raw]
