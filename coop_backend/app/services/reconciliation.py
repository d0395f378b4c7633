"""
Payment Reconciliation.

Settles payment attempts the member stopped polling for. Pending attempts
are re-checked with the gateway, stale ones are expired, and gateway
errors are parked in the Dead Letter Queue for an admin to retry.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coop_backend.app.core.config import settings
from coop_backend.app.core.exceptions import PaymentGatewayError
from coop_backend.app.domain.payments.payment_service import PaymentService
from coop_backend.app.models.dlq import DeadLetterQueue, DLQStatus
from coop_backend.app.models.payment_attempt import PaymentAttempt
from coop_backend.app.models.payment_enums import PaymentAttemptStatus
from coop_backend.app.services.audit import AuditAction, log_event
from coop_backend.app.services.momo_gateway import PaymentGateway

logger = logging.getLogger(__name__)

RECONCILE_TASK = "reconcile_payment"


@dataclass
class ReconciliationReport:
    checked: int = 0
    settled: int = 0
    failed: int = 0
    expired: int = 0
    errors: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


async def record_dead_letter(
    db: AsyncSession,
    task_name: str,
    error_message: str,
    payload: Optional[Dict[str, Any]] = None,
    attempt: Optional[PaymentAttempt] = None,
) -> DeadLetterQueue:
    item = DeadLetterQueue(
        task_name=task_name,
        attempt_id=attempt.id if attempt is not None else None,
        reference_id=attempt.reference_id if attempt is not None else None,
        error_message=error_message,
        payload=payload,
        status=DLQStatus.FAILED,
        retry_count=0,
    )
    db.add(item)
    await db.commit()
    await db.refresh(item)
    logger.warning("Task %s moved to DLQ (id=%s): %s", task_name, item.id, error_message)
    return item


async def _reconcile_attempt(
    db: AsyncSession,
    gateway: PaymentGateway,
    attempt: PaymentAttempt,
    report: ReconciliationReport,
) -> bool:
    """Check one attempt. Returns True when the gateway says it is still pending."""
    status = await gateway.get_payment_status(attempt.reference_id)
    moved = await PaymentService.apply_gateway_status(db, attempt, status)
    if moved:
        if attempt.status == PaymentAttemptStatus.SUCCESSFUL:
            report.settled += 1
        else:
            report.failed += 1
    return attempt.status == PaymentAttemptStatus.PENDING


async def reconcile_pending_payments(
    db: AsyncSession,
    gateway: PaymentGateway,
    batch_size: Optional[int] = None,
    expiry_minutes: Optional[int] = None,
    actor_id: Optional[int] = None,
    actor_username: Optional[str] = None,
) -> ReconciliationReport:
    """
    One reconciliation pass.

    1. Ask the gateway about every PENDING attempt (oldest first)
    2. Expire PENDING attempts older than the expiry window, but only
       those the gateway just confirmed as still pending
    3. Fail INITIATING attempts older than the window (the gateway never answered)
    """
    batch_size = batch_size or settings.reconciliation_batch_size
    expiry_minutes = expiry_minutes if expiry_minutes is not None else settings.payment_expiry_minutes
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=expiry_minutes)
    report = ReconciliationReport()
    confirmed_pending: Set[int] = set()

    result = await db.execute(
        select(PaymentAttempt)
        .where(PaymentAttempt.status == PaymentAttemptStatus.PENDING)
        .order_by(PaymentAttempt.created_at, PaymentAttempt.id)
        .limit(batch_size)
    )
    for attempt in result.scalars().all():
        report.checked += 1
        try:
            if await _reconcile_attempt(db, gateway, attempt, report):
                confirmed_pending.add(attempt.id)
        except PaymentGatewayError as e:
            report.errors += 1
            await record_dead_letter(
                db,
                RECONCILE_TASK,
                e.message,
                payload={"attempt_id": attempt.id, "reference_id": attempt.reference_id},
                attempt=attempt,
            )

    # Stale attempts, compared in SQL so naive and aware timestamps never meet
    stale = await db.execute(
        select(PaymentAttempt)
        .where(
            PaymentAttempt.status.in_([PaymentAttemptStatus.PENDING, PaymentAttemptStatus.INITIATING]),
            PaymentAttempt.created_at < cutoff,
        )
        .order_by(PaymentAttempt.id)
        .limit(batch_size)
    )
    for attempt in stale.scalars().all():
        if attempt.status == PaymentAttemptStatus.PENDING:
            # Unchecked or unreachable: the payer may have approved it
            if attempt.id not in confirmed_pending:
                continue
            reason = "Payment was not confirmed in time"
        else:
            reason = "Payment gateway did not acknowledge the request"
        if await PaymentService.expire_attempt(db, attempt, reason):
            report.expired += 1

    logger.info("Reconciliation pass finished: %s", report.as_dict())
    # Idle worker passes are not audited, manual runs always are
    if report.checked or report.expired or actor_id is not None:
        await log_event(
            db=db,
            action=AuditAction.PAYMENT_RECONCILIATION_RUN,
            actor_id=actor_id,
            actor_username=actor_username,
            metadata=report.as_dict(),
        )
    return report


async def retry_dead_letter(
    db: AsyncSession,
    gateway: PaymentGateway,
    item: DeadLetterQueue,
) -> DeadLetterQueue:
    """
    Re-run a parked reconciliation task.

    PROCESSED when the attempt could be checked (or was already settled),
    FAILED again otherwise. Attempts expired locally are checked again,
    since the payer may have approved them after all.
    """
    item.status = DLQStatus.RETRYING
    item.retry_count = (item.retry_count or 0) + 1
    item.last_retry_at = datetime.now(timezone.utc)
    await db.commit()

    if item.task_name != RECONCILE_TASK:
        item.status = DLQStatus.ARCHIVED
        await db.commit()
        logger.warning("DLQ item %s has no handler for task %s", item.id, item.task_name)
        return item

    attempt_id = item.attempt_id or (item.payload or {}).get("attempt_id")
    attempt = await db.get(PaymentAttempt, attempt_id) if attempt_id else None
    if attempt is None:
        item.status = DLQStatus.ARCHIVED
        item.error_message = "Payment attempt no longer exists"
        await db.commit()
        return item

    if not attempt.is_terminal or attempt.expired_locally:
        try:
            status = await gateway.get_payment_status(attempt.reference_id)
            await PaymentService.apply_gateway_status(db, attempt, status)
        except PaymentGatewayError as e:
            item.status = DLQStatus.FAILED
            item.error_message = e.message
            await db.commit()
            await db.refresh(item)
            return item

    item.status = DLQStatus.PROCESSED
    await db.commit()
    await db.refresh(item)
    return item


class ReconciliationWorker:
    """
    Background loop running reconciliation passes on an interval.

    Args:
        session_factory: Callable returning an AsyncSession context manager
        gateway_factory: Callable returning the PaymentGateway to use
        interval: Seconds between passes
    """

    def __init__(
        self,
        session_factory: Callable,
        gateway_factory: Callable[[], PaymentGateway],
        interval: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory
        self.interval = interval if interval is not None else settings.reconciliation_interval_seconds
        self._stopped = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> ReconciliationReport:
        async with self.session_factory() as db:
            return await reconcile_pending_payments(db, self.gateway_factory())

    async def _run(self) -> None:
        while not self._stopped.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Reconciliation pass crashed")
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("Reconciliation worker started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopped.set()
        await self._task
        self._task = None
        logger.info("Reconciliation worker stopped")
