"""
Payment Service (Domain Logic).

Initiates mobile money collections for fee applications, applies gateway
status reports to payment attempts and settles the covered fees.
Initiation is idempotent per client key; settlement is idempotent per
reference id.
"""

import logging
import math
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coop_backend.app.core.config import settings
from coop_backend.app.core.exceptions import (
    AmountMismatchError,
    PaymentConflictError,
    PaymentGatewayError,
    ResourceNotFoundError,
)
from coop_backend.app.domain.payments.state_machine import attempt_status_for, transition
from coop_backend.app.models.fee_application import FeeApplication
from coop_backend.app.models.fee_enums import FeeApplicationStatus
from coop_backend.app.models.payment_attempt import PaymentAttempt, PaymentAttemptFee
from coop_backend.app.models.payment_enums import (
    IN_FLIGHT_ATTEMPT_STATUSES,
    PaymentAttemptStatus,
    PaymentType,
    ProviderStatus,
)
from coop_backend.app.schemas.payment import PaymentInitiateRequest
from coop_backend.app.services.audit import AuditAction, log_event
from coop_backend.app.services.momo_gateway import GatewayTransactionStatus, PaymentGateway

logger = logging.getLogger(__name__)


@dataclass
class InitiationResult:
    attempt: PaymentAttempt
    fees: List[FeeApplication] = field(default_factory=list)
    replayed: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_external_id(payment_type: PaymentType, user_id: int, fee_ids: Sequence[int]) -> str:
    """External reference shown in the gateway's transaction records."""
    if payment_type == PaymentType.BULK:
        return f"bulk_fees_user_{user_id}_{int(time.time())}"
    if fee_ids:
        return f"fee_{fee_ids[0]}_user_{user_id}"
    return f"payment_user_{user_id}_{int(time.time())}"


class PaymentService:

    @staticmethod
    async def find_by_idempotency_key(db: AsyncSession, key: str) -> Optional[PaymentAttempt]:
        result = await db.execute(select(PaymentAttempt).where(PaymentAttempt.idempotency_key == key))
        return result.scalar_one_or_none()

    @staticmethod
    async def find_by_reference(
        db: AsyncSession, reference_id: str, user_id: Optional[int] = None
    ) -> Optional[PaymentAttempt]:
        query = select(PaymentAttempt).where(PaymentAttempt.reference_id == reference_id)
        if user_id is not None:
            query = query.where(PaymentAttempt.user_id == user_id)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    def _replay(attempt: PaymentAttempt, user_id: int) -> InitiationResult:
        if attempt.user_id != user_id:
            raise PaymentConflictError("Idempotency key already used")

        logger.info("Replaying payment attempt %s for idempotency key %s", attempt.id, attempt.idempotency_key)
        if attempt.status == PaymentAttemptStatus.FAILED and attempt.reference_id is None:
            raise PaymentGatewayError(attempt.failure_reason or "Failed to initiate payment")
        if attempt.status == PaymentAttemptStatus.INITIATING:
            raise PaymentConflictError(
                "Payment initiation is still in progress",
                details={"idempotency_key": attempt.idempotency_key},
            )

        fees = [link.fee_application for link in attempt.fees]
        return InitiationResult(attempt=attempt, fees=fees, replayed=True)

    @staticmethod
    async def _in_flight_references(db: AsyncSession, fee_ids: List[int]) -> List[str]:
        """Reference ids of unsettled attempts covering any of ``fee_ids``."""
        result = await db.execute(
            select(PaymentAttempt.reference_id)
            .join(PaymentAttemptFee, PaymentAttemptFee.attempt_id == PaymentAttempt.id)
            .where(
                PaymentAttemptFee.fee_application_id.in_(fee_ids),
                PaymentAttempt.status.in_(IN_FLIGHT_ATTEMPT_STATUSES),
            )
            .distinct()
        )
        return list(result.scalars().all())

    @staticmethod
    def _pending_conflict(pending_references: List[str]) -> PaymentConflictError:
        return PaymentConflictError(
            "Payments are already pending for some of these fees",
            details={"pending_payments": pending_references},
        )

    @staticmethod
    async def _load_payable_fees(
        db: AsyncSession, user_id: int, fee_ids: List[int], amount: Decimal
    ) -> List[FeeApplication]:
        # Row locks serialise initiations for the same fees until the
        # attempt is committed (no-op on SQLite)
        result = await db.execute(
            select(FeeApplication)
            .where(
                FeeApplication.id.in_(fee_ids),
                FeeApplication.user_id == user_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        by_id = {fee.id: fee for fee in result.scalars().all()}

        if len(by_id) != len(fee_ids):
            raise ResourceNotFoundError(
                "FeeApplication",
                message="One or more fee applications not found or not authorized",
            )
        fees = [by_id[fee_id] for fee_id in fee_ids]

        settled = [fee.id for fee in fees if not fee.is_outstanding]
        if settled:
            paid = [fee.id for fee in fees if fee.status == FeeApplicationStatus.PAID]
            message = "Some fees have already been paid" if paid else "Some fees are no longer payable"
            raise PaymentConflictError(message, details={"fee_application_ids": settled})

        pending_references = await PaymentService._in_flight_references(db, fee_ids)
        if pending_references:
            raise PaymentService._pending_conflict(pending_references)

        total = sum((Decimal(fee.amount) for fee in fees), Decimal("0"))
        if abs(total - amount) > Decimal(str(settings.amount_tolerance)):
            raise AmountMismatchError(expected=total, provided=amount)

        return fees

    @staticmethod
    async def initiate_payment(
        db: AsyncSession,
        gateway: PaymentGateway,
        user_id: int,
        request: PaymentInitiateRequest,
        idempotency_key: Optional[str] = None,
        actor_username: Optional[str] = None,
    ) -> InitiationResult:
        """
        Initiate a mobile money collection.

        Flow:
        1. Idempotency replay (same key -> same attempt, no new gateway call)
        2. Fee checks (ownership, not paid, nothing in flight, amount matches)
        3. Persist attempt as INITIATING
        4. Call the gateway
        5. PENDING with reference id, or FAILED and raise PaymentGatewayError
        """
        key = idempotency_key or request.idempotency_key or str(uuid.uuid4())

        # 1. Idempotency
        existing = await PaymentService.find_by_idempotency_key(db, key)
        if existing:
            return PaymentService._replay(existing, user_id)

        # 2. Fee checks
        fees: List[FeeApplication] = []
        if request.fee_application_ids:
            fees = await PaymentService._load_payable_fees(
                db, user_id, request.fee_application_ids, request.amount
            )

        # 3. Persist before calling out
        attempt = PaymentAttempt(
            idempotency_key=key,
            user_id=user_id,
            external_id=build_external_id(request.payment_type, user_id, request.fee_application_ids),
            payment_type=request.payment_type,
            amount=request.amount,
            currency=settings.momo_currency,
            phone_number=request.phone_number,
            description=request.description,
            status=PaymentAttemptStatus.INITIATING,
            status_checks=0,
        )
        attempt.fees = [
            PaymentAttemptFee(fee_application=fee, amount=fee.amount, in_flight=True)
            for fee in fees
        ]
        db.add(attempt)
        try:
            await db.commit()
        except IntegrityError:
            # Lost a race: same key, or the same fees under another key
            await db.rollback()
            winner = await PaymentService.find_by_idempotency_key(db, key)
            if winner is not None:
                return PaymentService._replay(winner, user_id)
            pending_references = []
            if request.fee_application_ids:
                pending_references = await PaymentService._in_flight_references(
                    db, request.fee_application_ids
                )
            if pending_references:
                logger.warning("Concurrent initiation blocked for fees %s", request.fee_application_ids)
                raise PaymentService._pending_conflict(pending_references)
            raise

        # 4. Gateway
        try:
            accepted = await gateway.request_to_pay(
                amount=request.amount,
                phone_number=request.phone_number,
                description=request.description,
                external_id=attempt.external_id,
            )
        except PaymentGatewayError as e:
            transition(
                attempt,
                PaymentAttemptStatus.FAILED,
                provider_status=ProviderStatus.FAILED.value,
                reason=e.message,
            )
            await db.commit()
            logger.warning("Payment attempt %s failed at initiation: %s", attempt.id, e.message)
            await log_event(
                db=db,
                action=AuditAction.PAYMENT_INITIATION_FAILED,
                actor_id=user_id,
                actor_username=actor_username,
                target_user_id=user_id,
                metadata={"attempt_id": attempt.id, "reason": e.message},
            )
            raise

        # 5. Pending
        attempt.reference_id = accepted.reference_id
        attempt.external_id = accepted.external_id
        transition(attempt, PaymentAttemptStatus.PENDING, provider_status=ProviderStatus.PENDING.value)
        await db.commit()

        await log_event(
            db=db,
            action=AuditAction.PAYMENT_INITIATED,
            actor_id=user_id,
            actor_username=actor_username,
            target_user_id=user_id,
            metadata={
                "attempt_id": attempt.id,
                "reference_id": attempt.reference_id,
                "amount": str(attempt.amount),
                "payment_type": attempt.payment_type.value,
                "fee_application_ids": [fee.id for fee in fees],
            },
        )

        return InitiationResult(attempt=attempt, fees=fees)

    @staticmethod
    async def apply_gateway_status(
        db: AsyncSession,
        attempt: PaymentAttempt,
        report: GatewayTransactionStatus,
        count_check: bool = True,
        callback_data: Optional[dict] = None,
    ) -> bool:
        """
        Apply a gateway status report to ``attempt`` and commit.

        A SUCCESSFUL report marks every covered fee paid. Reports that
        arrive after the attempt settled are ignored, apart from a success
        for an attempt reconciliation had expired.

        Returns:
            True if the attempt reached a terminal state because of this report
        """
        if count_check:
            attempt.status_checks = (attempt.status_checks or 0) + 1
            attempt.last_checked_at = _utcnow()

        target = attempt_status_for(report.status)
        moved = transition(
            attempt,
            target,
            provider_status=report.status,
            reason=report.reason if target == PaymentAttemptStatus.FAILED else None,
        )

        if moved:
            if report.financial_transaction_id:
                attempt.financial_transaction_id = report.financial_transaction_id
            if callback_data is not None:
                attempt.callback_data = callback_data
            if target == PaymentAttemptStatus.SUCCESSFUL:
                PaymentService._settle_fees(attempt)

        await db.commit()

        if moved:
            await log_event(
                db=db,
                action=(
                    AuditAction.PAYMENT_SUCCEEDED
                    if target == PaymentAttemptStatus.SUCCESSFUL
                    else AuditAction.PAYMENT_FAILED
                ),
                target_user_id=attempt.user_id,
                metadata={
                    "attempt_id": attempt.id,
                    "reference_id": attempt.reference_id,
                    "provider_status": report.status,
                    "reason": report.reason,
                },
            )
            await db.refresh(attempt)

        return moved

    @staticmethod
    def _settle_fees(attempt: PaymentAttempt) -> None:
        now = _utcnow()
        attempt.paid_at = now
        for link in attempt.fees:
            if link.fee_application.mark_paid():
                logger.info(
                    "Fee application %s paid by attempt %s",
                    link.fee_application_id, attempt.id,
                )
            else:
                # Settled by another attempt while this one was expired
                logger.warning(
                    "Fee application %s was already paid when attempt %s settled",
                    link.fee_application_id, attempt.id,
                )

    @staticmethod
    async def expire_attempt(db: AsyncSession, attempt: PaymentAttempt, reason: str) -> bool:
        """Give up on an attempt the payer never confirmed."""
        moved = transition(
            attempt,
            PaymentAttemptStatus.FAILED,
            provider_status=ProviderStatus.TIMEOUT.value,
            reason=reason,
        )
        if moved:
            attempt.expired_at = _utcnow()
        await db.commit()
        if moved:
            await log_event(
                db=db,
                action=AuditAction.PAYMENT_FAILED,
                target_user_id=attempt.user_id,
                metadata={"attempt_id": attempt.id, "reference_id": attempt.reference_id, "reason": reason},
            )
        return moved

    @staticmethod
    async def check_status(
        db: AsyncSession,
        gateway: PaymentGateway,
        user_id: int,
        reference_id: str,
    ) -> PaymentAttempt:
        """
        Current state of a member's payment.

        Settled attempts answer from the database; pending ones ask the gateway.
        """
        attempt = await PaymentService.find_by_reference(db, reference_id, user_id=user_id)
        if attempt is None:
            raise ResourceNotFoundError("Payment", reference_id, message="Payment not found")

        if attempt.is_terminal:
            return attempt

        report = await gateway.get_payment_status(reference_id)
        await PaymentService.apply_gateway_status(db, attempt, report)
        return attempt

    @staticmethod
    async def handle_callback(
        db: AsyncSession,
        gateway: PaymentGateway,
        reference_id: str,
        status: str,
        financial_transaction_id: Optional[str] = None,
        reason: Optional[str] = None,
        raw: Optional[dict] = None,
    ) -> PaymentAttempt:
        """
        Apply a settlement notification pushed by the gateway.

        The callback URL is public, so the pushed status is only a hint:
        the status applied is the one the gateway reports for the
        reference when asked directly.
        """
        attempt = await PaymentService.find_by_reference(db, reference_id)
        if attempt is None:
            logger.error("MoMo callback for unknown payment: reference_id=%s", reference_id)
            raise ResourceNotFoundError("Payment", reference_id, message="Payment not found")

        claimed = (status or ProviderStatus.PENDING.value).upper()
        await log_event(
            db=db,
            action=AuditAction.PAYMENT_CALLBACK_RECEIVED,
            target_user_id=attempt.user_id,
            metadata={"reference_id": reference_id, "status": claimed},
        )

        if attempt.is_terminal and not attempt.expired_locally:
            logger.info("MoMo callback for settled payment ignored: reference_id=%s", reference_id)
            return attempt

        report = await gateway.get_payment_status(reference_id)
        if report.status == claimed:
            report = replace(
                report,
                financial_transaction_id=report.financial_transaction_id or financial_transaction_id,
                reason=report.reason or reason,
            )
        else:
            logger.warning(
                "MoMo callback status %s not confirmed for %s, gateway reports %s",
                claimed, reference_id, report.status,
            )

        await PaymentService.apply_gateway_status(
            db, attempt, report, count_check=False, callback_data=raw
        )
        logger.info("MoMo callback processed: reference_id=%s status=%s", reference_id, report.status)
        return attempt

    @staticmethod
    async def get_history(
        db: AsyncSession, user_id: int, page: int = 1, per_page: int = 10
    ) -> Tuple[Sequence[PaymentAttempt], int, int]:
        """
        A member's payment attempts, newest first.

        Returns:
            (attempts on the page, total count, last page number)
        """
        total = await db.scalar(
            select(func.count()).select_from(PaymentAttempt).where(PaymentAttempt.user_id == user_id)
        )
        last_page = max(1, math.ceil(total / per_page))

        result = await db.execute(
            select(PaymentAttempt)
            .where(PaymentAttempt.user_id == user_id)
            .order_by(PaymentAttempt.created_at.desc(), PaymentAttempt.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return result.scalars().all(), total, last_page
