"""
Member Payment API Endpoints.

Fee payment via MTN Mobile Money: initiation, status polling, history
and the outstanding-fee summary the payment dialogs are built from.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from coop_backend.app.core.config import settings
from coop_backend.app.core.guards import require_fee_payer
from coop_backend.app.db.session import get_db
from coop_backend.app.domain.payments.payment_service import PaymentService
from coop_backend.app.domain.payments.state_machine import client_status
from coop_backend.app.schemas.payment import (
    FeeApplicationBrief,
    FeeRuleBrief,
    OutstandingFeeItem,
    OutstandingFeesData,
    OutstandingFeesResponse,
    Pagination,
    PaymentHistoryData,
    PaymentHistoryItem,
    PaymentHistoryResponse,
    PaymentInitiateRequest,
    PaymentInitiationData,
    PaymentInitiationResponse,
    PaymentStatusData,
    PaymentStatusRequest,
    PaymentStatusResponse,
)
from coop_backend.app.services.fee_aggregation import get_outstanding_fees, summarize_outstanding
from coop_backend.app.services.momo_gateway import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/member", tags=["Member - Payments"])

HISTORY_PAGE_SIZE = 10


def _attempt_fees(attempt):
    return [FeeApplicationBrief.from_fee(link.fee_application) for link in attempt.fees]


@router.post("/payments/initiate", response_model=PaymentInitiationResponse)
async def initiate_payment(
    payload: PaymentInitiateRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    current_user: dict = Depends(require_fee_payer),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Start a mobile money collection for one or many fee applications.

    Replaying the same Idempotency-Key returns the original attempt without
    contacting the gateway again.
    """
    result = await PaymentService.initiate_payment(
        db=db,
        gateway=gateway,
        user_id=current_user["user_id"],
        request=payload,
        idempotency_key=idempotency_key,
        actor_username=current_user.get("sub"),
    )
    attempt = result.attempt
    fees = [FeeApplicationBrief.from_fee(fee) for fee in result.fees]

    return PaymentInitiationResponse(
        message="Payment already initiated" if result.replayed else "Payment initiated successfully",
        data=PaymentInitiationData(
            payment_id=attempt.id,
            reference_id=attempt.reference_id,
            idempotency_key=attempt.idempotency_key,
            amount=float(attempt.amount),
            currency=attempt.currency,
            phone_number=attempt.phone_number,
            description=attempt.description,
            status=client_status(attempt),
            payment_type=attempt.payment_type,
            fee_applications_count=len(fees),
            fee_applications=fees,
        ),
    )


@router.post("/payments/check-status", response_model=PaymentStatusResponse)
async def check_payment_status(
    payload: PaymentStatusRequest,
    current_user: dict = Depends(require_fee_payer),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Report the status of a member's payment, refreshing it from the gateway
    while it is still pending.
    """
    attempt = await PaymentService.check_status(
        db=db,
        gateway=gateway,
        user_id=current_user["user_id"],
        reference_id=payload.reference_id,
    )
    fees = _attempt_fees(attempt)

    return PaymentStatusResponse(
        data=PaymentStatusData(
            payment_id=attempt.id,
            reference_id=attempt.reference_id,
            amount=float(attempt.amount),
            currency=attempt.currency,
            status=client_status(attempt),
            phone_number=attempt.phone_number,
            description=attempt.description,
            financial_transaction_id=attempt.financial_transaction_id,
            reason=attempt.failure_reason,
            paid_at=attempt.paid_at,
            payments_count=len(fees),
            fee_applications=fees,
        )
    )


@router.get("/payments/history", response_model=PaymentHistoryResponse)
async def get_payment_history(
    page: int = Query(1, ge=1),
    current_user: dict = Depends(require_fee_payer),
    db: AsyncSession = Depends(get_db),
):
    """Member's payments, newest first, 10 per page."""
    attempts, total, last_page = await PaymentService.get_history(
        db, current_user["user_id"], page=page, per_page=HISTORY_PAGE_SIZE
    )

    return PaymentHistoryResponse(
        data=PaymentHistoryData(
            payments=[
                PaymentHistoryItem(
                    id=attempt.id,
                    reference_id=attempt.reference_id,
                    amount=float(attempt.amount),
                    currency=attempt.currency,
                    status=client_status(attempt),
                    payment_type=attempt.payment_type,
                    phone_number=attempt.phone_number,
                    description=attempt.description,
                    financial_transaction_id=attempt.financial_transaction_id,
                    paid_at=attempt.paid_at,
                    created_at=attempt.created_at,
                    fee_applications=_attempt_fees(attempt),
                )
                for attempt in attempts
            ],
            pagination=Pagination(
                current_page=page,
                last_page=last_page,
                per_page=HISTORY_PAGE_SIZE,
                total=total,
            ),
        )
    )


@router.get("/fees/outstanding", response_model=OutstandingFeesResponse)
async def list_outstanding_fees(
    current_user: dict = Depends(require_fee_payer),
    db: AsyncSession = Depends(get_db),
):
    """Outstanding fees with the count and total a bulk payment needs."""
    fees = await get_outstanding_fees(db, current_user["user_id"])
    summary = summarize_outstanding(fees, currency=settings.display_currency)

    return OutstandingFeesResponse(
        data=OutstandingFeesData(
            count=summary.count,
            total=float(summary.total),
            display_total=summary.display_total,
            currency=summary.currency,
            payable=summary.payable,
            fees=[
                OutstandingFeeItem(
                    id=fee.id,
                    amount=float(fee.amount),
                    status=fee.status.value,
                    due_date=fee.due_date,
                    fee_rule=FeeRuleBrief.model_validate(fee.fee_rule),
                )
                for fee in fees
            ],
        )
    )
