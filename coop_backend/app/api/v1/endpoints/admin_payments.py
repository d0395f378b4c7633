"""
Admin Payment API Endpoints.

Read access to payment attempts and an on-demand reconciliation pass.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from coop_backend.app.core.guards import require_admin
from coop_backend.app.db.session import get_db
from coop_backend.app.models.payment_attempt import PaymentAttempt
from coop_backend.app.models.payment_enums import PaymentAttemptStatus
from coop_backend.app.schemas.payment import AdminPaymentAttemptResponse, ReconciliationReportResponse
from coop_backend.app.services.momo_gateway import PaymentGateway, get_payment_gateway
from coop_backend.app.services.reconciliation import reconcile_pending_payments

router = APIRouter(prefix="/admin/payments", tags=["Admin - Payments"])


@router.get("", response_model=List[AdminPaymentAttemptResponse])
async def list_payment_attempts(
    status: Optional[PaymentAttemptStatus] = Query(None),
    user_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """
    List payment attempts, newest first.
    """
    query = select(PaymentAttempt).order_by(desc(PaymentAttempt.created_at), desc(PaymentAttempt.id))
    if status:
        query = query.where(PaymentAttempt.status == status)
    if user_id:
        query = query.where(PaymentAttempt.user_id == user_id)

    result = await db.execute(query.limit(limit))
    return result.scalars().all()


@router.post("/reconcile", response_model=ReconciliationReportResponse)
async def run_reconciliation(
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Run one reconciliation pass now instead of waiting for the worker."""
    report = await reconcile_pending_payments(
        db,
        gateway,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub"),
    )
    return report.as_dict()
