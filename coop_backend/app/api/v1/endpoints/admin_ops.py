"""
Admin Operations API Endpoints.

Dead Letter Queue inspection and retry for failed reconciliation tasks.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from coop_backend.app.core.guards import require_admin
from coop_backend.app.db.session import get_db
from coop_backend.app.models.dlq import DeadLetterQueue, DLQStatus
from coop_backend.app.schemas.payment import DLQItemResponse
from coop_backend.app.services.audit import log_event, AuditAction
from coop_backend.app.services.momo_gateway import PaymentGateway, get_payment_gateway
from coop_backend.app.services.reconciliation import retry_dead_letter

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.get("/dlq", response_model=List[DLQItemResponse])
async def list_dlq_items(
    status: Optional[DLQStatus] = Query(None),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    query = select(DeadLetterQueue).order_by(desc(DeadLetterQueue.created_at), desc(DeadLetterQueue.id))
    if status:
        query = query.where(DeadLetterQueue.status == status)
    result = await db.execute(query)
    return result.scalars().all()


@router.post("/dlq/{dlq_id}/retry", response_model=DLQItemResponse)
async def retry_dlq_item(
    dlq_id: int = Path(..., description="DLQ Item ID"),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Retry a failed task from the Dead Letter Queue.
    """
    result = await db.execute(select(DeadLetterQueue).where(DeadLetterQueue.id == dlq_id))
    item = result.scalar_one_or_none()

    if not item:
        raise HTTPException(status_code=404, detail="DLQ item not found")

    if not item.is_retryable:
        raise HTTPException(status_code=409, detail=f"DLQ item already {item.status.value.lower()}")

    await log_event(
        db=db,
        action=AuditAction.DLQ_RETRY_REQUESTED,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub"),
        metadata={"dlq_id": item.id, "task_name": item.task_name},
    )

    return await retry_dead_letter(db, gateway, item)
