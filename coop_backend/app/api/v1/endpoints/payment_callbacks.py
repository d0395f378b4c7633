"""
MoMo Callback Endpoint.

MTN calls back to X-Callback-Url once a request-to-pay settles. The
endpoint is unauthenticated, so a callback only prompts a status check
with the gateway; it never settles a payment on its own word and never
creates one.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from coop_backend.app.core.exceptions import PaymentGatewayError, PaymentValidationError
from coop_backend.app.db.session import get_db
from coop_backend.app.domain.payments.payment_service import PaymentService
from coop_backend.app.schemas.payment import CallbackAck, MomoCallbackPayload
from coop_backend.app.services.momo_gateway import PaymentGateway, get_payment_gateway, reason_text
from coop_backend.app.services.reconciliation import RECONCILE_TASK, record_dead_letter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments/momo", tags=["Payments - Callbacks"])


@router.api_route("/callback", methods=["PUT", "POST"], response_model=CallbackAck)
async def momo_callback(
    payload: MomoCallbackPayload,
    x_reference_id: Optional[str] = Header(default=None, alias="X-Reference-Id"),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    logger.info("MoMo callback received: %s", payload.model_dump(exclude_none=True))

    reference_id = payload.referenceId or x_reference_id
    if not reference_id:
        raise PaymentValidationError("Missing reference ID")

    try:
        await PaymentService.handle_callback(
            db,
            gateway,
            reference_id=reference_id,
            status=payload.status,
            financial_transaction_id=payload.financialTransactionId,
            reason=reason_text(payload.reason),
            raw=payload.model_dump(),
        )
    except PaymentGatewayError as e:
        # Could not confirm; leave it for an admin retry
        attempt = await PaymentService.find_by_reference(db, reference_id)
        await record_dead_letter(
            db,
            RECONCILE_TASK,
            e.message,
            payload={"attempt_id": attempt.id, "reference_id": reference_id, "source": "callback"},
            attempt=attempt,
        )
        raise
    return CallbackAck()
