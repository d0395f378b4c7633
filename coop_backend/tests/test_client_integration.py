"""
Client Integration Tests.

Runs the payments API client and the dialog controllers against the real
application over an in-process ASGI transport.
"""

import asyncio
from decimal import Decimal

import httpx
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select

from coop_backend.app.core.jwt import create_access_token
from coop_backend.app.main import app
from coop_backend.app.models.fee_enums import FeeApplicationStatus
from coop_backend.app.models.payment_attempt import PaymentAttempt
from coop_backend.app.models.payment_enums import PaymentAttemptStatus
from coop_backend.client.api_client import PaymentApiClient, PaymentApiError
from coop_backend.client.dialogs import BulkFeePaymentDialog, DialogFee, SingleFeePaymentDialog
from coop_backend.client.poller import PaymentPhase


async def fast_sleep(seconds):
    await asyncio.sleep(0)


@pytest.fixture
async def api(member):
    token = create_access_token(data={"sub": member.phone, "user_id": member.id, "role": member.role.value})
    http_client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test/v1")
    client = PaymentApiClient(token=token, http_client=http_client)
    yield client
    await client.aclose()


async def load_fees(api):
    data = await api.outstanding_fees()
    return [DialogFee.from_api(item) for item in data["fees"]]


@pytest.mark.asyncio
async def test_outstanding_fees_feed_the_bulk_dialog(api, member_fees):
    fees = await load_fees(api)
    dialog = BulkFeePaymentDialog(api, fees, sleep=fast_sleep)

    assert dialog.renderable is True
    assert dialog.summary.count == 2
    assert dialog.amount == Decimal("7500.50")
    assert dialog.description == "Payment for 2 fees - Land Fee, Land Fee"


@pytest.mark.asyncio
async def test_bulk_dialog_pays_all_fees(api, member_fees, gateway, db_session):
    gateway.statuses = ["PENDING", "SUCCESSFUL"]
    refreshed = []
    dialog = BulkFeePaymentDialog(api, await load_fees(api), sleep=fast_sleep, on_refresh=lambda: refreshed.append(True))
    dialog.open()
    dialog.set_phone_number("0772123456")

    state = await dialog.submit()
    assert state.phase == PaymentPhase.PENDING
    assert state.reference_id == "ref-1"

    state = await dialog.wait_settled()
    assert state.phase == PaymentPhase.SUCCESSFUL
    assert dialog.close() is True
    assert refreshed == [True]

    for fee in member_fees[:2]:
        await db_session.refresh(fee)
        assert fee.status == FeeApplicationStatus.PAID

    # Nothing left, so the next bulk dialog renders nothing
    assert BulkFeePaymentDialog(api, await load_fees(api)).renderable is False


@pytest.mark.asyncio
async def test_single_dialog_reports_rejection(api, member_fees, gateway, db_session):
    gateway.statuses = ["REJECTED"]
    fee = (await load_fees(api))[0]
    dialog = SingleFeePaymentDialog(api, fee, sleep=fast_sleep)
    dialog.open()
    dialog.set_phone_number("0772123456")

    await dialog.submit()
    state = await dialog.wait_settled()

    assert state.phase == PaymentPhase.FAILED
    assert state.message == "Payment rejected. Please try again."
    attempt = (await db_session.execute(select(PaymentAttempt))).scalar_one()
    assert attempt.status == PaymentAttemptStatus.FAILED


@pytest.mark.asyncio
async def test_single_dialog_shows_server_error(api, member_fees, gateway):
    paid = member_fees[2]
    fee = DialogFee(id=paid.id, amount=paid.amount, status="pending", name="Land Fee", description="Seasonal land use")
    dialog = SingleFeePaymentDialog(api, fee, sleep=fast_sleep)
    dialog.open()
    dialog.set_phone_number("0772123456")

    state = await dialog.submit()

    assert state.phase == PaymentPhase.FAILED
    assert state.message == "Some fees have already been paid"
    assert gateway.requests == []


@pytest.mark.asyncio
async def test_gateway_rejection_reaches_dialog(api, member_fees, gateway):
    gateway.reject_with = "Failed to create payment request: Invalid phone number"
    fee = (await load_fees(api))[0]
    dialog = SingleFeePaymentDialog(api, fee, sleep=fast_sleep)
    dialog.open()
    dialog.set_phone_number("0772123456")

    state = await dialog.submit()

    assert state.phase == PaymentPhase.FAILED
    assert state.message == "Failed to create payment request: Invalid phone number"


@pytest.mark.asyncio
async def test_client_error_carries_server_message(api, member):
    with pytest.raises(PaymentApiError) as exc_info:
        await api.check_status("does-not-exist")

    assert exc_info.value.status_code == 404
    assert exc_info.value.message == "Payment not found"


@pytest.mark.asyncio
async def test_client_replays_idempotency_key(api, member_fees, gateway):
    fee = member_fees[0]
    kwargs = dict(
        phone_number="0772123456",
        amount=fee.amount,
        description="Payment for Land Fee - Seasonal land use",
        fee_application_ids=[fee.id],
        idempotency_key="dialog-key-0001",
    )

    first = await api.initiate_payment(**kwargs)
    second = await api.initiate_payment(**kwargs)

    assert first["reference_id"] == second["reference_id"]
    assert len(gateway.requests) == 1


@pytest.mark.asyncio
async def test_unreachable_service():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = PaymentApiClient(
        http_client=AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://test/v1"),
        token="token",
    )

    with pytest.raises(PaymentApiError, match="Unable to reach the payment service"):
        await client.check_status("ref-1")
    await client.aclose()
