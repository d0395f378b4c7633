"""
MTN MoMo client tests against an httpx MockTransport.
"""

import json
import uuid
from decimal import Decimal

import httpx
import pytest

from coop_backend.app.core.config import Settings
from coop_backend.app.core.exceptions import PaymentGatewayError
from coop_backend.app.core.reliability import CircuitBreaker
from coop_backend.app.services.momo_gateway import (
    TOKEN_CACHE_KEY,
    MtnMomoGateway,
    format_phone_number,
    reason_text,
)

CALLBACK_URL = "https://coop.example/v1/payments/momo/callback"


class FakeMomo:
    """Records requests and answers like the MoMo sandbox."""

    def __init__(self):
        self.requests = []
        self.token_status = 200
        self.pay_status = 202
        self.pay_body = None
        self.status_body = {"status": "PENDING"}
        self.server_error = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.server_error:
            return httpx.Response(500, json={"message": "Internal error"})

        path = request.url.path
        if path == "/collection/token/":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": "token-abc", "expires_in": 3600})
        if path == "/collection/v1_0/requesttopay" and request.method == "POST":
            return httpx.Response(self.pay_status, json=self.pay_body)
        if path.startswith("/collection/v1_0/requesttopay/"):
            return httpx.Response(200, json=self.status_body)
        return httpx.Response(404)

    def paths(self):
        return [r.url.path for r in self.requests]


@pytest.fixture
def momo():
    return FakeMomo()


@pytest.fixture
def momo_settings():
    return Settings(
        momo_api_user="api-user",
        momo_api_key="api-key",
        momo_subscription_key="sub-key",
        momo_callback_url=CALLBACK_URL,
    )


@pytest.fixture
async def momo_gateway(momo, momo_settings, redis_client_session):
    client = httpx.AsyncClient(
        base_url="https://sandbox.momodeveloper.mtn.com",
        transport=httpx.MockTransport(momo),
    )
    gateway = MtnMomoGateway(
        config=momo_settings,
        http_client=client,
        cache=redis_client_session,
        circuit_breaker=CircuitBreaker(name="test_momo", failure_threshold=2, reset_timeout=60),
    )
    yield gateway
    await gateway.aclose()


@pytest.mark.parametrize("raw,expected", [
    ("0772123456", "256772123456"),
    ("772123456", "256772123456"),
    ("+256 772-123-456", "256772123456"),
    ("256772123456", "256772123456"),
])
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw, "256") == expected


def test_reason_text():
    assert reason_text(None) is None
    assert reason_text("APPROVAL_REJECTED") == "APPROVAL_REJECTED"
    assert reason_text({"code": "PAYER_NOT_FOUND", "message": "Payer not found"}) == "Payer not found"
    assert reason_text({"code": "PAYER_NOT_FOUND"}) == "PAYER_NOT_FOUND"


@pytest.mark.asyncio
async def test_request_to_pay_accepted(momo_gateway, momo):
    result = await momo_gateway.request_to_pay(
        amount=Decimal("7500.50"),
        phone_number="0772123456",
        description="Payment for 2 fees - Land Fee, Storage Fee",
        external_id="bulk_fees_user_1_1700000000",
    )

    assert uuid.UUID(result.reference_id)
    assert result.external_id == "bulk_fees_user_1_1700000000"
    assert result.status == "PENDING"

    token_request, pay_request = momo.requests
    assert token_request.headers["Authorization"].startswith("Basic ")
    assert token_request.headers["Ocp-Apim-Subscription-Key"] == "sub-key"

    assert pay_request.headers["Authorization"] == "Bearer token-abc"
    assert pay_request.headers["X-Reference-Id"] == result.reference_id
    assert pay_request.headers["X-Target-Environment"] == "sandbox"
    assert pay_request.headers["X-Callback-Url"] == CALLBACK_URL

    body = json.loads(pay_request.content)
    assert body["amount"] == "7500.50"
    assert body["currency"] == "EUR"
    assert body["payer"] == {"partyIdType": "MSISDN", "partyId": "256772123456"}
    assert body["payerMessage"] == body["payeeNote"]


@pytest.mark.asyncio
async def test_access_token_is_cached(momo_gateway, momo, redis_client_session):
    for i in range(2):
        await momo_gateway.request_to_pay(Decimal("100"), "0772123456", "Fee", f"fee_{i}_user_1")

    assert momo.paths().count("/collection/token/") == 1
    assert redis_client_session.store[TOKEN_CACHE_KEY] == "token-abc"
    assert redis_client_session.expiry[TOKEN_CACHE_KEY] == 3300


@pytest.mark.asyncio
async def test_request_to_pay_rejected(momo_gateway, momo):
    momo.pay_status = 400
    momo.pay_body = {"code": "INVALID_PHONE", "message": "Invalid phone number"}

    with pytest.raises(PaymentGatewayError) as exc_info:
        await momo_gateway.request_to_pay(Decimal("100"), "0772123456", "Fee", "fee_1_user_1")

    assert exc_info.value.message == "Failed to create payment request: Invalid phone number"
    assert exc_info.value.status_code == 502
    # A business rejection does not count against the breaker
    assert momo_gateway.circuit_breaker.failures == 0


@pytest.mark.asyncio
async def test_request_to_pay_unknown_error(momo_gateway, momo):
    momo.pay_status = 409

    with pytest.raises(PaymentGatewayError, match="Unknown error"):
        await momo_gateway.request_to_pay(Decimal("100"), "0772123456", "Fee", "fee_1_user_1")


@pytest.mark.asyncio
async def test_token_failure(momo_gateway, momo):
    momo.token_status = 401

    with pytest.raises(PaymentGatewayError, match="Failed to get access token"):
        await momo_gateway.get_access_token()


@pytest.mark.asyncio
async def test_get_payment_status(momo_gateway, momo):
    momo.status_body = {
        "amount": "100",
        "currency": "EUR",
        "externalId": "fee_1_user_1",
        "status": "successful",
        "financialTransactionId": "363440463",
        "payer": {"partyIdType": "MSISDN", "partyId": "256772123456"},
    }

    status = await momo_gateway.get_payment_status("ref-123")

    assert status.status == "SUCCESSFUL"
    assert status.financial_transaction_id == "363440463"
    assert status.external_id == "fee_1_user_1"
    assert momo.requests[-1].url.path == "/collection/v1_0/requesttopay/ref-123"


@pytest.mark.asyncio
async def test_get_payment_status_failed_reason(momo_gateway, momo):
    momo.status_body = {"status": "FAILED", "reason": {"code": "APPROVAL_REJECTED", "message": "Rejected by payer"}}

    status = await momo_gateway.get_payment_status("ref-123")

    assert status.status == "FAILED"
    assert status.reason == "Rejected by payer"


@pytest.mark.asyncio
async def test_server_errors_open_the_circuit(momo_gateway, momo):
    momo.server_error = True

    for _ in range(2):
        with pytest.raises(PaymentGatewayError, match="request failed"):
            await momo_gateway.get_access_token()
    calls_before = len(momo.requests)

    with pytest.raises(PaymentGatewayError, match="temporarily unavailable"):
        await momo_gateway.get_access_token()

    assert momo_gateway.circuit_breaker.state == "OPEN"
    assert len(momo.requests) == calls_before
