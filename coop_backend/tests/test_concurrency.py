"""
Concurrency Tests.

Validates that racing payment requests are handled correctly.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from coop_backend.app.core.exceptions import PaymentConflictError, PaymentGatewayError
from coop_backend.app.domain.payments.payment_service import PaymentService
from coop_backend.app.models.payment_attempt import PaymentAttempt
from coop_backend.app.models.payment_enums import PaymentAttemptStatus, PaymentType
from coop_backend.app.schemas.payment import PaymentInitiateRequest


def land_fee_request(fee):
    return PaymentInitiateRequest(
        phone_number="0772123456",
        amount=fee.amount,
        description="Payment for Land Fee - Seasonal land use",
        fee_application_ids=[fee.id],
        payment_type=PaymentType.SINGLE,
    )


@pytest.mark.asyncio
async def test_lost_idempotency_race_replays_winner(db_session, member, member_fees, gateway, mocker):
    """
    Two requests with one key: the loser's insert hits the unique
    constraint and it answers with the winner's attempt.
    """
    winner = PaymentAttempt(
        idempotency_key="race-key-0001",
        user_id=member.id,
        reference_id="ref-winner",
        external_id=f"payment_user_{member.id}",
        payment_type=PaymentType.SINGLE,
        amount=Decimal("5000.00"),
        currency="EUR",
        phone_number="0772123456",
        description="Payment for Land Fee - Seasonal land use",
        status=PaymentAttemptStatus.PENDING,
        status_checks=0,
    )
    db_session.add(winner)
    await db_session.commit()

    # The loser checked for the key before the winner committed
    real_lookup = PaymentService.find_by_idempotency_key
    lookups = []

    async def lookup_misses_first(db, key):
        lookups.append(key)
        if len(lookups) == 1:
            return None
        return await real_lookup(db, key)

    mocker.patch.object(PaymentService, "find_by_idempotency_key", side_effect=lookup_misses_first)

    result = await PaymentService.initiate_payment(
        db=db_session,
        gateway=gateway,
        user_id=member.id,
        request=land_fee_request(member_fees[0]),
        idempotency_key="race-key-0001",
    )

    assert result.replayed is True
    assert result.attempt.reference_id == "ref-winner"
    assert lookups == ["race-key-0001", "race-key-0001"]
    assert gateway.requests == []

    attempts = (await db_session.execute(select(PaymentAttempt))).scalars().all()
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_repeated_submits_share_one_attempt(client, member_headers, member_fees, gateway):
    """Repeated submits of one dialog click collapse into one gateway call."""
    fee = member_fees[0]
    body = {
        "phone_number": "0772123456",
        "amount": "5000.00",
        "description": "Payment for Land Fee - Seasonal land use",
        "fee_application_ids": [fee.id],
    }
    headers = {**member_headers, "Idempotency-Key": "double-click-0001"}

    first = await client.post("/v1/member/payments/initiate", json=body, headers=headers)
    replays = [
        await client.post("/v1/member/payments/initiate", json=body, headers=headers)
        for _ in range(3)
    ]

    assert first.status_code == 200
    reference_id = first.json()["data"]["reference_id"]
    for response in replays:
        assert response.status_code == 200
        assert response.json()["message"] == "Payment already initiated"
        assert response.json()["data"]["reference_id"] == reference_id
    assert len(gateway.requests) == 1


@pytest.mark.asyncio
async def test_second_key_for_pending_fee_is_blocked(db_session, member, member_fees, gateway):
    await PaymentService.initiate_payment(
        db=db_session,
        gateway=gateway,
        user_id=member.id,
        request=land_fee_request(member_fees[0]),
        idempotency_key="first-key-0001",
    )

    with pytest.raises(PaymentConflictError) as exc_info:
        await PaymentService.initiate_payment(
            db=db_session,
            gateway=gateway,
            user_id=member.id,
            request=land_fee_request(member_fees[0]),
            idempotency_key="second-key-0001",
        )

    assert exc_info.value.details == {"pending_payments": ["ref-1"]}
    assert len(gateway.requests) == 1


@pytest.mark.asyncio
async def test_lost_fee_race_under_second_key_is_blocked(db_session, member, member_fees, gateway, mocker):
    """
    Two keys for one fee: the loser read "nothing in flight" before the
    winner committed, so its insert hits the in-flight guard instead.
    """
    await PaymentService.initiate_payment(
        db=db_session,
        gateway=gateway,
        user_id=member.id,
        request=land_fee_request(member_fees[0]),
        idempotency_key="winner-key-0001",
    )

    real_lookup = PaymentService._in_flight_references
    lookups = []

    async def lookup_misses_first(db, fee_ids):
        lookups.append(list(fee_ids))
        if len(lookups) == 1:
            return []
        return await real_lookup(db, fee_ids)

    mocker.patch.object(PaymentService, "_in_flight_references", side_effect=lookup_misses_first)

    with pytest.raises(PaymentConflictError) as exc_info:
        await PaymentService.initiate_payment(
            db=db_session,
            gateway=gateway,
            user_id=member.id,
            request=land_fee_request(member_fees[0]),
            idempotency_key="loser-key-0001",
        )

    assert exc_info.value.details == {"pending_payments": ["ref-1"]}
    assert len(lookups) == 2
    assert len(gateway.requests) == 1

    attempts = (await db_session.execute(select(PaymentAttempt))).scalars().all()
    assert [attempt.idempotency_key for attempt in attempts] == ["winner-key-0001"]


@pytest.mark.asyncio
async def test_settled_attempt_frees_fee_for_new_attempt(db_session, member, member_fees, gateway):
    gateway.reject_with = "Payer account not found"
    with pytest.raises(PaymentGatewayError):
        await PaymentService.initiate_payment(
            db=db_session,
            gateway=gateway,
            user_id=member.id,
            request=land_fee_request(member_fees[0]),
            idempotency_key="rejected-key-0001",
        )

    gateway.reject_with = None
    result = await PaymentService.initiate_payment(
        db=db_session,
        gateway=gateway,
        user_id=member.id,
        request=land_fee_request(member_fees[0]),
        idempotency_key="retry-key-0001",
    )

    assert result.attempt.status == PaymentAttemptStatus.PENDING
    assert [link.in_flight for link in result.attempt.fees] == [True]
    assert len(gateway.requests) == 2
