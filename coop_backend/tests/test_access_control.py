"""
Integration tests for access control.

Tests token validation, the real-time account check and role guards.
"""

from datetime import timedelta

import pytest

from coop_backend.app.core.jwt import create_access_token
from coop_backend.app.models.enums import UserRole
from coop_backend.app.models.user import User

# Note: Client and DB setup are in conftest.py


# TEST 1: Missing and invalid tokens
@pytest.mark.asyncio
async def test_missing_token_is_rejected(client):
    response = await client.get("/v1/member/fees/outstanding")

    assert response.status_code in (401, 403)
    assert "error_code" in response.json()


@pytest.mark.asyncio
async def test_invalid_token_is_rejected(client):
    response = await client.get(
        "/v1/member/fees/outstanding",
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert response.status_code == 401
    data = response.json()
    assert data["error_code"] == "ERR_UNAUTHORIZED"
    assert data["message"] == "Could not validate credentials"


@pytest.mark.asyncio
async def test_expired_token_is_rejected(client, member):
    token = create_access_token(
        data={"sub": member.phone, "user_id": member.id, "role": "MEMBER"},
        expires_delta=timedelta(minutes=-5),
    )

    response = await client.get("/v1/member/fees/outstanding", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_token_for_unknown_user_is_rejected(client):
    token = create_access_token(data={"sub": "0770000000", "user_id": 4242, "role": "MEMBER"})

    response = await client.get("/v1/member/fees/outstanding", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["message"] == "User not authenticated"


# TEST 2: Deactivated accounts lose access immediately
@pytest.mark.asyncio
async def test_inactive_member_loses_access(client, db_session, member, member_headers):
    response = await client.get("/v1/member/fees/outstanding", headers=member_headers)
    assert response.status_code == 200

    member.is_active = False
    await db_session.commit()

    response = await client.get("/v1/member/fees/outstanding", headers=member_headers)
    assert response.status_code == 403
    assert response.json()["message"] == "User account is inactive"


# TEST 3: Role guards
@pytest.mark.asyncio
@pytest.mark.parametrize("role", [UserRole.MEMBER, UserRole.UNIT_LEADER, UserRole.ZONE_LEADER, UserRole.ADMIN])
async def test_every_role_can_pay_fees(client, db_session, role):
    user = User(phone="0781000001", display_name="Leader", role=role, is_active=True)
    db_session.add(user)
    await db_session.commit()
    token = create_access_token(data={"sub": user.phone, "user_id": user.id, "role": role.value})

    response = await client.get("/v1/member/fees/outstanding", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_unknown_role_is_forbidden(client, member):
    token = create_access_token(data={"sub": member.phone, "user_id": member.id, "role": "TREASURER"})

    response = await client.get("/v1/member/fees/outstanding", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 403
    assert response.json()["message"] == "Invalid role in token"


@pytest.mark.asyncio
async def test_role_guards_work(client, admin_headers, member_headers):
    """
    Role guards should enforce role-based access.
    """
    # Admin can access admin endpoints
    response = await client.get("/v1/admin/ops/dlq", headers=admin_headers)
    assert response.status_code == 200

    # Members cannot
    response = await client.get("/v1/admin/ops/dlq", headers=member_headers)
    assert response.status_code == 403
    assert response.json()["error_code"] == "ERR_FORBIDDEN"


# TEST 4: Error Response Consistency
@pytest.mark.asyncio
async def test_error_responses_are_consistent(client, member_headers):
    """
    All error responses should follow consistent format with error_code.
    """
    # Domain error
    response = await client.post(
        "/v1/member/payments/check-status",
        json={"reference_id": "missing"},
        headers=member_headers,
    )
    assert response.status_code == 404
    data = response.json()
    assert data["success"] is False
    assert "error_code" in data
    assert "message" in data

    # Validation error
    response = await client.post("/v1/member/payments/check-status", json={}, headers=member_headers)
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_VALIDATION"
