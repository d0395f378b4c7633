"""
Centralized Test Configuration.
"""

import itertools
from datetime import date, timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from coop_backend.app.main import app
from coop_backend.app.db.session import get_db, Base
from coop_backend.app.core.jwt import token_for_user
from coop_backend.app.core.redis_client import get_redis
from coop_backend.app.core.exceptions import PaymentGatewayError
from coop_backend.app.models.enums import UserRole
from coop_backend.app.models.user import User
from coop_backend.app.models.fee_rule import FeeRule
from coop_backend.app.models.fee_application import FeeApplication
from coop_backend.app.models.fee_enums import FeeApplicationStatus
from coop_backend.app.services.momo_gateway import (
    GatewayPaymentRequest,
    GatewayTransactionStatus,
    PaymentGateway,
    get_payment_gateway,
)
import coop_backend.app.core.redis_client as redis_client_module

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.expiry = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self._closed:
            return False
        self.store[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}
            self.expiry = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


class StubGateway(PaymentGateway):
    """
    In-memory payment gateway.

    ``statuses`` is consumed one entry per status check; the last entry
    repeats once the list runs out.
    """

    def __init__(self):
        self._refs = itertools.count(1)
        self.requests = []
        self.status_checks = []
        self.statuses = ["PENDING"]
        self.reject_with = None
        self.status_error = None

    async def request_to_pay(self, amount, phone_number, description, external_id):
        self.requests.append({
            "amount": amount,
            "phone_number": phone_number,
            "description": description,
            "external_id": external_id,
        })
        if self.reject_with:
            raise PaymentGatewayError(self.reject_with)
        return GatewayPaymentRequest(reference_id=f"ref-{next(self._refs)}", external_id=external_id)

    async def get_payment_status(self, reference_id):
        self.status_checks.append(reference_id)
        if self.status_error:
            raise PaymentGatewayError(self.status_error)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return GatewayTransactionStatus(
            reference_id=reference_id,
            status=status,
            financial_transaction_id="fin-001" if status == "SUCCESSFUL" else None,
            reason="APPROVAL_REJECTED" if status == "REJECTED" else None,
        )


# Redis Fixture (Session Scope)
@pytest.fixture(scope="session")
def redis_client_session():
    return MockRedis()

@pytest.fixture(scope="session", autouse=True)
def apply_overrides(redis_client_session):
    """Apply overrides once for the session.
    Global override is safer here than per-test override to avoid app state flux.
    """

    # Patch the global redis client used by the health check
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = redis_client_session

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return redis_client_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    yield

    # Restore and clear
    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client

@pytest.fixture(autouse=True)
async def setup_database(redis_client_session):
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await redis_client_session.flushdb()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

@pytest.fixture(autouse=True)
def gateway():
    """Fresh stub gateway per test, injected into every endpoint."""
    stub = StubGateway()
    app.dependency_overrides[get_payment_gateway] = lambda: stub
    yield stub
    app.dependency_overrides.pop(get_payment_gateway, None)

@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

@pytest.fixture
def session_factory():
    return TestingSessionLocal

# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


async def _create_user(db, phone, name, role):
    user = User(phone=phone, display_name=name, role=role, is_active=True)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


def auth_headers_for(user):
    return {"Authorization": f"Bearer {token_for_user(user)}"}


@pytest.fixture
async def member(db_session):
    return await _create_user(db_session, "0772000001", "Amina Member", UserRole.MEMBER)

@pytest.fixture
async def other_member(db_session):
    return await _create_user(db_session, "0772000002", "Joseph Member", UserRole.MEMBER)

@pytest.fixture
async def admin_user(db_session):
    return await _create_user(db_session, "0772000099", "Coop Admin", UserRole.ADMIN)

@pytest.fixture
def member_headers(member):
    return auth_headers_for(member)

@pytest.fixture
def other_member_headers(other_member):
    return auth_headers_for(other_member)

@pytest.fixture
def admin_headers(admin_user):
    return auth_headers_for(admin_user)

@pytest.fixture
async def fee_rule(db_session):
    rule = FeeRule(name="Land Fee", description="Seasonal land use", amount=Decimal("5000.00"))
    db_session.add(rule)
    await db_session.commit()
    await db_session.refresh(rule)
    return rule

@pytest.fixture
async def member_fees(db_session, member, fee_rule):
    """Two outstanding fees and one already paid."""
    fees = [
        FeeApplication(
            fee_rule_id=fee_rule.id,
            user_id=member.id,
            amount=Decimal("5000.00"),
            due_date=date.today() + timedelta(days=10),
            status=FeeApplicationStatus.PENDING,
        ),
        FeeApplication(
            fee_rule_id=fee_rule.id,
            user_id=member.id,
            amount=Decimal("2500.50"),
            due_date=date.today() - timedelta(days=5),
            status=FeeApplicationStatus.OVERDUE,
        ),
        FeeApplication(
            fee_rule_id=fee_rule.id,
            user_id=member.id,
            amount=Decimal("1000.00"),
            due_date=date.today() - timedelta(days=40),
            status=FeeApplicationStatus.PAID,
            paid_date=date.today() - timedelta(days=35),
        ),
    ]
    db_session.add_all(fees)
    await db_session.commit()
    for fee in fees:
        await db_session.refresh(fee)
    return fees
