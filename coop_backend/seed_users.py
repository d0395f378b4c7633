"""
Database seeding script for development data.

Creates an ADMIN, two MEMBER users and a few outstanding fees so the
payment flow can be exercised against the MoMo sandbox.
Run this script after database is set up but before first use.
"""

import asyncio
import sys
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from coop_backend.app.db.session import AsyncSessionLocal, Base, engine
from coop_backend.app.core.jwt import token_for_user
from coop_backend.app.models.user import User
from coop_backend.app.models.enums import UserRole
from coop_backend.app.models.fee_rule import FeeRule
from coop_backend.app.models.fee_application import FeeApplication
from coop_backend.app.models.fee_enums import FeeApplicationStatus, FeeFrequency, FeeRuleType
import coop_backend.app.models.payment_attempt  # noqa: F401
import coop_backend.app.models.dlq  # noqa: F401
import coop_backend.app.models.audit_log  # noqa: F401
from sqlalchemy import select


async def seed_users():
    """
    Seed initial users and fees.

    Creates:
    - 1 ADMIN user
    - 2 MEMBER users
    - Land and storage fees for the first member (one pending, one overdue)
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting seeding...")

        result = await db.execute(
            select(User).where(User.phone == "0772000099")
        )
        existing_admin = result.scalar_one_or_none()

        if existing_admin:
            print("ℹ️  ADMIN user already exists, skipping seeding")
            return

        admin_user = User(phone="0772000099", display_name="Coop Admin", role=UserRole.ADMIN, is_active=True)
        member = User(phone="0772000001", display_name="Amina Member", role=UserRole.MEMBER, is_active=True)
        second_member = User(phone="0772000002", display_name="Joseph Member", role=UserRole.MEMBER, is_active=True)
        db.add_all([admin_user, member, second_member])
        await db.flush()
        print("✅ Created ADMIN and 2 MEMBER users")

        land_fee = FeeRule(
            name="Land Fee",
            description="Seasonal land use",
            type=FeeRuleType.LAND,
            amount=Decimal("5000.00"),
            frequency=FeeFrequency.QUARTERLY,
            created_by=admin_user.id,
        )
        storage_fee = FeeRule(
            name="Storage Fee",
            description="Warehouse space for the harvest",
            type=FeeRuleType.STORAGE,
            amount=Decimal("2500.50"),
            frequency=FeeFrequency.MONTHLY,
            created_by=admin_user.id,
        )
        db.add_all([land_fee, storage_fee])
        await db.flush()

        db.add_all([
            FeeApplication(
                fee_rule_id=land_fee.id,
                user_id=member.id,
                amount=land_fee.amount,
                due_date=date.today() + timedelta(days=14),
                status=FeeApplicationStatus.PENDING,
            ),
            FeeApplication(
                fee_rule_id=storage_fee.id,
                user_id=member.id,
                amount=storage_fee.amount,
                due_date=date.today() - timedelta(days=3),
                status=FeeApplicationStatus.OVERDUE,
            ),
        ])
        print("✅ Created 2 outstanding fees for 0772000001")

        await db.commit()

        print("\n🎉 Seeding completed successfully!")
        print("\nDevelopment tokens (valid for the configured expiry):")
        for user in (admin_user, member):
            token = token_for_user(user, expires_delta=timedelta(days=1))
            print(f"  - {user.role.value:<6} {user.phone}: {token}")


if __name__ == "__main__":
    asyncio.run(seed_users())
