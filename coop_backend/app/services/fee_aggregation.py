"""
Fee Application Aggregator.

Projects a member's outstanding fees into the numbers a bulk payment
needs: how many fees, and how much in total.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coop_backend.app.core.config import settings
from coop_backend.app.models.fee_application import FeeApplication
from coop_backend.app.models.fee_enums import OUTSTANDING_FEE_STATUSES


@dataclass
class FeeSummary:
    count: int
    total: Decimal
    display_total: int
    currency: str
    fee_ids: List[int] = field(default_factory=list)

    @property
    def payable(self) -> bool:
        # An empty set suppresses the payment dialog entirely
        return self.count > 0


def round_display_amount(amount: Decimal) -> int:
    """Round to the nearest whole currency unit, halves away from zero."""
    return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def summarize_outstanding(fees: Iterable[FeeApplication], currency: Optional[str] = None) -> FeeSummary:
    """
    Count and total the outstanding fees in ``fees``.

    Records that are paid or cancelled are ignored. The result does not
    depend on iteration order.
    """
    outstanding = [fee for fee in fees if fee.status in OUTSTANDING_FEE_STATUSES]
    total = sum((Decimal(fee.amount) for fee in outstanding), Decimal("0"))

    return FeeSummary(
        count=len(outstanding),
        total=total,
        display_total=round_display_amount(total),
        currency=currency or settings.display_currency,
        fee_ids=sorted(fee.id for fee in outstanding),
    )


async def get_outstanding_fees(db: AsyncSession, user_id: int) -> Sequence[FeeApplication]:
    """Outstanding fees owned by a member, earliest due first."""
    result = await db.execute(
        select(FeeApplication)
        .where(
            FeeApplication.user_id == user_id,
            FeeApplication.status.in_(OUTSTANDING_FEE_STATUSES),
        )
        .order_by(FeeApplication.due_date, FeeApplication.id)
    )
    return result.scalars().all()
