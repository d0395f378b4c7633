"""
Fee Application database model.

One fee instance owed by a member. Records are never deleted; a
successful payment settlement moves them to ``paid``.
"""

from datetime import date
from typing import Optional

from sqlalchemy import Column, Integer, Text, Numeric, Date, DateTime, Enum, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from coop_backend.app.db.session import Base
from coop_backend.app.models.fee_enums import FeeApplicationStatus, OUTSTANDING_FEE_STATUSES, enum_values


class FeeApplication(Base):
    """
    Fee Application model.

    Invariant: paid_date is set if and only if status is 'paid'.
    """
    __tablename__ = "fee_applications"
    __table_args__ = (
        CheckConstraint(
            "(status = 'paid' AND paid_date IS NOT NULL) OR (status != 'paid' AND paid_date IS NULL)",
            name="ck_fee_applications_paid_date",
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    fee_rule_id = Column(Integer, ForeignKey('fee_rules.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    due_date = Column(Date, nullable=False, index=True)
    paid_date = Column(Date, nullable=True)
    status = Column(
        Enum(FeeApplicationStatus, values_callable=enum_values),
        default=FeeApplicationStatus.PENDING,
        nullable=False,
        index=True,
    )
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    fee_rule = relationship("FeeRule", lazy="selectin")

    @property
    def is_outstanding(self) -> bool:
        return self.status in OUTSTANDING_FEE_STATUSES

    def mark_paid(self, paid_on: Optional[date] = None) -> bool:
        """
        Move the fee to 'paid'. Returns False when it already was.
        """
        if self.status == FeeApplicationStatus.PAID:
            return False
        self.status = FeeApplicationStatus.PAID
        self.paid_date = paid_on or date.today()
        return True

    def __repr__(self):
        return f"<FeeApplication(id={self.id}, user_id={self.user_id}, status='{self.status.value}', amount={self.amount})>"
