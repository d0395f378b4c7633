"""
Fee Rule database model.

Defines a recurring or one-off fee type. Read-only from the payment flow.
"""

from sqlalchemy import Column, Integer, String, Text, Numeric, Date, DateTime, Enum, ForeignKey
from sqlalchemy.sql import func
from coop_backend.app.db.session import Base
from coop_backend.app.models.fee_enums import FeeRuleType, FeeFrequency, FeeRuleStatus, enum_values


class FeeRule(Base):
    __tablename__ = "fee_rules"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    name = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(Enum(FeeRuleType, values_callable=enum_values), default=FeeRuleType.OTHER, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    frequency = Column(Enum(FeeFrequency, values_callable=enum_values), default=FeeFrequency.ONE_TIME, nullable=False)
    status = Column(Enum(FeeRuleStatus, values_callable=enum_values), default=FeeRuleStatus.ACTIVE, nullable=False, index=True)
    effective_date = Column(Date, nullable=True)

    created_by = Column(Integer, ForeignKey('users.id'), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<FeeRule(id={self.id}, name='{self.name}', amount={self.amount})>"
