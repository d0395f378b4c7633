"""
Payment Attempt database models.

Durable record of every mobile money collection request. The attempt is
written before the gateway is called, so an in-flight payment always
leaves a trace that reconciliation can pick up.
"""

from sqlalchemy import Boolean, Column, Integer, String, Text, Numeric, DateTime, Enum, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from coop_backend.app.db.session import Base
from coop_backend.app.models.fee_enums import enum_values
from coop_backend.app.models.payment_enums import (
    PaymentAttemptStatus,
    PaymentType,
    TERMINAL_ATTEMPT_STATUSES,
)


class PaymentAttempt(Base):
    """
    Payment Attempt model.

    Lifecycle: INITIATING -> PENDING -> SUCCESSFUL | FAILED.
    Terminal states are final; the first terminal status reported wins.
    The one exception is an attempt expired locally: the payer may still
    have approved it, so a later SUCCESSFUL from the provider settles it.
    """
    __tablename__ = "payment_attempts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Client-generated key, first write wins
    idempotency_key = Column(String(64), unique=True, nullable=False, index=True)

    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    # Gateway identifiers (reference_id is assigned once the gateway accepts)
    reference_id = Column(String(64), unique=True, nullable=True, index=True)
    external_id = Column(String(100), nullable=True, index=True)

    payment_type = Column(
        Enum(PaymentType, values_callable=enum_values),
        default=PaymentType.SINGLE,
        nullable=False,
    )
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    phone_number = Column(String(20), nullable=False)
    description = Column(Text, nullable=False)

    status = Column(
        Enum(PaymentAttemptStatus),
        default=PaymentAttemptStatus.INITIATING,
        nullable=False,
        index=True,
    )
    provider_status = Column(String(20), nullable=True)
    failure_reason = Column(Text, nullable=True)
    financial_transaction_id = Column(String(100), nullable=True)
    callback_data = Column(JSON, nullable=True)

    status_checks = Column(Integer, default=0, nullable=False)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    # Set when reconciliation gave up waiting, not when the provider failed it
    expired_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    fees = relationship(
        "PaymentAttemptFee",
        back_populates="attempt",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ATTEMPT_STATUSES

    @property
    def expired_locally(self) -> bool:
        return self.status == PaymentAttemptStatus.FAILED and self.expired_at is not None

    def __repr__(self):
        return f"<PaymentAttempt(id={self.id}, reference_id='{self.reference_id}', status='{self.status.value}')>"


class PaymentAttemptFee(Base):
    """
    Fee covered by a payment attempt.

    A bulk attempt covers many fees with a single gateway charge.
    ``in_flight`` is True while the attempt is unsettled and NULL after;
    the unique constraint lets a fee sit in at most one unsettled attempt.
    """
    __tablename__ = "payment_attempt_fees"
    __table_args__ = (
        UniqueConstraint("fee_application_id", "in_flight", name="uq_payment_attempt_fees_in_flight"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    attempt_id = Column(Integer, ForeignKey('payment_attempts.id'), nullable=False, index=True)
    fee_application_id = Column(Integer, ForeignKey('fee_applications.id'), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    in_flight = Column(Boolean, default=True, nullable=True)

    attempt = relationship("PaymentAttempt", back_populates="fees")
    fee_application = relationship("FeeApplication", lazy="selectin")

    def __repr__(self):
        return f"<PaymentAttemptFee(attempt_id={self.attempt_id}, fee_application_id={self.fee_application_id})>"
