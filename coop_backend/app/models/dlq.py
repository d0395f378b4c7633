"""
Dead Letter Queue (DLQ) Model.

Reconciliation work that could not reach the payment gateway is parked
here until an admin retries it.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum, ForeignKey
from sqlalchemy.sql import func
from coop_backend.app.db.session import Base
import enum


class DLQStatus(str, enum.Enum):
    FAILED = "FAILED"  # Waiting for a retry
    RETRYING = "RETRYING"  # Retry in progress (or crashed mid-retry)
    PROCESSED = "PROCESSED"
    ARCHIVED = "ARCHIVED"  # No handler or nothing left to do


RETRYABLE_DLQ_STATUSES = (DLQStatus.FAILED, DLQStatus.RETRYING)


class DeadLetterQueue(Base):
    """
    Parked background task.

    ``attempt_id`` and ``reference_id`` point at the payment the task was
    about; ``payload`` keeps the original task arguments.
    """
    __tablename__ = "dead_letter_queue"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    task_name = Column(String(100), nullable=False, index=True)
    attempt_id = Column(Integer, ForeignKey('payment_attempts.id'), nullable=True, index=True)
    reference_id = Column(String(64), nullable=True, index=True)
    error_message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)

    status = Column(Enum(DLQStatus), default=DLQStatus.FAILED, nullable=False, index=True)
    retry_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_retryable(self) -> bool:
        return self.status in RETRYABLE_DLQ_STATUSES

    def __repr__(self):
        return f"<DLQ(id={self.id}, task='{self.task_name}', reference='{self.reference_id}', status='{self.status}')>"
