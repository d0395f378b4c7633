"""
Fee enumerations.
"""

import enum


class FeeApplicationStatus(str, enum.Enum):
    """Fee application status enumeration."""
    PENDING = "pending"  # Owed, not yet due
    OVERDUE = "overdue"  # Owed, past due date
    PAID = "paid"  # Settled by a successful payment
    CANCELLED = "cancelled"  # Waived by an administrator


OUTSTANDING_FEE_STATUSES = (FeeApplicationStatus.PENDING, FeeApplicationStatus.OVERDUE)


class FeeRuleType(str, enum.Enum):
    LAND = "land"
    EQUIPMENT = "equipment"
    PROCESSING = "processing"
    STORAGE = "storage"
    TRAINING = "training"
    OTHER = "other"


class FeeFrequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    PER_TRANSACTION = "per_transaction"
    ONE_TIME = "one_time"


class FeeRuleStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"
    SCHEDULED = "scheduled"


def enum_values(enum_cls):
    """Persist lowercase enum values instead of member names."""
    return [member.value for member in enum_cls]
