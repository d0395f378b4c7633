"""
Payment enumerations.
"""

import enum


class PaymentType(str, enum.Enum):
    """How many fees one payment covers."""
    SINGLE = "single"
    BULK = "bulk"


class PaymentAttemptStatus(str, enum.Enum):
    """
    Server-side payment attempt lifecycle.

    INITIATING -> PENDING -> SUCCESSFUL | FAILED
    INITIATING -> FAILED (gateway refused the request)
    """
    INITIATING = "INITIATING"  # Persisted, gateway call in flight
    PENDING = "PENDING"  # Gateway accepted, waiting for the payer
    SUCCESSFUL = "SUCCESSFUL"  # Settled
    FAILED = "FAILED"  # Rejected, timed out, or refused at initiation


TERMINAL_ATTEMPT_STATUSES = (PaymentAttemptStatus.SUCCESSFUL, PaymentAttemptStatus.FAILED)
IN_FLIGHT_ATTEMPT_STATUSES = (PaymentAttemptStatus.INITIATING, PaymentAttemptStatus.PENDING)


class ProviderStatus(str, enum.Enum):
    """Transaction status strings reported by the MoMo collection API."""
    PENDING = "PENDING"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    TIMEOUT = "TIMEOUT"


FAILED_PROVIDER_STATUSES = (ProviderStatus.FAILED, ProviderStatus.REJECTED, ProviderStatus.TIMEOUT)
