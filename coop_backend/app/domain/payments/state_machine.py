"""
Payment attempt state machine.

INITIATING -> PENDING -> SUCCESSFUL | FAILED, and INITIATING -> FAILED.
PENDING -> PENDING is the re-poll self loop. Terminal states never move,
except FAILED -> SUCCESSFUL for an attempt reconciliation expired itself.
"""

import logging
from typing import Optional

from coop_backend.app.models.payment_attempt import PaymentAttempt
from coop_backend.app.models.payment_enums import (
    PaymentAttemptStatus,
    ProviderStatus,
    FAILED_PROVIDER_STATUSES,
)

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    PaymentAttemptStatus.INITIATING: {PaymentAttemptStatus.PENDING, PaymentAttemptStatus.FAILED},
    PaymentAttemptStatus.PENDING: {
        PaymentAttemptStatus.PENDING,
        PaymentAttemptStatus.SUCCESSFUL,
        PaymentAttemptStatus.FAILED,
    },
    PaymentAttemptStatus.SUCCESSFUL: set(),
    PaymentAttemptStatus.FAILED: set(),
}


class InvalidTransitionError(Exception):
    def __init__(self, current: PaymentAttemptStatus, target: PaymentAttemptStatus):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move payment attempt from {current.value} to {target.value}")


def attempt_status_for(provider_status: str) -> PaymentAttemptStatus:
    """Map a gateway transaction status onto the attempt lifecycle."""
    normalized = (provider_status or "").upper()
    if normalized == ProviderStatus.SUCCESSFUL.value:
        return PaymentAttemptStatus.SUCCESSFUL
    if normalized in {s.value for s in FAILED_PROVIDER_STATUSES}:
        return PaymentAttemptStatus.FAILED
    return PaymentAttemptStatus.PENDING


def can_transition(current: PaymentAttemptStatus, target: PaymentAttemptStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def settles_late(attempt: PaymentAttempt, target: PaymentAttemptStatus) -> bool:
    """True when a provider success arrives for an attempt we expired ourselves."""
    return target == PaymentAttemptStatus.SUCCESSFUL and attempt.expired_locally


def transition(
    attempt: PaymentAttempt,
    target: PaymentAttemptStatus,
    provider_status: Optional[str] = None,
    reason: Optional[str] = None,
) -> bool:
    """
    Move ``attempt`` to ``target``.

    Returns True when the status changed. A terminal attempt ignores every
    later status (first terminal status wins) and returns False, except
    that a locally expired attempt still accepts SUCCESSFUL. Any other
    illegal move raises InvalidTransitionError.
    """
    current = attempt.status
    late = settles_late(attempt, target)
    if attempt.is_terminal and not late:
        if target != current:
            logger.warning(
                "Ignoring %s for settled payment attempt %s (already %s)",
                target.value, attempt.id, current.value,
            )
        return False

    if not late and not can_transition(current, target):
        raise InvalidTransitionError(current, target)

    if provider_status is not None:
        attempt.provider_status = provider_status
    if reason is not None:
        attempt.failure_reason = reason

    if target == current:
        return False

    if late:
        attempt.failure_reason = None
        logger.warning(
            "Payment attempt %s settled after it was expired (reference_id=%s)",
            attempt.id, attempt.reference_id,
        )

    attempt.status = target
    if attempt.is_terminal:
        # Frees the fees for a new attempt
        for link in attempt.fees:
            link.in_flight = None
    logger.info(
        "Payment attempt %s moved %s -> %s (reference_id=%s)",
        attempt.id, current.value, target.value, attempt.reference_id,
    )
    return True


def client_status(attempt: PaymentAttempt) -> str:
    """
    Status string reported to polling clients.

    Settled attempts report the provider's terminal status so the poller
    can tell FAILED, REJECTED and TIMEOUT apart.
    """
    if attempt.status == PaymentAttemptStatus.SUCCESSFUL:
        return ProviderStatus.SUCCESSFUL.value
    if attempt.status == PaymentAttemptStatus.FAILED:
        if attempt.provider_status in {s.value for s in FAILED_PROVIDER_STATUSES}:
            return attempt.provider_status
        return ProviderStatus.FAILED.value
    return ProviderStatus.PENDING.value
