"""
Payment Status Poller.

One polling routine shared by every payment dialog. The single-fee and
bulk dialogs differ only in the PollingPolicy they pass in.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from coop_backend.client.api_client import PaymentApiError

logger = logging.getLogger(__name__)

TERMINAL_FAILURE_STATUSES = ("FAILED", "REJECTED", "TIMEOUT")

TIMEOUT_MESSAGE = "Payment timeout. Please try again or contact support."
CHECK_FAILED_MESSAGE = "Failed to check payment status"


class PaymentPhase(str, Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentStatusView:
    """What a payment dialog shows. Lives and dies with the dialog."""
    phase: PaymentPhase = PaymentPhase.IDLE
    message: str = ""
    reference_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in (PaymentPhase.SUCCESSFUL, PaymentPhase.FAILED)

    @property
    def is_busy(self) -> bool:
        return self.phase in (PaymentPhase.INITIATING, PaymentPhase.PENDING)


@dataclass(frozen=True)
class PollingPolicy:
    """
    How often to ask for a status and when to give up.

    Attributes:
        interval: Seconds between status checks
        max_attempts: Check budget, None polls until a terminal status
        initial_delay: Wait one interval before the first check
        fail_on_check_error: Treat one failed status check as terminal
        success_message: Message shown once the payment settles
    """
    interval: float
    max_attempts: Optional[int] = None
    initial_delay: bool = False
    fail_on_check_error: bool = False
    success_message: str = "Payment completed successfully!"


SINGLE_PAYMENT_POLICY = PollingPolicy(
    interval=10.0,
    max_attempts=30,
    initial_delay=False,
    fail_on_check_error=False,
    success_message="Payment completed successfully!",
)

BULK_PAYMENT_POLICY = PollingPolicy(
    interval=3.0,
    max_attempts=None,
    initial_delay=True,
    fail_on_check_error=True,
    success_message="Payment successful! All fees have been paid.",
)


class CancelToken:
    """Cooperative cancellation checked before every reschedule."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


StatusCheck = Callable[[str], Awaitable[str]]


async def poll_payment_status(
    check: StatusCheck,
    reference_id: str,
    policy: PollingPolicy,
    cancel_token: Optional[CancelToken] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Optional[PaymentStatusView]:
    """
    Poll ``check(reference_id)`` until the payment settles.

    Returns the terminal PaymentStatusView, or None when the poll was
    cancelled before reaching one.
    """
    cancel_token = cancel_token or CancelToken()
    attempts = 0

    if policy.initial_delay:
        await sleep(policy.interval)

    while not cancel_token.cancelled:
        attempts += 1
        try:
            status = (await check(reference_id) or "").upper()
        except PaymentApiError as e:
            if policy.fail_on_check_error:
                logger.warning("Status check for %s failed, giving up: %s", reference_id, e)
                return PaymentStatusView(PaymentPhase.FAILED, CHECK_FAILED_MESSAGE, reference_id)
            logger.warning("Status check for %s failed: %s", reference_id, e)
            status = None

        if status == "SUCCESSFUL":
            return PaymentStatusView(PaymentPhase.SUCCESSFUL, policy.success_message, reference_id)
        if status in TERMINAL_FAILURE_STATUSES:
            return PaymentStatusView(
                PaymentPhase.FAILED,
                f"Payment {status.lower()}. Please try again.",
                reference_id,
            )

        if policy.max_attempts is not None and attempts >= policy.max_attempts:
            return PaymentStatusView(PaymentPhase.FAILED, TIMEOUT_MESSAGE, reference_id)

        if cancel_token.cancelled:
            break
        await sleep(policy.interval)

    logger.debug("Polling for %s cancelled after %d checks", reference_id, attempts)
    return None
