"""
Payment Dialog Controllers.

Headless state holders for the two fee payment dialogs. A UI binds to
``state`` and calls open/submit/close/retry; the controller talks to the
payments API and runs the status poller.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence

from coop_backend.app.services.fee_aggregation import FeeSummary, summarize_outstanding
from coop_backend.client.api_client import PaymentApiClient, PaymentApiError
from coop_backend.client.poller import (
    BULK_PAYMENT_POLICY,
    SINGLE_PAYMENT_POLICY,
    CancelToken,
    PaymentPhase,
    PaymentStatusView,
    PollingPolicy,
    poll_payment_status,
)

logger = logging.getLogger(__name__)

INVALID_PHONE_MESSAGE = "Please enter a valid phone number"

SUBMITTABLE_PHASES = (PaymentPhase.IDLE, PaymentPhase.FAILED)


@dataclass(frozen=True)
class DialogFee:
    """Fee application as the dialogs see it."""
    id: int
    amount: Decimal
    status: str
    name: str
    description: Optional[str] = None

    @classmethod
    def from_api(cls, item: Mapping[str, Any]) -> "DialogFee":
        rule = item.get("fee_rule") or {}
        return cls(
            id=item["id"],
            amount=Decimal(str(item["amount"])),
            status=item.get("status", "pending"),
            name=rule.get("name", ""),
            description=rule.get("description"),
        )


class PaymentDialog:
    """
    Shared dialog behaviour; subclasses say what is being paid for.

    Args:
        api: Client for the member payment endpoints
        on_close: Called when the dialog actually closes
        on_refresh: Called on close after a successful payment, so the
            caller can reload fee state
        on_state_change: Called with every new PaymentStatusView
        sleep: Awaitable used between status checks
    """

    policy: PollingPolicy = SINGLE_PAYMENT_POLICY
    blocks_close_while_busy = False
    payment_type = "single"
    initiating_message = "Initiating payment request..."
    pending_message = "Payment request sent. Please check your phone and complete the payment."
    initiation_failed_message = "Failed to initiate payment"

    def __init__(
        self,
        api: PaymentApiClient,
        on_close: Optional[Callable[[], None]] = None,
        on_refresh: Optional[Callable[[], None]] = None,
        on_state_change: Optional[Callable[[PaymentStatusView], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api = api
        self.on_close = on_close
        self.on_refresh = on_refresh
        self.on_state_change = on_state_change
        self._sleep = sleep
        self.state = PaymentStatusView()
        self.phone_number = ""
        self.is_open = False
        self._cancel_token: Optional[CancelToken] = None
        self._poll_task: Optional[asyncio.Task] = None

    # Subclass hooks

    @property
    def renderable(self) -> bool:
        return True

    @property
    def amount(self) -> Decimal:
        raise NotImplementedError

    @property
    def description(self) -> str:
        raise NotImplementedError

    @property
    def fee_application_ids(self) -> List[int]:
        raise NotImplementedError

    # Lifecycle

    def _set_state(self, phase: PaymentPhase, message: str = "", reference_id: Optional[str] = None) -> None:
        self.state = PaymentStatusView(phase, message, reference_id)
        if self.on_state_change:
            self.on_state_change(self.state)

    def open(self) -> bool:
        if not self.renderable:
            return False
        self._stop_polling()
        self.phone_number = ""
        self._set_state(PaymentPhase.IDLE)
        self.is_open = True
        return True

    def set_phone_number(self, value: str) -> None:
        self.phone_number = value

    async def submit(self) -> PaymentStatusView:
        """
        Send the payment request and start polling for its outcome.

        Closing or disposing the dialog while the request is in flight
        cancels it: no state change follows and no poll starts.
        """
        if not self.is_open or self.state.phase not in SUBMITTABLE_PHASES:
            return self.state

        phone_number = (self.phone_number or "").strip()
        if not phone_number:
            self._set_state(PaymentPhase.FAILED, INVALID_PHONE_MESSAGE)
            return self.state

        # One token covers the request and the poll that follows it
        self._stop_polling()
        cancel_token = CancelToken()
        self._cancel_token = cancel_token

        self._set_state(PaymentPhase.INITIATING, self.initiating_message)
        try:
            data = await self.api.initiate_payment(
                phone_number=phone_number,
                amount=self.amount,
                description=self.description,
                fee_application_ids=self.fee_application_ids,
                payment_type=self.payment_type,
                idempotency_key=str(uuid.uuid4()),
            )
        except PaymentApiError as e:
            logger.warning("Payment initiation failed: %s", e.message)
            if not self._torn_down(cancel_token):
                self._set_state(PaymentPhase.FAILED, e.message or self.initiation_failed_message)
            return self.state

        reference_id = data["reference_id"]
        if self._torn_down(cancel_token):
            logger.info("Dialog closed during initiation, not polling %s", reference_id)
            return self.state

        self._set_state(PaymentPhase.PENDING, self.pending_message, reference_id)
        self._poll_task = asyncio.create_task(self._poll(reference_id, cancel_token))
        return self.state

    def _torn_down(self, cancel_token: CancelToken) -> bool:
        return cancel_token.cancelled or not self.is_open

    async def _poll(self, reference_id: str, cancel_token: CancelToken) -> None:
        result = await poll_payment_status(
            self.api.check_status,
            reference_id,
            self.policy,
            cancel_token=cancel_token,
            sleep=self._sleep,
        )
        if result is not None and not cancel_token.cancelled:
            self._set_state(result.phase, result.message, result.reference_id)

    async def wait_settled(self) -> PaymentStatusView:
        """Wait for the running poll (if any) to finish."""
        if self._poll_task is not None:
            await self._poll_task
        return self.state

    def _stop_polling(self) -> None:
        if self._cancel_token is not None:
            self._cancel_token.cancel()
        if self._poll_task is not None and not self._poll_task.done():
            # Wake the poll out of its sleep instead of waiting out the interval
            self._poll_task.cancel()
        self._cancel_token = None
        self._poll_task = None

    def close(self) -> bool:
        """
        Close the dialog. Returns False when closing is not allowed.
        """
        if self.state.is_busy and self.blocks_close_while_busy:
            return False

        settled_ok = self.state.phase == PaymentPhase.SUCCESSFUL
        self._stop_polling()
        self.is_open = False

        if self.on_close:
            self.on_close()
        if settled_ok and self.on_refresh:
            self.on_refresh()
        return True

    def retry(self) -> None:
        if self.state.phase == PaymentPhase.FAILED:
            self._set_state(PaymentPhase.IDLE)

    def dispose(self) -> None:
        """Tear down without callbacks, cancelling any poll in flight."""
        self._stop_polling()
        self.is_open = False


class SingleFeePaymentDialog(PaymentDialog):
    """Pays one fee application. Can be dismissed while a payment runs."""

    policy = SINGLE_PAYMENT_POLICY
    blocks_close_while_busy = False
    payment_type = "single"
    pending_message = (
        "Payment request sent to MTN Mobile Money. "
        "Please check your phone and complete the payment."
    )
    initiation_failed_message = "Payment initiation failed"

    def __init__(self, api: PaymentApiClient, fee: DialogFee, **kwargs):
        super().__init__(api, **kwargs)
        self.fee = fee

    @property
    def amount(self) -> Decimal:
        return self.fee.amount

    @property
    def description(self) -> str:
        if not self.fee.description:
            return f"Payment for {self.fee.name}"
        return f"Payment for {self.fee.name} - {self.fee.description}"

    @property
    def fee_application_ids(self) -> List[int]:
        return [self.fee.id]


class BulkFeePaymentDialog(PaymentDialog):
    """
    Pays every outstanding fee with one charge.

    Renders nothing when there is nothing to pay, and cannot be dismissed
    while a payment is initiating or pending.
    """

    policy = BULK_PAYMENT_POLICY
    blocks_close_while_busy = True
    payment_type = "bulk"
    initiating_message = "Initiating payment for all fees..."
    pending_message = "Payment initiated. Please check your phone for the payment prompt."
    initiation_failed_message = "Failed to initiate payment. Please try again."

    def __init__(self, api: PaymentApiClient, fees: Sequence[DialogFee], **kwargs):
        super().__init__(api, **kwargs)
        self.summary: FeeSummary = summarize_outstanding(fees)
        self.fees = [fee for fee in fees if fee.id in self.summary.fee_ids]

    @property
    def renderable(self) -> bool:
        return self.summary.payable

    @property
    def amount(self) -> Decimal:
        return self.summary.total

    @property
    def description(self) -> str:
        names = ", ".join(fee.name for fee in self.fees)
        return f"Payment for {self.summary.count} fees - {names}"

    @property
    def fee_application_ids(self) -> List[int]:
        return list(self.summary.fee_ids)
