"""
Payment Schemas.

Request bodies for the member payment endpoints and the
``{success, message, data}`` envelopes they answer with.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator, model_validator

from coop_backend.app.models.dlq import DLQStatus
from coop_backend.app.models.payment_enums import PaymentAttemptStatus, PaymentType

PhoneNumber = Annotated[str, StringConstraints(strip_whitespace=True, min_length=10, max_length=15)]
NonBlankText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class PaymentInitiateRequest(BaseModel):
    """
    Schema for POST /member/payments/initiate.

    ``fee_application_id`` is accepted for single payments from older clients.
    """
    phone_number: PhoneNumber = Field(..., description="Payer MSISDN")
    amount: Decimal = Field(..., ge=Decimal("0.01"), description="Total amount to collect")
    description: NonBlankText = Field(..., description="Shown to the payer on their phone")
    fee_application_ids: List[int] = Field(default_factory=list)
    fee_application_id: Optional[int] = Field(default=None, description="Legacy single-fee field")
    payment_type: PaymentType = Field(default=PaymentType.SINGLE)
    idempotency_key: Optional[str] = Field(default=None, min_length=8, max_length=64)

    @model_validator(mode="after")
    def normalize_fee_ids(self):
        if self.payment_type == PaymentType.SINGLE and self.fee_application_id and not self.fee_application_ids:
            self.fee_application_ids = [self.fee_application_id]

        # Preserve order, drop duplicates
        self.fee_application_ids = list(dict.fromkeys(self.fee_application_ids))

        if self.payment_type == PaymentType.SINGLE and len(self.fee_application_ids) > 1:
            raise ValueError("A single payment covers at most one fee application")
        return self


class PaymentStatusRequest(BaseModel):
    """Schema for POST /member/payments/check-status."""
    reference_id: NonBlankText


class FeeRuleBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    description: Optional[str] = None


class FeeApplicationBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: str
    due_date: date
    fee_rule: FeeRuleBrief

    @classmethod
    def from_fee(cls, fee) -> "FeeApplicationBrief":
        return cls(
            id=fee.id,
            status=fee.status.value,
            due_date=fee.due_date,
            fee_rule=FeeRuleBrief.model_validate(fee.fee_rule),
        )


class PaymentInitiationData(BaseModel):
    payment_id: int
    reference_id: str
    idempotency_key: str
    amount: float
    currency: str
    phone_number: str
    description: str
    status: str
    payment_type: PaymentType
    fee_applications_count: int
    fee_applications: List[FeeApplicationBrief]


class PaymentInitiationResponse(BaseModel):
    success: bool = True
    message: str = "Payment initiated successfully"
    data: PaymentInitiationData


class PaymentStatusData(BaseModel):
    payment_id: int
    reference_id: str
    amount: float
    currency: str
    status: str
    phone_number: str
    description: str
    financial_transaction_id: Optional[str] = None
    reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    payments_count: int
    fee_applications: List[FeeApplicationBrief]


class PaymentStatusResponse(BaseModel):
    success: bool = True
    data: PaymentStatusData


class PaymentHistoryItem(BaseModel):
    id: int
    reference_id: Optional[str] = None
    amount: float
    currency: str
    status: str
    payment_type: PaymentType
    phone_number: str
    description: str
    payment_method: str = "mtn_momo"
    financial_transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    fee_applications: List[FeeApplicationBrief]


class Pagination(BaseModel):
    current_page: int
    last_page: int
    per_page: int
    total: int


class PaymentHistoryData(BaseModel):
    payments: List[PaymentHistoryItem]
    pagination: Pagination


class PaymentHistoryResponse(BaseModel):
    success: bool = True
    data: PaymentHistoryData


class OutstandingFeeItem(BaseModel):
    id: int
    amount: float
    status: str
    due_date: date
    fee_rule: FeeRuleBrief


class OutstandingFeesData(BaseModel):
    count: int
    total: float
    display_total: int
    currency: str
    payable: bool
    fees: List[OutstandingFeeItem]


class OutstandingFeesResponse(BaseModel):
    success: bool = True
    data: OutstandingFeesData


class MomoCallbackPayload(BaseModel):
    """
    Body MoMo sends to the callback URL once a request-to-pay settles.
    """
    model_config = ConfigDict(extra="allow")

    referenceId: Optional[str] = None
    externalId: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    financialTransactionId: Optional[str] = None
    reason: Optional[Any] = None


class CallbackAck(BaseModel):
    success: bool = True


class AdminPaymentAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    reference_id: Optional[str] = None
    external_id: Optional[str] = None
    payment_type: PaymentType
    amount: float
    currency: str
    status: PaymentAttemptStatus
    provider_status: Optional[str] = None
    failure_reason: Optional[str] = None
    status_checks: int
    created_at: datetime
    paid_at: Optional[datetime] = None

    @field_validator("amount", mode="before")
    @classmethod
    def amount_as_float(cls, value):
        return float(value) if isinstance(value, Decimal) else value


class ReconciliationReportResponse(BaseModel):
    checked: int
    settled: int
    failed: int
    expired: int
    errors: int


class DLQItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    task_name: str
    attempt_id: Optional[int] = None
    reference_id: Optional[str] = None
    error_message: str
    payload: Optional[dict] = None
    status: DLQStatus
    retry_count: int
    created_at: datetime
    last_retry_at: Optional[datetime] = None
