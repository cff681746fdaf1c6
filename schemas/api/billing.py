"""Billing API schemas and the gateway webhook payload shape."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_TEXT_LIMIT = 220


def _clean_text(value: Any, size: int = _TEXT_LIMIT) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()[:size]
    return text or None


def _as_amount(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(round(value)) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return int(round(number)) if math.isfinite(number) else None
    return None


class TossCancelEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transactionKey: Optional[str] = None
    cancelAmount: Optional[int] = None
    cancelStatus: Optional[str] = None

    @field_validator("transactionKey", "cancelStatus", mode="before")
    def _strip_text(cls, value: Any) -> Optional[str]:
        return _clean_text(value)

    @field_validator("cancelAmount", mode="before")
    def _coerce_amount(cls, value: Any) -> Optional[int]:
        return _as_amount(value)


class TossPaymentData(BaseModel):
    """The ``data`` object of a Toss Payments webhook; unknown fields are dropped."""

    model_config = ConfigDict(extra="ignore")

    orderId: Optional[str] = None
    status: Optional[str] = None
    paymentKey: Optional[str] = None
    approvedAt: Optional[str] = None
    totalAmount: Optional[int] = None
    balanceAmount: Optional[int] = None
    suppliedAmount: Optional[int] = None
    lastTransactionKey: Optional[str] = None
    cancels: List[TossCancelEntry] = Field(default_factory=list)

    @field_validator("orderId", "status", "paymentKey", "approvedAt", "lastTransactionKey", mode="before")
    def _strip_text(cls, value: Any) -> Optional[str]:
        return _clean_text(value)

    @field_validator("totalAmount", "balanceAmount", "suppliedAmount", mode="before")
    def _coerce_amount(cls, value: Any) -> Optional[int]:
        return _as_amount(value)

    @field_validator("cancels", mode="before")
    def _keep_object_entries(cls, value: Any) -> List[Any]:
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, dict)]


class TossWebhookPayload(BaseModel):
    """Top-level webhook body. Fields may appear on the root or inside ``data``."""

    model_config = ConfigDict(extra="ignore")

    eventType: Optional[str] = None
    event_type: Optional[str] = None
    orderId: Optional[str] = None
    status: Optional[str] = None
    paymentKey: Optional[str] = None
    approvedAt: Optional[str] = None
    totalAmount: Optional[int] = None
    data: TossPaymentData = Field(default_factory=TossPaymentData)

    @field_validator("eventType", "event_type", "orderId", "status", "paymentKey", "approvedAt", mode="before")
    def _strip_text(cls, value: Any) -> Optional[str]:
        return _clean_text(value)

    @field_validator("totalAmount", mode="before")
    def _coerce_amount(cls, value: Any) -> Optional[int]:
        return _as_amount(value)

    @field_validator("data", mode="before")
    def _object_or_empty(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}


class WebhookAckResponse(BaseModel):
    ok: bool = True
    accepted: bool
    reason: Optional[str] = None
    action: Optional[str] = None
    orderId: Optional[str] = None
    syncedRefundId: Optional[int] = None


class RefundEventSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    refundRequestId: int = Field(validation_alias="refund_request_id")
    eventType: str = Field(validation_alias="event_type")
    fromStatus: Optional[str] = Field(default=None, validation_alias="from_status")
    toStatus: Optional[str] = Field(default=None, validation_alias="to_status")
    actorRole: str = Field(validation_alias="actor_role")
    actorId: Optional[str] = Field(default=None, validation_alias="actor_id")
    message: Optional[str] = None
    createdAt: Optional[datetime] = Field(default=None, validation_alias="created_at")


class RefundRequestSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    orderId: str = Field(validation_alias="order_id")
    userId: str = Field(validation_alias="user_id")
    status: str
    reason: str
    cancelAmount: Optional[int] = Field(default=None, validation_alias="cancel_amount")
    currency: str
    rejectReason: Optional[str] = Field(default=None, validation_alias="reject_reason")
    errorCode: Optional[str] = Field(default=None, validation_alias="error_code")
    errorMessage: Optional[str] = Field(default=None, validation_alias="error_message")
    retryCount: int = Field(default=0, validation_alias="retry_count")
    nextRetryAt: Optional[datetime] = Field(default=None, validation_alias="next_retry_at")
    reviewedBy: Optional[str] = Field(default=None, validation_alias="reviewed_by")
    reviewedAt: Optional[datetime] = Field(default=None, validation_alias="reviewed_at")
    executedBy: Optional[str] = Field(default=None, validation_alias="executed_by")
    executedAt: Optional[datetime] = Field(default=None, validation_alias="executed_at")
    tossCancelTransactionKey: Optional[str] = Field(default=None, validation_alias="toss_cancel_transaction_key")
    createdAt: Optional[datetime] = Field(default=None, validation_alias="created_at")
    updatedAt: Optional[datetime] = Field(default=None, validation_alias="updated_at")


class UserRefundRequestSchema(BaseModel):
    """What end users see: status and the rejection reason, never gateway errors."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    orderId: str = Field(validation_alias="order_id")
    status: str
    reason: str
    cancelAmount: Optional[int] = Field(default=None, validation_alias="cancel_amount")
    currency: str
    rejectReason: Optional[str] = Field(default=None, validation_alias="reject_reason")
    createdAt: Optional[datetime] = Field(default=None, validation_alias="created_at")
    updatedAt: Optional[datetime] = Field(default=None, validation_alias="updated_at")


class BillingOrderSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    orderId: str = Field(validation_alias="order_id")
    userId: str = Field(validation_alias="user_id")
    orderKind: str = Field(validation_alias="order_kind")
    planTier: Optional[str] = Field(default=None, validation_alias="plan_tier")
    amount: int
    currency: str
    status: str
    approvedAt: Optional[datetime] = Field(default=None, validation_alias="approved_at")
    failCode: Optional[str] = Field(default=None, validation_alias="fail_code")
    createdAt: Optional[datetime] = Field(default=None, validation_alias="created_at")


class RefundNoteRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=500, description="Operator note stored on the event log.")

    @field_validator("note", mode="before")
    def _strip_note(cls, value: Any) -> Optional[str]:
        return _clean_text(value, 500)


class RefundRejectRequest(RefundNoteRequest):
    reason: Optional[str] = Field(default=None, max_length=500, description="Reason shown to the user; required.")

    @field_validator("reason", mode="before")
    def _strip_reason(cls, value: Any) -> Optional[str]:
        return _clean_text(value, 500)


class RefundExecuteRequest(RefundNoteRequest):
    cancelAmount: Optional[int] = Field(default=None, ge=0, description="Defaults to the requested amount.")


class RefundRetryBatchRequest(BaseModel):
    limit: Optional[int] = Field(default=None, description="Clamped to 1..30.")
    dryRun: bool = False

    @field_validator("limit", mode="before")
    def _coerce_limit(cls, value: Any) -> Optional[int]:
        return _as_amount(value)


class RefundCreateRequest(BaseModel):
    orderId: str = Field(..., description="Order to refund.")
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("orderId", mode="before")
    def _strip_order_id(cls, value: Any) -> str:
        return _clean_text(value, 80) or ""

    @field_validator("reason", mode="before")
    def _strip_reason(cls, value: Any) -> Optional[str]:
        return _clean_text(value, 500)


class RefundWithdrawRequest(RefundNoteRequest):
    pass


class RefundDetailResponse(BaseModel):
    request: RefundRequestSchema
    events: List[RefundEventSchema] = Field(default_factory=list)


class RefundExecuteResponse(BaseModel):
    request: RefundRequestSchema
    cancelStatus: Optional[str] = None
    message: str


class RetryBatchCandidate(BaseModel):
    id: int
    orderId: str
    status: str
    retryCount: int
    nextRetryAt: Optional[datetime] = None


class RetryBatchItem(BaseModel):
    refundId: int
    status: str
    cancelStatus: Optional[str] = None
    alreadyRefunded: Optional[bool] = None
    error: Optional[str] = None
    httpStatus: Optional[int] = None


class RetryBatchResponse(BaseModel):
    dryRun: bool
    total: int
    successCount: int = 0
    failCount: int = 0
    items: List[RetryBatchItem] = Field(default_factory=list)
    requests: List[RetryBatchCandidate] = Field(default_factory=list)


class RefundListResponse(BaseModel):
    requests: List[RefundRequestSchema] = Field(default_factory=list)


class UserRefundListResponse(BaseModel):
    requests: List[UserRefundRequestSchema] = Field(default_factory=list)


class BillingOrderListResponse(BaseModel):
    orders: List[BillingOrderSchema] = Field(default_factory=list)


class WebhookAuditEntry(BaseModel):
    loggedAt: Optional[str] = None
    result: str
    action: Optional[str] = None
    orderId: Optional[str] = None
    eventType: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None


class WebhookAuditListResponse(BaseModel):
    entries: List[WebhookAuditEntry] = Field(default_factory=list)


class SubscriptionResponse(BaseModel):
    userId: str
    tier: str
    status: str
    currentPeriodEnd: Optional[str] = None
    cancelAtPeriodEnd: bool = False
