from __future__ import annotations

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
    text,
)

from core.billing_constants import OPEN_REFUND_STATUSES
from database import Base

_OPEN_STATUS_PREDICATE = "status IN ({})".format(
    ", ".join(f"'{value}'" for value in sorted(status.value for status in OPEN_REFUND_STATUSES))
)


class BillingOrder(Base):
    """결제 주문 원장. orderId 당 한 행이며 DONE 이후에는 웹훅이 값을 바꾸지 않는다."""

    __tablename__ = "billing_orders"

    order_id = Column(String(80), primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    order_kind = Column(String(20), nullable=False, default="subscription")
    plan_tier = Column(String(20), nullable=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="KRW")
    order_name = Column(String, nullable=True)
    status = Column(String(20), nullable=False, default="READY", index=True)
    payment_key = Column(String(220), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    fail_code = Column(String(80), nullable=True)
    fail_message = Column(String(220), nullable=True)
    gateway_snapshot = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class BillingSubscription(Base):
    """사용자별 구독 상태."""

    __tablename__ = "billing_subscriptions"

    user_id = Column(String, primary_key=True)
    tier = Column(String(20), nullable=False, default="free")
    status = Column(String(20), nullable=False, default="inactive")
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(String(220), nullable=True)
    last_order_id = Column(String(80), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class RefundRequest(Base):
    """환불 요청 워크플로 레코드."""

    __tablename__ = "billing_refund_requests"
    __table_args__ = (
        # One open request per order; closed requests stay as history.
        Index(
            "uq_billing_refund_requests_open_order",
            "order_id",
            unique=True,
            postgresql_where=text(_OPEN_STATUS_PREDICATE),
            sqlite_where=text(_OPEN_STATUS_PREDICATE),
        ),
        Index("ix_billing_refund_requests_retry_due", "status", "next_retry_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(80), ForeignKey("billing_orders.order_id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="REQUESTED")
    reason = Column(Text, nullable=False)
    cancel_amount = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=False, default="KRW")
    payment_key_snapshot = Column(String(220), nullable=True)
    admin_note = Column(Text, nullable=True)
    reject_reason = Column(Text, nullable=True)
    error_code = Column(String(120), nullable=True)
    error_message = Column(String(500), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    executed_by = Column(String, nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    toss_cancel_transaction_key = Column(String(220), nullable=True)
    gateway_response = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class RefundEvent(Base):
    """환불 요청 감사 이벤트. 한 번 기록되면 수정/삭제하지 않는다."""

    __tablename__ = "billing_refund_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    refund_request_id = Column(Integer, ForeignKey("billing_refund_requests.id"), nullable=False, index=True)
    event_type = Column(String(60), nullable=False)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    actor_role = Column(String(20), nullable=False)
    actor_id = Column(String, nullable=True)
    message = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)


class BillingWebhookEventLog(Base):
    """결제 웹훅 처리 결과 감사 로그."""

    __tablename__ = "billing_webhook_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(String(80), nullable=True, index=True)
    event_type = Column(String, nullable=True, index=True)
    status = Column(String, nullable=True)
    result = Column(String, nullable=False, index=True)
    action = Column(String, nullable=True)
    client_ip = Column(String, nullable=True)
    message = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
