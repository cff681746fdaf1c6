"""Execute an approved refund against the payment gateway.

This is the single "cancel at the gateway" primitive shared by the admin
console and the retry batch. Once the gateway has been called, the request
always ends in ``REFUNDED``, ``FAILED_RETRYABLE`` or ``FAILED_FINAL``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.billing_constants import OrderKind, RefundStatus
from core.logging import get_logger
from models.billing import BillingSubscription, RefundRequest
from services.billing import metrics, order_ledger, refund_store
from services.billing.config import BillingSettings, load_billing_settings
from services.billing.errors import (
    BillingError,
    GatewayConfigError,
    GatewayError,
    InvalidRefundStateError,
    RefundValidationError,
)
from services.billing.refund_store import Actor
from services.billing.toss_gateway import (
    SUCCESSFUL_CANCEL_STATUSES,
    TossPaymentsClient,
    build_cancel_idempotency_key,
    extract_cancel_transaction_key,
    get_toss_payments_client,
    normalize_accept_language,
)
from services.billing.webhook_events import is_valid_payment_key

logger = get_logger(__name__)

DEFAULT_CANCEL_REASON = "관리자 환불 승인"
DEFAULT_REFUNDED_NOTE = "관리자 수동 환불 완료"


@dataclass(frozen=True)
class ExecutionResult:
    request: RefundRequest
    cancel_status: str
    already_refunded: bool = False
    subscription: Optional[BillingSubscription] = None


def _reject_attempt(db: Session, request: RefundRequest, actor: Actor, code: str) -> RefundValidationError:
    refund_store.record_denied_attempt(db, request, action="execute", actor=actor, code=code)
    return RefundValidationError(code)


def _validate_target(db: Session, request: RefundRequest, actor: Actor, cancel_amount: Optional[int]) -> tuple[str, int]:
    order = order_ledger.get_order(db, request.order_id)
    if order is None:
        raise _reject_attempt(db, request, actor, "billing_order_not_found")
    if order.user_id != request.user_id:
        raise _reject_attempt(db, request, actor, "refund_order_user_mismatch")
    payment_key = request.payment_key_snapshot or order.payment_key
    if not is_valid_payment_key(payment_key):
        raise _reject_attempt(db, request, actor, "missing_payment_key_for_refund")
    amount = cancel_amount if cancel_amount is not None else (request.cancel_amount or order.amount)
    if amount is None or int(amount) <= 0 or int(amount) != int(order.amount):
        raise _reject_attempt(db, request, actor, "invalid_cancel_amount")
    return str(payment_key), int(amount)


async def execute_refund_request(
    db: Session,
    *,
    refund_id: int,
    actor: Actor,
    note: Optional[str] = None,
    cancel_amount: Optional[int] = None,
    accept_language: Optional[str] = None,
    settings: Optional[BillingSettings] = None,
    client: Optional[TossPaymentsClient] = None,
) -> ExecutionResult:
    settings = settings or load_billing_settings()
    request = refund_store.require_refund_request(db, refund_id)

    if request.status == RefundStatus.REFUNDED.value:
        refund_store.record_denied_attempt(
            db, request, action="execute", actor=actor, code="already_refunded", event_type="execute_noop"
        )
        return ExecutionResult(request=request, cancel_status="ALREADY_REFUNDED", already_refunded=True)
    if request.status not in refund_store.EXECUTABLE:
        refund_store.record_denied_attempt(
            db, request, action="execute", actor=actor, code=f"invalid_refund_request_state:{request.status}"
        )
        raise InvalidRefundStateError(request.status)

    payment_key, amount = _validate_target(db, request, actor, cancel_amount)
    request = refund_store.mark_executing(db, refund_id, actor=actor, note=note)
    log_context: Dict[str, Any] = {"refund_id": refund_id, "order_id": request.order_id, "actor": actor.actor_id}

    try:
        gateway = client or get_toss_payments_client(settings)
        payment = await gateway.cancel_payment(
            payment_key,
            cancel_reason=note or DEFAULT_CANCEL_REASON,
            cancel_amount=amount,
            idempotency_key=build_cancel_idempotency_key(request.order_id, refund_id),
            accept_language=normalize_accept_language(accept_language, settings.toss_accept_language),
        )
        cancel_status = str(payment.get("status") or "").upper()
        if cancel_status not in SUCCESSFUL_CANCEL_STATUSES:
            raise GatewayError("invalid_cancel_status", f"unexpected cancel status {cancel_status or 'EMPTY'}")
    except GatewayError as exc:
        if isinstance(exc, GatewayConfigError):
            logger.error("Refund %s cannot run: gateway configuration error %s.", refund_id, exc.code, extra={"refund": log_context})
        _record_failure(db, refund_id, actor=actor, exc=exc, settings=settings)
        raise
    except Exception as exc:
        logger.exception("Unexpected refund execution failure for refund %s.", refund_id, extra={"refund": log_context})
        _record_failure(
            db,
            refund_id,
            actor=actor,
            exc=GatewayError("refund_execute_failed", str(exc), retryable=True),
            settings=settings,
        )
        raise

    order = order_ledger.get_order(db, request.order_id)
    subscription: Optional[BillingSubscription] = None
    order_ledger.mark_order_canceled(
        db,
        order_id=request.order_id,
        status="CANCELED",
        message=f"Refund {refund_id} executed",
        snapshot=payment,
        allow_settled=True,
        commit=False,
    )
    if order is not None and order.order_kind == OrderKind.SUBSCRIPTION.value:
        subscription = order_ledger.downgrade_to_free_now(
            db, user_id=request.user_id, reason=f"refund:{refund_id}", commit=False
        )
    request = refund_store.mark_refunded(
        db,
        refund_id,
        actor=actor,
        transaction_key=extract_cancel_transaction_key(payment),
        note=note or DEFAULT_REFUNDED_NOTE,
        gateway_response=payment,
    )
    metrics.record_refund_execution("refunded")
    logger.info("Refund %s executed (cancelStatus=%s).", refund_id, cancel_status, extra={"refund": log_context})
    return ExecutionResult(request=request, cancel_status=cancel_status, subscription=subscription)


def _record_failure(
    db: Session,
    refund_id: int,
    *,
    actor: Actor,
    exc: GatewayError,
    settings: BillingSettings,
) -> None:
    try:
        updated = refund_store.mark_execution_failed(
            db,
            refund_id,
            actor=actor,
            error_code=exc.code,
            error_message=str(exc),
            retryable=exc.retryable,
            max_retries=settings.refund_max_retries,
            base_seconds=settings.refund_retry_base_seconds,
            max_seconds=settings.refund_retry_max_seconds,
        )
    except BillingError as store_exc:
        logger.warning("Refund %s failure could not be recorded: %s", refund_id, store_exc.code)
        return
    metrics.record_refund_execution(updated.status.lower())
    logger.warning(
        "Refund %s failed with %s -> %s (retry_count=%s).",
        refund_id,
        exc.code,
        updated.status,
        updated.retry_count,
    )


__all__ = [
    "DEFAULT_CANCEL_REASON",
    "ExecutionResult",
    "execute_refund_request",
]
