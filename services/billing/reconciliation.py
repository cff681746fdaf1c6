"""Apply typed webhook events to the order ledger and the refund store.

``apply_webhook_event`` never raises for input the gateway can't fix by
retrying: unusable payloads, unknown orders and ledger rule violations come
back as ``accepted=False`` outcomes. Anything else propagates so the HTTP
layer can answer 5xx and let the gateway redeliver.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.billing_constants import OrderKind, OrderStatus
from core.logging import get_logger
from models.billing import BillingOrder
from services.billing import order_ledger, refund_store
from services.billing.errors import (
    BillingError,
    InvalidRefundStateError,
    OrderLedgerError,
    RefundConflictError,
)
from services.billing.refund_store import WEBHOOK_ACTOR
from services.billing.webhook_events import (
    Ignored,
    PaymentCanceled,
    PaymentDone,
    PaymentFailed,
    WebhookEvent,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReconcileOutcome:
    accepted: bool
    reason: Optional[str] = None
    action: Optional[str] = None
    order_id: Optional[str] = None
    synced_refund_id: Optional[int] = None

    def as_payload(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "accepted": self.accepted,
            "reason": self.reason,
            "action": self.action,
            "orderId": self.order_id,
            "syncedRefundId": self.synced_refund_id,
        }


@dataclass(frozen=True)
class RefundSyncResult:
    refund_id: Optional[int] = None
    error: Optional[BillingError] = None


def sync_refund_request_from_gateway_cancel(
    db: Session,
    *,
    order_id: str,
    status: str,
    transaction_key: Optional[str],
) -> RefundSyncResult:
    """Close the open refund request for a fully canceled order.

    Compensating action: it never raises. A request that another actor already
    moved on is a benign race; any other failure is returned in ``error``.
    """
    if status != OrderStatus.CANCELED.value:
        return RefundSyncResult()
    try:
        pending = refund_store.find_open_refund_request(db, order_id)
        if pending is None:
            return RefundSyncResult()
        synced = refund_store.mark_refunded_by_system(
            db,
            pending.id,
            transaction_key=transaction_key,
            note=f"Webhook cancel sync: {status}",
        )
        logger.info("Refund %s closed by gateway cancel for order %s.", synced.id, order_id)
        return RefundSyncResult(refund_id=synced.id)
    except (InvalidRefundStateError, RefundConflictError) as exc:
        logger.info("Refund sync for order %s skipped: %s", order_id, exc.code)
        return RefundSyncResult()
    except Exception as exc:
        db.rollback()
        logger.warning("Refund sync for order %s failed: %s", order_id, exc, exc_info=True)
        return RefundSyncResult(error=BillingError("refund_sync_failed", str(exc)))


def _settle(db: Session, order: BillingOrder, event: PaymentDone) -> ReconcileOutcome:
    if not event.payment_key:
        return ReconcileOutcome(accepted=False, reason="missing_payment_key", order_id=order.order_id)
    settlement = order_ledger.mark_order_done_and_apply_plan(
        db,
        order_id=order.order_id,
        payment_key=event.payment_key,
        approved_at=event.approved_at,
        amount=event.amount if event.amount is not None else order.amount,
        snapshot=event.raw,
    )
    if not settlement.applied:
        return ReconcileOutcome(accepted=True, reason="already_done", order_id=order.order_id)
    return ReconcileOutcome(accepted=True, action="done", order_id=order.order_id)


def _cancel(db: Session, order: BillingOrder, event: PaymentCanceled) -> ReconcileOutcome:
    order_id = order.order_id
    user_id = order.user_id
    is_subscription = order.order_kind == OrderKind.SUBSCRIPTION.value
    transitioned = order_ledger.mark_order_canceled(
        db,
        order_id=order_id,
        status=event.status,
        message=f"Webhook cancel status: {event.status}",
        snapshot=event.raw,
    )
    sync = sync_refund_request_from_gateway_cancel(
        db, order_id=order_id, status=event.status, transaction_key=event.transaction_key
    )
    if sync.error is not None:
        logger.warning("Order %s canceled but refund sync reported %s.", order_id, sync.error.code)
    if not transitioned:
        # Redelivery: the downgrade already ran for this order.
        logger.info("Cancel for order %s already applied; skipping downgrade.", order_id)
        return ReconcileOutcome(
            accepted=True, reason="already_canceled", order_id=order_id, synced_refund_id=sync.refund_id
        )
    if is_subscription and event.status == OrderStatus.CANCELED.value:
        order_ledger.downgrade_to_free_now(db, user_id=user_id, reason=f"Webhook cancel: {event.status}")
    return ReconcileOutcome(accepted=True, action="canceled", order_id=order_id, synced_refund_id=sync.refund_id)


def _fail(db: Session, order: BillingOrder, event: PaymentFailed) -> ReconcileOutcome:
    order_ledger.mark_order_failed(
        db,
        order_id=order.order_id,
        code=event.fail_code,
        message=f"Webhook status: {event.status}",
        snapshot=event.raw,
    )
    return ReconcileOutcome(accepted=True, action="failed", order_id=order.order_id)


def apply_webhook_event(db: Session, event: WebhookEvent) -> ReconcileOutcome:
    if isinstance(event, Ignored) and event.reason == "ignored_payload":
        return ReconcileOutcome(accepted=False, reason=event.reason, order_id=event.order_id)

    order = order_ledger.get_order(db, event.order_id) if event.order_id else None
    if order is None or not order.user_id:
        return ReconcileOutcome(accepted=False, reason="unknown_order", order_id=event.order_id)
    if order.status == OrderStatus.DONE.value:
        return ReconcileOutcome(accepted=True, reason="already_done", order_id=order.order_id)

    if isinstance(event, Ignored):
        return ReconcileOutcome(accepted=False, reason=event.reason, order_id=order.order_id)

    try:
        if isinstance(event, PaymentDone):
            return _settle(db, order, event)
        if isinstance(event, PaymentCanceled):
            return _cancel(db, order, event)
        return _fail(db, order, event)
    except OrderLedgerError as exc:
        db.rollback()
        logger.error("Webhook for order %s rejected by ledger: %s", order.order_id, exc.code)
        return ReconcileOutcome(accepted=False, reason=exc.code, order_id=order.order_id)


__all__ = [
    "ReconcileOutcome",
    "RefundSyncResult",
    "apply_webhook_event",
    "sync_refund_request_from_gateway_cancel",
]
