"""Durable ledger of payment orders and the subscriptions they grant.

Writes that originate from webhook input are guarded by ``status != DONE`` at
the storage layer, so a settled order is never touched by a late or duplicate
notification.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from core.billing_constants import (
    CANCEL_GATEWAY_STATUSES,
    PLAN_DEFINITIONS,
    OrderKind,
    OrderStatus,
    PlanTier,
    SubscriptionStatus,
    as_plan_tier,
)
from core.logging import get_logger
from models.billing import BillingOrder, BillingSubscription
from services.billing.clock import as_utc, parse_iso_datetime, utcnow
from services.billing.errors import OrderLedgerError

logger = get_logger(__name__)

_FAIL_CODE_LIMIT = 80
_FAIL_MESSAGE_LIMIT = 220


@dataclass(frozen=True)
class OrderSettlement:
    order: BillingOrder
    applied: bool
    subscription: Optional[BillingSubscription] = None


def _clip(value: Optional[str], size: int) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()[:size]
    return text or None


def record_checkout(
    db: Session,
    *,
    order_id: str,
    user_id: str,
    amount: int,
    plan_tier: Optional[str] = None,
    order_kind: str = OrderKind.SUBSCRIPTION.value,
    currency: str = "KRW",
    order_name: Optional[str] = None,
    commit: bool = True,
) -> BillingOrder:
    """Persist a READY order. Checkout flows call this before redirecting to the gateway."""
    if amount <= 0:
        raise OrderLedgerError("invalid_order_amount")
    order = BillingOrder(
        order_id=order_id,
        user_id=user_id,
        amount=int(amount),
        plan_tier=plan_tier,
        order_kind=order_kind,
        currency=currency.upper(),
        order_name=order_name,
        status=OrderStatus.READY.value,
    )
    db.add(order)
    if commit:
        db.commit()
        db.refresh(order)
    else:
        db.flush()
    return order


def get_order(db: Session, order_id: str) -> Optional[BillingOrder]:
    return db.get(BillingOrder, order_id)


def list_orders(
    db: Session,
    *,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 50,
) -> List[BillingOrder]:
    stmt = select(BillingOrder).order_by(BillingOrder.created_at.desc(), BillingOrder.order_id.desc())
    if status:
        stmt = stmt.where(BillingOrder.status == status.upper())
    if user_id:
        stmt = stmt.where(BillingOrder.user_id == user_id)
    return list(db.scalars(stmt.limit(max(1, min(limit, 200)))))


def get_subscription(db: Session, user_id: str) -> BillingSubscription:
    subscription = db.get(BillingSubscription, user_id)
    if subscription is None:
        subscription = BillingSubscription(
            user_id=user_id,
            tier=PlanTier.FREE.value,
            status=SubscriptionStatus.INACTIVE.value,
            cancel_at_period_end=False,
        )
        db.add(subscription)
        db.flush()
    return subscription


def read_subscription(db: Session, user_id: str) -> Dict[str, Any]:
    """Subscription view for callers; a paid period that has ended reads as expired."""
    subscription = db.get(BillingSubscription, user_id)
    if subscription is None:
        return {
            "userId": user_id,
            "tier": PlanTier.FREE.value,
            "status": SubscriptionStatus.INACTIVE.value,
            "currentPeriodEnd": None,
            "cancelAtPeriodEnd": False,
        }
    tier = subscription.tier
    status = subscription.status
    period_end = as_utc(subscription.current_period_end)
    if tier != PlanTier.FREE.value and status == SubscriptionStatus.ACTIVE.value:
        if period_end is not None and period_end <= utcnow():
            status = SubscriptionStatus.EXPIRED.value
            tier = PlanTier.FREE.value
    return {
        "userId": user_id,
        "tier": tier,
        "status": status,
        "currentPeriodEnd": period_end.isoformat() if period_end else None,
        "cancelAtPeriodEnd": bool(subscription.cancel_at_period_end),
    }


def _apply_plan_grant(db: Session, order: BillingOrder, tier: PlanTier) -> BillingSubscription:
    plan = PLAN_DEFINITIONS[tier]
    now = utcnow()
    subscription = get_subscription(db, order.user_id)
    current_end = as_utc(subscription.current_period_end)
    same_plan_running = (
        subscription.tier == tier.value
        and subscription.status == SubscriptionStatus.ACTIVE.value
        and current_end is not None
        and current_end > now
    )
    base = current_end if same_plan_running and current_end is not None else now
    subscription.tier = tier.value
    subscription.status = SubscriptionStatus.ACTIVE.value
    if not same_plan_running:
        subscription.current_period_start = now
    subscription.current_period_end = base + timedelta(days=plan.period_days)
    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    subscription.cancel_reason = None
    subscription.last_order_id = order.order_id
    return subscription


def mark_order_done_and_apply_plan(
    db: Session,
    *,
    order_id: str,
    payment_key: str,
    approved_at: Optional[str] = None,
    amount: Optional[int] = None,
    snapshot: Optional[Dict[str, Any]] = None,
) -> OrderSettlement:
    """Settle an order exactly once and grant its plan in the same transaction."""
    order = get_order(db, order_id)
    if order is None:
        raise OrderLedgerError("billing_order_not_found")
    if amount is not None and int(amount) != int(order.amount):
        raise OrderLedgerError("amount_mismatch", f"amount_mismatch:{amount}!={order.amount}")
    if order.status == OrderStatus.DONE.value:
        return OrderSettlement(order=order, applied=False)
    if order.status in CANCEL_GATEWAY_STATUSES:
        raise OrderLedgerError("order_canceled")

    tier: Optional[PlanTier] = None
    if order.order_kind == OrderKind.SUBSCRIPTION.value:
        tier = as_plan_tier(order.plan_tier)
        if tier is None or tier is PlanTier.FREE:
            raise OrderLedgerError("invalid_plan")

    result = db.execute(
        update(BillingOrder)
        .where(BillingOrder.order_id == order_id, BillingOrder.status != OrderStatus.DONE.value)
        .values(
            status=OrderStatus.DONE.value,
            payment_key=payment_key,
            approved_at=parse_iso_datetime(approved_at) or utcnow(),
            fail_code=None,
            fail_message=None,
            gateway_snapshot=snapshot,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        logger.info("Order %s was settled concurrently; skipping plan grant.", order_id)
        db.refresh(order)
        return OrderSettlement(order=order, applied=False)

    subscription = _apply_plan_grant(db, order, tier) if tier is not None else None
    db.commit()
    db.refresh(order)
    logger.info("Order %s settled (tier=%s).", order_id, tier.value if tier else None)
    return OrderSettlement(order=order, applied=True, subscription=subscription)


def mark_order_canceled(
    db: Session,
    *,
    order_id: str,
    status: str = OrderStatus.CANCELED.value,
    message: Optional[str] = None,
    snapshot: Optional[Dict[str, Any]] = None,
    allow_settled: bool = False,
    commit: bool = True,
) -> bool:
    """Move an order to a cancel state. Settled orders move only with ``allow_settled``.

    Returns False when the order is already in that state (or fully canceled
    when a partial cancel arrives), so callers can tell a redelivery apart
    from a real transition.
    """
    if status not in CANCEL_GATEWAY_STATUSES:
        status = OrderStatus.CANCELED.value
    unchanged = {status}
    if status == OrderStatus.PARTIAL_CANCELED.value:
        unchanged.add(OrderStatus.CANCELED.value)
    if not allow_settled:
        unchanged.add(OrderStatus.DONE.value)
    values: Dict[str, Any] = {
        "status": status,
        "fail_code": "canceled",
        "fail_message": _clip(message, _FAIL_MESSAGE_LIMIT),
    }
    if snapshot is not None:
        values["gateway_snapshot"] = snapshot
    stmt = update(BillingOrder).where(BillingOrder.order_id == order_id, BillingOrder.status.notin_(sorted(unchanged)))
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if commit:
        db.commit()
    return result.rowcount > 0


def mark_order_failed(
    db: Session,
    *,
    order_id: str,
    code: str,
    message: Optional[str] = None,
    snapshot: Optional[Dict[str, Any]] = None,
) -> bool:
    values: Dict[str, Any] = {
        "status": OrderStatus.FAILED.value,
        "fail_code": _clip(code, _FAIL_CODE_LIMIT),
        "fail_message": _clip(message, _FAIL_MESSAGE_LIMIT),
    }
    if snapshot is not None:
        values["gateway_snapshot"] = snapshot
    result = db.execute(
        update(BillingOrder)
        .where(BillingOrder.order_id == order_id, BillingOrder.status != OrderStatus.DONE.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount > 0


def downgrade_to_free_now(
    db: Session,
    *,
    user_id: str,
    reason: str,
    commit: bool = True,
) -> BillingSubscription:
    now = utcnow()
    subscription = get_subscription(db, user_id)
    subscription.tier = PlanTier.FREE.value
    subscription.status = SubscriptionStatus.INACTIVE.value
    subscription.current_period_end = now
    subscription.cancel_at_period_end = False
    subscription.canceled_at = now
    subscription.cancel_reason = _clip(reason, _FAIL_MESSAGE_LIMIT)
    if commit:
        db.commit()
        db.refresh(subscription)
    else:
        db.flush()
    logger.info("Subscription for user %s downgraded to free: %s", user_id, reason)
    return subscription


__all__ = [
    "OrderSettlement",
    "downgrade_to_free_now",
    "get_order",
    "get_subscription",
    "list_orders",
    "mark_order_canceled",
    "mark_order_done_and_apply_plan",
    "mark_order_failed",
    "read_subscription",
    "record_checkout",
]
