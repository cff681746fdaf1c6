"""Shared billing constants used across services and routers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional


class PlanTier(str, Enum):
    FREE = "free"
    PRO = "pro"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class OrderStatus(str, Enum):
    READY = "READY"
    DONE = "DONE"
    CANCELED = "CANCELED"
    PARTIAL_CANCELED = "PARTIAL_CANCELED"
    ABORTED = "ABORTED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"


class OrderKind(str, Enum):
    SUBSCRIPTION = "subscription"
    SHOP = "shop"


class RefundStatus(str, Enum):
    REQUESTED = "REQUESTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXECUTING = "EXECUTING"
    REFUNDED = "REFUNDED"
    FAILED_RETRYABLE = "FAILED_RETRYABLE"
    FAILED_FINAL = "FAILED_FINAL"
    WITHDRAWN = "WITHDRAWN"


class ActorRole(str, Enum):
    SYSTEM = "system"
    ADMIN = "admin"
    WEBHOOK = "webhook"
    USER = "user"


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    EXPIRED = "expired"


OPEN_REFUND_STATUSES: FrozenSet[RefundStatus] = frozenset(
    {
        RefundStatus.REQUESTED,
        RefundStatus.UNDER_REVIEW,
        RefundStatus.APPROVED,
        RefundStatus.EXECUTING,
        RefundStatus.FAILED_RETRYABLE,
    }
)
TERMINAL_REFUND_STATUSES: FrozenSet[RefundStatus] = frozenset(set(RefundStatus) - OPEN_REFUND_STATUSES)

# Gateway status groups as reported by Toss Payments.
DONE_GATEWAY_STATUSES: FrozenSet[str] = frozenset({"DONE"})
CANCEL_GATEWAY_STATUSES: FrozenSet[str] = frozenset({"CANCELED", "PARTIAL_CANCELED"})
FAILED_GATEWAY_STATUSES: FrozenSet[str] = frozenset({"ABORTED", "EXPIRED", "FAILED", "REJECTED"})

DEFAULT_PERIOD_DAYS = 30


@dataclass(frozen=True)
class PlanDefinition:
    tier: PlanTier
    title: str
    price_krw: int
    period_days: int
    order_name: str
    checkout_enabled: bool


PLAN_DEFINITIONS: Dict[PlanTier, PlanDefinition] = {
    PlanTier.FREE: PlanDefinition(
        tier=PlanTier.FREE,
        title="Free",
        price_krw=0,
        period_days=DEFAULT_PERIOD_DAYS,
        order_name="Free Plan",
        checkout_enabled=False,
    ),
    PlanTier.PRO: PlanDefinition(
        tier=PlanTier.PRO,
        title="Pro",
        price_krw=12900,
        period_days=DEFAULT_PERIOD_DAYS,
        order_name="Pro Monthly",
        checkout_enabled=True,
    ),
}


def as_plan_tier(value: object) -> Optional[PlanTier]:
    try:
        return PlanTier(str(value).strip().lower())
    except ValueError:
        return None


__all__ = [
    "ActorRole",
    "CANCEL_GATEWAY_STATUSES",
    "DEFAULT_PERIOD_DAYS",
    "DONE_GATEWAY_STATUSES",
    "FAILED_GATEWAY_STATUSES",
    "OPEN_REFUND_STATUSES",
    "OrderKind",
    "OrderStatus",
    "PLAN_DEFINITIONS",
    "PlanDefinition",
    "PlanTier",
    "RefundStatus",
    "SubscriptionStatus",
    "TERMINAL_REFUND_STATUSES",
    "as_plan_tier",
]
