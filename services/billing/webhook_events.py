"""Narrow raw webhook bodies into a closed set of typed events.

The reconciliation code only ever sees one of :class:`PaymentDone`,
:class:`PaymentCanceled`, :class:`PaymentFailed` or :class:`Ignored`.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from core.billing_constants import (
    CANCEL_GATEWAY_STATUSES,
    DONE_GATEWAY_STATUSES,
    FAILED_GATEWAY_STATUSES,
)
from core.logging import get_logger
from schemas.api.billing import TossWebhookPayload

logger = get_logger(__name__)

ORDER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{6,80}$")
PAYMENT_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{10,220}$")

EVENT_PAYMENT_STATUS_CHANGED = "PAYMENT_STATUS_CHANGED"
EVENT_DEPOSIT_CALLBACK = "DEPOSIT_CALLBACK"
EVENT_CANCEL_STATUS_CHANGED = "CANCEL_STATUS_CHANGED"

_PAYMENT_EVENTS = {EVENT_PAYMENT_STATUS_CHANGED, EVENT_DEPOSIT_CALLBACK}


@dataclass(frozen=True)
class PaymentDone:
    event_type: str
    order_id: str
    payment_key: Optional[str]
    approved_at: Optional[str]
    amount: Optional[int]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)
    status: str = "DONE"


@dataclass(frozen=True)
class PaymentCanceled:
    event_type: str
    order_id: str
    status: str
    transaction_key: Optional[str]
    amount: Optional[int]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class PaymentFailed:
    event_type: str
    order_id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def fail_code(self) -> str:
        return f"webhook_{self.status.lower()}"[:80]


@dataclass(frozen=True)
class Ignored:
    reason: str
    event_type: Optional[str] = None
    order_id: Optional[str] = None
    status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


WebhookEvent = Union[PaymentDone, PaymentCanceled, PaymentFailed, Ignored]


def is_valid_order_id(value: Optional[str]) -> bool:
    return bool(value) and ORDER_ID_PATTERN.match(value) is not None


def is_valid_payment_key(value: Optional[str]) -> bool:
    return bool(value) and PAYMENT_KEY_PATTERN.match(value) is not None


def _decode(body: Union[bytes, str, Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if isinstance(body, dict):
        return body
    try:
        text = body.decode("utf-8") if isinstance(body, bytes) else body
        decoded = json.loads(text)
    except (UnicodeDecodeError, ValueError):
        return None
    return decoded if isinstance(decoded, dict) else None


def _cancel_transaction_key(payload: TossWebhookPayload) -> Optional[str]:
    for entry in payload.data.cancels[:1]:
        if entry.transactionKey:
            return entry.transactionKey
    return payload.data.lastTransactionKey


def parse_webhook_event(body: Union[bytes, str, Dict[str, Any]]) -> WebhookEvent:
    """Validate an untyped webhook body; anything unusable becomes :class:`Ignored`."""
    raw = _decode(body)
    if raw is None:
        logger.info("Webhook body is not a JSON object.")
        return Ignored(reason="ignored_payload")
    try:
        payload = TossWebhookPayload.model_validate(raw)
    except ValidationError as exc:
        logger.info("Webhook payload failed validation: %s", exc.errors()[:3])
        return Ignored(reason="ignored_payload", raw=raw)

    data = payload.data
    event_type = payload.eventType or payload.event_type
    order_id = data.orderId or payload.orderId
    status = (data.status or payload.status or "").upper() or None
    if not event_type or not is_valid_order_id(order_id):
        return Ignored(reason="ignored_payload", event_type=event_type, order_id=order_id, status=status, raw=raw)

    event_type = event_type.upper()
    amount = next(
        (value for value in (data.totalAmount, data.balanceAmount, data.suppliedAmount, payload.totalAmount) if value is not None),
        None,
    )

    if event_type in _PAYMENT_EVENTS:
        if status in DONE_GATEWAY_STATUSES:
            payment_key = data.paymentKey or payload.paymentKey
            return PaymentDone(
                event_type=event_type,
                order_id=order_id,
                payment_key=payment_key if is_valid_payment_key(payment_key) else None,
                approved_at=data.approvedAt or payload.approvedAt,
                amount=amount,
                raw=raw,
            )
        if status in CANCEL_GATEWAY_STATUSES:
            return PaymentCanceled(
                event_type=event_type,
                order_id=order_id,
                status=status,
                transaction_key=_cancel_transaction_key(payload),
                amount=amount,
                raw=raw,
            )
        if status in FAILED_GATEWAY_STATUSES and event_type == EVENT_PAYMENT_STATUS_CHANGED:
            return PaymentFailed(event_type=event_type, order_id=order_id, status=status, raw=raw)
        return Ignored(reason="ignored_status", event_type=event_type, order_id=order_id, status=status, raw=raw)

    if event_type == EVENT_CANCEL_STATUS_CHANGED:
        if status in CANCEL_GATEWAY_STATUSES:
            return PaymentCanceled(
                event_type=event_type,
                order_id=order_id,
                status=status,
                transaction_key=_cancel_transaction_key(payload),
                amount=amount,
                raw=raw,
            )
        return Ignored(reason="ignored_status", event_type=event_type, order_id=order_id, status=status, raw=raw)

    return Ignored(reason="ignored_event", event_type=event_type, order_id=order_id, status=status, raw=raw)


__all__ = [
    "EVENT_CANCEL_STATUS_CHANGED",
    "EVENT_DEPOSIT_CALLBACK",
    "EVENT_PAYMENT_STATUS_CHANGED",
    "Ignored",
    "PaymentCanceled",
    "PaymentDone",
    "PaymentFailed",
    "WebhookEvent",
    "is_valid_order_id",
    "is_valid_payment_key",
    "parse_webhook_event",
]
