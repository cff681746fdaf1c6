"""Refund request workflow store and its append-only event log.

Every transition follows the same shape:

1. read the current row,
2. check it is in the legal source set for the action,
3. write the new status guarded by ``WHERE status = <observed status>``,
4. append exactly one :class:`RefundEvent` describing the attempt.

A source-state miss or a lost race still appends an event (``transition_denied``
or ``transition_conflict``) and leaves the row untouched, so the log length
always equals the number of attempts made against a request.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.billing_constants import OPEN_REFUND_STATUSES, ActorRole, OrderStatus, RefundStatus
from core.logging import get_logger
from models.billing import RefundEvent, RefundRequest
from services.billing import order_ledger
from services.billing.clock import utcnow
from services.billing.errors import (
    InvalidRefundStateError,
    RefundAlreadyOpenError,
    RefundConflictError,
    RefundForbiddenError,
    RefundRequestNotFound,
    RefundValidationError,
)

logger = get_logger(__name__)

_ERROR_CODE_LIMIT = 120
_ERROR_MESSAGE_LIMIT = 500
_NOTE_LIMIT = 500

REVIEWABLE: FrozenSet[str] = frozenset({RefundStatus.REQUESTED.value, RefundStatus.FAILED_RETRYABLE.value})
APPROVABLE: FrozenSet[str] = frozenset(
    {RefundStatus.REQUESTED.value, RefundStatus.UNDER_REVIEW.value, RefundStatus.FAILED_RETRYABLE.value}
)
REJECTABLE: FrozenSet[str] = frozenset(
    {
        RefundStatus.REQUESTED.value,
        RefundStatus.UNDER_REVIEW.value,
        RefundStatus.APPROVED.value,
        RefundStatus.FAILED_RETRYABLE.value,
    }
)
EXECUTABLE: FrozenSet[str] = frozenset(
    {RefundStatus.APPROVED.value, RefundStatus.FAILED_RETRYABLE.value, RefundStatus.EXECUTING.value}
)
WITHDRAWABLE: FrozenSet[str] = frozenset(
    {
        RefundStatus.REQUESTED.value,
        RefundStatus.UNDER_REVIEW.value,
        RefundStatus.APPROVED.value,
        RefundStatus.FAILED_RETRYABLE.value,
    }
)
OPEN_STATUS_VALUES: FrozenSet[str] = frozenset(status.value for status in OPEN_REFUND_STATUSES)


@dataclass(frozen=True)
class Actor:
    role: ActorRole
    actor_id: Optional[str] = None


SYSTEM_ACTOR = Actor(ActorRole.SYSTEM, "system")
WEBHOOK_ACTOR = Actor(ActorRole.WEBHOOK, "webhook")


def _clip(value: Optional[str], size: int) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()[:size]
    return text or None


def compute_next_retry_at(
    retry_count: int,
    *,
    base_seconds: int,
    max_seconds: int,
    now: Optional[datetime] = None,
) -> datetime:
    """Exponential backoff: ``base * 2**(retry_count - 1)`` capped at ``max_seconds``."""
    exponent = max(0, retry_count - 1)
    delay = min(base_seconds * (2 ** min(exponent, 32)), max_seconds)
    return (now or utcnow()) + timedelta(seconds=delay)


def append_event(
    db: Session,
    *,
    request_id: int,
    event_type: str,
    from_status: Optional[str],
    to_status: Optional[str],
    actor: Actor,
    message: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> RefundEvent:
    event = RefundEvent(
        refund_request_id=request_id,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        actor_role=actor.role.value,
        actor_id=actor.actor_id,
        message=_clip(message, _NOTE_LIMIT),
        metadata_json=metadata,
    )
    db.add(event)
    db.flush()
    return event


def get_refund_request(db: Session, request_id: int, *, refresh: bool = False) -> Optional[RefundRequest]:
    stmt = select(RefundRequest).where(RefundRequest.id == request_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return db.scalars(stmt).first()


def require_refund_request(db: Session, request_id: int) -> RefundRequest:
    request = get_refund_request(db, request_id, refresh=True)
    if request is None:
        raise RefundRequestNotFound()
    return request


def find_open_refund_request(db: Session, order_id: str) -> Optional[RefundRequest]:
    stmt = (
        select(RefundRequest)
        .where(RefundRequest.order_id == order_id, RefundRequest.status.in_(OPEN_STATUS_VALUES))
        .order_by(RefundRequest.id.desc())
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).first()


def list_refund_requests(
    db: Session,
    *,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 50,
) -> List[RefundRequest]:
    stmt = select(RefundRequest).order_by(RefundRequest.id.desc())
    if status:
        stmt = stmt.where(RefundRequest.status == status)
    if user_id:
        stmt = stmt.where(RefundRequest.user_id == user_id)
    return list(db.scalars(stmt.limit(max(1, min(limit, 200)))))


def list_refund_events(db: Session, request_id: int, *, limit: int = 200) -> List[RefundEvent]:
    stmt = (
        select(RefundEvent)
        .where(RefundEvent.refund_request_id == request_id)
        .order_by(RefundEvent.id.asc())
        .limit(max(1, min(limit, 200)))
    )
    return list(db.scalars(stmt))


def list_due_retryable(db: Session, *, limit: int, now: Optional[datetime] = None) -> List[RefundRequest]:
    """Oldest-due first. Rows without ``next_retry_at`` are due immediately."""
    moment = now or utcnow()
    stmt = (
        select(RefundRequest)
        .where(
            RefundRequest.status == RefundStatus.FAILED_RETRYABLE.value,
            (RefundRequest.next_retry_at.is_(None)) | (RefundRequest.next_retry_at <= moment),
        )
        .order_by(RefundRequest.next_retry_at.asc(), RefundRequest.id.asc())
        .limit(max(1, limit))
    )
    return list(db.scalars(stmt))


def create_refund_request(
    db: Session,
    *,
    order_id: str,
    user_id: str,
    reason: Optional[str],
    cancel_amount: Optional[int] = None,
    actor: Optional[Actor] = None,
) -> RefundRequest:
    """Open a refund request for a settled order; one open request per order."""
    reason_text = _clip(reason, _NOTE_LIMIT)
    if not reason_text:
        raise RefundValidationError("refund_reason_required")
    order = order_ledger.get_order(db, order_id)
    if order is None or order.user_id != user_id:
        raise RefundValidationError("billing_order_not_found")
    if order.status != OrderStatus.DONE.value:
        raise RefundValidationError("refund_order_not_settled")
    if find_open_refund_request(db, order_id) is not None:
        raise RefundAlreadyOpenError()

    request = RefundRequest(
        order_id=order_id,
        user_id=user_id,
        status=RefundStatus.REQUESTED.value,
        reason=reason_text,
        cancel_amount=int(cancel_amount) if cancel_amount is not None else int(order.amount),
        currency=order.currency,
        payment_key_snapshot=order.payment_key,
        retry_count=0,
    )
    db.add(request)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise RefundAlreadyOpenError() from exc
    append_event(
        db,
        request_id=request.id,
        event_type="requested",
        from_status=None,
        to_status=RefundStatus.REQUESTED.value,
        actor=actor or Actor(ActorRole.USER, user_id),
        message=reason_text,
    )
    db.commit()
    db.refresh(request)
    logger.info("Refund request %s opened for order %s.", request.id, order_id)
    return request


def record_denied_attempt(
    db: Session,
    request: RefundRequest,
    *,
    action: str,
    actor: Actor,
    code: str,
    event_type: str = "transition_denied",
) -> None:
    """Log an attempt that left the row untouched."""
    append_event(
        db,
        request_id=request.id,
        event_type=event_type,
        from_status=request.status,
        to_status=request.status,
        actor=actor,
        message=f"{action}: {code}",
        metadata={"action": action},
    )
    db.commit()


def _transition(
    db: Session,
    request_id: int,
    *,
    action: str,
    sources: Iterable[str],
    target: RefundStatus,
    actor: Actor,
    message: Optional[str] = None,
    values: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> RefundRequest:
    request = require_refund_request(db, request_id)
    observed = request.status
    if observed not in frozenset(sources):
        record_denied_attempt(db, request, action=action, actor=actor, code=f"invalid_refund_request_state:{observed}")
        logger.info("Refund %s: %s denied from %s.", request_id, action, observed)
        raise InvalidRefundStateError(observed)

    result = db.execute(
        update(RefundRequest)
        .where(RefundRequest.id == request_id, RefundRequest.status == observed)
        .values(status=target.value, updated_at=utcnow(), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        current = require_refund_request(db, request_id)
        record_denied_attempt(
            db, current, action=action, actor=actor, code="refund_request_conflict", event_type="transition_conflict"
        )
        logger.info("Refund %s: %s lost a race (observed %s, now %s).", request_id, action, observed, current.status)
        raise RefundConflictError()

    append_event(
        db,
        request_id=request_id,
        event_type=action,
        from_status=observed,
        to_status=target.value,
        actor=actor,
        message=message,
        metadata=metadata,
    )
    if commit:
        db.commit()
    else:
        db.flush()
    return require_refund_request(db, request_id)


def mark_under_review(db: Session, request_id: int, *, actor: Actor, note: Optional[str] = None) -> RefundRequest:
    return _transition(
        db,
        request_id,
        action="review",
        sources=REVIEWABLE,
        target=RefundStatus.UNDER_REVIEW,
        actor=actor,
        message=note,
        values={"reviewed_by": actor.actor_id, "reviewed_at": utcnow(), "admin_note": _clip(note, _NOTE_LIMIT)},
    )


def mark_approved(db: Session, request_id: int, *, actor: Actor, note: Optional[str] = None) -> RefundRequest:
    return _transition(
        db,
        request_id,
        action="approve",
        sources=APPROVABLE,
        target=RefundStatus.APPROVED,
        actor=actor,
        message=note,
        values={"reviewed_by": actor.actor_id, "reviewed_at": utcnow(), "admin_note": _clip(note, _NOTE_LIMIT)},
    )


def mark_rejected(
    db: Session,
    request_id: int,
    *,
    actor: Actor,
    reason: Optional[str],
    note: Optional[str] = None,
) -> RefundRequest:
    reason_text = _clip(reason, _NOTE_LIMIT)
    if not reason_text:
        raise RefundValidationError("refund_reason_required")
    return _transition(
        db,
        request_id,
        action="reject",
        sources=REJECTABLE,
        target=RefundStatus.REJECTED,
        actor=actor,
        message=note or reason_text,
        values={
            "reject_reason": reason_text,
            "reviewed_by": actor.actor_id,
            "reviewed_at": utcnow(),
            "admin_note": _clip(note, _NOTE_LIMIT),
            "next_retry_at": None,
        },
    )


def mark_executing(db: Session, request_id: int, *, actor: Actor, note: Optional[str] = None) -> RefundRequest:
    return _transition(
        db,
        request_id,
        action="execution_started",
        sources=EXECUTABLE,
        target=RefundStatus.EXECUTING,
        actor=actor,
        message=note,
        values={"next_retry_at": None},
    )


def mark_refunded(
    db: Session,
    request_id: int,
    *,
    actor: Actor,
    transaction_key: Optional[str],
    note: Optional[str] = None,
    gateway_response: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> RefundRequest:
    return _transition(
        db,
        request_id,
        action="refunded",
        sources={RefundStatus.EXECUTING.value},
        target=RefundStatus.REFUNDED,
        actor=actor,
        message=note,
        values={
            "toss_cancel_transaction_key": _clip(transaction_key, 220),
            "executed_by": actor.actor_id,
            "executed_at": utcnow(),
            "error_code": None,
            "error_message": None,
            "next_retry_at": None,
            "gateway_response": gateway_response,
        },
        commit=commit,
    )


def mark_refunded_by_system(
    db: Session,
    request_id: int,
    *,
    transaction_key: Optional[str],
    note: Optional[str] = None,
    actor: Actor = WEBHOOK_ACTOR,
    commit: bool = True,
) -> RefundRequest:
    """Close an open request because the gateway reported the cancel on its own."""
    return _transition(
        db,
        request_id,
        action="refunded_by_system",
        sources=OPEN_STATUS_VALUES,
        target=RefundStatus.REFUNDED,
        actor=actor,
        message=note,
        values={
            "toss_cancel_transaction_key": _clip(transaction_key, 220),
            "executed_by": actor.actor_id,
            "executed_at": utcnow(),
            "error_code": None,
            "error_message": None,
            "next_retry_at": None,
        },
        commit=commit,
    )


def mark_execution_failed(
    db: Session,
    request_id: int,
    *,
    actor: Actor,
    error_code: str,
    error_message: Optional[str] = None,
    retryable: bool,
    max_retries: int,
    base_seconds: int,
    max_seconds: int,
) -> RefundRequest:
    """Record a failed gateway attempt; retryable failures back off until the ceiling."""
    current = require_refund_request(db, request_id)
    attempts = int(current.retry_count or 0) + 1
    if retryable and attempts < max_retries:
        target = RefundStatus.FAILED_RETRYABLE
        next_retry_at: Optional[datetime] = compute_next_retry_at(
            attempts, base_seconds=base_seconds, max_seconds=max_seconds
        )
    else:
        target = RefundStatus.FAILED_FINAL
        next_retry_at = None
    return _transition(
        db,
        request_id,
        action="execution_failed",
        sources={RefundStatus.EXECUTING.value},
        target=target,
        actor=actor,
        message=f"{error_code}: {error_message}" if error_message else error_code,
        values={
            "error_code": _clip(error_code, _ERROR_CODE_LIMIT),
            "error_message": _clip(error_message, _ERROR_MESSAGE_LIMIT),
            "retry_count": attempts,
            "next_retry_at": next_retry_at,
        },
        metadata={"retryable": retryable, "attempt": attempts},
    )


def escalate_exhausted(db: Session, request_id: int, *, actor: Actor = SYSTEM_ACTOR) -> RefundRequest:
    return _transition(
        db,
        request_id,
        action="retry_exhausted",
        sources={RefundStatus.FAILED_RETRYABLE.value},
        target=RefundStatus.FAILED_FINAL,
        actor=actor,
        message="retry_ceiling_reached",
        values={"next_retry_at": None},
    )


def withdraw_by_user(db: Session, request_id: int, *, user_id: str, note: Optional[str] = None) -> RefundRequest:
    request = require_refund_request(db, request_id)
    if request.user_id != user_id:
        raise RefundForbiddenError()
    return _transition(
        db,
        request_id,
        action="withdraw",
        sources=WITHDRAWABLE,
        target=RefundStatus.WITHDRAWN,
        actor=Actor(ActorRole.USER, user_id),
        message=note,
        values={"next_retry_at": None},
    )


__all__ = [
    "Actor",
    "SYSTEM_ACTOR",
    "WEBHOOK_ACTOR",
    "append_event",
    "compute_next_retry_at",
    "create_refund_request",
    "escalate_exhausted",
    "find_open_refund_request",
    "get_refund_request",
    "list_due_retryable",
    "list_refund_events",
    "list_refund_requests",
    "mark_approved",
    "mark_executing",
    "mark_execution_failed",
    "mark_refunded",
    "mark_refunded_by_system",
    "mark_rejected",
    "mark_under_review",
    "require_refund_request",
    "withdraw_by_user",
]
