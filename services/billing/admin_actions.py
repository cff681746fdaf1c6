"""Operator-facing refund actions.

Each function forwards to the refund store or the execution primitive and
converts :class:`BillingError` into :class:`AdminActionError`, which carries
the HTTP status and the stable code admin tooling displays.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.orm import Session

from core.billing_constants import ActorRole, RefundStatus
from core.logging import get_logger
from models.billing import RefundRequest
from services.billing import refund_store
from services.billing.config import BillingSettings
from services.billing.errors import BillingError, to_http_error
from services.billing.refund_execution import ExecutionResult, execute_refund_request
from services.billing.refund_store import Actor
from services.billing.retry_batch import CRON_BATCH_NOTE, MANUAL_BATCH_NOTE, RetryBatchResult, run_retry_batch
from services.billing.toss_gateway import TossPaymentsClient

logger = get_logger(__name__)


class AdminActionError(RuntimeError):
    def __init__(self, status_code: int, code: str) -> None:
        super().__init__(code)
        self.status_code = status_code
        self.code = code


def admin_actor(actor_id: str) -> Actor:
    return Actor(ActorRole.ADMIN, actor_id)


@contextmanager
def _translated(action: str, refund_id: Optional[int] = None) -> Iterator[None]:
    try:
        yield
    except BillingError as exc:
        http_error = to_http_error(exc)
        logger.info("Admin %s on refund %s failed: %s", action, refund_id, exc.code)
        raise AdminActionError(http_error.status, http_error.code) from exc


def review(db: Session, refund_id: int, *, actor: Actor, note: Optional[str] = None) -> RefundRequest:
    with _translated("review", refund_id):
        return refund_store.mark_under_review(db, refund_id, actor=actor, note=note)


def approve(db: Session, refund_id: int, *, actor: Actor, note: Optional[str] = None) -> RefundRequest:
    with _translated("approve", refund_id):
        return refund_store.mark_approved(db, refund_id, actor=actor, note=note)


def reject(
    db: Session,
    refund_id: int,
    *,
    actor: Actor,
    reason: Optional[str],
    note: Optional[str] = None,
) -> RefundRequest:
    with _translated("reject", refund_id):
        return refund_store.mark_rejected(db, refund_id, actor=actor, reason=reason, note=note)


async def execute(
    db: Session,
    refund_id: int,
    *,
    actor: Actor,
    note: Optional[str] = None,
    cancel_amount: Optional[int] = None,
    accept_language: Optional[str] = None,
    settings: Optional[BillingSettings] = None,
    client: Optional[TossPaymentsClient] = None,
) -> ExecutionResult:
    with _translated("execute", refund_id):
        return await execute_refund_request(
            db,
            refund_id=refund_id,
            actor=actor,
            note=note,
            cancel_amount=cancel_amount,
            accept_language=accept_language,
            settings=settings,
            client=client,
        )


async def approve_execute(
    db: Session,
    refund_id: int,
    *,
    actor: Actor,
    note: Optional[str] = None,
    cancel_amount: Optional[int] = None,
    accept_language: Optional[str] = None,
    settings: Optional[BillingSettings] = None,
    client: Optional[TossPaymentsClient] = None,
) -> ExecutionResult:
    """Approve, then execute, as two separate committed steps.

    A crash between the two leaves the request ``APPROVED``; calling this again
    skips the approval and goes straight to execution.
    """
    with _translated("approve_execute", refund_id):
        current = refund_store.require_refund_request(db, refund_id)
    if current.status not in {RefundStatus.APPROVED.value, RefundStatus.EXECUTING.value, RefundStatus.REFUNDED.value}:
        approve(db, refund_id, actor=actor, note=note)
    return await execute(
        db,
        refund_id,
        actor=actor,
        note=note,
        cancel_amount=cancel_amount,
        accept_language=accept_language,
        settings=settings,
        client=client,
    )


async def retry_batch(
    db: Session,
    *,
    actor_id: str,
    limit: Optional[int] = None,
    dry_run: bool = False,
    via_cron: bool = False,
    accept_language: Optional[str] = None,
    settings: Optional[BillingSettings] = None,
    client: Optional[TossPaymentsClient] = None,
) -> RetryBatchResult:
    actor = Actor(ActorRole.SYSTEM, actor_id) if via_cron else admin_actor(actor_id)
    return await run_retry_batch(
        db,
        actor=actor,
        limit=limit,
        dry_run=dry_run,
        note=CRON_BATCH_NOTE if via_cron else MANUAL_BATCH_NOTE,
        accept_language=accept_language,
        settings=settings,
        client=client,
    )


__all__ = [
    "AdminActionError",
    "admin_actor",
    "approve",
    "approve_execute",
    "execute",
    "reject",
    "retry_batch",
    "review",
]
