"""Periodic re-execution of refund requests parked in ``FAILED_RETRYABLE``."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.logging import get_logger
from services.billing import metrics, refund_store
from services.billing.config import BillingSettings, load_billing_settings
from services.billing.errors import BillingError, to_http_error
from services.billing.refund_execution import execute_refund_request
from services.billing.refund_store import Actor
from services.billing.toss_gateway import TossPaymentsClient

logger = get_logger(__name__)

MAX_BATCH_LIMIT = 30
CRON_BATCH_NOTE = "자동 재시도 배치 실행"
MANUAL_BATCH_NOTE = "관리자 수동 재시도 배치 실행"


@dataclass
class RetryBatchResult:
    dry_run: bool
    total: int = 0
    success_count: int = 0
    fail_count: int = 0
    items: List[Dict[str, Any]] = field(default_factory=list)
    candidates: List[Dict[str, Any]] = field(default_factory=list)

    def as_payload(self) -> Dict[str, Any]:
        return {
            "dryRun": self.dry_run,
            "total": self.total,
            "successCount": self.success_count,
            "failCount": self.fail_count,
            "items": self.items,
            "requests": self.candidates,
        }


def clamp_batch_limit(value: Optional[int], default: int) -> int:
    if value is None:
        value = default
    return max(1, min(MAX_BATCH_LIMIT, int(value)))


async def run_retry_batch(
    db: Session,
    *,
    actor: Actor,
    limit: Optional[int] = None,
    dry_run: bool = False,
    note: Optional[str] = None,
    accept_language: Optional[str] = None,
    now: Optional[datetime] = None,
    settings: Optional[BillingSettings] = None,
    client: Optional[TossPaymentsClient] = None,
) -> RetryBatchResult:
    """Re-run due refunds one by one; a failing item never stops the batch."""
    settings = settings or load_billing_settings()
    batch_limit = clamp_batch_limit(limit, settings.retry_batch_limit)
    due = refund_store.list_due_retryable(db, limit=batch_limit, now=now)
    result = RetryBatchResult(dry_run=dry_run, total=len(due))
    result.candidates = [
        {
            "id": request.id,
            "orderId": request.order_id,
            "status": request.status,
            "retryCount": request.retry_count,
            "nextRetryAt": request.next_retry_at,
        }
        for request in due
    ]
    if dry_run:
        logger.info("Refund retry batch dry run: %d candidate(s).", result.total)
        return result

    refund_ids = [request.id for request in due]
    for refund_id in refund_ids:
        item = await _retry_one(
            db,
            refund_id,
            actor=actor,
            note=note or MANUAL_BATCH_NOTE,
            accept_language=accept_language,
            settings=settings,
            client=client,
        )
        if item["status"] == "ok":
            result.success_count += 1
        else:
            result.fail_count += 1
        metrics.record_retry_item(item["status"])
        result.items.append(item)

    logger.info(
        "Refund retry batch finished: total=%d success=%d failed=%d.",
        result.total,
        result.success_count,
        result.fail_count,
    )
    return result


async def _retry_one(
    db: Session,
    refund_id: int,
    *,
    actor: Actor,
    note: str,
    accept_language: Optional[str],
    settings: BillingSettings,
    client: Optional[TossPaymentsClient],
) -> Dict[str, Any]:
    try:
        current = refund_store.require_refund_request(db, refund_id)
        if int(current.retry_count or 0) >= settings.refund_max_retries:
            refund_store.escalate_exhausted(db, refund_id, actor=actor)
            logger.warning("Refund %s reached the retry ceiling; moved to FAILED_FINAL.", refund_id)
            return {"refundId": refund_id, "status": "error", "error": "retry_exhausted", "httpStatus": 409}
        outcome = await execute_refund_request(
            db,
            refund_id=refund_id,
            actor=actor,
            note=note,
            accept_language=accept_language,
            settings=settings,
            client=client,
        )
    except BillingError as exc:
        http_error = to_http_error(exc)
        return {"refundId": refund_id, "status": "error", "error": http_error.code, "httpStatus": http_error.status}
    except Exception as exc:
        db.rollback()
        logger.exception("Refund %s retry raised unexpectedly: %s", refund_id, exc)
        return {"refundId": refund_id, "status": "error", "error": "refund_execute_failed", "httpStatus": 500}
    return {
        "refundId": refund_id,
        "status": "ok",
        "cancelStatus": outcome.cancel_status,
        "alreadyRefunded": outcome.already_refunded,
    }


__all__ = [
    "CRON_BATCH_NOTE",
    "MANUAL_BATCH_NOTE",
    "MAX_BATCH_LIMIT",
    "RetryBatchResult",
    "clamp_batch_limit",
    "run_retry_batch",
]
