"""Celery tasks for billing maintenance."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from celery import shared_task

from core.billing_constants import ActorRole
from core.logging import get_logger
from database import session_scope
from services.billing.refund_store import Actor
from services.billing.retry_batch import CRON_BATCH_NOTE, run_retry_batch

logger = get_logger(__name__)

RETRY_CRON_ACTOR = Actor(ActorRole.SYSTEM, "system:refund-retry-cron")


@shared_task(name="billing.refund_retry_batch")
def run_refund_retry_batch(limit: Optional[int] = None, dry_run: bool = False) -> Dict[str, Any]:
    """Re-execute due FAILED_RETRYABLE refunds."""
    with session_scope() as db:
        result = asyncio.run(
            run_retry_batch(db, actor=RETRY_CRON_ACTOR, limit=limit, dry_run=dry_run, note=CRON_BATCH_NOTE)
        )
    logger.info(
        "Scheduled refund retry batch: total=%d success=%d failed=%d dry_run=%s",
        result.total,
        result.success_count,
        result.fail_count,
        dry_run,
    )
    return {
        "total": result.total,
        "successCount": result.success_count,
        "failCount": result.fail_count,
        "dryRun": dry_run,
    }
