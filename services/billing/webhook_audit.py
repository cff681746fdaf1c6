"""결제 웹훅 처리 결과 감사 로그 저장/조회."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.logging import get_logger
from models.billing import BillingWebhookEventLog

logger = get_logger(__name__)


def append_webhook_audit_entry(
    db: Session,
    *,
    result: str,
    context: Dict[str, Any],
    payload: Optional[Dict[str, Any]] = None,
    message: Optional[str] = None,
) -> None:
    """웹훅 처리 결과를 DB에 남깁니다. 기록 실패는 응답을 막지 않습니다."""
    record = BillingWebhookEventLog(
        order_id=context.get("order_id"),
        event_type=context.get("event_type"),
        status=context.get("status"),
        result=result,
        action=context.get("action"),
        client_ip=context.get("client_ip"),
        message=(message or "")[:1000] or None,
        payload=payload,
    )
    try:
        db.add(record)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Billing webhook audit write failed: %s", exc)


def read_recent_webhook_entries(db: Session, limit: int = 100) -> List[Dict[str, Any]]:
    """최근 감사 로그 엔트리를 최신순으로 반환합니다."""
    rows = db.scalars(
        select(BillingWebhookEventLog)
        .order_by(BillingWebhookEventLog.created_at.desc())
        .limit(max(1, min(limit, 200)))
    )
    entries: List[Dict[str, Any]] = []
    for row in rows:
        entries.append(
            {
                "loggedAt": row.created_at.isoformat() if row.created_at else None,
                "result": row.result,
                "action": row.action,
                "orderId": row.order_id,
                "eventType": row.event_type,
                "status": row.status,
                "message": row.message,
            }
        )
    return entries
