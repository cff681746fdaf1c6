"""Payment gateway webhook endpoint."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from core.logging import get_logger
from database import get_db
from schemas.api.billing import WebhookAckResponse
from services.billing import metrics
from services.billing.config import BillingSettings
from services.billing.ingress_guard import authorize_webhook
from services.billing.reconciliation import apply_webhook_event
from services.billing.webhook_audit import append_webhook_audit_entry
from services.billing.webhook_events import parse_webhook_event
from web.deps import get_billing_settings

router = APIRouter(prefix="/billing", tags=["Billing"])

logger = get_logger(__name__)

_GUARD_MESSAGES = {
    401: "웹훅 인증에 실패했습니다.",
    403: "허용되지 않은 웹훅 요청입니다.",
}


@router.post(
    "/webhook",
    response_model=WebhookAckResponse,
    response_model_exclude_none=True,
    summary="결제 게이트웨이 웹훅을 수신합니다.",
)
async def handle_billing_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: BillingSettings = Depends(get_billing_settings),
) -> WebhookAckResponse:
    decision = authorize_webhook(request.headers, request.query_params, settings)
    if not decision.authorized:
        metrics.record_webhook_outcome(decision.reason or "unauthorized")
        raise HTTPException(
            status_code=decision.status_code,
            detail={"code": decision.reason, "message": _GUARD_MESSAGES.get(decision.status_code, "")},
        )

    raw_body = await request.body()
    event = parse_webhook_event(raw_body)
    log_context: Dict[str, Any] = {
        "event_type": getattr(event, "event_type", None),
        "order_id": getattr(event, "order_id", None),
        "status": getattr(event, "status", None),
        "client_ip": decision.client_ip,
    }
    logger.info("Received billing webhook.", extra={"webhook": log_context})

    try:
        outcome = apply_webhook_event(db, event)
    except Exception as exc:
        db.rollback()
        logger.exception("Billing webhook processing failed.", extra={"webhook": log_context})
        metrics.record_webhook_outcome("error")
        append_webhook_audit_entry(
            db,
            result="error",
            context=log_context,
            payload=getattr(event, "raw", None) or None,
            message=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "webhook_processing_failed", "message": "웹훅 처리 중 오류가 발생했습니다."},
        ) from exc

    result = outcome.action or outcome.reason or "accepted"
    metrics.record_webhook_outcome(result)
    append_webhook_audit_entry(
        db,
        result=result,
        context={**log_context, "action": outcome.action},
        payload=getattr(event, "raw", None) or None,
    )
    return WebhookAckResponse(**outcome.as_payload())


__all__ = ["router"]
