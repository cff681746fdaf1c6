"""Billing admin console endpoints: refund workflow and order inspection."""

from __future__ import annotations

from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from core.billing_constants import RefundStatus
from core.logging import get_logger
from database import get_db
from schemas.api.billing import (
    BillingOrderListResponse,
    BillingOrderSchema,
    RefundDetailResponse,
    RefundEventSchema,
    RefundExecuteRequest,
    RefundExecuteResponse,
    RefundListResponse,
    RefundNoteRequest,
    RefundRejectRequest,
    RefundRequestSchema,
    RefundRetryBatchRequest,
    RetryBatchResponse,
    WebhookAuditListResponse,
)
from services.billing import admin_actions, order_ledger, refund_store
from services.billing.admin_actions import AdminActionError
from services.billing.config import BillingSettings
from services.billing.refund_execution import ExecutionResult
from services.billing.webhook_audit import read_recent_webhook_entries
from web.deps import get_billing_settings
from web.deps_admin import BillingAdminIdentity, require_billing_admin, require_billing_admin_or_cron

router = APIRouter(prefix="/admin/billing", tags=["Admin Billing"])

logger = get_logger(__name__)

_STATUS_ALIASES: Dict[str, str] = {
    "pending": RefundStatus.REQUESTED.value,
    **{member.value.lower(): member.value for member in RefundStatus},
}
_ERROR_MESSAGES = {
    400: "요청 값을 확인해주세요.",
    403: "이 작업을 수행할 권한이 없어요.",
    404: "환불 요청을 찾을 수 없어요.",
    409: "환불 요청 상태가 변경되었어요. 새로고침 후 다시 시도해주세요.",
    502: "결제사 응답이 원활하지 않아요. 잠시 후 다시 시도해주세요.",
}


def _normalize_refund_status(value: Optional[str]) -> Optional[str]:
    key = (value or "").strip().lower()
    if not key:
        return None
    return _STATUS_ALIASES.get(key, key.upper())


def _http_error(exc: AdminActionError) -> HTTPException:
    message = _ERROR_MESSAGES.get(exc.status_code, "환불 처리 중 오류가 발생했어요.")
    return HTTPException(status_code=exc.status_code, detail={"code": exc.code, "message": message})


def _execute_response(result: ExecutionResult) -> RefundExecuteResponse:
    return RefundExecuteResponse(
        request=RefundRequestSchema.model_validate(result.request),
        cancelStatus=result.cancel_status,
        message="already_refunded" if result.already_refunded else "refund_executed",
    )


@router.get("/refunds", response_model=RefundListResponse, summary="환불 요청 목록을 조회합니다.")
def list_refunds(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    _admin: BillingAdminIdentity = Depends(require_billing_admin),
) -> RefundListResponse:
    requests = refund_store.list_refund_requests(
        db,
        status=_normalize_refund_status(status_filter),
        user_id=(user_id or "").strip() or None,
        limit=limit,
    )
    return RefundListResponse(requests=[RefundRequestSchema.model_validate(item) for item in requests])


@router.get("/refunds/{refund_id}", response_model=RefundDetailResponse, summary="환불 요청과 이벤트 로그를 조회합니다.")
def read_refund(
    refund_id: int,
    event_limit: int = Query(default=100, ge=1, le=200, alias="eventLimit"),
    db: Session = Depends(get_db),
    _admin: BillingAdminIdentity = Depends(require_billing_admin),
) -> RefundDetailResponse:
    request = refund_store.get_refund_request(db, refund_id)
    if request is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "refund_request_not_found", "message": _ERROR_MESSAGES[404]},
        )
    events = refund_store.list_refund_events(db, refund_id, limit=event_limit)
    return RefundDetailResponse(
        request=RefundRequestSchema.model_validate(request),
        events=[RefundEventSchema.model_validate(event) for event in events],
    )


@router.post("/refunds/{refund_id}/review", response_model=RefundRequestSchema, summary="환불 요청을 검토 중으로 변경합니다.")
def review_refund(
    refund_id: int,
    payload: Optional[RefundNoteRequest] = None,
    db: Session = Depends(get_db),
    admin: BillingAdminIdentity = Depends(require_billing_admin),
) -> RefundRequestSchema:
    note = payload.note if payload else None
    try:
        request = admin_actions.review(db, refund_id, actor=admin_actions.admin_actor(admin.actor_id), note=note)
    except AdminActionError as exc:
        raise _http_error(exc) from exc
    return RefundRequestSchema.model_validate(request)


@router.post("/refunds/{refund_id}/approve", response_model=RefundRequestSchema, summary="환불 요청을 승인합니다.")
def approve_refund(
    refund_id: int,
    payload: Optional[RefundNoteRequest] = None,
    db: Session = Depends(get_db),
    admin: BillingAdminIdentity = Depends(require_billing_admin),
) -> RefundRequestSchema:
    note = payload.note if payload else None
    try:
        request = admin_actions.approve(db, refund_id, actor=admin_actions.admin_actor(admin.actor_id), note=note)
    except AdminActionError as exc:
        raise _http_error(exc) from exc
    return RefundRequestSchema.model_validate(request)


@router.post("/refunds/{refund_id}/reject", response_model=RefundRequestSchema, summary="환불 요청을 반려합니다.")
def reject_refund(
    refund_id: int,
    payload: RefundRejectRequest,
    db: Session = Depends(get_db),
    admin: BillingAdminIdentity = Depends(require_billing_admin),
) -> RefundRequestSchema:
    try:
        request = admin_actions.reject(
            db,
            refund_id,
            actor=admin_actions.admin_actor(admin.actor_id),
            reason=payload.reason,
            note=payload.note,
        )
    except AdminActionError as exc:
        raise _http_error(exc) from exc
    return RefundRequestSchema.model_validate(request)


@router.post("/refunds/{refund_id}/execute", response_model=RefundExecuteResponse, summary="승인된 환불을 결제사에 요청합니다.")
async def execute_refund(
    refund_id: int,
    request: Request,
    payload: Optional[RefundExecuteRequest] = None,
    db: Session = Depends(get_db),
    admin: BillingAdminIdentity = Depends(require_billing_admin),
    settings: BillingSettings = Depends(get_billing_settings),
) -> RefundExecuteResponse:
    payload = payload or RefundExecuteRequest()
    try:
        result = await admin_actions.execute(
            db,
            refund_id,
            actor=admin_actions.admin_actor(admin.actor_id),
            note=payload.note,
            cancel_amount=payload.cancelAmount,
            accept_language=request.headers.get("accept-language"),
            settings=settings,
        )
    except AdminActionError as exc:
        raise _http_error(exc) from exc
    return _execute_response(result)


@router.post(
    "/refunds/{refund_id}/approve-execute",
    response_model=RefundExecuteResponse,
    summary="환불 요청을 승인한 뒤 바로 실행합니다.",
)
async def approve_and_execute_refund(
    refund_id: int,
    request: Request,
    payload: Optional[RefundExecuteRequest] = None,
    db: Session = Depends(get_db),
    admin: BillingAdminIdentity = Depends(require_billing_admin),
    settings: BillingSettings = Depends(get_billing_settings),
) -> RefundExecuteResponse:
    payload = payload or RefundExecuteRequest()
    try:
        result = await admin_actions.approve_execute(
            db,
            refund_id,
            actor=admin_actions.admin_actor(admin.actor_id),
            note=payload.note,
            cancel_amount=payload.cancelAmount,
            accept_language=request.headers.get("accept-language"),
            settings=settings,
        )
    except AdminActionError as exc:
        raise _http_error(exc) from exc
    return _execute_response(result)


@router.post("/refunds/retry", response_model=RetryBatchResponse, summary="재시도 대기 중인 환불을 다시 실행합니다.")
async def retry_refunds(
    request: Request,
    payload: Optional[RefundRetryBatchRequest] = None,
    db: Session = Depends(get_db),
    admin: BillingAdminIdentity = Depends(require_billing_admin_or_cron),
    settings: BillingSettings = Depends(get_billing_settings),
) -> RetryBatchResponse:
    payload = payload or RefundRetryBatchRequest()
    try:
        result = await admin_actions.retry_batch(
            db,
            actor_id=admin.actor_id,
            limit=payload.limit,
            dry_run=payload.dryRun,
            via_cron=admin.via_cron,
            accept_language=request.headers.get("accept-language"),
            settings=settings,
        )
    except Exception as exc:
        logger.exception("Refund retry batch failed.")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "retry_batch_failed", "message": "재시도 배치 실행에 실패했어요."},
        ) from exc
    return RetryBatchResponse(**result.as_payload())


@router.get("/orders", response_model=BillingOrderListResponse, summary="결제 주문 목록을 조회합니다.")
def list_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    limit: int = Query(default=120, ge=1, le=200),
    db: Session = Depends(get_db),
    _admin: BillingAdminIdentity = Depends(require_billing_admin),
) -> BillingOrderListResponse:
    orders = order_ledger.list_orders(db, status=status_filter, user_id=(user_id or "").strip() or None, limit=limit)
    return BillingOrderListResponse(orders=[BillingOrderSchema.model_validate(order) for order in orders])


@router.get("/webhooks", response_model=WebhookAuditListResponse, summary="최근 웹훅 처리 이력을 조회합니다.")
def list_webhook_entries(
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    _admin: BillingAdminIdentity = Depends(require_billing_admin),
) -> WebhookAuditListResponse:
    return WebhookAuditListResponse(entries=read_recent_webhook_entries(db, limit=limit))


__all__ = ["router"]
