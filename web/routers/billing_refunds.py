"""End-user billing endpoints: refund requests and subscription status."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from core.logging import get_logger
from database import get_db
from schemas.api.billing import (
    RefundCreateRequest,
    RefundWithdrawRequest,
    SubscriptionResponse,
    UserRefundListResponse,
    UserRefundRequestSchema,
)
from services.billing import order_ledger, refund_store
from services.billing.errors import BillingError, to_http_error
from web.deps import get_current_user
from web.middleware.auth_context import AuthenticatedUser

router = APIRouter(prefix="/billing", tags=["Billing"])

logger = get_logger(__name__)

_USER_MESSAGES = {
    "refund_reason_required": "환불 사유를 입력해주세요.",
    "billing_order_not_found": "주문을 찾을 수 없어요.",
    "refund_order_not_settled": "결제가 완료된 주문만 환불을 요청할 수 있어요.",
    "refund_request_already_open": "이미 처리 중인 환불 요청이 있어요.",
    "refund_request_forbidden": "본인의 환불 요청만 철회할 수 있어요.",
    "refund_request_not_found": "환불 요청을 찾을 수 없어요.",
}


def _user_error(exc: BillingError) -> HTTPException:
    http_error = to_http_error(exc, fallback="refund_request_failed")
    message = _USER_MESSAGES.get(http_error.code)
    if message is None and http_error.code.startswith("invalid_refund_request_state:"):
        message = "현재 상태에서는 요청을 처리할 수 없어요."
    return HTTPException(
        status_code=http_error.status,
        detail={"code": http_error.code, "message": message or "환불 요청 처리 중 오류가 발생했어요."},
    )


@router.post(
    "/refunds",
    response_model=UserRefundRequestSchema,
    status_code=status.HTTP_201_CREATED,
    summary="결제 건에 대한 환불을 요청합니다.",
)
def create_refund_request(
    payload: RefundCreateRequest,
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> UserRefundRequestSchema:
    try:
        request = refund_store.create_refund_request(
            db,
            order_id=payload.orderId,
            user_id=user.id,
            reason=payload.reason,
        )
    except BillingError as exc:
        raise _user_error(exc) from exc
    return UserRefundRequestSchema.model_validate(request)


@router.get("/refunds", response_model=UserRefundListResponse, summary="내 환불 요청 목록을 조회합니다.")
def list_my_refund_requests(
    limit: int = Query(default=20, ge=1, le=50),
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> UserRefundListResponse:
    requests = refund_store.list_refund_requests(db, user_id=user.id, limit=limit)
    return UserRefundListResponse(requests=[UserRefundRequestSchema.model_validate(item) for item in requests])


@router.post(
    "/refunds/{refund_id}/withdraw",
    response_model=UserRefundRequestSchema,
    summary="처리 전인 환불 요청을 철회합니다.",
)
def withdraw_refund_request(
    refund_id: int,
    payload: Optional[RefundWithdrawRequest] = None,
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> UserRefundRequestSchema:
    try:
        request = refund_store.withdraw_by_user(
            db,
            refund_id,
            user_id=user.id,
            note=payload.note if payload else None,
        )
    except BillingError as exc:
        raise _user_error(exc) from exc
    logger.info("Refund %s withdrawn by its owner.", refund_id)
    return UserRefundRequestSchema.model_validate(request)


@router.get("/subscription", response_model=SubscriptionResponse, summary="현재 구독 상태를 조회합니다.")
def read_my_subscription(
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
) -> SubscriptionResponse:
    return SubscriptionResponse(**order_ledger.read_subscription(db, user.id))


__all__ = ["router"]
