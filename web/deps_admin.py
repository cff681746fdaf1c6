"""Billing admin authentication dependencies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from core.logging import get_logger
from services.billing.config import BillingSettings
from services.billing.ingress_guard import constant_time_equals
from web.deps import get_billing_settings
from web.middleware.auth_context import AuthenticatedUser

logger = get_logger(__name__)

CRON_SECRET_HEADER = "x-billing-cron-secret"
CRON_ACTOR_ID = "system:refund-retry-cron"


@dataclass(frozen=True)
class BillingAdminIdentity:
    """Caller allowed to run billing admin operations."""

    actor_id: str
    email: Optional[str] = None
    via_cron: bool = False


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _mask(value: Optional[str]) -> str:
    if not value:
        return ""
    if len(value) <= 4:
        return "*" * len(value)
    return f"{value[:2]}***{value[-2:]}"


def _authorize_admin_user(user: Optional[AuthenticatedUser], settings: BillingSettings) -> BillingAdminIdentity:
    if user is None:
        raise _error(status.HTTP_401_UNAUTHORIZED, "auth.required", "로그인이 필요한 요청입니다.")
    if not settings.admin_user_ids and not settings.admin_emails:
        logger.error("BILLING_ADMIN_USER_IDS / BILLING_ADMIN_EMAILS are not configured; billing admin access blocked.")
        raise _error(
            status.HTTP_403_FORBIDDEN,
            "billing_admin_not_configured",
            "결제 관리자 설정이 준비되지 않았어요. 운영 팀에 문의해주세요.",
        )
    email = (user.email or "").lower()
    if user.id in settings.admin_user_ids or (email and email in settings.admin_emails):
        return BillingAdminIdentity(actor_id=user.id, email=user.email)
    logger.warning("Billing admin access denied for user %s.", _mask(user.id))
    raise _error(status.HTTP_403_FORBIDDEN, "billing_admin_forbidden", "결제 관리자 권한이 필요해요.")


def require_billing_admin(
    request: Request,
    settings: BillingSettings = Depends(get_billing_settings),
) -> BillingAdminIdentity:
    identity = _authorize_admin_user(getattr(request.state, "user", None), settings)
    request.state.billing_admin = identity
    return identity


def _cron_authorized(request: Request, settings: BillingSettings) -> bool:
    expected = (settings.retry_cron_secret or "").strip()
    if not expected:
        return False
    provided = (request.headers.get(CRON_SECRET_HEADER) or "").strip()
    return bool(provided) and constant_time_equals(provided, expected)


def require_billing_admin_or_cron(
    request: Request,
    settings: BillingSettings = Depends(get_billing_settings),
) -> BillingAdminIdentity:
    """Scheduler calls authenticate with the cron secret; everyone else must be an admin."""
    if _cron_authorized(request, settings):
        identity = BillingAdminIdentity(actor_id=CRON_ACTOR_ID, via_cron=True)
    else:
        identity = _authorize_admin_user(getattr(request.state, "user", None), settings)
    request.state.billing_admin = identity
    return identity


__all__ = [
    "BillingAdminIdentity",
    "CRON_ACTOR_ID",
    "CRON_SECRET_HEADER",
    "require_billing_admin",
    "require_billing_admin_or_cron",
]
