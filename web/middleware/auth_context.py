"""Attach authenticated user information from Authorization headers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from core.logging import get_logger
from services.auth_tokens import AuthTokenError, decode_token

logger = get_logger(__name__)

_BYPASS_PREFIXES = (
    "/api/v1/billing/webhook",
    "/docs",
    "/openapi",
    "/healthz",
    "/metrics",
)


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: Optional[str] = None


def _should_bypass(path: str) -> bool:
    path = path or ""
    return any(path.startswith(prefix) for prefix in _BYPASS_PREFIXES)


def _extract_bearer(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    value = header_value.strip()
    if value.lower().startswith("bearer "):
        token = value[7:].strip()
        return token or None
    return None


async def auth_context_middleware(request: Request, call_next):
    path = request.url.path if request.url else ""
    if request.method == "OPTIONS" or _should_bypass(path):
        return await call_next(request)

    token = _extract_bearer(request.headers.get("authorization"))
    if not token:
        return await call_next(request)

    try:
        payload = decode_token(token, scope="access")
    except AuthTokenError as exc:
        detail = {"code": exc.code, "message": str(exc)}
        if exc.code == "auth.not_configured":
            logger.error("Bearer token received but JWT settings are missing.")
            return JSONResponse(status_code=503, content={"detail": detail})
        return JSONResponse(status_code=401, content={"detail": detail})

    user_id = payload.get("sub")
    if not user_id:
        detail = {"code": "auth.token_invalid", "message": "유효하지 않은 토큰입니다."}
        return JSONResponse(status_code=401, content={"detail": detail})

    email = payload.get("email")
    request.state.user = AuthenticatedUser(id=str(user_id), email=str(email).lower() if email else None)
    request.state.user_claims = payload
    return await call_next(request)


__all__ = ["AuthenticatedUser", "auth_context_middleware"]
