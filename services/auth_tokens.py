"""JWT access token 발급/검증 도우미."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt

from core.env import env_int, env_str


class AuthTokenError(RuntimeError):
    """토큰 처리 중 발생한 예외."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class JwtSettings:
    secret: str
    algorithm: str
    issuer: str
    audience: str
    access_ttl: int


def load_jwt_settings() -> JwtSettings:
    secret = env_str("AUTH_JWT_SECRET") or env_str("AUTH_SECRET")
    if not secret:
        raise AuthTokenError("auth.not_configured", "AUTH_JWT_SECRET 또는 AUTH_SECRET 환경 변수가 필요합니다.")
    return JwtSettings(
        secret=secret,
        algorithm=env_str("AUTH_JWT_ALG") or "HS256",
        issuer=env_str("AUTH_JWT_ISSUER") or "billing-auth",
        audience=env_str("AUTH_JWT_AUDIENCE") or "dashboard",
        access_ttl=env_int("AUTH_ACCESS_TOKEN_TTL_SECONDS", 900, minimum=60),
    )


def create_access_token(*, user_id: str, email: Optional[str] = None) -> Tuple[str, int]:
    """JWT Access Token 발급."""

    settings = load_jwt_settings()
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": user_id,
        "aud": settings.audience,
        "iss": settings.issuer,
        "scope": "access",
        "email": email,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=settings.access_ttl)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    token = jwt.encode(payload, settings.secret, algorithm=settings.algorithm)
    return token, settings.access_ttl


def decode_token(token: str, *, scope: Optional[str] = None) -> Dict[str, Any]:
    """JWT 해독 및 scope 확인."""

    settings = load_jwt_settings()
    try:
        payload = jwt.decode(
            token,
            settings.secret,
            algorithms=[settings.algorithm],
            audience=settings.audience,
            issuer=settings.issuer,
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthTokenError("auth.token_expired", "토큰이 만료되었습니다.") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthTokenError("auth.token_invalid", "토큰 검증에 실패했습니다.") from exc
    if scope and payload.get("scope") != scope:
        raise AuthTokenError("auth.token_invalid", "토큰 범위가 일치하지 않습니다.")
    return payload


__all__ = [
    "AuthTokenError",
    "JwtSettings",
    "create_access_token",
    "decode_token",
    "load_jwt_settings",
]
