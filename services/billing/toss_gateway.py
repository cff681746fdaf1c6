"""Toss Payments cancel API client."""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from core.logging import get_logger
from services.billing.config import BillingSettings, load_billing_settings
from services.billing.errors import GatewayConfigError, GatewayError

logger = get_logger(__name__)

RETRYABLE_GATEWAY_CODES = frozenset({"INTERNAL_SERVER_ERROR", "TIMEOUT", "SYSTEM_ERROR", "TOO_MANY_REQUESTS"})
SUCCESSFUL_CANCEL_STATUSES = frozenset({"CANCELED", "PARTIAL_CANCELED", "DONE"})
_IDEMPOTENCY_KEY_LIMIT = 120
_ACCEPT_LANGUAGE_PATTERN = re.compile(r"^[A-Za-z]{2,3}(?:-[A-Za-z0-9]{2,8})?$")
_IDEMPOTENCY_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


@dataclass(frozen=True)
class TossCredentials:
    client_key: str
    secret_key: str
    mode: str


def _basic_auth_header(secret_key: str) -> str:
    token = base64.b64encode(f"{secret_key}:".encode("utf-8")).decode("utf-8")
    return f"Basic {token}"


def infer_key_mode(key: str) -> Optional[str]:
    if key.startswith("test_"):
        return "test"
    if key.startswith("live_"):
        return "live"
    return None


def resolve_toss_credentials(settings: BillingSettings) -> TossCredentials:
    """Validate the key pair before any money moves; problems here are terminal."""
    client_key = (settings.toss_client_key or "").strip()
    secret_key = (settings.toss_secret_key or "").strip()
    if not client_key or "_ck_" not in client_key:
        raise GatewayConfigError("missing_toss_client_key")
    if not secret_key or "_sk_" not in secret_key:
        raise GatewayConfigError("missing_toss_secret_key")
    client_mode = infer_key_mode(client_key)
    secret_mode = infer_key_mode(secret_key)
    if client_mode is None or client_mode != secret_mode:
        raise GatewayConfigError("toss_key_mode_mismatch")
    return TossCredentials(client_key=client_key, secret_key=secret_key, mode=client_mode)


def build_cancel_idempotency_key(order_id: str, refund_id: int) -> str:
    suffix = _IDEMPOTENCY_UNSAFE.sub("_", f"{order_id}_{refund_id}")
    return f"cancel_{suffix}"[:_IDEMPOTENCY_KEY_LIMIT]


def normalize_accept_language(value: Optional[str], default: str = "ko-KR") -> str:
    candidate = (value or "").split(",")[0].split(";")[0].strip()
    if candidate and _ACCEPT_LANGUAGE_PATTERN.match(candidate):
        return candidate
    return default


def is_retryable_gateway_error(status_code: int, code: Optional[str]) -> bool:
    if status_code >= 500 or status_code == 429:
        return True
    return (code or "").upper() in RETRYABLE_GATEWAY_CODES


def extract_cancel_transaction_key(payment: Dict[str, Any]) -> Optional[str]:
    cancels = payment.get("cancels")
    if isinstance(cancels, list) and cancels and isinstance(cancels[0], dict):
        key = cancels[0].get("transactionKey")
        if isinstance(key, str) and key.strip():
            return key.strip()
    key = payment.get("lastTransactionKey")
    return key.strip() if isinstance(key, str) and key.strip() else None


@dataclass(slots=True)
class TossPaymentsClient:
    """HTTP client wrapper for the Toss Payments cancel endpoint."""

    credentials: TossCredentials
    base_url: str
    timeout: float = 12.0
    test_code: Optional[str] = None
    transport: Optional[httpx.AsyncBaseTransport] = None

    async def cancel_payment(
        self,
        payment_key: str,
        *,
        cancel_reason: str,
        cancel_amount: int,
        idempotency_key: str,
        accept_language: str = "ko-KR",
    ) -> Dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/v1/payments/{payment_key}/cancel"
        headers = {
            "Authorization": _basic_auth_header(self.credentials.secret_key),
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
            "Accept-Language": accept_language,
        }
        if self.credentials.mode == "test" and self.test_code:
            headers["TossPayments-Test-Code"] = self.test_code
        body = {"cancelReason": cancel_reason, "cancelAmount": cancel_amount}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, headers=headers, json=body)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning("Toss cancel network error for idempotencyKey=%s: %s", idempotency_key, exc)
            raise GatewayError("toss_cancel_network_error", str(exc) or exc.__class__.__name__, retryable=True) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {"body": response.text[:500]}
        if not isinstance(payload, dict):
            payload = {"body": payload}

        if response.status_code >= 400:
            gateway_code = str(payload.get("code") or f"toss_http_{response.status_code}")
            retryable = is_retryable_gateway_error(response.status_code, gateway_code)
            prefix = "toss_retryable" if retryable else "toss_rejected"
            message = payload.get("message") or "Toss Payments cancel request failed."
            logger.warning("Toss Payments cancel error %s: %s", response.status_code, payload)
            raise GatewayError(
                f"{prefix}:{gateway_code}",
                str(message),
                retryable=retryable,
                status_code=response.status_code,
                gateway_code=gateway_code,
            )
        return payload


def get_toss_payments_client(settings: Optional[BillingSettings] = None) -> TossPaymentsClient:
    settings = settings or load_billing_settings()
    credentials = resolve_toss_credentials(settings)
    return TossPaymentsClient(
        credentials=credentials,
        base_url=settings.toss_base_url,
        timeout=settings.toss_timeout_seconds,
        test_code=settings.toss_test_code,
    )


__all__ = [
    "SUCCESSFUL_CANCEL_STATUSES",
    "TossCredentials",
    "TossPaymentsClient",
    "build_cancel_idempotency_key",
    "extract_cancel_transaction_key",
    "get_toss_payments_client",
    "infer_key_mode",
    "is_retryable_gateway_error",
    "normalize_accept_language",
    "resolve_toss_credentials",
]
