"""Exception vocabulary for the billing reconciliation services.

Every error carries a stable ``code`` string. Routers translate codes to HTTP
statuses through :func:`to_http_error`; the codes themselves are what admin
tooling and the gateway-facing webhook keys off.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

INVALID_STATE_PREFIX = "invalid_refund_request_state:"


class BillingError(RuntimeError):
    """Base class for all billing failures."""

    default_code = "billing_error"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None) -> None:
        self.code = code or self.default_code
        super().__init__(message or self.code)


class RefundRequestNotFound(BillingError):
    default_code = "refund_request_not_found"


class InvalidRefundStateError(BillingError):
    """Raised when an action is attempted from a state that does not accept it."""

    def __init__(self, state: str) -> None:
        self.state = state
        super().__init__(f"{INVALID_STATE_PREFIX}{state}")


class RefundConflictError(BillingError):
    """The guarded write lost a race against another actor."""

    default_code = "refund_request_conflict"


class RefundAlreadyOpenError(BillingError):
    default_code = "refund_request_already_open"


class RefundForbiddenError(BillingError):
    default_code = "refund_request_forbidden"


class RefundValidationError(BillingError):
    default_code = "invalid_refund_request"


class OrderLedgerError(BillingError):
    default_code = "billing_order_error"


class GatewayError(BillingError):
    """Failure reported by, or while talking to, the payment gateway."""

    default_code = "toss_cancel_failed"

    def __init__(
        self,
        code: Optional[str] = None,
        message: Optional[str] = None,
        *,
        retryable: bool = False,
        status_code: Optional[int] = None,
        gateway_code: Optional[str] = None,
    ) -> None:
        super().__init__(code, message)
        self.retryable = retryable
        self.status_code = status_code
        self.gateway_code = gateway_code


class GatewayConfigError(GatewayError):
    """Missing or mismatched gateway credentials. Retrying cannot help."""

    default_code = "toss_config_invalid"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None) -> None:
        super().__init__(code, message, retryable=False)


@dataclass(frozen=True, slots=True)
class HttpError:
    status: int
    code: str


_NOT_FOUND_CODES = {"refund_request_not_found", "billing_order_not_found"}
_CONFLICT_CODES = {"refund_request_conflict", "refund_order_user_mismatch", "refund_request_already_open"}
_BAD_REQUEST_CODES = {
    "missing_payment_key_for_refund",
    "invalid_cancel_amount",
    "invalid_cancel_status",
    "refund_reason_required",
    "refund_order_not_settled",
    "amount_mismatch",
    "invalid_plan",
    "order_canceled",
}
_BAD_GATEWAY_PREFIXES = ("toss_retryable:", "toss_http_", "toss_cancel_network_error")


def to_http_error(exc: BaseException, *, fallback: str = "refund_execute_failed") -> HttpError:
    """Map a billing exception onto an HTTP status and a caller-safe code."""
    if not isinstance(exc, BillingError):
        return HttpError(500, fallback)
    code = exc.code
    if code in _NOT_FOUND_CODES:
        return HttpError(404, code)
    if code.startswith(INVALID_STATE_PREFIX) or code in _CONFLICT_CODES:
        return HttpError(409, code)
    if code == "refund_request_forbidden":
        return HttpError(403, code)
    if code in _BAD_REQUEST_CODES or code.startswith("toss_rejected:"):
        return HttpError(400, code)
    if code.startswith(_BAD_GATEWAY_PREFIXES):
        return HttpError(502, code)
    if isinstance(exc, GatewayConfigError):
        return HttpError(500, code)
    return HttpError(500, fallback)


__all__ = [
    "BillingError",
    "GatewayConfigError",
    "GatewayError",
    "HttpError",
    "INVALID_STATE_PREFIX",
    "InvalidRefundStateError",
    "OrderLedgerError",
    "RefundAlreadyOpenError",
    "RefundConflictError",
    "RefundForbiddenError",
    "RefundRequestNotFound",
    "RefundValidationError",
    "to_http_error",
]
