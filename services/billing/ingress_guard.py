"""Authentication and origin checks for the payment webhook endpoint.

Nothing in here reads the request body: the guard decides on headers, the query
string and configuration only, so a spoofed payload never reaches the parser.
Every unconfigured control fails closed.
"""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from core.logging import get_logger, get_rate_limited_logger
from services.billing.config import BillingSettings

logger = get_logger(__name__)
warn_once = get_rate_limited_logger(__name__)

WEBHOOK_TOKEN_HEADER = "x-webhook-token"
WEBHOOK_TOKEN_QUERY_PARAM = "token"
_MAX_TOKEN_LENGTH = 512
_OCTET_PATTERN = re.compile(r"^\d{1,3}$")


@dataclass(frozen=True)
class GuardDecision:
    authorized: bool
    status_code: int = 200
    reason: Optional[str] = None
    client_ip: Optional[str] = None


def constant_time_equals(provided: str, expected: str) -> bool:
    """Compare two secrets without leaking the first mismatch position or the length relation."""
    # Digests have a fixed width, so unequal lengths take the same path.
    left = hashlib.sha256(provided.encode("utf-8")).digest()
    right = hashlib.sha256(expected.encode("utf-8")).digest()
    return hmac.compare_digest(left, right)


def ipv4_to_int(value: str) -> Optional[int]:
    parts = value.strip().split(".")
    if len(parts) != 4:
        return None
    result = 0
    for part in parts:
        if not _OCTET_PATTERN.match(part):
            return None
        octet = int(part)
        if octet > 255:
            return None
        result = (result << 8) | octet
    return result


def matches_ipv4_rule(client_ip: str, rule: str) -> bool:
    """Match ``client_ip`` against an exact IPv4 address or an IPv4 CIDR block."""
    rule = rule.strip()
    if not rule:
        return False
    if "/" not in rule:
        return ipv4_to_int(rule) is not None and rule == client_ip.strip()

    base, _, bits_raw = rule.partition("/")
    if not bits_raw.isdigit():
        return False
    bits = int(bits_raw)
    if bits < 0 or bits > 32:
        return False
    client_int = ipv4_to_int(client_ip)
    base_int = ipv4_to_int(base)
    if client_int is None or base_int is None:
        return False
    mask = 0 if bits == 0 else (0xFFFFFFFF << (32 - bits)) & 0xFFFFFFFF
    return (client_int & mask) == (base_int & mask)


def is_ip_allowed(client_ip: Optional[str], rules: Iterable[str]) -> bool:
    if not client_ip:
        return False
    return any(matches_ipv4_rule(client_ip, rule) for rule in rules)


def resolve_client_ip(headers: Mapping[str, str], header_name: str) -> Optional[str]:
    """Take the first entry of the trusted proxy header; later entries are caller controlled."""
    raw = headers.get(header_name)
    if not raw:
        return None
    first = raw.split(",")[0].strip()
    return first or None


def _extract_token(
    headers: Mapping[str, str],
    query: Mapping[str, str],
    settings: BillingSettings,
) -> tuple[Optional[str], Optional[str]]:
    header_token = (headers.get(WEBHOOK_TOKEN_HEADER) or "").strip()
    if header_token:
        return header_token[:_MAX_TOKEN_LENGTH], None
    query_token = (query.get(WEBHOOK_TOKEN_QUERY_PARAM) or "").strip()
    if not query_token:
        return None, "missing_webhook_token"
    if not settings.allow_query_token:
        return None, "query_token_disabled"
    return query_token[:_MAX_TOKEN_LENGTH], None


def authorize_webhook(
    headers: Mapping[str, str],
    query: Mapping[str, str],
    settings: BillingSettings,
) -> GuardDecision:
    """Decide whether a webhook call may proceed to payload parsing."""
    client_ip = resolve_client_ip(headers, settings.client_ip_header)

    expected = settings.webhook_token
    if not expected:
        logger.error("BILLING_WEBHOOK_TOKEN is not configured; rejecting webhook call.")
        return GuardDecision(False, 401, "webhook_token_not_configured", client_ip)

    provided, token_error = _extract_token(headers, query, settings)
    if provided is None:
        logger.warning("Webhook rejected: %s (ip=%s)", token_error, client_ip)
        return GuardDecision(False, 401, token_error, client_ip)
    if not constant_time_equals(provided, expected):
        logger.warning("Webhook rejected: invalid token (ip=%s)", client_ip)
        return GuardDecision(False, 401, "invalid_webhook_token", client_ip)

    if not settings.ip_allowlist:
        if not settings.allow_insecure_ip_fallback:
            logger.error("BILLING_WEBHOOK_IP_ALLOWLIST is empty and insecure fallback is off; rejecting webhook call.")
            return GuardDecision(False, 403, "ip_allowlist_not_configured", client_ip)
        warn_once.warning(
            "BILLING_WEBHOOK_IP_ALLOWLIST is empty; accepting webhooks from any origin because "
            "BILLING_WEBHOOK_ALLOW_INSECURE_IP_FALLBACK is enabled."
        )
        return GuardDecision(True, 200, None, client_ip)

    if not is_ip_allowed(client_ip, settings.ip_allowlist):
        logger.warning("Webhook rejected: origin %s is not allowlisted.", client_ip)
        return GuardDecision(False, 403, "forbidden_ip", client_ip)

    return GuardDecision(True, 200, None, client_ip)


__all__ = [
    "GuardDecision",
    "WEBHOOK_TOKEN_HEADER",
    "authorize_webhook",
    "constant_time_equals",
    "ipv4_to_int",
    "is_ip_allowed",
    "matches_ipv4_rule",
    "resolve_client_ip",
]
