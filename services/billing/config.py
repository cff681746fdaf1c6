"""Billing configuration loaded from the environment."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from core.env import env_bool, env_csv, env_float, env_int, env_str, is_production

DEFAULT_TOSS_API_BASE_URL = "https://api.tosspayments.com"
DEFAULT_CLIENT_IP_HEADER = "x-forwarded-for"


@dataclass(frozen=True)
class BillingSettings:
    webhook_token: Optional[str]
    allow_query_token: bool
    ip_allowlist: Tuple[str, ...]
    allow_insecure_ip_fallback: bool
    client_ip_header: str
    admin_user_ids: Tuple[str, ...]
    admin_emails: Tuple[str, ...]
    retry_cron_secret: Optional[str]
    refund_max_retries: int
    refund_retry_base_seconds: int
    refund_retry_max_seconds: int
    retry_batch_limit: int
    toss_client_key: Optional[str]
    toss_secret_key: Optional[str]
    toss_base_url: str
    toss_timeout_seconds: float
    toss_accept_language: str
    toss_test_code: Optional[str]


def load_billing_settings() -> BillingSettings:
    """Read billing settings; flags that weaken webhook auth default off in production."""
    production = is_production()
    return BillingSettings(
        webhook_token=env_str("BILLING_WEBHOOK_TOKEN"),
        allow_query_token=env_bool("BILLING_WEBHOOK_ALLOW_QUERY_TOKEN", not production),
        ip_allowlist=tuple(env_csv("BILLING_WEBHOOK_IP_ALLOWLIST")),
        allow_insecure_ip_fallback=env_bool("BILLING_WEBHOOK_ALLOW_INSECURE_IP_FALLBACK", not production),
        client_ip_header=(env_str("BILLING_WEBHOOK_CLIENT_IP_HEADER", DEFAULT_CLIENT_IP_HEADER) or DEFAULT_CLIENT_IP_HEADER).lower(),
        admin_user_ids=tuple(env_csv("BILLING_ADMIN_USER_IDS")),
        admin_emails=tuple(env_csv("BILLING_ADMIN_EMAILS", lower=True)),
        retry_cron_secret=env_str("BILLING_RETRY_CRON_SECRET"),
        refund_max_retries=env_int("BILLING_REFUND_MAX_RETRIES", 5, minimum=1),
        refund_retry_base_seconds=env_int("BILLING_REFUND_RETRY_BASE_SECONDS", 300, minimum=1),
        refund_retry_max_seconds=env_int("BILLING_REFUND_RETRY_MAX_SECONDS", 6 * 60 * 60, minimum=1),
        retry_batch_limit=env_int("BILLING_RETRY_BATCH_LIMIT", 10, minimum=1, maximum=30),
        toss_client_key=env_str("TOSS_PAYMENTS_CLIENT_KEY"),
        toss_secret_key=env_str("TOSS_PAYMENTS_SECRET_KEY"),
        toss_base_url=env_str("TOSS_PAYMENTS_BASE_URL", DEFAULT_TOSS_API_BASE_URL) or DEFAULT_TOSS_API_BASE_URL,
        toss_timeout_seconds=env_float("TOSS_PAYMENTS_TIMEOUT_SECONDS", 12.0, minimum=0.5),
        toss_accept_language=env_str("TOSS_PAYMENTS_ACCEPT_LANGUAGE", "ko-KR") or "ko-KR",
        toss_test_code=env_str("TOSS_PAYMENTS_TEST_CODE"),
    )


__all__ = ["BillingSettings", "DEFAULT_TOSS_API_BASE_URL", "load_billing_settings"]
