from __future__ import annotations

import logging
import statistics
import time

import pytest

from conftest import make_settings
from services.billing import ingress_guard
from services.billing.ingress_guard import (
    WEBHOOK_TOKEN_HEADER,
    authorize_webhook,
    constant_time_equals,
    ipv4_to_int,
    is_ip_allowed,
    matches_ipv4_rule,
    resolve_client_ip,
)

TOKEN = "whsec-test-token"


def _headers(token: str | None = TOKEN, ip: str | None = "203.0.113.5") -> dict:
    headers = {}
    if token is not None:
        headers[WEBHOOK_TOKEN_HEADER] = token
    if ip is not None:
        headers["x-forwarded-for"] = ip
    return headers


@pytest.mark.parametrize(
    ("client_ip", "rule", "expected"),
    [
        ("203.0.113.5", "203.0.113.0/24", True),
        ("203.0.113.5", "203.0.113.5", True),
        ("203.0.113.5", "203.0.113.0/28", True),
        ("203.0.113.20", "203.0.113.0/28", False),
        ("203.0.113.5", "203.0.113.6", False),
        ("203.0.113.5", "0.0.0.0/0", True),
        ("203.0.113.5", "203.0.113.0/33", False),
        ("203.0.113.5", "203.0.113.0/abc", False),
        ("203.0.113.5", "203.0.113/24", False),
        ("203.0.113.5", "999.0.113.0/24", False),
        ("203.0.113.5", "", False),
        ("not-an-ip", "203.0.113.0/24", False),
    ],
)
def test_matches_ipv4_rule(client_ip: str, rule: str, expected: bool) -> None:
    assert matches_ipv4_rule(client_ip, rule) is expected


def test_ipv4_to_int_rejects_malformed_addresses() -> None:
    assert ipv4_to_int("203.0.113.5") == (203 << 24) | (0 << 16) | (113 << 8) | 5
    assert ipv4_to_int("256.1.1.1") is None
    assert ipv4_to_int("1.2.3") is None
    assert ipv4_to_int("1.2.3.-4") is None


def test_is_ip_allowed_requires_an_address() -> None:
    assert is_ip_allowed(None, ["203.0.113.0/24"]) is False
    assert is_ip_allowed("198.51.100.7", ["203.0.113.0/24", "198.51.100.7"]) is True


def test_resolve_client_ip_uses_first_entry_only() -> None:
    headers = {"x-forwarded-for": "203.0.113.5, 10.0.0.1, 192.168.1.1"}
    assert resolve_client_ip(headers, "x-forwarded-for") == "203.0.113.5"
    assert resolve_client_ip({}, "x-forwarded-for") is None


def test_constant_time_equals_results() -> None:
    assert constant_time_equals("secret-token", "secret-token") is True
    assert constant_time_equals("secret-tokeN", "secret-token") is False
    assert constant_time_equals("secret", "secret-token") is False
    assert constant_time_equals("", "secret-token") is False


def _median_duration(provided: str, expected: str, rounds: int = 60, repeat: int = 200) -> float:
    samples = []
    for _ in range(rounds):
        started = time.perf_counter()
        for _ in range(repeat):
            constant_time_equals(provided, expected)
        samples.append(time.perf_counter() - started)
    return statistics.median(samples)


def test_constant_time_equals_does_not_exit_early() -> None:
    expected = "a" * 64
    first_byte_wrong = "b" + "a" * 63
    last_byte_wrong = "a" * 63 + "b"
    early = _median_duration(first_byte_wrong, expected)
    late = _median_duration(last_byte_wrong, expected)
    assert max(early, late) / min(early, late) < 2.0


def test_constant_time_equals_ignores_length_relation() -> None:
    expected = "a" * 64
    same_length = _median_duration("b" * 64, expected)
    shorter = _median_duration("a" * 8, expected)
    longer = _median_duration("a" * 200, expected)
    for duration in (shorter, longer):
        assert max(same_length, duration) / min(same_length, duration) < 2.0


def test_rejects_when_secret_not_configured() -> None:
    decision = authorize_webhook(_headers(), {}, make_settings(webhook_token=None))
    assert decision.authorized is False
    assert decision.status_code == 401
    assert decision.reason == "webhook_token_not_configured"


def test_rejects_missing_and_wrong_tokens() -> None:
    settings = make_settings()
    missing = authorize_webhook(_headers(token=None), {}, settings)
    wrong = authorize_webhook(_headers(token="whsec-wrong-token"), {}, settings)
    assert (missing.status_code, missing.reason) == (401, "missing_webhook_token")
    assert (wrong.status_code, wrong.reason) == (401, "invalid_webhook_token")


def test_query_token_requires_flag() -> None:
    headers = _headers(token=None)
    disabled = authorize_webhook(headers, {"token": TOKEN}, make_settings(allow_query_token=False))
    enabled = authorize_webhook(headers, {"token": TOKEN}, make_settings(allow_query_token=True))
    assert disabled.reason == "query_token_disabled"
    assert enabled.authorized is True


def test_rejects_origin_outside_allowlist() -> None:
    decision = authorize_webhook(_headers(ip="198.51.100.9"), {}, make_settings())
    assert decision.authorized is False
    assert (decision.status_code, decision.reason) == (403, "forbidden_ip")


def test_accepts_allowlisted_origin() -> None:
    decision = authorize_webhook(_headers(ip="203.0.113.77, 10.0.0.1"), {}, make_settings())
    assert decision.authorized is True
    assert decision.client_ip == "203.0.113.77"


def test_empty_allowlist_fails_closed_without_fallback() -> None:
    decision = authorize_webhook(_headers(), {}, make_settings(ip_allowlist=()))
    assert (decision.status_code, decision.reason) == (403, "ip_allowlist_not_configured")


def test_insecure_fallback_warns_once(caplog: pytest.LogCaptureFixture) -> None:
    settings = make_settings(ip_allowlist=(), allow_insecure_ip_fallback=True)
    caplog.set_level(logging.WARNING, logger=ingress_guard.warn_once.name)

    for _ in range(5):
        assert authorize_webhook(_headers(ip="198.51.100.9"), {}, settings).authorized is True

    warnings = [record for record in caplog.records if "BILLING_WEBHOOK_IP_ALLOWLIST is empty" in record.getMessage()]
    assert len(warnings) == 1
