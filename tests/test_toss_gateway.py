from __future__ import annotations

import pytest

from conftest import TEST_CLIENT_KEY, TEST_SECRET_KEY, make_settings
from services.billing.errors import GatewayConfigError
from services.billing.toss_gateway import (
    build_cancel_idempotency_key,
    extract_cancel_transaction_key,
    get_toss_payments_client,
    infer_key_mode,
    is_retryable_gateway_error,
    normalize_accept_language,
    resolve_toss_credentials,
)


def test_resolve_credentials_infers_mode() -> None:
    credentials = resolve_toss_credentials(make_settings())
    assert credentials.mode == "test"
    assert credentials.client_key == TEST_CLIENT_KEY
    assert credentials.secret_key == TEST_SECRET_KEY


@pytest.mark.parametrize(
    ("client_key", "secret_key", "code"),
    [
        (None, TEST_SECRET_KEY, "missing_toss_client_key"),
        (TEST_CLIENT_KEY, "", "missing_toss_secret_key"),
        (TEST_CLIENT_KEY, "test_ck_wrongShapeForSecret", "missing_toss_secret_key"),
        ("live_ck_abcdefgh", TEST_SECRET_KEY, "toss_key_mode_mismatch"),
        ("prod_ck_abcdefgh", "prod_sk_abcdefgh", "toss_key_mode_mismatch"),
    ],
)
def test_resolve_credentials_rejects_bad_keys(client_key, secret_key, code) -> None:
    with pytest.raises(GatewayConfigError) as exc_info:
        resolve_toss_credentials(make_settings(toss_client_key=client_key, toss_secret_key=secret_key))
    assert exc_info.value.code == code
    assert exc_info.value.retryable is False


def test_client_factory_uses_settings() -> None:
    client = get_toss_payments_client(make_settings(toss_timeout_seconds=3.0, toss_test_code="REJECT_CARD_PAYMENT"))
    assert client.timeout == 3.0
    assert client.test_code == "REJECT_CARD_PAYMENT"
    assert client.base_url == "https://api.tosspayments.test"


def test_infer_key_mode() -> None:
    assert infer_key_mode("test_sk_x") == "test"
    assert infer_key_mode("live_sk_x") == "live"
    assert infer_key_mode("sk_x") is None


def test_idempotency_key_is_sanitized_and_bounded() -> None:
    assert build_cancel_idempotency_key("ord_123", 7) == "cancel_ord_123_7"
    assert build_cancel_idempotency_key("ord.1 2", 7) == "cancel_ord_1_2_7"
    assert len(build_cancel_idempotency_key("o" * 200, 1)) == 120


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("en-US,en;q=0.9", "en-US"),
        ("ja", "ja"),
        ("", "ko-KR"),
        (None, "ko-KR"),
        ("<script>", "ko-KR"),
    ],
)
def test_normalize_accept_language(header, expected) -> None:
    assert normalize_accept_language(header) == expected


@pytest.mark.parametrize(
    ("status_code", "code", "expected"),
    [
        (500, None, True),
        (503, "ANYTHING", True),
        (429, None, True),
        (400, "TIMEOUT", True),
        (400, "system_error", True),
        (400, "ALREADY_CANCELED_PAYMENT", False),
        (401, "UNAUTHORIZED_KEY", False),
    ],
)
def test_is_retryable_gateway_error(status_code, code, expected) -> None:
    assert is_retryable_gateway_error(status_code, code) is expected


def test_extract_cancel_transaction_key() -> None:
    assert extract_cancel_transaction_key({"cancels": [{"transactionKey": " txn_1 "}], "lastTransactionKey": "txn_2"}) == "txn_1"
    assert extract_cancel_transaction_key({"cancels": [], "lastTransactionKey": "txn_2"}) == "txn_2"
    assert extract_cancel_transaction_key({"cancels": "bogus"}) is None
