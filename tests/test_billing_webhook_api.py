from __future__ import annotations

from typing import Any, Dict, Iterator

import pytest
from fastapi.testclient import TestClient

from conftest import TEST_PAYMENT_KEY, make_settings
from core.billing_constants import OrderStatus
from database import get_db
from services.billing import order_ledger
from services.billing.webhook_audit import read_recent_webhook_entries
from web.deps import get_billing_settings
from web.main import app

WEBHOOK_URL = "/api/v1/billing/webhook"
TOKEN = "whsec-test-token"
ALLOWED_HEADERS = {"x-webhook-token": TOKEN, "x-forwarded-for": "203.0.113.5"}


@pytest.fixture()
def webhook_client(db_session) -> Iterator[TestClient]:
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_billing_settings] = lambda: make_settings()
    client = TestClient(app)
    try:
        yield client
    finally:
        client.close()
        app.dependency_overrides.clear()


def _done_body(order_id: str = "ord_123") -> Dict[str, Any]:
    return {
        "eventType": "PAYMENT_STATUS_CHANGED",
        "data": {"orderId": order_id, "status": "DONE", "paymentKey": TEST_PAYMENT_KEY, "totalAmount": 9900},
    }


def test_done_then_duplicate(webhook_client: TestClient, db_session, make_order) -> None:
    make_order()

    first = webhook_client.post(WEBHOOK_URL, json=_done_body(), headers=ALLOWED_HEADERS)
    second = webhook_client.post(WEBHOOK_URL, json=_done_body(), headers=ALLOWED_HEADERS)

    assert first.status_code == 200, first.text
    assert first.json() == {"ok": True, "accepted": True, "action": "done", "orderId": "ord_123"}
    assert second.status_code == 200
    assert second.json() == {"ok": True, "accepted": True, "reason": "already_done", "orderId": "ord_123"}
    db_session.expire_all()
    assert order_ledger.get_order(db_session, "ord_123").status == OrderStatus.DONE.value

    entries = read_recent_webhook_entries(db_session)
    assert sorted(entry["result"] for entry in entries) == ["already_done", "done"]


def test_auth_failures_do_not_touch_state(webhook_client: TestClient, db_session, make_order) -> None:
    make_order()

    no_token = webhook_client.post(WEBHOOK_URL, json=_done_body(), headers={"x-forwarded-for": "203.0.113.5"})
    bad_token = webhook_client.post(
        WEBHOOK_URL, json=_done_body(), headers={"x-webhook-token": "nope", "x-forwarded-for": "203.0.113.5"}
    )
    bad_origin = webhook_client.post(
        WEBHOOK_URL, json=_done_body(), headers={"x-webhook-token": TOKEN, "x-forwarded-for": "198.51.100.1"}
    )
    query_token = webhook_client.post(
        f"{WEBHOOK_URL}?token={TOKEN}", json=_done_body(), headers={"x-forwarded-for": "203.0.113.5"}
    )

    assert no_token.status_code == 401
    assert bad_token.status_code == 401
    assert bad_token.json()["detail"]["code"] == "invalid_webhook_token"
    assert bad_origin.status_code == 403
    assert bad_origin.json()["detail"]["code"] == "forbidden_ip"
    assert query_token.status_code == 401
    assert query_token.json()["detail"]["code"] == "query_token_disabled"
    assert order_ledger.get_order(db_session, "ord_123").status == OrderStatus.READY.value
    assert read_recent_webhook_entries(db_session) == []


def test_unconfigured_secret_rejects_everything(webhook_client: TestClient, make_order) -> None:
    make_order()
    app.dependency_overrides[get_billing_settings] = lambda: make_settings(webhook_token=None)
    response = webhook_client.post(WEBHOOK_URL, json=_done_body(), headers=ALLOWED_HEADERS)
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "webhook_token_not_configured"


@pytest.mark.parametrize(
    ("content", "reason"),
    [
        (b"{broken", "ignored_payload"),
        (b"[1, 2, 3]", "ignored_payload"),
        (b'{"eventType": "PAYMENT_STATUS_CHANGED", "data": {"orderId": "x", "status": "DONE"}}', "ignored_payload"),
        (b'{"eventType": "PAYMENT_STATUS_CHANGED", "data": {"orderId": "ord_unknown", "status": "DONE"}}', "unknown_order"),
    ],
)
def test_unusable_payloads_are_acknowledged(webhook_client: TestClient, content: bytes, reason: str) -> None:
    response = webhook_client.post(
        WEBHOOK_URL, content=content, headers={**ALLOWED_HEADERS, "content-type": "application/json"}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["accepted"] is False
    assert body["reason"] == reason


def test_internal_failure_returns_500_for_gateway_retry(
    webhook_client: TestClient, db_session, make_order, monkeypatch
) -> None:
    make_order()

    def _explode(db, event):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr("web.routers.billing_webhook.apply_webhook_event", _explode)
    response = webhook_client.post(WEBHOOK_URL, json=_done_body(), headers=ALLOWED_HEADERS)

    assert response.status_code == 500
    assert response.json()["detail"]["code"] == "webhook_processing_failed"
    entries = read_recent_webhook_entries(db_session)
    assert [entry["result"] for entry in entries] == ["error"]


def test_cancel_webhook_reports_action(webhook_client: TestClient, make_order) -> None:
    make_order()
    body = {"eventType": "CANCEL_STATUS_CHANGED", "data": {"orderId": "ord_123", "status": "CANCELED"}}
    response = webhook_client.post(WEBHOOK_URL, json=body, headers=ALLOWED_HEADERS)
    assert response.status_code == 200
    assert response.json()["action"] == "canceled"


def test_cancel_redelivery_is_acknowledged_as_already_canceled(webhook_client: TestClient, make_order) -> None:
    make_order()
    body = {"eventType": "CANCEL_STATUS_CHANGED", "data": {"orderId": "ord_123", "status": "CANCELED"}}
    webhook_client.post(WEBHOOK_URL, json=body, headers=ALLOWED_HEADERS)
    replay = webhook_client.post(WEBHOOK_URL, json=body, headers=ALLOWED_HEADERS)
    assert replay.status_code == 200
    assert replay.json() == {"ok": True, "accepted": True, "reason": "already_canceled", "orderId": "ord_123"}
