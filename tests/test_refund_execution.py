from __future__ import annotations

import asyncio
import base64
import json
from datetime import timedelta

import pytest
from sqlalchemy import update

from conftest import TEST_PAYMENT_KEY, make_settings
from core.billing_constants import ActorRole, OrderStatus, PlanTier, RefundStatus, SubscriptionStatus
from models.billing import RefundRequest
from services.billing import order_ledger, refund_store
from services.billing.clock import as_utc, utcnow
from services.billing.errors import (
    GatewayConfigError,
    GatewayError,
    InvalidRefundStateError,
    RefundValidationError,
)
from services.billing.refund_execution import execute_refund_request
from services.billing.refund_store import Actor
from services.billing.retry_batch import run_retry_batch

ADMIN = Actor(ActorRole.ADMIN, "admin-1")


def _approved_request(db_session) -> RefundRequest:
    request = refund_store.create_refund_request(db_session, order_id="ord_123", user_id="user-1", reason="단순 변심")
    return refund_store.mark_approved(db_session, request.id, actor=ADMIN, note="확인 완료")


def _grant_pro(db_session) -> None:
    subscription = order_ledger.get_subscription(db_session, "user-1")
    subscription.tier = PlanTier.PRO.value
    subscription.status = SubscriptionStatus.ACTIVE.value
    subscription.current_period_end = utcnow() + timedelta(days=20)
    db_session.commit()


def _execute(db_session, refund_id: int, settings, client, **kwargs):
    return asyncio.run(
        execute_refund_request(db_session, refund_id=refund_id, actor=ADMIN, settings=settings, client=client, **kwargs)
    )


def _event_types(db_session, refund_id: int):
    return [event.event_type for event in refund_store.list_refund_events(db_session, refund_id)]


def test_successful_execution_refunds_and_downgrades(db_session, settled_order, billing_settings, gateway) -> None:
    _grant_pro(db_session)
    request = _approved_request(db_session)
    gateway.succeed(transaction_key="txn_cancel_42")

    result = _execute(db_session, request.id, billing_settings, gateway.client(), note="고객 요청 환불")

    assert result.cancel_status == "CANCELED"
    assert result.already_refunded is False
    assert result.request.status == RefundStatus.REFUNDED.value
    assert result.request.toss_cancel_transaction_key == "txn_cancel_42"
    assert result.request.executed_by == "admin-1"
    assert _event_types(db_session, request.id) == ["requested", "approve", "execution_started", "refunded"]

    db_session.expire_all()
    assert order_ledger.get_order(db_session, "ord_123").status == OrderStatus.CANCELED.value
    subscription = order_ledger.read_subscription(db_session, "user-1")
    assert subscription["tier"] == PlanTier.FREE.value
    assert subscription["status"] == SubscriptionStatus.INACTIVE.value


def test_gateway_request_shape(db_session, settled_order, gateway) -> None:
    request = _approved_request(db_session)
    gateway.succeed()
    settings = make_settings(toss_test_code="INVALID_CARD")
    client = gateway.client()
    client.test_code = settings.toss_test_code

    _execute(db_session, request.id, settings, client, accept_language="en-US,en;q=0.9")

    sent = gateway.requests[0]
    assert sent.method == "POST"
    assert sent.url.path == f"/v1/payments/{TEST_PAYMENT_KEY}/cancel"
    assert sent.headers["Idempotency-Key"] == f"cancel_ord_123_{request.id}"
    assert sent.headers["Accept-Language"] == "en-US"
    assert sent.headers["TossPayments-Test-Code"] == "INVALID_CARD"
    expected_auth = base64.b64encode(f"{client.credentials.secret_key}:".encode()).decode()
    assert sent.headers["Authorization"] == f"Basic {expected_auth}"
    assert json.loads(sent.content) == {"cancelReason": "관리자 환불 승인", "cancelAmount": 9900}


def test_network_timeout_parks_request_for_retry(db_session, settled_order, billing_settings, gateway) -> None:
    request = _approved_request(db_session)
    gateway.fail_network()

    with pytest.raises(GatewayError) as exc_info:
        _execute(db_session, request.id, billing_settings, gateway.client())

    assert exc_info.value.code == "toss_cancel_network_error"
    assert exc_info.value.retryable is True
    failed = refund_store.require_refund_request(db_session, request.id)
    assert failed.status == RefundStatus.FAILED_RETRYABLE.value
    assert failed.retry_count == 1
    assert failed.error_code == "toss_cancel_network_error"
    assert as_utc(failed.next_retry_at) > utcnow()
    assert _event_types(db_session, request.id)[-2:] == ["execution_started", "execution_failed"]
    assert order_ledger.get_order(db_session, "ord_123").status == OrderStatus.DONE.value


@pytest.mark.parametrize(
    ("status_code", "body", "code", "expected_status"),
    [
        (500, {"code": "INTERNAL_SERVER_ERROR", "message": "잠시 후 다시 시도"}, "toss_retryable:INTERNAL_SERVER_ERROR", "FAILED_RETRYABLE"),
        (429, {"code": "TOO_MANY_REQUESTS"}, "toss_retryable:TOO_MANY_REQUESTS", "FAILED_RETRYABLE"),
        (400, {"code": "ALREADY_CANCELED_PAYMENT", "message": "이미 취소된 결제"}, "toss_rejected:ALREADY_CANCELED_PAYMENT", "FAILED_FINAL"),
        (200, {"status": "READY"}, "invalid_cancel_status", "FAILED_FINAL"),
    ],
)
def test_gateway_failures_are_classified(
    db_session, settled_order, billing_settings, gateway, status_code, body, code, expected_status
) -> None:
    request = _approved_request(db_session)
    gateway.respond(status_code, body)

    with pytest.raises(GatewayError) as exc_info:
        _execute(db_session, request.id, billing_settings, gateway.client())

    assert exc_info.value.code == code
    failed = refund_store.require_refund_request(db_session, request.id)
    assert failed.status == expected_status
    assert failed.error_code == code


@pytest.mark.parametrize(
    ("overrides", "code"),
    [
        ({"toss_secret_key": None}, "missing_toss_secret_key"),
        ({"toss_client_key": "not-a-key"}, "missing_toss_client_key"),
        ({"toss_client_key": "live_ck_D5GePWvyJnrK0W0k6q8gLzN97Eoq"}, "toss_key_mode_mismatch"),
    ],
)
def test_configuration_errors_fail_final_immediately(db_session, settled_order, overrides, code, caplog) -> None:
    request = _approved_request(db_session)
    settings = make_settings(refund_max_retries=5, **overrides)

    with pytest.raises(GatewayConfigError) as exc_info:
        _execute(db_session, request.id, settings, None)

    assert exc_info.value.code == code
    failed = refund_store.require_refund_request(db_session, request.id)
    assert failed.status == RefundStatus.FAILED_FINAL.value
    assert failed.retry_count == 1
    assert failed.next_retry_at is None
    assert any(record.levelname == "ERROR" and code in record.getMessage() for record in caplog.records)


def test_already_refunded_request_skips_gateway(db_session, settled_order, billing_settings, gateway) -> None:
    request = _approved_request(db_session)
    gateway.succeed()
    _execute(db_session, request.id, billing_settings, gateway.client())

    again = _execute(db_session, request.id, billing_settings, gateway.client())

    assert again.already_refunded is True
    assert len(gateway.requests) == 1
    assert _event_types(db_session, request.id)[-1] == "execute_noop"


def test_execute_from_illegal_state_is_denied(db_session, settled_order, billing_settings, gateway) -> None:
    request = refund_store.create_refund_request(db_session, order_id="ord_123", user_id="user-1", reason="r")

    with pytest.raises(InvalidRefundStateError) as exc_info:
        _execute(db_session, request.id, billing_settings, gateway.client())

    assert exc_info.value.code == "invalid_refund_request_state:REQUESTED"
    assert gateway.requests == []
    assert refund_store.require_refund_request(db_session, request.id).status == RefundStatus.REQUESTED.value
    assert _event_types(db_session, request.id) == ["requested", "transition_denied"]


def test_partial_cancel_amount_is_rejected(db_session, settled_order, billing_settings, gateway) -> None:
    request = _approved_request(db_session)

    with pytest.raises(RefundValidationError) as exc_info:
        _execute(db_session, request.id, billing_settings, gateway.client(), cancel_amount=100)

    assert exc_info.value.code == "invalid_cancel_amount"
    assert gateway.requests == []
    assert refund_store.require_refund_request(db_session, request.id).status == RefundStatus.APPROVED.value


def test_missing_payment_key_is_rejected(db_session, make_order, billing_settings, gateway) -> None:
    make_order(status=OrderStatus.DONE.value, payment_key=None)
    request = _approved_request(db_session)

    with pytest.raises(RefundValidationError) as exc_info:
        _execute(db_session, request.id, billing_settings, gateway.client())

    assert exc_info.value.code == "missing_payment_key_for_refund"


def test_execution_is_reentrant_from_executing(db_session, settled_order, billing_settings, gateway) -> None:
    request = _approved_request(db_session)
    db_session.execute(
        update(RefundRequest).where(RefundRequest.id == request.id).values(status=RefundStatus.EXECUTING.value)
    )
    db_session.commit()
    gateway.succeed()

    result = _execute(db_session, request.id, billing_settings, gateway.client())

    assert result.request.status == RefundStatus.REFUNDED.value


def test_timeout_then_retry_batch_completes_refund(db_session, settled_order, billing_settings, gateway) -> None:
    """Settle, refund, time out at the gateway, then let the retry batch finish the job."""
    _grant_pro(db_session)
    request = _approved_request(db_session)
    gateway.fail_network()
    with pytest.raises(GatewayError):
        _execute(db_session, request.id, billing_settings, gateway.client())

    parked = refund_store.require_refund_request(db_session, request.id)
    assert (parked.status, parked.retry_count) == (RefundStatus.FAILED_RETRYABLE.value, 1)

    too_early = asyncio.run(
        run_retry_batch(
            db_session,
            actor=refund_store.SYSTEM_ACTOR,
            now=as_utc(parked.next_retry_at) - timedelta(seconds=1),
            settings=billing_settings,
            client=gateway.client(),
        )
    )
    assert too_early.total == 0

    gateway.succeed()
    batch = asyncio.run(
        run_retry_batch(
            db_session,
            actor=refund_store.SYSTEM_ACTOR,
            now=as_utc(parked.next_retry_at) + timedelta(seconds=1),
            settings=billing_settings,
            client=gateway.client(),
        )
    )

    assert (batch.total, batch.success_count, batch.fail_count) == (1, 1, 0)
    refunded = refund_store.require_refund_request(db_session, request.id)
    assert refunded.status == RefundStatus.REFUNDED.value
    db_session.expire_all()
    assert order_ledger.read_subscription(db_session, "user-1")["tier"] == PlanTier.FREE.value
    assert _event_types(db_session, request.id) == [
        "requested",
        "approve",
        "execution_started",
        "execution_failed",
        "execution_started",
        "refunded",
    ]
