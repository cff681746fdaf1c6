import os
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret-for-billing-suite-0123456789")

import httpx
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import database as database_module
import models  # noqa: F401
from core.billing_constants import OrderStatus
from core.logging import reset_rate_limited_loggers
from database import Base
from models.billing import BillingOrder
from services.billing.config import BillingSettings
from services.billing.toss_gateway import TossCredentials, TossPaymentsClient

TEST_CLIENT_KEY = "test_ck_D5GePWvyJnrK0W0k6q8gLzN97Eoq"
TEST_SECRET_KEY = "test_sk_zXLkKEypNArWmo50nX3lmeaxYG5R"
TEST_PAYMENT_KEY = "tgen_20240101abcdef1234"

_BILLING_ENV_KEYS = (
    "APP_ENV",
    "BILLING_WEBHOOK_TOKEN",
    "BILLING_WEBHOOK_ALLOW_QUERY_TOKEN",
    "BILLING_WEBHOOK_IP_ALLOWLIST",
    "BILLING_WEBHOOK_ALLOW_INSECURE_IP_FALLBACK",
    "BILLING_WEBHOOK_CLIENT_IP_HEADER",
    "BILLING_ADMIN_USER_IDS",
    "BILLING_ADMIN_EMAILS",
    "BILLING_RETRY_CRON_SECRET",
    "BILLING_REFUND_MAX_RETRIES",
    "BILLING_REFUND_RETRY_BASE_SECONDS",
    "BILLING_REFUND_RETRY_MAX_SECONDS",
    "BILLING_RETRY_BATCH_LIMIT",
    "TOSS_PAYMENTS_CLIENT_KEY",
    "TOSS_PAYMENTS_SECRET_KEY",
    "TOSS_PAYMENTS_TEST_CODE",
)


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    test_engine = create_engine(
        os.environ["TEST_DATABASE_URL"],
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    original_session_local = database_module.SessionLocal
    database_module.SessionLocal = sessionmaker(bind=test_engine, autoflush=False)
    try:
        yield test_engine
    finally:
        database_module.SessionLocal = original_session_local
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Generator[Session, None, None]:
    session = database_module.SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        with engine.begin() as connection:
            for table in reversed(Base.metadata.sorted_tables):
                connection.execute(table.delete())


@pytest.fixture(autouse=True)
def _isolate_billing_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    for key in _BILLING_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    reset_rate_limited_loggers()
    yield
    reset_rate_limited_loggers()


def make_settings(**overrides: Any) -> BillingSettings:
    values: Dict[str, Any] = {
        "webhook_token": "whsec-test-token",
        "allow_query_token": False,
        "ip_allowlist": ("203.0.113.0/24",),
        "allow_insecure_ip_fallback": False,
        "client_ip_header": "x-forwarded-for",
        "admin_user_ids": ("admin-1",),
        "admin_emails": ("ops@example.com",),
        "retry_cron_secret": "cron-secret",
        "refund_max_retries": 3,
        "refund_retry_base_seconds": 60,
        "refund_retry_max_seconds": 3600,
        "retry_batch_limit": 10,
        "toss_client_key": TEST_CLIENT_KEY,
        "toss_secret_key": TEST_SECRET_KEY,
        "toss_base_url": "https://api.tosspayments.test",
        "toss_timeout_seconds": 5.0,
        "toss_accept_language": "ko-KR",
        "toss_test_code": None,
    }
    values.update(overrides)
    return BillingSettings(**values)


@pytest.fixture()
def billing_settings() -> BillingSettings:
    return make_settings()


class GatewayStub:
    """Scripted Toss cancel endpoint backed by httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self._responses: List[Callable[[httpx.Request], httpx.Response]] = []

    def respond(self, status_code: int = 200, json: Optional[Dict[str, Any]] = None) -> "GatewayStub":
        self._responses.append(lambda request: httpx.Response(status_code, json=json or {}))
        return self

    def succeed(self, status: str = "CANCELED", transaction_key: str = "txn_cancel_0001") -> "GatewayStub":
        return self.respond(200, {"status": status, "cancels": [{"transactionKey": transaction_key}]})

    def fail_network(self) -> "GatewayStub":
        def _raise(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        self._responses.append(_raise)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._responses:
            raise AssertionError("gateway called more often than scripted")
        return self._responses.pop(0)(request)

    def client(self) -> TossPaymentsClient:
        return TossPaymentsClient(
            credentials=TossCredentials(client_key=TEST_CLIENT_KEY, secret_key=TEST_SECRET_KEY, mode="test"),
            base_url="https://api.tosspayments.test",
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture()
def gateway() -> GatewayStub:
    return GatewayStub()


@pytest.fixture()
def make_order(db_session: Session) -> Callable[..., BillingOrder]:
    def _make(
        order_id: str = "ord_123",
        *,
        user_id: str = "user-1",
        amount: int = 9900,
        status: str = OrderStatus.READY.value,
        order_kind: str = "subscription",
        plan_tier: Optional[str] = "pro",
        payment_key: Optional[str] = None,
    ) -> BillingOrder:
        order = BillingOrder(
            order_id=order_id,
            user_id=user_id,
            amount=amount,
            status=status,
            order_kind=order_kind,
            plan_tier=plan_tier,
            currency="KRW",
            payment_key=payment_key,
        )
        db_session.add(order)
        db_session.commit()
        return order

    return _make


@pytest.fixture()
def settled_order(make_order: Callable[..., BillingOrder]) -> BillingOrder:
    return make_order(status=OrderStatus.DONE.value, payment_key=TEST_PAYMENT_KEY)
