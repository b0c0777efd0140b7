from __future__ import annotations

import hashlib
import hmac
import json
import os
import time
from collections.abc import Generator
from datetime import timedelta
from typing import Any

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["CENTRAL_API_KEY"] = "test-central-key"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["ADMIN_EMAILS"] = '["admin@example.com"]'

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine, delete  # noqa: E402

from central.api import deps  # noqa: E402
from central.core import db as core_db  # noqa: E402
from central.core import security  # noqa: E402
from central.main import app  # noqa: E402
from central.models import (  # noqa: E402
    AuditLog,
    Bundle,
    ClaimToken,
    Entitlement,
    Identity,
    IdentityEmail,
    Product,
    ProductSubmission,
    WebhookLog,
)
from central.services.app_sync import AppSyncDispatcher, SyncRequest  # noqa: E402
from central.services.email_sender import RecordingEmailSender  # noqa: E402
from central.services.stripe_service import StripeGateway  # noqa: E402
from central.services.submissions import SubmissionForwarder  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"
API_KEY = "test-central-key"
ADMIN_EMAIL = "admin@example.com"


class RecordingDispatcher(AppSyncDispatcher):
    """不发 HTTP 请求，只记录推送任务"""

    def __init__(self) -> None:
        super().__init__(api_key=API_KEY)
        self.requests: list[SyncRequest] = []

    async def dispatch(self, *requests: SyncRequest | None) -> list:
        self.requests.extend(r for r in requests if r is not None)
        return []


class FakeGateway(StripeGateway):
    """真实签名校验；结账明细和创建会话不访问 Stripe"""

    def __init__(self) -> None:
        super().__init__(api_key="sk_test", webhook_secret=WEBHOOK_SECRET)
        self.line_items: dict[str, list[str]] = {}
        self.checkouts: list[dict[str, Any]] = []

    def line_item_price_ids(self, session_id: str) -> list[str]:
        return self.line_items.get(session_id, [])

    def create_checkout_session(self, **kwargs: Any) -> str:
        self.checkouts.append(kwargs)
        return f"https://checkout.stripe.test/c/{len(self.checkouts)}"


class FormWebhook:
    """表单转发目标：按顺序返回预设状态码"""

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.statuses: list[int] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append({"url": str(request.url), "json": json.loads(request.content)})
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"ok": status < 400})


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(autouse=True)
def _use_test_engine(engine, monkeypatch) -> None:
    monkeypatch.setattr(core_db, "engine", engine)


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        session.rollback()
        # Clean tables after each test (children first).
        session.exec(delete(ProductSubmission))
        session.exec(delete(ClaimToken))
        session.exec(delete(Entitlement))
        session.exec(delete(IdentityEmail))
        session.exec(delete(Identity))
        session.exec(delete(Bundle))
        session.exec(delete(Product))
        session.exec(delete(AuditLog))
        session.exec(delete(WebhookLog))
        session.commit()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def form_webhook() -> FormWebhook:
    return FormWebhook()


@pytest.fixture
def forwarder(form_webhook) -> SubmissionForwarder:
    return SubmissionForwarder(transport=httpx.MockTransport(form_webhook.handler))


@pytest.fixture(scope="function")
def client(
    engine, db, dispatcher, email_sender, gateway, forwarder
) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[deps.get_db] = _override_get_db
    app.dependency_overrides[deps.get_sync_dispatcher] = lambda: dispatcher
    app.dependency_overrides[deps.get_email_sender] = lambda: email_sender
    app.dependency_overrides[deps.get_gateway] = lambda: gateway
    app.dependency_overrides[deps.get_forwarder] = lambda: forwarder
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    token = security.create_access_token(ADMIN_EMAIL, timedelta(minutes=30))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api_key_headers() -> dict[str, str]:
    return {security.API_KEY_HEADER: API_KEY}


@pytest.fixture
def catalog(db) -> dict[str, Any]:
    """
    两个无表单产品 + 一个带表单产品；三个套餐：
    - starter: 永久，rezume + snapsite（无表单，直接授权）
    - yearly: 按年订阅，rezume
    - launch: 永久，包含需要表单的 sitekit（发放领取令牌）
    """
    products = [
        Product(
            id="rezume",
            name="Rezume",
            sync_url="https://rezume.test/api/sync",
            display_order=1,
        ),
        Product(
            id="snapsite",
            name="SnapSite",
            sync_url="https://snapsite.test/api/sync",
            display_order=2,
        ),
        Product(
            id="sitekit",
            name="SiteKit",
            form_schema=[
                {"name": "siteName", "type": "text", "label": "Site name", "required": True},
                {"name": "contact", "type": "email", "required": False},
                {
                    "name": "plan",
                    "type": "select",
                    "required": True,
                    "options": ["starter", "business"],
                },
            ],
            form_webhook_url="https://hooks.test/sitekit",
            display_order=3,
        ),
    ]
    bundles = {
        "starter": Bundle(
            name="Starter Bundle",
            slug="starter",
            stripe_price_id="price_starter",
            product_ids=["rezume", "snapsite"],
            duration_type="lifetime",
        ),
        "yearly": Bundle(
            name="Rezume Yearly",
            slug="yearly",
            stripe_price_id="price_yearly",
            product_ids=["rezume"],
            duration_type="years",
            duration_value=1,
        ),
        "launch": Bundle(
            name="Launch Bundle",
            slug="launch",
            stripe_price_id="price_launch",
            product_ids=["rezume", "sitekit"],
            duration_type="lifetime",
        ),
    }
    for product in products:
        db.add(product)
    db.commit()
    for bundle in bundles.values():
        db.add(bundle)
    db.commit()
    for bundle in bundles.values():
        db.refresh(bundle)
    return {"products": {p.id: p for p in products}, "bundles": bundles}
