from __future__ import annotations

import httpx
from sqlmodel import select

from central.crud import identity as identity_crud
from central.models import AuditLog, ProductSubmission
from central.services.submissions import SubmissionForwarder
from central.worker import tasks


class _FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    def set(self, key: str, value: str, ex: int | None = None, nx: bool = False) -> bool | None:
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def eval(self, script: str, numkeys: int, key: str, value: str) -> int:
        if self.store.get(key) == value:
            del self.store[key]
            return 1
        return 0


def _submission(db, *, product_id: str = "sitekit", email: str = "owner@example.com") -> ProductSubmission:
    identity = identity_crud.get_or_create(session=db, email=email)
    submission = ProductSubmission(
        identity_id=identity.id,
        product_id=product_id,
        form_data={"siteName": "Acme", "plan": "starter"},
    )
    db.add(submission)
    db.commit()
    db.refresh(submission)
    return submission


def test_forward_pending_retries_until_success(db, catalog, form_webhook, forwarder):
    form_webhook.statuses = [500]
    submission = _submission(db)

    first = forwarder.forward_pending(db)
    assert [(r.success, r.status_code) for r in first] == [(False, 500)]
    db.refresh(submission)
    assert submission.forwarded is False

    second = forwarder.forward_pending(db)
    assert [r.success for r in second] == [True]
    db.refresh(submission)
    assert submission.forwarded is True
    assert submission.forward_response["status"] == 200

    # 已转发的不再重试
    assert forwarder.forward_pending(db) == []
    assert len(form_webhook.requests) == 2
    payload = form_webhook.requests[-1]["json"]
    assert payload["identityId"] == str(submission.identity_id)
    assert payload["primaryEmail"] == "owner@example.com"


def test_forward_skips_products_without_webhook(db, catalog, form_webhook, forwarder):
    _submission(db, product_id="rezume")
    assert forwarder.forward_pending(db) == []
    assert form_webhook.requests == []


def test_transport_error_is_recorded(db, catalog):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    submission = _submission(db)
    forwarder = SubmissionForwarder(transport=httpx.MockTransport(handler))
    results = forwarder.forward_ids([submission.id])
    assert results[0].success is False
    db.refresh(submission)
    assert submission.forwarded is False
    assert "timed out" in submission.forward_response["error"]


def test_retry_task_holds_lock(db, catalog, forwarder, form_webhook):
    _submission(db)
    fake = _FakeRedis()

    results = tasks.retry_pending_submissions(redis_client=fake, forwarder=forwarder)
    assert [r.success for r in results] == [True]
    assert fake.store == {}

    fake.store[tasks.FORWARD_LOCK_KEY] = "another-worker"
    assert tasks.retry_pending_submissions(redis_client=fake, forwarder=forwarder) == []
    assert fake.store[tasks.FORWARD_LOCK_KEY] == "another-worker"
    assert len(form_webhook.requests) == 1
    assert db.exec(select(ProductSubmission)).one().forwarded is True


def test_inbound_submission_links_existing_identity(
    client, db, catalog, api_key_headers, forwarder, form_webhook
):
    owner = identity_crud.get_or_create(session=db, email="owner@example.com")
    identity_crud.bind_email(
        session=db, identity_id=owner.id, email="site@acme.io", product_id="sitekit"
    )
    db.commit()

    r = client.post(
        "/api/v1/webhooks/submissions/sitekit",
        headers=api_key_headers,
        json={"Email": " Site@Acme.io ", "siteName": "Acme", "phone": "555-0100"},
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["identityId"] == owner.id
    assert data["email"] == "site@acme.io"
    assert data["productId"] == "sitekit"

    submission = db.exec(select(ProductSubmission)).one()
    assert submission.identity_id == owner.id
    assert submission.form_data["siteName"] == "Acme"
    assert submission.claim_token_id is None
    # 外部推送进来的提交不会再被转发出去
    assert submission.forwarded is True
    assert forwarder.forward_pending(db) == []
    assert form_webhook.requests == []

    audit = db.exec(select(AuditLog).where(AuditLog.action == "submission_received")).one()
    assert audit.identity_id == owner.id
    assert audit.details["formFields"] == ["Email", "phone", "siteName"]


def test_inbound_submission_creates_identity(client, db, catalog, api_key_headers):
    r = client.post(
        "/api/v1/webhooks/submissions/sitekit",
        headers=api_key_headers,
        json={"email": "new@example.com", "siteName": "Fresh"},
    )
    assert r.status_code == 200
    identity = identity_crud.get_by_email(session=db, email="new@example.com")
    assert identity is not None
    assert r.json()["data"]["identityId"] == identity.id


def test_inbound_submission_rejections(client, db, catalog, api_key_headers):
    r = client.post(
        "/api/v1/webhooks/submissions/sitekit",
        headers=api_key_headers,
        json={"siteName": "No email"},
    )
    assert r.status_code == 400
    assert r.json()["code"] == 400101

    r = client.post(
        "/api/v1/webhooks/submissions/unknown",
        headers=api_key_headers,
        json={"email": "a@example.com"},
    )
    assert r.status_code == 404
    assert r.json()["code"] == 404501

    r = client.post("/api/v1/webhooks/submissions/sitekit", json={"email": "a@example.com"})
    assert r.status_code == 401

    assert db.exec(select(ProductSubmission)).all() == []
    assert identity_crud.get_by_email(session=db, email="a@example.com") is None

    r = client.get("/api/v1/webhooks/submissions/sitekit")
    assert r.status_code == 200
    assert r.json()["data"]["method"] == "POST"
