from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlmodel import select

from central.models import AuditLog, Entitlement

REPORT_URL = "/api/v1/entitlements/report"


def _report(client, headers, **fields):
    body = {
        "email": "member@example.com",
        "productId": "rezume",
        "action": "grant",
        "sourceApp": "rezume",
    }
    body.update(fields)
    return client.post(REPORT_URL, headers=headers, json=body)


def test_report_requires_api_key(client, catalog):
    r = client.post(REPORT_URL, json={"email": "member@example.com"})
    assert r.status_code == 401
    assert r.json()["code"] == 401102

    r = client.post(REPORT_URL, headers={"X-Admin-Api-Key": "wrong"}, json={})
    assert r.status_code == 401


def test_report_missing_fields(client, catalog, api_key_headers):
    r = client.post(REPORT_URL, headers=api_key_headers, json={"productId": "rezume"})
    assert r.status_code == 400
    assert r.json()["code"] == 400101
    assert "email" in r.json()["message"]

    r = _report(client, api_key_headers, sourceApp=None)
    assert r.status_code == 400
    assert r.json()["code"] == 400101


def test_report_invalid_values(client, catalog, api_key_headers):
    r = _report(client, api_key_headers, action="pause")
    assert r.status_code == 400
    assert r.json()["code"] == 400103

    r = _report(client, api_key_headers, productId="unknown-product")
    assert r.status_code == 400
    assert r.json()["code"] == 400102

    r = _report(client, api_key_headers, sourceApp="unknown-app")
    assert r.status_code == 400
    assert r.json()["code"] == 400102


def test_report_grant_then_revoke(client, db, catalog, api_key_headers, dispatcher):
    expires = datetime.now(timezone.utc) + timedelta(days=30)
    r = _report(
        client,
        api_key_headers,
        email="Member@Example.com",
        stripeSubscriptionId="sub_direct_1",
        stripePriceId="price_direct",
        amountPaid=1999,
        currency="cad",
        expiresAt=expires.isoformat(),
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["success"] is True
    assert data["action"] == "grant"
    assert data["email"] == "member@example.com"
    assert data["identityId"]
    assert data["expiresAt"] is not None

    row = db.exec(select(Entitlement)).one()
    assert row.source == "direct"
    assert row.source_app == "rezume"
    assert row.amount_paid == 1999
    assert row.stripe_subscription_id == "sub_direct_1"
    assert dispatcher.requests[-1].tier.value == "pro"

    r = client.get("/api/v1/check", params={"email": "member@example.com", "product": "rezume"})
    assert r.json()["data"]["hasAccess"] is True
    assert r.json()["data"]["source"] == "direct"

    r = _report(client, api_key_headers, action="revoke", stripeSubscriptionId="sub_direct_1")
    assert r.status_code == 200
    assert r.json()["data"]["revoked"] == 1
    assert dispatcher.requests[-1].tier.value == "free"

    r = client.get("/api/v1/check", params={"email": "member@example.com", "product": "rezume"})
    assert r.json()["data"]["hasAccess"] is False


def test_report_revoke_keeps_bundle_access(client, db, catalog, api_key_headers, admin_headers, dispatcher):
    r = client.post(
        "/api/v1/admin/grant",
        headers=admin_headers,
        json={"email": "member@example.com", "productIds": ["rezume"], "source": "bundle"},
    )
    assert r.status_code == 200
    _report(client, api_key_headers)
    before = len(dispatcher.requests)

    r = _report(client, api_key_headers, action="revoke")
    assert r.json()["data"]["revoked"] == 1
    # 仍有套餐授权，不推送 free
    assert len(dispatcher.requests) == before

    r = client.get("/api/v1/check", params={"email": "member@example.com", "product": "rezume"})
    assert r.json()["data"]["hasAccess"] is True
    assert r.json()["data"]["source"] == "bundle"


def test_report_revoke_for_unknown_email(client, catalog, api_key_headers):
    r = _report(client, api_key_headers, email="nobody@example.com", action="revoke")
    assert r.status_code == 200
    assert r.json()["data"]["success"] is True
    assert r.json()["data"]["revoked"] == 0


def test_report_grant_is_idempotent(client, db, catalog, api_key_headers):
    _report(client, api_key_headers, stripeSubscriptionId="sub_a")
    _report(client, api_key_headers)
    rows = db.exec(select(Entitlement)).all()
    assert len(rows) == 1
    # 新上报没有订阅 ID 时保留原值
    assert rows[0].stripe_subscription_id == "sub_a"
    grants = db.exec(select(AuditLog).where(AuditLog.action == "grant")).all()
    assert len(grants) == 2


def test_report_description(client):
    r = client.get(REPORT_URL)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["method"] == "POST"
    assert set(data["examples"]) == {"grant", "revoke"}


def test_check_unknown_email(client, catalog):
    r = client.get("/api/v1/check", params={"email": "stranger@example.com", "product": "rezume"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data == {
        "hasAccess": False,
        "product": "rezume",
        "source": None,
        "bundleName": None,
        "expires": None,
        "grantedAt": None,
    }


def test_check_requires_params(client):
    r = client.get("/api/v1/check", params={"email": "someone@example.com"})
    assert r.status_code == 422
    assert r.json()["code"] == 422000


def test_list_entitlements(client, catalog, admin_headers):
    client.post(
        "/api/v1/admin/grant",
        headers=admin_headers,
        json={
            "email": "member@example.com",
            "productIds": ["snapsite"],
            "durationType": "days",
            "durationValue": 7,
        },
    )
    r = client.get("/api/v1/entitlements", params={"email": "MEMBER@example.com"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["email"] == "member@example.com"
    products = {p["id"]: p for p in data["products"]}
    assert list(products) == ["rezume", "snapsite", "sitekit"]
    assert products["rezume"]["hasAccess"] is False
    assert products["snapsite"]["hasAccess"] is True
    assert products["snapsite"]["source"] == "manual"
    assert products["snapsite"]["expires"] is not None
