from __future__ import annotations

from datetime import timedelta

from central.core import security
from central.models import utc_now


def test_admin_requires_token(client):
    r = client.get("/api/v1/admin/products")
    assert r.status_code == 401
    assert r.json()["code"] == 401301

    r = client.get("/api/v1/admin/products", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["code"] == 401302


def test_admin_rejects_non_admin_email(client):
    token = security.create_access_token("someone@example.com", timedelta(minutes=5))
    r = client.get("/api/v1/admin/products", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401
    assert r.json()["code"] == 401303


def test_admin_rejects_expired_token(client):
    token = security.create_access_token("admin@example.com", timedelta(minutes=-5))
    r = client.get("/api/v1/admin/products", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401
    assert r.json()["code"] == 401302


def test_create_product_and_bundle(client, db, admin_headers):
    r = client.post(
        "/api/v1/admin/products",
        headers=admin_headers,
        json={
            "id": "notely",
            "name": "Notely",
            "syncUrl": "https://notely.test/sync",
            "formSchema": [{"name": "workspace", "type": "text", "required": True}],
        },
    )
    assert r.status_code == 200
    product = r.json()["data"]
    assert product["id"] == "notely"
    assert product["formSchema"][0]["name"] == "workspace"

    r = client.post(
        "/api/v1/admin/products",
        headers=admin_headers,
        json={"id": "notely", "name": "Notely again"},
    )
    assert r.status_code == 409
    assert r.json()["code"] == 409201

    r = client.post(
        "/api/v1/admin/bundles",
        headers=admin_headers,
        json={
            "name": "Notes Monthly",
            "slug": "notes-monthly",
            "stripePriceId": "price_notes",
            "productIds": ["notely", "notely"],
            "durationType": "months",
            "durationValue": 1,
        },
    )
    assert r.status_code == 200
    bundle = r.json()["data"]
    assert bundle["productIds"] == ["notely"]
    assert bundle["durationType"] == "months"

    r = client.post(
        "/api/v1/admin/bundles",
        headers=admin_headers,
        json={
            "name": "Broken",
            "slug": "broken",
            "stripePriceId": "price_broken",
            "productIds": ["missing"],
        },
    )
    assert r.status_code == 400
    assert r.json()["code"] == 400501

    r = client.get("/api/v1/admin/bundles", headers=admin_headers)
    assert [b["slug"] for b in r.json()["data"]] == ["notes-monthly"]


def test_grant_revoke_one_and_lookup(client, catalog, admin_headers, api_key_headers, dispatcher):
    r = client.post(
        "/api/v1/admin/grant",
        headers=admin_headers,
        json={
            "email": "vip@example.com",
            "productIds": ["rezume", "snapsite"],
            "source": "promo",
            "reason": "Launch giveaway",
        },
    )
    assert r.status_code == 200
    granted = r.json()["data"]["entitlements"]
    assert len(granted) == 2
    assert all(e["active"] for e in granted)
    assert dispatcher.requests[-1].reason == "Launch giveaway"

    client.post(
        "/api/v1/entitlements/report",
        headers=api_key_headers,
        json={
            "email": "vip@example.com",
            "productId": "rezume",
            "action": "grant",
            "sourceApp": "rezume",
        },
    )

    promo_rezume = next(e for e in granted if e["productId"] == "rezume")
    sync_count = len(dispatcher.requests)
    r = client.post(
        f"/api/v1/admin/entitlements/{promo_rezume['id']}/revoke",
        headers=admin_headers,
        json={"reason": "Giveaway ended"},
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["entitlement"]["active"] is False
    assert data["entitlement"]["revokedReason"] == "Giveaway ended"
    assert data["remainingActive"] == 1
    assert len(dispatcher.requests) == sync_count

    promo_snapsite = next(e for e in granted if e["productId"] == "snapsite")
    r = client.post(
        f"/api/v1/admin/entitlements/{promo_snapsite['id']}/revoke", headers=admin_headers
    )
    assert r.json()["data"]["remainingActive"] == 0
    assert dispatcher.requests[-1].tier.value == "free"
    assert dispatcher.requests[-1].product_ids == ["snapsite"]

    r = client.get(
        "/api/v1/admin/identities/lookup",
        headers=admin_headers,
        params={"email": "vip@example.com"},
    )
    assert r.status_code == 200
    detail = r.json()["data"]
    assert detail["primaryEmail"] == "vip@example.com"
    assert [b["productId"] for b in detail["emails"]] == ["rezume"]
    active = [e for e in detail["entitlements"] if e["active"]]
    assert [(e["productId"], e["source"]) for e in active] == [("rezume", "direct")]


def test_revoke_one_unknown_entitlement(client, admin_headers):
    r = client.post("/api/v1/admin/entitlements/12345/revoke", headers=admin_headers)
    assert r.status_code == 404
    assert r.json()["code"] == 404301


def test_blanket_revoke(client, catalog, admin_headers, api_key_headers, dispatcher):
    client.post(
        "/api/v1/admin/grant",
        headers=admin_headers,
        json={"email": "vip@example.com", "productIds": ["rezume"]},
    )
    client.post(
        "/api/v1/entitlements/report",
        headers=api_key_headers,
        json={
            "email": "vip@example.com",
            "productId": "rezume",
            "action": "grant",
            "sourceApp": "rezume",
        },
    )
    r = client.post(
        "/api/v1/admin/revoke",
        headers=admin_headers,
        json={"email": "vip@example.com", "productIds": ["rezume"], "reason": "Chargeback"},
    )
    assert r.status_code == 200
    assert r.json()["data"]["revoked"] == 2
    assert dispatcher.requests[-1].tier.value == "free"

    r = client.get("/api/v1/check", params={"email": "vip@example.com", "product": "rezume"})
    assert r.json()["data"]["hasAccess"] is False

    r = client.post(
        "/api/v1/admin/revoke",
        headers=admin_headers,
        json={"email": "ghost@example.com", "productIds": ["rezume"]},
    )
    assert r.status_code == 404
    assert r.json()["code"] == 404401


def test_grant_unknown_product(client, catalog, admin_headers):
    r = client.post(
        "/api/v1/admin/grant",
        headers=admin_headers,
        json={"email": "vip@example.com", "productIds": ["nope"]},
    )
    assert r.status_code == 400
    assert r.json()["code"] == 400501


def test_audit_and_webhook_logs(client, catalog, admin_headers):
    client.post(
        "/api/v1/admin/grant",
        headers=admin_headers,
        json={"email": "vip@example.com", "productIds": ["rezume"]},
    )
    r = client.get(
        "/api/v1/admin/logs/audit", headers=admin_headers, params={"action": "grant"}
    )
    assert r.status_code == 200
    page = r.json()["data"]
    assert page["count"] == 1
    entry = page["items"][0]
    assert entry["adminEmail"] == "admin@example.com"
    assert entry["productIds"] == ["rezume"]

    r = client.get("/api/v1/admin/logs/webhooks", headers=admin_headers)
    assert r.json()["data"] == {"items": [], "count": 0}


def _identity_id(client, admin_headers, email: str) -> int:
    r = client.get(
        "/api/v1/admin/identities/lookup", headers=admin_headers, params={"email": email}
    )
    assert r.status_code == 200
    return r.json()["data"]["id"]


def test_blanket_revoke_by_product_email(client, catalog, admin_headers, dispatcher):
    client.post(
        "/api/v1/admin/grant",
        headers=admin_headers,
        json={"email": "vip@example.com", "productIds": ["rezume"]},
    )
    identity_id = _identity_id(client, admin_headers, "vip@example.com")
    r = client.post(
        f"/api/v1/admin/identities/{identity_id}/emails",
        headers=admin_headers,
        json={"email": "CV@Example.com", "productId": "rezume"},
    )
    assert r.status_code == 200
    assert r.json()["data"] == [
        {"email": "cv@example.com", "productId": "rezume", "verified": False}
    ]

    # 只有产品绑定邮箱，没有以它为主邮箱的身份
    r = client.post(
        "/api/v1/admin/revoke",
        headers=admin_headers,
        json={"email": "cv@example.com", "productIds": ["rezume"]},
    )
    assert r.status_code == 200
    assert r.json()["data"]["revoked"] == 1
    assert dispatcher.requests[-1].targets[0].email == "cv@example.com"

    r = client.get("/api/v1/check", params={"email": "vip@example.com", "product": "rezume"})
    assert r.json()["data"]["hasAccess"] is False


def test_link_email_requires_known_identity_and_product(client, catalog, admin_headers, db):
    client.post(
        "/api/v1/admin/grant",
        headers=admin_headers,
        json={"email": "vip@example.com", "productIds": ["rezume"]},
    )
    identity_id = _identity_id(client, admin_headers, "vip@example.com")

    r = client.post(
        f"/api/v1/admin/identities/{identity_id}/emails",
        headers=admin_headers,
        json={"email": "cv@example.com", "productId": "nope"},
    )
    assert r.status_code == 404
    assert r.json()["code"] == 404501

    r = client.post(
        "/api/v1/admin/identities/12345/emails",
        headers=admin_headers,
        json={"email": "cv@example.com", "productId": "rezume"},
    )
    assert r.status_code == 404
    assert r.json()["code"] == 404401

    r = client.get(
        "/api/v1/admin/logs/audit", headers=admin_headers, params={"action": "email_linked"}
    )
    assert r.json()["data"]["count"] == 0


def test_fixed_duration_is_rejected(client, catalog, admin_headers):
    r = client.post(
        "/api/v1/admin/grant",
        headers=admin_headers,
        json={"email": "vip@example.com", "productIds": ["rezume"], "durationType": "fixed"},
    )
    assert r.status_code == 422
    assert r.json()["code"] == 422000

    r = client.post(
        "/api/v1/admin/bundles",
        headers=admin_headers,
        json={
            "name": "Fixed",
            "slug": "fixed",
            "stripePriceId": "price_fixed",
            "productIds": ["rezume"],
            "durationType": "fixed",
        },
    )
    assert r.status_code == 422

    r = client.get("/api/v1/check", params={"email": "vip@example.com", "product": "rezume"})
    assert r.json()["data"]["hasAccess"] is False


def test_update_and_deactivate_product(client, catalog, admin_headers):
    r = client.put(
        "/api/v1/admin/products/rezume",
        headers=admin_headers,
        json={
            "name": "Rezume Pro",
            "formSchema": [{"name": "linkedin", "type": "url", "required": False}],
        },
    )
    assert r.status_code == 200
    product = r.json()["data"]
    assert product["name"] == "Rezume Pro"
    assert product["formSchema"] == [{"name": "linkedin", "type": "url", "required": False}]
    # 未传入的字段保持不变
    assert product["syncUrl"] == "https://rezume.test/api/sync"
    assert product["displayOrder"] == 1

    client.post(
        "/api/v1/admin/grant",
        headers=admin_headers,
        json={"email": "vip@example.com", "productIds": ["rezume"]},
    )
    r = client.get("/api/v1/admin/products/rezume", headers=admin_headers)
    assert r.json()["data"]["activeEntitlements"] == 1
    assert r.json()["data"]["submissions"] == 0

    r = client.delete("/api/v1/admin/products/rezume", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["data"]["isActive"] is False

    # 下架不影响已有授权
    r = client.get("/api/v1/check", params={"email": "vip@example.com", "product": "rezume"})
    assert r.json()["data"]["hasAccess"] is True

    r = client.get(
        "/api/v1/admin/logs/audit", headers=admin_headers, params={"action": "product_updated"}
    )
    entry = r.json()["data"]["items"][0]
    assert entry["productIds"] == ["rezume"]
    assert entry["details"]["name"] == "Rezume Pro"
    r = client.get(
        "/api/v1/admin/logs/audit", headers=admin_headers, params={"action": "product_deleted"}
    )
    assert r.json()["data"]["count"] == 1

    r = client.put("/api/v1/admin/products/nope", headers=admin_headers, json={"name": "X"})
    assert r.status_code == 404
    assert r.json()["code"] == 404501


def test_update_and_deactivate_bundle(client, db, catalog, admin_headers):
    yearly = catalog["bundles"]["yearly"]
    r = client.put(
        f"/api/v1/admin/bundles/{yearly.id}",
        headers=admin_headers,
        json={"productIds": ["rezume", "snapsite"], "durationType": "months", "durationValue": 6},
    )
    assert r.status_code == 200
    bundle = r.json()["data"]
    assert bundle["productIds"] == ["rezume", "snapsite"]
    assert bundle["durationType"] == "months"
    assert bundle["durationValue"] == 6
    assert bundle["stripePriceId"] == "price_yearly"

    r = client.put(
        f"/api/v1/admin/bundles/{yearly.id}", headers=admin_headers, json={"slug": "starter"}
    )
    assert r.status_code == 409
    assert r.json()["code"] == 409202

    r = client.put(
        f"/api/v1/admin/bundles/{yearly.id}",
        headers=admin_headers,
        json={"productIds": ["missing"]},
    )
    assert r.status_code == 400
    assert r.json()["code"] == 400501

    r = client.get(f"/api/v1/admin/bundles/{yearly.id}", headers=admin_headers)
    detail = r.json()["data"]
    assert [p["id"] for p in detail["products"]] == ["rezume", "snapsite"]
    assert detail["entitlements"] == 0
    assert detail["claimedTokens"] == 0

    r = client.delete(f"/api/v1/admin/bundles/{yearly.id}", headers=admin_headers)
    assert r.json()["data"]["isActive"] is False

    r = client.get(
        "/api/v1/admin/logs/audit", headers=admin_headers, params={"action": "bundle_updated"}
    )
    assert r.json()["data"]["count"] == 1
    assert r.json()["data"]["items"][0]["details"]["bundleId"] == yearly.id

    r = client.get("/api/v1/admin/bundles/12345", headers=admin_headers)
    assert r.status_code == 404
    assert r.json()["code"] == 404201


def test_list_and_search_identities(client, catalog, admin_headers, api_key_headers):
    for email, products, source in [
        ("alice@example.com", ["rezume"], "manual"),
        ("bob@example.com", ["snapsite"], "promo"),
        ("carol@example.com", ["rezume", "snapsite"], "promo"),
    ]:
        client.post(
            "/api/v1/admin/grant",
            headers=admin_headers,
            json={"email": email, "productIds": products, "source": source},
        )
    bob = _identity_id(client, admin_headers, "bob@example.com")
    client.post(
        f"/api/v1/admin/identities/{bob}/emails",
        headers=admin_headers,
        json={"email": "robert@work.test", "productId": "rezume"},
    )

    r = client.get("/api/v1/admin/identities", headers=admin_headers)
    page = r.json()["data"]
    assert page["count"] == 3
    assert {i["primaryEmail"] for i in page["items"]} == {
        "alice@example.com",
        "bob@example.com",
        "carol@example.com",
    }

    r = client.get("/api/v1/admin/identities", headers=admin_headers, params={"search": "WORK.test"})
    items = r.json()["data"]["items"]
    assert [i["primaryEmail"] for i in items] == ["bob@example.com"]
    assert items[0]["emails"][0]["email"] == "robert@work.test"

    r = client.get(
        "/api/v1/admin/identities",
        headers=admin_headers,
        params={"product": "snapsite", "source": "promo"},
    )
    page = r.json()["data"]
    assert page["count"] == 2
    assert {i["primaryEmail"] for i in page["items"]} == {"bob@example.com", "carol@example.com"}
    carol = next(i for i in page["items"] if i["primaryEmail"] == "carol@example.com")
    assert sorted(e["productId"] for e in carol["activeEntitlements"]) == ["rezume", "snapsite"]

    r = client.get(
        "/api/v1/admin/identities", headers=admin_headers, params={"limit": 1, "offset": 1}
    )
    page = r.json()["data"]
    assert page["count"] == 3
    assert len(page["items"]) == 1

    r = client.get(
        "/api/v1/admin/identities/lookup",
        headers=admin_headers,
        params={"email": "robert@work.test"},
    )
    assert r.json()["data"]["id"] == bob


def test_identity_detail_grant_and_extend(client, db, catalog, admin_headers, dispatcher):
    client.post(
        "/api/v1/admin/grant",
        headers=admin_headers,
        json={"email": "vip@example.com", "productIds": ["snapsite"]},
    )
    identity_id = _identity_id(client, admin_headers, "vip@example.com")

    r = client.patch(
        f"/api/v1/admin/identities/{identity_id}/grant",
        headers=admin_headers,
        json={"productIds": ["rezume"], "durationType": "days", "durationValue": 30},
    )
    assert r.status_code == 200
    assert r.json()["data"]["expiresAt"] is not None

    past = (utc_now() - timedelta(days=1)).isoformat()
    r = client.put(
        f"/api/v1/admin/identities/{identity_id}/extend",
        headers=admin_headers,
        json={"productIds": ["rezume"], "expiresAt": past},
    )
    assert r.status_code == 200
    assert r.json()["data"]["updated"] == 1
    assert dispatcher.requests[-1].tier.value == "free"
    assert dispatcher.requests[-1].product_ids == ["rezume"]
    r = client.get("/api/v1/check", params={"email": "vip@example.com", "product": "rezume"})
    assert r.json()["data"]["hasAccess"] is False

    r = client.put(
        f"/api/v1/admin/identities/{identity_id}/extend",
        headers=admin_headers,
        json={"productIds": ["rezume"], "expiresAt": None},
    )
    assert r.json()["data"] == {"updated": 1, "expiresAt": None}
    assert dispatcher.requests[-1].tier.value == "pro"
    r = client.get("/api/v1/check", params={"email": "vip@example.com", "product": "rezume"})
    assert r.json()["data"]["hasAccess"] is True
    assert r.json()["data"]["expires"] is None

    r = client.post(
        f"/api/v1/admin/identities/{identity_id}/revoke",
        headers=admin_headers,
        json={"productIds": ["snapsite"], "reason": "Refund"},
    )
    assert r.json()["data"]["revoked"] == 1

    r = client.get(f"/api/v1/admin/identities/{identity_id}", headers=admin_headers)
    detail = r.json()["data"]
    assert detail["primaryEmail"] == "vip@example.com"
    active = sorted(e["productId"] for e in detail["entitlements"] if e["active"])
    assert active == ["rezume"]
    assert detail["submissions"] == []
    assert detail["claimTokens"] == []

    r = client.get(
        "/api/v1/admin/logs/audit", headers=admin_headers, params={"action": "extend_access"}
    )
    assert r.json()["data"]["count"] == 2

    r = client.get("/api/v1/admin/identities/12345", headers=admin_headers)
    assert r.status_code == 404
    assert r.json()["code"] == 404401
    r = client.patch(
        "/api/v1/admin/identities/12345/grant",
        headers=admin_headers,
        json={"productIds": ["rezume"]},
    )
    assert r.status_code == 404


def test_analytics_summary(client, db, catalog, admin_headers):
    for email, products, source in [
        ("alice@example.com", ["rezume"], "manual"),
        ("bob@example.com", ["rezume", "snapsite"], "promo"),
    ]:
        client.post(
            "/api/v1/admin/grant",
            headers=admin_headers,
            json={"email": email, "productIds": products, "source": source},
        )
    client.post(
        "/api/v1/admin/grant",
        headers=admin_headers,
        json={
            "email": "carol@example.com",
            "productIds": ["snapsite"],
            "durationType": "days",
            "durationValue": 10,
        },
    )
    bob = _identity_id(client, admin_headers, "bob@example.com")
    client.post(
        f"/api/v1/admin/identities/{bob}/revoke",
        headers=admin_headers,
        json={"productIds": ["snapsite"]},
    )

    r = client.get("/api/v1/admin/analytics", headers=admin_headers)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["totalIdentities"] == 3
    assert data["totalEntitlements"] == 4
    assert data["activeEntitlements"] == 3
    assert data["byProduct"] == {"rezume": 2, "snapsite": 1}
    assert data["bySource"] == {"manual": 2, "promo": 1}
    assert len(data["recentGrants"]) == 4
    assert {g["product"] for g in data["recentGrants"]} == {"Rezume", "SnapSite"}
    assert [(g["email"], g["productId"]) for g in data["expiringSoon"]] == [
        ("carol@example.com", "snapsite")
    ]
    assert data["bundleClaims"] == []
