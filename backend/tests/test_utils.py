from __future__ import annotations

from central.core import security


def test_health_check(client):
    r = client.get("/api/v1/utils/health-check/")
    assert r.status_code == 200
    assert r.json() is True


def test_unknown_route_uses_envelope(client):
    r = client.get("/api/v1/does-not-exist")
    assert r.status_code == 404
    assert r.json() == {"code": 404000, "message": "Not Found", "data": None}


def test_wrong_method_uses_envelope(client):
    r = client.get("/api/v1/claim/some-token/activate")
    assert r.status_code == 405
    assert r.json() == {"code": 405000, "message": "Method Not Allowed", "data": None}


def test_verify_api_key():
    assert security.verify_api_key("abc", "abc") is True
    assert security.verify_api_key("abc", "abd") is False
    assert security.verify_api_key(None, "abc") is False
    assert security.verify_api_key("abc", None) is False


def test_claim_tokens_are_unique():
    tokens = {security.generate_claim_token() for _ in range(50)}
    assert len(tokens) == 50
    assert all(len(t) == 32 for t in tokens)
