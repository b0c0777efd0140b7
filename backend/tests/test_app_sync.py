from __future__ import annotations

import asyncio
import json

import httpx

from central.enums import AccessTier
from central.services.app_sync import AppSyncDispatcher, SyncRequest, SyncTarget


def _request(*targets: SyncTarget, tier: AccessTier = AccessTier.pro) -> SyncRequest:
    return SyncRequest(tier=tier, source="bundle", reason="Bundle access granted", targets=list(targets))


def _target(product_id: str, url: str | None = None) -> SyncTarget:
    return SyncTarget(
        product_id=product_id,
        name=product_id.title(),
        url=url or f"https://{product_id}.test/sync",
        email="user@example.com",
    )


def test_push_sends_payload_and_key():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    dispatcher = AppSyncDispatcher(api_key="k", transport=httpx.MockTransport(handler))
    results = asyncio.run(dispatcher.dispatch(_request(_target("rezume"))))

    assert [r.success for r in results] == [True]
    assert results[0].response == {"ok": True}
    assert seen[0].headers["X-Admin-Api-Key"] == "k"
    assert json.loads(seen[0].content) == {
        "email": "user@example.com",
        "tier": "pro",
        "source": "bundle",
        "reason": "Bundle access granted",
    }


def test_one_failing_target_does_not_block_others():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "broken.test":
            return httpx.Response(500, text="boom")
        if request.url.host == "down.test":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(204)

    dispatcher = AppSyncDispatcher(api_key="k", transport=httpx.MockTransport(handler))
    results = asyncio.run(
        dispatcher.dispatch(
            _request(_target("broken"), _target("down"), _target("rezume")),
            None,
        )
    )
    outcome = {r.product_id: r for r in results}
    assert outcome["rezume"].success is True
    assert outcome["broken"].success is False
    assert outcome["broken"].error.startswith("HTTP 500")
    assert outcome["down"].success is False


def test_missing_api_key_fails_every_target():
    calls: list[httpx.Request] = []
    dispatcher = AppSyncDispatcher(
        api_key=None,
        transport=httpx.MockTransport(lambda r: calls.append(r) or httpx.Response(200)),
    )
    results = asyncio.run(dispatcher.dispatch(_request(_target("rezume"), _target("snapsite"))))
    assert [r.success for r in results] == [False, False]
    assert calls == []


def test_slow_target_times_out():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200)

    dispatcher = AppSyncDispatcher(
        api_key="k", timeout=0.05, transport=httpx.MockTransport(handler)
    )
    results = asyncio.run(dispatcher.dispatch(_request(_target("rezume"))))
    assert results[0].success is False
    assert "Timed out" in results[0].error


def test_empty_requests_are_skipped():
    dispatcher = AppSyncDispatcher(api_key="k")
    assert asyncio.run(dispatcher.dispatch(None, _request())) == []
