"""
跨应用同步推送服务

授权或撤销之后，把访问等级（pro / free）推送到受影响产品的远端同步接口，
让各产品刷新自己的本地缓存。

- 所有目标并行推送，每个目标独立超时（SYNC_TIMEOUT_SECONDS）
- 单个目标失败只记录日志，不影响其他目标，也不影响已完成的账本变更
- 没有持久化重试：推送失败的产品会在用户下次登录调用 /check 时自行纠正
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from central.core.security import API_KEY_HEADER
from central.enums import AccessTier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncTarget:
    """一个需要推送的远端产品"""

    product_id: str
    name: str
    url: str
    email: str


@dataclass
class SyncRequest:
    """一次推送任务：同一等级、同一原因，推送到多个产品"""

    tier: AccessTier
    source: str
    reason: str
    targets: list[SyncTarget] = field(default_factory=list)

    @property
    def product_ids(self) -> list[str]:
        return [t.product_id for t in self.targets]


@dataclass
class SyncResult:
    """单个目标的推送结果"""

    product_id: str
    app: str
    success: bool
    error: str | None = None
    response: Any = None


class AppSyncDispatcher:
    """
    同步推送分发器

    进程内构造一次，通过依赖注入传给路由；推送在响应返回之后以后台任务执行。
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Args:
            api_key: 共享密钥（X-Admin-Api-Key），未配置时所有推送直接记为失败
            timeout: 单个目标的超时时间（秒）
            transport: 自定义 httpx 传输层（测试时注入 MockTransport）
        """
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def dispatch(self, *requests: SyncRequest | None) -> list[SyncResult]:
        """执行一个或多个推送任务，返回所有目标的结果"""
        results: list[SyncResult] = []
        for request in requests:
            if request is None or not request.targets:
                continue
            results.extend(await self.push(request))
        return results

    async def push(self, request: SyncRequest) -> list[SyncResult]:
        """并行推送到请求中的所有目标"""
        logger.info(
            "Syncing %s access to %s (%s)",
            request.tier.value,
            ", ".join(request.product_ids),
            request.reason,
        )
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            outcomes = await asyncio.gather(
                *(self._push_bounded(client, target, request) for target in request.targets),
                return_exceptions=True,
            )

        results: list[SyncResult] = []
        for target, outcome in zip(request.targets, outcomes):
            if isinstance(outcome, BaseException):
                results.append(
                    SyncResult(
                        product_id=target.product_id,
                        app=target.name,
                        success=False,
                        error=str(outcome) or type(outcome).__name__,
                    )
                )
            else:
                results.append(outcome)

        succeeded = sum(1 for r in results if r.success)
        logger.info(
            "Sync complete: %d succeeded, %d failed", succeeded, len(results) - succeeded
        )
        return results

    async def _push_bounded(
        self, client: httpx.AsyncClient, target: SyncTarget, request: SyncRequest
    ) -> SyncResult:
        try:
            return await asyncio.wait_for(
                self._push_one(client, target, request), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error("Sync to %s timed out after %ss", target.name, self.timeout)
            return SyncResult(
                product_id=target.product_id,
                app=target.name,
                success=False,
                error=f"Timed out after {self.timeout}s",
            )

    async def _push_one(
        self, client: httpx.AsyncClient, target: SyncTarget, request: SyncRequest
    ) -> SyncResult:
        if not self.api_key:
            logger.error("CENTRAL_API_KEY not configured - cannot sync to %s", target.name)
            return SyncResult(
                product_id=target.product_id,
                app=target.name,
                success=False,
                error="API key not configured",
            )

        payload = {
            "email": target.email,
            "tier": request.tier.value,
            "source": request.source,
            "reason": request.reason,
        }
        try:
            response = await client.post(
                target.url, json=payload, headers={API_KEY_HEADER: self.api_key}
            )
        except httpx.HTTPError as e:
            logger.error("Error syncing to %s: %s", target.name, e)
            return SyncResult(
                product_id=target.product_id,
                app=target.name,
                success=False,
                error=str(e) or type(e).__name__,
            )

        if response.status_code >= 400:
            logger.error(
                "Failed to sync to %s: %s - %s",
                target.name,
                response.status_code,
                response.text,
            )
            return SyncResult(
                product_id=target.product_id,
                app=target.name,
                success=False,
                error=f"HTTP {response.status_code}: {response.text}",
            )

        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        logger.info("Successfully synced to %s", target.name)
        return SyncResult(product_id=target.product_id, app=target.name, success=True, response=data)
