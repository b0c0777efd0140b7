"""
FastAPI 依赖注入模块

提供可复用的依赖项：
- 数据库会话（每个请求一个）
- 进程内只构造一次的协作对象：同步推送分发器、邮件发送器、Stripe 网关、
  表单转发器。测试时通过 app.dependency_overrides 替换
- 产品共享密钥校验（X-Admin-Api-Key）
- 管理端 Bearer JWT 校验（sub 必须在 ADMIN_EMAILS 中）
"""
from collections.abc import Generator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError
from pydantic import ValidationError
from sqlmodel import Session

from central.api.errors import UnauthorizedError
from central.api.schemas import TokenPayload
from central.core import security
from central.core.config import settings
from central.core.db import engine
from central.models import normalize_email
from central.services.app_sync import AppSyncDispatcher
from central.services.email_sender import EmailSender, build_email_sender
from central.services.stripe_service import StripeGateway, build_gateway
from central.services.submissions import SubmissionForwarder

# auto_error=False：缺少 Authorization 头时由 get_admin_email 统一返回 401 信封
reusable_bearer = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """
    获取数据库会话（依赖注入）

    使用 yield 确保会话在请求结束后自动关闭。
    """
    with Session(engine) as session:
        yield session


@lru_cache
def get_sync_dispatcher() -> AppSyncDispatcher:
    return AppSyncDispatcher(
        api_key=settings.CENTRAL_API_KEY, timeout=settings.SYNC_TIMEOUT_SECONDS
    )


@lru_cache
def get_email_sender() -> EmailSender:
    return build_email_sender()


@lru_cache
def get_gateway() -> StripeGateway:
    return build_gateway()


@lru_cache
def get_forwarder() -> SubmissionForwarder:
    return SubmissionForwarder(timeout=settings.FORWARD_TIMEOUT_SECONDS)


SessionDep = Annotated[Session, Depends(get_db)]
DispatcherDep = Annotated[AppSyncDispatcher, Depends(get_sync_dispatcher)]
EmailSenderDep = Annotated[EmailSender, Depends(get_email_sender)]
GatewayDep = Annotated[StripeGateway, Depends(get_gateway)]
ForwarderDep = Annotated[SubmissionForwarder, Depends(get_forwarder)]
TokenDep = Annotated[HTTPAuthorizationCredentials | None, Depends(reusable_bearer)]


def require_api_key(
    x_admin_api_key: Annotated[str | None, Header(alias=security.API_KEY_HEADER)] = None,
) -> None:
    """校验产品共享密钥，不匹配时返回 401"""
    if not settings.CENTRAL_API_KEY:
        raise UnauthorizedError(code=401101, message="Shared API key not configured")
    if not security.verify_api_key(x_admin_api_key, settings.CENTRAL_API_KEY):
        raise UnauthorizedError(code=401102, message="Invalid or missing API key")


def get_admin_email(token: TokenDep) -> str:
    """
    获取当前管理员邮箱（依赖注入）

    解析 Bearer JWT，sub 为管理员邮箱，且必须在 ADMIN_EMAILS 白名单中。

    Raises:
        UnauthorizedError: token 缺失、无效、过期或不在白名单中
    """
    if token is None:
        raise UnauthorizedError(code=401301, message="Not authenticated")
    try:
        payload = security.decode_access_token(token.credentials)
        token_data = TokenPayload(**payload)
    except (InvalidTokenError, ValidationError):
        raise UnauthorizedError(code=401302, message="Could not validate credentials")
    if not token_data.sub:
        raise UnauthorizedError(code=401302, message="Could not validate credentials")

    email = normalize_email(token_data.sub)
    admins = {normalize_email(a) for a in settings.ADMIN_EMAILS}
    if email not in admins:
        raise UnauthorizedError(code=401303, message="Not an admin")
    return email


AdminDep = Annotated[str, Depends(get_admin_email)]
