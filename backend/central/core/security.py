"""
安全工具模块

- 管理端 JWT 的签发（仅供运维脚本/测试）与校验
- 产品间共享密钥的常量时间比较
- 领取令牌的生成
"""
from datetime import datetime, timedelta, timezone
from typing import Any
import hmac
import secrets

import jwt

from central.core.config import settings

ALGORITHM = "HS256"

# 共享密钥请求头（产品上报、同步推送双向使用）
API_KEY_HEADER = "X-Admin-Api-Key"


def create_access_token(subject: str | Any, expires_delta: timedelta) -> str:
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"exp": expire, "sub": str(subject)}
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def decode_access_token(token: str) -> dict[str, Any]:
    """解析并校验 JWT，失败时抛出 jwt.InvalidTokenError"""
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])


def verify_api_key(provided: str | None, expected: str | None) -> bool:
    """常量时间比较共享密钥；任一为空都视为不通过"""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def generate_claim_token() -> str:
    """生成 32 字符的 URL 安全领取令牌"""
    return secrets.token_urlsafe(24)
