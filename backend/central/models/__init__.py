"""
数据库模型定义模块

本模块使用 SQLModel 定义所有数据库表结构。

模型按功能拆分：
- identity.py: 身份与邮箱绑定
- catalog.py: 产品与套餐
- entitlement.py: 授权记录
- claim.py: 领取令牌与表单提交
- logs.py: 审计日志与 Webhook 日志
"""
from sqlmodel import SQLModel

from .base import HUB_SOURCE_APP, ensure_utc, normalize_email, utc_now
from .catalog import Bundle, Product
from .claim import ClaimToken, ProductSubmission
from .entitlement import Entitlement
from .identity import Identity, IdentityEmail
from .logs import AuditLog, WebhookLog

__all__ = [
    "SQLModel",
    "HUB_SOURCE_APP",
    "ensure_utc",
    "normalize_email",
    "utc_now",
    "Identity",
    "IdentityEmail",
    "Product",
    "Bundle",
    "Entitlement",
    "ClaimToken",
    "ProductSubmission",
    "AuditLog",
    "WebhookLog",
]
