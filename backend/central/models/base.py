"""
基础模型模块

定义所有模型共用的基础类和工具函数。
"""
from datetime import datetime, timezone

from sqlmodel import SQLModel


def utc_now() -> datetime:
    """
    获取当前 UTC 时间

    Returns:
        当前 UTC 时区的日期时间对象
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """
    补齐时区信息

    SQLite 读回的 DateTime(timezone=True) 字段不带时区，统一视为 UTC，
    避免与带时区的时间比较时报错。
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_email(email: str) -> str:
    """邮箱统一小写并去除首尾空白"""
    return email.strip().lower()


# 中心自身发起的授权（套餐、手工、活动）使用的 source_app
HUB_SOURCE_APP = "central"

__all__ = ["SQLModel", "utc_now", "ensure_utc", "normalize_email", "HUB_SOURCE_APP"]
