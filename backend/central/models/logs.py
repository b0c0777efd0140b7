"""
审计与 Webhook 日志模型模块

两张表都只追加；WebhookLog 以网关事件 ID 唯一，用于至少一次投递下的去重。
"""
from datetime import datetime

from sqlalchemy import JSON, BigInteger, Column, DateTime, String, Text
from sqlmodel import Field, SQLModel

from central.core.snowflake import generate_id

from .base import utc_now


class AuditLog(SQLModel, table=True):
    """
    审计日志模型

    每次授权、撤销、领取（含失败）都会追加一条。

    字段说明：
    - action: 动作（grant / revoke / revoke_one / claim / claim_failed ...）
    - identity_id: 关联身份（可能为空）
    - product_ids: 涉及的产品列表
    - admin_email: 管理员操作时的管理员邮箱
    - details: 其他细节（来源、到期时间、错误信息等）
    """
    __tablename__ = "audit_logs"

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    action: str = Field(sa_column=Column(String(32), index=True, nullable=False))
    identity_id: int | None = Field(default=None, sa_column=Column(BigInteger, index=True))
    product_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    admin_email: str | None = Field(default=None, max_length=255)
    details: dict | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class WebhookLog(SQLModel, table=True):
    """
    Webhook 事件日志模型

    每个 Stripe 事件 ID 只有一行；重复投递命中唯一索引，不会重复产生账本变更。
    """
    __tablename__ = "webhook_logs"

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    event_id: str = Field(sa_column=Column(String(128), unique=True, index=True, nullable=False))
    event_type: str = Field(max_length=64)
    payload: dict | None = Field(default=None, sa_column=Column(JSON))
    status: str = Field(sa_column=Column(String(16), nullable=False))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
