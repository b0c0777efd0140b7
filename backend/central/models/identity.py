"""
身份模型模块

定义购买者身份以及"邮箱 + 产品"到身份的绑定关系。
"""
from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from central.core.snowflake import generate_id

from .base import utc_now


class Identity(SQLModel, table=True):
    """
    购买者身份模型

    一个付费用户对应一个身份，身份永不删除。
    首次购买或首次产品上报时创建，之后只会补充 Stripe 客户 ID。

    字段说明：
    - id: 主键（Snowflake）
    - primary_email: 主邮箱（小写，唯一）
    - stripe_customer_id: Stripe 客户 ID（订阅事件按它找身份）
    - created_at / updated_at: 创建、更新时间
    """
    __tablename__ = "identities"

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    primary_email: str = Field(
        sa_column=Column(String(255), unique=True, index=True, nullable=False)
    )
    stripe_customer_id: str | None = Field(
        default=None, sa_column=Column(String(64), index=True, nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class IdentityEmail(SQLModel, table=True):
    """
    邮箱绑定模型

    同一个人在不同产品里可能使用不同邮箱，(email, product_id) 唯一，
    指向一个身份。重复写入时后写者覆盖。
    """
    __tablename__ = "identity_emails"
    __table_args__ = (
        UniqueConstraint("email", "product_id", name="uq_identity_emails_email_product"),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    identity_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("identities.id", ondelete="CASCADE"), index=True, nullable=False
        )
    )
    email: str = Field(sa_column=Column(String(255), index=True, nullable=False))
    product_id: str = Field(sa_column=Column(String(64), nullable=False))
    verified: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
