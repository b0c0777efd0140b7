"""
授权模型模块

授权（Entitlement）是所有访问判断的唯一依据。
"""
from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from central.core.snowflake import generate_id

from .base import HUB_SOURCE_APP, ensure_utc, utc_now


class Entitlement(SQLModel, table=True):
    """
    授权记录模型

    (identity_id, product_id, source, source_app) 唯一：同一产品可以同时存在
    多条不同来源的授权（例如套餐授权 + 产品直售上报），互不影响，
    撤销其中一条不会改变另一条。

    有效条件：revoked_at 为空，且 expires_at 为空或晚于当前时间。

    字段说明：
    - source: 来源渠道（bundle / direct / manual / promo）
    - source_app: 上报的产品 ID；中心自身发起的授权固定为 "central"
    - bundle_id: 关联套餐（套餐授权时）
    - stripe_subscription_id: 关联的 Stripe 订阅（订阅取消时按它精确撤销）
    - amount_paid / currency: 支付金额（最小货币单位）与币种
    - granted_at: 最近一次授权时间（重新授权会刷新）
    - expires_at: 到期时间，空表示永久
    - revoked_at / revoked_reason: 撤销时间与原因
    """
    __tablename__ = "entitlements"
    __table_args__ = (
        UniqueConstraint(
            "identity_id", "product_id", "source", "source_app", name="uq_entitlements_key"
        ),
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
    product_id: str = Field(sa_column=Column(String(64), index=True, nullable=False))
    source: str = Field(sa_column=Column(String(16), nullable=False))
    source_app: str = Field(
        default=HUB_SOURCE_APP, sa_column=Column(String(64), nullable=False)
    )

    bundle_id: int | None = Field(
        default=None,
        sa_column=Column(BigInteger, ForeignKey("bundles.id", ondelete="SET NULL"), nullable=True),
    )
    stripe_subscription_id: str | None = Field(
        default=None, sa_column=Column(String(128), index=True, nullable=True)
    )
    stripe_price_id: str | None = Field(default=None, max_length=128)
    amount_paid: int | None = Field(default=None)
    currency: str | None = Field(default=None, max_length=8)

    granted_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    expires_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    revoked_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    revoked_reason: str | None = Field(default=None, max_length=255)
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    def is_active(self, now: datetime | None = None) -> bool:
        if self.revoked_at is not None:
            return False
        if self.expires_at is None:
            return True
        return ensure_utc(self.expires_at) > (now or utc_now())
