"""
领取令牌与表单提交模型模块
"""
from datetime import datetime

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, String
from sqlmodel import Field, SQLModel

from central.core.snowflake import generate_id

from .base import utc_now


class ClaimToken(SQLModel, table=True):
    """
    领取令牌模型

    套餐中有需要填写表单的产品时，支付完成后不直接授权，而是发放一次性领取令牌，
    用户在领取页面填写各产品的邮箱/表单后激活。

    状态：claimed=False（已发放） -> claimed=True（已领取，终态）。
    有效期固定 30 天，只在读取/激活时检查，不做清理。
    """
    __tablename__ = "claim_tokens"

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    token: str = Field(sa_column=Column(String(64), unique=True, index=True, nullable=False))
    identity_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("identities.id", ondelete="CASCADE"), index=True, nullable=False
        )
    )
    bundle_id: int = Field(
        sa_column=Column(BigInteger, ForeignKey("bundles.id"), nullable=False)
    )
    purchase_email: str = Field(max_length=255)
    stripe_session_id: str | None = Field(default=None, max_length=128)
    claimed: bool = Field(default=False)
    claimed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class ProductSubmission(SQLModel, table=True):
    """
    产品表单提交模型

    领取激活时按产品表单定义校验后保存；配置了 form_webhook_url 的产品会把
    提交内容转发出去，forwarded/forward_response 记录转发结果。
    """
    __tablename__ = "product_submissions"

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
    claim_token_id: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    form_data: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    forwarded: bool = Field(default=False)
    forward_response: dict | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
