"""
产品目录模型模块

定义产品（各独立运营的应用）与套餐（多个产品打包售卖）。
"""
from datetime import datetime

from sqlalchemy import JSON, BigInteger, Column, DateTime, String
from sqlmodel import Field, SQLModel

from central.core.snowflake import generate_id
from central.enums import DurationType

from .base import utc_now


class Product(SQLModel, table=True):
    """
    产品模型

    字段说明：
    - id: 产品标识（如 "rezume"），也是上报接口里的 sourceApp
    - sync_url: 远端产品的同步接口地址，为空则不推送
    - form_schema: 领取时需要填写的表单定义（字段列表），为空表示无需表单
    - form_webhook_url: 表单提交后转发的地址（可选）
    - display_order: 展示顺序
    """
    __tablename__ = "products"

    id: str = Field(sa_column=Column(String(64), primary_key=True))
    name: str = Field(max_length=128)
    description: str | None = Field(default=None, max_length=512)
    app_url: str | None = Field(default=None, max_length=512)
    sync_url: str | None = Field(default=None, max_length=512)
    form_schema: list[dict] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    form_webhook_url: str | None = Field(default=None, max_length=512)
    is_active: bool = Field(default=True)
    display_order: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    @property
    def requires_form(self) -> bool:
        return bool(self.form_schema)


class Bundle(SQLModel, table=True):
    """
    套餐模型

    一个 Stripe 价格对应一个套餐；套餐包含固定的产品列表和统一的时长策略。

    字段说明：
    - stripe_price_id: Stripe 价格 ID（唯一，用于把支付事件映射到套餐）
    - product_ids: 产品 ID 列表
    - duration_type / duration_value: 时长策略（lifetime 或 N 天/月/年）
    """
    __tablename__ = "bundles"

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    name: str = Field(max_length=128)
    slug: str = Field(sa_column=Column(String(64), unique=True, index=True, nullable=False))
    description: str | None = Field(default=None, max_length=512)
    stripe_price_id: str = Field(
        sa_column=Column(String(128), unique=True, index=True, nullable=False)
    )
    product_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    duration_type: DurationType = Field(
        default=DurationType.lifetime, sa_column=Column(String(16), nullable=False)
    )
    duration_value: int | None = Field(default=None)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
