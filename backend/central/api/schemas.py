"""
API 请求/响应数据模型（Schema）

所有对外 JSON 字段使用 camelCase（远端产品与领取页面约定的格式），
Python 侧使用 snake_case，通过 alias_generator 自动转换；
请求体同时接受两种写法（populate_by_name）。

这些模型不是数据库表，只用于 API 数据交换。
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from central.enums import DurationType, EntitlementSource
from central.services.forms import FormField


def _relative_duration(value: DurationType) -> DurationType:
    # fixed 只用于产品上报（绝对到期时间），套餐和手工授权不接受
    if value == DurationType.fixed:
        raise ValueError("durationType must be one of lifetime, days, months, years")
    return value


RelativeDuration = Annotated[DurationType, AfterValidator(_relative_duration)]


# ============================================================
# 通用响应模型
# ============================================================


class ApiEnvelope(BaseModel):
    """
    API 统一响应格式

    - code: 状态码（0 表示成功，非 0 表示错误）
    - message: 消息（成功时为 "success"，错误时为错误描述）
    - data: 业务数据（错误时为 None）

    示例响应：
        {"code": 0, "message": "success", "data": {...}}
        {"code": 404101, "message": "Invalid claim token", "data": None}
    """
    code: int = 0
    message: str = "success"
    data: Any | None = None


class TokenPayload(BaseModel):
    """管理端 JWT 载荷，sub 为管理员邮箱"""
    sub: str | None = None


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class Page(CamelModel):
    items: list[Any]
    count: int


# ============================================================
# 访问查询
# ============================================================


class AccessCheckData(CamelModel):
    has_access: bool
    product: str
    source: str | None = None
    bundle_name: str | None = None
    expires: datetime | None = None
    granted_at: datetime | None = None


class ProductAccessData(CamelModel):
    id: str
    name: str
    has_access: bool
    source: str | None = None
    expires: datetime | None = None


class EntitlementsData(CamelModel):
    email: str
    products: list[ProductAccessData]


# ============================================================
# 产品上报
# ============================================================


class EntitlementReportRequest(CamelModel):
    """
    产品上报请求

    必填字段（email、productId、action、sourceApp）在服务层检查，
    缺失时返回 400 而不是 422。
    """
    email: str | None = None
    product_id: str | None = None
    action: str | None = None
    source_app: str | None = None
    stripe_subscription_id: str | None = None
    stripe_price_id: str | None = None
    amount_paid: int | None = None
    currency: str | None = None
    expires_at: datetime | None = None
    reason: str | None = None


class EntitlementReportData(CamelModel):
    success: bool
    action: str
    email: str
    product_id: str
    identity_id: int | None = None
    expires_at: datetime | None = None
    revoked: int = 0
    timestamp: datetime


# ============================================================
# 领取令牌
# ============================================================


class ClaimProductInput(CamelModel):
    email: str | None = None
    form_data: dict[str, Any] | None = None


class ClaimActivateRequest(CamelModel):
    products: dict[str, ClaimProductInput] = Field(default_factory=dict)


class ClaimProductInfo(CamelModel):
    id: str
    name: str
    requires_email: bool = True
    form_schema: list[dict[str, Any]] | None = None


class ClaimBundleInfo(CamelModel):
    name: str
    products: list[ClaimProductInfo]


class ClaimStatusData(CamelModel):
    valid: bool
    error: str | None = None
    bundle: ClaimBundleInfo | None = None
    purchase_email: str | None = None
    expires_at: datetime | None = None


class ActivatedProductData(CamelModel):
    product: str
    email: str
    status: str


class ClaimActivateData(CamelModel):
    success: bool = True
    activated: list[ActivatedProductData]
    message: str = "Bundle activated successfully!"


# ============================================================
# Stripe webhook
# ============================================================


class WebhookAckData(CamelModel):
    received: bool = True
    duplicate: bool = False
    handled: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class InboundSubmissionData(CamelModel):
    success: bool = True
    submission_id: int
    identity_id: int
    product_id: str
    email: str


# ============================================================
# 管理端
# ============================================================


class ProductCreate(CamelModel):
    id: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    name: str = Field(min_length=1, max_length=128)
    description: str | None = None
    app_url: str | None = None
    sync_url: str | None = None
    form_schema: list[FormField] | None = None
    form_webhook_url: str | None = None
    is_active: bool = True
    display_order: int = 0


class ProductUpdate(CamelModel):
    """产品更新请求，只更新传入的字段（ID 不可修改）"""
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    app_url: str | None = None
    sync_url: str | None = None
    form_schema: list[FormField] | None = None
    form_webhook_url: str | None = None
    is_active: bool | None = None
    display_order: int | None = None


class ProductPublic(CamelModel):
    id: str
    name: str
    description: str | None = None
    app_url: str | None = None
    sync_url: str | None = None
    form_schema: list[dict[str, Any]] | None = None
    form_webhook_url: str | None = None
    is_active: bool
    display_order: int


class BundleCreate(CamelModel):
    name: str = Field(min_length=1, max_length=128)
    slug: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    description: str | None = None
    stripe_price_id: str = Field(min_length=1, max_length=128)
    product_ids: list[str] = Field(min_length=1)
    duration_type: RelativeDuration = DurationType.lifetime
    duration_value: int | None = Field(default=None, ge=0)
    is_active: bool = True


class BundleUpdate(CamelModel):
    """套餐更新请求，只更新传入的字段"""
    name: str | None = Field(default=None, min_length=1, max_length=128)
    slug: str | None = Field(
        default=None, min_length=1, max_length=64, pattern=r"^[a-z0-9][a-z0-9_-]*$"
    )
    description: str | None = None
    stripe_price_id: str | None = Field(default=None, min_length=1, max_length=128)
    product_ids: list[str] | None = Field(default=None, min_length=1)
    duration_type: RelativeDuration | None = None
    duration_value: int | None = Field(default=None, ge=0)
    is_active: bool | None = None


class BundlePublic(CamelModel):
    id: int
    name: str
    slug: str
    description: str | None = None
    stripe_price_id: str
    product_ids: list[str]
    duration_type: str
    duration_value: int | None = None
    is_active: bool


class ManualGrantRequest(CamelModel):
    email: str = Field(min_length=3, max_length=255)
    product_ids: list[str] = Field(min_length=1)
    source: EntitlementSource = EntitlementSource.manual
    duration_type: RelativeDuration = DurationType.lifetime
    duration_value: int | None = Field(default=None, ge=0)
    reason: str | None = None


class IdentityGrantRequest(CamelModel):
    """在身份详情页直接授权（身份已知，不需要邮箱）"""
    product_ids: list[str] = Field(min_length=1)
    source: EntitlementSource = EntitlementSource.manual
    duration_type: RelativeDuration = DurationType.lifetime
    duration_value: int | None = Field(default=None, ge=0)
    reason: str | None = None


class IdentityRevokeRequest(CamelModel):
    product_ids: list[str] = Field(min_length=1)
    reason: str = "Revoked by admin"


class ExtendAccessRequest(CamelModel):
    """修改到期时间；expiresAt 为空表示改为永久"""
    product_ids: list[str] = Field(min_length=1)
    expires_at: datetime | None = None


class IdentityEmailCreate(CamelModel):
    email: str = Field(min_length=3, max_length=255)
    product_id: str = Field(min_length=1, max_length=64)


class RevokeRequest(CamelModel):
    email: str = Field(min_length=3, max_length=255)
    product_ids: list[str] = Field(min_length=1)
    reason: str = "Revoked by admin"


class RevokeOneRequest(CamelModel):
    reason: str = "Revoked by admin"


class EntitlementPublic(CamelModel):
    id: int
    identity_id: int
    product_id: str
    source: str
    source_app: str
    bundle_id: int | None = None
    stripe_subscription_id: str | None = None
    granted_at: datetime
    expires_at: datetime | None = None
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    active: bool = False


class GrantData(CamelModel):
    entitlements: list[EntitlementPublic]
    expires_at: datetime | None = None


class RevokeData(CamelModel):
    revoked: int
    product_ids: list[str]


class RevokeOneData(CamelModel):
    entitlement: EntitlementPublic
    remaining_active: int


class IdentityEmailPublic(CamelModel):
    email: str
    product_id: str
    verified: bool


class SubmissionPublic(CamelModel):
    id: int
    product_id: str
    claim_token_id: int | None = None
    form_data: dict[str, Any]
    forwarded: bool
    created_at: datetime


class ClaimTokenPublic(CamelModel):
    id: int
    bundle_id: int
    purchase_email: str
    claimed: bool
    claimed_at: datetime | None = None
    expires_at: datetime
    created_at: datetime


class IdentityDetail(CamelModel):
    id: int
    primary_email: str
    stripe_customer_id: str | None = None
    created_at: datetime
    emails: list[IdentityEmailPublic]
    entitlements: list[EntitlementPublic]
    submissions: list[SubmissionPublic] = Field(default_factory=list)
    claim_tokens: list[ClaimTokenPublic] = Field(default_factory=list)


class IdentitySummary(CamelModel):
    """身份列表项：邮箱绑定 + 当前有效授权"""
    id: int
    primary_email: str
    stripe_customer_id: str | None = None
    created_at: datetime
    emails: list[IdentityEmailPublic]
    active_entitlements: list[EntitlementPublic]


class ExtendAccessData(CamelModel):
    updated: int
    expires_at: datetime | None = None


class ProductDetail(ProductPublic):
    active_entitlements: int = 0
    submissions: int = 0


class BundleDetail(BundlePublic):
    products: list[ProductPublic] = Field(default_factory=list)
    entitlements: int = 0
    claimed_tokens: int = 0
    pending_tokens: int = 0


class GrantRowPublic(CamelModel):
    email: str
    product: str
    product_id: str
    source: str
    granted_at: datetime | None = None
    expires_at: datetime | None = None


class BundleClaimsPublic(CamelModel):
    bundle_id: int
    bundle_name: str
    claimed: int


class AnalyticsData(CamelModel):
    total_identities: int
    total_entitlements: int
    active_entitlements: int
    by_product: dict[str, int]
    by_source: dict[str, int]
    recent_grants: list[GrantRowPublic]
    expiring_soon: list[GrantRowPublic]
    bundle_claims: list[BundleClaimsPublic]


class AuditLogPublic(CamelModel):
    id: int
    action: str
    identity_id: int | None = None
    product_ids: list[str]
    admin_email: str | None = None
    details: dict[str, Any] | None = None
    created_at: datetime


class WebhookLogPublic(CamelModel):
    id: int
    event_id: str
    event_type: str
    status: str
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
