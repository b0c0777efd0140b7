"""
枚举类型定义模块

所有枚举都继承自 str 和 Enum，这样既可以直接写入字符串列，又具有枚举的特性。
"""
from enum import Enum


class DurationType(str, Enum):
    """
    套餐时长类型

    - lifetime: 永久（expires_at 为空）
    - days / months / years: 从授权时刻起 N 天/月/年
    - fixed: 由上报方直接给出的绝对到期时间（仅产品上报使用）
    """
    lifetime = "lifetime"
    days = "days"
    months = "months"
    years = "years"
    fixed = "fixed"


class EntitlementSource(str, Enum):
    """
    授权来源渠道

    - bundle: 中心售出的套餐（Stripe 结账 / 订阅）
    - direct: 产品自己售出并上报给中心
    - manual: 管理员手工授权
    - promo: 活动赠送
    """
    bundle = "bundle"
    direct = "direct"
    manual = "manual"
    promo = "promo"


class AccessTier(str, Enum):
    """
    推送给远端产品的访问等级
    """
    pro = "pro"
    free = "free"


class ReportAction(str, Enum):
    """
    产品上报动作
    """
    grant = "grant"
    revoke = "revoke"


class WebhookStatus(str, Enum):
    """
    Webhook 事件处理状态

    - processing: 已占用，正在处理（同一事件的并发重投会被挡住）
    - success: 已处理并产生账本变更
    - ignored: 已接收但无需处理（非套餐价格、未知事件类型等）
    - failed: 处理失败，允许网关重投时再次处理
    """
    processing = "processing"
    success = "success"
    ignored = "ignored"
    failed = "failed"


class AuditAction(str, Enum):
    """
    审计日志动作类型
    """
    grant = "grant"
    revoke = "revoke"
    revoke_one = "revoke_one"
    claim = "claim"
    claim_failed = "claim_failed"
    report_failed = "report_failed"
    extend_access = "extend_access"
    email_linked = "email_linked"
    product_updated = "product_updated"
    product_deleted = "product_deleted"
    bundle_updated = "bundle_updated"
    bundle_deleted = "bundle_deleted"
    submission_received = "submission_received"


class FormFieldType(str, Enum):
    """
    产品表单字段类型（领取页面动态渲染）
    """
    text = "text"
    email = "email"
    url = "url"
    select = "select"
    textarea = "textarea"
    number = "number"
