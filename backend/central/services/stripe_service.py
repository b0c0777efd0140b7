"""
Stripe 支付事件处理服务

文档: https://docs.stripe.com/webhooks
签名: https://docs.stripe.com/webhooks#verify-events

处理的事件：
- checkout.session.completed: 价格 -> 套餐；套餐含需要表单的产品时发放领取令牌，
  否则直接绑定邮箱、授权整个套餐并发送确认邮件
- customer.subscription.created / updated: active/trialing 续期授权，
  canceled/unpaid/past_due 只撤销该订阅关联的授权
- customer.subscription.deleted: 撤销该订阅关联的全部授权
- 其他事件记录为 ignored

幂等：webhook_logs 以事件 ID 唯一。处理前先原子占用事件行（只有之前失败的事件
允许重新占用），占用与账本变更在同一事务中提交；重复投递直接返回 duplicate。
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import stripe
from sqlmodel import Session, select

from central.api.errors import AppError, UnauthorizedError, UpstreamError, ValidationFailedError
from central.core.config import settings
from central.core.durations import Duration
from central.crud import catalog as catalog_crud
from central.crud import identity as identity_crud
from central.crud.logs import claim_webhook_event, finish_webhook_event
from central.enums import EntitlementSource, WebhookStatus
from central.models import Identity, Product
from central.services import claims, ledger
from central.services.app_sync import SyncRequest
from central.services.email_sender import EmailSender

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

ACTIVE_STATUSES = ("active", "trialing")
LAPSED_STATUSES = ("canceled", "unpaid", "past_due")


class StripeGateway:
    """Stripe API 封装（进程内构造一次，测试时替换为假实现）"""

    def __init__(
        self, *, api_key: str | None, webhook_secret: str | None, tolerance: int = 300
    ) -> None:
        """
        Args:
            api_key: Stripe API 密钥
            webhook_secret: Webhook 签名密钥（whsec_...）
            tolerance: 签名时间戳允许的偏差（秒）
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def verify_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """
        校验 Stripe-Signature 并解析事件

        Raises:
            UnauthorizedError: 缺少签名、签名无效或未配置签名密钥
            ValidationFailedError: 请求体不是合法 JSON
        """
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured - rejecting webhook")
            raise UnauthorizedError(code=401201, message="Webhook secret not configured")
        if not signature:
            raise UnauthorizedError(code=401202, message="Missing stripe-signature header")

        body = payload.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise UnauthorizedError(code=401203, message="Invalid webhook signature") from e

        try:
            event = json.loads(body)
        except ValueError as e:
            raise ValidationFailedError(code=400401, message="Invalid webhook payload") from e
        if not isinstance(event, dict):
            raise ValidationFailedError(code=400401, message="Invalid webhook payload")
        return event

    def line_item_price_ids(self, session_id: str) -> list[str]:
        """查询结账会话的商品明细，返回价格 ID 列表"""
        try:
            items = stripe.checkout.Session.list_line_items(
                session_id, limit=10, api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error("Failed to list line items for %s: %s", session_id, e)
            raise UpstreamError(code=502101, message=f"Stripe error: {e}") from e
        price_ids = []
        for item in items.data:
            price = item.get("price")
            if price and price.get("id"):
                price_ids.append(price["id"])
        return price_ids

    def create_checkout_session(
        self,
        *,
        price_id: str,
        subscription: bool,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> str:
        """创建 Stripe 托管结账页面，返回跳转地址"""
        params: dict[str, Any] = {
            "mode": "subscription" if subscription else "payment",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "billing_address_collection": "required",
        }
        if not subscription:
            # customer_creation 只能用于一次性支付模式
            params["customer_creation"] = "always"
        try:
            checkout = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error("Failed to create checkout session for %s: %s", price_id, e)
            raise UpstreamError(code=502102, message=f"Stripe error: {e}") from e
        if not checkout.url:
            raise UpstreamError(code=502103, message="Failed to create checkout session")
        return checkout.url


def build_gateway() -> StripeGateway:
    return StripeGateway(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.STRIPE_SIGNATURE_TOLERANCE_SECONDS,
    )


@dataclass
class EmailJob:
    """提交之后才发送的邮件"""

    kind: str
    params: dict[str, Any]

    def send(self, sender: EmailSender) -> bool:
        if self.kind == "bundle_confirmation":
            return sender.send_bundle_confirmation(**self.params)
        if self.kind == "claim_link":
            return sender.send_claim_link(**self.params)
        raise ValueError(f"Unknown email job: {self.kind}")


@dataclass
class EventOutcome:
    handled: bool
    details: dict[str, Any] = field(default_factory=dict)
    syncs: list[SyncRequest] = field(default_factory=list)
    emails: list[EmailJob] = field(default_factory=list)


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    duplicate: bool = False
    handled: bool = False
    details: dict[str, Any] = field(default_factory=dict)
    syncs: list[SyncRequest] = field(default_factory=list)
    emails: list[EmailJob] = field(default_factory=list)


def process_event(
    *, session: Session, gateway: StripeGateway, event: dict[str, Any]
) -> WebhookResult:
    """
    处理一个已校验签名的 Stripe 事件

    成功时提交事务；失败时回滚账本变更，在新事务中把事件标记为 failed，
    然后重新抛出异常（网关会重投）。

    Returns:
        WebhookResult: 处理结果，syncs / emails 需在提交后由调用方执行
    """
    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    if not event_id or not event_type:
        raise ValidationFailedError(code=400402, message="Missing event id/type")
    payload = event.get("data") if isinstance(event.get("data"), dict) else None

    if not claim_webhook_event(
        session=session, event_id=event_id, event_type=event_type, payload=payload
    ):
        session.rollback()
        logger.info("Duplicate webhook event %s (%s), skipping", event_id, event_type)
        return WebhookResult(event_id=event_id, event_type=event_type, duplicate=True)

    obj = (payload or {}).get("object") or {}
    try:
        outcome = _dispatch(session=session, gateway=gateway, event_type=event_type, obj=obj)
        finish_webhook_event(
            session=session,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            status=WebhookStatus.success if outcome.handled else WebhookStatus.ignored,
        )
        session.commit()
    except Exception as e:
        session.rollback()
        message = e.message if isinstance(e, AppError) else str(e) or type(e).__name__
        logger.error("Webhook processing error for %s (%s): %s", event_id, event_type, message)
        finish_webhook_event(
            session=session,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            status=WebhookStatus.failed,
            error_message=message,
        )
        session.commit()
        raise

    logger.info(
        "Webhook %s (%s) processed: handled=%s %s",
        event_id,
        event_type,
        outcome.handled,
        outcome.details,
    )
    return WebhookResult(
        event_id=event_id,
        event_type=event_type,
        handled=outcome.handled,
        details=outcome.details,
        syncs=outcome.syncs,
        emails=outcome.emails,
    )


def _dispatch(
    *, session: Session, gateway: StripeGateway, event_type: str, obj: dict[str, Any]
) -> EventOutcome:
    if event_type == CHECKOUT_COMPLETED:
        return handle_checkout_completed(session=session, gateway=gateway, checkout=obj)
    if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        return handle_subscription_updated(session=session, subscription=obj)
    if event_type == SUBSCRIPTION_DELETED:
        return handle_subscription_deleted(session=session, subscription=obj)
    logger.info("Unhandled event type: %s", event_type)
    return EventOutcome(handled=False, details={"reason": "Unhandled event type"})


def _customer_id(obj: dict[str, Any]) -> str | None:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer or None


def _product_names(session: Session, product_ids: list[str]) -> list[str]:
    products = session.exec(select(Product).where(Product.id.in_(product_ids))).all()
    names = {p.id: p.name for p in products}
    return [names.get(pid, pid) for pid in product_ids]


def handle_checkout_completed(
    *, session: Session, gateway: StripeGateway, checkout: dict[str, Any]
) -> EventOutcome:
    customer_details = checkout.get("customer_details") or {}
    email = customer_details.get("email") or checkout.get("customer_email")
    if not email:
        raise ValidationFailedError(code=400403, message="No customer email in session")

    metadata = checkout.get("metadata") or {}
    price_id = metadata.get("price_id")
    if not price_id:
        price_ids = gateway.line_item_price_ids(checkout["id"])
        if not price_ids:
            raise ValidationFailedError(code=400404, message="No price ID in checkout session")
        price_id = price_ids[0]

    bundle = catalog_crud.get_bundle_by_price(session=session, stripe_price_id=price_id)
    if not bundle:
        logger.info("No bundle found for price: %s", price_id)
        return EventOutcome(handled=False, details={"reason": "Not a bundle purchase"})

    identity = identity_crud.get_or_create(
        session=session, email=email, stripe_customer_id=_customer_id(checkout)
    )

    form_products = session.exec(
        select(Product).where(Product.id.in_(bundle.product_ids), Product.form_schema.is_not(None))
    ).all()
    if any(p.requires_form for p in form_products):
        claim_token = claims.issue(
            session=session,
            identity=identity,
            bundle=bundle,
            purchase_email=email,
            stripe_session_id=checkout.get("id"),
        )
        return EventOutcome(
            handled=True,
            details={
                "action": "claim_token_created",
                "token": claim_token.token,
                "bundleName": bundle.name,
            },
            emails=[
                EmailJob(
                    kind="claim_link",
                    params={
                        "to_email": claim_token.purchase_email,
                        "bundle_name": bundle.name,
                        "claim_url": f"{settings.CLAIM_PORTAL_URL.rstrip('/')}/{claim_token.token}",
                        "expires_at": claim_token.expires_at,
                    },
                )
            ],
        )

    for product_id in bundle.product_ids:
        identity_crud.bind_email(
            session=session, identity_id=identity.id, email=email, product_id=product_id
        )
    grant = ledger.grant(
        session=session,
        identity=identity,
        product_ids=list(bundle.product_ids),
        source=EntitlementSource.bundle,
        duration=Duration.of(bundle.duration_type, bundle.duration_value),
        bundle=bundle,
        payment=ledger.PaymentMeta(
            stripe_subscription_id=checkout.get("subscription"),
            stripe_price_id=price_id,
            amount_paid=checkout.get("amount_total"),
            currency=checkout.get("currency"),
        ),
    )
    return EventOutcome(
        handled=True,
        details={
            "action": "access_granted",
            "bundleName": bundle.name,
            "products": list(bundle.product_ids),
        },
        syncs=[grant.sync] if grant.sync else [],
        emails=[
            EmailJob(
                kind="bundle_confirmation",
                params={
                    "to_email": identity.primary_email,
                    "bundle_name": bundle.name,
                    "product_names": _product_names(session, list(bundle.product_ids)),
                    "expires_at": grant.expires_at,
                },
            )
        ],
    )


def _subscription_context(
    session: Session, subscription: dict[str, Any]
) -> tuple[Identity | None, str | None]:
    customer_id = _customer_id(subscription)
    identity = (
        identity_crud.get_by_customer_id(session=session, stripe_customer_id=customer_id)
        if customer_id
        else None
    )
    if not identity:
        logger.info("No identity found for customer: %s", customer_id)
    return identity, customer_id


def _subscription_price(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return {}
    return items[0].get("price") or {}


def handle_subscription_updated(
    *, session: Session, subscription: dict[str, Any]
) -> EventOutcome:
    identity, _ = _subscription_context(session, subscription)
    if not identity:
        return EventOutcome(handled=False, details={"reason": "Unknown customer"})

    price = _subscription_price(subscription)
    price_id = price.get("id")
    bundle = (
        catalog_crud.get_bundle_by_price(session=session, stripe_price_id=price_id)
        if price_id
        else None
    )
    if not bundle:
        return EventOutcome(handled=False, details={"reason": "Not a bundle subscription"})

    subscription_id = subscription.get("id")
    status = subscription.get("status")
    if status in ACTIVE_STATUSES:
        grant = ledger.grant(
            session=session,
            identity=identity,
            product_ids=list(bundle.product_ids),
            source=EntitlementSource.bundle,
            duration=Duration.of(bundle.duration_type, bundle.duration_value),
            bundle=bundle,
            payment=ledger.PaymentMeta(
                stripe_subscription_id=subscription_id,
                stripe_price_id=price_id,
                amount_paid=price.get("unit_amount"),
                currency=price.get("currency"),
            ),
            reason=f"Subscription {status}: {bundle.name}",
        )
        return EventOutcome(
            handled=True,
            details={"action": "access_granted", "subscriptionStatus": status},
            syncs=[grant.sync] if grant.sync else [],
        )

    if status in LAPSED_STATUSES:
        revoked = ledger.revoke_where(
            session=session,
            identity=identity,
            reason=f"Subscription {status}",
            product_ids=list(bundle.product_ids),
            stripe_subscription_id=subscription_id,
        )
        return EventOutcome(
            handled=True,
            details={
                "action": "access_revoked",
                "subscriptionStatus": status,
                "revoked": revoked.revoked,
            },
            syncs=[revoked.sync] if revoked.sync else [],
        )

    return EventOutcome(
        handled=False,
        details={"reason": f"Subscription status {status} not actionable"},
    )


def handle_subscription_deleted(
    *, session: Session, subscription: dict[str, Any]
) -> EventOutcome:
    identity, _ = _subscription_context(session, subscription)
    subscription_id = subscription.get("id")
    if not identity or not subscription_id:
        return EventOutcome(handled=False, details={"reason": "Unknown customer"})

    revoked = ledger.revoke_where(
        session=session,
        identity=identity,
        reason="Subscription deleted",
        stripe_subscription_id=subscription_id,
    )
    return EventOutcome(
        handled=True,
        details={"action": "access_revoked", "revoked": revoked.revoked},
        syncs=[revoked.sync] if revoked.sync else [],
    )
