"""
产品直售上报服务

远端产品（如 rezume）自己售出的订阅通过 POST /entitlements/report 上报给中心，
写入 source="direct"、source_app=<上报产品> 的授权行。该行与套餐授权行互相独立：
撤销只匹配 (身份, 产品, direct, sourceApp[, 订阅 ID])，不会影响套餐授权。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlmodel import Session

from central.api.errors import AppError, ValidationFailedError, missing_field
from central.core.durations import Duration
from central.crud import identity as identity_crud
from central.crud.logs import add_audit
from central.enums import AuditAction, EntitlementSource, ReportAction
from central.models import Product, normalize_email
from central.services import ledger
from central.services.app_sync import SyncRequest

logger = logging.getLogger(__name__)


@dataclass
class ReportResult:
    success: bool
    action: ReportAction
    identity_id: int | None = None
    entitlement_ids: list[int] | None = None
    expires_at: datetime | None = None
    revoked: int = 0
    sync: SyncRequest | None = None


def _require(value: str | None, name: str) -> str:
    if value is None or not str(value).strip():
        raise missing_field(name)
    return str(value).strip()


def _known_product(session: Session, product_id: str, name: str) -> Product:
    product = session.get(Product, product_id)
    if not product:
        raise ValidationFailedError(
            code=400102, message=f"Invalid field: {name} (unknown product {product_id})"
        )
    return product


def report(
    *,
    session: Session,
    email: str | None,
    product_id: str | None,
    action: str | None,
    source_app: str | None,
    stripe_subscription_id: str | None = None,
    stripe_price_id: str | None = None,
    amount_paid: int | None = None,
    currency: str | None = None,
    expires_at: datetime | None = None,
    reason: str | None = None,
) -> ReportResult:
    """
    处理一次产品上报（本函数负责提交）

    Raises:
        ValidationFailedError: 缺少必填字段、action 不合法、产品未知
    """
    email = normalize_email(_require(email, "email"))
    product_id = _require(product_id, "productId")
    raw_action = _require(action, "action")
    try:
        report_action = ReportAction(raw_action)
    except ValueError:
        raise ValidationFailedError(
            code=400103, message='Invalid field: action (must be "grant" or "revoke")'
        )
    source_app = _require(source_app, "sourceApp")
    _known_product(session, source_app, "sourceApp")
    _known_product(session, product_id, "productId")

    try:
        if report_action == ReportAction.grant:
            result = _grant(
                session=session,
                email=email,
                product_id=product_id,
                source_app=source_app,
                payment=ledger.PaymentMeta(
                    stripe_subscription_id=stripe_subscription_id,
                    stripe_price_id=stripe_price_id,
                    amount_paid=amount_paid,
                    currency=currency,
                ),
                expires_at=expires_at,
            )
        else:
            result = _revoke(
                session=session,
                email=email,
                product_id=product_id,
                source_app=source_app,
                stripe_subscription_id=stripe_subscription_id,
                reason=reason or f"Subscription revoked by {source_app}",
            )
        session.commit()
    except Exception as e:
        session.rollback()
        message = e.message if isinstance(e, AppError) else str(e)
        logger.error("Report from %s for %s (%s) failed: %s", source_app, email, product_id, message)
        add_audit(
            session=session,
            action=AuditAction.report_failed,
            identity_id=None,
            product_ids=[product_id],
            details={"email": email, "sourceApp": source_app, "action": raw_action, "error": message},
        )
        session.commit()
        raise

    logger.info(
        "%s subscription reported from %s for %s (%s)",
        report_action.value,
        source_app,
        email,
        product_id,
    )
    return result


def _grant(
    *,
    session: Session,
    email: str,
    product_id: str,
    source_app: str,
    payment: ledger.PaymentMeta,
    expires_at: datetime | None,
) -> ReportResult:
    identity = identity_crud.get_or_create(session=session, email=email)
    identity_crud.bind_email(
        session=session, identity_id=identity.id, email=email, product_id=product_id
    )
    granted = ledger.grant(
        session=session,
        identity=identity,
        product_ids=[product_id],
        source=EntitlementSource.direct,
        source_app=source_app,
        duration=Duration.fixed(expires_at),
        payment=payment,
        reason=f"Direct subscription reported by {source_app}",
    )
    return ReportResult(
        success=True,
        action=ReportAction.grant,
        identity_id=identity.id,
        entitlement_ids=[e.id for e in granted.entitlements],
        expires_at=granted.expires_at,
        sync=granted.sync,
    )


def _revoke(
    *,
    session: Session,
    email: str,
    product_id: str,
    source_app: str,
    stripe_subscription_id: str | None,
    reason: str,
) -> ReportResult:
    identity = identity_crud.resolve(session=session, email=email, product_id=product_id)
    if not identity:
        return ReportResult(success=True, action=ReportAction.revoke)

    revoked = ledger.revoke_where(
        session=session,
        identity=identity,
        reason=reason,
        product_ids=[product_id],
        source=EntitlementSource.direct,
        source_app=source_app,
        stripe_subscription_id=stripe_subscription_id,
    )
    return ReportResult(
        success=True,
        action=ReportAction.revoke,
        identity_id=identity.id,
        revoked=revoked.revoked,
        sync=revoked.sync,
    )
