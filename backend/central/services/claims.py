"""
领取令牌工作流

套餐中存在需要填写表单的产品时，支付完成后发放一次性领取令牌（issued），
用户在领取页面为每个产品填写邮箱和表单后激活（claimed，终态）。

激活是一个原子单元：
1. 条件更新 UPDATE ... SET claimed = true WHERE claimed = false，
   并发激活同一令牌只有一个请求能更新成功
2. 按产品绑定邮箱、校验并保存表单
3. 一次账本调用授权整个套餐
4. 写入 claim 审计日志后提交

任何一步失败都整体回滚（令牌仍未领取、没有授权），
并在新事务中写入 claim_failed 审计日志。令牌本身无效（不存在、已领取、
已过期）时直接拒绝，不写审计。

未提交数据的产品使用购买邮箱，表单是否必填由各产品的表单定义决定。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import update
from sqlmodel import Session, select

from central.api.errors import (
    AlreadyClaimedError,
    AppError,
    TokenExpiredError,
    bundle_not_found,
    claim_token_not_found,
)
from central.core.config import settings
from central.core.durations import Duration
from central.core.security import generate_claim_token
from central.crud import identity as identity_crud
from central.crud.logs import add_audit
from central.enums import AuditAction, EntitlementSource
from central.models import (
    Bundle,
    ClaimToken,
    Identity,
    Product,
    ProductSubmission,
    ensure_utc,
    normalize_email,
    utc_now,
)
from central.services import ledger
from central.services.app_sync import SyncRequest
from central.services.forms import validate_form_data

logger = logging.getLogger(__name__)


@dataclass
class ProductClaimData:
    """领取时单个产品提交的数据"""

    email: str | None = None
    form_data: dict[str, Any] | None = None


@dataclass
class ClaimStatus:
    """领取页面展示用的令牌状态"""

    valid: bool
    error: str | None = None
    code: int | None = None
    token: ClaimToken | None = None
    bundle: Bundle | None = None
    products: list[Product] = field(default_factory=list)


@dataclass
class ActivatedProduct:
    product: str
    email: str
    status: str


@dataclass
class ActivationResult:
    identity: Identity
    bundle: Bundle
    activated: list[ActivatedProduct]
    submission_ids: list[int]
    sync: SyncRequest | None


def issue(
    *,
    session: Session,
    identity: Identity,
    bundle: Bundle,
    purchase_email: str,
    stripe_session_id: str | None = None,
    now: datetime | None = None,
) -> ClaimToken:
    """发放领取令牌（不提交）"""
    now = now or utc_now()
    claim_token = ClaimToken(
        token=generate_claim_token(),
        identity_id=identity.id,
        bundle_id=bundle.id,
        purchase_email=normalize_email(purchase_email),
        stripe_session_id=stripe_session_id,
        expires_at=now + timedelta(days=settings.CLAIM_TOKEN_TTL_DAYS),
        created_at=now,
    )
    session.add(claim_token)
    session.flush()
    logger.info("Claim token issued for identity %s, bundle %s", identity.id, bundle.slug)
    return claim_token


def get_token(*, session: Session, token: str) -> ClaimToken | None:
    return session.exec(select(ClaimToken).where(ClaimToken.token == token)).first()


def validate(*, session: Session, token: str, now: datetime | None = None) -> ClaimToken:
    """
    校验令牌

    Raises:
        NotFoundError: 令牌不存在
        AlreadyClaimedError: 已领取
        TokenExpiredError: 未领取但已超过有效期
    """
    claim_token = get_token(session=session, token=token)
    if not claim_token:
        raise claim_token_not_found()
    if claim_token.claimed:
        raise AlreadyClaimedError()
    if ensure_utc(claim_token.expires_at) <= (now or utc_now()):
        raise TokenExpiredError()
    return claim_token


def bundle_products(*, session: Session, bundle: Bundle) -> list[Product]:
    """套餐内上架的产品（按展示顺序）"""
    return list(
        session.exec(
            select(Product)
            .where(Product.id.in_(bundle.product_ids), Product.is_active.is_(True))
            .order_by(Product.display_order, Product.id)
        ).all()
    )


def inspect(*, session: Session, token: str, now: datetime | None = None) -> ClaimStatus:
    """领取页面查询：无效令牌返回 valid=False 和原因，不抛异常"""
    try:
        claim_token = validate(session=session, token=token, now=now)
    except AppError as e:
        return ClaimStatus(valid=False, error=e.message, code=e.code)

    bundle = session.get(Bundle, claim_token.bundle_id)
    if not bundle:
        error = bundle_not_found()
        return ClaimStatus(valid=False, error=error.message, code=error.code)
    return ClaimStatus(
        valid=True,
        token=claim_token,
        bundle=bundle,
        products=bundle_products(session=session, bundle=bundle),
    )


def mark_claimed(*, session: Session, claim_token: ClaimToken, now: datetime) -> bool:
    """条件更新令牌为已领取；返回 False 表示已被其他请求领取"""
    result = session.exec(
        update(ClaimToken)
        .where(ClaimToken.id == claim_token.id, ClaimToken.claimed.is_(False))
        .values(claimed=True, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def activate(
    *,
    session: Session,
    token: str,
    products: dict[str, ProductClaimData],
    now: datetime | None = None,
) -> ActivationResult:
    """
    激活领取令牌

    Args:
        session: 数据库会话（本函数负责提交或回滚）
        token: 领取令牌
        products: 产品 ID -> 该产品的邮箱与表单数据；未提供邮箱时使用购买邮箱
        now: 激活时间

    Returns:
        ActivationResult: 授权结果、需要转发的表单提交、同步推送任务

    Raises:
        NotFoundError / AlreadyClaimedError / TokenExpiredError / ValidationFailedError
    """
    now = now or utc_now()
    # 令牌不存在/已领取/已过期直接拒绝，不写审计
    claim_token = validate(session=session, token=token, now=now)
    identity_id = claim_token.identity_id
    try:
        result = _activate(session=session, claim_token=claim_token, products=products, now=now)
        session.commit()
    except Exception as e:
        session.rollback()
        _record_failure(session=session, token=token, identity_id=identity_id, error=e)
        raise

    logger.info(
        "Claim token activated for identity %s, bundle %s",
        result.identity.id,
        result.bundle.slug,
    )
    return result


def _activate(
    *,
    session: Session,
    claim_token: ClaimToken,
    products: dict[str, ProductClaimData],
    now: datetime,
) -> ActivationResult:
    bundle = session.get(Bundle, claim_token.bundle_id)
    if not bundle:
        raise bundle_not_found()
    identity = session.get(Identity, claim_token.identity_id)
    if not identity:
        raise claim_token_not_found()

    if not mark_claimed(session=session, claim_token=claim_token, now=now):
        raise AlreadyClaimedError()

    catalog = {p.id: p for p in bundle_products(session=session, bundle=bundle)}
    activated: list[ActivatedProduct] = []
    submissions: list[ProductSubmission] = []
    for product_id in bundle.product_ids:
        data = products.get(product_id) or ProductClaimData()
        email = normalize_email(data.email or claim_token.purchase_email)
        identity_crud.bind_email(
            session=session, identity_id=identity.id, email=email, product_id=product_id
        )

        product = catalog.get(product_id)
        status = "ready"
        if product is not None and (product.requires_form or data.form_data):
            form_data = validate_form_data(
                product_id=product_id, schema=product.form_schema, data=data.form_data
            )
            submission = ProductSubmission(
                identity_id=identity.id,
                product_id=product_id,
                claim_token_id=claim_token.id,
                form_data=form_data,
                created_at=now,
            )
            session.add(submission)
            submissions.append(submission)
            if product.form_webhook_url:
                status = "processing"
        activated.append(ActivatedProduct(product=product_id, email=email, status=status))

    grant = ledger.grant(
        session=session,
        identity=identity,
        product_ids=list(bundle.product_ids),
        source=EntitlementSource.bundle,
        duration=Duration.of(bundle.duration_type, bundle.duration_value),
        bundle=bundle,
        now=now,
    )
    add_audit(
        session=session,
        action=AuditAction.claim,
        identity_id=identity.id,
        product_ids=list(bundle.product_ids),
        details={"bundleId": bundle.id, "claimTokenId": claim_token.id},
    )
    session.flush()
    return ActivationResult(
        identity=identity,
        bundle=bundle,
        activated=activated,
        submission_ids=[s.id for s in submissions],
        sync=grant.sync,
    )


def _record_failure(
    *, session: Session, token: str, identity_id: int | None, error: Exception
) -> None:
    message = error.message if isinstance(error, AppError) else str(error)
    logger.warning("Claim activation failed for token %s...: %s", token[:8], message)
    add_audit(
        session=session,
        action=AuditAction.claim_failed,
        identity_id=identity_id,
        product_ids=[],
        details={"error": message, "errorType": type(error).__name__},
    )
    session.commit()
