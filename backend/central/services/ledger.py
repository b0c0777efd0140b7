"""
授权账本服务

所有访问判断都来自 entitlements 表。本模块负责授权、撤销和访问查询：

- grant: 每个产品一条 INSERT ... ON CONFLICT DO UPDATE，按
  (identity_id, product_id, source, source_app) 唯一约束原子写入，
  已存在的行清除撤销状态并刷新到期时间和支付信息（重复订阅天然幂等）
- revoke: 撤销某身份在某些产品上的全部有效授权（不区分来源）
- revoke_one: 只撤销一条授权，其他来源的授权不受影响
- revoke_where: 按订阅 ID / 来源精确撤销（订阅取消、产品上报撤销）
- set_expiry: 管理员修改未撤销授权的到期时间

这里的函数只 flush 不 commit，由调用方决定事务边界（领取激活需要把授权与
令牌状态放在同一事务里）。需要推送到远端产品时返回 SyncRequest，由调用方在
提交之后交给 AppSyncDispatcher。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, update
from sqlmodel import Session, select

from central.api.errors import entitlement_not_found
from central.core.db import insert_for
from central.core.durations import Duration
from central.core.snowflake import generate_id
from central.crud import identity as identity_crud
from central.crud.logs import add_audit
from central.enums import AccessTier, AuditAction, EntitlementSource
from central.models import (
    HUB_SOURCE_APP,
    Bundle,
    Entitlement,
    Identity,
    Product,
    ensure_utc,
    utc_now,
)
from central.services.app_sync import SyncRequest, SyncTarget

logger = logging.getLogger(__name__)

_KEY_COLUMNS = ["identity_id", "product_id", "source", "source_app"]
# 重新授权时若新值为空则保留原值（例如结账事件不带订阅 ID 时不能冲掉订阅关联）
_KEEP_IF_NULL = ["bundle_id", "stripe_subscription_id", "stripe_price_id", "amount_paid", "currency"]
_REFRESHED = ["granted_at", "expires_at", "revoked_at", "revoked_reason", "updated_at"]


@dataclass
class PaymentMeta:
    """支付相关信息（全部可选）"""

    stripe_subscription_id: str | None = None
    stripe_price_id: str | None = None
    amount_paid: int | None = None
    currency: str | None = None


@dataclass
class GrantResult:
    entitlements: list[Entitlement]
    expires_at: datetime | None
    sync: SyncRequest | None


@dataclass
class RevokeResult:
    revoked: int
    product_ids: list[str]
    sync: SyncRequest | None


@dataclass
class RevokeOneResult:
    entitlement: Entitlement
    remaining_active: int
    sync: SyncRequest | None


@dataclass
class ExtendResult:
    updated: int
    expires_at: datetime | None
    syncs: list[SyncRequest]


@dataclass
class AccessResult:
    has_access: bool
    product: str
    source: str | None = None
    bundle_name: str | None = None
    expires: datetime | None = None
    granted_at: datetime | None = None
    entitlement_id: int | None = None


def active_clause(now: datetime) -> Any:
    """有效授权条件：未撤销，且永久或未到期"""
    return and_(
        Entitlement.revoked_at.is_(None),
        or_(Entitlement.expires_at.is_(None), Entitlement.expires_at > now),
    )


def grant(
    *,
    session: Session,
    identity: Identity,
    product_ids: list[str],
    source: EntitlementSource,
    duration: Duration,
    source_app: str = HUB_SOURCE_APP,
    bundle: Bundle | None = None,
    payment: PaymentMeta | None = None,
    admin_email: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> GrantResult:
    """
    授权一组产品

    Args:
        session: 数据库会话
        identity: 被授权身份
        product_ids: 产品 ID 列表
        source: 来源渠道
        duration: 时长策略（决定 expires_at）
        source_app: 上报产品 ID；中心发起的授权为 "central"
        bundle: 关联套餐
        payment: 支付信息
        admin_email: 管理员手工授权时记录
        reason: 推送给远端产品的原因说明
        now: 授权时间（默认当前时间）

    Returns:
        GrantResult: 写入后的授权行、到期时间、需要执行的同步推送
    """
    now = now or utc_now()
    expires_at = duration.expires_at(now)
    payment = payment or PaymentMeta()
    product_ids = list(dict.fromkeys(product_ids))

    values = {
        "identity_id": identity.id,
        "source": source.value,
        "source_app": source_app,
        "bundle_id": bundle.id if bundle else None,
        "stripe_subscription_id": payment.stripe_subscription_id,
        "stripe_price_id": payment.stripe_price_id,
        "amount_paid": payment.amount_paid,
        "currency": payment.currency,
        "granted_at": now,
        "expires_at": expires_at,
        "revoked_at": None,
        "revoked_reason": None,
        "updated_at": now,
    }
    table = Entitlement.__table__
    for product_id in product_ids:
        stmt = insert_for(session, Entitlement).values(
            id=generate_id(), product_id=product_id, **values
        )
        set_: dict[str, Any] = {col: stmt.excluded[col] for col in _REFRESHED}
        for col in _KEEP_IF_NULL:
            set_[col] = func.coalesce(stmt.excluded[col], table.c[col])
        session.exec(stmt.on_conflict_do_update(index_elements=_KEY_COLUMNS, set_=set_))

    rows = session.exec(
        select(Entitlement)
        .where(
            Entitlement.identity_id == identity.id,
            Entitlement.source == source.value,
            Entitlement.source_app == source_app,
            Entitlement.product_id.in_(product_ids),
        )
        .execution_options(populate_existing=True)
    ).all()

    add_audit(
        session=session,
        action=AuditAction.grant,
        identity_id=identity.id,
        product_ids=product_ids,
        admin_email=admin_email,
        details={
            "source": source.value,
            "sourceApp": source_app,
            "bundleId": bundle.id if bundle else None,
            "expiresAt": expires_at.isoformat() if expires_at else None,
            "stripeSubscriptionId": payment.stripe_subscription_id,
        },
    )
    session.flush()
    logger.info(
        "Granted %s to identity %s (source=%s, source_app=%s, expires=%s)",
        ",".join(product_ids),
        identity.id,
        source.value,
        source_app,
        expires_at,
    )

    if reason is None:
        reason = (
            f"Bundle access granted: {bundle.name}" if bundle else f"{source.value} access granted"
        )
    sync = build_sync_request(
        session=session,
        identity=identity,
        product_ids=product_ids,
        tier=AccessTier.pro,
        source=source.value,
        reason=reason,
    )
    return GrantResult(entitlements=list(rows), expires_at=expires_at, sync=sync)


def revoke(
    *,
    session: Session,
    identity: Identity,
    product_ids: list[str],
    reason: str,
    admin_email: str | None = None,
    now: datetime | None = None,
) -> RevokeResult:
    """
    撤销身份在指定产品上的全部授权（所有来源）

    撤销后这些产品都没有有效授权，所以总是推送 free。
    """
    now = now or utc_now()
    product_ids = list(dict.fromkeys(product_ids))
    result = session.exec(
        update(Entitlement)
        .where(
            Entitlement.identity_id == identity.id,
            Entitlement.product_id.in_(product_ids),
            Entitlement.revoked_at.is_(None),
        )
        .values(revoked_at=now, revoked_reason=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    add_audit(
        session=session,
        action=AuditAction.revoke,
        identity_id=identity.id,
        product_ids=product_ids,
        admin_email=admin_email,
        details={"reason": reason},
    )
    session.flush()
    logger.info("Revoked %s for identity %s: %s", ",".join(product_ids), identity.id, reason)

    sync = build_sync_request(
        session=session,
        identity=identity,
        product_ids=product_ids,
        tier=AccessTier.free,
        source="revoked",
        reason=reason,
    )
    return RevokeResult(revoked=result.rowcount, product_ids=product_ids, sync=sync)


def revoke_one(
    *,
    session: Session,
    entitlement_id: int,
    reason: str,
    admin_email: str | None = None,
    now: datetime | None = None,
) -> RevokeOneResult:
    """
    只撤销一条授权

    撤销后重新统计同一 (身份, 产品) 的有效授权数，只有归零时才推送 free；
    仍有其他来源的有效授权时，远端产品保持 pro，不推送。

    Raises:
        NotFoundError: 授权不存在
    """
    now = now or utc_now()
    entitlement = session.get(Entitlement, entitlement_id)
    if not entitlement:
        raise entitlement_not_found()

    if entitlement.revoked_at is None:
        entitlement.revoked_at = now
        entitlement.revoked_reason = reason
        entitlement.updated_at = now
        session.add(entitlement)

    add_audit(
        session=session,
        action=AuditAction.revoke_one,
        identity_id=entitlement.identity_id,
        product_ids=[entitlement.product_id],
        admin_email=admin_email,
        details={"entitlementId": entitlement.id, "source": entitlement.source, "reason": reason},
    )
    session.flush()

    remaining = count_active(
        session=session,
        identity_id=entitlement.identity_id,
        product_id=entitlement.product_id,
        now=now,
    )
    sync = None
    if remaining == 0:
        identity = session.get(Identity, entitlement.identity_id)
        if identity:
            sync = build_sync_request(
                session=session,
                identity=identity,
                product_ids=[entitlement.product_id],
                tier=AccessTier.free,
                source="revoked",
                reason=reason,
            )
    logger.info(
        "Revoked entitlement %s (%s), %d active remaining",
        entitlement.id,
        entitlement.product_id,
        remaining,
    )
    return RevokeOneResult(entitlement=entitlement, remaining_active=remaining, sync=sync)


def revoke_where(
    *,
    session: Session,
    identity: Identity,
    reason: str,
    product_ids: list[str] | None = None,
    source: EntitlementSource | None = None,
    source_app: str | None = None,
    stripe_subscription_id: str | None = None,
    now: datetime | None = None,
) -> RevokeResult:
    """
    按条件精确撤销

    只影响匹配条件的行（订阅 ID、来源、上报产品），其他来源的授权不受影响；
    只为撤销后已无有效授权的产品推送 free。
    """
    now = now or utc_now()
    filters = [Entitlement.identity_id == identity.id, Entitlement.revoked_at.is_(None)]
    if product_ids is not None:
        filters.append(Entitlement.product_id.in_(product_ids))
    if source is not None:
        filters.append(Entitlement.source == source.value)
    if source_app is not None:
        filters.append(Entitlement.source_app == source_app)
    if stripe_subscription_id is not None:
        filters.append(Entitlement.stripe_subscription_id == stripe_subscription_id)

    matched = session.exec(select(Entitlement).where(*filters)).all()
    affected = list(dict.fromkeys(e.product_id for e in matched))
    for entitlement in matched:
        entitlement.revoked_at = now
        entitlement.revoked_reason = reason
        entitlement.updated_at = now
        session.add(entitlement)

    add_audit(
        session=session,
        action=AuditAction.revoke,
        identity_id=identity.id,
        product_ids=affected or list(product_ids or []),
        details={
            "reason": reason,
            "source": source.value if source else None,
            "sourceApp": source_app,
            "stripeSubscriptionId": stripe_subscription_id,
            "revoked": len(matched),
        },
    )
    session.flush()

    dropped = [
        pid
        for pid in affected
        if count_active(session=session, identity_id=identity.id, product_id=pid, now=now) == 0
    ]
    sync = None
    if dropped:
        sync = build_sync_request(
            session=session,
            identity=identity,
            product_ids=dropped,
            tier=AccessTier.free,
            source="revoked",
            reason=reason,
        )
    logger.info(
        "Revoked %d entitlement(s) for identity %s (%s); no access left for: %s",
        len(matched),
        identity.id,
        reason,
        ",".join(dropped) or "-",
    )
    return RevokeResult(revoked=len(matched), product_ids=affected, sync=sync)


def set_expiry(
    *,
    session: Session,
    identity: Identity,
    product_ids: list[str],
    expires_at: datetime | None,
    admin_email: str | None = None,
    now: datetime | None = None,
) -> ExtendResult:
    """
    修改身份在指定产品上所有未撤销授权的到期时间（None 为永久）

    已撤销的行不受影响。修改后仍有有效授权的产品推送 pro，
    到期时间早于当前时间导致无有效授权的产品推送 free。
    """
    now = now or utc_now()
    product_ids = list(dict.fromkeys(product_ids))
    expires_at = ensure_utc(expires_at) if expires_at else None
    result = session.exec(
        update(Entitlement)
        .where(
            Entitlement.identity_id == identity.id,
            Entitlement.product_id.in_(product_ids),
            Entitlement.revoked_at.is_(None),
        )
        .values(expires_at=expires_at, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    add_audit(
        session=session,
        action=AuditAction.extend_access,
        identity_id=identity.id,
        product_ids=product_ids,
        admin_email=admin_email,
        details={
            "expiresAt": expires_at.isoformat() if expires_at else None,
            "updated": result.rowcount,
        },
    )
    session.flush()

    active = [
        pid
        for pid in product_ids
        if count_active(session=session, identity_id=identity.id, product_id=pid, now=now) > 0
    ]
    dropped = [pid for pid in product_ids if pid not in active]
    reason = "Access expiry changed by admin"
    syncs = [
        build_sync_request(
            session=session,
            identity=identity,
            product_ids=active,
            tier=AccessTier.pro,
            source="manual",
            reason=reason,
        ),
        build_sync_request(
            session=session,
            identity=identity,
            product_ids=dropped,
            tier=AccessTier.free,
            source="expired",
            reason=reason,
        ),
    ]
    logger.info(
        "Set expiry of %s for identity %s to %s (%d row(s))",
        ",".join(product_ids),
        identity.id,
        expires_at,
        result.rowcount,
    )
    return ExtendResult(
        updated=result.rowcount,
        expires_at=expires_at,
        syncs=[s for s in syncs if s is not None],
    )


def count_active(
    *, session: Session, identity_id: int, product_id: str, now: datetime | None = None
) -> int:
    """统计 (身份, 产品) 的有效授权数"""
    now = now or utc_now()
    return session.exec(
        select(func.count())
        .select_from(Entitlement)
        .where(
            Entitlement.identity_id == identity_id,
            Entitlement.product_id == product_id,
            active_clause(now),
        )
    ).one()


def check_access(
    *, session: Session, email: str, product_id: str, now: datetime | None = None
) -> AccessResult:
    """
    查询邮箱对某产品是否有访问权限

    身份解析：先按 (邮箱, 产品) 绑定，再按主邮箱。多条有效授权时取最近授权的一条。
    身份不存在或没有有效授权时返回 has_access=False，不抛异常。
    """
    now = now or utc_now()
    identity = identity_crud.resolve(session=session, email=email, product_id=product_id)
    if not identity:
        return AccessResult(has_access=False, product=product_id)

    row = session.exec(
        select(Entitlement, Bundle.name)
        .outerjoin(Bundle, Bundle.id == Entitlement.bundle_id)
        .where(
            Entitlement.identity_id == identity.id,
            Entitlement.product_id == product_id,
            active_clause(now),
        )
        .order_by(Entitlement.granted_at.desc(), Entitlement.id.desc())
    ).first()
    if not row:
        return AccessResult(has_access=False, product=product_id)

    entitlement, bundle_name = row
    return AccessResult(
        has_access=True,
        product=product_id,
        source=entitlement.source,
        bundle_name=bundle_name,
        expires=ensure_utc(entitlement.expires_at) if entitlement.expires_at else None,
        granted_at=ensure_utc(entitlement.granted_at),
        entitlement_id=entitlement.id,
    )


def build_sync_request(
    *,
    session: Session,
    identity: Identity,
    product_ids: list[str],
    tier: AccessTier,
    source: str,
    reason: str,
) -> SyncRequest | None:
    """为配置了 sync_url 的产品生成推送任务；没有可推送的产品时返回 None"""
    if not product_ids:
        return None
    products = session.exec(
        select(Product)
        .where(Product.id.in_(product_ids), Product.sync_url.is_not(None))
        .order_by(Product.display_order, Product.id)
    ).all()
    if not products:
        return None

    bindings = identity_crud.emails_for(session=session, identity_id=identity.id)
    targets = [
        SyncTarget(
            product_id=p.id,
            name=p.name,
            url=p.sync_url,
            email=identity_crud.email_for_product(
                identity=identity, bindings=bindings, product_id=p.id
            ),
        )
        for p in products
        if p.sync_url
    ]
    return SyncRequest(tier=tier, source=source, reason=reason, targets=targets)
