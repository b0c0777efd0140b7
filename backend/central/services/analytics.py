"""
管理端统计概览

- 身份总数、授权总数、有效授权数
- 按产品 / 按来源统计有效授权
- 最近 7 天的授权、30 天内到期的有效授权（各取前 10 条）
- 各套餐已领取的令牌数
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlmodel import Session, func, select

from central.models import Bundle, ClaimToken, Entitlement, Identity, Product, ensure_utc, utc_now
from central.services.ledger import active_clause

RECENT_DAYS = 7
EXPIRING_DAYS = 30
LIST_LIMIT = 10


@dataclass
class GrantRow:
    email: str
    product: str
    product_id: str
    source: str
    granted_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass
class BundleClaims:
    bundle_id: int
    bundle_name: str
    claimed: int


@dataclass
class Summary:
    total_identities: int
    total_entitlements: int
    active_entitlements: int
    by_product: dict[str, int] = field(default_factory=dict)
    by_source: dict[str, int] = field(default_factory=dict)
    recent_grants: list[GrantRow] = field(default_factory=list)
    expiring_soon: list[GrantRow] = field(default_factory=list)
    bundle_claims: list[BundleClaims] = field(default_factory=list)


def _count(session: Session, *filters) -> int:
    return session.exec(select(func.count()).select_from(Entitlement).where(*filters)).one()


def _grouped(session: Session, column, now: datetime) -> dict[str, int]:
    rows = session.exec(
        select(column, func.count())
        .where(active_clause(now))
        .group_by(column)
        .order_by(column)
    ).all()
    return {key: count for key, count in rows}


def _with_names():
    return (
        select(Entitlement, Identity.primary_email, Product.name)
        .join(Identity, Identity.id == Entitlement.identity_id)
        .outerjoin(Product, Product.id == Entitlement.product_id)
    )


def summary(*, session: Session, now: datetime | None = None) -> Summary:
    now = now or utc_now()

    recent = session.exec(
        _with_names()
        .where(Entitlement.granted_at >= now - timedelta(days=RECENT_DAYS))
        .order_by(Entitlement.granted_at.desc(), Entitlement.id.desc())
        .limit(LIST_LIMIT)
    ).all()
    expiring = session.exec(
        _with_names()
        .where(
            active_clause(now),
            Entitlement.expires_at.is_not(None),
            Entitlement.expires_at <= now + timedelta(days=EXPIRING_DAYS),
        )
        .order_by(Entitlement.expires_at, Entitlement.id)
        .limit(LIST_LIMIT)
    ).all()
    claims = session.exec(
        select(ClaimToken.bundle_id, Bundle.name, func.count())
        .outerjoin(Bundle, Bundle.id == ClaimToken.bundle_id)
        .where(ClaimToken.claimed.is_(True))
        .group_by(ClaimToken.bundle_id, Bundle.name)
        .order_by(ClaimToken.bundle_id)
    ).all()

    return Summary(
        total_identities=session.exec(select(func.count()).select_from(Identity)).one(),
        total_entitlements=_count(session),
        active_entitlements=_count(session, active_clause(now)),
        by_product=_grouped(session, Entitlement.product_id, now),
        by_source=_grouped(session, Entitlement.source, now),
        recent_grants=[
            GrantRow(
                email=email,
                product=name or e.product_id,
                product_id=e.product_id,
                source=e.source,
                granted_at=ensure_utc(e.granted_at),
            )
            for e, email, name in recent
        ],
        expiring_soon=[
            GrantRow(
                email=email,
                product=name or e.product_id,
                product_id=e.product_id,
                source=e.source,
                expires_at=ensure_utc(e.expires_at),
            )
            for e, email, name in expiring
        ],
        bundle_claims=[
            BundleClaims(bundle_id=bundle_id, bundle_name=name or "Unknown", claimed=count)
            for bundle_id, name, count in claims
        ],
    )
