"""身份目录 CRUD 操作（调用方负责提交事务）"""
from typing import Any

from sqlalchemy import or_
from sqlmodel import Session, func, select

from central.core.db import insert_for
from central.core.snowflake import generate_id
from central.models import Identity, IdentityEmail, normalize_email, utc_now


def get_by_email(*, session: Session, email: str) -> Identity | None:
    """根据主邮箱查询身份"""
    statement = select(Identity).where(Identity.primary_email == normalize_email(email))
    return session.exec(statement).first()


def get_by_customer_id(*, session: Session, stripe_customer_id: str) -> Identity | None:
    """根据 Stripe 客户 ID 查询身份"""
    statement = select(Identity).where(Identity.stripe_customer_id == stripe_customer_id)
    return session.exec(statement).first()


def resolve(*, session: Session, email: str, product_id: str | None = None) -> Identity | None:
    """
    解析邮箱对应的身份

    先按 (email, product_id) 绑定查找，找不到再按主邮箱查找。
    """
    normalized = normalize_email(email)
    if product_id is not None:
        statement = (
            select(Identity)
            .join(IdentityEmail, IdentityEmail.identity_id == Identity.id)
            .where(IdentityEmail.email == normalized, IdentityEmail.product_id == product_id)
        )
        identity = session.exec(statement).first()
        if identity:
            return identity
    return get_by_email(session=session, email=normalized)


def resolve_any(
    *, session: Session, email: str, product_ids: list[str] | None = None
) -> Identity | None:
    """
    管理端按邮箱查找身份

    顺序：指定产品的绑定 -> 主邮箱 -> 任意产品的绑定。
    """
    normalized = normalize_email(email)
    bound = (
        select(Identity)
        .join(IdentityEmail, IdentityEmail.identity_id == Identity.id)
        .where(IdentityEmail.email == normalized)
    )
    if product_ids:
        identity = session.exec(bound.where(IdentityEmail.product_id.in_(product_ids))).first()
        if identity:
            return identity
    identity = get_by_email(session=session, email=normalized)
    if identity:
        return identity
    return session.exec(bound.order_by(IdentityEmail.created_at.desc())).first()


def search(
    *,
    session: Session,
    offset: int,
    limit: int,
    query: str | None = None,
    identity_ids: Any = None,
) -> tuple[list[Identity], int]:
    """
    分页查询身份（按创建时间倒序）

    query 同时匹配主邮箱和各产品绑定邮箱（子串、不区分大小写）；
    identity_ids 为可选的身份 ID 子查询，用于按授权条件过滤。
    """
    filters = []
    if query and query.strip():
        pattern = f"%{normalize_email(query)}%"
        bound = select(IdentityEmail.identity_id).where(IdentityEmail.email.like(pattern))
        filters.append(or_(Identity.primary_email.like(pattern), Identity.id.in_(bound)))
    if identity_ids is not None:
        filters.append(Identity.id.in_(identity_ids))

    count = session.exec(select(func.count()).select_from(Identity).where(*filters)).one()
    rows = session.exec(
        select(Identity)
        .where(*filters)
        .order_by(Identity.created_at.desc(), Identity.id.desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return list(rows), count


def get_or_create(
    *, session: Session, email: str, stripe_customer_id: str | None = None
) -> Identity:
    """
    根据主邮箱获取或创建身份

    使用 INSERT ... ON CONFLICT DO NOTHING，并发创建同一邮箱不会产生两个身份。
    已存在且尚未关联 Stripe 客户时补充客户 ID（只在为空时写入）。
    """
    normalized = normalize_email(email)
    now = utc_now()
    stmt = insert_for(session, Identity).values(
        id=generate_id(),
        primary_email=normalized,
        stripe_customer_id=stripe_customer_id,
        created_at=now,
        updated_at=now,
    )
    session.exec(stmt.on_conflict_do_nothing(index_elements=["primary_email"]))

    identity = session.exec(
        select(Identity).where(Identity.primary_email == normalized)
    ).one()
    if stripe_customer_id and not identity.stripe_customer_id:
        identity.stripe_customer_id = stripe_customer_id
        identity.updated_at = now
        session.add(identity)
        session.flush()
    return identity


def bind_email(*, session: Session, identity_id: int, email: str, product_id: str) -> None:
    """绑定 (邮箱, 产品) 到身份，已存在时后写者覆盖"""
    stmt = insert_for(session, IdentityEmail).values(
        id=generate_id(),
        identity_id=identity_id,
        email=normalize_email(email),
        product_id=product_id,
        verified=False,
        created_at=utc_now(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["email", "product_id"],
        set_={"identity_id": stmt.excluded.identity_id},
    )
    session.exec(stmt)


def emails_for(*, session: Session, identity_id: int) -> list[IdentityEmail]:
    """身份的全部邮箱绑定"""
    statement = (
        select(IdentityEmail)
        .where(IdentityEmail.identity_id == identity_id)
        .order_by(IdentityEmail.product_id)
    )
    return list(session.exec(statement).all())


def email_for_product(*, identity: Identity, bindings: list[IdentityEmail], product_id: str) -> str:
    """某产品下使用的邮箱：有绑定用绑定邮箱，否则用主邮箱"""
    for binding in bindings:
        if binding.product_id == product_id:
            return binding.email
    return identity.primary_email
