"""产品与套餐 CRUD 操作"""
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from central.api.errors import (
    AlreadyProcessedError,
    ValidationFailedError,
    bundle_not_found,
    product_not_found,
)
from central.core.db import insert_for
from central.crud.logs import add_audit
from central.enums import AuditAction
from central.models import Bundle, Product


def list_products(*, session: Session, active_only: bool = False) -> list[Product]:
    statement = select(Product).order_by(Product.display_order, Product.id)
    if active_only:
        statement = statement.where(Product.is_active.is_(True))
    return list(session.exec(statement).all())


def create_product(*, session: Session, data: dict[str, Any]) -> Product:
    """创建产品，ID 已存在时抛出冲突错误"""
    product = Product(**data)
    session.add(product)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise AlreadyProcessedError(code=409201, message=f"Product {data.get('id')} already exists")
    session.refresh(product)
    return product


def require_products(*, session: Session, product_ids: list[str]) -> list[str]:
    """校验产品 ID 全部存在，返回去重后的列表"""
    product_ids = list(dict.fromkeys(product_ids))
    known = set(session.exec(select(Product.id).where(Product.id.in_(product_ids))).all())
    unknown = [pid for pid in product_ids if pid not in known]
    if unknown:
        raise ValidationFailedError(
            code=400501, message=f"Unknown product(s): {', '.join(unknown)}"
        )
    return product_ids


def list_bundles(*, session: Session) -> list[Bundle]:
    return list(session.exec(select(Bundle).order_by(Bundle.created_at, Bundle.id)).all())


def get_bundle_by_price(*, session: Session, stripe_price_id: str) -> Bundle | None:
    return session.exec(select(Bundle).where(Bundle.stripe_price_id == stripe_price_id)).first()


def create_bundle(*, session: Session, data: dict[str, Any]) -> Bundle:
    """创建套餐；产品必须存在，slug 和价格 ID 唯一"""
    product_ids = require_products(session=session, product_ids=data.get("product_ids") or [])

    bundle = Bundle(**{**data, "product_ids": product_ids})
    session.add(bundle)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise AlreadyProcessedError(
            code=409202, message="Bundle slug or Stripe price already exists"
        )
    session.refresh(bundle)
    return bundle


def get_product(*, session: Session, product_id: str) -> Product:
    product = session.get(Product, product_id)
    if not product:
        raise product_not_found(product_id)
    return product


def update_product(
    *, session: Session, product: Product, data: dict[str, Any], admin_email: str
) -> Product:
    """更新产品（只更新传入的字段），写入 product_updated 审计"""
    product.sqlmodel_update(data)
    session.add(product)
    add_audit(
        session=session,
        action=AuditAction.product_updated,
        identity_id=None,
        product_ids=[product.id],
        admin_email=admin_email,
        details=jsonable_encoder(data),
    )
    session.commit()
    session.refresh(product)
    return product


def deactivate_product(*, session: Session, product: Product, admin_email: str) -> Product:
    """下架产品（软删除），已有授权不受影响"""
    product.is_active = False
    session.add(product)
    add_audit(
        session=session,
        action=AuditAction.product_deleted,
        identity_id=None,
        product_ids=[product.id],
        admin_email=admin_email,
    )
    session.commit()
    session.refresh(product)
    return product


def get_bundle(*, session: Session, bundle_id: int) -> Bundle:
    bundle = session.get(Bundle, bundle_id)
    if not bundle:
        raise bundle_not_found()
    return bundle


def update_bundle(
    *, session: Session, bundle: Bundle, data: dict[str, Any], admin_email: str
) -> Bundle:
    """更新套餐；产品必须存在，slug 和价格 ID 仍需唯一"""
    if "product_ids" in data:
        data = {
            **data,
            "product_ids": require_products(session=session, product_ids=data["product_ids"]),
        }
    bundle.sqlmodel_update(data)
    session.add(bundle)
    add_audit(
        session=session,
        action=AuditAction.bundle_updated,
        identity_id=None,
        product_ids=list(bundle.product_ids),
        admin_email=admin_email,
        details={"bundleId": bundle.id, "updates": jsonable_encoder(data)},
    )
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise AlreadyProcessedError(
            code=409202, message="Bundle slug or Stripe price already exists"
        )
    session.refresh(bundle)
    return bundle


def deactivate_bundle(*, session: Session, bundle: Bundle, admin_email: str) -> Bundle:
    """下架套餐（软删除）"""
    bundle.is_active = False
    session.add(bundle)
    add_audit(
        session=session,
        action=AuditAction.bundle_deleted,
        identity_id=None,
        product_ids=list(bundle.product_ids),
        admin_email=admin_email,
        details={"bundleId": bundle.id},
    )
    session.commit()
    session.refresh(bundle)
    return bundle


def upsert_product(*, session: Session, data: dict[str, Any]) -> None:
    """按 ID 插入或更新产品（初始化数据用，不提交）"""
    stmt = insert_for(session, Product).values(**data)
    updates = {k: stmt.excluded[k] for k in data if k not in ("id", "created_at")}
    if updates:
        stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=updates)
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=["id"])
    session.exec(stmt)


def upsert_bundle(*, session: Session, data: dict[str, Any]) -> None:
    """按 slug 插入或更新套餐（初始化数据用，不提交）"""
    stmt = insert_for(session, Bundle).values(**data)
    updates = {k: stmt.excluded[k] for k in data if k not in ("id", "slug", "created_at")}
    stmt = stmt.on_conflict_do_update(index_elements=["slug"], set_=updates)
    session.exec(stmt)
