"""
访问查询服务

远端产品在用户登录时调用的只读接口，不依赖同步推送和支付网关。
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlmodel import Session, select

from central.models import Product, normalize_email, utc_now
from central.services import ledger
from central.services.ledger import AccessResult


@dataclass
class ProductAccess:
    id: str
    name: str
    has_access: bool
    source: str | None = None
    expires: datetime | None = None


def check(*, session: Session, email: str, product_id: str) -> AccessResult:
    """单个产品的访问判断"""
    return ledger.check_access(
        session=session, email=normalize_email(email), product_id=product_id
    )


def list_entitlements(*, session: Session, email: str) -> list[ProductAccess]:
    """所有上架产品的访问情况（按展示顺序）"""
    now = utc_now()
    normalized = normalize_email(email)
    products = session.exec(
        select(Product)
        .where(Product.is_active.is_(True))
        .order_by(Product.display_order, Product.id)
    ).all()

    results: list[ProductAccess] = []
    for product in products:
        access = ledger.check_access(
            session=session, email=normalized, product_id=product.id, now=now
        )
        results.append(
            ProductAccess(
                id=product.id,
                name=product.name,
                has_access=access.has_access,
                source=access.source,
                expires=access.expires,
            )
        )
    return results
