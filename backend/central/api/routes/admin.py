"""
管理端路由（Bearer JWT，sub 必须在 ADMIN_EMAILS 中）

- 产品、套餐：列表 / 创建 / 详情 / 修改 / 下架
- 手工授权、批量撤销、撤销单条授权
- 身份：分页搜索、按邮箱查询、详情、绑定产品邮箱、授权、撤销、修改到期时间
- 统计概览
- 审计日志、Webhook 日志分页查询
"""
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Query
from sqlmodel import Session, func, select

from central.api.deps import AdminDep, DispatcherDep, SessionDep
from central.api.errors import identity_not_found
from central.api.schemas import (
    AnalyticsData,
    ApiEnvelope,
    AuditLogPublic,
    BundleClaimsPublic,
    BundleCreate,
    BundleDetail,
    BundlePublic,
    BundleUpdate,
    ClaimTokenPublic,
    EntitlementPublic,
    ExtendAccessData,
    ExtendAccessRequest,
    GrantData,
    GrantRowPublic,
    IdentityDetail,
    IdentityEmailCreate,
    IdentityEmailPublic,
    IdentityGrantRequest,
    IdentityRevokeRequest,
    IdentitySummary,
    ManualGrantRequest,
    Page,
    ProductCreate,
    ProductDetail,
    ProductPublic,
    ProductUpdate,
    RevokeData,
    RevokeOneData,
    RevokeOneRequest,
    RevokeRequest,
    SubmissionPublic,
    WebhookLogPublic,
)
from central.core.durations import Duration
from central.crud import catalog as catalog_crud
from central.crud import identity as identity_crud
from central.crud import logs as logs_crud
from central.crud.logs import add_audit
from central.enums import AuditAction
from central.models import (
    ClaimToken,
    Entitlement,
    Identity,
    ProductSubmission,
    normalize_email,
    utc_now,
)
from central.services import analytics, ledger
from central.services.forms import FormField

router = APIRouter(prefix="/admin", tags=["admin"])


def _entitlement_public(entitlement: Entitlement) -> EntitlementPublic:
    data = EntitlementPublic.model_validate(entitlement)
    data.active = entitlement.is_active(utc_now())
    return data


def _dump_form(fields: list[FormField]) -> list[dict]:
    return [f.model_dump(mode="json", exclude_none=True) for f in fields]


def _drop_nulls(data: dict, required: set[str]) -> dict:
    # 非空列传 null 视为未修改
    return {k: v for k, v in data.items() if v is not None or k not in required}


def _get_identity(session: Session, identity_id: int) -> Identity:
    identity = session.get(Identity, identity_id)
    if not identity:
        raise identity_not_found(identity_id)
    return identity


def _identity_detail(session: Session, identity: Identity) -> IdentityDetail:
    bindings = identity_crud.emails_for(session=session, identity_id=identity.id)
    entitlements = session.exec(
        select(Entitlement)
        .where(Entitlement.identity_id == identity.id)
        .order_by(Entitlement.product_id, Entitlement.granted_at.desc())
    ).all()
    submissions = session.exec(
        select(ProductSubmission)
        .where(ProductSubmission.identity_id == identity.id)
        .order_by(ProductSubmission.created_at.desc())
    ).all()
    tokens = session.exec(
        select(ClaimToken)
        .where(ClaimToken.identity_id == identity.id)
        .order_by(ClaimToken.created_at.desc())
    ).all()
    return IdentityDetail(
        id=identity.id,
        primary_email=identity.primary_email,
        stripe_customer_id=identity.stripe_customer_id,
        created_at=identity.created_at,
        emails=[IdentityEmailPublic.model_validate(b) for b in bindings],
        entitlements=[_entitlement_public(e) for e in entitlements],
        submissions=[SubmissionPublic.model_validate(s) for s in submissions],
        claim_tokens=[ClaimTokenPublic.model_validate(t) for t in tokens],
    )


def _grant(
    *,
    session: Session,
    identity: Identity,
    body: ManualGrantRequest | IdentityGrantRequest,
    admin: str,
    dispatcher,
    background_tasks: BackgroundTasks,
) -> GrantData:
    result = ledger.grant(
        session=session,
        identity=identity,
        product_ids=body.product_ids,
        source=body.source,
        duration=Duration.of(body.duration_type, body.duration_value),
        admin_email=admin,
        reason=body.reason,
    )
    session.commit()
    if result.sync:
        background_tasks.add_task(dispatcher.dispatch, result.sync)
    return GrantData(
        entitlements=[_entitlement_public(e) for e in result.entitlements],
        expires_at=result.expires_at,
    )


def _revoke(
    *,
    session: Session,
    identity: Identity,
    body: RevokeRequest | IdentityRevokeRequest,
    admin: str,
    dispatcher,
    background_tasks: BackgroundTasks,
) -> RevokeData:
    result = ledger.revoke(
        session=session,
        identity=identity,
        product_ids=body.product_ids,
        reason=body.reason,
        admin_email=admin,
    )
    session.commit()
    if result.sync:
        background_tasks.add_task(dispatcher.dispatch, result.sync)
    return RevokeData(revoked=result.revoked, product_ids=result.product_ids)


# ============================================================
# 产品
# ============================================================


@router.get("/products", response_model=ApiEnvelope)
def list_products(session: SessionDep, _: AdminDep) -> ApiEnvelope:
    products = catalog_crud.list_products(session=session)
    return ApiEnvelope(data=[ProductPublic.model_validate(p) for p in products])


@router.post("/products", response_model=ApiEnvelope)
def create_product(body: ProductCreate, session: SessionDep, _: AdminDep) -> ApiEnvelope:
    data = body.model_dump()
    if body.form_schema is not None:
        data["form_schema"] = _dump_form(body.form_schema)
    product = catalog_crud.create_product(session=session, data=data)
    return ApiEnvelope(data=ProductPublic.model_validate(product))


@router.get("/products/{product_id}", response_model=ApiEnvelope)
def read_product(product_id: str, session: SessionDep, _: AdminDep) -> ApiEnvelope:
    product = catalog_crud.get_product(session=session, product_id=product_id)
    active = session.exec(
        select(func.count())
        .select_from(Entitlement)
        .where(Entitlement.product_id == product.id, ledger.active_clause(utc_now()))
    ).one()
    submissions = session.exec(
        select(func.count())
        .select_from(ProductSubmission)
        .where(ProductSubmission.product_id == product.id)
    ).one()
    data = ProductDetail.model_validate(product)
    data.active_entitlements = active
    data.submissions = submissions
    return ApiEnvelope(data=data)


@router.put("/products/{product_id}", response_model=ApiEnvelope)
def update_product(
    product_id: str, body: ProductUpdate, session: SessionDep, admin: AdminDep
) -> ApiEnvelope:
    product = catalog_crud.get_product(session=session, product_id=product_id)
    data = _drop_nulls(body.model_dump(exclude_unset=True), {"name", "is_active", "display_order"})
    if body.form_schema is not None:
        data["form_schema"] = _dump_form(body.form_schema)
    product = catalog_crud.update_product(
        session=session, product=product, data=data, admin_email=admin
    )
    return ApiEnvelope(data=ProductPublic.model_validate(product))


@router.delete("/products/{product_id}", response_model=ApiEnvelope)
def deactivate_product(product_id: str, session: SessionDep, admin: AdminDep) -> ApiEnvelope:
    product = catalog_crud.get_product(session=session, product_id=product_id)
    product = catalog_crud.deactivate_product(session=session, product=product, admin_email=admin)
    return ApiEnvelope(data=ProductPublic.model_validate(product))


# ============================================================
# 套餐
# ============================================================


@router.get("/bundles", response_model=ApiEnvelope)
def list_bundles(session: SessionDep, _: AdminDep) -> ApiEnvelope:
    bundles = catalog_crud.list_bundles(session=session)
    return ApiEnvelope(data=[BundlePublic.model_validate(b) for b in bundles])


@router.post("/bundles", response_model=ApiEnvelope)
def create_bundle(body: BundleCreate, session: SessionDep, _: AdminDep) -> ApiEnvelope:
    data = body.model_dump(mode="json")
    bundle = catalog_crud.create_bundle(session=session, data=data)
    return ApiEnvelope(data=BundlePublic.model_validate(bundle))


@router.get("/bundles/{bundle_id}", response_model=ApiEnvelope)
def read_bundle(bundle_id: int, session: SessionDep, _: AdminDep) -> ApiEnvelope:
    bundle = catalog_crud.get_bundle(session=session, bundle_id=bundle_id)
    products = [
        p
        for p in catalog_crud.list_products(session=session)
        if p.id in bundle.product_ids
    ]
    entitlements = session.exec(
        select(func.count()).select_from(Entitlement).where(Entitlement.bundle_id == bundle.id)
    ).one()
    claimed, pending = 0, 0
    for is_claimed, count in session.exec(
        select(ClaimToken.claimed, func.count())
        .where(ClaimToken.bundle_id == bundle.id)
        .group_by(ClaimToken.claimed)
    ).all():
        if is_claimed:
            claimed = count
        else:
            pending = count
    data = BundleDetail.model_validate(bundle)
    data.products = [ProductPublic.model_validate(p) for p in products]
    data.entitlements = entitlements
    data.claimed_tokens = claimed
    data.pending_tokens = pending
    return ApiEnvelope(data=data)


@router.put("/bundles/{bundle_id}", response_model=ApiEnvelope)
def update_bundle(
    bundle_id: int, body: BundleUpdate, session: SessionDep, admin: AdminDep
) -> ApiEnvelope:
    bundle = catalog_crud.get_bundle(session=session, bundle_id=bundle_id)
    data = _drop_nulls(
        body.model_dump(mode="json", exclude_unset=True),
        {"name", "slug", "stripe_price_id", "product_ids", "duration_type", "is_active"},
    )
    bundle = catalog_crud.update_bundle(session=session, bundle=bundle, data=data, admin_email=admin)
    return ApiEnvelope(data=BundlePublic.model_validate(bundle))


@router.delete("/bundles/{bundle_id}", response_model=ApiEnvelope)
def deactivate_bundle(bundle_id: int, session: SessionDep, admin: AdminDep) -> ApiEnvelope:
    bundle = catalog_crud.get_bundle(session=session, bundle_id=bundle_id)
    bundle = catalog_crud.deactivate_bundle(session=session, bundle=bundle, admin_email=admin)
    return ApiEnvelope(data=BundlePublic.model_validate(bundle))


# ============================================================
# 授权
# ============================================================


@router.post("/grant", response_model=ApiEnvelope)
def grant(
    body: ManualGrantRequest,
    session: SessionDep,
    admin: AdminDep,
    dispatcher: DispatcherDep,
    background_tasks: BackgroundTasks,
) -> ApiEnvelope:
    catalog_crud.require_products(session=session, product_ids=body.product_ids)
    identity = identity_crud.get_or_create(session=session, email=body.email)
    data = _grant(
        session=session,
        identity=identity,
        body=body,
        admin=admin,
        dispatcher=dispatcher,
        background_tasks=background_tasks,
    )
    return ApiEnvelope(data=data)


@router.post("/revoke", response_model=ApiEnvelope)
def revoke(
    body: RevokeRequest,
    session: SessionDep,
    admin: AdminDep,
    dispatcher: DispatcherDep,
    background_tasks: BackgroundTasks,
) -> ApiEnvelope:
    # 邮箱可能是某产品下的绑定邮箱，而不是主邮箱
    identity = identity_crud.resolve_any(
        session=session, email=body.email, product_ids=body.product_ids
    )
    if not identity:
        raise identity_not_found(body.email)
    data = _revoke(
        session=session,
        identity=identity,
        body=body,
        admin=admin,
        dispatcher=dispatcher,
        background_tasks=background_tasks,
    )
    return ApiEnvelope(data=data)


@router.post("/entitlements/{entitlement_id}/revoke", response_model=ApiEnvelope)
def revoke_one(
    entitlement_id: int,
    session: SessionDep,
    admin: AdminDep,
    dispatcher: DispatcherDep,
    background_tasks: BackgroundTasks,
    body: RevokeOneRequest | None = None,
) -> ApiEnvelope:
    reason = body.reason if body else RevokeOneRequest().reason
    result = ledger.revoke_one(
        session=session, entitlement_id=entitlement_id, reason=reason, admin_email=admin
    )
    session.commit()
    if result.sync:
        background_tasks.add_task(dispatcher.dispatch, result.sync)
    return ApiEnvelope(
        data=RevokeOneData(
            entitlement=_entitlement_public(result.entitlement),
            remaining_active=result.remaining_active,
        )
    )


# ============================================================
# 身份
# ============================================================


@router.get("/identities", response_model=ApiEnvelope)
def list_identities(
    session: SessionDep,
    _: AdminDep,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    search: str | None = None,
    product: str | None = None,
    source: str | None = None,
) -> ApiEnvelope:
    now = utc_now()
    holders = None
    if product or source:
        holders = select(Entitlement.identity_id).where(ledger.active_clause(now))
        if product:
            holders = holders.where(Entitlement.product_id == product)
        if source:
            holders = holders.where(Entitlement.source == source)

    identities, count = identity_crud.search(
        session=session, offset=offset, limit=limit, query=search, identity_ids=holders
    )
    items = []
    for identity in identities:
        bindings = identity_crud.emails_for(session=session, identity_id=identity.id)
        active = session.exec(
            select(Entitlement)
            .where(Entitlement.identity_id == identity.id, ledger.active_clause(now))
            .order_by(Entitlement.product_id)
        ).all()
        items.append(
            IdentitySummary(
                id=identity.id,
                primary_email=identity.primary_email,
                stripe_customer_id=identity.stripe_customer_id,
                created_at=identity.created_at,
                emails=[IdentityEmailPublic.model_validate(b) for b in bindings],
                active_entitlements=[_entitlement_public(e) for e in active],
            )
        )
    return ApiEnvelope(data=Page(items=items, count=count))


@router.get("/identities/lookup", response_model=ApiEnvelope)
def lookup_identity(
    session: SessionDep, _: AdminDep, email: str = Query(min_length=1)
) -> ApiEnvelope:
    identity = identity_crud.resolve_any(session=session, email=email)
    if not identity:
        raise identity_not_found(email)
    return ApiEnvelope(data=_identity_detail(session, identity))


@router.get("/identities/{identity_id}", response_model=ApiEnvelope)
def read_identity(identity_id: int, session: SessionDep, _: AdminDep) -> ApiEnvelope:
    identity = _get_identity(session, identity_id)
    return ApiEnvelope(data=_identity_detail(session, identity))


@router.post("/identities/{identity_id}/emails", response_model=ApiEnvelope)
def link_email(
    identity_id: int, body: IdentityEmailCreate, session: SessionDep, admin: AdminDep
) -> ApiEnvelope:
    identity = _get_identity(session, identity_id)
    product = catalog_crud.get_product(session=session, product_id=body.product_id)
    identity_crud.bind_email(
        session=session, identity_id=identity.id, email=body.email, product_id=product.id
    )
    add_audit(
        session=session,
        action=AuditAction.email_linked,
        identity_id=identity.id,
        product_ids=[product.id],
        admin_email=admin,
        details={"email": normalize_email(body.email)},
    )
    session.commit()
    bindings = identity_crud.emails_for(session=session, identity_id=identity.id)
    return ApiEnvelope(data=[IdentityEmailPublic.model_validate(b) for b in bindings])


@router.patch("/identities/{identity_id}/grant", response_model=ApiEnvelope)
def grant_identity(
    identity_id: int,
    body: IdentityGrantRequest,
    session: SessionDep,
    admin: AdminDep,
    dispatcher: DispatcherDep,
    background_tasks: BackgroundTasks,
) -> ApiEnvelope:
    identity = _get_identity(session, identity_id)
    catalog_crud.require_products(session=session, product_ids=body.product_ids)
    data = _grant(
        session=session,
        identity=identity,
        body=body,
        admin=admin,
        dispatcher=dispatcher,
        background_tasks=background_tasks,
    )
    return ApiEnvelope(data=data)


@router.post("/identities/{identity_id}/revoke", response_model=ApiEnvelope)
def revoke_identity(
    identity_id: int,
    body: IdentityRevokeRequest,
    session: SessionDep,
    admin: AdminDep,
    dispatcher: DispatcherDep,
    background_tasks: BackgroundTasks,
) -> ApiEnvelope:
    identity = _get_identity(session, identity_id)
    data = _revoke(
        session=session,
        identity=identity,
        body=body,
        admin=admin,
        dispatcher=dispatcher,
        background_tasks=background_tasks,
    )
    return ApiEnvelope(data=data)


@router.put("/identities/{identity_id}/extend", response_model=ApiEnvelope)
def extend_access(
    identity_id: int,
    body: ExtendAccessRequest,
    session: SessionDep,
    admin: AdminDep,
    dispatcher: DispatcherDep,
    background_tasks: BackgroundTasks,
) -> ApiEnvelope:
    identity = _get_identity(session, identity_id)
    catalog_crud.require_products(session=session, product_ids=body.product_ids)
    result = ledger.set_expiry(
        session=session,
        identity=identity,
        product_ids=body.product_ids,
        expires_at=body.expires_at,
        admin_email=admin,
    )
    session.commit()
    if result.syncs:
        background_tasks.add_task(dispatcher.dispatch, *result.syncs)
    return ApiEnvelope(data=ExtendAccessData(updated=result.updated, expires_at=result.expires_at))


# ============================================================
# 统计与日志
# ============================================================


@router.get("/analytics", response_model=ApiEnvelope)
def read_analytics(session: SessionDep, _: AdminDep) -> ApiEnvelope:
    summary = analytics.summary(session=session)
    return ApiEnvelope(
        data=AnalyticsData(
            total_identities=summary.total_identities,
            total_entitlements=summary.total_entitlements,
            active_entitlements=summary.active_entitlements,
            by_product=summary.by_product,
            by_source=summary.by_source,
            recent_grants=[GrantRowPublic.model_validate(r) for r in summary.recent_grants],
            expiring_soon=[GrantRowPublic.model_validate(r) for r in summary.expiring_soon],
            bundle_claims=[BundleClaimsPublic.model_validate(b) for b in summary.bundle_claims],
        )
    )


@router.get("/logs/audit", response_model=ApiEnvelope)
def audit_logs(
    session: SessionDep,
    _: AdminDep,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    action: str | None = None,
    identity_id: int | None = None,
) -> ApiEnvelope:
    rows, count = logs_crud.list_audit(
        session=session, offset=offset, limit=limit, action=action, identity_id=identity_id
    )
    return ApiEnvelope(
        data=Page(items=[AuditLogPublic.model_validate(r) for r in rows], count=count)
    )


@router.get("/logs/webhooks", response_model=ApiEnvelope)
def webhook_logs(
    session: SessionDep,
    _: AdminDep,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    status: str | None = None,
) -> ApiEnvelope:
    rows, count = logs_crud.list_webhooks(
        session=session, offset=offset, limit=limit, status=status
    )
    return ApiEnvelope(
        data=Page(items=[WebhookLogPublic.model_validate(r) for r in rows], count=count)
    )
