"""
领取页面路由

- GET /api/v1/claim/{token}: 令牌状态、套餐产品列表与表单定义
- POST /api/v1/claim/{token}/activate: 提交各产品邮箱/表单并激活
"""
from fastapi import APIRouter, BackgroundTasks

from central.api.deps import DispatcherDep, ForwarderDep, SessionDep
from central.api.schemas import (
    ActivatedProductData,
    ApiEnvelope,
    ClaimActivateData,
    ClaimActivateRequest,
    ClaimBundleInfo,
    ClaimProductInfo,
    ClaimStatusData,
)
from central.models import ensure_utc
from central.services import claims

router = APIRouter(prefix="/claim", tags=["claim"])


@router.get("/{token}", response_model=ApiEnvelope)
def claim_status(token: str, session: SessionDep) -> ApiEnvelope:
    status = claims.inspect(session=session, token=token)
    if not status.valid or status.token is None or status.bundle is None:
        return ApiEnvelope(data=ClaimStatusData(valid=False, error=status.error))

    return ApiEnvelope(
        data=ClaimStatusData(
            valid=True,
            bundle=ClaimBundleInfo(
                name=status.bundle.name,
                products=[
                    ClaimProductInfo(id=p.id, name=p.name, form_schema=p.form_schema or None)
                    for p in status.products
                ],
            ),
            purchase_email=status.token.purchase_email,
            expires_at=ensure_utc(status.token.expires_at),
        )
    )


@router.post("/{token}/activate", response_model=ApiEnvelope)
def activate(
    token: str,
    body: ClaimActivateRequest,
    session: SessionDep,
    dispatcher: DispatcherDep,
    forwarder: ForwarderDep,
    background_tasks: BackgroundTasks,
) -> ApiEnvelope:
    result = claims.activate(
        session=session,
        token=token,
        products={
            product_id: claims.ProductClaimData(email=data.email, form_data=data.form_data)
            for product_id, data in body.products.items()
        },
    )
    if result.sync:
        background_tasks.add_task(dispatcher.dispatch, result.sync)
    if result.submission_ids:
        background_tasks.add_task(forwarder.forward_ids, result.submission_ids)

    return ApiEnvelope(
        data=ClaimActivateData(
            activated=[
                ActivatedProductData(product=a.product, email=a.email, status=a.status)
                for a in result.activated
            ]
        )
    )
