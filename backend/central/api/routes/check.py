"""
访问查询路由

GET /api/v1/check?email=&product=
远端产品登录时调用，只读，不依赖同步推送或支付网关。
"""
from fastapi import APIRouter, Query

from central.api.deps import SessionDep
from central.api.schemas import AccessCheckData, ApiEnvelope
from central.services import access

router = APIRouter(tags=["check"])


@router.get("/check", response_model=ApiEnvelope)
def check(
    session: SessionDep,
    email: str = Query(min_length=1),
    product: str = Query(min_length=1),
) -> ApiEnvelope:
    result = access.check(session=session, email=email, product_id=product)
    return ApiEnvelope(
        data=AccessCheckData(
            has_access=result.has_access,
            product=result.product,
            source=result.source,
            bundle_name=result.bundle_name,
            expires=result.expires,
            granted_at=result.granted_at,
        )
    )
