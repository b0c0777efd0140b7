"""
结账入口路由

GET /api/v1/checkout?price_id=
为已知套餐创建 Stripe 托管结账会话并跳转；非永久套餐使用订阅模式。
"""
import logging

from fastapi import APIRouter, Query
from fastapi.responses import RedirectResponse

from central.api.deps import GatewayDep, SessionDep
from central.api.errors import ValidationFailedError
from central.core.config import settings
from central.crud import catalog as catalog_crud
from central.enums import DurationType

logger = logging.getLogger(__name__)

router = APIRouter(tags=["checkout"])


@router.get("/checkout", response_class=RedirectResponse, status_code=303)
def checkout(
    session: SessionDep,
    gateway: GatewayDep,
    price_id: str = Query(min_length=1),
    success_url: str | None = None,
    cancel_url: str | None = None,
) -> RedirectResponse:
    bundle = catalog_crud.get_bundle_by_price(session=session, stripe_price_id=price_id)
    if not bundle or not bundle.is_active:
        raise ValidationFailedError(
            code=400601, message="Invalid price_id - no matching bundle found"
        )

    subscription = DurationType(bundle.duration_type) != DurationType.lifetime
    logger.info(
        "Creating checkout for bundle %s (%s mode)",
        bundle.slug,
        "subscription" if subscription else "payment",
    )
    url = gateway.create_checkout_session(
        price_id=price_id,
        subscription=subscription,
        metadata={
            "bundle_id": str(bundle.id),
            "bundle_name": bundle.name,
            "price_id": price_id,
            "product_ids": ",".join(bundle.product_ids),
        },
        success_url=success_url or settings.CHECKOUT_SUCCESS_URL,
        cancel_url=cancel_url or settings.CHECKOUT_CANCEL_URL,
    )
    return RedirectResponse(url, status_code=303)
