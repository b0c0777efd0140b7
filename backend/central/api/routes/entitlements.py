"""
授权查询与产品上报路由

- GET /api/v1/entitlements?email=: 所有产品的访问情况
- POST /api/v1/entitlements/report: 产品上报直售订阅（X-Admin-Api-Key）
- GET /api/v1/entitlements/report: 上报接口说明
"""
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from central.api.deps import DispatcherDep, SessionDep, require_api_key
from central.api.schemas import (
    ApiEnvelope,
    EntitlementReportData,
    EntitlementReportRequest,
    EntitlementsData,
    ProductAccessData,
)
from central.core.security import API_KEY_HEADER
from central.models import normalize_email
from central.services import access, reporter

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


@router.get("", response_model=ApiEnvelope)
def list_entitlements(session: SessionDep, email: str = Query(min_length=1)) -> ApiEnvelope:
    products = access.list_entitlements(session=session, email=email)
    return ApiEnvelope(
        data=EntitlementsData(
            email=normalize_email(email),
            products=[
                ProductAccessData(
                    id=p.id,
                    name=p.name,
                    has_access=p.has_access,
                    source=p.source,
                    expires=p.expires,
                )
                for p in products
            ],
        )
    )


@router.post("/report", response_model=ApiEnvelope, dependencies=[Depends(require_api_key)])
def report(
    body: EntitlementReportRequest,
    session: SessionDep,
    dispatcher: DispatcherDep,
    background_tasks: BackgroundTasks,
) -> ApiEnvelope:
    result = reporter.report(
        session=session,
        email=body.email,
        product_id=body.product_id,
        action=body.action,
        source_app=body.source_app,
        stripe_subscription_id=body.stripe_subscription_id,
        stripe_price_id=body.stripe_price_id,
        amount_paid=body.amount_paid,
        currency=body.currency,
        expires_at=body.expires_at,
        reason=body.reason,
    )
    if result.sync:
        background_tasks.add_task(dispatcher.dispatch, result.sync)

    return ApiEnvelope(
        data=EntitlementReportData(
            success=result.success,
            action=result.action.value,
            email=normalize_email(body.email or ""),
            product_id=body.product_id or "",
            identity_id=result.identity_id,
            expires_at=result.expires_at,
            revoked=result.revoked,
            timestamp=datetime.now(timezone.utc),
        )
    )


@router.get("/report", response_model=ApiEnvelope)
def report_description() -> ApiEnvelope:
    description: dict[str, Any] = {
        "endpoint": "/api/v1/entitlements/report",
        "method": "POST",
        "description": "Report subscription changes from external apps",
        "authentication": f"{API_KEY_HEADER} header required",
        "body": {
            "email": "string (required)",
            "productId": "string (required) - a known product id",
            "action": '"grant" | "revoke" (required)',
            "sourceApp": "string (required) - id of the reporting product",
            "stripeSubscriptionId": "string (optional)",
            "stripePriceId": "string (optional)",
            "amountPaid": "number in cents (optional)",
            "currency": 'string like "cad" or "usd" (optional)',
            "expiresAt": "ISO date string (optional)",
            "reason": "string for revocations (optional)",
        },
        "examples": {
            "grant": {
                "email": "user@example.com",
                "productId": "rezume",
                "action": "grant",
                "sourceApp": "rezume",
                "stripeSubscriptionId": "sub_xxx",
                "stripePriceId": "price_xxx",
                "amountPaid": 1999,
                "currency": "cad",
            },
            "revoke": {
                "email": "user@example.com",
                "productId": "rezume",
                "action": "revoke",
                "sourceApp": "rezume",
                "stripeSubscriptionId": "sub_xxx",
                "reason": "Subscription canceled",
            },
        },
    }
    return ApiEnvelope(data=description)
