"""
Webhook 路由（支付网关、外部表单平台）

POST /api/v1/webhooks/stripe
- 校验 Stripe-Signature（原始请求体）
- 同一事件 ID 只处理一次，重投返回 duplicate=true
- 同步推送与邮件在响应返回后以后台任务执行

POST /api/v1/webhooks/submissions/{product_id}
- 外部表单平台推送的提交（X-Admin-Api-Key），按邮箱关联到身份
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from central.api.deps import (
    DispatcherDep,
    EmailSenderDep,
    GatewayDep,
    SessionDep,
    require_api_key,
)
from central.api.errors import AppError
from central.api.schemas import ApiEnvelope, InboundSubmissionData, WebhookAckData
from central.core.security import API_KEY_HEADER
from central.crud import catalog as catalog_crud
from central.services import stripe_service, submissions

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=ApiEnvelope)
async def stripe_webhook(
    request: Request,
    session: SessionDep,
    gateway: GatewayDep,
    dispatcher: DispatcherDep,
    email_sender: EmailSenderDep,
    background_tasks: BackgroundTasks,
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> ApiEnvelope:
    payload = await request.body()
    event = gateway.verify_event(payload, stripe_signature)

    try:
        result = await run_in_threadpool(
            stripe_service.process_event, session=session, gateway=gateway, event=event
        )
    except AppError:
        raise
    except Exception as e:
        # 返回 5xx 让网关重投；失败状态已写入 webhook_logs
        raise AppError(code=500101, message=f"Processing error: {e}", status_code=500) from e

    if result.syncs:
        background_tasks.add_task(dispatcher.dispatch, *result.syncs)
    for job in result.emails:
        background_tasks.add_task(job.send, email_sender)

    return ApiEnvelope(
        data=WebhookAckData(
            duplicate=result.duplicate,
            handled=result.handled,
            details=result.details,
        )
    )


@router.post(
    "/submissions/{product_id}",
    response_model=ApiEnvelope,
    dependencies=[Depends(require_api_key)],
)
def inbound_submission(
    product_id: str, payload: dict[str, Any], session: SessionDep
) -> ApiEnvelope:
    product = catalog_crud.get_product(session=session, product_id=product_id)
    submission, identity = submissions.record_inbound(
        session=session, product=product, payload=payload
    )
    return ApiEnvelope(
        data=InboundSubmissionData(
            submission_id=submission.id,
            identity_id=identity.id,
            product_id=product.id,
            email=submissions.inbound_email(payload) or identity.primary_email,
        )
    )


@router.get("/submissions/{product_id}", response_model=ApiEnvelope)
def inbound_submission_description(product_id: str) -> ApiEnvelope:
    return ApiEnvelope(
        data={
            "status": "ok",
            "endpoint": f"/api/v1/webhooks/submissions/{product_id}",
            "method": "POST",
            "authentication": f"{API_KEY_HEADER} header required",
            "usage": "POST form data as JSON with an email field",
            "timestamp": datetime.now(timezone.utc),
        }
    )
