"""
表单提交转发

领取激活后，把产品表单提交 POST 到产品配置的 form_webhook_url
（例如自动化平台的 webhook）。只有 2xx 响应才标记 forwarded=True；
失败时记录响应/错误，保持未转发状态，由定时任务重试。

外部表单平台也可以把提交推送进来（record_inbound），按邮箱关联到身份。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx
from sqlmodel import Session, select

from central.api.errors import missing_field
from central.core import db
from central.crud import identity as identity_crud
from central.crud.logs import add_audit
from central.enums import AuditAction
from central.models import Identity, Product, ProductSubmission, normalize_email, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ForwardResult:
    submission_id: int
    product_id: str
    success: bool
    status_code: int | None = None
    error: str | None = None


class SubmissionForwarder:
    """表单提交转发器"""

    def __init__(
        self, *, timeout: float = 30.0, transport: httpx.BaseTransport | None = None
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    def forward_ids(self, submission_ids: list[int]) -> list[ForwardResult]:
        """
        转发指定的提交（后台任务入口，使用独立会话）
        """
        if not submission_ids:
            return []
        with Session(db.engine) as session:
            pending = session.exec(
                select(ProductSubmission).where(
                    ProductSubmission.id.in_(submission_ids),
                    ProductSubmission.forwarded.is_(False),
                )
            ).all()
            return self._forward_all(session, list(pending))

    def forward_pending(self, session: Session, *, limit: int = 100) -> list[ForwardResult]:
        """重试所有尚未成功转发、且产品配置了转发地址的提交"""
        pending = session.exec(
            select(ProductSubmission)
            .join(Product, Product.id == ProductSubmission.product_id)
            .where(
                ProductSubmission.forwarded.is_(False),
                Product.form_webhook_url.is_not(None),
            )
            .order_by(ProductSubmission.created_at)
            .limit(limit)
        ).all()
        return self._forward_all(session, list(pending))

    def _forward_all(
        self, session: Session, submissions: list[ProductSubmission]
    ) -> list[ForwardResult]:
        results: list[ForwardResult] = []
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            for submission in submissions:
                product = session.get(Product, submission.product_id)
                identity = session.get(Identity, submission.identity_id)
                if not product or not product.form_webhook_url or not identity:
                    continue
                results.append(self._forward_one(client, session, submission, product, identity))
                session.commit()
        if results:
            succeeded = sum(1 for r in results if r.success)
            logger.info(
                "Forwarded %d submission(s): %d succeeded, %d failed",
                len(results),
                succeeded,
                len(results) - succeeded,
            )
        return results

    def _forward_one(
        self,
        client: httpx.Client,
        session: Session,
        submission: ProductSubmission,
        product: Product,
        identity: Identity,
    ) -> ForwardResult:
        bindings = identity_crud.emails_for(session=session, identity_id=identity.id)
        payload = {
            **submission.form_data,
            "email": identity_crud.email_for_product(
                identity=identity, bindings=bindings, product_id=product.id
            ),
            "source": "bundle",
            "identityId": str(identity.id),
            "primaryEmail": identity.primary_email,
            "productId": product.id,
            "timestamp": utc_now().isoformat(),
        }
        try:
            response = client.post(product.form_webhook_url, json=payload)
        except httpx.HTTPError as e:
            logger.error("Error forwarding submission %s to %s: %s", submission.id, product.id, e)
            submission.forward_response = {"error": str(e) or type(e).__name__}
            session.add(submission)
            return ForwardResult(
                submission_id=submission.id,
                product_id=product.id,
                success=False,
                error=str(e) or type(e).__name__,
            )

        submission.forward_response = {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "body": response.text[:2000],
        }
        submission.forwarded = response.is_success
        session.add(submission)
        if not response.is_success:
            logger.error(
                "Forwarding submission %s to %s failed: HTTP %s",
                submission.id,
                product.id,
                response.status_code,
            )
        return ForwardResult(
            submission_id=submission.id,
            product_id=product.id,
            success=response.is_success,
            status_code=response.status_code,
        )


def inbound_email(payload: dict[str, Any]) -> str | None:
    """表单平台的邮箱字段名大小写不统一"""
    for key in ("email", "Email", "EMAIL"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return normalize_email(value)
    return None


def record_inbound(
    *, session: Session, product: Product, payload: dict[str, Any]
) -> tuple[ProductSubmission, Identity]:
    """
    保存外部表单平台推送的提交，并关联到身份

    身份查找顺序：该产品的邮箱绑定 -> 主邮箱；都没有则按邮箱创建身份，
    以后购买时会关联到同一身份。提交内容来自外部平台，标记为已转发，
    不会被重试任务再发回去。
    """
    email = inbound_email(payload)
    if not email:
        logger.warning("Inbound submission for %s without email: %s", product.id, sorted(payload))
        raise missing_field("email")

    identity = identity_crud.resolve(session=session, email=email, product_id=product.id)
    if identity is None:
        identity = identity_crud.get_or_create(session=session, email=email)
        logger.info("Created identity %s for inbound submission from %s", identity.id, email)

    submission = ProductSubmission(
        identity_id=identity.id,
        product_id=product.id,
        form_data=payload,
        forwarded=True,
    )
    session.add(submission)
    add_audit(
        session=session,
        action=AuditAction.submission_received,
        identity_id=identity.id,
        product_ids=[product.id],
        details={
            "email": email,
            "submissionId": str(submission.id),
            "formFields": sorted(payload),
        },
    )
    session.commit()
    session.refresh(submission)
    logger.info("Stored inbound submission %s for %s (%s)", submission.id, email, product.id)
    return submission, identity
