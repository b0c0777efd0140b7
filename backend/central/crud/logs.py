"""审计日志与 Webhook 日志 CRUD 操作"""
from typing import Any

from sqlmodel import Session, func, select

from central.core.db import insert_for
from central.core.snowflake import generate_id
from central.enums import AuditAction, WebhookStatus
from central.models import AuditLog, WebhookLog, utc_now


def add_audit(
    *,
    session: Session,
    action: AuditAction,
    identity_id: int | None,
    product_ids: list[str],
    details: dict[str, Any] | None = None,
    admin_email: str | None = None,
) -> AuditLog:
    """追加一条审计日志（不提交）"""
    entry = AuditLog(
        action=action.value,
        identity_id=identity_id,
        product_ids=list(product_ids),
        admin_email=admin_email,
        details=details,
    )
    session.add(entry)
    return entry


def claim_webhook_event(
    *, session: Session, event_id: str, event_type: str, payload: dict[str, Any] | None
) -> bool:
    """
    占用一个 webhook 事件

    新事件插入 processing 行；已存在的行只有上次处理失败时才会被重新占用。
    返回 False 表示该事件已处理过（或正在被另一请求处理），调用方应直接返回。
    与账本变更处于同一事务中，处理失败回滚时占用一并撤销。
    """
    now = utc_now()
    stmt = insert_for(session, WebhookLog).values(
        id=generate_id(),
        event_id=event_id,
        event_type=event_type,
        payload=payload,
        status=WebhookStatus.processing.value,
        created_at=now,
        updated_at=now,
    )
    table = WebhookLog.__table__
    stmt = stmt.on_conflict_do_update(
        index_elements=["event_id"],
        set_={
            "status": WebhookStatus.processing.value,
            "error_message": None,
            "updated_at": now,
        },
        where=table.c.status == WebhookStatus.failed.value,
    )
    result = session.exec(stmt)
    return result.rowcount == 1


def finish_webhook_event(
    *,
    session: Session,
    event_id: str,
    event_type: str,
    payload: dict[str, Any] | None,
    status: WebhookStatus,
    error_message: str | None = None,
) -> None:
    """写入事件最终状态（按 event_id 插入或更新，始终只有一行）"""
    now = utc_now()
    stmt = insert_for(session, WebhookLog).values(
        id=generate_id(),
        event_id=event_id,
        event_type=event_type,
        payload=payload,
        status=status.value,
        error_message=error_message,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["event_id"],
        set_={"status": status.value, "error_message": error_message, "updated_at": now},
    )
    session.exec(stmt)


def get_webhook_event(*, session: Session, event_id: str) -> WebhookLog | None:
    return session.exec(select(WebhookLog).where(WebhookLog.event_id == event_id)).first()


def list_audit(
    *,
    session: Session,
    offset: int,
    limit: int,
    action: str | None = None,
    identity_id: int | None = None,
) -> tuple[list[AuditLog], int]:
    """分页查询审计日志（按时间倒序）"""
    filters = []
    if action:
        filters.append(AuditLog.action == action)
    if identity_id is not None:
        filters.append(AuditLog.identity_id == identity_id)

    count = session.exec(select(func.count()).select_from(AuditLog).where(*filters)).one()
    rows = session.exec(
        select(AuditLog)
        .where(*filters)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return list(rows), count


def list_webhooks(
    *, session: Session, offset: int, limit: int, status: str | None = None
) -> tuple[list[WebhookLog], int]:
    """分页查询 webhook 日志（按时间倒序）"""
    filters = [WebhookLog.status == status] if status else []
    count = session.exec(select(func.count()).select_from(WebhookLog).where(*filters)).one()
    rows = session.exec(
        select(WebhookLog)
        .where(*filters)
        .order_by(WebhookLog.created_at.desc(), WebhookLog.id.desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return list(rows), count
