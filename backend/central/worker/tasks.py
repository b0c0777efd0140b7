"""
定时任务逻辑
"""

import logging
from uuid import uuid4

import redis
from sqlmodel import Session

from central.core import db
from central.core.config import settings
from central.core.redis import acquire_lock, get_redis, release_lock
from central.services.submissions import ForwardResult, SubmissionForwarder

logger = logging.getLogger(__name__)

FORWARD_LOCK_KEY = "submissions:forward:lock"
FORWARD_LOCK_TTL_SECONDS = 60 * 10


def retry_pending_submissions(
    *,
    redis_client: redis.Redis | None = None,
    forwarder: SubmissionForwarder | None = None,
) -> list[ForwardResult]:
    """
    重新转发所有尚未成功转发的表单提交

    通过 Redis 锁保证多个 worker 同时运行时只有一个在执行。
    """
    redis_client = redis_client or get_redis()
    forwarder = forwarder or SubmissionForwarder(timeout=settings.FORWARD_TIMEOUT_SECONDS)

    lock_value = str(uuid4())
    try:
        acquired = acquire_lock(
            redis_client, FORWARD_LOCK_KEY, lock_value, FORWARD_LOCK_TTL_SECONDS
        )
    except redis.RedisError as e:
        logger.error("Failed to acquire forward lock: %s", e)
        return []
    if not acquired:
        logger.info("Submission forward task already running, skip this run.")
        return []

    try:
        with Session(db.engine) as session:
            results = forwarder.forward_pending(session)
        if not results:
            logger.info("No pending submissions to forward.")
        return results
    finally:
        release_lock(redis_client, FORWARD_LOCK_KEY, lock_value)
