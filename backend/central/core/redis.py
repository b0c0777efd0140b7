"""
Redis 连接模块

只用于定时任务的分布式锁：多个 worker 实例同时运行时，同一任务同一时刻只执行一次。
"""
from __future__ import annotations

import logging
from functools import lru_cache

import redis

from central.core.config import settings

logger = logging.getLogger(__name__)

# 只有锁的持有者才能释放（比较值后删除，保证原子性）
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


@lru_cache(maxsize=1)
def get_redis() -> redis.Redis:
    """获取 Redis 客户端实例（单例）"""
    return redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
    )


def acquire_lock(client: redis.Redis, key: str, value: str, expire_seconds: int) -> bool:
    """SET NX EX 获取锁"""
    return bool(client.set(key, value, ex=expire_seconds, nx=True))


def release_lock(client: redis.Redis, key: str, value: str) -> bool:
    try:
        return client.eval(_RELEASE_SCRIPT, 1, key, value) == 1
    except redis.RedisError as e:
        logger.error("Failed to release lock %s: %s", key, e)
        return False
