"""
Snowflake ID 生成器模块

所有表的 BigInteger 主键都由这里生成（不依赖数据库自增），
这样 ON CONFLICT 插入语句可以在 Python 侧预先带上 id。

ID 结构（64 位）：
- 41 位：时间戳（毫秒，从 2024-01-01 开始）
- 10 位：节点 ID（SNOWFLAKE_NODE_ID，0-1023）
- 12 位：同一毫秒内的序列号
"""
from __future__ import annotations

import threading
import time

from central.core.config import settings

_EPOCH_MS = 1704067200000


class Snowflake:
    """线程安全的 64 位 ID 生成器"""

    def __init__(self, *, node_id: int) -> None:
        if not (0 <= node_id <= 1023):
            raise ValueError("SNOWFLAKE_NODE_ID must be in [0, 1023]")
        self._node_id = node_id
        self._lock = threading.Lock()
        self._last_ts = -1
        self._seq = 0

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    def next_id(self) -> int:
        with self._lock:
            ts = self._now_ms()
            if ts < self._last_ts:
                diff = self._last_ts - ts
                if diff > 5000:
                    raise RuntimeError(
                        f"Clock moved backwards by {diff}ms. "
                        "Refusing to generate IDs to prevent duplicates."
                    )
                ts = self._wait_until(self._last_ts)

            if ts == self._last_ts:
                self._seq = (self._seq + 1) & 0xFFF
                if self._seq == 0:
                    # 序列号溢出，等待下一毫秒
                    ts = self._wait_until(self._last_ts + 1)
            else:
                self._seq = 0

            self._last_ts = ts
            return ((ts - _EPOCH_MS) << 22) | (self._node_id << 12) | self._seq

    @classmethod
    def _wait_until(cls, target_ms: int) -> int:
        ts = cls._now_ms()
        while ts < target_ms:
            time.sleep(0.001)
            ts = cls._now_ms()
        return ts


_GENERATOR: Snowflake | None = None
_GENERATOR_LOCK = threading.Lock()


def generate_id() -> int:
    """生成一个全局唯一 ID（首次调用时按配置创建生成器）"""
    global _GENERATOR
    if _GENERATOR is None:
        with _GENERATOR_LOCK:
            if _GENERATOR is None:
                _GENERATOR = Snowflake(node_id=settings.SNOWFLAKE_NODE_ID)
    return _GENERATOR.next_id()
