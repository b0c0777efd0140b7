"""
授权时长计算

月、年的加法按日历计算（relativedelta 会把日期截到目标月份的最后一天）：
- 1 月 31 日 + 1 个月 -> 2 月 28/29 日
- 2 月 29 日 + 1 年 -> 次年 2 月 28 日
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from central.enums import DurationType
from central.models.base import ensure_utc, utc_now


@dataclass(frozen=True)
class Duration:
    """授权时长策略：类型 + 数值（fixed 类型使用 until）"""

    type: DurationType = DurationType.lifetime
    value: int | None = None
    until: datetime | None = None

    @classmethod
    def lifetime(cls) -> Duration:
        return cls(DurationType.lifetime)

    @classmethod
    def fixed(cls, until: datetime | None) -> Duration:
        """上报方给出的绝对到期时间；None 表示永久"""
        if until is None:
            return cls.lifetime()
        return cls(DurationType.fixed, until=ensure_utc(until))

    @classmethod
    def of(cls, duration_type: str | DurationType, value: int | None) -> Duration:
        return cls(DurationType(duration_type), value)

    def expires_at(self, now: datetime | None = None) -> datetime | None:
        return compute_expiry(self, now=now)


def compute_expiry(duration: Duration, now: datetime | None = None) -> datetime | None:
    """
    根据时长策略计算到期时间

    Args:
        duration: 时长策略
        now: 起算时间（默认当前 UTC 时间）

    Returns:
        到期时间；永久授权返回 None
    """
    if duration.type == DurationType.fixed:
        return duration.until
    # 数值为空或 0 时按永久处理
    if duration.type == DurationType.lifetime or not duration.value:
        return None
    if duration.value < 0:
        raise ValueError(f"Duration value must be positive, got {duration.value}")

    start = ensure_utc(now) if now is not None else utc_now()
    if duration.type == DurationType.days:
        return start + timedelta(days=duration.value)
    if duration.type == DurationType.months:
        return start + relativedelta(months=duration.value)
    if duration.type == DurationType.years:
        return start + relativedelta(years=duration.value)
    raise ValueError(f"Unknown duration type: {duration.type}")
