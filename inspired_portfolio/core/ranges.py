from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

DEFAULT_RANGE = "1M"


def _meridiem(dt: datetime) -> tuple[int, str]:
    return (dt.hour % 12 or 12), ("AM" if dt.hour < 12 else "PM")


def time_label(dt: datetime) -> str:
    hour, suffix = _meridiem(dt)
    return f"{hour}:{dt.minute:02d} {suffix}"


def weekday_hour_label(dt: datetime) -> str:
    hour, suffix = _meridiem(dt)
    return f"{dt.strftime('%a')}, {hour} {suffix}"


def month_day_label(dt: datetime) -> str:
    return f"{dt.strftime('%b')} {dt.day}"


def month_year_label(dt: datetime) -> str:
    return f"{dt.strftime('%b')} {dt.year}"


@dataclass(frozen=True)
class RangeConfig:
    interval: str
    limit: int
    step_ms: int
    formatter: Callable[[datetime], str]

    def label(self, timestamp_ms: int) -> str:
        return self.formatter(datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc))


RANGE_CONFIG: MappingProxyType[str, RangeConfig] = MappingProxyType(
    {
        "1Hr": RangeConfig(interval="5m", limit=12, step_ms=5 * MINUTE_MS, formatter=time_label),
        "1D": RangeConfig(interval="1h", limit=24, step_ms=HOUR_MS, formatter=time_label),
        "1W": RangeConfig(interval="4h", limit=42, step_ms=4 * HOUR_MS, formatter=weekday_hour_label),
        "1M": RangeConfig(interval="1d", limit=30, step_ms=DAY_MS, formatter=month_day_label),
        "1Y": RangeConfig(interval="1w", limit=52, step_ms=7 * DAY_MS, formatter=month_year_label),
    }
)
