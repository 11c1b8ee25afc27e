"""Clock capability injected into capture and run bookkeeping."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

DEFAULT_FIXED_INSTANT = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class Clock(Protocol):
    def now(self) -> datetime: ...


class FixedClock:
    """Always reports the same instant. Used for page rendering and in tests."""

    def __init__(self, instant: datetime = DEFAULT_FIXED_INSTANT):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self.instant = instant

    def now(self) -> datetime:
        return self.instant

    @property
    def epoch_ms(self) -> int:
        return int(self.instant.timestamp() * 1000)


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def iso_timestamp(clock: Clock) -> str:
    return clock.now().strftime("%Y-%m-%dT%H:%M:%SZ")
