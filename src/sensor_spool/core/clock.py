# core/clock.py
from __future__ import annotations

import threading
import time
from datetime import UTC, datetime
from typing import Protocol

SEC_MS = 1000
MIN_MS = 60 * SEC_MS
HOUR_MS = 60 * MIN_MS


def seconds(x: float) -> int:
    return int(x * SEC_MS)


def minutes(x: float) -> int:
    return int(x * MIN_MS)


class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000


class ManualClock:
    """Deterministic clock for tests and replays; only moves when told to."""

    def __init__(self, start_ms: int = 0):
        self._t = int(start_ms)
        self._lock = threading.Lock()

    @classmethod
    def utc(cls, y: int, m: int, d: int, hh=0, mm=0, ss=0) -> ManualClock:
        return cls(int(datetime(y, m, d, hh, mm, ss, tzinfo=UTC).timestamp() * SEC_MS))

    def now_ms(self) -> int:
        with self._lock:
            return self._t

    def advance(self, ms: int) -> int:
        with self._lock:
            self._t += int(ms)
            return self._t


def to_wall(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / SEC_MS, tz=UTC)


def stamp(ms: int) -> str:
    """yyyyMMdd_HHmmss_SSS in UTC, used in segment file names."""
    dt = to_wall(ms)
    return dt.strftime("%Y%m%d_%H%M%S_") + f"{ms % SEC_MS:03d}"


class SampleClock:
    """
    Hands out one shared timestamp per sampling period so that readings of
    different sensors taken in the same cycle line up on the same instant.
    Outside of an active collection it is a pass-through to the base clock.
    """

    def __init__(self, base: Clock | None = None, period_ms: int = 10):
        self.base = base or SystemClock()
        self.period_ms = max(1, int(period_ms))
        self._current = 0
        self._collecting = False
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            self._collecting = True

    def stop(self) -> None:
        with self._lock:
            self._collecting = False
            self._current = 0

    def set_period(self, period_ms: int) -> None:
        with self._lock:
            self.period_ms = max(1, int(period_ms))

    def now_ms(self) -> int:
        now = self.base.now_ms()
        with self._lock:
            if not self._collecting:
                return now
            if self._current == 0 or now - self._current >= self.period_ms:
                self._current = now
            return self._current
