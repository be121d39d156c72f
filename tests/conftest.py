"""
tests/conftest.py
─────────────────
Shared fixtures.

FakeClock drives every time source the engines accept (wall clock,
monotonic clock, sleep) from one counter, so timeouts, cooldowns and
stabilization windows are exercised without real waiting. sleep()
advances both clocks and records the requested duration.

The start instant is a Wednesday, 10:00 UTC.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

START = datetime(2026, 3, 4, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self._lock = threading.Lock()
        self._now = start
        self._mono = 1000.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._mono

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += timedelta(seconds=seconds)
            self._mono += seconds

    def set(self, when: datetime) -> None:
        with self._lock:
            self._mono += (when - self._now).total_seconds()
            self._now = when


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
