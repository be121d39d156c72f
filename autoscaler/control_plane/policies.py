"""
autoscaler/control_plane/policies.py
────────────────────────────────────
PolicyEngine: time-aware scale-down aggressiveness.

The engine answers three questions for the scale decision path:
  - Which mode applies right now?  (time windows → default mode)
  - What thresholds / observation window / removal cap does it imply?
  - May this particular node be scaled down right now?
    (NodeGroup enable flag, node annotations, allowed-hours annotation)

Time windows match on weekday and hour; end is exclusive and a window whose
end < start wraps past midnight (22 → 2). The first matching window wins.

The allowed-hours annotation ("HH:MM-HH:MM") fails open: a malformed value
is logged and treated as "allowed", since a typo must not pin a node forever.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel, Field

from autoscaler.shared.models import (
    ALLOWED_HOURS_ANNOTATION,
    SCALE_DOWN_ANNOTATION,
    ClusterNode,
    NodeGroup,
    PolicyMode,
    utcnow,
)

logger = logging.getLogger(__name__)

ALL_DAYS = (0, 1, 2, 3, 4, 5, 6)
WEEKDAYS = (0, 1, 2, 3, 4)
WEEKEND = (5, 6)

AGGRESSIVE_THRESHOLD: float = 60.0
AGGRESSIVE_OBSERVATION_S: float = 300.0
CONSERVATIVE_THRESHOLD: float = 40.0
CONSERVATIVE_OBSERVATION_S: float = 1200.0


class TimeWindow(BaseModel):
    """days use datetime.weekday() numbering (Monday = 0)."""
    start_hour: int = Field(..., ge=0, le=24)
    end_hour: int = Field(..., ge=0, le=24)
    days: Tuple[int, ...] = ALL_DAYS
    mode: PolicyMode


class PolicyPreset(str, Enum):
    PRODUCTION = "production"
    DEVELOPMENT = "development"
    COST_SAVING = "cost-saving"


class ScaleDownThresholds(BaseModel):
    cpu_threshold: float
    memory_threshold: float
    observation_window_s: Optional[float] = None  # None: the tracker's own window
    max_nodes: int


def business_hours_window() -> TimeWindow:
    return TimeWindow(start_hour=9, end_hour=17, days=WEEKDAYS, mode=PolicyMode.CONSERVATIVE)


def off_hours_window() -> TimeWindow:
    return TimeWindow(start_hour=18, end_hour=8, days=ALL_DAYS, mode=PolicyMode.AGGRESSIVE)


def weekend_window() -> TimeWindow:
    return TimeWindow(start_hour=0, end_hour=24, days=WEEKEND, mode=PolicyMode.AGGRESSIVE)


class PolicyEngine:
    """
    Usage:
        policies = PolicyEngine()
        policies.apply_preset(PolicyPreset.PRODUCTION)
        t = policies.thresholds(node_group)
        policies.allow_scale_down(node_group, node)
    """

    def __init__(
        self,
        default_mode: PolicyMode = PolicyMode.BALANCED,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.default_mode = default_mode
        self._windows: List[TimeWindow] = []
        self._clock = clock

    # ── Configuration ──────────────────────────────────────────────────────────

    def add_time_window(self, window: TimeWindow) -> None:
        self._windows.append(window)
        logger.info("Policy window added: %02d-%02d days=%s mode=%s",
                    window.start_hour, window.end_hour, window.days, window.mode.value)

    def apply_preset(self, preset: PolicyPreset) -> None:
        self._windows = []
        if preset == PolicyPreset.PRODUCTION:
            self.default_mode = PolicyMode.CONSERVATIVE
            self.add_time_window(business_hours_window())
        elif preset == PolicyPreset.DEVELOPMENT:
            self.default_mode = PolicyMode.BALANCED
        elif preset == PolicyPreset.COST_SAVING:
            self.default_mode = PolicyMode.AGGRESSIVE
            self.add_time_window(off_hours_window())
            self.add_time_window(weekend_window())
        logger.info("Applied policy preset %s (default mode %s)", preset.value, self.default_mode.value)

    # ── Public API ─────────────────────────────────────────────────────────────

    def current_mode(self, now: Optional[datetime] = None) -> PolicyMode:
        now = now or self._clock()
        for window in self._windows:
            if now.weekday() in window.days and _hour_in_window(now.hour, window.start_hour, window.end_hour):
                return window.mode
        return self.default_mode

    def thresholds(self, node_group: NodeGroup, max_nodes_per_scale_down: int = 5,
                   now: Optional[datetime] = None) -> ScaleDownThresholds:
        """
        Scale-down thresholds for the mode in effect.

        BALANCED uses the NodeGroup's own thresholds over the tracker's
        configured observation window; its stabilization window is timed by
        the decision engine, not here.
        """
        policy = node_group.spec.scale_down_policy
        mode = self.current_mode(now)
        if mode == PolicyMode.AGGRESSIVE:
            return ScaleDownThresholds(
                cpu_threshold=AGGRESSIVE_THRESHOLD,
                memory_threshold=AGGRESSIVE_THRESHOLD,
                observation_window_s=AGGRESSIVE_OBSERVATION_S,
                max_nodes=max_nodes_per_scale_down * 2,
            )
        if mode == PolicyMode.CONSERVATIVE:
            return ScaleDownThresholds(
                cpu_threshold=CONSERVATIVE_THRESHOLD,
                memory_threshold=CONSERVATIVE_THRESHOLD,
                observation_window_s=CONSERVATIVE_OBSERVATION_S,
                max_nodes=1,
            )
        if mode == PolicyMode.DISABLED:
            return ScaleDownThresholds(cpu_threshold=0.0, memory_threshold=0.0, max_nodes=0)
        return ScaleDownThresholds(
            cpu_threshold=policy.cpu_threshold,
            memory_threshold=policy.memory_threshold,
            max_nodes=max_nodes_per_scale_down,
        )

    def scale_down_enabled(self, node_group: NodeGroup, now: Optional[datetime] = None) -> bool:
        if not node_group.spec.scale_down_policy.enabled:
            return False
        return self.current_mode(now) != PolicyMode.DISABLED

    def allow_scale_down(self, node_group: NodeGroup, node: ClusterNode,
                         now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        if not self.scale_down_enabled(node_group, now):
            return False
        if node.annotations.get(SCALE_DOWN_ANNOTATION) == "disabled":
            logger.debug("Scale-down disabled by annotation on %s", node.name)
            return False
        hours = node.annotations.get(ALLOWED_HOURS_ANNOTATION)
        if hours is not None and not within_annotated_hours(hours, now):
            logger.debug("Node %s outside allowed scale-down hours %s", node.name, hours)
            return False
        return True

    def __repr__(self) -> str:
        return f"PolicyEngine(default={self.default_mode.value}, windows={len(self._windows)})"


# ── Helpers ────────────────────────────────────────────────────────────────────

def _hour_in_window(hour: int, start: int, end: int) -> bool:
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


def parse_hhmm(value: str) -> Optional[int]:
    """'HH:MM' → minutes since midnight, or None if malformed."""
    parts = value.strip().split(":")
    if len(parts) != 2:
        return None
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return hour * 60 + minute


def minutes_in_range(current: int, start: int, end: int) -> bool:
    """Half-open [start, end) in minutes; wraps past midnight when end < start."""
    if end < start:
        return current >= start or current < end
    return start <= current < end


def within_annotated_hours(value: str, now: datetime) -> bool:
    parts = value.split("-")
    if len(parts) != 2:
        logger.warning("Invalid allowed-hours %r, expected HH:MM-HH:MM; allowing", value)
        return True
    start, end = parse_hhmm(parts[0]), parse_hhmm(parts[1])
    if start is None or end is None:
        logger.warning("Invalid allowed-hours %r; allowing", value)
        return True
    return minutes_in_range(now.hour * 60 + now.minute, start, end)
