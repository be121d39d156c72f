"""
autoscaler/shared/utilization.py
────────────────────────────────
UtilizationTracker: bounded per-node CPU/memory history.

Why this is separate from models.py
-----------------------------------
models.py describes the cluster *right now*. This module holds what the
control loop has *observed over time*, which is what scale-down and
rebalance decisions are made on.

Concurrency
-----------
The tracker is the one structure written by one thread (the metrics
collector) while other threads read it (decision engine, analyzer).
  - Every public method takes the same lock.
  - Internal windows store plain tuples; reads build fresh pydantic objects
    from them, so callers never hold a reference into tracked history.
  - garbage_collect() is the single place entries are deleted. The
    collector calls it once per collection cycle.

Underutilization verdict
------------------------
A node is underutilized only when ALL of:
  1. it has ≥ min_samples samples inside the observation window
     (new nodes get no verdict; prevents acting on a cold start),
  2. its latest sample is newer than stale_after_s,
  3. average CPU < cpu threshold AND average memory < memory threshold,
  4. ≥ underutilized_sample_ratio of in-window samples are individually
     below both thresholds (a spiky node with a low mean is not "idle").
"""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field

from autoscaler.shared.config import TrackerConfig
from autoscaler.shared.models import utcnow

_Row = Tuple[datetime, float, float]


class UtilizationSample(BaseModel):
    """One (cpu%, memory%) reading for one node."""
    timestamp: datetime = Field(default_factory=utcnow)
    cpu_pct: float = Field(..., ge=0, le=100)
    memory_pct: float = Field(..., ge=0, le=100)


class NodeUtilization(BaseModel):
    """
    Copy-out view of one node's window.

    Fields:
        samples    → oldest first, already restricted to the observation window.
        cpu_avg    → mean cpu_pct over `samples` (0.0 when empty).
        memory_avg → mean memory_pct over `samples`.
    """
    node_name: str
    samples: List[UtilizationSample] = Field(default_factory=list)
    cpu_avg: float = 0.0
    memory_avg: float = 0.0
    last_updated: Optional[datetime] = None

    @property
    def combined_avg(self) -> float:
        return (self.cpu_avg + self.memory_avg) / 2.0


class UtilizationTracker:
    """
    Thread-safe arena of per-node sample windows keyed by node name.

    Usage:
        tracker = UtilizationTracker()
        tracker.record("node-a", UtilizationSample(cpu_pct=12.0, memory_pct=30.0))
        tracker.underutilized("node-a", 50.0, 50.0)   # False until min_samples
        tracker.garbage_collect({"node-a", "node-b"})
    """

    def __init__(
        self,
        config: Optional[TrackerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or TrackerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Deque[_Row]] = {}

    # ── Public API ─────────────────────────────────────────────────────────────

    def record(self, node_name: str, sample: UtilizationSample) -> None:
        row = (sample.timestamp, float(sample.cpu_pct), float(sample.memory_pct))
        with self._lock:
            window = self._windows.get(node_name)
            if window is None:
                window = deque(maxlen=self.config.max_samples_per_node)
                self._windows[node_name] = window
            window.append(row)
            self._prune(window)

    def underutilized(
        self,
        node_name: str,
        cpu_threshold: float,
        memory_threshold: float,
        observation_window_s: Optional[float] = None,
    ) -> bool:
        """
        Verdict for one node against thresholds (percent).

        observation_window_s overrides the configured window (policy modes
        use shorter or longer windows). Insufficient data ⇒ False.
        """
        with self._lock:
            rows = self._in_window(node_name, observation_window_s)
        if len(rows) < self.config.min_samples:
            return False

        now = self._clock()
        if (now - rows[-1][0]).total_seconds() > self.config.stale_after_s:
            return False

        values = np.array([(r[1], r[2]) for r in rows], dtype=np.float64)
        cpu_avg, mem_avg = values.mean(axis=0)
        if cpu_avg >= cpu_threshold or mem_avg >= memory_threshold:
            return False

        below = (values[:, 0] < cpu_threshold) & (values[:, 1] < memory_threshold)
        return float(below.mean()) >= self.config.underutilized_sample_ratio

    def underutilized_nodes(
        self,
        cpu_threshold: float,
        memory_threshold: float,
        observation_window_s: Optional[float] = None,
    ) -> List[str]:
        return [
            name for name in self.tracked_nodes()
            if self.underutilized(name, cpu_threshold, memory_threshold, observation_window_s)
        ]

    def snapshot(self, node_name: str) -> Optional[NodeUtilization]:
        """Deep copy of one node's in-window history. None if never seen."""
        with self._lock:
            if node_name not in self._windows:
                return None
            rows = self._in_window(node_name, None)
        return _to_view(node_name, rows)

    def average(self, node_name: str) -> Optional[Tuple[float, float]]:
        view = self.snapshot(node_name)
        if view is None or not view.samples:
            return None
        return view.cpu_avg, view.memory_avg

    def garbage_collect(self, live_nodes: Iterable[str]) -> List[str]:
        """
        Drop windows for nodes not in live_nodes. Returns the removed names.

        The only deletion point; call once per collection cycle.
        """
        live = set(live_nodes)
        with self._lock:
            removed = [name for name in self._windows if name not in live]
            for name in removed:
                del self._windows[name]
        return removed

    def tracked_nodes(self) -> List[str]:
        with self._lock:
            return sorted(self._windows)

    # ── Private helpers ────────────────────────────────────────────────────────

    def _in_window(self, node_name: str, window_s: Optional[float]) -> List[_Row]:
        """Caller holds the lock. Returns a new list of (immutable) rows."""
        window = self._windows.get(node_name)
        if not window:
            return []
        span = window_s if window_s is not None else self.config.observation_window_s
        cutoff = self._clock() - timedelta(seconds=span)
        return [row for row in window if row[0] >= cutoff]

    def _prune(self, window: Deque[_Row]) -> None:
        """Caller holds the lock. Drop rows older than the observation window."""
        cutoff = self._clock() - timedelta(seconds=self.config.observation_window_s)
        while window and window[0][0] < cutoff:
            window.popleft()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def __repr__(self) -> str:
        return (
            f"UtilizationTracker(nodes={len(self)}, "
            f"max_samples={self.config.max_samples_per_node}, "
            f"window={self.config.observation_window_s:.0f}s)"
        )


def _to_view(node_name: str, rows: List[_Row]) -> NodeUtilization:
    samples = [UtilizationSample(timestamp=ts, cpu_pct=c, memory_pct=m) for ts, c, m in rows]
    if not rows:
        return NodeUtilization(node_name=node_name)
    values = np.array([(r[1], r[2]) for r in rows], dtype=np.float64)
    cpu_avg, mem_avg = values.mean(axis=0)
    return NodeUtilization(
        node_name=node_name,
        samples=samples,
        cpu_avg=float(cpu_avg),
        memory_avg=float(mem_avg),
        last_updated=rows[-1][0],
    )
