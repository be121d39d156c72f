"""
autoscaler/telemetry/collector.py
─────────────────────────────────
UtilizationCollector: one metrics-collection cycle per tick().

What this is
─────────────
The only writer of the UtilizationTracker. Each tick():
  1. reads (cpu%, memory%) for every node from the MetricsSource,
  2. records one UtilizationSample per node into the tracker,
  3. garbage-collects tracker entries for nodes no longer in the cluster.

Failure policy
───────────────
Everything here is component-local: a failing metrics read or a hanging
node listing is logged and skipped, never raised. The control loop must
keep reconciling on stale utilisation rather than stop.

The node listing used for GC runs under call_with_timeout(gc_timeout_s),
so a hung metrics backend cannot block the caller. A skipped GC is
harmless: the next tick retries it.

Integration contract
─────────────────────
    collector = UtilizationCollector(metrics_source, tracker)
    collector.tick()              # call every scrape interval
    collector.last_gc_removed     # names dropped by the latest GC
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from autoscaler.shared.deadline import DeadlineExceededError, call_with_timeout
from autoscaler.shared.interfaces import MetricsSource
from autoscaler.shared.models import utcnow
from autoscaler.shared.utilization import UtilizationSample, UtilizationTracker

logger = logging.getLogger(__name__)


class UtilizationCollector:
    def __init__(
        self,
        metrics_source: MetricsSource,
        tracker: UtilizationTracker,
        gc_timeout_s: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._source = metrics_source
        self._tracker = tracker
        self._gc_timeout_s = gc_timeout_s if gc_timeout_s is not None else tracker.config.gc_timeout_s
        self._clock = clock
        self._tick_count: int = 0
        self.last_gc_removed: List[str] = []
        self.gc_failures: int = 0

    # ── Public API ─────────────────────────────────────────────────────────────

    def tick(self) -> int:
        """
        Run one collection cycle. Returns the number of samples recorded.
        """
        self._tick_count += 1
        recorded = self._collect()
        self._garbage_collect()
        return recorded

    # ── Private helpers ────────────────────────────────────────────────────────

    def _collect(self) -> int:
        try:
            readings = self._source.sample_all()
        except Exception as exc:
            logger.warning("Metrics read failed, skipping this cycle: %s", exc)
            return 0

        now = self._clock()
        recorded = 0
        for node_name, (cpu_pct, mem_pct) in readings.items():
            try:
                sample = UtilizationSample(
                    timestamp=now,
                    cpu_pct=_clamp(cpu_pct, 0.0, 100.0),
                    memory_pct=_clamp(mem_pct, 0.0, 100.0),
                )
            except (TypeError, ValueError) as exc:
                logger.warning("Dropping malformed sample for %s: %s", node_name, exc)
                continue
            self._tracker.record(node_name, sample)
            recorded += 1
        return recorded

    def _garbage_collect(self) -> None:
        try:
            live = call_with_timeout(self._source.list_node_names, self._gc_timeout_s)
        except DeadlineExceededError:
            self.gc_failures += 1
            logger.warning(
                "Node listing for utilisation GC timed out after %.1fs; skipping GC",
                self._gc_timeout_s,
            )
            return
        except Exception as exc:
            self.gc_failures += 1
            logger.warning("Node listing for utilisation GC failed; skipping GC: %s", exc)
            return

        self.last_gc_removed = self._tracker.garbage_collect(live)
        if self.last_gc_removed:
            logger.info("Utilisation GC dropped %d departed node(s): %s",
                        len(self.last_gc_removed), ", ".join(self.last_gc_removed))

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def __repr__(self) -> str:
        return (
            f"UtilizationCollector(ticks={self._tick_count}, "
            f"tracked={len(self._tracker)}, gc_timeout={self._gc_timeout_s:.1f}s)"
        )


def _clamp(value: float, lo: float, hi: float) -> float:
    """Clamp value to [lo, hi]."""
    return max(lo, min(hi, float(value)))
