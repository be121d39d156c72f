"""
tests/test_collector.py
───────────────────────
UtilizationCollector + SimulatedMetricsSource + EventRecorder.

Test groups:
    Group 1 — Collection cycle (5 tests)
    Group 2 — Garbage collection and its timeout (3 tests)
    Group 3 — EventRecorder (3 tests)

Total: 11 tests
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Tuple

import pytest

from autoscaler.shared.config import TrackerConfig
from autoscaler.shared.models import ClusterNode
from autoscaler.shared.utilization import UtilizationTracker
from autoscaler.simulation import InMemoryCluster, SimulatedMetricsSource
from autoscaler.telemetry import EventRecorder, UtilizationCollector
from autoscaler.telemetry import events as ev


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_cluster(*names: str) -> InMemoryCluster:
    return InMemoryCluster(nodes=[ClusterNode(name=n) for n in names])


class _FixedSource:
    """Returns canned readings; node listing mirrors the readings."""

    def __init__(self, readings: Dict[str, Tuple[object, object]]) -> None:
        self.readings = readings

    def sample_all(self) -> Dict[str, Tuple[object, object]]:
        return dict(self.readings)

    def list_node_names(self) -> List[str]:
        return list(self.readings)


@pytest.fixture
def tracker(clock) -> UtilizationTracker:
    return UtilizationTracker(TrackerConfig(), clock=clock.now)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — Collection cycle
# ─────────────────────────────────────────────────────────────────────────────

class TestCollect:
    def test_tick_records_one_sample_per_node(self, clock, tracker):
        cluster = _make_cluster("node-a", "node-b")
        source = SimulatedMetricsSource(cluster, noise_std=0.0)
        source.set_baseline("node-a", cpu=12.0, memory=18.0)
        collector = UtilizationCollector(source, tracker, clock=clock.now)

        assert collector.tick() == 2
        assert collector.tick_count == 1
        assert tracker.average("node-a") == (pytest.approx(12.0), pytest.approx(18.0))
        assert tracker.average("node-b") == (pytest.approx(40.0), pytest.approx(50.0)), "default baseline"

    def test_failed_read_skips_cycle(self, clock, tracker):
        """A metrics outage is logged, never raised."""
        source = SimulatedMetricsSource(_make_cluster("node-a"), noise_std=0.0)
        source.fail_reads = True
        collector = UtilizationCollector(source, tracker, clock=clock.now)
        assert collector.tick() == 0
        assert tracker.tracked_nodes() == []

    def test_out_of_range_readings_are_clamped(self, clock, tracker):
        collector = UtilizationCollector(_FixedSource({"node-a": (150.0, -5.0)}), tracker, clock=clock.now)
        collector.tick()
        view = tracker.snapshot("node-a")
        assert view.samples[0].cpu_pct == 100.0
        assert view.samples[0].memory_pct == 0.0

    def test_malformed_reading_is_dropped(self, clock, tracker):
        source = _FixedSource({"node-a": ("n/a", 10.0), "node-b": (20.0, 30.0)})
        collector = UtilizationCollector(source, tracker, clock=clock.now)
        assert collector.tick() == 1
        assert tracker.tracked_nodes() == ["node-b"]

    def test_noise_is_seeded_and_bounded(self, clock):
        """Two sources with the same seed produce the same readings, all within 0-100."""
        cluster = _make_cluster("node-a", "node-b", "node-c")
        first = SimulatedMetricsSource(cluster, noise_std=30.0, seed=3).sample_all()
        second = SimulatedMetricsSource(cluster, noise_std=30.0, seed=3).sample_all()
        assert first == second
        for cpu, mem in first.values():
            assert 0.0 <= cpu <= 100.0 and 0.0 <= mem <= 100.0


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Garbage collection and its timeout
# ─────────────────────────────────────────────────────────────────────────────

class TestGarbageCollection:
    def test_departed_node_is_dropped(self, clock, tracker):
        cluster = _make_cluster("node-a", "node-b")
        collector = UtilizationCollector(SimulatedMetricsSource(cluster, noise_std=0.0), tracker, clock=clock.now)
        collector.tick()
        cluster.remove_node("node-b")
        collector.tick()
        assert collector.last_gc_removed == ["node-b"]
        assert tracker.tracked_nodes() == ["node-a"]

    def test_hung_listing_times_out_without_blocking(self, clock, tracker):
        """A hanging metrics backend costs at most gc_timeout_s; GC is skipped, not fatal."""
        cluster = _make_cluster("node-a", "node-b")
        source = SimulatedMetricsSource(cluster, noise_std=0.0)
        collector = UtilizationCollector(source, tracker, gc_timeout_s=0.05, clock=clock.now)
        collector.tick()
        cluster.remove_node("node-b")

        release = threading.Event()
        source.hang(release)
        try:
            started = time.monotonic()
            recorded = collector.tick()
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert recorded == 1
        assert elapsed < 2.0, f"tick blocked for {elapsed:.2f}s"
        assert collector.gc_failures == 1
        assert "node-b" in tracker.tracked_nodes(), "GC must be skipped, not partially applied"

    def test_gc_recovers_on_next_tick(self, clock, tracker):
        cluster = _make_cluster("node-a", "node-b")
        source = SimulatedMetricsSource(cluster, noise_std=0.0)
        collector = UtilizationCollector(source, tracker, gc_timeout_s=0.05, clock=clock.now)
        collector.tick()
        cluster.remove_node("node-b")

        release = threading.Event()
        source.hang(release)
        collector.tick()
        assert "node-b" in tracker.tracked_nodes()

        release.set()
        collector.tick()
        assert tracker.tracked_nodes() == ["node-a"]
        assert collector.last_gc_removed == ["node-b"]


# ─────────────────────────────────────────────────────────────────────────────
# Group 3 — EventRecorder
# ─────────────────────────────────────────────────────────────────────────────

class TestEventRecorder:
    def test_history_is_bounded(self, clock):
        events = EventRecorder(max_events=3, clock=clock.now)
        for i in range(5):
            events.record(ev.NODE_DRAINED, "workers", f"drained node-{i}", node=f"node-{i}")
        assert len(events) == 3
        assert [e.fields["node"] for e in events.events()] == ["node-2", "node-3", "node-4"]

    def test_filters_by_kind_and_group(self, clock):
        events = EventRecorder(clock=clock.now)
        events.record(ev.SCALE_UP_DECIDED, "workers", "pending pods")
        events.record(ev.SCALE_UP_DECIDED, "gpu", "pending pods")
        events.record(ev.DRAIN_STARTED, "workers", "draining node-1")
        assert len(events.of_kind(ev.SCALE_UP_DECIDED)) == 2
        assert [e.kind for e in events.events("workers")] == [ev.SCALE_UP_DECIDED, ev.DRAIN_STARTED]
        assert events.events()[0].timestamp == clock.now()

    def test_failures_logged_as_warnings(self, clock, caplog):
        events = EventRecorder(clock=clock.now)
        with caplog.at_level(logging.INFO, logger="autoscaler.telemetry.events"):
            events.record(ev.DRAIN_FAILED, "workers", "drain timed out")
            events.record(ev.DRAIN_COMPLETED, "workers", "node removed")
        levels = {r.getMessage().split("]")[0].lstrip("["): r.levelno for r in caplog.records}
        assert levels[ev.DRAIN_FAILED] == logging.WARNING
        assert levels[ev.DRAIN_COMPLETED] == logging.INFO
