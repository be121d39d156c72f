"""
tests/test_utilization.py
─────────────────────────
UtilizationTracker: bounded per-node windows and the underutilization verdict.

Test groups:
    Group 1 — Recording and windows (5 tests)
    Group 2 — Underutilization verdict (6 tests)
    Group 3 — Copy-out views and garbage collection (4 tests)

Total: 15 tests
"""

from __future__ import annotations

import pytest

from autoscaler.shared.config import TrackerConfig
from autoscaler.shared.utilization import UtilizationSample, UtilizationTracker


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_tracker(clock, **overrides) -> UtilizationTracker:
    return UtilizationTracker(TrackerConfig(**overrides), clock=clock.now)


def _record(tracker: UtilizationTracker, clock, node: str, cpu: float, mem: float, times: int = 1) -> None:
    for _ in range(times):
        tracker.record(node, UtilizationSample(timestamp=clock.now(), cpu_pct=cpu, memory_pct=mem))


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — Recording and windows
# ─────────────────────────────────────────────────────────────────────────────

class TestRecording:
    def test_first_record_creates_window(self, clock):
        """A node is tracked from its first sample on."""
        tracker = _make_tracker(clock)
        _record(tracker, clock, "node-a", 10.0, 20.0)
        assert tracker.tracked_nodes() == ["node-a"]
        assert len(tracker) == 1

    def test_window_is_capped_fifo(self, clock):
        """Only the newest max_samples_per_node samples are kept."""
        tracker = _make_tracker(clock, max_samples_per_node=5)
        for i in range(8):
            _record(tracker, clock, "node-a", float(i), 0.0)
            clock.advance(1)
        view = tracker.snapshot("node-a")
        assert len(view.samples) == 5
        assert [s.cpu_pct for s in view.samples] == [3.0, 4.0, 5.0, 6.0, 7.0], "oldest samples must drop first"

    def test_old_samples_pruned_on_record(self, clock):
        """Samples older than the observation window are dropped."""
        tracker = _make_tracker(clock, observation_window_s=600)
        _record(tracker, clock, "node-a", 10.0, 10.0, times=3)
        clock.advance(700)
        _record(tracker, clock, "node-a", 20.0, 20.0)
        view = tracker.snapshot("node-a")
        assert len(view.samples) == 1
        assert view.cpu_avg == pytest.approx(20.0)

    def test_average_over_window(self, clock):
        tracker = _make_tracker(clock)
        _record(tracker, clock, "node-a", 10.0, 40.0)
        _record(tracker, clock, "node-a", 30.0, 60.0)
        assert tracker.average("node-a") == (pytest.approx(20.0), pytest.approx(50.0))

    def test_average_unknown_node_is_none(self, clock):
        tracker = _make_tracker(clock)
        assert tracker.average("ghost") is None
        assert tracker.snapshot("ghost") is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Underutilization verdict
# ─────────────────────────────────────────────────────────────────────────────

class TestUnderutilized:
    def test_insufficient_samples_never_underutilized(self, clock):
        """A cold node gets no verdict until min_samples are in the window."""
        tracker = _make_tracker(clock, min_samples=3)
        _record(tracker, clock, "node-a", 5.0, 5.0, times=2)
        assert tracker.underutilized("node-a", 50.0, 50.0) is False

    def test_quiet_node_is_underutilized(self, clock):
        tracker = _make_tracker(clock)
        _record(tracker, clock, "node-a", 10.0, 15.0, times=3)
        assert tracker.underutilized("node-a", 50.0, 50.0) is True

    def test_average_above_threshold_is_not(self, clock):
        tracker = _make_tracker(clock)
        _record(tracker, clock, "node-a", 10.0, 70.0, times=3)
        assert tracker.underutilized("node-a", 50.0, 50.0) is False, "memory above threshold"

    def test_spiky_node_with_low_mean_is_not(self, clock):
        """Mean under threshold is not enough: most samples must be under too."""
        tracker = _make_tracker(clock, underutilized_sample_ratio=0.8)
        _record(tracker, clock, "node-a", 10.0, 10.0, times=3)
        _record(tracker, clock, "node-a", 90.0, 10.0, times=2)
        # cpu mean = 42 < 50, but only 3/5 samples are below
        assert tracker.underutilized("node-a", 50.0, 50.0) is False

    def test_stale_node_is_not(self, clock):
        """No recent sample means no verdict."""
        tracker = _make_tracker(clock, stale_after_s=300)
        _record(tracker, clock, "node-a", 5.0, 5.0, times=3)
        clock.advance(301)
        assert tracker.underutilized("node-a", 50.0, 50.0) is False

    def test_observation_window_override(self, clock):
        """A shorter window (aggressive mode) only sees recent samples."""
        tracker = _make_tracker(clock, stale_after_s=1000)
        _record(tracker, clock, "node-a", 5.0, 5.0, times=3)
        clock.advance(400)
        assert tracker.underutilized("node-a", 50.0, 50.0) is True
        assert tracker.underutilized("node-a", 50.0, 50.0, observation_window_s=300) is False
        assert tracker.underutilized_nodes(50.0, 50.0) == ["node-a"]


# ─────────────────────────────────────────────────────────────────────────────
# Group 3 — Copy-out views and garbage collection
# ─────────────────────────────────────────────────────────────────────────────

class TestViewsAndGc:
    def test_snapshot_is_a_copy(self, clock):
        """Mutating a returned view never reaches tracked history."""
        tracker = _make_tracker(clock)
        _record(tracker, clock, "node-a", 10.0, 10.0, times=3)
        view = tracker.snapshot("node-a")
        view.samples.clear()
        view.samples.append(UtilizationSample(timestamp=clock.now(), cpu_pct=99.0, memory_pct=99.0))
        assert len(tracker.snapshot("node-a").samples) == 3
        assert tracker.average("node-a")[0] == pytest.approx(10.0)

    def test_garbage_collect_drops_departed_nodes(self, clock):
        tracker = _make_tracker(clock)
        for name in ("node-a", "node-b", "node-c"):
            _record(tracker, clock, name, 10.0, 10.0)
        removed = tracker.garbage_collect(["node-a", "node-c"])
        assert removed == ["node-b"]
        assert tracker.tracked_nodes() == ["node-a", "node-c"]

    def test_garbage_collect_with_all_live_is_noop(self, clock):
        tracker = _make_tracker(clock)
        _record(tracker, clock, "node-a", 10.0, 10.0)
        assert tracker.garbage_collect({"node-a", "node-z"}) == []
        assert len(tracker) == 1

    def test_combined_average(self, clock):
        tracker = _make_tracker(clock)
        _record(tracker, clock, "node-a", 20.0, 40.0)
        assert tracker.snapshot("node-a").combined_avg == pytest.approx(30.0)
