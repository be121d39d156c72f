"""
tests/test_policies.py
──────────────────────
PolicyEngine: modes, time windows, presets and per-node scale-down permission.

Test groups:
    Group 1 — Modes and thresholds (4 tests)
    Group 2 — Time windows and presets (4 tests)
    Group 3 — Per-node permission and allowed hours (5 tests)

Total: 13 tests
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from autoscaler.control_plane.policies import (
    PolicyEngine,
    PolicyPreset,
    TimeWindow,
    parse_hhmm,
    within_annotated_hours,
)
from autoscaler.shared.models import (
    ALLOWED_HOURS_ANNOTATION,
    SCALE_DOWN_ANNOTATION,
    ClusterNode,
    NodeGroup,
    NodeGroupSpec,
    PolicyMode,
    ScaleDownPolicy,
)

WEDNESDAY_10 = datetime(2026, 3, 4, 10, 0, tzinfo=timezone.utc)
WEDNESDAY_23 = datetime(2026, 3, 4, 23, 0, tzinfo=timezone.utc)
THURSDAY_01 = datetime(2026, 3, 5, 1, 0, tzinfo=timezone.utc)
THURSDAY_02 = datetime(2026, 3, 5, 2, 0, tzinfo=timezone.utc)
SATURDAY_10 = datetime(2026, 3, 7, 10, 0, tzinfo=timezone.utc)


def _make_node_group(enabled: bool = True) -> NodeGroup:
    return NodeGroup(
        name="workers",
        spec=NodeGroupSpec(scale_down_policy=ScaleDownPolicy(
            enabled=enabled, cpu_threshold=45.0, memory_threshold=55.0, stabilization_window_s=900.0,
        )),
    )


def _make_node(**annotations: str) -> ClusterNode:
    return ClusterNode(name="node-1", annotations=dict(annotations))


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — Modes and thresholds
# ─────────────────────────────────────────────────────────────────────────────

class TestThresholds:
    def test_balanced_uses_node_group_thresholds_and_tracker_window(self):
        t = PolicyEngine().thresholds(_make_node_group(), 5, now=WEDNESDAY_10)
        assert (t.cpu_threshold, t.memory_threshold) == (45.0, 55.0)
        assert t.observation_window_s is None
        assert t.max_nodes == 5

    def test_aggressive_doubles_removals(self):
        t = PolicyEngine(default_mode=PolicyMode.AGGRESSIVE).thresholds(_make_node_group(), 5, now=WEDNESDAY_10)
        assert t.cpu_threshold == 60.0
        assert t.observation_window_s == 300.0
        assert t.max_nodes == 10

    def test_conservative_removes_one_at_a_time(self):
        t = PolicyEngine(default_mode=PolicyMode.CONSERVATIVE).thresholds(_make_node_group(), 5, now=WEDNESDAY_10)
        assert t.cpu_threshold == 40.0
        assert t.observation_window_s == 1200.0
        assert t.max_nodes == 1

    def test_disabled_mode_and_flag(self):
        assert PolicyEngine(default_mode=PolicyMode.DISABLED).scale_down_enabled(_make_node_group(), WEDNESDAY_10) is False
        assert PolicyEngine().scale_down_enabled(_make_node_group(enabled=False), WEDNESDAY_10) is False
        assert PolicyEngine().scale_down_enabled(_make_node_group(), WEDNESDAY_10) is True


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Time windows and presets
# ─────────────────────────────────────────────────────────────────────────────

class TestTimeWindows:
    def test_window_wraps_past_midnight(self):
        """22 → 2 covers 23:00 and 01:00; the end hour is exclusive."""
        engine = PolicyEngine()
        engine.add_time_window(TimeWindow(start_hour=22, end_hour=2, mode=PolicyMode.DISABLED))
        assert engine.current_mode(WEDNESDAY_23) == PolicyMode.DISABLED
        assert engine.current_mode(THURSDAY_01) == PolicyMode.DISABLED
        assert engine.current_mode(THURSDAY_02) == PolicyMode.BALANCED

    def test_first_matching_window_wins(self):
        engine = PolicyEngine()
        engine.add_time_window(TimeWindow(start_hour=9, end_hour=17, mode=PolicyMode.CONSERVATIVE))
        engine.add_time_window(TimeWindow(start_hour=0, end_hour=24, mode=PolicyMode.AGGRESSIVE))
        assert engine.current_mode(WEDNESDAY_10) == PolicyMode.CONSERVATIVE
        assert engine.current_mode(WEDNESDAY_23) == PolicyMode.AGGRESSIVE

    def test_cost_saving_preset(self):
        engine = PolicyEngine()
        engine.apply_preset(PolicyPreset.COST_SAVING)
        assert engine.current_mode(SATURDAY_10) == PolicyMode.AGGRESSIVE
        assert engine.current_mode(WEDNESDAY_23) == PolicyMode.AGGRESSIVE

    def test_development_preset_clears_windows(self):
        engine = PolicyEngine()
        engine.apply_preset(PolicyPreset.PRODUCTION)
        assert engine.current_mode(WEDNESDAY_10) == PolicyMode.CONSERVATIVE
        engine.apply_preset(PolicyPreset.DEVELOPMENT)
        assert engine.current_mode(WEDNESDAY_10) == PolicyMode.BALANCED
        assert "windows=0" in repr(engine)


# ─────────────────────────────────────────────────────────────────────────────
# Group 3 — Per-node permission and allowed hours
# ─────────────────────────────────────────────────────────────────────────────

class TestAllowScaleDown:
    def test_plain_node_allowed(self):
        assert PolicyEngine().allow_scale_down(_make_node_group(), _make_node(), WEDNESDAY_10) is True

    def test_annotation_disables(self):
        node = _make_node(**{SCALE_DOWN_ANNOTATION: "disabled"})
        assert PolicyEngine().allow_scale_down(_make_node_group(), node, WEDNESDAY_10) is False

    def test_outside_allowed_hours(self):
        node = _make_node(**{ALLOWED_HOURS_ANNOTATION: "01:00-03:00"})
        assert PolicyEngine().allow_scale_down(_make_node_group(), node, WEDNESDAY_10) is False
        assert PolicyEngine().allow_scale_down(_make_node_group(), node, THURSDAY_02) is True

    def test_malformed_allowed_hours_fail_open(self):
        """A typo in the annotation must not pin the node forever."""
        node = _make_node(**{ALLOWED_HOURS_ANNOTATION: "25:00-03:00"})
        assert PolicyEngine().allow_scale_down(_make_node_group(), node, WEDNESDAY_10) is True
        assert within_annotated_hours("nonsense", WEDNESDAY_10) is True

    @pytest.mark.parametrize("value,expected", [
        ("09:30", 570),
        ("00:00", 0),
        ("24:00", None),
        ("9", None),
        ("ab:cd", None),
    ])
    def test_parse_hhmm(self, value, expected):
        assert parse_hhmm(value) == expected
