"""
tests/test_scale_decision.py
────────────────────────────
ScaleDecisionEngine: scale-up signals, stabilized scale-down, deficit maths.

Test groups:
    Group 1 — Scale-up signals (7 tests)
    Group 2 — Scale-down (10 tests)
    Group 3 — Deficit and node estimates (3 tests)

Total: 20 tests
"""

from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

import pytest

from autoscaler.control_plane.safety_gate import SafetyGate
from autoscaler.control_plane.scale_decision import ScaleDecisionEngine
from autoscaler.shared.config import TrackerConfig
from autoscaler.shared.models import (
    INSTANCE_ID_ANNOTATION,
    NODEGROUP_LABEL,
    PROTECTED_ANNOTATION,
    ClusterNode,
    ClusterSnapshot,
    NodeGroup,
    NodeGroupSpec,
    NodeGroupStatus,
    OfferingSpec,
    Pod,
    PodPhase,
    ResourceDeficit,
    ScaleDirection,
    ScaleDownPolicy,
    Taint,
    Toleration,
)
from autoscaler.shared.utilization import UtilizationSample, UtilizationTracker


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_node_group(min_nodes: int = 1, max_nodes: int = 5, current: int = 3,
                     ready: Optional[int] = None, stabilization_s: float = 60.0,
                     **spec_fields) -> NodeGroup:
    spec_fields.setdefault("scale_down_policy", ScaleDownPolicy(stabilization_window_s=stabilization_s))
    return NodeGroup(
        name="workers",
        spec=NodeGroupSpec(
            min_nodes=min_nodes, max_nodes=max_nodes,
            offerings=[OfferingSpec(offering_id="m5.large", cpu_cores=4.0, memory_gb=8.0)],
            **spec_fields,
        ),
        status=NodeGroupStatus(current_nodes=current, desired_nodes=current,
                               ready_nodes=current if ready is None else ready),
    )


def _make_node(clock, name: str, age_h: float = 24.0, **fields) -> ClusterNode:
    fields.setdefault("labels", {NODEGROUP_LABEL: "workers"})
    fields["annotations"] = {INSTANCE_ID_ANNOTATION: f"i-{name}", **fields.get("annotations", {})}
    return ClusterNode(name=name, created_at=clock.now() - timedelta(hours=age_h), **fields)


def _nodes(clock, count: int) -> List[ClusterNode]:
    return [_make_node(clock, f"w-{i}", age_h=24.0 * (count - i + 1)) for i in range(1, count + 1)]


def _pending(name: str = "pending-0", cpu: float = 1.0, mem: float = 1.0, **fields) -> Pod:
    return Pod(name=name, phase=PodPhase.PENDING, node_name=None, unschedulable=True,
               cpu_request_cores=cpu, memory_request_gb=mem, **fields)


def _record(tracker: UtilizationTracker, clock, node: str, pct: float, times: int = 3) -> None:
    for _ in range(times):
        tracker.record(node, UtilizationSample(timestamp=clock.now(), cpu_pct=pct, memory_pct=pct))


@pytest.fixture
def tracker(clock) -> UtilizationTracker:
    return UtilizationTracker(TrackerConfig(), clock=clock.now)


@pytest.fixture
def engine(clock, tracker) -> ScaleDecisionEngine:
    return ScaleDecisionEngine(tracker, SafetyGate(clock=clock.now), clock=clock.now)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — Scale-up signals
# ─────────────────────────────────────────────────────────────────────────────

class TestScaleUp:
    def test_below_min_self_heals(self, clock, engine):
        ng = _make_node_group(min_nodes=3, current=2)
        decision = engine.evaluate(ng, ClusterSnapshot(nodes=_nodes(clock, 2)))
        assert decision.direction == ScaleDirection.UP
        assert decision.nodes_to_add == 1
        assert decision.desired_nodes == 3
        assert "below minNodes 3" in decision.reason

    def test_pending_pod_adds_node(self, clock, engine):
        ng = _make_node_group()
        snapshot = ClusterSnapshot(nodes=_nodes(clock, 3), pods=[_pending()])
        decision = engine.evaluate(ng, snapshot)
        assert decision.direction == ScaleDirection.UP
        assert (decision.nodes_to_add, decision.desired_nodes) == (1, 4)
        assert "1 unschedulable pod(s)" in decision.reason

    def test_add_is_capped_by_max_nodes(self, clock, engine):
        """Five nodes' worth of demand, room for two."""
        ng = _make_node_group(max_nodes=5)
        pods = [_pending(f"big-{i}", cpu=4.0) for i in range(5)]
        decision = engine.evaluate(ng, ClusterSnapshot(nodes=_nodes(clock, 3), pods=pods))
        assert (decision.nodes_to_add, decision.desired_nodes) == (2, 5)

    def test_at_max_nodes_is_none(self, clock, engine):
        ng = _make_node_group(max_nodes=3)
        decision = engine.evaluate(ng, ClusterSnapshot(nodes=_nodes(clock, 3), pods=[_pending()]))
        assert decision.direction == ScaleDirection.NONE
        assert "already at maxNodes 3" in decision.reason

    def test_in_flight_nodes_cover_demand(self, clock, engine):
        """A node still joining is not provisioned again for the same pod."""
        ng = _make_node_group(current=3, ready=2)
        decision = engine.evaluate(ng, ClusterSnapshot(nodes=_nodes(clock, 2), pods=[_pending()]))
        assert decision.direction == ScaleDirection.NONE

    def test_sustained_utilization_adds_one_node(self, clock, tracker, engine):
        ng = _make_node_group()
        snapshot = ClusterSnapshot(nodes=_nodes(clock, 3))
        for node in snapshot.nodes:
            _record(tracker, clock, node.name, 90.0)

        assert engine.evaluate(ng, snapshot).direction == ScaleDirection.NONE, "not sustained yet"
        clock.advance(60)
        decision = engine.evaluate(ng, snapshot)
        assert decision.direction == ScaleDirection.UP
        assert decision.nodes_to_add == 1
        assert "sustained 60s" in decision.reason

    def test_scale_up_wins_over_scale_down(self, clock, tracker, engine):
        ng = _make_node_group(stabilization_s=0.0)
        nodes = _nodes(clock, 3)
        for node in nodes:
            _record(tracker, clock, node.name, 10.0)

        decision = engine.evaluate(ng, ClusterSnapshot(nodes=nodes, pods=[_pending()]))
        assert decision.direction == ScaleDirection.UP
        assert decision.candidates == []

        decision = engine.evaluate(ng, ClusterSnapshot(nodes=nodes))
        assert decision.direction == ScaleDirection.DOWN, "same idle nodes, demand gone"


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Scale-down
# ─────────────────────────────────────────────────────────────────────────────

class TestScaleDown:
    def test_removes_after_stabilization_window(self, clock, tracker, engine):
        ng = _make_node_group()
        snapshot = ClusterSnapshot(nodes=_nodes(clock, 3))
        for name, pct in (("w-1", 10.0), ("w-2", 20.0), ("w-3", 90.0)):
            _record(tracker, clock, name, pct)

        first = engine.evaluate(ng, snapshot)
        assert first.direction == ScaleDirection.NONE
        assert "stabilizing (0s of 60s)" in first.reason

        clock.advance(60)
        for name, pct in (("w-1", 10.0), ("w-2", 20.0), ("w-3", 90.0)):
            _record(tracker, clock, name, pct)
        decision = engine.evaluate(ng, snapshot)

        assert decision.direction == ScaleDirection.DOWN
        assert decision.candidates == ["w-1", "w-2"], "emptiest node first"
        assert decision.desired_nodes == 1
        assert decision.safety is not None and decision.safety.passed

    def test_scale_up_resets_stabilization(self, clock, tracker, engine):
        ng = _make_node_group()
        nodes = _nodes(clock, 3)
        for node in nodes:
            _record(tracker, clock, node.name, 10.0)
        engine.evaluate(ng, ClusterSnapshot(nodes=nodes))

        clock.advance(60)
        assert engine.evaluate(ng, ClusterSnapshot(nodes=nodes, pods=[_pending()])).direction == ScaleDirection.UP

        clock.advance(10)
        for node in nodes:
            _record(tracker, clock, node.name, 10.0)
        decision = engine.evaluate(ng, ClusterSnapshot(nodes=nodes))
        assert decision.direction == ScaleDirection.NONE
        assert "(0s of 60s)" in decision.reason

    def test_cooldown_after_scale_down(self, clock, tracker, engine):
        ng = _make_node_group(stabilization_s=0.0)
        ng.status.last_scale_down_time = clock.now() - timedelta(seconds=100)
        nodes = _nodes(clock, 3)
        for node in nodes:
            _record(tracker, clock, node.name, 10.0)
        decision = engine.evaluate(ng, ClusterSnapshot(nodes=nodes))
        assert decision.direction == ScaleDirection.NONE
        assert "cooldown, 500s left" in decision.reason

    def test_disabled_policy(self, clock, tracker, engine):
        ng = _make_node_group(scale_down_policy=ScaleDownPolicy(enabled=False))
        nodes = _nodes(clock, 3)
        for node in nodes:
            _record(tracker, clock, node.name, 10.0)
        assert engine.evaluate(ng, ClusterSnapshot(nodes=nodes)).reason == "scale-down disabled by policy"

    def test_at_min_nodes(self, clock, tracker, engine):
        ng = _make_node_group(min_nodes=3)
        nodes = _nodes(clock, 3)
        for node in nodes:
            _record(tracker, clock, node.name, 10.0)
        assert engine.evaluate(ng, ClusterSnapshot(nodes=nodes)).reason == "at minNodes 3"

    def test_candidate_order_and_exclusions(self, clock, tracker, engine):
        """
        Protected and cordoned nodes never qualify; ties on utilisation go to
        the older node; the set grows until the gate refuses a third
        unprotected node.
        """
        ng = _make_node_group(current=5, stabilization_s=0.0)
        labels = {NODEGROUP_LABEL: "workers"}
        nodes = [
            _make_node(clock, "w-1", annotations={PROTECTED_ANNOTATION: "true"}),
            _make_node(clock, "w-2", unschedulable=True),
            _make_node(clock, "w-3", age_h=24.0, labels=labels),
            _make_node(clock, "w-4", age_h=1.0, labels=labels),
            _make_node(clock, "w-5", age_h=48.0, labels=labels),
        ]
        for name, pct in (("w-1", 5.0), ("w-2", 5.0), ("w-3", 30.0), ("w-4", 20.0), ("w-5", 20.0)):
            _record(tracker, clock, name, pct)

        decision = engine.evaluate(ng, ClusterSnapshot(nodes=nodes))

        assert decision.direction == ScaleDirection.DOWN
        assert decision.candidates == ["w-5", "w-4"]

    def test_gate_failure_is_reported(self, clock, tracker, engine):
        ng = _make_node_group(stabilization_s=0.0)
        nodes = _nodes(clock, 3) + [
            ClusterNode(name="other-1", ready=False),
            ClusterNode(name="other-2", ready=False),
        ]
        for node in nodes[:3]:
            _record(tracker, clock, node.name, 10.0)

        decision = engine.evaluate(ng, ClusterSnapshot(nodes=nodes))

        assert decision.direction == ScaleDirection.NONE
        assert decision.reason.startswith("safety gate blocked: cluster_health")
        assert decision.safety is not None and not decision.safety.passed

    def test_spaced_samples_count_under_a_zero_stabilization_window(self, clock, tracker, engine):
        """A 0s window debounces nothing; the tracker still judges its own 600s of history."""
        ng = _make_node_group(stabilization_s=0.0)
        nodes = _nodes(clock, 3)
        for _ in range(5):
            for node in nodes:
                tracker.record(node.name, UtilizationSample(timestamp=clock.now(), cpu_pct=5.0, memory_pct=5.0))
            clock.advance(10)

        decision = engine.evaluate(ng, ClusterSnapshot(nodes=nodes))

        assert decision.direction == ScaleDirection.DOWN
        assert decision.candidates == ["w-1", "w-2"]

    def test_nodes_without_instance_id_are_never_candidates(self, clock, tracker, engine):
        ng = _make_node_group(stabilization_s=0.0)
        nodes = [
            ClusterNode(name=f"w-{i}", labels={NODEGROUP_LABEL: "workers"},
                        created_at=clock.now() - timedelta(days=i))
            for i in range(1, 4)
        ]
        for node in nodes:
            _record(tracker, clock, node.name, 5.0)

        decision = engine.evaluate(ng, ClusterSnapshot(nodes=nodes))

        assert decision.direction == ScaleDirection.NONE
        assert decision.reason == "no removable candidates"

    def test_cordoned_nodes_use_up_min_nodes_headroom(self, clock, tracker, engine):
        """3 nodes, minNodes 1, one already draining: only one more may go."""
        ng = _make_node_group(current=3, stabilization_s=0.0)
        nodes = _nodes(clock, 3)
        nodes[0].unschedulable = True
        for node in nodes:
            _record(tracker, clock, node.name, 5.0)

        decision = engine.evaluate(ng, ClusterSnapshot(nodes=nodes))

        assert decision.direction == ScaleDirection.DOWN
        assert len(decision.candidates) == 1
        assert "w-1" not in decision.candidates


# ─────────────────────────────────────────────────────────────────────────────
# Group 3 — Deficit and node estimates
# ─────────────────────────────────────────────────────────────────────────────

class TestDeficit:
    def test_only_pods_the_group_can_host_count(self, clock, engine):
        ng = _make_node_group(labels={"pool": "batch"}, taints=[Taint(key="dedicated", value="batch")])
        tolerate = [Toleration(key="dedicated", value="batch")]
        snapshot = ClusterSnapshot(pods=[
            _pending("fits", cpu=2.0, mem=4.0, tolerations=tolerate, node_selector={"pool": "batch"}),
            _pending("no-toleration"),
            _pending("wrong-pool", tolerations=tolerate, node_selector={"pool": "gpu"}),
            Pod(name="running", node_name="w-1", cpu_request_cores=8.0),
        ])

        deficit = engine.compute_deficit(ng, snapshot)

        assert deficit.pods == 1
        assert deficit.cpu_cores == pytest.approx(2.0)
        assert deficit.memory_gb == pytest.approx(4.0)

    def test_estimate_takes_the_largest_dimension(self, engine):
        offering = OfferingSpec(offering_id="m5.large", cpu_cores=4.0, memory_gb=8.0)
        assert engine.estimate_nodes_needed(ResourceDeficit(cpu_cores=10.0, memory_gb=4.0, pods=3), offering) == 3
        assert engine.estimate_nodes_needed(ResourceDeficit(pods=300), offering) == 3, "110 pods per node"
        assert engine.estimate_nodes_needed(ResourceDeficit(pods=1), offering) == 1
        assert engine.estimate_nodes_needed(ResourceDeficit(), offering) == 0

    def test_forget_drops_stabilization_state(self, clock, tracker, engine):
        ng = _make_node_group()
        nodes = _nodes(clock, 3)
        for node in nodes:
            _record(tracker, clock, node.name, 10.0)
        engine.evaluate(ng, ClusterSnapshot(nodes=nodes))
        clock.advance(60)

        engine.forget(ng.key)
        decision = engine.evaluate(ng, ClusterSnapshot(nodes=nodes))

        assert decision.direction == ScaleDirection.NONE
        assert "(0s of 60s)" in decision.reason
