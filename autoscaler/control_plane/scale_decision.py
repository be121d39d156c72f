"""
autoscaler/control_plane/scale_decision.py
──────────────────────────────────────────
ScaleDecisionEngine: per-NodeGroup "how many nodes should there be?"

What it decides
────────────────
One evaluate() per NodeGroup per reconcile cycle, returning a ScaleDecision:

  UP    when (in this order)
          a. the group is below minNodes (self-heal),
          b. unschedulable pods that fit this group need more nodes than are
             already on their way (current nodes not yet Ready),
          c. group-average utilisation has stayed above the scale-up
             thresholds for the scale-up stabilization window.
        Gated only by maxNodes. Cooldowns do not delay a scale-up.

  DOWN  when ready nodes have been underutilized (per the policy mode in
        effect) continuously for the scale-down stabilization window, no
        cooldown is active, and the Safety Gate passes for the chosen set.

  NONE  otherwise, with a reason.

Precedence
───────────
A scale-up signal always wins: if (b) or (c) fires, scale-down is not
evaluated at all this cycle, even when the group is already at maxNodes.

Candidate order
────────────────
Lowest average utilisation first, oldest node first on ties. The set is
grown greedily, re-running the gate for each addition, up to
min(policy max removals, current − leaving − minNodes), where "leaving"
counts group nodes already cordoned by an earlier drain. Nodes without a
provider instance id are never candidates: nothing could deprovision them.

State
──────
The only state held is "since when has each signal been continuously
true" per NodeGroup; a cycle where the signal is false resets it.
"""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from autoscaler.shared.config import ScaleDecisionConfig
from autoscaler.shared.models import (
    INSTANCE_ID_ANNOTATION,
    NODEGROUP_LABEL,
    ClusterNode,
    ClusterSnapshot,
    NodeGroup,
    OfferingSpec,
    ResourceDeficit,
    SafetyCheckCategory,
    SafetyCheckResult,
    ScaleDecision,
    ScaleDirection,
    utcnow,
)
from autoscaler.shared.utilization import UtilizationTracker
from autoscaler.control_plane.policies import PolicyEngine
from autoscaler.control_plane.safety_gate import GateAction, SafetyGate, cooldown_remaining

logger = logging.getLogger(__name__)


class ScaleDecisionEngine:
    """
    Usage:
        engine = ScaleDecisionEngine(tracker, SafetyGate())
        decision = engine.evaluate(node_group, snapshot)
    """

    def __init__(
        self,
        tracker: UtilizationTracker,
        gate: SafetyGate,
        policies: Optional[PolicyEngine] = None,
        config: Optional[ScaleDecisionConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._tracker = tracker
        self._gate = gate
        self._policies = policies or PolicyEngine(clock=clock)
        self.config = config or ScaleDecisionConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._down_since: Dict[str, datetime] = {}
        self._up_since: Dict[str, datetime] = {}

    # ── Public API ─────────────────────────────────────────────────────────────

    def evaluate(
        self,
        node_group: NodeGroup,
        snapshot: ClusterSnapshot,
        now: Optional[datetime] = None,
    ) -> ScaleDecision:
        now = now or self._clock()
        spec = node_group.spec
        current = node_group.status.current_nodes
        desired = node_group.status.desired_nodes or spec.min_nodes

        def decide(direction: ScaleDirection, reason: str, **kw) -> ScaleDecision:
            decision = ScaleDecision(
                node_group=node_group.name, direction=direction,
                current_nodes=current, desired_nodes=kw.pop("desired_nodes", desired),
                reason=reason, decided_at=now, **kw,
            )
            if direction != ScaleDirection.NONE:
                logger.info("Scale %s for %s: %d → %d (%s)", direction.value, node_group.name,
                            current, decision.desired_nodes, reason)
            else:
                logger.debug("No scale action for %s: %s", node_group.name, reason)
            return decision

        # ── Scale-up signals ──────────────────────────────────────────────────
        if current < spec.min_nodes:
            self._reset(node_group.key)
            add = spec.min_nodes - current
            return decide(ScaleDirection.UP, f"below minNodes {spec.min_nodes}",
                          nodes_to_add=add, desired_nodes=spec.min_nodes)

        to_add, up_reason = self._scale_up_demand(node_group, snapshot, current, now)
        if to_add > 0:
            self._clear(self._down_since, node_group.key)
            room = spec.max_nodes - current
            if room <= 0:
                return decide(ScaleDirection.NONE, f"{up_reason}, but already at maxNodes {spec.max_nodes}")
            add = min(to_add, room)
            return decide(ScaleDirection.UP, up_reason, nodes_to_add=add, desired_nodes=current + add)

        # ── Scale-down ────────────────────────────────────────────────────────
        return self._scale_down(node_group, snapshot, current, decide, now)

    def compute_deficit(self, node_group: NodeGroup, snapshot: ClusterSnapshot) -> ResourceDeficit:
        """Sum the requests of unschedulable pods this group's nodes could host."""
        labels = dict(node_group.spec.labels)
        labels[NODEGROUP_LABEL] = node_group.name
        cpu = mem = 0.0
        pods = 0
        for pod in snapshot.pending_pods():
            if pod.tolerates_all(node_group.spec.taints) and pod.selector_matches(labels):
                cpu += pod.cpu_request_cores
                mem += pod.memory_request_gb
                pods += 1
        return ResourceDeficit(cpu_cores=cpu, memory_gb=mem, pods=pods)

    def estimate_nodes_needed(self, deficit: ResourceDeficit, offering: OfferingSpec) -> int:
        """max(ceil(cpu), ceil(mem), ceil(pods / max_pods)); at least 1 for any deficit."""
        if deficit.pods == 0:
            return 0
        by_cpu = math.ceil(deficit.cpu_cores / offering.cpu_cores)
        by_mem = math.ceil(deficit.memory_gb / offering.memory_gb)
        by_pods = math.ceil(deficit.pods / self.config.max_pods_per_node)
        return max(1, by_cpu, by_mem, by_pods)

    def forget(self, node_group_key: str) -> None:
        """Drop stabilization state for a deleted NodeGroup."""
        self._reset(node_group_key)

    # ── Private helpers ────────────────────────────────────────────────────────

    def _scale_up_demand(self, node_group: NodeGroup, snapshot: ClusterSnapshot,
                         current: int, now: datetime) -> Tuple[int, str]:
        policy = node_group.spec.scale_up_policy
        if not policy.enabled:
            self._clear(self._up_since, node_group.key)
            return 0, ""

        in_flight = max(0, current - node_group.status.ready_nodes)
        offering = node_group.spec.offering() or OfferingSpec(offering_id="default")
        deficit = self.compute_deficit(node_group, snapshot)
        needed = self.estimate_nodes_needed(deficit, offering) - in_flight
        if needed > 0:
            return needed, f"{deficit.pods} unschedulable pod(s) need {needed} more node(s)"

        group = [n for n in snapshot.nodes_in_group(node_group.name) if n.ready]
        averages = [a for a in (self._tracker.average(n.name) for n in group) if a is not None]
        if not averages:
            self._clear(self._up_since, node_group.key)
            return 0, ""
        cpu = sum(a[0] for a in averages) / len(averages)
        mem = sum(a[1] for a in averages) / len(averages)
        if cpu < policy.cpu_threshold and mem < policy.memory_threshold:
            self._clear(self._up_since, node_group.key)
            return 0, ""

        held = self._held_for(self._up_since, node_group.key, now)
        if held < policy.stabilization_window_s or in_flight > 0:
            return 0, ""
        self._clear(self._up_since, node_group.key)
        return 1, f"group utilisation cpu={cpu:.0f}% mem={mem:.0f}% sustained {held:.0f}s"

    def _scale_down(self, node_group: NodeGroup, snapshot: ClusterSnapshot, current: int,
                    decide: Callable[..., ScaleDecision], now: datetime) -> ScaleDecision:
        spec = node_group.spec
        key = node_group.key
        if not self._policies.scale_down_enabled(node_group, now):
            self._clear(self._down_since, key)
            return decide(ScaleDirection.NONE, "scale-down disabled by policy")
        if current <= spec.min_nodes:
            self._clear(self._down_since, key)
            return decide(ScaleDirection.NONE, f"at minNodes {spec.min_nodes}")

        limits = self._policies.thresholds(node_group, self.config.max_nodes_per_scale_down, now)
        group = snapshot.nodes_in_group(node_group.name)
        # cordoned group nodes are already on their way out
        leaving = sum(1 for n in group if n.unschedulable)
        underutilized = [
            n for n in group
            if n.schedulable and self._tracker.underutilized(
                n.name, limits.cpu_threshold, limits.memory_threshold, limits.observation_window_s)
        ]
        if not underutilized:
            self._clear(self._down_since, key)
            return decide(ScaleDirection.NONE, "no underutilized nodes")

        held = self._held_for(self._down_since, key, now)
        window = spec.scale_down_policy.stabilization_window_s
        if held < window:
            return decide(ScaleDirection.NONE, f"underutilization stabilizing ({held:.0f}s of {window:.0f}s)")

        remaining = cooldown_remaining(node_group, GateAction.SCALE_DOWN, now)
        if remaining > 0:
            return decide(ScaleDirection.NONE, f"scale-down cooldown, {remaining:.0f}s left")

        candidates = self._order_candidates([
            n for n in underutilized
            if INSTANCE_ID_ANNOTATION in n.annotations
            and self._policies.allow_scale_down(node_group, n, now)
            and not self._gate.node_removal_blockers(n, snapshot)
        ])
        limit = min(limits.max_nodes, current - leaving - spec.min_nodes)
        chosen, result = self._grow_safe_set(node_group, snapshot, candidates, limit, now)
        if not chosen:
            reason = "no removable candidates"
            if result is not None and not result.passed:
                reason = "safety gate blocked: " + "; ".join(result.reasons)
            return decide(ScaleDirection.NONE, reason, safety=result)

        return decide(
            ScaleDirection.DOWN,
            f"{len(chosen)} node(s) underutilized for {held:.0f}s",
            desired_nodes=current - len(chosen),
            candidates=chosen,
            safety=result,
        )

    def _order_candidates(self, nodes: List[ClusterNode]) -> List[ClusterNode]:
        def key(node: ClusterNode):
            avg = self._tracker.average(node.name)
            util = (avg[0] + avg[1]) / 2.0 if avg else 100.0
            return util, node.created_at
        return sorted(nodes, key=key)

    def _grow_safe_set(self, node_group: NodeGroup, snapshot: ClusterSnapshot,
                       candidates: List[ClusterNode], limit: int,
                       now: datetime) -> Tuple[List[str], Optional[SafetyCheckResult]]:
        chosen: List[str] = []
        accepted: Optional[SafetyCheckResult] = None
        rejected: Optional[SafetyCheckResult] = None
        for node in candidates:
            if len(chosen) >= limit:
                break
            trial = chosen + [node.name]
            result = self._gate.evaluate(node_group, snapshot, trial, action=GateAction.SCALE_DOWN, now=now)
            if result.passed:
                chosen, accepted = trial, result
                continue
            rejected = result
            blocked = {c.category for c in result.failures}
            if SafetyCheckCategory.CLUSTER_HEALTH in blocked or SafetyCheckCategory.TIMING in blocked:
                break
        return chosen, accepted if chosen else rejected

    def _held_for(self, table: Dict[str, datetime], key: str, now: datetime) -> float:
        with self._lock:
            since = table.setdefault(key, now)
        return (now - since).total_seconds()

    def _clear(self, table: Dict[str, datetime], key: str) -> None:
        with self._lock:
            table.pop(key, None)

    def _reset(self, key: str) -> None:
        self._clear(self._down_since, key)
        self._clear(self._up_since, key)

    def __repr__(self) -> str:
        return f"ScaleDecisionEngine(tracking={len(self._down_since)} down / {len(self._up_since)} up signals)"
