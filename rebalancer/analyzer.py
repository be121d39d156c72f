"""
rebalancer/analyzer.py
──────────────────────
RebalanceAnalyzer: which nodes should be replaced, and is now a good time?

How the analysis works
───────────────────────
  1. Pick the optimization: the highest monthly_savings recommendation for
     this NodeGroup, unless the caller passes an explicit manual node list.
  2. Resolve candidates:
       • manual list          → those nodes, target = the group's preferred offering
       • affected_nodes set   → exactly those nodes
       • otherwise            → every group node running current_offering
  3. Per candidate, run the gate's node-level blockers (protected, local
     storage, control-plane pods, tiny-cluster anti-affinity, homeless
     pods). Blocked nodes go to `skipped` with the reasons; the rest are
     scored.
  4. Run the Safety Gate on the surviving set with surge replacements
     counted (every candidate gets a Ready replacement before it drains).
     Add a headroom WARNING when current + candidates > maxNodes, and the
     operator-wide cooldown floor.
  5. Recommend:
       any failure              → REJECT
       HIGH risk + any warning  → NEEDS_REVIEW
       any warning              → POSTPONE
       otherwise                → PROCEED

Scoring
────────
    priority = age_days × 0.1 + (100 − pods) × 0.5 + savings × 0.01

Older nodes, emptier nodes and bigger savings go first. Emptier nodes are
cheaper to drain, so they make the safest early batches.

The analyzer never writes anything. It is re-run from scratch every cycle.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from autoscaler.control_plane.safety_gate import GateAction, SafetyGate
from autoscaler.shared.config import AnalyzerConfig
from autoscaler.shared.models import (
    NODEGROUP_LABEL,
    OFFERING_LABEL,
    CandidateNode,
    CandidateReason,
    ClusterNode,
    ClusterSnapshot,
    NodeGroup,
    Optimization,
    RebalanceAnalysis,
    RebalancePriority,
    RecommendedAction,
    RiskLevel,
    SafetyCheck,
    SafetyCheckCategory,
    SafetyCheckResult,
    SafetyCheckStatus,
    utcnow,
)
from autoscaler.shared.utilization import UtilizationTracker

logger = logging.getLogger(__name__)

# ── Scoring weights ────────────────────────────────────────────────────────────

AGE_WEIGHT: float = 0.1
"""Per day of node age."""

EMPTINESS_WEIGHT: float = 0.5
"""Per pod below 100 pods on the node."""

SAVINGS_WEIGHT: float = 0.01
"""Per USD of monthly savings."""

HIGH_PRIORITY_SAVINGS: float = 100.0
"""Monthly savings above this, with every check passed, is HIGH priority."""

MEDIUM_PRIORITY_SAVINGS: float = 50.0


class RebalanceAnalyzer:
    """
    Usage:
        analyzer = RebalanceAnalyzer(SafetyGate())
        analysis = analyzer.analyze(node_group, snapshot, optimizations)
        if analysis.recommended_action == RecommendedAction.PROCEED:
            plan = planner.create_plan(node_group, analysis.candidates, analysis.optimization)
    """

    def __init__(
        self,
        gate: SafetyGate,
        config: Optional[AnalyzerConfig] = None,
        tracker: Optional[UtilizationTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._gate = gate
        self.config = config or AnalyzerConfig()
        self._tracker = tracker
        self._clock = clock

    # ── Public API ─────────────────────────────────────────────────────────────

    def analyze(
        self,
        node_group: NodeGroup,
        snapshot: ClusterSnapshot,
        optimizations: Sequence[Optimization] = (),
        manual_nodes: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> RebalanceAnalysis:
        now = now or self._clock()
        policy = node_group.spec.rebalance_policy
        optimization = None if manual_nodes else self.select_optimization(node_group, optimizations)

        if manual_nodes:
            target = node_group.spec.offering()
            target_id = target.offering_id if target else ""
            nodes = self._resolve_manual(node_group, snapshot, manual_nodes)
            reason = CandidateReason.MANUAL
        elif optimization is not None:
            target_id = optimization.recommended_offering
            nodes = self._resolve_optimization(node_group, snapshot, optimization)
            reason = CandidateReason.OPTIMIZATION
        else:
            return RebalanceAnalysis(node_group=node_group.name, analyzed_at=now)

        savings = optimization.monthly_savings if optimization else 0.0
        skip_local = self.config.skip_nodes_with_local_storage or policy.skip_nodes_with_local_storage
        template = self._replacement_template(node_group, target_id)

        skipped: Dict[str, str] = {}
        candidates: List[CandidateNode] = []
        for node in nodes:
            if isinstance(node, str):
                skipped[node] = "node not found in node group"
                continue
            blockers = self._gate.node_removal_blockers(node, snapshot, skip_local, template)
            if blockers:
                skipped[node.name] = "; ".join(blockers)
                continue
            candidates.append(self._candidate(node_group, node, snapshot, target_id, reason, savings, now))

        candidates.sort(key=lambda c: c.priority_score, reverse=True)
        safety = self._evaluate(node_group, snapshot, candidates, now)
        risk = optimization.risk if optimization else RiskLevel.LOW
        action = _recommend(safety, risk)
        priority = _priority(savings, safety)

        analysis = RebalanceAnalysis(
            node_group=node_group.name,
            candidates=candidates,
            skipped=skipped,
            safety=safety,
            recommended_action=action,
            priority=priority,
            optimization=optimization,
            estimated_duration_s=len(candidates) * self.config.per_node_duration_s,
            analyzed_at=now,
        )
        logger.info(
            "Rebalance analysis for %s: %d candidate(s), %d skipped, action=%s priority=%s",
            node_group.name, len(candidates), len(skipped), action.value, priority.value,
        )
        return analysis

    @staticmethod
    def select_optimization(node_group: NodeGroup,
                            optimizations: Sequence[Optimization]) -> Optional[Optimization]:
        """Highest monthly savings among this group's recommendations."""
        mine = [o for o in optimizations if o.node_group == node_group.name]
        if not mine:
            return None
        return max(mine, key=lambda o: o.monthly_savings)

    # ── Private helpers ────────────────────────────────────────────────────────

    def _resolve_manual(self, node_group: NodeGroup, snapshot: ClusterSnapshot,
                        names: Sequence[str]) -> list:
        group = {n.name: n for n in snapshot.nodes_in_group(node_group.name)}
        return [group.get(name, name) for name in names]

    def _resolve_optimization(self, node_group: NodeGroup, snapshot: ClusterSnapshot,
                              optimization: Optimization) -> list:
        group = {n.name: n for n in snapshot.nodes_in_group(node_group.name)}
        if optimization.affected_nodes:
            return [group.get(name, name) for name in optimization.affected_nodes]
        return [n for n in group.values() if n.offering_id == optimization.current_offering]

    def _candidate(self, node_group: NodeGroup, node: ClusterNode, snapshot: ClusterSnapshot,
                   target_id: str, reason: CandidateReason, savings: float,
                   now: datetime) -> CandidateNode:
        pods = [p for p in snapshot.pods_on(node.name) if p.is_evictable]
        age_s = node.age_seconds(now)
        utilization = None
        if self._tracker is not None:
            avg = self._tracker.average(node.name)
            if avg is not None:
                utilization = (avg[0] + avg[1]) / 2.0
            down = node_group.spec.scale_down_policy
            if self._tracker.underutilized(node.name, down.cpu_threshold, down.memory_threshold):
                reason = CandidateReason.UNDERUTILIZED

        score = (
            age_s / 86400.0 * AGE_WEIGHT
            + (100 - len(pods)) * EMPTINESS_WEIGHT
            + savings * SAVINGS_WEIGHT
        )
        return CandidateNode(
            node_name=node.name,
            current_offering=node.offering_id or "",
            target_offering=target_id,
            age_s=age_s,
            workloads=[p.key for p in pods],
            stateful_workloads=sum(1 for p in pods if p.is_stateful),
            utilization_pct=utilization,
            priority_score=round(score, 4),
            reason=reason,
        )

    def _evaluate(self, node_group: NodeGroup, snapshot: ClusterSnapshot,
                  candidates: List[CandidateNode], now: datetime) -> SafetyCheckResult:
        policy = node_group.spec.rebalance_policy
        names = [c.node_name for c in candidates]
        result = self._gate.evaluate(
            node_group, snapshot, names,
            replacements=len(names),
            action=GateAction.REBALANCE,
            respect_pdbs=self.config.respect_pdbs and policy.respect_pdbs,
            now=now,
            min_healthy_percent=max(self.config.min_healthy_percent, policy.min_healthy_percent),
        )
        checks = list(result.checks)

        current = len(snapshot.nodes_in_group(node_group.name))
        if names and current + len(names) > node_group.spec.max_nodes:
            checks.append(SafetyCheck(
                category=SafetyCheckCategory.RESOURCE_CAPACITY,
                status=SafetyCheckStatus.WARNING,
                message=(f"surge needs {current + len(names)} nodes, above maxNodes "
                         f"{node_group.spec.max_nodes}"),
            ))

        last = node_group.status.last_rebalance_time
        if last is not None and self.config.cooldown_s > policy.cooldown_s:
            left = (last + timedelta(seconds=self.config.cooldown_s) - now).total_seconds()
            if left > 0:
                checks.append(SafetyCheck(
                    category=SafetyCheckCategory.TIMING,
                    status=SafetyCheckStatus.FAILED,
                    message=f"operator rebalance cooldown active for another {left:.0f}s",
                ))
        return SafetyCheckResult(checks=checks, evaluated_at=result.evaluated_at)

    @staticmethod
    def _replacement_template(node_group: NodeGroup, offering_id: str) -> ClusterNode:
        """What a surge replacement will look like, for the can-host check."""
        labels = dict(node_group.spec.labels)
        labels[NODEGROUP_LABEL] = node_group.name
        labels[OFFERING_LABEL] = offering_id
        offering = node_group.spec.offering(offering_id or None)
        template = ClusterNode(name=f"{node_group.name}-replacement", labels=labels,
                               taints=list(node_group.spec.taints))
        if offering is not None:
            template.cpu_allocatable_cores = offering.cpu_cores
            template.memory_allocatable_gb = offering.memory_gb
        return template

    def __repr__(self) -> str:
        return (
            f"RebalanceAnalyzer(min_healthy={self.config.min_healthy_percent:.0f}%, "
            f"skip_local_storage={self.config.skip_nodes_with_local_storage})"
        )


def _recommend(safety: SafetyCheckResult, risk: RiskLevel) -> RecommendedAction:
    if not safety.passed:
        return RecommendedAction.REJECT
    if safety.warnings:
        if risk == RiskLevel.HIGH:
            return RecommendedAction.NEEDS_REVIEW
        return RecommendedAction.POSTPONE
    return RecommendedAction.PROCEED


def _priority(savings: float, safety: SafetyCheckResult) -> RebalancePriority:
    all_passed = all(c.status == SafetyCheckStatus.PASSED for c in safety.checks)
    if savings > HIGH_PRIORITY_SAVINGS and all_passed:
        return RebalancePriority.HIGH
    if savings > MEDIUM_PRIORITY_SAVINGS:
        return RebalancePriority.MEDIUM
    return RebalancePriority.LOW
