"""
autoscaler/control_plane/safety_gate.py
───────────────────────────────────────
SafetyGate: the pre-check every disruptive action must pass.

What it is
───────────
A pure, side-effect-free evaluator. Given a NodeGroup, a ClusterSnapshot
and a proposed drain set, it returns a SafetyCheckResult. It never talks to
the cluster and never mutates what it is given, so the scale-down path and
the rebalance analyzer can call it as often as they like.

Checks (fixed order, one evaluator per SafetyCheckCategory)
────────────────────────────────────────────────────────────
  1. CLUSTER_HEALTH    ready nodes / all nodes ≥ min_healthy_percent (75%).
                       Below the floor every disruptive action is blocked.
  2. NODEGROUP_HEALTH  after removal (plus surge replacements) the group
                       keeps ≥ minNodes ready nodes and its remaining nodes
                       stay ≥ the rebalance min-healthy percentage.
  3. POD_DISRUPTION    per PDB: evicted pods it covers ≤ disruptions_allowed.
                       No PDB is not "anything goes": without one, at most
                       max_unprotected_candidates (2) nodes at a time.
  4. RESOURCE_CAPACITY evicted requests × 1.2 fit in free capacity on the
                       remaining ready, schedulable nodes; requested fraction
                       after removal ≤ 85%; hostname anti-affinity pods have
                       enough distinct hosts.
  5. TIMING            cooldowns for the action, and maintenance windows:
                       weekday is enforced, time-of-day is a warning only.

All five always run; the result lists every failure, not just the first.

Node-level blockers
────────────────────
node_removal_blockers() answers "may this one node go at all?" It is run
per candidate before the gate and covers what the set-level gate cannot:
protection markers, local storage, unique control-plane pods, hostname
anti-affinity on tiny clusters, and pods no other node can host.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set

import numpy as np

from autoscaler.shared.config import SafetyConfig
from autoscaler.shared.models import (
    HOSTNAME_TOPOLOGY_KEY,
    ClusterNode,
    ClusterSnapshot,
    MaintenanceWindow,
    NodeGroup,
    Pod,
    SafetyCheck,
    SafetyCheckCategory,
    SafetyCheckResult,
    SafetyCheckStatus,
    utcnow,
)
from autoscaler.control_plane.policies import minutes_in_range, parse_hhmm

logger = logging.getLogger(__name__)

CONTROL_PLANE_POD_NAMES = (
    "kube-apiserver",
    "etcd",
    "kube-controller-manager",
    "kube-scheduler",
)
"""Name fragments of kube-system pods that must never lose their host."""

MIN_NODES_FOR_HOSTNAME_ANTI_AFFINITY: int = 3
"""With ≤ 2 ready nodes, a hostname anti-affinity pod has nowhere else to land."""

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class GateAction(str, Enum):
    """Which disruptive action is being gated. Selects cooldowns and windows."""
    SCALE_DOWN = "scale_down"
    REBALANCE = "rebalance"


@dataclass
class _GateContext:
    node_group: NodeGroup
    snapshot: ClusterSnapshot
    drain_set: Set[str]
    replacements: int
    action: GateAction
    respect_pdbs: bool
    now: datetime
    config: SafetyConfig
    min_healthy_percent: float
    evicted: List[Pod] = field(default_factory=list)


class SafetyGate:
    """
    Usage:
        gate = SafetyGate()
        result = gate.evaluate(node_group, snapshot, ["node-3"])
        if not result.passed:
            log(result.reasons)
    """

    def __init__(
        self,
        config: Optional[SafetyConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or SafetyConfig()
        self._clock = clock

    # ── Public API ─────────────────────────────────────────────────────────────

    def evaluate(
        self,
        node_group: NodeGroup,
        snapshot: ClusterSnapshot,
        drain_set: Sequence[str],
        replacements: int = 0,
        action: GateAction = GateAction.SCALE_DOWN,
        respect_pdbs: bool = True,
        now: Optional[datetime] = None,
        min_healthy_percent: Optional[float] = None,
    ) -> SafetyCheckResult:
        """
        Evaluate every check for draining `drain_set` from `node_group`.

        Args:
            replacements: nodes that will be provisioned (and Ready) before the
                          drain happens. Rebalancing passes len(drain_set);
                          scale-down passes 0.
            respect_pdbs: False downgrades PDB violations to warnings.
            min_healthy_percent: overrides the cluster-health floor for this call.
        """
        names = set(drain_set)
        ctx = _GateContext(
            node_group=node_group,
            snapshot=snapshot,
            drain_set=names,
            replacements=replacements,
            action=action,
            respect_pdbs=respect_pdbs,
            now=now or self._clock(),
            config=self.config,
            min_healthy_percent=(self.config.min_healthy_percent
                                 if min_healthy_percent is None else min_healthy_percent),
            evicted=evictable_pods_on(snapshot, names),
        )
        checks = [_EVALUATORS[category](ctx) for category in SafetyCheckCategory]
        result = SafetyCheckResult(checks=checks, evaluated_at=ctx.now)
        if not result.passed:
            logger.info("Safety gate blocked %s of %s on %s: %s",
                        action.value, sorted(names), node_group.name, "; ".join(result.reasons))
        return result

    def node_removal_blockers(
        self,
        node: ClusterNode,
        snapshot: ClusterSnapshot,
        skip_local_storage: bool = True,
        replacement_template: Optional[ClusterNode] = None,
    ) -> List[str]:
        """
        Every reason `node` may not be removed. Empty list ⇒ removable.

        Args:
            replacement_template: a not-yet-existing node (group labels and
                                  taints) that counts as a host for evicted pods.
        """
        reasons: List[str] = []
        if node.is_protected:
            reasons.append("node is protected from scale-down")

        pods = [p for p in snapshot.pods_on(node.name) if not p.is_terminal]
        evictable = [p for p in pods if p.is_evictable]

        if skip_local_storage:
            local = [p.key for p in evictable if p.has_local_storage]
            if local:
                reasons.append(f"pods with local storage: {', '.join(local)}")

        system = [
            p.key for p in pods
            if p.is_system and any(fragment in p.name for fragment in CONTROL_PLANE_POD_NAMES)
        ]
        if system:
            reasons.append(f"unique control-plane pods: {', '.join(system)}")

        ready_count = len(snapshot.ready_nodes())
        if ready_count < MIN_NODES_FOR_HOSTNAME_ANTI_AFFINITY:
            pinned = [p.key for p in evictable if _has_hostname_anti_affinity(p, snapshot)]
            if pinned:
                reasons.append(
                    f"hostname anti-affinity with only {ready_count} ready node(s): {', '.join(pinned)}"
                )

        hosts = [n for n in snapshot.nodes if n.name != node.name and n.schedulable]
        if replacement_template is not None:
            hosts.append(replacement_template)
        homeless = [p.key for p in evictable if not any(_can_host(h, p) for h in hosts)]
        if homeless:
            reasons.append(f"no other node can host: {', '.join(homeless)}")

        return reasons

    def __repr__(self) -> str:
        return f"SafetyGate(min_healthy={self.config.min_healthy_percent:.0f}%)"


# ── Individual checks ─────────────────────────────────────────────────────────

def _check_cluster_health(ctx: _GateContext) -> SafetyCheck:
    total = len(ctx.snapshot.nodes)
    ready = len(ctx.snapshot.ready_nodes())
    pct = (ready / total * 100.0) if total else 0.0
    details = {"ready": str(ready), "total": str(total), "ready_percent": f"{pct:.1f}"}
    if pct < ctx.min_healthy_percent:
        return _fail(
            SafetyCheckCategory.CLUSTER_HEALTH,
            f"cluster {pct:.0f}% ready, below the {ctx.min_healthy_percent:.0f}% floor",
            details,
        )
    return _pass(SafetyCheckCategory.CLUSTER_HEALTH, f"cluster {pct:.0f}% ready", details)


def _check_node_group_health(ctx: _GateContext) -> SafetyCheck:
    ng = ctx.node_group
    group = ctx.snapshot.nodes_in_group(ng.name)
    remaining = [n for n in group if n.name not in ctx.drain_set]
    ready_after = sum(1 for n in remaining if n.ready) + ctx.replacements
    total_after = len(remaining) + ctx.replacements
    floor_pct = ng.spec.rebalance_policy.min_healthy_percent
    details = {
        "ready_after": str(ready_after),
        "total_after": str(total_after),
        "min_nodes": str(ng.spec.min_nodes),
    }

    problems: List[str] = []
    if ready_after < ng.spec.min_nodes:
        problems.append(f"{ready_after} ready node(s) would remain, below minNodes {ng.spec.min_nodes}")
    if total_after and ready_after / total_after * 100.0 < floor_pct:
        problems.append(
            f"remaining nodes {ready_after / total_after * 100.0:.0f}% ready, below {floor_pct:.0f}%"
        )
    if problems:
        return _fail(SafetyCheckCategory.NODEGROUP_HEALTH, "; ".join(problems), details)
    return _pass(SafetyCheckCategory.NODEGROUP_HEALTH,
                 f"{ready_after} ready node(s) remain in {ng.name}", details)


def _check_pod_disruption(ctx: _GateContext) -> SafetyCheck:
    category = SafetyCheckCategory.POD_DISRUPTION
    cap = ctx.config.max_unprotected_candidates
    pdbs = ctx.snapshot.pdbs

    covered: Dict[str, int] = {}
    uncovered = 0
    for pod in ctx.evicted:
        matching = [b for b in pdbs if b.matches(pod)]
        if not matching:
            uncovered += 1
        for budget in matching:
            covered[budget.name] = covered.get(budget.name, 0) + 1

    problems: List[str] = []
    for budget in pdbs:
        count = covered.get(budget.name, 0)
        if count > budget.disruptions_allowed:
            problems.append(
                f"PDB {budget.namespace}/{budget.name} allows {budget.disruptions_allowed} "
                f"disruption(s), {count} pod(s) would be evicted"
            )

    unprotected = not covered or uncovered > 0
    if unprotected and len(ctx.drain_set) > cap:
        problems.append(
            f"{len(ctx.drain_set)} nodes without PodDisruptionBudget coverage; "
            f"at most {cap} may be disrupted together"
        )

    details = {"evicted_pods": str(len(ctx.evicted)), "pdbs_touched": str(len(covered))}
    if problems and not ctx.respect_pdbs:
        return SafetyCheck(category=category, status=SafetyCheckStatus.WARNING,
                           message="PDB enforcement disabled: " + "; ".join(problems), details=details)
    if problems:
        return _fail(category, "; ".join(problems), details)
    return _pass(category, f"{len(ctx.evicted)} pod(s) within disruption budgets", details)


def _check_resource_capacity(ctx: _GateContext) -> SafetyCheck:
    category = SafetyCheckCategory.RESOURCE_CAPACITY
    if not ctx.drain_set:
        return _pass(category, "nothing to reschedule")

    snapshot = ctx.snapshot
    receivers = [n for n in snapshot.nodes if n.schedulable and n.name not in ctx.drain_set]

    need = _requests(ctx.evicted)
    allocatable = np.array(
        [(n.cpu_allocatable_cores, n.memory_allocatable_gb) for n in receivers] or [(0.0, 0.0)],
        dtype=np.float64,
    ).sum(axis=0)
    used = _requests([p for n in receivers for p in snapshot.pods_on(n.name) if not p.is_terminal])

    offering = ctx.node_group.spec.offering()
    if ctx.replacements and offering is not None:
        allocatable = allocatable + ctx.replacements * np.array(
            (offering.cpu_cores, offering.memory_gb), dtype=np.float64
        )

    free = allocatable - used
    required = need * ctx.config.reschedule_headroom_factor
    details = {
        "need_cpu": f"{need[0]:.2f}", "need_memory_gb": f"{need[1]:.2f}",
        "free_cpu": f"{free[0]:.2f}", "free_memory_gb": f"{free[1]:.2f}",
    }

    problems: List[str] = []
    if bool((required > free).any()):
        problems.append(
            f"evicted requests ({need[0]:.2f} cpu, {need[1]:.2f} GB) need "
            f"{ctx.config.reschedule_headroom_factor:.1f}× headroom; free is "
            f"{free[0]:.2f} cpu, {free[1]:.2f} GB"
        )

    if bool((need > 0).any()):
        with np.errstate(divide="ignore", invalid="ignore"):
            fraction = np.where(allocatable > 0, (used + need) / allocatable, np.inf)
        worst = float(fraction.max())
        details["requested_fraction_after"] = f"{worst:.2f}"
        if worst > ctx.config.max_requested_fraction_after_removal:
            problems.append(
                f"requested capacity after removal would be {worst * 100:.0f}%, "
                f"above {ctx.config.max_requested_fraction_after_removal * 100:.0f}%"
            )

    spread = sum(1 for p in ctx.evicted if _has_hostname_anti_affinity(p, snapshot))
    hosts = len(receivers) + ctx.replacements
    if spread > hosts:
        problems.append(f"{spread} anti-affinity pod(s) need distinct hosts, only {hosts} available")

    if problems:
        return _fail(category, "; ".join(problems), details)
    return _pass(category, "remaining capacity absorbs evicted pods", details)


def _check_timing(ctx: _GateContext) -> SafetyCheck:
    category = SafetyCheckCategory.TIMING
    remaining = cooldown_remaining(ctx.node_group, ctx.action, ctx.now)
    if remaining > 0:
        return _fail(category, f"{ctx.action.value} cooldown active for another {remaining:.0f}s",
                     {"cooldown_remaining_s": f"{remaining:.0f}"})

    windows = ctx.node_group.spec.rebalance_policy.maintenance_windows if ctx.action == GateAction.REBALANCE else []
    if not windows:
        return _pass(category, "no cooldown or maintenance window in effect")

    status, message = match_maintenance_window(windows, ctx.now)
    if status == SafetyCheckStatus.FAILED:
        return _fail(category, message)
    return SafetyCheck(category=category, status=status, message=message)


_EVALUATORS: Dict[SafetyCheckCategory, Callable[[_GateContext], SafetyCheck]] = {
    SafetyCheckCategory.CLUSTER_HEALTH: _check_cluster_health,
    SafetyCheckCategory.NODEGROUP_HEALTH: _check_node_group_health,
    SafetyCheckCategory.POD_DISRUPTION: _check_pod_disruption,
    SafetyCheckCategory.RESOURCE_CAPACITY: _check_resource_capacity,
    SafetyCheckCategory.TIMING: _check_timing,
}


# ── Shared helpers ─────────────────────────────────────────────────────────────

def cooldown_remaining(node_group: NodeGroup, action: GateAction, now: datetime) -> float:
    """
    Seconds until `action` is allowed again for this group (0.0 if allowed).

    SCALE_DOWN waits scale_up.cooldown after the last scale-up and
    scale_down.cooldown after the last scale-down. REBALANCE waits
    rebalance.cooldown after the last rebalance.
    """
    status = node_group.status
    spec = node_group.spec
    if action == GateAction.REBALANCE:
        pairs = [(status.last_rebalance_time, spec.rebalance_policy.cooldown_s)]
    else:
        pairs = [
            (status.last_scale_up_time, spec.scale_up_policy.cooldown_s),
            (status.last_scale_down_time, spec.scale_down_policy.cooldown_s),
        ]
    remaining = 0.0
    for last, cooldown in pairs:
        if last is None:
            continue
        left = ((last + timedelta(seconds=cooldown)) - now).total_seconds()
        remaining = max(remaining, left)
    return remaining


def match_maintenance_window(windows: List[MaintenanceWindow], now: datetime):
    """
    (status, message) for `now` against the windows.

    Weekday must match one window (FAILED otherwise). If the matching
    window(s) carry start/end and `now` is outside all of them, WARNING:
    time-of-day matching is best-effort.
    """
    today = _WEEKDAYS[now.weekday()]
    todays = [w for w in windows if today in (d.lower() for d in w.days)]
    if not todays:
        return SafetyCheckStatus.FAILED, f"{today} is outside every maintenance window"

    minute = now.hour * 60 + now.minute
    timed = False
    for window in todays:
        if not window.start or not window.end:
            return SafetyCheckStatus.PASSED, f"inside maintenance window ({today})"
        start, end = parse_hhmm(window.start), parse_hhmm(window.end)
        if start is None or end is None:
            return SafetyCheckStatus.PASSED, f"inside maintenance window ({today}); unparsable hours ignored"
        timed = True
        if minutes_in_range(minute, start, end):
            return SafetyCheckStatus.PASSED, f"inside maintenance window ({today} {window.start}-{window.end})"
    if timed:
        return SafetyCheckStatus.WARNING, f"{today} matches but {now:%H:%M} is outside the window hours"
    return SafetyCheckStatus.PASSED, f"inside maintenance window ({today})"


def evictable_pods_on(snapshot: ClusterSnapshot, node_names: Set[str]) -> List[Pod]:
    return [p for p in snapshot.pods if p.node_name in node_names and p.is_evictable]


def _requests(pods: List[Pod]) -> np.ndarray:
    if not pods:
        return np.zeros(2, dtype=np.float64)
    return np.array([(p.cpu_request_cores, p.memory_request_gb) for p in pods], dtype=np.float64).sum(axis=0)


def _has_hostname_anti_affinity(pod: Pod, snapshot: ClusterSnapshot) -> bool:
    for term in pod.anti_affinity:
        if term.topology_key != HOSTNAME_TOPOLOGY_KEY or not term.label_selector:
            continue
        for other in snapshot.pods:
            if other.key == pod.key or other.namespace != pod.namespace:
                continue
            if all(other.labels.get(k) == v for k, v in term.label_selector.items()):
                return True
    return False


def _can_host(node: ClusterNode, pod: Pod) -> bool:
    return pod.tolerates_all(node.taints) and pod.selector_matches(node.labels)


def _pass(category: SafetyCheckCategory, message: str, details: Optional[Dict[str, str]] = None) -> SafetyCheck:
    return SafetyCheck(category=category, status=SafetyCheckStatus.PASSED, message=message, details=details or {})


def _fail(category: SafetyCheckCategory, message: str, details: Optional[Dict[str, str]] = None) -> SafetyCheck:
    return SafetyCheck(category=category, status=SafetyCheckStatus.FAILED, message=message, details=details or {})
