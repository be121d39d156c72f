"""
autoscaler/control_plane/reconciler.py
──────────────────────────────────────
NodeGroupReconciler: the per-NodeGroup control loop.

One reconcile(namespace, name) call
────────────────────────────────────
    0. leader?                         no → skip, try again next resync
    1. per-NodeGroup lock (non-blocking)
         held by another trigger      → mark dirty, return "coalesced";
                                        the holder runs exactly one more pass
    2. sync the ManagedNode registry with the cluster
         adopt group nodes we have never seen, forget vanished ones
         and FAILED ones already reported,
         advance PROVISIONING nodes via provider status() (one node's
         status error never stalls the others; a lost or failed
         instance becomes FAILED and is deprovisioned),
         finish TERMINATING nodes left by a deferred deprovision,
         retry timed-out drains up to max_drain_attempts, then escalate
    3. patch counts + conditions
    4. ScaleDecisionEngine.evaluate()
         UP    → provision the missing nodes
         DOWN  → drain + deprovision candidates one by one
         NONE  → rebalance, when enabled and nothing is in flight
    5. patch counts + conditions + last error

Error policy
─────────────
TransientError, drain errors, plan errors and a failed rebalance are
surfaced here. They set the Error condition, record last_error, and
requeue with exponential backoff: base × 2^(failures−1), capped. The
failure counter resets on the first clean pass.

Nothing is retried forever: provisioning failures are bounded by the
provider contract, drains by max_drain_attempts, rebalance steps by the
executor's max_retries.
"""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set

from autoscaler.control_plane.drain_orchestrator import DrainOrchestrator, DrainTimeoutError
from autoscaler.control_plane.scale_decision import ScaleDecisionEngine
from autoscaler.control_plane.status import (
    clamp_desired,
    patch_status,
    record_desired,
    refresh_counts,
    set_condition,
)
from autoscaler.shared.config import ReconcilerConfig
from autoscaler.shared.errors import (
    AutoscalerError,
    NotFoundError,
    PermanentProvisioningError,
)
from autoscaler.shared.interfaces import (
    ClusterAPI,
    LeaderLease,
    NodeGroupStore,
    OptimizationSource,
    Provisioner,
)
from autoscaler.shared.models import (
    INSTANCE_ID_ANNOTATION,
    ClusterNode,
    ClusterSnapshot,
    ConditionType,
    ExecutionStatus,
    ManagedNode,
    NodeGroup,
    NodeGroupStatus,
    NodeHandle,
    NodePhase,
    OfferingSpec,
    RecommendedAction,
    ScaleDecision,
    ScaleDirection,
    utcnow,
)
from autoscaler.telemetry import events as ev
from autoscaler.telemetry.events import EventRecorder

if TYPE_CHECKING:
    from rebalancer.analyzer import RebalanceAnalyzer
    from rebalancer.executor import RebalanceExecutor
    from rebalancer.planner import RebalancePlanner

logger = logging.getLogger(__name__)

_IN_FLIGHT = (NodePhase.PENDING, NodePhase.PROVISIONING, NodePhase.RUNNING,
              NodePhase.DRAINING, NodePhase.TERMINATING)


class RebalanceFailedError(AutoscalerError):
    """A rebalance plan halted on a failed batch."""


@dataclass
class ReconcileResult:
    node_group: str
    action: str
    requeue_after_s: float
    error: Optional[str] = None


class NodeGroupReconciler:
    """
    Usage:
        reconciler = NodeGroupReconciler(store, cluster, provisioner, engine, drainer)
        result = reconciler.reconcile("default", "workers")
        time.sleep(result.requeue_after_s)
    """

    def __init__(
        self,
        store: NodeGroupStore,
        cluster: ClusterAPI,
        provisioner: Provisioner,
        engine: ScaleDecisionEngine,
        drainer: DrainOrchestrator,
        analyzer: Optional["RebalanceAnalyzer"] = None,
        planner: Optional["RebalancePlanner"] = None,
        executor: Optional["RebalanceExecutor"] = None,
        optimizations: Optional[OptimizationSource] = None,
        lease: Optional[LeaderLease] = None,
        events: Optional[EventRecorder] = None,
        config: Optional[ReconcilerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._cluster = cluster
        self._provisioner = provisioner
        self._engine = engine
        self._drainer = drainer
        self._analyzer = analyzer
        self._planner = planner
        self._executor = executor
        self._optimizations = optimizations
        self._lease = lease
        self._events = events or EventRecorder()
        self.config = config or ReconcilerConfig()
        self._clock = clock

        self._meta = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._dirty: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self.managed: Dict[str, Dict[str, ManagedNode]] = {}
        self._drain_attempts: Dict[str, int] = {}
        self._escalations: Dict[str, Dict[str, str]] = {}
        self._bad_offerings: Dict[str, Set[str]] = {}
        self._manual: Dict[str, List[str]] = {}
        self._unreleased: Dict[str, Set[str]] = {}
        self._placeholders = itertools.count(1)

    # ── Public API ─────────────────────────────────────────────────────────────

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        key = f"{namespace}/{name}"
        if self._lease is not None and not self._lease.is_leader():
            return ReconcileResult(key, "not_leader", self.config.resync_interval_s)

        lock = self._lock_for(key)
        if not lock.acquire(blocking=False):
            with self._meta:
                self._dirty.add(key)
            logger.debug("Reconcile of %s already running; coalesced", key)
            return ReconcileResult(key, "coalesced", self.config.resync_interval_s)
        try:
            while True:
                result = self._reconcile_once(namespace, name)
                with self._meta:
                    if key not in self._dirty:
                        return result
                    self._dirty.discard(key)
        finally:
            lock.release()

    def reconcile_all(self) -> List[ReconcileResult]:
        """One pass over every NodeGroup, groups in parallel."""
        groups = self._store.list_node_groups()
        if not groups:
            return []
        workers = min(self.config.max_parallel_node_groups, len(groups))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(lambda ng: self.reconcile(ng.namespace, ng.name), groups))

    def request_rebalance(self, namespace: str, name: str, node_names: List[str]) -> None:
        """Queue a manual rebalance of `node_names` for the next pass."""
        with self._meta:
            self._manual[f"{namespace}/{name}"] = list(node_names)

    def forget(self, key: str) -> None:
        """Drop every piece of state held for a deleted NodeGroup."""
        with self._meta:
            self.managed.pop(key, None)
            self._failures.pop(key, None)
            self._escalations.pop(key, None)
            self._bad_offerings.pop(key, None)
            self._manual.pop(key, None)
            self._unreleased.pop(key, None)
        self._engine.forget(key)

    # ── One pass ───────────────────────────────────────────────────────────────

    def _reconcile_once(self, namespace: str, name: str) -> ReconcileResult:
        key = f"{namespace}/{name}"
        try:
            node_group = self._store.get_node_group(namespace, name)
        except NotFoundError:
            logger.info("NodeGroup %s deleted; dropping its state", key)
            self.forget(key)
            return ReconcileResult(key, "deleted", self.config.resync_interval_s)

        try:
            action = self._act(node_group)
        except AutoscalerError as exc:
            return self._fail(node_group, exc.reason)
        except Exception as exc:
            logger.exception("Unexpected error reconciling %s", key)
            return self._fail(node_group, str(exc))

        with self._meta:
            self._failures.pop(key, None)
        requeue = self.config.resync_interval_s
        if any(n.phase in _IN_FLIGHT for n in self._registry(key).values()):
            requeue = self.config.requeue_base_s
        return ReconcileResult(key, action, requeue)

    def _act(self, node_group: NodeGroup) -> str:
        key = node_group.key
        registry = self._registry(key)
        snapshot = self._cluster.snapshot()

        self._sync_registry(node_group, registry, snapshot)
        self._advance_provisioning(node_group, registry)
        self._finish_terminating(node_group, registry)
        self._retry_timed_out_drains(node_group, registry)

        node_group = self._patch(node_group, registry)
        snapshot = self._cluster.snapshot()
        decision = self._engine.evaluate(node_group, snapshot, now=self._clock())

        if decision.direction == ScaleDirection.UP:
            self._scale_up(node_group, registry, decision)
            action = "scale_up"
        elif decision.direction == ScaleDirection.DOWN:
            self._scale_down(node_group, registry, decision)
            action = "scale_down"
        else:
            if decision.safety is not None and not decision.safety.passed:
                self._events.record(ev.SAFETY_BLOCKED, node_group.name, decision.reason,
                                    reasons=decision.safety.reasons)
            action = self._rebalance(node_group, registry, snapshot) or "none"

        self._patch(node_group, registry, clear_error=True)
        return action

    # ── Registry upkeep ────────────────────────────────────────────────────────

    def _sync_registry(self, node_group: NodeGroup, registry: Dict[str, ManagedNode],
                       snapshot: ClusterSnapshot) -> None:
        present = {n.name: n for n in snapshot.nodes_in_group(node_group.name)}
        for name, node in present.items():
            managed = registry.get(name)
            if managed is None:
                registry[name] = _adopt(node_group, node)
                logger.info("Adopted existing node %s into %s", name, node_group.name)
            elif managed.phase == NodePhase.RUNNING and node.ready:
                managed.transition_to(NodePhase.READY)

        unreleased = self._unreleased.get(node_group.key, set())
        for name, managed in list(registry.items()):
            if name in present or managed.phase in (NodePhase.PENDING, NodePhase.PROVISIONING):
                continue
            if managed.phase == NodePhase.RUNNING and managed.instance_id:
                continue
            if managed.phase == NodePhase.FAILED:
                # reported by the pass that failed it; keep only while its instance lingers
                if name in unreleased and not self._release(node_group, managed):
                    continue
                del registry[name]
                continue
            if managed.phase == NodePhase.REMOVED:
                del registry[name]
                continue
            if managed.phase in (NodePhase.READY, NodePhase.RUNNING, NodePhase.DRAINING):
                logger.warning("Node %s of %s vanished from the cluster", name, node_group.name)
                del registry[name]
                self._drain_attempts.pop(name, None)

    def _advance_provisioning(self, node_group: NodeGroup, registry: Dict[str, ManagedNode]) -> None:
        for managed in list(registry.values()):
            if managed.phase not in (NodePhase.PROVISIONING, NodePhase.RUNNING) or not managed.instance_id:
                continue
            try:
                phase = self._provisioner.status(managed.handle)
            except NotFoundError as exc:
                self._mark_failed(node_group, managed, exc.reason)
                continue
            except PermanentProvisioningError as exc:
                self._mark_failed(node_group, managed, exc.reason)
                self._release(node_group, managed)
                continue
            except AutoscalerError as exc:
                logger.warning("Status of %s unavailable (%s); polling again next pass", managed.name, exc.reason)
                continue
            if phase == NodePhase.FAILED:
                self._mark_failed(node_group, managed, "provider reported failure")
                self._release(node_group, managed)
            elif phase in (NodePhase.RUNNING, NodePhase.READY):
                managed.transition_to(phase)
                if phase == NodePhase.READY:
                    self._events.record(ev.NODE_PROVISIONED, node_group.name, f"{managed.name} is Ready",
                                        node=managed.name)

    def _finish_terminating(self, node_group: NodeGroup, registry: Dict[str, ManagedNode]) -> None:
        for managed in list(registry.values()):
            if managed.phase == NodePhase.TERMINATING:
                self._drainer.deprovision_only(node_group.name, managed)

    def _retry_timed_out_drains(self, node_group: NodeGroup, registry: Dict[str, ManagedNode]) -> None:
        escalated = self._escalations.setdefault(node_group.key, {})
        for managed in list(registry.values()):
            if managed.phase != NodePhase.DRAINING or managed.name in escalated:
                continue
            attempts = self._drain_attempts.get(managed.name)
            if attempts is None:
                continue
            if attempts >= self.config.max_drain_attempts:
                escalated[managed.name] = (f"drain of {managed.name} timed out {attempts} time(s); "
                                           f"node left cordoned for inspection")
                logger.error("Escalating %s: %s", node_group.name, escalated[managed.name])
                continue
            self._drain(node_group, managed.name, managed)

    # ── Actions ────────────────────────────────────────────────────────────────

    def _scale_up(self, node_group: NodeGroup, registry: Dict[str, ManagedNode],
                  decision: ScaleDecision) -> None:
        self._events.record(ev.SCALE_UP_DECIDED, node_group.name, decision.reason,
                            current=decision.current_nodes, desired=decision.desired_nodes)
        desired = clamp_desired(node_group, decision.desired_nodes)
        node_group = self._patch(node_group, registry, desired=desired, scaling=True)

        remaining = decision.nodes_to_add
        while remaining > 0:
            offering = self._choose_offering(node_group)
            if offering is None:
                raise PermanentProvisioningError(f"no usable offering left for {node_group.name}")
            self._events.record(ev.NODE_PROVISIONING, node_group.name,
                                f"provisioning {offering.offering_id}", offering=offering.offering_id)
            try:
                handle = self._provisioner.provision(offering, node_group.name)
            except PermanentProvisioningError as exc:
                self._bad_offerings.setdefault(node_group.key, set()).add(offering.offering_id)
                failed = ManagedNode(name=f"{node_group.name}-failed-{next(self._placeholders)}",
                                     node_group=node_group.name,
                                     offering_id=offering.offering_id, created_at=self._clock())
                failed.transition_to(NodePhase.FAILED, reason=exc.reason)
                registry[failed.name] = failed
                self._events.record(ev.NODE_FAILED, node_group.name, exc.reason, offering=offering.offering_id)
                logger.warning("Offering %s excluded for %s: %s", offering.offering_id, node_group.name, exc.reason)
                continue
            managed = ManagedNode(name=handle.node_name, node_group=node_group.name,
                                  offering_id=handle.offering_id, instance_id=handle.instance_id,
                                  created_at=self._clock())
            managed.transition_to(NodePhase.PROVISIONING)
            registry[managed.name] = managed
            remaining -= 1

    def _scale_down(self, node_group: NodeGroup, registry: Dict[str, ManagedNode],
                    decision: ScaleDecision) -> None:
        self._events.record(ev.SCALE_DOWN_DECIDED, node_group.name, decision.reason,
                            candidates=decision.candidates)
        self._patch(node_group, registry, desired=clamp_desired(node_group, decision.desired_nodes), scaling=True)
        for name in decision.candidates:
            self._drain(node_group, name, registry.get(name))

    def _drain(self, node_group: NodeGroup, name: str, managed: Optional[ManagedNode]) -> None:
        handle = self._handle_for(name, managed)
        if handle is None:
            logger.warning("Not draining %s: no provider instance id to deprovision it with", name)
            return
        try:
            self._drainer.drain(name, node_group.name, managed=managed, handle=handle)
        except DrainTimeoutError:
            self._drain_attempts[name] = self._drain_attempts.get(name, 0) + 1
            raise
        self._drain_attempts.pop(name, None)

    def _rebalance(self, node_group: NodeGroup, registry: Dict[str, ManagedNode],
                   snapshot: ClusterSnapshot) -> Optional[str]:
        policy = node_group.spec.rebalance_policy
        if not policy.enabled or None in (self._analyzer, self._planner, self._executor):
            return None
        if any(n.phase in _IN_FLIGHT for n in registry.values()):
            return None

        with self._meta:
            manual = self._manual.pop(node_group.key, None)
        optimizations = []
        if manual is None and self._optimizations is not None:
            optimizations = self._optimizations.list_optimizations(node_group.name)
        if manual is None and not optimizations:
            return None

        analysis = self._analyzer.analyze(node_group, snapshot, optimizations, manual_nodes=manual,
                                          now=self._clock())
        if not analysis.candidates:
            return None
        if analysis.recommended_action != RecommendedAction.PROCEED:
            if analysis.recommended_action == RecommendedAction.REJECT:
                self._events.record(ev.SAFETY_BLOCKED, node_group.name, "rebalance rejected",
                                    reasons=analysis.safety.reasons)
            self._patch(node_group, registry, rebalancing=(False, analysis.recommended_action.value))
            return f"rebalance_{analysis.recommended_action.value}"

        plan = self._planner.create_plan(node_group, analysis.eligible_now, analysis.optimization)
        self._planner.validate_plan(plan, node_group)
        self._events.record(ev.PLAN_CREATED, node_group.name, f"{plan.plan_id}: {plan.total_nodes} node(s)",
                            plan_id=plan.plan_id, batches=len(plan.batches))
        self._patch(node_group, registry, rebalancing=(True, "PlanExecuting"))

        result = self._executor.execute(plan, node_group, registry=registry)
        now = self._clock()
        summary = f"{result.status.value}: {result.nodes_rebalanced}/{plan.total_nodes} node(s) replaced"

        def mutate(ng: NodeGroup, status: NodeGroupStatus) -> None:
            status.last_rebalance_time = now
            status.last_rebalance_result = summary

        self._patch(node_group, registry, rebalancing=(False, result.status.value), extra=mutate)
        if result.status != ExecutionStatus.SUCCEEDED:
            raise RebalanceFailedError(f"{plan.plan_id} {summary}; " + "; ".join(result.errors))
        return "rebalance"

    # ── Status ─────────────────────────────────────────────────────────────────

    def _patch(
        self,
        node_group: NodeGroup,
        registry: Dict[str, ManagedNode],
        desired: Optional[int] = None,
        scaling: Optional[bool] = None,
        rebalancing: Optional[tuple] = None,
        clear_error: bool = False,
        error: Optional[str] = None,
        extra: Optional[Callable[[NodeGroup, NodeGroupStatus], None]] = None,
    ) -> NodeGroup:
        nodes = list(registry.values())
        in_flight = any(n.phase in _IN_FLIGHT for n in nodes)
        escalated = dict(self._escalations.get(node_group.key, {}))
        now = self._clock()

        def mutate(ng: NodeGroup, status: NodeGroupStatus) -> None:
            refresh_counts(ng, status, nodes, now)
            if desired is not None:
                record_desired(status, desired, now)
            elif status.current_nodes == status.desired_nodes and not in_flight:
                set_condition(status, ConditionType.SCALING, False, "Stable", now=now)
            if scaling:
                set_condition(status, ConditionType.SCALING, True, "Scaling",
                              f"{status.current_nodes} → {status.desired_nodes}", now=now)
            if rebalancing is not None:
                active, reason = rebalancing
                set_condition(status, ConditionType.REBALANCING, active, reason, now=now)
            if extra is not None:
                extra(ng, status)
            if error is not None:
                status.last_error = error
                set_condition(status, ConditionType.ERROR, True, "ReconcileError", error, now=now)
            elif escalated:
                status.last_error = "; ".join(escalated.values())
                set_condition(status, ConditionType.ERROR, True, "DrainTimeout", status.last_error, now=now)
            elif clear_error:
                status.last_error = None
                set_condition(status, ConditionType.ERROR, False, "NoError", now=now)

        return patch_status(self._store, node_group.namespace, node_group.name, mutate,
                            attempts=self.config.status_patch_attempts)

    def _fail(self, node_group: NodeGroup, reason: str) -> ReconcileResult:
        key = node_group.key
        with self._meta:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
        delay = min(self.config.requeue_base_s * (2 ** (failures - 1)), self.config.requeue_max_s)
        logger.warning("Reconcile of %s failed (%d in a row), requeue in %.0fs: %s", key, failures, delay, reason)
        try:
            self._patch(node_group, self._registry(key), error=reason)
        except AutoscalerError as exc:
            logger.warning("Could not record error on %s: %s", key, exc.reason)
        return ReconcileResult(key, "error", delay, error=reason)

    # ── Private helpers ────────────────────────────────────────────────────────

    def _lock_for(self, key: str) -> threading.Lock:
        with self._meta:
            return self._locks.setdefault(key, threading.Lock())

    def _registry(self, key: str) -> Dict[str, ManagedNode]:
        with self._meta:
            return self.managed.setdefault(key, {})

    def _choose_offering(self, node_group: NodeGroup) -> Optional[OfferingSpec]:
        bad = self._bad_offerings.get(node_group.key, set())
        preferred = node_group.spec.offering()
        if preferred is not None and preferred.offering_id not in bad:
            return preferred
        for offering in node_group.spec.offerings:
            if offering.offering_id not in bad:
                return offering
        if not node_group.spec.offerings and "default" not in bad:
            return OfferingSpec(offering_id="default")
        return None

    def _mark_failed(self, node_group: NodeGroup, managed: ManagedNode, reason: str) -> None:
        managed.transition_to(NodePhase.FAILED, reason=reason)
        self._events.record(ev.NODE_FAILED, node_group.name, f"{managed.name} failed to come up: {reason}",
                            node=managed.name)

    def _release(self, node_group: NodeGroup, managed: ManagedNode) -> bool:
        """Deprovision a FAILED node's instance. False leaves it queued for the next pass."""
        unreleased = self._unreleased.setdefault(node_group.key, set())
        try:
            self._provisioner.deprovision(managed.handle)
        except AutoscalerError as exc:
            unreleased.add(managed.name)
            logger.warning("Could not deprovision failed node %s: %s", managed.name, exc.reason)
            return False
        unreleased.discard(managed.name)
        self._events.record(ev.NODE_TERMINATED, node_group.name, f"failed node {managed.name} deprovisioned",
                            node=managed.name)
        return True

    def _handle_for(self, name: str, managed: Optional[ManagedNode]) -> Optional[NodeHandle]:
        if managed is not None and managed.instance_id:
            return managed.handle
        node = self._cluster.get_node(name)
        if node is None or INSTANCE_ID_ANNOTATION not in node.annotations:
            return None
        return NodeHandle(instance_id=node.annotations[INSTANCE_ID_ANNOTATION], node_name=name,
                          offering_id=node.offering_id or "")

    def __repr__(self) -> str:
        return f"NodeGroupReconciler(groups={len(self.managed)}, resync={self.config.resync_interval_s:.0f}s)"


def _adopt(node_group: NodeGroup, node: ClusterNode) -> ManagedNode:
    return ManagedNode(
        name=node.name,
        node_group=node_group.name,
        offering_id=node.offering_id or "",
        instance_id=node.annotations.get(INSTANCE_ID_ANNOTATION, ""),
        phase=NodePhase.READY if node.ready else NodePhase.RUNNING,
        created_at=node.created_at,
        ready_at=node.created_at if node.ready else None,
    )
