"""
rebalancer/executor.py
──────────────────────
RebalanceExecutor: runs a RebalancePlan batch by batch, with rollback.

Per-batch sequence
───────────────────
    1. provision one replacement per old node          (concurrent, ≤ max_concurrent)
    2. poll until every replacement reports READY      (provision_timeout_s)
    3. drain + deprovision every old node              (concurrent, ≤ max_concurrent)

Step 3 never starts before step 2 has seen every replacement Ready. Batch
N+1 never starts before batch N resolves.

Retries
────────
  provision  ProvisioningError / TransientError retried up to max_retries
             with doubling backoff. CircuitOpenError and
             PermanentProvisioningError are never retried here.
  drain      DrainError retried the same way. DrainTimeoutError is not.
             A deprovision deferred by a transient error counts as done:
             the old node is already empty and the reconciler finishes it.

Any error escaping a step, including an unexpected provider error while
polling replacements, fails the batch and goes through rollback.

Rollback (one batch only, prior batches stand)
───────────────────────────────────────────────
The plan's RollbackPlan steps run in order:
  terminate_new_nodes  a replacement whose old node was drained is KEPT
                       (count stays whole); every other one is deprovisioned
  uncordon_old_nodes   every old node that was not drained is uncordoned
  verify_workloads     the group must be back to restore_node_count nodes
pause_execution and update_status need no work here: execute() stops at
the failed batch and the caller records the result.
The whole rollback shares one fresh Deadline of the plan's timeout_s, each
call capped at cleanup_timeout_s; the caller's cancellation token is
never consulted.

Batch states: PENDING → RUNNING → SUCCEEDED | FAILED | ROLLED_BACK.
A batch whose rollback itself fails stays FAILED.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from autoscaler.control_plane.drain_orchestrator import (
    DrainError,
    DrainOrchestrator,
    DrainTimeoutError,
)
from autoscaler.shared.config import ExecutorConfig
from autoscaler.shared.deadline import (
    CancelledError,
    Deadline,
    DeadlineExceededError,
    call_with_timeout,
)
from autoscaler.shared.errors import (
    AutoscalerError,
    CircuitOpenError,
    PermanentProvisioningError,
    ProvisioningError,
    TransientError,
)
from autoscaler.shared.interfaces import ClusterAPI, Provisioner
from autoscaler.shared.models import (
    INSTANCE_ID_ANNOTATION,
    CandidateNode,
    ExecutionState,
    ExecutionStatus,
    BatchRollback,
    ManagedNode,
    NodeBatch,
    NodeGroup,
    NodeHandle,
    NodePhase,
    OfferingSpec,
    RebalancePlan,
    RebalanceResult,
    RollbackAction,
    RollbackPlan,
    utcnow,
)
from autoscaler.telemetry import events as ev
from autoscaler.telemetry.events import EventRecorder

logger = logging.getLogger(__name__)

_DEFAULT_ROLLBACK = (
    RollbackAction.TERMINATE_NEW_NODES,
    RollbackAction.UNCORDON_OLD_NODES,
    RollbackAction.VERIFY_WORKLOADS,
)


class BatchFailedError(AutoscalerError):
    """
    One batch could not complete.

    Attributes:
        reason:       what went wrong.
        batch_number: the failed batch.
        created:      old node name → replacement ManagedNode provisioned so far.
        drained:      old nodes whose pods were already evicted.
    """

    def __init__(self, batch_number: int, reason: str,
                 created: Dict[str, ManagedNode], drained: Set[str]) -> None:
        self.batch_number = batch_number
        self.created = created
        self.drained = drained
        super().__init__(reason)


class RebalanceExecutor:
    """
    Usage:
        executor = RebalanceExecutor(cluster, provisioner, drainer)
        result = executor.execute(plan, node_group, registry=managed_nodes)
        executor.get_execution_state(plan.plan_id)
    """

    def __init__(
        self,
        cluster: ClusterAPI,
        provisioner: Provisioner,
        drainer: DrainOrchestrator,
        config: Optional[ExecutorConfig] = None,
        events: Optional[EventRecorder] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._cluster = cluster
        self._provisioner = provisioner
        self._drainer = drainer
        self.config = config or ExecutorConfig()
        self._events = events or EventRecorder()
        self._sleep = sleep
        self._monotonic = monotonic
        self._clock = clock
        self._lock = threading.Lock()
        self._states: Dict[str, ExecutionState] = {}
        self._cancels: Dict[str, threading.Event] = {}

    # ── Public API ─────────────────────────────────────────────────────────────

    def execute(
        self,
        plan: RebalancePlan,
        node_group: NodeGroup,
        cancel: Optional[threading.Event] = None,
        registry: Optional[Dict[str, ManagedNode]] = None,
    ) -> RebalanceResult:
        """
        Run `plan` to completion or to its first failed batch.

        Args:
            cancel:   caller's token; checked between steps and batches.
            registry: node name → ManagedNode owned by the caller. Old nodes'
                      phases are advanced in it and replacements are added.

        Returns:
            RebalanceResult. A failed batch is reported, not raised.
        """
        started = self._monotonic()
        token = cancel or threading.Event()
        registry = registry if registry is not None else {}
        state = ExecutionState(plan_id=plan.plan_id, status=ExecutionStatus.RUNNING, started_at=self._clock(),
                               batch_status={b.batch_number: ExecutionStatus.PENDING for b in plan.batches})
        with self._lock:
            self._states[plan.plan_id] = state
            self._cancels[plan.plan_id] = token

        if not plan.batches:
            logger.info("Plan %s has no batches; nothing to rebalance", plan.plan_id)
            return self._finish(state, ExecutionStatus.SUCCEEDED, started)

        self._events.record(ev.PLAN_STARTED, plan.node_group, f"executing {plan.plan_id}",
                            plan_id=plan.plan_id, batches=len(plan.batches))
        healthy, message = self._cluster_ready()
        if not healthy:
            state.errors.append(message)
            self._events.record(ev.PLAN_FAILED, plan.node_group, message, plan_id=plan.plan_id)
            return self._finish(state, ExecutionStatus.FAILED, started)

        for batch in plan.batches:
            if token.is_set():
                state.errors.append(f"cancelled before batch {batch.batch_number}")
                self._events.record(ev.PLAN_FAILED, plan.node_group, state.errors[-1], plan_id=plan.plan_id)
                return self._finish(state, ExecutionStatus.FAILED, started)

            state.current_batch = batch.batch_number
            state.batch_status[batch.batch_number] = ExecutionStatus.RUNNING
            self._events.record(ev.BATCH_STARTED, plan.node_group, f"batch {batch.batch_number} started",
                                plan_id=plan.plan_id, batch=batch.batch_number,
                                nodes=[c.node_name for c in batch.nodes])
            try:
                self._run_batch(plan, batch, node_group, state, token, registry)
            except BatchFailedError as exc:
                state.errors.append(exc.reason)
                self._events.record(ev.BATCH_FAILED, plan.node_group, exc.reason,
                                    plan_id=plan.plan_id, batch=batch.batch_number)
                rolled_back = self._rollback(plan, batch, exc, state, registry)
                state.batch_status[batch.batch_number] = (
                    ExecutionStatus.ROLLED_BACK if rolled_back else ExecutionStatus.FAILED
                )
                self._events.record(ev.PLAN_FAILED, plan.node_group,
                                    f"{plan.plan_id} halted at batch {batch.batch_number}",
                                    plan_id=plan.plan_id)
                return self._finish(state, ExecutionStatus.FAILED, started,
                                    failed_batch=batch.batch_number, rolled_back=rolled_back)

            state.batch_status[batch.batch_number] = ExecutionStatus.SUCCEEDED
            self._events.record(ev.BATCH_COMPLETED, plan.node_group, f"batch {batch.batch_number} completed",
                                plan_id=plan.plan_id, batch=batch.batch_number)

        self._events.record(ev.PLAN_COMPLETED, plan.node_group,
                            f"{plan.plan_id} replaced {len(state.completed_nodes)} node(s)",
                            plan_id=plan.plan_id)
        return self._finish(state, ExecutionStatus.SUCCEEDED, started)

    def get_execution_state(self, plan_id: str) -> Optional[ExecutionState]:
        with self._lock:
            state = self._states.get(plan_id)
            return state.model_copy(deep=True) if state is not None else None

    def cancel(self, plan_id: str) -> bool:
        """Ask a running plan to stop. Returns False for an unknown plan."""
        with self._lock:
            token = self._cancels.get(plan_id)
        if token is None:
            return False
        token.set()
        logger.info("Cancellation requested for %s", plan_id)
        return True

    # ── Batch steps ────────────────────────────────────────────────────────────

    def _run_batch(self, plan: RebalancePlan, batch: NodeBatch, node_group: NodeGroup,
                   state: ExecutionState, cancel: threading.Event,
                   registry: Dict[str, ManagedNode]) -> None:
        """Every failure leaves as BatchFailedError, carrying what was created and drained so far."""
        created: Dict[str, ManagedNode] = {}
        drained: Set[str] = set()
        try:
            self._replace_batch(plan, batch, node_group, state, cancel, registry, created, drained)
        except BatchFailedError:
            raise
        except AutoscalerError as exc:
            raise BatchFailedError(batch.batch_number, f"batch {batch.batch_number} failed: {exc.reason}",
                                   created, drained) from exc

    def _replace_batch(self, plan: RebalancePlan, batch: NodeBatch, node_group: NodeGroup,
                       state: ExecutionState, cancel: threading.Event, registry: Dict[str, ManagedNode],
                       created: Dict[str, ManagedNode], drained: Set[str]) -> None:
        number = batch.batch_number
        handles: Dict[str, NodeHandle] = {}
        for candidate in batch.nodes:
            handle = self._handle_for(candidate, registry.get(candidate.node_name))
            if handle is None:
                raise BatchFailedError(number, f"no provider handle for {candidate.node_name}", {}, set())
            handles[candidate.node_name] = handle

        workers = max(1, min(plan.max_concurrent, len(batch.nodes)))
        errors: List[str] = []

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self._provision_with_retry, node_group, c): c for c in batch.nodes}
            for future in as_completed(futures):
                candidate = futures[future]
                try:
                    managed = future.result()
                except AutoscalerError as exc:
                    errors.append(f"provisioning replacement for {candidate.node_name} failed: {exc.reason}")
                    state.failed_nodes.append(candidate.node_name)
                    continue
                created[candidate.node_name] = managed
                with self._lock:
                    registry[managed.name] = managed
                    state.replacements[candidate.node_name] = managed.name
        if errors:
            raise BatchFailedError(number, "; ".join(errors), created, set())

        self._wait_ready(number, node_group, created, cancel)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self._drain_with_retry, node_group, c.node_name,
                            registry.get(c.node_name), handles[c.node_name], cancel, drained): c
                for c in batch.nodes
            }
            for future in as_completed(futures):
                candidate = futures[future]
                try:
                    future.result()
                except AutoscalerError as exc:
                    errors.append(f"replacing {candidate.node_name} failed: {exc.reason}")
                    state.failed_nodes.append(candidate.node_name)
                    continue
                state.completed_nodes.append(candidate.node_name)
        if errors:
            raise BatchFailedError(number, "; ".join(errors), created, drained)

    def _provision_with_retry(self, node_group: NodeGroup, candidate: CandidateNode) -> ManagedNode:
        offering = node_group.spec.offering(candidate.target_offering or None)
        if offering is None:
            offering = OfferingSpec(offering_id=candidate.target_offering)
        self._events.record(ev.NODE_PROVISIONING, node_group.name,
                            f"provisioning {offering.offering_id} to replace {candidate.node_name}",
                            replaces=candidate.node_name, offering=offering.offering_id)

        backoff = self.config.retry_backoff_s
        retries = self.config.max_retries
        for attempt in range(retries + 1):
            try:
                handle = self._provisioner.provision(offering, node_group.name)
                break
            except (CircuitOpenError, PermanentProvisioningError):
                raise
            except (ProvisioningError, TransientError) as exc:
                if attempt == retries:
                    raise
                logger.info("Provision of %s for %s failed (%s); retry %d/%d in %.1fs",
                            offering.offering_id, candidate.node_name, exc.reason, attempt + 1, retries, backoff)
                self._sleep(backoff)
                backoff *= 2

        managed = ManagedNode(name=handle.node_name, node_group=node_group.name,
                              offering_id=handle.offering_id, instance_id=handle.instance_id,
                              created_at=self._clock())
        managed.transition_to(NodePhase.PROVISIONING)
        return managed

    def _wait_ready(self, number: int, node_group: NodeGroup,
                    created: Dict[str, ManagedNode], cancel: threading.Event) -> None:
        deadline = Deadline(self.config.provision_timeout_s, cancel=cancel, clock=self._monotonic)
        waiting = dict(created)
        try:
            while True:
                for old, managed in list(waiting.items()):
                    try:
                        phase = self._provisioner.status(managed.handle)
                    except TransientError as exc:
                        logger.info("Status of %s unavailable (%s); polling again", managed.name, exc.reason)
                        continue
                    except AutoscalerError as exc:
                        raise BatchFailedError(number, f"status of replacement {managed.name} for {old} "
                                                       f"failed: {exc.reason}", created, set())
                    if phase == NodePhase.FAILED:
                        managed.transition_to(NodePhase.FAILED, reason="provider reported failure")
                        self._events.record(ev.NODE_FAILED, node_group.name,
                                            f"replacement {managed.name} failed", node=managed.name)
                        raise BatchFailedError(number, f"replacement {managed.name} for {old} failed",
                                               created, set())
                    if phase in (NodePhase.RUNNING, NodePhase.READY):
                        managed.transition_to(phase)
                    if phase == NodePhase.READY:
                        del waiting[old]
                        self._events.record(ev.NODE_PROVISIONED, node_group.name, f"{managed.name} is Ready",
                                            node=managed.name, replaces=old)
                if not waiting:
                    return
                deadline.check()
                self._sleep(min(self.config.health_check_interval_s, deadline.remaining))
        except DeadlineExceededError:
            names = sorted(m.name for m in waiting.values())
            raise BatchFailedError(
                number, f"replacement(s) {names} not Ready within {self.config.provision_timeout_s:.0f}s",
                created, set(),
            )
        except CancelledError:
            raise BatchFailedError(number, "cancelled while waiting for replacements", created, set())

    def _drain_with_retry(self, node_group: NodeGroup, node_name: str, managed: Optional[ManagedNode],
                          handle: NodeHandle, cancel: threading.Event, drained: Set[str]) -> None:
        self._events.record(ev.NODE_DRAINING, node_group.name, f"draining {node_name}", node=node_name)
        backoff = self.config.retry_backoff_s
        retries = self.config.max_retries
        for attempt in range(retries + 1):
            try:
                self._drainer.drain(node_name, node_group.name, managed=managed, handle=handle,
                                    cancel=cancel, timeout_s=self.config.drain_timeout_s)
                drained.add(node_name)
                return
            except DrainTimeoutError:
                raise
            except DrainError as exc:
                if attempt == retries or cancel.is_set():
                    raise
                logger.info("Drain of %s failed (%s); retry %d/%d in %.1fs",
                            node_name, exc.reason, attempt + 1, retries, backoff)
                self._sleep(backoff)
                backoff *= 2
            except TransientError as exc:
                drained.add(node_name)
                logger.warning("%s drained; deprovision deferred to the next reconcile: %s", node_name, exc.reason)
                return
            except ProvisioningError:
                drained.add(node_name)
                raise

    # ── Rollback ───────────────────────────────────────────────────────────────

    def _rollback(self, plan: RebalancePlan, batch: NodeBatch, failure: BatchFailedError,
                  state: ExecutionState, registry: Dict[str, ManagedNode]) -> bool:
        number = batch.batch_number
        rollback = plan.rollback_plan or RollbackPlan()
        if not rollback.auto_rollback:
            logger.warning("Auto-rollback disabled for %s; batch %d left as is", plan.plan_id, number)
            return False
        entry = rollback.for_batch(number) or BatchRollback(
            batch_number=number,
            restore_node_count=0,
            terminate_replacements_for=[c.node_name for c in batch.nodes],
            uncordon=[c.node_name for c in batch.nodes],
        )
        steps = [s.action for s in sorted(rollback.steps, key=lambda s: s.order)] or list(_DEFAULT_ROLLBACK)
        deadline = Deadline.fresh(rollback.timeout_s, clock=self._monotonic)

        self._events.record(ev.ROLLBACK_STARTED, plan.node_group, f"rolling back batch {number}",
                            plan_id=plan.plan_id, batch=number)
        ok = True
        for action in steps:
            if action == RollbackAction.TERMINATE_NEW_NODES:
                ok = self._terminate_replacements(plan, entry, failure, state, deadline) and ok
            elif action == RollbackAction.UNCORDON_OLD_NODES:
                ok = self._uncordon_old_nodes(plan, entry, failure, state, registry, deadline) and ok
            elif action == RollbackAction.VERIFY_WORKLOADS:
                ok = self._verify_node_count(plan, entry, state) and ok

        kind = ev.ROLLBACK_COMPLETED if ok else ev.ROLLBACK_FAILED
        self._events.record(kind, plan.node_group, f"rollback of batch {number} {'completed' if ok else 'failed'}",
                            plan_id=plan.plan_id, batch=number)
        return ok

    def _terminate_replacements(self, plan: RebalancePlan, entry: BatchRollback, failure: BatchFailedError,
                                state: ExecutionState, deadline: Deadline) -> bool:
        ok = True
        terminate = set(entry.terminate_replacements_for)
        for old, managed in failure.created.items():
            if old in failure.drained or old not in terminate:
                continue
            try:
                call_with_timeout(lambda: self._provisioner.deprovision(managed.handle), self._budget(deadline))
            except Exception as exc:
                ok = False
                state.errors.append(f"rollback: could not deprovision {managed.name}: {exc}")
                logger.error("Rollback of %s: deprovision of %s failed: %s", plan.plan_id, managed.name, exc)
                continue
            _retire(managed)
            state.replacements.pop(old, None)
            self._events.record(ev.NODE_TERMINATED, plan.node_group,
                                f"replacement {managed.name} deprovisioned by rollback", node=managed.name)
        return ok

    def _uncordon_old_nodes(self, plan: RebalancePlan, entry: BatchRollback, failure: BatchFailedError,
                            state: ExecutionState, registry: Dict[str, ManagedNode], deadline: Deadline) -> bool:
        ok = True
        for old in entry.uncordon:
            if old in failure.drained:
                continue
            try:
                call_with_timeout(lambda: self._cluster.uncordon(old), self._budget(deadline))
            except Exception as exc:
                ok = False
                state.errors.append(f"rollback: could not uncordon {old}: {exc}")
                logger.error("Rollback of %s: uncordon of %s failed: %s", plan.plan_id, old, exc)
                continue
            previous = registry.get(old)
            if previous is not None and previous.phase == NodePhase.DRAINING:
                previous.transition_to(NodePhase.READY)
        return ok

    def _verify_node_count(self, plan: RebalancePlan, entry: BatchRollback, state: ExecutionState) -> bool:
        """Group nodes present after rollback, against the count the plan started from."""
        present = sum(1 for n in self._cluster.list_nodes() if n.node_group == plan.node_group)
        if present >= entry.restore_node_count:
            return True
        message = (f"rollback: {plan.node_group} has {present} node(s), "
                   f"below the {entry.restore_node_count} it had before the plan")
        state.errors.append(message)
        logger.error("Rollback of %s: %s", plan.plan_id, message)
        return False

    def _budget(self, deadline: Deadline) -> float:
        return min(self.config.cleanup_timeout_s, deadline.remaining)

    # ── Private helpers ────────────────────────────────────────────────────────

    def _handle_for(self, candidate: CandidateNode, managed: Optional[ManagedNode]) -> Optional[NodeHandle]:
        if managed is not None and managed.instance_id:
            return managed.handle
        node = self._cluster.get_node(candidate.node_name)
        if node is None:
            return None
        instance_id = node.annotations.get(INSTANCE_ID_ANNOTATION)
        if not instance_id:
            return None
        return NodeHandle(instance_id=instance_id, node_name=node.name,
                          offering_id=node.offering_id or candidate.current_offering)

    def _cluster_ready(self):
        nodes = self._cluster.list_nodes()
        if not nodes:
            return False, "pre-flight: cluster reports no nodes"
        fraction = sum(1 for n in nodes if n.ready) / len(nodes)
        if fraction < self.config.min_ready_fraction:
            return False, (f"pre-flight: {fraction * 100:.0f}% of nodes Ready, "
                           f"below {self.config.min_ready_fraction * 100:.0f}%")
        return True, ""

    def _finish(self, state: ExecutionState, status: ExecutionStatus, started: float,
                failed_batch: Optional[int] = None, rolled_back: bool = False) -> RebalanceResult:
        state.status = status
        state.completed_at = self._clock()
        with self._lock:
            self._cancels.pop(state.plan_id, None)
        return RebalanceResult(
            plan_id=state.plan_id,
            status=status,
            nodes_rebalanced=len(state.completed_nodes),
            nodes_failed=len(state.failed_nodes),
            batches_succeeded=sum(1 for s in state.batch_status.values() if s == ExecutionStatus.SUCCEEDED),
            failed_batch=failed_batch,
            rolled_back=rolled_back,
            errors=list(state.errors),
            duration_s=self._monotonic() - started,
        )

    def __repr__(self) -> str:
        return (
            f"RebalanceExecutor(provision_timeout={self.config.provision_timeout_s:.0f}s, "
            f"drain_timeout={self.config.drain_timeout_s:.0f}s, max_retries={self.config.max_retries})"
        )


def _retire(managed: ManagedNode) -> None:
    """Walk a rolled-back replacement to a terminal phase."""
    if managed.phase == NodePhase.READY:
        for phase in (NodePhase.DRAINING, NodePhase.TERMINATING, NodePhase.REMOVED):
            managed.transition_to(phase)
    elif managed.is_active:
        managed.transition_to(NodePhase.FAILED, reason="deprovisioned by rollback")
