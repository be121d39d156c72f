"""
autoscaler/control_plane/drain_orchestrator.py
──────────────────────────────────────────────
DrainOrchestrator: removes one node from service, safely.

State machine
──────────────
    READY → CORDONED → EVICTING → DRAINED → DEPROVISIONED
                 └─────────┴──→ ABORTED

  1. cordon, annotate drain-status=draining
  2. list pods bound to the node; skip terminal, DaemonSet and mirror pods
  3. evict each pod. A PDB refusal (EvictionBlockedError) is retried with
     exponential backoff up to max_eviction_retries; an already-gone pod
     (NotFoundError) counts as evicted
  4. poll until no evictable pod remains, up to drain_timeout_s
  5. deprovision through the provisioning collaborator (optional: the
     executor and scale-down pass the node's handle; a bare drain does not)

Failure handling
─────────────────
  cancellation      → ABORTED; node uncordoned, ManagedNode back to READY.
  eviction exhausted→ ABORTED; node uncordoned; DrainError.
  drain timeout     → ABORTED; node LEFT CORDONED, annotated "timeout" for
                      operator inspection; DrainTimeoutError. Never retried
                      here: the reconciler decides on the next cycle.
  deprovision error → transient (incl. circuit open): node stays
                      TERMINATING, error re-raised for the next cycle.
                      Any other ProvisioningError: ManagedNode FAILED.

A cleanup (uncordon, then annotation) shares one Deadline.fresh() of
cleanup_timeout_s, each call bounded by call_with_timeout(). The caller's
cancellation token is never consulted there, so a cancelled caller still
leaves the node consistent.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from autoscaler.shared.config import DrainConfig
from autoscaler.shared.deadline import (
    CancelledError,
    Deadline,
    DeadlineExceededError,
    call_with_timeout,
)
from autoscaler.shared.errors import (
    AutoscalerError,
    EvictionBlockedError,
    NotFoundError,
    ProvisioningError,
    TransientError,
)
from autoscaler.shared.interfaces import ClusterAPI, Provisioner
from autoscaler.shared.models import (
    DRAIN_START_ANNOTATION,
    DRAIN_STATUS_ANNOTATION,
    DrainResult,
    DrainState,
    ManagedNode,
    NodeHandle,
    NodePhase,
    Pod,
    PodDisruptionBudget,
    utcnow,
)
from autoscaler.telemetry import events as ev
from autoscaler.telemetry.events import EventRecorder

logger = logging.getLogger(__name__)

DRAIN_STATUS_DRAINING = "draining"
DRAIN_STATUS_FAILED = "failed"
DRAIN_STATUS_TIMEOUT = "timeout"
DRAIN_STATUS_COMPLETE = "complete"


class DrainError(AutoscalerError):
    """
    A drain did not complete.

    Attributes:
        reason: Human-readable explanation.
        result: DrainResult describing where the drain stopped.
    """

    def __init__(self, reason: str, result: DrainResult) -> None:
        self.result = result
        super().__init__(reason)


class DrainTimeoutError(DrainError):
    """Pods did not terminate within drain_timeout_s. The node stays cordoned."""


class DrainOrchestrator:
    """
    Usage:
        drainer = DrainOrchestrator(cluster, provisioner)
        result = drainer.drain("node-3", "workers", managed=node)  # cordon → … → deprovision
    """

    def __init__(
        self,
        cluster: ClusterAPI,
        provisioner: Provisioner,
        config: Optional[DrainConfig] = None,
        events: Optional[EventRecorder] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._cluster = cluster
        self._provisioner = provisioner
        self.config = config or DrainConfig()
        self._events = events or EventRecorder()
        self._sleep = sleep
        self._monotonic = monotonic
        self._clock = clock

    # ── Public API ─────────────────────────────────────────────────────────────

    def drain(
        self,
        node_name: str,
        node_group: str,
        managed: Optional[ManagedNode] = None,
        handle: Optional[NodeHandle] = None,
        cancel: Optional[threading.Event] = None,
        timeout_s: Optional[float] = None,
        deprovision: bool = True,
    ) -> DrainResult:
        """
        Drain `node_name` and (if a handle is known) deprovision it.

        Args:
            managed:     the ManagedNode record; its phase is advanced in step.
            handle:      provider handle; defaults to managed.handle.
            cancel:      caller cancellation token (checked between steps).
            timeout_s:   overrides drain_timeout_s.
            deprovision: False stops at DRAINED.

        Returns:
            DrainResult in state DRAINED or DEPROVISIONED.

        Raises:
            DrainTimeoutError: pods outlived the timeout (node left cordoned).
            DrainError:        cancelled or evictions exhausted (node uncordoned).
            TransientError:    deprovision hit a transient/circuit-open error.
            ProvisioningError: deprovision failed for good (node FAILED).
        """
        started = self._monotonic()
        deadline = Deadline(timeout_s or self.config.drain_timeout_s, cancel=cancel, clock=self._monotonic)
        if handle is None and managed is not None and managed.instance_id:
            handle = managed.handle
        if managed is not None:
            managed.transition_to(NodePhase.DRAINING)

        self._events.record(ev.DRAIN_STARTED, node_group, f"draining {node_name}", node=node_name)
        state = DrainState.READY
        evicted: List[str] = []
        try:
            self._cluster.cordon(node_name)
            state = DrainState.CORDONED
            self._cluster.annotate_node(node_name, {
                DRAIN_STATUS_ANNOTATION: DRAIN_STATUS_DRAINING,
                DRAIN_START_ANNOTATION: self._clock().isoformat(),
            })

            pods = [p for p in self._cluster.list_pods(node_name) if p.is_evictable]
            self._warn_on_exhausted_budgets(node_name, pods)

            state = DrainState.EVICTING
            for pod in pods:
                self._evict_with_retry(pod, deadline)
                evicted.append(pod.key)

            self._wait_for_termination(node_name, deadline)
            state = DrainState.DRAINED
        except DeadlineExceededError:
            result = self._result(node_name, DrainState.ABORTED, evicted, started,
                                  f"drain timed out after {deadline.timeout_s:.0f}s")
            self._cleanup(node_name, uncordon=False, status=DRAIN_STATUS_TIMEOUT)
            self._events.record(ev.DRAIN_FAILED, node_group, result.error, node=node_name, timeout=True)
            raise DrainTimeoutError(result.error, result)
        except CancelledError:
            result = self._result(node_name, DrainState.ABORTED, evicted, started, "drain cancelled by caller")
            self._abort(node_name, node_group, managed, result)
            raise DrainError(result.error, result)
        except DrainError as exc:
            self._abort(node_name, node_group, managed, exc.result)
            raise
        except AutoscalerError as exc:
            result = self._result(node_name, DrainState.ABORTED, evicted, started,
                                  f"drain failed in {state.value}: {exc.reason}")
            self._abort(node_name, node_group, managed, result)
            raise DrainError(result.error, result) from exc

        self._events.record(ev.NODE_DRAINED, node_group, f"{node_name} drained",
                            node=node_name, evicted=len(evicted))

        if not deprovision or handle is None:
            self._annotate_quietly(node_name, {DRAIN_STATUS_ANNOTATION: DRAIN_STATUS_COMPLETE,
                                               DRAIN_START_ANNOTATION: None})
            return self._result(node_name, DrainState.DRAINED, evicted, started)

        self._deprovision(node_name, node_group, managed, handle)
        self._events.record(ev.DRAIN_COMPLETED, node_group, f"{node_name} removed", node=node_name)
        return self._result(node_name, DrainState.DEPROVISIONED, evicted, started)

    def deprovision_only(self, node_group: str, managed: ManagedNode) -> None:
        """Finish a node left TERMINATING by an earlier transient deprovision failure."""
        self._deprovision(managed.name, node_group, managed, managed.handle)

    # ── Private helpers ────────────────────────────────────────────────────────

    def _evict_with_retry(self, pod: Pod, deadline: Deadline) -> None:
        interval = self.config.eviction_retry_interval_s
        retries = self.config.max_eviction_retries
        for attempt in range(retries + 1):
            deadline.check()
            try:
                self._cluster.evict_pod(pod.namespace, pod.name, self.config.eviction_grace_period_s)
                return
            except NotFoundError:
                return
            except EvictionBlockedError as exc:
                if attempt == retries:
                    break
                logger.info("Eviction of %s blocked (%s); retry %d/%d in %.1fs",
                            pod.key, exc.reason, attempt + 1, retries, interval)
                self._sleep(min(interval, deadline.remaining))
                interval = min(interval * 2, self.config.eviction_retry_max_interval_s)

        result = DrainResult(node_name=pod.node_name or "", state=DrainState.ABORTED,
                             error=f"eviction of {pod.key} still blocked after {retries} retries")
        raise DrainError(result.error, result)

    def _wait_for_termination(self, node_name: str, deadline: Deadline) -> None:
        while True:
            remaining = [p for p in self._cluster.list_pods(node_name) if p.is_evictable]
            if not remaining:
                return
            deadline.check()
            logger.debug("%d pod(s) still terminating on %s", len(remaining), node_name)
            self._sleep(min(self.config.poll_interval_s, deadline.remaining))

    def _warn_on_exhausted_budgets(self, node_name: str, pods: List[Pod]) -> None:
        """Pre-check only: the eviction API stays authoritative."""
        budgets: List[PodDisruptionBudget] = self._cluster.list_pdbs()
        for budget in budgets:
            if budget.disruptions_allowed < 1 and any(budget.matches(p) for p in pods):
                logger.warning("PDB %s/%s currently allows no disruptions; evictions from %s will retry",
                               budget.namespace, budget.name, node_name)

    def _deprovision(self, node_name: str, node_group: str,
                     managed: Optional[ManagedNode], handle: NodeHandle) -> None:
        if managed is not None:
            managed.transition_to(NodePhase.TERMINATING)
        try:
            self._provisioner.deprovision(handle)
        except TransientError as exc:
            logger.warning("Deprovision of %s deferred: %s", node_name, exc.reason)
            raise
        except ProvisioningError as exc:
            if managed is not None:
                managed.transition_to(NodePhase.FAILED, reason=exc.reason)
            self._events.record(ev.NODE_FAILED, node_group, f"deprovision of {node_name} failed: {exc.reason}",
                                node=node_name)
            raise
        if managed is not None:
            managed.transition_to(NodePhase.REMOVED)
        self._events.record(ev.NODE_TERMINATED, node_group, f"{node_name} deprovisioned", node=node_name)

    def _abort(self, node_name: str, node_group: str,
               managed: Optional[ManagedNode], result: DrainResult) -> None:
        self._cleanup(node_name, uncordon=True, status=DRAIN_STATUS_FAILED)
        if managed is not None and managed.phase == NodePhase.DRAINING:
            managed.transition_to(NodePhase.READY)
        self._events.record(ev.DRAIN_FAILED, node_group, result.error or "drain aborted", node=node_name)

    def _cleanup(self, node_name: str, uncordon: bool, status: str) -> None:
        """Runs on a fresh deadline, independent of the caller's deadline and token."""
        deadline = Deadline.fresh(self.config.cleanup_timeout_s, clock=self._monotonic)
        if uncordon:
            try:
                call_with_timeout(lambda: self._cluster.uncordon(node_name), deadline.remaining)
            except Exception as exc:
                logger.error("Cleanup: failed to uncordon %s: %s", node_name, exc)
        self._annotate_quietly(node_name, {DRAIN_STATUS_ANNOTATION: status, DRAIN_START_ANNOTATION: None},
                               deadline)

    def _annotate_quietly(self, node_name: str, annotations: Dict[str, Optional[str]],
                          deadline: Optional[Deadline] = None) -> None:
        deadline = deadline or Deadline.fresh(self.config.cleanup_timeout_s, clock=self._monotonic)
        if deadline.expired:
            logger.warning("No cleanup time left to annotate %s with %s", node_name, annotations)
            return
        try:
            call_with_timeout(lambda: self._cluster.annotate_node(node_name, annotations), deadline.remaining)
        except Exception as exc:
            logger.warning("Could not annotate %s with %s: %s", node_name, annotations, exc)

    def _result(self, node_name: str, state: DrainState, evicted: List[str],
                started: float, error: Optional[str] = None) -> DrainResult:
        return DrainResult(
            node_name=node_name,
            state=state,
            evicted_pods=list(evicted),
            error=error,
            duration_s=self._monotonic() - started,
        )

    def __repr__(self) -> str:
        return (
            f"DrainOrchestrator(timeout={self.config.drain_timeout_s:.0f}s, "
            f"max_eviction_retries={self.config.max_eviction_retries})"
        )
