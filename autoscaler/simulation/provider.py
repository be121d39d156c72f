"""
autoscaler/simulation/provider.py
─────────────────────────────────
InMemoryProvisioner: the cloud provisioning collaborator, simulated.

Lifecycle of one simulated instance
────────────────────────────────────
    provision()  → PROVISIONING  (no cluster node yet)
    status() × ready_after_polls → READY, and a ClusterNode joins the cluster
                                   with the nodegroup/offering labels and the
                                   instance-id annotation
    deprovision() → REMOVED, the ClusterNode (and its pods) disappear

Failure injection
──────────────────
    permanent_offerings   offering ids that raise PermanentProvisioningError
    fail_next(n)          next n provision() calls raise ProvisioningError
    fail_readiness(n)     next n provisioned instances report FAILED instead of READY
    never_ready(n)        next n provisioned instances stay PROVISIONING forever
    circuit_open          every call raises CircuitOpenError (fail fast)
    fail_deprovision(n, transient=True)
                          next n deprovision() calls raise TransientError
                          (or ProvisioningError with transient=False)
    fail_status(n)        next n status() calls raise ProvisioningError
    lose_instance(id)     the instance vanishes cloud-side; status() then
                          raises NotFoundError
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from autoscaler.shared.errors import (
    CircuitOpenError,
    NotFoundError,
    PermanentProvisioningError,
    ProvisioningError,
    TransientError,
)
from autoscaler.shared.models import (
    INSTANCE_ID_ANNOTATION,
    NODEGROUP_LABEL,
    OFFERING_LABEL,
    ClusterNode,
    NodeGroup,
    NodeHandle,
    NodePhase,
    OfferingSpec,
    Taint,
)
from autoscaler.simulation.cluster import InMemoryCluster

logger = logging.getLogger(__name__)


@dataclass
class _Instance:
    handle: NodeHandle
    node_group: str
    offering: OfferingSpec
    phase: NodePhase = NodePhase.PROVISIONING
    polls_left: int = 1
    outcome: NodePhase = NodePhase.READY
    labels: Dict[str, str] = field(default_factory=dict)
    taints: List[Taint] = field(default_factory=list)


class InMemoryProvisioner:
    """
    Usage:
        provider = InMemoryProvisioner(cluster)
        provider.register_node_group(node_group)
        handle = provider.seed_node("workers-a", node_group, "m5.large")  # already Ready
        provider.permanent_offerings.add("bad-offering")
    """

    def __init__(self, cluster: InMemoryCluster, ready_after_polls: int = 1) -> None:
        self._cluster = cluster
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._instances: Dict[str, _Instance] = {}
        self._groups: Dict[str, NodeGroup] = {}
        self.ready_after_polls = ready_after_polls
        self.permanent_offerings: Set[str] = set()
        self.circuit_open = False
        self._fail_next = 0
        self._fail_readiness = 0
        self._never_ready = 0
        self._fail_deprovision = 0
        self._fail_status = 0
        self._deprovision_transient = True
        self.provisioned: List[NodeHandle] = []
        self.deprovisioned: List[NodeHandle] = []

    # ── Provisioner contract ───────────────────────────────────────────────────

    def provision(self, offering: OfferingSpec, node_group: str) -> NodeHandle:
        with self._lock:
            if self.circuit_open:
                raise CircuitOpenError("provider circuit breaker is open")
            if offering.offering_id in self.permanent_offerings:
                raise PermanentProvisioningError(f"offering {offering.offering_id} is not available")
            if self._fail_next > 0:
                self._fail_next -= 1
                raise ProvisioningError(f"insufficient capacity for {offering.offering_id}")

            number = next(self._ids)
            handle = NodeHandle(
                instance_id=f"i-{number:06d}",
                node_name=f"{node_group}-{number:04d}",
                offering_id=offering.offering_id,
            )
            instance = _Instance(handle=handle, node_group=node_group, offering=offering,
                                 polls_left=self.ready_after_polls)
            if self._fail_readiness > 0:
                self._fail_readiness -= 1
                instance.outcome = NodePhase.FAILED
            elif self._never_ready > 0:
                self._never_ready -= 1
                instance.outcome = NodePhase.PROVISIONING
            group = self._groups.get(node_group)
            if group is not None:
                instance.labels = dict(group.spec.labels)
                instance.taints = list(group.spec.taints)
            self._instances[handle.instance_id] = instance
            self.provisioned.append(handle)
            logger.debug("Provisioned %s (%s) for %s", handle.node_name, offering.offering_id, node_group)
            return handle

    def deprovision(self, handle: NodeHandle) -> None:
        with self._lock:
            if self.circuit_open:
                raise CircuitOpenError("provider circuit breaker is open")
            if self._fail_deprovision > 0:
                self._fail_deprovision -= 1
                if self._deprovision_transient:
                    raise TransientError(f"provider API timed out deleting {handle.instance_id}")
                raise ProvisioningError(f"provider refused to delete {handle.instance_id}")
            instance = self._instances.get(handle.instance_id)
            if instance is not None:
                instance.phase = NodePhase.REMOVED
            self.deprovisioned.append(handle)
        self._cluster.remove_node(handle.node_name)

    def status(self, handle: NodeHandle) -> NodePhase:
        with self._lock:
            if self.circuit_open:
                raise CircuitOpenError("provider circuit breaker is open")
            instance = self._instances.get(handle.instance_id)
            if instance is None:
                raise NotFoundError(f"instance {handle.instance_id} not found")
            if self._fail_status > 0:
                self._fail_status -= 1
                raise ProvisioningError(f"provider query for {handle.instance_id} failed")
            if instance.phase != NodePhase.PROVISIONING:
                return instance.phase
            instance.polls_left -= 1
            if instance.polls_left > 0 or instance.outcome == NodePhase.PROVISIONING:
                return instance.phase
            instance.phase = instance.outcome
            joined = instance.phase == NodePhase.READY
        if joined:
            self._cluster.add_node(self._node_for(instance))
        return instance.phase

    # ── Simulation helpers ─────────────────────────────────────────────────────

    def register_node_group(self, node_group: NodeGroup) -> None:
        """New nodes for this group inherit its labels and taints."""
        with self._lock:
            self._groups[node_group.name] = node_group

    def seed_node(self, name: str, node_group: NodeGroup, offering_id: str,
                  **node_fields) -> NodeHandle:
        """Create an instance that is already Ready and in the cluster."""
        offering = node_group.spec.offering(offering_id) or OfferingSpec(offering_id=offering_id)
        with self._lock:
            number = next(self._ids)
            handle = NodeHandle(instance_id=f"i-{number:06d}", node_name=name, offering_id=offering_id)
            instance = _Instance(handle=handle, node_group=node_group.name, offering=offering,
                                 phase=NodePhase.READY, polls_left=0,
                                 labels=dict(node_group.spec.labels), taints=list(node_group.spec.taints))
            self._instances[handle.instance_id] = instance
        self._cluster.add_node(self._node_for(instance, **node_fields))
        return handle

    def fail_next(self, count: int) -> None:
        with self._lock:
            self._fail_next = count

    def fail_readiness(self, count: int) -> None:
        with self._lock:
            self._fail_readiness = count

    def never_ready(self, count: int) -> None:
        with self._lock:
            self._never_ready = count

    def fail_deprovision(self, count: int, transient: bool = True) -> None:
        with self._lock:
            self._fail_deprovision = count
            self._deprovision_transient = transient

    def fail_status(self, count: int) -> None:
        with self._lock:
            self._fail_status = count

    def lose_instance(self, instance_id: str) -> None:
        """Forget an instance without telling anyone, as a cloud-side deletion would."""
        with self._lock:
            instance = self._instances.pop(instance_id)
        self._cluster.remove_node(instance.handle.node_name)

    def instances(self, phases: Optional[Iterable[NodePhase]] = None) -> List[NodeHandle]:
        wanted = set(phases) if phases is not None else None
        with self._lock:
            return [i.handle for i in self._instances.values() if wanted is None or i.phase in wanted]

    # ── Private helpers ────────────────────────────────────────────────────────

    @staticmethod
    def _node_for(instance: _Instance, **node_fields) -> ClusterNode:
        labels = dict(instance.labels)
        labels[NODEGROUP_LABEL] = instance.node_group
        labels[OFFERING_LABEL] = instance.offering.offering_id
        labels.update(node_fields.pop("labels", {}))
        annotations = {INSTANCE_ID_ANNOTATION: instance.handle.instance_id}
        annotations.update(node_fields.pop("annotations", {}))
        node_fields.setdefault("cpu_allocatable_cores", instance.offering.cpu_cores)
        node_fields.setdefault("memory_allocatable_gb", instance.offering.memory_gb)
        return ClusterNode(
            name=instance.handle.node_name,
            labels=labels,
            annotations=annotations,
            taints=list(instance.taints),
            **node_fields,
        )

    def __repr__(self) -> str:
        return f"InMemoryProvisioner(instances={len(self._instances)}, circuit_open={self.circuit_open})"
