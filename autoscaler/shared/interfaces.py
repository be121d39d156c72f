"""
autoscaler/shared/interfaces.py
───────────────────────────────
Narrow contracts for everything the core consumes but does not own.

The core never imports a concrete client. Engines receive these as
constructor arguments, so tests run against the in-memory implementations
in autoscaler/simulation/ and production wires in real clients.

Collaborator guarantees the core relies on
───────────────────────────────────────────
Provisioner   → already wrapped in retry/backoff and a circuit breaker.
                An open breaker surfaces as CircuitOpenError and must not be
                retried synchronously.
ClusterAPI    → evict_pod() enforces PDBs server-side (EvictionBlockedError)
                and is authoritative alongside the core's own PDB pre-check.
NodeGroupStore→ patch_status() rejects a stale resource_version with
                ConflictError.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Tuple

from autoscaler.shared.models import (
    ClusterNode,
    ClusterSnapshot,
    NodeGroup,
    NodeHandle,
    NodePhase,
    OfferingSpec,
    Optimization,
    Pod,
    PodDisruptionBudget,
)


class ClusterAPI(Protocol):
    def snapshot(self) -> ClusterSnapshot: ...

    def list_nodes(self) -> List[ClusterNode]: ...

    def get_node(self, name: str) -> Optional[ClusterNode]: ...

    def list_pods(self, node_name: Optional[str] = None) -> List[Pod]: ...

    def list_pdbs(self) -> List[PodDisruptionBudget]: ...

    def cordon(self, node_name: str) -> None: ...

    def uncordon(self, node_name: str) -> None: ...

    def annotate_node(self, node_name: str, annotations: Dict[str, Optional[str]]) -> None:
        """Set annotations; a None value removes the key."""
        ...

    def evict_pod(self, namespace: str, name: str, grace_period_s: int) -> None:
        """Raises EvictionBlockedError (PDB) or NotFoundError (already gone)."""
        ...


class Provisioner(Protocol):
    def provision(self, offering: OfferingSpec, node_group: str) -> NodeHandle: ...

    def deprovision(self, handle: NodeHandle) -> None: ...

    def status(self, handle: NodeHandle) -> NodePhase: ...


class NodeGroupStore(Protocol):
    def get_node_group(self, namespace: str, name: str) -> NodeGroup: ...

    def list_node_groups(self) -> List[NodeGroup]: ...

    def patch_status(
        self,
        namespace: str,
        name: str,
        patch: Dict[str, object],
        resource_version: int,
    ) -> NodeGroup: ...


class MetricsSource(Protocol):
    def sample_all(self) -> Dict[str, Tuple[float, float]]:
        """node_name → (cpu_pct, memory_pct) for every node with a reading."""
        ...

    def list_node_names(self) -> List[str]:
        """Names of every node currently in the cluster. May block."""
        ...


class OptimizationSource(Protocol):
    def list_optimizations(self, node_group: str) -> List[Optimization]: ...


class LeaderLease(Protocol):
    def is_leader(self) -> bool: ...
