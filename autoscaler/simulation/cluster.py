"""
autoscaler/simulation/cluster.py
────────────────────────────────
InMemoryCluster: a Kubernetes-style API server held in a dict.

What this is
─────────────
One object implementing both collaborator contracts the control loop
talks to for cluster state:
  • ClusterAPI      — nodes, pods, PDBs, cordon/uncordon, annotate, evict
  • NodeGroupStore  — NodeGroup read + optimistic-lock status patch

Behaviour that matters to the engine is modelled faithfully:
  • eviction enforces PDBs server-side: a budget with disruptions_allowed < 1
    raises EvictionBlockedError, otherwise the budget is decremented
  • evicted pods terminate after `termination_polls` list_pods() calls
    (0 ⇒ immediately); hang_pod() keeps one terminating forever
  • status patches carry a resource_version and raise ConflictError on
    mismatch; inject_conflicts(n) simulates another writer winning n races
  • every read returns a deep copy, so callers never alias server state

Thread-safe: the rebalance executor drains nodes from worker threads.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional, Set

from autoscaler.shared.errors import ConflictError, EvictionBlockedError, NotFoundError
from autoscaler.shared.models import (
    ClusterNode,
    ClusterSnapshot,
    NodeGroup,
    NodeGroupStatus,
    Pod,
    PodDisruptionBudget,
    utcnow,
)

logger = logging.getLogger(__name__)


class InMemoryCluster:
    """
    Usage:
        cluster = InMemoryCluster(nodes=[...], pods=[...], node_groups=[ng])
        cluster.snapshot()
        cluster.patch_status("default", "workers", {"desired_nodes": 3}, ng.resource_version)
    """

    def __init__(
        self,
        nodes: Iterable[ClusterNode] = (),
        pods: Iterable[Pod] = (),
        pdbs: Iterable[PodDisruptionBudget] = (),
        node_groups: Iterable[NodeGroup] = (),
        termination_polls: int = 0,
    ) -> None:
        self._lock = threading.RLock()
        self._nodes: Dict[str, ClusterNode] = {}
        self._pods: Dict[str, Pod] = {}
        self._pdbs: Dict[str, PodDisruptionBudget] = {}
        self._node_groups: Dict[str, NodeGroup] = {}
        self._terminating: Dict[str, int] = {}
        self._hung: Set[str] = set()
        self._pending_conflicts = 0
        self.termination_polls = termination_polls
        self.evictions: List[str] = []
        self.patches: List[Dict[str, object]] = []
        for node in nodes:
            self.add_node(node)
        for pod in pods:
            self.add_pod(pod)
        for pdb in pdbs:
            self.add_pdb(pdb)
        for ng in node_groups:
            self.add_node_group(ng)

    # ── ClusterAPI ─────────────────────────────────────────────────────────────

    def snapshot(self) -> ClusterSnapshot:
        with self._lock:
            return ClusterSnapshot(
                nodes=[n.model_copy(deep=True) for n in self._nodes.values()],
                pods=[p.model_copy(deep=True) for p in self._pods.values()],
                pdbs=[b.model_copy(deep=True) for b in self._pdbs.values()],
                taken_at=utcnow(),
            )

    def list_nodes(self) -> List[ClusterNode]:
        with self._lock:
            return [n.model_copy(deep=True) for n in self._nodes.values()]

    def get_node(self, name: str) -> Optional[ClusterNode]:
        with self._lock:
            node = self._nodes.get(name)
            return node.model_copy(deep=True) if node is not None else None

    def list_pods(self, node_name: Optional[str] = None) -> List[Pod]:
        with self._lock:
            self._advance_terminations()
            return [
                p.model_copy(deep=True) for p in self._pods.values()
                if node_name is None or p.node_name == node_name
            ]

    def list_pdbs(self) -> List[PodDisruptionBudget]:
        with self._lock:
            return [b.model_copy(deep=True) for b in self._pdbs.values()]

    def cordon(self, node_name: str) -> None:
        with self._lock:
            self._node(node_name).unschedulable = True

    def uncordon(self, node_name: str) -> None:
        with self._lock:
            self._node(node_name).unschedulable = False

    def annotate_node(self, node_name: str, annotations: Dict[str, Optional[str]]) -> None:
        with self._lock:
            node = self._node(node_name)
            for key, value in annotations.items():
                if value is None:
                    node.annotations.pop(key, None)
                else:
                    node.annotations[key] = value

    def evict_pod(self, namespace: str, name: str, grace_period_s: int) -> None:
        key = f"{namespace}/{name}"
        with self._lock:
            pod = self._pods.get(key)
            if pod is None:
                raise NotFoundError(f"pod {key} not found")
            if key in self._terminating:
                return
            budgets = [b for b in self._pdbs.values() if b.matches(pod)]
            for budget in budgets:
                if budget.disruptions_allowed < 1:
                    raise EvictionBlockedError(
                        f"cannot evict {key}: PDB {budget.namespace}/{budget.name} allows no disruptions"
                    )
            for budget in budgets:
                budget.disruptions_allowed -= 1
            self.evictions.append(key)
            if self.termination_polls > 0 or key in self._hung:
                self._terminating[key] = max(1, self.termination_polls)
            else:
                del self._pods[key]

    # ── NodeGroupStore ─────────────────────────────────────────────────────────

    def get_node_group(self, namespace: str, name: str) -> NodeGroup:
        with self._lock:
            ng = self._node_groups.get(f"{namespace}/{name}")
            if ng is None:
                raise NotFoundError(f"NodeGroup {namespace}/{name} not found")
            return ng.model_copy(deep=True)

    def list_node_groups(self) -> List[NodeGroup]:
        with self._lock:
            return [ng.model_copy(deep=True) for ng in self._node_groups.values()]

    def patch_status(self, namespace: str, name: str, patch: Dict[str, object],
                     resource_version: int) -> NodeGroup:
        key = f"{namespace}/{name}"
        with self._lock:
            ng = self._node_groups.get(key)
            if ng is None:
                raise NotFoundError(f"NodeGroup {key} not found")
            if self._pending_conflicts > 0:
                self._pending_conflicts -= 1
                ng.resource_version += 1
                raise ConflictError(f"NodeGroup {key} was modified concurrently")
            if resource_version != ng.resource_version:
                raise ConflictError(
                    f"NodeGroup {key} is at resourceVersion {ng.resource_version}, patch carried {resource_version}"
                )
            merged = ng.status.model_dump()
            merged.update(patch)
            ng.status = NodeGroupStatus.model_validate(merged)
            ng.resource_version += 1
            self.patches.append(dict(patch))
            return ng.model_copy(deep=True)

    # ── Test / simulation helpers ──────────────────────────────────────────────

    def add_node(self, node: ClusterNode) -> None:
        with self._lock:
            self._nodes[node.name] = node.model_copy(deep=True)

    def remove_node(self, name: str) -> None:
        """Delete the node object and every pod bound to it."""
        with self._lock:
            self._nodes.pop(name, None)
            for key in [k for k, p in self._pods.items() if p.node_name == name]:
                del self._pods[key]
                self._terminating.pop(key, None)
                self._hung.discard(key)

    def add_pod(self, pod: Pod) -> None:
        with self._lock:
            self._pods[pod.key] = pod.model_copy(deep=True)

    def add_pdb(self, pdb: PodDisruptionBudget) -> None:
        with self._lock:
            self._pdbs[f"{pdb.namespace}/{pdb.name}"] = pdb.model_copy(deep=True)

    def add_node_group(self, node_group: NodeGroup) -> None:
        with self._lock:
            self._node_groups[node_group.key] = node_group.model_copy(deep=True)

    def update_spec(self, namespace: str, name: str, mutate: Callable[[NodeGroup], None]) -> NodeGroup:
        """An operator edit: bumps generation and resource_version."""
        with self._lock:
            ng = self._node_groups[f"{namespace}/{name}"]
            mutate(ng)
            ng.generation += 1
            ng.resource_version += 1
            return ng.model_copy(deep=True)

    def hang_pod(self, key: str) -> None:
        """The pod accepts eviction but never terminates."""
        with self._lock:
            self._hung.add(key)

    def inject_conflicts(self, count: int) -> None:
        """The next `count` status patches lose the race to another writer."""
        with self._lock:
            self._pending_conflicts = count

    # ── Private helpers ────────────────────────────────────────────────────────

    def _node(self, name: str) -> ClusterNode:
        node = self._nodes.get(name)
        if node is None:
            raise NotFoundError(f"node {name} not found")
        return node

    def _advance_terminations(self) -> None:
        for key in list(self._terminating):
            if key in self._hung:
                continue
            self._terminating[key] -= 1
            if self._terminating[key] <= 0:
                del self._terminating[key]
                self._pods.pop(key, None)

    def __repr__(self) -> str:
        return (
            f"InMemoryCluster(nodes={len(self._nodes)}, pods={len(self._pods)}, "
            f"pdbs={len(self._pdbs)}, node_groups={len(self._node_groups)})"
        )
