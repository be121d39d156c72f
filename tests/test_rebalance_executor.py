"""
tests/test_rebalance_executor.py
────────────────────────────────
RebalanceExecutor against the in-memory cluster and provisioner.

Test groups:
    Group 1 — Successful execution (4 tests)
    Group 2 — Batch failure and rollback (7 tests)
    Group 3 — Pre-flight, cancellation and state (4 tests)

Total: 15 tests
"""

from __future__ import annotations

import itertools
import threading
from typing import Dict, List, Optional, Tuple

import pytest

from autoscaler.control_plane.drain_orchestrator import DrainOrchestrator
from autoscaler.shared.config import DrainConfig, ExecutorConfig
from autoscaler.shared.errors import ProvisioningError
from autoscaler.shared.models import (
    CandidateNode,
    ClusterNode,
    ExecutionStatus,
    ManagedNode,
    NodeGroup,
    NodeGroupSpec,
    NodeHandle,
    NodePhase,
    OfferingSpec,
    Pod,
    PodDisruptionBudget,
    RebalancePlan,
    RebalancePolicy,
    RebalanceStrategy,
)
from autoscaler.simulation import InMemoryCluster, InMemoryProvisioner
from autoscaler.telemetry import EventRecorder
from autoscaler.telemetry import events as ev
from rebalancer.executor import RebalanceExecutor
from rebalancer.planner import RebalancePlanner


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _ReadyCountingProvisioner(InMemoryProvisioner):
    """Records how many Ready nodes the cluster has at each deprovision."""

    def __init__(self, cluster: InMemoryCluster) -> None:
        super().__init__(cluster)
        self.cluster = cluster
        self.ready_at_deprovision: List[int] = []

    def deprovision(self, handle: NodeHandle) -> None:
        self.ready_at_deprovision.append(sum(1 for n in self.cluster.list_nodes() if n.ready))
        super().deprovision(handle)


def _make_node_group(strategy: RebalanceStrategy = RebalanceStrategy.ROLLING) -> NodeGroup:
    return NodeGroup(name="workers", spec=NodeGroupSpec(
        min_nodes=1,
        max_nodes=6,
        offerings=[OfferingSpec(offering_id="m5.large"), OfferingSpec(offering_id="m6g.large")],
        rebalance_policy=RebalancePolicy(enabled=True, strategy=strategy, max_concurrent=2),
    ))


class _Env:
    def __init__(self, clock, count: int, strategy: RebalanceStrategy = RebalanceStrategy.ROLLING,
                 drain_config: Optional[DrainConfig] = None, **executor_config) -> None:
        self.clock = clock
        self.node_group = _make_node_group(strategy)
        self.cluster = InMemoryCluster()
        self.provider = _ReadyCountingProvisioner(self.cluster)
        self.provider.register_node_group(self.node_group)
        self.registry: Dict[str, ManagedNode] = {}
        for i in range(1, count + 1):
            handle = self.provider.seed_node(f"w-{i}", self.node_group, "m5.large")
            self.registry[handle.node_name] = ManagedNode(
                name=handle.node_name, node_group="workers", offering_id="m5.large",
                instance_id=handle.instance_id, phase=NodePhase.READY,
            )
        self.events = EventRecorder(clock=clock.now)
        drainer = DrainOrchestrator(self.cluster, self.provider, drain_config or DrainConfig(),
                                    events=self.events, sleep=clock.sleep,
                                    monotonic=clock.monotonic, clock=clock.now)
        self.executor = RebalanceExecutor(self.cluster, self.provider, drainer, ExecutorConfig(**executor_config),
                                          events=self.events, sleep=clock.sleep,
                                          monotonic=clock.monotonic, clock=clock.now)

    def plan(self, *names: str) -> RebalancePlan:
        candidates = [
            CandidateNode(node_name=name, current_offering="m5.large", target_offering="m6g.large",
                          priority_score=float(100 - i))
            for i, name in enumerate(names)
        ]
        return RebalancePlanner(clock=self.clock.now).create_plan(self.node_group, candidates)

    def node_names(self) -> List[str]:
        return sorted(n.name for n in self.cluster.list_nodes())


def _block_drain(env: _Env, node: str) -> Tuple[Pod, PodDisruptionBudget]:
    pod = Pod(name="db-0", node_name=node, labels={"app": "db"})
    pdb = PodDisruptionBudget(name="db", selector={"app": "db"}, disruptions_allowed=0)
    env.cluster.add_pod(pod)
    env.cluster.add_pdb(pdb)
    return pod, pdb


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — Successful execution
# ─────────────────────────────────────────────────────────────────────────────

class TestExecute:
    def test_rolling_replaces_every_node(self, clock):
        env = _Env(clock, count=2)
        result = env.executor.execute(env.plan("w-1", "w-2"), env.node_group, registry=env.registry)

        assert result.status == ExecutionStatus.SUCCEEDED
        assert (result.nodes_rebalanced, result.batches_succeeded) == (2, 2)
        assert env.node_names() == ["workers-0003", "workers-0004"]
        assert env.registry["w-1"].phase == NodePhase.REMOVED
        assert env.registry["workers-0003"].phase == NodePhase.READY
        assert {n.offering_id for n in env.cluster.list_nodes()} == {"m6g.large"}

    def test_replacement_ready_before_old_node_drains(self, clock):
        """Capacity never dips: every deprovision happens with old + replacement Ready."""
        env = _Env(clock, count=2)
        env.executor.execute(env.plan("w-1", "w-2"), env.node_group, registry=env.registry)

        assert env.provider.ready_at_deprovision == [3, 3]
        kinds = env.events.kinds()
        assert kinds.index(ev.NODE_PROVISIONED) < kinds.index(ev.NODE_DRAINING)

    def test_surge_batch_runs_concurrently(self, clock):
        env = _Env(clock, count=2, strategy=RebalanceStrategy.SURGE)
        plan = env.plan("w-1", "w-2")
        assert len(plan.batches) == 1

        result = env.executor.execute(plan, env.node_group, registry=env.registry)

        assert result.status == ExecutionStatus.SUCCEEDED
        assert sorted(env.executor.get_execution_state(plan.plan_id).replacements) == ["w-1", "w-2"]
        assert len(env.provider.ready_at_deprovision) == 2
        assert min(env.provider.ready_at_deprovision) >= 3

    def test_transient_provision_failure_is_retried(self, clock):
        """Handles come from the instance-id annotation when no registry is passed."""
        env = _Env(clock, count=1)
        env.provider.fail_next(1)

        result = env.executor.execute(env.plan("w-1"), env.node_group)

        assert result.status == ExecutionStatus.SUCCEEDED
        assert clock.sleeps == [2.0]
        assert env.node_names() == ["workers-0002"]


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Batch failure and rollback
# ─────────────────────────────────────────────────────────────────────────────

class TestRollback:
    def test_failed_drain_rolls_back_only_that_batch(self, clock):
        env = _Env(clock, count=3, drain_config=DrainConfig(max_eviction_retries=0),
                   max_retries=1, retry_backoff_s=1.0)
        _block_drain(env, "w-2")
        plan = env.plan("w-1", "w-2", "w-3")

        result = env.executor.execute(plan, env.node_group, registry=env.registry)

        assert result.status == ExecutionStatus.FAILED
        assert result.failed_batch == 2
        assert result.rolled_back is True
        state = env.executor.get_execution_state(plan.plan_id)
        assert state.batch_status == {
            1: ExecutionStatus.SUCCEEDED,
            2: ExecutionStatus.ROLLED_BACK,
            3: ExecutionStatus.PENDING,
        }
        assert env.node_names() == ["w-2", "w-3", "workers-0004"], "batch 1 stands, batch 2 replacement gone"
        assert env.cluster.get_node("w-2").schedulable
        assert env.registry["w-2"].phase == NodePhase.READY
        assert env.registry["workers-0005"].phase == NodePhase.REMOVED
        assert clock.sleeps == [1.0], "one drain retry"
        assert ev.ROLLBACK_COMPLETED in env.events.kinds()

    def test_permanent_offering_fails_fast(self, clock):
        env = _Env(clock, count=1)
        env.provider.permanent_offerings.add("m6g.large")

        result = env.executor.execute(env.plan("w-1"), env.node_group, registry=env.registry)

        assert result.status == ExecutionStatus.FAILED
        assert result.rolled_back is True
        assert result.nodes_failed == 1
        assert clock.sleeps == [], "permanent errors are not retried"
        assert env.node_names() == ["w-1"]

    def test_replacement_never_ready(self, clock):
        env = _Env(clock, count=1, provision_timeout_s=30.0, health_check_interval_s=10.0)
        env.provider.never_ready(1)

        result = env.executor.execute(env.plan("w-1"), env.node_group, registry=env.registry)

        assert result.status == ExecutionStatus.FAILED
        assert "not Ready within 30s" in result.errors[0]
        assert clock.sleeps == [10.0, 10.0, 10.0]
        assert env.registry["workers-0002"].phase == NodePhase.FAILED
        assert [h.node_name for h in env.provider.deprovisioned] == ["workers-0002"]
        assert env.registry["w-1"].phase == NodePhase.READY

    def test_deferred_deprovision_counts_as_done(self, clock):
        env = _Env(clock, count=1)
        env.provider.fail_deprovision(1)

        result = env.executor.execute(env.plan("w-1"), env.node_group, registry=env.registry)

        assert result.status == ExecutionStatus.SUCCEEDED
        assert env.registry["w-1"].phase == NodePhase.TERMINATING
        assert "w-1" in env.node_names(), "the reconciler finishes the deprovision"

    def test_provisioning_failure_in_middle_batch(self, clock, monkeypatch):
        """Batch 1 stands, batch 2's one created replacement goes, batch 3 never starts."""
        env = _Env(clock, count=6, strategy=RebalanceStrategy.SURGE, max_retries=0)
        env.node_group.status.current_nodes = 6
        calls = itertools.count(1)
        provision = env.provider.provision

        def third_call_fails(offering, node_group):
            if next(calls) == 3:
                raise ProvisioningError(f"insufficient capacity for {offering.offering_id}")
            return provision(offering, node_group)

        monkeypatch.setattr(env.provider, "provision", third_call_fails)
        plan = env.plan("w-1", "w-2", "w-3", "w-4", "w-5", "w-6")
        assert len(plan.batches) == 3

        result = env.executor.execute(plan, env.node_group, registry=env.registry)

        assert (result.status, result.failed_batch, result.rolled_back) == (ExecutionStatus.FAILED, 2, True)
        assert result.nodes_rebalanced == 2
        state = env.executor.get_execution_state(plan.plan_id)
        assert state.batch_status == {
            1: ExecutionStatus.SUCCEEDED,
            2: ExecutionStatus.ROLLED_BACK,
            3: ExecutionStatus.PENDING,
        }
        assert sorted(state.replacements) == ["w-1", "w-2"]
        assert env.node_names() == ["w-3", "w-4", "w-5", "w-6", "workers-0007", "workers-0008"]
        assert sorted(h.node_name for h in env.provider.deprovisioned) == ["w-1", "w-2", "workers-0009"]
        assert env.registry["workers-0009"].phase == NodePhase.FAILED
        assert all(env.cluster.get_node(n).schedulable for n in ("w-3", "w-4"))

    def test_status_error_while_waiting_rolls_back(self, clock):
        env = _Env(clock, count=1)
        env.provider.fail_status(1)
        plan = env.plan("w-1")

        result = env.executor.execute(plan, env.node_group, registry=env.registry)

        assert result.status == ExecutionStatus.FAILED
        assert result.rolled_back is True
        assert "status of replacement workers-0002 for w-1 failed" in result.errors[0]
        assert [h.node_name for h in env.provider.deprovisioned] == ["workers-0002"]
        assert env.registry["workers-0002"].phase == NodePhase.FAILED
        assert env.registry["w-1"].phase == NodePhase.READY
        assert env.executor.get_execution_state(plan.plan_id).status == ExecutionStatus.FAILED

    def test_rollback_short_of_starting_node_count_fails(self, clock):
        """A node lost while the plan ran leaves the group short; the rollback says so."""
        env = _Env(clock, count=2)
        env.node_group.status.current_nodes = 2
        plan = env.plan("w-1")
        env.cluster.remove_node("w-2")
        env.provider.permanent_offerings.add("m6g.large")

        result = env.executor.execute(plan, env.node_group, registry=env.registry)

        assert result.status == ExecutionStatus.FAILED
        assert result.rolled_back is False
        assert result.errors[-1] == "rollback: workers has 1 node(s), below the 2 it had before the plan"
        assert env.executor.get_execution_state(plan.plan_id).batch_status[1] == ExecutionStatus.FAILED
        assert ev.ROLLBACK_FAILED in env.events.kinds()


# ─────────────────────────────────────────────────────────────────────────────
# Group 3 — Pre-flight, cancellation and state
# ─────────────────────────────────────────────────────────────────────────────

class TestPreflightAndState:
    def test_empty_plan_succeeds(self, clock):
        env = _Env(clock, count=1)
        result = env.executor.execute(env.plan(), env.node_group)
        assert result.status == ExecutionStatus.SUCCEEDED
        assert env.provider.provisioned == []

    def test_unhealthy_cluster_fails_preflight(self, clock):
        env = _Env(clock, count=2)
        env.cluster.add_node(ClusterNode(name="other-1", ready=False))
        env.cluster.add_node(ClusterNode(name="other-2", ready=False))

        result = env.executor.execute(env.plan("w-1"), env.node_group, registry=env.registry)

        assert result.status == ExecutionStatus.FAILED
        assert result.errors[0].startswith("pre-flight: 50% of nodes Ready")
        assert env.provider.provisioned == []

    def test_cancelled_before_first_batch(self, clock):
        env = _Env(clock, count=1)
        token = threading.Event()
        token.set()

        result = env.executor.execute(env.plan("w-1"), env.node_group, cancel=token, registry=env.registry)

        assert result.status == ExecutionStatus.FAILED
        assert result.errors == ["cancelled before batch 1"]
        assert env.provider.provisioned == []

    def test_state_lookup_and_unknown_cancel(self, clock):
        env = _Env(clock, count=1)
        plan = env.plan("w-1")
        env.executor.execute(plan, env.node_group, registry=env.registry)

        state = env.executor.get_execution_state(plan.plan_id)
        assert state.status == ExecutionStatus.SUCCEEDED
        assert state.completed_nodes == ["w-1"]
        state.completed_nodes.clear()
        assert env.executor.get_execution_state(plan.plan_id).completed_nodes == ["w-1"], "state is copied out"

        assert env.executor.get_execution_state("missing") is None
        assert env.executor.cancel("missing") is False
        assert env.executor.cancel(plan.plan_id) is False, "finished plans cannot be cancelled"
