"""
rebalancer/planner.py
─────────────────────
RebalancePlanner: turns eligible candidates into an ordered, batched plan.

Batching
─────────
Candidates are ordered by priority_score descending and cut into batches:

    ROLLING     batch = min(policy.batch_size, policy.max_concurrent)
    SURGE       batch = policy.max_concurrent
    BLUE_GREEN  batch = policy.max_concurrent

Every batch depends on the one before it, so the executor can never start
batch N+1 before batch N resolves.

Estimates
──────────
    batch  = provision + drain + overhead + 30s × stateful workloads in the batch
    total  = Σ batch × 1.2

Rollback
─────────
Each plan carries a RollbackPlan: the global ordered steps the executor
follows when a batch fails, plus one BatchRollback per batch naming which
replacements to terminate, which old nodes to uncordon, and the node count
to restore.

An empty candidate list gives a valid plan with zero batches.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Set

from autoscaler.shared.config import PlannerConfig
from autoscaler.shared.errors import AutoscalerError
from autoscaler.shared.models import (
    BatchRollback,
    CandidateNode,
    NodeBatch,
    NodeGroup,
    Optimization,
    RebalancePlan,
    RebalanceStrategy,
    RollbackAction,
    RollbackPlan,
    RollbackStep,
    utcnow,
)

logger = logging.getLogger(__name__)

_ROLLBACK_STEPS = (
    (RollbackAction.PAUSE_EXECUTION, "stop scheduling further batches"),
    (RollbackAction.TERMINATE_NEW_NODES, "deprovision replacements whose old node is still present"),
    (RollbackAction.UNCORDON_OLD_NODES, "return the batch's old nodes to service"),
    (RollbackAction.VERIFY_WORKLOADS, "confirm evicted workloads are running again"),
    (RollbackAction.UPDATE_STATUS, "record the rollback on the NodeGroup status"),
)


class PlanValidationError(AutoscalerError):
    """
    A plan breaks one of the structural rules the executor relies on.

    Attributes:
        reason:   every violation, joined with "; ".
        problems: the individual violations.
    """

    def __init__(self, problems: List[str]) -> None:
        self.problems = problems
        super().__init__("; ".join(problems))


class RebalancePlanner:
    """
    Usage:
        planner = RebalancePlanner()
        plan = planner.create_plan(node_group, analysis.eligible_now, analysis.optimization)
        planner.validate_plan(plan, node_group)
    """

    def __init__(
        self,
        config: Optional[PlannerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or PlannerConfig()
        self._clock = clock

    # ── Public API ─────────────────────────────────────────────────────────────

    def create_plan(
        self,
        node_group: NodeGroup,
        candidates: Sequence[CandidateNode],
        optimization: Optional[Optimization] = None,
        strategy: Optional[RebalanceStrategy] = None,
    ) -> RebalancePlan:
        policy = node_group.spec.rebalance_policy
        strategy = strategy or policy.strategy
        size = self.batch_size(node_group, strategy)

        ordered = sorted(candidates, key=lambda c: c.priority_score, reverse=True)
        batches: List[NodeBatch] = []
        for start in range(0, len(ordered), size):
            number = len(batches) + 1
            nodes = list(ordered[start:start + size])
            batches.append(NodeBatch(
                batch_number=number,
                nodes=nodes,
                estimated_duration_s=self._batch_estimate(nodes),
                depends_on=[number - 1] if number > 1 else [],
            ))

        total = sum(b.estimated_duration_s for b in batches) * self.config.duration_overhead_factor
        plan = RebalancePlan(
            plan_id=f"rebalance-{node_group.name}-{uuid.uuid4().hex[:8]}",
            node_group=node_group.name,
            namespace=node_group.namespace,
            optimization=optimization,
            batches=batches,
            strategy=strategy,
            max_concurrent=policy.max_concurrent,
            rollback_plan=self._rollback_plan(node_group, batches),
            estimated_duration_s=total,
            created_at=self._clock(),
        )
        logger.info("Planned %s for %s: %d node(s) in %d batch(es), strategy=%s, est %.0fs",
                    plan.plan_id, node_group.name, plan.total_nodes, len(batches),
                    strategy.value, total)
        return plan

    def batch_size(self, node_group: NodeGroup, strategy: RebalanceStrategy) -> int:
        policy = node_group.spec.rebalance_policy
        if strategy == RebalanceStrategy.ROLLING:
            return max(1, min(policy.batch_size, policy.max_concurrent))
        return max(1, policy.max_concurrent)

    def validate_plan(self, plan: RebalancePlan, node_group: NodeGroup) -> None:
        """
        Raises:
            PlanValidationError: listing every violated rule.
        """
        problems: List[str] = []
        seen: Set[str] = set()
        numbers: Set[int] = set()

        for index, batch in enumerate(plan.batches, start=1):
            if batch.batch_number != index:
                problems.append(f"batch {batch.batch_number} is out of order (expected {index})")
            for dep in batch.depends_on:
                if dep not in numbers:
                    problems.append(f"batch {batch.batch_number} depends on later or unknown batch {dep}")
            numbers.add(batch.batch_number)

            if len(batch.nodes) > plan.max_concurrent:
                problems.append(
                    f"batch {batch.batch_number} has {len(batch.nodes)} nodes, "
                    f"above max concurrent {plan.max_concurrent}"
                )
            for node in batch.nodes:
                if node.node_name in seen:
                    problems.append(f"node {node.node_name} appears in more than one batch")
                seen.add(node.node_name)

        if plan.total_nodes > node_group.spec.max_nodes:
            problems.append(f"plan replaces {plan.total_nodes} nodes, above maxNodes {node_group.spec.max_nodes}")

        if plan.rollback_plan is None:
            problems.append("plan has no rollback plan")
        else:
            missing = [b.batch_number for b in plan.batches if plan.rollback_plan.for_batch(b.batch_number) is None]
            if missing:
                problems.append(f"no rollback entry for batch(es) {missing}")

        if problems:
            raise PlanValidationError(problems)

    # ── Private helpers ────────────────────────────────────────────────────────

    def _batch_estimate(self, nodes: List[CandidateNode]) -> float:
        cfg = self.config
        stateful = sum(n.stateful_workloads for n in nodes)
        return cfg.provision_estimate_s + cfg.drain_estimate_s + cfg.batch_overhead_s + \
            stateful * cfg.stateful_workload_delay_s

    def _rollback_plan(self, node_group: NodeGroup, batches: List[NodeBatch]) -> RollbackPlan:
        count = max(node_group.status.current_nodes, node_group.spec.min_nodes)
        return RollbackPlan(
            steps=[RollbackStep(order=i, action=action, description=text)
                   for i, (action, text) in enumerate(_ROLLBACK_STEPS, start=1)],
            batches=[
                BatchRollback(
                    batch_number=b.batch_number,
                    restore_node_count=count,
                    terminate_replacements_for=[n.node_name for n in b.nodes],
                    uncordon=[n.node_name for n in b.nodes],
                )
                for b in batches
            ],
            auto_rollback=True,
            timeout_s=self.config.rollback_timeout_s,
        )

    def __repr__(self) -> str:
        return f"RebalancePlanner(overhead_factor={self.config.duration_overhead_factor})"
