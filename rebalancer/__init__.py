"""
rebalancer — replace nodes with better-fitting offerings, batch by batch.

Public API:
    RebalanceAnalyzer   — which nodes to replace and whether now is safe
    RebalancePlanner    — candidates → batched RebalancePlan with rollback
    PlanValidationError — raised by RebalancePlanner.validate_plan
    RebalanceExecutor   — runs a plan: provision → wait Ready → drain, per batch
    BatchFailedError    — one batch could not complete (handled inside execute)

Usage:
    from rebalancer import RebalanceAnalyzer, RebalancePlanner, RebalanceExecutor

    analysis = analyzer.analyze(node_group, snapshot, optimizations)
    plan = planner.create_plan(node_group, analysis.eligible_now, analysis.optimization)
    result = executor.execute(plan, node_group)
"""

from rebalancer.analyzer import RebalanceAnalyzer
from rebalancer.executor import BatchFailedError, RebalanceExecutor
from rebalancer.planner import PlanValidationError, RebalancePlanner

__all__ = [
    "RebalanceAnalyzer",
    "RebalancePlanner",
    "PlanValidationError",
    "RebalanceExecutor",
    "BatchFailedError",
]
