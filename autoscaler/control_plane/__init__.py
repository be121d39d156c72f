"""
autoscaler/control_plane — decisions and the actions that carry them out.

Public API:

    Safety:
        SafetyGate           — five-check pre-gate for every disruptive action
        GateAction           — SCALE_DOWN | REBALANCE (selects cooldowns/windows)

    Policy:
        PolicyEngine         — scale-down mode, thresholds, time windows, presets
        PolicyPreset         — production | development | cost-saving
        TimeWindow           — hour/weekday range that switches the mode

    Actions:
        DrainOrchestrator    — cordon → evict → wait → deprovision, one node
        DrainError           — drain aborted (node uncordoned)
        DrainTimeoutError    — pods outlived the timeout (node left cordoned)
        ScaleDecisionEngine  — per-NodeGroup UP / DOWN / NONE

    Loop:
        NodeGroupReconciler  — one serialized control loop per NodeGroup
        ReconcileResult      — what a pass did and when to requeue
        patch_status()       — optimistic-lock read-modify-patch of NodeGroup status
"""

from autoscaler.control_plane.safety_gate import GateAction, SafetyGate
from autoscaler.control_plane.policies import PolicyEngine, PolicyPreset, TimeWindow
from autoscaler.control_plane.drain_orchestrator import (
    DrainError,
    DrainOrchestrator,
    DrainTimeoutError,
)
from autoscaler.control_plane.scale_decision import ScaleDecisionEngine
from autoscaler.control_plane.status import patch_status
from autoscaler.control_plane.reconciler import NodeGroupReconciler, ReconcileResult

__all__ = [
    "SafetyGate",
    "GateAction",
    "PolicyEngine",
    "PolicyPreset",
    "TimeWindow",
    "DrainOrchestrator",
    "DrainError",
    "DrainTimeoutError",
    "ScaleDecisionEngine",
    "NodeGroupReconciler",
    "ReconcileResult",
    "patch_status",
]
