"""
autoscaler/control_plane/status.py
──────────────────────────────────
NodeGroup status: counts, conditions, and the only sanctioned write path.

Write discipline
─────────────────
Status is never overwritten wholesale. patch_status():
  1. reads the latest NodeGroup (and its resource_version),
  2. applies the caller's mutation to a deep copy of its status,
  3. sends only the top-level fields that changed, tagged with the
     resource_version it read,
  4. on ConflictError (someone else wrote first, e.g. another replica
     during a leadership handoff) re-reads and re-applies, up to
     `attempts` times.
observed_generation is only ever raised, never lowered.

Conditions
───────────
set_condition() updates reason/message in place and only moves
last_transition_time when the boolean status actually flips.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional

from autoscaler.shared.errors import ConflictError
from autoscaler.shared.interfaces import NodeGroupStore
from autoscaler.shared.models import (
    ConditionType,
    ManagedNode,
    NodeGroup,
    NodeGroupCondition,
    NodeGroupStatus,
    NodeInfo,
    NodePhase,
    utcnow,
)

logger = logging.getLogger(__name__)

StatusMutation = Callable[[NodeGroup, NodeGroupStatus], None]


# ── Conditions ────────────────────────────────────────────────────────────────

def set_condition(
    status: NodeGroupStatus,
    condition_type: ConditionType,
    value: bool,
    reason: str = "",
    message: str = "",
    now: Optional[datetime] = None,
) -> None:
    now = now or utcnow()
    existing = status.condition(condition_type)
    if existing is None:
        status.conditions.append(NodeGroupCondition(
            type=condition_type, status=value, reason=reason,
            message=message, last_transition_time=now,
        ))
        return
    if existing.status != value:
        existing.last_transition_time = now
    existing.status = value
    existing.reason = reason
    existing.message = message


def is_condition_true(status: NodeGroupStatus, condition_type: ConditionType) -> bool:
    cond = status.condition(condition_type)
    return cond is not None and cond.status


# ── Counts ────────────────────────────────────────────────────────────────────

def refresh_counts(node_group: NodeGroup, status: NodeGroupStatus,
                   managed: Iterable[ManagedNode], now: Optional[datetime] = None) -> None:
    """
    Recompute current/ready counts and the node list from managed nodes,
    then the capacity conditions. FAILED nodes are listed but not counted;
    REMOVED nodes are dropped.
    """
    nodes = list(managed)
    active = [n for n in nodes if n.is_active]
    status.current_nodes = len(active)
    status.ready_nodes = sum(1 for n in active if n.phase == NodePhase.READY)
    status.nodes = [
        NodeInfo(node_name=n.name, instance_id=n.instance_id, offering_id=n.offering_id, phase=n.phase)
        for n in nodes if n.phase != NodePhase.REMOVED
    ]
    if status.desired_nodes == 0:
        status.desired_nodes = max(node_group.spec.min_nodes, status.current_nodes)

    spec = node_group.spec
    set_condition(status, ConditionType.AT_MIN_CAPACITY, status.current_nodes <= spec.min_nodes,
                  "AtMinCapacity" if status.current_nodes <= spec.min_nodes else "AboveMin", now=now)
    set_condition(status, ConditionType.AT_MAX_CAPACITY, status.current_nodes >= spec.max_nodes,
                  "AtMaxCapacity" if status.current_nodes >= spec.max_nodes else "BelowMax", now=now)
    ready = status.ready_nodes >= spec.min_nodes
    set_condition(status, ConditionType.READY, ready,
                  "MinNodesReady" if ready else "WaitingForNodes",
                  f"{status.ready_nodes}/{status.current_nodes} nodes ready", now=now)


def clamp_desired(node_group: NodeGroup, desired: int) -> int:
    return max(node_group.spec.min_nodes, min(node_group.spec.max_nodes, desired))


def record_desired(status: NodeGroupStatus, desired: int, now: Optional[datetime] = None) -> None:
    """Set desired_nodes; stamp scale times only when it actually changes."""
    if status.desired_nodes == desired:
        return
    now = now or utcnow()
    status.last_scale_time = now
    if desired > status.current_nodes:
        status.last_scale_up_time = now
    elif desired < status.current_nodes:
        status.last_scale_down_time = now
    status.desired_nodes = desired


# ── Patching ──────────────────────────────────────────────────────────────────

def diff_status(before: NodeGroupStatus, after: NodeGroupStatus) -> Dict[str, object]:
    """Top-level fields of `after` that differ from `before`."""
    old = before.model_dump()
    new = after.model_dump()
    return {k: v for k, v in new.items() if old.get(k) != v}


def patch_status(
    store: NodeGroupStore,
    namespace: str,
    name: str,
    mutate: StatusMutation,
    attempts: int = 5,
) -> NodeGroup:
    """
    Read-modify-patch with retry on conflict.

    Raises:
        ConflictError: every attempt lost the race.
    """
    for attempt in range(1, attempts + 1):
        node_group = store.get_node_group(namespace, name)
        before = node_group.status
        after = before.model_copy(deep=True)
        mutate(node_group, after)
        after.observed_generation = max(before.observed_generation, node_group.generation)

        patch = diff_status(before, after)
        if not patch:
            return node_group
        try:
            return store.patch_status(namespace, name, patch, node_group.resource_version)
        except ConflictError as exc:
            logger.info("Status patch for %s/%s conflicted (attempt %d/%d): %s",
                        namespace, name, attempt, attempts, exc.reason)
    raise ConflictError(f"status patch for {namespace}/{name} lost {attempts} consecutive races")
