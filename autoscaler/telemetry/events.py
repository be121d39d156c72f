"""
autoscaler/telemetry/events.py
──────────────────────────────
EventRecorder: per-action structured events for log and metrics sinks.

Every scale decision, drain, and rebalance step emits one event: a kind
from the fixed vocabulary below, the NodeGroup it concerns, a message,
and free-form fields. Events are:
  - mirrored to the log (INFO for progress, WARNING for failures),
  - kept in a bounded in-memory history (newest last) so status endpoints
    and tests can read them back.

The recorder is thread-safe: the rebalance executor records from worker
threads.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from autoscaler.shared.models import utcnow

logger = logging.getLogger(__name__)

# ── Event kinds ────────────────────────────────────────────────────────────────

PLAN_CREATED = "PlanCreated"
PLAN_STARTED = "PlanStarted"
PLAN_COMPLETED = "PlanCompleted"
PLAN_FAILED = "PlanFailed"
BATCH_STARTED = "BatchStarted"
BATCH_COMPLETED = "BatchCompleted"
BATCH_FAILED = "BatchFailed"
NODE_PROVISIONING = "NodeProvisioning"
NODE_PROVISIONED = "NodeProvisioned"
NODE_DRAINING = "NodeDraining"
NODE_DRAINED = "NodeDrained"
NODE_TERMINATED = "NodeTerminated"
NODE_FAILED = "NodeFailed"
ROLLBACK_STARTED = "RollbackStarted"
ROLLBACK_COMPLETED = "RollbackCompleted"
ROLLBACK_FAILED = "RollbackFailed"
SCALE_UP_DECIDED = "ScaleUpDecided"
SCALE_DOWN_DECIDED = "ScaleDownDecided"
SAFETY_BLOCKED = "SafetyBlocked"
DRAIN_STARTED = "DrainStarted"
DRAIN_COMPLETED = "DrainCompleted"
DRAIN_FAILED = "DrainFailed"

_WARNING_KINDS = frozenset({
    PLAN_FAILED, BATCH_FAILED, NODE_FAILED, ROLLBACK_FAILED, DRAIN_FAILED, SAFETY_BLOCKED,
})

MAX_EVENTS: int = 1000
"""History cap. Older events fall off the front."""


class AutoscalerEvent(BaseModel):
    kind: str
    node_group: str
    message: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class EventRecorder:
    """
    Usage:
        events = EventRecorder()
        events.record(NODE_DRAINED, "workers", "drained node-3", node="node-3")
        events.of_kind(NODE_DRAINED)
    """

    def __init__(
        self,
        max_events: int = MAX_EVENTS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._events: Deque[AutoscalerEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._clock = clock

    def record(self, kind: str, node_group: str, message: str, **fields: Any) -> AutoscalerEvent:
        event = AutoscalerEvent(
            kind=kind,
            node_group=node_group,
            message=message,
            fields=fields,
            timestamp=self._clock(),
        )
        with self._lock:
            self._events.append(event)
        level = logging.WARNING if kind in _WARNING_KINDS else logging.INFO
        logger.log(level, "[%s] %s: %s %s", kind, node_group, message, fields or "")
        return event

    def events(self, node_group: Optional[str] = None) -> List[AutoscalerEvent]:
        with self._lock:
            items = list(self._events)
        if node_group is None:
            return items
        return [e for e in items if e.node_group == node_group]

    def of_kind(self, kind: str) -> List[AutoscalerEvent]:
        return [e for e in self.events() if e.kind == kind]

    def kinds(self) -> List[str]:
        return [e.kind for e in self.events()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def __repr__(self) -> str:
        return f"EventRecorder(events={len(self)})"
