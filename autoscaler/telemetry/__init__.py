"""
autoscaler/telemetry — utilisation ingestion and structured events.

Public API:
    UtilizationCollector — metrics read → tracker record → bounded GC, per tick
    EventRecorder        — per-action structured events for log/metrics sinks
"""

from autoscaler.telemetry.collector import UtilizationCollector
from autoscaler.telemetry.events import AutoscalerEvent, EventRecorder

__all__ = ["UtilizationCollector", "AutoscalerEvent", "EventRecorder"]
