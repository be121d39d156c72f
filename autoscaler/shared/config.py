"""
autoscaler/shared/config.py
───────────────────────────
Configuration for every engine, plus logging setup.

Each engine takes its own pydantic-settings model so bounds are validated
at construction (a negative drain timeout fails fast, not mid-drain). Every
model reads its fields from the environment as it is built:

    AUTOSCALER_LOG_LEVEL=DEBUG
    AUTOSCALER_DRAIN_DRAIN_TIMEOUT_S=600
    AUTOSCALER_SAFETY_MIN_HEALTHY_PERCENT=80
    AUTOSCALER_ANALYZER_SKIP_NODES_WITH_LOCAL_STORAGE=false

i.e. AUTOSCALER_<SECTION>_<FIELD>, case-insensitive. Unset variables keep
defaults; keyword arguments beat the environment. AutoscalerSettings
bundles one model per section.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "AUTOSCALER_"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _section(name: str) -> SettingsConfigDict:
    return SettingsConfigDict(env_prefix=f"{ENV_PREFIX}{name.upper()}_", case_sensitive=False, extra="ignore")


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging once, to stdout."""
    name = (level or os.getenv(f"{ENV_PREFIX}LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )


# ── Engine configs ─────────────────────────────────────────────────────────────

class TrackerConfig(BaseSettings):
    """
    max_samples_per_node      → FIFO cap per node. 50 samples ≈ 8 min at 10s scrape.
    observation_window_s      → samples older than this are ignored (and pruned).
    min_samples               → fewer in-window samples ⇒ never underutilized.
    stale_after_s             → a node with no sample this recent is never underutilized.
    underutilized_sample_ratio→ fraction of in-window samples that must individually
                                be under threshold (rejects a single quiet dip).
    gc_timeout_s              → bound on the live-node listing used for GC.
    """
    model_config = _section("tracker")

    max_samples_per_node: int = Field(50, ge=1)
    observation_window_s: float = Field(600.0, gt=0)
    min_samples: int = Field(3, ge=1)
    stale_after_s: float = Field(300.0, gt=0)
    underutilized_sample_ratio: float = Field(0.8, ge=0, le=1)
    gc_timeout_s: float = Field(5.0, gt=0)


class SafetyConfig(BaseSettings):
    model_config = _section("safety")

    min_healthy_percent: float = Field(75.0, ge=0, le=100)
    reschedule_headroom_factor: float = Field(1.2, ge=1.0)
    max_requested_fraction_after_removal: float = Field(0.85, gt=0, le=1)
    max_unprotected_candidates: int = Field(2, ge=0)


class DrainConfig(BaseSettings):
    model_config = _section("drain")

    drain_timeout_s: float = Field(300.0, gt=0)
    eviction_grace_period_s: int = Field(30, ge=0)
    max_eviction_retries: int = Field(12, ge=0)
    eviction_retry_interval_s: float = Field(5.0, ge=0)
    eviction_retry_max_interval_s: float = Field(30.0, ge=0)
    poll_interval_s: float = Field(5.0, gt=0)
    cleanup_timeout_s: float = Field(10.0, gt=0)


class ScaleDecisionConfig(BaseSettings):
    model_config = _section("scale")

    max_nodes_per_scale_down: int = Field(5, ge=1)
    max_pods_per_node: int = Field(110, ge=1)


class AnalyzerConfig(BaseSettings):
    model_config = _section("analyzer")

    min_healthy_percent: float = Field(75.0, ge=0, le=100)
    skip_nodes_with_local_storage: bool = True
    respect_pdbs: bool = True
    cooldown_s: float = Field(3600.0, ge=0)
    per_node_duration_s: float = Field(300.0, ge=0)


class PlannerConfig(BaseSettings):
    model_config = _section("planner")

    drain_estimate_s: float = Field(300.0, ge=0)
    provision_estimate_s: float = Field(600.0, ge=0)
    batch_overhead_s: float = Field(60.0, ge=0)
    stateful_workload_delay_s: float = Field(30.0, ge=0)
    duration_overhead_factor: float = Field(1.2, ge=1.0)
    rollback_timeout_s: float = Field(1800.0, gt=0)


class ExecutorConfig(BaseSettings):
    model_config = _section("executor")

    drain_timeout_s: float = Field(300.0, gt=0)
    provision_timeout_s: float = Field(600.0, gt=0)
    health_check_interval_s: float = Field(10.0, gt=0)
    max_retries: int = Field(3, ge=0)
    retry_backoff_s: float = Field(2.0, ge=0)
    min_ready_fraction: float = Field(0.8, ge=0, le=1)
    cleanup_timeout_s: float = Field(10.0, gt=0)


class ReconcilerConfig(BaseSettings):
    model_config = _section("reconciler")

    resync_interval_s: float = Field(30.0, gt=0)
    requeue_base_s: float = Field(5.0, gt=0)
    requeue_max_s: float = Field(300.0, gt=0)
    status_patch_attempts: int = Field(5, ge=1)
    max_drain_attempts: int = Field(3, ge=1)
    max_parallel_node_groups: int = Field(4, ge=1)


class AutoscalerSettings(BaseModel):
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    drain: DrainConfig = Field(default_factory=DrainConfig)
    scale: ScaleDecisionConfig = Field(default_factory=ScaleDecisionConfig)
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)

    @classmethod
    def from_env(cls) -> "AutoscalerSettings":
        """Build every section from the current AUTOSCALER_<SECTION>_<FIELD> variables."""
        return cls(**{name: info.annotation() for name, info in cls.model_fields.items()})
