"""
autoscaler/simulation/metrics.py
────────────────────────────────
SimulatedMetricsSource: per-node (cpu%, memory%) readings around a baseline.

Each reading is clamp(N(baseline, noise_std), 0, 100), drawn from a seeded
random.Random so a test run is reproducible. noise_std=0 gives exact
baselines. Nodes come from the cluster's current node list, so a deleted
node simply stops reporting.

hang(event) makes list_node_names() block until the event is set, which is
how the collector's GC timeout is exercised.
"""

from __future__ import annotations

import random
import threading
from typing import Dict, List, Optional, Tuple

from autoscaler.shared.errors import TransientError
from autoscaler.simulation.cluster import InMemoryCluster

DEFAULT_CPU_BASELINE: float = 40.0
"""Baseline CPU utilisation for a node with no explicit baseline (%)."""

DEFAULT_MEMORY_BASELINE: float = 50.0
"""Baseline memory utilisation for a node with no explicit baseline (%)."""

NOISE_STD: float = 5.0
"""Gaussian noise std dev applied to both readings (%)."""


class SimulatedMetricsSource:
    """
    Usage:
        metrics = SimulatedMetricsSource(cluster, noise_std=0.0)
        metrics.set_baseline("workers-0001", cpu=10.0, memory=15.0)
        collector = UtilizationCollector(metrics, tracker)
    """

    def __init__(self, cluster: InMemoryCluster, noise_std: float = NOISE_STD, seed: int = 7) -> None:
        self._cluster = cluster
        self._noise = noise_std
        self._rng = random.Random(seed)
        self._baselines: Dict[str, Tuple[float, float]] = {}
        self._hang: Optional[threading.Event] = None
        self.fail_reads = False

    def sample_all(self) -> Dict[str, Tuple[float, float]]:
        if self.fail_reads:
            raise TransientError("metrics backend unavailable")
        readings = {}
        for node in self._cluster.list_nodes():
            cpu, mem = self._baselines.get(node.name, (DEFAULT_CPU_BASELINE, DEFAULT_MEMORY_BASELINE))
            readings[node.name] = (self._draw(cpu), self._draw(mem))
        return readings

    def list_node_names(self) -> List[str]:
        if self._hang is not None:
            self._hang.wait()
        return [n.name for n in self._cluster.list_nodes()]

    def set_baseline(self, node_name: str, cpu: float, memory: float) -> None:
        self._baselines[node_name] = (cpu, memory)

    def hang(self, release: threading.Event) -> None:
        """Block node listing until `release` is set."""
        self._hang = release

    def _draw(self, mean: float) -> float:
        if self._noise <= 0:
            return mean
        return max(0.0, min(100.0, self._rng.gauss(mean, self._noise)))
