"""
autoscaler/simulation — in-memory collaborators for tests and dry runs.

Public API:
    InMemoryCluster        — ClusterAPI + NodeGroupStore with server-side PDB eviction
    InMemoryProvisioner    — Provisioner with readiness delay and failure injection
    SimulatedMetricsSource — MetricsSource producing noisy per-node utilisation
"""

from autoscaler.simulation.cluster import InMemoryCluster
from autoscaler.simulation.metrics import SimulatedMetricsSource
from autoscaler.simulation.provider import InMemoryProvisioner

__all__ = ["InMemoryCluster", "InMemoryProvisioner", "SimulatedMetricsSource"]
