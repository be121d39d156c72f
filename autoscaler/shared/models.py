"""
autoscaler/shared/models.py
───────────────────────────
The single source of truth for every data structure the autoscaler reasons about.

Design philosophy
-----------------
Every model answers one question: "What does the control loop *need to know*
about this thing in order to add, remove, or replace a node safely?"

Cluster objects (nodes, pods, PDBs) are trimmed-down views of their
Kubernetes counterparts: only the fields the safety, drain and scaling logic
actually read are carried. NodeGroup spec/status mirror the declarative
resource the operator writes; status is only ever written by the control loop
through an optimistic-lock patch (see control_plane/status.py).

Reading guide
-------------
Read top-to-bottom. Each section builds on the ones above it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware 'now'. Every timestamp in the system is UTC-aware."""
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: WELL-KNOWN LABELS & ANNOTATIONS
# ─────────────────────────────────────────────────────────────────────────────

NODEGROUP_LABEL = "autoscaler.io/nodegroup"
OFFERING_LABEL = "autoscaler.io/offering"
PROTECTED_ANNOTATION = "autoscaler.io/protected"
SCALE_DOWN_DISABLED_LABEL = "autoscaler.io/scale-down-disabled"
SCALE_DOWN_ANNOTATION = "autoscaler.io/scale-down"
ALLOWED_HOURS_ANNOTATION = "autoscaler.io/scale-down-allowed-hours"
DRAIN_STATUS_ANNOTATION = "autoscaler.io/drain-status"
DRAIN_START_ANNOTATION = "autoscaler.io/drain-start"
INSTANCE_ID_ANNOTATION = "autoscaler.io/instance-id"

MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"
STATIC_POD_SOURCE_ANNOTATION = "kubernetes.io/config.source"

SYSTEM_NAMESPACES = ("kube-system",)
HOSTNAME_TOPOLOGY_KEY = "kubernetes.io/hostname"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class NodePhase(str, Enum):
    """
    Lifecycle of a cloud-backed node owned by a NodeGroup.

    PENDING → PROVISIONING → RUNNING → READY → (DRAINING → TERMINATING) → REMOVED

    FAILED is reachable from any pre-READY phase, and from TERMINATING when
    the provider refuses the deprovision. A DRAINING node whose drain is
    aborted goes back to READY. Every other edge is one-directional.
    """
    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    READY = "ready"
    DRAINING = "draining"
    TERMINATING = "terminating"
    REMOVED = "removed"
    FAILED = "failed"


class DrainState(str, Enum):
    """
    Per-drain state machine.

    READY → CORDONED → EVICTING → DRAINED → DEPROVISIONED
    ABORTED is reachable from CORDONED / EVICTING on cancellation or timeout.
    """
    READY = "ready"
    CORDONED = "cordoned"
    EVICTING = "evicting"
    DRAINED = "drained"
    DEPROVISIONED = "deprovisioned"
    ABORTED = "aborted"


class PodPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class VolumeKind(str, Enum):
    """
    The volume sources the local-storage check cares about.

    EMPTY_DIR, HOST_PATH and LOCAL_PV are node-local and lost on eviction.
    EMPTY_DIR_MEMORY is tmpfs-backed and treated as disposable.
    """
    EMPTY_DIR = "emptyDir"
    EMPTY_DIR_MEMORY = "emptyDir-memory"
    HOST_PATH = "hostPath"
    LOCAL_PV = "local-pv"
    PVC = "persistentVolumeClaim"
    CONFIG_MAP = "configMap"
    SECRET = "secret"


LOCAL_VOLUME_KINDS = (VolumeKind.EMPTY_DIR, VolumeKind.HOST_PATH, VolumeKind.LOCAL_PV)


class SafetyCheckCategory(str, Enum):
    """
    The closed set of gate checks. One evaluator per category, run in this order.
    """
    CLUSTER_HEALTH = "cluster_health"
    NODEGROUP_HEALTH = "nodegroup_health"
    POD_DISRUPTION = "pod_disruption"
    RESOURCE_CAPACITY = "resource_capacity"
    TIMING = "timing"


class SafetyCheckStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"


class CandidateReason(str, Enum):
    UNDERUTILIZED = "underutilized"
    OPTIMIZATION = "optimization"
    MANUAL = "manual"


class OptimizationType(str, Enum):
    """Kinds of recommendation the cost optimizer emits."""
    DOWNSIZE = "downsize"
    RIGHTSIZE = "rightsize"
    UPSIZE = "upsize"
    CHANGE_CATEGORY = "change_category"
    CONSOLIDATE = "consolidate"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecommendedAction(str, Enum):
    PROCEED = "proceed"
    POSTPONE = "postpone"
    REJECT = "reject"
    NEEDS_REVIEW = "needs_review"


class RebalancePriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RebalanceStrategy(str, Enum):
    """
    ROLLING    → batches of the configured batch size (capped by max concurrent).
    SURGE      → batches as wide as max concurrent allows.
    BLUE_GREEN → same batching as SURGE; every replacement is Ready before any drain.
    """
    ROLLING = "rolling"
    SURGE = "surge"
    BLUE_GREEN = "blue-green"


class ExecutionStatus(str, Enum):
    """Status of a rebalance batch or of a whole plan execution."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RollbackAction(str, Enum):
    PAUSE_EXECUTION = "pause_execution"
    TERMINATE_NEW_NODES = "terminate_new_nodes"
    UNCORDON_OLD_NODES = "uncordon_old_nodes"
    VERIFY_WORKLOADS = "verify_workloads"
    UPDATE_STATUS = "update_status"


class ScaleDirection(str, Enum):
    NONE = "none"
    UP = "up"
    DOWN = "down"


class ConditionType(str, Enum):
    READY = "Ready"
    SCALING = "Scaling"
    REBALANCING = "Rebalancing"
    ERROR = "Error"
    AT_MIN_CAPACITY = "AtMinCapacity"
    AT_MAX_CAPACITY = "AtMaxCapacity"


class PolicyMode(str, Enum):
    """
    Scale-down aggressiveness.

    AGGRESSIVE   → higher thresholds, short observation, twice the removals.
    BALANCED     → configured thresholds.
    CONSERVATIVE → low thresholds, long observation, one node at a time.
    DISABLED     → no scale-down.
    """
    AGGRESSIVE = "aggressive"
    BALANCED = "balanced"
    CONSERVATIVE = "conservative"
    DISABLED = "disabled"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: CLUSTER OBJECTS
# What the Kubernetes-style cluster API reports.
# ─────────────────────────────────────────────────────────────────────────────

class Taint(BaseModel):
    key: str
    value: str = ""
    effect: str = "NoSchedule"


class Toleration(BaseModel):
    """
    Pod toleration.

    operator "Exists" with an empty key tolerates every taint.
    An empty effect matches every effect.
    """
    key: str = ""
    operator: str = "Equal"
    value: str = ""
    effect: str = ""

    def tolerates(self, taint: Taint) -> bool:
        if self.effect and self.effect != taint.effect:
            return False
        if self.operator == "Exists":
            return not self.key or self.key == taint.key
        return self.key == taint.key and self.value == taint.value


class PodVolume(BaseModel):
    name: str
    kind: VolumeKind


class AntiAffinityTerm(BaseModel):
    """Required pod anti-affinity: no two matching pods share a topology domain."""
    label_selector: Dict[str, str] = Field(default_factory=dict)
    topology_key: str = HOSTNAME_TOPOLOGY_KEY


class Pod(BaseModel):
    """
    A pod as seen by the drain and safety logic.

    Fields:
        node_name        → None while unscheduled.
        owner_kind       → Controller kind ("ReplicaSet", "DaemonSet",
                           "StatefulSet", "Node" for static pods...).
        unschedulable    → True when the scheduler reported it cannot place
                           this pending pod. Drives scale-up.
    """
    name: str
    namespace: str = "default"
    node_name: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    phase: PodPhase = PodPhase.RUNNING
    owner_kind: Optional[str] = "ReplicaSet"
    cpu_request_cores: float = Field(0.0, ge=0)
    memory_request_gb: float = Field(0.0, ge=0)
    volumes: List[PodVolume] = Field(default_factory=list)
    tolerations: List[Toleration] = Field(default_factory=list)
    node_selector: Dict[str, str] = Field(default_factory=dict)
    anti_affinity: List[AntiAffinityTerm] = Field(default_factory=list)
    unschedulable: bool = False

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_terminal(self) -> bool:
        return self.phase in (PodPhase.SUCCEEDED, PodPhase.FAILED)

    @property
    def is_daemonset(self) -> bool:
        return self.owner_kind == "DaemonSet"

    @property
    def is_mirror(self) -> bool:
        """Static/mirror pods are owned by the kubelet and cannot be evicted."""
        return (
            self.owner_kind == "Node"
            or MIRROR_POD_ANNOTATION in self.annotations
            or STATIC_POD_SOURCE_ANNOTATION in self.annotations
        )

    @property
    def is_stateful(self) -> bool:
        return self.owner_kind == "StatefulSet"

    @property
    def is_system(self) -> bool:
        return self.namespace in SYSTEM_NAMESPACES

    @property
    def has_local_storage(self) -> bool:
        return any(v.kind in LOCAL_VOLUME_KINDS for v in self.volumes)

    @property
    def is_evictable(self) -> bool:
        """Pods a drain must evict: not terminal, not DaemonSet, not mirror."""
        return not (self.is_terminal or self.is_daemonset or self.is_mirror)

    def tolerates_all(self, taints: List[Taint]) -> bool:
        """True when every NoSchedule/NoExecute taint is tolerated."""
        for taint in taints:
            if taint.effect == "PreferNoSchedule":
                continue
            if not any(t.tolerates(taint) for t in self.tolerations):
                return False
        return True

    def selector_matches(self, labels: Dict[str, str]) -> bool:
        return all(labels.get(k) == v for k, v in self.node_selector.items())


class ClusterNode(BaseModel):
    """
    A Kubernetes node.

    Allocatable capacity is what the scheduler can hand out; requests of pods
    bound to the node are subtracted from it to get free capacity.
    """
    name: str
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    taints: List[Taint] = Field(default_factory=list)
    ready: bool = True
    unschedulable: bool = False
    cpu_allocatable_cores: float = Field(4.0, ge=0)
    memory_allocatable_gb: float = Field(8.0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def node_group(self) -> Optional[str]:
        return self.labels.get(NODEGROUP_LABEL)

    @property
    def offering_id(self) -> Optional[str]:
        return self.labels.get(OFFERING_LABEL)

    @property
    def schedulable(self) -> bool:
        return self.ready and not self.unschedulable

    @property
    def is_protected(self) -> bool:
        return (
            self.annotations.get(PROTECTED_ANNOTATION) == "true"
            or self.labels.get(SCALE_DOWN_DISABLED_LABEL) == "true"
            or self.annotations.get(SCALE_DOWN_ANNOTATION) == "disabled"
        )

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return max(0.0, ((now or utcnow()) - self.created_at).total_seconds())


class PodDisruptionBudget(BaseModel):
    """
    A PDB. disruptions_allowed is the server-computed budget right now.
    """
    name: str
    namespace: str = "default"
    selector: Dict[str, str] = Field(default_factory=dict)
    min_available: Optional[int] = Field(None, ge=0)
    max_unavailable: Optional[int] = Field(None, ge=0)
    disruptions_allowed: int = Field(0, ge=0)

    def matches(self, pod: Pod) -> bool:
        if pod.namespace != self.namespace or not self.selector:
            return False
        return all(pod.labels.get(k) == v for k, v in self.selector.items())


class ClusterSnapshot(BaseModel):
    """
    A consistent read of the cluster at one instant.

    Every decision in the control loop is a function of one snapshot.
    """
    nodes: List[ClusterNode] = Field(default_factory=list)
    pods: List[Pod] = Field(default_factory=list)
    pdbs: List[PodDisruptionBudget] = Field(default_factory=list)
    taken_at: datetime = Field(default_factory=utcnow)

    def node(self, name: str) -> Optional[ClusterNode]:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def pods_on(self, node_name: str) -> List[Pod]:
        return [p for p in self.pods if p.node_name == node_name]

    def ready_nodes(self) -> List[ClusterNode]:
        return [n for n in self.nodes if n.ready]

    def nodes_in_group(self, node_group: str) -> List[ClusterNode]:
        return [n for n in self.nodes if n.node_group == node_group]

    def pending_pods(self) -> List[Pod]:
        return [
            p for p in self.pods
            if p.phase == PodPhase.PENDING and p.node_name is None and p.unschedulable
        ]


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: NODEGROUP (desired state + status)
# ─────────────────────────────────────────────────────────────────────────────

class ScaleUpPolicy(BaseModel):
    """
    Fields:
        stabilization_window_s → group-average utilisation must stay above the
                                 thresholds this long before it adds a node.
                                 Pending-pod demand is not debounced.
        cooldown_s             → after a scale-up, scale-down waits this long.
    """
    enabled: bool = True
    stabilization_window_s: float = Field(60.0, ge=0)
    cpu_threshold: float = Field(80.0, ge=0, le=100)
    memory_threshold: float = Field(80.0, ge=0, le=100)
    cooldown_s: float = Field(180.0, ge=0)


class ScaleDownPolicy(BaseModel):
    """
    Fields:
        stabilization_window_s → underutilisation must hold continuously this
                                 long before nodes are removed.
        cooldown_s             → after a scale-down, the next scale-down waits
                                 this long.
    """
    enabled: bool = True
    stabilization_window_s: float = Field(600.0, ge=0)
    cpu_threshold: float = Field(50.0, ge=0, le=100)
    memory_threshold: float = Field(50.0, ge=0, le=100)
    cooldown_s: float = Field(600.0, ge=0)


class MaintenanceWindow(BaseModel):
    """
    Days are lowercase weekday names ("monday"...). start/end are "HH:MM";
    when both are set the time-of-day range is checked on a best-effort basis.
    """
    days: List[str] = Field(default_factory=list)
    start: Optional[str] = None
    end: Optional[str] = None


class RebalancePolicy(BaseModel):
    enabled: bool = False
    strategy: RebalanceStrategy = RebalanceStrategy.ROLLING
    batch_size: int = Field(1, ge=1)
    max_concurrent: int = Field(2, ge=1)
    min_healthy_percent: float = Field(75.0, ge=0, le=100)
    respect_pdbs: bool = True
    skip_nodes_with_local_storage: bool = True
    cooldown_s: float = Field(3600.0, ge=0)
    maintenance_windows: List[MaintenanceWindow] = Field(default_factory=list)


class OfferingSpec(BaseModel):
    """What the provisioning collaborator needs to create one node."""
    offering_id: str
    cpu_cores: float = Field(4.0, gt=0)
    memory_gb: float = Field(8.0, gt=0)
    monthly_cost_usd: float = Field(0.0, ge=0)


class NodeGroupSpec(BaseModel):
    min_nodes: int = Field(1, ge=0)
    max_nodes: int = Field(10, ge=0)
    offerings: List[OfferingSpec] = Field(default_factory=list)
    preferred_offering_id: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: List[Taint] = Field(default_factory=list)
    scale_up_policy: ScaleUpPolicy = Field(default_factory=ScaleUpPolicy)
    scale_down_policy: ScaleDownPolicy = Field(default_factory=ScaleDownPolicy)
    rebalance_policy: RebalancePolicy = Field(default_factory=RebalancePolicy)

    def offering(self, offering_id: Optional[str] = None) -> Optional[OfferingSpec]:
        """Look up an offering by id; default to the preferred, then the first."""
        wanted = offering_id or self.preferred_offering_id
        for offering in self.offerings:
            if offering.offering_id == wanted:
                return offering
        if offering_id is None and self.offerings:
            return self.offerings[0]
        return None


class NodeGroupCondition(BaseModel):
    type: ConditionType
    status: bool
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utcnow)


class NodeInfo(BaseModel):
    node_name: str
    instance_id: str = ""
    offering_id: str = ""
    phase: NodePhase = NodePhase.PENDING


class NodeGroupStatus(BaseModel):
    """
    Owned exclusively by the control loop. Written only through
    status.patch_status(), never by full overwrite.
    """
    current_nodes: int = Field(0, ge=0)
    desired_nodes: int = Field(0, ge=0)
    ready_nodes: int = Field(0, ge=0)
    nodes: List[NodeInfo] = Field(default_factory=list)
    conditions: List[NodeGroupCondition] = Field(default_factory=list)
    last_scale_time: Optional[datetime] = None
    last_scale_up_time: Optional[datetime] = None
    last_scale_down_time: Optional[datetime] = None
    last_rebalance_time: Optional[datetime] = None
    last_rebalance_result: Optional[str] = None
    last_error: Optional[str] = None
    observed_generation: int = Field(0, ge=0)

    def condition(self, condition_type: ConditionType) -> Optional[NodeGroupCondition]:
        for cond in self.conditions:
            if cond.type == condition_type:
                return cond
        return None


class NodeGroup(BaseModel):
    """
    Declarative spec + status for a homogeneous set of nodes.

    resource_version changes on every write; patches carry the version they
    were computed from and are rejected on mismatch.
    """
    name: str
    namespace: str = "default"
    generation: int = Field(1, ge=0)
    resource_version: int = Field(1, ge=0)
    spec: NodeGroupSpec = Field(default_factory=NodeGroupSpec)
    status: NodeGroupStatus = Field(default_factory=NodeGroupStatus)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: MANAGED NODES
# ─────────────────────────────────────────────────────────────────────────────

_PHASE_TRANSITIONS: Dict[NodePhase, tuple] = {
    NodePhase.PENDING: (NodePhase.PROVISIONING, NodePhase.FAILED),
    NodePhase.PROVISIONING: (NodePhase.RUNNING, NodePhase.READY, NodePhase.FAILED),
    NodePhase.RUNNING: (NodePhase.READY, NodePhase.FAILED),
    NodePhase.READY: (NodePhase.DRAINING,),
    NodePhase.DRAINING: (NodePhase.TERMINATING, NodePhase.READY),
    NodePhase.TERMINATING: (NodePhase.REMOVED, NodePhase.FAILED),
    NodePhase.REMOVED: (),
    NodePhase.FAILED: (),
}


class InvalidPhaseTransitionError(Exception):
    """
    Raised when a ManagedNode is moved along an edge the lifecycle forbids.

    Attributes:
        reason: Human-readable explanation.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class NodeHandle(BaseModel):
    """Opaque reference returned by the provisioning collaborator."""
    instance_id: str
    node_name: str
    offering_id: str


class ManagedNode(BaseModel):
    """
    One cloud-backed node owned by a NodeGroup.

    Created by the scale decision path (or the rebalance executor for
    replacements); destroyed by the drain orchestrator or, on provisioning
    failure, directly.
    """
    name: str
    node_group: str
    offering_id: str
    instance_id: str = ""
    phase: NodePhase = NodePhase.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    ready_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @property
    def handle(self) -> NodeHandle:
        return NodeHandle(
            instance_id=self.instance_id,
            node_name=self.name,
            offering_id=self.offering_id,
        )

    @property
    def is_active(self) -> bool:
        return self.phase not in (NodePhase.REMOVED, NodePhase.FAILED)

    def can_transition_to(self, phase: NodePhase) -> bool:
        return phase in _PHASE_TRANSITIONS[self.phase]

    def transition_to(self, phase: NodePhase, reason: Optional[str] = None) -> None:
        """
        Move to `phase`, enforcing the lifecycle graph.

        Raises:
            InvalidPhaseTransitionError: if the edge is not allowed.
        """
        if phase == self.phase:
            return
        if not self.can_transition_to(phase):
            raise InvalidPhaseTransitionError(
                f"Node {self.name!r} cannot move {self.phase.value} → {phase.value}"
            )
        self.phase = phase
        if phase == NodePhase.READY and self.ready_at is None:
            self.ready_at = utcnow()
        if phase == NodePhase.FAILED:
            self.failure_reason = reason


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: SAFETY
# ─────────────────────────────────────────────────────────────────────────────

class SafetyCheck(BaseModel):
    category: SafetyCheckCategory
    status: SafetyCheckStatus
    message: str
    details: Dict[str, str] = Field(default_factory=dict)


class SafetyCheckResult(BaseModel):
    """
    Outcome of one gate evaluation. Ephemeral: recomputed on every decision.

    Every check is recorded, so `reasons` lists every failure, not just the first.
    """
    checks: List[SafetyCheck] = Field(default_factory=list)
    evaluated_at: datetime = Field(default_factory=utcnow)

    @property
    def passed(self) -> bool:
        return not self.failures

    @property
    def failures(self) -> List[SafetyCheck]:
        return [c for c in self.checks if c.status == SafetyCheckStatus.FAILED]

    @property
    def warnings(self) -> List[SafetyCheck]:
        return [c for c in self.checks if c.status == SafetyCheckStatus.WARNING]

    @property
    def reasons(self) -> List[str]:
        return [f"{c.category.value}: {c.message}" for c in self.failures]

    def check(self, category: SafetyCheckCategory) -> Optional[SafetyCheck]:
        for c in self.checks:
            if c.category == category:
                return c
        return None


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 7: SCALING
# ─────────────────────────────────────────────────────────────────────────────

class ResourceDeficit(BaseModel):
    """Unschedulable demand attributed to one NodeGroup."""
    cpu_cores: float = Field(0.0, ge=0)
    memory_gb: float = Field(0.0, ge=0)
    pods: int = Field(0, ge=0)


class ScaleDecision(BaseModel):
    """
    What the decision engine wants done this cycle.

    candidates is ordered: the first entry is removed first.
    safety is populated whenever the gate was consulted.
    """
    node_group: str
    direction: ScaleDirection = ScaleDirection.NONE
    current_nodes: int = 0
    desired_nodes: int = 0
    nodes_to_add: int = 0
    candidates: List[str] = Field(default_factory=list)
    reason: str = ""
    safety: Optional[SafetyCheckResult] = None
    decided_at: datetime = Field(default_factory=utcnow)


class DrainResult(BaseModel):
    node_name: str
    state: DrainState
    evicted_pods: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    duration_s: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state in (DrainState.DRAINED, DrainState.DEPROVISIONED)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 8: REBALANCING
# ─────────────────────────────────────────────────────────────────────────────

class Optimization(BaseModel):
    """
    A recommendation from the external cost optimizer. Consumed, never computed.

    affected_nodes, when non-empty, names the exact nodes to replace; otherwise
    every group node running current_offering is a candidate.
    """
    type: OptimizationType
    node_group: str
    current_offering: str
    recommended_offering: str
    affected_nodes: List[str] = Field(default_factory=list)
    monthly_savings: float = Field(0.0)
    risk: RiskLevel = RiskLevel.LOW
    confidence: float = Field(1.0, ge=0, le=1)


class CandidateNode(BaseModel):
    node_name: str
    current_offering: str
    target_offering: str
    age_s: float = 0.0
    workloads: List[str] = Field(default_factory=list)
    stateful_workloads: int = 0
    utilization_pct: Optional[float] = None
    priority_score: float = 0.0
    reason: CandidateReason = CandidateReason.OPTIMIZATION


class RebalanceAnalysis(BaseModel):
    node_group: str
    candidates: List[CandidateNode] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict)
    safety: SafetyCheckResult = Field(default_factory=SafetyCheckResult)
    recommended_action: RecommendedAction = RecommendedAction.PROCEED
    priority: RebalancePriority = RebalancePriority.LOW
    optimization: Optional[Optimization] = None
    estimated_duration_s: float = 0.0
    analyzed_at: datetime = Field(default_factory=utcnow)

    @property
    def eligible_now(self) -> List[CandidateNode]:
        if self.recommended_action != RecommendedAction.PROCEED:
            return []
        return list(self.candidates)


class NodeBatch(BaseModel):
    batch_number: int = Field(..., ge=1)
    nodes: List[CandidateNode] = Field(default_factory=list)
    estimated_duration_s: float = 0.0
    depends_on: List[int] = Field(default_factory=list)


class RollbackStep(BaseModel):
    order: int
    action: RollbackAction
    description: str


class BatchRollback(BaseModel):
    """
    How to restore the pre-batch node count if this batch fails.

    terminate_replacements_for names old nodes whose replacement should be
    deprovisioned; uncordon names old nodes to return to service.
    """
    batch_number: int
    restore_node_count: int
    terminate_replacements_for: List[str] = Field(default_factory=list)
    uncordon: List[str] = Field(default_factory=list)


class RollbackPlan(BaseModel):
    steps: List[RollbackStep] = Field(default_factory=list)
    batches: List[BatchRollback] = Field(default_factory=list)
    auto_rollback: bool = True
    timeout_s: float = 1800.0

    def for_batch(self, batch_number: int) -> Optional[BatchRollback]:
        for batch in self.batches:
            if batch.batch_number == batch_number:
                return batch
        return None


class RebalancePlan(BaseModel):
    """
    Built once by the planner and consumed once by the executor.

    The executor never edits a plan; per-batch progress lives in ExecutionState.
    """
    plan_id: str
    node_group: str
    namespace: str = "default"
    optimization: Optional[Optimization] = None
    batches: List[NodeBatch] = Field(default_factory=list)
    strategy: RebalanceStrategy = RebalanceStrategy.ROLLING
    max_concurrent: int = Field(2, ge=1)
    rollback_plan: Optional[RollbackPlan] = None
    estimated_duration_s: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def total_nodes(self) -> int:
        return sum(len(b.nodes) for b in self.batches)


class ExecutionState(BaseModel):
    plan_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_batch: int = 0
    batch_status: Dict[int, ExecutionStatus] = Field(default_factory=dict)
    replacements: Dict[str, str] = Field(default_factory=dict)
    completed_nodes: List[str] = Field(default_factory=list)
    failed_nodes: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class RebalanceResult(BaseModel):
    plan_id: str
    status: ExecutionStatus
    nodes_rebalanced: int = 0
    nodes_failed: int = 0
    batches_succeeded: int = 0
    failed_batch: Optional[int] = None
    rolled_back: bool = False
    errors: List[str] = Field(default_factory=list)
    duration_s: float = 0.0
