"""
autoscaler/shared/errors.py
───────────────────────────
Error taxonomy shared by the control plane and its collaborators.

Transient       → reported, reconcile requeued with backoff. No state damage.
                  CircuitOpenError is the fail-fast flavour: never retried
                  synchronously, the next reconcile cycle retries.
Provisioning    → provider said no. PermanentProvisioningError is
                  fatal-for-node (bad offering); plain ProvisioningError
                  may be retried up to MaxRetries.
Conflict        → optimistic-lock mismatch on a status patch. Re-read and retry.

SafetyBlocked is deliberately absent: a failed gate is a decision outcome
(SafetyCheckResult.passed == False), not an exception.

Errors raised by a single module live in that module (DrainTimeoutError in
drain_orchestrator, PlanValidationError in the planner, ...).
"""

from __future__ import annotations


class AutoscalerError(Exception):
    """
    Base class for every error raised by the autoscaler core.

    Attributes:
        reason: Human-readable explanation.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class TransientError(AutoscalerError):
    """API timeout, rate limiting, or any error the next cycle may not see."""


class CircuitOpenError(TransientError):
    """The provisioning collaborator's circuit breaker is open."""


class EvictionBlockedError(TransientError):
    """The eviction API refused because a PodDisruptionBudget has no budget left."""


class NotFoundError(AutoscalerError):
    """The referenced object does not exist (any more)."""


class ConflictError(AutoscalerError):
    """A write carried a stale resource_version."""


class ProvisioningError(AutoscalerError):
    """The provisioning collaborator failed to create, delete or query a node."""


class PermanentProvisioningError(ProvisioningError):
    """Provisioning can never succeed with these inputs (e.g. invalid offering)."""
