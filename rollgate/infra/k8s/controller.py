"""Abstract cluster client interface.

Defines the contract for the per-cluster operations the orchestrator needs.
Implementations wrap a provider-specific credential context (EKS, AKS, GKE,
or a plain kubeconfig context) behind one interface, so the orchestration
layer never branches on the cloud provider.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rollgate.core.models import ClusterRef

# =============================================================================
# Data Types
# =============================================================================


@dataclass
class CommandResult:
    """Result of a command execution."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0


@dataclass(frozen=True)
class RolloutHandle:
    """Identifies one candidate rollout on a cluster."""

    deployment_id: str
    revision: str
    workload: str
    color: str
    generation: int = 0


@dataclass(frozen=True)
class RolloutStatus:
    """Replica counts of the candidate workload."""

    ready: int
    desired: int
    current: int

    @property
    def is_complete(self) -> bool:
        return self.desired > 0 and self.ready >= self.desired and (
            self.current >= self.desired
        )


@dataclass(frozen=True)
class TrafficWeights:
    """Traffic split between stable and candidate revisions."""

    stable_percent: int
    candidate_percent: int

    def __post_init__(self) -> None:
        if not 0 <= self.candidate_percent <= 100:
            raise ValueError(
                f"candidate weight must be within [0, 100], got {self.candidate_percent}"
            )
        if self.stable_percent + self.candidate_percent != 100:
            raise ValueError(
                "stable and candidate weights must sum to 100, got "
                f"{self.stable_percent} + {self.candidate_percent}"
            )

    @classmethod
    def for_candidate(cls, candidate_percent: int) -> TrafficWeights:
        return cls(
            stable_percent=100 - candidate_percent,
            candidate_percent=candidate_percent,
        )


@dataclass(frozen=True)
class ErrorSamples:
    """Request and error counts observed over a window."""

    error_count: int
    total_count: int


@dataclass
class ClusterState:
    """Everything needed to restore a cluster to its pre-deployment state."""

    active_color: str
    stable_revision: str | None
    candidate_revision: str | None
    stable_replicas: int = 0
    candidate_replicas: int = 0
    candidate_percent: int = 0
    configmaps: dict[str, dict[str, str]] = field(default_factory=dict)


# =============================================================================
# Abstract Client
# =============================================================================


class ClusterClient(ABC):
    """Abstract base class for per-cluster release operations.

    All methods are async. Implementations must make ``rollout`` idempotent
    for the same ``(deployment_id, revision)`` pair and must apply traffic
    weights as a single atomic write.
    """

    def __init__(self, cluster: ClusterRef) -> None:
        self.cluster = cluster

    @property
    def name(self) -> str:
        return self.cluster.name

    # =========================================================================
    # Cluster Context
    # =========================================================================

    @abstractmethod
    async def context_available(self) -> bool:
        """Check that the credential context resolves to a reachable API.

        Returns:
            True if the cluster API answered, False otherwise
        """
        ...

    # =========================================================================
    # Rollout Operations
    # =========================================================================

    @abstractmethod
    async def get_current_revision(self) -> str | None:
        """Get the revision currently served as stable.

        Returns:
            Revision identifier (image reference), or None if unknown
        """
        ...

    @abstractmethod
    async def rollout(self, deployment_id: str, revision: str) -> RolloutHandle:
        """Roll the candidate workload to a revision.

        Re-invoking with the same arguments must not create duplicate
        workloads or restart pods.

        Args:
            deployment_id: Deployment that owns the rollout
            revision: Revision (image reference) to run as candidate

        Returns:
            Handle identifying the candidate rollout
        """
        ...

    @abstractmethod
    async def get_rollout_status(self, handle: RolloutHandle) -> RolloutStatus:
        """Get replica readiness of a candidate rollout.

        Args:
            handle: Handle returned by ``rollout``

        Returns:
            RolloutStatus with ready/desired/current replica counts
        """
        ...

    @abstractmethod
    async def scale_candidate(self, replicas: int) -> None:
        """Scale the candidate workload.

        Args:
            replicas: Desired replica count
        """
        ...

    @abstractmethod
    async def promote(self, handle: RolloutHandle) -> None:
        """Make the candidate the stable revision.

        Args:
            handle: Candidate rollout to promote
        """
        ...

    # =========================================================================
    # Traffic Operations
    # =========================================================================

    @abstractmethod
    async def set_traffic_weight(self, candidate_percent: int) -> TrafficWeights:
        """Route a share of traffic to the candidate.

        Args:
            candidate_percent: Candidate share in [0, 100]

        Returns:
            The weights as written (always summing to 100)
        """
        ...

    @abstractmethod
    async def get_traffic_weights(self) -> TrafficWeights:
        """Get the current stable/candidate split."""
        ...

    # =========================================================================
    # Observability
    # =========================================================================

    @abstractmethod
    async def get_recent_error_samples(self, window: float) -> ErrorSamples:
        """Count candidate requests and errors over a recent window.

        Args:
            window: Window length in seconds

        Returns:
            ErrorSamples with error and total counts
        """
        ...

    @abstractmethod
    async def get_service_endpoint(self) -> str | None:
        """Get the base URL of the public service, if one is reachable."""
        ...

    # =========================================================================
    # State Capture and Restore
    # =========================================================================

    @abstractmethod
    async def capture_state(self) -> ClusterState:
        """Capture the current rollout, traffic, and configuration state."""
        ...

    @abstractmethod
    async def restore_stable(self, state: ClusterState) -> TrafficWeights:
        """Route all traffic back to the stable revision recorded in a snapshot.

        Args:
            state: Captured pre-deployment state

        Returns:
            The weights as written (0% candidate)
        """
        ...

    @abstractmethod
    async def restore_configuration(self, configmaps: dict[str, dict[str, str]]) -> None:
        """Restore ConfigMap data captured before the deployment.

        Args:
            configmaps: ConfigMap name to data mapping
        """
        ...

    @abstractmethod
    async def restore_database(self, backup: Path) -> CommandResult | None:
        """Restore the application database from a SQL backup.

        Args:
            backup: Path to a plain SQL dump

        Returns:
            CommandResult, or None if the cluster runs no database pod
        """
        ...
