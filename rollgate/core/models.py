"""Domain models for release orchestration.

Immutable inputs (requests, cluster references) and append-only outputs
(verdicts, rollback records, audit entries) are frozen pydantic models.
``ClusterDeploymentState`` is the single mutable record, owned by the
orchestrator and passed by reference to the traffic controller and the
rollback manager.
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rollgate.core.services.validator import Finding
from rollgate.infra.k8s.controller import ClusterState

# =============================================================================
# Enumerations
# =============================================================================


class Strategy(str, Enum):
    """Release strategy options."""

    BLUE_GREEN = "blue-green"
    CANARY = "canary"
    ROLLING = "rolling"


class CloudProvider(str, Enum):
    """Cloud provider hosting a cluster."""

    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"
    GENERIC = "generic"


class DeploymentPhase(str, Enum):
    """Overall deployment state machine phases."""

    PENDING = "pending"
    VALIDATING = "validating"
    ROLLING_OUT = "rolling-out"
    CANARY_RAMP = "canary-ramp"
    PROMOTING = "promoting"
    SUCCEEDED = "succeeded"
    REJECTED = "rejected"
    ROLLING_BACK = "rolling-back"
    ROLLED_BACK = "rolled-back"
    MANUAL_INTERVENTION = "manual-intervention"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset(
    {
        DeploymentPhase.SUCCEEDED,
        DeploymentPhase.REJECTED,
        DeploymentPhase.ROLLED_BACK,
        DeploymentPhase.MANUAL_INTERVENTION,
    }
)


class ClusterPhase(str, Enum):
    """Per-cluster phases."""

    PENDING = "pending"
    ROLLING_OUT = "rolling-out"
    CANARY_RAMP = "canary-ramp"
    PROMOTED = "promoted"
    ROLLING_BACK = "rolling-back"
    ROLLED_BACK = "rolled-back"
    DEGRADED = "degraded"


class CanaryDecision(str, Enum):
    PROMOTE = "promote"
    HOLD = "hold"
    ABORT = "abort"


class RollbackTrigger(str, Enum):
    """What caused a rollback to run."""

    MANUAL = "manual"
    CANARY_ABORT = "canary-abort"
    HEALTH_FAILURE = "health-failure"
    TIMEOUT = "timeout"
    ROLLOUT_FAILURE = "rollout-failure"
    CONSISTENCY = "consistency"


class RollbackOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"
    TIMEOUT = "timeout"


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"


# =============================================================================
# Request
# =============================================================================


def generate_deployment_id() -> str:
    """Generate a unique deployment id like ``20250101-120000-1a2b3c4d``."""
    return f"{datetime.now(UTC).strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(4)}"


DEFAULT_CANARY_STEPS: tuple[int, ...] = (5, 25, 50, 75, 100)


class ClusterRef(BaseModel):
    """Reference to a target cluster supplied by environment provisioning."""

    model_config = ConfigDict(frozen=True)

    name: str
    cloud_provider: CloudProvider = CloudProvider.GENERIC
    credential_context_id: str
    namespace: str = "default"
    app_name: str = "app"
    endpoint: str | None = None


def canary_step_problems(steps: list[int]) -> list[str]:
    """Return human-readable problems with a canary step list."""
    problems: list[str] = []
    if not steps:
        return ["canary steps must not be empty"]
    if any(step <= 0 or step > 100 for step in steps):
        problems.append("canary steps must be within (0, 100]")
    if any(later <= earlier for earlier, later in zip(steps, steps[1:])):
        problems.append("canary steps must be strictly increasing")
    if steps[-1] != 100:
        problems.append("canary steps must end at 100")
    return problems


class DeploymentRequest(BaseModel):
    """One release attempt. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    deployment_id: str = Field(default_factory=generate_deployment_id)
    image_ref: str = Field(min_length=1)
    strategy: Strategy = Strategy.BLUE_GREEN
    target_clusters: list[ClusterRef]
    canary_steps_percent: list[int] = Field(
        default_factory=lambda: list(DEFAULT_CANARY_STEPS)
    )
    observation_window: float = Field(default=300.0, gt=0)
    error_rate_threshold: float = 0.01
    confirmation_required: bool = True
    manifest_dir: Path | None = None
    rollback_database: bool = False
    database_backup: Path | None = None

    @field_validator("target_clusters")
    @classmethod
    def _targets_not_empty(cls, value: list[ClusterRef]) -> list[ClusterRef]:
        if not value:
            raise ValueError("at least one target cluster is required")
        names = [cluster.name for cluster in value]
        if len(set(names)) != len(names):
            raise ValueError("target cluster names must be unique")
        return value

    @field_validator("canary_steps_percent")
    @classmethod
    def _steps_valid(cls, value: list[int]) -> list[int]:
        problems = canary_step_problems(value)
        if problems:
            raise ValueError("; ".join(problems))
        return value

    @field_validator("error_rate_threshold")
    @classmethod
    def _threshold_in_range(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("error rate threshold must be within (0, 1]")
        return value

    @model_validator(mode="after")
    def _database_backup_required(self) -> DeploymentRequest:
        if self.rollback_database and self.database_backup is None:
            raise ValueError("rollback_database requires database_backup")
        return self

    def ramp_steps(self) -> list[int]:
        """Traffic steps actually used by the strategy.

        Rolling releases skip the intermediate canary steps and go straight
        to a single observed cut-over at 100%.
        """
        if self.strategy == Strategy.ROLLING:
            return [100]
        return list(self.canary_steps_percent)

    def constraint_problems(self) -> list[str]:
        """Re-check input constraints (also covers ``model_construct`` bypass)."""
        problems: list[str] = []
        if not self.target_clusters:
            problems.append("at least one target cluster is required")
        problems.extend(canary_step_problems(list(self.canary_steps_percent)))
        if not 0 < self.error_rate_threshold <= 1:
            problems.append("error rate threshold must be within (0, 1]")
        if self.observation_window <= 0:
            problems.append("observation window must be positive")
        return problems


# =============================================================================
# Signals and results
# =============================================================================


class HealthResult(BaseModel):
    """Outcome of a single health probe."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    status_code: int | None = None
    latency_ms: float = 0.0
    attempts: int = 1
    endpoint: str | None = None
    error: str | None = None


class CanaryVerdict(BaseModel):
    """Result of one observation window."""

    model_config = ConfigDict(frozen=True)

    error_rate_percent: float
    sample_size: int
    error_count: int = 0
    decision: CanaryDecision
    reason: str = ""
    traffic_percent: int | None = None


class StateSnapshot(BaseModel):
    """Write-once capture of a cluster before any mutation."""

    model_config = ConfigDict(frozen=True)

    snapshot_ref: str
    deployment_id: str
    cluster: str
    captured_at: datetime
    state: ClusterState


class RollbackStepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    status: StepStatus
    attempts: int = 0
    elapsed_seconds: float = 0.0
    detail: str = ""


class RollbackRecord(BaseModel):
    """Append-only record of an executed rollback."""

    model_config = ConfigDict(frozen=True)

    deployment_id: str
    cluster: str
    trigger: RollbackTrigger
    snapshot_ref: str | None
    started_at: datetime
    completed_at: datetime
    outcome: RollbackOutcome
    elapsed_seconds: float
    steps: list[RollbackStepResult] = Field(default_factory=list)
    detail: str = ""


class AuditEntry(BaseModel):
    """One immutable line of the audit trail."""

    model_config = ConfigDict(frozen=True)

    sequence: int
    timestamp: datetime
    deployment_id: str
    actor: str
    event: str
    detail: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Mutable per-cluster state
# =============================================================================


class ClusterDeploymentState(BaseModel):
    """Mutable progress of one deployment on one cluster."""

    cluster: ClusterRef
    phase: ClusterPhase = ClusterPhase.PENDING
    current_traffic_percent: int = 0
    confirmed_percent: int = 0
    previous_revision: str | None = None
    new_revision: str | None = None
    last_health_result: HealthResult | None = None
    last_canary_verdict: CanaryVerdict | None = None
    verdict_history: list[CanaryVerdict] = Field(default_factory=list)
    snapshot_ref: str | None = None
    rollback_record: RollbackRecord | None = None
    mutated: bool = False
    error: str | None = None

    @property
    def name(self) -> str:
        return self.cluster.name

    @property
    def is_terminal(self) -> bool:
        return self.phase in (
            ClusterPhase.PROMOTED,
            ClusterPhase.ROLLED_BACK,
            ClusterPhase.DEGRADED,
        )

    def record_verdict(self, verdict: CanaryVerdict) -> None:
        self.last_canary_verdict = verdict
        self.verdict_history.append(verdict)

    def mark_promoted(self) -> None:
        self.phase = ClusterPhase.PROMOTED
        self.current_traffic_percent = 100
        self.confirmed_percent = 100

    def mark_rolled_back(self, record: RollbackRecord) -> None:
        self.rollback_record = record
        self.current_traffic_percent = 0
        self.phase = (
            ClusterPhase.ROLLED_BACK
            if record.outcome == RollbackOutcome.SUCCEEDED
            else ClusterPhase.DEGRADED
        )


# =============================================================================
# Report
# =============================================================================

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_MANUAL_INTERVENTION = 3


class DeploymentReport(BaseModel):
    """Structured result of one deployment attempt."""

    deployment_id: str
    image_ref: str
    strategy: Strategy
    terminal_state: DeploymentPhase
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    clusters: list[ClusterDeploymentState] = Field(default_factory=list)
    findings: list[Finding] = Field(default_factory=list)
    rollback_records: list[RollbackRecord] = Field(default_factory=list)
    snapshots: list[StateSnapshot] = Field(default_factory=list)
    timeline: list[AuditEntry] = Field(default_factory=list)
    audit_trail: str | None = None
    error: str | None = None

    @property
    def exit_code(self) -> int:
        if self.terminal_state == DeploymentPhase.SUCCEEDED:
            return EXIT_SUCCESS
        if self.terminal_state == DeploymentPhase.MANUAL_INTERVENTION:
            return EXIT_MANUAL_INTERVENTION
        return EXIT_FAILURE

    def cluster(self, name: str) -> ClusterDeploymentState:
        for state in self.clusters:
            if state.name == name:
                return state
        raise KeyError(name)
