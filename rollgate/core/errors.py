"""Exception hierarchy for release orchestration.

All errors carry a short ``message`` and optional multi-line ``details``
so the CLI can render them consistently in a Rich panel.
"""

from __future__ import annotations


class RollgateError(Exception):
    """Base class for all orchestration errors."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(message)


class ConfigError(RollgateError):
    """Raised when the configuration file is missing required values or invalid."""


class RequestValidationError(RollgateError):
    """Raised when a deployment request violates its input constraints."""


class ConcurrentDeploymentConflict(RollgateError):
    """Raised when a cluster lease is already held by another deployment."""

    def __init__(self, cluster: str, holder: str | None):
        self.cluster = cluster
        self.holder = holder
        super().__init__(
            f"Cluster '{cluster}' is leased by another deployment",
            details=(
                f"Active lease holder: {holder or 'unknown'}\n\n"
                "Only one deployment may mutate a cluster at a time. "
                "Retry once the active deployment reaches a terminal state."
            ),
        )


class AuditWriteError(RollgateError):
    """Raised when an audit entry cannot be persisted."""


class InvalidTransitionError(RollgateError):
    """Raised when a state machine is asked to make an illegal transition."""


class MonotonicityError(RollgateError):
    """Raised when a canary ramp would lower the candidate traffic weight."""


class SnapshotExistsError(RollgateError):
    """Raised when a state snapshot is written twice for the same cluster."""


class ClusterContextError(RollgateError):
    """Raised when a cluster's credential context is not defined locally."""


class TransientClusterError(RollgateError):
    """A cluster or network call failed in a way that may succeed on retry."""


class ClusterOperationError(RollgateError):
    """A cluster operation failed after exhausting its retry budget."""

    def __init__(self, cluster: str, operation: str, details: str | None = None):
        self.cluster = cluster
        self.operation = operation
        super().__init__(f"{operation} failed on cluster '{cluster}'", details)


class HealthCheckFailedError(RollgateError):
    """The health prober did not confirm the service as healthy."""


class DeploymentAbortedError(RollgateError):
    """An external abort signal interrupted a waiting step."""

    def __init__(self, trigger: str, reason: str = ""):
        self.trigger = trigger
        super().__init__(f"Deployment aborted ({trigger})", reason or None)


class LeaseStoreError(RollgateError):
    """The lease backend could not be reached."""
