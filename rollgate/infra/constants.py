"""Release constants and configuration.

This module centralizes the annotation keys, labels, and default timings
used throughout the release process.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ClusterConstants:
    """Constants for managing blue/green workloads on a cluster.

    All attributes are class-level and immutable.
    """

    # Annotations written on managed resources
    ACTIVE_COLOR_ANNOTATION: str = "rollgate.io/active-color"
    DEPLOYMENT_ID_ANNOTATION: str = "rollgate.io/deployment-id"
    REVISION_ANNOTATION: str = "rollgate.io/revision"

    # NGINX ingress canary annotations
    CANARY_ANNOTATION: str = "nginx.ingress.kubernetes.io/canary"
    CANARY_WEIGHT_ANNOTATION: str = "nginx.ingress.kubernetes.io/canary-weight"

    # Database pod used for optional restore during rollback
    DATABASE_POD_LABEL: str = "app.kubernetes.io/name=postgres"

    # Compare-and-swap attempts for traffic weight writes
    CAS_MAX_ATTEMPTS: int = 5

    # Health endpoint path
    HEALTH_PATH: str = "/health"


@dataclass(frozen=True)
class ReleaseDefaults:
    """Default timings and thresholds for a release."""

    CANARY_STEPS: tuple[int, ...] = (5, 25, 50, 75, 100)
    OBSERVATION_WINDOW_SECONDS: float = 300.0
    ERROR_RATE_THRESHOLD: float = 0.01
    MINIMUM_SAMPLE_SIZE: int = 100
    MAX_HOLD_RETRIES: int = 3
    MAX_ROLLBACK_SECONDS: float = 30.0
    ROLLOUT_TIMEOUT_SECONDS: float = 600.0
    ROLLOUT_POLL_SECONDS: float = 5.0
    HEALTH_TIMEOUT_SECONDS: float = 5.0
    HEALTH_RETRIES: int = 3
    CALL_TIMEOUT_SECONDS: float = 30.0
    RETRY_ATTEMPTS: int = 3
    LEASE_TTL_SECONDS: float = 60.0
    REPORT_DIR: str = "deployment-reports"
    REPORT_FILENAME: str = "deployment-report.json"
    AUDIT_FILENAME: str = "audit.jsonl"


# Default instances for convenience
DEFAULT_CONSTANTS = ClusterConstants()
DEFAULT_RELEASE = ReleaseDefaults()
