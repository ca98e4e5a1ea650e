"""Typed configuration for rollgate.

Mirrors the ``config:`` section of ``rollgate.yaml``. Every section has
defaults so an absent file yields a usable configuration.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from rollgate.core.models import (
    DEFAULT_CANARY_STEPS,
    CloudProvider,
    ClusterRef,
    Strategy,
    canary_step_problems,
)
from rollgate.infra.constants import DEFAULT_RELEASE
from rollgate.infra.k8s.utils import parse_duration


def _duration(value: Any) -> Any:
    if isinstance(value, str | int | float):
        return parse_duration(value)
    return value


class ClusterConfig(BaseModel):
    """One entry of the cluster registry."""

    cloud_provider: CloudProvider = CloudProvider.GENERIC
    context: str | None = None
    namespace: str = "default"
    app_name: str = "app"
    endpoint: str | None = None

    def to_ref(self, name: str) -> ClusterRef:
        from rollgate.infra.k8s.providers import default_context_id

        return ClusterRef(
            name=name,
            cloud_provider=self.cloud_provider,
            credential_context_id=self.context
            or default_context_id(self.cloud_provider.value),
            namespace=self.namespace,
            app_name=self.app_name,
            endpoint=self.endpoint,
        )


class RolloutPolicy(BaseModel):
    """Release defaults and safety limits."""

    strategy: Strategy = Strategy.BLUE_GREEN
    canary_steps: list[int] = Field(default_factory=lambda: list(DEFAULT_CANARY_STEPS))
    observation_window: float = DEFAULT_RELEASE.OBSERVATION_WINDOW_SECONDS
    error_rate_threshold: float = DEFAULT_RELEASE.ERROR_RATE_THRESHOLD
    minimum_sample_size: int = Field(default=DEFAULT_RELEASE.MINIMUM_SAMPLE_SIZE, ge=0)
    max_hold_retries: int = Field(default=DEFAULT_RELEASE.MAX_HOLD_RETRIES, ge=0)
    max_rollback_time: float = DEFAULT_RELEASE.MAX_ROLLBACK_SECONDS
    rollout_timeout: float = DEFAULT_RELEASE.ROLLOUT_TIMEOUT_SECONDS
    rollout_poll_interval: float = DEFAULT_RELEASE.ROLLOUT_POLL_SECONDS
    health_timeout: float = DEFAULT_RELEASE.HEALTH_TIMEOUT_SECONDS
    health_retries: int = Field(default=DEFAULT_RELEASE.HEALTH_RETRIES, ge=0)
    call_timeout: float = DEFAULT_RELEASE.CALL_TIMEOUT_SECONDS
    retry_attempts: int = Field(default=DEFAULT_RELEASE.RETRY_ATTEMPTS, ge=1)

    @field_validator(
        "observation_window",
        "max_rollback_time",
        "rollout_timeout",
        "rollout_poll_interval",
        "health_timeout",
        "call_timeout",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value: Any) -> Any:
        return _duration(value)

    @field_validator("canary_steps")
    @classmethod
    def _steps_valid(cls, value: list[int]) -> list[int]:
        problems = canary_step_problems(value)
        if problems:
            raise ValueError("; ".join(problems))
        return value


class AuditConfig(BaseModel):
    report_dir: Path = Path(DEFAULT_RELEASE.REPORT_DIR)


class LeaseConfig(BaseModel):
    backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    ttl: float = DEFAULT_RELEASE.LEASE_TTL_SECONDS

    @field_validator("ttl", mode="before")
    @classmethod
    def _parse_ttl(cls, value: Any) -> Any:
        return _duration(value)


class ScannerConfig(BaseModel):
    trivy_binary: str = "trivy"
    require_image_scan: bool = False
    timeout: float = 300.0


class NotificationConfig(BaseModel):
    webhook_url: str | None = None


class ConfigData(BaseModel):
    """Top-level configuration."""

    clusters: dict[str, ClusterConfig] = Field(default_factory=dict)
    policy: RolloutPolicy = Field(default_factory=RolloutPolicy)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    lease: LeaseConfig = Field(default_factory=LeaseConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    def cluster_ref(self, name: str) -> ClusterRef:
        """Resolve a registered cluster name to a ClusterRef.

        Raises:
            KeyError: If the cluster is not registered
        """
        try:
            return self.clusters[name].to_ref(name)
        except KeyError:
            known = ", ".join(sorted(self.clusters)) or "none"
            raise KeyError(f"Unknown cluster '{name}' (registered: {known})") from None
