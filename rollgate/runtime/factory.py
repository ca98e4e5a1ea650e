"""Build the service graph from configuration."""

from __future__ import annotations

from pathlib import Path

from rollgate.core.retry import CallPolicy
from rollgate.core.services.health import HealthProber
from rollgate.core.services.lease import (
    ClusterLeaseManager,
    InMemoryLeaseStore,
    LeaseStore,
    RedisLeaseStore,
)
from rollgate.core.services.notify import (
    CompositeNotifier,
    LogNotifier,
    Notifier,
    WebhookNotifier,
)
from rollgate.core.services.orchestrator import DeploymentOrchestrator
from rollgate.core.services.rollback import RollbackManager
from rollgate.core.services.traffic import TrafficController
from rollgate.core.services.validator import ComplianceValidator, TrivyImageScanner
from rollgate.runtime.config.config_data import ConfigData


def build_lease_store(config: ConfigData) -> LeaseStore:
    if config.lease.backend == "redis":
        return RedisLeaseStore.from_url(config.lease.redis_url)
    return InMemoryLeaseStore()


def build_notifier(config: ConfigData) -> Notifier:
    notifiers: list[Notifier] = [LogNotifier()]
    if config.notifications.webhook_url:
        notifiers.append(WebhookNotifier(config.notifications.webhook_url))
    return notifiers[0] if len(notifiers) == 1 else CompositeNotifier(notifiers)


def build_validator(config: ConfigData) -> ComplianceValidator:
    return ComplianceValidator(
        TrivyImageScanner(config.scanner.trivy_binary, timeout=config.scanner.timeout),
        require_image_scan=config.scanner.require_image_scan,
    )


def build_rollback_manager(
    config: ConfigData,
    *,
    max_rollback_time: float | None = None,
    notifier: Notifier | None = None,
) -> RollbackManager:
    policy = config.policy
    call_policy = CallPolicy(attempts=policy.retry_attempts, timeout=policy.call_timeout)
    prober = HealthProber(retries=policy.health_retries)
    traffic = TrafficController(
        prober,
        minimum_sample_size=policy.minimum_sample_size,
        max_hold_retries=policy.max_hold_retries,
        health_timeout=policy.health_timeout,
        call_policy=call_policy,
    )
    return RollbackManager(
        traffic,
        prober,
        max_rollback_time=max_rollback_time or policy.max_rollback_time,
        step_attempts=policy.retry_attempts,
        health_timeout=policy.health_timeout,
        call_policy=call_policy,
        notifier=notifier or build_notifier(config),
    )


def build_orchestrator(
    config: ConfigData,
    *,
    max_rollback_time: float | None = None,
    report_dir: Path | None = None,
) -> DeploymentOrchestrator:
    """Wire a DeploymentOrchestrator from configuration.

    Args:
        config: Loaded configuration
        max_rollback_time: Override of ``policy.max_rollback_time``
        report_dir: Override of ``audit.report_dir``

    Returns:
        Orchestrator sharing one traffic controller, prober and notifier
        with its rollback manager
    """
    policy = config.policy
    notifier = build_notifier(config)
    rollback = build_rollback_manager(
        config, max_rollback_time=max_rollback_time, notifier=notifier
    )
    return DeploymentOrchestrator(
        validator=build_validator(config),
        traffic=rollback.traffic,
        rollback=rollback,
        leases=ClusterLeaseManager(build_lease_store(config), ttl_seconds=config.lease.ttl),
        notifier=notifier,
        report_dir=report_dir or config.audit.report_dir,
        call_policy=rollback.call_policy,
        rollout_timeout=policy.rollout_timeout,
        rollout_poll_interval=policy.rollout_poll_interval,
    )
