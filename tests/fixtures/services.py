"""Service graph builders for orchestration tests."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from rollgate.core.models import ClusterRef, DeploymentRequest
from rollgate.core.retry import CallPolicy
from rollgate.core.services.health import HealthProber
from rollgate.core.services.lease import ClusterLeaseManager, InMemoryLeaseStore, LeaseStore
from rollgate.core.services.notify import Notifier
from rollgate.core.services.orchestrator import DeploymentOrchestrator
from rollgate.core.services.rollback import RollbackManager
from rollgate.core.services.traffic import TrafficController
from rollgate.core.services.validator import (
    ComplianceValidator,
    Finding,
    ImageScanner,
    ScannerUnavailableError,
)

from .clusters import FakeClusterClient

FAST_POLICY = CallPolicy(attempts=2, timeout=2.0, base_delay=0.0, max_delay=0.0)


class StaticScanner(ImageScanner):
    """Image scanner returning canned findings."""

    def __init__(self, findings: list[Finding] | None = None, unavailable: bool = False):
        self.findings = list(findings or [])
        self.unavailable = unavailable
        self.scanned: list[str] = []

    async def scan(self, image_ref: str) -> list[Finding]:
        self.scanned.append(image_ref)
        if self.unavailable:
            raise ScannerUnavailableError("scanner offline")
        return list(self.findings)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def notify(
        self, event: str, message: str, detail: dict[str, Any] | None = None
    ) -> None:
        self.events.append((event, message, detail or {}))

    def names(self) -> list[str]:
        return [event for event, _, _ in self.events]


class HealthResponses:
    """httpx handler answering ``/health`` per host.

    ``statuses[host]`` is a list of status codes consumed one per request;
    once exhausted (or absent) the host answers 200.
    """

    def __init__(self) -> None:
        self.statuses: dict[str, list[int]] = {}
        self.requests: list[str] = []

    def set(self, host: str, *codes: int) -> None:
        self.statuses[host] = list(codes)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.host)
        queue = self.statuses.get(request.url.host)
        code = queue.pop(0) if queue else 200
        return httpx.Response(code, json={"status": "ok" if code == 200 else "down"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def make_ref(name: str) -> ClusterRef:
    return ClusterRef(
        name=name,
        credential_context_id=f"{name}-ctx",
        namespace="production",
        app_name="web",
    )


def make_request(*names: str, **overrides: Any) -> DeploymentRequest:
    values: dict[str, Any] = {
        "image_ref": "registry.example.com/web:1.4.2",
        "target_clusters": [make_ref(name) for name in names],
        "canary_steps_percent": [10, 50, 100],
        "observation_window": 0.01,
        "error_rate_threshold": 0.01,
        "confirmation_required": False,
    }
    values.update(overrides)
    return DeploymentRequest(**values)


def build_prober(health: HealthResponses) -> HealthProber:
    return HealthProber(retries=0, backoff_base=0.0, transport=health.transport())


def build_traffic(
    prober: HealthProber,
    *,
    minimum_sample_size: int = 10,
    max_hold_retries: int = 2,
) -> TrafficController:
    return TrafficController(
        prober,
        minimum_sample_size=minimum_sample_size,
        max_hold_retries=max_hold_retries,
        health_timeout=1.0,
        call_policy=FAST_POLICY,
    )


def build_rollback(
    prober: HealthProber,
    notifier: Notifier,
    *,
    max_rollback_time: float = 5.0,
    traffic: TrafficController | None = None,
) -> RollbackManager:
    return RollbackManager(
        traffic or build_traffic(prober),
        prober,
        max_rollback_time=max_rollback_time,
        step_attempts=2,
        health_timeout=1.0,
        call_policy=FAST_POLICY,
        notifier=notifier,
    )


def build_orchestrator(
    clients: dict[str, FakeClusterClient],
    *,
    health: HealthResponses | None = None,
    scanner: ImageScanner | None = None,
    notifier: RecordingNotifier | None = None,
    lease_store: LeaseStore | None = None,
    report_dir: Path | None = None,
    max_rollback_time: float = 5.0,
    rollout_timeout: float = 2.0,
    lease_ttl: float = 30.0,
) -> DeploymentOrchestrator:
    prober = build_prober(health or HealthResponses())
    notifier = notifier or RecordingNotifier()
    traffic = build_traffic(prober)
    return DeploymentOrchestrator(
        validator=ComplianceValidator(scanner or StaticScanner()),
        traffic=traffic,
        rollback=build_rollback(
            prober, notifier, max_rollback_time=max_rollback_time, traffic=traffic
        ),
        leases=ClusterLeaseManager(
            lease_store or InMemoryLeaseStore(), ttl_seconds=lease_ttl
        ),
        client_factory=lambda ref: clients[ref.name],
        notifier=notifier,
        report_dir=report_dir,
        call_policy=FAST_POLICY,
        rollout_timeout=rollout_timeout,
        rollout_poll_interval=0.01,
    )


@pytest.fixture
def health() -> HealthResponses:
    return HealthResponses()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fleet() -> Callable[..., dict[str, FakeClusterClient]]:
    """Factory for a dict of fake clients keyed by cluster name."""

    def _fleet(*names: str, **kwargs: Any) -> dict[str, FakeClusterClient]:
        return {name: FakeClusterClient(make_ref(name), **kwargs) for name in names}

    return _fleet
