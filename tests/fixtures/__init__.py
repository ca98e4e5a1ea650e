"""Shared test fixtures and fakes."""

from .clusters import FAILING_SAMPLES, HEALTHY_SAMPLES, FakeClusterClient
from .services import (
    FAST_POLICY,
    HealthResponses,
    RecordingNotifier,
    StaticScanner,
    build_orchestrator,
    build_prober,
    build_rollback,
    build_traffic,
    fleet,
    health,
    make_ref,
    make_request,
    notifier,
)

__all__ = [
    "FAILING_SAMPLES",
    "FAST_POLICY",
    "HEALTHY_SAMPLES",
    "FakeClusterClient",
    "HealthResponses",
    "RecordingNotifier",
    "StaticScanner",
    "build_orchestrator",
    "build_prober",
    "build_rollback",
    "build_traffic",
    "fleet",
    "health",
    "make_ref",
    "make_request",
    "notifier",
]
