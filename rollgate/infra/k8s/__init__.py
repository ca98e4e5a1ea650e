"""Kubernetes cluster abstraction layer.

This module provides a provider-neutral client interface over the cluster
operations a release needs, with kr8s-backed implementations per cloud.

Example:
    from rollgate.infra.k8s import get_cluster_client, run_sync

    client = get_cluster_client(cluster_ref)
    revision = run_sync(client.get_current_revision())
"""

from .controller import (
    ClusterClient,
    ClusterState,
    CommandResult,
    ErrorSamples,
    RolloutHandle,
    RolloutStatus,
    TrafficWeights,
)
from .helpers import get_cluster_client
from .utils import parse_duration, run_sync

__all__ = [
    # Client interface
    "ClusterClient",
    "get_cluster_client",
    # Data classes
    "ClusterState",
    "CommandResult",
    "ErrorSamples",
    "RolloutHandle",
    "RolloutStatus",
    "TrafficWeights",
    # Utilities
    "parse_duration",
    "run_sync",
]
