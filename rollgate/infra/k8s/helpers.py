from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rollgate.core.models import ClusterRef

    from .controller import ClusterClient


def get_cluster_client(cluster: ClusterRef) -> ClusterClient:
    """Get the cluster client registered for a cluster's cloud provider.

    kr8s is imported lazily so the data types in this package can be used
    without loading the Kubernetes client.

    Returns:
        A ClusterClient bound to the cluster's credential context
    """
    from rollgate.infra.k8s.providers import get_cluster_client as _get

    return _get(cluster)
