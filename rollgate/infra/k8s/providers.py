"""Provider-specific cluster clients and the client registry.

Each cloud provider differs only in how its load balancers publish an
address and in the kubeconfig context naming used when no explicit
credential context is given. The registry maps a ``CloudProvider`` to a
client class so callers never branch on provider strings.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from cachetools.func import lru_cache  # type: ignore

from rollgate.core.errors import ClusterContextError

from .kr8s_controller import Kr8sClusterClient

if TYPE_CHECKING:
    from rollgate.core.models import ClusterRef

    from .controller import ClusterClient


class EksClusterClient(Kr8sClusterClient):
    """AWS EKS: ELB ingress entries publish a DNS hostname, not an IP."""

    def _endpoint_from_ingress(self, entry: dict[str, Any]) -> str | None:
        address = entry.get("hostname") or entry.get("ip")
        return f"http://{address}" if address else None


class AksClusterClient(Kr8sClusterClient):
    """Azure AKS: load balancers publish a public IP."""


class GkeClusterClient(Kr8sClusterClient):
    """Google GKE: load balancers publish a public IP."""


_REGISTRY: dict[str, type[Kr8sClusterClient]] = {
    "aws": EksClusterClient,
    "azure": AksClusterClient,
    "gcp": GkeClusterClient,
    "generic": Kr8sClusterClient,
}


def register_cluster_client(provider: str, client_class: type[Kr8sClusterClient]) -> None:
    """Register (or replace) the client class for a provider."""
    _REGISTRY[provider] = client_class
    get_cluster_client.cache_clear()


def default_context_id(provider: str) -> str:
    """Conventional kubeconfig context name for a provider's prod cluster."""
    return f"{provider}-prod-cluster"


def kubeconfig_contexts(kubeconfig: str | None = None) -> set[str] | None:
    """Context names defined in the kubeconfig file(s) kr8s would load.

    Follows ``KUBECONFIG`` (a path list) and falls back to
    ``~/.kube/config``. Returns None when no kubeconfig file exists, e.g.
    when running in-cluster with a service account.
    """
    raw = kubeconfig or os.environ.get("KUBECONFIG") or str(Path.home() / ".kube" / "config")
    found = False
    names: set[str] = set()
    for part in raw.split(os.pathsep):
        path = Path(part).expanduser()
        if not part or not path.is_file():
            continue
        found = True
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ClusterContextError(f"Unreadable kubeconfig: {path}", details=str(e)) from e
        for entry in data.get("contexts") or []:
            if isinstance(entry, dict) and entry.get("name"):
                names.add(str(entry["name"]))
    return names if found else None


def check_credential_context(cluster: ClusterRef) -> None:
    """Ensure the cluster's credential context is defined locally.

    Raises:
        ClusterContextError: If a kubeconfig exists but lacks the context
    """
    contexts = kubeconfig_contexts()
    if contexts is None or cluster.credential_context_id in contexts:
        return
    provider = getattr(cluster.cloud_provider, "value", cluster.cloud_provider)
    raise ClusterContextError(
        f"No kubeconfig context '{cluster.credential_context_id}' for cluster {cluster.name}",
        details=(
            f"Known contexts: {', '.join(sorted(contexts)) or 'none'}\n\n"
            f"Authenticate with the {provider} CLI or set "
            "'context' for this cluster in rollgate.yaml."
        ),
    )


@lru_cache(maxsize=32)
def get_cluster_client(cluster: ClusterRef) -> ClusterClient:
    """Get the cluster client for a cluster reference.

    Args:
        cluster: Cluster reference (hashable, frozen)

    Returns:
        Client instance for the cluster's cloud provider

    Raises:
        KeyError: If no client is registered for the provider
        ClusterContextError: If the credential context is not defined
    """
    check_credential_context(cluster)
    provider = getattr(cluster.cloud_provider, "value", cluster.cloud_provider)
    try:
        client_class = _REGISTRY[provider]
    except KeyError:
        raise KeyError(f"No cluster client registered for provider '{provider}'") from None
    return client_class(cluster)
