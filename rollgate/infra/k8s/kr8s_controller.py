"""Kr8s-based implementation of ClusterClient.

Uses the kr8s library for native async Kubernetes operations.

Cluster layout managed by this client, per application ``<app>``:

- Deployments ``<app>-blue`` and ``<app>-green``; one colour is stable, the
  other is the candidate.
- Service ``<app>`` selects the stable colour and records it in the
  ``rollgate.io/active-color`` annotation.
- Service ``<app>-candidate`` selects the candidate colour.
- Ingress ``<app>-canary`` (NGINX canary ingress) routes
  ``canary-weight`` percent of traffic to ``<app>-candidate``. The weight is
  a single annotation, so stable and candidate always sum to 100.
"""

from __future__ import annotations

import asyncio
import json
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Any

import kr8s
from kr8s.asyncio.objects import ConfigMap, Deployment, Ingress, Node, Pod, Service
from loguru import logger

from rollgate.core.errors import TransientClusterError
from rollgate.infra.constants import DEFAULT_CONSTANTS, ClusterConstants

from .controller import (
    ClusterClient,
    ClusterState,
    CommandResult,
    ErrorSamples,
    RolloutHandle,
    RolloutStatus,
    TrafficWeights,
)

if TYPE_CHECKING:
    from rollgate.core.models import ClusterRef

COLORS = ("blue", "green")


def other_color(color: str) -> str:
    return "green" if color == "blue" else "blue"


def _escape_pointer(key: str) -> str:
    """Escape a key for use in a JSON patch path."""
    return key.replace("~", "~0").replace("/", "~1")


def classify_log_line(line: str) -> tuple[bool, bool]:
    """Classify one access-log line as (is_request, is_error).

    Structured JSON lines with an HTTP ``status`` count as requests and
    5xx responses as errors. Plain lines count as requests, and as errors
    when they carry an ``ERROR`` level marker.
    """
    text = line.strip()
    if not text:
        return False, False
    if text.startswith("{"):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            status = payload.get("status") or payload.get("status_code")
            if isinstance(status, int):
                return True, status >= 500
            level = str(payload.get("level", "")).upper()
            return True, level in ("ERROR", "CRITICAL", "FATAL")
    return True, "ERROR" in text


class Kr8sClusterClient(ClusterClient):
    """Cluster client using the kr8s library.

    Note: The kr8s API client is NOT cached on the instance because it is
    tied to the event loop that created it.
    """

    def __init__(
        self,
        cluster: ClusterRef,
        constants: ClusterConstants | None = None,
    ) -> None:
        super().__init__(cluster)
        self.constants = constants or DEFAULT_CONSTANTS

    async def _get_api(self) -> Any:  # Returns kr8s._api.Api
        return await kr8s.asyncio.api(context=self.cluster.credential_context_id)

    # =========================================================================
    # Naming
    # =========================================================================

    @property
    def namespace(self) -> str:
        return self.cluster.namespace

    @property
    def app(self) -> str:
        return self.cluster.app_name

    def _workload(self, color: str) -> str:
        return f"{self.app}-{color}"

    @property
    def _primary_service(self) -> str:
        return self.app

    @property
    def _candidate_service(self) -> str:
        return f"{self.app}-candidate"

    @property
    def _canary_ingress(self) -> str:
        return f"{self.app}-canary"

    # =========================================================================
    # Cluster Context
    # =========================================================================

    async def context_available(self) -> bool:
        """Check that the credential context resolves to a reachable API."""
        try:
            api = await self._get_api()
            await api.version()
            return True
        except Exception as e:
            logger.warning(
                f"Context '{self.cluster.credential_context_id}' for cluster "
                f"{self.name} is not usable: {e}"
            )
            return False

    # =========================================================================
    # Rollout Operations
    # =========================================================================

    async def _active_color(self, api: Any) -> str:
        service = await Service.get(
            self._primary_service, namespace=self.namespace, api=api
        )
        annotations = service.metadata.get("annotations", {})
        color = annotations.get(self.constants.ACTIVE_COLOR_ANNOTATION)
        if color in COLORS:
            return str(color)
        selector_color = service.spec.get("selector", {}).get("color")
        return str(selector_color) if selector_color in COLORS else COLORS[0]

    async def _deployment(self, api: Any, color: str) -> Any:
        return await Deployment.get(
            self._workload(color), namespace=self.namespace, api=api
        )

    def _revision_of(self, deployment: Any) -> str | None:
        annotations = deployment.metadata.get("annotations", {})
        revision = annotations.get(self.constants.REVISION_ANNOTATION)
        if revision:
            return str(revision)
        containers = (
            deployment.spec.get("template", {}).get("spec", {}).get("containers", [])
        )
        return containers[0].get("image") if containers else None

    async def get_current_revision(self) -> str | None:
        """Get the revision served by the stable colour."""
        try:
            api = await self._get_api()
            color = await self._active_color(api)
            return self._revision_of(await self._deployment(api, color))
        except kr8s.NotFoundError:
            return None
        except kr8s.ServerError as e:
            raise TransientClusterError(
                f"Failed to read current revision on {self.name}", str(e)
            ) from e

    async def rollout(self, deployment_id: str, revision: str) -> RolloutHandle:
        """Roll the candidate colour to a revision (idempotent)."""
        api = await self._get_api()
        stable_color = await self._active_color(api)
        color = other_color(stable_color)
        candidate = await self._deployment(api, color)
        annotations = candidate.metadata.get("annotations", {})

        already_applied = (
            annotations.get(self.constants.DEPLOYMENT_ID_ANNOTATION) == deployment_id
            and annotations.get(self.constants.REVISION_ANNOTATION) == revision
        )
        if already_applied:
            logger.debug(
                f"Rollout {deployment_id}/{revision} already applied on {self.name}"
            )
            return RolloutHandle(
                deployment_id=deployment_id,
                revision=revision,
                workload=candidate.name,
                color=color,
                generation=int(candidate.metadata.get("generation", 0)),
            )

        stable = await self._deployment(api, stable_color)
        replicas = max(int(stable.spec.get("replicas", 0)), 1)
        meta = "/metadata/annotations"
        ops: list[dict[str, Any]] = []
        if "annotations" not in candidate.metadata:
            ops.append({"op": "add", "path": meta, "value": {}})
        ops.extend(
            [
                {
                    "op": "add",
                    "path": f"{meta}/{_escape_pointer(self.constants.DEPLOYMENT_ID_ANNOTATION)}",
                    "value": deployment_id,
                },
                {
                    "op": "add",
                    "path": f"{meta}/{_escape_pointer(self.constants.REVISION_ANNOTATION)}",
                    "value": revision,
                },
                {
                    "op": "replace",
                    "path": "/spec/template/spec/containers/0/image",
                    "value": revision,
                },
                {"op": "replace", "path": "/spec/replicas", "value": replicas},
            ]
        )
        await candidate.patch(ops, type="json")

        # Point the candidate service at the colour being rolled out
        candidate_service = await Service.get(
            self._candidate_service, namespace=self.namespace, api=api
        )
        await candidate_service.patch(
            {"spec": {"selector": {"app": self.app, "color": color}}}
        )

        await candidate.refresh()
        logger.info(f"Rolled {candidate.name} on {self.name} to {revision}")
        return RolloutHandle(
            deployment_id=deployment_id,
            revision=revision,
            workload=candidate.name,
            color=color,
            generation=int(candidate.metadata.get("generation", 0)),
        )

    async def get_rollout_status(self, handle: RolloutHandle) -> RolloutStatus:
        """Get replica readiness of the candidate colour."""
        api = await self._get_api()
        deployment = await self._deployment(api, handle.color)
        status = deployment.status
        desired = int(deployment.spec.get("replicas", 0))
        observed = int(status.get("observedGeneration", 0))
        current = int(status.get("updatedReplicas", 0))
        if observed < handle.generation:
            # Controller has not seen the new template yet
            current = 0
        return RolloutStatus(
            ready=int(status.get("readyReplicas", 0)),
            desired=desired,
            current=current,
        )

    async def scale_candidate(self, replicas: int) -> None:
        """Scale the candidate colour."""
        api = await self._get_api()
        color = other_color(await self._active_color(api))
        deployment = await self._deployment(api, color)
        await deployment.scale(replicas)
        logger.info(f"Scaled {deployment.name} on {self.name} to {replicas}")

    async def promote(self, handle: RolloutHandle) -> None:
        """Switch the primary service to the candidate colour."""
        api = await self._get_api()
        service = await Service.get(
            self._primary_service, namespace=self.namespace, api=api
        )
        await service.patch(
            {
                "metadata": {
                    "annotations": {
                        self.constants.ACTIVE_COLOR_ANNOTATION: handle.color
                    }
                },
                "spec": {"selector": {"app": self.app, "color": handle.color}},
            }
        )
        # Primary now serves the new revision, so the canary split is retired
        await self.set_traffic_weight(0)
        logger.info(f"Promoted {handle.workload} to stable on {self.name}")

    # =========================================================================
    # Traffic Operations
    # =========================================================================

    async def set_traffic_weight(self, candidate_percent: int) -> TrafficWeights:
        """Write the canary weight with a resourceVersion compare-and-swap."""
        weights = TrafficWeights.for_candidate(candidate_percent)
        api = await self._get_api()

        for attempt in range(1, self.constants.CAS_MAX_ATTEMPTS + 1):
            ingress = await Ingress.get(
                self._canary_ingress, namespace=self.namespace, api=api
            )
            resource_version = ingress.metadata.get("resourceVersion")
            try:
                await ingress.patch(
                    {
                        "metadata": {
                            "resourceVersion": resource_version,
                            "annotations": {
                                self.constants.CANARY_ANNOTATION: "true",
                                self.constants.CANARY_WEIGHT_ANNOTATION: str(
                                    weights.candidate_percent
                                ),
                            },
                        }
                    }
                )
                return weights
            except kr8s.ServerError as e:
                status_code = getattr(getattr(e, "response", None), "status_code", None)
                if status_code != 409:
                    raise TransientClusterError(
                        f"Failed to set traffic weight on {self.name}", str(e)
                    ) from e
                logger.warning(
                    f"Traffic weight conflict on {self.name} "
                    f"(attempt {attempt}/{self.constants.CAS_MAX_ATTEMPTS}), retrying"
                )
                await asyncio.sleep(0.1 * attempt)

        raise TransientClusterError(
            f"Traffic weight on {self.name} kept conflicting",
            f"Gave up after {self.constants.CAS_MAX_ATTEMPTS} compare-and-swap attempts",
        )

    async def get_traffic_weights(self) -> TrafficWeights:
        """Read the canary weight annotation."""
        api = await self._get_api()
        ingress = await Ingress.get(
            self._canary_ingress, namespace=self.namespace, api=api
        )
        annotations = ingress.metadata.get("annotations", {})
        raw = annotations.get(self.constants.CANARY_WEIGHT_ANNOTATION, "0")
        try:
            candidate = int(raw)
        except ValueError:
            candidate = 0
        return TrafficWeights.for_candidate(candidate)

    # =========================================================================
    # Observability
    # =========================================================================

    async def get_recent_error_samples(self, window: float) -> ErrorSamples:
        """Count candidate requests and errors from pod logs."""
        api = await self._get_api()
        color = other_color(await self._active_color(api))
        errors = 0
        total = 0
        try:
            async for pod in Pod.list(
                namespace=self.namespace,
                label_selector=f"app={self.app},color={color}",
                api=api,
            ):
                async for line in pod.logs(since_seconds=max(int(window), 1)):
                    is_request, is_error = classify_log_line(line)
                    total += int(is_request)
                    errors += int(is_error)
        except kr8s.ServerError as e:
            raise TransientClusterError(
                f"Failed to read candidate logs on {self.name}", str(e)
            ) from e
        return ErrorSamples(error_count=errors, total_count=total)

    def _endpoint_from_ingress(self, entry: dict[str, Any]) -> str | None:
        """Pick an address from a LoadBalancer ingress entry (IP first)."""
        address = entry.get("ip") or entry.get("hostname")
        return f"http://{address}" if address else None

    async def get_service_endpoint(self) -> str | None:
        """Resolve the public base URL of the primary service."""
        if self.cluster.endpoint:
            return self.cluster.endpoint.rstrip("/")

        api = await self._get_api()
        service = await Service.get(
            self._primary_service, namespace=self.namespace, api=api
        )
        lb_ingress = service.status.get("loadBalancer", {}).get("ingress", [])
        if lb_ingress:
            endpoint = self._endpoint_from_ingress(lb_ingress[0])
            if endpoint:
                return endpoint

        ports = service.spec.get("ports", [])
        node_port = ports[0].get("nodePort") if ports else None
        if node_port:
            async for node in Node.list(api=api):
                for address in node.status.get("addresses", []):
                    if address.get("type") == "ExternalIP":
                        return f"http://{address['address']}:{node_port}"
        return None

    # =========================================================================
    # State Capture and Restore
    # =========================================================================

    async def capture_state(self) -> ClusterState:
        """Capture rollout, traffic, and ConfigMap state."""
        api = await self._get_api()
        active = await self._active_color(api)
        stable = await self._deployment(api, active)
        candidate = await self._deployment(api, other_color(active))
        weights = await self.get_traffic_weights()

        configmaps: dict[str, dict[str, str]] = {}
        async for cm in ConfigMap.list(
            namespace=self.namespace, label_selector=f"app={self.app}", api=api
        ):
            configmaps[cm.name] = dict(cm.raw.get("data", {}) or {})

        return ClusterState(
            active_color=active,
            stable_revision=self._revision_of(stable),
            candidate_revision=self._revision_of(candidate),
            stable_replicas=int(stable.spec.get("replicas", 0)),
            candidate_replicas=int(candidate.spec.get("replicas", 0)),
            candidate_percent=weights.candidate_percent,
            configmaps=configmaps,
        )

    async def restore_stable(self, state: ClusterState) -> TrafficWeights:
        """Point the primary service back at the snapshot's stable colour."""
        api = await self._get_api()
        service = await Service.get(
            self._primary_service, namespace=self.namespace, api=api
        )
        await service.patch(
            {
                "metadata": {
                    "annotations": {
                        self.constants.ACTIVE_COLOR_ANNOTATION: state.active_color
                    }
                },
                "spec": {"selector": {"app": self.app, "color": state.active_color}},
            }
        )
        return await self.set_traffic_weight(0)

    async def restore_configuration(self, configmaps: dict[str, dict[str, str]]) -> None:
        """Replace ConfigMap data with the captured values."""
        api = await self._get_api()
        for name, data in configmaps.items():
            cm = await ConfigMap.get(name, namespace=self.namespace, api=api)
            await cm.patch([{"op": "replace", "path": "/data", "value": data}], type="json")
            logger.info(f"Restored ConfigMap {name} on {self.name}")

    async def restore_database(self, backup: Path) -> CommandResult | None:
        """Restore the database by streaming a SQL dump into psql.

        Note: kr8s has no stdin-capable exec, so this uses kubectl.
        """
        api = await self._get_api()
        pods = [
            pod
            async for pod in Pod.list(
                namespace=self.namespace,
                label_selector=self.constants.DATABASE_POD_LABEL,
                api=api,
            )
        ]
        if not pods:
            return None

        pod_name = pods[0].name
        database = self.app.replace("-", "_")
        cmd = [
            "kubectl",
            "--context",
            self.cluster.credential_context_id,
            "exec",
            "-i",
            pod_name,
            "-n",
            self.namespace,
            "--",
            "psql",
            "-U",
            "postgres",
            database,
        ]

        def _run() -> CommandResult:
            with open(backup) as stdin:
                result = subprocess.run(cmd, stdin=stdin, capture_output=True, text=True)
            return CommandResult(
                success=result.returncode == 0,
                stdout=result.stdout or "",
                stderr=result.stderr or "",
                returncode=result.returncode,
            )

        return await asyncio.to_thread(_run)
