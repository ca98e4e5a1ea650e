"""Tests for the kr8s cluster client helpers and provider registry."""

import dataclasses
import os
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import kr8s
import pytest

from rollgate.core.errors import ClusterContextError, TransientClusterError
from rollgate.core.models import CloudProvider, ClusterRef
from rollgate.infra.constants import DEFAULT_CONSTANTS
from rollgate.infra.k8s.kr8s_controller import (
    Kr8sClusterClient,
    _escape_pointer,
    classify_log_line,
    other_color,
)
from rollgate.infra.k8s.providers import (
    AksClusterClient,
    EksClusterClient,
    GkeClusterClient,
    check_credential_context,
    default_context_id,
    get_cluster_client,
    kubeconfig_contexts,
    register_cluster_client,
)


def _ref(provider: CloudProvider, **kwargs) -> ClusterRef:
    return ClusterRef(
        name=f"{provider.value}-prod",
        cloud_provider=provider,
        credential_context_id=default_context_id(provider.value),
        app_name="web",
        **kwargs,
    )


@pytest.fixture(autouse=True)
def no_kubeconfig(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KUBECONFIG", str(tmp_path / "missing-kubeconfig"))


class TestClassifyLogLine:
    @pytest.mark.parametrize(
        ("line", "expected"),
        [
            ('{"status": 200, "path": "/"}', (True, False)),
            ('{"status": 503, "path": "/"}', (True, True)),
            ('{"status_code": 500}', (True, True)),
            ('{"level": "error", "msg": "db down"}', (True, True)),
            ('{"level": "info", "msg": "ok"}', (True, False)),
            ("GET / 200 ERROR upstream", (True, True)),
            ("GET / 200", (True, False)),
            ("{not json ERROR", (True, True)),
            ("   ", (False, False)),
        ],
    )
    def test_classification(self, line: str, expected: tuple[bool, bool]) -> None:
        assert classify_log_line(line) == expected


class TestNaming:
    def test_other_color(self) -> None:
        assert other_color("blue") == "green"
        assert other_color("green") == "blue"

    def test_escape_pointer(self) -> None:
        assert _escape_pointer("rollgate.io/revision") == "rollgate.io~1revision"
        assert _escape_pointer("a~b") == "a~0b"

    def test_resource_names(self) -> None:
        client = Kr8sClusterClient(_ref(CloudProvider.GENERIC))

        assert client._workload("green") == "web-green"
        assert client._primary_service == "web"
        assert client._candidate_service == "web-candidate"
        assert client._canary_ingress == "web-canary"


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_explicit_endpoint_needs_no_api(self) -> None:
        client = Kr8sClusterClient(
            _ref(CloudProvider.GCP, endpoint="https://web.example.com/")
        )

        assert await client.get_service_endpoint() == "https://web.example.com"

    def test_eks_prefers_hostname(self) -> None:
        client = EksClusterClient(_ref(CloudProvider.AWS))
        entry = {"hostname": "abc.elb.amazonaws.com", "ip": "10.0.0.1"}

        assert client._endpoint_from_ingress(entry) == "http://abc.elb.amazonaws.com"

    def test_default_prefers_ip(self) -> None:
        client = AksClusterClient(_ref(CloudProvider.AZURE))
        entry = {"hostname": "web.cloudapp.azure.com", "ip": "20.1.2.3"}

        assert client._endpoint_from_ingress(entry) == "http://20.1.2.3"
        assert client._endpoint_from_ingress({}) is None


class TestProviderRegistry:
    @pytest.mark.parametrize(
        ("provider", "cls"),
        [
            (CloudProvider.AWS, EksClusterClient),
            (CloudProvider.AZURE, AksClusterClient),
            (CloudProvider.GCP, GkeClusterClient),
            (CloudProvider.GENERIC, Kr8sClusterClient),
        ],
    )
    def test_provider_mapping(self, provider: CloudProvider, cls: type) -> None:
        assert type(get_cluster_client(_ref(provider))) is cls

    def test_clients_are_cached_per_ref(self) -> None:
        ref = _ref(CloudProvider.AWS)

        assert get_cluster_client(ref) is get_cluster_client(ref)

    def test_register_replaces_class(self) -> None:
        class CustomGke(GkeClusterClient):
            pass

        try:
            register_cluster_client("gcp", CustomGke)
            assert isinstance(get_cluster_client(_ref(CloudProvider.GCP)), CustomGke)
        finally:
            register_cluster_client("gcp", GkeClusterClient)

    def test_default_context_id(self) -> None:
        assert default_context_id("aws") == "aws-prod-cluster"


KUBECONFIG = """
apiVersion: v1
kind: Config
contexts:
  - name: aws-prod-cluster
    context: {cluster: eks, user: admin}
  - name: gke-prod-cluster
    context: {cluster: gke, user: admin}
"""


class TestCredentialContext:
    def test_lists_contexts_across_kubeconfig_paths(self, tmp_path: Path) -> None:
        first = tmp_path / "first"
        first.write_text(KUBECONFIG)
        second = tmp_path / "second"
        second.write_text("contexts:\n  - name: aks-prod-cluster\n")

        paths = os.pathsep.join(str(p) for p in (first, second, tmp_path / "absent"))

        contexts = kubeconfig_contexts(paths)

        assert contexts == {"aws-prod-cluster", "gke-prod-cluster", "aks-prod-cluster"}

    def test_no_kubeconfig_means_unknown(self, tmp_path: Path) -> None:
        assert kubeconfig_contexts(str(tmp_path / "absent")) is None

    def test_missing_context_is_rejected(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        kubeconfig = tmp_path / "config"
        kubeconfig.write_text(KUBECONFIG)
        monkeypatch.setenv("KUBECONFIG", str(kubeconfig))
        ref = _ref(CloudProvider.AZURE, namespace="context-check")

        check_credential_context(_ref(CloudProvider.AWS))
        with pytest.raises(ClusterContextError) as excinfo:
            get_cluster_client(ref)

        assert "aks-prod-cluster" not in excinfo.value.details
        assert "azure-prod" in excinfo.value.message


def _resource(name: str, *, metadata: dict | None = None, spec: dict | None = None):
    return SimpleNamespace(
        name=name,
        metadata=metadata if metadata is not None else {},
        spec=spec or {},
        status={},
        patch=AsyncMock(),
        refresh=AsyncMock(),
    )


class _FakeCluster:
    """Resources returned by the patched kr8s ``get`` classmethods."""

    def __init__(self, active: str = "blue") -> None:
        annotations = {DEFAULT_CONSTANTS.ACTIVE_COLOR_ANNOTATION: active}
        self.services = {
            "web": _resource("web", metadata={"annotations": annotations}),
            "web-candidate": _resource("web-candidate"),
        }
        self.deployments = {
            "web-blue": _resource(
                "web-blue",
                metadata={
                    "annotations": {
                        DEFAULT_CONSTANTS.REVISION_ANNOTATION: "registry.example.com/web:1.4.1"
                    }
                },
                spec={"replicas": 3},
            ),
            "web-green": _resource(
                "web-green",
                metadata={"generation": 4},
                spec={
                    "replicas": 0,
                    "template": {
                        "spec": {"containers": [{"image": "registry.example.com/web:1.3.0"}]}
                    },
                },
            ),
        }
        self.ingress = _resource(
            "web-canary", metadata={"resourceVersion": "100", "annotations": {}}
        )

    async def get_service(self, name: str, **kwargs):
        return self.services[name]

    async def get_deployment(self, name: str, **kwargs):
        return self.deployments[name]

    async def get_ingress(self, name: str, **kwargs):
        return self.ingress

    def patched(self):
        module = "rollgate.infra.k8s.kr8s_controller"
        return (
            patch.object(Kr8sClusterClient, "_get_api", AsyncMock(return_value=MagicMock())),
            patch(f"{module}.Service.get", side_effect=self.get_service),
            patch(f"{module}.Deployment.get", side_effect=self.get_deployment),
            patch(f"{module}.Ingress.get", side_effect=self.get_ingress),
        )


@pytest.fixture
def cluster():
    fake = _FakeCluster()
    api, service, deployment, ingress = fake.patched()
    with api, service, deployment, ingress:
        yield fake


def _conflict() -> kr8s.ServerError:
    error = kr8s.ServerError("Operation cannot be fulfilled: the object has been modified")
    error.response = SimpleNamespace(status_code=409)
    return error


class TestRollout:
    @pytest.mark.asyncio
    async def test_rolls_the_idle_colour(self, cluster: _FakeCluster) -> None:
        client = Kr8sClusterClient(_ref(CloudProvider.GENERIC))

        handle = await client.rollout("d1", "registry.example.com/web:1.4.2")

        assert handle.color == "green"
        assert handle.workload == "web-green"
        ops = cluster.deployments["web-green"].patch.await_args.args[0]
        assert {"op": "replace", "path": "/spec/replicas", "value": 3} in ops
        assert {
            "op": "replace",
            "path": "/spec/template/spec/containers/0/image",
            "value": "registry.example.com/web:1.4.2",
        } in ops
        cluster.services["web-candidate"].patch.assert_awaited_once_with(
            {"spec": {"selector": {"app": "web", "color": "green"}}}
        )

    @pytest.mark.asyncio
    async def test_second_rollout_issues_no_patch(self, cluster: _FakeCluster) -> None:
        client = Kr8sClusterClient(_ref(CloudProvider.GENERIC))
        candidate = cluster.deployments["web-green"]

        first = await client.rollout("d1", "registry.example.com/web:1.4.2")
        # The API server now carries the annotations written by the first call
        candidate.metadata["annotations"] = {
            DEFAULT_CONSTANTS.DEPLOYMENT_ID_ANNOTATION: "d1",
            DEFAULT_CONSTANTS.REVISION_ANNOTATION: "registry.example.com/web:1.4.2",
        }
        second = await client.rollout("d1", "registry.example.com/web:1.4.2")

        assert candidate.patch.await_count == 1
        assert cluster.services["web-candidate"].patch.await_count == 1
        assert second == first

    @pytest.mark.asyncio
    async def test_new_revision_for_same_deployment_is_applied(
        self, cluster: _FakeCluster
    ) -> None:
        client = Kr8sClusterClient(_ref(CloudProvider.GENERIC))
        candidate = cluster.deployments["web-green"]
        candidate.metadata["annotations"] = {
            DEFAULT_CONSTANTS.DEPLOYMENT_ID_ANNOTATION: "d1",
            DEFAULT_CONSTANTS.REVISION_ANNOTATION: "registry.example.com/web:1.4.2",
        }

        await client.rollout("d1", "registry.example.com/web:1.4.1")

        assert candidate.patch.await_count == 1


class TestCurrentRevision:
    @pytest.mark.asyncio
    async def test_reads_revision_of_active_colour(self, cluster: _FakeCluster) -> None:
        client = Kr8sClusterClient(_ref(CloudProvider.GENERIC))

        assert await client.get_current_revision() == "registry.example.com/web:1.4.1"

    @pytest.mark.asyncio
    async def test_falls_back_to_container_image(self, cluster: _FakeCluster) -> None:
        cluster.services["web"].metadata["annotations"] = {
            DEFAULT_CONSTANTS.ACTIVE_COLOR_ANNOTATION: "green"
        }
        client = Kr8sClusterClient(_ref(CloudProvider.GENERIC))

        assert await client.get_current_revision() == "registry.example.com/web:1.3.0"

    @pytest.mark.asyncio
    async def test_missing_workload_has_no_revision(self, cluster: _FakeCluster) -> None:
        del cluster.deployments["web-blue"]

        async def missing(name: str, **kwargs):
            if name not in cluster.deployments:
                raise kr8s.NotFoundError(f"{name} not found")
            return cluster.deployments[name]

        client = Kr8sClusterClient(_ref(CloudProvider.GENERIC))
        with patch("rollgate.infra.k8s.kr8s_controller.Deployment.get", side_effect=missing):
            assert await client.get_current_revision() is None


class TestTrafficWeight:
    @pytest.mark.asyncio
    async def test_writes_complementary_weights(self, cluster: _FakeCluster) -> None:
        client = Kr8sClusterClient(_ref(CloudProvider.GENERIC))

        weights = await client.set_traffic_weight(25)

        assert (weights.stable_percent, weights.candidate_percent) == (75, 25)
        body = cluster.ingress.patch.await_args.args[0]
        assert body["metadata"]["resourceVersion"] == "100"
        assert body["metadata"]["annotations"][DEFAULT_CONSTANTS.CANARY_WEIGHT_ANNOTATION] == "25"

    @pytest.mark.asyncio
    async def test_conflict_is_retried_with_fresh_read(self, cluster: _FakeCluster) -> None:
        cluster.ingress.patch.side_effect = [_conflict(), None]
        client = Kr8sClusterClient(_ref(CloudProvider.GENERIC))

        weights = await client.set_traffic_weight(50)

        assert weights.candidate_percent == 50
        assert cluster.ingress.patch.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_conflict_raises_transient_error(
        self, cluster: _FakeCluster
    ) -> None:
        cluster.ingress.patch.side_effect = _conflict()
        constants = dataclasses.replace(DEFAULT_CONSTANTS, CAS_MAX_ATTEMPTS=2)
        client = Kr8sClusterClient(_ref(CloudProvider.GENERIC), constants=constants)

        with pytest.raises(TransientClusterError, match="kept conflicting"):
            await client.set_traffic_weight(50)

        assert cluster.ingress.patch.await_count == 2

    @pytest.mark.asyncio
    async def test_other_server_errors_are_not_retried(self, cluster: _FakeCluster) -> None:
        error = kr8s.ServerError("forbidden")
        error.response = SimpleNamespace(status_code=403)
        cluster.ingress.patch.side_effect = error
        client = Kr8sClusterClient(_ref(CloudProvider.GENERIC))

        with pytest.raises(TransientClusterError, match="Failed to set traffic weight"):
            await client.set_traffic_weight(50)

        assert cluster.ingress.patch.await_count == 1
