"""Tests for the canary ramp."""

import pytest

from rollgate.core.errors import HealthCheckFailedError, MonotonicityError
from rollgate.core.models import CanaryDecision, ClusterDeploymentState, ClusterPhase
from rollgate.core.services.traffic import RampStep, TrafficController
from rollgate.infra.k8s.controller import ErrorSamples, RolloutHandle
from tests.fixtures import (
    FAILING_SAMPLES,
    FakeClusterClient,
    HealthResponses,
    build_prober,
    build_traffic,
    make_ref,
)


async def _collect(
    traffic: TrafficController,
    client: FakeClusterClient,
    state: ClusterDeploymentState,
    steps: list[int],
) -> list[RampStep]:
    return [
        step
        async for step in traffic.ramp(
            client, state, steps, observation_window=0.0, threshold=0.01
        )
    ]


class TestRamp:
    @pytest.fixture
    def health(self) -> HealthResponses:
        return HealthResponses()

    @pytest.fixture
    def traffic(self, health: HealthResponses) -> TrafficController:
        return build_traffic(build_prober(health), minimum_sample_size=10, max_hold_retries=2)

    @pytest.fixture
    def client(self) -> FakeClusterClient:
        return FakeClusterClient(make_ref("eks-prod"))

    @pytest.fixture
    def state(self, client: FakeClusterClient) -> ClusterDeploymentState:
        return ClusterDeploymentState(cluster=client.cluster)

    @pytest.mark.asyncio
    async def test_healthy_ramp_walks_every_step(
        self,
        traffic: TrafficController,
        client: FakeClusterClient,
        state: ClusterDeploymentState,
    ) -> None:
        steps = await _collect(traffic, client, state, [10, 50, 100])

        assert [s.percent for s in steps] == [10, 50, 100]
        assert all(s.decision == CanaryDecision.PROMOTE for s in steps)
        assert client.weight_history == [10, 50, 100]
        assert state.confirmed_percent == 100
        assert state.phase == ClusterPhase.CANARY_RAMP
        assert state.last_health_result is not None and state.last_health_result.ok

    @pytest.mark.asyncio
    async def test_weights_never_decrease(
        self,
        traffic: TrafficController,
        client: FakeClusterClient,
        state: ClusterDeploymentState,
    ) -> None:
        await _collect(traffic, client, state, [5, 25, 50, 75, 100])

        history = client.weight_history
        assert history == sorted(history)

    @pytest.mark.asyncio
    async def test_abort_verdict_stops_ramp(
        self,
        traffic: TrafficController,
        client: FakeClusterClient,
        state: ClusterDeploymentState,
    ) -> None:
        client.samples = [ErrorSamples(0, 1000), FAILING_SAMPLES]

        steps = await _collect(traffic, client, state, [10, 50, 100])

        assert [s.decision for s in steps] == [CanaryDecision.PROMOTE, CanaryDecision.ABORT]
        assert client.weight_history == [10, 50]
        assert state.confirmed_percent == 10
        assert state.last_canary_verdict is not None
        assert state.last_canary_verdict.decision == CanaryDecision.ABORT

    @pytest.mark.asyncio
    async def test_hold_repeats_window_then_promotes(
        self,
        traffic: TrafficController,
        client: FakeClusterClient,
        state: ClusterDeploymentState,
    ) -> None:
        client.samples = [ErrorSamples(0, 3), ErrorSamples(0, 1000)]

        steps = await _collect(traffic, client, state, [100])

        assert [(s.decision, s.attempt) for s in steps] == [
            (CanaryDecision.HOLD, 1),
            (CanaryDecision.PROMOTE, 2),
        ]
        assert client.weight_history == [100]

    @pytest.mark.asyncio
    async def test_hold_beyond_retries_becomes_abort(
        self,
        traffic: TrafficController,
        client: FakeClusterClient,
        state: ClusterDeploymentState,
    ) -> None:
        client.default_samples = ErrorSamples(0, 3)

        steps = await _collect(traffic, client, state, [10, 100])

        assert [s.decision for s in steps] == [
            CanaryDecision.HOLD,
            CanaryDecision.HOLD,
            CanaryDecision.ABORT,
        ]
        assert "held 3 times" in steps[-1].verdict.reason

    @pytest.mark.asyncio
    async def test_resume_skips_confirmed_steps(
        self,
        traffic: TrafficController,
        client: FakeClusterClient,
        state: ClusterDeploymentState,
    ) -> None:
        state.confirmed_percent = 50
        state.current_traffic_percent = 50

        steps = await _collect(traffic, client, state, [10, 50, 100])

        assert [s.percent for s in steps] == [100]
        assert client.weight_history == [100]

    @pytest.mark.asyncio
    async def test_resume_below_current_weight_refused(
        self,
        traffic: TrafficController,
        client: FakeClusterClient,
        state: ClusterDeploymentState,
    ) -> None:
        state.current_traffic_percent = 60

        with pytest.raises(MonotonicityError):
            await _collect(traffic, client, state, [10, 50, 100])
        assert client.weight_history == []

    @pytest.mark.asyncio
    async def test_invalid_steps_refused(
        self,
        traffic: TrafficController,
        client: FakeClusterClient,
        state: ClusterDeploymentState,
    ) -> None:
        with pytest.raises(MonotonicityError):
            await _collect(traffic, client, state, [50, 10, 100])

    @pytest.mark.asyncio
    async def test_failed_health_check_raises(
        self,
        traffic: TrafficController,
        health: HealthResponses,
        client: FakeClusterClient,
        state: ClusterDeploymentState,
    ) -> None:
        health.set("eks-prod.test", 503)

        with pytest.raises(HealthCheckFailedError):
            await _collect(traffic, client, state, [100])
        assert state.last_health_result is not None
        assert state.last_health_result.status_code == 503

    @pytest.mark.asyncio
    async def test_missing_endpoint_is_unhealthy(
        self,
        traffic: TrafficController,
        client: FakeClusterClient,
        state: ClusterDeploymentState,
    ) -> None:
        client.endpoint = None

        with pytest.raises(HealthCheckFailedError):
            await _collect(traffic, client, state, [100])


class TestPromoteAndRestore:
    @pytest.mark.asyncio
    async def test_promote_marks_state(self) -> None:
        traffic = build_traffic(build_prober(HealthResponses()))
        client = FakeClusterClient(make_ref("gke-prod"))
        state = ClusterDeploymentState(cluster=client.cluster)
        handle = RolloutHandle("d1", "web:2", "web-green", "green")

        await traffic.promote(client, state, handle)

        assert client.promoted == [handle]
        assert state.phase == ClusterPhase.PROMOTED
        assert state.current_traffic_percent == 100

    @pytest.mark.asyncio
    async def test_restore_stable_zeroes_candidate(self) -> None:
        traffic = build_traffic(build_prober(HealthResponses()))
        client = FakeClusterClient(make_ref("aks-prod"))
        state = ClusterDeploymentState(cluster=client.cluster, current_traffic_percent=50)
        snapshot = await client.capture_state()

        weights = await traffic.restore_stable(client, state, snapshot, attempts=1)

        assert weights.candidate_percent == 0
        assert state.current_traffic_percent == 0
        assert client.candidate_percent == 0
