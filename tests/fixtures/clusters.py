"""In-memory cluster client for orchestration tests."""

from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path

from rollgate.core.errors import TransientClusterError
from rollgate.core.models import ClusterRef
from rollgate.infra.k8s.controller import (
    ClusterClient,
    ClusterState,
    CommandResult,
    ErrorSamples,
    RolloutHandle,
    RolloutStatus,
    TrafficWeights,
)

HEALTHY_SAMPLES = ErrorSamples(error_count=0, total_count=1000)
FAILING_SAMPLES = ErrorSamples(error_count=200, total_count=1000)


class FakeClusterClient(ClusterClient):
    """ClusterClient backed by plain attributes.

    ``fail(op, *errors)`` queues exceptions raised by the next calls to
    ``op``; ``break_op(op)`` makes every call fail; ``delays[op]`` slows
    an operation down.
    """

    def __init__(
        self,
        cluster: ClusterRef,
        *,
        samples: list[ErrorSamples] | None = None,
        available: bool = True,
        stable_revision: str | None = "registry.example.com/web:1.4.1",
        ready_after: int = 0,
        configmaps: dict[str, dict[str, str]] | None = None,
    ) -> None:
        super().__init__(cluster)
        self.available = available
        self.samples = list(samples or [])
        self.default_samples = HEALTHY_SAMPLES
        self.endpoint: str | None = f"http://{cluster.name}.test"
        self.state = ClusterState(
            active_color="blue",
            stable_revision=stable_revision,
            candidate_revision=None,
            stable_replicas=3,
            configmaps=dict(configmaps or {}),
        )
        self.candidate_percent = 0
        self.candidate_replicas = 0
        self.weight_history: list[int] = []
        self.rollouts: list[tuple[str, str]] = []
        self.promoted: list[RolloutHandle] = []
        self.restored_configmaps: dict[str, dict[str, str]] | None = None
        self.database_result: CommandResult | None = None
        self.calls: list[str] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.broken: set[str] = set()
        self.delays: dict[str, float] = {}
        self.ready_after = ready_after
        self.status_polls = 0

    def fail(self, op: str, *errors: BaseException) -> None:
        self.failures.setdefault(op, []).extend(errors)

    def break_op(self, op: str) -> None:
        self.broken.add(op)

    async def _enter(self, op: str) -> None:
        self.calls.append(op)
        delay = self.delays.get(op)
        if delay:
            await asyncio.sleep(delay)
        if op in self.broken:
            raise TransientClusterError(f"{op} unavailable on {self.name}")
        queue = self.failures.get(op)
        if queue:
            raise queue.pop(0)

    @property
    def mutated(self) -> bool:
        return bool(self.rollouts or self.weight_history)

    async def context_available(self) -> bool:
        await self._enter("context_available")
        return self.available

    async def get_current_revision(self) -> str | None:
        await self._enter("get_current_revision")
        return self.state.stable_revision

    async def rollout(self, deployment_id: str, revision: str) -> RolloutHandle:
        await self._enter("rollout")
        if (deployment_id, revision) not in self.rollouts:
            self.rollouts.append((deployment_id, revision))
        self.state.candidate_revision = revision
        self.candidate_replicas = 3
        return RolloutHandle(
            deployment_id=deployment_id,
            revision=revision,
            workload=f"{self.cluster.app_name}-green",
            color="green",
            generation=len(self.rollouts),
        )

    async def get_rollout_status(self, handle: RolloutHandle) -> RolloutStatus:
        await self._enter("get_rollout_status")
        self.status_polls += 1
        ready = 3 if self.status_polls > self.ready_after else 0
        return RolloutStatus(ready=ready, desired=3, current=3)

    async def scale_candidate(self, replicas: int) -> None:
        await self._enter("scale_candidate")
        self.candidate_replicas = replicas

    async def promote(self, handle: RolloutHandle) -> None:
        await self._enter("promote")
        self.promoted.append(handle)
        self.state.active_color = handle.color
        self.state.stable_revision = handle.revision
        self.candidate_percent = 0

    async def set_traffic_weight(self, candidate_percent: int) -> TrafficWeights:
        await self._enter("set_traffic_weight")
        self.candidate_percent = candidate_percent
        self.weight_history.append(candidate_percent)
        return TrafficWeights.for_candidate(candidate_percent)

    async def get_traffic_weights(self) -> TrafficWeights:
        await self._enter("get_traffic_weights")
        return TrafficWeights.for_candidate(self.candidate_percent)

    async def get_recent_error_samples(self, window: float) -> ErrorSamples:
        await self._enter("get_recent_error_samples")
        if self.samples:
            return self.samples.pop(0)
        return self.default_samples

    async def get_service_endpoint(self) -> str | None:
        await self._enter("get_service_endpoint")
        return self.endpoint

    async def capture_state(self) -> ClusterState:
        await self._enter("capture_state")
        return dataclasses.replace(
            self.state,
            candidate_percent=self.candidate_percent,
            candidate_replicas=self.candidate_replicas,
            configmaps={k: dict(v) for k, v in self.state.configmaps.items()},
        )

    async def restore_stable(self, state: ClusterState) -> TrafficWeights:
        await self._enter("restore_stable")
        self.state.active_color = state.active_color
        self.candidate_percent = 0
        self.weight_history.append(0)
        return TrafficWeights.for_candidate(0)

    async def restore_configuration(self, configmaps: dict[str, dict[str, str]]) -> None:
        await self._enter("restore_configuration")
        self.restored_configmaps = configmaps

    async def restore_database(self, backup: Path) -> CommandResult | None:
        await self._enter("restore_database")
        return self.database_result
