"""State snapshots and bounded rollback.

Rollback runs ordered, individually retried steps:

1. restore-traffic: route 100% of traffic back to the stable revision
2. revert-candidate: roll the candidate workload back to the previous revision
3. scale-candidate: scale the candidate to zero, then optionally restore
   ConfigMaps and the database
4. health-check: confirm the stable service answers its health probe

All four steps, the health check included, must finish within
``max_rollback_time``; overrunning it yields a ``timeout`` record. A step
that fails after its retries, or a failed health check, yields a
``degraded`` record. Both need a human and are escalated.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from rollgate.core.errors import SnapshotExistsError
from rollgate.core.models import (
    ClusterDeploymentState,
    ClusterPhase,
    RollbackOutcome,
    RollbackRecord,
    RollbackStepResult,
    RollbackTrigger,
    StateSnapshot,
    StepStatus,
)
from rollgate.core.retry import CallPolicy, retry_async
from rollgate.core.services.notify import LogNotifier, Notifier

if TYPE_CHECKING:
    from rollgate.core.services.health import HealthProber
    from rollgate.core.services.traffic import TrafficController
    from rollgate.infra.k8s.controller import ClusterClient

StepFn = Callable[[], Awaitable[tuple[StepStatus, str]]]


@dataclass
class _RollbackRun:
    """Step bookkeeping for one rollback."""

    cluster: str
    steps: list[RollbackStepResult] = field(default_factory=list)
    current: str | None = None
    current_started: float = 0.0
    current_attempts: int = 0

    def start(self, name: str) -> None:
        self.current = name
        self.current_started = time.monotonic()
        self.current_attempts = 0

    def finish(self, status: StepStatus, detail: str = "") -> None:
        if self.current is None:
            return
        self.steps.append(
            RollbackStepResult(
                name=self.current,
                status=status,
                attempts=self.current_attempts,
                elapsed_seconds=round(time.monotonic() - self.current_started, 3),
                detail=detail,
            )
        )
        self.current = None

    @property
    def failed(self) -> bool:
        return any(
            step.status in (StepStatus.FAILED, StepStatus.TIMEOUT) for step in self.steps
        )


class RollbackManager:
    """Captures pre-deployment snapshots and executes bounded rollbacks."""

    def __init__(
        self,
        traffic: TrafficController,
        prober: HealthProber,
        *,
        max_rollback_time: float = 30.0,
        step_attempts: int = 3,
        health_timeout: float = 5.0,
        call_policy: CallPolicy | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.traffic = traffic
        self.prober = prober
        self.max_rollback_time = max_rollback_time
        self.step_attempts = step_attempts
        self.health_timeout = health_timeout
        self.call_policy = call_policy or CallPolicy()
        self.notifier = notifier or LogNotifier()
        self._snapshots: dict[tuple[str, str], StateSnapshot] = {}
        self._records: list[RollbackRecord] = []

    @property
    def records(self) -> tuple[RollbackRecord, ...]:
        return tuple(self._records)

    def records_for(self, deployment_id: str) -> list[RollbackRecord]:
        return [r for r in self._records if r.deployment_id == deployment_id]

    def snapshot(self, deployment_id: str, cluster: str) -> StateSnapshot | None:
        return self._snapshots.get((deployment_id, cluster))

    def snapshots_for(self, deployment_id: str) -> list[StateSnapshot]:
        return [s for (dep, _), s in self._snapshots.items() if dep == deployment_id]

    # =========================================================================
    # Snapshots
    # =========================================================================

    async def capture_state(
        self, deployment_id: str, cluster: str, client: ClusterClient
    ) -> StateSnapshot:
        """Capture a cluster's state before the first mutation.

        Raises:
            SnapshotExistsError: If a snapshot already exists for the pair
        """
        key = (deployment_id, cluster)
        if key in self._snapshots:
            raise SnapshotExistsError(
                f"Snapshot for {cluster} already captured",
                details=f"Deployment {deployment_id} holds {self._snapshots[key].snapshot_ref}",
            )

        state = await self.call_policy.run(
            client.capture_state, f"capture state on {cluster}"
        )
        # Re-check: a concurrent capture may have completed during the await
        if key in self._snapshots:
            raise SnapshotExistsError(f"Snapshot for {cluster} already captured")

        snapshot = StateSnapshot(
            snapshot_ref=f"{deployment_id}/{cluster}/{secrets.token_hex(4)}",
            deployment_id=deployment_id,
            cluster=cluster,
            captured_at=datetime.now(UTC),
            state=state,
        )
        self._snapshots[key] = snapshot
        logger.info(
            f"Captured {cluster}: active={state.active_color} "
            f"stable={state.stable_revision} ({snapshot.snapshot_ref})"
        )
        return snapshot

    def register_snapshot(self, snapshot: StateSnapshot) -> None:
        """Register a snapshot loaded from a stored report."""
        key = (snapshot.deployment_id, snapshot.cluster)
        if key in self._snapshots:
            raise SnapshotExistsError(f"Snapshot for {snapshot.cluster} already captured")
        self._snapshots[key] = snapshot

    # =========================================================================
    # Rollback
    # =========================================================================

    async def _run_step(self, run: _RollbackRun, name: str, fn: StepFn) -> bool:
        run.start(name)

        async def attempt() -> tuple[StepStatus, str]:
            run.current_attempts += 1
            return await fn()

        try:
            status, detail = await retry_async(
                attempt,
                attempts=self.step_attempts,
                base_delay=self.call_policy.base_delay,
                max_delay=self.call_policy.max_delay,
                retry_on=(Exception,),
                deadline=self.call_policy.timeout,
                description=f"rollback step {name} on {run.cluster}",
            )
        except Exception as e:
            run.finish(StepStatus.FAILED, f"{type(e).__name__}: {e}")
            logger.error(f"Rollback step {name} failed on {run.cluster}: {e}")
            return False

        run.finish(status, detail)
        return status != StepStatus.FAILED

    async def rollback(
        self,
        deployment_id: str,
        cluster: ClusterDeploymentState,
        trigger: RollbackTrigger,
        client: ClusterClient,
        snapshot: StateSnapshot | None = None,
        *,
        rollback_database: bool = False,
        database_backup: Path | None = None,
    ) -> RollbackRecord:
        """Roll one cluster back to its pre-deployment state.

        Args:
            deployment_id: Deployment being rolled back
            cluster: Mutable per-cluster state (phase and traffic updated)
            trigger: What caused the rollback
            client: Cluster client
            snapshot: Snapshot to restore (defaults to the captured one)
            rollback_database: Also restore the database
            database_backup: SQL dump used when ``rollback_database`` is set

        Returns:
            The completed, immutable RollbackRecord
        """
        started_at = datetime.now(UTC)
        t0 = time.monotonic()
        cluster.phase = ClusterPhase.ROLLING_BACK
        snapshot = snapshot or self.snapshot(deployment_id, cluster.name)
        run = _RollbackRun(cluster=cluster.name)
        timed_out = False

        logger.warning(
            f"Rolling back {cluster.name} for {deployment_id} (trigger: {trigger.value})"
        )

        try:
            async with asyncio.timeout(self.max_rollback_time):
                if snapshot is None:
                    # No pre-deployment capture: keep the current stable colour
                    snapshot = await self._capture_live(
                        run, deployment_id, cluster, client
                    )
                if snapshot is not None:
                    await self._restore_steps(
                        run,
                        deployment_id,
                        cluster,
                        client,
                        snapshot,
                        rollback_database=rollback_database,
                        database_backup=database_backup,
                    )
                await self._health_step(run, cluster, client)
        except TimeoutError:
            timed_out = True
            run.finish(
                StepStatus.TIMEOUT,
                f"rollback budget of {self.max_rollback_time:g}s exhausted",
            )

        if timed_out and all(step.name != "health-check" for step in run.steps):
            run.start("health-check")
            run.finish(StepStatus.SKIPPED, "skipped after rollback timeout")

        if timed_out:
            outcome = RollbackOutcome.TIMEOUT
        elif run.failed:
            outcome = RollbackOutcome.DEGRADED
        else:
            outcome = RollbackOutcome.SUCCEEDED

        elapsed = time.monotonic() - t0
        record = RollbackRecord(
            deployment_id=deployment_id,
            cluster=cluster.name,
            trigger=trigger,
            snapshot_ref=snapshot.snapshot_ref if snapshot else None,
            started_at=started_at,
            completed_at=datetime.now(UTC),
            outcome=outcome,
            elapsed_seconds=round(elapsed, 3),
            steps=list(run.steps),
            detail=self._describe(run, outcome),
        )
        self._records.append(record)
        cluster.mark_rolled_back(record)

        if outcome == RollbackOutcome.SUCCEEDED:
            logger.info(f"Rolled back {cluster.name} in {elapsed:.2f}s")
        else:
            logger.critical(
                f"Rollback of {cluster.name} for {deployment_id} ended {outcome.value} "
                f"after {elapsed:.2f}s: {record.detail}. Manual intervention required."
            )
            await self.notifier.notify(
                "rollback-escalation",
                f"Rollback of {cluster.name} ended {outcome.value}; manual intervention required",
                {
                    "deployment_id": deployment_id,
                    "cluster": cluster.name,
                    "trigger": trigger.value,
                    "outcome": outcome.value,
                },
            )
        return record

    async def _capture_live(
        self,
        run: _RollbackRun,
        deployment_id: str,
        cluster: ClusterDeploymentState,
        client: ClusterClient,
    ) -> StateSnapshot | None:
        captured: list[StateSnapshot] = []

        async def capture() -> tuple[StepStatus, str]:
            state = await client.capture_state()
            captured.append(
                StateSnapshot(
                    snapshot_ref=f"{deployment_id}/{cluster.name}/live",
                    deployment_id=deployment_id,
                    cluster=cluster.name,
                    captured_at=datetime.now(UTC),
                    state=state,
                )
            )
            return StepStatus.SUCCEEDED, f"no snapshot; using live stable {state.active_color}"

        await self._run_step(run, "capture-live-state", capture)
        return captured[-1] if captured else None

    async def _restore_steps(
        self,
        run: _RollbackRun,
        deployment_id: str,
        cluster: ClusterDeploymentState,
        client: ClusterClient,
        snapshot: StateSnapshot,
        *,
        rollback_database: bool,
        database_backup: Path | None,
    ) -> None:
        state = snapshot.state

        async def restore_traffic() -> tuple[StepStatus, str]:
            weights = await self.traffic.restore_stable(
                client, cluster, state, attempts=1
            )
            return StepStatus.SUCCEEDED, (
                f"{state.active_color} at {weights.stable_percent}% stable"
            )

        async def revert_candidate() -> tuple[StepStatus, str]:
            previous = state.stable_revision or cluster.previous_revision
            if not previous:
                return StepStatus.SKIPPED, "no previous revision recorded"
            await client.rollout(deployment_id, previous)
            return StepStatus.SUCCEEDED, f"candidate reverted to {previous}"

        async def scale_candidate() -> tuple[StepStatus, str]:
            await client.scale_candidate(0)
            return StepStatus.SUCCEEDED, "candidate scaled to 0"

        async def restore_configuration() -> tuple[StepStatus, str]:
            await client.restore_configuration(state.configmaps)
            return StepStatus.SUCCEEDED, f"{len(state.configmaps)} ConfigMap(s) restored"

        async def restore_database(backup: Path) -> tuple[StepStatus, str]:
            result = await client.restore_database(backup)
            if result is None:
                return StepStatus.SKIPPED, "no database pod found"
            if not result.success:
                return StepStatus.FAILED, result.stderr.strip() or "psql failed"
            return StepStatus.SUCCEEDED, f"restored from {backup.name}"

        await self._run_step(run, "restore-traffic", restore_traffic)
        await self._run_step(run, "revert-candidate", revert_candidate)
        await self._run_step(run, "scale-candidate", scale_candidate)
        if state.configmaps:
            await self._run_step(run, "restore-configuration", restore_configuration)
        if rollback_database and database_backup is not None:
            await self._run_step(
                run, "restore-database", lambda: restore_database(database_backup)
            )

    async def _health_step(
        self, run: _RollbackRun, cluster: ClusterDeploymentState, client: ClusterClient
    ) -> None:
        run.start("health-check")
        run.current_attempts = 1
        try:
            endpoint = await self.call_policy.run(
                client.get_service_endpoint, f"resolve endpoint on {cluster.name}"
            )
        except Exception as e:
            run.finish(StepStatus.FAILED, f"endpoint lookup failed: {e}")
            return
        if not endpoint:
            run.finish(StepStatus.FAILED, "no reachable service endpoint")
            return

        result = await self.prober.check(endpoint, self.health_timeout)
        cluster.last_health_result = result
        run.current_attempts = result.attempts
        if result.ok:
            run.finish(StepStatus.SUCCEEDED, f"{endpoint} healthy in {result.latency_ms}ms")
        else:
            run.finish(StepStatus.FAILED, f"{endpoint}: {result.error}")

    @staticmethod
    def _describe(run: _RollbackRun, outcome: RollbackOutcome) -> str:
        if outcome == RollbackOutcome.SUCCEEDED:
            return "all rollback steps succeeded"
        bad = [
            f"{step.name} {step.status.value}"
            for step in run.steps
            if step.status in (StepStatus.FAILED, StepStatus.TIMEOUT)
        ]
        return ", ".join(bad) or outcome.value
