"""Deployment orchestration state machine.

Phases:

    pending -> validating -> rolling-out -> canary-ramp -> promoting -> succeeded
    pending | validating -> rejected
    rolling-out | canary-ramp | promoting -> rolling-back -> rolled-back
    rolling-back -> manual-intervention

Each target cluster runs its own task (snapshot, rollout, canary ramp, final
health check). A cluster that fails rolls itself back while the others carry
on. Once every task has finished, the deployment is promoted everywhere only
if every cluster completed its ramp; otherwise every cluster that did is
rolled back with ``trigger=consistency`` so no mixed fleet is left behind.

Every phase transition is written to the audit trail before it takes effect.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

from rollgate.core.abort import AbortSignal
from rollgate.core.errors import (
    AuditWriteError,
    ClusterContextError,
    ClusterOperationError,
    ConcurrentDeploymentConflict,
    DeploymentAbortedError,
    HealthCheckFailedError,
    InvalidTransitionError,
    LeaseStoreError,
    RollgateError,
)
from rollgate.core.models import (
    CanaryDecision,
    ClusterDeploymentState,
    ClusterPhase,
    DeploymentPhase,
    DeploymentReport,
    DeploymentRequest,
    RollbackOutcome,
    RollbackRecord,
    RollbackTrigger,
)
from rollgate.core.retry import CallPolicy
from rollgate.core.services.audit import AuditTrail, write_report
from rollgate.core.services.notify import LogNotifier, Notifier
from rollgate.core.services.validator import (
    Finding,
    ValidationSeverity,
    load_manifests,
)

if TYPE_CHECKING:
    from rollgate.core.models import ClusterRef
    from rollgate.core.services.lease import ClusterLeaseManager
    from rollgate.core.services.rollback import RollbackManager
    from rollgate.core.services.traffic import TrafficController
    from rollgate.core.services.validator import ComplianceValidator
    from rollgate.infra.k8s.controller import ClusterClient, RolloutHandle

ORCHESTRATOR = "orchestrator"

_TRANSITIONS: dict[DeploymentPhase, frozenset[DeploymentPhase]] = {
    DeploymentPhase.PENDING: frozenset(
        {
            DeploymentPhase.VALIDATING,
            DeploymentPhase.REJECTED,
            DeploymentPhase.MANUAL_INTERVENTION,
        }
    ),
    DeploymentPhase.VALIDATING: frozenset(
        {
            DeploymentPhase.ROLLING_OUT,
            DeploymentPhase.REJECTED,
            DeploymentPhase.MANUAL_INTERVENTION,
        }
    ),
    DeploymentPhase.ROLLING_OUT: frozenset(
        {
            DeploymentPhase.CANARY_RAMP,
            DeploymentPhase.ROLLING_BACK,
            DeploymentPhase.MANUAL_INTERVENTION,
        }
    ),
    DeploymentPhase.CANARY_RAMP: frozenset(
        {
            DeploymentPhase.PROMOTING,
            DeploymentPhase.ROLLING_BACK,
            DeploymentPhase.MANUAL_INTERVENTION,
        }
    ),
    DeploymentPhase.PROMOTING: frozenset(
        {
            DeploymentPhase.SUCCEEDED,
            DeploymentPhase.ROLLING_BACK,
            DeploymentPhase.MANUAL_INTERVENTION,
        }
    ),
    DeploymentPhase.ROLLING_BACK: frozenset(
        {DeploymentPhase.ROLLED_BACK, DeploymentPhase.MANUAL_INTERVENTION}
    ),
}


def can_transition(current: DeploymentPhase, target: DeploymentPhase) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


class ConfirmationGate:
    """External go/no-go signal for a deployment waiting in ``pending``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.approved: bool | None = None
        self.actor = "operator"
        self.reason = ""

    @classmethod
    def pre_approved(cls, actor: str = "operator") -> ConfirmationGate:
        gate = cls()
        gate.approve(actor)
        return gate

    def approve(self, actor: str = "operator") -> None:
        if self._event.is_set():
            return
        self.approved = True
        self.actor = actor
        self._event.set()

    def deny(self, actor: str = "operator", reason: str = "") -> None:
        if self._event.is_set():
            return
        self.approved = False
        self.actor = actor
        self.reason = reason
        self._event.set()

    async def wait(self, abort: AbortSignal | None = None) -> bool:
        if abort is not None:
            await abort.guard(self._event.wait())
        else:
            await self._event.wait()
        return bool(self.approved)


@dataclass
class _Run:
    """Mutable bookkeeping for one ``execute`` call."""

    request: DeploymentRequest
    trail: AuditTrail
    abort: AbortSignal
    clusters: list[ClusterDeploymentState]
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_monotonic: float = field(default_factory=time.monotonic)
    phase: DeploymentPhase = DeploymentPhase.PENDING
    findings: list[Finding] = field(default_factory=list)
    records: list[RollbackRecord] = field(default_factory=list)
    clients: dict[str, ClusterClient] = field(default_factory=dict)
    handles: dict[str, RolloutHandle] = field(default_factory=dict)
    error: str | None = None
    audit_error: AuditWriteError | None = None
    phase_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def deployment_id(self) -> str:
        return self.request.deployment_id


class DeploymentOrchestrator:
    """Sequences validation, rollout, canary analysis and rollback across clusters."""

    def __init__(
        self,
        *,
        validator: ComplianceValidator,
        traffic: TrafficController,
        rollback: RollbackManager,
        leases: ClusterLeaseManager,
        client_factory: Callable[[ClusterRef], ClusterClient] | None = None,
        notifier: Notifier | None = None,
        report_dir: Path | None = None,
        call_policy: CallPolicy | None = None,
        rollout_timeout: float = 600.0,
        rollout_poll_interval: float = 5.0,
    ) -> None:
        if client_factory is None:
            from rollgate.infra.k8s.helpers import get_cluster_client

            client_factory = get_cluster_client
        self.validator = validator
        self.traffic = traffic
        self.rollback = rollback
        self.leases = leases
        self.client_factory = client_factory
        self.notifier = notifier or LogNotifier()
        self.report_dir = report_dir
        self.call_policy = call_policy or CallPolicy()
        self.rollout_timeout = rollout_timeout
        self.rollout_poll_interval = rollout_poll_interval
        self._active: dict[str, _Run] = {}
        self._gates: dict[str, ConfirmationGate] = {}

    # =========================================================================
    # External signals
    # =========================================================================

    def active_deployments(self) -> list[str]:
        return list(self._active)

    def request_abort(
        self,
        deployment_id: str,
        trigger: RollbackTrigger = RollbackTrigger.MANUAL,
        reason: str = "",
    ) -> bool:
        """Interrupt a running deployment and roll back what it changed.

        Returns:
            True if the signal was delivered to an active deployment
        """
        run = self._active.get(deployment_id)
        if run is None:
            return False
        fired = run.abort.set(trigger, reason or f"{trigger.value} abort requested")
        if fired:
            logger.warning(f"Abort requested for {deployment_id} ({trigger.value})")
        return fired

    def confirmation_gate(self, deployment_id: str) -> ConfirmationGate:
        """Get (or create) the gate an external caller uses to confirm."""
        return self._gates.setdefault(deployment_id, ConfirmationGate())

    # =========================================================================
    # Audit and transitions
    # =========================================================================

    async def _audit(
        self,
        run: _Run,
        event: str,
        detail: dict[str, Any] | None = None,
        *,
        actor: str = ORCHESTRATOR,
        fatal: bool = True,
    ) -> None:
        try:
            await run.trail.record(actor, event, detail)
        except AuditWriteError as e:
            if run.audit_error is None:
                run.audit_error = e
                run.abort.set(RollbackTrigger.CONSISTENCY, "audit trail unavailable")
            logger.critical(f"Audit write for {run.deployment_id} failed: {e.message}")
            if fatal:
                raise

    async def _transition(
        self,
        run: _Run,
        target: DeploymentPhase,
        detail: dict[str, Any] | None = None,
        *,
        fatal: bool = True,
        only_from: DeploymentPhase | None = None,
    ) -> None:
        """Audit and apply a phase transition.

        With ``only_from`` set, the call is a no-op unless the deployment is
        currently in that phase.

        Raises:
            InvalidTransitionError: If ``target`` is not reachable from the current phase
            AuditWriteError: If the audit entry cannot be written (when ``fatal``)
        """
        async with run.phase_lock:
            if only_from is not None and run.phase != only_from:
                return
            if not can_transition(run.phase, target):
                raise InvalidTransitionError(
                    f"Illegal transition {run.phase.value} -> {target.value}",
                    details=f"Deployment {run.deployment_id}",
                )
            await self._audit(
                run,
                f"phase:{target.value}",
                {"from": run.phase.value, **(detail or {})},
                fatal=fatal,
            )
            logger.info(f"{run.deployment_id}: {run.phase.value} -> {target.value}")
            run.phase = target

    async def _finish(
        self, run: _Run, target: DeploymentPhase, detail: dict[str, Any] | None = None
    ) -> None:
        """Enter a terminal phase; a broken audit trail forces manual intervention."""
        if run.audit_error is not None:
            target = DeploymentPhase.MANUAL_INTERVENTION
        if run.phase == DeploymentPhase.ROLLING_BACK and target == DeploymentPhase.REJECTED:
            target = DeploymentPhase.ROLLED_BACK
        await self._transition(run, target, detail, fatal=False)

    # =========================================================================
    # Execute
    # =========================================================================

    async def execute(
        self,
        request: DeploymentRequest,
        *,
        confirmation: ConfirmationGate | None = None,
        timeout: float | None = None,
    ) -> DeploymentReport:
        """Run one deployment to a terminal state.

        Args:
            request: The release to perform
            confirmation: Gate to wait on when ``confirmation_required`` is set
            timeout: Overall deadline in seconds; expiry rolls back with
                ``trigger=timeout``

        Returns:
            DeploymentReport in a terminal state

        Raises:
            ConcurrentDeploymentConflict: If a target cluster is leased by
                another deployment (the report is still written)
        """
        deployment_id = request.deployment_id
        trail = (
            AuditTrail.for_report_dir(deployment_id, self.report_dir)
            if self.report_dir is not None
            else AuditTrail(deployment_id)
        )
        run = _Run(
            request=request,
            trail=trail,
            abort=AbortSignal(),
            clusters=[ClusterDeploymentState(cluster=ref) for ref in request.target_clusters],
        )
        if confirmation is not None:
            self._gates[deployment_id] = confirmation
        self._active[deployment_id] = run

        watchdog: asyncio.TimerHandle | None = None
        if timeout is not None:
            watchdog = asyncio.get_running_loop().call_later(
                timeout,
                run.abort.set,
                RollbackTrigger.TIMEOUT,
                f"deployment exceeded {timeout:g}s",
            )

        conflict: ConcurrentDeploymentConflict | None = None
        try:
            await self._drive(run)
        except ConcurrentDeploymentConflict as e:
            conflict = e
            run.error = e.message
            await self._finish(run, DeploymentPhase.REJECTED, {"reason": e.message})
        except AuditWriteError as e:
            run.error = e.message
            await self._recover_from_audit_failure(run)
        finally:
            if watchdog is not None:
                watchdog.cancel()
            self._active.pop(deployment_id, None)
            self._gates.pop(deployment_id, None)

        report = self._build_report(run)
        if self.report_dir is not None:
            write_report(report, self.report_dir)
        await self.notifier.notify(
            "deployment-finished",
            f"Deployment {deployment_id} finished: {report.terminal_state.value}",
            {
                "deployment_id": deployment_id,
                "terminal_state": report.terminal_state.value,
                "clusters": [c.name for c in run.clusters],
            },
        )
        if conflict is not None:
            raise conflict
        return report

    async def _drive(self, run: _Run) -> None:
        request = run.request
        await self._audit(
            run,
            "phase:pending",
            {
                "image_ref": request.image_ref,
                "strategy": request.strategy.value,
                "targets": [c.name for c in request.target_clusters],
            },
        )

        if request.confirmation_required and not await self._await_confirmation(run):
            return

        if not await self._resolve_clients(run):
            return

        await self._transition(run, DeploymentPhase.VALIDATING)
        if not await self._validate(run):
            return

        try:
            async with self.leases.hold(
                run.deployment_id,
                [c.name for c in request.target_clusters],
                on_lost=lambda cluster: self._lease_lost(run, cluster),
            ):
                await self._audit(run, "leases-acquired")
                await self._release(run)
        except LeaseStoreError as e:
            if run.phase.is_terminal:
                # Only the release of a lease failed
                logger.error(f"{run.deployment_id}: {e.message}")
                return
            run.error = e.message
            await self._finish(run, DeploymentPhase.REJECTED, {"reason": e.message})

    @staticmethod
    def _lease_lost(run: _Run, cluster: str) -> None:
        if run.abort.set(RollbackTrigger.CONSISTENCY, f"lease on {cluster} lost"):
            logger.critical(f"{run.deployment_id}: lease on {cluster} lost, aborting")

    async def _await_confirmation(self, run: _Run) -> bool:
        gate = self.confirmation_gate(run.deployment_id)
        await self._audit(run, "awaiting-confirmation")
        try:
            approved = await gate.wait(run.abort)
        except DeploymentAbortedError as e:
            run.error = e.details or e.message
            await self._finish(run, DeploymentPhase.REJECTED, {"reason": run.error})
            return False

        if not approved:
            run.error = gate.reason or "confirmation denied"
            await self._audit(run, "confirmation-denied", {"reason": run.error}, actor=gate.actor)
            await self._finish(run, DeploymentPhase.REJECTED, {"reason": run.error})
            return False

        await self._audit(run, "confirmed", actor=gate.actor)
        return True

    # =========================================================================
    # Validation
    # =========================================================================

    async def _reject(self, run: _Run, reason: str, **detail: Any) -> bool:
        run.error = reason
        await self._finish(run, DeploymentPhase.REJECTED, {"reason": reason, **detail})
        return False

    async def _context_available(self, client: ClusterClient) -> bool:
        try:
            async with asyncio.timeout(self.call_policy.timeout):
                return await client.context_available()
        except Exception as e:
            logger.warning(f"Context check for {client.name} failed: {e}")
            return False

    async def _resolve_clients(self, run: _Run) -> bool:
        """Bind a client to every target; a missing credential context rejects.

        Building a client resolves the credential context locally and makes
        no cluster calls.
        """
        for ref in run.request.target_clusters:
            try:
                run.clients[ref.name] = self.client_factory(ref)
            except ClusterContextError as e:
                return await self._reject(
                    run, "cluster context unavailable", clusters=[ref.name], detail=e.message
                )
            except (KeyError, RollgateError) as e:
                return await self._reject(run, f"no client for cluster {ref.name}: {e}")
        return True

    async def _validate(self, run: _Run) -> bool:
        request = run.request
        problems = request.constraint_problems()
        if problems:
            return await self._reject(run, "invalid request", problems=problems)

        try:
            manifests = load_manifests(request.manifest_dir) if request.manifest_dir else []
            result = await run.abort.guard(
                self.validator.validate(request.image_ref, manifests)
            )
        except DeploymentAbortedError as e:
            return await self._reject(run, e.details or e.message)
        except RollgateError as e:
            return await self._reject(run, e.message)

        run.findings = list(result.findings)
        await self._audit(
            run,
            "compliance-gate",
            {
                "passed": result.passed,
                "findings": len(result.findings),
                "critical": [
                    f.title
                    for f in result.findings
                    if f.severity == ValidationSeverity.CRITICAL
                ],
            },
        )
        if not result.passed:
            return await self._reject(run, "compliance gate failed")

        try:
            available = await run.abort.guard(
                asyncio.gather(
                    *(
                        self._context_available(run.clients[c.name])
                        for c in request.target_clusters
                    )
                )
            )
        except DeploymentAbortedError as e:
            return await self._reject(run, e.details or e.message)
        unreachable = [
            ref.name for ref, ok in zip(request.target_clusters, available) if not ok
        ]
        if unreachable:
            return await self._reject(
                run, "cluster context unavailable", clusters=unreachable
            )
        return True

    # =========================================================================
    # Release
    # =========================================================================

    async def _release(self, run: _Run) -> None:
        await self._transition(run, DeploymentPhase.ROLLING_OUT)

        async with asyncio.TaskGroup() as group:
            for state in run.clusters:
                group.create_task(self._run_cluster(run, state))

        if run.audit_error is not None:
            raise run.audit_error

        ready = [s for s in run.clusters if self._ramp_complete(s)]
        if len(ready) != len(run.clusters) or run.abort.is_set:
            trigger = (
                run.abort.trigger
                if run.abort.is_set and run.abort.trigger is not None
                else RollbackTrigger.CONSISTENCY
            )
            await self._roll_back_fleet(run, ready, trigger)
            return

        await self._promote_fleet(run)

    @staticmethod
    def _ramp_complete(state: ClusterDeploymentState) -> bool:
        return (
            state.phase == ClusterPhase.CANARY_RAMP
            and state.confirmed_percent == 100
            and state.rollback_record is None
        )

    async def _enter_canary_ramp(self, run: _Run) -> None:
        await self._transition(
            run, DeploymentPhase.CANARY_RAMP, only_from=DeploymentPhase.ROLLING_OUT
        )

    async def _run_cluster(self, run: _Run, state: ClusterDeploymentState) -> None:
        """Drive one cluster from snapshot to a completed ramp, or roll it back."""
        client = run.clients[state.name]
        request = run.request
        trigger = RollbackTrigger.ROLLOUT_FAILURE
        try:
            run.abort.raise_if_set()
            snapshot = await self.rollback.capture_state(
                run.deployment_id, state.name, client
            )
            state.snapshot_ref = snapshot.snapshot_ref
            state.previous_revision = snapshot.state.stable_revision
            state.new_revision = request.image_ref
            state.phase = ClusterPhase.ROLLING_OUT
            await self._audit(
                run,
                "cluster-rollout-started",
                {
                    "cluster": state.name,
                    "previous_revision": state.previous_revision,
                    "new_revision": state.new_revision,
                    "snapshot_ref": state.snapshot_ref,
                },
            )

            state.mutated = True
            handle = await run.abort.guard(
                self.call_policy.run(
                    lambda: client.rollout(run.deployment_id, request.image_ref),
                    f"rollout on {state.name}",
                )
            )
            run.handles[state.name] = handle
            await self._wait_ready(run, state, client, handle)
            await self._audit(run, "cluster-ready", {"cluster": state.name})

            await self._enter_canary_ramp(run)
            trigger = RollbackTrigger.CANARY_ABORT
            async for step in self.traffic.ramp(
                client,
                state,
                request.ramp_steps(),
                request.observation_window,
                request.error_rate_threshold,
                abort=run.abort,
            ):
                await self._audit(
                    run,
                    "canary-verdict",
                    {
                        "cluster": state.name,
                        "percent": step.percent,
                        "attempt": step.attempt,
                        "decision": step.decision.value,
                        "error_rate_percent": step.verdict.error_rate_percent,
                        "sample_size": step.verdict.sample_size,
                        "reason": step.verdict.reason,
                    },
                )
                if step.decision == CanaryDecision.ABORT:
                    state.error = step.verdict.reason
                    await self._roll_back_cluster(run, state, RollbackTrigger.CANARY_ABORT)
                    return

            await self._audit(
                run,
                "cluster-ramp-complete",
                {
                    "cluster": state.name,
                    "health_latency_ms": state.last_health_result.latency_ms
                    if state.last_health_result
                    else None,
                },
            )
        except DeploymentAbortedError as e:
            state.error = e.details or e.message
            await self._fail_cluster(run, state, RollbackTrigger(e.trigger))
        except HealthCheckFailedError as e:
            state.error = f"{e.message}: {e.details}" if e.details else e.message
            await self._fail_cluster(run, state, RollbackTrigger.HEALTH_FAILURE)
        except AuditWriteError as e:
            state.error = e.message
            await self._fail_cluster(run, state, RollbackTrigger.CONSISTENCY)
        except Exception as e:
            state.error = f"{type(e).__name__}: {e}"
            if isinstance(e, RollgateError) and e.details:
                state.error += f" ({e.details})"
            logger.error(f"{run.deployment_id}: cluster {state.name} failed: {state.error}")
            if trigger == RollbackTrigger.CANARY_ABORT:
                trigger = RollbackTrigger.ROLLOUT_FAILURE
            await self._fail_cluster(run, state, trigger)

    async def _wait_ready(
        self,
        run: _Run,
        state: ClusterDeploymentState,
        client: ClusterClient,
        handle: RolloutHandle,
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.rollout_timeout
        while True:
            status = await run.abort.guard(
                self.call_policy.run(
                    lambda: client.get_rollout_status(handle),
                    f"rollout status on {state.name}",
                )
            )
            if status.is_complete:
                return
            if loop.time() >= deadline:
                raise ClusterOperationError(
                    state.name,
                    "rollout",
                    f"{status.ready}/{status.desired} replicas ready after "
                    f"{self.rollout_timeout:g}s",
                )
            await run.abort.sleep(self.rollout_poll_interval)

    async def _fail_cluster(
        self, run: _Run, state: ClusterDeploymentState, trigger: RollbackTrigger
    ) -> None:
        if state.mutated:
            await self._roll_back_cluster(run, state, trigger)
        else:
            await self._audit(
                run,
                "cluster-skipped",
                {"cluster": state.name, "reason": state.error},
                fatal=False,
            )

    async def _roll_back_cluster(
        self, run: _Run, state: ClusterDeploymentState, trigger: RollbackTrigger
    ) -> RollbackRecord:
        request = run.request
        await self._audit(
            run,
            "cluster-rollback-started",
            {"cluster": state.name, "trigger": trigger.value},
            fatal=False,
        )
        record = await self.rollback.rollback(
            run.deployment_id,
            state,
            trigger,
            run.clients[state.name],
            rollback_database=request.rollback_database,
            database_backup=request.database_backup,
        )
        run.records.append(record)
        await self._audit(
            run,
            "cluster-rollback-completed",
            {
                "cluster": state.name,
                "trigger": trigger.value,
                "outcome": record.outcome.value,
                "elapsed_seconds": record.elapsed_seconds,
            },
            fatal=False,
        )
        return record

    async def _roll_back_fleet(
        self,
        run: _Run,
        clusters: list[ClusterDeploymentState],
        trigger: RollbackTrigger,
    ) -> None:
        await self._transition(
            run,
            DeploymentPhase.ROLLING_BACK,
            {"clusters": [s.name for s in clusters], "trigger": trigger.value},
            fatal=False,
        )
        for state in clusters:
            if state.rollback_record is None and state.mutated:
                await self._roll_back_cluster(run, state, trigger)
        await self._finish(run, self._rollback_terminal(run))

    def _rollback_terminal(self, run: _Run) -> DeploymentPhase:
        if any(r.outcome != RollbackOutcome.SUCCEEDED for r in run.records):
            return DeploymentPhase.MANUAL_INTERVENTION
        return DeploymentPhase.ROLLED_BACK

    async def _promote_fleet(self, run: _Run) -> None:
        await self._transition(run, DeploymentPhase.PROMOTING)
        for state in run.clusters:
            try:
                run.abort.raise_if_set()
                await self.traffic.promote(
                    run.clients[state.name], state, run.handles[state.name]
                )
                await self._audit(run, "cluster-promoted", {"cluster": state.name})
            except Exception as e:
                state.error = f"{type(e).__name__}: {e}"
                logger.error(f"Promotion failed on {state.name}: {state.error}")
                trigger = (
                    RollbackTrigger(e.trigger)
                    if isinstance(e, DeploymentAbortedError)
                    else RollbackTrigger.ROLLOUT_FAILURE
                )
                await self._transition(
                    run,
                    DeploymentPhase.ROLLING_BACK,
                    {"reason": state.error, "cluster": state.name},
                    fatal=False,
                )
                await self._roll_back_cluster(run, state, trigger)
                for other in run.clusters:
                    if other is not state and other.rollback_record is None:
                        await self._roll_back_cluster(
                            run, other, RollbackTrigger.CONSISTENCY
                        )
                await self._finish(run, self._rollback_terminal(run))
                return

        await self._finish(run, DeploymentPhase.SUCCEEDED)

    async def _recover_from_audit_failure(self, run: _Run) -> None:
        """Roll back every mutated cluster after the audit trail failed."""
        if run.phase.is_terminal:
            return
        if run.phase != DeploymentPhase.ROLLING_BACK and can_transition(
            run.phase, DeploymentPhase.ROLLING_BACK
        ):
            await self._transition(run, DeploymentPhase.ROLLING_BACK, fatal=False)
        for state in run.clusters:
            if state.mutated and state.rollback_record is None:
                await self._roll_back_cluster(run, state, RollbackTrigger.CONSISTENCY)
        await self._finish(run, DeploymentPhase.MANUAL_INTERVENTION)

    # =========================================================================
    # Report
    # =========================================================================

    def _build_report(self, run: _Run) -> DeploymentReport:
        finished_at = datetime.now(UTC)
        return DeploymentReport(
            deployment_id=run.deployment_id,
            image_ref=run.request.image_ref,
            strategy=run.request.strategy,
            terminal_state=run.phase,
            started_at=run.started_at,
            finished_at=finished_at,
            duration_seconds=round(time.monotonic() - run.started_monotonic, 3),
            clusters=run.clusters,
            findings=run.findings,
            rollback_records=run.records,
            snapshots=self.rollback.snapshots_for(run.deployment_id),
            timeline=list(run.trail.entries),
            audit_trail=str(run.trail.path) if run.trail.path else None,
            error=run.error,
        )
