"""Traffic control: the canary ramp and the only writer of traffic weights.

``TrafficController.ramp`` walks a cluster through the canary steps:

    for each step: set weight -> wait observation window -> analyze

and yields a ``RampStep`` per verdict. The ramp stops after an abort
verdict; a hold repeats the window up to ``max_hold_retries`` times and is
then converted into an abort. After the 100% step the service must pass a
health probe.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from rollgate.core.errors import HealthCheckFailedError, MonotonicityError
from rollgate.core.models import (
    CanaryDecision,
    CanaryVerdict,
    ClusterDeploymentState,
    ClusterPhase,
    canary_step_problems,
)
from rollgate.core.retry import CallPolicy
from rollgate.core.services.analyzer import analyze

if TYPE_CHECKING:
    from rollgate.core.abort import AbortSignal
    from rollgate.core.services.health import HealthProber
    from rollgate.infra.k8s.controller import (
        ClusterClient,
        ClusterState,
        RolloutHandle,
        TrafficWeights,
    )


@dataclass(frozen=True)
class RampStep:
    """One observed canary step."""

    percent: int
    verdict: CanaryVerdict
    attempt: int

    @property
    def decision(self) -> CanaryDecision:
        return self.verdict.decision


class TrafficController:
    """Drives canary ramps and owns every traffic weight write."""

    def __init__(
        self,
        prober: HealthProber,
        *,
        minimum_sample_size: int = 100,
        max_hold_retries: int = 3,
        health_timeout: float = 5.0,
        call_policy: CallPolicy | None = None,
    ) -> None:
        self.prober = prober
        self.minimum_sample_size = minimum_sample_size
        self.max_hold_retries = max_hold_retries
        self.health_timeout = health_timeout
        self.call_policy = call_policy or CallPolicy()

    async def _wait(self, seconds: float, abort: AbortSignal | None) -> None:
        if abort is not None:
            await abort.sleep(seconds)
        else:
            await asyncio.sleep(seconds)

    async def _set_weight(
        self, client: ClusterClient, state: ClusterDeploymentState, percent: int
    ) -> TrafficWeights:
        if (
            state.phase == ClusterPhase.CANARY_RAMP
            and percent < state.current_traffic_percent
        ):
            raise MonotonicityError(
                f"Refusing to lower candidate traffic on {state.name}",
                details=f"{state.current_traffic_percent}% -> {percent}%",
            )
        weights = await self.call_policy.run(
            lambda: client.set_traffic_weight(percent),
            f"set traffic weight {percent}% on {state.name}",
        )
        state.current_traffic_percent = weights.candidate_percent
        state.mutated = True
        logger.info(
            f"{state.name}: traffic {weights.stable_percent}% stable / "
            f"{weights.candidate_percent}% candidate"
        )
        return weights

    async def ramp(
        self,
        client: ClusterClient,
        state: ClusterDeploymentState,
        steps: list[int],
        observation_window: float,
        threshold: float,
        *,
        abort: AbortSignal | None = None,
    ) -> AsyncIterator[RampStep]:
        """Ramp candidate traffic through ``steps``.

        Resumes after ``state.confirmed_percent``: steps already confirmed
        by a promote verdict are not repeated.

        Args:
            client: Cluster to ramp
            state: Mutable per-cluster state (updated in place)
            steps: Strictly increasing percentages ending at 100
            observation_window: Seconds to observe each step
            threshold: Error-rate threshold as a fraction
            abort: Signal interrupting the observation waits

        Yields:
            RampStep per verdict (hold verdicts included)

        Raises:
            MonotonicityError: If the steps or resume point would lower traffic
            HealthCheckFailedError: If the final health probe fails
            DeploymentAbortedError: If ``abort`` fires during a wait
        """
        problems = canary_step_problems(list(steps))
        if problems:
            raise MonotonicityError("Invalid canary steps", details="; ".join(problems))

        state.phase = ClusterPhase.CANARY_RAMP
        remaining = [step for step in steps if step > state.confirmed_percent]
        if remaining and remaining[0] < state.current_traffic_percent:
            raise MonotonicityError(
                f"Cannot resume ramp on {state.name} below current traffic",
                details=f"current {state.current_traffic_percent}%, next step {remaining[0]}%",
            )

        for percent in remaining:
            await self._set_weight(client, state, percent)

            attempt = 0
            while True:
                attempt += 1
                await self._wait(observation_window, abort)
                samples = await self.call_policy.run(
                    lambda: client.get_recent_error_samples(observation_window),
                    f"read error samples on {state.name}",
                )
                verdict = analyze(
                    samples.error_count,
                    samples.total_count,
                    threshold,
                    self.minimum_sample_size,
                    traffic_percent=percent,
                )
                if verdict.decision == CanaryDecision.HOLD and attempt > self.max_hold_retries:
                    verdict = verdict.model_copy(
                        update={
                            "decision": CanaryDecision.ABORT,
                            "reason": f"held {attempt} times ({verdict.reason})",
                        }
                    )
                state.record_verdict(verdict)
                logger.info(
                    f"{state.name} @ {percent}%: {verdict.decision.value} ({verdict.reason})"
                )

                yield RampStep(percent=percent, verdict=verdict, attempt=attempt)

                if verdict.decision == CanaryDecision.ABORT:
                    return
                if verdict.decision == CanaryDecision.PROMOTE:
                    state.confirmed_percent = percent
                    break

        await self._confirm_health(client, state, abort)

    async def _confirm_health(
        self,
        client: ClusterClient,
        state: ClusterDeploymentState,
        abort: AbortSignal | None,
    ) -> None:
        endpoint = await self.call_policy.run(
            client.get_service_endpoint, f"resolve endpoint on {state.name}"
        )
        if not endpoint:
            raise HealthCheckFailedError(
                f"No reachable service endpoint on {state.name}",
                details="A cluster whose health cannot be probed is treated as unhealthy.",
            )
        result = await self.prober.check(endpoint, self.health_timeout, abort=abort)
        state.last_health_result = result
        if not result.ok:
            raise HealthCheckFailedError(
                f"Health check failed on {state.name}",
                details=f"{endpoint}: {result.error or result.status_code}",
            )

    # =========================================================================
    # Weight writes outside the ramp
    # =========================================================================

    async def promote(
        self,
        client: ClusterClient,
        state: ClusterDeploymentState,
        handle: RolloutHandle,
    ) -> None:
        """Make the candidate the stable revision on a cluster."""
        await self.call_policy.run(
            lambda: client.promote(handle), f"promote on {state.name}"
        )
        state.mark_promoted()

    async def restore_stable(
        self,
        client: ClusterClient,
        state: ClusterDeploymentState,
        snapshot: ClusterState,
        *,
        attempts: int | None = None,
    ) -> TrafficWeights:
        """Route 100% of traffic back to the snapshot's stable revision."""
        policy = self.call_policy
        if attempts is not None:
            policy = CallPolicy(
                attempts=attempts,
                timeout=policy.timeout,
                base_delay=policy.base_delay,
                max_delay=policy.max_delay,
            )
        weights = await policy.run(
            lambda: client.restore_stable(snapshot),
            f"restore stable traffic on {state.name}",
        )
        state.current_traffic_percent = weights.candidate_percent
        return weights
