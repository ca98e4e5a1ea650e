"""Release command."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from pydantic import ValidationError

from rollgate.cli.context import get_cli_context
from rollgate.cli.shared.console import with_error_handling
from rollgate.cli.shared.render import render_findings, render_report
from rollgate.core.errors import RequestValidationError
from rollgate.core.models import DeploymentRequest, Strategy
from rollgate.core.services.orchestrator import ConfirmationGate
from rollgate.infra.k8s.utils import run_sync
from rollgate.runtime.factory import build_orchestrator

from .shared import cli_actor, parse_optional_duration, parse_steps, resolve_clusters


@with_error_handling
def deploy(
    ctx: typer.Context,
    image: Annotated[str, typer.Argument(help="Image reference to release")],
    targets: Annotated[
        list[str],
        typer.Option(
            "--target",
            "-t",
            help="Target cluster name from rollgate.yaml (repeatable, processed in order)",
        ),
    ],
    strategy: Annotated[
        Strategy | None,
        typer.Option("--strategy", "-s", help="Release strategy"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip the confirmation prompt"),
    ] = False,
    max_rollback_time: Annotated[
        str | None,
        typer.Option("--max-rollback-time", help="Rollback time budget (e.g. 30s)"),
    ] = None,
    steps: Annotated[
        str | None,
        typer.Option("--steps", help="Canary steps in percent (e.g. 5,25,50,75,100)"),
    ] = None,
    window: Annotated[
        str | None,
        typer.Option("--window", help="Observation window per step (e.g. 5m)"),
    ] = None,
    threshold: Annotated[
        float | None,
        typer.Option("--threshold", help="Error-rate threshold as a fraction (e.g. 0.01)"),
    ] = None,
    timeout: Annotated[
        str | None,
        typer.Option("--timeout", help="Overall deadline; expiry rolls back (e.g. 45m)"),
    ] = None,
    manifests: Annotated[
        Path | None,
        typer.Option("--manifests", "-m", help="Manifest directory for the compliance gate"),
    ] = None,
    report_dir: Annotated[
        Path | None,
        typer.Option("--report-dir", help="Directory for reports and audit trails"),
    ] = None,
    rollback_database: Annotated[
        bool,
        typer.Option("--rollback-database", help="Restore the database on rollback"),
    ] = False,
    database_backup: Annotated[
        Path | None,
        typer.Option("--database-backup", help="SQL dump used by --rollback-database"),
    ] = None,
) -> None:
    """Release an image with a blue-green canary ramp.

    Exit codes: 0 succeeded, 1 rejected or rolled back, 3 rollback needs
    manual intervention.

    Examples:
        rollgate deploy registry.example.com/app:1.4.2 -t eks-prod -t gke-prod
        rollgate deploy app:1.4.2 -t aks-prod --steps 10,50,100 --window 2m -f
    """
    cli = get_cli_context(ctx)
    config = cli.load_config()
    policy = config.policy

    try:
        request = DeploymentRequest(
            image_ref=image,
            strategy=strategy or policy.strategy,
            target_clusters=resolve_clusters(config, targets),
            canary_steps_percent=parse_steps(steps) if steps else policy.canary_steps,
            observation_window=parse_optional_duration(window, "--window")
            or policy.observation_window,
            error_rate_threshold=threshold
            if threshold is not None
            else policy.error_rate_threshold,
            confirmation_required=not force,
            manifest_dir=manifests,
            rollback_database=rollback_database,
            database_backup=database_backup,
        )
    except ValidationError as e:
        raise RequestValidationError("Deployment request rejected", details=str(e)) from e

    orchestrator = build_orchestrator(
        config,
        max_rollback_time=parse_optional_duration(max_rollback_time, "--max-rollback-time"),
        report_dir=report_dir,
    )

    cli.console.print_header(f"Releasing {request.image_ref}")
    gate: ConfirmationGate | None = None
    if request.confirmation_required:
        gate = ConfirmationGate()
        targets_text = ", ".join(c.name for c in request.target_clusters)
        if cli.console.confirm_action(
            f"Release {request.image_ref} ({request.strategy.value})",
            details=f"Targets (in order): {targets_text}\n"
            f"Canary steps: {request.ramp_steps()}\n"
            f"Deployment id: {request.deployment_id}",
        ):
            gate.approve(cli_actor())
        else:
            gate.deny(cli_actor(), "declined at confirmation prompt")

    report = run_sync(
        orchestrator.execute(
            request,
            confirmation=gate,
            timeout=parse_optional_duration(timeout, "--timeout"),
        )
    )

    if report.findings:
        render_findings(cli.console, report.findings)
    render_report(cli.console, report)
    raise typer.Exit(report.exit_code)
