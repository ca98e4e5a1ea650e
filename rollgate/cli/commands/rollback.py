"""Manual rollback command."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from loguru import logger

from rollgate.cli.context import get_cli_context
from rollgate.cli.shared.console import with_error_handling
from rollgate.cli.shared.render import render_rollback_records
from rollgate.core.errors import RequestValidationError
from rollgate.core.models import (
    EXIT_MANUAL_INTERVENTION,
    EXIT_SUCCESS,
    ClusterDeploymentState,
    DeploymentReport,
    RollbackOutcome,
    RollbackRecord,
    RollbackTrigger,
    StateSnapshot,
    generate_deployment_id,
)
from rollgate.core.services.audit import AuditTrail, load_report, write_report
from rollgate.core.services.lease import ClusterLeaseManager
from rollgate.infra.k8s.helpers import get_cluster_client
from rollgate.infra.k8s.utils import run_sync
from rollgate.runtime.factory import build_lease_store, build_rollback_manager

from .shared import cli_actor, parse_optional_duration


@with_error_handling
def rollback(
    ctx: typer.Context,
    cluster: Annotated[str, typer.Argument(help="Cluster name from rollgate.yaml")],
    deployment_id: Annotated[
        str | None,
        typer.Option(
            "--deployment-id",
            "-d",
            help="Deployment whose stored snapshot should be restored",
        ),
    ] = None,
    report_dir: Annotated[
        Path | None,
        typer.Option("--report-dir", help="Directory for reports and audit trails"),
    ] = None,
    max_rollback_time: Annotated[
        str | None,
        typer.Option("--max-rollback-time", help="Rollback time budget (e.g. 30s)"),
    ] = None,
    rollback_database: Annotated[
        bool,
        typer.Option("--rollback-database", help="Also restore the database"),
    ] = False,
    database_backup: Annotated[
        Path | None,
        typer.Option("--database-backup", help="SQL dump used by --rollback-database"),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip the confirmation prompt"),
    ] = False,
) -> None:
    """Roll a cluster back to its pre-deployment state.

    With --deployment-id the snapshot stored in that deployment's report is
    restored. Without it the cluster is returned to its current stable
    colour.

    --rollback-database restores the database from --database-backup after
    the workload steps.

    Exit codes: 0 rolled back, 3 rollback needs manual intervention.
    """
    cli = get_cli_context(ctx)
    config = cli.load_config()
    root = report_dir or config.audit.report_dir

    if rollback_database and database_backup is None:
        raise RequestValidationError("--rollback-database requires --database-backup")

    try:
        ref = config.cluster_ref(cluster)
    except KeyError as e:
        raise RequestValidationError(f"Unknown cluster '{cluster}'", details=e.args[0]) from e

    report: DeploymentReport | None = None
    snapshot: StateSnapshot | None = None
    state = ClusterDeploymentState(cluster=ref)
    if deployment_id:
        report = load_report(root / deployment_id)
        snapshot = next((s for s in report.snapshots if s.cluster == cluster), None)
        try:
            state = report.cluster(cluster).model_copy(deep=True)
        except KeyError:
            logger.warning(f"Deployment {deployment_id} did not target {cluster}")
        if snapshot is None:
            cli.console.warn(f"No stored snapshot for {cluster}; restoring the live stable colour")
    else:
        deployment_id = f"manual-{generate_deployment_id()}"

    if not yes and not cli.console.confirm_action(
        f"Roll back {cluster}",
        details=f"Deployment: {deployment_id}\n"
        f"Snapshot: {snapshot.snapshot_ref if snapshot else 'none (live capture)'}",
    ):
        cli.console.info("Rollback cancelled")
        raise typer.Exit(EXIT_SUCCESS)

    manager = build_rollback_manager(
        config,
        max_rollback_time=parse_optional_duration(max_rollback_time, "--max-rollback-time"),
    )
    if snapshot is not None:
        manager.register_snapshot(snapshot)
    leases = ClusterLeaseManager(build_lease_store(config), ttl_seconds=config.lease.ttl)
    trail = AuditTrail.for_report_dir(deployment_id, root, resume=True)
    actor = cli_actor()
    run_id = deployment_id

    async def _run() -> RollbackRecord:
        async with leases.hold(f"rollback:{run_id}", [cluster]):
            await trail.record(actor, "manual-rollback-started", {"cluster": cluster})
            record = await manager.rollback(
                run_id,
                state,
                RollbackTrigger.MANUAL,
                get_cluster_client(ref),
                snapshot,
                rollback_database=rollback_database,
                database_backup=database_backup,
            )
            await trail.record(
                actor,
                "manual-rollback-completed",
                {"cluster": cluster, "outcome": record.outcome.value},
            )
            return record

    with cli.console.status(f"Rolling back {cluster}..."):
        record = run_sync(_run())

    if report is not None:
        report.rollback_records.append(record)
        write_report(report, root)

    render_rollback_records(cli.console, [record])
    if record.outcome == RollbackOutcome.SUCCEEDED:
        cli.console.ok(f"{cluster} rolled back in {record.elapsed_seconds:.2f}s")
        raise typer.Exit(EXIT_SUCCESS)
    cli.console.error(f"Rollback of {cluster} ended {record.outcome.value}")
    raise typer.Exit(EXIT_MANUAL_INTERVENTION)
