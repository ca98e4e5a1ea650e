"""Rich renderings of reports and findings."""

from __future__ import annotations

from rich.table import Table

from rollgate.cli.shared.console import CLIConsole
from rollgate.core.models import DeploymentPhase, DeploymentReport, RollbackRecord
from rollgate.core.services.validator import Finding, ValidationSeverity

_SEVERITY_STYLE = {
    ValidationSeverity.WARNING: "yellow",
    ValidationSeverity.ERROR: "red",
    ValidationSeverity.CRITICAL: "bold red",
}

_TERMINAL_STYLE = {
    DeploymentPhase.SUCCEEDED: "green",
    DeploymentPhase.REJECTED: "yellow",
    DeploymentPhase.ROLLED_BACK: "yellow",
    DeploymentPhase.MANUAL_INTERVENTION: "bold red",
}


def render_findings(console: CLIConsole, findings: list[Finding]) -> None:
    if not findings:
        console.ok("No compliance findings")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Severity")
    table.add_column("Check")
    table.add_column("Finding")
    table.add_column("Resource", style="dim")
    for finding in findings:
        style = _SEVERITY_STYLE.get(finding.severity, "")
        table.add_row(
            f"[{style}]{finding.severity.value}[/{style}]",
            finding.check,
            f"{finding.title}\n[dim]{finding.description}[/dim]",
            finding.resource,
        )
    console.print(table)


def render_rollback_records(console: CLIConsole, records: list[RollbackRecord]) -> None:
    if not records:
        return
    table = Table(title="Rollbacks", show_header=True, header_style="bold")
    table.add_column("Cluster")
    table.add_column("Trigger")
    table.add_column("Outcome")
    table.add_column("Elapsed", justify="right")
    table.add_column("Detail", style="dim")
    for record in records:
        style = "green" if record.outcome.value == "succeeded" else "bold red"
        table.add_row(
            record.cluster,
            record.trigger.value,
            f"[{style}]{record.outcome.value}[/{style}]",
            f"{record.elapsed_seconds:.2f}s",
            record.detail,
        )
    console.print(table)


def render_report(console: CLIConsole, report: DeploymentReport) -> None:
    """Print a deployment report summary."""
    style = _TERMINAL_STYLE.get(report.terminal_state, "")
    console.print(
        f"\n[bold]Deployment {report.deployment_id}[/bold]: "
        f"[{style}]{report.terminal_state.value}[/{style}] "
        f"[dim]({report.image_ref}, {report.strategy.value}, "
        f"{report.duration_seconds:.1f}s)[/dim]"
    )
    if report.error:
        console.print(f"[dim]Reason: {report.error}[/dim]")

    table = Table(title="Clusters", show_header=True, header_style="bold")
    table.add_column("Cluster")
    table.add_column("Phase")
    table.add_column("Traffic", justify="right")
    table.add_column("Previous", style="dim")
    table.add_column("Last verdict")
    for state in report.clusters:
        verdict = state.last_canary_verdict
        table.add_row(
            state.name,
            state.phase.value,
            f"{state.current_traffic_percent}%",
            state.previous_revision or "-",
            f"{verdict.decision.value} ({verdict.error_rate_percent}% of {verdict.sample_size})"
            if verdict
            else "-",
        )
    console.print(table)

    render_rollback_records(console, report.rollback_records)
    if report.audit_trail:
        console.print(f"[dim]Audit trail: {report.audit_trail}[/dim]")
