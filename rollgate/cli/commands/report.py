"""Stored report command."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from rollgate.cli.context import get_cli_context
from rollgate.cli.shared.console import with_error_handling
from rollgate.cli.shared.render import render_findings, render_report
from rollgate.core.services.audit import load_report


@with_error_handling
def report(
    ctx: typer.Context,
    target: Annotated[
        str, typer.Argument(help="Deployment id, deployment directory or report file")
    ],
    report_dir: Annotated[
        Path | None,
        typer.Option("--report-dir", help="Directory for reports and audit trails"),
    ] = None,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the raw JSON report"),
    ] = False,
) -> None:
    """Show a stored deployment report."""
    cli = get_cli_context(ctx)
    path = Path(target)
    if not path.exists():
        path = (report_dir or cli.load_config().audit.report_dir) / target

    stored = load_report(path)
    if as_json:
        typer.echo(stored.model_dump_json(indent=2))
        raise typer.Exit(stored.exit_code)

    if stored.findings:
        render_findings(cli.console, stored.findings)
    render_report(cli.console, stored)
    raise typer.Exit(stored.exit_code)
