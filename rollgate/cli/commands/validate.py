"""Compliance gate command."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from rollgate.cli.context import get_cli_context
from rollgate.cli.shared.console import with_error_handling
from rollgate.cli.shared.render import render_findings
from rollgate.core.models import EXIT_FAILURE, EXIT_SUCCESS
from rollgate.core.services.validator import load_manifests
from rollgate.infra.k8s.utils import run_sync
from rollgate.runtime.factory import build_validator


@with_error_handling
def validate(
    ctx: typer.Context,
    image: Annotated[str, typer.Argument(help="Image reference to check")],
    manifests: Annotated[
        Path | None,
        typer.Option("--manifests", "-m", help="Manifest directory to scan"),
    ] = None,
) -> None:
    """Run the pre-deployment compliance gate without deploying.

    Exit codes: 0 no blocking findings, 1 blocked.
    """
    cli = get_cli_context(ctx)
    config = cli.load_config()
    validator = build_validator(config)
    documents = load_manifests(manifests) if manifests else []

    with cli.console.status("Running compliance checks..."):
        result = run_sync(validator.validate(image, documents))

    render_findings(cli.console, result.findings)
    if result.passed:
        suffix = " (with warnings)" if result.has_warnings else ""
        cli.console.ok(f"{image} passed the compliance gate{suffix}")
        raise typer.Exit(EXIT_SUCCESS)
    cli.console.error(f"{image} blocked by the compliance gate")
    raise typer.Exit(EXIT_FAILURE)
