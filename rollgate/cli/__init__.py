"""Main CLI application module.

Commands:
- deploy: Blue-green canary release across clusters
- rollback: Manual rollback of one cluster
- validate: Compliance gate only
- report: Show a stored deployment report
"""

import sys
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger

from .commands import deploy, report, rollback, validate
from .context import build_cli_context

app = typer.Typer(
    help="🚦 rollgate - Blue-green canary releases across Kubernetes clusters",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _stderr_sink(message: str) -> None:
    sys.stderr.write(message)


@app.callback()
def root(
    ctx: typer.Context,
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to rollgate.yaml"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    logger.remove()
    logger.add(
        _stderr_sink,
        level="DEBUG" if verbose else "INFO",
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        colorize=False,
    )
    ctx.obj = build_cli_context(config_path=config, verbose=verbose)


app.command("deploy")(deploy)
app.command("rollback")(rollback)
app.command("validate")(validate)
app.command("report")(report)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
