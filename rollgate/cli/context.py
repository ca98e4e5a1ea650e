"""CLI context and dependency container."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import click
import typer

from rollgate.cli.shared.console import CLIConsole, console
from rollgate.runtime.config import ConfigData, load_config
from rollgate.utils.paths import get_project_root


@dataclass(frozen=True)
class CLIContext:
    """Runtime dependencies for CLI commands."""

    console: CLIConsole
    project_root: Path
    config_path: Path
    verbose: bool = False

    def load_config(self, override: Path | None = None) -> ConfigData:
        path = override or self.config_path
        return load_config(path, required=override is not None)


def build_cli_context(config_path: Path | None = None, verbose: bool = False) -> CLIContext:
    """Build a fresh CLIContext."""
    project_root = get_project_root()
    return CLIContext(
        console=console,
        project_root=project_root,
        config_path=config_path or project_root / "rollgate.yaml",
        verbose=verbose,
    )


def get_cli_context(ctx: typer.Context | None = None) -> CLIContext:
    """Return the CLIContext from Typer, falling back to a new instance."""
    context = ctx or click.get_current_context(silent=True)
    if context and isinstance(context.obj, CLIContext):
        return context.obj
    return build_cli_context()
