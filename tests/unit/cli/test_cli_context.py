"""Tests for CLI context dependency injection."""

from pathlib import Path
from unittest.mock import Mock, patch

import click
import pytest

from rollgate.cli.context import CLIContext, build_cli_context, get_cli_context


def test_cli_context_is_immutable():
    """Test that CLIContext is frozen/immutable."""
    ctx = CLIContext(
        console=Mock(),
        project_root=Path("/test"),
        config_path=Path("/test/rollgate.yaml"),
    )

    with pytest.raises(AttributeError):
        ctx.console = Mock()  # type: ignore[misc]


@patch("rollgate.cli.context.get_project_root")
def test_build_cli_context_defaults_config_to_project_root(mock_get_root):
    mock_get_root.return_value = Path("/test/project")

    ctx = build_cli_context()

    assert ctx.project_root == Path("/test/project")
    assert ctx.config_path == Path("/test/project/rollgate.yaml")
    assert not ctx.verbose


@patch("rollgate.cli.context.get_project_root")
def test_build_cli_context_respects_explicit_config(mock_get_root, tmp_path):
    mock_get_root.return_value = Path("/test/project")
    config = tmp_path / "custom.yaml"

    ctx = build_cli_context(config_path=config, verbose=True)

    assert ctx.config_path == config
    assert ctx.verbose


def test_get_cli_context_from_typer_context():
    """Test that get_cli_context retrieves from Typer context."""
    expected = CLIContext(
        console=Mock(),
        project_root=Path("/test"),
        config_path=Path("/test/rollgate.yaml"),
    )
    ctx = click.Context(click.Command("test"), obj=expected)

    assert get_cli_context(ctx) is expected


@patch("rollgate.cli.context.get_project_root")
def test_get_cli_context_falls_back_to_new_instance(mock_get_root):
    mock_get_root.return_value = Path("/test/project")

    ctx = get_cli_context(None)

    assert isinstance(ctx, CLIContext)


def test_load_config_without_file_uses_defaults(tmp_path):
    ctx = CLIContext(
        console=Mock(), project_root=tmp_path, config_path=tmp_path / "rollgate.yaml"
    )

    config = ctx.load_config()

    assert config.clusters == {}
