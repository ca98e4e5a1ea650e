import pytest
import typer

from rollgate.cli.shared.console import with_error_handling
from rollgate.core.errors import ConcurrentDeploymentConflict, ConfigError


def test_with_error_handling_handles_rollgate_error():
    @with_error_handling
    def _command() -> None:
        raise ConfigError("Boom", details="extra")

    with pytest.raises(typer.Exit) as excinfo:
        _command()

    assert excinfo.value.exit_code == 1


def test_with_error_handling_handles_lease_conflict():
    @with_error_handling
    def _command() -> None:
        raise ConcurrentDeploymentConflict("eks-prod", "20250101-120000-abcd1234")

    with pytest.raises(typer.Exit) as excinfo:
        _command()

    assert excinfo.value.exit_code == 1


def test_with_error_handling_handles_keyboard_interrupt():
    @with_error_handling
    def _command() -> None:
        raise KeyboardInterrupt

    with pytest.raises(typer.Exit) as excinfo:
        _command()

    assert excinfo.value.exit_code == 130


def test_with_error_handling_passes_exit_through():
    @with_error_handling
    def _command() -> None:
        raise typer.Exit(3)

    with pytest.raises(typer.Exit) as excinfo:
        _command()

    assert excinfo.value.exit_code == 3
