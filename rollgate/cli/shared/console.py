"""Console output and error handling shared by the rollgate commands."""

from collections.abc import Callable
from functools import wraps

import typer
from rich.console import Console, ConsoleRenderable
from rich.panel import Panel
from rich.status import Status

from rollgate.core.errors import ConcurrentDeploymentConflict, RollgateError
from rollgate.core.models import EXIT_FAILURE

EXIT_INTERRUPTED = 130

_PREFIXES = {
    "info": "[cyan]ℹ[/cyan] ",
    "ok": "[green]✔[/green] ",
    "warn": "[yellow]![/yellow] ",
    "error": "[red]✘[/red] ",
}


class CLIConsole:
    """Rich console wrapper used by every command."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def print(self, msg: ConsoleRenderable | str | None = None) -> None:
        self.console.print(msg)

    def status(self, status: str) -> Status:
        return self.console.status(status)

    def _line(self, kind: str, msg: str) -> None:
        self.console.print(f"{_PREFIXES[kind]} {msg}")

    def info(self, msg: str) -> None:
        self._line("info", msg)

    def ok(self, msg: str) -> None:
        self._line("ok", msg)

    def warn(self, msg: str) -> None:
        self._line("warn", msg)

    def error(self, msg: str) -> None:
        self._line("error", msg)

    def print_header(self, title: str, style: str = "blue") -> None:
        self.console.print(
            Panel.fit(f"[bold {style}]{title}[/bold {style}]", border_style=style)
        )

    def confirm_action(
        self,
        action: str,
        details: str | None = None,
        extra_warning: str | None = None,
        force: bool = False,
    ) -> bool:
        """Ask the operator to approve a release or rollback.

        Args:
            action: What is about to happen (e.g. "Release web:1.4.2")
            details: Targets, steps and other context shown in the panel
            extra_warning: Highlighted line below the details
            force: Approve without prompting

        Returns:
            True only for an explicit "y" or "yes"
        """
        if force:
            return True

        body = f"[bold yellow]{action}[/bold yellow]"
        if details:
            body += f"\n\n{details}"
        if extra_warning:
            body += f"\n\n[yellow]{extra_warning}[/yellow]"
        self.console.print(Panel(body, title="Approval required", border_style="yellow"))

        try:
            answer = self.console.input("\n[bold]Approve?[/bold] \\[y/N]: ")
        except (KeyboardInterrupt, EOFError):
            self.console.print("\n[dim]No answer; treating as declined.[/dim]")
            return False
        return answer.strip().lower() in ("y", "yes")

    def handle_error(
        self, message: str, details: str | None = None, exit_code: int = EXIT_FAILURE
    ) -> None:
        """Print an error (with an optional details panel) and exit."""
        self.error(f"[bold red]{message}[/bold red]")
        if details:
            self.console.print(Panel(details, title="Details", border_style="red"))
        raise typer.Exit(exit_code)


def with_error_handling(func: Callable[..., None]) -> Callable[..., None]:
    """Turn rollgate errors into a rendered message and a non-zero exit.

    ``typer.Exit`` raised by the command passes through unchanged; Ctrl-C
    exits 130.
    """

    @wraps(func)
    def wrapper(*args: object, **kwargs: object) -> None:
        try:
            func(*args, **kwargs)
        except ConcurrentDeploymentConflict as e:
            console.warn("A target cluster is leased by another deployment; retry later.")
            console.handle_error(e.message, e.details)
        except RollgateError as e:
            console.handle_error(e.message, e.details)
        except KeyboardInterrupt:
            console.print("\n[dim]Interrupted.[/dim]")
            raise typer.Exit(EXIT_INTERRUPTED) from None

    return wrapper


console = CLIConsole()
