"""Shared utilities for CLI modules."""

import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from citriage import git_utils
from citriage.config import Config, load_config
from citriage.errors import PendingCI

# Shared Rich console instances for all CLI modules
console = Console()
err_console = Console(stderr=True)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PENDING = 2


def setup_logging(verbose: bool, default_level: int = logging.WARNING) -> None:
    """Route citriage logs to stderr through rich.

    Args:
        verbose: Enable debug logging
        default_level: Level used when not verbose
    """
    logger = logging.getLogger("citriage")
    logger.setLevel(logging.DEBUG if verbose else default_level)
    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()
    logger.addHandler(RichHandler(console=err_console, show_path=False, rich_tracebacks=True))
    logger.propagate = False


def fail(message: str, code: int = EXIT_FAILURE) -> None:
    """Print an error to stderr and exit."""
    err_console.print(f"[red]Error:[/red] {message}", highlight=False)
    sys.exit(code)


def load_repo() -> tuple[Path, Config]:
    """Locate the repository root and its configuration.

    Exits:
        With code 1 if the current directory is not in a git repository
    """
    try:
        root = git_utils.repo_root(Path.cwd())
    except RuntimeError as e:
        fail(str(e))
    return root, load_config(root)


def exit_for(error: Exception) -> None:
    """Map a citriage error to its message and exit code."""
    if isinstance(error, PendingCI):
        err_console.print(f"[yellow]{error}[/yellow]", highlight=False)
        sys.exit(EXIT_PENDING)
    fail(str(error))


def home_display(path: Path) -> str:
    """Show a path with the home directory abbreviated to ~."""
    try:
        return "~/" + str(path.relative_to(Path.home()))
    except ValueError:
        return str(path)


__all__ = [
    "console",
    "err_console",
    "setup_logging",
    "fail",
    "load_repo",
    "exit_for",
    "home_display",
    "EXIT_OK",
    "EXIT_FAILURE",
    "EXIT_PENDING",
]
