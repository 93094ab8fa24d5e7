"""The watch command."""

import logging
import os
import sys

import click

from citriage.cli._utils import console, fail, load_repo, setup_logging
from citriage.github import ensure_gh_cli
from citriage.watch import Watcher


@click.command("watch")
@click.option("--wt", "worktree", required=True, help="Worktree name; its tmux window receives reports")
@click.option("--idle-sec", type=float, help="Seconds of pane inactivity before a dormant notice")
@click.option("--poll-sec-idle", type=float, help="Poll interval while idle")
@click.option("--poll-sec-post-push", type=float, help="Poll interval after a push, until CI passes")
@click.option("--event-mode", is_flag=True, help="Gather once for $GITHUB_HEAD_SHA and exit")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def watch(
    worktree: str,
    idle_sec: float | None,
    poll_sec_idle: float | None,
    poll_sec_post_push: float | None,
    event_mode: bool,
    verbose: bool,
) -> None:
    """Watch a worktree's branch and deliver CI failures to its agent pane.

    Runs until interrupted. On a failing CI run for the latest push, a
    curated report is pasted into the worktree's tmux pane exactly once.

    Examples:
        citriage watch --wt feature-x
        citriage watch --wt feature-x --poll-sec-post-push 10
    """
    setup_logging(verbose, default_level=logging.INFO)
    root, config = load_repo()

    overrides = {
        key: value
        for key, value in {
            "idle_sec": idle_sec,
            "poll_sec_idle": poll_sec_idle,
            "poll_sec_post_push": poll_sec_post_push,
        }.items()
        if value is not None
    }
    config = config.model_copy(update=overrides)

    try:
        ensure_gh_cli()
    except RuntimeError as e:
        fail(str(e))

    watcher = Watcher(root, worktree, config)

    if event_mode:
        commit = os.environ.get("GITHUB_HEAD_SHA")
        if not commit:
            fail("--event-mode requires GITHUB_HEAD_SHA to be set")
        sys.exit(watcher.run_event_mode(commit))

    console.print(f"[cyan]Watching {worktree}[/cyan] (Ctrl+C to stop)")
    try:
        code = watcher.run()
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        code = 0
    sys.exit(code)
