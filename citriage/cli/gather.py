"""One-shot gather commands."""

import click
from rich.table import Table

from citriage.cli._utils import console, exit_for, home_display, load_repo, setup_logging
from citriage.errors import CitriageError
from citriage.gather import run_gather_ci, run_gather_comments
from citriage.github import ensure_gh_cli
from citriage.models import ExtractCounts


@click.command("gather-ci")
@click.option("--wt", "worktree", help="Worktree name (maps below worktrees_dir)")
@click.option("--branch", help="Remote branch to gather for (skips local branch detection)")
@click.option("--force", is_flag=True, help="Compile a report even while CI is still running")
@click.option("--skip-summary", is_flag=True, help="Do not run the summarizer")
@click.option("--summary-only", is_flag=True, help="Omit the per-job excerpts from the report")
@click.option("--out", type=click.Path(dir_okay=False), help="Report path (default: <worktree>/docs/tmp/)")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def gather_ci(
    worktree: str | None,
    branch: str | None,
    force: bool,
    skip_summary: bool,
    summary_only: bool,
    out: str | None,
    verbose: bool,
) -> None:
    """Collect failing CI logs since the last push into a report.

    Exits 2 when CI is still in progress (re-run later or pass --force).

    Examples:
        citriage gather-ci
        citriage gather-ci --wt feature-x --force
        citriage gather-ci --branch fix/login --skip-summary --out /tmp/ci.md
    """
    setup_logging(verbose)
    root, config = load_repo()
    try:
        ensure_gh_cli()
        result = run_gather_ci(
            root,
            config,
            worktree=worktree,
            branch=branch,
            force=force,
            skip_summary=skip_summary,
            summary_only=summary_only,
            out=out,
        )
    except (CitriageError, RuntimeError, ValueError) as e:
        exit_for(e)
        return

    target = result.target
    totals = sum((rx.total_counts for rx in result.run_extracts), ExtractCounts.zero())
    run_ids = ", ".join(f"#{rx.run.id}" for rx in result.run_extracts) or "-"
    lengths = result.report.lengths

    table = Table(title="citriage gather-ci", show_header=False, box=None)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("repo", f"{target.owner}/{target.repo}")
    table.add_row("branch", f"{target.remote_branch}  sha: {target.head_commit[:7]}")
    table.add_row("PR", f"#{target.pull_request_number}" if target.pull_request_number else "(none)")
    table.add_row("runs", f"{len(result.run_extracts)} included ({run_ids})")
    table.add_row(
        "captured",
        f"ERROR:{totals.error}  FAILED:{totals.failed}  XFAIL:{totals.xfail}  lines:{totals.lines}",
    )
    table.add_row(
        "sizes",
        f"ci={lengths['ci_chars']}  summary={lengths['summary_chars']}  total={lengths['total_chars']}",
    )
    table.add_row("summary", result.summary_engine)
    table.add_row("output", home_display(result.path))
    console.print(table)


@click.command("gather-comments")
@click.option("--wt", "worktree", help="Worktree name (maps below worktrees_dir)")
@click.option("--branch", help="Remote branch to gather for (skips local branch detection)")
@click.option("--since", default="auto", show_default=True, help="'auto' (last push) or an ISO-8601 timestamp")
@click.option("--max", "max_comments", type=int, help="Comment cap (default: comments_cap from config; 0 = no cap)")
@click.option("--full-threads/--no-full-threads", default=True, show_default=True,
              help="Backfill reply parents older than --since")
@click.option("--author", "authors", multiple=True, help="Only include these authors (repeatable)")
@click.option(
    "--state", "states", multiple=True,
    type=click.Choice(["APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED", "PENDING"], case_sensitive=False),
    help="Only include review summaries in these states (repeatable)",
)
@click.option("--format", "output_format", type=click.Choice(["md", "json", "both"]), default="md", show_default=True)
@click.option("--out", type=click.Path(dir_okay=False), help="Output path (default: <worktree>/docs/tmp/)")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def gather_comments(
    worktree: str | None,
    branch: str | None,
    since: str,
    max_comments: int | None,
    full_threads: bool,
    authors: tuple[str, ...],
    states: tuple[str, ...],
    output_format: str,
    out: str | None,
    verbose: bool,
) -> None:
    """Collect PR comments since the last push into threaded reports.

    Examples:
        citriage gather-comments
        citriage gather-comments --since 2025-01-01T00:00:00Z --format both
        citriage gather-comments --author alice --state CHANGES_REQUESTED
    """
    setup_logging(verbose)
    root, config = load_repo()
    try:
        ensure_gh_cli()
        result = run_gather_comments(
            root,
            config,
            worktree=worktree,
            branch=branch,
            since=since,
            max_comments=max_comments,
            full_threads=full_threads,
            authors=authors,
            states=states,
            output_format=output_format,
            out=out,
        )
    except (CitriageError, RuntimeError, ValueError) as e:
        exit_for(e)
        return

    target = result.target
    if result.snapshot is None:
        console.print(f"[yellow]No open PR for branch {target.remote_branch}; nothing gathered.[/yellow]")
        return

    snapshot = result.snapshot
    console.print(
        f"[green]✓ PR #{snapshot.pull_request_number}:[/green] "
        f"{snapshot.total_count} comment(s) in {len(snapshot.threads)} thread(s) since {snapshot.since}"
    )
    for path in result.paths:
        console.print(f"  output: {home_display(path)}")
