"""One-shot gathers: resolve a target, collect, synthesize and write a report."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from citriage.ci import PLACEHOLDER_PREFIX, gather_run_extracts
from citriage.comments import flatten, gather_comments, parse_timestamp
from citriage.config import Config
from citriage.github import GitHubClient
from citriage.models import CommentItem, CommentSnapshot, RepoRef, RunExtract, Target
from citriage.report import (
    CommentReport,
    CommentReportMeta,
    FailureReport,
    FailureReportInput,
    build_comment_report,
    build_failure_report,
    build_report_filename,
)
from citriage.resolve import format_timestamp, resolve_target
from citriage.summarize import SummaryContext, Summarizer, get_summarizer, summarize_failures

log = logging.getLogger("citriage.gather")

REPORT_SUBDIR = Path("docs") / "tmp"

ClientFactory = Callable[[RepoRef], GitHubClient]


def now_stamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).astimezone(timezone.utc).strftime("%Y%m%d-%H%M%S")


def write_file_atomic(path: Path, text: str) -> None:
    """Write text to path via a temp file in the same directory and a rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def report_path(target: Target, out: Optional[str], suffix: str = "", stamp: Optional[str] = None) -> Path:
    """Where a report for target goes: --out, else <worktree>/docs/tmp/<name>.md."""
    if out:
        return Path(out).expanduser().resolve()
    name = build_report_filename(
        Path(target.repo_root).name, target.remote_branch, target.head_commit[:7], stamp or now_stamp()
    )
    if suffix:
        name = name[: -len(".md")] + suffix + ".md"
    return Path(target.worktree_path) / REPORT_SUBDIR / name


def recent_comments(
    client: GitHubClient,
    target: Target,
    since: str,
    config: Config,
) -> List[CommentItem]:
    """The most recent comments since a timestamp, flattened oldest first."""
    if not target.pull_request_number:
        return []
    snapshot = gather_comments(
        client,
        target,
        since=since,
        cap=config.comments_cap,
        include_full_threads=False,
    )
    items = flatten(snapshot)
    if config.max_recent_comments > 0:
        items = items[-config.max_recent_comments:]
    return items


def collect_warnings(run_extracts: Sequence[RunExtract]) -> List[str]:
    warnings = []
    for rx in run_extracts:
        for jx in rx.jobs:
            if jx.excerpt.startswith(PLACEHOLDER_PREFIX):
                warnings.append(f"Logs unavailable for job '{jx.job.name}' (run #{rx.run.id}): {jx.job.url}")
    return warnings


@dataclass
class GatherCiResult:
    target: Target
    path: Path
    report: FailureReport
    run_extracts: List[RunExtract] = field(default_factory=list)
    summary_engine: str = "none"


def run_gather_ci(
    repo_root: Path,
    config: Config,
    worktree: Optional[str] = None,
    branch: Optional[str] = None,
    force: bool = False,
    skip_summary: bool = False,
    summary_only: bool = False,
    out: Optional[str] = None,
    client_factory: ClientFactory = GitHubClient,
    summarizer: Optional[Summarizer] = None,
) -> GatherCiResult:
    """Gather failing CI since the last push into a report file.

    Raises:
        ResolutionError: If the target cannot be resolved
        PendingCI: If runs are still in progress and force is False (no
            report is written)
    """
    target = resolve_target(
        repo_root, config, explicit_worktree=worktree, explicit_branch=branch, client_factory=client_factory
    )
    client = client_factory(target.ref)
    log.info(
        "Gathering CI for %s@%s (PR %s) since %s",
        target.remote_branch, target.head_commit[:7], target.pull_request_number or "none", target.since,
    )

    run_extracts = gather_run_extracts(client, target, force=force, workers=config.log_fetch_workers)
    comments = recent_comments(client, target, target.since, config)

    summary: Optional[str] = None
    engine = "none"
    if not skip_summary:
        context = SummaryContext(
            owner=target.owner,
            repo=target.repo,
            head_commit=target.head_commit,
            cwd=target.worktree_path,
            pull_request_number=target.pull_request_number,
            run_ids=[rx.run.id for rx in run_extracts],
        )
        if summarizer is None:
            summarizer = get_summarizer(config.engine)
        summary, engine = summarize_failures(run_extracts, context, summarizer)

    report = build_failure_report(
        FailureReportInput(
            owner=target.owner,
            repo=target.repo,
            branch=target.remote_branch,
            head_commit=target.head_commit,
            since=target.since,
            pull_request_number=target.pull_request_number,
            comments=comments,
            run_extracts=run_extracts,
            summary=summary,
            summary_engine=engine,
            force=force,
            summary_only=summary_only,
            warnings=collect_warnings(run_extracts),
        )
    )
    path = report_path(target, out)
    write_file_atomic(path, report.text)
    return GatherCiResult(target=target, path=path, report=report, run_extracts=run_extracts, summary_engine=engine)


def resolve_since(value: Optional[str], target: Target) -> str:
    """Interpret --since: "auto" (or nothing) means the target's push time.

    Raises:
        ValueError: If value is neither "auto" nor an ISO-8601 timestamp
    """
    if not value or value == "auto":
        return target.since
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"Invalid --since value '{value}': expected 'auto' or an ISO-8601 timestamp")
    return format_timestamp(parsed)


@dataclass
class GatherCommentsResult:
    target: Target
    snapshot: Optional[CommentSnapshot]
    report: Optional[CommentReport]
    paths: List[Path] = field(default_factory=list)


def run_gather_comments(
    repo_root: Path,
    config: Config,
    worktree: Optional[str] = None,
    branch: Optional[str] = None,
    since: Optional[str] = None,
    max_comments: Optional[int] = None,
    full_threads: bool = True,
    authors: Sequence[str] = (),
    states: Sequence[str] = (),
    output_format: str = "md",
    out: Optional[str] = None,
    client_factory: ClientFactory = GitHubClient,
) -> GatherCommentsResult:
    """Gather PR comments since a timestamp into markdown and/or JSON files.

    Returns a result with no snapshot when the branch has no open PR.

    Raises:
        ResolutionError: If the target cannot be resolved
        ValueError: If since is malformed
    """
    target = resolve_target(
        repo_root, config, explicit_worktree=worktree, explicit_branch=branch, client_factory=client_factory
    )
    if not target.pull_request_number:
        log.warning("No open PR for branch '%s'; nothing to gather", target.remote_branch)
        return GatherCommentsResult(target=target, snapshot=None, report=None)

    client = client_factory(target.ref)
    snapshot = gather_comments(
        client,
        target,
        since=resolve_since(since, target),
        cap=config.comments_cap if max_comments is None else max_comments,
        include_full_threads=full_threads,
        authors=list(authors) or None,
        states=list(states) or None,
    )
    report = build_comment_report(
        snapshot,
        CommentReportMeta(
            owner=target.owner, repo=target.repo, branch=target.remote_branch, head_commit=target.head_commit
        ),
    )

    base = report_path(target, out, suffix="" if out else "-comments")
    paths: List[Path] = []
    if output_format in ("md", "both"):
        md_path = base if base.suffix == ".md" else base.with_suffix(".md")
        write_file_atomic(md_path, report.text)
        paths.append(md_path)
    if output_format in ("json", "both"):
        json_path = base.with_suffix(".json")
        write_file_atomic(json_path, report.json)
        paths.append(json_path)
    return GatherCommentsResult(target=target, snapshot=snapshot, report=report, paths=paths)
