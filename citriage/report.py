"""Report synthesis: bounded markdown documents with XML-delimited sections."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from citriage.models import ChangedFile, CommentItem, CommentSnapshot, RunExtract

NO_EXCERPT = "(no failure lines extracted)"
NO_SUMMARY = "(Summarization skipped or unavailable.)"


def escape_xml_attr(value: str) -> str:
    """Escape the five reserved markup characters with named entities.

    The ampersand is replaced first so the entities inserted afterwards are
    not escaped a second time.
    """
    return (
        str(value)
        .replace("&", "&amp;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


def sanitize_name(value: str) -> str:
    value = re.sub(r"[\n\r\t]", " ", value)
    value = re.sub(r"[\s/]", "_", value)
    return re.sub(r"[^A-Za-z0-9_.-]", "_", value)


def build_report_filename(repo_base: str, branch: str, sha_short: str, stamp: str) -> str:
    """Build a report file name like ``repo-feature-x-abc1234_20250101-120000.md``."""
    clean_branch = re.sub(r"[:/]+", "-", sanitize_name(branch))[:30]
    return f"{repo_base}-{clean_branch}-{sha_short}_{stamp}.md"


def gh_hints(run_id: int) -> str:
    return "\n".join(
        [
            f"gh run view {run_id} --log-failed | less",
            f"gh run view {run_id} --json jobs --jq '.jobs[] | select(.conclusion==\"failure\") | .name'",
        ]
    )


@dataclass
class FailureReportInput:
    owner: str
    repo: str
    branch: str
    head_commit: str
    since: str
    pull_request_number: Optional[int]
    comments: Sequence[CommentItem]
    run_extracts: Sequence[RunExtract]
    summary: Optional[str] = None
    summary_engine: str = "none"
    force: bool = False
    summary_only: bool = False
    warnings: Sequence[str] = ()


@dataclass
class FailureReport:
    text: str
    lengths: Dict[str, int]
    per_job_counts: List[Dict[str, Any]] = field(default_factory=list)


class _Builder:
    """Accumulates lines and measures each section as it is closed."""

    def __init__(self) -> None:
        self.lines: List[str] = []

    def size(self) -> int:
        return len("\n".join(self.lines))

    def add(self, *lines: str) -> None:
        self.lines.extend(lines)

    def text(self) -> str:
        return "\n".join(self.lines)


def _comment_line(comment: CommentItem) -> str:
    first = (comment.body or "").splitlines()[0] if comment.body else ""
    return f"- @{comment.author} ({comment.created_at}): {first} ({comment.url})"


def build_failure_report(data: FailureReportInput) -> FailureReport:
    """Assemble the CI failure report.

    Args:
        data: Target metadata, comments since push, run extracts and the
            optional external summary

    Returns:
        FailureReport with per-section character lengths
    """
    sha7 = data.head_commit[:7]
    out = _Builder()

    out.add("# CI Gather Report")
    out.add(
        f"Repo: **{data.owner}/{data.repo}**  |  Branch: **{escape_xml_attr(data.branch)}**  |  "
        f"SHA: **{sha7}**  |  Since (last push): **{data.since}**"
    )
    if data.force:
        out.add("> Note: Generated with `--force`; runs may still be in progress.")
    out.add("")

    start = out.size()
    out.add("## PR Comments (since last push)", f'<pr-comments since="{escape_xml_attr(data.since)}">')
    if data.pull_request_number and data.comments:
        out.add(f"PR #{data.pull_request_number}: {len(data.comments)} new comment(s):")
        out.add(*(escape_xml_attr(_comment_line(c)) for c in data.comments))
    elif data.pull_request_number:
        out.add(f"PR #{data.pull_request_number}: no new comments since last push.")
    else:
        out.add(f"No open PR for branch **{escape_xml_attr(data.branch)}**.")
    out.add("</pr-comments>", "")
    comments_chars = out.size() - start

    ci_chars = 0
    if not data.summary_only:
        start = out.size()
        out.add(
            "## Failing CI (runs since last push)",
            f'<ci-runs branch="{escape_xml_attr(data.branch)}" sha="{sha7}">',
        )
        if not data.run_extracts:
            out.add("(No failing runs found in the window.)")
        for rx in data.run_extracts:
            run = rx.run
            title = f"### Run #{run.id}"
            if run.name:
                title += f": {run.name}"
            out.add(f"{title} ({run.status}/{run.conclusion or ''})", run.url)
            out.add(
                f'<ci-run id="{run.id}">',
                f'<run-meta createdAt="{escape_xml_attr(run.created_at or "")}" '
                f'headSha="{(run.head_commit or "")[:7]}"/>',
                "<gh-hints>",
                gh_hints(run.id),
                "</gh-hints>",
                "<jobs>",
            )
            if not rx.jobs:
                out.add("(Run in progress; no failing jobs yet.)" if run.status != "completed" else NO_EXCERPT)
            for jx in rx.jobs:
                c = jx.counts
                out.add(
                    f'<job name="{escape_xml_attr(jx.job.name)}" id="{jx.job.id}" '
                    f'conclusion="{escape_xml_attr(jx.job.conclusion or "")}">',
                    f'<counts error="{c.error}" failed="{c.failed}" xfail="{c.xfail}" '
                    f'lines="{c.lines}" chars="{c.chars}"/>',
                    "<pre>",
                    jx.excerpt or NO_EXCERPT,
                    "</pre>",
                    "</job>",
                )
            out.add("</jobs>", "</ci-run>", "")
        out.add("</ci-runs>", "")
        ci_chars = out.size() - start

    start = out.size()
    engine = data.summary_engine if data.summary else "none"
    out.add("## Summary of failing CI", f'<ci-summary engine="{escape_xml_attr(engine)}">')
    out.add(data.summary or NO_SUMMARY)
    out.add("</ci-summary>", "")
    summary_chars = out.size() - start

    if data.warnings:
        out.add("## Warnings")
        out.add(*(f"- {w}" for w in data.warnings))
        out.add("")

    per_job = [
        {
            "run_id": rx.run.id,
            "job_name": jx.job.name,
            "error": jx.counts.error,
            "failed": jx.counts.failed,
            "xfail": jx.counts.xfail,
            "lines": jx.counts.lines,
            "chars": jx.counts.chars,
        }
        for rx in data.run_extracts
        for jx in rx.jobs
    ]
    text = out.text()
    return FailureReport(
        text=text,
        lengths={
            "comments_chars": comments_chars,
            "ci_chars": ci_chars,
            "summary_chars": summary_chars,
            "total_chars": len(text),
        },
        per_job_counts=per_job,
    )


@dataclass
class CommentReportMeta:
    owner: str
    repo: str
    branch: str
    head_commit: str


@dataclass
class CommentReport:
    text: str
    json: str
    lengths: Dict[str, int]


def _attr(name: str, value: Any) -> str:
    if value is None or value == "":
        return ""
    return f' {name}="{escape_xml_attr(str(value))}"'


def build_comment_report(snapshot: CommentSnapshot, meta: CommentReportMeta) -> CommentReport:
    """Render a comment snapshot as markdown with XML-delimited threads, plus JSON."""
    out = _Builder()
    out.add("# PR Comments Detailed")
    out.add(
        f"Repo: **{meta.owner}/{meta.repo}**  |  Branch: **{escape_xml_attr(meta.branch)}**  |  "
        f"SHA: **{meta.head_commit[:7]}**  |  Since: **{snapshot.since}**"
    )
    out.add("")
    out.add(f'<pr-comments-detailed pr="{snapshot.pull_request_number}"{_attr("since", snapshot.since)}>')
    for thread in snapshot.threads:
        resolved = "" if thread.is_resolved is None else f' resolved="{str(thread.is_resolved).lower()}"'
        out.add(
            f'<thread{_attr("id", thread.thread_id)}{_attr("path", thread.path)}'
            f'{_attr("headCommit", thread.head_commit)}{resolved}>'
        )
        for c in thread.comments:
            line = c.line
            out.add(
                f'<comment{_attr("id", c.id)}{_attr("author", c.author)}{_attr("createdAt", c.created_at)}'
                f'{_attr("source", c.source.value)}{_attr("url", c.url)}{_attr("reviewState", c.review_state)}'
                f'{_attr("path", line.path if line else None)}{_attr("line", line.line if line else None)}'
                f'{_attr("parent", c.parent_id)}>'
            )
            out.add("<pre>", escape_xml_attr(c.body or ""), "</pre>", "</comment>")
        out.add("</thread>")
    out.add("</pr-comments-detailed>", "")

    text = out.text()
    return CommentReport(
        text=text,
        json=json.dumps(snapshot.to_dict(), indent=2),
        lengths={
            "markdown_chars": len(text),
            "total_threads": len(snapshot.threads),
            "total_comments": snapshot.total_count,
        },
    )


@dataclass
class AgentPayload:
    sentinel: str
    text: str


def make_sentinel(pull_request_number: Optional[int], head_commit: str) -> str:
    if pull_request_number:
        return f"CITRIAGE-PR-{pull_request_number}-{head_commit[:7]}"
    return f"CITRIAGE-BRANCH-{head_commit[:7]}"


def build_agent_payload(
    pull_request_number: Optional[int],
    head_commit: str,
    failure_summary: str,
    comments: Sequence[CommentItem],
    debug_prompt: str,
    runs: Sequence[RunExtract] = (),
    pushed_at: Optional[str] = None,
    report_path: Optional[str] = None,
) -> AgentPayload:
    """Build the text pasted into the agent's pane after a CI failure.

    The payload ends with a ``<sentinel:...>`` line so delivery can confirm
    the paste landed in full.
    """
    sentinel = make_sentinel(pull_request_number, head_commit)
    sha7 = head_commit[:7]
    lines: List[str] = []
    if pull_request_number:
        lines.append(f"# CI failed for PR #{pull_request_number} on {sha7}")
    else:
        lines.append(f"# CI failed for branch SHA {sha7}")
    if runs:
        lines.append("Runs: " + ", ".join(f"{rx.run.url} ({rx.run.conclusion or '?'})" for rx in runs))
    if report_path:
        lines.append(f"Full report: {report_path}")

    lines.append("\n## Summary of Failures")
    lines.append("<ci-context>")
    lines.append(failure_summary)
    lines.append("</ci-context>")

    if pull_request_number and comments:
        lines.append(f"\n## Comments since {pushed_at or 'last push'}")
        lines.extend(f"- @{c.author} ({c.created_at}): {c.body} ({c.url})" for c in comments)

    lines.append(f"\n## Next actions\n{debug_prompt}")
    lines.append(f"\n<sentinel:{sentinel}>")
    return AgentPayload(sentinel=sentinel, text="\n".join(lines))


def likely_conflict_files(files: Sequence[ChangedFile], limit: int = 10) -> List[str]:
    """Heavily modified files are the likeliest rebase conflicts."""
    return [f.filename for f in files if f.status == "modified" and f.changes > 100][:limit]


def build_rebase_payload(
    pull_request_number: int,
    head_commit: str,
    mergeable_state: str,
    conflict_files: Sequence[str],
    debug_prompt: str,
    conflict_hints: str = "simple",
    base_branch: str = "main",
) -> AgentPayload:
    """Build the rebase instruction pasted when a PR is dirty or behind."""
    sentinel = make_sentinel(pull_request_number, head_commit)
    lines = [f"# PR #{pull_request_number} needs a rebase ({mergeable_state}) on {head_commit[:7]}"]
    lines.append(
        f"Rebase needed (merge conflicts or behind {base_branch}). "
        f"Please rebase on {base_branch} and resolve."
    )
    if conflict_files:
        lines.append("\nMerge conflicts detected. Suggested focus files:")
        lines.extend(f"- {f}" for f in conflict_files)
    lines.append(f"\nPlease rebase on {base_branch}: git fetch origin && git rebase origin/{base_branch}")
    if conflict_hints == "simple+recent-base":
        lines.append("\nAlso inspect recent base changes to these files and nearby code:")
        lines.append(f"  git log --name-only --since='7 days' origin/{base_branch} | sed -n '1,200p'")
        lines.append(f"  git log --merges --since='14 days' origin/{base_branch} | sed -n '1,200p'")
    lines.append(f"\n## Next actions\n{debug_prompt}")
    lines.append(f"\n<sentinel:{sentinel}>")
    return AgentPayload(sentinel=sentinel, text="\n".join(lines))
