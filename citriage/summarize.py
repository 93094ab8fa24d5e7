"""Failure summarization.

The summarizer is a capability: ``summarize(text, context) -> str | None``.
None means "unavailable" and callers fall back to the heuristic summary,
which is always available.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from citriage.models import RunExtract

log = logging.getLogger("citriage.summarize")

CLAUDE_TIMEOUT = 300
# Environment variables that would route the CLI to API billing instead of
# the user's subscription session.
_API_KEY_VARS = (
    "ANTHROPIC_API_KEY",
    "CLAUDE_API_KEY",
    "ANTHROPIC_AUTH_TOKEN",
    "ANTHROPIC_BASE_URL",
    "ANTHROPIC_API_URL",
)

_KEY_LINE_RE = re.compile(r"FAIL|FAILED|ERROR|AssertionError|\b(?:test|spec)\b|\bError:")
HEURISTIC_KEY_LINES = 50


@dataclass
class SummaryContext:
    owner: str
    repo: str
    head_commit: str
    cwd: str
    pull_request_number: Optional[int] = None
    run_ids: List[int] = field(default_factory=list)


class Summarizer(Protocol):
    name: str

    def summarize(self, text: str, context: SummaryContext) -> Optional[str]:
        ...


def curated_text(run_extracts: Sequence[RunExtract]) -> str:
    """Join every job excerpt under a run/job banner, for summarizer input."""
    blocks = []
    for rx in run_extracts:
        for jx in rx.jobs:
            blocks.append(
                f"===== RUN {rx.run.id} ({rx.run.name or 'Workflow'}) JOB {jx.job.name} =====\n{jx.excerpt}"
            )
    return "\n\n".join(blocks)


def build_prompt(text: str, context: SummaryContext) -> str:
    sha7 = context.head_commit[:7]
    subject = (
        f"PR #{context.pull_request_number} (SHA {sha7})"
        if context.pull_request_number
        else f"branch SHA {sha7}"
    )
    hints = "\n".join(f"gh run view {run_id} --log-failed | less" for run_id in context.run_ids)
    return "\n".join(
        [
            f"You are assisting as a senior engineer triaging CI failures for {context.owner}/{context.repo}.",
            f"Produce a concise, actionable report for {subject}.",
            "For each failed job: (1) name the failing tests/files with file::line if visible, "
            "(2) include key quoted log lines, (3) likely root cause, (4) minimal next actions, "
            "(5) exact gh commands to inspect details.",
            "Be terse and highly technical. Keep commands copy-pasteable.",
            "",
            f"If needed, retrieve full logs locally with:\n{hints}" if hints else "",
            "",
            "Curated log excerpts:",
            text,
        ]
    )


class ClaudeCliSummarizer:
    """Summarizes through the ``claude`` CLI in print mode."""

    name = "claude"

    def __init__(self, timeout: float = CLAUDE_TIMEOUT, model: Optional[str] = None):
        self.timeout = timeout
        self.model = model or os.environ.get("CITRIAGE_CLAUDE_MODEL")

    def summarize(self, text: str, context: SummaryContext) -> Optional[str]:
        if not shutil.which("claude"):
            log.info("claude CLI not found; using heuristic summary")
            return None

        cmd = ["claude", "-p", "--output-format", "text"]
        if self.model:
            cmd.extend(["--model", self.model])
        env = {k: v for k, v in os.environ.items() if k not in _API_KEY_VARS}

        try:
            result = subprocess.run(
                cmd,
                input=build_prompt(text, context),
                capture_output=True,
                text=True,
                cwd=context.cwd,
                env=env,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            log.warning("claude summarization timed out after %ss", self.timeout)
            return None
        except OSError as e:
            log.warning("claude summarization failed to start: %s", e)
            return None

        if result.returncode != 0:
            log.warning("claude summarization failed: %s", result.stderr.strip()[:500])
            return None
        return result.stdout.strip() or None


def heuristic_summary(run_extracts: Sequence[RunExtract], context: SummaryContext) -> str:
    """Summarize failures without an LLM: runs, key lines per job, commands."""
    sha7 = context.head_commit[:7]
    slug = f"{context.owner}/{context.repo}"
    if context.pull_request_number:
        out = [f"Found CI failures for {slug} PR #{context.pull_request_number} on {sha7}"]
    else:
        out = [f"Found CI failures for {slug} branch SHA {sha7}"]

    if run_extracts:
        out.append("Runs:")
        out.extend(f"- {rx.run.url} ({rx.run.conclusion or '?'})" for rx in run_extracts)

    for rx in run_extracts:
        for jx in rx.jobs:
            out.append(f"\n--- Job {jx.job.name} (run {rx.run.id}) ---")
            key_lines = [ln for ln in jx.excerpt.splitlines() if _KEY_LINE_RE.search(ln)]
            if key_lines:
                out.append("Key lines:")
                out.extend(key_lines[-HEURISTIC_KEY_LINES:])
            else:
                out.append("(No obvious failure lines found; use gh run view <id> --log)")

    if run_extracts:
        out.append("\nSuggested commands:")
        out.extend(f"gh run view {rx.run.id} --log | less" for rx in run_extracts)
    return "\n".join(out)


def get_summarizer(engine: str) -> Optional[Summarizer]:
    if engine == "claude":
        return ClaudeCliSummarizer()
    return None


def summarize_failures(
    run_extracts: Sequence[RunExtract],
    context: SummaryContext,
    summarizer: Optional[Summarizer],
) -> tuple[str, str]:
    """Summarize curated failures, falling back to the heuristic.

    Returns:
        Tuple of (summary, engine name that produced it)
    """
    if summarizer is not None and run_extracts:
        summary = summarizer.summarize(curated_text(run_extracts), context)
        if summary:
            return summary, summarizer.name
    return heuristic_summary(run_extracts, context), "heuristic"
