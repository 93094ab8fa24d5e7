"""Log curation: reduce a raw job log to a bounded, diagnostic excerpt.

The pipeline is a pure function of the input text and the constants below:

1. keep only failure-signal lines (whitespace-bounded ERROR / FAILED / XFAIL)
2. clip any kept line longer than MAX_LINE_CHARS
3. append the test runner's "short test summary info" block verbatim
   (clipped per line) whether or not its lines carry a signal token
4. above TRIM_SKIPPED_THRESHOLD, drop SKIPPED lines first
5. enforce MAX_JOB_EXCERPT_CHARS by cutting out the middle
6. compute counts from the final excerpt (a failure listed both above and
   in the summary counts once)
"""

from __future__ import annotations

import re
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from citriage.models import ExtractCounts, JobBrief, JobExtract, RunBrief, RunExtract

MAX_LINE_CHARS = 600
TRIM_SKIPPED_THRESHOLD = 15000
MAX_JOB_EXCERPT_CHARS = 12000

TRIMMED_MARKER = " … [trimmed]"
# Room kept free for the "… [truncated N chars] …" line and its newlines.
_TRUNCATION_RESERVE = 64

SUMMARY_HEADER_RE = re.compile(r"={3,}\s*short test summary info\s*={3,}")
SUMMARY_END_RE = re.compile(r"={3,} .+ ={3,}\s*$")
SKIPPED_RE = re.compile(r"\bSKIPPED\b")
TRUNCATION_LINE_RE = re.compile(r"^… \[truncated \d+ chars\] …$")


class LineClassifier(Protocol):
    """Decides which log lines carry a failure signal."""

    def match(self, line: str) -> FrozenSet[str]:
        """Return the signal tokens found in line (empty if none)."""
        ...


class KeywordClassifier:
    """Matches literal tokens bounded by spaces, tabs or line edges.

    "got ERROR here" matches ERROR; "ERRORED:" and "ERROR:" do not.
    """

    DEFAULT_TOKENS = ("ERROR", "FAILED", "XFAIL")

    def __init__(self, tokens: Sequence[str] = DEFAULT_TOKENS):
        self.tokens = tuple(tokens)
        self._patterns = {
            token: re.compile(rf"(?:^|[ \t]){re.escape(token)}(?=[ \t]|$)")
            for token in self.tokens
        }

    def match(self, line: str) -> FrozenSet[str]:
        return frozenset(token for token, pattern in self._patterns.items() if pattern.search(line))


DEFAULT_CLASSIFIER = KeywordClassifier()

# Signal token -> ExtractCounts field. Tokens from other vocabularies are kept
# in the excerpt but not counted.
COUNTED_TOKENS: Mapping[str, str] = {"ERROR": "error", "FAILED": "failed", "XFAIL": "xfail"}


def truncate_line(line: str, max_chars: int = MAX_LINE_CHARS) -> str:
    if len(line) <= max_chars:
        return line
    return line[:max_chars] + TRIMMED_MARKER


def truncate_middle(text: str, max_chars: int = MAX_JOB_EXCERPT_CHARS) -> str:
    """Keep the head and tail of text, replacing the middle with a marker.

    The result is never longer than max_chars.
    """
    if len(text) <= max_chars:
        return text
    half = max(1, (max_chars - _TRUNCATION_RESERVE) // 2)
    dropped = len(text) - 2 * half
    return f"{text[:half]}\n… [truncated {dropped} chars] …\n{text[-half:]}"


def find_summary_block(lines: Sequence[str]) -> Optional[Tuple[int, int]]:
    """Locate the short test summary block.

    Returns:
        (header_index, end_index) where end_index is exclusive, or None
    """
    for start, line in enumerate(lines):
        if SUMMARY_HEADER_RE.search(line):
            for end in range(start + 1, len(lines)):
                if SUMMARY_END_RE.search(lines[end]):
                    return start, end + 1
            return start, len(lines)
    return None


def _test_names(words: Iterable[str]) -> Set[str]:
    """Words of a line plus the bare test name of any pytest node id."""
    names: Set[str] = set()
    for word in words:
        names.add(word)
        if "::" in word:
            names.add(word.rsplit("::", 1)[-1])
    return names


def _summary_test_id(line: str, token: str) -> Optional[str]:
    """The node id following token on a summary line ("FAILED a.py::t - msg")."""
    words = line.split()
    if token in words:
        at = words.index(token)
        if at + 1 < len(words):
            return words[at + 1]
    return None


def count_excerpt(excerpt: str, classifier: LineClassifier = DEFAULT_CLASSIFIER) -> ExtractCounts:
    """Compute counts as a reader of the excerpt sees them.

    Blank lines, the summary header and the truncation marker are not
    counted as lines. A signal token on a summary line is counted unless
    the same token was already counted above the header for the same
    test, so a failure listed in both places counts once and a failure
    listed only in the summary still counts.
    """
    if not excerpt:
        return ExtractCounts.zero()

    lines = excerpt.split("\n")
    summary_at = next((i for i, ln in enumerate(lines) if SUMMARY_HEADER_RE.search(ln)), None)
    totals: Dict[str, int] = {"error": 0, "failed": 0, "xfail": 0}
    seen: Dict[str, Set[str]] = {}
    line_count = 0

    for i, line in enumerate(lines):
        if not line.strip() or TRUNCATION_LINE_RE.match(line) or i == summary_at:
            continue
        line_count += 1
        in_summary = summary_at is not None and i > summary_at
        for token in classifier.match(line):
            field_name = COUNTED_TOKENS.get(token)
            if not field_name:
                continue
            if in_summary:
                test_id = _summary_test_id(line, token)
                if test_id and _test_names([test_id]) & seen.get(token, set()):
                    continue
            else:
                seen.setdefault(token, set()).update(_test_names(line.split()))
            totals[field_name] += 1

    return ExtractCounts(lines=line_count, chars=len(excerpt), **totals)


def curate(raw: str, classifier: LineClassifier = DEFAULT_CLASSIFIER) -> Tuple[str, ExtractCounts]:
    """Curate a raw job log into a bounded excerpt.

    Args:
        raw: Raw log text
        classifier: Failure-signal line classifier

    Returns:
        Tuple of (excerpt, counts)
    """
    lines = raw.splitlines()
    block = find_summary_block(lines)

    kept: List[str] = []
    for i, line in enumerate(lines):
        if block and block[0] <= i < block[1]:
            continue
        if classifier.match(line):
            kept.append(truncate_line(line))

    if block:
        start, end = block
        if kept:
            kept.append("")
        kept.extend(truncate_line(line) for line in lines[start:end])

    excerpt = "\n".join(kept)

    if len(excerpt) > TRIM_SKIPPED_THRESHOLD:
        without_skipped = "\n".join(ln for ln in excerpt.split("\n") if not SKIPPED_RE.search(ln))
        if without_skipped.strip():
            excerpt = without_skipped

    excerpt = truncate_middle(excerpt, MAX_JOB_EXCERPT_CHARS)
    return excerpt, count_excerpt(excerpt, classifier)


def sum_counts(counts: Iterable[ExtractCounts]) -> ExtractCounts:
    total = ExtractCounts.zero()
    for c in counts:
        total = total + c
    return total


def to_run_extract(
    run: RunBrief,
    jobs: Sequence[JobBrief],
    logs: Mapping[int, str],
    classifier: LineClassifier = DEFAULT_CLASSIFIER,
) -> RunExtract:
    """Curate each job's log and roll the counts up to the run."""
    extracts: List[JobExtract] = []
    for job in jobs:
        excerpt, counts = curate(logs.get(job.id, ""), classifier)
        extracts.append(JobExtract(job=job, excerpt=excerpt, counts=counts))
    return RunExtract(run=run, jobs=extracts, total_counts=sum_counts(e.counts for e in extracts))
