"""Data model shared by the resolver, fetchers, curation and reports."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, List, Optional


@dataclass(frozen=True)
class RepoRef:
    """GitHub repository identity."""

    owner: str
    repo: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class Target:
    """The resolved unit of work for one gather operation."""

    repo_root: str
    worktree_path: str
    owner: str
    repo: str
    remote_branch: str
    head_commit: str
    since: str
    local_branch: Optional[str] = None
    pull_request_number: Optional[int] = None

    @property
    def ref(self) -> RepoRef:
        return RepoRef(self.owner, self.repo)


@dataclass
class RunBrief:
    """One CI workflow run."""

    id: int
    url: str
    status: str  # queued, in_progress, completed
    conclusion: Optional[str] = None  # meaningful only when status == completed
    created_at: Optional[str] = None
    name: Optional[str] = None
    head_commit: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> "RunBrief":
        return cls(
            id=data["id"],
            url=data.get("html_url") or "",
            status=data.get("status") or "queued",
            conclusion=data.get("conclusion"),
            created_at=data.get("run_started_at") or data.get("created_at") or data.get("updated_at"),
            name=data.get("name"),
            head_commit=data.get("head_sha"),
        )


@dataclass
class JobBrief:
    """One job within a run."""

    id: int
    run_id: int
    name: str
    url: str
    conclusion: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict, run_id: int) -> "JobBrief":
        return cls(
            id=data["id"],
            run_id=data.get("run_id") or run_id,
            name=data.get("name") or f"job-{data['id']}",
            url=data.get("html_url") or "",
            conclusion=data.get("conclusion"),
            status=data.get("status"),
        )


@dataclass(frozen=True)
class ExtractCounts:
    """Counts derived from a curated excerpt."""

    error: int = 0
    failed: int = 0
    xfail: int = 0
    lines: int = 0
    chars: int = 0

    @classmethod
    def zero(cls) -> "ExtractCounts":
        return cls()

    def __add__(self, other: "ExtractCounts") -> "ExtractCounts":
        return ExtractCounts(
            error=self.error + other.error,
            failed=self.failed + other.failed,
            xfail=self.xfail + other.xfail,
            lines=self.lines + other.lines,
            chars=self.chars + other.chars,
        )


@dataclass
class JobExtract:
    job: JobBrief
    excerpt: str
    counts: ExtractCounts


@dataclass
class RunExtract:
    run: RunBrief
    jobs: List[JobExtract] = field(default_factory=list)
    total_counts: ExtractCounts = field(default_factory=ExtractCounts.zero)


@dataclass
class PullRequestInfo:
    """The subset of a pull request the watcher and resolver need."""

    number: int
    url: str
    head_commit: str
    head_ref: str
    mergeable_state: Optional[str] = None
    state: str = "open"

    @classmethod
    def from_api(cls, data: dict) -> "PullRequestInfo":
        head = data.get("head") or {}
        return cls(
            number=data["number"],
            url=data.get("html_url") or "",
            head_commit=head.get("sha") or "",
            head_ref=head.get("ref") or "",
            mergeable_state=data.get("mergeable_state"),
            state=data.get("state") or "open",
        )


@dataclass
class ChangedFile:
    filename: str
    status: str
    additions: int = 0
    changes: int = 0


class CommentSource(str, Enum):
    """Where a PR comment came from."""

    ISSUE = "issue"
    REVIEW_LINE = "review_line"
    REVIEW_SUMMARY = "review_summary"


@dataclass
class ReviewLineInfo:
    """Anchor information carried only by line-level review comments."""

    path: str
    line: Optional[int] = None
    start_line: Optional[int] = None
    side: Optional[str] = None
    commit_id: Optional[str] = None
    in_reply_to_id: Optional[str] = None
    thread_id: Optional[str] = None


@dataclass
class CommentItem:
    id: str
    url: str
    author: str
    body: str
    created_at: str
    source: CommentSource
    updated_at: Optional[str] = None
    review_state: Optional[str] = None
    line: Optional[ReviewLineInfo] = None
    parent_id: Optional[str] = None


@dataclass
class CommentThread:
    thread_id: str
    comments: List[CommentItem] = field(default_factory=list)
    path: Optional[str] = None
    head_commit: Optional[str] = None
    is_resolved: Optional[bool] = None

    @property
    def last_activity(self) -> str:
        return self.comments[-1].created_at if self.comments else ""


@dataclass
class CommentSnapshot:
    pull_request_number: int
    since: str
    collected_at: str
    total_count: int
    threads: List[CommentThread] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        data = asdict(self)
        for thread in data["threads"]:
            for comment in thread["comments"]:
                comment["source"] = CommentSource(comment["source"]).value
        return data
