"""PR comment reconciliation.

Three independent sources (issue comments, line-anchored review comments and
review summaries) are normalized into CommentItems and merged into ordered
threads under a total comment cap.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

from citriage.errors import best_effort
from citriage.github import GitHubClient
from citriage.models import (
    CommentItem,
    CommentSnapshot,
    CommentSource,
    CommentThread,
    ReviewLineInfo,
    Target,
)

log = logging.getLogger("citriage.comments")

MAX_BACKFILL = 200

REVIEW_STATES = frozenset({"APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED", "PENDING"})


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (with Z or offset), or None if malformed."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _author(data: Dict[str, Any]) -> str:
    return ((data.get("user") or {}).get("login")) or "unknown"


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def issue_item(data: Dict[str, Any]) -> CommentItem:
    return CommentItem(
        id=str(data["id"]),
        url=data.get("html_url") or "",
        author=_author(data),
        body=data.get("body") or "",
        created_at=data.get("created_at") or "",
        updated_at=data.get("updated_at"),
        source=CommentSource.ISSUE,
    )


def review_line_item(data: Dict[str, Any]) -> CommentItem:
    in_reply_to = _opt_str(data.get("in_reply_to_id"))
    info = ReviewLineInfo(
        path=data.get("path") or "",
        line=data.get("line"),
        start_line=data.get("start_line"),
        side=data.get("side"),
        commit_id=data.get("commit_id"),
        in_reply_to_id=in_reply_to,
        thread_id=_opt_str(data.get("thread_id")),
    )
    return CommentItem(
        id=str(data["id"]),
        url=data.get("html_url") or "",
        author=_author(data),
        body=data.get("body") or "",
        created_at=data.get("created_at") or "",
        updated_at=data.get("updated_at"),
        source=CommentSource.REVIEW_LINE,
        line=info,
        parent_id=in_reply_to,
    )


def review_summary_item(data: Dict[str, Any]) -> CommentItem:
    return CommentItem(
        id=str(data["id"]),
        url=data.get("html_url") or "",
        author=_author(data),
        body=data.get("body") or "",
        created_at=data.get("submitted_at") or data.get("created_at") or data.get("updated_at") or "",
        updated_at=data.get("updated_at"),
        source=CommentSource.REVIEW_SUMMARY,
        review_state=(data.get("state") or "").upper() or None,
    )


def thread_key(item: CommentItem, reply_roots: FrozenSet[str] = frozenset()) -> str:
    """Derive the thread a comment belongs to.

    Line comments group by the server thread id, else by the comment they
    reply to, else by path and commit. A line comment that others reply to
    keys on its own id so it lands in its replies' thread. Every other
    source is a singleton keyed ``source:id``.

    Args:
        item: The comment
        reply_roots: Ids of line comments referenced as in-reply-to parents
    """
    if item.source is CommentSource.REVIEW_LINE and item.line is not None:
        info = item.line
        if info.thread_id:
            return info.thread_id
        if info.in_reply_to_id:
            return info.in_reply_to_id
        if item.id in reply_roots:
            return item.id
        return f"{info.path}:{info.commit_id or ''}"
    return f"{item.source.value}:{item.id}"


def filter_reviews_since(reviews: Iterable[Dict[str, Any]], since: str) -> List[Dict[str, Any]]:
    """Keep reviews submitted at or after since.

    The reviews endpoint has no server-side ``since``; pending reviews with no
    submission time are kept.
    """
    lower = parse_timestamp(since)
    kept = []
    for review in reviews:
        submitted = parse_timestamp(review.get("submitted_at") or "")
        if lower is None or submitted is None or submitted >= lower:
            kept.append(review)
    return kept


def backfill_parents(
    client: GitHubClient,
    items: List[CommentItem],
    limit: int = MAX_BACKFILL,
) -> List[CommentItem]:
    """Fetch reply parents that fall outside the since window.

    Returns:
        The parents that could be fetched, at most limit of them
    """
    have = {i.id for i in items}
    missing: List[str] = []
    for item in items:
        if item.parent_id and item.parent_id not in have and item.parent_id not in missing:
            missing.append(item.parent_id)
    if len(missing) > limit:
        log.info("Backfilling %d of %d missing thread parents", limit, len(missing))
        missing = missing[:limit]

    parents = []
    for comment_id in missing:
        data = best_effort(
            f"review comment {comment_id}",
            lambda comment_id=comment_id: client.get_review_comment(comment_id),
            None,
        )
        if data:
            parents.append(review_line_item(data))
    return parents


def _keep(item: CommentItem, authors: Optional[FrozenSet[str]], states: Optional[FrozenSet[str]]) -> bool:
    if authors is not None and item.author.lower() not in authors:
        return False
    if (
        states is not None
        and item.source is CommentSource.REVIEW_SUMMARY
        and item.review_state
        and item.review_state not in states
    ):
        return False
    return True


def _sort_key(item: CommentItem):
    return (item.created_at or "", item.id)


def build_threads(items: Sequence[CommentItem]) -> List[CommentThread]:
    """Group items into threads, sorted ascending by last activity."""
    reply_roots = frozenset(
        i.parent_id for i in items if i.source is CommentSource.REVIEW_LINE and i.parent_id
    )
    threads: Dict[str, CommentThread] = {}
    for item in items:
        key = thread_key(item, reply_roots)
        thread = threads.get(key)
        if thread is None:
            thread = CommentThread(thread_id=key)
            if item.line is not None:
                thread.path = item.line.path or None
                thread.head_commit = item.line.commit_id
            threads[key] = thread
        thread.comments.append(item)

    for thread in threads.values():
        thread.comments.sort(key=_sort_key)
    return sorted(threads.values(), key=lambda t: (t.last_activity, t.thread_id))


def enforce_cap(threads: List[CommentThread], cap: int) -> List[CommentThread]:
    """Evict the oldest whole threads until the comment total fits the cap.

    Threads must already be sorted ascending by last activity. A cap of zero
    or less disables the limit.
    """
    if cap <= 0:
        return threads
    total = sum(len(t.comments) for t in threads)
    kept = list(threads)
    while kept and total > cap:
        dropped = kept.pop(0)
        total -= len(dropped.comments)
        log.debug("Evicted thread %s (%d comments)", dropped.thread_id, len(dropped.comments))
    return kept


def gather_comments(
    client: GitHubClient,
    target: Target,
    since: str,
    cap: int,
    include_full_threads: bool = True,
    authors: Optional[Sequence[str]] = None,
    states: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
) -> CommentSnapshot:
    """Collect PR comments since a timestamp into capped, ordered threads.

    Args:
        client: GitHub client for the target repository
        target: Resolved target; must carry a pull request number
        since: ISO-8601 lower bound
        cap: Maximum total comments (<= 0 for unlimited)
        include_full_threads: Backfill reply parents older than since
        authors: Case-insensitive author allowlist
        states: Review-state allowlist, applied to review summaries only
        now: Collection time

    Returns:
        CommentSnapshot whose total_count never exceeds cap
    """
    number = target.pull_request_number
    if not number:
        raise ValueError("gather_comments requires a target with a pull request")

    issue = best_effort(
        f"issue comments for PR #{number}",
        lambda: client.list_issue_comments(number, since),
        [],
    )
    review_lines = best_effort(
        f"review comments for PR #{number}",
        lambda: client.list_review_comments(number, since),
        [],
    )
    reviews = best_effort(f"reviews for PR #{number}", lambda: client.list_reviews(number), [])

    items: List[CommentItem] = [issue_item(c) for c in issue]
    line_items = [review_line_item(c) for c in review_lines]
    if include_full_threads:
        line_items.extend(backfill_parents(client, line_items))
    items.extend(line_items)
    items.extend(review_summary_item(r) for r in filter_reviews_since(reviews, since))

    author_set = frozenset(a.lower() for a in authors) if authors else None
    state_set = frozenset(s.upper() for s in states) if states else None
    items = [i for i in items if _keep(i, author_set, state_set)]

    threads = enforce_cap(build_threads(items), cap)
    collected = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return CommentSnapshot(
        pull_request_number=number,
        since=since,
        collected_at=collected.strftime("%Y-%m-%dT%H:%M:%SZ"),
        total_count=sum(len(t.comments) for t in threads),
        threads=threads,
    )


def flatten(snapshot: CommentSnapshot) -> List[CommentItem]:
    """All comments of a snapshot, oldest first."""
    return sorted((c for t in snapshot.threads for c in t.comments), key=_sort_key)
