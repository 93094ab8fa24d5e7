"""Target resolution: turn a worktree name or explicit branch into a Target.

Each step of the fallback chain is only attempted when the previous one
yielded nothing. A lookup that answers "not found" moves the chain along;
any other GitHub failure aborts resolution with ResolutionError rather than
being papered over with a default.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, TypeVar

from citriage import git_utils
from citriage.config import Config
from citriage.errors import GhCommandError, ResolutionError
from citriage.github import GitHubClient
from citriage.models import RepoRef, Target

log = logging.getLogger("citriage.resolve")

T = TypeVar("T")

SINCE_FALLBACK = timedelta(hours=24)


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as the UTC ISO-8601 form GitHub uses."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _lookup(label: str, fn: Callable[[], T]) -> T:
    try:
        return fn()
    except GhCommandError as e:
        raise ResolutionError(f"GitHub lookup failed while resolving {label}: {e}") from e


def resolve_worktree(repo_root: Path, config: Config, explicit_worktree: Optional[str]) -> Path:
    """Map a worktree name to its path, falling back to the repo root."""
    if not explicit_worktree:
        return repo_root
    path = config.get_worktree_path(repo_root, explicit_worktree)
    if path.exists():
        return path
    log.warning("Worktree '%s' not found at %s; using %s", explicit_worktree, path, repo_root)
    return repo_root


def resolve_owner_repo(worktree_path: Path, repo_root: Path, config: Config) -> RepoRef:
    if config.owner and config.repo:
        return RepoRef(config.owner, config.repo)
    for path in (worktree_path, repo_root):
        try:
            return git_utils.origin_owner_repo(path)
        except ValueError as e:
            log.debug("Could not read origin for %s: %s", path, e)
    raise ResolutionError(
        "Cannot determine owner/repo from the origin remote. "
        "Set 'owner' and 'repo' in .citriage.yaml."
    )


def resolve_target(
    repo_root: Path,
    config: Config,
    explicit_worktree: Optional[str] = None,
    explicit_branch: Optional[str] = None,
    client_factory: Callable[[RepoRef], GitHubClient] = GitHubClient,
    now: Optional[datetime] = None,
) -> Target:
    """Resolve the branch, commit, PR and since-timestamp to gather for.

    Args:
        repo_root: Root of the main repository checkout
        config: Loaded configuration
        explicit_worktree: Worktree name (maps below config.worktrees_dir)
        explicit_branch: Remote branch name; when given, local branch
            detection is never consulted
        client_factory: Builds the GitHub client for the resolved repo
        now: Current time (for the since fallback)

    Returns:
        A fully populated Target

    Raises:
        ResolutionError: If owner/repo, branch or head commit cannot be determined
    """
    worktree_path = resolve_worktree(repo_root, config, explicit_worktree)
    ref = resolve_owner_repo(worktree_path, repo_root, config)
    client = client_factory(ref)

    # Branch
    local_branch: Optional[str] = None
    branch: Optional[str] = explicit_branch or None
    if branch is None:
        detected = git_utils.current_branch(worktree_path)
        if detected != git_utils.DETACHED:
            local_branch = detected
            # A local "fix" tracking origin/feature/fix is pushed as feature/fix.
            branch = git_utils.upstream_branch(worktree_path) or detected
        if branch is None:
            local_commit = git_utils.head_commit(worktree_path)
            if local_commit:
                containing = _lookup("branches for local HEAD", lambda: client.branches_for_commit(local_commit))
                if containing:
                    branch = containing[0]
    if not branch:
        raise ResolutionError(
            f"Cannot determine current branch for {worktree_path}. "
            "Specify --branch <remote-branch>."
        )

    # Head commit
    head = git_utils.remote_head_commit(worktree_path, branch)
    if not head:
        head = _lookup(f"branch '{branch}'", lambda: client.get_branch_commit(branch))
    if not head:
        head = _lookup(f"latest run for '{branch}'", lambda: client.latest_run_commit_for_branch(branch))

    known_pr: Optional[int] = None
    branch_pr_checked = False
    if not head and not explicit_branch:
        branch_pr_checked = True
        known_pr = _lookup(f"open PR for '{branch}'", lambda: client.find_open_pr_for_branch(branch))
        if known_pr:
            pr = _lookup(f"PR #{known_pr}", lambda: client.get_pull_request(known_pr))
            head = pr.head_commit or None
    if not head:
        raise ResolutionError(
            f"Unable to resolve remote HEAD for branch '{branch}'. "
            f"Ensure the branch exists on origin and try: git fetch origin {branch}"
        )

    # Pull request
    pr_number = _lookup(f"PR for commit {head[:7]}", lambda: client.find_pr_for_commit(head))
    if not pr_number and not branch_pr_checked:
        pr_number = _lookup(f"open PR for '{branch}'", lambda: client.find_open_pr_for_branch(branch))
    if not pr_number:
        pr_number = known_pr
    if not pr_number:
        pr_number = _lookup(
            f"open PR scan for '{branch}'",
            lambda: client.scan_open_prs_for_branch(branch, limit=config.pr_scan_limit),
        )

    # Since
    since: Optional[str] = None
    try:
        since = client.get_commit_date(head)
    except GhCommandError as e:
        log.warning("Commit date for %s unavailable: %s", head[:7], e)
    if not since:
        since = format_timestamp((now or datetime.now(timezone.utc)) - SINCE_FALLBACK)

    return Target(
        repo_root=str(repo_root),
        worktree_path=str(worktree_path),
        owner=ref.owner,
        repo=ref.repo,
        local_branch=local_branch,
        remote_branch=branch,
        head_commit=head,
        pull_request_number=pr_number,
        since=since,
    )
