"""Local git lookups for citriage.

All functions use subprocess to call git directly, scoped with ``git -C``
to the worktree they are asked about.
"""

import re
import subprocess
from pathlib import Path
from typing import Optional

from citriage.models import RepoRef

DETACHED = "detached"

# Matches the owner/repo suffix of an origin URL:
#   git@github.com:owner/repo.git
#   https://github.com/owner/repo
#   ssh://git@github.com/owner/repo.git
_ORIGIN_RE = re.compile(r"[:/]([^/:]+)/([^/]+?)(?:\.git)?/?$")


def _git(path: Path | str, *args: str, timeout: float = 30) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", "-C", str(path), *args],
        capture_output=True,
        text=True,
        check=False,
        timeout=timeout,
    )


def repo_root(path: Path | str = ".") -> Path:
    """Get the top-level directory of the repository containing path.

    Raises:
        RuntimeError: If path is not inside a git repository
    """
    result = _git(path, "rev-parse", "--show-toplevel")
    if result.returncode != 0 or not result.stdout.strip():
        raise RuntimeError("Not inside a git repository")
    return Path(result.stdout.strip())


def current_branch(path: Path | str) -> str:
    """Get the current branch of a worktree.

    Returns:
        Branch name, or "detached" when HEAD is detached
    """
    result = _git(path, "branch", "--show-current")
    if result.returncode == 0 and result.stdout.strip():
        return result.stdout.strip()

    result = _git(path, "symbolic-ref", "--short", "HEAD")
    if result.returncode == 0 and result.stdout.strip():
        return result.stdout.strip()

    return DETACHED


def upstream_branch(path: Path | str) -> Optional[str]:
    """Get the remote branch name the current branch tracks.

    Output like "origin/feature/x" is returned as "feature/x".
    """
    result = _git(path, "rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}")
    if result.returncode != 0:
        return None
    upstream = result.stdout.strip()
    if not upstream:
        return None
    if "/" in upstream:
        return upstream.split("/", 1)[1]
    return upstream


def head_commit(path: Path | str) -> Optional[str]:
    """Get the local HEAD commit, or None if the repository has no commits."""
    result = _git(path, "rev-parse", "HEAD")
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def parse_owner_repo(url: str) -> RepoRef:
    """Parse owner/repo from an origin remote URL.

    Raises:
        ValueError: If URL format is unrecognized
    """
    match = _ORIGIN_RE.search(url.strip())
    if not match:
        raise ValueError(f"Could not parse origin URL: {url}")
    return RepoRef(owner=match.group(1), repo=match.group(2))


def origin_owner_repo(path: Path | str) -> RepoRef:
    """Get owner/repo from the origin remote of the repository at path.

    Raises:
        ValueError: If there is no origin remote or its URL is unrecognized
    """
    result = _git(path, "remote", "get-url", "origin")
    if result.returncode != 0:
        raise ValueError(f"No origin remote configured: {result.stderr.strip()}")
    return parse_owner_repo(result.stdout)


def remote_head_commit(path: Path | str, branch: str) -> Optional[str]:
    """Get the commit the origin remote has for a branch.

    Uses ``git ls-remote`` so the answer reflects the remote, not the
    (possibly stale) local remote-tracking ref.
    """
    result = _git(path, "ls-remote", "--heads", "origin", f"refs/heads/{branch}")
    if result.returncode != 0 or not result.stdout.strip():
        return None
    return result.stdout.split()[0] or None
