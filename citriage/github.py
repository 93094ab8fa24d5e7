"""GitHub integration for citriage.

Every call goes through the GitHub CLI (``gh api``), so authentication,
enterprise hosts and proxies are whatever ``gh auth`` is configured for.
"""

import gzip
import json
import logging
import re
import shutil
import subprocess
from typing import Any, Dict, List, Optional

from citriage.errors import GhCommandError
from citriage.models import ChangedFile, JobBrief, PullRequestInfo, RepoRef, RunBrief

log = logging.getLogger("citriage.github")

_HTTP_STATUS_RE = re.compile(r"HTTP (\d{3})")

# Per-call timeout for gh; the core assumes calls complete or raise.
GH_TIMEOUT = 60

PER_PAGE = 100
MAX_PAGES = 10


def ensure_gh_cli() -> None:
    """Ensure gh CLI is installed and authenticated.

    Raises:
        RuntimeError: If gh not found or not authenticated
    """
    if not shutil.which("gh"):
        raise RuntimeError(
            "GitHub CLI (gh) not found.\n\n"
            "Install: https://cli.github.com/\n"
            "  macOS:   brew install gh\n"
            "  Linux:   See https://github.com/cli/cli#installation\n"
        )

    result = subprocess.run(
        ["gh", "auth", "status"],
        capture_output=True,
        text=True
    )

    if result.returncode != 0:
        raise RuntimeError(
            "Not authenticated with GitHub.\n\n"
            "Run: gh auth login\n"
        )


def _run_gh(args: List[str]) -> bytes:
    try:
        result = subprocess.run(
            ["gh"] + args,
            capture_output=True,
            check=True,
            timeout=GH_TIMEOUT,
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or b"").decode("utf-8", errors="replace").strip()
        match = _HTTP_STATUS_RE.search(stderr)
        status = int(match.group(1)) if match else None
        raise GhCommandError(f"GitHub CLI command failed: {stderr}", status=status) from e
    except subprocess.TimeoutExpired as e:
        raise GhCommandError(f"GitHub CLI command timed out after {GH_TIMEOUT}s") from e


def gh_command(args: List[str]) -> str:
    """Run a gh (GitHub CLI) command.

    Args:
        args: Command arguments

    Returns:
        Command output

    Raises:
        GhCommandError: If gh command fails
    """
    return _run_gh(args).decode("utf-8", errors="replace").strip()


def gh_command_bytes(args: List[str]) -> bytes:
    """Run a gh command and return its raw stdout."""
    return _run_gh(args)


def decode_log(raw: bytes) -> str:
    """Decode a job log payload, transparently gunzipping it if needed."""
    if raw[:2] == b"\x1f\x8b":
        raw = gzip.decompress(raw)
    return raw.decode("utf-8", errors="replace")


class GitHubClient:
    """REST queries against one repository, via ``gh api``."""

    def __init__(self, ref: RepoRef):
        self.ref = ref

    def _path(self, suffix: str) -> str:
        return f"repos/{self.ref.owner}/{self.ref.repo}/{suffix}"

    def api(self, suffix: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a repository endpoint and decode its JSON body.

        Args:
            suffix: Path below repos/{owner}/{repo}/
            params: Query parameters

        Returns:
            Decoded JSON (None for an empty body)
        """
        args = ["api", "-X", "GET", self._path(suffix)]
        for key, value in (params or {}).items():
            if value is None:
                continue
            args.extend(["-f", f"{key}={value}"])
        output = gh_command(args)
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise GhCommandError(f"Invalid JSON from {suffix}: {e}") from e

    def paginate(
        self,
        suffix: str,
        params: Optional[Dict[str, Any]] = None,
        max_pages: int = MAX_PAGES,
    ) -> List[Dict[str, Any]]:
        """Collect a list endpoint page by page, up to max_pages."""
        items: List[Dict[str, Any]] = []
        for page in range(1, max_pages + 1):
            page_params = dict(params or {})
            page_params.update({"per_page": PER_PAGE, "page": page})
            data = self.api(suffix, page_params) or []
            items.extend(data)
            if len(data) < PER_PAGE:
                break
        return items

    # Pull requests

    def find_pr_for_commit(self, commit: str) -> Optional[int]:
        """Find the open PR associated with a commit."""
        try:
            data = self.api(f"commits/{commit}/pulls") or []
        except GhCommandError as e:
            if e.not_found:
                return None
            raise
        open_prs = [pr for pr in data if pr.get("state") == "open"]
        chosen = open_prs or data
        return chosen[0]["number"] if chosen else None

    def find_open_pr_for_branch(self, branch: str, head_owner: Optional[str] = None) -> Optional[int]:
        """Find an open PR whose head is owner:branch."""
        owner = head_owner or self.ref.owner
        data = self.api("pulls", {"head": f"{owner}:{branch}", "state": "open", "per_page": 10}) or []
        return data[0]["number"] if data else None

    def scan_open_prs_for_branch(self, branch: str, limit: int = 100) -> Optional[int]:
        """Scan recently updated open PRs for one whose head ref equals branch."""
        data = self.api(
            "pulls",
            {"state": "open", "sort": "updated", "direction": "desc", "per_page": min(limit, PER_PAGE)},
        ) or []
        for pr in data:
            if (pr.get("head") or {}).get("ref", "") == branch:
                return pr["number"]
        return None

    def get_pull_request(self, number: int) -> PullRequestInfo:
        return PullRequestInfo.from_api(self.api(f"pulls/{number}"))

    def list_pr_files(self, number: int, limit: int = 200) -> List[ChangedFile]:
        data = self.paginate(f"pulls/{number}/files", max_pages=max(1, limit // PER_PAGE))
        return [
            ChangedFile(
                filename=f["filename"],
                status=f.get("status", ""),
                additions=f.get("additions", 0),
                changes=f.get("changes", 0),
            )
            for f in data[:limit]
        ]

    # Branches and commits

    def get_branch_commit(self, branch: str) -> Optional[str]:
        try:
            data = self.api(f"branches/{branch}")
        except GhCommandError as e:
            if e.not_found:
                return None
            raise
        return ((data or {}).get("commit") or {}).get("sha")

    def branches_for_commit(self, commit: str) -> List[str]:
        """List remote branches whose head is the given commit."""
        try:
            data = self.api(f"commits/{commit}/branches-where-head") or []
        except GhCommandError as e:
            if e.not_found or e.status == 422:
                return []
            raise
        return [b["name"] for b in data if b.get("name")]

    def get_commit_date(self, commit: str) -> Optional[str]:
        data = self.api(f"commits/{commit}") or {}
        commit_data = data.get("commit") or {}
        author = commit_data.get("author") or {}
        committer = commit_data.get("committer") or {}
        return author.get("date") or committer.get("date")

    # Actions

    def latest_run_commit_for_branch(self, branch: str) -> Optional[str]:
        data = self.api("actions/runs", {"branch": branch, "per_page": 1}) or {}
        runs = data.get("workflow_runs") or []
        return runs[0].get("head_sha") if runs else None

    def list_runs_for_commit(self, commit: str) -> List[RunBrief]:
        data = self.api("actions/runs", {"head_sha": commit, "per_page": 20}) or {}
        return [RunBrief.from_api(r) for r in data.get("workflow_runs") or []]

    def list_runs_since(self, branch: str, since: str) -> List[RunBrief]:
        data = self.api(
            "actions/runs",
            {"branch": branch, "created": f">={since}", "per_page": PER_PAGE},
        ) or {}
        return [RunBrief.from_api(r) for r in data.get("workflow_runs") or []]

    def list_jobs_for_run(self, run_id: int) -> List[JobBrief]:
        data = self.api(f"actions/runs/{run_id}/jobs", {"per_page": PER_PAGE}) or {}
        return [JobBrief.from_api(j, run_id) for j in data.get("jobs") or []]

    def fetch_job_log(self, job_id: int) -> bytes:
        """Fetch the raw log of a job (may be gzip-encoded)."""
        return gh_command_bytes(["api", self._path(f"actions/jobs/{job_id}/logs")])

    def fetch_job_log_text(self, job_id: int) -> str:
        return decode_log(self.fetch_job_log(job_id))

    # Comments

    def list_issue_comments(self, number: int, since: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.paginate(f"issues/{number}/comments", {"since": since})

    def list_review_comments(self, number: int, since: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.paginate(f"pulls/{number}/comments", {"since": since})

    def list_reviews(self, number: int) -> List[Dict[str, Any]]:
        return self.paginate(f"pulls/{number}/reviews")

    def get_review_comment(self, comment_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.api(f"pulls/comments/{comment_id}")
        except GhCommandError as e:
            if e.not_found:
                return None
            raise
