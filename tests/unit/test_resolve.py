"""Tests for target resolution."""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from citriage.config import Config
from citriage.errors import GhCommandError, ResolutionError
from citriage.models import PullRequestInfo, RepoRef
from citriage.resolve import format_timestamp, resolve_owner_repo, resolve_target, resolve_worktree

NOW = datetime(2025, 1, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_git():
    with patch("citriage.resolve.git_utils") as git:
        git.DETACHED = "detached"
        git.current_branch.return_value = "feature/x"
        git.upstream_branch.return_value = None
        git.remote_head_commit.return_value = "abc1234def5678"
        yield git


@pytest.fixture
def gh(client: MagicMock) -> MagicMock:
    client.find_pr_for_commit.return_value = 42
    client.get_commit_date.return_value = "2025-01-01T00:00:00Z"
    return client


def _resolve(tmp_path: Path, config: Config, gh: MagicMock, **kwargs):
    return resolve_target(tmp_path, config, client_factory=lambda ref: gh, now=NOW, **kwargs)


class TestResolveBranch:
    """Tests for branch detection."""

    def test_local_branch(self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock) -> None:
        target = _resolve(tmp_path, config, gh)

        assert target.local_branch == "feature/x"
        assert target.remote_branch == "feature/x"
        assert target.head_commit == "abc1234def5678"
        assert target.pull_request_number == 42
        assert target.since == "2025-01-01T00:00:00Z"
        assert (target.owner, target.repo) == ("acme", "widgets")

    def test_explicit_branch_skips_local_detection(
        self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock
    ) -> None:
        """An explicit branch never consults the local checkout's branch."""
        target = _resolve(tmp_path, config, gh, explicit_branch="fix/login")

        mock_git.current_branch.assert_not_called()
        mock_git.upstream_branch.assert_not_called()
        assert target.remote_branch == "fix/login"
        assert target.local_branch is None
        mock_git.remote_head_commit.assert_called_once_with(tmp_path, "fix/login")

    def test_tracking_branch_names_remote(
        self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock
    ) -> None:
        """A local branch tracking a differently named remote branch resolves to the remote name."""
        mock_git.current_branch.return_value = "fix"
        mock_git.upstream_branch.return_value = "feature/fix"

        target = _resolve(tmp_path, config, gh)

        assert target.remote_branch == "feature/fix"
        assert target.local_branch == "fix"
        mock_git.remote_head_commit.assert_called_once_with(tmp_path, "feature/fix")

    def test_detached_skips_upstream(self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock) -> None:
        mock_git.current_branch.return_value = "detached"
        mock_git.head_commit.return_value = "deadbeef"
        gh.branches_for_commit.return_value = ["feature/y"]

        target = _resolve(tmp_path, config, gh)

        assert target.remote_branch == "feature/y"
        assert target.local_branch is None
        mock_git.upstream_branch.assert_not_called()

    def test_detached_uses_branch_containing_head(
        self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock
    ) -> None:
        mock_git.current_branch.return_value = "detached"
        mock_git.head_commit.return_value = "deadbeef"
        gh.branches_for_commit.return_value = ["feature/z", "other"]

        target = _resolve(tmp_path, config, gh)

        assert target.remote_branch == "feature/z"
        gh.branches_for_commit.assert_called_once_with("deadbeef")

    def test_detached_without_any_branch(
        self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock
    ) -> None:
        mock_git.current_branch.return_value = "detached"
        mock_git.head_commit.return_value = "deadbeef"
        gh.branches_for_commit.return_value = []

        with pytest.raises(ResolutionError, match="--branch"):
            _resolve(tmp_path, config, gh)


class TestResolveHead:
    """Tests for the head commit fallback chain."""

    def test_branch_api_fallback(self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock) -> None:
        mock_git.remote_head_commit.return_value = None
        gh.get_branch_commit.return_value = "fedcba9876"

        assert _resolve(tmp_path, config, gh).head_commit == "fedcba9876"
        gh.latest_run_commit_for_branch.assert_not_called()

    def test_latest_run_fallback(self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock) -> None:
        mock_git.remote_head_commit.return_value = None
        gh.get_branch_commit.return_value = None
        gh.latest_run_commit_for_branch.return_value = "1111111aaaa"

        assert _resolve(tmp_path, config, gh).head_commit == "1111111aaaa"

    def test_pull_request_head_fallback(
        self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock
    ) -> None:
        """The open PR's head is used last, and that PR is kept."""
        mock_git.remote_head_commit.return_value = None
        gh.get_branch_commit.return_value = None
        gh.latest_run_commit_for_branch.return_value = None
        gh.find_open_pr_for_branch.return_value = 7
        gh.get_pull_request.return_value = PullRequestInfo(
            number=7, url="u", head_commit="2222222bbbb", head_ref="feature/x"
        )
        gh.find_pr_for_commit.return_value = None

        target = _resolve(tmp_path, config, gh)

        assert target.head_commit == "2222222bbbb"
        assert target.pull_request_number == 7
        gh.find_open_pr_for_branch.assert_called_once()
        gh.scan_open_prs_for_branch.assert_not_called()

    def test_unresolvable_head(self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock) -> None:
        mock_git.remote_head_commit.return_value = None
        gh.get_branch_commit.return_value = None
        gh.latest_run_commit_for_branch.return_value = None
        gh.find_open_pr_for_branch.return_value = None

        with pytest.raises(ResolutionError, match="git fetch origin feature/x"):
            _resolve(tmp_path, config, gh)

    def test_lookup_failure_is_resolution_error(
        self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock
    ) -> None:
        """A non-404 GitHub failure is not treated as "not found"."""
        mock_git.remote_head_commit.return_value = None
        gh.get_branch_commit.side_effect = GhCommandError("HTTP 500", status=500)

        with pytest.raises(ResolutionError, match="branch 'feature/x'"):
            _resolve(tmp_path, config, gh)


class TestResolvePullRequest:
    def test_open_pr_for_branch(self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock) -> None:
        gh.find_pr_for_commit.return_value = None
        gh.find_open_pr_for_branch.return_value = 8

        assert _resolve(tmp_path, config, gh).pull_request_number == 8
        gh.scan_open_prs_for_branch.assert_not_called()

    def test_scan_last(self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock) -> None:
        gh.find_pr_for_commit.return_value = None
        gh.find_open_pr_for_branch.return_value = None
        gh.scan_open_prs_for_branch.return_value = 9

        assert _resolve(tmp_path, config, gh).pull_request_number == 9
        gh.scan_open_prs_for_branch.assert_called_once_with("feature/x", limit=config.pr_scan_limit)

    def test_no_pr(self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock) -> None:
        gh.find_pr_for_commit.return_value = None
        gh.find_open_pr_for_branch.return_value = None
        gh.scan_open_prs_for_branch.return_value = None

        assert _resolve(tmp_path, config, gh).pull_request_number is None


class TestResolveSince:
    def test_fallback_to_a_day_ago(self, tmp_path: Path, config: Config, gh: MagicMock, mock_git: MagicMock) -> None:
        gh.get_commit_date.side_effect = GhCommandError("HTTP 502", status=502)

        assert _resolve(tmp_path, config, gh).since == "2025-01-01T12:00:00Z"

    def test_format_timestamp(self) -> None:
        assert format_timestamp(NOW) == "2025-01-02T12:00:00Z"


class TestResolveWorktree:
    def test_none_is_repo_root(self, tmp_path: Path, config: Config) -> None:
        assert resolve_worktree(tmp_path, config, None) == tmp_path

    def test_existing_worktree(self, tmp_path: Path, config: Config) -> None:
        path = config.worktrees_dir / tmp_path.name / "feat"
        path.mkdir(parents=True)

        assert resolve_worktree(tmp_path, config, "feat") == path

    def test_missing_worktree_falls_back(self, tmp_path: Path, config: Config) -> None:
        assert resolve_worktree(tmp_path, config, "nope") == tmp_path


class TestResolveOwnerRepo:
    def test_config_wins(self, tmp_path: Path, config: Config) -> None:
        with patch("citriage.resolve.git_utils") as git:
            assert resolve_owner_repo(tmp_path, tmp_path, config) == RepoRef("acme", "widgets")
            git.origin_owner_repo.assert_not_called()

    def test_origin_remote(self, tmp_path: Path) -> None:
        with patch("citriage.resolve.git_utils") as git:
            git.origin_owner_repo.return_value = RepoRef("octo", "cat")

            assert resolve_owner_repo(tmp_path, tmp_path, Config()) == RepoRef("octo", "cat")

    def test_unresolvable(self, tmp_path: Path) -> None:
        with patch("citriage.resolve.git_utils") as git:
            git.origin_owner_repo.side_effect = ValueError("no origin")

            with pytest.raises(ResolutionError, match="owner/repo"):
                resolve_owner_repo(tmp_path, tmp_path, Config())
