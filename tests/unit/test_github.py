"""Tests for GitHub integration."""

import gzip
import json
import subprocess
from unittest.mock import Mock, patch

import pytest

from citriage.errors import GhCommandError, best_effort
from citriage.github import GitHubClient, decode_log, ensure_gh_cli, gh_command
from citriage.models import RepoRef


def _completed(payload) -> Mock:
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return Mock(returncode=0, stdout=body)


def _http_error(status: int) -> subprocess.CalledProcessError:
    return subprocess.CalledProcessError(
        1, ["gh"], output=b"", stderr=f"gh: Not Found (HTTP {status})".encode()
    )


@pytest.fixture
def gh() -> GitHubClient:
    return GitHubClient(RepoRef("acme", "widgets"))


class TestEnsureGhCli:
    """Tests for ensure_gh_cli function."""

    @patch("shutil.which")
    @patch("subprocess.run")
    def test_ensure_gh_cli_success(self, mock_run: Mock, mock_which: Mock) -> None:
        """Test ensure_gh_cli when gh is installed and authenticated."""
        mock_which.return_value = "/usr/bin/gh"
        mock_run.return_value = Mock(returncode=0)

        ensure_gh_cli()

        mock_which.assert_called_once_with("gh")
        mock_run.assert_called_once()

    @patch("shutil.which")
    def test_ensure_gh_cli_not_installed(self, mock_which: Mock) -> None:
        """Test ensure_gh_cli when gh is not installed."""
        mock_which.return_value = None

        with pytest.raises(RuntimeError, match="GitHub CLI.*not found"):
            ensure_gh_cli()

    @patch("shutil.which")
    @patch("subprocess.run")
    def test_ensure_gh_cli_not_authenticated(self, mock_run: Mock, mock_which: Mock) -> None:
        """Test ensure_gh_cli when gh is not authenticated."""
        mock_which.return_value = "/usr/bin/gh"
        mock_run.return_value = Mock(returncode=1)

        with pytest.raises(RuntimeError, match="Not authenticated"):
            ensure_gh_cli()


class TestGhCommand:
    """Tests for gh_command helper."""

    @patch("subprocess.run")
    def test_gh_command_success(self, mock_run: Mock) -> None:
        mock_run.return_value = Mock(returncode=0, stdout=b"test output\n")

        assert gh_command(["api", "user"]) == "test output"
        args = mock_run.call_args[0][0]
        assert args[:2] == ["gh", "api"]

    @patch("subprocess.run")
    def test_gh_command_http_status(self, mock_run: Mock) -> None:
        """The HTTP status from gh's stderr is kept on the error."""
        mock_run.side_effect = _http_error(404)

        with pytest.raises(GhCommandError) as exc_info:
            gh_command(["api", "repos/acme/widgets/branches/nope"])

        assert exc_info.value.status == 404
        assert exc_info.value.not_found

    @patch("subprocess.run")
    def test_gh_command_timeout(self, mock_run: Mock) -> None:
        mock_run.side_effect = subprocess.TimeoutExpired(["gh"], 60)

        with pytest.raises(GhCommandError, match="timed out"):
            gh_command(["api", "user"])


class TestDecodeLog:
    def test_plain_text(self) -> None:
        assert decode_log(b"line ERROR\n") == "line ERROR\n"

    def test_gzip(self) -> None:
        assert decode_log(gzip.compress(b"zipped FAILED\n")) == "zipped FAILED\n"

    def test_invalid_utf8_replaced(self) -> None:
        assert decode_log(b"bad \xff byte") == "bad � byte"


class TestGitHubClient:
    """Tests for GitHubClient queries."""

    @patch("subprocess.run")
    def test_api_builds_params(self, mock_run: Mock, gh: GitHubClient) -> None:
        """None params are dropped; others become -f key=value."""
        mock_run.return_value = _completed({"workflow_runs": []})

        gh.api("actions/runs", {"branch": "main", "head_sha": None, "per_page": 1})

        args = mock_run.call_args[0][0]
        assert args[:5] == ["gh", "api", "-X", "GET", "repos/acme/widgets/actions/runs"]
        assert "branch=main" in args
        assert "per_page=1" in args
        assert not any(a.startswith("head_sha=") for a in args)

    @patch("subprocess.run")
    def test_api_invalid_json(self, mock_run: Mock, gh: GitHubClient) -> None:
        mock_run.return_value = _completed(b"<html>")

        with pytest.raises(GhCommandError, match="Invalid JSON"):
            gh.api("pulls")

    @patch("subprocess.run")
    def test_paginate_stops_on_short_page(self, mock_run: Mock, gh: GitHubClient) -> None:
        mock_run.side_effect = [
            _completed([{"id": i} for i in range(100)]),
            _completed([{"id": 100}]),
        ]

        items = gh.paginate("issues/1/comments")

        assert len(items) == 101
        assert mock_run.call_count == 2

    @patch("subprocess.run")
    def test_find_pr_for_commit_prefers_open(self, mock_run: Mock, gh: GitHubClient) -> None:
        mock_run.return_value = _completed(
            [{"number": 3, "state": "closed"}, {"number": 7, "state": "open"}]
        )

        assert gh.find_pr_for_commit("abc") == 7

    @patch("subprocess.run")
    def test_find_pr_for_commit_not_found(self, mock_run: Mock, gh: GitHubClient) -> None:
        mock_run.side_effect = _http_error(404)

        assert gh.find_pr_for_commit("abc") is None

    @patch("subprocess.run")
    def test_get_branch_commit_missing(self, mock_run: Mock, gh: GitHubClient) -> None:
        mock_run.side_effect = _http_error(404)

        assert gh.get_branch_commit("gone") is None

    @patch("subprocess.run")
    def test_get_branch_commit_other_error_propagates(self, mock_run: Mock, gh: GitHubClient) -> None:
        mock_run.side_effect = _http_error(500)

        with pytest.raises(GhCommandError):
            gh.get_branch_commit("main")

    @patch("subprocess.run")
    def test_scan_open_prs_matches_head_ref(self, mock_run: Mock, gh: GitHubClient) -> None:
        mock_run.return_value = _completed(
            [{"number": 1, "head": {"ref": "other"}}, {"number": 2, "head": {"ref": "feature/x"}}]
        )

        assert gh.scan_open_prs_for_branch("feature/x") == 2

    @patch("subprocess.run")
    def test_list_runs_since_uses_created_filter(self, mock_run: Mock, gh: GitHubClient) -> None:
        mock_run.return_value = _completed(
            {"workflow_runs": [{"id": 5, "html_url": "u", "status": "completed", "conclusion": "failure",
                                "head_sha": "abc"}]}
        )

        runs = gh.list_runs_since("feature/x", "2025-01-01T00:00:00Z")

        assert runs[0].id == 5
        assert runs[0].conclusion == "failure"
        assert "created=>=2025-01-01T00:00:00Z" in mock_run.call_args[0][0]

    @patch("subprocess.run")
    def test_fetch_job_log_text_gunzips(self, mock_run: Mock, gh: GitHubClient) -> None:
        mock_run.return_value = Mock(returncode=0, stdout=gzip.compress(b"x ERROR y"))

        assert gh.fetch_job_log_text(10) == "x ERROR y"
        assert mock_run.call_args[0][0] == ["gh", "api", "repos/acme/widgets/actions/jobs/10/logs"]


class TestBestEffort:
    def test_returns_value(self) -> None:
        assert best_effort("thing", lambda: 5, 0) == 5

    def test_returns_default_on_gh_error(self) -> None:
        def boom():
            raise GhCommandError("HTTP 500", status=500)

        assert best_effort("thing", boom, []) == []

    def test_other_errors_propagate(self) -> None:
        def boom():
            raise KeyError("x")

        with pytest.raises(KeyError):
            best_effort("thing", boom, None)
