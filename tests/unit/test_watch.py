"""Tests for the watch loop."""

import random
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

import pytest

from citriage.config import Config
from citriage.errors import GhCommandError
from citriage.models import ChangedFile, PullRequestInfo
from citriage.state import AwtState, PushRecord, load_state, save_state
from citriage.tmux import PaneTarget
from citriage.watch import ERROR_BACKOFF_SEC, Watcher
from tests.helpers import make_job, make_run


def _pr(mergeable_state: str = "clean") -> PullRequestInfo:
    return PullRequestInfo(number=42, url="u", head_commit="c1", head_ref="feature/x", mergeable_state=mergeable_state)


@pytest.fixture
def mock_git():
    with patch("citriage.watch.git_utils") as git:
        git.DETACHED = "detached"
        git.current_branch.return_value = "feature/x"
        git.upstream_branch.return_value = None
        git.remote_head_commit.return_value = "c1"
        yield git


@pytest.fixture
def pane() -> Mock:
    pane = Mock(spec=PaneTarget)
    pane.signature.return_value = "1:aa"
    pane.paste.return_value = "ok"
    return pane


@pytest.fixture
def failing_ci(client: MagicMock) -> MagicMock:
    client.find_pr_for_commit.return_value = 42
    client.get_pull_request.return_value = _pr()
    client.list_runs_for_commit.return_value = [make_run(1, head_commit="c1")]
    client.list_jobs_for_run.return_value = [make_job(10)]
    client.fetch_job_log_text.return_value = "setup\nstep ERROR db refused\n"
    client.list_issue_comments.return_value = []
    client.list_review_comments.return_value = []
    client.list_reviews.return_value = []
    client.get_commit_date.return_value = "2025-01-01T00:00:00Z"
    return client


def make_watcher(tmp_path: Path, config: Config, client: MagicMock, pane, **kwargs) -> Watcher:
    summarizer = Mock()
    summarizer.name = "claude"
    summarizer.summarize.return_value = "db is down"
    return Watcher(
        tmp_path,
        "feat",
        config,
        client_factory=lambda ref: client,
        summarizer=summarizer,
        pane=pane,
        sleep=kwargs.pop("sleep", Mock()),
        clock=lambda: 0.0,
        rng=random.Random(1),
        **kwargs,
    )


class TestWatcherSetup:
    def test_missing_pane_stops(self, tmp_path: Path, config: Config, client: MagicMock, mock_git: MagicMock) -> None:
        watcher = make_watcher(tmp_path, config, client, None)

        with patch("citriage.watch.find_pane", return_value=None):
            assert watcher.run(max_iterations=1) == 1

        assert watcher.machine.is_terminal()
        assert "No tmux pane" in watcher.machine.error

    def test_unresolvable_repo_stops(self, tmp_path: Path, client: MagicMock, pane: Mock, mock_git: MagicMock) -> None:
        watcher = make_watcher(tmp_path, Config(worktrees_dir=tmp_path), client, pane)

        with patch("citriage.resolve.git_utils.origin_owner_repo", side_effect=ValueError("no origin")):
            assert watcher.run(max_iterations=1) == 1
        assert watcher.machine.is_terminal()

    def test_branch_follows_upstream(
        self, tmp_path: Path, config: Config, client: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        mock_git.current_branch.return_value = "fix"
        mock_git.upstream_branch.return_value = "feature/fix"
        watcher = make_watcher(tmp_path, config, client, pane)

        assert watcher._branch() == "feature/fix"


class TestWatcherLoop:
    """Tests for the poll loop end to end with mocked collaborators."""

    def test_failure_delivered_once(
        self, tmp_path: Path, config: Config, failing_ci: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        sleep = Mock()
        watcher = make_watcher(tmp_path, config, failing_ci, pane, sleep=sleep)

        assert watcher.run(max_iterations=3) == 0

        assert pane.paste.call_count == 1
        text, sentinel = pane.paste.call_args[0]
        assert sentinel == "CITRIAGE-PR-42-c1"
        assert text.endswith("<sentinel:CITRIAGE-PR-42-c1>")
        assert "db is down" in text
        reports = list((tmp_path / "docs" / "tmp").glob("*.md"))
        assert len(reports) == 1
        assert "step ERROR db refused" in reports[0].read_text()
        assert load_state(tmp_path).last_ci_seen_for_commit == "c1"
        assert sleep.call_count == 3

    def test_success_notifies_and_idles(
        self, tmp_path: Path, config: Config, failing_ci: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        failing_ci.list_runs_for_commit.return_value = [make_run(1, conclusion="success")]
        watcher = make_watcher(tmp_path, config, failing_ci, pane)

        watcher.run(max_iterations=1)

        pane.paste.assert_not_called()
        pane.notify.assert_called_once()
        assert "CI passed for PR #42" in pane.notify.call_args[0][1]
        assert watcher.machine.current_state == "idle"

    def test_rebase_posted(
        self, tmp_path: Path, config: Config, failing_ci: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        failing_ci.get_pull_request.return_value = _pr("dirty")
        failing_ci.list_pr_files.return_value = [ChangedFile("src/core.py", "modified", changes=250)]
        watcher = make_watcher(tmp_path, config, failing_ci, pane)

        watcher.run(max_iterations=1)

        text, sentinel = pane.paste.call_args[0]
        assert "needs a rebase (dirty)" in text
        assert "- src/core.py" in text
        failing_ci.list_jobs_for_run.assert_not_called()

    def test_idle_skips_github(
        self, tmp_path: Path, config: Config, failing_ci: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        """With no new push and a settled commit, only local state is read."""
        save_state(tmp_path, AwtState(last_push=PushRecord("c1", "t"), last_ci_seen_for_commit="c1"))
        watcher = make_watcher(tmp_path, config, failing_ci, pane)

        watcher.run(max_iterations=1)

        failing_ci.find_pr_for_commit.assert_not_called()
        failing_ci.list_runs_for_commit.assert_not_called()

    def test_iteration_error_backs_off(
        self, tmp_path: Path, config: Config, client: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        sleep = Mock()
        watcher = make_watcher(tmp_path, config, client, pane, sleep=sleep)

        with patch.object(watcher, "observe", side_effect=RuntimeError("boom")):
            assert watcher.run(max_iterations=2) == 0

        assert [c.args[0] for c in sleep.call_args_list] == [ERROR_BACKOFF_SEC, ERROR_BACKOFF_SEC]

    def test_effect_failure_does_not_stop_others(
        self, tmp_path: Path, config: Config, failing_ci: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        pane.paste.side_effect = RuntimeError("tmux gone")
        watcher = make_watcher(tmp_path, config, failing_ci, pane)
        assert watcher.setup()

        watcher.run_once()

        assert load_state(tmp_path).last_ci_seen_for_commit == "c1"

    def test_unlistable_runs_leave_commit_unreported(
        self, tmp_path: Path, config: Config, failing_ci: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        runs = [make_run(1, head_commit="c1")]
        failing_ci.list_runs_for_commit.side_effect = [runs, GhCommandError("HTTP 502", status=502)]
        watcher = make_watcher(tmp_path, config, failing_ci, pane)

        assert watcher.run(max_iterations=1) == 0

        pane.paste.assert_not_called()
        assert load_state(tmp_path).last_ci_seen_for_commit is None
        assert watcher.machine.current_state == "post_push"

    def test_unlistable_runs_retried_next_poll(
        self, tmp_path: Path, config: Config, failing_ci: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        runs = [make_run(1, head_commit="c1")]
        failing_ci.list_runs_for_commit.side_effect = [runs, GhCommandError("HTTP 502", status=502), runs, runs]
        watcher = make_watcher(tmp_path, config, failing_ci, pane)

        assert watcher.run(max_iterations=2) == 0

        assert pane.paste.call_count == 1
        assert pane.paste.call_args[0][1] == "CITRIAGE-PR-42-c1"
        assert load_state(tmp_path).last_ci_seen_for_commit == "c1"


class TestEventMode:
    """Tests for one-shot event mode."""

    def test_delivers_on_failure(
        self, tmp_path: Path, config: Config, failing_ci: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        watcher = make_watcher(tmp_path, config, failing_ci, pane)

        assert watcher.run_event_mode("c1") == 0

        assert pane.paste.call_args[0][1] == "CITRIAGE-PR-42-c1"

    def test_nothing_on_success(
        self, tmp_path: Path, config: Config, failing_ci: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        failing_ci.list_runs_for_commit.return_value = [make_run(1, conclusion="success")]
        watcher = make_watcher(tmp_path, config, failing_ci, pane)

        assert watcher.run_event_mode("c1") == 0
        pane.paste.assert_not_called()

    def test_nothing_without_pr(
        self, tmp_path: Path, config: Config, failing_ci: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        failing_ci.find_pr_for_commit.return_value = None
        failing_ci.find_open_pr_for_branch.return_value = None
        watcher = make_watcher(tmp_path, config, failing_ci, pane)

        assert watcher.run_event_mode("c1") == 0
        pane.paste.assert_not_called()

    def test_unlistable_runs_exit_1(
        self, tmp_path: Path, config: Config, failing_ci: MagicMock, pane: Mock, mock_git: MagicMock
    ) -> None:
        runs = [make_run(1, head_commit="c1")]
        failing_ci.list_runs_for_commit.side_effect = [runs, GhCommandError("HTTP 502", status=502)]
        watcher = make_watcher(tmp_path, config, failing_ci, pane)

        assert watcher.run_event_mode("c1") == 1
        pane.paste.assert_not_called()
