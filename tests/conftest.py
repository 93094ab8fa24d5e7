"""Pytest configuration and fixtures for citriage tests.

Nothing here touches the network, git or tmux: the GitHub client is a
MagicMock and git lookups are patched per test.
"""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from citriage.config import Config
from citriage.github import GitHubClient
from citriage.models import RepoRef, Target


@pytest.fixture
def cli_runner():
    """Create a Click test runner."""
    return CliRunner()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config with explicit owner/repo and worktrees under tmp_path."""
    return Config(owner="acme", repo="widgets", worktrees_dir=tmp_path / "worktrees")


@pytest.fixture
def client() -> MagicMock:
    """A GitHubClient stand-in with no network behind it."""
    mock = MagicMock(spec=GitHubClient)
    mock.ref = RepoRef("acme", "widgets")
    return mock


@pytest.fixture
def target(tmp_path: Path) -> Target:
    return Target(
        repo_root=str(tmp_path),
        worktree_path=str(tmp_path),
        owner="acme",
        repo="widgets",
        remote_branch="feature/x",
        head_commit="abc1234def5678",
        since="2025-01-01T00:00:00Z",
        local_branch="feature/x",
        pull_request_number=42,
    )


