"""Configuration management for citriage."""

from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

CONFIG_FILENAME = ".citriage.yaml"

DEFAULT_DEBUG_PROMPT = "Please analyze the failures above and continue working to resolve them."


class Config(BaseModel):
    """citriage configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    owner: Optional[str] = None
    repo: Optional[str] = None
    engine: Literal["claude", "none"] = "claude"
    prompt_path: Optional[str] = None
    poll_sec_idle: float = 60
    poll_sec_post_push: float = 20
    idle_sec: float = 300
    comments_cap: int = 500
    max_recent_comments: int = 30
    conflict_hints: Literal["simple", "simple+recent-base"] = "simple"
    worktrees_dir: Path = Field(default_factory=lambda: Path.home() / ".worktrees")
    log_fetch_workers: int = 4
    pr_scan_limit: int = 100

    def get_worktree_path(self, repo_root: Path, name: str) -> Path:
        """Get the path of a named worktree.

        Args:
            repo_root: Root of the main repository checkout
            name: Worktree name

        Returns:
            Path like ~/.worktrees/<repo-basename>/<name>
        """
        return self.worktrees_dir / repo_root.name / name

    def get_prompt_path(self, repo_root: Path) -> Path:
        if self.prompt_path:
            return repo_root / self.prompt_path
        return repo_root / ".citriage" / "prompts" / "debug.md"

    def read_debug_prompt(self, repo_root: Path) -> str:
        """Read the debug prompt, falling back to a built-in sentence."""
        try:
            return self.get_prompt_path(repo_root).read_text()
        except OSError:
            return DEFAULT_DEBUG_PROMPT


def find_config_file(start_path: Path) -> Optional[Path]:
    """Find .citriage.yaml by walking up the directory tree.

    Args:
        start_path: Directory to start searching from

    Returns:
        Path to config file, or None if not found
    """
    current = start_path.resolve()

    while True:
        config_file = current / CONFIG_FILENAME
        if config_file.exists():
            return config_file

        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_config(path: Optional[Path] = None) -> Config:
    """Load configuration from .citriage.yaml.

    Args:
        path: Directory to start the search from (default: current directory)

    Returns:
        Loaded configuration (or default if file not found)
    """
    if path is None:
        path = Path.cwd()

    config_file = find_config_file(path)

    if config_file is None:
        return Config()

    with open(config_file, "r") as f:
        data = yaml.safe_load(f)

    if data is None:
        return Config()

    return Config(**data)
