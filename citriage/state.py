"""Persisted watcher state.

The state file is ``<repo_root>/.citriage/state.json``. Reads are permissive
(a missing or malformed file is an empty state). Writes go to a temp file in
the same directory and are renamed over the old file, under a file lock, so
readers never observe a partially written state.
"""

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Generator, Optional

from filelock import FileLock

from citriage.errors import PersistedStateCorrupt

log = logging.getLogger("citriage.state")

STATE_DIR = ".citriage"
STATE_FILENAME = "state.json"

# Lock timeout in seconds - prevents deadlocks if a process crashes while holding lock
_LOCK_TIMEOUT = 5.0


@dataclass
class PushRecord:
    """A detected push: the remote head commit and when it was seen."""

    commit: str
    pushed_at: str

    def to_dict(self) -> Dict[str, str]:
        return {"commit": self.commit, "pushed_at": self.pushed_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PushRecord":
        return cls(commit=str(data["commit"]), pushed_at=str(data.get("pushed_at") or ""))


@dataclass
class AwtState:
    """Cross-invocation watcher state."""

    last_push: Optional[PushRecord] = None
    last_push_by_branch: Dict[str, PushRecord] = field(default_factory=dict)
    last_ci_seen_for_commit: Optional[str] = None
    last_ci_conclusion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: Dict[str, Any] = {}
        if self.last_push is not None:
            data["last_push"] = self.last_push.to_dict()
        if self.last_push_by_branch:
            data["last_push_by_branch"] = {
                branch: push.to_dict() for branch, push in self.last_push_by_branch.items()
            }
        if self.last_ci_seen_for_commit is not None:
            data["last_ci_seen_for_commit"] = self.last_ci_seen_for_commit
        if self.last_ci_conclusion is not None:
            data["last_ci_conclusion"] = self.last_ci_conclusion
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "AwtState":
        """Create from a decoded JSON object.

        Raises:
            PersistedStateCorrupt: If data does not have the expected shape
        """
        if not isinstance(data, dict):
            raise PersistedStateCorrupt(f"expected a JSON object, got {type(data).__name__}")
        try:
            last_push = data.get("last_push")
            by_branch = data.get("last_push_by_branch") or {}
            return cls(
                last_push=PushRecord.from_dict(last_push) if last_push else None,
                last_push_by_branch={b: PushRecord.from_dict(p) for b, p in by_branch.items()},
                last_ci_seen_for_commit=data.get("last_ci_seen_for_commit"),
                last_ci_conclusion=data.get("last_ci_conclusion"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise PersistedStateCorrupt(f"malformed state: {e}") from e


def get_state_path(repo_root: Path) -> Path:
    return repo_root / STATE_DIR / STATE_FILENAME


def get_state_lock_path(repo_root: Path) -> Path:
    """Get path to state lock file, a sibling of the state file."""
    return get_state_path(repo_root).parent / f"{STATE_FILENAME}.lock"


@contextmanager
def state_lock(repo_root: Path) -> Generator[None, None, None]:
    """Context manager for exclusive access to the state file.

    Raises:
        Timeout: If lock cannot be acquired within _LOCK_TIMEOUT seconds
    """
    lock_path = get_state_lock_path(repo_root)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with FileLock(lock_path, timeout=_LOCK_TIMEOUT):
        yield


def load_state(repo_root: Path) -> AwtState:
    """Load state from file.

    A missing file yields an empty state; an unreadable or malformed one is
    logged and also yields an empty state.
    """
    state_path = get_state_path(repo_root)
    if not state_path.exists():
        return AwtState()

    try:
        with open(state_path, encoding="utf-8") as f:
            return AwtState.from_dict(json.load(f))
    except (OSError, ValueError, PersistedStateCorrupt) as e:
        log.warning("Ignoring unreadable state file %s: %s", state_path, e)
        return AwtState()


def save_state(repo_root: Path, state: AwtState) -> None:
    """Write state atomically (temp file in the same directory, then rename)."""
    state_path = get_state_path(repo_root)
    state_path.parent.mkdir(parents=True, exist_ok=True)

    with state_lock(repo_root):
        fd, tmp_name = tempfile.mkstemp(dir=state_path.parent, prefix=f".{STATE_FILENAME}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, state_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
