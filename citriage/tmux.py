"""Tmux delivery for citriage: locate the agent's pane, paste payloads, notify."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Literal, Optional

log = logging.getLogger("citriage.tmux")

PasteResult = Literal["ok", "retry"]

SENTINEL_CHECKS = 8
SENTINEL_CHECK_INTERVAL = 0.5


@dataclass
class PaneRow:
    """One row of ``tmux list-panes`` output."""

    pane_id: str
    active: bool
    last_active: int


# =============================================================================
# Naming
# =============================================================================

def session_name_for_repo(repo_root: Path) -> str:
    """Get the tmux session name for a repository.

    Args:
        repo_root: Root of the main repository checkout

    Returns:
        Session name like "r_myrepo_1a2b3c"
    """
    digest = hashlib.md5(str(repo_root).encode()).hexdigest()[:6]
    return f"r_{repo_root.name}_{digest}"


def window_name_for_worktree(name: str) -> str:
    return "wt_" + re.sub(r"[^A-Za-z0-9_.-]", "_", re.sub(r"[\s/]", "_", name))


def _tmux(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(["tmux", *args], capture_output=True, text=True)


def session_exists(session_name: str) -> bool:
    """Check if a tmux session exists."""
    try:
        subprocess.run(
            ["tmux", "has-session", "-t", session_name],
            check=True,
            capture_output=True,
        )
        return True
    except (subprocess.CalledProcessError, FileNotFoundError):
        return False


def resolve_session(repo_root: Path, window: str) -> str:
    """Find the session holding a worktree's window.

    Prefers the repository's canonical session; otherwise scans sessions of
    the same repository for one that has the window.
    """
    preferred = session_name_for_repo(repo_root)
    if session_exists(preferred):
        return preferred

    result = _tmux("list-sessions", "-F", "#{session_name}")
    prefix = f"r_{repo_root.name}_"
    for name in (line.strip() for line in result.stdout.splitlines()):
        if not name.startswith(prefix):
            continue
        windows = _tmux("list-windows", "-t", name, "-F", "#{window_name}")
        if any(w.strip() == window for w in windows.stdout.splitlines()):
            return name
    return preferred


def parse_pane_rows(output: str) -> List[PaneRow]:
    rows = []
    for line in output.strip().splitlines():
        parts = line.strip().split(" ")
        if len(parts) < 2 or not parts[1]:
            continue
        try:
            last = int(parts[2]) if len(parts) > 2 and parts[2] else 0
        except ValueError:
            last = 0
        rows.append(PaneRow(pane_id=parts[1], active=parts[0] == "1", last_active=last))
    return rows


def resolve_primary_pane(session_name: str, window: str) -> str:
    """Get the id of the active pane of a window (or its longest-idle pane).

    Raises:
        RuntimeError: If the window has no panes
    """
    result = _tmux(
        "list-panes", "-t", f"{session_name}:{window}",
        "-F", "#{?pane_active,1,0} #{pane_id} #{pane_last_active}",
    )
    rows = parse_pane_rows(result.stdout)
    if not rows:
        raise RuntimeError(
            f"tmux target not found for {session_name}:{window}. Ensure the worktree window exists."
        )
    for row in rows:
        if row.active:
            return row.pane_id
    return min(rows, key=lambda r: r.last_active).pane_id


def capture_pane(target: str, lines: int = 200) -> str:
    """Capture the last lines of a pane's history.

    Returns:
        The captured contents, or "" if the pane cannot be read
    """
    try:
        result = subprocess.run(
            ["tmux", "capture-pane", "-p", "-S", f"-{lines}", "-t", target],
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout
    except (subprocess.CalledProcessError, FileNotFoundError):
        return ""


def pane_signature(target: str) -> str:
    """Fingerprint a pane's recent history; changes whenever the pane does."""
    content = capture_pane(target, lines=200)
    digest = hashlib.sha256(content.encode()).hexdigest()
    return f"{len(content.splitlines())}:{digest}"


# =============================================================================
# Delivery
# =============================================================================

def paste_and_enter(pane_id: str, payload: str, sentinel: str) -> PasteResult:
    """Paste a payload into a pane and submit it.

    The paste goes through a named tmux buffer loaded from a temp file, so
    payload size and special characters are not an issue. Delivery is
    confirmed by watching for the sentinel in the pane.

    Args:
        pane_id: Target pane (e.g. "%3")
        payload: Text to paste
        sentinel: Marker expected to appear in the pane once pasted

    Returns:
        "ok" if the sentinel was seen, "retry" otherwise
    """
    buffer = f"citriage:{int(time.time() * 1000)}"
    fd, tmp_path = tempfile.mkstemp(prefix="citriage-", suffix=".txt")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        _tmux("load-buffer", "-b", buffer, tmp_path)
        _tmux("paste-buffer", "-d", "-b", buffer, "-t", pane_id)
        _tmux("send-keys", "-t", pane_id, "Enter")
    finally:
        Path(tmp_path).unlink(missing_ok=True)

    for _ in range(SENTINEL_CHECKS):
        if sentinel in capture_pane(pane_id, lines=120):
            return "ok"
        time.sleep(SENTINEL_CHECK_INTERVAL)
    log.warning("Sentinel %s not seen in pane %s after paste", sentinel, pane_id)
    return "retry"


def notify(session_name: str, title: str, body: str) -> None:
    """Show a notification in tmux and on the desktop, where available."""
    _tmux("display-message", "-t", session_name, f"{title}: {body}")

    if shutil.which("terminal-notifier"):
        subprocess.run(
            ["terminal-notifier", "-title", title, "-message", body],
            capture_output=True,
        )
    elif shutil.which("osascript"):
        script = f"display notification {_applescript_str(body)} with title {_applescript_str(title)}"
        subprocess.run(["osascript", "-e", script], capture_output=True)
    elif shutil.which("notify-send"):
        subprocess.run(["notify-send", title, body], capture_output=True)

    # OSC 9 reaches terminals across SSH.
    sys.stdout.write(f"\x1b]9;{title}: {body}\x07")
    sys.stdout.flush()


def _applescript_str(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


@dataclass
class PaneTarget:
    """Where a watcher delivers: a session (for notices) and a pane (for pastes)."""

    session: str
    window: str
    pane_id: str

    @classmethod
    def resolve(cls, repo_root: Path, worktree: str) -> "PaneTarget":
        window = window_name_for_worktree(worktree)
        session = resolve_session(repo_root, window)
        return cls(session=session, window=window, pane_id=resolve_primary_pane(session, window))

    def signature(self) -> str:
        return pane_signature(f"{self.session}:{self.window}")

    def paste(self, text: str, sentinel: str) -> PasteResult:
        return paste_and_enter(self.pane_id, text, sentinel)

    def notify(self, title: str, body: str) -> None:
        notify(self.session, title, body)


def find_pane(repo_root: Path, worktree: str) -> Optional[PaneTarget]:
    """Resolve a worktree's pane, or None (logged) when tmux has no such window."""
    try:
        return PaneTarget.resolve(repo_root, worktree)
    except (RuntimeError, FileNotFoundError) as e:
        log.error("%s", e)
        return None
