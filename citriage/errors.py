"""Error taxonomy for citriage.

ResolutionError aborts a whole operation, and so does SourceUnavailable when
the failed call is the only source of required data (the CI runs listing).
Otherwise SourceUnavailable and PersistedStateCorrupt are recovered close to
where they happen. PendingCI is a distinguished non-error outcome.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Optional, TypeVar

if TYPE_CHECKING:
    from citriage.models import RunBrief

log = logging.getLogger("citriage.errors")

T = TypeVar("T")


class CitriageError(Exception):
    """Base class for citriage errors."""


class GhCommandError(RuntimeError):
    """Raised when a gh (GitHub CLI) invocation fails."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status == 404


class ResolutionError(CitriageError):
    """Cannot determine owner/repo, branch or commit for the target."""


class SourceUnavailable(CitriageError):
    """A single upstream call failed."""


class PendingCI(CitriageError):
    """CI runs for the target window are still in progress."""

    def __init__(self, branch: str, since: str, pending_runs: "list[RunBrief]") -> None:
        self.branch = branch
        self.since = since
        self.pending_runs = pending_runs
        ids = ", ".join(f"#{r.id}" for r in pending_runs) or "(none)"
        super().__init__(
            f"CI is still in progress for branch '{branch}' (since {since}).\n"
            f"Pending runs: {ids}\n"
            "Re-run with --force to compile partial information now."
        )


class PersistedStateCorrupt(CitriageError):
    """The persisted state file could not be parsed."""


def best_effort(label: str, fn: Callable[[], T], default: T) -> T:
    """Call fn, returning default (and logging once) if the upstream call fails.

    Args:
        label: Short description of the call, used in the warning
        fn: Zero-argument callable performing the fetch
        default: Value returned when the call fails

    Returns:
        fn() or default
    """
    try:
        return fn()
    except (GhCommandError, SourceUnavailable, ValueError) as e:
        log.warning("%s unavailable: %s", label, e)
        return default
