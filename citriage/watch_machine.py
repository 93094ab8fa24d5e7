"""Watch state machine.

The machine decides; it never performs I/O. Each poll iteration hands it an
Observation and gets back the Effects to execute, so the whole watch policy
is testable without a network, tmux or timers.

States:
    idle       slow polling; waiting for a push
    post_push  fast polling; a push was seen and CI has not passed yet
    terminal   setup failed; the watcher stops
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import List, Optional, Union

from transitions import Machine

from citriage.models import PullRequestInfo
from citriage.state import AwtState, PushRecord

logger = logging.getLogger("citriage.watch_machine")

REBASE_STATES = frozenset({"dirty", "behind"})

JITTER_LOW = 0.9
JITTER_HIGH = 1.1


@dataclass
class Observation:
    """What one poll iteration saw.

    Attributes:
        now: Monotonic seconds, for idle timing
        now_iso: Wall-clock timestamp recorded on a detected push
        branch: Current branch of the worktree (or None when detached)
        pane_signature: Fingerprint of the agent's pane, None if unreadable
        remote_head: Commit origin has for the branch, None if unknown
        pull_request: Open PR for the tracked commit, if any
        ci_conclusion: Settled CI conclusion for the tracked commit, None while pending
    """

    now: float
    now_iso: str
    branch: Optional[str] = None
    pane_signature: Optional[str] = None
    remote_head: Optional[str] = None
    pull_request: Optional[PullRequestInfo] = None
    ci_conclusion: Optional[str] = None


@dataclass(frozen=True)
class SaveState:
    pass


@dataclass(frozen=True)
class NotifyNoPullRequest:
    commit: str


@dataclass(frozen=True)
class PostRebase:
    pull_request: PullRequestInfo
    commit: str


@dataclass(frozen=True)
class PostFailureReport:
    commit: str
    pushed_at: str
    pull_request_number: Optional[int] = None
    branch: Optional[str] = None


@dataclass(frozen=True)
class NotifySuccess:
    commit: str
    pull_request_number: Optional[int] = None


@dataclass(frozen=True)
class NotifyDormant:
    pass


Effect = Union[SaveState, NotifyNoPullRequest, PostRebase, PostFailureReport, NotifySuccess, NotifyDormant]


class WatchMachine:
    """Explicit state machine for one watched worktree.

    Example usage:
        >>> machine = WatchMachine(idle_sec=300)
        >>> effects = machine.step(state, observation)
        >>> machine.state
        'post_push'
    """

    STATES = ["idle", "post_push", "terminal"]

    TRANSITIONS = [
        {"trigger": "push_detected", "source": ["idle", "post_push"], "dest": "post_push"},
        {"trigger": "ci_succeeded", "source": "post_push", "dest": "idle"},
        {"trigger": "fail", "source": ["idle", "post_push"], "dest": "terminal"},
    ]

    def __init__(
        self,
        idle_sec: float = 300,
        poll_sec_idle: float = 60,
        poll_sec_post_push: float = 20,
        initial_state: str = "idle",
    ) -> None:
        self.idle_sec = idle_sec
        self.poll_sec_idle = poll_sec_idle
        self.poll_sec_post_push = poll_sec_post_push

        # In-memory bookkeeping; only AwtState survives restarts.
        self.last_signature: Optional[str] = None
        self.idle_since: Optional[float] = None
        self.dormant_notified = False
        self.no_pr_notified_for: Optional[str] = None
        self.rebase_posted_for: Optional[str] = None
        self.error: Optional[str] = None

        self.machine = Machine(
            model=self,
            states=self.STATES,
            transitions=self.TRANSITIONS,
            initial=initial_state,
            auto_transitions=False,  # Only allow explicitly defined transitions
            send_event=False,
        )

    @classmethod
    def for_state(cls, state: AwtState, **kwargs) -> "WatchMachine":
        """Start in post_push when the last known push has no CI verdict yet."""
        pending = state.last_push is not None and state.last_ci_seen_for_commit != state.last_push.commit
        return cls(initial_state="post_push" if pending else "idle", **kwargs)

    @property
    def current_state(self) -> str:
        return str(getattr(self, "state", "idle"))

    def is_terminal(self) -> bool:
        return self.current_state == "terminal"

    def stop(self, reason: str) -> None:
        """Enter the terminal state, recording why."""
        self.error = reason
        logger.error("Watcher stopped: %s", reason)
        self.fail()

    def poll_interval(self, rng: Optional[random.Random] = None) -> float:
        """Seconds until the next poll: the state's cadence with ±10% jitter."""
        base = self.poll_sec_post_push if self.current_state == "post_push" else self.poll_sec_idle
        return base * (rng or random).uniform(JITTER_LOW, JITTER_HIGH)

    def step(self, state: AwtState, obs: Observation) -> List[Effect]:
        """Decide the effects of one observation.

        Mutates state in place; a SaveState effect is emitted whenever it
        changed. Reports are decided at most once per commit because the
        commit is recorded in state at decision time.

        Args:
            state: Persisted watcher state
            obs: Observations from this iteration

        Returns:
            Effects to execute, in order, with at most one trailing SaveState
        """
        if self.is_terminal():
            return []
        effects = self._decide(state, obs)
        actions: List[Effect] = [e for e in effects if not isinstance(e, SaveState)]
        if len(actions) != len(effects):
            actions.append(SaveState())
        return actions

    def _decide(self, state: AwtState, obs: Observation) -> List[Effect]:
        effects: List[Effect] = []
        self._track_pane(state, obs, effects)

        if obs.remote_head and (state.last_push is None or obs.remote_head != state.last_push.commit):
            push = PushRecord(commit=obs.remote_head, pushed_at=obs.now_iso)
            state.last_push = push
            if obs.branch:
                state.last_push_by_branch[obs.branch] = push
            self.no_pr_notified_for = None
            self.rebase_posted_for = None
            logger.info("Push detected: %s", obs.remote_head[:7])
            self.push_detected()
            effects.append(SaveState())

        if self.current_state != "post_push" or state.last_push is None:
            return effects

        commit = state.last_push.commit
        pr = obs.pull_request

        if pr is None:
            if self.no_pr_notified_for != commit:
                self.no_pr_notified_for = commit
                effects.append(NotifyNoPullRequest(commit=commit))
        elif (pr.mergeable_state or "") in REBASE_STATES:
            if self.rebase_posted_for != commit:
                self.rebase_posted_for = commit
                effects.append(PostRebase(pull_request=pr, commit=commit))
            return effects

        if state.last_ci_seen_for_commit == commit:
            return effects

        pr_number = pr.number if pr else None
        if obs.ci_conclusion == "failure":
            state.last_ci_seen_for_commit = commit
            state.last_ci_conclusion = "failure"
            effects.append(
                PostFailureReport(
                    commit=commit,
                    pushed_at=state.last_push.pushed_at,
                    pull_request_number=pr_number,
                    branch=obs.branch,
                )
            )
            effects.append(SaveState())
        elif obs.ci_conclusion == "success":
            state.last_ci_seen_for_commit = commit
            state.last_ci_conclusion = "success"
            effects.append(NotifySuccess(commit=commit, pull_request_number=pr_number))
            effects.append(SaveState())
            self.ci_succeeded()

        return effects

    def _track_pane(self, state: AwtState, obs: Observation, effects: List[Effect]) -> None:
        if obs.pane_signature is None:
            return
        if obs.pane_signature != self.last_signature:
            self.last_signature = obs.pane_signature
            self.idle_since = obs.now
            self.dormant_notified = False
            return
        if (
            state.last_push is None
            and self.idle_since is not None
            and not self.dormant_notified
            and obs.now - self.idle_since >= self.idle_sec
        ):
            self.dormant_notified = True
            effects.append(NotifyDormant())
