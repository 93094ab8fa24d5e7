"""The watch loop: observe, decide (WatchMachine), execute effects, sleep."""

from __future__ import annotations

import logging
import random
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from citriage import git_utils
from citriage.ci import gather_run_extracts, latest_ci_for_commit
from citriage.config import Config
from citriage.errors import ResolutionError, SourceUnavailable, best_effort
from citriage.gather import collect_warnings, recent_comments, report_path, write_file_atomic
from citriage.github import GitHubClient
from citriage.models import PullRequestInfo, RepoRef, Target
from citriage.report import (
    FailureReportInput,
    build_agent_payload,
    build_failure_report,
    build_rebase_payload,
    likely_conflict_files,
)
from citriage.resolve import format_timestamp, resolve_owner_repo, resolve_worktree
from citriage.state import AwtState, load_state, save_state
from citriage.summarize import SummaryContext, Summarizer, get_summarizer, summarize_failures
from citriage.tmux import PaneTarget, find_pane
from citriage.watch_machine import (
    Effect,
    NotifyDormant,
    NotifyNoPullRequest,
    NotifySuccess,
    Observation,
    PostFailureReport,
    PostRebase,
    SaveState,
    WatchMachine,
)

log = logging.getLogger("citriage.watch")

ERROR_BACKOFF_SEC = 2.0


class Watcher:
    """Supervises one worktree: polls git/GitHub/tmux and acts on transitions."""

    def __init__(
        self,
        repo_root: Path,
        worktree: str,
        config: Config,
        client_factory: Callable[[RepoRef], GitHubClient] = GitHubClient,
        summarizer: Optional[Summarizer] = None,
        pane: Optional[PaneTarget] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.repo_root = repo_root
        self.worktree = worktree
        self.config = config
        self.client_factory = client_factory
        self.summarizer = summarizer if summarizer is not None else get_summarizer(config.engine)
        self.pane = pane
        self.sleep = sleep
        self.clock = clock
        self.rng = rng or random.Random()

        self.worktree_path = resolve_worktree(repo_root, config, worktree)
        self.state: AwtState = load_state(repo_root)
        self.machine = WatchMachine.for_state(
            self.state,
            idle_sec=config.idle_sec,
            poll_sec_idle=config.poll_sec_idle,
            poll_sec_post_push=config.poll_sec_post_push,
        )
        self.client: Optional[GitHubClient] = None
        self.title = f"citriage {repo_root.name}/{worktree}"

    # Setup

    def setup(self) -> bool:
        """Resolve the repository and the delivery pane.

        Returns:
            False (with the machine in its terminal state) if either is missing
        """
        try:
            ref = resolve_owner_repo(self.worktree_path, self.repo_root, self.config)
        except ResolutionError as e:
            self.machine.stop(str(e))
            return False
        self.client = self.client_factory(ref)

        if self.pane is None:
            self.pane = find_pane(self.repo_root, self.worktree)
        if self.pane is None:
            self.machine.stop(f"No tmux pane for worktree '{self.worktree}'")
            return False
        return True

    # Observe

    def _branch(self) -> Optional[str]:
        """The remote branch of the worktree checkout (its upstream if tracked)."""
        branch = git_utils.current_branch(self.worktree_path)
        if branch == git_utils.DETACHED:
            return None
        return git_utils.upstream_branch(self.worktree_path) or branch

    def _find_pull_request(self, commit: str, branch: Optional[str]) -> Optional[PullRequestInfo]:
        number = best_effort(f"PR for {commit[:7]}", lambda: self.client.find_pr_for_commit(commit), None)
        if not number and branch:
            number = best_effort(
                f"open PR for '{branch}'", lambda: self.client.find_open_pr_for_branch(branch), None
            )
        if not number:
            return None
        return best_effort(f"PR #{number}", lambda: self.client.get_pull_request(number), None)

    def observe(self) -> Observation:
        now_iso = format_timestamp(datetime.now(timezone.utc))
        obs = Observation(now=self.clock(), now_iso=now_iso)
        obs.pane_signature = self.pane.signature() if self.pane else None

        obs.branch = self._branch()
        if obs.branch:
            obs.remote_head = git_utils.remote_head_commit(self.worktree_path, obs.branch)

        last = self.state.last_push.commit if self.state.last_push else None
        pushed = obs.remote_head is not None and obs.remote_head != last
        if self.machine.current_state != "post_push" and not pushed:
            return obs

        commit = obs.remote_head or last
        if commit:
            obs.pull_request = self._find_pull_request(commit, obs.branch)
            status = best_effort(f"CI for {commit[:7]}", lambda: latest_ci_for_commit(self.client, commit), None)
            obs.ci_conclusion = status.conclusion if status else None
        return obs

    # Execute

    def execute(self, effect: Effect) -> None:
        if isinstance(effect, SaveState):
            save_state(self.repo_root, self.state)
        elif isinstance(effect, NotifyDormant):
            self.pane.notify(self.title, "Agent appears dormant; no push/PR yet.")
        elif isinstance(effect, NotifyNoPullRequest):
            self.pane.notify(self.title, "Detected push but no open PR yet.")
        elif isinstance(effect, PostRebase):
            self.post_rebase(effect)
        elif isinstance(effect, PostFailureReport):
            try:
                self.deliver_failure_report(
                    effect.commit, effect.pull_request_number, effect.pushed_at, effect.branch
                )
            except SourceUnavailable as e:
                # The trailing SaveState persists the cleared mark; the next poll retries.
                log.warning("Failure report for %s deferred: %s", effect.commit[:7], e)
                if self.state.last_ci_seen_for_commit == effect.commit:
                    self.state.last_ci_seen_for_commit = None
                    self.state.last_ci_conclusion = None
        elif isinstance(effect, NotifySuccess):
            subject = f"PR #{effect.pull_request_number}" if effect.pull_request_number else effect.commit[:7]
            self.pane.notify(self.title, f"CI passed for {subject}.")

    def post_rebase(self, effect: PostRebase) -> None:
        pr = effect.pull_request
        files = best_effort(f"files of PR #{pr.number}", lambda: self.client.list_pr_files(pr.number), [])
        payload = build_rebase_payload(
            pr.number,
            effect.commit,
            pr.mergeable_state or "",
            likely_conflict_files(files),
            self.config.read_debug_prompt(self.repo_root),
            conflict_hints=self.config.conflict_hints,
        )
        if self.pane.paste(payload.text, payload.sentinel) == "ok":
            self.pane.notify(self.title, f"Posted rebase instructions for PR #{pr.number}.")

    def deliver_failure_report(
        self,
        commit: str,
        pull_request_number: Optional[int],
        pushed_at: Optional[str],
        branch: Optional[str] = None,
    ) -> None:
        """Run the failure pipeline for a commit and paste the result."""
        since = pushed_at or best_effort(
            f"commit date of {commit[:7]}", lambda: self.client.get_commit_date(commit), None
        ) or format_timestamp(datetime.fromtimestamp(0, timezone.utc))
        target = Target(
            repo_root=str(self.repo_root),
            worktree_path=str(self.worktree_path),
            owner=self.client.ref.owner,
            repo=self.client.ref.repo,
            remote_branch=branch or self._branch() or commit,
            head_commit=commit,
            since=since,
            local_branch=branch,
            pull_request_number=pull_request_number,
        )
        run_extracts = gather_run_extracts(
            self.client, target, force=True, workers=self.config.log_fetch_workers, by_commit=True
        )
        context = SummaryContext(
            owner=target.owner,
            repo=target.repo,
            head_commit=commit,
            cwd=str(self.worktree_path),
            pull_request_number=pull_request_number,
            run_ids=[rx.run.id for rx in run_extracts],
        )
        summary, engine = summarize_failures(run_extracts, context, self.summarizer)
        comments = recent_comments(self.client, target, since, self.config)

        report = build_failure_report(
            FailureReportInput(
                owner=target.owner,
                repo=target.repo,
                branch=target.remote_branch,
                head_commit=commit,
                since=since,
                pull_request_number=pull_request_number,
                comments=comments,
                run_extracts=run_extracts,
                summary=summary,
                summary_engine=engine,
                warnings=collect_warnings(run_extracts),
            )
        )
        path = report_path(target, None)
        write_file_atomic(path, report.text)

        payload = build_agent_payload(
            pull_request_number,
            commit,
            summary,
            comments,
            self.config.read_debug_prompt(self.repo_root),
            runs=run_extracts,
            pushed_at=since,
            report_path=str(path),
        )
        if self.pane.paste(payload.text, payload.sentinel) == "ok":
            subject = f"PR #{pull_request_number}" if pull_request_number else commit[:7]
            self.pane.notify(self.title, f"Posted CI failure summary for {subject}.")
        else:
            log.warning("Failure report for %s was not confirmed in the pane", commit[:7])

    # Loop

    def run_once(self) -> None:
        """One poll iteration. Effect failures are logged; none is retried."""
        effects = self.machine.step(self.state, self.observe())
        for effect in effects:
            try:
                self.execute(effect)
            except Exception as e:
                log.exception("Failed to execute %s: %s", type(effect).__name__, e)

    def run(self, max_iterations: Optional[int] = None) -> int:
        """Poll until the process is stopped.

        Args:
            max_iterations: Stop after this many iterations (None for forever)

        Returns:
            Exit code: 1 if setup failed, otherwise 0
        """
        if self.client is None and not self.setup():
            return 1

        log.info("Watching %s (%s)", self.worktree, self.machine.current_state)
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            iterations += 1
            try:
                self.run_once()
            except Exception as e:
                log.exception("Watch iteration failed: %s", e)
                self.sleep(ERROR_BACKOFF_SEC)
                continue
            self.sleep(self.machine.poll_interval(self.rng))
        return 0

    def run_event_mode(self, commit: str) -> int:
        """Gather and paste once for a CI-provided commit, if its CI failed.

        Returns:
            Exit code: 1 if setup failed or the runs could not be listed, otherwise 0
        """
        if self.client is None and not self.setup():
            return 1

        branch = self._branch()
        pr = self._find_pull_request(commit, branch)
        if pr is None:
            log.info("No open PR for %s; nothing to report", commit[:7])
            return 0

        status = best_effort(f"CI for {commit[:7]}", lambda: latest_ci_for_commit(self.client, commit), None)
        if status is None or status.conclusion != "failure":
            log.info("CI for %s is %s; nothing to report", commit[:7], status.conclusion if status else "unknown")
            return 0

        pushed_at = self.state.last_push.pushed_at if self.state.last_push else None
        try:
            self.deliver_failure_report(commit, pr.number, pushed_at, branch)
        except SourceUnavailable as e:
            log.error("%s", e)
            return 1
        return 0
