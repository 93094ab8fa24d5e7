"""CI run/job fetching and classification.

A run or job is failure-like when its conclusion is failure, timed_out or
cancelled. A run is pending while its status is anything but completed.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from citriage.curation import DEFAULT_CLASSIFIER, LineClassifier, count_excerpt, sum_counts, to_run_extract
from citriage.errors import GhCommandError, PendingCI, SourceUnavailable, best_effort
from citriage.github import GitHubClient
from citriage.models import ExtractCounts, JobBrief, RunBrief, RunExtract, Target

log = logging.getLogger("citriage.ci")

FAILURE_LIKE = frozenset({"failure", "timed_out", "cancelled"})

DEFAULT_LOG_WORKERS = 4


def is_failure_like(conclusion: Optional[str]) -> bool:
    return conclusion in FAILURE_LIKE


def is_pending(run: RunBrief) -> bool:
    return run.status != "completed"


PLACEHOLDER_PREFIX = "(unable to fetch logs for this job"


def log_placeholder(job: JobBrief) -> str:
    return f"{PLACEHOLDER_PREFIX}; open in browser: {job.url})"


def select_jobs(run: RunBrief, jobs: Sequence[JobBrief]) -> List[JobBrief]:
    """Keep the jobs worth curating for a run.

    Completed runs keep their failure-like jobs. Pending runs keep only jobs
    that have themselves completed with a failure-like conclusion.
    """
    selected = []
    for job in jobs:
        if not is_failure_like(job.conclusion):
            continue
        if is_pending(run) and job.status != "completed":
            continue
        selected.append(job)
    return selected


def fetch_logs(
    client: GitHubClient,
    jobs: Sequence[JobBrief],
    workers: int = DEFAULT_LOG_WORKERS,
) -> Dict[int, Optional[str]]:
    """Fetch job logs concurrently.

    Returns:
        Mapping of job id to decoded log text, None where the fetch failed
    """

    def fetch_one(job: JobBrief) -> Optional[str]:
        try:
            return client.fetch_job_log_text(job.id)
        except (GhCommandError, OSError, EOFError) as e:
            log.warning("Log for job %s (%s) unavailable: %s", job.id, job.name, e)
            return None

    if not jobs:
        return {}
    with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="job-log") as pool:
        texts = list(pool.map(fetch_one, jobs))
    return {job.id: text for job, text in zip(jobs, texts)}


def build_run_extract(
    client: GitHubClient,
    run: RunBrief,
    force: bool,
    workers: int = DEFAULT_LOG_WORKERS,
    classifier: LineClassifier = DEFAULT_CLASSIFIER,
) -> Optional[RunExtract]:
    """Fetch, filter and curate the jobs of one run.

    Returns:
        The run's extract, an empty-jobs extract for a forced pending run
        with nothing failing yet, or None when there is nothing to report
    """
    jobs = best_effort(f"jobs for run {run.id}", lambda: client.list_jobs_for_run(run.id), [])
    selected = select_jobs(run, jobs)
    if not selected:
        if is_pending(run) and force:
            return RunExtract(run=run, jobs=[], total_counts=ExtractCounts.zero())
        if not is_pending(run):
            # A failing run whose jobs could not be listed still gets reported.
            return RunExtract(run=run, jobs=[], total_counts=ExtractCounts.zero())
        return None
    logs = fetch_logs(client, selected, workers)
    extract = to_run_extract(
        run, selected, {job_id: text for job_id, text in logs.items() if text is not None}, classifier
    )
    for jx in extract.jobs:
        if logs.get(jx.job.id) is None:
            jx.excerpt = log_placeholder(jx.job)
            jx.counts = count_excerpt(jx.excerpt, classifier)
    extract.total_counts = sum_counts(jx.counts for jx in extract.jobs)
    return extract


def gather_run_extracts(
    client: GitHubClient,
    target: Target,
    force: bool = False,
    workers: int = DEFAULT_LOG_WORKERS,
    classifier: LineClassifier = DEFAULT_CLASSIFIER,
    by_commit: bool = False,
) -> List[RunExtract]:
    """Collect curated extracts for the runs since the target's push.

    Args:
        client: GitHub client for the target repository
        target: Resolved target
        force: Include pending runs instead of raising PendingCI
        workers: Bound on concurrent log fetches per run
        classifier: Failure-signal line classifier
        by_commit: Take the runs of target.head_commit instead of the
            branch's runs since target.since

    Returns:
        Extracts for completed failing runs, then (when forced) pending runs

    Raises:
        PendingCI: If any run is still pending and force is False
        SourceUnavailable: If the runs cannot be listed
    """
    try:
        if by_commit:
            runs = client.list_runs_for_commit(target.head_commit)
        else:
            runs = client.list_runs_since(target.remote_branch, target.since)
    except GhCommandError as e:
        subject = target.head_commit[:7] if by_commit else f"'{target.remote_branch}'"
        raise SourceUnavailable(f"Unable to list workflow runs for {subject}: {e}") from e
    pending = [r for r in runs if is_pending(r)]
    if pending and not force:
        raise PendingCI(target.remote_branch, target.since, pending)

    failing = [r for r in runs if not is_pending(r) and is_failure_like(r.conclusion)]
    extracts: List[RunExtract] = []
    for run in failing + (pending if force else []):
        extract = build_run_extract(client, run, force, workers, classifier)
        if extract is not None:
            extracts.append(extract)
    return extracts


@dataclass
class CiStatus:
    """Overall CI outcome for one commit."""

    conclusion: Optional[str]  # None while pending or when no runs exist
    runs: List[RunBrief] = field(default_factory=list)


def summarize_runs(runs: Sequence[RunBrief]) -> CiStatus:
    runs = list(runs)
    if not runs or any(is_pending(r) for r in runs):
        return CiStatus(conclusion=None, runs=runs)
    if any(is_failure_like(r.conclusion) for r in runs):
        return CiStatus(conclusion="failure", runs=runs)
    if all(r.conclusion == "success" for r in runs):
        return CiStatus(conclusion="success", runs=runs)
    return CiStatus(conclusion="neutral", runs=runs)


def latest_ci_for_commit(client: GitHubClient, commit: str) -> CiStatus:
    """Settle the CI conclusion for a commit across all of its runs."""
    return summarize_runs(client.list_runs_for_commit(commit))
