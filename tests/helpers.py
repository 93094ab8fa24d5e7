"""Builders for test data."""

from citriage.models import JobBrief, RunBrief


def make_run(run_id: int = 1, status: str = "completed", conclusion: str | None = "failure", **kwargs) -> RunBrief:
    return RunBrief(
        id=run_id,
        url=f"https://github.com/acme/widgets/actions/runs/{run_id}",
        status=status,
        conclusion=conclusion,
        created_at=kwargs.get("created_at", "2025-01-01T01:00:00Z"),
        name=kwargs.get("name", "CI"),
        head_commit=kwargs.get("head_commit", "abc1234def5678"),
    )


def make_job(
    job_id: int = 10,
    run_id: int = 1,
    conclusion: str | None = "failure",
    status: str = "completed",
    name: str | None = None,
) -> JobBrief:
    return JobBrief(
        id=job_id,
        run_id=run_id,
        name=name or f"test-{job_id}",
        url=f"https://github.com/acme/widgets/actions/runs/{run_id}/job/{job_id}",
        conclusion=conclusion,
        status=status,
    )
