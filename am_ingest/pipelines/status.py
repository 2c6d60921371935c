"""Read-only view over import jobs.

Every call reads through the store so in-flight progress is never stale.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from am_ingest.models import ImportJob
from am_ingest.store import Store


class JobNotFoundError(Exception):
    """Raised when a job id is unknown."""

    def __init__(self, job_id: str):
        super().__init__(f"Import job {job_id} not found")
        self.job_id = job_id


@dataclass
class JobStatusView:
    id: str
    status: str
    total_records: int
    total_chunks: int
    processed_chunks: int
    processed: int
    imported: int
    skipped: int
    errors: int
    error_details: list[dict]
    progress: float
    options: dict
    error: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: ImportJob) -> JobStatusView:
        return cls(
            id=job.id,
            status=job.status,
            total_records=job.total_records,
            total_chunks=job.total_chunks,
            processed_chunks=job.processed_chunks,
            processed=job.processed,
            imported=job.imported,
            skipped=job.skipped,
            errors=job.errors,
            error_details=list(job.error_details or []),
            progress=job.progress,
            options=dict(job.options or {}),
            error=job.error_message,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


@dataclass
class JobSummary:
    """Job fields without error details or options."""
    id: str
    status: str
    total_records: int
    processed: int
    imported: int
    skipped: int
    errors: int
    progress: float
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: ImportJob) -> JobSummary:
        return cls(
            id=job.id,
            status=job.status,
            total_records=job.total_records,
            processed=job.processed,
            imported=job.imported,
            skipped=job.skipped,
            errors=job.errors,
            progress=job.progress,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


async def get_status(store: Store, job_id: str) -> JobStatusView:
    """Current state of one job.

    Raises:
        JobNotFoundError: If no job has this id
    """
    job = await store.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return JobStatusView.from_job(job)


async def list_recent_jobs(store: Store, limit: int = 10) -> list[JobSummary]:
    """Most recent jobs first."""
    return [JobSummary.from_job(job) for job in await store.list_recent_jobs(limit)]
