"""
Job tracking - periodic driver runs are recorded as rows, not kept in memory
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import select

from legalops.exceptions import NotFoundError
from legalops.models.job import JobRecord, JobStatus
from legalops.services.store import ObligationStore


class JobTracker:

    def __init__(self, store: ObligationStore):
        self.store = store

    async def start(self, job_type: str) -> JobRecord:
        job = JobRecord(job_type=job_type, status=JobStatus.RUNNING, started_at=datetime.utcnow())
        async with self.store.unit_of_work():
            self.store.add(job)
        return job

    async def succeed(self, job_id: int, result: Optional[dict] = None) -> JobRecord:
        job = await self.get(job_id)
        async with self.store.unit_of_work():
            job.status = JobStatus.SUCCEEDED
            job.result = result
            job.finished_at = datetime.utcnow()
        return job

    async def fail(self, job_id: int, error: str, result: Optional[dict] = None) -> JobRecord:
        job = await self.get(job_id)
        async with self.store.unit_of_work():
            job.status = JobStatus.FAILED
            job.error = error
            job.result = result
            job.finished_at = datetime.utcnow()
        return job

    async def get(self, job_id: int) -> JobRecord:
        job = await self.store.session.get(JobRecord, job_id)
        if not job:
            raise NotFoundError("Job", job_id)
        return job

    async def latest(self, job_type: str) -> Optional[JobRecord]:
        result = await self.store.session.execute(
            select(JobRecord)
            .where(JobRecord.job_type == job_type)
            .order_by(JobRecord.started_at.desc(), JobRecord.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
