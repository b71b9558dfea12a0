from __future__ import annotations

from clipscout.jobs.job_models import JobError, JobState, JobStatus
from clipscout.jobs.job_queue import JobQueue
from clipscout.main.exceptions import JobNotFoundError


class JobStatusReader:
    """Read-only projection of a job for polling clients.

    ``queue_position`` is a best-effort snapshot: the queue keeps moving
    between polls and clients are expected to tolerate stale values.
    """

    def __init__(self, queue: JobQueue):
        self._queue = queue

    async def status(self, job_id: str) -> JobStatus:
        job = await self._queue.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        snapshot = JobStatus(
            job_id=job.id,
            kind=job.kind,
            state=job.state,
            progress=job.progress,
            attempts_made=job.attempts_made,
            outcome=job.outcome,
            cancel_requested=job.cancel_requested,
        )

        match job.state:
            case JobState.WAITING:
                snapshot.queue_position = await self._queue.queue_position(job)
            case JobState.COMPLETED:
                snapshot.result = job.result or []
            case JobState.FAILED | JobState.CANCELLED:
                snapshot.error = JobError(
                    code=job.error_code or job.state.value.upper(),
                    message=job.error_message,
                )

        return snapshot
