"""Job queue — bounded backlog and worker pool."""

from repobox.queue.job_queue import JobHandler, JobQueue, QueueStats
from repobox.queue.models import Job, JobKind

__all__ = [
    "Job",
    "JobHandler",
    "JobKind",
    "JobQueue",
    "QueueStats",
]
