from .jobs import (
    ExistingJobPolicy,
    Job,
    JobOutcome,
    JobRunner,
    JobStatus,
    SqlJobQueue,
    backoff_delay,
)
from .scheduler import AUTO_SELL_JOB_KIND, AutoSellScheduler, job_key
from .worker import AutoSellWorker

__all__ = [
    "AUTO_SELL_JOB_KIND",
    "AutoSellScheduler",
    "AutoSellWorker",
    "ExistingJobPolicy",
    "Job",
    "JobOutcome",
    "JobRunner",
    "JobStatus",
    "SqlJobQueue",
    "backoff_delay",
    "job_key",
]
