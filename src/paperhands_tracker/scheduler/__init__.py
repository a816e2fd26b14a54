"""Job admission, slot claiming and execution."""

from paperhands_tracker.scheduler.queue import (
    EnqueueOutcome,
    InternalSchedulingFailure,
    JobQueue,
    JobStatus,
    QueueMetrics,
    RateLimitedError,
)
from paperhands_tracker.scheduler.runner import JobProgressRecorder, JobRunner

__all__ = [
    "EnqueueOutcome",
    "InternalSchedulingFailure",
    "JobProgressRecorder",
    "JobQueue",
    "JobRunner",
    "JobStatus",
    "QueueMetrics",
    "RateLimitedError",
]
