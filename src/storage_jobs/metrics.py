from prometheus_client import CollectorRegistry, Counter

REGISTRY = CollectorRegistry()

# Jobs, labeled by the task's primary queue name
QueueJobCompleted = Counter(
    "queue_job_completed",
    "Jobs handled successfully",
    labelnames=("name",),
    registry=REGISTRY,
)
QueueJobRetryFailed = Counter(
    "queue_job_retry_failed",
    "Job attempts that failed and were handed back to the queue",
    labelnames=("name",),
    registry=REGISTRY,
)
QueueJobError = Counter(
    "queue_job_error",
    "Jobs that failed on their last permitted attempt",
    labelnames=("name",),
    registry=REGISTRY,
)


def sample(counter_name: str, queue_name: str) -> float:
    """Current value of one of the job counters for `queue_name` (0 when unseen)."""
    value = REGISTRY.get_sample_value(f"{counter_name}_total", {"name": queue_name})
    return value or 0.0
