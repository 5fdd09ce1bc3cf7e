"""Job records as handed out by the queue."""
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    CREATED = "created"
    RETRY = "retry"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """A leased job without queue bookkeeping."""
    id: str
    name: str
    data: Dict[str, Any]


@dataclass
class JobWithMetadata(Job):
    """A job together with the queue's retry and scheduling bookkeeping."""
    priority: int = 0
    state: JobState = JobState.CREATED
    retry_count: int = 0
    retry_limit: int = 0
    retry_delay: float = 0
    retry_backoff: bool = False
    start_after: datetime = field(default_factory=utcnow)
    created_on: datetime = field(default_factory=utcnow)
    started_on: Optional[datetime] = None
    completed_on: Optional[datetime] = None
    expire_in: timedelta = timedelta(hours=48)
    singleton_key: Optional[str] = None
    output: Optional[Any] = None

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.retry_limit

    def to_job(self) -> Job:
        return Job(id=self.id, name=self.name, data=self.data)

    def to_dict(self) -> Dict[str, Any]:
        record = asdict(self)
        record["state"] = self.state.value
        record["expire_in"] = self.expire_in.total_seconds()
        for key in ("start_after", "created_on", "started_on", "completed_on"):
            value = record[key]
            record[key] = value.isoformat() if value else None
        return record

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> "JobWithMetadata":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in record.items() if key in known}
        values["state"] = JobState(values.get("state", JobState.CREATED.value))
        values["expire_in"] = timedelta(seconds=values.get("expire_in") or 0)
        for key in ("start_after", "created_on", "started_on", "completed_on"):
            if values.get(key):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)
