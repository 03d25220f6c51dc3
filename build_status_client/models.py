from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    unknown = "unknown"
    queued = "queued"
    running = "running"
    ok = "ok"
    error = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.ok, JobState.error)

    @property
    def is_active(self) -> bool:
        return self in (JobState.queued, JobState.running)


class JobStatus(BaseModel):
    """Latest known state of one background build."""

    model_config = ConfigDict(frozen=True)

    entity_id: str
    state: JobState = JobState.unknown
    progress: Optional[int] = None
    message: Optional[str] = None
    entry_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_payload(cls, entity_id: str, data: Any) -> "JobStatus":
        """Build a status from an untyped status body, never failing"""
        if not isinstance(data, dict):
            return cls(entity_id=entity_id)

        try:
            state = JobState(data.get("status"))
        except (TypeError, ValueError):
            state = JobState.unknown

        progress = None
        if state.is_active:
            progress = _coerce_progress(data.get("progress"))

        message = data.get("message")
        entry_id = data.get("entryId")

        return cls(
            entity_id=entity_id,
            state=state,
            progress=progress,
            message=str(message) if message is not None else None,
            entry_id=str(entry_id) if entry_id is not None else None,
        )


def _coerce_progress(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        progress = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    return max(0, min(100, progress))


class TerminalEvent(BaseModel):
    entity_id: str
    entry_id: Optional[str] = None
    state: JobState
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == JobState.ok


class StatusPollingConfig(BaseModel):
    poll_interval: float = 2.5
    request_timeout: float = 10.0
    resource: str = "segments"


# Retry backoff policies. Numeric fields are kept as plain ints so an editor
# can hold out-of-range input; encoding clamps them.


class ExponentialBackoff(BaseModel):
    mode: Literal["exponential"] = "exponential"
    factor: int = 2
    min_seconds: int = 60
    max_seconds: int = 3600


class FixedBackoff(BaseModel):
    mode: Literal["fixed"] = "fixed"
    seconds: int = 60


class LinearBackoff(BaseModel):
    mode: Literal["linear"] = "linear"
    base_seconds: int = 60
    step_seconds: int = 60
    max_seconds: int = 3600


class CustomBackoff(BaseModel):
    mode: Literal["custom"] = "custom"
    raw: str = ""


BackoffPolicy = Union[ExponentialBackoff, FixedBackoff, LinearBackoff, CustomBackoff]


# Outcomes of a run-now request.


class Enqueued(BaseModel):
    kind: Literal["enqueued"] = "enqueued"
    entity_id: str
    entry_id: Optional[str] = None


class CompletedSync(BaseModel):
    kind: Literal["completed_sync"] = "completed_sync"
    entity_id: str
    result: Optional[dict] = None


class Failed(BaseModel):
    kind: Literal["failed"] = "failed"
    entity_id: str
    reason: str
    status_code: Optional[int] = None


RunOutcome = Union[Enqueued, CompletedSync, Failed]
