"""JobEvent — the transient messages broadcast on a job's Event Bus.

Events are never persisted: the Job and Section rows are the source of truth,
and an observer that misses events recovers state from the store.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from threatscribe.utils.clock import now_utc


class EventKind(str, Enum):
    CONNECTED = "connected"
    STATUS_UPDATE = "status_update"
    OUTLINE = "outline"
    WORKER_START = "worker_start"
    WORKER_PROGRESS = "worker_progress"
    WORKER_COMPLETE = "worker_complete"
    WORKER_ERROR = "worker_error"
    CONTENT = "content"
    JOB_COMPLETE = "job_complete"
    ERROR = "error"
    CANCELLED = "cancelled"
    RESUMED = "resumed"


# Kinds after which a job run publishes nothing further.
TERMINAL_KINDS = frozenset({EventKind.JOB_COMPLETE, EventKind.ERROR, EventKind.CANCELLED})


class JobEvent(BaseModel):
    """One message on a job's event stream.

    ``kind`` discriminates which optional fields are meaningful:
    section events carry ``section_key``/``section_title``/``progress``,
    ``job_complete`` carries ``full_report``.
    """

    kind: EventKind
    job_id: str
    text: str = ""
    section_key: str | None = None
    section_title: str | None = None
    progress: int | None = Field(default=None, ge=0, le=100)
    full_report: str | None = None
    is_fallback: bool | None = None
    run_number: int | None = None
    timestamp: datetime = Field(default_factory=now_utc)

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def to_wire(self) -> str:
        """Compact JSON with unset optional fields omitted."""
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_wire(cls, payload: str) -> "JobEvent":
        return cls.model_validate_json(payload)
