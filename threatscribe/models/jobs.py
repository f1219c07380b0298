"""Job, Section and SectionDescriptor — Pydantic models for the research pipeline.

Job      — one submitted research request and its lifecycle status
Section  — one persisted, immutable unit of generated content for a job run
JobSubmission — boundary validation for new jobs (topic + depth)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from threatscribe.utils.clock import now_utc, parse_timestamp

MIN_DEPTH = 1
MAX_DEPTH = 5
MAX_TOPIC_CHARS = 500


class JobStatus(str, Enum):
    """Job lifecycle states."""
    SUBMITTED = "submitted"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"
    # Never entered by the orchestrator; accepted as a resume source only.
    PAUSED = "paused"


# States a job may be resumed from.
RESUMABLE_STATUSES = frozenset({JobStatus.CANCELLED, JobStatus.ERROR, JobStatus.PAUSED})


def _new_id() -> str:
    return uuid.uuid4().hex


class JobSubmission(BaseModel):
    """A research request as it arrives from the presentation layer."""

    topic: str = Field(min_length=1, max_length=MAX_TOPIC_CHARS)
    depth: int = Field(default=3, ge=MIN_DEPTH, le=MAX_DEPTH)

    @field_validator("topic", mode="before")
    @classmethod
    def _strip_topic(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class Job(BaseModel):
    """Durable record of one research job.

    ``run_number`` starts at 1 and increments on every resume; sections are
    tagged with the run that produced them.
    """

    id: str = Field(default_factory=_new_id)
    topic: str
    depth: int = Field(ge=MIN_DEPTH, le=MAX_DEPTH)
    status: JobStatus = JobStatus.SUBMITTED
    run_number: int = 1
    error: str | None = None
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in (JobStatus.SUBMITTED, JobStatus.RUNNING)

    @classmethod
    def from_row(cls, row: dict) -> "Job":
        """Construct from a store row (asyncpg Record or sqlite3.Row as dict)."""
        return cls(
            id=row["id"],
            topic=row["topic"],
            depth=row["depth"],
            status=JobStatus(row["status"]),
            run_number=row.get("run_number") or 1,
            error=row.get("error"),
            created_at=parse_timestamp(row.get("created_at")) or now_utc(),
            updated_at=parse_timestamp(row.get("updated_at")) or now_utc(),
            started_at=parse_timestamp(row.get("started_at")),
            completed_at=parse_timestamp(row.get("completed_at")),
        )


class SectionDescriptor(BaseModel):
    """What one Section Worker is asked to produce."""

    key: str = Field(description="Unique within a job; scopes worker events")
    title: str
    guidance: str = Field(description="Content focus passed to the generator")


class Section(BaseModel):
    """One generated section. Immutable once persisted."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=_new_id)
    job_id: str
    section_key: str
    title: str
    content: str
    is_fallback: bool = False
    run_number: int = 1
    created_at: datetime = Field(default_factory=now_utc)

    @classmethod
    def from_row(cls, row: dict) -> "Section":
        return cls(
            id=row["id"],
            job_id=row["job_id"],
            section_key=row["section_key"],
            title=row["title"],
            content=row.get("content") or "",
            is_fallback=bool(row.get("is_fallback")),
            run_number=row.get("run_number") or 1,
            created_at=parse_timestamp(row.get("created_at")) or now_utc(),
        )

    @property
    def preview(self) -> str:
        """First 200 chars of content."""
        return self.content[:200].rstrip() + ("…" if len(self.content) > 200 else "")
