"""Errors raised to the presentation layer by the job orchestrator."""

from __future__ import annotations

from pydantic import ValidationError


class InvalidJobRequest(ValueError):
    """Submission rejected before any job record was created."""

    @classmethod
    def from_validation(cls, exc: ValidationError) -> "InvalidJobRequest":
        parts = []
        for err in exc.errors():
            field = ".".join(str(p) for p in err.get("loc", ())) or "request"
            parts.append(f"{field}: {err.get('msg', 'invalid')}")
        return cls("; ".join(parts))


class JobNotFound(KeyError):
    def __init__(self, job_id: str) -> None:
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Job not found: {self.job_id}"


class InvalidTransition(RuntimeError):
    """The requested lifecycle change is not allowed from the job's current status."""
