"""Shared data models: jobs, sections, and the events streamed about them."""

from .events import EventKind, JobEvent, TERMINAL_KINDS
from .jobs import Job, JobStatus, JobSubmission, Section, SectionDescriptor

__all__ = [
    "EventKind",
    "JobEvent",
    "TERMINAL_KINDS",
    "Job",
    "JobStatus",
    "JobSubmission",
    "Section",
    "SectionDescriptor",
]
