"""Unit tests for the Pydantic models — validation, row mapping, event wire format."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from threatscribe.models import EventKind, Job, JobEvent, JobStatus, JobSubmission, Section
from threatscribe.models.jobs import RESUMABLE_STATUSES


class TestJobSubmission:
    def test_defaults_to_depth_three(self):
        assert JobSubmission(topic="Botnets").depth == 3

    def test_topic_whitespace_is_stripped(self):
        assert JobSubmission(topic="  Botnets \n", depth=1).topic == "Botnets"

    @pytest.mark.parametrize("depth", [1, 5])
    def test_depth_bounds_inclusive(self, depth):
        assert JobSubmission(topic="Botnets", depth=depth).depth == depth

    @pytest.mark.parametrize("kwargs", [
        {"topic": "", "depth": 3},
        {"topic": "Botnets", "depth": 0},
        {"topic": "Botnets", "depth": 6},
        {"topic": "y" * 501, "depth": 3},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValidationError):
            JobSubmission(**kwargs)


class TestJob:
    def test_new_job_defaults(self):
        job = Job(topic="Botnets", depth=2)
        assert len(job.id) == 32
        assert job.status == JobStatus.SUBMITTED
        assert job.run_number == 1
        assert job.is_active

    def test_ids_are_unique(self):
        assert Job(topic="a", depth=1).id != Job(topic="a", depth=1).id

    def test_from_sqlite_row(self):
        job = Job.from_row({
            "id": "abc", "topic": "Botnets", "depth": 4, "status": "cancelled",
            "run_number": 3, "error": None,
            "created_at": "2026-01-15T10:00:00+00:00",
            "updated_at": "2026-01-15T10:05:00",
            "started_at": None, "completed_at": None,
        })
        assert job.status == JobStatus.CANCELLED
        assert job.run_number == 3
        assert job.created_at == datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)
        assert job.updated_at.tzinfo is not None
        assert not job.is_active

    def test_resumable_statuses(self):
        assert RESUMABLE_STATUSES == {JobStatus.CANCELLED, JobStatus.ERROR, JobStatus.PAUSED}


class TestSection:
    def test_section_is_immutable(self):
        section = Section(job_id="j", section_key="k", title="T", content="c")
        with pytest.raises(ValidationError):
            section.content = "changed"

    def test_from_row_coerces_sqlite_integers(self):
        section = Section.from_row({
            "id": "s1", "job_id": "j", "section_key": "k", "title": "T",
            "content": "body", "is_fallback": 1, "run_number": 2,
            "created_at": "2026-01-15T10:00:00+00:00",
        })
        assert section.is_fallback is True
        assert section.run_number == 2

    def test_preview_truncates(self):
        section = Section(job_id="j", section_key="k", title="T", content="x" * 300)
        assert section.preview.endswith("…")
        assert len(section.preview) == 201


class TestJobEvent:
    def test_wire_format_omits_unset_fields(self):
        event = JobEvent(kind=EventKind.STATUS_UPDATE, job_id="j", text="Job started processing")
        wire = event.to_wire()
        assert '"kind":"status_update"' in wire
        assert "full_report" not in wire
        assert "section_key" not in wire

    def test_from_wire_restores_kind(self):
        event = JobEvent(kind=EventKind.WORKER_PROGRESS, job_id="j", section_key="k", progress=90)
        restored = JobEvent.from_wire(event.to_wire())
        assert restored.kind == EventKind.WORKER_PROGRESS
        assert restored.progress == 90

    @pytest.mark.parametrize("kind,terminal", [
        (EventKind.JOB_COMPLETE, True),
        (EventKind.ERROR, True),
        (EventKind.CANCELLED, True),
        (EventKind.CONTENT, False),
        (EventKind.RESUMED, False),
    ])
    def test_terminal_kinds(self, kind, terminal):
        assert JobEvent(kind=kind, job_id="j").is_terminal is terminal

    def test_progress_bounded(self):
        with pytest.raises(ValidationError):
            JobEvent(kind=EventKind.WORKER_PROGRESS, job_id="j", progress=101)
