"""Unit tests for report assembly, the static outline, and fallback content."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from threatscribe.models.jobs import Job, Section, SectionDescriptor
from threatscribe.research.report import build_full_report, order_sections
from threatscribe.research.sections import (
    DEFAULT_SECTIONS,
    FALLBACK_MARKER,
    fallback_content,
    static_outline,
    validate_descriptors,
)

T0 = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)


def _make_job(**kwargs) -> Job:
    return Job(topic=kwargs.pop("topic", "Ransomware trends"), depth=kwargs.pop("depth", 3), **kwargs)


def _make_section(job: Job, descriptor: SectionDescriptor, offset_s: int, **kwargs) -> Section:
    return Section(
        job_id=job.id,
        section_key=descriptor.key,
        title=descriptor.title,
        content=kwargs.pop("content", f"Body of {descriptor.key}."),
        created_at=T0 + timedelta(seconds=offset_s),
        **kwargs,
    )


# ── TestFullReport ────────────────────────────────────────────────────────────


class TestFullReport:
    def test_sections_follow_descriptor_order_not_completion_order(self):
        job = _make_job()
        # completion order is the reverse of the layout
        sections = [
            _make_section(job, d, offset_s=10 - i) for i, d in enumerate(DEFAULT_SECTIONS)
        ]
        report = build_full_report(job, sections, DEFAULT_SECTIONS)

        body = report.split("---", 1)[1]
        positions = [body.index(f"Body of {d.key}.") for d in DEFAULT_SECTIONS]
        assert positions == sorted(positions)

    def test_header_and_metadata(self):
        job = _make_job(run_number=2)
        sections = [_make_section(job, DEFAULT_SECTIONS[0], 0)]
        report = build_full_report(job, sections, DEFAULT_SECTIONS)

        assert report.startswith("# Comprehensive Research Report: Ransomware trends\n")
        assert f"`{job.id}`" in report
        assert "**Depth:** 3/5 (intermediate)" in report
        assert "**Run:** 2" in report
        assert "**Sections:** 1  " in report
        assert "## Table of Contents" in report

    def test_fallback_count_shown(self):
        job = _make_job()
        sections = [
            _make_section(job, DEFAULT_SECTIONS[0], 0, is_fallback=True),
            _make_section(job, DEFAULT_SECTIONS[1], 1),
        ]
        assert "**Sections:** 2 (1 fallback)" in build_full_report(job, sections, DEFAULT_SECTIONS)

    def test_heading_added_only_when_body_has_none(self):
        job = _make_job()
        sections = [
            _make_section(job, DEFAULT_SECTIONS[0], 0, content="Plain text body."),
            _make_section(job, DEFAULT_SECTIONS[1], 1, content=f"## {DEFAULT_SECTIONS[1].title}\n\nOwn heading."),
        ]
        report = build_full_report(job, sections, DEFAULT_SECTIONS)

        assert f"## 1. {DEFAULT_SECTIONS[0].title}" in report
        assert f"## 2. {DEFAULT_SECTIONS[1].title}" not in report
        assert report.count(f"## {DEFAULT_SECTIONS[1].title}") == 1

    def test_unknown_section_keys_go_last(self):
        job = _make_job()
        stray = SectionDescriptor(key="appendix", title="Appendix", guidance="extra")
        sections = [
            _make_section(job, stray, 0),
            _make_section(job, DEFAULT_SECTIONS[0], 1),
        ]
        ordered = order_sections(sections, DEFAULT_SECTIONS)
        assert [s.section_key for s in ordered] == ["threat_landscape", "appendix"]


# ── TestOutlineAndFallback ────────────────────────────────────────────────────


class TestOutlineAndFallback:
    def test_static_outline_lists_every_section(self):
        outline = static_outline("Phishing kits", 4, DEFAULT_SECTIONS)
        assert outline.startswith("# Research Outline: Phishing kits")
        assert "4/5 (advanced)" in outline
        for i, d in enumerate(DEFAULT_SECTIONS, 1):
            assert f"{i}. **{d.title}**" in outline

    def test_fallback_content_is_deterministic_and_labelled(self):
        d = DEFAULT_SECTIONS[3]
        first = fallback_content("Phishing kits", 2, d, "generator unavailable")
        second = fallback_content("Phishing kits", 2, d, "generator unavailable")
        assert first == second
        assert FALLBACK_MARKER in first
        assert first.startswith(f"## {d.title}")
        assert "Phishing kits" in first
        assert "(generator unavailable)" in first

    def test_fallback_content_without_reason(self):
        text = fallback_content("Phishing kits", 2, DEFAULT_SECTIONS[0])
        assert "unavailable for this section." in text


class TestDescriptors:
    def test_default_layout_has_five_unique_keys(self):
        assert len(DEFAULT_SECTIONS) == 5
        assert len({d.key for d in DEFAULT_SECTIONS}) == 5

    def test_empty_layout_rejected(self):
        with pytest.raises(ValueError, match="at least one"):
            validate_descriptors([])

    def test_duplicate_keys_rejected(self):
        d = DEFAULT_SECTIONS[0]
        with pytest.raises(ValueError, match=d.key):
            validate_descriptors([d, d])
