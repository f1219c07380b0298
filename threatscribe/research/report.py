"""Full-report assembly for the terminal ``job_complete`` event.

Sections are stitched in descriptor order (not completion order), so the
report layout is stable no matter which worker finished first. Sections with
no matching descriptor (a changed layout) are appended at the end.
"""

from __future__ import annotations

from collections.abc import Sequence

from threatscribe.models.jobs import Job, Section, SectionDescriptor
from threatscribe.research.sections import depth_label
from threatscribe.utils.clock import report_stamp


def order_sections(
    sections: Sequence[Section],
    descriptors: Sequence[SectionDescriptor],
) -> list[Section]:
    rank = {d.key: i for i, d in enumerate(descriptors)}
    return sorted(sections, key=lambda s: (rank.get(s.section_key, len(rank)), s.created_at))


def build_full_report(
    job: Job,
    sections: Sequence[Section],
    descriptors: Sequence[SectionDescriptor],
) -> str:
    """Render the run's sections as one markdown document."""
    ordered = order_sections(sections, descriptors)
    fallback_count = sum(1 for s in ordered if s.is_fallback)

    lines = [
        f"# Comprehensive Research Report: {job.topic}",
        "",
        f"**Job ID:** `{job.id}`  ",
        f"**Depth:** {job.depth}/5 ({depth_label(job.depth)})  ",
        f"**Run:** {job.run_number}  ",
        f"**Sections:** {len(ordered)}"
        + (f" ({fallback_count} fallback)" if fallback_count else "")
        + "  ",
        f"**Generated:** {report_stamp()}",
        "",
        "## Table of Contents",
        "",
    ]
    for i, s in enumerate(ordered, 1):
        lines.append(f"{i}. {s.title}")
    lines += ["", "---", ""]

    for i, s in enumerate(ordered, 1):
        body = s.content.strip()
        # Generated bodies often open with their own heading; don't stack two.
        if not body.startswith("#"):
            lines += [f"## {i}. {s.title}", ""]
        lines += [body, ""]
        if i < len(ordered):
            lines += ["---", ""]

    return "\n".join(lines).rstrip() + "\n"
