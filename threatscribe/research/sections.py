"""The fixed report layout and the deterministic text used when generation fails.

DEFAULT_SECTIONS   — the five section descriptors every job fans out
static_outline()   — outline text for the ``outline`` event without an LLM
fallback_content() — placeholder section body, labelled as fallback
"""

from __future__ import annotations

from collections.abc import Sequence

from threatscribe.models.jobs import SectionDescriptor

DEFAULT_SECTIONS: tuple[SectionDescriptor, ...] = (
    SectionDescriptor(
        key="threat_landscape",
        title="Current Threat Landscape",
        guidance="Current threat landscape and recent developments",
    ),
    SectionDescriptor(
        key="attack_vectors",
        title="Emerging Vulnerabilities and Attack Vectors",
        guidance="Emerging vulnerabilities, exploited weaknesses and attack vectors",
    ),
    SectionDescriptor(
        key="defense_strategies",
        title="Defense Strategies and Countermeasures",
        guidance="Defense strategies, detection approaches and countermeasures",
    ),
    SectionDescriptor(
        key="best_practices",
        title="Industry Best Practices and Standards",
        guidance="Industry best practices, frameworks and compliance standards",
    ),
    SectionDescriptor(
        key="future_outlook",
        title="Future Predictions and Recommendations",
        guidance="Future predictions, strategic recommendations and next steps",
    ),
)

FALLBACK_MARKER = "Fallback content"

_DEPTH_LABELS = {
    1: "basic overview",
    2: "introductory",
    3: "intermediate",
    4: "advanced",
    5: "expert",
}


def depth_label(depth: int) -> str:
    return _DEPTH_LABELS.get(depth, "intermediate")


def validate_descriptors(descriptors: Sequence[SectionDescriptor]) -> tuple[SectionDescriptor, ...]:
    """Reject empty layouts and duplicate keys (keys scope worker events)."""
    if not descriptors:
        raise ValueError("at least one section descriptor is required")
    keys = [d.key for d in descriptors]
    dupes = sorted({k for k in keys if keys.count(k) > 1})
    if dupes:
        raise ValueError(f"duplicate section keys: {', '.join(dupes)}")
    return tuple(descriptors)


def static_outline(topic: str, depth: int, descriptors: Sequence[SectionDescriptor]) -> str:
    """Markdown bullet outline derived from the descriptors."""
    lines = [
        f"# Research Outline: {topic}",
        "",
        f"Depth: {depth}/5 ({depth_label(depth)})",
        "",
    ]
    for i, d in enumerate(descriptors, 1):
        lines.append(f"{i}. **{d.title}** — {d.guidance}")
    return "\n".join(lines)


def fallback_content(topic: str, depth: int, descriptor: SectionDescriptor, reason: str = "") -> str:
    """Deterministic placeholder body for one section.

    Same inputs always give the same text; ``reason`` is kept short and
    stable (e.g. "generator unavailable"), never an exception repr.
    """
    lines = [
        f"## {descriptor.title}",
        "",
        f"> **{FALLBACK_MARKER}** — automated generation was unavailable for this section"
        + (f" ({reason})." if reason else "."),
        "",
        f"**Topic:** {topic}  ",
        f"**Depth:** {depth}/5 ({depth_label(depth)})  ",
        f"**Focus:** {descriptor.guidance}",
        "",
        "### Suggested coverage",
        "",
        f"- Key developments relevant to {topic}",
        f"- {descriptor.guidance}",
        "- Notable incidents, actors and affected sectors",
        "- Actionable recommendations for defenders",
        "",
        "Resume the job to regenerate this section once generation is available.",
    ]
    return "\n".join(lines)
