"""Render a plan projection as a markdown document."""

from __future__ import annotations

from .models import ExportProjection, SectionRegistry

DOCUMENT_TITLE = "Scientific Paper Project Plan"
EMPTY_SECTION_TEXT = "Not completed yet"


def render_markdown(projection: ExportProjection, registry: SectionRegistry) -> str:
    """Return the numbered plan document.

    Sections appear in registry order. A toggle group contributes one heading,
    at its first member's position, titled after its active member.
    """
    lines = [f"# {DOCUMENT_TITLE}", ""]
    emitted_groups: set[str] = set()
    number = 0
    for definition in registry.sections:
        section_id = definition.id
        title = definition.title
        if definition.toggle_group is not None:
            if definition.toggle_group in emitted_groups:
                continue
            emitted_groups.add(definition.toggle_group)
            group = registry.get_group(definition.toggle_group)
            active = projection.active_toggles.get(definition.toggle_group)
            if group is not None and active not in group.members:
                active = group.default
            active_definition = registry.get_section(active) if active else None
            if active_definition is not None:
                section_id = active_definition.id
                title = active_definition.title
        number += 1
        body = projection.contents.get(section_id, "").strip()
        lines.append(f"## {number}. {title}")
        lines.append(body or EMPTY_SECTION_TEXT)
        lines.append("")
    return "\n".join(lines)
