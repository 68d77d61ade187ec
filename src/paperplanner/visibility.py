"""Derive unlocked and visible sections from scores, toggles and pro mode."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace

from .errors import RegistryError
from .models import PlannerState, SectionRegistry, UnlockEdge


@dataclass(frozen=True)
class Resolution:
    """Result of one visibility pass over the whole registry."""

    unlocked_sections: frozenset[str]
    unlocked_groups: frozenset[str]
    visible_sections: frozenset[str]


def resolve(
    registry: SectionRegistry,
    scores: Mapping[str, int],
    active_toggles: Mapping[str, str],
    pro_mode: bool,
    *,
    max_passes: int | None = None,
) -> Resolution:
    """Run the unlock graph to its fixpoint and derive final visibility.

    An edge fires when its source is open and the source's score reaches the
    threshold. For a group source the score read is the active member's. A
    fired group unlocks every member, but only the active member is visible.
    Pro mode reports everything unlocked and visible.
    """
    if pro_mode:
        every_section = frozenset(registry.section_ids)
        return Resolution(
            unlocked_sections=every_section,
            unlocked_groups=frozenset(registry.group_ids),
            visible_sections=every_section,
        )

    group_of = {section.id: section.toggle_group for section in registry.sections}
    members_of = {group.id: group.members for group in registry.toggle_groups}
    limit = max_passes if max_passes is not None else len(registry.edges) + 1

    unlocked_sections: set[str] = {registry.entry}
    unlocked_groups: set[str] = set()
    fired: set[int] = set()

    settled = False
    for _ in range(limit):
        progressed = False
        for index, edge in enumerate(registry.edges):
            if index in fired:
                continue
            if not _edge_fires(edge, scores, active_toggles, unlocked_sections, unlocked_groups, group_of):
                continue
            fired.add(index)
            progressed = True
            for target in edge.targets:
                if target in members_of:
                    unlocked_groups.add(target)
                    unlocked_sections.update(members_of[target])
                else:
                    unlocked_sections.add(target)
        if not progressed:
            settled = True
            break
    if not settled:
        raise RegistryError("Unlock graph did not settle", passes=limit, edges=len(registry.edges))

    visible = {
        section_id
        for section_id in unlocked_sections
        if group_of.get(section_id) is None or active_toggles.get(group_of[section_id]) == section_id
    }
    visible.add(registry.entry)
    return Resolution(
        unlocked_sections=frozenset(unlocked_sections),
        unlocked_groups=frozenset(unlocked_groups),
        visible_sections=frozenset(visible),
    )


def _edge_fires(
    edge: UnlockEdge,
    scores: Mapping[str, int],
    active_toggles: Mapping[str, str],
    unlocked_sections: set[str],
    unlocked_groups: set[str],
    group_of: Mapping[str, str | None],
) -> bool:
    """Return whether an edge's source is open and scored at or above its threshold."""
    if edge.source in group_of:
        source_section = edge.source
        group_id = group_of[source_section]
        if group_id is None:
            is_open = source_section in unlocked_sections
        else:
            is_open = group_id in unlocked_groups and active_toggles.get(group_id) == source_section
    else:
        source_section = active_toggles.get(edge.source, "")
        is_open = edge.source in unlocked_groups

    if not is_open:
        return False
    score = scores.get(source_section)
    return score is not None and score >= edge.threshold


def apply_visibility(state: PlannerState, registry: SectionRegistry) -> PlannerState:
    """Return `state` with every section's visibility re-derived from scratch."""
    resolution = resolve(registry, state.scores, state.active_toggles, state.pro_mode)
    sections = {
        section_id: replace(section, is_visible=section_id in resolution.visible_sections)
        for section_id, section in state.sections.items()
    }
    return replace(state, sections=sections, unlocked_groups=resolution.unlocked_groups)
