"""Load the declarative section registry from bundled JSON resources."""

from __future__ import annotations

import json
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

from .errors import RegistryError
from .models import (
    MAX_RATING,
    MIN_RATING,
    Instruction,
    SectionDefinition,
    SectionRegistry,
    ToggleGroupDefinition,
    UnlockEdge,
)

CONTENT_PACKAGE = "paperplanner.content"
REGISTRY_FILE = "sections.json"


def _instruction_from_dict(section_id: str, raw: dict[str, Any]) -> Instruction:
    """Build an instruction bullet from raw JSON content."""
    instruction_id = str(raw.get("id", "")).strip()
    if not instruction_id:
        raise RegistryError("Instruction is missing an id", section_id=section_id)
    return Instruction(
        id=instruction_id,
        title=str(raw.get("title", "")),
        instruction=str(raw.get("instruction", "")),
    )


def _section_from_dict(raw: dict[str, Any], group_of: dict[str, str]) -> SectionDefinition:
    """Build a section declaration from raw JSON content."""
    section_id = str(raw.get("id", "")).strip()
    if not section_id:
        raise RegistryError("Section is missing an id")
    instructions = tuple(_instruction_from_dict(section_id, item) for item in raw.get("instructions", []))
    return SectionDefinition(
        id=section_id,
        title=str(raw.get("title", section_id)),
        placeholder=str(raw.get("placeholder", "")),
        intro=str(raw.get("intro", "")),
        instructions=instructions,
        toggle_group=group_of.get(section_id),
    )


def _group_from_dict(raw: dict[str, Any]) -> ToggleGroupDefinition:
    """Build a toggle group declaration from raw JSON content."""
    group_id = str(raw.get("id", "")).strip()
    if not group_id:
        raise RegistryError("Toggle group is missing an id")
    members = tuple(str(item) for item in raw.get("members", []))
    if not members:
        raise RegistryError("Toggle group has no members", group_id=group_id)
    default = str(raw.get("default", members[0]))
    detection_order = tuple(str(item) for item in raw.get("detection_order", members))
    return ToggleGroupDefinition(
        id=group_id,
        title=str(raw.get("title", group_id)),
        members=members,
        default=default,
        detection_order=detection_order,
    )


def _edge_from_dict(raw: dict[str, Any]) -> UnlockEdge:
    """Build an unlock edge from raw JSON content."""
    source = str(raw.get("from", "")).strip()
    if not source:
        raise RegistryError("Unlock edge is missing its source")
    threshold_raw = raw.get("threshold")
    if isinstance(threshold_raw, bool) or not isinstance(threshold_raw, int):
        raise RegistryError("Unlock edge threshold must be an integer", source=source)
    targets = tuple(str(item) for item in raw.get("targets", []))
    if not targets:
        raise RegistryError("Unlock edge has no targets", source=source)
    return UnlockEdge(source=source, threshold=threshold_raw, targets=targets)


def registry_from_dict(raw: dict[str, Any]) -> SectionRegistry:
    """Build and validate a registry from its decoded JSON document."""
    groups = [_group_from_dict(item) for item in raw.get("toggle_groups", [])]
    group_of: dict[str, str] = {}
    for group in groups:
        for member in group.members:
            previous = group_of.get(member)
            if previous is not None:
                raise RegistryError("Section belongs to more than one toggle group", section_id=member)
            group_of[member] = group.id

    sections = [_section_from_dict(item, group_of) for item in raw.get("sections", [])]
    edges = [_edge_from_dict(item) for item in raw.get("unlock_edges", [])]
    registry = SectionRegistry(
        entry=str(raw.get("entry", sections[0].id if sections else "")),
        sections=tuple(sections),
        toggle_groups=tuple(groups),
        edges=tuple(edges),
    )
    _validate_declarations(registry)
    _validate_unlock_graph(registry)
    return registry


@lru_cache(maxsize=1)
def load_registry() -> SectionRegistry:
    """Load the bundled registry."""
    entry = resources.files(CONTENT_PACKAGE).joinpath(REGISTRY_FILE)
    raw = json.loads(entry.read_text(encoding="utf-8-sig"))
    return registry_from_dict(raw)


def load_registry_from_path(path: Path) -> SectionRegistry:
    """Load a registry from a JSON file for tests/tools."""
    raw = json.loads(Path(path).read_text(encoding="utf-8-sig"))
    if not isinstance(raw, dict):
        raise RegistryError("Registry root must be a JSON object", path=str(path))
    return registry_from_dict(raw)


def _validate_declarations(registry: SectionRegistry) -> None:
    """Validate ids, group membership and edge endpoints."""
    section_ids: set[str] = set()
    for section in registry.sections:
        if section.id in section_ids:
            raise RegistryError("Duplicate section id", section_id=section.id)
        section_ids.add(section.id)

    group_ids: set[str] = set()
    for group in registry.toggle_groups:
        if group.id in group_ids:
            raise RegistryError("Duplicate toggle group id", group_id=group.id)
        if group.id in section_ids:
            raise RegistryError("Toggle group id collides with a section id", group_id=group.id)
        group_ids.add(group.id)
        for member in group.members:
            if member not in section_ids:
                raise RegistryError("Toggle group has unknown member", group_id=group.id, member_id=member)
        if group.default not in group.members:
            raise RegistryError("Toggle group default is not a member", group_id=group.id, member_id=group.default)
        for member in group.detection_order:
            if member not in group.members:
                raise RegistryError("Detection order names a non-member", group_id=group.id, member_id=member)

    if registry.entry not in section_ids:
        raise RegistryError("Unknown entry section", section_id=registry.entry)

    known = section_ids | group_ids
    for edge in registry.edges:
        if edge.source not in known:
            raise RegistryError("Unlock edge has unknown source", source=edge.source)
        if not MIN_RATING <= edge.threshold <= MAX_RATING:
            raise RegistryError("Unlock edge threshold out of range", source=edge.source, threshold=edge.threshold)
        for target in edge.targets:
            if target not in known:
                raise RegistryError("Unlock edge has unknown target", source=edge.source, target=target)


def _validate_unlock_graph(registry: SectionRegistry) -> None:
    """Validate that the unlock graph, including group membership, has no cycles."""
    successors: dict[str, list[str]] = {}
    for edge in registry.edges:
        successors.setdefault(edge.source, []).extend(edge.targets)
    for group in registry.toggle_groups:
        successors.setdefault(group.id, []).extend(group.members)

    visiting: set[str] = set()
    visited: set[str] = set()

    def visit(node: str, path: list[str]) -> None:
        if node in visited:
            return
        if node in visiting:
            cycle_start = path.index(node)
            cycle_path = path[cycle_start:] + [node]
            raise RegistryError(f"Circular unlock dependency detected: {' -> '.join(cycle_path)}")

        visiting.add(node)
        path.append(node)
        for successor in successors.get(node, []):
            visit(successor, path)
        path.pop()
        visiting.remove(node)
        visited.add(node)

    for node in list(successors):
        visit(node, [])
