"""Versioned snapshot encoding, legacy migration and import toggle detection.

Schema history:

- v0: bare field map ``{section_id: content}`` (flat saves, raw import maps).
- v1: ``{"userInputs": {...}, "chatMessages": {...}}`` or the older
  ``{"sections": {id: content | {"content": ...}}}`` wrapper, optionally
  carrying ``detectedToggles``.
- v2: the canonical snapshot written by :func:`encode_snapshot`.

Loading an older payload runs the ordered steps in ``MIGRATIONS`` one version
at a time; every step emits a payload of the next version.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import replace
from typing import cast

from .errors import InvalidSnapshotError
from .models import (
    COMPLETION_STATUSES,
    MAX_RATING,
    MIN_RATING,
    ChatMessage,
    FeedbackResult,
    PlannerState,
    Section,
    SectionRegistry,
)
from .visibility import apply_visibility

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
REQUIRED_KEYS = ("sections", "toggleGroups", "scores", "proMode")
_INSTRUCTION_COMMENT = re.compile(r"^[ \t]*// (?:Choose either|Include EXACTLY ONE).*$", re.MULTILINE)

Payload = dict[str, object]


def fresh_sections(registry: SectionRegistry) -> dict[str, Section]:
    """Sections for a fresh start: placeholders, only the entry section expanded."""
    return {
        definition.id: Section(
            id=definition.id,
            title=definition.title,
            content=definition.placeholder,
            placeholder=definition.placeholder,
            is_minimized=definition.id != registry.entry,
            is_visible=definition.id == registry.entry,
            toggle_group=definition.toggle_group,
        )
        for definition in registry.sections
    }


def expanded_sections(registry: SectionRegistry, contents: dict[str, str]) -> dict[str, Section]:
    """Sections for a manual or import load: loaded content, every section expanded."""
    sections = fresh_sections(registry)
    return {
        section_id: replace(section, content=contents.get(section_id, section.content), is_minimized=False)
        for section_id, section in sections.items()
    }


def initial_state(registry: SectionRegistry) -> PlannerState:
    """Return the state of a new, empty plan."""
    state = PlannerState(
        sections=fresh_sections(registry),
        active_toggles=registry.default_toggles(),
        scores={},
        pro_mode=False,
        chat_history={},
        unlocked_groups=frozenset(),
        clock=0,
    )
    return apply_visibility(state, registry)


def encode_snapshot(state: PlannerState) -> Payload:
    """Encode a state as a JSON-compatible snapshot of the current schema."""
    sections: dict[str, object] = {}
    for section_id, section in state.sections.items():
        sections[section_id] = {
            "content": section.content,
            "isMinimized": section.is_minimized,
            "feedbackRating": section.feedback_rating,
            "feedback": _encode_feedback(section.feedback),
            "feedbackError": section.feedback_error,
            "editedSinceFeedback": section.edited_since_feedback,
            "lastEditAt": section.last_edit_at,
        }
    return {
        "schemaVersion": SCHEMA_VERSION,
        "sections": sections,
        "toggleGroups": dict(state.active_toggles),
        "scores": dict(state.scores),
        "proMode": state.pro_mode,
        "chatHistory": {
            section_id: [{"role": item.role, "content": item.content, "at": item.at} for item in messages]
            for section_id, messages in state.chat_history.items()
        },
        "clock": state.clock,
    }


def decode_snapshot(raw: object, registry: SectionRegistry) -> PlannerState:
    """Decode any supported snapshot version into a state with fresh visibility."""
    if not isinstance(raw, dict):
        raise InvalidSnapshotError("Snapshot root must be an object", type=type(raw).__name__)
    payload = cast(Payload, raw)
    version = detect_schema_version(payload, registry)
    if version > SCHEMA_VERSION:
        raise InvalidSnapshotError(
            f"Snapshot schema version {version} is newer than supported {SCHEMA_VERSION}.",
        )

    steps = dict(MIGRATIONS)
    while version < SCHEMA_VERSION:
        step = steps[version]
        logger.info("Migrating snapshot from schema v%d to v%d", version, version + 1)
        payload = step(payload, registry)
        version += 1
        if _coerce_int(payload.get("schemaVersion")) != version:
            raise InvalidSnapshotError("Migration step produced an unexpected version", expected=version)

    return _decode_current(payload, registry)


def detect_schema_version(raw: Payload, registry: SectionRegistry) -> int:
    """Return the schema version of a payload, recognising unversioned legacy shapes."""
    if "schemaVersion" in raw:
        version_raw = raw.get("schemaVersion")
        version = _coerce_int(version_raw)
        if version is None or isinstance(version_raw, bool) or version < 0:
            raise InvalidSnapshotError("Snapshot has invalid schemaVersion", value=raw.get("schemaVersion"))
        return version
    if isinstance(raw.get("userInputs"), dict) or isinstance(raw.get("sections"), dict):
        return 1
    if any(section_id in raw for section_id in registry.section_ids):
        return 0
    raise InvalidSnapshotError("Snapshot has no recognized content fields", keys=sorted(raw)[:10])


def detect_toggle_members(field_map: dict[str, object], registry: SectionRegistry) -> dict[str, str]:
    """Infer the populated member of each toggle group from an import field map.

    For each group the first member of its ``detection_order`` whose key is
    present wins, whatever its value. With no member present the group's
    declared default is used.
    """
    detected: dict[str, str] = {}
    for group in registry.toggle_groups:
        chosen = group.default
        for member in group.detection_order:
            if member in field_map:
                chosen = member
                break
        detected[group.id] = chosen
    return detected


def normalize_import_fields(raw: object, registry: SectionRegistry) -> dict[str, str]:
    """Normalize an import-service field map to ``{section_id: text}``.

    Unknown keys are dropped, values are coerced to text and the service's
    instructional comment lines are stripped. Keys are kept even when empty
    so toggle detection still sees them.
    """
    if not isinstance(raw, dict):
        raise InvalidSnapshotError("Import field map must be an object", type=type(raw).__name__)
    known = set(registry.section_ids)
    fields: dict[str, str] = {}
    for key, value in cast(dict[object, object], raw).items():
        if not isinstance(key, str) or key not in known:
            logger.debug("Dropping unknown import field %r", key)
            continue
        text = "" if value is None else value if isinstance(value, str) else str(value)
        fields[key] = _INSTRUCTION_COMMENT.sub("", text).strip()
    return fields


def imported_state(raw_fields: object, registry: SectionRegistry) -> PlannerState:
    """Build a loaded state from an import-service field map."""
    fields = normalize_import_fields(raw_fields, registry)
    toggles = detect_toggle_members(cast(dict[str, object], fields), registry)
    logger.info("Detected toggle members for import: %s", toggles)
    payload: Payload = {
        "schemaVersion": 1,
        "userInputs": fields,
        "chatMessages": {},
        "detectedToggles": toggles,
    }
    return decode_snapshot(payload, registry)


def _migrate_v0_to_v1(raw: Payload, registry: SectionRegistry) -> Payload:
    """Wrap a bare field map into the v1 ``userInputs`` shape."""
    inputs = {key: value for key, value in raw.items() if key in registry.section_ids}
    migrated: Payload = {"schemaVersion": 1, "userInputs": inputs, "chatMessages": {}}
    if isinstance(raw.get("detectedToggles"), dict):
        migrated["detectedToggles"] = raw["detectedToggles"]
    return migrated


def _migrate_v1_to_v2(raw: Payload, registry: SectionRegistry) -> Payload:
    """Build a canonical snapshot from v1 content.

    Loaded sections start expanded, scores start empty and pro mode is on so
    the loaded content is visible straight away.
    """
    contents = _v1_contents(raw, registry)
    if not contents:
        raise InvalidSnapshotError("Snapshot has no recognized content fields")

    toggles = registry.default_toggles()
    detected_raw = raw.get("detectedToggles")
    if isinstance(detected_raw, dict):
        for group in registry.toggle_groups:
            member = cast(dict[str, object], detected_raw).get(group.id)
            if member is None:
                continue
            if member in group.members:
                toggles[group.id] = cast(str, member)
            else:
                logger.warning("Ignoring detected member %r for toggle group %s", member, group.id)

    state = PlannerState(
        sections=expanded_sections(registry, contents),
        active_toggles=toggles,
        scores={},
        pro_mode=True,
        chat_history=_decode_chat(raw.get("chatMessages"), registry, timestamp_key=None),
        unlocked_groups=frozenset(),
        clock=0,
    )
    return encode_snapshot(state)


MIGRATIONS: tuple[tuple[int, Callable[[Payload, SectionRegistry], Payload]], ...] = (
    (0, _migrate_v0_to_v1),
    (1, _migrate_v1_to_v2),
)


def _v1_contents(raw: Payload, registry: SectionRegistry) -> dict[str, str]:
    """Extract ``{section_id: content}`` from either v1 wrapper."""
    source = raw.get("userInputs")
    if not isinstance(source, dict):
        source = raw.get("sections")
    if not isinstance(source, dict):
        return {}
    contents: dict[str, str] = {}
    for section_id in registry.section_ids:
        if section_id not in source:
            continue
        value = source[section_id]
        if isinstance(value, dict):
            value = cast(dict[str, object], value).get("content", "")
        if isinstance(value, str):
            contents[section_id] = value
        elif value is None:
            contents[section_id] = ""
        else:
            logger.warning("Skipping non-text content for section %s", section_id)
    return contents


def _decode_current(raw: Payload, registry: SectionRegistry) -> PlannerState:
    """Strictly validate a current-schema payload and build the state."""
    missing = [key for key in REQUIRED_KEYS if key not in raw]
    if missing:
        raise InvalidSnapshotError("Snapshot is missing required keys", missing=missing)

    sections_raw = raw["sections"]
    if not isinstance(sections_raw, dict):
        raise InvalidSnapshotError("Snapshot sections must be an object")
    sections_map = cast(dict[str, object], sections_raw)
    for key in sections_map:
        if key not in registry.section_ids:
            logger.warning("Skipping unknown section %r in snapshot", key)

    sections = fresh_sections(registry)
    for section_id, section in list(sections.items()):
        if section_id not in sections_map:
            logger.warning("Snapshot has no entry for section %s; using defaults", section_id)
            continue
        sections[section_id] = _decode_section(section, sections_map[section_id])

    active_toggles = _decode_toggles(raw["toggleGroups"], registry)
    scores = _decode_scores(raw["scores"], registry)
    for section_id, section in sections.items():
        if scores.get(section_id) != section.feedback_rating:
            raise InvalidSnapshotError(
                "Section rating disagrees with score map",
                section_id=section_id,
                rating=section.feedback_rating,
                score=scores.get(section_id),
            )
    pro_mode = raw["proMode"]
    if not isinstance(pro_mode, bool):
        raise InvalidSnapshotError("Snapshot proMode must be a boolean")

    chat_history = _decode_chat(raw.get("chatHistory"), registry, timestamp_key="at")
    clock = _coerce_int(raw.get("clock", 0))
    if clock is None or clock < 0:
        raise InvalidSnapshotError("Snapshot clock must be a non-negative integer")
    clock = max([clock] + [section.last_edit_at for section in sections.values()])

    state = PlannerState(
        sections=sections,
        active_toggles=active_toggles,
        scores=scores,
        pro_mode=pro_mode,
        chat_history=chat_history,
        unlocked_groups=frozenset(),
        clock=clock,
    )
    return apply_visibility(state, registry)


def _decode_section(default: Section, raw: object) -> Section:
    """Overlay one encoded section onto its registry defaults."""
    if not isinstance(raw, dict):
        raise InvalidSnapshotError("Section entry must be an object", section_id=default.id)
    item = cast(dict[str, object], raw)

    content = item.get("content", default.content)
    if not isinstance(content, str):
        raise InvalidSnapshotError("Section content must be text", section_id=default.id)
    is_minimized = item.get("isMinimized", default.is_minimized)
    if not isinstance(is_minimized, bool):
        raise InvalidSnapshotError("Section isMinimized must be a boolean", section_id=default.id)
    edited = item.get("editedSinceFeedback", False)
    if not isinstance(edited, bool):
        raise InvalidSnapshotError("Section editedSinceFeedback must be a boolean", section_id=default.id)
    last_edit_at = _coerce_int(item.get("lastEditAt", 0))
    if last_edit_at is None or last_edit_at < 0:
        raise InvalidSnapshotError("Section lastEditAt must be a non-negative integer", section_id=default.id)
    error = item.get("feedbackError")
    if error is not None and not isinstance(error, str):
        raise InvalidSnapshotError("Section feedbackError must be text", section_id=default.id)

    rating_raw = item.get("feedbackRating")
    rating = None if rating_raw is None else _validated_rating(rating_raw, default.id)
    return replace(
        default,
        content=content,
        is_minimized=is_minimized,
        feedback_rating=rating,
        edited_since_feedback=edited,
        last_edit_at=last_edit_at,
        feedback=_decode_feedback(item.get("feedback"), default.id),
        feedback_error=error,
    )


def _decode_toggles(raw: object, registry: SectionRegistry) -> dict[str, str]:
    """Validate toggle selections; every group ends with exactly one declared member."""
    if not isinstance(raw, dict):
        raise InvalidSnapshotError("Snapshot toggleGroups must be an object")
    selections = cast(dict[str, object], raw)
    toggles = registry.default_toggles()
    for key in selections:
        if registry.get_group(key) is None:
            logger.warning("Skipping unknown toggle group %r in snapshot", key)
    for group in registry.toggle_groups:
        if group.id not in selections:
            continue
        member = selections[group.id]
        if not isinstance(member, str) or member not in group.members:
            raise InvalidSnapshotError("Toggle group selection is not a member", group_id=group.id, member_id=member)
        toggles[group.id] = member
    return toggles


def _decode_scores(raw: object, registry: SectionRegistry) -> dict[str, int]:
    """Validate the score map."""
    if not isinstance(raw, dict):
        raise InvalidSnapshotError("Snapshot scores must be an object")
    scores: dict[str, int] = {}
    for section_id, value in cast(dict[str, object], raw).items():
        if section_id not in registry.section_ids:
            logger.warning("Skipping score for unknown section %r", section_id)
            continue
        scores[section_id] = _validated_rating(value, section_id)
    return scores


def _decode_chat(raw: object, registry: SectionRegistry, timestamp_key: str | None) -> dict[str, tuple[ChatMessage, ...]]:
    """Normalize chat history, skipping malformed entries."""
    if not isinstance(raw, dict):
        return {}
    history: dict[str, tuple[ChatMessage, ...]] = {}
    for section_id, messages in cast(dict[str, object], raw).items():
        if section_id not in registry.section_ids or not isinstance(messages, list):
            continue
        rows: list[ChatMessage] = []
        for entry in cast(list[object], messages):
            if not isinstance(entry, dict):
                continue
            message = cast(dict[str, object], entry)
            role = message.get("role")
            content = message.get("content")
            if not isinstance(role, str) or not isinstance(content, str):
                continue
            at = _coerce_int(message.get(timestamp_key, 0), default=0) if timestamp_key else 0
            rows.append(ChatMessage(role=role, content=content, at=max(0, at or 0)))
        if rows:
            history[section_id] = tuple(rows)
    return history


def _encode_feedback(feedback: FeedbackResult | None) -> dict[str, object] | None:
    if feedback is None:
        return None
    return {
        "rating": feedback.rating,
        "feedbackText": feedback.feedback_text,
        "editedInstructions": feedback.edited_instructions,
        "completionStatus": feedback.completion_status,
    }


def _decode_feedback(raw: object, section_id: str) -> FeedbackResult | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise InvalidSnapshotError("Section feedback must be an object", section_id=section_id)
    item = cast(dict[str, object], raw)
    status = item.get("completionStatus", "progress")
    if status not in COMPLETION_STATUSES:
        raise InvalidSnapshotError("Unknown feedback completion status", section_id=section_id, status=status)
    return FeedbackResult(
        rating=_validated_rating(item.get("rating"), section_id),
        feedback_text=str(item.get("feedbackText", "")),
        edited_instructions=str(item.get("editedInstructions", "")),
        completion_status=cast(str, status),
    )


def _validated_rating(value: object, section_id: str) -> int:
    """Return a rating in 0..10 or reject the snapshot."""
    rating = _coerce_int(value)
    if rating is None or isinstance(value, bool) or not MIN_RATING <= rating <= MAX_RATING:
        raise InvalidSnapshotError("Rating must be an integer from 0 to 10", section_id=section_id, value=value)
    return rating


def _coerce_int(value: object, default: int | None = None) -> int | None:
    """Coerce JSON scalars to int for snapshot normalization."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default
