"""Core domain models for the section planner.

All models are frozen. `PlannerState` is replaced wholesale by every
operation; the mappings it holds are read-only copies taken at construction.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

COMPLETION_STATUSES = ("unstarted", "progress", "complete")
MIN_RATING = 0
MAX_RATING = 10


@dataclass(frozen=True)
class Instruction:
    """One instruction bullet shown with a section."""

    id: str
    title: str
    instruction: str


@dataclass(frozen=True)
class SectionDefinition:
    """Static declaration of one section."""

    id: str
    title: str
    placeholder: str
    intro: str
    instructions: tuple[Instruction, ...]
    toggle_group: str | None = None


@dataclass(frozen=True)
class ToggleGroupDefinition:
    """Mutually-exclusive alternative sections."""

    id: str
    title: str
    members: tuple[str, ...]
    default: str
    detection_order: tuple[str, ...]


@dataclass(frozen=True)
class UnlockEdge:
    """Reveal `targets` once `source` scores at least `threshold`.

    `source` is a section id or a toggle group id. A group source stands for
    whichever member is active.
    """

    source: str
    threshold: int
    targets: tuple[str, ...]


@dataclass(frozen=True)
class SectionRegistry:
    """Read-only declaration of sections, toggle groups and the unlock graph."""

    entry: str
    sections: tuple[SectionDefinition, ...]
    toggle_groups: tuple[ToggleGroupDefinition, ...]
    edges: tuple[UnlockEdge, ...]

    @property
    def section_ids(self) -> tuple[str, ...]:
        return tuple(section.id for section in self.sections)

    @property
    def group_ids(self) -> tuple[str, ...]:
        return tuple(group.id for group in self.toggle_groups)

    def get_section(self, section_id: str) -> SectionDefinition | None:
        for section in self.sections:
            if section.id == section_id:
                return section
        return None

    def get_group(self, group_id: str) -> ToggleGroupDefinition | None:
        for group in self.toggle_groups:
            if group.id == group_id:
                return group
        return None

    def default_toggles(self) -> dict[str, str]:
        """Return group id -> declared default member."""
        return {group.id: group.default for group in self.toggle_groups}


@dataclass(frozen=True)
class FeedbackResult:
    """Output of the external feedback service for one section."""

    rating: int
    feedback_text: str = ""
    edited_instructions: str = ""
    completion_status: str = "progress"


@dataclass(frozen=True)
class FeedbackRequest:
    """Input captured for the feedback service when a request is dispatched."""

    section_id: str
    content: str
    original_instructions: tuple[Instruction, ...]


@dataclass(frozen=True)
class ChatMessage:
    """One entry of a section's chat history."""

    role: str
    content: str
    at: int


@dataclass(frozen=True)
class Section:
    """Runtime state of one section."""

    id: str
    title: str
    content: str
    placeholder: str
    is_minimized: bool
    is_visible: bool
    feedback_rating: int | None = None
    edited_since_feedback: bool = False
    last_edit_at: int = 0
    toggle_group: str | None = None
    feedback: FeedbackResult | None = None
    feedback_error: str | None = None


@dataclass(frozen=True)
class PlannerState:
    """Complete planner state; the in-memory form of a snapshot."""

    sections: Mapping[str, Section]
    active_toggles: Mapping[str, str]
    scores: Mapping[str, int]
    pro_mode: bool
    chat_history: Mapping[str, tuple[ChatMessage, ...]]
    unlocked_groups: frozenset[str]
    clock: int = 0

    def __post_init__(self) -> None:
        # Each mapping is copied and exposed read-only; a kept state never changes.
        for name in ("sections", "active_toggles", "scores", "chat_history"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))
        object.__setattr__(self, "unlocked_groups", frozenset(self.unlocked_groups))

    @property
    def visible_section_ids(self) -> list[str]:
        """Return visible section ids in declaration order."""
        return [section_id for section_id, section in self.sections.items() if section.is_visible]


@dataclass(frozen=True)
class ExportProjection:
    """Read-only view handed to the export service."""

    contents: dict[str, str]
    chat_history: Mapping[str, tuple[ChatMessage, ...]]
    active_toggles: Mapping[str, str]
