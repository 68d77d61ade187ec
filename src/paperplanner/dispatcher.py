"""Single ownership boundary for planner state.

Every operation builds a new `PlannerState` from the current one, re-derives
visibility for every section and only then replaces the held state. An
operation that raises leaves the previous state in place.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import replace

from .errors import (
    DuplicateRequestError,
    ImportFailedError,
    InvalidInputError,
    InvalidSnapshotError,
    OperationPendingError,
    UnknownSectionError,
    UnknownToggleError,
)
from .export import render_markdown
from .models import (
    COMPLETION_STATUSES,
    MAX_RATING,
    MIN_RATING,
    ChatMessage,
    ExportProjection,
    FeedbackRequest,
    FeedbackResult,
    PlannerState,
    Section,
    SectionRegistry,
)
from .persistence import decode_snapshot, encode_snapshot, imported_state, initial_state
from .registry import load_registry
from .visibility import apply_visibility

logger = logging.getLogger(__name__)

OPERATIONS = ("import", "export", "review", "chat")
CHAT_ROLES = ("user", "assistant")
CHAT_FAILURE_REPLY = "I'm sorry, I encountered an error processing your message. Please try again."

FeedbackClient = Callable[[FeedbackRequest], FeedbackResult | Mapping[str, object]]
ImportClient = Callable[[str], Mapping[str, object]]
ChatClient = Callable[[str, tuple[ChatMessage, ...], dict[str, str]], str]


class MutationDispatcher:
    """Owns planner state and exposes the operations that change it."""

    def __init__(self, registry: SectionRegistry | None = None) -> None:
        """Start from a fresh plan for `registry` (the bundled one by default)."""
        self.registry = registry if registry is not None else load_registry()
        self._state = initial_state(self.registry)
        self._awaiting_feedback: set[str] = set()
        self._pending: dict[str, int] = {}

    @property
    def state(self) -> PlannerState:
        """Return the current immutable state."""
        return self._state

    def section(self, section_id: str) -> Section:
        """Return one section's current state."""
        return self._require_section(section_id)

    # --- pending flags -------------------------------------------------

    def is_awaiting_feedback(self, section_id: str) -> bool:
        """Return whether a feedback request for the section is outstanding."""
        return section_id in self._awaiting_feedback

    @property
    def pending_operations(self) -> frozenset[str]:
        """Return names of operations currently in flight."""
        return frozenset(name for name, count in self._pending.items() if count > 0)

    @property
    def any_pending(self) -> bool:
        """Return whether any feedback request or tracked operation is outstanding."""
        return bool(self._awaiting_feedback) or bool(self.pending_operations)

    @contextmanager
    def track_operation(self, name: str) -> Iterator[None]:
        """Mark an external operation as pending for the duration of the block."""
        if name not in OPERATIONS:
            raise InvalidInputError("Unknown operation", operation=name)
        self._pending[name] = self._pending.get(name, 0) + 1
        try:
            yield
        finally:
            self._pending[name] -= 1

    # --- section edits -------------------------------------------------

    def set_content(self, section_id: str, text: str) -> PlannerState:
        """Replace a section's content and mark existing feedback as stale."""
        section = self._require_section(section_id)
        if not isinstance(text, str):
            raise InvalidInputError("Section content must be text", section_id=section_id)
        tick = self._state.clock + 1
        updated = replace(
            section,
            content=text,
            last_edit_at=tick,
            edited_since_feedback=section.feedback_rating is not None,
        )
        return self._commit(self._with_section(updated, clock=tick), "set_content")

    def toggle_minimize(self, section_id: str) -> PlannerState:
        """Flip a section between minimized and expanded."""
        section = self._require_section(section_id)
        updated = replace(section, is_minimized=not section.is_minimized)
        return self._commit(self._with_section(updated), "toggle_minimize")

    def expand_all(self) -> PlannerState:
        """Expand every section."""
        sections = {key: replace(section, is_minimized=False) for key, section in self._state.sections.items()}
        return self._commit(replace(self._state, sections=sections), "expand_all")

    def set_active_toggle(self, group_id: str, member_id: str) -> PlannerState:
        """Switch the active member of a toggle group."""
        group = self.registry.get_group(group_id)
        if group is None:
            raise UnknownToggleError(group_id)
        if member_id not in group.members:
            raise UnknownToggleError(group_id, member_id)
        toggles = {**self._state.active_toggles, group_id: member_id}
        return self._commit(replace(self._state, active_toggles=toggles), "set_active_toggle")

    def set_feedback(self, section_id: str, rating: int, text: str = "") -> PlannerState:
        """Record a rating and feedback text for a section."""
        self._require_section(section_id)
        return self._apply_feedback(section_id, FeedbackResult(rating=rating, feedback_text=text))

    def set_pro_mode(self, enabled: bool) -> PlannerState:
        """Enable or disable pro mode, which bypasses all gating."""
        return self._commit(replace(self._state, pro_mode=bool(enabled)), "set_pro_mode")

    # --- whole-state replacement ---------------------------------------

    def reset_state(self) -> PlannerState:
        """Restore the initial plan."""
        self._ensure_idle("reset the plan")
        self._state = initial_state(self.registry)
        logger.info("Planner state reset")
        return self._state

    def load_snapshot(self, raw: object) -> PlannerState:
        """Replace state with a decoded (and, if needed, migrated) snapshot."""
        self._ensure_idle("load a snapshot")
        state = decode_snapshot(raw, self.registry)
        logger.info("Loaded snapshot with %d visible sections", len(state.visible_section_ids))
        return self._commit(state, "load_snapshot")

    def load_imported_fields(self, field_map: Mapping[str, object]) -> PlannerState:
        """Replace state with content from an import-service field map."""
        self._ensure_idle("load imported content")
        state = imported_state(dict(field_map), self.registry)
        return self._commit(state, "load_imported_fields")

    def run_import(self, document_text: str, client: ImportClient) -> PlannerState:
        """Ask the import service for a field map and load it.

        Any failure aborts the whole import and leaves the current plan as it was.
        """
        self._ensure_idle("import a document")
        with self.track_operation("import"):
            try:
                fields = client(document_text)
            except Exception as exc:
                logger.warning("Import service failed: %s", exc)
                raise ImportFailedError("Import service failed", reason=str(exc)) from exc
        if not isinstance(fields, Mapping):
            raise ImportFailedError("Import service returned a non-object result", type=type(fields).__name__)
        try:
            return self.load_imported_fields(fields)
        except InvalidSnapshotError as exc:
            raise ImportFailedError("Import service returned an unusable field map", reason=exc.message) from exc

    def snapshot(self) -> PlannerState:
        """Return the current state (immutable, safe to keep)."""
        return self._state

    def encode(self) -> dict[str, object]:
        """Return the current state as a snapshot payload."""
        return encode_snapshot(self._state)

    # --- feedback service boundary -------------------------------------

    def begin_feedback(self, section_id: str) -> FeedbackRequest:
        """Mark a section as awaiting feedback and capture the request input."""
        section = self._require_section(section_id)
        if section_id in self._awaiting_feedback:
            raise DuplicateRequestError("Feedback already requested", section_id=section_id)
        definition = self.registry.get_section(section_id)
        instructions = definition.instructions if definition is not None else ()
        self._awaiting_feedback.add(section_id)
        logger.debug("Feedback requested for %s", section_id)
        return FeedbackRequest(section_id=section_id, content=section.content, original_instructions=instructions)

    def complete_feedback(
        self, request: FeedbackRequest, result: FeedbackResult | Mapping[str, object]
    ) -> PlannerState:
        """Apply a feedback response to the section it was requested for.

        If the section was edited after the request captured its content, the
        rating is recorded but the section stays marked as edited.
        """
        self._finish_request(request)
        try:
            parsed = parse_feedback_result(result)
        except InvalidInputError as exc:
            return self._record_feedback_error(request.section_id, exc.message)
        rated_content = self._require_section(request.section_id).content == request.content
        return self._apply_feedback(request.section_id, parsed, stale=not rated_content)

    def fail_feedback(self, request: FeedbackRequest, error: BaseException | str) -> PlannerState:
        """Record a failed feedback request as a local error on its section."""
        self._finish_request(request)
        message = str(error) or "Feedback request failed"
        return self._record_feedback_error(request.section_id, message)

    def request_feedback(self, section_id: str, client: FeedbackClient) -> PlannerState:
        """Run one feedback round-trip against `client`."""
        request = self.begin_feedback(section_id)
        try:
            result = client(request)
        except Exception as exc:
            logger.warning("Feedback service failed for %s: %s", section_id, exc)
            return self.fail_feedback(request, exc)
        return self.complete_feedback(request, result)

    # --- chat ----------------------------------------------------------

    def add_chat_message(self, section_id: str, role: str, content: str) -> PlannerState:
        """Append one message to a section's chat history."""
        self._require_section(section_id)
        if role not in CHAT_ROLES:
            raise InvalidInputError("Unknown chat role", role=role)
        tick = self._state.clock + 1
        history = self._state.chat_history.get(section_id, ())
        message = ChatMessage(role=role, content=content, at=tick)
        chat_history = {**self._state.chat_history, section_id: history + (message,)}
        return self._commit(replace(self._state, chat_history=chat_history, clock=tick), "add_chat_message")

    def clear_chat(self, section_id: str) -> PlannerState:
        """Drop a section's chat history."""
        self._require_section(section_id)
        chat_history = {key: value for key, value in self._state.chat_history.items() if key != section_id}
        return self._commit(replace(self._state, chat_history=chat_history), "clear_chat")

    def send_chat_message(self, section_id: str, text: str, client: ChatClient) -> PlannerState:
        """Send a user message to the chat service and record the reply."""
        self._require_section(section_id)
        if not text.strip():
            raise InvalidInputError("Chat message is empty", section_id=section_id)
        self.add_chat_message(section_id, "user", text)
        with self.track_operation("chat"):
            history = self._state.chat_history.get(section_id, ())
            try:
                reply = client(section_id, history, self.export_projection().contents)
            except Exception as exc:
                logger.warning("Chat service failed for %s: %s", section_id, exc)
                reply = CHAT_FAILURE_REPLY
        return self.add_chat_message(section_id, "assistant", reply)

    # --- export --------------------------------------------------------

    def export_projection(self) -> ExportProjection:
        """Return the read-only content view for the export service."""
        return ExportProjection(
            contents={key: section.content for key, section in self._state.sections.items()},
            chat_history=dict(self._state.chat_history),
            active_toggles=dict(self._state.active_toggles),
        )

    def export_markdown(self) -> str:
        """Render the plan as a markdown document."""
        with self.track_operation("export"):
            return render_markdown(self.export_projection(), self.registry)

    # --- internals -----------------------------------------------------

    def _require_section(self, section_id: str) -> Section:
        section = self._state.sections.get(section_id)
        if section is None:
            raise UnknownSectionError(section_id)
        return section

    def _with_section(self, section: Section, clock: int | None = None) -> PlannerState:
        sections = {**self._state.sections, section.id: section}
        return replace(self._state, sections=sections, clock=self._state.clock if clock is None else clock)

    def _apply_feedback(self, section_id: str, result: FeedbackResult, stale: bool = False) -> PlannerState:
        _validate_feedback(result)
        section = self._require_section(section_id)
        tick = self._state.clock + 1
        updated = replace(
            section,
            feedback_rating=result.rating,
            feedback=result,
            feedback_error=None,
            edited_since_feedback=stale,
        )
        state = self._with_section(updated, clock=tick)
        state = replace(state, scores={**state.scores, section_id: result.rating})
        return self._commit(state, "set_feedback")

    def _record_feedback_error(self, section_id: str, message: str) -> PlannerState:
        section = self._require_section(section_id)
        logger.warning("Feedback for %s failed: %s", section_id, message)
        return self._commit(self._with_section(replace(section, feedback_error=message)), "feedback_error")

    def _finish_request(self, request: FeedbackRequest) -> None:
        if request.section_id not in self._awaiting_feedback:
            raise InvalidInputError("No feedback request outstanding", section_id=request.section_id)
        self._awaiting_feedback.discard(request.section_id)

    def _ensure_idle(self, action: str) -> None:
        if self.any_pending:
            pending = sorted(self.pending_operations | {f"feedback:{key}" for key in self._awaiting_feedback})
            raise OperationPendingError(f"Cannot {action} while operations are pending", pending=pending)

    def _commit(self, state: PlannerState, action: str) -> PlannerState:
        resolved = apply_visibility(state, self.registry)
        self._state = resolved
        logger.debug("Applied %s; visible sections: %s", action, resolved.visible_section_ids)
        return resolved


def parse_feedback_result(raw: FeedbackResult | Mapping[str, object]) -> FeedbackResult:
    """Validate a feedback-service response given as a result or a JSON object."""
    if isinstance(raw, FeedbackResult):
        _validate_feedback(raw)
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidInputError("Feedback response must be an object", type=type(raw).__name__)
    rating = raw.get("rating")
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise InvalidInputError("Feedback rating must be an integer", value=rating)
    result = FeedbackResult(
        rating=rating,
        feedback_text=str(raw.get("feedbackText", raw.get("feedback_text", ""))),
        edited_instructions=str(raw.get("editedInstructions", raw.get("edited_instructions", ""))),
        completion_status=str(raw.get("completionStatus", raw.get("completion_status", "progress"))),
    )
    _validate_feedback(result)
    return result


def _validate_feedback(result: FeedbackResult) -> None:
    """Reject ratings outside 0..10 and unknown completion statuses."""
    rating = result.rating
    if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
        raise InvalidInputError("Rating must be an integer from 0 to 10", value=rating)
    if result.completion_status not in COMPLETION_STATUSES:
        raise InvalidInputError("Unknown completion status", value=result.completion_status)
