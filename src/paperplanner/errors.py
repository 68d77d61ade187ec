"""Exception hierarchy for planner operations.

Every error raised by the state engine leaves the current state untouched.

Hierarchy:
    PlannerError
    ├── UnknownSectionError (KeyError)
    ├── UnknownToggleError (KeyError)
    ├── InvalidInputError (ValueError)
    ├── InvalidSnapshotError (ValueError)
    ├── RegistryError (ValueError)
    ├── OperationPendingError
    ├── DuplicateRequestError
    └── ImportFailedError
"""

from __future__ import annotations

from typing import Any


class PlannerError(Exception):
    """Base exception for planner errors.

    Attributes:
        message: Human-readable error description.
        context: Extra identifiers (section ids, versions) shown in the message.
    """

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.context:
            context_str = ", ".join(f"{key}={value!r}" for key, value in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message.
        return self._format_message()


class UnknownSectionError(PlannerError, KeyError):
    """A section id that the registry does not declare."""

    def __init__(self, section_id: str) -> None:
        self.section_id = section_id
        super().__init__("Unknown section", section_id=section_id)


class UnknownToggleError(PlannerError, KeyError):
    """A toggle group id or member id that the registry does not declare."""

    def __init__(self, group_id: str, member_id: str | None = None) -> None:
        self.group_id = group_id
        self.member_id = member_id
        if member_id is None:
            super().__init__("Unknown toggle group", group_id=group_id)
        else:
            super().__init__("Not a member of toggle group", group_id=group_id, member_id=member_id)


class InvalidInputError(PlannerError, ValueError):
    """An operation argument outside its accepted domain."""


class InvalidSnapshotError(PlannerError, ValueError):
    """A snapshot payload that cannot be decoded or migrated."""


class RegistryError(PlannerError, ValueError):
    """Invalid registry declaration, including an unlock graph that fails to settle."""


class OperationPendingError(PlannerError):
    """A destructive operation was attempted while an external call is outstanding."""


class DuplicateRequestError(PlannerError):
    """A feedback request for a section that is already awaiting feedback."""


class ImportFailedError(PlannerError):
    """The import service failed or returned an unusable field map."""
