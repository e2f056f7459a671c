"""Error taxonomy shared by every engine component.

``NotFound``, ``ValidationError`` and ``BusinessRuleViolation`` are terminal
and surfaced to callers. ``DependencyDegraded`` failures are caught at the
call site and replaced by a deterministic fallback.
"""
from __future__ import annotations

from typing import Any


class GapwatchError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str = "", details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}


class NotFound(GapwatchError):
    pass


class AssessmentNotFound(NotFound):
    def __init__(self, assessment_id: str) -> None:
        super().__init__(f"Assessment {assessment_id} not found", {"assessment_id": assessment_id})
        self.assessment_id = assessment_id


class GapNotFound(NotFound):
    def __init__(self, gap_id: str) -> None:
        super().__init__("Gap not found", {"gap_id": gap_id})
        self.gap_id = gap_id


class ExtensionNotFound(NotFound):
    def __init__(self, extension_id: str) -> None:
        super().__init__(f"Extension {extension_id} not found", {"extension_id": extension_id})
        self.extension_id = extension_id


class ValidationError(GapwatchError):
    """Malformed request: missing field, batch size, mismatched identifiers."""


class BusinessRuleViolation(GapwatchError):
    """Well-formed request rejected by a timeline business rule."""


class DependencyDegraded(GapwatchError):
    """An external collaborator failed or returned unusable output."""


class LLMCallError(DependencyDegraded):
    """LLM call failed or returned unparseable output."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class NotificationError(DependencyDegraded):
    pass


class VersionConflict(GapwatchError):
    """An optimistic write lost a race with a concurrent writer."""
