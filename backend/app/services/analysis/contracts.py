"""Shared types for the feedback analysis engine."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class AnalysisScope:
    """One organizational unit, optionally narrowed to a single survey."""

    unit_id: int
    survey_id: int | None = None

    def __str__(self) -> str:
        if self.survey_id is None:
            return f"unit={self.unit_id}"
        return f"unit={self.unit_id} survey={self.survey_id}"


class BatchPersistError(RuntimeError):
    """Writing a batch of segments failed; nothing from the batch was kept."""


class JobConflictError(RuntimeError):
    """A run for the scope is already active, or the scope is busy resetting."""


class ScopeNotFoundError(LookupError):
    """The scope's organizational unit does not exist."""
