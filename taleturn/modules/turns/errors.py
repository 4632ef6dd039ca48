from __future__ import annotations


class ValidationFailed(ValueError):
    """Generator output parsed but failed shape or semantic checks."""

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.field = field


class StateConflict(RuntimeError):
    """Session turn counter moved while this turn was being applied."""
