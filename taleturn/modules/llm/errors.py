from __future__ import annotations


class GenerationError(RuntimeError):
    """Base class for failures of the generation call path."""


class UpstreamTimeout(GenerationError):
    """Raised when a single generation call exceeds its hard timeout."""

    def __init__(self, message: str, *, timeout_s: float, attempts: int = 1):
        super().__init__(message)
        self.timeout_s = float(timeout_s)
        self.attempts = int(attempts)


class UpstreamFailure(GenerationError):
    """Raised when transient failures exhaust the retry budget."""

    def __init__(self, message: str, *, attempts: int, last_error: Exception | None = None):
        super().__init__(message)
        self.attempts = int(attempts)
        self.last_error = last_error


class MalformedOutput(GenerationError):
    """Raised when the output and its single repair both fail to parse."""

    def __init__(self, message: str, *, error_kind: str, raw_snippet: str | None = None):
        super().__init__(message)
        self.error_kind = str(error_kind)
        self.raw_snippet = raw_snippet


class OutputParseError(ValueError):
    def __init__(self, message: str, *, error_kind: str, raw_snippet: str | None = None):
        super().__init__(message)
        self.error_kind = str(error_kind)
        self.raw_snippet = raw_snippet


class EmptyCompletionError(RuntimeError):
    """Provider answered without any content."""


OUTPUT_ERROR_JSON_PARSE = "OUTPUT_JSON_PARSE"
OUTPUT_ERROR_SCHEMA_VALIDATE = "OUTPUT_SCHEMA_VALIDATE"
OUTPUT_ERROR_SHAPE = "OUTPUT_SHAPE"
