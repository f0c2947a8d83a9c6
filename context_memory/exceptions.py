"""Engine-specific exceptions."""

from typing import Optional


class ContextMemoryError(Exception):
    """Base exception for context memory operations."""


class IgnoredContext(ContextMemoryError):
    """Context ID matched a configured ignore pattern."""

    def __init__(self, context_id: str, pattern: str) -> None:
        self.context_id = context_id
        self.pattern = pattern
        super().__init__(f'Context ID "{context_id}" matches ignore pattern "{pattern}"')


class SubsystemUnavailable(ContextMemoryError):
    """Vector or graph backend failed to initialize."""

    def __init__(self, subsystem: str, cause: Optional[BaseException] = None) -> None:
        self.subsystem = subsystem
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{subsystem} subsystem unavailable{detail}")


class SummarizationFailed(ContextMemoryError):
    """Summarizer returned no usable text."""

    def __init__(self, context_id: str, reason: str) -> None:
        self.context_id = context_id
        self.reason = reason
        super().__init__(f"Summarization failed for {context_id}: {reason}")


class NotFound(ContextMemoryError):
    """Requested context or meta-summary does not exist."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")
