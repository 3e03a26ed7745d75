from __future__ import annotations


class RalphError(RuntimeError):
    """Base class for supervisor errors surfaced to callers."""


class DocumentError(RalphError):
    """Raised when a protocol document cannot be read or written."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class StateError(RalphError):
    """Raised when a persisted JSON state file cannot be updated."""


class RegistryError(RalphError):
    """Raised when a session record is used inconsistently."""


class ProtocolViolation(RalphError):
    """Raised when a session breaks the attempt protocol."""


class ReadinessError(RalphError):
    """Raised when supervision cannot start because preflight checks failed."""

    def __init__(self, message: str, *, diagnostics: list[str] | None = None) -> None:
        super().__init__(message)
        self.diagnostics = list(diagnostics or [])


class QuestionTimeout(RalphError):
    """Raised when nobody answered a question before its timeout."""

    def __init__(self, message: str, *, question_id: str) -> None:
        super().__init__(message)
        self.question_id = question_id


class QuestionCancelled(RalphError):
    """Raised in a waiting ask when supervision stops before an answer arrives."""

    def __init__(self, message: str, *, question_id: str) -> None:
        super().__init__(message)
        self.question_id = question_id


class UnknownQuestion(RalphError):
    """Raised when responding to a question id that was never asked."""

    def __init__(self, message: str, *, unanswered: list[str]) -> None:
        super().__init__(message)
        self.unanswered = list(unanswered)


class ReviewRejected(RalphError):
    """Raised when a review run is not allowed right now."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class SessionHostError(RalphError):
    """Raised when the session host fails to create or drive a session."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.retriable = retriable
