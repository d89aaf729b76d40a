"""
Exception hierarchy for the interview moderator.

Provider failures are split into single-call errors (which drive model
fallback) and terminal errors surfaced to the caller.
"""


class InterviewModeratorError(Exception):
    """Base class for all interview moderator errors."""


class ProviderError(InterviewModeratorError):
    """A single model provider call failed."""

    def __init__(self, message: str, model: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.model = model
        self.status_code = status_code


class ModelUnavailableError(ProviderError):
    """The requested model does not exist or is not served; try the next one."""


class MalformedResponse(InterviewModeratorError):
    """The provider replied but the payload did not parse or lacked required fields."""

    def __init__(self, message: str, model: str = "", missing_fields: list[str] | None = None) -> None:
        super().__init__(message)
        self.model = model
        self.missing_fields = missing_fields or []


class ProviderUnavailable(InterviewModeratorError):
    """Every candidate model failed for the triggering operation."""

    def __init__(self, message: str, attempted_models: list[str] | None = None) -> None:
        super().__init__(message)
        self.attempted_models = attempted_models or []


class QuestionGenerationFailed(ProviderUnavailable):
    """No model could produce the next interview question."""


class InvalidSession(InterviewModeratorError):
    """The referenced session does not exist or has ended."""

    def __init__(self, session_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Unknown or expired session: {session_id}")
        self.session_id = session_id


class UnknownQuestion(InvalidSession):
    """The referenced question does not belong to the session."""

    def __init__(self, session_id: str, question_id: str) -> None:
        super().__init__(session_id, f"Question {question_id} not found in session {session_id}")
        self.question_id = question_id


class InsufficientData(InterviewModeratorError):
    """Not enough answered questions to synthesize a recommendation."""

    def __init__(self, answered: int, required: int = 3) -> None:
        super().__init__(
            f"At least {required} answered questions are required, got {answered}"
        )
        self.answered = answered
        self.required = required


class PersistenceConflict(InterviewModeratorError):
    """A concurrent write to conversation turns was detected by the store."""
