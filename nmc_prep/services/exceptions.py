class ConfigurationError(ValueError):
    """Session configuration outside the allowed choices."""


class NotEnoughQuestions(Exception):
    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(f"Requested {requested} questions, only {available} available")


class SessionNotFound(LookupError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class SessionClosed(Exception):
    """Answering or navigating after the deadline passed or the session ended."""


class SubmissionFailed(Exception):
    """Persisting the graded session failed; the session stays open for a retry."""

    def __init__(self, graded, cause: Exception):
        self.graded = graded
        self.cause = cause
        super().__init__(f"Could not persist submission: {cause}")


class StaleQuestionError(Exception):
    def __init__(self, question_id: str, expected_version: int):
        self.question_id = question_id
        self.expected_version = expected_version
        super().__init__(f"Question {question_id} changed since version {expected_version}")


class GeneratorUnavailable(RuntimeError):
    """Every model in the fallback chain failed."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Explanation generator unavailable: " + "; ".join(errors))


class CorrectionValidationError(ValueError):
    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))
