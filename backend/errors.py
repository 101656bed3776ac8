from typing import Optional


class TriviaError(Exception):
    """Base class for errors the API layer turns into an error response."""

    status_code = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self):
        return {
            "status": "error",
            "message": self.message,
            "error": self.detail,
        }


class ValidationError(TriviaError):
    status_code = 400


class NotFoundError(TriviaError):
    status_code = 404


class AccessDeniedError(TriviaError):
    status_code = 403


class InvalidStateError(TriviaError):
    status_code = 400


class ConflictError(TriviaError):
    status_code = 409


class InsufficientDataError(TriviaError):
    status_code = 400


class StoreError(TriviaError):
    status_code = 500

    def __init__(self, message: str = "Database operation failed", detail: Optional[str] = None):
        super().__init__(message, detail)


class DuplicateAnswerError(StoreError):
    """Raised by the store when (session_id, question_id) already has an answer."""

    def __init__(self, session_id: str, question_id: str):
        super().__init__(
            "Answer already submitted",
            f"Session {session_id} already has an answer for question {question_id}",
        )
        self.session_id = session_id
        self.question_id = question_id
