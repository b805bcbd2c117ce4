"""Typed outcomes raised by the session core and mapped to HTTP by the adapter."""

from __future__ import annotations

from datetime import datetime
from typing import Any


class SessionError(Exception):
    code = "SESSION_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        for key, value in self.context.items():
            body[key] = value.isoformat() if isinstance(value, datetime) else value
        return body


class SessionConflict(SessionError):
    """Another attempt already holds the user's exclusivity lock."""

    code = "SESSION_CONFLICT"
    status_code = 409

    def __init__(self, module: str, attempt_id: str, test_id: str | None = None) -> None:
        super().__init__(
            f"You already have an active {module.lower()} test session. "
            "Please complete or abandon your current test before starting a new one.",
            module=module,
            attempt_id=attempt_id,
            test_id=test_id,
        )
        self.module = module
        self.attempt_id = attempt_id


class QuotaExceeded(SessionError):
    code = "QUOTA_EXCEEDED"
    status_code = 403

    def __init__(self, message: str, retry_at: datetime | None = None, **context: Any) -> None:
        super().__init__(message, retry_at=retry_at, **context)
        self.retry_at = retry_at
        if retry_at is not None:
            # Cooldown denials are temporary
            self.status_code = 429


class NotFound(SessionError):
    code = "NOT_FOUND"
    status_code = 404


class TestNotFound(NotFound):
    __test__ = False

    code = "TEST_NOT_FOUND"


class InvalidState(SessionError):
    code = "NOT_ACTIVE"
    status_code = 409


class AlreadySubmitted(InvalidState):
    code = "ALREADY_SUBMITTED"


class SessionExpired(SessionError):
    """The attempt deadline has passed."""

    code = "EXPIRED"
    status_code = 410


class EvaluationFailure(SessionError):
    code = "EVALUATION_FAILED"
    status_code = 500
