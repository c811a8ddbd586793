"""Engine error taxonomy shared by the engine core and the HTTP surface."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    STATE_CONFLICT = "STATE_CONFLICT"
    NOT_PRESERVED = "NOT_PRESERVED"


class EngineError(Exception):
    """Base class for rejected engine operations.

    Every subclass is raised before the operation mutates any state.
    """

    code = ErrorCode.STATE_CONFLICT
    http_status = 409

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
            }
        }


class NotFoundError(EngineError):
    code = ErrorCode.NOT_FOUND
    http_status = 404


class ValidationError(EngineError):
    code = ErrorCode.VALIDATION_ERROR
    http_status = 422


class StateConflictError(EngineError):
    code = ErrorCode.STATE_CONFLICT
    http_status = 409


class NotPreservedError(StateConflictError):
    code = ErrorCode.NOT_PRESERVED
