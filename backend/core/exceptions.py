"""Custom exceptions for the workflow engine.

Raised inside the engine and converted to result objects at the public
boundary. Only ``StorageError`` is expected to escape to callers.
"""

from typing import Any, Optional

from core.constants import ErrorCode


class WorkflowEngineError(Exception):
    """Base exception for the workflow engine."""

    default_code = ErrorCode.INVALID_STATE

    def __init__(self, message: str, code: Optional[ErrorCode] = None, **context: Any):
        """Initialize exception with message, error code and diagnostic context.

        Args:
            message: Exception message
            code: Stable error code; defaults to the subclass default
            context: Identifiers such as step_id, action_id or attempts
        """
        self.message = message
        self.code = code or self.default_code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message, **self.context}


class InvalidStateError(WorkflowEngineError):
    """Operation not allowed in the current definition or execution state."""

    default_code = ErrorCode.INVALID_STATE


class NotFoundError(WorkflowEngineError):
    """Definition, execution or step not found."""

    default_code = ErrorCode.NOT_FOUND

    def __init__(self, message: str = "Resource not found", **context: Any):
        super().__init__(message, ErrorCode.NOT_FOUND, **context)


class DefinitionValidationError(WorkflowEngineError):
    """Definition failed structural validation."""

    default_code = ErrorCode.NO_START_STEP

    def __init__(self, message: str, errors: Optional[list] = None, code: Optional[ErrorCode] = None):
        super().__init__(message, code)
        self.errors = errors or []


class ConditionEvaluationError(WorkflowEngineError):
    """Expression could not be parsed or evaluated."""

    default_code = ErrorCode.INVALID_STATE


class HandlerNotFoundError(WorkflowEngineError):
    """No handler registered under the requested tag."""

    default_code = ErrorCode.HANDLER_NOT_FOUND


class AssignmentUnresolvedError(WorkflowEngineError):
    """No assignee could be determined for a user task."""

    default_code = ErrorCode.ASSIGNMENT_UNRESOLVED


class ActionFailedError(WorkflowEngineError):
    """A required action failed after exhausting its retries."""

    default_code = ErrorCode.ACTION_FAILED


class StorageError(WorkflowEngineError):
    """Execution or wake storage is unavailable."""

    default_code = ErrorCode.STORAGE_ERROR
