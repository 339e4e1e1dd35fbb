"""
Error model for the stagetrack pipeline engine.

Provides structured error codes, typed error categories and sanitized error
messages. Every failure surfaced to a consumer is a ``PipelineError``.
"""

from enum import Enum
from typing import Any, Optional
import os
import re
import sqlite3


class ErrorCode(str, Enum):
    """Structured error codes for engine operations."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_STAGE = "INVALID_STAGE"
    ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"
    REMOTE_COMMIT_FAILED = "REMOTE_COMMIT_FAILED"
    REMOTE_READ_FAILED = "REMOTE_READ_FAILED"
    DB_NOT_FOUND = "DB_NOT_FOUND"
    DB_ERROR = "DB_ERROR"
    ENGINE_DISPOSED = "ENGINE_DISPOSED"


class PipelineError(Exception):
    """Base exception for engine errors with structured error information."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        retryable: bool = False,
        original_error: Optional[Exception] = None
    ):
        """
        Initialize a pipeline error.

        Args:
            code: The error code
            message: Human-readable error message
            retryable: Whether the operation can be retried
            original_error: The original exception if this wraps another error
        """
        self.code = code
        self.message = message
        self.retryable = retryable
        self.original_error = original_error
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert error to dictionary format for consumer responses."""
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "retryable": self.retryable
            }
        }


class InvalidStage(PipelineError):
    """Raised before any mutation when a stage is not in the catalog."""

    def __init__(self, stage: Any, message: str):
        super().__init__(code=ErrorCode.INVALID_STAGE, message=message, retryable=False)
        self.stage = stage


class EntityNotFound(PipelineError):
    """Raised when an operation targets an id the store does not hold."""

    def __init__(self, entity_id: Any, message: str):
        super().__init__(code=ErrorCode.ENTITY_NOT_FOUND, message=message, retryable=False)
        self.entity_id = entity_id


class RemoteCommitFailed(PipelineError):
    """
    Raised after a failed remote commit has been rolled back locally.

    Carries the intended mutation so the caller can offer a retry.
    """

    def __init__(
        self,
        entity_id: Any,
        target_stage: str,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            code=ErrorCode.REMOTE_COMMIT_FAILED,
            message=message,
            retryable=True,
            original_error=original_error,
        )
        self.entity_id = entity_id
        self.target_stage = target_stage

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["error"]["mutation"] = {"id": self.entity_id, "stage": self.target_stage}
        return result


class RemoteReadFailed(PipelineError):
    """Raised when the remote listing used by refresh() fails."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(
            code=ErrorCode.REMOTE_READ_FAILED,
            message=message,
            retryable=True,
            original_error=original_error,
        )


class StoreInvariantError(RuntimeError):
    """
    EntityStore and StageIndex disagree, or a high-water invariant broke.

    This is a bug in the engine and is never caught by engine code.
    """


def sanitize_path(path: str) -> str:
    """
    Sanitize file paths to avoid exposing sensitive system details.

    Returns only the basename for absolute paths, keeps relative paths.
    """
    if os.path.isabs(path):
        return os.path.basename(path)
    return path


def sanitize_sql_error(error_msg: str) -> str:
    """
    Sanitize SQL error messages to remove sensitive details.

    Removes SQL fragments and keeps only actionable information.

    Args:
        error_msg: The original error message

    Returns:
        Sanitized error message
    """
    sanitized = re.sub(r'SQL:.*', '', error_msg, flags=re.IGNORECASE)
    sanitized = re.sub(r'"[^"]*SELECT[^"]*"', '[SQL query]', sanitized, flags=re.IGNORECASE)
    sanitized = re.sub(r"'[^']*SELECT[^']*'", '[SQL query]', sanitized, flags=re.IGNORECASE)

    sanitized = re.sub(r'\b(SELECT|INSERT|UPDATE|DELETE)\b.*', '[SQL query]', sanitized, flags=re.IGNORECASE)

    sanitized = re.sub(r'/[^\s]+/', '[path]/', sanitized)

    return sanitized.strip()


def sanitize_stack_trace(error_msg: str) -> str:
    """Keep only the first line of a multi-line error message."""
    lines = error_msg.split('\n')
    if lines:
        return lines[0].strip()
    return error_msg


def describe_error(error: Exception) -> str:
    """
    One-line description of an exception, safe to log or return.

    SQL fragments are only stripped from database errors; any other remote
    failure keeps its own wording.
    """
    if isinstance(error, PipelineError):
        return error.message
    message = str(error)
    if isinstance(error, sqlite3.Error):
        message = sanitize_sql_error(message)
    return sanitize_stack_trace(message) or type(error).__name__


def create_validation_error(message: str) -> PipelineError:
    """
    Create a validation error.

    Args:
        message: Description of the validation failure

    Returns:
        PipelineError with VALIDATION_ERROR code
    """
    return PipelineError(
        code=ErrorCode.VALIDATION_ERROR,
        message=message,
        retryable=False
    )


def create_invalid_stage_error(stage: Any) -> InvalidStage:
    """
    Create an invalid stage error for a name missing from the stage catalog.

    Args:
        stage: The rejected stage value

    Returns:
        InvalidStage with INVALID_STAGE code
    """
    if not isinstance(stage, str):
        return InvalidStage(
            stage, f"Invalid stage type: expected string, got {type(stage).__name__}"
        )
    return InvalidStage(stage, f"Invalid stage: '{stage}' is not a pipeline stage")


def create_entity_not_found_error(entity_id: Any) -> EntityNotFound:
    """Create an error for an id that is not tracked by the store."""
    return EntityNotFound(entity_id, f"Application {entity_id} does not exist")


def create_remote_commit_error(
    entity_id: Any, target_stage: str, original_error: Optional[Exception] = None
) -> RemoteCommitFailed:
    """
    Create a remote commit error for a rolled-back stage move.

    Args:
        entity_id: Id of the application whose move failed
        target_stage: The stage the caller asked for
        original_error: The exception raised by the remote store

    Returns:
        RemoteCommitFailed with REMOTE_COMMIT_FAILED code
    """
    detail = ""
    if original_error is not None:
        detail = f": {describe_error(original_error)}"
    return RemoteCommitFailed(
        entity_id=entity_id,
        target_stage=target_stage,
        message=f"Failed to move application {entity_id} to '{target_stage}'{detail}",
        original_error=original_error,
    )


def create_remote_read_error(original_error: Optional[Exception] = None) -> RemoteReadFailed:
    """Create an error for a failed remote listing."""
    detail = ""
    if original_error is not None:
        detail = f": {describe_error(original_error)}"
    return RemoteReadFailed(
        message=f"Failed to load applications{detail}", original_error=original_error
    )


def create_db_not_found_error(db_path: str) -> PipelineError:
    """
    Create a database not found error.

    Args:
        db_path: The database path that was not found

    Returns:
        PipelineError with DB_NOT_FOUND code
    """
    sanitized_path = sanitize_path(db_path)
    return PipelineError(
        code=ErrorCode.DB_NOT_FOUND,
        message=f"Database not found: {sanitized_path}",
        retryable=False
    )


def create_db_error(message: str, retryable: bool = False, original_error: Optional[Exception] = None) -> PipelineError:
    """
    Create a database error.

    Args:
        message: Description of the database error
        retryable: Whether the operation can be retried
        original_error: The original exception

    Returns:
        PipelineError with DB_ERROR code
    """
    sanitized_message = sanitize_sql_error(message)
    sanitized_message = sanitize_stack_trace(sanitized_message)

    return PipelineError(
        code=ErrorCode.DB_ERROR,
        message=f"Database error: {sanitized_message}",
        retryable=retryable,
        original_error=original_error
    )


def create_engine_disposed_error() -> PipelineError:
    """Create the error raised by operations on a disposed engine."""
    return PipelineError(
        code=ErrorCode.ENGINE_DISPOSED,
        message="Pipeline engine has been disposed",
        retryable=False,
    )
