"""
Input validation utilities for engine write operations.

Validates application ids and id batches before any state is touched.
"""

from datetime import datetime, timezone
from typing import Any, List

from models.errors import create_validation_error

# Constants for validation
DEFAULT_MAX_BATCH_SIZE = 100


def validate_entity_id(entity_id: Any) -> Any:
    """
    Validate an application id.

    Ids are positive integers or non-empty strings.

    Args:
        entity_id: The id value to validate

    Returns:
        The validated id

    Raises:
        PipelineError: If the id is invalid
    """
    # Check for null/None
    if entity_id is None:
        raise create_validation_error("Invalid application ID: cannot be null")

    # bool is a subclass of int in Python, reject explicitly
    if isinstance(entity_id, bool) or not isinstance(entity_id, (int, str)):
        raise create_validation_error(
            f"Invalid application ID type: expected integer or string, got {type(entity_id).__name__}"
        )

    if isinstance(entity_id, int) and entity_id < 1:
        raise create_validation_error(
            f"Invalid application ID: {entity_id} must be a positive integer (>= 1)"
        )

    if isinstance(entity_id, str) and not entity_id.strip():
        raise create_validation_error("Invalid application ID: cannot be empty")

    return entity_id


def validate_batch_size(ids: list, max_batch_size: int = DEFAULT_MAX_BATCH_SIZE) -> None:
    """
    Validate the batch size for bulk operations.

    Empty batches are valid. Batches above ``max_batch_size`` are rejected.

    Raises:
        PipelineError: If batch size exceeds the limit
    """
    if len(ids) > max_batch_size:
        raise create_validation_error(
            f"Batch size too large: {len(ids)} ids exceeds maximum of {max_batch_size}"
        )


def validate_unique_ids(ids: list) -> None:
    """
    Validate that all ids in the batch are unique.

    Duplicate ids within one batch reject the whole request.

    Raises:
        PipelineError: If duplicate ids are found
    """
    seen = set()
    duplicates = set()
    for entity_id in ids:
        if entity_id in seen:
            duplicates.add(entity_id)
        else:
            seen.add(entity_id)

    if duplicates:
        duplicate_list = ", ".join(sorted(str(dup_id) for dup_id in duplicates))
        raise create_validation_error(f"Duplicate application IDs found in batch: {duplicate_list}")


def validate_id_batch(ids: Any, max_batch_size: int = DEFAULT_MAX_BATCH_SIZE) -> List[Any]:
    """
    Validate a bulk id list: type, size, each id, uniqueness.

    Returns:
        The ids as a list

    Raises:
        PipelineError: With VALIDATION_ERROR code on the first problem found
    """
    if isinstance(ids, (str, bytes)) or not isinstance(ids, (list, tuple)):
        raise create_validation_error(
            f"Invalid ids type: expected list, got {type(ids).__name__}"
        )

    ids = list(ids)
    validate_batch_size(ids, max_batch_size)
    for entity_id in ids:
        validate_entity_id(entity_id)
    validate_unique_ids(ids)
    return ids


def get_current_utc_timestamp() -> str:
    """
    Generate a UTC timestamp in ISO 8601 format with millisecond precision.

    Returns a timestamp string in the format: YYYY-MM-DDTHH:MM:SS.mmmZ
    Example: 2026-02-04T03:47:36.966Z

    Used for the stage_changed_at field of optimistic moves.
    """
    now = datetime.now(timezone.utc)
    # Format with millisecond precision and replace +00:00 with Z
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
