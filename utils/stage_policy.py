"""
Transition policy for stage moves.

``StageSchema.is_valid_transition`` decides whether a move is permitted; the
default catalog allows every transition, including backward moves, because
users legitimately correct mis-filed applications. This module classifies a
move so callers can tell a plain advance from a correction:

- Noop when target equals current stage
- Forward moves and exit outcomes pass without warnings
- Backward moves pass with a ``demotion`` warning
- Leaving an exit stage passes with a ``reopened`` warning
- Moves the catalog refuses are blocked and raise ``InvalidStage``

The high-water mark is never lowered by any of these.
"""

from typing import List, Optional

from models.errors import InvalidStage
from models.stages import StageSchema


class TransitionResult:
    """Classification of one requested move."""

    __slots__ = ("target_stage", "allowed", "is_noop", "error_message", "warnings")

    def __init__(
        self,
        target_stage: str,
        allowed: bool,
        is_noop: bool = False,
        error_message: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ):
        self.target_stage = target_stage
        self.allowed = allowed
        self.is_noop = is_noop
        self.error_message = error_message
        self.warnings = warnings or []

    def raise_if_blocked(self) -> None:
        """
        Raises:
            InvalidStage: If the catalog refuses this move
        """
        if not self.allowed:
            raise InvalidStage(self.target_stage, self.error_message)


def validate_transition(
    schema: StageSchema, current_stage: str, target_stage: str
) -> TransitionResult:
    """
    Classify a move between two catalog stages.

    Args:
        schema: Stage catalog
        current_stage: The application's current stage
        target_stage: The requested stage

    Returns:
        TransitionResult; ``allowed`` is False when the catalog refuses the move

    Examples:
        >>> schema = StageSchema.default()
        >>> validate_transition(schema, "Applied", "Applied").is_noop
        True
        >>> validate_transition(schema, "Applied", "Interview").warnings
        []
        >>> validate_transition(schema, "Interview", "Applied").warnings[0].startswith("demotion")
        True
    """
    if not schema.is_valid_transition(current_stage, target_stage):
        return TransitionResult(
            target_stage,
            allowed=False,
            error_message=f"Invalid stage move: '{current_stage}' -> '{target_stage}' is not allowed",
        )

    if target_stage == current_stage:
        return TransitionResult(target_stage, allowed=True, is_noop=True)

    warnings = []
    if not schema.is_progressing(current_stage) and schema.is_progressing(target_stage):
        warnings.append(f"reopened: moved out of exit stage '{current_stage}' to '{target_stage}'")
    elif (
        schema.is_progressing(current_stage)
        and schema.is_progressing(target_stage)
        and schema.ordinal(target_stage) < schema.ordinal(current_stage)
    ):
        warnings.append(
            f"demotion: moved back from '{current_stage}' to '{target_stage}'; "
            f"funnel history is kept"
        )

    return TransitionResult(target_stage, allowed=True, warnings=warnings)
