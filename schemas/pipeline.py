"""Pydantic schemas for aggregate views and mutation results."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import Field

from schemas.common import EntityId, StrictResponse


class StageConversion(StrictResponse):
    """Conversion between two adjacent progressing stages."""

    from_stage: str
    to_stage: str
    rate: float


class FunnelSnapshot(StrictResponse):
    """Both statistical views over one consistent entity set."""

    total: int
    current_by_stage: dict[str, int]
    cumulative_by_stage: dict[str, int]
    conversion_rates: list[StageConversion]
    overall_conversion: float


class MoveOutcome(str, Enum):
    """How a single move resolved."""

    COMMITTED = "committed"
    NOOP = "noop"
    # The response arrived after a newer mutation (or a refresh) took over
    SUPERSEDED = "superseded"


class MoveResult(StrictResponse):
    """Result of a move that did not fail."""

    id: EntityId
    previous_stage: str
    stage: str
    outcome: MoveOutcome
    sequence: Optional[int] = None
    warnings: list[str] = Field(default_factory=list)


class BulkResultItem(StrictResponse):
    """Per-id result for bulk moves and deletes."""

    id: EntityId
    success: bool
    outcome: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None


class BulkMoveResponse(StrictResponse):
    """Structured report for bulk_move; failed_count > 0 is a partial failure."""

    stage: str
    updated_count: int
    failed_count: int
    results: list[BulkResultItem]

    @property
    def failed_ids(self) -> list[Any]:
        return [item.id for item in self.results if not item.success]


class DeleteResponse(StrictResponse):
    """Structured report for delete_entities."""

    deleted_count: int
    failed_count: int
    results: list[BulkResultItem]

    @property
    def failed_ids(self) -> list[Any]:
        return [item.id for item in self.results if not item.success]
