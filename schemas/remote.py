"""Pydantic schemas for payloads returned by the RemoteSync collaborator."""

from __future__ import annotations

from typing import Optional

from pydantic import ConfigDict

from schemas.common import EntityId, StrictIgnoreRequest


class RemoteStageUpdate(StrictIgnoreRequest):
    """Server view of a committed stage change."""

    model_config = ConfigDict(extra="ignore", strict=False)

    id: EntityId
    current_stage: str
    stage_changed_at: Optional[str] = None


class RemoteDeleteResult(StrictIgnoreRequest):
    """Outcome of a remote batch delete."""

    model_config = ConfigDict(extra="ignore", strict=False)

    succeeded: list[EntityId] = []
    failed: list[EntityId] = []
