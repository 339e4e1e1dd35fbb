"""
Contract of the authoritative remote store.

The engine only needs list/update/delete. Implementations may return either
the pydantic models below or plain mappings with the same keys; the
coordinator validates both.
"""

from typing import Any, Mapping, Protocol, Sequence, Union, runtime_checkable

from models.application import Application
from schemas.common import EntityId
from schemas.remote import RemoteDeleteResult, RemoteStageUpdate


@runtime_checkable
class RemoteSync(Protocol):
    """Read/write contract the pipeline engine consumes."""

    async def list(self) -> Sequence[Union[Application, Mapping[str, Any]]]:
        """Every application the user owns, in display order."""
        ...

    async def update_stage(
        self, entity_id: EntityId, new_stage: str
    ) -> Union[RemoteStageUpdate, Mapping[str, Any]]:
        """Persist a stage change; raises on network or validation failure."""
        ...

    async def delete_many(
        self, ids: Sequence[EntityId]
    ) -> Union[RemoteDeleteResult, Mapping[str, Any]]:
        """Delete applications; reports which ids succeeded and which failed."""
        ...
