"""
Pipeline engine facade.

One ``PipelineEngine`` instance owns the store, the coordinator, the cached
aggregate snapshot and the subscriber list for a single user session. It is
created explicitly and injected into consumers; there is no module-level
engine.

Usage:
    engine = PipelineEngine.create(remote)
    await engine.refresh()
    unsubscribe = engine.subscribe(on_change)
    await engine.move_entity(42, "Interview")
    engine.get_cumulative_funnel()
    engine.dispose()
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from config import Config, get_config
from db.remote_sync import RemoteSync
from models.application import Application
from models.errors import create_engine_disposed_error
from models.stages import StageSchema
from pipeline.coordinator import MutationCoordinator
from pipeline.entity_store import EntityStore
from pipeline.notifier import ChangeEvent, ChangeKind, ChangeNotifier, Listener
from schemas.common import EntityId
from schemas.pipeline import (
    BulkMoveResponse,
    DeleteResponse,
    FunnelSnapshot,
    MoveResult,
    StageConversion,
)
from utils.funnel_aggregator import compute_funnel

logger = logging.getLogger(__name__)


class PipelineEngine:
    """Stage tracking and funnel aggregation for one session."""

    def __init__(
        self,
        remote: RemoteSync,
        schema: StageSchema,
        max_batch_size: int,
    ):
        self.schema = schema
        self._store = EntityStore(schema)
        self._notifier = ChangeNotifier()
        self._coordinator = MutationCoordinator(
            self._store, remote, self._handle_change, max_batch_size=max_batch_size
        )
        self._snapshot = compute_funnel((), schema)
        self._disposed = False

    @classmethod
    def create(
        cls,
        remote: RemoteSync,
        schema: Optional[StageSchema] = None,
        config: Optional[Config] = None,
    ) -> "PipelineEngine":
        """
        Build an engine with an empty store.

        Args:
            remote: Authoritative remote store
            schema: Stage catalog; defaults to the configured catalog
            config: Settings; defaults to the global configuration
        """
        config = config or get_config()
        if schema is None:
            schema = config.load_stage_schema()
        return cls(remote, schema, max_batch_size=config.bulk_max)

    async def __aenter__(self) -> "PipelineEngine":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.dispose()
        return False

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def store(self) -> EntityStore:
        return self._store

    @property
    def coordinator(self) -> MutationCoordinator:
        return self._coordinator

    def dispose(self) -> None:
        """
        Tear the engine down.

        Pending commits are allowed to finish but their results are ignored.
        Calling dispose twice is harmless.
        """
        if self._disposed:
            return
        self._disposed = True
        self._coordinator.invalidate_all()
        self._notifier.clear()
        self._store.clear()
        self._snapshot = compute_funnel((), self.schema)
        logger.info("Pipeline engine disposed")

    def _ensure_open(self) -> None:
        if self._disposed:
            raise create_engine_disposed_error()

    def _handle_change(self, kind: ChangeKind, entity_ids: List[EntityId]) -> None:
        if self._disposed:
            return
        self._snapshot = compute_funnel(self._store.all(), self.schema)
        self._notifier.publish(
            ChangeEvent(kind=kind, entity_ids=list(entity_ids), snapshot=self._snapshot)
        )

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns its unsubscribe callable."""
        self._ensure_open()
        return self._notifier.subscribe(listener)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_snapshot(self) -> FunnelSnapshot:
        self._ensure_open()
        return self._snapshot

    def get_current_distribution(self) -> Dict[str, int]:
        return dict(self.get_snapshot().current_by_stage)

    def get_cumulative_funnel(self) -> Dict[str, int]:
        return dict(self.get_snapshot().cumulative_by_stage)

    def get_conversion_rates(self) -> List[StageConversion]:
        return list(self.get_snapshot().conversion_rates)

    def get_entities_by_stage(self, stage: str) -> List[Application]:
        """
        Applications currently in ``stage``, most recently arrived first.

        Raises:
            InvalidStage: If the stage is not in the catalog
        """
        self._ensure_open()
        stage = self.schema.require(stage)
        return [self._store.get(entity_id) for entity_id in self._store.ids_in_stage(stage)]

    def get_entity(self, entity_id: EntityId) -> Optional[Application]:
        self._ensure_open()
        return self._store.get(entity_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def refresh(self) -> FunnelSnapshot:
        """Resynchronize with the remote store; returns the resulting snapshot."""
        self._ensure_open()
        await self._coordinator.refresh()
        return self._snapshot

    async def move_entity(self, entity_id: EntityId, stage: str) -> MoveResult:
        self._ensure_open()
        return await self._coordinator.move_entity(entity_id, stage)

    async def bulk_move(self, ids: Sequence[EntityId], stage: str) -> BulkMoveResponse:
        self._ensure_open()
        return await self._coordinator.bulk_move(ids, stage)

    async def delete_entities(self, ids: Sequence[EntityId]) -> DeleteResponse:
        self._ensure_open()
        return await self._coordinator.delete_entities(ids)

    def add_entity(self, record: Any) -> Application:
        """Track an application created through the remote store."""
        self._ensure_open()
        return self._coordinator.add_entity(record)
