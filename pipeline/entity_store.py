"""
In-memory entity store and stage index.

``EntityStore`` is the only mutable source of truth in-process. It owns the
``StageIndex`` and updates it inside the same synchronous call as every
entity write, so no caller can observe the two disagreeing.

Stage buckets list the most recently arrived application first, the way a
moved card lands on top of its destination column.
"""

from typing import Dict, Iterable, Iterator, List, Optional

from models.application import Application
from models.errors import StoreInvariantError, create_invalid_stage_error
from models.stages import StageSchema
from schemas.common import EntityId


class StageIndex:
    """Entity ids grouped by current stage."""

    def __init__(self, stages: Iterable[str]):
        # dicts keep arrival order and give O(1) membership/removal
        self._buckets: Dict[str, Dict[EntityId, None]] = {stage: {} for stage in stages}
        self._stage_of: Dict[EntityId, str] = {}

    def add(self, entity_id: EntityId, stage: str) -> None:
        self.discard(entity_id)
        self._buckets[stage][entity_id] = None
        self._stage_of[entity_id] = stage

    def discard(self, entity_id: EntityId) -> None:
        stage = self._stage_of.pop(entity_id, None)
        if stage is not None:
            del self._buckets[stage][entity_id]

    def clear(self) -> None:
        for bucket in self._buckets.values():
            bucket.clear()
        self._stage_of.clear()

    def stage_of(self, entity_id: EntityId) -> Optional[str]:
        return self._stage_of.get(entity_id)

    def ids(self, stage: str) -> List[EntityId]:
        return list(reversed(self._buckets[stage]))

    def count(self, stage: str) -> int:
        return len(self._buckets[stage])

    def buckets(self) -> Dict[str, List[EntityId]]:
        return {stage: list(bucket) for stage, bucket in self._buckets.items()}


class EntityStore:
    """
    Canonical collection of applications keyed by id.

    Records are immutable ``Application`` instances, so handing them out does
    not expose store internals.

    Usage:
        store = EntityStore(StageSchema.default())
        store.replace_all(applications)
        store.upsert(store.get(7).with_stage("Interview", "Interview", ts))
        store.ids_in_stage("Interview")
    """

    def __init__(self, schema: StageSchema):
        self.schema = schema
        self._entities: Dict[EntityId, Application] = {}
        self._index = StageIndex(schema.stages)

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entities

    def __iter__(self) -> Iterator[Application]:
        return iter(list(self._entities.values()))

    def get(self, entity_id: EntityId) -> Optional[Application]:
        return self._entities.get(entity_id)

    def all(self) -> List[Application]:
        return list(self._entities.values())

    def ids_in_stage(self, stage: str) -> List[EntityId]:
        return self._index.ids(stage)

    def count_in_stage(self, stage: str) -> int:
        return self._index.count(stage)

    def upsert(self, entity: Application) -> Application:
        """
        Insert or replace one record and re-bucket it.

        A record that stays in its stage keeps its position in the bucket;
        a record that changes stage moves to the top of its new bucket.

        Raises:
            InvalidStage: If the record's stage is not in the catalog
        """
        if entity.current_stage not in self.schema:
            raise create_invalid_stage_error(entity.current_stage)

        self._entities[entity.id] = entity
        if self._index.stage_of(entity.id) != entity.current_stage:
            self._index.add(entity.id, entity.current_stage)
        return entity

    def remove(self, entity_id: EntityId) -> Optional[Application]:
        """Remove a record and its index entry; returns the removed record."""
        entity = self._entities.pop(entity_id, None)
        if entity is not None:
            self._index.discard(entity_id)
        return entity

    def merge_high_water(self, entity: Application) -> Application:
        """
        Return ``entity`` with the furthest high-water mark known locally.

        The remote store may carry only the current stage, so history already
        known here is never reset by an incoming record.
        """
        existing = self._entities.get(entity.id)
        high_water = self.schema.max_progress(
            existing.high_water_stage if existing is not None else None,
            entity.high_water_stage,
        )
        high_water = self.schema.max_progress(high_water, entity.current_stage)
        if high_water == entity.high_water_stage:
            return entity
        return entity.model_copy(update={"high_water_stage": high_water})

    def replace_all(self, entities: Iterable[Application]) -> List[Application]:
        """
        Wholesale-replace the store and rebuild the index.

        Incoming order is preserved in the stage buckets. High-water marks
        are merged with the records being replaced (see ``merge_high_water``).
        """
        merged: Dict[EntityId, Application] = {}
        for entity in entities:
            if entity.current_stage not in self.schema:
                raise create_invalid_stage_error(entity.current_stage)
            merged[entity.id] = self.merge_high_water(entity)

        self._entities = merged
        self._index.clear()
        for entity in reversed(list(merged.values())):
            self._index.add(entity.id, entity.current_stage)
        return list(merged.values())

    def clear(self) -> None:
        self._entities.clear()
        self._index.clear()

    def assert_consistent(self) -> None:
        """
        Verify store/index agreement and the high-water invariant.

        Raises:
            StoreInvariantError: On any disagreement (an engine bug)
        """
        indexed: Dict[EntityId, str] = {}
        for stage, ids in self._index.buckets().items():
            for entity_id in ids:
                if entity_id in indexed:
                    raise StoreInvariantError(
                        f"Application {entity_id} indexed under both '{indexed[entity_id]}' and '{stage}'"
                    )
                indexed[entity_id] = stage

        if set(indexed) != set(self._entities):
            raise StoreInvariantError(
                f"Index holds {len(indexed)} ids but store holds {len(self._entities)}"
            )

        for entity_id, entity in self._entities.items():
            if indexed[entity_id] != entity.current_stage:
                raise StoreInvariantError(
                    f"Application {entity_id} is '{entity.current_stage}' but indexed under '{indexed[entity_id]}'"
                )
            high_water = entity.high_water_stage
            if high_water is not None and not self.schema.is_progressing(high_water):
                raise StoreInvariantError(
                    f"Application {entity_id} has non-progressing high-water mark '{high_water}'"
                )
            if self.schema.is_progressing(entity.current_stage) and (
                high_water is None
                or self.schema.ordinal(high_water) < self.schema.ordinal(entity.current_stage)
            ):
                raise StoreInvariantError(
                    f"Application {entity_id} high-water mark '{high_water}' is behind '{entity.current_stage}'"
                )
