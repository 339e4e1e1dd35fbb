"""
Mutation coordinator for the pipeline engine.

The coordinator is the only component that writes to the ``EntityStore``.
Every mutation follows one state machine:

    PROPOSED -> OPTIMISTICALLY_APPLIED -> COMMITTED | ROLLED_BACK

and a response that arrives after a newer mutation of the same application
(or after a refresh) is DISCARDED instead of being applied or rolled back.

Concurrency model (single asyncio event loop):
- Optimistic apply and rollback are synchronous; there is no ``await``
  between snapshot, store write and the change callback.
- Remote commits for one application are serialized with a per-id lock.
- Each move takes a per-id sequence token; only the latest token may change
  local state when its response arrives.
- The rollback target is the last state the server confirmed, kept per id
  while commits are in flight. A superseded commit that succeeded still
  advances that baseline.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from db.remote_sync import RemoteSync
from models.application import Application
from models.errors import (
    ErrorCode,
    PipelineError,
    RemoteCommitFailed,
    create_entity_not_found_error,
    create_remote_commit_error,
    create_remote_read_error,
    describe_error,
)
from pipeline.entity_store import EntityStore
from pipeline.notifier import ChangeKind
from schemas.common import EntityId
from schemas.pipeline import (
    BulkMoveResponse,
    BulkResultItem,
    DeleteResponse,
    MoveOutcome,
    MoveResult,
)
from schemas.remote import RemoteDeleteResult, RemoteStageUpdate
from utils.pydantic_error_mapper import map_pydantic_validation_error
from utils.stage_policy import validate_transition
from utils.validation import (
    DEFAULT_MAX_BATCH_SIZE,
    get_current_utc_timestamp,
    validate_entity_id,
    validate_id_batch,
)

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeKind, List[EntityId]], None]


class MutationState(str, Enum):
    """Lifecycle of one in-flight mutation."""

    PROPOSED = "proposed"
    OPTIMISTICALLY_APPLIED = "optimistically_applied"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    DISCARDED = "discarded"


class PendingMove:
    """Bookkeeping for one stage move between apply and resolution."""

    __slots__ = ("entity_id", "previous_stage", "target_stage", "token", "warnings", "state")

    def __init__(
        self,
        entity_id: EntityId,
        previous_stage: str,
        target_stage: str,
        token: int,
        warnings: Optional[List[str]] = None,
    ):
        self.entity_id = entity_id
        self.previous_stage = previous_stage
        self.target_stage = target_stage
        self.token = token
        self.warnings = warnings or []
        self.state = MutationState.PROPOSED

    def result(self, outcome: MoveOutcome) -> MoveResult:
        return MoveResult(
            id=self.entity_id,
            previous_stage=self.previous_stage,
            stage=self.target_stage,
            outcome=outcome,
            sequence=self.token,
            warnings=self.warnings,
        )


class MutationCoordinator:
    """
    Optimistic-apply / commit / rollback for stage moves, deletes and refresh.

    Args:
        store: The store this coordinator owns writes to
        remote: Authoritative remote store
        on_change: Called synchronously after every store write with the kind
            of change and the affected ids
        max_batch_size: Upper bound for bulk_move/delete_entities
    """

    def __init__(
        self,
        store: EntityStore,
        remote: RemoteSync,
        on_change: ChangeCallback,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    ):
        self._store = store
        self._schema = store.schema
        self._remote = remote
        self._on_change = on_change
        self._max_batch_size = max_batch_size

        self._tokens: Dict[EntityId, int] = {}
        self._in_flight: Dict[EntityId, int] = {}
        self._confirmed: Dict[EntityId, Application] = {}
        self._locks: Dict[EntityId, asyncio.Lock] = {}
        # Server-held record of each application removed by an unresolved delete
        self._pending_deletes: Dict[EntityId, Application] = {}
        self._refresh_generation = 0
        self._invalidated = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def latest_token(self, entity_id: EntityId) -> int:
        """Most recent sequence token issued for ``entity_id`` (0 if none)."""
        return self._tokens.get(entity_id, 0)

    def in_flight(self, entity_id: EntityId) -> int:
        """Number of unresolved commits for ``entity_id``."""
        return self._in_flight.get(entity_id, 0)

    def invalidate_all(self) -> None:
        """Make every pending response stale (used on dispose)."""
        self._invalidated = True
        for entity_id in self._in_flight:
            self._tokens[entity_id] += 1
        self._confirmed.clear()
        self._pending_deletes.clear()
        self._refresh_generation += 1

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------

    async def move_entity(self, entity_id: EntityId, new_stage: str) -> MoveResult:
        """
        Move one application, optimistically, then commit it remotely.

        Returns:
            MoveResult with outcome COMMITTED, NOOP (already there) or
            SUPERSEDED (a newer move or a refresh owns the local state)

        Raises:
            InvalidStage: Unknown stage, or a move the catalog refuses;
                nothing was changed
            EntityNotFound: Unknown id; nothing was changed
            RemoteCommitFailed: The commit failed and the move was rolled back
        """
        target = self._schema.require(new_stage)
        validate_entity_id(entity_id)
        entity = self._store.get(entity_id)
        if entity is None:
            raise create_entity_not_found_error(entity_id)

        policy = validate_transition(self._schema, entity.current_stage, target)
        policy.raise_if_blocked()
        if policy.is_noop:
            return MoveResult(
                id=entity_id,
                previous_stage=entity.current_stage,
                stage=target,
                outcome=MoveOutcome.NOOP,
            )

        move = self._apply_move(entity, target, policy.warnings)
        return await self._commit_move(move)

    async def bulk_move(self, ids: Sequence[EntityId], new_stage: str) -> BulkMoveResponse:
        """
        Move several applications to one stage.

        Every id is applied optimistically up front, then all commits run
        concurrently. Outcomes are independent: a failed id is rolled back
        alone and reported, successful ids stay moved.

        Raises:
            InvalidStage: Unknown stage; nothing was changed
            PipelineError: VALIDATION_ERROR for a malformed id batch
        """
        target = self._schema.require(new_stage)
        ids = validate_id_batch(ids, self._max_batch_size)

        results: Dict[EntityId, BulkResultItem] = {}
        moves: List[PendingMove] = []
        for entity_id in ids:
            entity = self._store.get(entity_id)
            if entity is None:
                error = create_entity_not_found_error(entity_id)
                results[entity_id] = BulkResultItem(
                    id=entity_id, success=False, error=error.message, code=error.code.value
                )
                continue

            policy = validate_transition(self._schema, entity.current_stage, target)
            if not policy.allowed:
                results[entity_id] = BulkResultItem(
                    id=entity_id,
                    success=False,
                    error=policy.error_message,
                    code=ErrorCode.INVALID_STAGE.value,
                )
                continue
            if policy.is_noop:
                results[entity_id] = BulkResultItem(
                    id=entity_id, success=True, outcome=MoveOutcome.NOOP.value
                )
                continue
            moves.append(self._apply_move(entity, target, policy.warnings))

        outcomes = await asyncio.gather(
            *(self._commit_move(move) for move in moves), return_exceptions=True
        )
        for move, outcome in zip(moves, outcomes):
            if isinstance(outcome, RemoteCommitFailed):
                results[move.entity_id] = BulkResultItem(
                    id=move.entity_id,
                    success=False,
                    error=outcome.message,
                    code=outcome.code.value,
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results[move.entity_id] = BulkResultItem(
                    id=move.entity_id, success=True, outcome=outcome.outcome.value
                )

        ordered = [results[entity_id] for entity_id in ids]
        failed = sum(1 for item in ordered if not item.success)
        logger.info(
            f"Bulk move to '{target}': {len(ordered) - failed} succeeded, {failed} failed"
        )
        return BulkMoveResponse(
            stage=target,
            updated_count=len(ordered) - failed,
            failed_count=failed,
            results=ordered,
        )

    def _advance(
        self, entity: Application, target: str, stage_changed_at: Optional[str]
    ) -> Application:
        """Position ``entity`` at ``target``; the high-water mark only rises."""
        high_water = entity.high_water_stage
        if self._schema.is_progressing(target):
            high_water = self._schema.max_progress(high_water, target)
        return entity.with_stage(target, high_water, stage_changed_at)

    def _apply_move(self, entity: Application, target: str, warnings: List[str]) -> PendingMove:
        entity_id = entity.id
        token = self._tokens.get(entity_id, 0) + 1
        self._tokens[entity_id] = token

        # No baseline yet (nothing in flight, or a refresh dropped it and the
        # record was added back): the current record is what the server holds
        if entity_id not in self._confirmed:
            self._confirmed[entity_id] = entity
        self._in_flight[entity_id] = self._in_flight.get(entity_id, 0) + 1

        move = PendingMove(entity_id, entity.current_stage, target, token, warnings)
        self._store.upsert(self._advance(entity, target, get_current_utc_timestamp()))
        move.state = MutationState.OPTIMISTICALLY_APPLIED
        logger.debug(
            f"Applied move of {entity_id} '{move.previous_stage}' -> '{target}' (seq {token})"
        )
        self._on_change(ChangeKind.OPTIMISTIC, [entity_id])
        return move

    async def _commit_move(self, move: PendingMove) -> MoveResult:
        entity_id = move.entity_id
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        try:
            async with lock:
                try:
                    raw = await self._remote.update_stage(entity_id, move.target_stage)
                    response = self._parse_stage_update(raw)
                except Exception as e:
                    return self._resolve_failure(move, e)
                return self._resolve_success(move, response)
        finally:
            self._release(entity_id)

    def _release(self, entity_id: EntityId) -> None:
        remaining = self._in_flight.get(entity_id, 0) - 1
        if remaining > 0:
            self._in_flight[entity_id] = remaining
            return
        self._in_flight.pop(entity_id, None)
        self._confirmed.pop(entity_id, None)
        self._locks.pop(entity_id, None)

    def _is_latest(self, move: PendingMove) -> bool:
        return self._tokens.get(move.entity_id) == move.token

    def _parse_stage_update(self, raw: Any) -> RemoteStageUpdate:
        if isinstance(raw, RemoteStageUpdate):
            return raw
        try:
            return RemoteStageUpdate.model_validate(raw)
        except ValidationError as e:
            raise map_pydantic_validation_error(e, "Remote stage response") from e

    def _resolve_success(self, move: PendingMove, response: RemoteStageUpdate) -> MoveResult:
        entity_id = move.entity_id
        baseline = self._confirmed.get(entity_id)
        if baseline is not None:
            baseline = self._advance(baseline, move.target_stage, response.stage_changed_at)
            self._confirmed[entity_id] = baseline
            if entity_id in self._pending_deletes:
                self._pending_deletes[entity_id] = baseline

        entity = self._store.get(entity_id)
        if self._is_latest(move) and entity is None and entity_id in self._pending_deletes:
            # Restored from the advanced baseline if the delete fails
            move.state = MutationState.COMMITTED
            return move.result(MoveOutcome.COMMITTED)
        if not self._is_latest(move) or entity is None:
            move.state = MutationState.DISCARDED
            logger.debug(f"Discarded superseded commit of {entity_id} (seq {move.token})")
            return move.result(MoveOutcome.SUPERSEDED)

        reconciled = self._reconcile(entity, response)
        if reconciled != entity:
            self._store.upsert(reconciled)
        move.state = MutationState.COMMITTED
        self._on_change(ChangeKind.COMMITTED, [entity_id])
        return move.result(MoveOutcome.COMMITTED)

    def _reconcile(self, entity: Application, response: RemoteStageUpdate) -> Application:
        """Adopt fields the server normalizes: timestamp and, if it differs, stage."""
        server_stage = self._schema.normalize(response.current_stage)
        if server_stage is None:
            logger.warning(
                f"Server reported unknown stage '{response.current_stage}' for {entity.id}; keeping '{entity.current_stage}'"
            )
            server_stage = entity.current_stage
        changed_at = response.stage_changed_at or entity.stage_changed_at

        if server_stage != entity.current_stage:
            logger.warning(
                f"Server normalized {entity.id} to '{server_stage}' instead of '{entity.current_stage}'"
            )
            return self._advance(entity, server_stage, changed_at)
        if changed_at != entity.stage_changed_at:
            return entity.model_copy(update={"stage_changed_at": changed_at})
        return entity

    def _resolve_failure(self, move: PendingMove, error: Exception) -> MoveResult:
        entity_id = move.entity_id
        if self._is_latest(move) and entity_id in self._pending_deletes:
            # Removed locally; a failed delete restores the confirmed record
            move.state = MutationState.ROLLED_BACK
            logger.warning(
                f"Move of {entity_id} to '{move.target_stage}' failed while its delete is "
                f"pending: {describe_error(error)}"
            )
            raise create_remote_commit_error(entity_id, move.target_stage, error) from error
        if not self._is_latest(move) or entity_id not in self._store:
            move.state = MutationState.DISCARDED
            logger.debug(
                f"Discarded failed commit of {entity_id} (seq {move.token}): {describe_error(error)}"
            )
            return move.result(MoveOutcome.SUPERSEDED)

        # Latest token: earlier commits for this id have all resolved
        baseline = self._confirmed[entity_id]
        self._store.upsert(baseline)
        move.state = MutationState.ROLLED_BACK
        logger.warning(
            f"Rolled back {entity_id} to '{baseline.current_stage}' after failed move to "
            f"'{move.target_stage}': {describe_error(error)}"
        )
        self._on_change(ChangeKind.ROLLED_BACK, [entity_id])
        raise create_remote_commit_error(entity_id, move.target_stage, error) from error

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    async def delete_entities(self, ids: Sequence[EntityId]) -> DeleteResponse:
        """
        Remove applications optimistically, then delete them remotely.

        Every id the server does not confirm (reported failed, missing from
        the report, or the whole call raising) is re-inserted.

        Raises:
            PipelineError: VALIDATION_ERROR for a malformed id batch
        """
        ids = validate_id_batch(ids, self._max_batch_size)

        results: Dict[EntityId, BulkResultItem] = {}
        removed: Dict[EntityId, Application] = {}
        for entity_id in ids:
            entity = self._store.remove(entity_id)
            if entity is None:
                error = create_entity_not_found_error(entity_id)
                results[entity_id] = BulkResultItem(
                    id=entity_id, success=False, error=error.message, code=error.code.value
                )
            else:
                removed[entity_id] = entity
                self._pending_deletes[entity_id] = self._confirmed.get(entity_id, entity)

        if removed:
            self._on_change(ChangeKind.DELETED, list(removed))
            try:
                succeeded, error_message = await self._commit_delete(list(removed))
            finally:
                confirmed = {
                    entity_id: self._pending_deletes.pop(entity_id, entity)
                    for entity_id, entity in removed.items()
                }

            deleted, restored = [], []
            for entity_id, entity in removed.items():
                if entity_id in succeeded:
                    deleted.append(entity_id)
                    results[entity_id] = BulkResultItem(
                        id=entity_id, success=True, outcome=MoveOutcome.COMMITTED.value
                    )
                    continue
                # A refresh may already have brought it back; after dispose
                # nothing is restored
                if entity_id not in self._store and not self._invalidated:
                    # Moves still in flight resolve against the optimistic record
                    if self._in_flight.get(entity_id):
                        self._store.upsert(entity)
                    else:
                        self._store.upsert(confirmed[entity_id])
                    restored.append(entity_id)
                results[entity_id] = BulkResultItem(
                    id=entity_id,
                    success=False,
                    error=error_message,
                    code=ErrorCode.REMOTE_COMMIT_FAILED.value,
                )
            if deleted:
                self._on_change(ChangeKind.COMMITTED, deleted)
            if restored:
                logger.warning(f"Restored {len(restored)} application(s) after failed delete")
                self._on_change(ChangeKind.RESTORED, restored)

        ordered = [results[entity_id] for entity_id in ids]
        failed = sum(1 for item in ordered if not item.success)
        logger.info(f"Delete: {len(ordered) - failed} deleted, {failed} failed")
        return DeleteResponse(
            deleted_count=len(ordered) - failed, failed_count=failed, results=ordered
        )

    async def _commit_delete(self, ids: List[EntityId]) -> tuple[set, str]:
        try:
            raw = await self._remote.delete_many(ids)
            report = (
                raw if isinstance(raw, RemoteDeleteResult) else RemoteDeleteResult.model_validate(raw)
            )
        except ValidationError as e:
            error = map_pydantic_validation_error(e, "Remote delete result")
            logger.warning(f"Delete of {len(ids)} application(s) failed: {error.message}")
            return set(), error.message
        except Exception as e:
            logger.warning(f"Delete of {len(ids)} application(s) failed: {describe_error(e)}")
            return set(), f"Remote delete failed: {describe_error(e)}"
        return set(report.succeeded), "Remote delete failed"

    # ------------------------------------------------------------------
    # Refresh and external adds
    # ------------------------------------------------------------------

    async def refresh(self) -> bool:
        """
        Replace the store with the remote listing.

        High-water marks already known locally are kept (see
        ``EntityStore.replace_all``). Pending commits are invalidated: their
        responses will be ignored, and rollback baselines become the
        refreshed records. When refreshes overlap only the most recently
        started one is applied.

        Returns:
            True if this refresh was applied, False if a newer one superseded it

        Raises:
            RemoteReadFailed: The listing failed or returned malformed records;
                the store is unchanged
        """
        self._refresh_generation += 1
        generation = self._refresh_generation
        try:
            rows = await self._remote.list()
        except Exception as e:
            logger.warning(f"Refresh failed: {describe_error(e)}")
            raise create_remote_read_error(e) from e

        if generation != self._refresh_generation:
            logger.debug("Discarded superseded refresh result")
            return False

        try:
            incoming = [self.ingest(row) for row in rows]
        except PipelineError as e:
            raise create_remote_read_error(e) from e

        # Unconfirmed optimistic marks must not leak into the merged high-water
        for entity_id, baseline in self._confirmed.items():
            if entity_id in self._store:
                self._store.upsert(baseline)

        stored = self._store.replace_all(incoming)
        for entity_id in list(self._in_flight):
            self._tokens[entity_id] += 1
            entity = self._store.get(entity_id)
            if entity is None:
                self._confirmed.pop(entity_id, None)
            else:
                self._confirmed[entity_id] = entity

        logger.info(f"Refreshed {len(stored)} application(s)")
        self._on_change(ChangeKind.REFRESHED, [entity.id for entity in stored])
        return True

    def ingest(self, row: Any) -> Application:
        """
        Validate a remote record and map its stages onto the catalog.

        Unknown current stages land in the catalog's default stage, as the
        board always showed unrecognized statuses in its first column.

        Raises:
            PipelineError: VALIDATION_ERROR for a malformed record
        """
        if isinstance(row, Application):
            entity = row
        else:
            try:
                entity = Application.model_validate(row)
            except ValidationError as e:
                raise map_pydantic_validation_error(e, "Remote application record") from e

        stage = self._schema.normalize(entity.current_stage)
        if stage is None:
            logger.warning(
                f"Application {entity.id} has unknown stage '{entity.current_stage}'; "
                f"placing it in '{self._schema.default_stage}'"
            )
            stage = self._schema.default_stage

        high_water = self._schema.normalize(entity.high_water_stage)
        if high_water is not None and not self._schema.is_progressing(high_water):
            high_water = None

        if stage == entity.current_stage and high_water == entity.high_water_stage:
            return entity
        return entity.model_copy(update={"current_stage": stage, "high_water_stage": high_water})

    def add_entity(self, row: Any) -> Application:
        """
        Track an application the remote store has already created.

        Raises:
            PipelineError: VALIDATION_ERROR for a malformed record
        """
        entity = self._store.merge_high_water(self.ingest(row))
        self._store.upsert(entity)
        if self._in_flight.get(entity.id):
            # The remote record is the new rollback target for pending commits
            self._confirmed[entity.id] = entity
        logger.debug(f"Added application {entity.id} in '{entity.current_stage}'")
        self._on_change(ChangeKind.ADDED, [entity.id])
        return entity
