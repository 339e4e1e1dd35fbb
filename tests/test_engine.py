"""
Tests for the PipelineEngine facade.

Covers reads, change notification and lifecycle.
"""

import asyncio
import logging

import pytest

from config import Config
from conftest import FakeRemote, make_rows, settle
from models.errors import ErrorCode, InvalidStage, PipelineError, RemoteCommitFailed
from models.stages import StageSchema
from pipeline.engine import PipelineEngine
from pipeline.notifier import ChangeKind
from schemas.pipeline import MoveOutcome


class TestReads:
    """Tests for the read API."""

    def test_distribution_and_funnel(self, engine):
        assert engine.get_current_distribution()["Interested"] == 3
        assert engine.get_cumulative_funnel()["Applied"] == 5
        assert engine.get_snapshot().total == 8

    def test_conversion_rates(self, engine):
        rates = engine.get_conversion_rates()
        assert rates[0].from_stage == "Interested"
        assert rates[0].to_stage == "Applied"
        assert rates[0].rate == pytest.approx(5 / 8)

    def test_entities_by_stage_newest_first(self, engine):
        ids = [entity.id for entity in engine.get_entities_by_stage("interested")]
        assert ids == [3, 2, 1]

    def test_entities_by_unknown_stage(self, engine):
        with pytest.raises(InvalidStage):
            engine.get_entities_by_stage("Ghosted")

    def test_get_entity_unknown(self, engine):
        assert engine.get_entity(404) is None

    @pytest.mark.asyncio
    async def test_moved_entity_on_top_of_column(self, engine):
        await engine.move_entity(1, "Applied")
        ids = [entity.id for entity in engine.get_entities_by_stage("Applied")]
        assert ids[0] == 1


class TestSubscribe:
    """Tests for change notification."""

    @pytest.mark.asyncio
    async def test_commit_fires_optimistic_then_committed(self, engine):
        events = []
        engine.subscribe(events.append)

        await engine.move_entity(4, "Interview")

        assert [event.kind for event in events] == [ChangeKind.OPTIMISTIC, ChangeKind.COMMITTED]
        assert all(event.entity_ids == [4] for event in events)
        assert events[0].snapshot.current_by_stage["Interview"] == 2

    @pytest.mark.asyncio
    async def test_rollback_fires_rolled_back(self, engine, remote):
        events = []
        engine.subscribe(events.append)
        remote.fail_ids = {4}

        with pytest.raises(RemoteCommitFailed):
            await engine.move_entity(4, "Interview")

        assert [event.kind for event in events] == [ChangeKind.OPTIMISTIC, ChangeKind.ROLLED_BACK]
        assert events[-1].snapshot == engine.get_snapshot()
        assert events[-1].snapshot.current_by_stage["Interview"] == 1

    @pytest.mark.asyncio
    async def test_refresh_fires_refreshed(self, engine):
        events = []
        engine.subscribe(events.append)
        await engine.refresh()
        assert [event.kind for event in events] == [ChangeKind.REFRESHED]
        assert sorted(events[0].entity_ids) == list(range(1, 9))

    @pytest.mark.asyncio
    async def test_delete_failure_fires_deleted_then_restored(self, engine, remote):
        events = []
        engine.subscribe(events.append)
        remote.delete_fail_ids = {1}
        await engine.delete_entities([1])
        assert [event.kind for event in events] == [ChangeKind.DELETED, ChangeKind.RESTORED]

    @pytest.mark.asyncio
    async def test_delete_success_fires_deleted_then_committed(self, engine):
        events = []
        engine.subscribe(events.append)
        await engine.delete_entities([1, 2])

        assert [event.kind for event in events] == [ChangeKind.DELETED, ChangeKind.COMMITTED]
        assert events[-1].entity_ids == [1, 2]
        assert events[-1].snapshot.total == 6

    def test_add_fires_added(self, engine):
        events = []
        engine.subscribe(events.append)
        engine.add_entity({"id": 30, "current_stage": "Offer"})
        assert events[0].kind == ChangeKind.ADDED
        assert events[0].snapshot.total == 9

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, engine):
        events = []
        unsubscribe = engine.subscribe(events.append)
        unsubscribe()
        unsubscribe()
        await engine.move_entity(4, "Interview")
        assert events == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, engine, caplog):
        events = []

        def broken(event):
            raise RuntimeError("listener bug")

        engine.subscribe(broken)
        engine.subscribe(events.append)

        with caplog.at_level(logging.ERROR):
            await engine.move_entity(4, "Interview")

        assert len(events) == 2
        assert "Change listener failed" in caplog.text


class TestLifecycle:
    """Tests for create/refresh/dispose."""

    @pytest.mark.asyncio
    async def test_create_and_refresh(self):
        remote = FakeRemote(make_rows(["Applied", "Offer", "Rejected"]))
        engine = PipelineEngine.create(remote, config=Config())

        assert engine.get_snapshot().total == 0
        snapshot = await engine.refresh()

        assert snapshot.total == 3
        assert snapshot.cumulative_by_stage["Applied"] == 2
        assert engine.get_entity(3).high_water_stage is None
        engine.dispose()

    def test_create_with_custom_schema(self):
        schema = StageSchema(["Wishlist", "Applied", "Declined"], ["Declined"])
        engine = PipelineEngine.create(FakeRemote(), schema=schema, config=Config())
        assert engine.schema is schema
        assert set(engine.get_current_distribution()) == {"Wishlist", "Applied", "Declined"}

    def test_create_uses_configured_batch_limit(self, monkeypatch):
        monkeypatch.setenv("STAGETRACK_BULK_MAX", "5")
        engine = PipelineEngine.create(FakeRemote(), config=Config())
        assert engine.coordinator._max_batch_size == 5

    @pytest.mark.asyncio
    async def test_dispose_blocks_further_calls(self, engine):
        engine.dispose()
        engine.dispose()

        assert engine.disposed is True
        with pytest.raises(PipelineError) as exc_info:
            await engine.move_entity(4, "Interview")
        assert exc_info.value.code == ErrorCode.ENGINE_DISPOSED
        for read in (engine.get_snapshot, engine.get_cumulative_funnel, lambda: engine.get_entity(4)):
            with pytest.raises(PipelineError):
                read()
        with pytest.raises(PipelineError):
            await engine.refresh()
        with pytest.raises(PipelineError):
            engine.subscribe(lambda event: None)

    @pytest.mark.asyncio
    async def test_pending_commit_ignored_after_dispose(self, engine, remote):
        events = []
        engine.subscribe(events.append)
        remote.hold_updates = True
        task = asyncio.create_task(engine.move_entity(4, "Interview"))
        await settle()

        engine.dispose()
        remote.pop_held().fail()

        result = await task
        assert result.outcome == MoveOutcome.SUPERSEDED
        assert [event.kind for event in events] == [ChangeKind.OPTIMISTIC]

    @pytest.mark.asyncio
    async def test_failed_delete_after_dispose_restores_nothing(self, engine, remote):
        remote.hold_deletes = True
        task = asyncio.create_task(engine.delete_entities([1, 2]))
        await settle()

        engine.dispose()
        remote.pop_held().fail()
        response = await task

        assert response.failed_count == 2
        assert len(engine.store) == 0

    @pytest.mark.asyncio
    async def test_async_context_manager_disposes(self):
        async with PipelineEngine.create(FakeRemote(), config=Config()) as engine:
            assert engine.disposed is False
        assert engine.disposed is True
