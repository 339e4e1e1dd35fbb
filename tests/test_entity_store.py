"""
Unit tests for EntityStore and StageIndex.

Tests index maintenance, bucket ordering, high-water merging on replace and
the consistency check.
"""

import pytest

from models.application import Application
from models.errors import InvalidStage, StoreInvariantError
from pipeline.entity_store import EntityStore, StageIndex


def app(entity_id, stage, high_water=None):
    return Application(id=entity_id, current_stage=stage, high_water_stage=high_water)


@pytest.fixture
def store(schema):
    return EntityStore(schema)


class TestStageIndex:
    """Tests for the stage grouping."""

    def test_add_and_lookup(self):
        index = StageIndex(["A", "B"])
        index.add(1, "A")
        assert index.stage_of(1) == "A"
        assert index.ids("A") == [1]
        assert index.count("B") == 0

    def test_re_adding_moves_between_buckets(self):
        index = StageIndex(["A", "B"])
        index.add(1, "A")
        index.add(1, "B")
        assert index.ids("A") == []
        assert index.ids("B") == [1]

    def test_newest_arrival_listed_first(self):
        index = StageIndex(["A"])
        index.add(1, "A")
        index.add(2, "A")
        assert index.ids("A") == [2, 1]

    def test_discard_unknown_is_harmless(self):
        index = StageIndex(["A"])
        index.discard(99)
        assert index.buckets() == {"A": []}


class TestEntityStore:
    """Tests for entity writes and reads."""

    def test_upsert_and_get(self, store):
        store.upsert(app(1, "Applied", "Applied"))
        assert store.get(1).current_stage == "Applied"
        assert 1 in store
        assert len(store) == 1
        assert store.ids_in_stage("Applied") == [1]

    def test_upsert_unknown_stage_rejected(self, store):
        with pytest.raises(InvalidStage):
            store.upsert(app(1, "Ghosted"))
        assert len(store) == 0

    def test_upsert_moves_bucket(self, store):
        store.upsert(app(1, "Applied", "Applied"))
        store.upsert(app(1, "Interview", "Interview"))
        assert store.ids_in_stage("Applied") == []
        assert store.ids_in_stage("Interview") == [1]
        assert store.count_in_stage("Interview") == 1

    def test_upsert_same_stage_keeps_position(self, store):
        store.upsert(app(1, "Applied", "Applied"))
        store.upsert(app(2, "Applied", "Applied"))
        store.upsert(store.get(1).model_copy(update={"payload": {"title": "Edited"}}))
        assert store.ids_in_stage("Applied") == [2, 1]
        assert store.get(1).payload == {"title": "Edited"}

    def test_moved_entity_lands_on_top(self, store):
        store.upsert(app(1, "Interview", "Interview"))
        store.upsert(app(2, "Applied", "Applied"))
        store.upsert(app(2, "Interview", "Interview"))
        assert store.ids_in_stage("Interview") == [2, 1]

    def test_remove(self, store):
        store.upsert(app(1, "Applied", "Applied"))
        removed = store.remove(1)
        assert removed.id == 1
        assert 1 not in store
        assert store.ids_in_stage("Applied") == []

    def test_remove_unknown_returns_none(self, store):
        assert store.remove(42) is None

    def test_records_are_immutable(self, store):
        store.upsert(app(1, "Applied", "Applied"))
        with pytest.raises(Exception):
            store.get(1).current_stage = "Offer"
        assert store.get(1).current_stage == "Applied"

    def test_clear(self, store):
        store.upsert(app(1, "Applied", "Applied"))
        store.clear()
        assert len(store) == 0
        assert store.ids_in_stage("Applied") == []


class TestReplaceAll:
    """Tests for wholesale replacement."""

    def test_replace_keeps_listing_order(self, store):
        store.replace_all([app(1, "Applied"), app(2, "Applied"), app(3, "Applied")])
        assert store.ids_in_stage("Applied") == [1, 2, 3]

    def test_replace_drops_missing_entities(self, store):
        store.upsert(app(9, "Offer", "Offer"))
        store.replace_all([app(1, "Applied")])
        assert 9 not in store
        assert store.ids_in_stage("Offer") == []

    def test_current_stage_seeds_high_water(self, store):
        stored = store.replace_all([app(1, "Interview")])
        assert stored[0].high_water_stage == "Interview"

    def test_local_high_water_preserved(self, store):
        store.upsert(app(1, "Applied", "Interview"))
        store.replace_all([app(1, "Applied")])
        assert store.get(1).high_water_stage == "Interview"

    def test_incoming_high_water_wins_when_further(self, store):
        store.upsert(app(1, "Applied", "Applied"))
        store.replace_all([app(1, "Applied", "Offer")])
        assert store.get(1).high_water_stage == "Offer"

    def test_exit_stage_without_history_has_no_high_water(self, store):
        store.replace_all([app(1, "Rejected")])
        assert store.get(1).high_water_stage is None

    def test_replace_unknown_stage_rejected(self, store):
        store.upsert(app(1, "Applied", "Applied"))
        with pytest.raises(InvalidStage):
            store.replace_all([app(2, "Ghosted")])
        assert 1 in store


class TestAssertConsistent:
    """Tests for the invariant check."""

    def test_consistent_store_passes(self, store):
        store.replace_all([app(1, "Applied"), app(2, "Rejected"), app(3, "Offer")])
        store.assert_consistent()

    def test_high_water_behind_current_detected(self, store):
        store.upsert(app(1, "Interview", "Applied"))
        with pytest.raises(StoreInvariantError):
            store.assert_consistent()

    def test_exit_high_water_detected(self, store):
        store.upsert(app(1, "Applied", "Rejected"))
        with pytest.raises(StoreInvariantError):
            store.assert_consistent()

    def test_index_drift_detected(self, store):
        store.upsert(app(1, "Applied", "Applied"))
        store._index.discard(1)
        with pytest.raises(StoreInvariantError):
            store.assert_consistent()
