"""
Shared fixtures for pipeline engine tests.

``FakeRemote`` is an in-memory RemoteSync. By default every call resolves
immediately; with ``hold_updates``, ``hold_lists`` or ``hold_deletes`` set,
calls park on a future so a test can decide when, and in which order,
responses arrive.
"""

import asyncio

import pytest

from models.stages import StageSchema
from pipeline.engine import PipelineEngine

SERVER_TIMESTAMP = "2026-01-01T00:00:00.000Z"


class HeldCall:
    """One remote call waiting for the test to resolve it."""

    def __init__(self, remote, kind, args, future):
        self.remote = remote
        self.kind = kind
        self.args = args
        self.future = future

    def succeed(self, result=None):
        if result is None:
            result = self.remote.default_result(self.kind, self.args)
        self.future.set_result(result)

    def fail(self, error=None):
        self.future.set_exception(error or ConnectionError("network down"))


class FakeRemote:
    """In-memory authoritative store with controllable responses."""

    def __init__(self, rows=None):
        self.rows = {row["id"]: dict(row) for row in (rows or [])}
        self.fail_ids = set()
        self.delete_fail_ids = set()
        self.delete_error = None
        self.list_error = None
        self.hold_updates = False
        self.hold_lists = False
        self.hold_deletes = False
        self.held = []
        self.update_calls = []
        self.delete_calls = []
        self.list_calls = 0

    def default_result(self, kind, args):
        if kind == "list":
            return [dict(row) for row in self.rows.values()]
        if kind == "delete":
            (ids,) = args
            for entity_id in ids:
                self.rows.pop(entity_id, None)
            return {"succeeded": list(ids), "failed": []}
        entity_id, stage = args
        if entity_id in self.rows:
            self.rows[entity_id]["current_stage"] = stage
        return {"id": entity_id, "current_stage": stage, "stage_changed_at": SERVER_TIMESTAMP}

    async def _hold(self, kind, args):
        future = asyncio.get_running_loop().create_future()
        self.held.append(HeldCall(self, kind, args, future))
        return await future

    def pop_held(self):
        return self.held.pop(0)

    async def list(self):
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        if self.hold_lists:
            return await self._hold("list", ())
        return self.default_result("list", ())

    async def update_stage(self, entity_id, new_stage):
        self.update_calls.append((entity_id, new_stage))
        if self.hold_updates:
            return await self._hold("update", (entity_id, new_stage))
        if entity_id in self.fail_ids:
            raise ConnectionError("network down")
        return self.default_result("update", (entity_id, new_stage))

    async def delete_many(self, ids):
        self.delete_calls.append(list(ids))
        if self.hold_deletes:
            return await self._hold("delete", (list(ids),))
        if self.delete_error is not None:
            raise self.delete_error
        succeeded = [i for i in ids if i not in self.delete_fail_ids]
        failed = [i for i in ids if i in self.delete_fail_ids]
        for entity_id in succeeded:
            self.rows.pop(entity_id, None)
        return {"succeeded": succeeded, "failed": failed}


async def settle(rounds: int = 10):
    """Let scheduled tasks run up to their next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_rows(stages):
    """Rows with ids 1..n in the given stages."""
    return [
        {"id": index, "current_stage": stage, "title": f"Role {index}", "company": "Acme"}
        for index, stage in enumerate(stages, start=1)
    ]


SCENARIO_STAGES = [
    "Interested",
    "Interested",
    "Interested",
    "Applied",
    "Applied",
    "Phone Screen",
    "Interview",
    "Offer",
]


@pytest.fixture
def schema():
    return StageSchema.default()


@pytest.fixture
def remote():
    return FakeRemote(make_rows(SCENARIO_STAGES))


@pytest.fixture
def engine(remote, schema):
    """Engine pre-loaded with the remote rows, without awaiting refresh."""
    engine = PipelineEngine(remote, schema, max_batch_size=100)
    for row in remote.rows.values():
        engine.add_entity(row)
    yield engine
    engine.dispose()
