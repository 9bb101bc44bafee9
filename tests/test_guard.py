from __future__ import annotations

import asyncio

import pytest

from questboard.constants import QUEST_KIND, TASK_KIND
from questboard.domain.models import Quest, Task
from questboard.errors import ConflictError, RecordNotFoundError
from questboard.events.bus import FactPublisher
from questboard.guard import RecordGuard
from questboard.storage.interfaces import EventRepository
from questboard.storage.memory import MemoryEventRepository, MemoryRecordStore


@pytest.fixture
def guard(store: MemoryRecordStore, publisher: FactPublisher) -> RecordGuard:
    return RecordGuard(store, publisher)


def test_write_with_current_version_succeeds(guard: RecordGuard, store: MemoryRecordStore, seed) -> None:
    seed(Task(id="t-1", org_id="org-1", title="Ship"))
    task = asyncio.run(guard.mutate_task("t-1", {"status": "in-progress"}, expected_version=1))
    assert task.status == "in-progress"
    assert task.version == 2


def test_stale_version_raises_conflict_without_writing(guard: RecordGuard, store: MemoryRecordStore, seed) -> None:
    seed(Task(id="t-1", org_id="org-1", title="Ship"))
    asyncio.run(guard.mutate_task("t-1", {"title": "Ship it"}))

    with pytest.raises(ConflictError) as excinfo:
        asyncio.run(guard.mutate_task("t-1", {"status": "done", "owner": "m-1"}, expected_version=1))

    err = excinfo.value
    assert err.expected_version == 1
    assert err.actual_version == 2
    assert err.latest_record["title"] == "Ship it"
    stored = asyncio.run(store.get(TASK_KIND, "t-1"))
    assert stored is not None
    assert stored["status"] == "todo"
    assert stored["owner"] is None
    assert stored["version"] == 2


def test_write_without_version_always_succeeds(guard: RecordGuard, seed) -> None:
    seed(Task(id="t-1", org_id="org-1", title="Ship"))

    async def _two_writers() -> list[Task]:
        return list(
            await asyncio.gather(
                guard.mutate_task("t-1", {"owner": "m-1"}),
                guard.mutate_task("t-1", {"priority": "high"}),
            )
        )

    results = asyncio.run(_two_writers())
    assert sorted(t.version for t in results) == [2, 3]


def test_protected_fields_are_not_overwritten(guard: RecordGuard, seed) -> None:
    seed(Task(id="t-1", org_id="org-1", title="Ship"))
    task = asyncio.run(guard.mutate_task("t-1", {"id": "other", "org_id": "org-2", "version": 50, "title": "New"}))
    assert task.id == "t-1"
    assert task.org_id == "org-1"
    assert task.version == 2
    assert task.title == "New"


def test_missing_record_raises(guard: RecordGuard) -> None:
    with pytest.raises(RecordNotFoundError):
        asyncio.run(guard.mutate_task("ghost", {"status": "done"}))


def test_audit_fact_has_before_and_after(guard: RecordGuard, events: MemoryEventRepository, seed) -> None:
    seed(Task(id="t-1", org_id="org-1", title="Ship"))
    asyncio.run(guard.mutate_task("t-1", {"status": "done"}, actor="alice", correlation_id="corr-1"))

    audit = [e for e in events.list_recent() if e["type"] == "audit.task.changed"]
    assert len(audit) == 1
    fact = audit[0]
    assert fact["org_id"] == "org-1"
    assert fact["correlation_id"] == "corr-1"
    assert fact["payload"]["actor"] == "alice"
    assert fact["payload"]["before"]["status"] == "todo"
    assert fact["payload"]["after"]["status"] == "done"
    assert fact["payload"]["changes"] == ["status"]
    assert fact["payload"]["version"] == 2


def test_quest_mutation_audits_state(guard: RecordGuard, store: MemoryRecordStore, events: MemoryEventRepository, seed) -> None:
    seed(Quest(id="q-1", org_id="org-1", title="Gate"))
    quest = asyncio.run(guard.mutate_quest("q-1", {"state": "unlocked"}, expected_version=1))
    assert quest.state == "unlocked"
    stored = asyncio.run(store.get(QUEST_KIND, "q-1"))
    assert stored is not None and stored["state"] == "unlocked"
    audit = [e for e in events.list_recent() if e["type"] == "audit.quest.changed"]
    assert audit[0]["payload"]["before"]["state"] == "locked"
    assert audit[0]["payload"]["after"]["state"] == "unlocked"


class _FailingRepo(EventRepository):
    def append(self, event):  # type: ignore[no-untyped-def]
        raise RuntimeError("log unavailable")

    def list_recent(self, limit: int = 100):  # type: ignore[no-untyped-def]
        return []


def test_audit_failure_does_not_fail_the_write(store: MemoryRecordStore, seed) -> None:
    seed(Task(id="t-1", org_id="org-1", title="Ship"))
    guard = RecordGuard(store, FactPublisher(_FailingRepo()))
    task = asyncio.run(guard.mutate_task("t-1", {"status": "done"}))
    assert task.status == "done"


class _InterleavingStore(MemoryRecordStore):
    """Lets a second client write right after a reader fetches a record."""

    def __init__(self, changes: dict, *, times: int = 1) -> None:
        super().__init__()
        self.changes = changes
        self.times = times

    async def get(self, kind, record_id):  # type: ignore[no-untyped-def]
        record = await super().get(kind, record_id)
        if record is not None and self.times > 0:
            self.times -= 1
            await self.upsert(kind, {**record, **self.changes})
        return record


def _seed_into(store: MemoryRecordStore, task: Task) -> None:
    asyncio.run(store.upsert(TASK_KIND, task.to_dict()))


def test_untokened_write_keeps_a_concurrent_completion(publisher: FactPublisher) -> None:
    store = _InterleavingStore({"status": "done"}, times=0)
    _seed_into(store, Task(id="t-1", org_id="org-1", title="Ship"))
    store.times = 1
    guard = RecordGuard(store, publisher)

    task = asyncio.run(guard.mutate_task("t-1", {"owner": "m-1"}))

    assert task.status == "done"
    assert task.owner == "m-1"
    stored = asyncio.run(store.get(TASK_KIND, "t-1"))
    assert stored is not None
    assert (stored["status"], stored["owner"], stored["version"]) == ("done", "m-1", 3)


def test_tokened_write_still_conflicts_on_interleaved_write(publisher: FactPublisher) -> None:
    store = _InterleavingStore({"title": "Renamed"}, times=0)
    _seed_into(store, Task(id="t-1", org_id="org-1", title="Ship"))
    store.times = 1
    guard = RecordGuard(store, publisher)

    with pytest.raises(ConflictError):
        asyncio.run(guard.mutate_task("t-1", {"status": "done"}, expected_version=1))
    stored = asyncio.run(store.get(TASK_KIND, "t-1"))
    assert stored is not None
    assert stored["status"] == "todo"


def test_untokened_merge_gives_up_under_constant_contention(publisher: FactPublisher) -> None:
    store = _InterleavingStore({"priority": "high"}, times=0)
    _seed_into(store, Task(id="t-1", org_id="org-1", title="Ship"))
    store.times = 100
    guard = RecordGuard(store, publisher)

    with pytest.raises(ConflictError):
        asyncio.run(guard.mutate_task("t-1", {"owner": "m-1"}))


def test_unowned_write_is_skipped_when_task_was_claimed(publisher: FactPublisher, events: MemoryEventRepository) -> None:
    store = _InterleavingStore({"owner": "m-2"}, times=0)
    _seed_into(store, Task(id="t-1", org_id="org-1", title="Ship"))
    store.times = 1
    guard = RecordGuard(store, publisher)

    assert asyncio.run(guard.mutate_unowned_task("t-1", {"owner": "m-1"})) is None
    stored = asyncio.run(store.get(TASK_KIND, "t-1"))
    assert stored is not None and stored["owner"] == "m-2"
    assert not [e for e in events.list_recent() if e["type"] == "audit.task.changed"]


def test_unowned_write_is_skipped_for_finished_task(guard: RecordGuard, seed) -> None:
    seed(Task(id="t-1", org_id="org-1", title="Ship", status="done"))
    assert asyncio.run(guard.mutate_unowned_task("t-1", {"owner": "m-1"})) is None


def test_unowned_write_lands_on_open_task(guard: RecordGuard, seed) -> None:
    seed(Task(id="t-1", org_id="org-1", title="Ship"))
    task = asyncio.run(guard.mutate_unowned_task("t-1", {"owner": "m-1"}))
    assert task is not None
    assert task.owner == "m-1"


def test_caller_clock_stamps_updated_at(guard: RecordGuard, seed, now) -> None:
    seed(Task(id="t-1", org_id="org-1", title="Ship"))
    task = asyncio.run(guard.mutate_task("t-1", {"status": "in-progress"}, now=now))
    assert task.updated_at == now.isoformat()
    seed(Quest(id="q-1", org_id="org-1", title="Gate"))
    quest = asyncio.run(guard.mutate_quest("q-1", {"state": "unlocked"}, now=now))
    assert quest.updated_at == now.isoformat()
