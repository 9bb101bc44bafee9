from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

import pytest

from questboard.constants import QUEST_KIND
from questboard.domain.models import Quest, Task, UnlockCondition
from questboard.errors import UnlockCycleError
from questboard.events.bus import FactPublisher
from questboard.guard import RecordGuard
from questboard.storage.memory import MemoryEventRepository, MemoryRecordStore
from questboard.unlock.evaluator import UnlockEvaluator, UnlockResult

ORG = "org-1"


def _evaluator(store: MemoryRecordStore, publisher: FactPublisher, **kwargs) -> UnlockEvaluator:
    return UnlockEvaluator(store, RecordGuard(store, publisher), publisher, **kwargs)


def _quest(store: MemoryRecordStore, quest_id: str) -> Quest:
    record = asyncio.run(store.get(QUEST_KIND, quest_id))
    assert record is not None
    return Quest.from_dict(record)


def _locked(quest_id: str, *conditions: UnlockCondition, task_ids: Optional[list[str]] = None) -> Quest:
    return Quest(id=quest_id, org_id=ORG, title=quest_id, unlock_conditions=list(conditions), task_ids=task_ids or [])


def _run(evaluator: UnlockEvaluator, now: datetime, **kwargs) -> UnlockResult:
    return asyncio.run(evaluator.evaluate(ORG, now, **kwargs))


class TestStrictEvaluation:
    def test_unapproved_checkpoint_does_not_satisfy_condition(self, store, publisher, seed, now) -> None:
        seed(
            Task(id="t-1", org_id=ORG, status="done", requires_approval=True),
            Task(id="t-2", org_id=ORG, status="done"),
            _locked("q-gate", UnlockCondition.all_tasks_completed(["t-1", "t-2"])),
        )
        evaluator = _evaluator(store, publisher)

        result = _run(evaluator, now)
        assert result.unlocked == []
        assert _quest(store, "q-gate").state == "locked"

        seed(Task(id="t-1", org_id=ORG, status="done", requires_approval=True, approved_at="x", approved_by="lead"))
        result = _run(evaluator, now, completed_task_id="t-1")
        assert result.unlocked == ["q-gate"]
        quest = _quest(store, "q-gate")
        assert quest.state == "unlocked"
        assert quest.unlocked_at == now.isoformat()

    def test_task_completed_condition_requires_approval(self, store, publisher, seed, now) -> None:
        seed(
            Task(id="t-1", org_id=ORG, status="done", requires_approval=True, approved_at="x"),
            _locked("q-1", UnlockCondition.task_completed("t-1")),
        )
        _run(_evaluator(store, publisher), now)
        assert _quest(store, "q-1").state == "locked"

    def test_any_task_completed(self, store, publisher, seed, now) -> None:
        seed(
            Task(id="t-1", org_id=ORG, status="todo"),
            Task(id="t-2", org_id=ORG, status="done"),
            _locked("q-1", UnlockCondition.any_task_completed(["t-1", "t-2"])),
        )
        result = _run(_evaluator(store, publisher), now)
        assert result.unlocked == ["q-1"]

    def test_conditions_are_anded(self, store, publisher, seed, now) -> None:
        seed(
            Task(id="t-1", org_id=ORG, status="done"),
            Task(id="t-2", org_id=ORG, status="todo"),
            _locked("q-1", UnlockCondition.task_completed("t-1"), UnlockCondition.task_completed("t-2")),
        )
        assert _run(_evaluator(store, publisher), now).unlocked == []

    def test_missing_reference_keeps_quest_locked(self, store, publisher, seed, now) -> None:
        seed(
            _locked("q-1", UnlockCondition.task_completed("no-such-task")),
            _locked("q-2", UnlockCondition.quest_completed("no-such-quest")),
        )
        result = _run(_evaluator(store, publisher), now)
        assert result.unlocked == []
        assert _quest(store, "q-1").state == "locked"
        assert _quest(store, "q-2").state == "locked"

    def test_unknown_condition_type_is_unmet(self, store, publisher, seed, now) -> None:
        seed(_locked("q-1", UnlockCondition(type="moonPhase")))  # type: ignore[arg-type]
        assert _run(_evaluator(store, publisher), now).unlocked == []

    def test_empty_condition_list_unlocks(self, store, publisher, seed, now) -> None:
        seed(_locked("q-1"))
        assert _run(_evaluator(store, publisher), now).unlocked == ["q-1"]

    def test_other_orgs_are_ignored(self, store, publisher, seed, now) -> None:
        seed(Quest(id="q-x", org_id="org-2", title="elsewhere"))
        assert _run(_evaluator(store, publisher), now).unlocked == []
        assert _quest(store, "q-x").state == "locked"


class TestCompletion:
    def test_all_tasks_done_completes_once(self, store, publisher, events, seed, now) -> None:
        seed(
            Task(id="t-1", org_id=ORG, status="done"),
            Task(id="t-2", org_id=ORG, status="done"),
            Quest.create(org_id=ORG, title="Build", task_ids=["t-1", "t-2"], quest_id="q-1"),
        )
        evaluator = _evaluator(store, publisher)

        first = _run(evaluator, now)
        assert first.completed == ["q-1"]
        quest = _quest(store, "q-1")
        assert quest.state == "completed"
        assert quest.completed_at == now.isoformat()

        second = _run(evaluator, now)
        assert not second.changed
        assert second.passes == 1
        assert _quest(store, "q-1").version == quest.version
        completed_facts = [e for e in events.list_recent() if e["type"] == "quest.completed"]
        assert len(completed_facts) == 1

    def test_partial_completion_starts_quest(self, store, publisher, seed, now) -> None:
        seed(
            Task(id="t-1", org_id=ORG, status="done"),
            Task(id="t-2", org_id=ORG, status="todo"),
            Quest.create(org_id=ORG, title="Build", task_ids=["t-1", "t-2"], quest_id="q-1"),
        )
        result = _run(_evaluator(store, publisher), now)
        assert result.started == ["q-1"]
        assert _quest(store, "q-1").state == "in-progress"

    def test_in_progress_never_reverts(self, store, publisher, seed, now) -> None:
        seed(
            Task(id="t-1", org_id=ORG, status="todo"),
            Quest(id="q-1", org_id=ORG, title="Build", task_ids=["t-1"], state="in-progress"),
        )
        result = _run(_evaluator(store, publisher), now)
        assert not result.changed
        assert _quest(store, "q-1").state == "in-progress"

    def test_quest_without_tasks_never_auto_completes(self, store, publisher, seed, now) -> None:
        seed(Quest.create(org_id=ORG, title="Empty", quest_id="q-1"))
        result = _run(_evaluator(store, publisher), now)
        assert not result.changed
        assert _quest(store, "q-1").state == "unlocked"

    def test_locked_quest_is_not_completed_directly(self, store, publisher, seed, now) -> None:
        seed(
            Task(id="t-1", org_id=ORG, status="done"),
            _locked("q-1", UnlockCondition.task_completed("missing"), task_ids=["t-1"]),
        )
        assert not _run(_evaluator(store, publisher), now).changed


class TestPropagation:
    def test_completion_cascades_through_quest_conditions(self, store, publisher, events, seed, now) -> None:
        seed(
            Task(id="t-1", org_id=ORG, status="done"),
            Task(id="t-2", org_id=ORG, status="todo"),
            Quest.create(org_id=ORG, title="First", task_ids=["t-1"], quest_id="q-a"),
            _locked("q-b", UnlockCondition.quest_completed("q-a"), task_ids=["t-2"]),
            _locked("q-c", UnlockCondition.quest_completed("q-b")),
        )
        result = _run(_evaluator(store, publisher), now, completed_task_id="t-1")

        assert result.completed == ["q-a"]
        assert result.unlocked == ["q-b"]
        assert _quest(store, "q-b").state == "unlocked"
        assert _quest(store, "q-c").state == "locked"

        unlocked = [e for e in events.list_recent() if e["type"] == "quest.unlocked"]
        assert unlocked[0]["payload"]["quest_id"] == "q-b"
        assert unlocked[0]["payload"]["trigger"] == {"task_id": "t-1", "quest_id": None}

    def test_chain_resolves_regardless_of_id_order(self, store, publisher, seed, now) -> None:
        # q-1 depends on q-2 which depends on q-3; sorted order visits the dependents first.
        seed(
            Task(id="t-3", org_id=ORG, status="done"),
            Task(id="t-2", org_id=ORG, status="done"),
            _locked("q-1", UnlockCondition.quest_completed("q-2")),
            _locked("q-2", UnlockCondition.quest_completed("q-3"), task_ids=["t-2"]),
            Quest.create(org_id=ORG, title="root", task_ids=["t-3"], quest_id="q-3"),
        )
        result = _run(_evaluator(store, publisher), now)
        assert sorted(result.completed) == ["q-2", "q-3"]
        assert sorted(result.unlocked) == ["q-1", "q-2"]
        assert result.passes > 1
        assert _quest(store, "q-1").state == "unlocked"

    def test_pass_bound_fails_loudly(self, store, publisher, seed, now) -> None:
        seed(_locked("q-1"))
        with pytest.raises(UnlockCycleError) as excinfo:
            _run(_evaluator(store, publisher, max_passes=1), now)
        assert excinfo.value.passes == 1


class TestReadyToUnlock:
    def _seed(self, seed) -> None:
        seed(
            Task(id="t-1", org_id=ORG, status="done", requires_approval=True),
            Task(id="t-2", org_id=ORG, status="todo"),
            _locked("q-half", UnlockCondition.task_completed("t-1"), UnlockCondition.task_completed("t-2")),
            _locked("q-none", UnlockCondition.task_completed("t-2")),
        )

    def test_half_met_is_ready_at_default_threshold(self, store, publisher, seed) -> None:
        self._seed(seed)
        ready = asyncio.run(_evaluator(store, publisher).ready_to_unlock(ORG))
        assert [q.id for q in ready] == ["q-half"]

    def test_threshold_is_configurable(self, store, publisher, seed) -> None:
        self._seed(seed)
        evaluator = _evaluator(store, publisher, ready_threshold=0.75)
        assert asyncio.run(evaluator.ready_to_unlock(ORG)) == []
        assert [q.id for q in asyncio.run(evaluator.ready_to_unlock(ORG, threshold=0.5))] == ["q-half"]

    def test_blocked_quests(self, store, publisher, seed) -> None:
        self._seed(seed)
        blocked = asyncio.run(_evaluator(store, publisher).blocked_quests(ORG))
        assert [q.id for q in blocked] == ["q-half", "q-none"]


def test_facts_share_the_callers_correlation_id(store, publisher, events: MemoryEventRepository, seed, now) -> None:
    seed(_locked("q-1"))
    _run(_evaluator(store, publisher), now, correlation_id="run-abc")
    facts = [e for e in events.list_recent() if e["type"] in ("quest.unlocked", "audit.quest.changed")]
    assert {e["correlation_id"] for e in facts} == {"run-abc"}
