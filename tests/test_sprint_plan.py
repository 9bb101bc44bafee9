from __future__ import annotations

import asyncio
from datetime import date, datetime

import pytest

from questboard.constants import SPRINT_PLAN_KIND
from questboard.domain.models import AffinityTag, Member, MemberProfile, Quest, SprintPlan, Task
from questboard.errors import ConflictError, RecordNotFoundError, SprintPlanLockedError
from questboard.events.bus import FactPublisher
from questboard.orchestrator.service import OrchestrationService
from questboard.planning.sprint import build_sprint_plan, compare_sprint_plans, week_bounds
from questboard.storage.memory import MemoryEventRepository, MemoryRecordStore

ORG = "org-1"


def _member(member_id: str, capacity: int = 480, *, profile: bool = True) -> Member:
    return Member(
        id=member_id,
        org_id=ORG,
        email=f"{member_id}@example.com",
        profile=MemberProfile(top2=[AffinityTag.WONDER], daily_capacity_minutes=capacity) if profile else None,
    )


def _quest(quest_id: str, task_ids: list[str], state: str = "unlocked") -> Quest:
    return Quest(id=quest_id, org_id=ORG, title=f"Quest {quest_id}", task_ids=task_ids, state=state)  # type: ignore[arg-type]


def _task(task_id: str, owner: str | None = "alice", **kwargs) -> Task:
    return Task(id=task_id, org_id=ORG, title=f"Task {task_id}", owner=owner, **kwargs)


class TestWeekBounds:
    @pytest.mark.parametrize(
        ("day", "monday"),
        [
            (date(2026, 3, 9), date(2026, 3, 9)),
            (date(2026, 3, 11), date(2026, 3, 9)),
            (date(2026, 3, 15), date(2026, 3, 9)),
            (date(2026, 3, 16), date(2026, 3, 16)),
        ],
    )
    def test_monday_to_friday(self, day: date, monday: date) -> None:
        start, end = week_bounds(day)
        assert start == monday
        assert (end - start).days == 4


class TestBuild:
    def test_allocates_open_owned_work_in_active_quests(self, now: datetime) -> None:
        quests = [
            _quest("q-1", ["t-1", "t-2", "t-3", "t-4"]),
            _quest("q-2", ["t-5"], state="in-progress"),
            _quest("q-3", ["t-6"], state="locked"),
            _quest("q-4", ["t-7"], state="completed"),
        ]
        tasks = [
            _task("t-1", estimated_minutes=30, priority="low"),
            _task("t-2", status="done"),
            _task("t-3", owner=None),
            _task("t-4", owner="bob", priority="urgent"),
            _task("t-5", priority="high"),
            _task("t-6"),
            _task("t-7"),
            _task("t-orphan"),
        ]
        members = [_member("bob", capacity=60), _member("alice"), _member("carol", capacity=0), _member("dan", profile=False)]

        plan = build_sprint_plan(ORG, date(2026, 3, 11), quests, tasks, members, now)

        assert plan.id == "sprint-org-1-2026-03-09"
        assert (plan.week_start, plan.week_end) == ("2026-03-09", "2026-03-13")
        assert plan.status == "draft"
        assert [p.member_id for p in plan.member_plans] == ["alice", "bob"]

        alice, bob = plan.member_plans
        assert [t.task_id for t in alice.tasks] == ["t-5", "t-1"]
        assert [q.quest_id for q in alice.quests] == ["q-1", "q-2"]
        assert alice.capacity_minutes == 2400
        assert alice.allocated_minutes == 90
        assert alice.utilization_percent == 4

        assert [t.task_id for t in bob.tasks] == ["t-4"]
        assert bob.capacity_minutes == 300
        assert bob.utilization_percent == 20

    def test_members_without_work_still_get_a_row(self, now: datetime) -> None:
        plan = build_sprint_plan(ORG, date(2026, 3, 10), [], [], [_member("alice")], now)
        assert len(plan.member_plans) == 1
        assert plan.member_plans[0].tasks == []
        assert plan.member_plans[0].utilization_percent == 0

    def test_rebuild_keeps_created_at(self, now: datetime) -> None:
        first = SprintPlan(id="sprint-org-1-2026-03-09", org_id=ORG, created_at="2026-03-02T00:00:00+00:00", version=4)
        plan = build_sprint_plan(ORG, date(2026, 3, 10), [], [], [], now, existing=first)
        assert plan.created_at == "2026-03-02T00:00:00+00:00"
        assert plan.updated_at == now.isoformat()

    def test_round_trips_through_dict(self, now: datetime) -> None:
        plan = build_sprint_plan(
            ORG, date(2026, 3, 10), [_quest("q-1", ["t-1"])], [_task("t-1")], [_member("alice")], now
        )
        assert SprintPlan.from_dict(plan.to_dict()) == plan


class TestCompare:
    def test_added_removed_and_changed(self, now: datetime) -> None:
        quests = [_quest("q-1", ["t-1", "t-2"])]
        before = build_sprint_plan(
            ORG, date(2026, 3, 10), quests, [_task("t-1")], [_member("alice"), _member("bob")], now
        )
        after = build_sprint_plan(
            ORG, date(2026, 3, 10), quests, [_task("t-1"), _task("t-2")], [_member("alice"), _member("carol")], now
        )

        diff = compare_sprint_plans(before, after)

        assert [p.member_id for p in diff.added] == ["carol"]
        assert [p.member_id for p in diff.removed] == ["bob"]
        assert len(diff.changed) == 1
        change = diff.changed[0]
        assert (change.member_id, change.old_task_count, change.new_task_count) == ("alice", 1, 2)
        assert (change.old_allocated_minutes, change.new_allocated_minutes) == (60, 120)

    def test_identical_plans_have_no_diff(self, now: datetime) -> None:
        plan = build_sprint_plan(ORG, date(2026, 3, 10), [], [], [_member("alice")], now)
        assert compare_sprint_plans(plan, plan).is_empty


@pytest.fixture
def service(store: MemoryRecordStore, publisher: FactPublisher) -> OrchestrationService:
    return OrchestrationService(store, publisher)


def _seed_week(seed) -> None:
    seed(
        _quest("q-1", ["t-1", "t-2"]),
        _task("t-1", estimated_minutes=120),
        _task("t-2", owner="bob"),
        _member("alice"),
        _member("bob"),
    )


class TestService:
    def test_generate_stores_draft_and_announces_it(
        self, service, store: MemoryRecordStore, events: MemoryEventRepository, seed, now: datetime
    ) -> None:
        _seed_week(seed)
        plan = asyncio.run(service.generate_sprint_plan(ORG, date(2026, 3, 12), now=now))

        assert plan.version == 1
        stored = asyncio.run(store.get(SPRINT_PLAN_KIND, "sprint-org-1-2026-03-09"))
        assert stored is not None and stored["status"] == "draft"
        facts = [e for e in events.list_recent() if e["type"] == "sprint.plan.generated"]
        assert facts[0]["payload"]["task_count"] == 2
        assert facts[0]["payload"]["regenerated"] is False

    def test_draft_can_be_regenerated(self, service, seed, now: datetime) -> None:
        _seed_week(seed)
        first = asyncio.run(service.generate_sprint_plan(ORG, date(2026, 3, 9), now=now))
        seed(_task("t-3", estimated_minutes=30))
        seed(_quest("q-1", ["t-1", "t-2", "t-3"]))
        second = asyncio.run(service.generate_sprint_plan(ORG, date(2026, 3, 13), now=now))

        assert second.id == first.id
        assert second.version == 2
        assert second.created_at == first.created_at
        alice = next(p for p in second.member_plans if p.member_id == "alice")
        assert alice.allocated_minutes == 150

    def test_approved_plan_is_frozen(self, service, seed, now: datetime) -> None:
        _seed_week(seed)
        plan = asyncio.run(service.generate_sprint_plan(ORG, date(2026, 3, 10), now=now))
        approved = asyncio.run(service.approve_sprint_plan(plan.id, "lead", now=now))

        assert approved.status == "approved"
        assert approved.approved_by == "lead"
        assert approved.approved_at == now.isoformat()
        with pytest.raises(SprintPlanLockedError):
            asyncio.run(service.generate_sprint_plan(ORG, date(2026, 3, 10), now=now))

    def test_second_approval_is_a_no_op(self, service, seed, now: datetime) -> None:
        _seed_week(seed)
        plan = asyncio.run(service.generate_sprint_plan(ORG, date(2026, 3, 10), now=now))
        first = asyncio.run(service.approve_sprint_plan(plan.id, "lead", now=now))
        again = asyncio.run(service.approve_sprint_plan(plan.id, "someone-else", now=now))
        assert again.approved_by == "lead"
        assert again.version == first.version

    def test_approval_with_stale_version_conflicts(self, service, seed, now: datetime) -> None:
        _seed_week(seed)
        plan = asyncio.run(service.generate_sprint_plan(ORG, date(2026, 3, 10), now=now))
        asyncio.run(service.generate_sprint_plan(ORG, date(2026, 3, 10), now=now))
        with pytest.raises(ConflictError) as excinfo:
            asyncio.run(service.approve_sprint_plan(plan.id, "lead", expected_version=plan.version, now=now))
        assert excinfo.value.actual_version == 2

    def test_approving_missing_plan_raises(self, service) -> None:
        with pytest.raises(RecordNotFoundError):
            asyncio.run(service.approve_sprint_plan("sprint-org-1-2026-01-05", "lead"))

    def test_lookup_and_listing(self, service, seed, now: datetime) -> None:
        _seed_week(seed)
        asyncio.run(service.generate_sprint_plan(ORG, date(2026, 3, 17), now=now))
        asyncio.run(service.generate_sprint_plan(ORG, date(2026, 3, 10), now=now))

        assert [p.week_start for p in asyncio.run(service.list_sprint_plans(ORG))] == ["2026-03-09", "2026-03-16"]
        assert asyncio.run(service.list_sprint_plans("org-2")) == []
        assert asyncio.run(service.get_sprint_plan(ORG, "2026-03-16")) is not None
        assert asyncio.run(service.get_sprint_plan(ORG, "2026-03-23")) is None
