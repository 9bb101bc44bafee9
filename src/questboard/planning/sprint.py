"""Weekly sprint plans built from the open work of active quests.

A plan covers Monday to Friday of one week and is keyed by org and week
start. For every member with a daily capacity it lists the open tasks they
own in unlocked or in-progress quests, the minutes those tasks need, and
how much of the member's five-day capacity that uses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional

from ..constants import DEFAULT_TASK_MINUTES, SPRINT_WORKDAYS
from ..deck.generator import task_quest_index
from ..domain.models import (
    PRIORITIES,
    Member,
    MemberSprintPlan,
    Quest,
    SprintPlan,
    SprintQuestRef,
    SprintTaskRef,
    Task,
)
from ..utils import to_iso


def week_bounds(day: date) -> tuple[date, date]:
    """Monday and Friday of the week containing *day*."""
    monday = day - timedelta(days=day.weekday())
    return monday, monday + timedelta(days=SPRINT_WORKDAYS - 1)


def _minutes(task: Task) -> int:
    if task.estimated_minutes is None or task.estimated_minutes <= 0:
        return DEFAULT_TASK_MINUTES
    return int(task.estimated_minutes)


def _order(task: Task) -> tuple[int, str]:
    rank = PRIORITIES.index(task.priority) if task.priority in PRIORITIES else 0
    return (-rank, task.id)


def _member_plan(member: Member, tasks: list[Task], quest_of: dict[str, Quest]) -> MemberSprintPlan:
    daily = member.profile.daily_capacity_minutes if member.profile else 0
    capacity = daily * SPRINT_WORKDAYS
    refs = [
        SprintTaskRef(
            task_id=t.id,
            task_title=t.title,
            quest_id=quest_of[t.id].id,
            priority=t.priority,
            estimated_minutes=_minutes(t),
        )
        for t in sorted(tasks, key=_order)
    ]
    quests: dict[str, SprintQuestRef] = {}
    for ref in refs:
        quest = quest_of[ref.task_id]
        quests.setdefault(quest.id, SprintQuestRef(quest_id=quest.id, quest_title=quest.title))
    allocated = sum(r.estimated_minutes for r in refs)
    return MemberSprintPlan(
        member_id=member.id,
        member_label=member.label,
        quests=[quests[qid] for qid in sorted(quests)],
        tasks=refs,
        capacity_minutes=capacity,
        allocated_minutes=allocated,
        utilization_percent=-(-allocated * 100 // capacity) if capacity > 0 else 0,
    )


def build_sprint_plan(
    org_id: str,
    week_of: date,
    quests: list[Quest],
    tasks: list[Task],
    members: list[Member],
    now: datetime,
    *,
    existing: Optional[SprintPlan] = None,
) -> SprintPlan:
    """Build the draft plan for the week containing *week_of*.

    Unowned tasks and members without a daily capacity are left out.
    Regenerating keeps the original ``created_at``.
    """
    week_start, week_end = week_bounds(week_of)
    active = [q for q in quests if q.state in ("unlocked", "in-progress")]
    quest_of = task_quest_index(active)

    owned: dict[str, list[Task]] = {}
    for task in tasks:
        if task.status == "done" or not task.owner or task.id not in quest_of:
            continue
        owned.setdefault(task.owner, []).append(task)

    staffed = sorted(
        (m for m in members if m.profile is not None and m.profile.daily_capacity_minutes > 0),
        key=lambda m: m.id,
    )
    stamp = to_iso(now)
    return SprintPlan(
        id=SprintPlan.key(org_id, week_start.isoformat()),
        org_id=org_id,
        week_start=week_start.isoformat(),
        week_end=week_end.isoformat(),
        member_plans=[_member_plan(m, owned.get(m.id, []), quest_of) for m in staffed],
        status="draft",
        created_at=existing.created_at if existing is not None else stamp,
        updated_at=stamp,
        version=existing.version if existing is not None else 0,
    )


@dataclass
class MemberPlanChange:
    member_id: str
    old_allocated_minutes: int
    new_allocated_minutes: int
    old_task_count: int
    new_task_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "member_id": self.member_id,
            "old_allocated_minutes": self.old_allocated_minutes,
            "new_allocated_minutes": self.new_allocated_minutes,
            "old_task_count": self.old_task_count,
            "new_task_count": self.new_task_count,
        }


@dataclass
class SprintPlanDiff:
    added: list[MemberSprintPlan] = field(default_factory=list)
    removed: list[MemberSprintPlan] = field(default_factory=list)
    changed: list[MemberPlanChange] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": [p.to_dict() for p in self.added],
            "removed": [p.to_dict() for p in self.removed],
            "changed": [c.to_dict() for c in self.changed],
        }


def compare_sprint_plans(old: SprintPlan, new: SprintPlan) -> SprintPlanDiff:
    """Members added, removed, or whose allocation or task count moved."""
    before = {p.member_id: p for p in old.member_plans}
    after = {p.member_id: p for p in new.member_plans}
    diff = SprintPlanDiff()
    for member_id in sorted(after):
        plan = after[member_id]
        prior = before.get(member_id)
        if prior is None:
            diff.added.append(plan)
        elif prior.allocated_minutes != plan.allocated_minutes or len(prior.tasks) != len(plan.tasks):
            diff.changed.append(
                MemberPlanChange(
                    member_id=member_id,
                    old_allocated_minutes=prior.allocated_minutes,
                    new_allocated_minutes=plan.allocated_minutes,
                    old_task_count=len(prior.tasks),
                    new_task_count=len(plan.tasks),
                )
            )
    diff.removed = [before[m] for m in sorted(before) if m not in after]
    return diff
