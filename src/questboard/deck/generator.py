"""Daily deck selection.

The generator is pure: it reads task, quest, questline and member snapshots
plus the current time and returns a :class:`DailyDeck`. Persisting the deck
(as a full replacement of the day's key) is the caller's job.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from loguru import logger

from ..config import DeckSettings
from ..domain.models import (
    DailyDeck,
    DeckItem,
    Member,
    MemberCapacity,
    Quest,
    Questline,
    Task,
)
from ..utils import ensure_aware, parse_iso, to_iso

SECONDS_PER_DAY = 24 * 60 * 60


def task_quest_index(quests: list[Quest]) -> dict[str, Quest]:
    """Map each task id to the quest that lists it (first quest by id wins)."""
    index: dict[str, Quest] = {}
    for quest in sorted(quests, key=lambda q: q.id):
        for task_id in quest.task_ids:
            index.setdefault(task_id, quest)
    return index


def is_blocked(task: Task) -> bool:
    return task.status == "blocked" or bool(task.blockers)


class DeckGenerator:
    def __init__(self, settings: Optional[DeckSettings] = None) -> None:
        self.settings = settings or DeckSettings()

    def minutes(self, task: Task) -> int:
        if task.estimated_minutes is None or task.estimated_minutes <= 0:
            return self.settings.default_estimated_minutes
        return int(task.estimated_minutes)

    def is_eligible(self, task: Task, quest: Optional[Quest]) -> bool:
        if task.status == "done" or is_blocked(task):
            return False
        return quest is not None and quest.is_active

    def score(self, task: Task, now: datetime) -> int:
        s = self.settings
        score = s.priority_weights.get(task.priority, s.priority_weights.get("low", 0))
        if task.status == "in-progress":
            score += s.in_progress_bonus

        created = parse_iso(task.created_at)
        if created is not None:
            age_days = int((ensure_aware(now) - created).total_seconds() // SECONDS_PER_DAY)
            score += min(max(age_days, 0), s.age_cap_days)

        minutes = self.minutes(task)
        for limit, bonus in s.quick_win_bonuses:
            if minutes <= limit:
                score += bonus
                break
        return score

    def reason(self, task: Task) -> str:
        if task.status == "in-progress":
            return "Already in progress"
        if task.priority == "urgent":
            return "Urgent priority"
        if task.priority == "high":
            return "High priority"
        if self.minutes(task) <= 30:
            return "Quick win (<=30 min)"
        return "High priority and unblocked"

    def generate(
        self,
        org_id: str,
        now: datetime,
        tasks: list[Task],
        quests: list[Quest],
        questlines: list[Questline],
        members: list[Member],
        *,
        run_id: Optional[str] = None,
    ) -> DailyDeck:
        """Select today's tasks for *org_id*.

        Takes ``min(max_items, max(min_items, candidates))`` of the eligible
        tasks ranked by score (ties by task id), and always returns a warnings
        list explaining shortfalls, missing profiles and over-capacity members.
        """
        s = self.settings
        now = ensure_aware(now)
        date = now.date().isoformat()
        quest_of = task_quest_index(quests)
        questline_by_id = {ql.id: ql for ql in questlines}
        member_by_id = {m.id: m for m in members}
        warnings: list[str] = []

        candidates = [t for t in tasks if self.is_eligible(t, quest_of.get(t.id))]
        ranked = sorted(((self.score(t, now), t) for t in candidates), key=lambda p: (-p[0], p[1].id))
        count = min(s.max_items, max(s.min_items, len(ranked)))
        selected = ranked[:count]

        if not candidates:
            warnings.append(self._empty_warning(tasks, quest_of))
        elif len(selected) < s.min_items:
            warnings.append(
                f"Only {len(selected)} task(s) in deck (target: {s.min_items}-{s.max_items}). "
                "Consider creating more tasks or unblocking existing ones."
            )

        profiled = [m for m in members if m.profile is not None]
        if members and not profiled:
            warnings.append(
                "No team members have profiles. Set up member profiles for better task assignment."
            )

        selected_tasks = [t for _, t in selected]
        capacity: list[MemberCapacity] = []
        for member in sorted(profiled, key=lambda m: m.id):
            cap = (member.profile.daily_capacity_minutes if member.profile else 0) or s.default_capacity_minutes
            planned = sum(self.minutes(t) for t in selected_tasks if t.owner == member.id)
            # Rounded up so any overrun reads above 100%.
            utilization = -(-planned * 100 // cap) if cap > 0 else 0
            if planned > cap:
                warnings.append(f"{member.label} is over capacity ({utilization}% utilization)")
            capacity.append(
                MemberCapacity(
                    member_id=member.id,
                    member_label=member.label,
                    capacity_minutes=cap,
                    planned_minutes=planned,
                    utilization_percent=utilization,
                )
            )

        items: list[DeckItem] = []
        for score, task in selected:
            quest = quest_of.get(task.id)
            questline = questline_by_id.get(quest.questline_id) if quest else None
            owner = member_by_id.get(task.owner or "")
            items.append(
                DeckItem(
                    task_id=task.id,
                    task_title=task.title,
                    quest_id=quest.id if quest else "",
                    quest_title=quest.title if quest else "",
                    questline_id=questline.id if questline else "",
                    questline_title=questline.title if questline else "",
                    owner=task.owner,
                    owner_label=owner.label if owner else None,
                    estimated_minutes=self.minutes(task),
                    priority=task.priority,
                    status=task.status,
                    score=score,
                    reason=self.reason(task),
                )
            )

        deck = DailyDeck(
            id=DailyDeck.key(org_id, date),
            org_id=org_id,
            date=date,
            generated_at=to_iso(now),
            run_id=run_id,
            items=items,
            team_capacity=capacity,
            tasks_considered=len(candidates),
            total_estimated_minutes=sum(i.estimated_minutes for i in items),
            warnings=warnings,
        )
        logger.info(
            "Deck {}: {} item(s) from {} candidate(s), {} warning(s)",
            deck.id, len(items), len(candidates), len(warnings),
        )
        return deck

    def _empty_warning(self, tasks: list[Task], quest_of: dict[str, Quest]) -> str:
        open_tasks = [t for t in tasks if t.status != "done"]
        if not tasks:
            return "No tasks exist. Create goals and decompose them to generate tasks."
        if not open_tasks:
            return "All tasks are completed! Create new goals to continue."
        blocked = sum(1 for t in open_tasks if is_blocked(t))
        if blocked:
            return f"{blocked} task(s) are blocked. Resolve blockers to unlock work."
        locked = sum(1 for t in open_tasks if t.id in quest_of and quest_of[t.id].state == "locked")
        if locked:
            return f"{locked} task(s) are locked. Complete prerequisite quests to unlock."
        orphans = sum(1 for t in open_tasks if t.id not in quest_of)
        if orphans:
            return f"{orphans} task(s) do not belong to any quest. Attach them to a quest to schedule them."
        return "No unblocked tasks found. All tasks are either completed, blocked, or locked."
