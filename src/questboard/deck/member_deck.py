"""Per-member quest decks with short starter micro-steps."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from ..domain.models import (
    Member,
    MemberDeckEntry,
    MemberQuestDeck,
    MicroStep,
    Quest,
    Task,
)
from ..utils import ensure_aware, parse_iso, to_iso

MAX_QUESTS = 2
MAX_TASKS_PER_QUEST = 7
MAX_MICRO_STEPS = 7
MAX_STARTER_STEPS = 2
STARTER_STEP_MINUTES = 15

_DOD_SPLIT = re.compile(r"[,\n•\-\*]")
_SENTENCE_SPLIT = re.compile(r"[.!?]")
_TASK_STATUS_ORDER = {"in-progress": 0, "todo": 1, "blocked": 2}


def generate_micro_steps(task: Task) -> list[MicroStep]:
    """Break a task into small steps.

    Definition-of-done items come first (10 min each, at most 5). When that
    gives fewer than two steps, description sentences are added (15 min
    each, at most 3). A task with neither gets a single "Start:" step.
    """
    steps: list[MicroStep] = []
    if task.dod:
        parts = [p.strip() for p in _DOD_SPLIT.split(task.dod)]
        for index, part in enumerate([p for p in parts if p][:5]):
            steps.append(MicroStep(id=f"micro-{task.id}-{index}", task_id=task.id, description=part, estimated_minutes=10))

    if len(steps) < 2 and task.description:
        sentences = [s.strip() for s in _SENTENCE_SPLIT.split(task.description)]
        for index, sentence in enumerate([s for s in sentences if len(s) > 10][:3]):
            if any(sentence[:20] in step.description for step in steps):
                continue
            steps.append(
                MicroStep(id=f"micro-{task.id}-desc-{index}", task_id=task.id, description=sentence, estimated_minutes=15)
            )

    if not steps:
        steps.append(
            MicroStep(id=f"micro-{task.id}-title", task_id=task.id, description=f"Start: {task.title}", estimated_minutes=15)
        )
    return steps[:MAX_MICRO_STEPS]


def _quest_sort_key(quest: Quest) -> tuple[int, float, str]:
    unlocked = parse_iso(quest.unlocked_at)
    stamp = unlocked.timestamp() if unlocked else 0.0
    return (0 if quest.state == "in-progress" else 1, -stamp, quest.id)


def build_member_deck(
    member: Member,
    quests: list[Quest],
    tasks: list[Task],
    now: datetime,
    *,
    date: Optional[str] = None,
) -> MemberQuestDeck:
    """Pick up to two active quests and the member's share of their open tasks.

    Tasks qualify when they are owned by *member* or unowned and not done;
    they are ordered in-progress, todo, blocked.
    """
    now = ensure_aware(now)
    date = date or now.date().isoformat()
    task_by_id = {t.id: t for t in tasks}
    active = sorted((q for q in quests if q.is_active), key=_quest_sort_key)

    entries: list[MemberDeckEntry] = []
    for quest in active[:MAX_QUESTS]:
        mine = [
            task_by_id[tid]
            for tid in quest.task_ids
            if tid in task_by_id
            and task_by_id[tid].status != "done"
            and task_by_id[tid].owner in (None, "", member.id)
        ]
        mine.sort(key=lambda t: _TASK_STATUS_ORDER.get(t.status, 3))
        chosen = mine[:MAX_TASKS_PER_QUEST]

        all_steps: list[MicroStep] = []
        for task in chosen:
            all_steps.extend(generate_micro_steps(task))
        starters = [s for s in all_steps[:MAX_STARTER_STEPS] if s.estimated_minutes <= STARTER_STEP_MINUTES]

        entries.append(
            MemberDeckEntry(
                quest_id=quest.id,
                quest_title=quest.title,
                task_ids=[t.id for t in chosen],
                micro_steps=starters,
                total_estimated_minutes=sum(s.estimated_minutes for s in all_steps),
            )
        )

    return MemberQuestDeck(
        id=MemberQuestDeck.key(member.id, date),
        member_id=member.id,
        org_id=member.org_id,
        date=date,
        entries=entries,
        generated_at=to_iso(now),
    )
