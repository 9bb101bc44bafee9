"""Quest unlock and completion evaluation.

Quest state only moves forward: locked -> unlocked -> in-progress -> completed.
Evaluation runs as a fixed-point loop over every quest in the org: each pass
unlocks quests whose conditions hold and advances quests whose own tasks are
(partly or fully) truly complete. A pass that changes nothing ends the loop.
Since each quest can advance at most three times, the loop is bounded by the
quest count; overrunning the bound raises :class:`UnlockCycleError`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from loguru import logger

from ..constants import QUEST_KIND, TASK_KIND
from ..domain.models import Quest, Task, UnlockCondition
from ..errors import UnlockCycleError
from ..events.bus import FactPublisher, new_correlation_id
from ..guard import RecordGuard
from ..storage.interfaces import RecordStore
from ..utils import to_iso


@dataclass
class UnlockResult:
    unlocked: list[str] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    passes: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.unlocked or self.started or self.completed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "unlocked": list(self.unlocked),
            "started": list(self.started),
            "completed": list(self.completed),
            "passes": self.passes,
        }


def condition_met(
    condition: UnlockCondition,
    tasks: dict[str, Task],
    quests: dict[str, Quest],
) -> bool:
    """Strict check. Missing ids and unknown condition types evaluate to False."""

    def _done(task_id: Optional[str]) -> bool:
        task = tasks.get(task_id or "")
        return task is not None and task.is_truly_complete

    if condition.type == "taskCompleted":
        return _done(condition.task_id)
    if condition.type == "questCompleted":
        quest = quests.get(condition.quest_id or "")
        return quest is not None and quest.state == "completed"
    if condition.type == "allTasksCompleted":
        # An empty id list is treated as unsatisfiable rather than vacuously true.
        return bool(condition.task_ids) and all(_done(tid) for tid in condition.task_ids)
    if condition.type == "anyTaskCompleted":
        return any(_done(tid) for tid in condition.task_ids)
    logger.warning("Unknown unlock condition type {!r}; treating as unmet", condition.type)
    return False


def loose_condition_met(
    condition: UnlockCondition,
    tasks: dict[str, Task],
    quests: dict[str, Quest],
) -> bool:
    """Looser check used for the ready-to-unlock hint: ``done`` counts even without approval."""

    def _done(task_id: Optional[str]) -> bool:
        task = tasks.get(task_id or "")
        return task is not None and task.status == "done"

    if condition.type == "taskCompleted":
        return _done(condition.task_id)
    if condition.type == "questCompleted":
        quest = quests.get(condition.quest_id or "")
        return quest is not None and quest.state == "completed"
    if condition.type == "allTasksCompleted":
        return bool(condition.task_ids) and all(_done(tid) for tid in condition.task_ids)
    if condition.type == "anyTaskCompleted":
        return any(_done(tid) for tid in condition.task_ids)
    return False


def conditions_met(quest: Quest, tasks: dict[str, Task], quests: dict[str, Quest]) -> bool:
    if not quest.unlock_conditions:
        return True
    return all(condition_met(c, tasks, quests) for c in quest.unlock_conditions)


class UnlockEvaluator:
    def __init__(
        self,
        store: RecordStore,
        guard: RecordGuard,
        publisher: FactPublisher,
        *,
        ready_threshold: float = 0.5,
        max_passes: int = 0,
    ) -> None:
        self.store = store
        self.guard = guard
        self.publisher = publisher
        self.ready_threshold = ready_threshold
        self.max_passes = max_passes

    async def _load(self, org_id: str) -> tuple[dict[str, Quest], dict[str, Task]]:
        quest_rows = await self.store.list(QUEST_KIND, lambda r: r.get("org_id") == org_id)
        task_rows = await self.store.list(TASK_KIND, lambda r: r.get("org_id") == org_id)
        quests = {q.id: q for q in (Quest.from_dict(r) for r in quest_rows)}
        tasks = {t.id: t for t in (Task.from_dict(r) for r in task_rows)}
        return quests, tasks

    def _pass_bound(self, quest_count: int) -> int:
        if self.max_passes > 0:
            return self.max_passes
        return 3 * quest_count + 2

    async def evaluate(
        self,
        org_id: str,
        now: datetime,
        *,
        completed_task_id: Optional[str] = None,
        completed_quest_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> UnlockResult:
        """Re-evaluate every quest in *org_id* until no state changes.

        ``completed_task_id`` / ``completed_quest_id`` name the fact that
        triggered the evaluation. They are recorded on the emitted facts; the
        outcome is always computed from stored state.
        """
        correlation_id = correlation_id or new_correlation_id(f"unlock-{org_id}")
        trigger = {"task_id": completed_task_id, "quest_id": completed_quest_id}
        quests, tasks = await self._load(org_id)
        result = UnlockResult()
        stamp = to_iso(now)
        bound = self._pass_bound(len(quests))

        while True:
            if result.passes >= bound:
                raise UnlockCycleError(org_id, result.passes)
            result.passes += 1
            changed = False
            for quest_id in sorted(quests):
                quest = quests[quest_id]
                if quest.state == "locked" and conditions_met(quest, tasks, quests):
                    quest = await self._advance(
                        quest, {"state": "unlocked", "unlocked_at": stamp},
                        "quest.unlocked", trigger, correlation_id, now,
                    )
                    quests[quest_id] = quest
                    result.unlocked.append(quest_id)
                    changed = True

                if not quest.is_active or not quest.task_ids:
                    continue
                own = [tasks.get(tid) for tid in quest.task_ids]
                complete = [t for t in own if t is not None and t.is_truly_complete]
                if len(complete) == len(own):
                    quest = await self._advance(
                        quest, {"state": "completed", "completed_at": stamp},
                        "quest.completed", trigger, correlation_id, now,
                    )
                    quests[quest_id] = quest
                    result.completed.append(quest_id)
                    changed = True
                elif complete and quest.state == "unlocked":
                    quest = await self._advance(
                        quest, {"state": "in-progress"},
                        "quest.started", trigger, correlation_id, now,
                    )
                    quests[quest_id] = quest
                    result.started.append(quest_id)
                    changed = True
            if not changed:
                break

        if result.changed:
            logger.info(
                "Org {}: unlocked {}, started {}, completed {} quest(s) in {} pass(es)",
                org_id, len(result.unlocked), len(result.started), len(result.completed), result.passes,
            )
        return result

    async def _advance(
        self,
        quest: Quest,
        changes: dict[str, Any],
        event_type: str,
        trigger: dict[str, Optional[str]],
        correlation_id: str,
        now: datetime,
    ) -> Quest:
        # Guarded by the version read at load time; an overlapping writer surfaces as a conflict.
        updated = await self.guard.mutate_quest(
            quest.id,
            changes,
            actor="questmaster",
            expected_version=quest.version,
            correlation_id=correlation_id,
            now=now,
        )
        logger.debug("Quest {} {} -> {}", quest.id, quest.state, updated.state)
        self.publisher.publish(
            event_type,
            {
                "quest_id": updated.id,
                "questline_id": updated.questline_id,
                "title": updated.title,
                "from_state": quest.state,
                "to_state": updated.state,
                "trigger": trigger,
            },
            org_id=updated.org_id,
            correlation_id=correlation_id,
        )
        return updated

    async def ready_to_unlock(self, org_id: str, *, threshold: Optional[float] = None) -> list[Quest]:
        """Locked quests that have met at least ``threshold`` of their conditions.

        A looser hint than :meth:`evaluate`: tasks count as complete when
        ``done`` even if an approval is still pending.
        """
        threshold = self.ready_threshold if threshold is None else threshold
        quests, tasks = await self._load(org_id)
        ready: list[Quest] = []
        for quest in sorted(quests.values(), key=lambda q: q.id):
            if quest.state != "locked" or not quest.unlock_conditions:
                continue
            met = sum(1 for c in quest.unlock_conditions if loose_condition_met(c, tasks, quests))
            if met > 0 and met / len(quest.unlock_conditions) >= threshold:
                ready.append(quest)
        return ready

    async def blocked_quests(self, org_id: str) -> list[Quest]:
        """Locked quests that are gated by at least one condition."""
        quests, _ = await self._load(org_id)
        return sorted(
            (q for q in quests.values() if q.state == "locked" and q.unlock_conditions),
            key=lambda q: q.id,
        )
