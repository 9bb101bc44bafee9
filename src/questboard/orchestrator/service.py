from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from loguru import logger

from ..assignment.affinity import AffinityClassifier
from ..assignment.scorer import AssignmentCandidate, AssignmentExplanation, AssignmentScorer
from ..config import QuestboardConfig
from ..constants import (
    DAILY_DECK_KIND,
    MEMBER_DECK_KIND,
    MEMBER_KIND,
    QUEST_KIND,
    QUESTLINE_KIND,
    SPRINT_PLAN_KIND,
    TASK_KIND,
)
from ..deck.generator import DeckGenerator
from ..deck.member_deck import build_member_deck
from ..domain.models import PRIORITIES, DailyDeck, Member, Quest, Questline, SprintPlan, Task
from ..errors import ApprovalError, OrchestrationError, RecordNotFoundError, SprintPlanLockedError
from ..events.bus import FactPublisher, new_correlation_id
from ..guard import RecordGuard
from ..planning.sprint import build_sprint_plan, week_bounds
from ..storage.interfaces import RecordStore
from ..unlock.evaluator import UnlockEvaluator, UnlockResult
from ..utils import ensure_aware, parse_iso, to_iso

RUN_ACTOR = "questmaster"


@dataclass
class RunReport:
    org_id: str
    correlation_id: str
    quests_unlocked: int = 0
    quests_completed: int = 0
    tasks_assigned: int = 0
    deck_size: int = 0
    tasks_considered: int = 0
    stale_tasks: int = 0
    member_decks: int = 0
    deck_id: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class OrgSnapshot:
    tasks: list[Task]
    quests: list[Quest]
    questlines: list[Questline]
    members: list[Member]


def _priority_rank(task: Task) -> int:
    # urgent first
    return -PRIORITIES.index(task.priority) if task.priority in PRIORITIES else 0


class OrchestrationService:
    """Run unlock evaluation, assignment and deck generation for one org.

    A run is a sequence of independent writes with no enclosing
    transaction. When a stage fails the writes of earlier stages stay
    committed, the failure is reported with the stage name, and re-running
    is safe because every stage only moves state forward.
    """

    def __init__(
        self,
        store: RecordStore,
        publisher: FactPublisher,
        *,
        config: Optional[QuestboardConfig] = None,
        classifier: Optional[AffinityClassifier] = None,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.config = config or QuestboardConfig()
        self.guard = RecordGuard(store, publisher)
        self.unlocker = UnlockEvaluator(
            store,
            self.guard,
            publisher,
            ready_threshold=self.config.unlock.ready_threshold,
            max_passes=self.config.unlock.max_passes,
        )
        self.scorer = AssignmentScorer(self.config.assignment, classifier)
        self.deck_generator = DeckGenerator(self.config.deck)

    async def load_snapshot(self, org_id: str) -> OrgSnapshot:
        def in_org(record: dict[str, Any]) -> bool:
            return record.get("org_id") == org_id

        tasks = [Task.from_dict(r) for r in await self.store.list(TASK_KIND, in_org)]
        quests = [Quest.from_dict(r) for r in await self.store.list(QUEST_KIND, in_org)]
        questlines = [Questline.from_dict(r) for r in await self.store.list(QUESTLINE_KIND, in_org)]
        members = [Member.from_dict(r) for r in await self.store.list(MEMBER_KIND, in_org)]
        return OrgSnapshot(
            tasks=sorted(tasks, key=lambda t: t.id),
            quests=sorted(quests, key=lambda q: q.id),
            questlines=sorted(questlines, key=lambda ql: ql.id),
            members=sorted(members, key=lambda m: m.id),
        )

    # -- orchestration run -------------------------------------------------

    async def run_orchestration(self, org_id: str, now: datetime) -> RunReport:
        """Evaluate unlocks, assign unowned tasks, then regenerate the decks.

        Raises:
            OrchestrationError: any failure inside a stage, chained to the
                original exception. Version conflicts on quest writes are not retried.
        """
        now = ensure_aware(now)
        correlation_id = new_correlation_id(f"run-{org_id}")
        report = RunReport(org_id=org_id, correlation_id=correlation_id)
        logger.info("Orchestration run {} started for org {} at {}", correlation_id, org_id, to_iso(now))
        self.publisher.publish(
            "questmaster.run.started", {"now": to_iso(now)}, org_id=org_id, correlation_id=correlation_id
        )

        stage = "load"
        try:
            snapshot = await self.load_snapshot(org_id)
            logger.debug(
                "Org {}: {} task(s), {} quest(s), {} member(s)",
                org_id, len(snapshot.tasks), len(snapshot.quests), len(snapshot.members),
            )

            stage = "unlock"
            unlock = await self.unlocker.evaluate(org_id, now, correlation_id=correlation_id)
            report.quests_unlocked = len(unlock.unlocked)
            report.quests_completed = len(unlock.completed)

            stage = "assign"
            assigned = await self.reassign_unowned(org_id, now, correlation_id=correlation_id, snapshot=snapshot)
            report.tasks_assigned = sum(1 for e in assigned if e.assigned_member_id)

            stage = "deck"
            snapshot = await self.load_snapshot(org_id)
            deck = self.deck_generator.generate(
                org_id,
                now,
                snapshot.tasks,
                snapshot.quests,
                snapshot.questlines,
                snapshot.members,
                run_id=correlation_id,
            )
            await self.store.upsert(DAILY_DECK_KIND, deck.to_dict())
            self.publisher.publish(
                "quest.daily_deck.generated",
                {
                    "deck_id": deck.id,
                    "date": deck.date,
                    "task_count": len(deck.items),
                    "warning_count": len(deck.warnings),
                },
                org_id=org_id,
                correlation_id=correlation_id,
            )
            report.deck_id = deck.id
            report.deck_size = len(deck.items)
            report.tasks_considered = deck.tasks_considered
            report.warnings = list(deck.warnings)

            report.stale_tasks = self._publish_task_health(org_id, snapshot.tasks, now, correlation_id)
            if self.config.orchestration.member_decks:
                report.member_decks = await self._generate_member_decks(org_id, snapshot, now, correlation_id)
        except Exception as exc:
            logger.error("Orchestration run {} failed at stage {}: {}", correlation_id, stage, exc)
            self.publisher.publish(
                "questmaster.run.failed",
                {"stage": stage, "error": str(exc), "partial": report.to_dict()},
                org_id=org_id,
                correlation_id=correlation_id,
            )
            raise OrchestrationError(org_id, stage, exc) from exc

        self.publisher.publish(
            "questmaster.run.completed", report.to_dict(), org_id=org_id, correlation_id=correlation_id
        )
        logger.info(
            "Orchestration run {} finished: {} unlocked, {} assigned, deck of {}",
            correlation_id, report.quests_unlocked, report.tasks_assigned, report.deck_size,
        )
        return report

    def _publish_task_health(
        self,
        org_id: str,
        tasks: list[Task],
        now: datetime,
        correlation_id: str,
    ) -> int:
        stale_hours = self.config.orchestration.stale_hours
        threshold = now - timedelta(hours=stale_hours)
        stale = 0
        for task in tasks:
            if task.status == "done":
                continue
            if task.status != "blocked":
                updated = parse_iso(task.updated_at)
                if updated is not None and updated < threshold:
                    stale += 1
                    self.publisher.publish(
                        "task.stale",
                        {
                            "task_id": task.id,
                            "title": task.title,
                            "last_updated": task.updated_at,
                            "stale_hours": stale_hours,
                        },
                        org_id=org_id,
                        correlation_id=correlation_id,
                    )
            if task.blockers:
                self.publisher.publish(
                    "task.blocked",
                    {"task_id": task.id, "title": task.title, "blockers": list(task.blockers)},
                    org_id=org_id,
                    correlation_id=correlation_id,
                )
        if stale:
            logger.warning("Org {}: {} task(s) not updated in {}h", org_id, stale, stale_hours)
        return stale

    async def _generate_member_decks(
        self,
        org_id: str,
        snapshot: OrgSnapshot,
        now: datetime,
        correlation_id: str,
    ) -> int:
        count = 0
        for member in snapshot.members:
            if member.profile is None:
                continue
            deck = build_member_deck(member, snapshot.quests, snapshot.tasks, now)
            await self.store.upsert(MEMBER_DECK_KIND, deck.to_dict())
            self.publisher.publish(
                "quest.deck.generated",
                {
                    "member_id": member.id,
                    "date": deck.date,
                    "quest_count": len(deck.entries),
                    "task_count": deck.task_count,
                },
                org_id=org_id,
                correlation_id=correlation_id,
            )
            count += 1
        return count

    # -- assignment --------------------------------------------------------

    def _candidates(self, members: list[Member], tasks: list[Task], *, exclude_task: Optional[str] = None) -> list[AssignmentCandidate]:
        workload = {m.id: 0 for m in members}
        for task in tasks:
            if task.status == "done" or task.id == exclude_task:
                continue
            if task.owner in workload:
                workload[task.owner] += self.scorer.task_minutes(task)
        return [AssignmentCandidate(m.id, m.profile, workload[m.id]) for m in members]

    async def reassign_unowned(
        self,
        org_id: str,
        now: datetime,
        *,
        correlation_id: Optional[str] = None,
        snapshot: Optional[OrgSnapshot] = None,
    ) -> list[AssignmentExplanation]:
        """Assign every unowned, unfinished task in one batch.

        Tasks are placed most urgent first (ties by id) so the workload added
        by earlier placements is charged before later ones are scored.
        Pass the run's *snapshot* to score against it instead of re-listing
        the store. Each write only lands while the stored task is still
        unowned and open; tasks claimed or finished in the meantime are
        skipped and left out of the result.
        """
        correlation_id = correlation_id or new_correlation_id(f"assign-{org_id}")
        if snapshot is None:
            snapshot = await self.load_snapshot(org_id)
        pending = sorted(
            (t for t in snapshot.tasks if not t.owner and t.status != "done"),
            key=lambda t: (_priority_rank(t), t.id),
        )
        if not pending:
            return []

        candidates = self._candidates(snapshot.members, snapshot.tasks)
        explanations = self.scorer.assign_batch(pending, candidates)
        stamp = to_iso(now)
        results: list[AssignmentExplanation] = []
        for task, explanation in zip(pending, explanations):
            if explanation.assigned_member_id is None:
                results.append(explanation)
                continue
            record = explanation.to_dict()
            record["assigned_at"] = stamp
            written = await self.guard.mutate_unowned_task(
                task.id,
                {"owner": explanation.assigned_member_id, "assignment": record},
                actor=RUN_ACTOR,
                correlation_id=correlation_id,
                now=now,
            )
            if written is None:
                continue
            results.append(explanation)
            self.publisher.publish(
                "task.assigned",
                {
                    "task_id": task.id,
                    "member_id": explanation.assigned_member_id,
                    "tag": explanation.tag.value,
                    "reason": explanation.reason,
                    "alternatives": explanation.alternatives,
                },
                org_id=org_id,
                correlation_id=correlation_id,
            )
            logger.info("Assigned task {} to {} ({})", task.id, explanation.assigned_member_id, explanation.reason)
        return results

    async def explain_assignment(self, org_id: str, task_id: str) -> Optional[AssignmentExplanation]:
        """Score *task_id* against the org's members without writing anything."""
        snapshot = await self.load_snapshot(org_id)
        task = next((t for t in snapshot.tasks if t.id == task_id), None)
        if task is None:
            return None
        candidates = self._candidates(snapshot.members, snapshot.tasks, exclude_task=task.id)
        return self.scorer.assign(task, candidates)

    # -- completion and approval ------------------------------------------

    async def complete_task(
        self,
        task_id: str,
        *,
        actor: str,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Task:
        """Mark a task done and propagate unlocks.

        Pass ``expected_version`` to reject the write when another client
        changed the task first. Tasks awaiting approval do not trigger
        unlock evaluation until they are approved.
        """
        now = ensure_aware(now or datetime.now(timezone.utc))
        correlation_id = new_correlation_id(f"complete-{task_id}")
        task = await self.guard.mutate_task(
            task_id,
            {"status": "done", "completed_at": to_iso(now)},
            actor=actor,
            expected_version=expected_version,
            correlation_id=correlation_id,
            now=now,
        )
        self.publisher.publish(
            "task.completed",
            {
                "task_id": task.id,
                "title": task.title,
                "completed_by": actor,
                "requires_approval": task.requires_approval,
            },
            org_id=task.org_id,
            correlation_id=correlation_id,
        )
        if not task.is_truly_complete:
            logger.info("Task {} is done but awaits approval", task.id)
            return task
        await self.unlocker.evaluate(task.org_id, now, completed_task_id=task.id, correlation_id=correlation_id)
        return task

    async def approve_task(
        self,
        task_id: str,
        approved_by: str,
        *,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Task:
        now = ensure_aware(now or datetime.now(timezone.utc))
        record = await self.store.get(TASK_KIND, task_id)
        if record is None:
            raise RecordNotFoundError(TASK_KIND, task_id)
        task = Task.from_dict(record)
        if not task.requires_approval:
            raise ApprovalError(f"Task {task_id} does not require approval")
        if task.status != "done":
            raise ApprovalError(f"Task {task_id} must be done before it can be approved")
        if task.approved_at:
            logger.info("Task {} already approved by {}", task_id, task.approved_by)
            return task

        correlation_id = new_correlation_id(f"approve-{task_id}")
        approved = await self.guard.mutate_task(
            task_id,
            {"approved_at": to_iso(now), "approved_by": approved_by},
            actor=approved_by,
            expected_version=expected_version,
            correlation_id=correlation_id,
            now=now,
        )
        self.publisher.publish(
            "task.approved",
            {"task_id": approved.id, "title": approved.title, "approved_by": approved_by},
            org_id=approved.org_id,
            correlation_id=correlation_id,
        )
        result = await self.unlocker.evaluate(
            approved.org_id, now, completed_task_id=approved.id, correlation_id=correlation_id
        )
        for quest_id in result.unlocked:
            self.publisher.publish(
                "quest.checkpoint.passed",
                {"quest_id": quest_id, "task_id": approved.id, "approved_by": approved_by},
                org_id=approved.org_id,
                correlation_id=correlation_id,
            )
        return approved

    # -- queries -----------------------------------------------------------

    async def evaluate_unlocks(self, org_id: str, now: datetime) -> UnlockResult:
        return await self.unlocker.evaluate(org_id, ensure_aware(now))

    async def ready_to_unlock(self, org_id: str) -> list[Quest]:
        return await self.unlocker.ready_to_unlock(org_id)

    async def get_daily_deck(self, org_id: str, date: str) -> Optional[DailyDeck]:
        record = await self.store.get(DAILY_DECK_KIND, DailyDeck.key(org_id, date))
        return DailyDeck.from_dict(record) if record is not None else None

    # -- sprint planning ---------------------------------------------------

    async def generate_sprint_plan(
        self,
        org_id: str,
        week_of: date,
        *,
        now: Optional[datetime] = None,
    ) -> SprintPlan:
        """Build or rebuild the draft plan for the week containing *week_of*.

        Raises:
            SprintPlanLockedError: the week's plan has already been approved.
            ConflictError: the plan was approved while it was being rebuilt.
        """
        now = ensure_aware(now or datetime.now(timezone.utc))
        week_start, _ = week_bounds(week_of)
        plan_id = SprintPlan.key(org_id, week_start.isoformat())
        record = await self.store.get(SPRINT_PLAN_KIND, plan_id)
        existing = SprintPlan.from_dict(record) if record is not None else None
        if existing is not None and existing.status != "draft":
            raise SprintPlanLockedError(plan_id, existing.status)

        snapshot = await self.load_snapshot(org_id)
        plan = build_sprint_plan(
            org_id, week_of, snapshot.quests, snapshot.tasks, snapshot.members, now, existing=existing
        )
        if existing is None:
            stored = await self.store.upsert(SPRINT_PLAN_KIND, plan.to_dict())
        else:
            stored = await self.store.update_with_version(SPRINT_PLAN_KIND, plan.to_dict(), existing.version)
        plan = SprintPlan.from_dict(stored)
        self.publisher.publish(
            "sprint.plan.generated",
            {
                "plan_id": plan.id,
                "week_start": plan.week_start,
                "member_count": len(plan.member_plans),
                "task_count": sum(len(p.tasks) for p in plan.member_plans),
                "regenerated": existing is not None,
            },
            org_id=org_id,
            correlation_id=new_correlation_id(f"sprint-{org_id}"),
        )
        logger.info("Sprint plan {} generated for {} member(s)", plan.id, len(plan.member_plans))
        return plan

    async def get_sprint_plan(self, org_id: str, week_start: str) -> Optional[SprintPlan]:
        record = await self.store.get(SPRINT_PLAN_KIND, SprintPlan.key(org_id, week_start))
        return SprintPlan.from_dict(record) if record is not None else None

    async def list_sprint_plans(self, org_id: str) -> list[SprintPlan]:
        records = await self.store.list(SPRINT_PLAN_KIND, lambda r: r.get("org_id") == org_id)
        return sorted((SprintPlan.from_dict(r) for r in records), key=lambda p: p.week_start)

    async def approve_sprint_plan(
        self,
        plan_id: str,
        approved_by: str,
        *,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SprintPlan:
        now = ensure_aware(now or datetime.now(timezone.utc))
        record = await self.store.get(SPRINT_PLAN_KIND, plan_id)
        if record is None:
            raise RecordNotFoundError(SPRINT_PLAN_KIND, plan_id)
        plan = SprintPlan.from_dict(record)
        if plan.status == "approved":
            logger.info("Sprint plan {} already approved by {}", plan_id, plan.approved_by)
            return plan

        stamp = to_iso(now)
        updated = {**record, "status": "approved", "approved_at": stamp, "approved_by": approved_by, "updated_at": stamp}
        version = plan.version if expected_version is None else expected_version
        approved = SprintPlan.from_dict(await self.store.update_with_version(SPRINT_PLAN_KIND, updated, version))
        self.publisher.publish(
            "sprint.plan.approved",
            {"plan_id": approved.id, "week_start": approved.week_start, "approved_by": approved_by},
            org_id=approved.org_id,
            correlation_id=new_correlation_id(f"sprint-approve-{plan_id}"),
        )
        return approved
