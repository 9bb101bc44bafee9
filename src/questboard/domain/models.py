from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal, Optional

from ..constants import DEFAULT_TASK_MINUTES
from ..utils import now_iso


GoalStatus = Literal["draft", "clarified", "approved", "decomposed", "denied"]
QuestState = Literal["locked", "unlocked", "in-progress", "completed"]
TaskStatus = Literal["todo", "in-progress", "blocked", "done"]
Priority = Literal["low", "medium", "high", "urgent"]
ConditionType = Literal["taskCompleted", "questCompleted", "allTasksCompleted", "anyTaskCompleted"]

QUEST_STATES: tuple[str, ...] = ("locked", "unlocked", "in-progress", "completed")
TASK_STATUSES: tuple[str, ...] = ("todo", "in-progress", "blocked", "done")
PRIORITIES: tuple[str, ...] = ("low", "medium", "high", "urgent")
CONDITION_TYPES: tuple[str, ...] = ("taskCompleted", "questCompleted", "allTasksCompleted", "anyTaskCompleted")


def quest_state_rank(state: str) -> int:
    """Position of *state* in the one-way quest lifecycle (unknown states rank lowest)."""
    try:
        return QUEST_STATES.index(state)
    except ValueError:
        return -1


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def _pick(value: Any, allowed: tuple[str, ...], default: str) -> str:
    text = str(value) if value is not None else ""
    return text if text in allowed else default


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class AffinityTag(str, Enum):
    """The six working-style tags used for member profiles and task classification."""

    WONDER = "Wonder"
    INVENTION = "Invention"
    DISCERNMENT = "Discernment"
    GALVANIZING = "Galvanizing"
    ENABLEMENT = "Enablement"
    TENACITY = "Tenacity"

    @property
    def code(self) -> str:
        return self.value[0]

    @classmethod
    def parse(cls, raw: Any) -> Optional["AffinityTag"]:
        """Accept a tag instance, its full name, or its single-letter phase code."""
        if isinstance(raw, cls):
            return raw
        if raw is None:
            return None
        text = str(raw).strip()
        if not text:
            return None
        for tag in cls:
            if text.lower() == tag.value.lower() or text.upper() == tag.code:
                return tag
        return None


def _tag_pair(raw: Any) -> list[AffinityTag]:
    tags: list[AffinityTag] = []
    for item in list(raw or [])[:2]:
        tag = AffinityTag.parse(item)
        if tag is not None:
            tags.append(tag)
    return tags


@dataclass
class Goal:
    id: str = field(default_factory=lambda: _id("goal"))
    org_id: str = ""
    title: str = ""
    status: GoalStatus = "draft"
    questline_ids: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Goal":
        return cls(
            id=str(data.get("id") or _id("goal")),
            org_id=str(data.get("org_id") or ""),
            title=str(data.get("title") or ""),
            status=_pick(data.get("status"), ("draft", "clarified", "approved", "decomposed", "denied"), "draft"),  # type: ignore[arg-type]
            questline_ids=list(data.get("questline_ids") or []),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            version=int(data.get("version") or 0),
        )


@dataclass
class Questline:
    id: str = field(default_factory=lambda: _id("ql"))
    org_id: str = ""
    goal_id: str = ""
    title: str = ""
    description: str = ""
    quest_ids: list[str] = field(default_factory=list)
    owner: Optional[str] = None
    order: int = 0
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Questline":
        return cls(
            id=str(data.get("id") or _id("ql")),
            org_id=str(data.get("org_id") or ""),
            goal_id=str(data.get("goal_id") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            quest_ids=list(data.get("quest_ids") or []),
            owner=data.get("owner"),
            order=int(data.get("order") or 0),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            version=int(data.get("version") or 0),
        )


@dataclass
class UnlockCondition:
    """One predicate over completion facts. A quest's conditions are ANDed."""

    type: ConditionType = "taskCompleted"
    task_id: Optional[str] = None
    quest_id: Optional[str] = None
    task_ids: list[str] = field(default_factory=list)

    @classmethod
    def task_completed(cls, task_id: str) -> "UnlockCondition":
        return cls(type="taskCompleted", task_id=task_id)

    @classmethod
    def quest_completed(cls, quest_id: str) -> "UnlockCondition":
        return cls(type="questCompleted", quest_id=quest_id)

    @classmethod
    def all_tasks_completed(cls, task_ids: list[str]) -> "UnlockCondition":
        return cls(type="allTasksCompleted", task_ids=list(task_ids))

    @classmethod
    def any_task_completed(cls, task_ids: list[str]) -> "UnlockCondition":
        return cls(type="anyTaskCompleted", task_ids=list(task_ids))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.type == "taskCompleted":
            data["task_id"] = self.task_id
        elif self.type == "questCompleted":
            data["quest_id"] = self.quest_id
        else:
            data["task_ids"] = list(self.task_ids)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UnlockCondition":
        # Unknown types are kept verbatim so they evaluate to false rather than vanish.
        return cls(
            type=str(data.get("type") or ""),  # type: ignore[arg-type]
            task_id=data.get("task_id"),
            quest_id=data.get("quest_id"),
            task_ids=[str(t) for t in list(data.get("task_ids") or [])],
        )


@dataclass
class Quest:
    id: str = field(default_factory=lambda: _id("quest"))
    org_id: str = ""
    questline_id: str = ""
    title: str = ""
    objective: str = ""
    unlock_conditions: list[UnlockCondition] = field(default_factory=list)
    task_ids: list[str] = field(default_factory=list)
    state: QuestState = "locked"
    unlocked_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    version: int = 0

    @classmethod
    def create(
        cls,
        *,
        org_id: str,
        title: str,
        questline_id: str = "",
        objective: str = "",
        unlock_conditions: Optional[list[UnlockCondition]] = None,
        task_ids: Optional[list[str]] = None,
        quest_id: Optional[str] = None,
    ) -> "Quest":
        """Build a new quest; one without conditions starts out unlocked."""
        conditions = list(unlock_conditions or [])
        created = now_iso()
        quest = cls(
            id=quest_id or _id("quest"),
            org_id=org_id,
            questline_id=questline_id,
            title=title,
            objective=objective,
            unlock_conditions=conditions,
            task_ids=list(task_ids or []),
            state="locked" if conditions else "unlocked",
            created_at=created,
            updated_at=created,
        )
        if not conditions:
            quest.unlocked_at = created
        return quest

    @property
    def is_active(self) -> bool:
        return self.state in ("unlocked", "in-progress")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["unlock_conditions"] = [c.to_dict() for c in self.unlock_conditions]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Quest":
        conditions = [
            UnlockCondition.from_dict(c)
            for c in list(data.get("unlock_conditions") or [])
            if isinstance(c, dict)
        ]
        return cls(
            id=str(data.get("id") or _id("quest")),
            org_id=str(data.get("org_id") or ""),
            questline_id=str(data.get("questline_id") or ""),
            title=str(data.get("title") or ""),
            objective=str(data.get("objective") or ""),
            unlock_conditions=conditions,
            task_ids=[str(t) for t in list(data.get("task_ids") or [])],
            state=_pick(data.get("state"), QUEST_STATES, "locked"),  # type: ignore[arg-type]
            unlocked_at=data.get("unlocked_at"),
            completed_at=data.get("completed_at"),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            version=int(data.get("version") or 0),
        )


@dataclass
class Task:
    id: str = field(default_factory=lambda: _id("task"))
    org_id: str = ""
    title: str = ""
    description: str = ""
    dod: str = ""
    status: TaskStatus = "todo"
    priority: Priority = "medium"
    owner: Optional[str] = None
    estimated_minutes: Optional[int] = None
    phase: Optional[str] = None
    blockers: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    requires_approval: bool = False
    approved_at: Optional[str] = None
    approved_by: Optional[str] = None
    completed_at: Optional[str] = None

    # Last assignment explanation, kept for auditing the owner choice.
    assignment: Optional[dict[str, Any]] = None

    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    version: int = 0

    @property
    def is_truly_complete(self) -> bool:
        """Done, and approved when the task is an approval checkpoint."""
        if self.status != "done":
            return False
        if self.requires_approval:
            return bool(self.approved_at) and bool(self.approved_by)
        return True

    @property
    def minutes(self) -> int:
        """Estimated minutes, falling back to the default task size."""
        if self.estimated_minutes is None or self.estimated_minutes <= 0:
            return DEFAULT_TASK_MINUTES
        return int(self.estimated_minutes)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        payload = {k: data.get(k) for k in cls.__dataclass_fields__}
        payload["id"] = str(data.get("id") or _id("task"))
        payload["org_id"] = str(data.get("org_id") or "")
        payload["title"] = str(data.get("title") or "")
        payload["description"] = str(data.get("description") or "")
        payload["dod"] = str(data.get("dod") or "")
        payload["status"] = _pick(data.get("status"), TASK_STATUSES, "todo")
        payload["priority"] = _pick(data.get("priority"), PRIORITIES, "medium")
        payload["estimated_minutes"] = _int_or_none(data.get("estimated_minutes"))
        payload["blockers"] = [str(b) for b in list(data.get("blockers") or []) if str(b).strip()]
        payload["tags"] = list(data.get("tags") or [])
        payload["requires_approval"] = bool(data.get("requires_approval"))
        assignment = data.get("assignment")
        payload["assignment"] = dict(assignment) if isinstance(assignment, dict) else None
        payload["created_at"] = str(data.get("created_at") or now_iso())
        payload["updated_at"] = str(data.get("updated_at") or now_iso())
        payload["version"] = int(data.get("version") or 0)
        return cls(**payload)


@dataclass
class MemberProfile:
    top2: list[AffinityTag] = field(default_factory=list)
    competency2: list[AffinityTag] = field(default_factory=list)
    frustration2: list[AffinityTag] = field(default_factory=list)
    daily_capacity_minutes: int = 0

    @property
    def usable(self) -> bool:
        return self.daily_capacity_minutes > 0 and bool(self.top2 or self.competency2 or self.frustration2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "top2": [t.value for t in self.top2],
            "competency2": [t.value for t in self.competency2],
            "frustration2": [t.value for t in self.frustration2],
            "daily_capacity_minutes": self.daily_capacity_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemberProfile":
        return cls(
            top2=_tag_pair(data.get("top2")),
            competency2=_tag_pair(data.get("competency2")),
            frustration2=_tag_pair(data.get("frustration2")),
            daily_capacity_minutes=_int_or_none(data.get("daily_capacity_minutes")) or 0,
        )


@dataclass
class Member:
    id: str = field(default_factory=lambda: _id("member"))
    org_id: str = ""
    email: str = ""
    name: str = ""
    role: str = "member"
    profile: Optional[MemberProfile] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    version: int = 0

    @property
    def label(self) -> str:
        return self.email or self.name or self.id

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["profile"] = self.profile.to_dict() if self.profile else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Member":
        raw_profile = data.get("profile")
        return cls(
            id=str(data.get("id") or _id("member")),
            org_id=str(data.get("org_id") or ""),
            email=str(data.get("email") or ""),
            name=str(data.get("name") or ""),
            role=str(data.get("role") or "member"),
            profile=MemberProfile.from_dict(raw_profile) if isinstance(raw_profile, dict) else None,
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            version=int(data.get("version") or 0),
        )


@dataclass
class DeckItem:
    task_id: str = ""
    task_title: str = ""
    quest_id: str = ""
    quest_title: str = ""
    questline_id: str = ""
    questline_title: str = ""
    owner: Optional[str] = None
    owner_label: Optional[str] = None
    estimated_minutes: int = DEFAULT_TASK_MINUTES
    priority: str = "medium"
    status: str = "todo"
    score: int = 0
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeckItem":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


@dataclass
class MemberCapacity:
    member_id: str = ""
    member_label: str = ""
    capacity_minutes: int = 0
    planned_minutes: int = 0
    utilization_percent: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemberCapacity":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


@dataclass
class DailyDeck:
    """Org-wide selection of today's work; replaced wholesale on every run."""

    id: str = ""
    org_id: str = ""
    date: str = ""
    generated_at: str = field(default_factory=now_iso)
    run_id: Optional[str] = None
    items: list[DeckItem] = field(default_factory=list)
    team_capacity: list[MemberCapacity] = field(default_factory=list)
    tasks_considered: int = 0
    total_estimated_minutes: int = 0
    warnings: list[str] = field(default_factory=list)
    version: int = 0

    @staticmethod
    def key(org_id: str, date: str) -> str:
        return f"daily-deck-{org_id}-{date}"

    @property
    def task_ids(self) -> list[str]:
        return [item.task_id for item in self.items]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["items"] = [i.to_dict() for i in self.items]
        data["team_capacity"] = [c.to_dict() for c in self.team_capacity]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DailyDeck":
        return cls(
            id=str(data.get("id") or ""),
            org_id=str(data.get("org_id") or ""),
            date=str(data.get("date") or ""),
            generated_at=str(data.get("generated_at") or now_iso()),
            run_id=data.get("run_id"),
            items=[DeckItem.from_dict(i) for i in list(data.get("items") or []) if isinstance(i, dict)],
            team_capacity=[
                MemberCapacity.from_dict(c) for c in list(data.get("team_capacity") or []) if isinstance(c, dict)
            ],
            tasks_considered=int(data.get("tasks_considered") or 0),
            total_estimated_minutes=int(data.get("total_estimated_minutes") or 0),
            warnings=[str(w) for w in list(data.get("warnings") or [])],
            version=int(data.get("version") or 0),
        )


@dataclass
class MicroStep:
    id: str = ""
    task_id: str = ""
    description: str = ""
    estimated_minutes: int = 10

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MemberDeckEntry:
    quest_id: str = ""
    quest_title: str = ""
    task_ids: list[str] = field(default_factory=list)
    micro_steps: list[MicroStep] = field(default_factory=list)
    total_estimated_minutes: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["micro_steps"] = [s.to_dict() for s in self.micro_steps]
        return data


@dataclass
class MemberQuestDeck:
    id: str = ""
    member_id: str = ""
    org_id: str = ""
    date: str = ""
    entries: list[MemberDeckEntry] = field(default_factory=list)
    generated_at: str = field(default_factory=now_iso)

    @staticmethod
    def key(member_id: str, date: str) -> str:
        return f"deck-{member_id}-{date}"

    @property
    def task_count(self) -> int:
        return sum(len(e.task_ids) for e in self.entries)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["entries"] = [e.to_dict() for e in self.entries]
        return data


SprintPlanStatus = Literal["draft", "approved"]
SPRINT_PLAN_STATUSES: tuple[str, ...] = ("draft", "approved")


@dataclass
class SprintQuestRef:
    quest_id: str = ""
    quest_title: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SprintQuestRef":
        return cls(quest_id=str(data.get("quest_id") or ""), quest_title=str(data.get("quest_title") or ""))


@dataclass
class SprintTaskRef:
    task_id: str = ""
    task_title: str = ""
    quest_id: str = ""
    priority: str = "medium"
    estimated_minutes: int = DEFAULT_TASK_MINUTES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SprintTaskRef":
        return cls(
            task_id=str(data.get("task_id") or ""),
            task_title=str(data.get("task_title") or ""),
            quest_id=str(data.get("quest_id") or ""),
            priority=_pick(data.get("priority"), PRIORITIES, "medium"),
            estimated_minutes=_int_or_none(data.get("estimated_minutes")) or DEFAULT_TASK_MINUTES,
        )


@dataclass
class MemberSprintPlan:
    member_id: str = ""
    member_label: str = ""
    quests: list[SprintQuestRef] = field(default_factory=list)
    tasks: list[SprintTaskRef] = field(default_factory=list)
    capacity_minutes: int = 0
    allocated_minutes: int = 0
    utilization_percent: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["quests"] = [q.to_dict() for q in self.quests]
        data["tasks"] = [t.to_dict() for t in self.tasks]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemberSprintPlan":
        return cls(
            member_id=str(data.get("member_id") or ""),
            member_label=str(data.get("member_label") or ""),
            quests=[SprintQuestRef.from_dict(q) for q in list(data.get("quests") or []) if isinstance(q, dict)],
            tasks=[SprintTaskRef.from_dict(t) for t in list(data.get("tasks") or []) if isinstance(t, dict)],
            capacity_minutes=int(data.get("capacity_minutes") or 0),
            allocated_minutes=int(data.get("allocated_minutes") or 0),
            utilization_percent=int(data.get("utilization_percent") or 0),
        )


@dataclass
class SprintPlan:
    """Weekly (Monday to Friday) allocation of open quest work per member.

    Regenerated freely while ``draft``; frozen once approved.
    """

    id: str = ""
    org_id: str = ""
    week_start: str = ""
    week_end: str = ""
    member_plans: list[MemberSprintPlan] = field(default_factory=list)
    status: SprintPlanStatus = "draft"
    approved_at: Optional[str] = None
    approved_by: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    version: int = 0

    @staticmethod
    def key(org_id: str, week_start: str) -> str:
        return f"sprint-{org_id}-{week_start}"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["member_plans"] = [p.to_dict() for p in self.member_plans]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SprintPlan":
        return cls(
            id=str(data.get("id") or ""),
            org_id=str(data.get("org_id") or ""),
            week_start=str(data.get("week_start") or ""),
            week_end=str(data.get("week_end") or ""),
            member_plans=[
                MemberSprintPlan.from_dict(p) for p in list(data.get("member_plans") or []) if isinstance(p, dict)
            ],
            status=_pick(data.get("status"), SPRINT_PLAN_STATUSES, "draft"),  # type: ignore[arg-type]
            approved_at=data.get("approved_at"),
            approved_by=data.get("approved_by"),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            version=int(data.get("version") or 0),
        )
