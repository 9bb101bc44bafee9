"""Rank assignment candidates for a task and explain the choice.

Scores are plain integers so identical inputs always give identical output.
Per candidate::

    total = top_match + competency_match - frustration_penalty - workload_penalty

where ``workload_penalty = workload_minutes * weight // daily_capacity``.
Ties go to the lexicographically smallest member id.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from loguru import logger

from ..config import AssignmentSettings
from ..domain.models import AffinityTag, MemberProfile, Task
from .affinity import AffinityClassifier, KeywordAffinityClassifier


@dataclass
class AssignmentCandidate:
    member_id: str
    profile: Optional[MemberProfile] = None
    workload_minutes: int = 0

    @property
    def usable(self) -> bool:
        return self.profile is not None and self.profile.usable


@dataclass
class CandidateScore:
    member_id: str
    top_match: int = 0
    competency_match: int = 0
    frustration_penalty: int = 0
    workload_penalty: int = 0
    workload_minutes: int = 0
    total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AssignmentExplanation:
    task_id: str
    tag: AffinityTag
    assigned_member_id: Optional[str] = None
    scores: list[CandidateScore] = field(default_factory=list)
    alternatives: list[dict[str, Any]] = field(default_factory=list)
    reason: str = ""

    @property
    def winner(self) -> Optional[CandidateScore]:
        if self.assigned_member_id is None:
            return None
        for score in self.scores:
            if score.member_id == self.assigned_member_id:
                return score
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "tag": self.tag.value,
            "assigned_member_id": self.assigned_member_id,
            "scores": [s.to_dict() for s in self.scores],
            "alternatives": [dict(a) for a in self.alternatives],
            "reason": self.reason,
        }


class AssignmentScorer:
    def __init__(
        self,
        settings: Optional[AssignmentSettings] = None,
        classifier: Optional[AffinityClassifier] = None,
    ) -> None:
        self.settings = settings or AssignmentSettings()
        self.classifier = classifier or KeywordAffinityClassifier()

    def task_minutes(self, task: Task) -> int:
        if task.estimated_minutes is None or task.estimated_minutes <= 0:
            return self.settings.default_task_minutes
        return int(task.estimated_minutes)

    def score_candidate(self, tag: AffinityTag, candidate: AssignmentCandidate) -> CandidateScore:
        profile = candidate.profile
        if profile is None:
            raise ValueError(f"Member {candidate.member_id} has no profile to score against")
        s = self.settings
        top = s.top_weight if tag in profile.top2 else 0
        competency = s.competency_weight if tag in profile.competency2 else 0
        frustration = s.frustration_penalty if tag in profile.frustration2 else 0
        workload = max(0, int(candidate.workload_minutes))
        load_penalty = workload * s.workload_penalty // profile.daily_capacity_minutes
        return CandidateScore(
            member_id=candidate.member_id,
            top_match=top,
            competency_match=competency,
            frustration_penalty=frustration,
            workload_penalty=load_penalty,
            workload_minutes=workload,
            total=top + competency - frustration - load_penalty,
        )

    def assign(self, task: Task, candidates: list[AssignmentCandidate]) -> AssignmentExplanation:
        """Pick an owner for *task* from *candidates*.

        Candidates without a usable profile (no tags or no capacity) are not
        scored. When none remain the task stays unassigned; that is a valid
        outcome, not an error.
        """
        tag = self.classifier.classify(task)
        usable = [c for c in candidates if c.usable]
        if not usable:
            logger.warning("No candidate with a usable profile for task {}; leaving unassigned", task.id)
            return AssignmentExplanation(
                task_id=task.id,
                tag=tag,
                reason="No team member has a usable profile and capacity",
            )

        scores = sorted(
            (self.score_candidate(tag, c) for c in usable),
            key=lambda s: (-s.total, s.member_id),
        )
        for score in scores:
            logger.debug(
                "Task {} [{}] candidate {}: total={} (top={}, competency={}, frustration=-{}, workload=-{})",
                task.id, tag.code, score.member_id, score.total, score.top_match,
                score.competency_match, score.frustration_penalty, score.workload_penalty,
            )
        winner = scores[0]
        alternatives = [
            {"member_id": s.member_id, "score": s.total}
            for s in scores[1 : 1 + self.settings.alternatives]
        ]
        return AssignmentExplanation(
            task_id=task.id,
            tag=tag,
            assigned_member_id=winner.member_id,
            scores=scores,
            alternatives=alternatives,
            reason=_reason(winner, tag),
        )

    def assign_batch(
        self,
        tasks: list[Task],
        candidates: list[AssignmentCandidate],
    ) -> list[AssignmentExplanation]:
        """Assign *tasks* in order, charging each placement to the winner's workload.

        Later tasks in the batch see the minutes added by earlier ones, so the
        result differs from scoring every task against the starting workload.
        """
        workloads = {c.member_id: int(c.workload_minutes) for c in candidates}
        results: list[AssignmentExplanation] = []
        for task in tasks:
            current = [
                AssignmentCandidate(c.member_id, c.profile, workloads[c.member_id])
                for c in candidates
            ]
            explanation = self.assign(task, current)
            if explanation.assigned_member_id is not None:
                workloads[explanation.assigned_member_id] += self.task_minutes(task)
            results.append(explanation)
        return results


def _reason(winner: CandidateScore, tag: AffinityTag) -> str:
    if winner.top_match:
        fit = f"{tag.value} is a top affinity"
    elif winner.competency_match:
        fit = f"{tag.value} is a competency"
    elif winner.frustration_penalty:
        fit = f"{tag.value} is a frustration but no better candidate was available"
    else:
        fit = f"no affinity match for {tag.value}"
    return f"{fit}; current workload {winner.workload_minutes} min"
