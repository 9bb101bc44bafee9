"""Exception types raised by the orchestration core."""

from __future__ import annotations

from typing import Any, Optional


class QuestboardError(Exception):
    """Base class for questboard failures."""


class RecordNotFoundError(QuestboardError, KeyError):
    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind}/{record_id} not found")

    def __str__(self) -> str:
        return f"{self.kind}/{self.record_id} not found"


class ConflictError(QuestboardError):
    """A version-guarded write found a different version than the caller expected.

    Carries the latest stored record so the caller can re-render and retry
    with informed intent. The write is never applied.
    """

    def __init__(
        self,
        kind: str,
        record_id: str,
        expected_version: Any,
        actual_version: Any,
        latest_record: Optional[dict[str, Any]],
    ) -> None:
        self.kind = kind
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.latest_record = latest_record
        super().__init__(
            f"Conflict: {kind}/{record_id} was modified. "
            f"Expected version {expected_version}, actual {actual_version}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "record_id": self.record_id,
            "expected_version": self.expected_version,
            "actual_version": self.actual_version,
            "latest_record": self.latest_record,
        }


class ApprovalError(QuestboardError, ValueError):
    pass


class SprintPlanLockedError(QuestboardError):
    def __init__(self, plan_id: str, status: str) -> None:
        self.plan_id = plan_id
        self.status = status
        super().__init__(f"Sprint plan {plan_id} is {status}; only draft plans can be regenerated")


class UnlockCycleError(QuestboardError, RuntimeError):
    def __init__(self, org_id: str, passes: int) -> None:
        self.org_id = org_id
        self.passes = passes
        super().__init__(
            f"Unlock evaluation for org {org_id} did not settle after {passes} passes"
        )


class OrchestrationError(QuestboardError):
    """An orchestration run aborted; writes made before ``stage`` stay committed."""

    def __init__(self, org_id: str, stage: str, cause: BaseException) -> None:
        self.org_id = org_id
        self.stage = stage
        self.cause = cause
        super().__init__(f"Orchestration run for {org_id} failed at stage '{stage}': {cause}")
