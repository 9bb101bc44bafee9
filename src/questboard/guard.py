"""Version-checked mutation of Task and Quest records.

Every write goes through :class:`RecordGuard`. Callers that must protect a
user's edit against concurrent writers pass ``expected_version`` and get a
:class:`~questboard.errors.ConflictError` when someone else wrote first.
Internal batch writes leave it out: the guard then merges only the changed
fields onto the latest stored record, re-reading and retrying when another
writer lands between its read and its write. Fields it does not touch are
never reverted.

Each successful write appends an audit fact with before/after snapshots of
the fields that matter for the record kind.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

from loguru import logger

from .constants import QUEST_KIND, TASK_KIND
from .domain.models import Quest, Task
from .errors import ConflictError, RecordNotFoundError
from .events.bus import FactPublisher, new_correlation_id
from .storage.interfaces import Record, RecordStore
from .utils import now_iso, to_iso

TASK_AUDIT_FIELDS = ("status", "owner", "title", "priority", "approved_at")
QUEST_AUDIT_FIELDS = ("state", "title", "task_ids")
PROTECTED_FIELDS = frozenset({"id", "org_id", "version"})
MAX_MERGE_ATTEMPTS = 5


class _PreconditionFailed(Exception):
    pass


def _snapshot(record: Record, fields: tuple[str, ...]) -> dict[str, Any]:
    return {name: record.get(name) for name in fields}


def _is_unowned_open_task(record: Record) -> bool:
    return not record.get("owner") and record.get("status") != "done"


class RecordGuard:
    def __init__(self, store: RecordStore, publisher: FactPublisher) -> None:
        self.store = store
        self.publisher = publisher

    async def mutate_task(
        self,
        task_id: str,
        changes: dict[str, Any],
        *,
        actor: str = "system",
        expected_version: Optional[int] = None,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Task:
        record = await self._mutate(
            TASK_KIND,
            task_id,
            changes,
            actor=actor,
            expected_version=expected_version,
            correlation_id=correlation_id,
            now=now,
            audit_event="audit.task.changed",
            audit_fields=TASK_AUDIT_FIELDS,
        )
        return Task.from_dict(record)

    async def mutate_unowned_task(
        self,
        task_id: str,
        changes: dict[str, Any],
        *,
        actor: str = "system",
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Task]:
        """Apply *changes* only while the stored task is still unowned and open.

        Returns None without writing when another writer has claimed or
        finished the task since the caller last read it.
        """
        try:
            record = await self._mutate(
                TASK_KIND,
                task_id,
                changes,
                actor=actor,
                expected_version=None,
                correlation_id=correlation_id,
                now=now,
                audit_event="audit.task.changed",
                audit_fields=TASK_AUDIT_FIELDS,
                when=_is_unowned_open_task,
            )
        except _PreconditionFailed:
            logger.info("Skipped write to {}/{}: task was claimed or finished", TASK_KIND, task_id)
            return None
        return Task.from_dict(record)

    async def mutate_quest(
        self,
        quest_id: str,
        changes: dict[str, Any],
        *,
        actor: str = "system",
        expected_version: Optional[int] = None,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Quest:
        record = await self._mutate(
            QUEST_KIND,
            quest_id,
            changes,
            actor=actor,
            expected_version=expected_version,
            correlation_id=correlation_id,
            now=now,
            audit_event="audit.quest.changed",
            audit_fields=QUEST_AUDIT_FIELDS,
        )
        return Quest.from_dict(record)

    async def _mutate(
        self,
        kind: str,
        record_id: str,
        changes: dict[str, Any],
        *,
        actor: str,
        expected_version: Optional[int],
        correlation_id: Optional[str],
        now: Optional[datetime],
        audit_event: str,
        audit_fields: tuple[str, ...],
        when: Optional[Callable[[Record], bool]] = None,
    ) -> Record:
        stamp = to_iso(now) if now is not None else now_iso()
        attempts = 0
        while True:
            existing = await self.store.get(kind, record_id)
            if existing is None:
                raise RecordNotFoundError(kind, record_id)

            actual = int(existing.get("version") or 0)
            if expected_version is not None and actual != expected_version:
                logger.info(
                    "Rejected stale write to {}/{} (expected v{}, actual v{})",
                    kind, record_id, expected_version, actual,
                )
                raise ConflictError(kind, record_id, expected_version, actual, existing)
            if when is not None and not when(existing):
                raise _PreconditionFailed()

            updated = dict(existing)
            updated.update({k: v for k, v in changes.items() if k not in PROTECTED_FIELDS})
            updated["updated_at"] = stamp

            try:
                stored = await self.store.update_with_version(kind, updated, actual)
            except ConflictError:
                # A caller's token is final; an untokened write merges again onto the newer record.
                attempts += 1
                if expected_version is not None or attempts >= MAX_MERGE_ATTEMPTS:
                    raise
                logger.debug("Concurrent write to {}/{}; merging again (attempt {})", kind, record_id, attempts + 1)
                continue
            break

        self._audit(
            audit_event,
            kind,
            existing,
            stored,
            changes=sorted(changes.keys()),
            fields=audit_fields,
            actor=actor,
            correlation_id=correlation_id or new_correlation_id(f"{kind}-update-{record_id}"),
        )
        return stored

    def _audit(
        self,
        event_type: str,
        kind: str,
        before: Record,
        after: Record,
        *,
        changes: list[str],
        fields: tuple[str, ...],
        actor: str,
        correlation_id: str,
    ) -> None:
        try:
            self.publisher.publish(
                event_type,
                {
                    "kind": kind,
                    "record_id": after.get("id"),
                    "actor": actor,
                    "before": _snapshot(before, fields),
                    "after": _snapshot(after, fields),
                    "changes": changes,
                    "version": after.get("version"),
                },
                org_id=str(after.get("org_id") or ""),
                correlation_id=correlation_id,
            )
        except Exception:
            logger.exception("Audit append failed for {}/{}", kind, after.get("id"))
