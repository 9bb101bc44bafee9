"""In-process record store and event log.

Used by tests and by callers that embed the orchestration core without a
state directory. Records are deep-copied on the way in and out so callers
never share mutable state with the store.
"""

from __future__ import annotations

import copy
import threading
from collections import deque
from typing import Any, Optional

from ..errors import ConflictError, RecordNotFoundError
from .interfaces import EventRepository, Predicate, Record, RecordStore


def _record_id(kind: str, record: Record) -> str:
    record_id = str(record.get("id") or "")
    if not record_id:
        raise ValueError(f"Cannot store {kind} record without an id")
    return record_id


class MemoryRecordStore(RecordStore):
    def __init__(self) -> None:
        self._kinds: dict[str, dict[str, Record]] = {}
        self._lock = threading.RLock()

    def _bucket(self, kind: str) -> dict[str, Record]:
        return self._kinds.setdefault(kind, {})

    def _write(self, kind: str, record: Record, current: Optional[Record]) -> Record:
        stored = copy.deepcopy(record)
        stored["version"] = int((current or {}).get("version") or 0) + 1
        self._bucket(kind)[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def get(self, kind: str, record_id: str) -> Optional[Record]:
        with self._lock:
            record = self._bucket(kind).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    async def list(self, kind: str, predicate: Optional[Predicate] = None) -> list[Record]:
        with self._lock:
            records = [copy.deepcopy(r) for r in self._bucket(kind).values()]
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    async def upsert(self, kind: str, record: Record) -> Record:
        record_id = _record_id(kind, record)
        with self._lock:
            current = self._bucket(kind).get(record_id)
            return self._write(kind, {**record, "id": record_id}, current)

    async def update_with_version(self, kind: str, record: Record, expected_version: int) -> Record:
        record_id = _record_id(kind, record)
        with self._lock:
            current = self._bucket(kind).get(record_id)
            if current is None:
                raise RecordNotFoundError(kind, record_id)
            actual = int(current.get("version") or 0)
            if actual != expected_version:
                raise ConflictError(kind, record_id, expected_version, actual, copy.deepcopy(current))
            return self._write(kind, {**record, "id": record_id}, current)

    async def delete(self, kind: str, record_id: str) -> bool:
        with self._lock:
            return self._bucket(kind).pop(record_id, None) is not None


class MemoryEventRepository(EventRepository):
    def __init__(self, maxlen: int = 10_000) -> None:
        self._events: deque[dict[str, Any]] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def append(self, event: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._events.append(copy.deepcopy(event))
        return event

    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        with self._lock:
            return [copy.deepcopy(e) for e in list(self._events)[-limit:]]
