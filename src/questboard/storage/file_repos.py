from __future__ import annotations

import asyncio
import copy
import json
import threading
from collections import deque
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import yaml

from ..errors import ConflictError, RecordNotFoundError
from ..io_utils import FileLock, append_jsonl, atomic_write_yaml
from .interfaces import EventRepository, Predicate, Record, RecordStore

T = TypeVar("T")

SCHEMA_VERSION = 1


class _YamlCollection:
    """One record kind persisted as a YAML list, guarded by a file lock."""

    def __init__(self, path: Path, lock_path: Path, key: str) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()
        self._key = key

    def _load(self) -> list[Record]:
        if not self._path.exists():
            return []
        raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            return []
        items = raw.get(self._key, [])
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]

    def _save(self, items: list[Record]) -> None:
        atomic_write_yaml(self._path, {"version": SCHEMA_VERSION, self._key: items})

    def locked(self, fn: Callable[[list[Record]], T]) -> T:
        with self._thread_lock:
            with self._lock:
                return fn(self._load())

    def mutate(self, fn: Callable[[list[Record]], T]) -> T:
        with self._thread_lock:
            with self._lock:
                items = self._load()
                result = fn(items)
                self._save(items)
                return result


class YamlRecordStore(RecordStore):
    """File-backed store: ``<root>/<kind>.yaml`` per kind.

    The blocking file work runs in a worker thread so the store can be
    awaited from the orchestration loop.
    """

    def __init__(self, root: Path) -> None:
        self._root = root
        self._collections: dict[str, _YamlCollection] = {}
        self._guard = threading.Lock()

    def _collection(self, kind: str) -> _YamlCollection:
        with self._guard:
            coll = self._collections.get(kind)
            if coll is None:
                coll = _YamlCollection(self._root / f"{kind}.yaml", self._root / f"{kind}.lock", kind)
                self._collections[kind] = coll
            return coll

    # -- sync bodies --------------------------------------------------------

    def _get_sync(self, kind: str, record_id: str) -> Optional[Record]:
        def _find(items: list[Record]) -> Optional[Record]:
            for item in items:
                if item.get("id") == record_id:
                    return item
            return None

        return self._collection(kind).locked(_find)

    def _write_sync(self, kind: str, record: Record, expected_version: Optional[int]) -> Record:
        record_id = str(record.get("id") or "")
        if not record_id:
            raise ValueError(f"Cannot store {kind} record without an id")

        def _apply(items: list[Record]) -> Record:
            for idx, existing in enumerate(items):
                if existing.get("id") != record_id:
                    continue
                actual = int(existing.get("version") or 0)
                if expected_version is not None and actual != expected_version:
                    raise ConflictError(kind, record_id, expected_version, actual, copy.deepcopy(existing))
                stored = {**copy.deepcopy(record), "version": actual + 1}
                items[idx] = stored
                return copy.deepcopy(stored)
            if expected_version is not None:
                raise RecordNotFoundError(kind, record_id)
            stored = {**copy.deepcopy(record), "version": 1}
            items.append(stored)
            return copy.deepcopy(stored)

        return self._collection(kind).mutate(_apply)

    def _delete_sync(self, kind: str, record_id: str) -> bool:
        def _drop(items: list[Record]) -> bool:
            before = len(items)
            items[:] = [i for i in items if i.get("id") != record_id]
            return len(items) != before

        return self._collection(kind).mutate(_drop)

    # -- RecordStore --------------------------------------------------------

    async def get(self, kind: str, record_id: str) -> Optional[Record]:
        return await asyncio.to_thread(self._get_sync, kind, record_id)

    async def list(self, kind: str, predicate: Optional[Predicate] = None) -> list[Record]:
        records = await asyncio.to_thread(self._collection(kind).locked, list)
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    async def upsert(self, kind: str, record: Record) -> Record:
        return await asyncio.to_thread(self._write_sync, kind, record, None)

    async def update_with_version(self, kind: str, record: Record, expected_version: int) -> Record:
        return await asyncio.to_thread(self._write_sync, kind, record, expected_version)

    async def delete(self, kind: str, record_id: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, kind, record_id)


class JsonlEventRepository(EventRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def append(self, event: dict[str, Any]) -> dict[str, Any]:
        with self._thread_lock:
            with self._lock:
                append_jsonl(self._path, event)
        return event

    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        if limit <= 0 or not self._path.exists():
            return []
        with self._thread_lock:
            with self._lock:
                with self._path.open("r", encoding="utf-8") as handle:
                    selected = list(deque(handle, maxlen=limit))
        events: list[dict[str, Any]] = []
        for line in selected:
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events
