from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable

import pytest

from questboard.constants import GOAL_KIND, MEMBER_KIND, QUEST_KIND, QUESTLINE_KIND, TASK_KIND
from questboard.domain.models import Goal, Member, Quest, Questline, Task
from questboard.events.bus import FactPublisher
from questboard.storage.memory import MemoryEventRepository, MemoryRecordStore

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

_KINDS = {
    Goal: GOAL_KIND,
    Questline: QUESTLINE_KIND,
    Quest: QUEST_KIND,
    Task: TASK_KIND,
    Member: MEMBER_KIND,
}


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def events() -> MemoryEventRepository:
    return MemoryEventRepository()


@pytest.fixture
def publisher(events: MemoryEventRepository) -> FactPublisher:
    return FactPublisher(events)


@pytest.fixture
def seed(store: MemoryRecordStore) -> Callable[..., list[dict[str, Any]]]:
    """Upsert domain objects into the store, returning the stored records."""

    def _seed(*items: Any) -> list[dict[str, Any]]:
        async def _run() -> list[dict[str, Any]]:
            return [await store.upsert(_KINDS[type(item)], item.to_dict()) for item in items]

        return asyncio.run(_run())

    return _seed


@pytest.fixture
def fact_types(events: MemoryEventRepository) -> Callable[[], list[str]]:
    def _types() -> list[str]:
        return [e["type"] for e in events.list_recent(limit=10_000)]

    return _types
