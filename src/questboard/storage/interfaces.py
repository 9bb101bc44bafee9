from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

Record = dict[str, Any]
Predicate = Callable[[Record], bool]


class RecordStore(ABC):
    """Generic keyed persistence shared by every record kind.

    Every stored record carries an integer ``version`` that the store bumps
    on each write. ``update_with_version`` only writes when the stored
    version still equals the caller's expected one.
    """

    @abstractmethod
    async def get(self, kind: str, record_id: str) -> Optional[Record]:
        raise NotImplementedError

    @abstractmethod
    async def list(self, kind: str, predicate: Optional[Predicate] = None) -> list[Record]:
        raise NotImplementedError

    @abstractmethod
    async def upsert(self, kind: str, record: Record) -> Record:
        raise NotImplementedError

    @abstractmethod
    async def update_with_version(self, kind: str, record: Record, expected_version: int) -> Record:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, kind: str, record_id: str) -> bool:
        raise NotImplementedError


class EventRepository(ABC):
    @abstractmethod
    def append(self, event: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        raise NotImplementedError
