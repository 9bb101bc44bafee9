from __future__ import annotations

import uuid
from typing import Any, Optional

from loguru import logger

from ..storage.interfaces import EventRepository
from ..utils import now_iso


def new_correlation_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class FactPublisher:
    """Append-only fact log shared by every orchestration component.

    Publishing is fire-and-forget: a failing repository is logged and the
    caller carries on, so a fact can never fail the write it describes.
    """

    def __init__(self, repo: EventRepository, *, source: str = "questboard") -> None:
        self._repo = repo
        self._source = source

    def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        org_id: str,
        correlation_id: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        event = {
            "id": f"evt-{uuid.uuid4().hex[:10]}",
            "ts": now_iso(),
            "type": event_type,
            "org_id": org_id,
            "correlation_id": correlation_id,
            "source": self._source,
            "payload": payload,
        }
        try:
            self._repo.append(event)
        except Exception:
            logger.exception("Failed to publish {} for org {}", event_type, org_id)
            return None
        logger.debug("Published {} ({})", event_type, correlation_id or "-")
        return event

    def recent(self, limit: int = 100, *, event_type: Optional[str] = None) -> list[dict[str, Any]]:
        events = self._repo.list_recent(limit=limit)
        if event_type is None:
            return events
        return [e for e in events if e.get("type") == event_type]
