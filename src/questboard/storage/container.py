from __future__ import annotations

from pathlib import Path

from ..constants import EVENTS_FILE, STATE_DIR_NAME
from .file_repos import JsonlEventRepository, YamlRecordStore


class Container:
    """Wires the file-backed store and event log for one state directory."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir.resolve()
        self.state_dir = self.project_dir / STATE_DIR_NAME
        self.state_dir.mkdir(parents=True, exist_ok=True)

        self.records = YamlRecordStore(self.state_dir / "records")
        self.events = JsonlEventRepository(self.state_dir / EVENTS_FILE, self.state_dir / "events.lock")
