from .container import Container
from .file_repos import JsonlEventRepository, YamlRecordStore
from .interfaces import EventRepository, RecordStore
from .memory import MemoryEventRepository, MemoryRecordStore

__all__ = [
    "Container",
    "EventRepository",
    "JsonlEventRepository",
    "MemoryEventRepository",
    "MemoryRecordStore",
    "RecordStore",
    "YamlRecordStore",
]
