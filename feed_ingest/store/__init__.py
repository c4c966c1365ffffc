"""
Persistence and notification collaborators used by the orchestrator.
"""

from .base import (
    DUPLICATE,
    INSERTED,
    AlertSink,
    CandidateFeed,
    ContentStore,
    EventSink,
    ScrapedRecord,
    SourceOutcome,
    SourceRegistry,
)
from .files import FileContentStore, FileEventSink, YamlSourceRegistry
from .memory import (
    LoggingAlertSink,
    LoggingEventSink,
    MemoryAlertSink,
    MemoryContentStore,
    MemoryEventSink,
    MemorySourceRegistry,
    StaticCandidateFeed,
)

__all__ = [
    "DUPLICATE",
    "INSERTED",
    "AlertSink",
    "CandidateFeed",
    "ContentStore",
    "EventSink",
    "FileContentStore",
    "FileEventSink",
    "LoggingAlertSink",
    "LoggingEventSink",
    "MemoryAlertSink",
    "MemoryContentStore",
    "MemoryEventSink",
    "MemorySourceRegistry",
    "ScrapedRecord",
    "SourceOutcome",
    "SourceRegistry",
    "StaticCandidateFeed",
    "YamlSourceRegistry",
]
