"""
In-memory collaborator implementations.

Used by tests and by embedding applications that bring their own
persistence. Store mutations run without awaiting in between, which makes
insert-if-absent atomic on the event loop.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Iterable

from ..core.types import Candidate, ErrorCategory, Job, Severity, SourceDefinition
from ..errors import ConfigurationError
from ..logging_utils import level_from_name, log_event
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
    merge_circuit,
)


logger = logging.getLogger(__name__)


class MemoryContentStore(ContentStore):
    def __init__(self) -> None:
        self.records: list[ScrapedRecord] = []
        self._by_url: dict[str, ScrapedRecord] = {}
        self._by_hash: dict[str, ScrapedRecord] = {}
        self._jobs: dict[str, dict[str, Any]] = {}

    async def upsert_scraped_content(self, record: ScrapedRecord) -> str:
        if record.normalized_url in self._by_url or record.content_hash in self._by_hash:
            return DUPLICATE
        self._by_url[record.normalized_url] = record
        self._by_hash[record.content_hash] = record
        self.records.append(record)
        return INSERTED

    async def exists_by_hash(self, content_hash: str) -> bool:
        return content_hash in self._by_hash

    async def exists_by_normalized_url(self, normalized_url: str) -> bool:
        return normalized_url in self._by_url

    async def filter_known_urls(self, normalized_urls: Iterable[str]) -> set[str]:
        return {url for url in normalized_urls if url in self._by_url}

    async def save_job(self, job: Job) -> None:
        self._jobs[job.id] = job.to_dict()

    async def get_job(self, job_id: str) -> Job | None:
        raw = self._jobs.get(job_id)
        return Job.from_dict(raw) if raw is not None else None


class MemorySourceRegistry(SourceRegistry):
    """Registry over a fixed list of sources; circuit state lives in memory."""

    def __init__(self, sources: Iterable[SourceDefinition]):
        self._sources: dict[str, SourceDefinition] = {source.id: source for source in sources}
        self.outcomes: dict[str, SourceOutcome] = {}

    async def list_eligible_sources(self, source_ids: Iterable[str] | None = None) -> list[SourceDefinition]:
        ids = list(source_ids) if source_ids is not None else list(self._sources)
        unknown = [source_id for source_id in ids if source_id not in self._sources]
        if unknown:
            raise ConfigurationError(f"Unknown source(s): {', '.join(unknown)}")
        # Callers mutate circuit state; hand out copies
        return [copy.deepcopy(self._sources[source_id]) for source_id in ids]

    async def report_source_outcome(self, source_id: str, outcome: SourceOutcome) -> None:
        outcome = copy.deepcopy(outcome)
        source = self._sources.get(source_id)
        if source is not None:
            source.circuit = merge_circuit(source.circuit, outcome)
            outcome.circuit = copy.deepcopy(source.circuit)
        self.outcomes[source_id] = outcome


class StaticCandidateFeed(CandidateFeed):
    """Candidates from each source's configured `candidate_urls` list."""

    async def list_candidates(self, source: SourceDefinition, limit: int) -> list[Candidate]:
        urls = source.config.candidate_urls[:limit] if limit > 0 else []
        return [Candidate(url=url, source_id=source.id) for url in urls]


class LoggingEventSink(EventSink):
    def append_structured_event(self, job_id: str, level: str, message: str, data: dict[str, Any]) -> None:
        log_event(logger, message, level=level_from_name(level), job_id=job_id, **data)


class MemoryEventSink(EventSink):
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def append_structured_event(self, job_id: str, level: str, message: str, data: dict[str, Any]) -> None:
        self.events.append({"job_id": job_id, "level": level, "message": message, **data})


class LoggingAlertSink(AlertSink):
    def raise_alert(self, category: ErrorCategory, severity: Severity, context: dict[str, Any]) -> None:
        log_event(
            logger,
            "ALERT",
            level=logging.ERROR,
            category=category.value,
            severity=severity.value,
            **context,
        )


class MemoryAlertSink(AlertSink):
    def __init__(self) -> None:
        self.alerts: list[dict[str, Any]] = []

    def raise_alert(self, category: ErrorCategory, severity: Severity, context: dict[str, Any]) -> None:
        self.alerts.append({"category": category, "severity": severity, **context})
