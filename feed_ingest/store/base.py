"""
Outbound collaborator interfaces.

The orchestrator depends only on these abstractions; `memory` and `files`
provide concrete implementations. Store and registry methods are async so
database-backed implementations can be dropped in; sinks are synchronous.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from ..core.types import (
    Candidate,
    CircuitState,
    ErrorCategory,
    Job,
    Severity,
    SourceCircuitState,
    SourceDefinition,
    SourceReport,
    utcnow,
)


INSERTED = "inserted"
DUPLICATE = "duplicate"


@dataclass
class ScrapedRecord:
    """An extracted article ready for storage.

    Attributes:
        source_id: Source the article came from
        url: The candidate URL as discovered
        normalized_url: Canonical form of the URL (store-level unique key)
        content_hash: SHA-256 of the normalized body (store-level unique key)
        title: Article title
        body: Paragraph-preserving body text
        author: Byline, if found
        published_at: Publication date, if found
        quality_score: 0-100 quality estimate
        job_id: Job that stored the record
        scraped_at: When the record was produced
    """

    source_id: str
    url: str
    normalized_url: str
    content_hash: str
    title: str
    body: str
    author: str | None = None
    published_at: str | None = None
    quality_score: int = 0
    job_id: str | None = None
    scraped_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "url": self.url,
            "normalized_url": self.normalized_url,
            "content_hash": self.content_hash,
            "title": self.title,
            "body": self.body,
            "author": self.author,
            "published_at": self.published_at,
            "quality_score": self.quality_score,
            "job_id": self.job_id,
            "scraped_at": self.scraped_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ScrapedRecord":
        data = dict(raw)
        if data.get("scraped_at"):
            data["scraped_at"] = datetime.fromisoformat(data["scraped_at"])
        else:
            data.pop("scraped_at", None)
        return cls(**data)


@dataclass
class SourceOutcome:
    """What the orchestrator reports back to the registry after a source ran.

    `trial` marks a run that was the half-open trial for its circuit; only
    such a run may move a stored open circuit back to closed.
    """

    report: SourceReport
    circuit: SourceCircuitState
    trial: bool = False


def merge_circuit(stored: SourceCircuitState | None, outcome: SourceOutcome) -> SourceCircuitState:
    """Combine a reported circuit with the one already persisted.

    Jobs work on the state they read at start, so a job that finishes late
    must not undo an open circuit recorded by another job meanwhile.
    """
    reported = outcome.circuit
    if stored is None or outcome.trial or stored.state is not CircuitState.OPEN:
        return reported
    if reported.state is not CircuitState.OPEN:
        return stored
    return reported if (reported.opened_at or 0) >= (stored.opened_at or 0) else stored


class ContentStore(ABC):
    @abstractmethod
    async def upsert_scraped_content(self, record: ScrapedRecord) -> str:
        """Insert the record unless its URL or hash already exists.

        Must be atomic: two concurrent calls with the same key yield exactly
        one INSERTED.

        Returns:
            INSERTED or DUPLICATE
        """

    @abstractmethod
    async def exists_by_hash(self, content_hash: str) -> bool: ...

    @abstractmethod
    async def exists_by_normalized_url(self, normalized_url: str) -> bool: ...

    @abstractmethod
    async def filter_known_urls(self, normalized_urls: Iterable[str]) -> set[str]:
        """Return the subset of the given normalized URLs already stored."""

    @abstractmethod
    async def save_job(self, job: Job) -> None: ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None: ...


class SourceRegistry(ABC):
    @abstractmethod
    async def list_eligible_sources(self, source_ids: Iterable[str] | None = None) -> list[SourceDefinition]:
        """List known sources, optionally restricted to the given ids.

        Raises:
            ConfigurationError: If a requested id is unknown
        """

    @abstractmethod
    async def report_source_outcome(self, source_id: str, outcome: SourceOutcome) -> None:
        """Persist the outcome of a source run, including its circuit state."""


class CandidateFeed(ABC):
    @abstractmethod
    async def list_candidates(self, source: SourceDefinition, limit: int) -> list[Candidate]: ...


class EventSink(ABC):
    @abstractmethod
    def append_structured_event(self, job_id: str, level: str, message: str, data: dict[str, Any]) -> None: ...


class AlertSink(ABC):
    @abstractmethod
    def raise_alert(self, category: ErrorCategory, severity: Severity, context: dict[str, Any]) -> None: ...
