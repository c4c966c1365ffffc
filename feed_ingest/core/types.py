"""
Core data types for the ingestion pipeline.

This module defines the data structures shared by every pipeline stage:
- Job / JobStatus: one execution of the pipeline across a set of sources
- Candidate: a discovered article URL awaiting extraction
- ExtractionResult / FieldTrace: normalized fields produced by the extractor
- SourceDefinition / SourceConfig / SourceCircuitState: source registry data
- ErrorEvent and the closed error taxonomy enums
- SourceReport / JobStatusReport: outcome accounting
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in-progress"
    SUCCESSFUL = "successful"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCESSFUL, JobStatus.PARTIAL, JobStatus.FAILED})

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.NEW: frozenset({JobStatus.IN_PROGRESS, JobStatus.FAILED}),
    JobStatus.IN_PROGRESS: TERMINAL_STATUSES,
    JobStatus.SUCCESSFUL: frozenset(),
    JobStatus.PARTIAL: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class ErrorCategory(str, Enum):
    NETWORK = "network"
    HTTP_STATUS = "http-status"
    PARSING = "parsing"
    VALIDATION = "validation"
    RESOURCE = "resource"
    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def at_least(self, other: "Severity") -> "Severity":
        return self if self.rank >= other.rank else other


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class RecoveryStrategy(str, Enum):
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry-with-backoff"
    SKIP = "skip"
    ABORT_SOURCE = "abort-source"
    ESCALATE = "escalate"

    @property
    def retries(self) -> bool:
        return self in (RecoveryStrategy.RETRY, RecoveryStrategy.RETRY_WITH_BACKOFF)


class ErrorScope(str, Enum):
    CANDIDATE = "candidate"
    SOURCE = "source"
    JOB = "job"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class SourceOutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Candidate:
    """A discovered article URL plus source metadata awaiting extraction.

    Attributes:
        url: The article URL as discovered
        source_id: Identifier of the source this candidate belongs to
        title_hint: Optional headline from the feed listing
        discovered_at: When the candidate was discovered
        metadata: Free-form discovery metadata
    """

    url: str
    source_id: str
    title_hint: str | None = None
    discovered_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class FieldTrace:
    """Provenance of a single extracted field value."""

    field: str
    strategy: str
    selector: str
    value: str


@dataclass
class ExtractionResult:
    """Normalized fields produced by the content extractor.

    An empty result (see `is_empty`) means the page was rejected by the
    quality gate or could not be parsed at all.

    Attributes:
        title: Article headline
        body: Paragraph-preserving text, paragraphs separated by a blank line
        author: Byline, if any
        published_at: Publication timestamp (ISO 8601 when parseable)
        content_hash: SHA-256 of the normalized body, empty for rejected pages
        quality_score: 0-100 viability score
        paragraphs: Number of paragraphs in the body
        trace: Per-field provenance, only populated when tracing is requested
    """

    title: str = ""
    body: str = ""
    author: str | None = None
    published_at: str | None = None
    content_hash: str = ""
    quality_score: int = 0
    paragraphs: int = 0
    trace: list[FieldTrace] | None = None

    @property
    def is_empty(self) -> bool:
        return not self.body


@dataclass
class SourceConfig:
    """Per-source overrides of the global orchestrator and recovery settings.

    Any attribute left as None falls back to the global configuration.
    """

    request_delay_seconds: float | None = None
    max_concurrent_fetches: int | None = None
    fetch_timeout_seconds: float | None = None
    user_agent: str | None = None
    recovery_overrides: dict[str, str] = field(default_factory=dict)
    candidate_urls: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "SourceConfig":
        raw = dict(raw or {})
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in raw.items() if key in known})


@dataclass
class SourceCircuitState:
    """Circuit-breaker state for one source, persisted across jobs."""

    source_id: str
    failure_count: int = 0
    window_start: float | None = None
    state: CircuitState = CircuitState.CLOSED
    opened_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "failure_count": self.failure_count,
            "window_start": self.window_start,
            "state": self.state.value,
            "opened_at": self.opened_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SourceCircuitState":
        return cls(
            source_id=raw["source_id"],
            failure_count=int(raw.get("failure_count", 0)),
            window_start=raw.get("window_start"),
            state=CircuitState(raw.get("state", CircuitState.CLOSED.value)),
            opened_at=raw.get("opened_at"),
        )


@dataclass
class SourceDefinition:
    """A source as listed by the source registry."""

    id: str
    feed_url: str | None = None
    name: str | None = None
    config: SourceConfig = field(default_factory=SourceConfig)
    circuit: SourceCircuitState | None = None

    def __post_init__(self) -> None:
        if self.circuit is None:
            self.circuit = SourceCircuitState(source_id=self.id)


@dataclass
class ErrorEvent:
    """A categorized failure, produced by the error classifier."""

    category: ErrorCategory
    severity: Severity
    message: str
    recoverable: bool = True
    retry_count: int = 0
    strategy: RecoveryStrategy | None = None
    scope: ErrorScope = ErrorScope.CANDIDATE
    error_type: str | None = None
    status_code: int | None = None
    job_id: str | None = None
    source_id: str | None = None
    candidate_url: str | None = None
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "recoverable": self.recoverable,
            "retry_count": self.retry_count,
            "strategy": self.strategy.value if self.strategy else None,
            "scope": self.scope.value,
            "error_type": self.error_type,
            "status_code": self.status_code,
            "job_id": self.job_id,
            "source_id": self.source_id,
            "candidate_url": self.candidate_url,
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass
class SourceReport:
    """Outcome of processing one source within a job."""

    source_id: str
    status: SourceOutcomeStatus = SourceOutcomeStatus.SUCCEEDED
    attempted: int = 0
    stored: int = 0
    duplicates: int = 0
    errors: int = 0
    skipped: int = 0
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "status": self.status.value,
            "attempted": self.attempted,
            "stored": self.stored,
            "duplicates": self.duplicates,
            "errors": self.errors,
            "skipped": self.skipped,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SourceReport":
        data = dict(raw)
        data["status"] = SourceOutcomeStatus(data.get("status", SourceOutcomeStatus.SUCCEEDED.value))
        return cls(**data)


@dataclass
class Job:
    """One execution of the pipeline across a requested set of sources.

    Status only ever moves forward (see `transition`). Counters satisfy
    `total_articles_scraped + total_errors + duplicates + skipped ==
    candidates_attempted` at all times.
    """

    id: str
    sources_requested: list[str]
    articles_per_source: int
    status: JobStatus = JobStatus.NEW
    total_articles_scraped: int = 0
    total_errors: int = 0
    duplicates: int = 0
    skipped: int = 0
    candidates_attempted: int = 0
    triggered_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    cancelled: bool = False
    error_summary: dict[str, int] = field(default_factory=dict)
    source_reports: dict[str, SourceReport] = field(default_factory=dict)
    failure_reason: str | None = None

    def transition(self, status: JobStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Job {self.id}: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if status.is_terminal:
            self.completed_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "sources_requested": list(self.sources_requested),
            "articles_per_source": self.articles_per_source,
            "total_articles_scraped": self.total_articles_scraped,
            "total_errors": self.total_errors,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "candidates_attempted": self.candidates_attempted,
            "triggered_at": self.triggered_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled": self.cancelled,
            "error_summary": dict(self.error_summary),
            "source_reports": {key: report.to_dict() for key, report in self.source_reports.items()},
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Job":
        completed_at = raw.get("completed_at")
        return cls(
            id=raw["id"],
            status=JobStatus(raw["status"]),
            sources_requested=list(raw.get("sources_requested", [])),
            articles_per_source=int(raw.get("articles_per_source", 0)),
            total_articles_scraped=int(raw.get("total_articles_scraped", 0)),
            total_errors=int(raw.get("total_errors", 0)),
            duplicates=int(raw.get("duplicates", 0)),
            skipped=int(raw.get("skipped", 0)),
            candidates_attempted=int(raw.get("candidates_attempted", 0)),
            triggered_at=datetime.fromisoformat(raw["triggered_at"]),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
            cancelled=bool(raw.get("cancelled", False)),
            error_summary=dict(raw.get("error_summary", {})),
            source_reports={
                key: SourceReport.from_dict(value)
                for key, value in (raw.get("source_reports") or {}).items()
            },
            failure_reason=raw.get("failure_reason"),
        )


@dataclass
class JobStatusReport:
    """Answer to `get_job_status`: status, counters and grouped errors."""

    job_id: str
    status: JobStatus
    counts: dict[str, int]
    error_summary: dict[str, int]
    sources: list[SourceReport] = field(default_factory=list)
    triggered_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusReport":
        return cls(
            job_id=job.id,
            status=job.status,
            counts={
                "attempted": job.candidates_attempted,
                "scraped": job.total_articles_scraped,
                "errors": job.total_errors,
                "duplicates": job.duplicates,
                "skipped": job.skipped,
            },
            error_summary=dict(job.error_summary),
            sources=list(job.source_reports.values()),
            triggered_at=job.triggered_at,
            completed_at=job.completed_at,
        )
