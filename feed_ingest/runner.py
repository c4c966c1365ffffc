"""
Job orchestration for the ingestion pipeline.

A job walks the requested sources with bounded concurrency:
1. Ask the source registry for the sources and their circuit state
2. Skip sources whose circuit is open
3. List candidates through the candidate feed (the half-open trial)
4. Drop candidates whose URL is already known
5. Fetch, extract, quality-gate and dedup each remaining candidate
6. Store new articles and count every attempted candidate exactly once
7. Report per-source outcomes and finalize the job status

Every attempted candidate ends up in exactly one of stored, duplicates,
errors or skipped, and the counters are updated together with no await in
between.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
from dataclasses import dataclass
import logging
import random
import time
from typing import Any, Awaitable, Callable
import uuid
from urllib.parse import urlsplit

from .config import AppConfig
from .core.dedup import DuplicateDetector
from .core.types import (
    Candidate,
    CircuitState,
    ErrorEvent,
    ErrorScope,
    Job,
    JobStatus,
    JobStatusReport,
    RecoveryStrategy,
    SourceCircuitState,
    SourceDefinition,
    SourceOutcomeStatus,
    SourceReport,
)
from .errors import ConfigurationError, ContentValidationError, JobNotFoundError
from .fetch.extractor import extract
from .fetch.fetcher import Fetcher
from .logging_utils import log_event
from .recovery.alerts import AlertMonitor
from .recovery.circuit import CircuitBreaker
from .recovery.retry import RecoveryEngine
from .store.base import (
    DUPLICATE,
    AlertSink,
    CandidateFeed,
    ContentStore,
    EventSink,
    ScrapedRecord,
    SourceOutcome,
    SourceRegistry,
)
from .store.memory import LoggingAlertSink, LoggingEventSink


logger = logging.getLogger(__name__)

STORED = "stored"
DUPLICATES = "duplicates"
SKIPPED = "skipped"


def check_candidate_url(url: str) -> None:
    """Reject candidate URLs that cannot be fetched over HTTP(S)."""
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError as exc:
        raise ContentValidationError(f"Malformed candidate URL: {url}", reason="url") from exc
    if parts.scheme.lower() not in ("http", "https") or not host:
        raise ContentValidationError(f"Unsupported candidate URL: {url}", reason="url")


class PolitenessGate:
    """Spaces request starts for one source at least `delay` seconds apart."""

    def __init__(
        self,
        delay: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._delay = delay
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last: float | None = None

    async def wait(self) -> None:
        if self._delay <= 0:
            return
        async with self._lock:
            if self._last is not None:
                remaining = self._last + self._delay - self._clock()
                if remaining > 0:
                    await self._sleep(remaining)
            self._last = self._clock()


@dataclass
class SourceSettings:
    """Effective settings for one source: its own config over the global values."""

    request_delay_seconds: float
    max_concurrent_fetches: int
    fetch_timeout_seconds: float
    user_agent: str | None
    recovery_overrides: dict[str, str]


@dataclass
class _SourceRun:
    circuit: SourceCircuitState
    trial: bool = False
    aborted: bool = False
    reason: str | None = None


class JobOrchestrator:
    """Runs ingestion jobs and answers status queries.

    Jobs run as asyncio tasks on the caller's event loop. Collaborators are
    injected; clocks, sleep and the jitter source are injectable for tests.
    """

    def __init__(
        self,
        cfg: AppConfig,
        store: ContentStore,
        registry: SourceRegistry,
        feed: CandidateFeed,
        fetcher: Fetcher,
        events: EventSink | None = None,
        alerts: AlertSink | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.cfg = cfg
        self.store = store
        self.registry = registry
        self.feed = feed
        self.fetcher = fetcher
        self.events = events or LoggingEventSink()
        self.alert_monitor = AlertMonitor(cfg.alerts, alerts or LoggingAlertSink(), clock=monotonic)
        self.recovery = RecoveryEngine(cfg.recovery, alerts=self.alert_monitor, sleep=sleep, rng=rng)
        self.circuit = CircuitBreaker(cfg.circuit, clock=clock)
        self._monotonic = monotonic
        self._sleep = sleep
        self._jobs: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel: dict[str, asyncio.Event] = {}
        self._circuits: dict[str, SourceCircuitState] = {}
        self._trials: set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def trigger_job(
        self,
        source_ids: list[str] | None = None,
        articles_per_source: int | None = None,
        timeout_budget: float | None = None,
    ) -> str:
        """Create a job and start it in the background.

        Args:
            source_ids: Sources to process; None means every registered source
            articles_per_source: Candidate limit per source (defaults to config)
            timeout_budget: Wall-clock budget in seconds (defaults to config)

        Returns:
            The new job id
        """
        limit = articles_per_source if articles_per_source is not None else self.cfg.orchestrator.articles_per_source
        if limit < 0:
            raise ConfigurationError(f"articles_per_source must be >= 0, got {limit}")
        if source_ids is not None:
            # Keep the requested order, run each source once
            source_ids = list(dict.fromkeys(source_ids))
        job = Job(id=uuid.uuid4().hex, sources_requested=list(source_ids or []), articles_per_source=limit)
        await self.store.save_job(job)
        self._jobs[job.id] = job
        self._cancel[job.id] = asyncio.Event()
        budget = timeout_budget if timeout_budget is not None else self.cfg.orchestrator.job_timeout_seconds
        self._tasks[job.id] = asyncio.create_task(self._execute(job, source_ids, budget))
        return job.id

    async def wait_for_job(self, job_id: str) -> Job:
        task = self._tasks.get(job_id)
        if task is not None:
            await task
        live = self._jobs.get(job_id)
        if live is not None and live.status.is_terminal:
            # Final snapshot could not be saved
            return copy.deepcopy(live)
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def run_job(
        self,
        source_ids: list[str] | None = None,
        articles_per_source: int | None = None,
        timeout_budget: float | None = None,
    ) -> Job:
        """Trigger a job and wait for it to finish."""
        job_id = await self.trigger_job(source_ids, articles_per_source, timeout_budget)
        return await self.wait_for_job(job_id)

    async def get_job_status(self, job_id: str) -> JobStatusReport:
        """Return status, counters and the error summary for a job.

        Raises:
            JobNotFoundError: If no such job exists
        """
        live = self._jobs.get(job_id)
        if live is not None:
            return JobStatusReport.from_job(copy.deepcopy(live))
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return JobStatusReport.from_job(job)

    def cancel_job(self, job_id: str) -> bool:
        """Request cooperative cancellation.

        Candidates not yet dispatched are dropped; in-flight fetches finish
        and are counted.

        Returns:
            True if a running job was signalled, False if it already finished

        Raises:
            JobNotFoundError: If the job is unknown to this orchestrator
        """
        task = self._tasks.get(job_id)
        if task is None:
            raise JobNotFoundError(job_id)
        event = self._cancel.get(job_id)
        job = self._jobs.get(job_id)
        if task.done() or event is None or job is None or job.status.is_terminal:
            return False
        job.cancelled = True
        event.set()
        return True

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _execute(self, job: Job, source_ids: list[str] | None, budget: float) -> None:
        cancel = self._cancel[job.id]
        try:
            await self._drive(job, source_ids, budget, cancel)
        except Exception as exc:
            logger.exception("Job %s aborted", job.id)
            event = self.recovery.resolve(exc, scope=ErrorScope.JOB, job_id=job.id)
            self._summarize(job, event)
            job.failure_reason = job.failure_reason or f"{event.category.value}: {event.message}"
            if not job.status.is_terminal:
                status = JobStatus.FAILED if job.status is JobStatus.NEW else self._final_status(job)
                job.transition(status)
            self._emit(job, "ERROR", "Job aborted", status=job.status.value, error=event.to_dict())
        finally:
            self._cancel.pop(job.id, None)
        if await self._persist(job):
            self._jobs.pop(job.id, None)

    async def _drive(self, job: Job, source_ids: list[str] | None, budget: float, cancel: asyncio.Event) -> None:
        try:
            sources = await self.registry.list_eligible_sources(source_ids)
        except Exception as exc:
            event = self.recovery.resolve(exc, scope=ErrorScope.JOB, job_id=job.id)
            self._summarize(job, event)
            self._fail_before_start(job, f"{event.category.value}: {event.message}")
            return

        if not job.sources_requested:
            job.sources_requested = [source.id for source in sources]
        if not sources:
            self._fail_before_start(job, "no sources to process")
            return

        job.transition(JobStatus.IN_PROGRESS)
        await self.store.save_job(job)
        self._emit(job, "INFO", "Job started", sources=job.sources_requested, limit=job.articles_per_source)

        detector = DuplicateDetector(self.store, self.cfg.dedup)
        source_sem = asyncio.Semaphore(self.cfg.orchestrator.max_concurrent_sources)
        watchdog = asyncio.create_task(self._watch_budget(job, cancel, budget))
        try:
            results = await asyncio.gather(
                *(self._run_source(job, source, detector, source_sem, cancel) for source in sources),
                return_exceptions=True,
            )
        finally:
            watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watchdog
        # Every source has settled; surface the first escaped failure
        for result in results:
            if isinstance(result, Exception):
                raise result

        job.transition(self._final_status(job))
        self._emit(
            job,
            "INFO",
            "Job finished",
            status=job.status.value,
            attempted=job.candidates_attempted,
            stored=job.total_articles_scraped,
            duplicates=job.duplicates,
            errors=job.total_errors,
            skipped=job.skipped,
            cancelled=job.cancelled,
        )

    def _fail_before_start(self, job: Job, reason: str) -> None:
        job.failure_reason = reason
        job.transition(JobStatus.FAILED)
        self._emit(job, "ERROR", "Job failed before start", reason=reason)

    async def _persist(self, job: Job) -> bool:
        try:
            await self.store.save_job(job)
        except Exception as exc:
            log_event(logger, "Job snapshot not saved", level=logging.ERROR, job_id=job.id, error=str(exc))
            return False
        return True

    async def _watch_budget(self, job: Job, cancel: asyncio.Event, budget: float) -> None:
        await asyncio.sleep(budget)
        if not cancel.is_set():
            job.cancelled = True
            job.failure_reason = "job budget exceeded"
            self._emit(job, "WARNING", "Job budget exceeded", budget_seconds=budget)
            cancel.set()

    def _final_status(self, job: Job) -> JobStatus:
        reports = list(job.source_reports.values())
        if not reports or all(r.status in (SourceOutcomeStatus.FAILED, SourceOutcomeStatus.SKIPPED) for r in reports):
            return JobStatus.FAILED
        if not job.error_summary and not any(r.status is SourceOutcomeStatus.FAILED for r in reports):
            return JobStatus.PARTIAL if job.cancelled else JobStatus.SUCCESSFUL
        return JobStatus.PARTIAL

    # ------------------------------------------------------------------
    # Source execution
    # ------------------------------------------------------------------

    def settings_for(self, source: SourceDefinition) -> SourceSettings:
        own = source.config
        base = self.cfg.orchestrator

        def pick(value, default):
            return default if value is None else value

        return SourceSettings(
            request_delay_seconds=pick(own.request_delay_seconds, base.request_delay_seconds),
            max_concurrent_fetches=max(1, pick(own.max_concurrent_fetches, base.max_concurrent_fetches)),
            fetch_timeout_seconds=pick(own.fetch_timeout_seconds, self.cfg.fetch.timeout_seconds),
            user_agent=own.user_agent,
            recovery_overrides=dict(own.recovery_overrides or {}),
        )

    async def _run_source(
        self,
        job: Job,
        source: SourceDefinition,
        detector: DuplicateDetector,
        source_sem: asyncio.Semaphore,
        cancel: asyncio.Event,
    ) -> None:
        async with source_sem:
            report = SourceReport(source_id=source.id)
            job.source_reports[source.id] = report

            if cancel.is_set():
                report.status = SourceOutcomeStatus.SKIPPED
                report.reason = "cancelled"
                return

            # Jobs of this orchestrator share one circuit state per source
            circuit = self._circuits.setdefault(source.id, source.circuit)
            allowed = self.circuit.allow(circuit)
            if allowed and circuit.state is CircuitState.HALF_OPEN and source.id in self._trials:
                allowed = False
            if not allowed:
                report.status = SourceOutcomeStatus.SKIPPED
                report.reason = "circuit-open"
                self._emit(
                    job,
                    "INFO",
                    "Source skipped",
                    source_id=source.id,
                    reason="circuit-open",
                    retry_at=self.circuit.retry_at(circuit),
                )
                await self._report_source(job, SourceOutcome(report, circuit))
                return

            state = _SourceRun(circuit=circuit, trial=circuit.state is CircuitState.HALF_OPEN)
            if state.trial:
                self._trials.add(source.id)
            try:
                await self._process_source(job, source, report, detector, cancel, state)
            except Exception as exc:
                logger.exception("Unexpected failure processing source %s", source.id)
                event = self.recovery.resolve(exc, scope=ErrorScope.SOURCE, job_id=job.id, source_id=source.id)
                self._source_failure(job, source, event, state)
            finally:
                if state.trial:
                    self._trials.discard(source.id)

            report.status = self._source_status(report, state)
            if state.reason and not report.reason:
                report.reason = state.reason
            elif cancel.is_set() and not report.reason:
                report.reason = "cancelled"
            await self._report_source(job, SourceOutcome(report, circuit, trial=state.trial))
            self._emit(job, "INFO", "Source finished", **report.to_dict())

    async def _report_source(self, job: Job, outcome: SourceOutcome) -> None:
        source_id = outcome.report.source_id
        try:
            await self.registry.report_source_outcome(source_id, outcome)
            await self.store.save_job(job)
        except Exception as exc:
            event = self.recovery.resolve(exc, scope=ErrorScope.SOURCE, job_id=job.id, source_id=source_id)
            self._summarize(job, event)
            self._emit(job, "ERROR", "Source outcome not recorded", source_id=source_id, error=event.to_dict())

    async def _process_source(
        self,
        job: Job,
        source: SourceDefinition,
        report: SourceReport,
        detector: DuplicateDetector,
        cancel: asyncio.Event,
        state: _SourceRun,
    ) -> None:
        settings = self.settings_for(source)

        async def list_candidates() -> list[Candidate]:
            return await self.feed.list_candidates(source, job.articles_per_source)

        # A half-open circuit admits exactly one trial request
        listing = await self.recovery.run(
            list_candidates,
            scope=ErrorScope.SOURCE,
            job_id=job.id,
            source_id=source.id,
            overrides=settings.recovery_overrides,
            should_stop=cancel.is_set,
            max_retries=0 if state.trial else None,
        )
        if not listing.ok:
            self._source_failure(job, source, listing.event, state)
            return
        self.circuit.record_success(state.circuit)

        candidates = list(listing.value or [])[: job.articles_per_source]
        fresh, known = await detector.filter_known(candidates)
        for candidate, check in known:
            self._count(job, report, DUPLICATES)
            self._emit(job, "INFO", "Duplicate candidate", source_id=source.id, url=candidate.url, reason=check.reason)

        gate = PolitenessGate(settings.request_delay_seconds, clock=self._monotonic, sleep=self._sleep)
        fetch_sem = asyncio.Semaphore(settings.max_concurrent_fetches)

        async def worker(candidate: Candidate) -> None:
            async with fetch_sem:
                if cancel.is_set() or state.aborted:
                    return
                await self._process_candidate(job, source, report, candidate, detector, settings, gate, cancel, state)

        await asyncio.gather(*(worker(candidate) for candidate in fresh))

    def _source_failure(self, job: Job, source: SourceDefinition, event: ErrorEvent, state: _SourceRun) -> None:
        self._summarize(job, event)
        self.circuit.record_failure(state.circuit, event.severity)
        state.aborted = True
        state.reason = f"source failed: {event.category.value}"
        self._emit(job, "ERROR", "Source failed", source_id=source.id, error=event.to_dict())

    @staticmethod
    def _source_status(report: SourceReport, state: _SourceRun) -> SourceOutcomeStatus:
        if state.aborted:
            return SourceOutcomeStatus.FAILED
        if report.attempted and report.errors == report.attempted:
            return SourceOutcomeStatus.FAILED
        if report.errors:
            return SourceOutcomeStatus.DEGRADED
        return SourceOutcomeStatus.SUCCEEDED

    # ------------------------------------------------------------------
    # Candidate execution
    # ------------------------------------------------------------------

    async def _process_candidate(
        self,
        job: Job,
        source: SourceDefinition,
        report: SourceReport,
        candidate: Candidate,
        detector: DuplicateDetector,
        settings: SourceSettings,
        gate: PolitenessGate,
        cancel: asyncio.Event,
        state: _SourceRun,
    ) -> None:
        context = {"job_id": job.id, "source_id": source.id, "candidate_url": candidate.url}

        def should_stop() -> bool:
            return cancel.is_set() or state.aborted

        async def fetch_once():
            await gate.wait()
            return await self.fetcher.fetch(
                candidate.url,
                timeout=settings.fetch_timeout_seconds,
                user_agent=settings.user_agent,
            )

        try:
            check_candidate_url(candidate.url)
            fetched = await self.recovery.run(
                fetch_once,
                overrides=settings.recovery_overrides,
                should_stop=should_stop,
                **context,
            )
            if not fetched.ok:
                self._candidate_error(job, report, source, fetched.event, state)
                return

            page = fetched.value
            result = extract(page.text, page.final_url, trace=self.cfg.extract.trace, cfg=self.cfg.extract)
            if result.is_empty:
                self._skip(job, report, candidate, "quality-gate")
                return
            if not result.title:
                result.title = (candidate.title_hint or "").strip()
            if not result.title:
                self._skip(job, report, candidate, "missing-title")
                return

            check = await detector.is_duplicate(candidate, result)
            if check.is_duplicate:
                self._count(job, report, DUPLICATES)
                self._emit(job, "INFO", "Duplicate content", source_id=source.id, url=candidate.url, reason=check.reason)
                return

            record = ScrapedRecord(
                source_id=source.id,
                url=candidate.url,
                normalized_url=check.normalized_url,
                content_hash=check.content_hash,
                title=result.title,
                body=result.body,
                author=result.author,
                published_at=result.published_at,
                quality_score=result.quality_score,
                job_id=job.id,
            )

            async def upsert() -> str:
                return await self.store.upsert_scraped_content(record)

            stored = await self.recovery.run(upsert, overrides=settings.recovery_overrides, **context)
            if not stored.ok:
                self._candidate_error(job, report, source, stored.event, state)
                return
            if stored.value == DUPLICATE:
                self._count(job, report, DUPLICATES)
                self._emit(job, "INFO", "Duplicate content", source_id=source.id, url=candidate.url, reason="store")
                return

            self._count(job, report, STORED)
            self._emit(
                job,
                "INFO",
                "Article stored",
                source_id=source.id,
                url=candidate.url,
                title=result.title,
                quality_score=result.quality_score,
            )
        except Exception as exc:
            event = self.recovery.resolve(exc, overrides=settings.recovery_overrides, **context)
            self._candidate_error(job, report, source, event, state)

    def _candidate_error(
        self,
        job: Job,
        report: SourceReport,
        source: SourceDefinition,
        event: ErrorEvent,
        state: _SourceRun,
    ) -> None:
        job.candidates_attempted += 1
        report.attempted += 1
        job.total_errors += 1
        report.errors += 1
        self._summarize(job, event)
        self._emit(job, "WARNING", "Candidate failed", source_id=source.id, error=event.to_dict())

        if self.circuit.record_failure(state.circuit, event.severity):
            state.aborted = True
            state.reason = "circuit-open"
        elif event.strategy is RecoveryStrategy.ABORT_SOURCE:
            state.aborted = True
            state.reason = f"aborted: {event.category.value}"

    def _skip(self, job: Job, report: SourceReport, candidate: Candidate, reason: str) -> None:
        self._count(job, report, SKIPPED)
        self._emit(job, "INFO", "Candidate skipped", source_id=candidate.source_id, url=candidate.url, reason=reason)

    def _count(self, job: Job, report: SourceReport, outcome: str) -> None:
        job.candidates_attempted += 1
        report.attempted += 1
        if outcome == STORED:
            job.total_articles_scraped += 1
            report.stored += 1
        elif outcome == DUPLICATES:
            job.duplicates += 1
            report.duplicates += 1
        else:
            job.skipped += 1
            report.skipped += 1
        self.alert_monitor.record_success()

    @staticmethod
    def _summarize(job: Job, event: ErrorEvent) -> None:
        key = event.category.value
        job.error_summary[key] = job.error_summary.get(key, 0) + 1

    def _emit(self, job: Job, level: str, message: str, **data: Any) -> None:
        try:
            self.events.append_structured_event(job.id, level, message, data)
        except OSError as exc:
            log_event(logger, "Event sink failed", level=logging.WARNING, job_id=job.id, error=str(exc))
