"""Tests for retries, backoff, circuit breaking and alerting."""

from __future__ import annotations

import asyncio
import random

import httpx

from feed_ingest.config import AlertConfig, CircuitConfig, RecoveryConfig
from feed_ingest.core.types import (
    CircuitState,
    ErrorCategory,
    ErrorEvent,
    ErrorScope,
    RecoveryStrategy,
    Severity,
    SourceCircuitState,
)
from feed_ingest.errors import FetchStatusError, ResourceExhaustedError
from feed_ingest.recovery.alerts import AlertMonitor
from feed_ingest.recovery.circuit import CircuitBreaker
from feed_ingest.recovery.retry import Backoff, RecoveryEngine
from feed_ingest.store.memory import MemoryAlertSink


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _engine(sleeps: list[float], alerts: AlertMonitor | None = None, **cfg) -> RecoveryEngine:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return RecoveryEngine(RecoveryConfig(**cfg), alerts=alerts, sleep=fake_sleep, rng=lambda: 0.0)


def test_http_503_is_retried_with_backoff_then_skipped():
    sleeps: list[float] = []
    engine = _engine(sleeps)
    calls = 0

    async def operation():
        nonlocal calls
        calls += 1
        raise FetchStatusError("https://example.com/a", 503)

    outcome = asyncio.run(engine.run(operation, candidate_url="https://example.com/a"))

    assert not outcome.ok
    assert calls == 4
    assert outcome.attempts == 4
    assert sleeps == [1.0, 2.0, 4.0]
    assert outcome.event.category is ErrorCategory.RESOURCE
    assert outcome.event.severity is Severity.MEDIUM
    assert outcome.event.retry_count == 3
    assert outcome.event.strategy is RecoveryStrategy.SKIP
    assert engine.stats.exhausted == 1
    assert engine.stats.errors_by_category == {"resource": 1}


def test_transient_failure_recovers():
    sleeps: list[float] = []
    engine = _engine(sleeps)
    attempts = iter([httpx.ConnectError("refused"), httpx.ReadTimeout("slow"), None])

    async def operation():
        error = next(attempts)
        if error is not None:
            raise error
        return "ok"

    outcome = asyncio.run(engine.run(operation))

    assert outcome.ok
    assert outcome.value == "ok"
    assert outcome.attempts == 3
    assert engine.stats.recovered == 1
    assert engine.stats.errors_by_category == {}


def test_non_retriable_failure_is_not_retried():
    sleeps: list[float] = []
    engine = _engine(sleeps)

    async def operation():
        raise FetchStatusError("https://example.com/missing", 404)

    outcome = asyncio.run(engine.run(operation))

    assert outcome.attempts == 1
    assert sleeps == []
    assert outcome.event.strategy is RecoveryStrategy.SKIP
    assert outcome.event.recoverable


def test_immediate_retry_does_not_sleep():
    sleeps: list[float] = []
    engine = _engine(sleeps, max_retries=2)

    async def operation():
        raise RuntimeError("unexpected")

    outcome = asyncio.run(engine.run(operation))

    assert outcome.attempts == 3
    assert sleeps == []
    assert outcome.event.category is ErrorCategory.UNKNOWN


def test_source_scope_exhaustion_aborts_source():
    sleeps: list[float] = []
    engine = _engine(sleeps)

    async def operation():
        raise httpx.ReadTimeout("feed")

    outcome = asyncio.run(engine.run(operation, scope=ErrorScope.SOURCE, source_id="src"))

    assert outcome.event.severity is Severity.HIGH
    assert outcome.event.strategy is RecoveryStrategy.ABORT_SOURCE
    assert not outcome.event.recoverable


def test_should_stop_ends_retrying():
    sleeps: list[float] = []
    engine = _engine(sleeps)

    async def operation():
        raise httpx.ConnectError("down")

    outcome = asyncio.run(engine.run(operation, should_stop=lambda: True))

    assert outcome.attempts == 1
    assert outcome.event.retry_count == 0


def test_retry_count_never_exceeds_max():
    sleeps: list[float] = []
    engine = _engine(sleeps, max_retries=5)

    async def operation():
        raise httpx.ConnectError("down")

    outcome = asyncio.run(engine.run(operation))

    assert outcome.event.retry_count == 5
    assert len(sleeps) == 5


def test_backoff_delays_are_capped_and_non_decreasing():
    backoff = Backoff(RecoveryConfig(base_delay=10, multiplier=3, max_delay=30, jitter=0.0))
    assert [backoff.next_delay() for _ in range(4)] == [10, 30, 30, 30]

    rng = random.Random(7)
    jittered = Backoff(RecoveryConfig(jitter=0.5, max_delay=8), rng=rng.random)
    delays = [jittered.next_delay() for _ in range(10)]
    assert delays == sorted(delays)
    assert max(delays) <= 8


def test_critical_error_escalates_and_alerts():
    sink = MemoryAlertSink()
    monitor = AlertMonitor(AlertConfig(), sink, clock=FakeClock())
    sleeps: list[float] = []
    engine = _engine(sleeps, alerts=monitor)

    async def operation():
        raise ResourceExhaustedError("out of file handles")

    outcome = asyncio.run(engine.run(operation, source_id="src"))

    assert outcome.event.strategy is RecoveryStrategy.ESCALATE
    assert outcome.attempts == 1
    assert len(sink.alerts) == 1
    assert sink.alerts[0]["key"].startswith("escalate:resource")


def test_circuit_opens_after_threshold_within_window():
    clock = FakeClock()
    breaker = CircuitBreaker(CircuitConfig(failure_threshold=5, window_seconds=600, cooldown_seconds=300), clock)
    state = SourceCircuitState(source_id="src")

    opened = []
    for _ in range(5):
        opened.append(breaker.record_failure(state, Severity.HIGH))
        clock.advance(60)

    assert opened == [False, False, False, False, True]
    assert state.state is CircuitState.OPEN
    assert not breaker.allow(state)


def test_circuit_ignores_low_severity_and_expired_window():
    clock = FakeClock()
    breaker = CircuitBreaker(CircuitConfig(failure_threshold=2, window_seconds=600), clock)
    state = SourceCircuitState(source_id="src")

    breaker.record_failure(state, Severity.MEDIUM)
    assert state.failure_count == 0
    breaker.record_failure(state, Severity.HIGH)
    clock.advance(601)
    breaker.record_failure(state, Severity.HIGH)

    assert state.state is CircuitState.CLOSED
    assert state.failure_count == 1


def test_circuit_half_open_trial_closes_or_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(CircuitConfig(failure_threshold=1, cooldown_seconds=300), clock)
    state = SourceCircuitState(source_id="src")
    breaker.record_failure(state, Severity.CRITICAL)

    clock.advance(299)
    assert not breaker.allow(state)
    clock.advance(1)
    assert breaker.allow(state)
    assert state.state is CircuitState.HALF_OPEN

    breaker.record_failure(state, Severity.HIGH)
    assert state.state is CircuitState.OPEN
    assert breaker.retry_at(state) == clock.now + 300

    clock.advance(300)
    assert breaker.allow(state)
    breaker.record_success(state)
    assert state.state is CircuitState.CLOSED
    assert state.failure_count == 0


def test_half_open_trial_reopens_on_any_failure():
    clock = FakeClock()
    breaker = CircuitBreaker(CircuitConfig(failure_threshold=1, cooldown_seconds=300), clock)
    state = SourceCircuitState(source_id="src", state=CircuitState.OPEN, opened_at=clock.now - 300)

    assert breaker.allow(state)
    assert breaker.record_failure(state, Severity.LOW)
    assert state.state is CircuitState.OPEN
    assert state.opened_at == clock.now


def test_retry_budget_can_be_narrowed_per_call():
    sleeps: list[float] = []
    engine = _engine(sleeps)
    calls = 0

    async def operation():
        nonlocal calls
        calls += 1
        raise httpx.ReadTimeout("feed")

    outcome = asyncio.run(engine.run(operation, scope=ErrorScope.SOURCE, max_retries=0))

    assert calls == 1
    assert sleeps == []
    assert outcome.event.strategy is RecoveryStrategy.ABORT_SOURCE


def _event(severity: Severity = Severity.MEDIUM) -> ErrorEvent:
    return ErrorEvent(category=ErrorCategory.NETWORK, severity=severity, message="boom", source_id="src")


def test_error_rate_alert_respects_minimum_events_and_cooldown():
    clock = FakeClock()
    sink = MemoryAlertSink()
    monitor = AlertMonitor(AlertConfig(min_events=4, error_rate_threshold=0.5, cooldown_seconds=300, window_seconds=1000), sink, clock)

    for _ in range(3):
        monitor.record_error(_event())
    assert sink.alerts == []

    monitor.record_error(_event())
    assert [alert["key"] for alert in sink.alerts] == ["error-rate"]

    monitor.record_error(_event())
    assert len(sink.alerts) == 1

    clock.advance(301)
    monitor.record_error(_event())
    assert len(sink.alerts) == 2


def test_successes_keep_error_rate_below_threshold():
    sink = MemoryAlertSink()
    monitor = AlertMonitor(AlertConfig(min_events=4), sink, FakeClock())

    for _ in range(6):
        monitor.record_success()
    for _ in range(4):
        monitor.record_error(_event())

    assert sink.alerts == []


def test_critical_threshold_alert_and_disabled_monitor():
    sink = MemoryAlertSink()
    monitor = AlertMonitor(AlertConfig(critical_error_threshold=2, min_events=100), sink, FakeClock())
    monitor.record_error(_event(Severity.CRITICAL))
    monitor.record_error(_event(Severity.CRITICAL))
    assert [alert["key"] for alert in sink.alerts] == ["critical-errors"]

    quiet_sink = MemoryAlertSink()
    quiet = AlertMonitor(AlertConfig(enabled=False, critical_error_threshold=1), quiet_sink, FakeClock())
    quiet.record_error(_event(Severity.CRITICAL))
    assert quiet_sink.alerts == []
