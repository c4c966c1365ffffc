"""
Retry execution with exponential backoff.

`RecoveryEngine.run` wraps one operation (a fetch, a feed listing, a store
write), classifies each failure and applies the selected strategy until the
operation succeeds, the strategy stops retrying, or retries run out.
Exactly one ErrorEvent is produced for an operation that ultimately fails,
with its `retry_count` set to the retries that were spent.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
import logging
import random
from typing import Any, Awaitable, Callable, Generic, TypeVar

from ..config import RecoveryConfig
from ..core.types import ErrorEvent, ErrorScope, RecoveryStrategy
from ..logging_utils import log_event
from .alerts import AlertMonitor
from .classifier import ErrorClassifier, RecoveryPolicy


logger = logging.getLogger(__name__)

T = TypeVar("T")


class Backoff:
    """Exponential backoff delays with jitter, never decreasing.

    delay(n) = min(base * multiplier**n * (1 + jitter * r), max_delay)
    where r is drawn from `rng` in [0, 1).
    """

    def __init__(self, cfg: RecoveryConfig, rng: Callable[[], float] = random.random):
        self._cfg = cfg
        self._rng = rng
        self._attempt = 0
        self._last = 0.0

    def next_delay(self) -> float:
        raw = self._cfg.base_delay * (self._cfg.multiplier ** self._attempt)
        delay = min(raw * (1 + self._cfg.jitter * self._rng()), self._cfg.max_delay)
        delay = max(delay, self._last)
        self._attempt += 1
        self._last = delay
        return delay


@dataclass
class RecoveryOutcome(Generic[T]):
    """Result of running an operation under the recovery engine.

    Attributes:
        value: The operation's return value on success
        event: The final ErrorEvent when the operation failed
        attempts: Number of times the operation was invoked
    """

    value: T | None = None
    event: ErrorEvent | None = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.event is None


@dataclass
class RecoveryStats:
    errors_by_category: Counter = field(default_factory=Counter)
    errors_by_severity: Counter = field(default_factory=Counter)
    retries: int = 0
    recovered: int = 0
    exhausted: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "errors_by_category": dict(self.errors_by_category),
            "errors_by_severity": dict(self.errors_by_severity),
            "retries": self.retries,
            "recovered": self.recovered,
            "exhausted": self.exhausted,
        }


class RecoveryEngine:
    """Applies classification, strategy selection and retries."""

    def __init__(
        self,
        cfg: RecoveryConfig | None = None,
        classifier: ErrorClassifier | None = None,
        alerts: AlertMonitor | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.cfg = cfg or RecoveryConfig()
        self.classifier = classifier or ErrorClassifier()
        self.policy = RecoveryPolicy(self.cfg.overrides)
        self.alerts = alerts
        self.stats = RecoveryStats()
        self._sleep = sleep
        self._rng = rng

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        scope: ErrorScope = ErrorScope.CANDIDATE,
        job_id: str | None = None,
        source_id: str | None = None,
        candidate_url: str | None = None,
        overrides: dict[str, str] | None = None,
        should_stop: Callable[[], bool] | None = None,
        max_retries: int | None = None,
    ) -> RecoveryOutcome[T]:
        """Invoke `operation` until it succeeds or recovery gives up.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            scope: Whether the operation concerns one candidate or a whole source
            job_id: Job context recorded on the ErrorEvent
            source_id: Source context recorded on the ErrorEvent
            candidate_url: Candidate context recorded on the ErrorEvent
            overrides: Per-source strategy overrides
            should_stop: Checked before each retry; True ends retrying early
            max_retries: Retry limit for this call (defaults to config)

        Returns:
            RecoveryOutcome with either the value or the final ErrorEvent
        """
        backoff = Backoff(self.cfg, self._rng)
        limit = self.cfg.max_retries if max_retries is None else max_retries
        retries = 0
        while True:
            try:
                value = await operation()
            except Exception as exc:
                event, strategy = self._evaluate(exc, scope, job_id, source_id, candidate_url, overrides)
                can_retry = retries < limit and not (should_stop and should_stop())
                if strategy.retries and can_retry:
                    delay = backoff.next_delay() if strategy is RecoveryStrategy.RETRY_WITH_BACKOFF else 0.0
                    log_event(
                        logger,
                        "Retrying operation",
                        level=logging.DEBUG,
                        category=event.category.value,
                        severity=event.severity.value,
                        retry=retries + 1,
                        delay=round(delay, 3),
                        source_id=source_id,
                        url=candidate_url,
                    )
                    self.stats.retries += 1
                    retries += 1
                    if delay:
                        await self._sleep(delay)
                    continue

                event.retry_count = retries
                if strategy.retries:
                    # Retries exhausted
                    strategy = RecoveryStrategy.SKIP if scope is ErrorScope.CANDIDATE else RecoveryStrategy.ABORT_SOURCE
                    self.stats.exhausted += 1
                self._finalize(event, strategy)
                return RecoveryOutcome(event=event, attempts=retries + 1)

            if retries:
                self.stats.recovered += 1
            return RecoveryOutcome(value=value, attempts=retries + 1)

    def resolve(
        self,
        exc: BaseException,
        scope: ErrorScope = ErrorScope.CANDIDATE,
        job_id: str | None = None,
        source_id: str | None = None,
        candidate_url: str | None = None,
        overrides: dict[str, str] | None = None,
    ) -> ErrorEvent:
        """Classify a failure that is not retried and record it."""
        event, strategy = self._evaluate(exc, scope, job_id, source_id, candidate_url, overrides)
        if strategy.retries:
            strategy = RecoveryStrategy.SKIP if scope is ErrorScope.CANDIDATE else RecoveryStrategy.ABORT_SOURCE
        self._finalize(event, strategy)
        return event

    def _evaluate(
        self,
        exc: BaseException,
        scope: ErrorScope,
        job_id: str | None,
        source_id: str | None,
        candidate_url: str | None,
        overrides: dict[str, str] | None,
    ) -> tuple[ErrorEvent, RecoveryStrategy]:
        event = self.classifier.classify(
            exc,
            scope=scope,
            job_id=job_id,
            source_id=source_id,
            candidate_url=candidate_url,
        )
        strategy = self.policy.strategy_for(event.category, event.severity, overrides)
        # A source cannot skip itself
        if scope is not ErrorScope.CANDIDATE and strategy is RecoveryStrategy.SKIP:
            strategy = RecoveryStrategy.ABORT_SOURCE
        return event, strategy

    def _finalize(self, event: ErrorEvent, strategy: RecoveryStrategy) -> None:
        event.strategy = strategy
        # Candidate-scoped failures never stop the source
        event.recoverable = event.scope is ErrorScope.CANDIDATE and strategy is not RecoveryStrategy.ABORT_SOURCE
        self.stats.errors_by_category[event.category.value] += 1
        self.stats.errors_by_severity[event.severity.value] += 1
        log_event(
            logger,
            "Operation failed",
            level=logging.WARNING if event.severity.rank >= 2 else logging.INFO,
            category=event.category.value,
            severity=event.severity.value,
            strategy=strategy.value,
            retry_count=event.retry_count,
            source_id=event.source_id,
            url=event.candidate_url,
            error=event.message,
        )
        if self.alerts is not None:
            self.alerts.record_error(event)
            if strategy is RecoveryStrategy.ESCALATE:
                self.alerts.escalate(event)
