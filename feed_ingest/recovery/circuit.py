"""
Per-source circuit breaker.

The breaker is stateless; it computes transitions on a SourceCircuitState
that the source registry persists across jobs.

closed -> open:       `failure_threshold` high/critical failures within `window_seconds`
open -> half-open:    `cooldown_seconds` after opening, on the next `allow` check
half-open -> closed:  the trial attempt succeeds
half-open -> open:    the trial attempt fails, whatever its severity
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from ..config import CircuitConfig
from ..core.types import CircuitState, Severity, SourceCircuitState
from ..logging_utils import log_event


logger = logging.getLogger(__name__)


class CircuitBreaker:
    def __init__(self, cfg: CircuitConfig | None = None, clock: Callable[[], float] = time.time):
        self.cfg = cfg or CircuitConfig()
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def allow(self, state: SourceCircuitState) -> bool:
        """Return True when the source may be attempted.

        Moves an open circuit to half-open once its cool-down has elapsed.
        """
        if state.state is CircuitState.CLOSED:
            return True
        if state.state is CircuitState.HALF_OPEN:
            return True
        if state.opened_at is not None and self.now() - state.opened_at >= self.cfg.cooldown_seconds:
            state.state = CircuitState.HALF_OPEN
            log_event(logger, "Circuit half-open", source_id=state.source_id)
            return True
        return False

    def retry_at(self, state: SourceCircuitState) -> float | None:
        """Timestamp at which an open circuit admits a trial attempt."""
        if state.state is not CircuitState.OPEN or state.opened_at is None:
            return None
        return state.opened_at + self.cfg.cooldown_seconds

    def record_failure(self, state: SourceCircuitState, severity: Severity) -> bool:
        """Count a failure against the source. Returns True if the circuit opened."""
        now = self.now()
        if state.state is CircuitState.HALF_OPEN:
            self._open(state, now)
            return True
        if severity.rank < Severity.HIGH.rank:
            return False
        if state.state is CircuitState.OPEN:
            return False
        if state.window_start is None or now - state.window_start > self.cfg.window_seconds:
            state.window_start = now
            state.failure_count = 0
        state.failure_count += 1
        if state.failure_count >= self.cfg.failure_threshold:
            self._open(state, now)
            return True
        return False

    def record_success(self, state: SourceCircuitState) -> None:
        if state.state is CircuitState.HALF_OPEN:
            state.state = CircuitState.CLOSED
            state.failure_count = 0
            state.window_start = None
            state.opened_at = None
            log_event(logger, "Circuit closed", source_id=state.source_id)

    def _open(self, state: SourceCircuitState, now: float) -> None:
        state.state = CircuitState.OPEN
        state.opened_at = now
        state.failure_count = 0
        state.window_start = None
        log_event(
            logger,
            "Circuit opened",
            level=logging.WARNING,
            source_id=state.source_id,
            cooldown_seconds=self.cfg.cooldown_seconds,
        )
