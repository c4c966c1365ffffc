"""
Threshold alerting over recent error outcomes.

Two conditions raise an alert: the error ratio over a trailing window
exceeding `error_rate_threshold` (once at least `min_events` outcomes were
seen), and the number of critical errors in the window reaching
`critical_error_threshold`. Escalated errors always alert. Alerts with the
same key are suppressed for `cooldown_seconds`.
"""

from __future__ import annotations

from collections import deque
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from ..config import AlertConfig
from ..core.types import ErrorCategory, ErrorEvent, Severity
from ..logging_utils import log_event

if TYPE_CHECKING:
    from ..store.base import AlertSink


logger = logging.getLogger(__name__)


class AlertMonitor:
    def __init__(
        self,
        cfg: AlertConfig | None = None,
        sink: "AlertSink | None" = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg or AlertConfig()
        self._sink = sink
        self._clock = clock
        # (timestamp, is_error, is_critical)
        self._outcomes: deque[tuple[float, bool, bool]] = deque()
        self._last_alert: dict[str, float] = {}
        self.alerts_raised = 0

    def record_success(self) -> None:
        self._record(False, False)

    def record_error(self, event: ErrorEvent) -> None:
        now = self._record(True, event.severity is Severity.CRITICAL)
        errors = sum(1 for _, is_error, _ in self._outcomes if is_error)
        criticals = sum(1 for _, _, is_critical in self._outcomes if is_critical)
        total = len(self._outcomes)
        context = {"source_id": event.source_id, "job_id": event.job_id}

        if criticals >= self.cfg.critical_error_threshold:
            self._raise(
                "critical-errors",
                event.category,
                Severity.CRITICAL,
                {**context, "critical_errors": criticals, "window_seconds": self.cfg.window_seconds},
                now,
            )
        if total >= self.cfg.min_events and errors / total > self.cfg.error_rate_threshold:
            self._raise(
                "error-rate",
                event.category,
                Severity.HIGH,
                {**context, "error_rate": round(errors / total, 3), "outcomes": total},
                now,
            )

    def escalate(self, event: ErrorEvent) -> bool:
        """Raise an alert for an escalated error. Returns False when suppressed."""
        key = f"escalate:{event.category.value}:{event.source_id or '-'}"
        context = {
            "source_id": event.source_id,
            "job_id": event.job_id,
            "candidate_url": event.candidate_url,
            "error": event.message,
        }
        return self._raise(key, event.category, event.severity, context, self._clock())

    def _record(self, is_error: bool, is_critical: bool) -> float:
        now = self._clock()
        self._outcomes.append((now, is_error, is_critical))
        cutoff = now - self.cfg.window_seconds
        while self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes.popleft()
        return now

    def _raise(
        self,
        key: str,
        category: ErrorCategory,
        severity: Severity,
        context: dict[str, Any],
        now: float,
    ) -> bool:
        if not self.cfg.enabled:
            return False
        last = self._last_alert.get(key)
        if last is not None and now - last < self.cfg.cooldown_seconds:
            return False
        self._last_alert[key] = now
        self.alerts_raised += 1
        log_event(
            logger,
            "Alert raised",
            level=logging.WARNING,
            alert_key=key,
            category=category.value,
            severity=severity.value,
            **context,
        )
        if self._sink is not None:
            self._sink.raise_alert(category, severity, {"key": key, **context})
        return True
