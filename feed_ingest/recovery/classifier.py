"""
Error classification and recovery strategy selection.

Failures are mapped onto a closed taxonomy (ErrorCategory x Severity) and
the recovery strategy is a table lookup on that pair. Sources may override
entries with keys of the form "category" or "category:severity".
"""

from __future__ import annotations

import asyncio
import errno
import json
import logging

import httpx

from ..core.types import ErrorCategory, ErrorEvent, ErrorScope, RecoveryStrategy, Severity
from ..errors import (
    ConfigurationError,
    ContentParseError,
    ContentValidationError,
    FetchStatusError,
    ResourceExhaustedError,
)


logger = logging.getLogger(__name__)

_RWB = RecoveryStrategy.RETRY_WITH_BACKOFF
_SKIP = RecoveryStrategy.SKIP
_ABORT = RecoveryStrategy.ABORT_SOURCE
_ESC = RecoveryStrategy.ESCALATE


def _row(low: RecoveryStrategy, medium: RecoveryStrategy, high: RecoveryStrategy) -> dict[Severity, RecoveryStrategy]:
    return {Severity.LOW: low, Severity.MEDIUM: medium, Severity.HIGH: high, Severity.CRITICAL: _ESC}


STRATEGY_TABLE: dict[ErrorCategory, dict[Severity, RecoveryStrategy]] = {
    ErrorCategory.NETWORK: _row(_RWB, _RWB, _RWB),
    ErrorCategory.HTTP_STATUS: _row(_SKIP, _RWB, _SKIP),
    ErrorCategory.PARSING: _row(_SKIP, _SKIP, _SKIP),
    ErrorCategory.VALIDATION: _row(_SKIP, _SKIP, _SKIP),
    ErrorCategory.RESOURCE: _row(_RWB, _RWB, _RWB),
    ErrorCategory.CONFIGURATION: _row(_ABORT, _ABORT, _ABORT),
    ErrorCategory.TIMEOUT: _row(_RWB, _RWB, _RWB),
    ErrorCategory.UNKNOWN: _row(RecoveryStrategy.RETRY, RecoveryStrategy.RETRY, _SKIP),
}

# Failures of a whole source are never minor
_SOURCE_SCOPE_FLOOR = {
    ErrorCategory.NETWORK,
    ErrorCategory.HTTP_STATUS,
    ErrorCategory.RESOURCE,
    ErrorCategory.TIMEOUT,
    ErrorCategory.CONFIGURATION,
    ErrorCategory.UNKNOWN,
}


def classify_status(status_code: int) -> tuple[ErrorCategory, Severity]:
    """Map an HTTP status code onto the taxonomy."""
    if status_code in (429, 503):
        return ErrorCategory.RESOURCE, Severity.MEDIUM
    if status_code == 408:
        return ErrorCategory.TIMEOUT, Severity.MEDIUM
    if status_code in (401, 403):
        return ErrorCategory.HTTP_STATUS, Severity.HIGH
    if status_code >= 500:
        return ErrorCategory.HTTP_STATUS, Severity.MEDIUM
    return ErrorCategory.HTTP_STATUS, Severity.LOW


def classify_exception(exc: BaseException) -> tuple[ErrorCategory, Severity]:
    """Map an exception onto the taxonomy by type, never by message text."""
    if isinstance(exc, FetchStatusError):
        return classify_status(exc.status_code)
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TIMEOUT, Severity.MEDIUM
    if isinstance(exc, httpx.TransportError):
        return ErrorCategory.NETWORK, Severity.MEDIUM
    if isinstance(exc, ConnectionError):
        return ErrorCategory.NETWORK, Severity.MEDIUM
    if isinstance(exc, (ContentParseError, json.JSONDecodeError, UnicodeDecodeError, httpx.DecodingError)):
        return ErrorCategory.PARSING, Severity.LOW
    if isinstance(exc, ContentValidationError):
        return ErrorCategory.VALIDATION, Severity.LOW
    if isinstance(exc, (MemoryError, ResourceExhaustedError)):
        return ErrorCategory.RESOURCE, Severity.CRITICAL
    if isinstance(exc, OSError) and exc.errno in (errno.EMFILE, errno.ENFILE, errno.ENOSPC, errno.ENOMEM):
        return ErrorCategory.RESOURCE, Severity.CRITICAL
    if isinstance(exc, ConfigurationError):
        return ErrorCategory.CONFIGURATION, Severity.HIGH
    return ErrorCategory.UNKNOWN, Severity.MEDIUM


def parse_overrides(raw: dict[str, str] | None) -> dict[tuple[ErrorCategory, Severity | None], RecoveryStrategy]:
    """Parse override keys ("category" or "category:severity") into table keys.

    Raises:
        ConfigurationError: On unknown categories, severities or strategies
    """
    parsed: dict[tuple[ErrorCategory, Severity | None], RecoveryStrategy] = {}
    for key, value in (raw or {}).items():
        category_name, _, severity_name = str(key).partition(":")
        try:
            category = ErrorCategory(category_name.strip())
            severity = Severity(severity_name.strip()) if severity_name else None
            strategy = RecoveryStrategy(str(value).strip())
        except ValueError as exc:
            raise ConfigurationError(f"Invalid recovery override {key!r}: {value!r}") from exc
        parsed[(category, severity)] = strategy
    return parsed


class RecoveryPolicy:
    """Selects a recovery strategy for a (category, severity) pair.

    Lookup order: source override for category:severity, source override for
    category, global overrides in the same order, then STRATEGY_TABLE.
    """

    def __init__(self, overrides: dict[str, str] | None = None):
        self._global = parse_overrides(overrides)

    def strategy_for(
        self,
        category: ErrorCategory,
        severity: Severity,
        source_overrides: dict[str, str] | None = None,
    ) -> RecoveryStrategy:
        for table in (parse_overrides(source_overrides), self._global):
            if (category, severity) in table:
                return table[(category, severity)]
            if (category, None) in table:
                return table[(category, None)]
        return STRATEGY_TABLE[category][severity]


class ErrorClassifier:
    """Turns exceptions into ErrorEvents."""

    def classify(
        self,
        exc: BaseException,
        scope: ErrorScope = ErrorScope.CANDIDATE,
        job_id: str | None = None,
        source_id: str | None = None,
        candidate_url: str | None = None,
    ) -> ErrorEvent:
        category, severity = classify_exception(exc)
        if scope is not ErrorScope.CANDIDATE and category in _SOURCE_SCOPE_FLOOR:
            severity = severity.at_least(Severity.HIGH)
        status_code = None
        if isinstance(exc, FetchStatusError):
            status_code = exc.status_code
        elif isinstance(exc, httpx.HTTPStatusError):
            status_code = exc.response.status_code
        message = str(exc) or type(exc).__name__
        return ErrorEvent(
            category=category,
            severity=severity,
            message=message,
            scope=scope,
            error_type=type(exc).__name__,
            status_code=status_code,
            job_id=job_id,
            source_id=source_id,
            candidate_url=candidate_url,
        )
