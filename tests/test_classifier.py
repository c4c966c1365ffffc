"""Tests for error classification and strategy selection."""

from __future__ import annotations

import asyncio
import errno

import httpx
import pytest

from feed_ingest.core.types import ErrorCategory, ErrorScope, RecoveryStrategy, Severity
from feed_ingest.errors import (
    ConfigurationError,
    ContentParseError,
    ContentValidationError,
    FetchStatusError,
    ResourceExhaustedError,
)
from feed_ingest.recovery.classifier import (
    STRATEGY_TABLE,
    ErrorClassifier,
    RecoveryPolicy,
    classify_exception,
    classify_status,
)


def test_status_codes_map_to_categories():
    assert classify_status(503) == (ErrorCategory.RESOURCE, Severity.MEDIUM)
    assert classify_status(429) == (ErrorCategory.RESOURCE, Severity.MEDIUM)
    assert classify_status(500) == (ErrorCategory.HTTP_STATUS, Severity.MEDIUM)
    assert classify_status(408) == (ErrorCategory.TIMEOUT, Severity.MEDIUM)
    assert classify_status(403) == (ErrorCategory.HTTP_STATUS, Severity.HIGH)
    assert classify_status(404) == (ErrorCategory.HTTP_STATUS, Severity.LOW)


def test_exceptions_map_by_type():
    assert classify_exception(httpx.ReadTimeout("slow")) == (ErrorCategory.TIMEOUT, Severity.MEDIUM)
    assert classify_exception(asyncio.TimeoutError()) == (ErrorCategory.TIMEOUT, Severity.MEDIUM)
    assert classify_exception(httpx.ConnectError("refused")) == (ErrorCategory.NETWORK, Severity.MEDIUM)
    assert classify_exception(ContentParseError("bad bytes")) == (ErrorCategory.PARSING, Severity.LOW)
    assert classify_exception(ContentValidationError("too short")) == (ErrorCategory.VALIDATION, Severity.LOW)
    assert classify_exception(MemoryError()) == (ErrorCategory.RESOURCE, Severity.CRITICAL)
    assert classify_exception(ResourceExhaustedError("disk")) == (ErrorCategory.RESOURCE, Severity.CRITICAL)
    assert classify_exception(OSError(errno.EMFILE, "Too many open files")) == (
        ErrorCategory.RESOURCE,
        Severity.CRITICAL,
    )
    assert classify_exception(ConfigurationError("no source")) == (ErrorCategory.CONFIGURATION, Severity.HIGH)
    assert classify_exception(RuntimeError("???")) == (ErrorCategory.UNKNOWN, Severity.MEDIUM)


def test_message_text_does_not_influence_category():
    assert classify_exception(RuntimeError("connection timed out")) == (ErrorCategory.UNKNOWN, Severity.MEDIUM)


def test_every_table_cell_is_defined_and_critical_escalates():
    for category in ErrorCategory:
        for severity in Severity:
            assert isinstance(STRATEGY_TABLE[category][severity], RecoveryStrategy)
        assert STRATEGY_TABLE[category][Severity.CRITICAL] is RecoveryStrategy.ESCALATE


def test_default_strategies():
    policy = RecoveryPolicy()
    assert policy.strategy_for(ErrorCategory.RESOURCE, Severity.MEDIUM) is RecoveryStrategy.RETRY_WITH_BACKOFF
    assert policy.strategy_for(ErrorCategory.HTTP_STATUS, Severity.LOW) is RecoveryStrategy.SKIP
    assert policy.strategy_for(ErrorCategory.PARSING, Severity.LOW) is RecoveryStrategy.SKIP
    assert policy.strategy_for(ErrorCategory.CONFIGURATION, Severity.HIGH) is RecoveryStrategy.ABORT_SOURCE
    assert policy.strategy_for(ErrorCategory.UNKNOWN, Severity.MEDIUM) is RecoveryStrategy.RETRY


def test_source_overrides_take_precedence_over_global():
    policy = RecoveryPolicy({"http-status": "retry"})

    assert policy.strategy_for(ErrorCategory.HTTP_STATUS, Severity.LOW) is RecoveryStrategy.RETRY
    source = {"http-status:low": "abort-source"}
    assert policy.strategy_for(ErrorCategory.HTTP_STATUS, Severity.LOW, source) is RecoveryStrategy.ABORT_SOURCE
    assert policy.strategy_for(ErrorCategory.HTTP_STATUS, Severity.HIGH, source) is RecoveryStrategy.RETRY


def test_invalid_override_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        RecoveryPolicy({"not-a-category": "skip"})
    with pytest.raises(ConfigurationError):
        RecoveryPolicy({"network": "pray"})


def test_classifier_builds_event_with_context():
    event = ErrorClassifier().classify(
        FetchStatusError("https://example.com/a", 503),
        job_id="job-1",
        source_id="src",
        candidate_url="https://example.com/a",
    )

    assert event.category is ErrorCategory.RESOURCE
    assert event.severity is Severity.MEDIUM
    assert event.status_code == 503
    assert event.error_type == "FetchStatusError"
    assert (event.job_id, event.source_id, event.candidate_url) == ("job-1", "src", "https://example.com/a")


def test_source_scope_raises_severity():
    event = ErrorClassifier().classify(httpx.ReadTimeout("feed"), scope=ErrorScope.SOURCE, source_id="src")

    assert event.category is ErrorCategory.TIMEOUT
    assert event.severity is Severity.HIGH
