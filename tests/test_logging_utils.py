"""Tests for structured log helpers."""

from __future__ import annotations

import json
import logging

from feed_ingest.logging_utils import JsonlFormatter, log_event


def test_fields_named_like_record_attributes_are_prefixed(caplog):
    logger = logging.getLogger("feed_ingest_tests.events")

    with caplog.at_level(logging.WARNING, logger=logger.name):
        log_event(logger, "Alert raised", level=logging.WARNING, message="disk full", name="news", source_id="news")

    record = caplog.records[-1]
    assert record.getMessage() == "Alert raised"
    assert record.data_message == "disk full"
    assert record.data_name == "news"
    assert record.source_id == "news"


def test_jsonl_formatter_keeps_extra_fields():
    record = logging.LogRecord("feed_ingest", logging.INFO, __file__, 1, "Article stored", None, None)
    record.url = "https://example.com/a"
    record.data_message = "kept"

    payload = json.loads(JsonlFormatter().format(record))

    assert payload["message"] == "Article stored"
    assert payload["level"] == "INFO"
    assert payload["url"] == "https://example.com/a"
    assert payload["data_message"] == "kept"


def test_missing_logger_is_ignored():
    log_event(None, "nothing to do", message="ignored")
