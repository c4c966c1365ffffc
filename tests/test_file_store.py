"""Tests for the file-backed content store, event sink and source registry."""

from __future__ import annotations

import asyncio
import json

import pytest

from feed_ingest.core.types import CircuitState, Job, JobStatus, SourceCircuitState, SourceReport
from feed_ingest.errors import ConfigurationError
from feed_ingest.store.base import DUPLICATE, INSERTED, ScrapedRecord, SourceOutcome
from feed_ingest.store import files
from feed_ingest.store.files import FileContentStore, FileEventSink, YamlSourceRegistry


def _record(url: str = "https://example.com/a", digest: str = "h1") -> ScrapedRecord:
    return ScrapedRecord(
        source_id="news",
        url=url,
        normalized_url=url,
        content_hash=digest,
        title="Harbour plan approved",
        body="Body text",
    )


def test_upsert_is_insert_if_absent_and_survives_reload(tmp_path):
    store = FileContentStore(tmp_path)

    async def _run():
        first = await store.upsert_scraped_content(_record())
        same_url = await store.upsert_scraped_content(_record(digest="h2"))
        same_hash = await store.upsert_scraped_content(_record(url="https://example.com/b"))
        return first, same_url, same_hash

    assert asyncio.run(_run()) == (INSERTED, DUPLICATE, DUPLICATE)

    reloaded = FileContentStore(tmp_path)

    async def _check():
        return (
            await reloaded.exists_by_normalized_url("https://example.com/a"),
            await reloaded.exists_by_hash("h1"),
            await reloaded.filter_known_urls({"https://example.com/a", "https://example.com/z"}),
        )

    assert asyncio.run(_check()) == (True, True, {"https://example.com/a"})
    lines = (tmp_path / "articles.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["title"] for line in lines] == ["Harbour plan approved"]


def test_concurrent_upserts_insert_once(tmp_path):
    store = FileContentStore(tmp_path)

    async def _run():
        return await asyncio.gather(*(store.upsert_scraped_content(_record()) for _ in range(5)))

    results = asyncio.run(_run())

    assert results.count(INSERTED) == 1
    assert results.count(DUPLICATE) == 4


def test_job_snapshots_round_trip(tmp_path):
    store = FileContentStore(tmp_path)
    job = Job(id="job-1", sources_requested=["news"], articles_per_source=5)
    job.transition(JobStatus.IN_PROGRESS)
    job.candidates_attempted = 2
    job.total_articles_scraped = 1
    job.skipped = 1
    job.source_reports["news"] = SourceReport(source_id="news", attempted=2, stored=1, skipped=1)
    job.transition(JobStatus.SUCCESSFUL)

    async def _run():
        await store.save_job(job)
        return await store.get_job("job-1"), await store.get_job("nope")

    loaded, missing = asyncio.run(_run())

    assert missing is None
    assert loaded.to_dict() == job.to_dict()


def test_event_sink_appends_jsonl_per_job(tmp_path):
    sink = FileEventSink(tmp_path)
    sink.append_structured_event("job-1", "INFO", "Article stored", {"url": "https://example.com/a"})
    sink.append_structured_event("job-1", "WARNING", "Candidate failed", {"error": {"category": "network"}})

    lines = (tmp_path / "events" / "job-1.jsonl").read_text(encoding="utf-8").splitlines()
    payloads = [json.loads(line) for line in lines]

    assert [p["message"] for p in payloads] == ["Article stored", "Candidate failed"]
    assert payloads[1]["error"] == {"category": "network"}
    assert all("timestamp" in p for p in payloads)


def _sources_file(tmp_path):
    path = tmp_path / "sources.yaml"
    path.write_text(
        "sources:\n"
        "  - id: news\n"
        "    name: Example News\n"
        "    feed_url: https://news.example/feed\n"
        "    config:\n"
        "      request_delay_seconds: 2\n"
        "      recovery_overrides:\n"
        "        parsing: retry\n"
        "      candidate_urls:\n"
        "        - https://news.example/a\n"
        "  - id: blog\n",
        encoding="utf-8",
    )
    return path


def test_registry_reads_sources_and_persists_circuits(tmp_path):
    registry = YamlSourceRegistry(_sources_file(tmp_path), tmp_path / "data")

    async def _run():
        sources = await registry.list_eligible_sources()
        opened = SourceCircuitState(source_id="news", state=CircuitState.OPEN, opened_at=123.0)
        await registry.report_source_outcome(
            "news", SourceOutcome(SourceReport(source_id="news"), opened)
        )
        again = await registry.list_eligible_sources(["news"])
        return sources, again, await registry.list_circuits()

    sources, again, circuits = asyncio.run(_run())

    assert [s.id for s in sources] == ["news", "blog"]
    assert sources[0].config.request_delay_seconds == 2
    assert sources[0].config.recovery_overrides == {"parsing": "retry"}
    assert sources[0].config.candidate_urls == ["https://news.example/a"]
    assert sources[1].circuit.state is CircuitState.CLOSED
    assert again[0].circuit.state is CircuitState.OPEN
    assert again[0].circuit.opened_at == 123.0
    assert {c.source_id: c.state for c in circuits} == {"news": CircuitState.OPEN, "blog": CircuitState.CLOSED}
    assert (tmp_path / "data" / "source_outcomes.jsonl").exists()


def test_registry_rejects_unknown_ids_and_bad_files(tmp_path):
    registry = YamlSourceRegistry(_sources_file(tmp_path), tmp_path / "data")
    with pytest.raises(ConfigurationError):
        asyncio.run(registry.list_eligible_sources(["missing"]))

    broken = tmp_path / "broken.yaml"
    broken.write_text("sources:\n  - name: no id\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        asyncio.run(YamlSourceRegistry(broken, tmp_path).list_eligible_sources())

    with pytest.raises(ConfigurationError):
        asyncio.run(YamlSourceRegistry(tmp_path / "absent.yaml", tmp_path).list_eligible_sources())


def test_failed_write_does_not_claim_the_record(tmp_path, monkeypatch):
    store = FileContentStore(tmp_path)
    real_append = files._append_jsonl
    attempts = []

    def flaky_append(path, payload):
        attempts.append(path)
        if len(attempts) == 1:
            raise OSError(5, "I/O error")
        real_append(path, payload)

    monkeypatch.setattr(files, "_append_jsonl", flaky_append)

    async def _run():
        with pytest.raises(OSError):
            await store.upsert_scraped_content(_record())
        known = await store.exists_by_normalized_url("https://example.com/a")
        return known, await store.upsert_scraped_content(_record())

    known, retried = asyncio.run(_run())

    assert not known
    assert retried == INSERTED
    assert (tmp_path / "articles.jsonl").exists()


def test_late_report_does_not_close_an_open_circuit(tmp_path):
    registry = YamlSourceRegistry(_sources_file(tmp_path), tmp_path / "data")
    opened = SourceCircuitState(source_id="news", state=CircuitState.OPEN, opened_at=500.0)
    stale = SourceCircuitState(source_id="news", failure_count=1, window_start=400.0)
    closed_by_trial = SourceCircuitState(source_id="news")

    async def _state():
        circuits = await registry.list_circuits()
        return next(c for c in circuits if c.source_id == "news")

    async def _run():
        await registry.report_source_outcome("news", SourceOutcome(SourceReport(source_id="news"), opened))
        await registry.report_source_outcome("news", SourceOutcome(SourceReport(source_id="news"), stale))
        after_stale = await _state()
        await registry.report_source_outcome(
            "news", SourceOutcome(SourceReport(source_id="news"), closed_by_trial, trial=True)
        )
        return after_stale, await _state()

    after_stale, after_trial = asyncio.run(_run())

    assert after_stale.state is CircuitState.OPEN
    assert after_stale.opened_at == 500.0
    assert after_trial.state is CircuitState.CLOSED
