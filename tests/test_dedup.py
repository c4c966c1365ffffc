"""Tests for URL normalization and duplicate detection."""

from __future__ import annotations

import asyncio

from feed_ingest.config import DedupConfig
from feed_ingest.core.dedup import DuplicateDetector, content_hash, normalize_body, normalize_url
from feed_ingest.core.types import Candidate, ExtractionResult
from feed_ingest.store.base import ScrapedRecord
from feed_ingest.store.memory import MemoryContentStore


BODY = "Officials confirmed the bridge will reopen next week. " * 8


def _result(body: str = BODY) -> ExtractionResult:
    return ExtractionResult(title="Bridge reopens", body=body, content_hash=content_hash(body))


def test_normalize_url_strips_tracking_and_fragment():
    assert normalize_url("HTTPS://Example.com/a/?utm_source=x&id=2#top") == "https://example.com/a?id=2"
    assert normalize_url("https://example.com/a?fbclid=1&b=2&a=1") == "https://example.com/a?a=1&b=2"
    assert normalize_url("http://example.com:80/") == "http://example.com/"
    assert normalize_url("https://example.com:8443/x") == "https://example.com:8443/x"
    assert normalize_url("https://example.com/a?utm_custom=1") == "https://example.com/a"


def test_normalize_url_keeps_root_slash_and_handles_empty():
    assert normalize_url("https://example.com") == "https://example.com/"
    assert normalize_url("") == ""


def test_normalize_body_folds_typography():
    assert normalize_body("“Quoted”  text — here") == normalize_body('"quoted" text - here')
    assert content_hash("It’s done.") == content_hash("it's   done.")


def test_same_url_with_tracking_params_is_duplicate_within_job():
    detector = DuplicateDetector(MemoryContentStore())
    first = Candidate(url="https://example.com/story?utm_source=rss", source_id="s1")
    second = Candidate(url="https://example.com/story", source_id="s2")

    async def _run():
        one = await detector.is_duplicate(first, _result())
        two = await detector.is_duplicate(second, _result(BODY + " Updated."))
        return one, two

    one, two = asyncio.run(_run())

    assert not one.is_duplicate
    assert two.is_duplicate
    assert two.reason == "url-in-job"


def test_same_candidate_checked_twice_is_not_its_own_duplicate():
    detector = DuplicateDetector(MemoryContentStore())
    candidate = Candidate(url="https://example.com/story", source_id="s1")

    async def _run():
        fresh, known = await detector.filter_known([candidate])
        check = await detector.is_duplicate(candidate, _result())
        return fresh, known, check

    fresh, known, check = asyncio.run(_run())

    assert fresh == [candidate]
    assert known == []
    assert not check.is_duplicate


def test_same_body_under_different_urls_is_hash_duplicate():
    detector = DuplicateDetector(MemoryContentStore())

    async def _run():
        await detector.is_duplicate(Candidate(url="https://a.example/1", source_id="a"), _result())
        return await detector.is_duplicate(Candidate(url="https://b.example/2", source_id="b"), _result())

    check = asyncio.run(_run())

    assert check.is_duplicate
    assert check.reason == "hash-in-job"


def test_store_knowledge_is_used_across_jobs():
    store = MemoryContentStore()
    record = ScrapedRecord(
        source_id="s1",
        url="https://example.com/story",
        normalized_url="https://example.com/story",
        content_hash=content_hash(BODY),
        title="Bridge reopens",
        body=BODY,
    )

    async def _run():
        await store.upsert_scraped_content(record)
        detector = DuplicateDetector(store)
        fresh, known = await detector.filter_known(
            [
                Candidate(url="https://example.com/story?utm_medium=social", source_id="s1"),
                Candidate(url="https://example.com/other", source_id="s1"),
            ]
        )
        by_hash = await detector.is_duplicate(Candidate(url="https://mirror.example/copy", source_id="s2"), _result())
        return fresh, known, by_hash

    fresh, known, by_hash = asyncio.run(_run())

    assert [c.url for c in fresh] == ["https://example.com/other"]
    assert known[0][1].reason == "url-in-store"
    assert by_hash.is_duplicate
    assert by_hash.reason == "hash-in-store"


def test_near_duplicate_detection_is_optional():
    edited = BODY.replace("next week", "next Monday", 1)
    cfg = DedupConfig(near_duplicate=True)

    async def _run(detector):
        await detector.is_duplicate(Candidate(url="https://a.example/1", source_id="a"), _result())
        return await detector.is_duplicate(Candidate(url="https://b.example/2", source_id="b"), _result(edited))

    assert asyncio.run(_run(DuplicateDetector(MemoryContentStore(), cfg))).reason == "near-duplicate"
    assert not asyncio.run(_run(DuplicateDetector(MemoryContentStore()))).is_duplicate
