"""
File-backed collaborators.

Layout under the store directory:
    articles.jsonl          one stored article per line
    jobs/{job_id}.json      latest snapshot of each job
    events/{job_id}.jsonl   structured events per job
    circuits.json           circuit state per source id
    source_outcomes.jsonl   history of per-source outcomes

Sources are listed in a YAML file:

    sources:
      - id: example-news
        name: Example News
        feed_url: https://example.com/feed
        config:
          request_delay_seconds: 2
          candidate_urls:
            - https://example.com/a
"""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
from typing import Any, Iterable

import yaml

from ..core.types import Job, SourceCircuitState, SourceConfig, SourceDefinition
from ..errors import ConfigurationError
from .base import (
    DUPLICATE,
    INSERTED,
    ContentStore,
    EventSink,
    ScrapedRecord,
    SourceOutcome,
    SourceRegistry,
    merge_circuit,
)


logger = logging.getLogger(__name__)


def _append_jsonl(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = dict(payload)
    payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=True, default=str))
        handle.write("\n")


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8")
    tmp.replace(path)


class FileContentStore(ContentStore):
    """JSONL article store with in-memory URL and hash indexes.

    Indexes are rebuilt from articles.jsonl on first use. Writes happen
    without awaiting, so insert-if-absent stays atomic within one process.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.articles_path = self.directory / "articles.jsonl"
        self.jobs_dir = self.directory / "jobs"
        self._urls: set[str] | None = None
        self._hashes: set[str] = set()

    def _ensure_index(self) -> set[str]:
        if self._urls is not None:
            return self._urls
        self._urls = set()
        if self.articles_path.exists():
            with self.articles_path.open("r", encoding="utf-8") as handle:
                for line_no, line in enumerate(handle, start=1):
                    if not line.strip():
                        continue
                    try:
                        raw = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning("Skipping corrupt line %d in %s", line_no, self.articles_path)
                        continue
                    self._urls.add(raw.get("normalized_url", ""))
                    self._hashes.add(raw.get("content_hash", ""))
        return self._urls

    async def upsert_scraped_content(self, record: ScrapedRecord) -> str:
        urls = self._ensure_index()
        if record.normalized_url in urls or record.content_hash in self._hashes:
            return DUPLICATE
        # Index only what reached disk
        _append_jsonl(self.articles_path, record.to_dict())
        urls.add(record.normalized_url)
        self._hashes.add(record.content_hash)
        return INSERTED

    async def exists_by_hash(self, content_hash: str) -> bool:
        self._ensure_index()
        return content_hash in self._hashes

    async def exists_by_normalized_url(self, normalized_url: str) -> bool:
        return normalized_url in self._ensure_index()

    async def filter_known_urls(self, normalized_urls: Iterable[str]) -> set[str]:
        urls = self._ensure_index()
        return {url for url in normalized_urls if url in urls}

    async def save_job(self, job: Job) -> None:
        _write_json(self.jobs_dir / f"{job.id}.json", job.to_dict())

    async def get_job(self, job_id: str) -> Job | None:
        path = self.jobs_dir / f"{job_id}.json"
        if not path.exists():
            return None
        return Job.from_dict(json.loads(path.read_text(encoding="utf-8")))


class FileEventSink(EventSink):
    def __init__(self, directory: str | Path):
        self.events_dir = Path(directory) / "events"

    def append_structured_event(self, job_id: str, level: str, message: str, data: dict[str, Any]) -> None:
        _append_jsonl(
            self.events_dir / f"{job_id}.jsonl",
            {"job_id": job_id, "level": level, "message": message, **data},
        )


class YamlSourceRegistry(SourceRegistry):
    """Sources from a YAML file; circuit state persisted as JSON beside the store."""

    def __init__(self, sources_file: str | Path, directory: str | Path):
        self.sources_file = Path(sources_file)
        self.directory = Path(directory)
        self.circuits_path = self.directory / "circuits.json"
        self.outcomes_path = self.directory / "source_outcomes.jsonl"

    def _load_sources(self) -> dict[str, SourceDefinition]:
        if not self.sources_file.exists():
            raise ConfigurationError(f"Sources file not found: {self.sources_file}")
        try:
            raw = yaml.safe_load(self.sources_file.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid sources file {self.sources_file}: {exc}") from exc

        entries = raw.get("sources", []) if isinstance(raw, dict) else raw
        if not isinstance(entries, list):
            raise ConfigurationError(f"{self.sources_file}: 'sources' must be a list")

        circuits = self._load_circuits()
        sources: dict[str, SourceDefinition] = {}
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("id"):
                raise ConfigurationError(f"{self.sources_file}: every source needs an 'id'")
            source_id = str(entry["id"])
            sources[source_id] = SourceDefinition(
                id=source_id,
                feed_url=entry.get("feed_url"),
                name=entry.get("name"),
                config=SourceConfig.from_dict(entry.get("config")),
                circuit=circuits.get(source_id),
            )
        return sources

    def _load_circuits(self) -> dict[str, SourceCircuitState]:
        if not self.circuits_path.exists():
            return {}
        raw = json.loads(self.circuits_path.read_text(encoding="utf-8"))
        return {source_id: SourceCircuitState.from_dict(value) for source_id, value in raw.items()}

    async def list_eligible_sources(self, source_ids: Iterable[str] | None = None) -> list[SourceDefinition]:
        sources = self._load_sources()
        ids = list(source_ids) if source_ids is not None else list(sources)
        unknown = [source_id for source_id in ids if source_id not in sources]
        if unknown:
            raise ConfigurationError(f"Unknown source(s): {', '.join(unknown)}")
        return [sources[source_id] for source_id in ids]

    async def report_source_outcome(self, source_id: str, outcome: SourceOutcome) -> None:
        circuits = self._load_circuits()
        merged = merge_circuit(circuits.get(source_id), outcome)
        circuits[source_id] = merged
        _write_json(self.circuits_path, {key: value.to_dict() for key, value in circuits.items()})
        _append_jsonl(self.outcomes_path, {**outcome.report.to_dict(), "circuit": merged.state.value})

    async def list_circuits(self) -> list[SourceCircuitState]:
        circuits = self._load_circuits()
        return [circuits.get(source_id) or SourceCircuitState(source_id=source_id) for source_id in self._load_sources()]
