"""
feed-ingest - content acquisition pipeline for news sources.

Runs ingestion jobs over configured sources: fetches candidate article URLs,
extracts normalized article fields, drops duplicates, stores new articles
and recovers from failures with per-source circuit breakers.

Main entry point is the CLI via `feed-ingest run`.

Example:
    $ feed-ingest run -c config.yaml --source example-news
"""

__all__ = ["__version__", "AppConfig", "JobOrchestrator", "extract", "load_config", "normalize_url"]
__version__ = "0.1.0"

from .config import AppConfig, load_config
from .core.dedup import normalize_url
from .fetch.extractor import extract
from .runner import JobOrchestrator
