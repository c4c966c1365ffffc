"""
Configuration management using YAML files and dataclasses.

This module defines all configuration dataclasses and provides loading
from YAML files with defaults. Configuration sections:
- FetchConfig: HTTP fetching settings
- ExtractConfig: Content extraction settings
- DedupConfig: Deduplication settings
- OrchestratorConfig: Concurrency, politeness and job budget settings
- RecoveryConfig: Retry/backoff settings and strategy overrides
- CircuitConfig: Per-source circuit-breaker settings
- AlertConfig: Alert thresholds and cooldown
- LoggingConfig: Logging behavior
- StoreConfig: Location of the file-backed content store and source list
- AppConfig: Root configuration container
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

import yaml

from .errors import ConfigurationError


DEFAULT_TRACKING_PARAMS = [
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "utm_id",
    "utm_name",
    "utm_reader",
    "utm_referrer",
    "fbclid",
    "gclid",
    "dclid",
    "msclkid",
    "mc_cid",
    "mc_eid",
    "_ga",
    "_gac",
    "_gid",
    "ref",
    "ref_src",
    "ref_url",
    "cmpid",
    "ocid",
    "igshid",
]


@dataclass
class FetchConfig:
    """Configuration for HTTP content fetching.

    Attributes:
        timeout_seconds: Per-request timeout, independent of the job budget
        trust_env: Whether to respect system proxy settings
        user_agent: HTTP User-Agent header string
        max_bytes: Responses larger than this are rejected as a resource error
    """

    timeout_seconds: float = 20.0
    trust_env: bool = True
    user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    )
    max_bytes: int = 5_000_000


@dataclass
class ExtractConfig:
    """Configuration for HTML content extraction.

    Attributes:
        strategies: Ordered strategy names; earlier strategies win per field
        min_body_length: Bodies shorter than this are rejected by the quality gate
        min_title_length: Shortest acceptable title
        max_title_length: Longest acceptable title
        max_author_length: Longest acceptable byline
        trace: Record per-field provenance by default
    """

    strategies: list[str] = field(default_factory=lambda: ["json-ld", "heuristics", "meta"])
    min_body_length: int = 200
    min_title_length: int = 5
    max_title_length: int = 300
    max_author_length: int = 200
    trace: bool = False


@dataclass
class DedupConfig:
    """Configuration for duplicate detection.

    Attributes:
        check_url: Whether to deduplicate on normalized URL
        check_content: Whether to deduplicate on content hash
        tracking_params: Query parameters stripped during URL normalization
        near_duplicate: Enable fuzzy body comparison within a job
        similarity_threshold: Fuzzy match threshold (0-100) for near duplicates
    """

    check_url: bool = True
    check_content: bool = True
    tracking_params: list[str] = field(default_factory=lambda: list(DEFAULT_TRACKING_PARAMS))
    near_duplicate: bool = False
    similarity_threshold: int = 92


@dataclass
class OrchestratorConfig:
    """Configuration for job execution.

    Attributes:
        max_concurrent_sources: Sources processed at the same time
        max_concurrent_fetches: Candidate fetches in flight per source
        request_delay_seconds: Minimum gap between request starts per source
        articles_per_source: Default candidate limit per source
        job_timeout_seconds: Wall-clock budget for a whole job
    """

    max_concurrent_sources: int = 3
    max_concurrent_fetches: int = 4
    request_delay_seconds: float = 1.0
    articles_per_source: int = 10
    job_timeout_seconds: float = 900.0


@dataclass
class RecoveryConfig:
    """Configuration for retries and strategy selection.

    Attributes:
        max_retries: Retries after the first attempt before giving up
        base_delay: First backoff delay in seconds
        multiplier: Exponential growth factor between backoff delays
        max_delay: Upper bound for a single backoff delay
        jitter: Extra random delay as a fraction of the computed delay
        overrides: Global strategy overrides ("category" or "category:severity")
    """

    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1
    overrides: dict[str, str] = field(default_factory=dict)


@dataclass
class CircuitConfig:
    """Configuration for the per-source circuit breaker.

    Attributes:
        failure_threshold: High-severity failures that open the circuit
        window_seconds: Trailing window the failures must fall into
        cooldown_seconds: Time an open circuit waits before a trial attempt
    """

    failure_threshold: int = 5
    window_seconds: float = 600.0
    cooldown_seconds: float = 300.0


@dataclass
class AlertConfig:
    """Configuration for alerting.

    Attributes:
        enabled: Whether alerts are raised at all
        error_rate_threshold: Error ratio (0-1) over the window that triggers an alert
        critical_error_threshold: Critical errors in the window that trigger an alert
        window_seconds: Trailing window for rate computations
        min_events: Minimum outcomes in the window before the error rate is judged
        cooldown_seconds: Minimum gap between two alerts with the same key
    """

    enabled: bool = True
    error_rate_threshold: float = 0.5
    critical_error_threshold: int = 5
    window_seconds: float = 300.0
    min_events: int = 10
    cooldown_seconds: float = 300.0


@dataclass
class LoggingConfig:
    """Configuration for logging behavior.

    Attributes:
        level: Logging level ("DEBUG", "INFO", "WARNING", "ERROR")
        console: Whether to log to console
        file: Whether to log to file
        format: Log file format ("jsonl" or "plain")
        filename: Name of the main log file
    """

    level: str = "INFO"
    console: bool = True
    file: bool = True
    format: str = "jsonl"
    filename: str = "run.jsonl"


@dataclass
class StoreConfig:
    """Configuration for the file-backed collaborators.

    Attributes:
        directory: Root directory for stored content, jobs and circuit state
        sources_file: YAML file listing the sources
    """

    directory: str = "data"
    sources_file: str = "sources.yaml"


@dataclass
class AppConfig:
    """Root configuration container aggregating all config sections."""

    fetch: FetchConfig = field(default_factory=FetchConfig)
    extract: ExtractConfig = field(default_factory=ExtractConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


_SECTIONS = {
    "fetch": FetchConfig,
    "extract": ExtractConfig,
    "dedup": DedupConfig,
    "orchestrator": OrchestratorConfig,
    "recovery": RecoveryConfig,
    "circuit": CircuitConfig,
    "alerts": AlertConfig,
    "logging": LoggingConfig,
    "store": StoreConfig,
}


def load_config(path: str | None) -> AppConfig:
    """Load configuration from a YAML file with defaults."""
    if not path:
        return AppConfig()

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return _merge_config(AppConfig(), raw)


def _merge_config(base: AppConfig, raw: dict[str, Any]) -> AppConfig:
    """Merge raw YAML config into base AppConfig.

    Unknown sections and unknown keys inside a section are ignored.
    """
    data = asdict(base)
    for key, value in raw.items():
        if key not in data:
            continue
        if isinstance(value, dict) and isinstance(data[key], dict):
            known = _SECTIONS[key].__dataclass_fields__
            data[key].update({k: v for k, v in value.items() if k in known})
    cfg = _fromdict(data)
    validate_config(cfg)
    return cfg


def _fromdict(data: dict[str, Any]) -> AppConfig:
    """Reconstruct AppConfig from nested dictionary."""
    return AppConfig(**{name: section(**data[name]) for name, section in _SECTIONS.items()})


def validate_config(cfg: AppConfig) -> None:
    """Reject settings the orchestrator cannot run with."""
    if cfg.orchestrator.max_concurrent_sources < 1:
        raise ConfigurationError("orchestrator.max_concurrent_sources must be >= 1")
    if cfg.orchestrator.max_concurrent_fetches < 1:
        raise ConfigurationError("orchestrator.max_concurrent_fetches must be >= 1")
    if cfg.orchestrator.articles_per_source < 0:
        raise ConfigurationError("orchestrator.articles_per_source must be >= 0")
    if cfg.orchestrator.request_delay_seconds < 0:
        raise ConfigurationError("orchestrator.request_delay_seconds must be >= 0")
    if cfg.recovery.max_retries < 0:
        raise ConfigurationError("recovery.max_retries must be >= 0")
    if cfg.recovery.multiplier < 1:
        raise ConfigurationError("recovery.multiplier must be >= 1")
    if cfg.circuit.failure_threshold < 1:
        raise ConfigurationError("circuit.failure_threshold must be >= 1")
    if not cfg.extract.strategies:
        raise ConfigurationError("extract.strategies must name at least one strategy")
