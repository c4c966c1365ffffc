"""
Core domain models and duplicate detection.

This package contains data types and logic that are independent of any
specific pipeline stage.
"""

from .dedup import DuplicateCheck, DuplicateDetector, content_hash, normalize_body, normalize_url
from .types import (
    Candidate,
    ErrorEvent,
    ExtractionResult,
    FieldTrace,
    Job,
    JobStatus,
    JobStatusReport,
    SourceCircuitState,
    SourceConfig,
    SourceDefinition,
    SourceReport,
)

__all__ = [
    "Candidate",
    "DuplicateCheck",
    "DuplicateDetector",
    "ErrorEvent",
    "ExtractionResult",
    "FieldTrace",
    "Job",
    "JobStatus",
    "JobStatusReport",
    "SourceCircuitState",
    "SourceConfig",
    "SourceDefinition",
    "SourceReport",
    "content_hash",
    "normalize_body",
    "normalize_url",
]
