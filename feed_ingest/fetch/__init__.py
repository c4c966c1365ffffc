"""
Page fetching and article extraction.
"""

from .extractor import STRATEGIES, extract, normalize_date, quality_score
from .fetcher import Fetcher, FetchResult, HttpFetcher
from .shaping import shape_element, shape_text

__all__ = [
    "STRATEGIES",
    "FetchResult",
    "Fetcher",
    "HttpFetcher",
    "extract",
    "normalize_date",
    "quality_score",
    "shape_element",
    "shape_text",
]
