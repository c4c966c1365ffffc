"""
Duplicate detection using normalized URLs and content hashes.

An article counts as a duplicate when either:
1. Its normalized URL was already seen (in this job or by the content store)
2. The SHA-256 of its normalized body was already seen

Optionally, syndicated copies with minor edits are caught by a fuzzy body
comparison within the job (rapidfuzz), controlled by DedupConfig.
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import logging
import re
from typing import TYPE_CHECKING, Iterable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from rapidfuzz import fuzz

from ..config import DEFAULT_TRACKING_PARAMS, DedupConfig
from .types import Candidate, ExtractionResult

if TYPE_CHECKING:
    from ..store.base import ContentStore


logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"http": "80", "https": "443"}
_WS_RE = re.compile(r"\s+")
_QUOTES = str.maketrans({
    "‘": "'",
    "’": "'",
    "‚": "'",
    "‛": "'",
    "“": '"',
    "”": '"',
    "„": '"',
    "«": '"',
    "»": '"',
    "–": "-",
    "—": "-",
    "−": "-",
    " ": " ",
})
# Only the leading part of long bodies takes part in fuzzy comparison
_FINGERPRINT_CHARS = 2000


def normalize_url(url: str, tracking_params: Iterable[str] | None = None) -> str:
    """Normalize a URL so trivially different links compare equal.

    - Lowercase scheme and host, drop default ports
    - Strip tracking query parameters and the fragment
    - Sort the remaining query parameters
    - Remove the trailing slash (except for the root path)

    Args:
        url: The URL to normalize
        tracking_params: Parameter names to strip; defaults to the common trackers

    Returns:
        The normalized URL, or the stripped input if it cannot be parsed

    Example:
        >>> normalize_url("HTTPS://Example.com/a/?utm_source=x&id=2#top")
        'https://example.com/a?id=2'
    """
    if not url:
        return ""
    strip = {p.lower() for p in (tracking_params if tracking_params is not None else DEFAULT_TRACKING_PARAMS)}
    try:
        parts = urlsplit(url.strip())
        scheme = (parts.scheme or "https").lower()
        host = (parts.hostname or "").lower()
        port = parts.port
    except ValueError:
        return url.strip()

    netloc = host
    if parts.username:
        netloc = f"{parts.username}@{netloc}"
    if port is not None and _DEFAULT_PORTS.get(scheme) != str(port):
        netloc = f"{netloc}:{port}"

    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    kept = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() not in strip and not key.lower().startswith("utm_")
    ]
    kept.sort()
    query = urlencode(kept, doseq=True)
    return urlunsplit((scheme, netloc, path, query, ""))


def normalize_body(text: str) -> str:
    """Fold typography and whitespace so cosmetic edits hash identically."""
    folded = text.translate(_QUOTES).lower()
    return _WS_RE.sub(" ", folded).strip()


def content_hash(body: str) -> str:
    """Return the SHA-256 hex digest of the normalized body."""
    return hashlib.sha256(normalize_body(body).encode("utf-8")).hexdigest()


@dataclass
class DuplicateCheck:
    """Result of a duplicate check.

    Attributes:
        is_duplicate: Whether the item already exists
        reason: Which axis matched ("url-in-job", "url-in-store",
                "hash-in-job", "hash-in-store", "near-duplicate"), or None
        normalized_url: The normalized candidate URL
        content_hash: Hash of the normalized body (empty when not computed)
    """

    is_duplicate: bool
    reason: str | None
    normalized_url: str
    content_hash: str = ""


class DuplicateDetector:
    """Job-scoped duplicate detector.

    One instance lives for the duration of a single job; its in-memory
    sets are freed with it. Cross-job truth is delegated to the content
    store. URL and hash claims happen before any await, so two tasks of the
    same job cannot both pass the intra-job check for the same key.
    """

    def __init__(self, store: "ContentStore", cfg: DedupConfig | None = None):
        self._store = store
        self._cfg = cfg or DedupConfig()
        self._url_owners: dict[str, Candidate] = {}
        self._seen_hashes: set[str] = set()
        self._fingerprints: list[str] = []

    def normalize(self, url: str) -> str:
        return normalize_url(url, self._cfg.tracking_params)

    async def filter_known(self, candidates: list[Candidate]) -> tuple[list[Candidate], list[tuple[Candidate, DuplicateCheck]]]:
        """Split candidates into fresh ones and URL duplicates before fetching.

        Uses a single batched existence query against the content store.

        Returns:
            Tuple of (fresh candidates, list of (duplicate candidate, check))
        """
        if not self._cfg.check_url:
            return list(candidates), []

        normalized = {c.url: self.normalize(c.url) for c in candidates}
        known = await self._store.filter_known_urls(set(normalized.values()))

        fresh: list[Candidate] = []
        dupes: list[tuple[Candidate, DuplicateCheck]] = []
        for candidate in candidates:
            url = normalized[candidate.url]
            if url in known:
                dupes.append((candidate, DuplicateCheck(True, "url-in-store", url)))
            elif url in self._url_owners:
                dupes.append((candidate, DuplicateCheck(True, "url-in-job", url)))
            else:
                self._url_owners[url] = candidate
                fresh.append(candidate)
        return fresh, dupes

    async def is_duplicate(self, candidate: Candidate, result: ExtractionResult) -> DuplicateCheck:
        """Decide whether an extracted candidate already exists.

        Args:
            candidate: The candidate the result was extracted from
            result: Non-empty extraction result

        Returns:
            DuplicateCheck describing the first matching axis, if any
        """
        url = self.normalize(candidate.url)
        digest = result.content_hash or content_hash(result.body)

        if self._cfg.check_url:
            # filter_known may already have claimed this URL for the same candidate
            owner = self._url_owners.setdefault(url, candidate)
            if owner is not candidate:
                return DuplicateCheck(True, "url-in-job", url, digest)
        if self._cfg.check_content:
            if digest in self._seen_hashes:
                return DuplicateCheck(True, "hash-in-job", url, digest)
            self._seen_hashes.add(digest)

        if self._cfg.near_duplicate and self._is_near_duplicate(result.body):
            return DuplicateCheck(True, "near-duplicate", url, digest)

        if self._cfg.check_url and await self._store.exists_by_normalized_url(url):
            return DuplicateCheck(True, "url-in-store", url, digest)
        if self._cfg.check_content and await self._store.exists_by_hash(digest):
            return DuplicateCheck(True, "hash-in-store", url, digest)

        return DuplicateCheck(False, None, url, digest)

    def _is_near_duplicate(self, body: str) -> bool:
        fingerprint = normalize_body(body)[:_FINGERPRINT_CHARS]
        for existing in self._fingerprints:
            if fuzz.ratio(fingerprint, existing) >= self._cfg.similarity_threshold:
                logger.debug("Near duplicate body detected")
                return True
        self._fingerprints.append(fingerprint)
        return False
