"""
HTML content extraction with ordered fallback strategies.

Each strategy is a plain function `Page -> PartialFields`. Strategies run in
configured order and the results are merged per field: for each of title,
body, author and published_at the first strategy producing a non-empty,
length-valid value wins. Available strategies:
1. json-ld: schema.org Article/NewsArticle structured data
2. heuristics: headings, article containers, bylines and <time> tags
3. meta: OpenGraph / Twitter / standard meta tags
4. trafilatura, readability: body-only extractors (opt-in)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
import json
import logging
import re
from typing import Any, Callable

from bs4 import BeautifulSoup, Tag
from readability import Document
import trafilatura

from ..config import ExtractConfig
from ..core.dedup import content_hash
from ..core.types import ExtractionResult, FieldTrace
from .shaping import join_paragraphs, shape_element, shape_text


logger = logging.getLogger(__name__)

FIELDS = ("title", "body", "author", "published_at")

ARTICLE_TYPES = {
    "Article",
    "NewsArticle",
    "BlogPosting",
    "ReportageNewsArticle",
    "AnalysisNewsArticle",
    "OpinionNewsArticle",
}

TITLE_SELECTORS = [
    "article h1",
    "h1",
    "[itemprop='headline']",
    ".headline",
    ".article-title",
    ".entry-title",
    ".post-title",
]

# Containers holding the whole body; the first match long enough wins
CONTAINER_SELECTORS = [
    "[itemprop='articleBody']",
    "section[name='articleBody']",
    "[data-testid='article-body']",
    "article [class*='body']:not([class*='meta'])",
    "article [class*='content']:not([class*='header'])",
    "main [class*='story-body']",
    ".article-body",
    ".article-text",
    ".story-content",
    ".content__article-body",
]

# Selectors matching individual text blocks that together form the body
BLOCK_SELECTORS = [
    "[data-component='text-block']",
    "[data-testid*='paragraph']",
]

GENERIC_SELECTORS = [
    "article",
    ".article-content",
    ".story-body",
    ".entry-content",
    ".post-content",
    "main",
]

AUTHOR_SELECTORS = [
    "[rel='author']",
    "[itemprop='author'] [itemprop='name']",
    "[itemprop='author']",
    ".byline__name",
    ".author-name",
    ".author",
    ".byline",
    ".by-author",
    ".article-author",
]

DATE_SELECTORS = [
    ("time[datetime]", "datetime"),
    ("[itemprop='datePublished']", "content"),
    ("[itemprop='datePublished']", "datetime"),
    ("time", None),
    (".published", None),
    (".date", None),
    (".timestamp", None),
]

META_TITLE = [("property", "og:title"), ("name", "twitter:title")]
META_BODY = [("property", "og:description"), ("name", "description"), ("name", "twitter:description")]
META_AUTHOR = [("name", "author"), ("property", "article:author"), ("name", "byl")]
META_DATE = [
    ("property", "article:published_time"),
    ("name", "pubdate"),
    ("name", "publish-date"),
    ("itemprop", "datePublished"),
    ("name", "date"),
    ("name", "DC.date.issued"),
]

_WS_RE = re.compile(r"\s+")
_BYLINE_PREFIX_RE = re.compile(r"^(by|par|von|por|di|door)\s+", re.IGNORECASE)


@dataclass
class Page:
    """A parsed page handed to every strategy. Strategies must not mutate it."""

    html: str
    url: str
    soup: BeautifulSoup


@dataclass
class FieldValue:
    """A value proposed by a strategy, plus where it was found."""

    value: str
    selector: str


PartialFields = dict[str, FieldValue]
Strategy = Callable[[Page, ExtractConfig], PartialFields]


def extract(
    html: str,
    url: str,
    trace: bool = False,
    cfg: ExtractConfig | None = None,
) -> ExtractionResult:
    """Extract normalized article fields from raw HTML.

    Never raises: unparseable markup or failing strategies degrade to empty
    fields. Tracing only copies provenance that is always computed, so the
    extracted values are identical with tracing on or off.

    Args:
        html: The raw HTML document
        url: The page URL (used for logging and strategy context)
        trace: Whether to attach per-field provenance to the result
        cfg: Extraction settings; defaults to ExtractConfig()

    Returns:
        ExtractionResult; empty when the body fails the quality gate
    """
    cfg = cfg or ExtractConfig()
    try:
        page = Page(html=html or "", url=url, soup=BeautifulSoup(html or "", "html.parser"))
    except Exception as exc:  # noqa: BLE001
        logger.debug("Unparseable HTML for %s: %s", url, exc)
        return ExtractionResult(trace=[] if trace else None)

    chosen: dict[str, FieldTrace] = {}
    for name in cfg.strategies:
        missing = [f for f in FIELDS if f not in chosen]
        if not missing:
            break
        strategy = STRATEGIES.get(name)
        if strategy is None:
            logger.warning("Unknown extraction strategy %r ignored", name)
            continue
        try:
            partial = strategy(page, cfg)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Strategy %s failed for %s: %s", name, url, exc)
            continue
        for field_name in missing:
            proposed = partial.get(field_name)
            if proposed is None:
                continue
            value = _validate(field_name, proposed.value, cfg)
            if value:
                chosen[field_name] = FieldTrace(field_name, name, proposed.selector, value)

    traces = [chosen[f] for f in FIELDS if f in chosen] if trace else None
    body_trace = chosen.get("body")
    if body_trace is None or len(body_trace.value) < cfg.min_body_length:
        return ExtractionResult(trace=traces)

    body = body_trace.value
    title = chosen["title"].value if "title" in chosen else ""
    author = chosen["author"].value if "author" in chosen else None
    published_at = chosen["published_at"].value if "published_at" in chosen else None
    paragraphs = body.count("\n\n") + 1
    return ExtractionResult(
        title=title,
        body=body,
        author=author,
        published_at=published_at,
        content_hash=content_hash(body),
        quality_score=quality_score(body, paragraphs, author, published_at),
        paragraphs=paragraphs,
        trace=traces,
    )


def quality_score(body: str, paragraphs: int, author: str | None, published_at: str | None) -> int:
    """Score extraction output from 0 to 100.

    Up to 50 points for body length (saturating at 3000 characters), up to
    30 for paragraph structure (saturating at 6 paragraphs), 10 each for an
    author and a publication date.
    """
    if not body:
        return 0
    length_points = min(len(body) / 3000, 1.0) * 50
    paragraph_points = min(paragraphs, 6) / 6 * 30
    score = length_points + paragraph_points + (10 if author else 0) + (10 if published_at else 0)
    return int(round(min(score, 100.0)))


def _validate(field_name: str, value: str | None, cfg: ExtractConfig) -> str | None:
    if not value:
        return None
    if field_name == "body":
        value = value.strip()
        return value if len(value) >= cfg.min_body_length else None
    text = _WS_RE.sub(" ", value).strip()
    if field_name == "title":
        if cfg.min_title_length <= len(text) <= cfg.max_title_length:
            return text
        return None
    if field_name == "author":
        text = _BYLINE_PREFIX_RE.sub("", text).strip()
        if text.lower().startswith(("http://", "https://")):
            return None
        return text if 0 < len(text) <= cfg.max_author_length else None
    if field_name == "published_at":
        return normalize_date(text)
    return text or None


def normalize_date(value: str) -> str | None:
    """Normalize a date string to ISO 8601 when it can be parsed.

    Unparseable but short values are kept verbatim; overly long ones
    (usually a mis-selected text block) are dropped.
    """
    text = value.strip()
    if not text:
        return None
    iso = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        return datetime.fromisoformat(iso).isoformat()
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(text).isoformat()
    except (TypeError, ValueError, IndexError):
        pass
    return text if len(text) <= 64 else None


# ---------------------------------------------------------------------------
# Strategy 1: JSON-LD structured data
# ---------------------------------------------------------------------------


def _strategy_json_ld(page: Page, cfg: ExtractConfig) -> PartialFields:
    fields: PartialFields = {}
    scripts = page.soup.find_all("script", attrs={"type": _is_ld_json})
    for index, script in enumerate(scripts):
        raw = script.string or script.get_text()
        try:
            data = json.loads(raw.strip())
        except (json.JSONDecodeError, AttributeError, ValueError) as exc:
            logger.debug("Failed to parse JSON-LD in %s: %s", page.url, exc)
            continue
        for item in _flatten_jsonld(data):
            if not _is_article(item):
                continue
            base = f'script[type="application/ld+json"][{index}]'
            _propose(cfg, fields, "title", item.get("headline") or item.get("name"), f"{base}.headline")
            body = item.get("articleBody") or item.get("text")
            if isinstance(body, str):
                _propose(cfg, fields, "body", join_paragraphs(shape_text(body)), f"{base}.articleBody")
            _propose(cfg, fields, "author", _author_name(item.get("author")), f"{base}.author")
            _propose(
                cfg,
                fields,
                "published_at",
                item.get("datePublished") or item.get("dateCreated"),
                f"{base}.datePublished",
            )
    return fields


def _is_ld_json(value: str | None) -> bool:
    return bool(value) and value.strip().lower() == "application/ld+json"


def _flatten_jsonld(data: Any) -> list[dict[str, Any]]:
    """Flatten JSON-LD structures (@graph containers, arrays) to a list of items."""
    items: list[dict[str, Any]] = []
    if isinstance(data, list):
        for element in data:
            items.extend(_flatten_jsonld(element))
    elif isinstance(data, dict):
        graph = data.get("@graph")
        if isinstance(graph, list):
            items.extend(_flatten_jsonld(graph))
        else:
            items.append(data)
            main_entity = data.get("mainEntity")
            if isinstance(main_entity, dict):
                items.append(main_entity)
    return items


def _is_article(item: dict[str, Any]) -> bool:
    item_type = item.get("@type", "")
    if isinstance(item_type, str):
        return item_type in ARTICLE_TYPES
    if isinstance(item_type, list):
        return any(str(t) in ARTICLE_TYPES for t in item_type)
    return False


def _author_name(author: Any) -> str | None:
    if isinstance(author, str):
        return author
    if isinstance(author, dict):
        name = author.get("name")
        return name if isinstance(name, str) else None
    if isinstance(author, list):
        names = [n for n in (_author_name(a) for a in author) if n]
        return ", ".join(names) if names else None
    return None


# ---------------------------------------------------------------------------
# Strategy 2: selector heuristics
# ---------------------------------------------------------------------------


def _strategy_heuristics(page: Page, cfg: ExtractConfig) -> PartialFields:
    soup = page.soup
    fields: PartialFields = {}

    for selector in TITLE_SELECTORS:
        element = soup.select_one(selector)
        if element is not None and _propose(cfg, fields, "title", element.get_text(" ", strip=True), selector):
            break

    body = _heuristic_body(soup, cfg)
    if body is not None:
        fields["body"] = body

    for selector in AUTHOR_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        if element.name == "meta":
            value = element.get("content")
        else:
            value = element.get_text(" ", strip=True)
        if _propose(cfg, fields, "author", value, selector):
            break

    for selector, attribute in DATE_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        value = element.get(attribute) if attribute else element.get_text(" ", strip=True)
        if _propose(cfg, fields, "published_at", value, f"{selector}[{attribute}]" if attribute else selector):
            break

    return fields


def _heuristic_body(soup: BeautifulSoup, cfg: ExtractConfig) -> FieldValue | None:
    for selector in CONTAINER_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        text = join_paragraphs(shape_element(element))
        if len(text) >= cfg.min_body_length:
            return FieldValue(text, selector)

    for selector in BLOCK_SELECTORS:
        paragraphs: list[str] = []
        for element in soup.select(selector):
            paragraphs.extend(shape_element(element))
        text = join_paragraphs(paragraphs)
        if len(text) >= cfg.min_body_length:
            return FieldValue(text, selector)

    for selector in GENERIC_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        text = join_paragraphs(shape_element(element))
        if len(text) >= cfg.min_body_length:
            return FieldValue(text, selector)
    return None


# ---------------------------------------------------------------------------
# Strategy 3: meta tags
# ---------------------------------------------------------------------------


def _strategy_meta(page: Page, cfg: ExtractConfig) -> PartialFields:
    soup = page.soup
    fields: PartialFields = {}

    for attr, key in META_TITLE:
        if _propose(cfg, fields, "title", _meta_content(soup, attr, key), _meta_selector(attr, key)):
            break
    else:
        if soup.title is not None:
            _propose(cfg, fields, "title", soup.title.get_text(" ", strip=True), "title")

    for attr, key in META_BODY:
        content = _meta_content(soup, attr, key)
        if content and _propose(cfg, fields, "body", join_paragraphs(shape_text(content)), _meta_selector(attr, key)):
            break

    for attr, key in META_AUTHOR:
        if _propose(cfg, fields, "author", _meta_content(soup, attr, key), _meta_selector(attr, key)):
            break

    for attr, key in META_DATE:
        if _propose(cfg, fields, "published_at", _meta_content(soup, attr, key), _meta_selector(attr, key)):
            break

    return fields


def _meta_content(soup: BeautifulSoup, attr: str, key: str) -> str | None:
    element = soup.find("meta", attrs={attr: key})
    if not isinstance(element, Tag):
        return None
    content = element.get("content")
    return content if isinstance(content, str) else None


def _meta_selector(attr: str, key: str) -> str:
    return f'meta[{attr}="{key}"][content]'


# ---------------------------------------------------------------------------
# Body-only extractors
# ---------------------------------------------------------------------------


def _strategy_trafilatura(page: Page, cfg: ExtractConfig) -> PartialFields:
    text = trafilatura.extract(page.html, include_comments=False, include_tables=False)
    fields: PartialFields = {}
    if text:
        _propose(cfg, fields, "body", join_paragraphs(shape_text(text)), "trafilatura.extract")
    return fields


def _strategy_readability(page: Page, cfg: ExtractConfig) -> PartialFields:
    summary_html = Document(page.html).summary()
    fields: PartialFields = {}
    paragraphs = shape_element(BeautifulSoup(summary_html, "html.parser"))
    _propose(cfg, fields, "body", join_paragraphs(paragraphs), "readability.summary")
    return fields


def _propose(cfg: ExtractConfig, fields: PartialFields, name: str, value: Any, selector: str) -> bool:
    """Record a proposed value unless the field already has one.

    Values failing the length rules are not recorded, so a strategy keeps
    looking at its next selector instead of proposing an unusable value.

    Returns:
        True if the value was recorded
    """
    if name in fields or not isinstance(value, str):
        return False
    valid = _validate(name, value, cfg)
    if not valid:
        return False
    fields[name] = FieldValue(valid, selector)
    return True


STRATEGIES: dict[str, Strategy] = {
    "json-ld": _strategy_json_ld,
    "heuristics": _strategy_heuristics,
    "meta": _strategy_meta,
    "trafilatura": _strategy_trafilatura,
    "readability": _strategy_readability,
}
