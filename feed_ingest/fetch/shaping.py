"""
Body text shaping.

Turns an HTML container (or a text blob from structured data) into
paragraph-preserving plain text. Boilerplate is removed by structure only,
never by keyword lists, so the same rules apply to every language:
- non-content containers (nav, aside, footer, figure, script, ...)
- hidden elements (hidden attribute, aria-hidden, display:none)
- promotional blocks: all-uppercase text whose only children are links
"""

from __future__ import annotations

import copy
import re

from bs4 import BeautifulSoup, Comment, NavigableString, Tag


PARAGRAPH_SEPARATOR = "\n\n"

BLOCK_TAGS = frozenset({"p", "h2", "h3", "h4", "h5", "h6", "li", "blockquote", "pre", "dd"})

NON_CONTENT_TAGS = [
    "script",
    "style",
    "noscript",
    "template",
    "nav",
    "aside",
    "footer",
    "header",
    "form",
    "figure",
    "figcaption",
    "iframe",
    "button",
    "svg",
    "select",
]

_PROMO_CANDIDATES = ["p", "div", "li", "section", "span", "ul", "h2", "h3", "h4"]
_WS_RE = re.compile(r"[ \t\r\f\v\u00a0]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n")
_TAG_RE = re.compile(r"<\s*(p|div|br|span|a|strong|em|b|i|ul|ol|li|h[1-6])\b", re.IGNORECASE)
_HIDDEN_STYLE_RE = re.compile(r"display\s*:\s*none|visibility\s*:\s*hidden", re.IGNORECASE)


def shape_element(element: Tag) -> list[str]:
    """Extract paragraphs from an HTML container without mutating it.

    Args:
        element: Container tag (or a whole parsed document)

    Returns:
        List of cleaned paragraph strings, in document order
    """
    fragment = copy.copy(element)
    strip_boilerplate(fragment)
    return _collect_paragraphs(fragment)


def shape_text(text: str) -> list[str]:
    """Split a text blob into paragraphs.

    Blobs containing markup are parsed as HTML. Plain text keeps its
    blank-line paragraph breaks; text with single line breaks only is split
    on every line.
    """
    if not text or not text.strip():
        return []
    if _TAG_RE.search(text):
        return shape_element(BeautifulSoup(text, "html.parser"))

    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    if _BLANK_LINES_RE.search(normalized):
        blocks = _BLANK_LINES_RE.split(normalized)
    else:
        blocks = normalized.split("\n")
    return _dedupe_adjacent(_clean(block.replace("\n", " ")) for block in blocks)


def join_paragraphs(paragraphs: list[str]) -> str:
    return PARAGRAPH_SEPARATOR.join(paragraphs)


def strip_boilerplate(root: Tag) -> None:
    """Remove non-content, hidden and promotional elements in place."""
    for tag in root.find_all(NON_CONTENT_TAGS):
        if not tag.decomposed:
            tag.decompose()
    for comment in root.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    for tag in root.find_all(True):
        if tag.decomposed:
            continue
        if _is_hidden(tag):
            tag.decompose()
    for tag in root.find_all(_PROMO_CANDIDATES):
        if tag.decomposed:
            continue
        if is_promotional(tag):
            tag.decompose()


def is_promotional(tag: Tag) -> bool:
    """True for blocks whose text is all upper-case and whose only children are links.

    This is the typical shape of "READ MORE: ..." and related-article
    teasers embedded in article bodies.
    """
    children = [
        child
        for child in tag.children
        if not (isinstance(child, NavigableString) and not child.strip())
    ]
    if not children:
        return False
    if not all(isinstance(child, Tag) and child.name == "a" for child in children):
        return False
    letters = [ch for ch in tag.get_text() if ch.isalpha()]
    return any(ch.isupper() for ch in letters) and not any(ch.islower() for ch in letters)


def _is_hidden(tag: Tag) -> bool:
    if tag.attrs is None:
        return False
    if tag.has_attr("hidden"):
        return True
    if str(tag.get("aria-hidden", "")).lower() == "true":
        return True
    style = tag.get("style")
    return bool(style and _HIDDEN_STYLE_RE.search(str(style)))


def _collect_paragraphs(root: Tag) -> list[str]:
    blocks = [tag for tag in root.find_all(list(BLOCK_TAGS)) if not _has_block_ancestor(tag, root)]
    if blocks:
        return _dedupe_adjacent(_clean(tag.get_text()) for tag in blocks)

    text = root.get_text("\n")
    return _dedupe_adjacent(_clean(line) for line in text.split("\n"))


def _has_block_ancestor(tag: Tag, root: Tag) -> bool:
    for parent in tag.parents:
        if parent is root:
            return False
        if parent.name in BLOCK_TAGS:
            return True
    return False


def _clean(text: str) -> str:
    return _WS_RE.sub(" ", text.replace("\n", " ")).strip()


def _dedupe_adjacent(paragraphs) -> list[str]:
    result: list[str] = []
    for paragraph in paragraphs:
        if not paragraph:
            continue
        if result and result[-1] == paragraph:
            continue
        result.append(paragraph)
    return result
