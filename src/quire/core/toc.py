"""Heading outline extraction and slug generation.

Headings are read either from raw markdown or from rendered HTML. For
markdown the ids are generated with :func:`slugify`, which is also the
slug function handed to the renderer's ``toc`` extension, so both sources
agree on ids for headings with distinct text. Duplicate headings are not
disambiguated here; the renderer suffixes repeated ids (``_1``, ``_2``),
the markdown projection does not.
"""

import html
import re
import unicodedata
from typing import Literal

from quire.core.models import TocItem

DEFAULT_MAX_LEVEL = 3

SourceKind = Literal["markdown", "html"]

NON_ALNUM_PATTERN = re.compile(r"[^a-z0-9]+")

MARKDOWN_HEADING_PATTERN = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t]*$")
FENCE_PATTERN = re.compile(r"^\s{0,3}(`{3,}|~{3,})")
CLOSING_HASHES_PATTERN = re.compile(r"\s+#+\s*$")

# Inline markup removed from heading text; only the visible text remains
INLINE_MARKUP = [
    (re.compile(r"!\[([^\]]*)\]\([^)]*\)"), r"\1"),  # images
    (re.compile(r"\[([^\]]+)\]\([^)]*\)"), r"\1"),  # links
    (re.compile(r"`+([^`]+)`+"), r"\1"),  # inline code
    (re.compile(r"\*\*(.+?)\*\*"), r"\1"),
    (re.compile(r"(?<!\w)__(.+?)__(?!\w)"), r"\1"),
    (re.compile(r"\*(.+?)\*"), r"\1"),
    (re.compile(r"(?<!\w)_(.+?)_(?!\w)"), r"\1"),
    (re.compile(r"~~(.+?)~~"), r"\1"),
    (re.compile(r"<[^>]+>"), ""),  # inline html
]

HTML_HEADING_PATTERN = re.compile(
    r"<h([1-6])\b([^>]*)>(.*?)</h\1\s*>", re.IGNORECASE | re.DOTALL
)
HTML_ID_PATTERN = re.compile(r"\bid\s*=\s*([\"'])(.*?)\1", re.IGNORECASE | re.DOTALL)
HTML_TAG_PATTERN = re.compile(r"<[^>]+>")
WHITESPACE_PATTERN = re.compile(r"\s+")


def slugify(text: str, separator: str = "-") -> str:
    """Turn heading or title text into a URL-safe id.

    Accented characters are folded to ASCII, everything is lowercased and
    each run of non-alphanumeric characters becomes a single separator.
    Leading and trailing separators are trimmed.

    Example:
        >>> slugify("Hello, World! - Part 2")
        'hello-world-part-2'
    """
    value = unicodedata.normalize("NFKD", text)
    value = value.encode("ascii", "ignore").decode("ascii").lower()
    value = NON_ALNUM_PATTERN.sub(separator, value)
    return value.strip(separator)


def strip_inline_markup(text: str) -> str:
    """Reduce a markdown heading line to its visible text."""
    text = CLOSING_HASHES_PATTERN.sub("", text.strip())
    for pattern, replacement in INLINE_MARKUP:
        text = pattern.sub(replacement, text)
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def _markdown_headings(markdown: str, max_level: int) -> list[TocItem]:
    headings: list[TocItem] = []
    fence: str | None = None

    for line in markdown.splitlines():
        fence_match = FENCE_PATTERN.match(line)
        if fence_match:
            marker = fence_match.group(1)
            if fence is None:
                fence = marker
            elif marker[0] == fence[0] and len(marker) >= len(fence):
                fence = None
            continue
        if fence is not None:
            continue

        match = MARKDOWN_HEADING_PATTERN.match(line)
        if not match:
            continue
        level = len(match.group(1))
        if level > max_level:
            continue
        text = strip_inline_markup(match.group(2))
        if not text:
            continue
        headings.append(TocItem(id=slugify(text), text=text, level=level))

    return headings


def _html_headings(source: str, max_level: int) -> list[TocItem]:
    headings: list[TocItem] = []
    for match in HTML_HEADING_PATTERN.finditer(source):
        level = int(match.group(1))
        if level > max_level:
            continue
        id_match = HTML_ID_PATTERN.search(match.group(2))
        if not id_match:
            continue
        text = html.unescape(HTML_TAG_PATTERN.sub("", match.group(3)))
        text = WHITESPACE_PATTERN.sub(" ", text).strip()
        headings.append(TocItem(id=id_match.group(2), text=text, level=level))
    return headings


def extract_headings(
    source: str,
    max_level: int = DEFAULT_MAX_LEVEL,
    source_kind: SourceKind = "markdown",
) -> list[TocItem]:
    """Extract the heading outline of a document in document order.

    Args:
        source: Markdown text or rendered HTML.
        max_level: Deepest heading level to include (1-6). Deeper
                   headings are dropped from the result.
        source_kind: ``"markdown"`` to scan ``#`` markers outside fenced
                     code, ``"html"`` to read ``<hN id="...">`` elements.

    Returns:
        List of TOC items. Ids are not deduplicated.
    """
    if not source or max_level < 1:
        return []
    if source_kind == "markdown":
        return _markdown_headings(source, max_level)
    if source_kind == "html":
        return _html_headings(source, max_level)
    raise ValueError(f"Unknown source kind: {source_kind!r}")


def extract_headings_from_html(
    source: str, max_level: int = DEFAULT_MAX_LEVEL
) -> list[TocItem]:
    """Shortcut for :func:`extract_headings` on pre-rendered HTML."""
    return extract_headings(source, max_level, source_kind="html")
