"""Markdown rendering for article and note bodies."""

import html
import logging
import math
import re

from markdown import Markdown
from markdown.extensions import Extension
from markdown.inlinepatterns import SimpleTagInlineProcessor

from quire.core.models import RenderResult, TocItem
from quire.core.toc import DEFAULT_MAX_LEVEL, extract_headings_from_html, slugify

logger = logging.getLogger(__name__)

DEFAULT_WORDS_PER_MINUTE = 200
EXCERPT_LENGTH = 160

# Pattern for strikethrough: ~~text~~
# Group 2 must contain the text (SimpleTagInlineProcessor expectation)
STRIKETHROUGH_PATTERN = r"(~~)(.*?)~~"

# Markdown syntax removed by the plain-text projection, applied in order
PLAIN_TEXT_RULES = [
    (re.compile(r"^\s{0,3}(`{3,}|~{3,}).*?^\s{0,3}\1\s*$", re.DOTALL | re.MULTILINE), ""),
    (re.compile(r"`[^`]+`"), ""),
    (re.compile(r"!\[[^\]]*\]\([^)]*\)"), ""),
    (re.compile(r"\[([^\]]+)\]\([^)]*\)"), r"\1"),
    (re.compile(r"^\s{0,3}#{1,6}\s+", re.MULTILINE), ""),
    (re.compile(r"\*\*([^*]+)\*\*"), r"\1"),
    (re.compile(r"\*([^*]+)\*"), r"\1"),
    (re.compile(r"(?<!\w)__([^_]+)__(?!\w)"), r"\1"),
    (re.compile(r"(?<!\w)_([^_]+)_(?!\w)"), r"\1"),
    (re.compile(r"~~([^~]+)~~"), r"\1"),
    (re.compile(r"^\s{0,3}>\s?", re.MULTILINE), ""),
    (re.compile(r"^\s{0,3}([-*_])(\s*\1){2,}\s*$", re.MULTILINE), ""),
    (re.compile(r"^\s*([-*+]|\d+[.)])\s+(\[[ xX]\]\s+)?", re.MULTILINE), ""),
    (re.compile(r"^\s*\|?(\s*:?-+:?\s*\|)+\s*:?-*:?\s*$", re.MULTILINE), ""),
    (re.compile(r"\|"), " "),
    (re.compile(r"<[^>]+>"), ""),
]
WHITESPACE_PATTERN = re.compile(r"\s+")


class StrikethroughExtension(Extension):
    """Markdown extension for ~~strikethrough~~ text."""

    def extendMarkdown(self, md: Markdown) -> None:
        """Add strikethrough pattern to markdown parser."""
        md.inlinePatterns.register(
            SimpleTagInlineProcessor(STRIKETHROUGH_PATTERN, "del"),
            "strikethrough",
            50,
        )


def create_parser(toc_depth: int = 6) -> Markdown:
    """Create a Markdown parser for content bodies.

    Heading ids come from :func:`quire.core.toc.slugify`; repeated ids
    get a numeric suffix. Fenced code is highlighted by its language tag.

    Args:
        toc_depth: Deepest heading level listed in the generated TOC HTML.

    Returns:
        Configured Markdown parser instance.
    """
    return Markdown(
        extensions=[
            # Core formatting
            "abbr",
            "attr_list",
            "def_list",
            "footnotes",
            "md_in_html",
            "tables",
            "sane_lists",  # Better list handling
            "toc",
            # PyMdown extensions
            "pymdownx.highlight",  # Pygments highlighting for code fences
            "pymdownx.superfences",  # Fenced code, nestable in lists/quotes
            "pymdownx.tasklist",  # Task lists with checkboxes
            # Custom extensions
            StrikethroughExtension(),  # ~~strikethrough~~
        ],
        extension_configs={
            "toc": {
                "slugify": slugify,
                "toc_depth": toc_depth,
                "anchorlink": True,
                "anchorlink_class": "anchor-link",
            },
            "pymdownx.highlight": {
                "use_pygments": True,
                "guess_lang": False,
                "css_class": "highlight",
            },
        },
    )


def strip_markdown(markdown: str) -> str:
    """Project markdown to plain text.

    Code blocks, inline code and images are dropped entirely; links,
    emphasis and headings keep their text; list, quote, rule and table
    markers are removed.
    """
    text = markdown
    for pattern, replacement in PLAIN_TEXT_RULES:
        text = pattern.sub(replacement, text)
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def count_words(markdown: str) -> int:
    """Count words in the plain-text projection of markdown."""
    plain = strip_markdown(markdown)
    return len(plain.split()) if plain else 0


def calculate_reading_time(
    markdown: str, words_per_minute: int = DEFAULT_WORDS_PER_MINUTE
) -> int:
    """Estimated reading time in whole minutes, never less than one.

    Halves round up, so 300 words at 200 wpm is two minutes.
    """
    if words_per_minute <= 0:
        raise ValueError("words_per_minute must be positive")
    minutes = math.floor(count_words(markdown) / words_per_minute + 0.5)
    return max(1, minutes)


def generate_excerpt(markdown: str, max_length: int = EXCERPT_LENGTH) -> str:
    """Plain-text excerpt cut at a word boundary."""
    plain = strip_markdown(markdown)
    if len(plain) <= max_length:
        return plain
    return re.sub(r"\s+\S*$", "", plain[:max_length]) + "..."


def _fallback_html(markdown: str) -> str:
    return f'<pre class="render-fallback">{html.escape(markdown)}</pre>'


def render_markdown(
    markdown: str,
    words_per_minute: int = DEFAULT_WORDS_PER_MINUTE,
    toc_depth: int = DEFAULT_MAX_LEVEL,
) -> RenderResult:
    """Render markdown to HTML with a reading-time estimate.

    Output is deterministic for a given input. Rendering never raises: if
    the parser fails the escaped source is returned inside a ``<pre>``.

    Args:
        markdown: Markdown source.
        words_per_minute: Reading speed used for the estimate.
        toc_depth: Deepest heading level in ``toc_html``.

    Returns:
        RenderResult with ``html``, ``reading_time_minutes`` and ``toc_html``.
    """
    markdown = markdown or ""
    parser = create_parser(toc_depth=toc_depth)
    try:
        body_html = parser.convert(markdown)
        toc_html = getattr(parser, "toc", "")
    except Exception:
        logger.warning("Markdown rendering failed, emitting literal text", exc_info=True)
        body_html = _fallback_html(markdown)
        toc_html = ""

    try:
        reading_time = calculate_reading_time(markdown, words_per_minute)
    except Exception:
        logger.warning("Reading time estimate failed", exc_info=True)
        reading_time = 1

    return RenderResult(
        html=body_html,
        reading_time_minutes=reading_time,
        toc_html=toc_html,
    )


def render_body(
    body: str,
    words_per_minute: int = DEFAULT_WORDS_PER_MINUTE,
    toc_max_level: int = DEFAULT_MAX_LEVEL,
) -> dict:
    """Derive the cached fields of a content document from its body.

    Returns:
        Dict with ``html``, ``toc``, ``excerpt`` and ``reading_time`` keys,
        ready to be merged into a stored document.
    """
    result = render_markdown(body, words_per_minute, toc_depth=toc_max_level)
    toc: list[TocItem] = extract_headings_from_html(result.html, toc_max_level)
    return {
        "html": result.html,
        "toc": [item.model_dump() for item in toc],
        "excerpt": generate_excerpt(body),
        "reading_time": result.reading_time_minutes,
    }
