"""On-demand invalidation of cached pages.

A content mutation is mapped to the set of page paths whose cached render
may now be stale: the content's detail page, its section listing, the home
page for sections featured there, and always the sitemap. The dispatcher
hands every path to each configured backend and reports the full set.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from quire.core.errors import BadRequestError, RevalidationError

logger = logging.getLogger(__name__)

HOME_PATH = "/"
SITEMAP_PATH = "/sitemap.xml"


class RevalidationType(str, Enum):
    """Site sections that can be revalidated by content type."""

    ARTICLE = "article"
    NOTE = "note"
    PROJECT = "project"
    PAGE = "page"


LISTING_PATHS: dict[RevalidationType, str] = {
    RevalidationType.ARTICLE: "/articles",
    RevalidationType.NOTE: "/notes",
    RevalidationType.PROJECT: "/projects",
}

DETAIL_PREFIXES: dict[RevalidationType, str] = {
    RevalidationType.ARTICLE: "/articles/",
    RevalidationType.NOTE: "/notes/",
    RevalidationType.PROJECT: "/projects/",
    RevalidationType.PAGE: "/",
}

# Sections shown on the home page
HOME_SECTIONS = frozenset({RevalidationType.ARTICLE, RevalidationType.PROJECT})

SITE_SECTIONS = ("/", "/articles", "/notes", "/projects", "/about", "/contact")


def _coerce_type(content_type: RevalidationType | str | None) -> RevalidationType | None:
    if content_type is None or isinstance(content_type, RevalidationType):
        return content_type
    try:
        return RevalidationType(content_type)
    except ValueError:
        raise BadRequestError(f"Unknown content type: {content_type!r}") from None


def _check_path(path: str) -> str:
    if not path.startswith("/"):
        raise BadRequestError(f"Path must start with '/': {path!r}")
    return path


def revalidation_paths(
    content_type: RevalidationType | str | None = None,
    slug: str | None = None,
    path: str | None = None,
    extra_paths: Iterable[str] = (),
) -> frozenset[str]:
    """Compute the paths invalidated by a content change.

    Args:
        content_type: Section of the changed content.
        slug: Slug of the changed content; adds its detail page.
        path: An explicit path to invalidate.
        extra_paths: Additional paths, e.g. nested topic pages.

    Returns:
        Set of paths, always including the sitemap.

    Raises:
        BadRequestError: If neither a content type nor a path is given.
    """
    section = _coerce_type(content_type)
    if section is None and not path:
        raise BadRequestError(
            "No valid revalidation target provided. Use path or type."
        )

    paths: set[str] = {SITEMAP_PATH}
    if path:
        paths.add(_check_path(path))
    if section is not None:
        listing = LISTING_PATHS.get(section)
        if listing:
            paths.add(listing)
        if section in HOME_SECTIONS:
            paths.add(HOME_PATH)
        if slug:
            paths.add(DETAIL_PREFIXES[section] + slug.strip("/"))
    for extra in extra_paths:
        paths.add(_check_path(extra))
    return frozenset(paths)


class RevalidationBackend(ABC):
    """Something holding rendered pages that can be invalidated by path."""

    @abstractmethod
    async def invalidate(self, path: str) -> None:
        """Drop the cached render of ``path``."""
        ...


@dataclass
class CachedPage:
    body: str
    media_type: str
    stored_at: float


class PageCache(RevalidationBackend):
    """In-process cache of rendered pages keyed by path.

    Entries expire after ``max_age`` seconds (scheduled regeneration) and
    are dropped immediately by :meth:`invalidate` (on-demand regeneration).
    """

    def __init__(
        self,
        max_age: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_age = max_age
        self._clock = clock
        self._pages: dict[str, CachedPage] = {}

    def get(self, path: str) -> CachedPage | None:
        """Return a fresh cached page, or None."""
        page = self._pages.get(path)
        if page is None:
            return None
        if self.max_age is not None and self._clock() - page.stored_at >= self.max_age:
            self._pages.pop(path, None)
            return None
        return page

    def put(self, path: str, body: str, media_type: str = "text/html") -> CachedPage:
        page = CachedPage(body=body, media_type=media_type, stored_at=self._clock())
        self._pages[path] = page
        return page

    async def invalidate(self, path: str) -> None:
        if self._pages.pop(path, None) is not None:
            logger.debug("Invalidated cached page %s", path)

    def clear(self) -> None:
        self._pages.clear()

    def __contains__(self, path: str) -> bool:
        return self.get(path) is not None

    def __len__(self) -> int:
        return len(self._pages)


class Revalidator:
    """Dispatches invalidations to every configured backend."""

    def __init__(self, backends: Iterable[RevalidationBackend] = ()) -> None:
        self.backends = list(backends)

    async def _dispatch(self, paths: frozenset[str]) -> frozenset[str]:
        done: set[str] = set()
        for path in sorted(paths):
            for backend in self.backends:
                try:
                    await backend.invalidate(path)
                except Exception as exc:
                    logger.exception("Failed to revalidate %s", path)
                    raise RevalidationError(
                        f"Failed to revalidate {path}: {exc}", frozenset(done)
                    ) from exc
            done.add(path)
        return paths

    async def revalidate(
        self,
        content_type: RevalidationType | str | None = None,
        slug: str | None = None,
        *,
        path: str | None = None,
        extra_paths: Iterable[str] = (),
    ) -> frozenset[str]:
        """Invalidate every path affected by a content change.

        Returns:
            The set of invalidated paths.

        Raises:
            BadRequestError: If there is no concrete target.
            RevalidationError: If a backend fails.
        """
        paths = revalidation_paths(content_type, slug, path, extra_paths)
        return await self._dispatch(paths)

    async def revalidate_all(self) -> frozenset[str]:
        """Invalidate every site section and the sitemap."""
        return await self._dispatch(frozenset(SITE_SECTIONS) | {SITEMAP_PATH})
