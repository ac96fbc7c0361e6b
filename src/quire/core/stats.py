"""View and like counters.

Stats live in their own collection keyed by content slug and are created
on first use. Every change is a single :meth:`Storage.increment` call, so
concurrent requests never lose an update. Deduplicating repeated views
from one reader is the caller's job; every call here is counted.
"""

import logging
from datetime import datetime, timezone

from quire.core.models import LikeAction, PageStats
from quire.core.storage import STATS, DuplicateKeyError, Storage

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StatsCounter:
    """Atomic page view and like counters."""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def increment_view(self, slug: str) -> int:
        """Record one view. Returns the new view count."""
        now = _now()
        document = await self.storage.increment(
            STATS,
            slug,
            "views",
            1,
            set_fields={"updated_at": now, "last_viewed_at": now},
            set_on_insert={"created_at": now, "likes": 0},
        )
        return document["views"]

    async def toggle_like(self, slug: str, action: LikeAction | str) -> int:
        """Add or remove one like. Returns the new like count, never below 0."""
        action = LikeAction(action)
        delta = 1 if action == LikeAction.LIKE else -1
        now = _now()
        document = await self.storage.increment(
            STATS,
            slug,
            "likes",
            delta,
            floor=0,
            set_fields={"updated_at": now},
            set_on_insert={"created_at": now, "views": 0},
        )
        return document["likes"]

    async def get_stats(self, slug: str) -> PageStats:
        """Current counters for a slug; zeros if it was never viewed."""
        document = await self.storage.get(STATS, slug)
        if document is None:
            return PageStats(slug=slug)
        return PageStats(**document)

    async def most_viewed(self, limit: int = 5) -> list[PageStats]:
        """Stats records with the highest view counts, ties by slug."""
        documents = await self.storage.find(STATS)
        stats = [PageStats(**doc) for doc in documents]
        stats.sort(key=lambda s: (-s.views, s.slug))
        return stats[:limit]

    async def delete_stats(self, slug: str) -> bool:
        """Remove the stats record of deleted content."""
        return await self.storage.delete(STATS, slug)

    async def rename_stats(self, old_slug: str, new_slug: str) -> bool:
        """Carry counters over to a renamed slug.

        Returns False when there was nothing to move or the new slug
        already has its own record, which is kept.
        """
        try:
            return await self.storage.update(STATS, old_slug, {"slug": new_slug}) is not None
        except DuplicateKeyError:
            logger.warning(
                "Stats for %s already exist, keeping them over %s", new_slug, old_slug
            )
            return False
