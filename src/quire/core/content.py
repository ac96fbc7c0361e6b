"""Notes, series, logs and pages.

These entries share the content collection (and its global slug space)
with articles but live outside the topic hierarchy, so they have no
parent counters to reconcile.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from quire.core.errors import BadRequestError, ConflictError, NotFoundError
from quire.core.models import (
    NOTE_BODY_MIN_LENGTH,
    Content,
    ContentType,
    EntryInput,
    EntryUpdate,
    MutationResult,
)
from quire.core.parser import DEFAULT_WORDS_PER_MINUTE, render_body
from quire.core.revalidate import HOME_PATH, Revalidator, RevalidationType
from quire.core.stats import StatsCounter
from quire.core.storage import CONTENT, DuplicateKeyError, Storage
from quire.core.taxonomy import NULLABLE_FIELDS, utcnow
from quire.core.toc import DEFAULT_MAX_LEVEL

logger = logging.getLogger(__name__)

SECTIONS: dict[ContentType, RevalidationType] = {
    ContentType.NOTE: RevalidationType.NOTE,
    ContentType.SERIES: RevalidationType.NOTE,
    ContentType.LOG: RevalidationType.NOTE,
    ContentType.PAGE: RevalidationType.PAGE,
}


def newest_first(entry: Content) -> tuple:
    return (-(entry.published_at or entry.created_at).timestamp(), entry.slug)


class ContentStore:
    """Admin operations on standalone content entries."""

    def __init__(
        self,
        storage: Storage,
        revalidator: Revalidator,
        stats: StatsCounter | None = None,
        words_per_minute: int = DEFAULT_WORDS_PER_MINUTE,
        toc_max_level: int = DEFAULT_MAX_LEVEL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.revalidator = revalidator
        self.stats = stats or StatsCounter(storage)
        self.words_per_minute = words_per_minute
        self.toc_max_level = toc_max_level
        self.clock = clock

    async def _revalidate(self, entry_type: ContentType, slug: str) -> list[str]:
        section = SECTIONS[entry_type]
        # The home page lists recent notes
        extra = [HOME_PATH] if section == RevalidationType.NOTE else []
        paths = await self.revalidator.revalidate(section, slug, extra_paths=extra)
        return sorted(paths)

    def _render(self, body: str) -> dict:
        return render_body(body, self.words_per_minute, self.toc_max_level)

    async def get_entry(
        self,
        slug: str,
        entry_type: ContentType | None = None,
        published_only: bool = False,
    ) -> Content | None:
        """Get a non-article entry by slug. Returns None if not found."""
        doc = await self.storage.get(CONTENT, slug)
        if doc is None or doc.get("type") == ContentType.ARTICLE.value:
            return None
        entry = Content.model_validate(doc)
        if entry_type is not None and entry.type != entry_type:
            return None
        if published_only and not entry.published:
            return None
        return entry

    async def list_entries(
        self,
        entry_type: ContentType | None = None,
        published_only: bool = False,
        tag: str | None = None,
    ) -> list[Content]:
        """List entries newest first, optionally by type and tag."""
        filters: dict[str, Any] = {}
        if entry_type is not None:
            filters["type"] = ContentType(entry_type).value
        if published_only:
            filters["published"] = True
        docs = await self.storage.find(CONTENT, filters)
        entries = [
            Content.model_validate(d)
            for d in docs
            if d.get("type") != ContentType.ARTICLE.value
        ]
        if tag:
            tag_lower = tag.lower()
            entries = [e for e in entries if any(t.lower() == tag_lower for t in e.tags)]
        return sorted(entries, key=newest_first)

    async def _require_entry(self, slug: str) -> Content:
        entry = await self.get_entry(slug)
        if entry is None:
            raise NotFoundError(f"Entry not found: {slug}")
        return entry

    async def create_entry(self, data: EntryInput | dict) -> MutationResult:
        data = EntryInput.model_validate(data)
        if await self.storage.get(CONTENT, data.slug) is not None:
            raise ConflictError("Content with this slug already exists")

        now = self.clock().isoformat()
        document = {
            **data.model_dump(mode="json"),
            **self._render(data.body),
            "published_at": now if data.published else None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.storage.insert(CONTENT, document)
        except DuplicateKeyError:
            raise ConflictError("Content with this slug already exists") from None
        logger.info("Created %s %s", data.type.value, data.slug)

        revalidated = await self._revalidate(data.type, data.slug)
        return MutationResult(
            message=f"{data.type.value.capitalize()} created successfully",
            entity=await self.get_entry(data.slug),
            revalidated=revalidated,
        )

    async def update_entry(self, slug: str, data: EntryUpdate | dict) -> MutationResult:
        data = EntryUpdate.model_validate(data)
        existing = await self._require_entry(slug)

        changes = {
            k: v
            for k, v in data.model_dump(exclude_unset=True).items()
            if v is not None or k in NULLABLE_FIELDS
        }
        if (
            existing.type == ContentType.NOTE
            and "body" in changes
            and len(changes["body"]) < NOTE_BODY_MIN_LENGTH
        ):
            raise BadRequestError(
                f"Note body must be at least {NOTE_BODY_MIN_LENGTH} characters"
            )

        new_slug = changes.get("slug", slug)
        if new_slug != slug and await self.storage.get(CONTENT, new_slug) is not None:
            raise ConflictError("Content with this slug already exists")

        if "body" in changes:
            changes.update(self._render(changes["body"]))
        changes["updated_at"] = self.clock().isoformat()

        try:
            await self.storage.update(CONTENT, slug, changes)
        except DuplicateKeyError:
            raise ConflictError("Content with this slug already exists") from None
        if new_slug != slug:
            await self.stats.rename_stats(slug, new_slug)
        logger.info("Updated %s %s", existing.type.value, new_slug)

        revalidated = set(await self._revalidate(existing.type, new_slug))
        if new_slug != slug:
            revalidated |= set(await self._revalidate(existing.type, slug))
        return MutationResult(
            message=f"{existing.type.value.capitalize()} updated successfully",
            entity=await self.get_entry(new_slug),
            revalidated=sorted(revalidated),
        )

    async def delete_entry(self, slug: str) -> MutationResult:
        """Delete an entry and its stats record."""
        entry = await self._require_entry(slug)
        await self.storage.delete(CONTENT, slug)
        await self.stats.delete_stats(slug)
        logger.info("Deleted %s %s", entry.type.value, slug)
        revalidated = await self._revalidate(entry.type, slug)
        return MutationResult(
            message=f"{entry.type.value.capitalize()} deleted successfully",
            revalidated=revalidated,
        )

    async def toggle_entry_published(self, slug: str) -> MutationResult:
        """Flip the published flag. The first publication sets ``published_at``."""
        entry = await self._require_entry(slug)
        now = self.clock().isoformat()
        published = not entry.published
        changes: dict[str, Any] = {"published": published, "updated_at": now}
        if published and entry.published_at is None:
            changes["published_at"] = now
        await self.storage.update(CONTENT, slug, changes)
        revalidated = await self._revalidate(entry.type, slug)
        label = entry.type.value.capitalize()
        return MutationResult(
            message=f"{label} published" if published else f"{label} unpublished",
            entity=await self.get_entry(slug),
            revalidated=revalidated,
        )

    async def toggle_entry_featured(self, slug: str) -> MutationResult:
        entry = await self._require_entry(slug)
        featured = not entry.featured
        await self.storage.update(
            CONTENT, slug, {"featured": featured, "updated_at": self.clock().isoformat()}
        )
        revalidated = await self._revalidate(entry.type, slug)
        label = entry.type.value.capitalize()
        return MutationResult(
            message=f"{label} featured" if featured else f"{label} unfeatured",
            entity=await self.get_entry(slug),
            revalidated=revalidated,
        )
