"""Topic, subtopic and article management.

Topics and subtopics carry denormalized ``metadata.article_count`` and
``metadata.last_updated`` values. They are written only by the
reconciliation step that follows each article mutation, and only for the
parents whose membership could have changed. A failed reconciliation is
logged and leaves the counter stale until :meth:`TaxonomyStore.resync_counters`
runs; it never undoes the content write that preceded it.

References between the three levels are soft. Deleting a topic leaves its
subtopics and articles in place: they stay addressable by slug but drop
out of the topic tree.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from quire.core.errors import BadRequestError, ConflictError, NotFoundError
from quire.core.models import (
    ArticleInput,
    ArticleUpdate,
    Content,
    ContentType,
    MutationResult,
    Subtopic,
    SubtopicInput,
    SubtopicUpdate,
    Topic,
    TopicInput,
    TopicTree,
    TopicUpdate,
)
from quire.core.parser import DEFAULT_WORDS_PER_MINUTE, render_body
from quire.core.revalidate import Revalidator, RevalidationType
from quire.core.stats import StatsCounter
from quire.core.storage import CONTENT, SUBTOPICS, TOPICS, DuplicateKeyError, Storage
from quire.core.toc import DEFAULT_MAX_LEVEL

logger = logging.getLogger(__name__)

# Fields an update may explicitly clear by sending null
NULLABLE_FIELDS = frozenset({"icon", "cover_image", "subtopic_slug"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sort_key(item: Topic | Subtopic | Content) -> tuple:
    """Ascending ``order``, then creation time, then slug."""
    return (item.order, item.created_at, item.slug)


def _changes(update: Any) -> dict[str, Any]:
    data = update.model_dump(exclude_unset=True)
    return {k: v for k, v in data.items() if v is not None or k in NULLABLE_FIELDS}


def _published_articles(topic_slug: str, subtopic_slug: str | None = None) -> dict:
    filters = {"type": ContentType.ARTICLE.value, "topic_slug": topic_slug, "published": True}
    if subtopic_slug is not None:
        filters["subtopic_slug"] = subtopic_slug
    return filters


def _topic_paths(*topic_slugs: str | None) -> list[str]:
    return [f"/articles/{slug}" for slug in topic_slugs if slug]


def _article_paths(topic_slug: str | None, slug: str) -> list[str]:
    if not topic_slug:
        return []
    return [f"/articles/{topic_slug}", f"/articles/{topic_slug}/{slug}"]


class TaxonomyStore:
    """Admin operations on the topic / subtopic / article hierarchy.

    Every mutation validates its input before touching storage, writes the
    entity, reconciles affected parent counters and then revalidates the
    affected pages. Revalidation failures propagate as
    :class:`~quire.core.errors.RevalidationError` after the write committed.
    """

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

    def _now(self) -> str:
        return self.clock().isoformat()

    # ============================================================
    # Counter reconciliation
    # ============================================================

    async def _reconcile_topic(self, topic_slug: str, now: str | None) -> None:
        try:
            await self.storage.store_count(
                TOPICS,
                topic_slug,
                "metadata.article_count",
                CONTENT,
                _published_articles(topic_slug),
                set_fields={"metadata.last_updated": now} if now else None,
            )
        except Exception:
            logger.exception("Failed to reconcile article count for topic %s", topic_slug)

    async def _reconcile_subtopic(
        self, topic_slug: str, subtopic_slug: str, now: str | None
    ) -> None:
        try:
            await self.storage.store_count(
                SUBTOPICS,
                (topic_slug, subtopic_slug),
                "metadata.article_count",
                CONTENT,
                _published_articles(topic_slug, subtopic_slug),
                set_fields={"metadata.last_updated": now} if now else None,
            )
        except Exception:
            logger.exception(
                "Failed to reconcile article count for subtopic %s/%s",
                topic_slug,
                subtopic_slug,
            )

    async def _reconcile(
        self, placements: Iterable[tuple[str | None, str | None]], now: str
    ) -> tuple[list[Topic], list[Subtopic]]:
        """Recount the given (topic, subtopic) parents and return them refreshed."""
        topic_slugs: list[str] = []
        subtopic_keys: list[tuple[str, str]] = []
        for topic_slug, subtopic_slug in placements:
            if not topic_slug:
                continue
            if topic_slug not in topic_slugs:
                topic_slugs.append(topic_slug)
            if subtopic_slug and (topic_slug, subtopic_slug) not in subtopic_keys:
                subtopic_keys.append((topic_slug, subtopic_slug))

        for topic_slug in topic_slugs:
            await self._reconcile_topic(topic_slug, now)
        for topic_slug, subtopic_slug in subtopic_keys:
            await self._reconcile_subtopic(topic_slug, subtopic_slug, now)

        topics = [t for t in [await self.get_topic(s) for s in topic_slugs] if t]
        subtopics = [
            s for s in [await self.get_subtopic(*key) for key in subtopic_keys] if s
        ]
        return topics, subtopics

    async def resync_counters(self) -> MutationResult:
        """Recompute every topic and subtopic counter from scratch.

        ``last_updated`` is left alone since no article changed.
        """
        for doc in await self.storage.find(TOPICS):
            await self._reconcile_topic(doc["slug"], None)
        for doc in await self.storage.find(SUBTOPICS):
            await self._reconcile_subtopic(doc["topic_slug"], doc["slug"], None)
        logger.info("Article counters resynchronized")
        return MutationResult(
            message="Counters resynchronized",
            topics=await self.list_topics(),
        )

    async def _detail_paths(
        self,
        topic_slug: str,
        subtopic_slug: str | None = None,
        url_topics: Iterable[str] = (),
    ) -> list[str]:
        """Detail pages of every article placed under a topic or subtopic.

        ``url_topics`` lists the topic slugs those pages may be cached
        under, defaulting to ``topic_slug``.
        """
        articles = await self.list_articles(topic_slug, subtopic_slug)
        prefixes = list(url_topics) or [topic_slug]
        return [f"/articles/{t}/{a.slug}" for a in articles for t in prefixes]

    async def _revalidate(
        self,
        slug: str | None = None,
        extra_paths: Iterable[str] = (),
    ) -> list[str]:
        paths = await self.revalidator.revalidate(
            RevalidationType.ARTICLE, slug, extra_paths=extra_paths
        )
        return sorted(paths)

    # ============================================================
    # Topics
    # ============================================================

    async def get_topic(self, slug: str, published_only: bool = False) -> Topic | None:
        """Get a topic by slug. Returns None if not found."""
        doc = await self.storage.get(TOPICS, slug)
        if doc is None:
            return None
        topic = Topic.model_validate(doc)
        if published_only and not topic.published:
            return None
        return topic

    async def list_topics(self, published_only: bool = False) -> list[Topic]:
        """List topics in display order."""
        filters = {"published": True} if published_only else None
        topics = [Topic.model_validate(d) for d in await self.storage.find(TOPICS, filters)]
        return sorted(topics, key=sort_key)

    async def list_featured_topics(self, limit: int = 6) -> list[Topic]:
        topics = await self.list_topics(published_only=True)
        return [t for t in topics if t.featured][:limit]

    async def _require_topic(self, slug: str) -> Topic:
        topic = await self.get_topic(slug)
        if topic is None:
            raise NotFoundError(f"Topic not found: {slug}")
        return topic

    async def create_topic(self, data: TopicInput | dict) -> MutationResult:
        """Create a topic. Its counter is reconciled immediately, adopting
        any articles that already reference the slug."""
        data = TopicInput.model_validate(data)
        if await self.storage.get(TOPICS, data.slug) is not None:
            raise ConflictError("A topic with this slug already exists")

        now = self._now()
        document = {
            **data.model_dump(mode="json"),
            "metadata": {"article_count": 0, "last_updated": None},
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.storage.insert(TOPICS, document)
        except DuplicateKeyError:
            raise ConflictError("A topic with this slug already exists") from None
        logger.info("Created topic %s", data.slug)

        topics, _ = await self._reconcile([(data.slug, None)], now)
        revalidated = await self._revalidate(extra_paths=_topic_paths(data.slug))
        return MutationResult(
            message="Topic created successfully",
            entity=topics[0] if topics else await self.get_topic(data.slug),
            topics=topics,
            revalidated=revalidated,
        )

    async def update_topic(self, slug: str, data: TopicUpdate | dict) -> MutationResult:
        """Update a topic. Renaming its slug re-points subtopics and articles."""
        data = TopicUpdate.model_validate(data)
        await self._require_topic(slug)

        new_slug = data.slug or slug
        if new_slug != slug and await self.storage.get(TOPICS, new_slug) is not None:
            raise ConflictError("A topic with this slug already exists")

        now = self._now()
        changes = {**_changes(data), "updated_at": now}
        try:
            await self.storage.update(TOPICS, slug, changes)
        except DuplicateKeyError:
            raise ConflictError("A topic with this slug already exists") from None

        topics: list[Topic] = []
        if new_slug != slug:
            await self.storage.update_many(
                SUBTOPICS, {"topic_slug": slug}, {"topic_slug": new_slug}
            )
            await self.storage.update_many(
                CONTENT,
                {"type": ContentType.ARTICLE.value, "topic_slug": slug},
                {"topic_slug": new_slug},
            )
            logger.info("Renamed topic %s to %s", slug, new_slug)
            topics, _ = await self._reconcile([(new_slug, None)], now)

        details = await self._detail_paths(new_slug, url_topics=(slug, new_slug))
        revalidated = await self._revalidate(
            extra_paths=_topic_paths(slug, new_slug) + details
        )
        topic = await self.get_topic(new_slug)
        return MutationResult(
            message="Topic updated successfully",
            entity=topic,
            topics=topics or [topic],
            revalidated=revalidated,
        )

    async def delete_topic(self, slug: str) -> MutationResult:
        """Delete a topic. Its subtopics and articles are left as orphans."""
        await self._require_topic(slug)
        await self.storage.delete(TOPICS, slug)
        logger.info("Deleted topic %s", slug)
        details = await self._detail_paths(slug)
        revalidated = await self._revalidate(extra_paths=_topic_paths(slug) + details)
        return MutationResult(message="Topic deleted successfully", revalidated=revalidated)

    async def _toggle_topic(self, slug: str, field: str, label: tuple[str, str]) -> MutationResult:
        topic = await self._require_topic(slug)
        value = not getattr(topic, field)
        await self.storage.update(TOPICS, slug, {field: value, "updated_at": self._now()})
        details = await self._detail_paths(slug)
        revalidated = await self._revalidate(extra_paths=_topic_paths(slug) + details)
        topic = await self.get_topic(slug)
        return MutationResult(
            message=label[0] if value else label[1],
            entity=topic,
            topics=[topic],
            revalidated=revalidated,
        )

    async def toggle_topic_published(self, slug: str) -> MutationResult:
        return await self._toggle_topic(
            slug, "published", ("Topic published", "Topic unpublished")
        )

    async def toggle_topic_featured(self, slug: str) -> MutationResult:
        return await self._toggle_topic(
            slug, "featured", ("Topic featured", "Topic unfeatured")
        )

    async def reorder_topics(self, slugs: list[str]) -> MutationResult:
        """Assign ``order`` from the position of each slug in the list."""
        if not slugs:
            raise BadRequestError("Invalid slugs array")
        now = self._now()
        for index, slug in enumerate(slugs):
            await self.storage.update(TOPICS, slug, {"order": index, "updated_at": now})
        revalidated = await self._revalidate()
        return MutationResult(
            message="Topics reordered successfully",
            topics=await self.list_topics(),
            revalidated=revalidated,
        )

    # ============================================================
    # Subtopics
    # ============================================================

    async def get_subtopic(
        self, topic_slug: str, slug: str, published_only: bool = False
    ) -> Subtopic | None:
        """Get a subtopic by topic and slug. Returns None if not found."""
        doc = await self.storage.get(SUBTOPICS, (topic_slug, slug))
        if doc is None:
            return None
        subtopic = Subtopic.model_validate(doc)
        if published_only and not subtopic.published:
            return None
        return subtopic

    async def list_subtopics(
        self, topic_slug: str | None = None, published_only: bool = False
    ) -> list[Subtopic]:
        """List subtopics, optionally of one topic, in display order."""
        filters: dict[str, Any] = {}
        if topic_slug is not None:
            filters["topic_slug"] = topic_slug
        if published_only:
            filters["published"] = True
        docs = await self.storage.find(SUBTOPICS, filters)
        return sorted((Subtopic.model_validate(d) for d in docs), key=sort_key)

    async def _require_subtopic(self, topic_slug: str, slug: str) -> Subtopic:
        subtopic = await self.get_subtopic(topic_slug, slug)
        if subtopic is None:
            raise NotFoundError(f"Subtopic not found: {topic_slug}/{slug}")
        return subtopic

    async def create_subtopic(self, data: SubtopicInput | dict) -> MutationResult:
        """Create a subtopic under an existing topic."""
        data = SubtopicInput.model_validate(data)
        if await self.storage.get(SUBTOPICS, (data.topic_slug, data.slug)) is not None:
            raise ConflictError("A subtopic with this slug already exists in this topic")
        if await self.storage.get(TOPICS, data.topic_slug) is None:
            raise BadRequestError("Parent topic not found")

        now = self._now()
        document = {
            **data.model_dump(mode="json"),
            "metadata": {"article_count": 0, "last_updated": None},
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.storage.insert(SUBTOPICS, document)
        except DuplicateKeyError:
            raise ConflictError(
                "A subtopic with this slug already exists in this topic"
            ) from None
        logger.info("Created subtopic %s/%s", data.topic_slug, data.slug)

        _, subtopics = await self._reconcile([(data.topic_slug, data.slug)], now)
        revalidated = await self._revalidate(extra_paths=_topic_paths(data.topic_slug))
        return MutationResult(
            message="Subtopic created successfully",
            entity=await self.get_subtopic(data.topic_slug, data.slug),
            subtopics=subtopics,
            revalidated=revalidated,
        )

    async def update_subtopic(
        self, topic_slug: str, slug: str, data: SubtopicUpdate | dict
    ) -> MutationResult:
        """Update a subtopic. Renaming re-points its articles."""
        data = SubtopicUpdate.model_validate(data)
        await self._require_subtopic(topic_slug, slug)

        new_slug = data.slug or slug
        if new_slug != slug and await self.storage.get(
            SUBTOPICS, (topic_slug, new_slug)
        ) is not None:
            raise ConflictError("A subtopic with this slug already exists in this topic")

        now = self._now()
        try:
            await self.storage.update(
                SUBTOPICS, (topic_slug, slug), {**_changes(data), "updated_at": now}
            )
        except DuplicateKeyError:
            raise ConflictError(
                "A subtopic with this slug already exists in this topic"
            ) from None

        subtopics: list[Subtopic] = []
        if new_slug != slug:
            await self.storage.update_many(
                CONTENT,
                {
                    "type": ContentType.ARTICLE.value,
                    "topic_slug": topic_slug,
                    "subtopic_slug": slug,
                },
                {"subtopic_slug": new_slug},
            )
            _, subtopics = await self._reconcile([(topic_slug, new_slug)], now)

        details = await self._detail_paths(topic_slug, new_slug)
        revalidated = await self._revalidate(extra_paths=_topic_paths(topic_slug) + details)
        subtopic = await self.get_subtopic(topic_slug, new_slug)
        return MutationResult(
            message="Subtopic updated successfully",
            entity=subtopic,
            subtopics=subtopics or [subtopic],
            revalidated=revalidated,
        )

    async def delete_subtopic(self, topic_slug: str, slug: str) -> MutationResult:
        """Delete a subtopic. Its articles stay under the topic, ungrouped."""
        await self._require_subtopic(topic_slug, slug)
        await self.storage.delete(SUBTOPICS, (topic_slug, slug))
        logger.info("Deleted subtopic %s/%s", topic_slug, slug)
        details = await self._detail_paths(topic_slug, slug)
        revalidated = await self._revalidate(extra_paths=_topic_paths(topic_slug) + details)
        return MutationResult(
            message="Subtopic deleted successfully", revalidated=revalidated
        )

    async def toggle_subtopic_published(self, topic_slug: str, slug: str) -> MutationResult:
        subtopic = await self._require_subtopic(topic_slug, slug)
        value = not subtopic.published
        await self.storage.update(
            SUBTOPICS, (topic_slug, slug), {"published": value, "updated_at": self._now()}
        )
        details = await self._detail_paths(topic_slug, slug)
        revalidated = await self._revalidate(extra_paths=_topic_paths(topic_slug) + details)
        subtopic = await self.get_subtopic(topic_slug, slug)
        return MutationResult(
            message="Subtopic published" if value else "Subtopic unpublished",
            entity=subtopic,
            subtopics=[subtopic],
            revalidated=revalidated,
        )

    async def reorder_subtopics(self, topic_slug: str, slugs: list[str]) -> MutationResult:
        if not slugs:
            raise BadRequestError("Invalid slugs array")
        now = self._now()
        for index, slug in enumerate(slugs):
            await self.storage.update(
                SUBTOPICS, (topic_slug, slug), {"order": index, "updated_at": now}
            )
        revalidated = await self._revalidate(extra_paths=_topic_paths(topic_slug))
        return MutationResult(
            message="Subtopics reordered successfully",
            subtopics=await self.list_subtopics(topic_slug),
            revalidated=revalidated,
        )

    # ============================================================
    # Articles
    # ============================================================

    async def get_article(self, slug: str, published_only: bool = False) -> Content | None:
        """Get an article by slug. Returns None if not found."""
        doc = await self.storage.get(CONTENT, slug)
        if doc is None or doc.get("type") != ContentType.ARTICLE.value:
            return None
        article = Content.model_validate(doc)
        if published_only and not article.published:
            return None
        return article

    async def list_articles(
        self,
        topic_slug: str | None = None,
        subtopic_slug: str | None = None,
        published_only: bool = False,
    ) -> list[Content]:
        """List articles in display order."""
        filters: dict[str, Any] = {"type": ContentType.ARTICLE.value}
        if topic_slug is not None:
            filters["topic_slug"] = topic_slug
        if subtopic_slug is not None:
            filters["subtopic_slug"] = subtopic_slug
        if published_only:
            filters["published"] = True
        docs = await self.storage.find(CONTENT, filters)
        return sorted((Content.model_validate(d) for d in docs), key=sort_key)

    async def get_topic_tree(
        self, topic_slug: str, published_only: bool = True
    ) -> TopicTree | None:
        """Topic with its subtopics and articles grouped by subtopic.

        Articles pointing at a subtopic that does not exist (or is hidden)
        are listed as ungrouped. Returns None for a missing topic.
        """
        topic = await self.get_topic(topic_slug, published_only=published_only)
        if topic is None:
            return None
        subtopics = await self.list_subtopics(topic_slug, published_only=published_only)
        articles = await self.list_articles(topic_slug, published_only=published_only)

        grouped: dict[str, list[Content]] = {s.slug: [] for s in subtopics}
        ungrouped: list[Content] = []
        for article in articles:
            if article.subtopic_slug in grouped:
                grouped[article.subtopic_slug].append(article)
            else:
                ungrouped.append(article)

        return TopicTree(
            topic=topic,
            subtopics=subtopics,
            articles_by_subtopic=grouped,
            ungrouped=ungrouped,
        )

    async def _require_article(self, slug: str) -> Content:
        article = await self.get_article(slug)
        if article is None:
            raise NotFoundError(f"Article not found: {slug}")
        return article

    async def _check_placement(self, topic_slug: str, subtopic_slug: str | None) -> None:
        if await self.storage.get(TOPICS, topic_slug) is None:
            raise BadRequestError("Topic not found")
        if subtopic_slug and await self.storage.get(
            SUBTOPICS, (topic_slug, subtopic_slug)
        ) is None:
            raise BadRequestError("Subtopic not found")

    def _render(self, body: str) -> dict:
        return render_body(body, self.words_per_minute, self.toc_max_level)

    async def create_article(self, data: ArticleInput | dict) -> MutationResult:
        """Create an article under an existing topic (and subtopic, if given)."""
        data = ArticleInput.model_validate(data)
        if await self.storage.get(CONTENT, data.slug) is not None:
            raise ConflictError("Content with this slug already exists")
        subtopic_slug = data.subtopic_slug or None
        await self._check_placement(data.topic_slug, subtopic_slug)

        now = self._now()
        document = {
            **data.model_dump(mode="json"),
            **self._render(data.body),
            "type": ContentType.ARTICLE.value,
            "subtopic_slug": subtopic_slug,
            "published_at": now if data.published else None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.storage.insert(CONTENT, document)
        except DuplicateKeyError:
            raise ConflictError("Content with this slug already exists") from None
        logger.info("Created article %s in %s", data.slug, data.topic_slug)

        topics, subtopics = await self._reconcile([(data.topic_slug, subtopic_slug)], now)
        revalidated = await self._revalidate(
            data.slug, _article_paths(data.topic_slug, data.slug)
        )
        return MutationResult(
            message="Article created successfully",
            entity=await self.get_article(data.slug),
            topics=topics,
            subtopics=subtopics,
            revalidated=revalidated,
        )

    async def update_article(self, slug: str, data: ArticleUpdate | dict) -> MutationResult:
        """Update an article.

        A new body re-renders the cached HTML, TOC, excerpt and reading
        time. Moving to another topic without naming a subtopic clears the
        subtopic. Counters of both the old and new parents are reconciled
        when the placement changes.
        """
        data = ArticleUpdate.model_validate(data)
        existing = await self._require_article(slug)

        new_slug = data.slug or slug
        if new_slug != slug and await self.storage.get(CONTENT, new_slug) is not None:
            raise ConflictError("Content with this slug already exists")

        changes = _changes(data)
        new_topic = changes.get("topic_slug", existing.topic_slug)
        if "subtopic_slug" in changes:
            new_subtopic = changes["subtopic_slug"] or None
        elif new_topic != existing.topic_slug:
            new_subtopic = None
        else:
            new_subtopic = existing.subtopic_slug
        changes["subtopic_slug"] = new_subtopic

        placement_changed = (new_topic, new_subtopic) != (
            existing.topic_slug,
            existing.subtopic_slug,
        )
        if placement_changed:
            await self._check_placement(new_topic, new_subtopic)

        now = self._now()
        if "body" in changes:
            changes.update(self._render(changes["body"]))
        changes["updated_at"] = now

        try:
            await self.storage.update(CONTENT, slug, changes)
        except DuplicateKeyError:
            raise ConflictError("Content with this slug already exists") from None
        if new_slug != slug:
            await self.stats.rename_stats(slug, new_slug)
        logger.info("Updated article %s", new_slug)

        placements = [(existing.topic_slug, existing.subtopic_slug)]
        if placement_changed:
            placements.append((new_topic, new_subtopic))
        topics, subtopics = await self._reconcile(placements, now)

        extra = _article_paths(existing.topic_slug, slug) + _article_paths(new_topic, new_slug)
        revalidated = set(await self._revalidate(new_slug, extra))
        if new_slug != slug:
            revalidated |= set(await self._revalidate(slug))
        return MutationResult(
            message="Article updated successfully",
            entity=await self.get_article(new_slug),
            topics=topics,
            subtopics=subtopics,
            revalidated=sorted(revalidated),
        )

    async def delete_article(self, slug: str) -> MutationResult:
        """Delete an article and its stats record."""
        article = await self._require_article(slug)
        await self.storage.delete(CONTENT, slug)
        await self.stats.delete_stats(slug)
        logger.info("Deleted article %s", slug)

        topics, subtopics = await self._reconcile(
            [(article.topic_slug, article.subtopic_slug)], self._now()
        )
        revalidated = await self._revalidate(
            slug, _article_paths(article.topic_slug, slug)
        )
        return MutationResult(
            message="Article deleted successfully",
            topics=topics,
            subtopics=subtopics,
            revalidated=revalidated,
        )

    async def toggle_article_published(self, slug: str) -> MutationResult:
        """Flip the published flag. The first publication sets ``published_at``."""
        article = await self._require_article(slug)
        now = self._now()
        published = not article.published
        changes: dict[str, Any] = {"published": published, "updated_at": now}
        if published and article.published_at is None:
            changes["published_at"] = now
        await self.storage.update(CONTENT, slug, changes)

        topics, subtopics = await self._reconcile(
            [(article.topic_slug, article.subtopic_slug)], now
        )
        revalidated = await self._revalidate(
            slug, _article_paths(article.topic_slug, slug)
        )
        return MutationResult(
            message="Article published" if published else "Article unpublished",
            entity=await self.get_article(slug),
            topics=topics,
            subtopics=subtopics,
            revalidated=revalidated,
        )

    async def toggle_article_featured(self, slug: str) -> MutationResult:
        article = await self._require_article(slug)
        featured = not article.featured
        await self.storage.update(
            CONTENT, slug, {"featured": featured, "updated_at": self._now()}
        )
        revalidated = await self._revalidate(
            slug, _article_paths(article.topic_slug, slug)
        )
        return MutationResult(
            message="Article featured" if featured else "Article unfeatured",
            entity=await self.get_article(slug),
            revalidated=revalidated,
        )

    async def reorder_articles(
        self, topic_slug: str, subtopic_slug: str | None, slugs: list[str]
    ) -> MutationResult:
        """Assign ``order`` to articles of one topic (or subtopic) by position.

        Slugs that do not belong to the given placement are skipped.
        """
        if not slugs:
            raise BadRequestError("Invalid slugs array")
        now = self._now()
        for index, slug in enumerate(slugs):
            article = await self.get_article(slug)
            if article is None or article.topic_slug != topic_slug:
                continue
            if subtopic_slug and article.subtopic_slug != subtopic_slug:
                continue
            await self.storage.update(CONTENT, slug, {"order": index, "updated_at": now})
        revalidated = await self._revalidate(extra_paths=_topic_paths(topic_slug))
        return MutationResult(
            message="Articles reordered successfully",
            revalidated=revalidated,
        )
