"""Tests for the topic / subtopic / article hierarchy and its counters."""

import logging
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from pydantic import ValidationError

from quire.core.errors import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    RevalidationError,
)
from quire.core.revalidate import PageCache, RevalidationBackend, Revalidator
from quire.core.stats import StatsCounter
from quire.core.storage import CONTENT, MemoryStorage
from quire.core.taxonomy import TaxonomyStore

BODY = "# Intro\n\nSome text about the subject.\n\n## Details\n\nMore text."


class TickingClock:
    """Returns a strictly increasing time on each call."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


class BrokenBackend(RevalidationBackend):
    async def invalidate(self, path):
        raise ConnectionError("cache unreachable")


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def cache():
    return PageCache()


@pytest.fixture
def store(storage, cache):
    return TaxonomyStore(storage, Revalidator([cache]), clock=TickingClock())


def topic_data(slug="dsa", **fields):
    return {"title": f"Topic {slug}", "slug": slug, "published": True, **fields}


def subtopic_data(topic_slug="dsa", slug="arrays", **fields):
    return {
        "topic_slug": topic_slug,
        "title": f"Subtopic {slug}",
        "slug": slug,
        "published": True,
        **fields,
    }


def article_data(slug="two-sum", topic_slug="dsa", subtopic_slug="arrays", **fields):
    return {
        "title": f"Article {slug}",
        "slug": slug,
        "body": BODY,
        "topic_slug": topic_slug,
        "subtopic_slug": subtopic_slug,
        "published": True,
        **fields,
    }


async def count_of(store, topic_slug, subtopic_slug=None):
    if subtopic_slug is None:
        return (await store.get_topic(topic_slug)).metadata.article_count
    return (await store.get_subtopic(topic_slug, subtopic_slug)).metadata.article_count


@pytest_asyncio.fixture
async def seeded(store):
    await store.create_topic(topic_data("dsa"))
    await store.create_subtopic(subtopic_data("dsa", "arrays"))
    return store


# ============================================================
# End-to-end scenario
# ============================================================


class TestScenario:
    @pytest.mark.asyncio
    async def test_create_publish_move_delete(self, store):
        await store.create_topic(topic_data("dsa"))
        result = await store.create_subtopic(subtopic_data("dsa", "arrays"))
        assert result.subtopics[0].metadata.article_count == 0

        result = await store.create_article(article_data("two-sum"))
        assert result.entity.slug == "two-sum"
        assert await count_of(store, "dsa") == 1
        assert await count_of(store, "dsa", "arrays") == 1
        assert (await store.get_topic("dsa")).metadata.last_updated is not None
        assert "/articles/dsa/two-sum" in result.revalidated
        assert "/articles/dsa" in result.revalidated
        assert "/sitemap.xml" in result.revalidated

        await store.create_topic(topic_data("web"))
        result = await store.update_article("two-sum", {"topic_slug": "web"})
        assert result.entity.topic_slug == "web"
        assert result.entity.subtopic_slug is None
        assert await count_of(store, "dsa") == 0
        assert await count_of(store, "dsa", "arrays") == 0
        assert await count_of(store, "web") == 1
        assert {t.slug for t in result.topics} == {"dsa", "web"}

        await store.delete_article("two-sum")
        assert await count_of(store, "web") == 0
        assert await store.get_article("two-sum") is None


# ============================================================
# Counter invariant
# ============================================================


class TestCounters:
    @pytest.mark.asyncio
    async def test_only_published_counted(self, seeded):
        await seeded.create_article(article_data("one"))
        await seeded.create_article(article_data("two", published=False))
        assert await count_of(seeded, "dsa") == 1
        assert await count_of(seeded, "dsa", "arrays") == 1

    @pytest.mark.asyncio
    async def test_toggle_published_updates_counts(self, seeded):
        await seeded.create_article(article_data("one", published=False))
        result = await seeded.toggle_article_published("one")
        assert result.entity.published is True
        assert result.entity.published_at is not None
        assert await count_of(seeded, "dsa") == 1

        await seeded.toggle_article_published("one")
        assert await count_of(seeded, "dsa") == 0

    @pytest.mark.asyncio
    async def test_published_at_kept_on_republish(self, seeded):
        await seeded.create_article(article_data("one"))
        first = (await seeded.get_article("one")).published_at
        await seeded.toggle_article_published("one")
        result = await seeded.toggle_article_published("one")
        assert result.entity.published_at == first

    @pytest.mark.asyncio
    async def test_ungrouped_article_counts_for_topic_only(self, seeded):
        await seeded.create_article(article_data("loose", subtopic_slug=None))
        assert await count_of(seeded, "dsa") == 1
        assert await count_of(seeded, "dsa", "arrays") == 0

    @pytest.mark.asyncio
    async def test_move_between_subtopics(self, seeded):
        await seeded.create_subtopic(subtopic_data("dsa", "graphs"))
        await seeded.create_article(article_data("bfs"))
        await seeded.update_article("bfs", {"subtopic_slug": "graphs"})
        assert await count_of(seeded, "dsa", "arrays") == 0
        assert await count_of(seeded, "dsa", "graphs") == 1
        assert await count_of(seeded, "dsa") == 1

    @pytest.mark.asyncio
    async def test_counter_matches_recount(self, seeded, storage):
        for slug in ["aaa", "bbb", "ccc"]:
            await seeded.create_article(article_data(slug))
        await seeded.toggle_article_published("bbb")
        await seeded.delete_article("ccc")
        published = await storage.count(
            CONTENT, {"type": "article", "topic_slug": "dsa", "published": True}
        )
        assert await count_of(seeded, "dsa") == published == 1

    @pytest.mark.asyncio
    async def test_reconciliation_failure_is_not_fatal(self, seeded, storage, monkeypatch, caplog):
        async def broken(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(storage, "store_count", broken)
        with caplog.at_level(logging.ERROR, logger="quire.core.taxonomy"):
            result = await seeded.create_article(article_data("one"))
        assert result.entity.slug == "one"
        assert await seeded.get_article("one") is not None
        assert await count_of(seeded, "dsa") == 0
        assert "Failed to reconcile" in caplog.text

        monkeypatch.undo()
        await seeded.resync_counters()
        assert await count_of(seeded, "dsa") == 1
        assert await count_of(seeded, "dsa", "arrays") == 1

    @pytest.mark.asyncio
    async def test_resync_keeps_last_updated(self, seeded, storage):
        await seeded.create_article(article_data("one"))
        before = (await seeded.get_topic("dsa")).metadata.last_updated
        await storage.update("topics", "dsa", {"metadata.article_count": 42})
        await seeded.resync_counters()
        topic = await seeded.get_topic("dsa")
        assert topic.metadata.article_count == 1
        assert topic.metadata.last_updated == before

    @pytest.mark.asyncio
    async def test_counter_fields_not_accepted(self, seeded):
        with pytest.raises(ValidationError):
            await seeded.update_topic("dsa", {"metadata": {"article_count": 5}})


# ============================================================
# Topics
# ============================================================


class TestTopics:
    @pytest.mark.asyncio
    async def test_duplicate_slug(self, store):
        await store.create_topic(topic_data("dsa"))
        with pytest.raises(ConflictError):
            await store.create_topic(topic_data("dsa"))

    @pytest.mark.asyncio
    async def test_invalid_slug(self, store):
        with pytest.raises(ValidationError):
            await store.create_topic(topic_data("Bad Slug"))

    @pytest.mark.asyncio
    async def test_title_too_short(self, store):
        with pytest.raises(ValidationError):
            await store.create_topic({"title": "ab", "slug": "abc"})

    @pytest.mark.asyncio
    async def test_update_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.update_topic("nope", {"title": "Whatever"})

    @pytest.mark.asyncio
    async def test_order_tie_broken_by_creation(self, store):
        await store.create_topic(topic_data("zzz", order=1))
        await store.create_topic(topic_data("aaa", order=1))
        await store.create_topic(topic_data("mmm", order=0))
        assert [t.slug for t in await store.list_topics()] == ["mmm", "zzz", "aaa"]

    @pytest.mark.asyncio
    async def test_reorder(self, store):
        for slug in ["aaa", "bbb", "ccc"]:
            await store.create_topic(topic_data(slug))
        result = await store.reorder_topics(["ccc", "aaa", "bbb"])
        assert [t.slug for t in result.topics] == ["ccc", "aaa", "bbb"]

    @pytest.mark.asyncio
    async def test_reorder_empty(self, store):
        with pytest.raises(BadRequestError):
            await store.reorder_topics([])

    @pytest.mark.asyncio
    async def test_unpublished_hidden_from_public_listing(self, store):
        await store.create_topic(topic_data("aaa"))
        await store.create_topic(topic_data("bbb", published=False))
        assert [t.slug for t in await store.list_topics(published_only=True)] == ["aaa"]
        assert await store.get_topic("bbb", published_only=True) is None

    @pytest.mark.asyncio
    async def test_toggle_featured(self, store):
        await store.create_topic(topic_data("dsa"))
        result = await store.toggle_topic_featured("dsa")
        assert result.entity.featured is True
        assert [t.slug for t in await store.list_featured_topics()] == ["dsa"]

    @pytest.mark.asyncio
    async def test_rename_repoints_children(self, seeded):
        await seeded.create_article(article_data("one"))
        result = await seeded.update_topic("dsa", {"slug": "algorithms"})
        assert result.entity.slug == "algorithms"
        assert result.entity.metadata.article_count == 1
        assert (await seeded.get_article("one")).topic_slug == "algorithms"
        assert await seeded.get_subtopic("algorithms", "arrays") is not None
        assert "/articles/dsa" in result.revalidated
        assert "/articles/algorithms" in result.revalidated

    @pytest.mark.asyncio
    async def test_delete_leaves_orphans(self, seeded):
        await seeded.create_article(article_data("one"))
        await seeded.delete_topic("dsa")
        assert await seeded.get_topic("dsa") is None
        assert await seeded.get_article("one") is not None
        assert await seeded.get_subtopic("dsa", "arrays") is not None
        assert await seeded.get_topic_tree("dsa") is None

    @pytest.mark.asyncio
    async def test_recreated_topic_adopts_orphans(self, seeded):
        await seeded.create_article(article_data("one"))
        await seeded.delete_topic("dsa")
        result = await seeded.create_topic(topic_data("dsa"))
        assert result.entity.metadata.article_count == 1

    @pytest.mark.asyncio
    async def test_topic_page_invalidated(self, store, cache):
        cache.put("/articles/dsa", "stale")
        await store.create_topic(topic_data("dsa"))
        assert "/articles/dsa" not in cache


# ============================================================
# Subtopics
# ============================================================


class TestSubtopics:
    @pytest.mark.asyncio
    async def test_missing_parent(self, store):
        with pytest.raises(BadRequestError, match="Parent topic not found"):
            await store.create_subtopic(subtopic_data("nope", "arrays"))

    @pytest.mark.asyncio
    async def test_slug_unique_per_topic(self, seeded):
        with pytest.raises(ConflictError):
            await seeded.create_subtopic(subtopic_data("dsa", "arrays"))

    @pytest.mark.asyncio
    async def test_same_slug_in_other_topic(self, seeded):
        await seeded.create_topic(topic_data("web"))
        result = await seeded.create_subtopic(subtopic_data("web", "arrays"))
        assert result.entity.topic_slug == "web"

    @pytest.mark.asyncio
    async def test_rename_repoints_articles(self, seeded):
        await seeded.create_article(article_data("one"))
        result = await seeded.update_subtopic("dsa", "arrays", {"slug": "lists"})
        assert result.entity.slug == "lists"
        assert result.entity.metadata.article_count == 1
        assert (await seeded.get_article("one")).subtopic_slug == "lists"

    @pytest.mark.asyncio
    async def test_delete_leaves_articles_ungrouped(self, seeded):
        await seeded.create_article(article_data("one"))
        await seeded.delete_subtopic("dsa", "arrays")
        tree = await seeded.get_topic_tree("dsa")
        assert tree.subtopics == []
        assert [a.slug for a in tree.ungrouped] == ["one"]
        assert await count_of(seeded, "dsa") == 1

    @pytest.mark.asyncio
    async def test_reorder(self, seeded):
        await seeded.create_subtopic(subtopic_data("dsa", "graphs"))
        result = await seeded.reorder_subtopics("dsa", ["graphs", "arrays"])
        assert [s.slug for s in result.subtopics] == ["graphs", "arrays"]

    @pytest.mark.asyncio
    async def test_toggle_published(self, seeded):
        result = await seeded.toggle_subtopic_published("dsa", "arrays")
        assert result.entity.published is False


# ============================================================
# Articles
# ============================================================


class TestArticles:
    @pytest.mark.asyncio
    async def test_rendered_fields(self, seeded):
        result = await seeded.create_article(article_data("one"))
        article = result.entity
        assert '<h1 id="intro">' in article.html
        assert [item.id for item in article.toc] == ["intro", "details"]
        assert article.reading_time == 1
        assert article.excerpt.startswith("Intro Some text")

    @pytest.mark.asyncio
    async def test_body_update_rerenders(self, seeded):
        await seeded.create_article(article_data("one"))
        result = await seeded.update_article("one", {"body": "## Fresh start"})
        assert 'id="fresh-start"' in result.entity.html
        assert [item.id for item in result.entity.toc] == ["fresh-start"]

    @pytest.mark.asyncio
    async def test_slug_globally_unique(self, seeded):
        await seeded.create_topic(topic_data("web"))
        await seeded.create_article(article_data("one"))
        with pytest.raises(ConflictError):
            await seeded.create_article(article_data("one", topic_slug="web", subtopic_slug=None))

    @pytest.mark.asyncio
    async def test_missing_topic(self, store):
        with pytest.raises(BadRequestError, match="Topic not found"):
            await store.create_article(article_data("one", topic_slug="nope"))

    @pytest.mark.asyncio
    async def test_missing_subtopic(self, seeded):
        with pytest.raises(BadRequestError, match="Subtopic not found"):
            await seeded.create_article(article_data("one", subtopic_slug="nope"))

    @pytest.mark.asyncio
    async def test_validation_before_write(self, seeded):
        with pytest.raises(ValidationError):
            await seeded.create_article(article_data("one", body=""))
        assert await seeded.get_article("one") is None

    @pytest.mark.asyncio
    async def test_update_missing(self, seeded):
        with pytest.raises(NotFoundError):
            await seeded.update_article("nope", {"title": "Something"})

    @pytest.mark.asyncio
    async def test_rename_conflict(self, seeded):
        await seeded.create_article(article_data("one"))
        await seeded.create_article(article_data("two"))
        with pytest.raises(ConflictError):
            await seeded.update_article("one", {"slug": "two"})

    @pytest.mark.asyncio
    async def test_rename_carries_stats(self, seeded, storage):
        stats = StatsCounter(storage)
        await seeded.create_article(article_data("one"))
        await stats.increment_view("one")
        result = await seeded.update_article("one", {"slug": "uno"})
        assert (await stats.get_stats("uno")).views == 1
        assert "/articles/one" in result.revalidated
        assert "/articles/dsa/uno" in result.revalidated

    @pytest.mark.asyncio
    async def test_delete_removes_stats(self, seeded, storage):
        stats = StatsCounter(storage)
        await seeded.create_article(article_data("one"))
        await stats.increment_view("one")
        await seeded.delete_article("one")
        assert (await stats.get_stats("one")).views == 0

    @pytest.mark.asyncio
    async def test_list_order_tie_break(self, seeded):
        await seeded.create_article(article_data("ccc", order=1))
        await seeded.create_article(article_data("aaa", order=1))
        await seeded.create_article(article_data("bbb", order=0))
        slugs = [a.slug for a in await seeded.list_articles("dsa")]
        assert slugs == ["bbb", "ccc", "aaa"]

    @pytest.mark.asyncio
    async def test_reorder(self, seeded):
        for slug in ["aaa", "bbb", "ccc"]:
            await seeded.create_article(article_data(slug))
        await seeded.reorder_articles("dsa", "arrays", ["ccc", "bbb", "aaa"])
        slugs = [a.slug for a in await seeded.list_articles("dsa", "arrays")]
        assert slugs == ["ccc", "bbb", "aaa"]

    @pytest.mark.asyncio
    async def test_topic_tree(self, seeded):
        await seeded.create_article(article_data("one"))
        await seeded.create_article(article_data("loose", subtopic_slug=None))
        await seeded.create_article(article_data("draft", published=False))
        tree = await seeded.get_topic_tree("dsa")
        assert [a.slug for a in tree.articles_by_subtopic["arrays"]] == ["one"]
        assert [a.slug for a in tree.ungrouped] == ["loose"]

    @pytest.mark.asyncio
    async def test_toggle_featured(self, seeded):
        await seeded.create_article(article_data("one"))
        result = await seeded.toggle_article_featured("one")
        assert result.entity.featured is True


# ============================================================
# Revalidation
# ============================================================


class TestRevalidation:
    @pytest.mark.asyncio
    async def test_failure_after_commit(self, storage):
        store = TaxonomyStore(storage, Revalidator([BrokenBackend()]))
        with pytest.raises(RevalidationError):
            await store.create_topic(topic_data("dsa"))
        assert await store.get_topic("dsa") is not None

    @pytest.mark.asyncio
    async def test_article_write_and_counters_survive_failure(self, storage):
        ok = TaxonomyStore(storage, Revalidator([]))
        await ok.create_topic(topic_data("dsa"))
        broken = TaxonomyStore(storage, Revalidator([BrokenBackend()]))
        with pytest.raises(RevalidationError):
            await broken.create_article(article_data("one", subtopic_slug=None))
        assert await ok.get_article("one") is not None
        assert await count_of(ok, "dsa") == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "mutate",
        [
            lambda s: s.toggle_topic_published("dsa"),
            lambda s: s.delete_topic("dsa"),
            lambda s: s.update_topic("dsa", {"title": "Algorithms"}),
            lambda s: s.update_subtopic("dsa", "arrays", {"title": "Lists"}),
            lambda s: s.toggle_subtopic_published("dsa", "arrays"),
            lambda s: s.delete_subtopic("dsa", "arrays"),
        ],
    )
    async def test_parent_changes_drop_article_pages(self, seeded, cache, mutate):
        await seeded.create_article(article_data("one"))
        await seeded.create_article(article_data("loose", subtopic_slug=None))
        cache.put("/articles/dsa/one", "stale")
        result = await mutate(seeded)
        assert "/articles/dsa/one" in result.revalidated
        assert "/articles/dsa/one" not in cache

    @pytest.mark.asyncio
    async def test_topic_rename_drops_pages_under_both_slugs(self, seeded, cache):
        await seeded.create_article(article_data("one"))
        cache.put("/articles/dsa/one", "stale")
        result = await seeded.update_topic("dsa", {"slug": "algorithms"})
        assert "/articles/dsa/one" in result.revalidated
        assert "/articles/algorithms/one" in result.revalidated
        assert "/articles/dsa/one" not in cache

    @pytest.mark.asyncio
    async def test_subtopic_rename_drops_article_pages(self, seeded, cache):
        await seeded.create_article(article_data("one"))
        cache.put("/articles/dsa/one", "stale")
        result = await seeded.update_subtopic("dsa", "arrays", {"slug": "lists"})
        assert "/articles/dsa/one" in result.revalidated
        assert "/articles/dsa/one" not in cache

    @pytest.mark.asyncio
    async def test_cached_pages_dropped(self, seeded, cache):
        for path in ["/", "/articles", "/articles/dsa", "/articles/dsa/one", "/notes"]:
            cache.put(path, "stale")
        await seeded.create_article(article_data("one"))
        assert "/articles/dsa/one" not in cache
        assert "/articles/dsa" not in cache
        assert "/" not in cache
        assert "/notes" in cache
