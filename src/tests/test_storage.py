"""Unit tests for document storage."""

import asyncio

import pytest

from quire.core.storage import (
    CONTENT,
    STATS,
    SUBTOPICS,
    TOPICS,
    DuplicateKeyError,
    FileStorage,
    MemoryStorage,
)


@pytest.fixture(params=["memory", "file"])
def storage(request, tmp_path):
    if request.param == "memory":
        return MemoryStorage()
    return FileStorage(tmp_path)


@pytest.fixture
def file_storage(tmp_path):
    return FileStorage(tmp_path)


def topic(slug: str, **fields) -> dict:
    return {"slug": slug, "title": slug.title(), **fields}


# ============================================================
# Basic CRUD
# ============================================================


class TestCrud:
    @pytest.mark.asyncio
    async def test_insert_and_get(self, storage):
        await storage.insert(TOPICS, topic("dsa"))
        doc = await storage.get(TOPICS, "dsa")
        assert doc == {"slug": "dsa", "title": "Dsa"}

    @pytest.mark.asyncio
    async def test_get_missing(self, storage):
        assert await storage.get(TOPICS, "nope") is None

    @pytest.mark.asyncio
    async def test_insert_duplicate(self, storage):
        await storage.insert(TOPICS, topic("dsa"))
        with pytest.raises(DuplicateKeyError):
            await storage.insert(TOPICS, topic("dsa"))

    @pytest.mark.asyncio
    async def test_composite_key(self, storage):
        await storage.insert(SUBTOPICS, {"topic_slug": "dsa", "slug": "arrays"})
        await storage.insert(SUBTOPICS, {"topic_slug": "web", "slug": "arrays"})
        assert await storage.get(SUBTOPICS, ("dsa", "arrays")) is not None
        assert await storage.count(SUBTOPICS) == 2

    @pytest.mark.asyncio
    async def test_find_with_filters(self, storage):
        await storage.insert(TOPICS, topic("aaa", published=True))
        await storage.insert(TOPICS, topic("bbb", published=False))
        found = await storage.find(TOPICS, {"published": True})
        assert [d["slug"] for d in found] == ["aaa"]

    @pytest.mark.asyncio
    async def test_find_nested_filter(self, storage):
        await storage.insert(TOPICS, topic("aaa", metadata={"article_count": 2}))
        await storage.insert(TOPICS, topic("bbb", metadata={"article_count": 0}))
        found = await storage.find(TOPICS, {"metadata.article_count": 2})
        assert [d["slug"] for d in found] == ["aaa"]

    @pytest.mark.asyncio
    async def test_update_fields(self, storage):
        await storage.insert(TOPICS, topic("dsa", metadata={"article_count": 0}))
        doc = await storage.update(TOPICS, "dsa", {"title": "DSA", "metadata.article_count": 3})
        assert doc["title"] == "DSA"
        assert doc["metadata"]["article_count"] == 3

    @pytest.mark.asyncio
    async def test_update_missing(self, storage):
        assert await storage.update(TOPICS, "nope", {"title": "x"}) is None

    @pytest.mark.asyncio
    async def test_update_key_moves_document(self, storage):
        await storage.insert(TOPICS, topic("old"))
        await storage.update(TOPICS, "old", {"slug": "new"})
        assert await storage.get(TOPICS, "old") is None
        assert (await storage.get(TOPICS, "new"))["title"] == "Old"

    @pytest.mark.asyncio
    async def test_update_key_collision(self, storage):
        await storage.insert(TOPICS, topic("aaa"))
        await storage.insert(TOPICS, topic("bbb"))
        with pytest.raises(DuplicateKeyError):
            await storage.update(TOPICS, "aaa", {"slug": "bbb"})
        assert await storage.get(TOPICS, "aaa") is not None

    @pytest.mark.asyncio
    async def test_update_many(self, storage):
        await storage.insert(CONTENT, {"slug": "one", "topic_slug": "old", "body": ""})
        await storage.insert(CONTENT, {"slug": "two", "topic_slug": "old", "body": ""})
        await storage.insert(CONTENT, {"slug": "three", "topic_slug": "other", "body": ""})
        assert await storage.update_many(CONTENT, {"topic_slug": "old"}, {"topic_slug": "new"}) == 2
        assert await storage.count(CONTENT, {"topic_slug": "new"}) == 2

    @pytest.mark.asyncio
    async def test_delete(self, storage):
        await storage.insert(TOPICS, topic("dsa"))
        assert await storage.delete(TOPICS, "dsa") is True
        assert await storage.delete(TOPICS, "dsa") is False

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, storage):
        await storage.insert(TOPICS, topic("dsa", tags=["a"]))
        doc = await storage.get(TOPICS, "dsa")
        doc["tags"].append("b")
        assert (await storage.get(TOPICS, "dsa"))["tags"] == ["a"]


# ============================================================
# Atomic counters
# ============================================================


class TestIncrement:
    @pytest.mark.asyncio
    async def test_upsert_starts_at_zero(self, storage):
        doc = await storage.increment(STATS, "post", "views", set_on_insert={"likes": 0})
        assert doc == {"slug": "post", "views": 1, "likes": 0}

    @pytest.mark.asyncio
    async def test_set_on_insert_only_once(self, storage):
        await storage.increment(STATS, "post", "views", set_on_insert={"created_at": "t1"})
        doc = await storage.increment(STATS, "post", "views", set_on_insert={"created_at": "t2"})
        assert doc["created_at"] == "t1"
        assert doc["views"] == 2

    @pytest.mark.asyncio
    async def test_set_fields_every_time(self, storage):
        await storage.increment(STATS, "post", "views", set_fields={"updated_at": "t1"})
        doc = await storage.increment(STATS, "post", "views", set_fields={"updated_at": "t2"})
        assert doc["updated_at"] == "t2"

    @pytest.mark.asyncio
    async def test_floor(self, storage):
        doc = await storage.increment(STATS, "post", "likes", -1, floor=0)
        assert doc["likes"] == 0
        await storage.increment(STATS, "post", "likes", 1, floor=0)
        doc = await storage.increment(STATS, "post", "likes", -5, floor=0)
        assert doc["likes"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_increments_not_lost(self, storage):
        await asyncio.gather(*(storage.increment(STATS, "post", "views") for _ in range(50)))
        assert (await storage.get(STATS, "post"))["views"] == 50


class TestStoreCount:
    @pytest.mark.asyncio
    async def test_counts_matching_documents(self, storage):
        await storage.insert(TOPICS, topic("dsa", metadata={"article_count": 99}))
        for slug, published in [("aaa", True), ("bbb", True), ("ccc", False)]:
            await storage.insert(
                CONTENT, {"slug": slug, "topic_slug": "dsa", "published": published, "body": ""}
            )
        doc = await storage.store_count(
            TOPICS,
            "dsa",
            "metadata.article_count",
            CONTENT,
            {"topic_slug": "dsa", "published": True},
            set_fields={"metadata.last_updated": "now"},
        )
        assert doc["metadata"] == {"article_count": 2, "last_updated": "now"}

    @pytest.mark.asyncio
    async def test_missing_target(self, storage):
        result = await storage.store_count(TOPICS, "nope", "metadata.article_count", CONTENT, {})
        assert result is None


# ============================================================
# File layout
# ============================================================


class TestFileLayout:
    def test_key_to_filename(self, file_storage):
        assert file_storage._key_to_filename(TOPICS, ("dsa",)) == "dsa.yaml"

    def test_composite_key_filename(self, file_storage):
        assert file_storage._key_to_filename(SUBTOPICS, ("dsa", "arrays")) == "dsa__arrays.yaml"

    def test_underscore_escaped(self, file_storage):
        name = file_storage._key_to_filename(SUBTOPICS, ("a_", "_b"))
        assert name.count("__") == 1

    def test_content_filename(self, file_storage):
        assert file_storage._key_to_filename(CONTENT, ("post",)) == "post.md"

    @pytest.mark.asyncio
    async def test_content_stored_as_markdown(self, file_storage, tmp_path):
        await file_storage.insert(CONTENT, {"slug": "post", "title": "Post", "body": "# Hi\n"})
        raw = (tmp_path / CONTENT / "post.md").read_text()
        assert raw.startswith("---\n")
        assert raw.endswith("---\n# Hi\n")
        assert "title: Post" in raw

    @pytest.mark.asyncio
    async def test_body_leading_blank_lines_preserved(self, file_storage):
        await file_storage.insert(CONTENT, {"slug": "post", "body": "\n\nText"})
        assert (await file_storage.get(CONTENT, "post"))["body"] == "\n\nText"

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        await FileStorage(tmp_path).insert(TOPICS, topic("dsa"))
        assert await FileStorage(tmp_path).get(TOPICS, "dsa") is not None

    @pytest.mark.asyncio
    async def test_no_tmp_files_left(self, file_storage, tmp_path):
        await file_storage.insert(TOPICS, topic("dsa"))
        assert list((tmp_path / TOPICS).glob("*.tmp")) == []


class TestParseFrontmatter:
    def test_valid_frontmatter(self, file_storage):
        fields, body = file_storage._parse_frontmatter("---\ntitle: Hello\n---\n\n# Body")
        assert fields == {"title": "Hello"}
        assert body == "\n# Body"

    def test_no_frontmatter(self, file_storage):
        content = "# Just a heading"
        assert file_storage._parse_frontmatter(content) == ({}, content)

    def test_invalid_yaml(self, file_storage):
        content = "---\ntitle: [unclosed\n---\nbody"
        fields, body = file_storage._parse_frontmatter(content)
        assert fields == {}
        assert body == content
