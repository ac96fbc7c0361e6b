"""Document storage abstraction.

Documents are plain JSON-compatible dicts grouped into named collections
and addressed by a key derived from the document's own fields. Every
public operation runs under a single lock, so each call is atomic with
respect to other calls on the same storage instance; in particular
:meth:`Storage.increment` is a single upsert-and-add step with no
read-then-write window for concurrent callers.
"""

import asyncio
import copy
import re
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from urllib.parse import quote

import yaml

TOPICS = "topics"
SUBTOPICS = "subtopics"
CONTENT = "content"
STATS = "page_stats"
PROJECTS = "projects"

# Fields forming each collection's unique key
KEY_FIELDS: dict[str, tuple[str, ...]] = {
    TOPICS: ("slug",),
    SUBTOPICS: ("topic_slug", "slug"),
    CONTENT: ("slug",),
    STATS: ("slug",),
    PROJECTS: ("slug",),
}

Key = tuple[str, ...]
Document = dict[str, Any]


class DuplicateKeyError(Exception):
    """A document with the same key already exists in the collection."""

    def __init__(self, collection: str, key: Key):
        super().__init__(f"Duplicate key {key!r} in {collection}")
        self.collection = collection
        self.key = key


def _get_path(document: Document, path: str, default: Any = None) -> Any:
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return default
        value = value[part]
    return value


def _set_path(document: Document, path: str, value: Any) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    target[parts[-1]] = value


def _matches(document: Document, filters: dict[str, Any] | None) -> bool:
    if not filters:
        return True
    return all(_get_path(document, k) == v for k, v in filters.items())


class Storage(ABC):
    """Base class for document storage.

    Subclasses provide raw per-document persistence; querying, key
    handling and atomic updates are implemented here.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    # ----- raw persistence -----

    @abstractmethod
    def _read(self, collection: str, key: Key) -> Document | None:
        """Load one document, or None."""
        ...

    @abstractmethod
    def _write(self, collection: str, key: Key, document: Document) -> None:
        """Persist one document, replacing any previous version."""
        ...

    @abstractmethod
    def _remove(self, collection: str, key: Key) -> bool:
        """Remove one document. Returns True if it existed."""
        ...

    @abstractmethod
    def _scan(self, collection: str) -> Iterator[Document]:
        """Iterate over every document of a collection."""
        ...

    # ----- keys -----

    @staticmethod
    def key_of(collection: str, document: Document) -> Key:
        """Return the unique key of a document."""
        return tuple(str(document[field]) for field in KEY_FIELDS[collection])

    @staticmethod
    def _normalize_key(key: str | Key) -> Key:
        return (key,) if isinstance(key, str) else tuple(key)

    # ----- public API -----

    async def get(self, collection: str, key: str | Key) -> Document | None:
        """Get a document by key. Returns None if not found."""
        async with self._lock:
            return self._read(collection, self._normalize_key(key))

    async def find(
        self, collection: str, filters: dict[str, Any] | None = None
    ) -> list[Document]:
        """Return documents whose fields equal every filter value.

        Dotted filter names address nested fields (``metadata.article_count``).
        """
        async with self._lock:
            return [doc for doc in self._scan(collection) if _matches(doc, filters)]

    async def count(
        self, collection: str, filters: dict[str, Any] | None = None
    ) -> int:
        """Count documents matching filters."""
        async with self._lock:
            return sum(1 for doc in self._scan(collection) if _matches(doc, filters))

    async def insert(self, collection: str, document: Document) -> Document:
        """Insert a new document. Raises DuplicateKeyError if the key is taken."""
        key = self.key_of(collection, document)
        async with self._lock:
            if self._read(collection, key) is not None:
                raise DuplicateKeyError(collection, key)
            self._write(collection, key, copy.deepcopy(document))
            return copy.deepcopy(document)

    async def update(
        self, collection: str, key: str | Key, changes: dict[str, Any]
    ) -> Document | None:
        """Set fields on a document.

        Changing a key field moves the document to its new key; the move
        fails with DuplicateKeyError if that key is taken.

        Returns:
            The updated document, or None if no document has the key.
        """
        key = self._normalize_key(key)
        async with self._lock:
            document = self._read(collection, key)
            if document is None:
                return None
            for path, value in changes.items():
                _set_path(document, path, value)
            new_key = self.key_of(collection, document)
            if new_key != key:
                if self._read(collection, new_key) is not None:
                    raise DuplicateKeyError(collection, new_key)
                self._remove(collection, key)
            self._write(collection, new_key, document)
            return copy.deepcopy(document)

    async def update_many(
        self,
        collection: str,
        filters: dict[str, Any],
        changes: dict[str, Any],
    ) -> int:
        """Set fields on every matching document. Returns the match count.

        Documents whose key would collide with an existing one are skipped.
        """
        updated = 0
        async with self._lock:
            for document in list(self._scan(collection)):
                if not _matches(document, filters):
                    continue
                old_key = self.key_of(collection, document)
                for path, value in changes.items():
                    _set_path(document, path, value)
                new_key = self.key_of(collection, document)
                if new_key != old_key:
                    if self._read(collection, new_key) is not None:
                        continue
                    self._remove(collection, old_key)
                self._write(collection, new_key, document)
                updated += 1
        return updated

    async def delete(self, collection: str, key: str | Key) -> bool:
        """Delete a document. Returns True if deleted, False if not found."""
        async with self._lock:
            return self._remove(collection, self._normalize_key(key))

    async def increment(
        self,
        collection: str,
        key: str | Key,
        field: str,
        delta: int = 1,
        *,
        floor: int | None = None,
        set_fields: dict[str, Any] | None = None,
        set_on_insert: dict[str, Any] | None = None,
    ) -> Document:
        """Atomically add ``delta`` to a numeric field, creating the document.

        Missing documents are created from their key fields plus
        ``set_on_insert`` with the counter starting at zero. The result is
        clamped at ``floor`` when one is given.

        Returns:
            The document after the increment.
        """
        key = self._normalize_key(key)
        async with self._lock:
            document = self._read(collection, key)
            if document is None:
                document = dict(zip(KEY_FIELDS[collection], key))
                for path, value in (set_on_insert or {}).items():
                    _set_path(document, path, value)
            current = _get_path(document, field, 0) or 0
            value = current + delta
            if floor is not None:
                value = max(floor, value)
            _set_path(document, field, value)
            for path, extra in (set_fields or {}).items():
                _set_path(document, path, extra)
            self._write(collection, key, document)
            return copy.deepcopy(document)

    async def store_count(
        self,
        collection: str,
        key: str | Key,
        field: str,
        source: str,
        filters: dict[str, Any],
        set_fields: dict[str, Any] | None = None,
    ) -> Document | None:
        """Atomically count matching ``source`` documents into ``field``.

        The count and the write happen under one lock, so a concurrent
        writer cannot slip in between and leave an older count behind.

        Returns:
            The updated document, or None if no document has the key.
        """
        key = self._normalize_key(key)
        async with self._lock:
            document = self._read(collection, key)
            if document is None:
                return None
            total = sum(1 for doc in self._scan(source) if _matches(doc, filters))
            _set_path(document, field, total)
            for path, value in (set_fields or {}).items():
                _set_path(document, path, value)
            self._write(collection, key, document)
            return copy.deepcopy(document)

    async def close(self) -> None:
        """Release any resources held by the storage."""


class MemoryStorage(Storage):
    """In-process storage, used by tests and ephemeral deployments."""

    def __init__(self) -> None:
        super().__init__()
        self._collections: dict[str, dict[Key, Document]] = {}

    def _read(self, collection: str, key: Key) -> Document | None:
        document = self._collections.get(collection, {}).get(key)
        return copy.deepcopy(document) if document is not None else None

    def _write(self, collection: str, key: Key, document: Document) -> None:
        self._collections.setdefault(collection, {})[key] = copy.deepcopy(document)

    def _remove(self, collection: str, key: Key) -> bool:
        return self._collections.get(collection, {}).pop(key, None) is not None

    def _scan(self, collection: str) -> Iterator[Document]:
        for document in list(self._collections.get(collection, {}).values()):
            yield copy.deepcopy(document)


class FileStorage(Storage):
    """File-based storage implementation.

    Each collection is a directory under ``base_path`` holding one YAML file
    per document. Content documents are stored as Markdown files whose YAML
    frontmatter carries every field except ``body``.
    File naming: key parts joined by ``__`` (e.g. ``dsa__arrays.yaml``).
    """

    FRONTMATTER_PATTERN = re.compile(
        r"^---[ \t]*\n(.*?)\n---[ \t]*\n",
        re.DOTALL,
    )
    KEY_SEPARATOR = "__"

    def __init__(self, base_path: Path):
        super().__init__()
        self.base_path = base_path
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _suffix(self, collection: str) -> str:
        return ".md" if collection == CONTENT else ".yaml"

    def _key_to_filename(self, collection: str, key: Key) -> str:
        """Convert a document key to a filename."""
        parts = [quote(part, safe="-.").replace("_", "%5F") for part in key]
        return self.KEY_SEPARATOR.join(parts) + self._suffix(collection)

    def _collection_path(self, collection: str) -> Path:
        path = self.base_path / collection
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _get_path(self, collection: str, key: Key) -> Path:
        """Get full path for a document."""
        return self._collection_path(collection) / self._key_to_filename(
            collection, key
        )

    def _parse_frontmatter(self, content: str) -> tuple[Document, str]:
        """Parse YAML frontmatter from content.

        Returns (fields, content_without_frontmatter).
        """
        match = self.FRONTMATTER_PATTERN.match(content)
        if match:
            try:
                fields = yaml.safe_load(match.group(1)) or {}
                if isinstance(fields, dict):
                    return fields, content[match.end() :]
            except yaml.YAMLError:
                pass
        return {}, content

    def _create_frontmatter(self, fields: Document) -> str:
        """Create YAML frontmatter string from document fields."""
        if not fields:
            return ""
        dumped = yaml.safe_dump(fields, default_flow_style=False, sort_keys=True)
        return f"---\n{dumped}---\n"

    def _load_file(self, collection: str, path: Path) -> Document | None:
        raw = path.read_text(encoding="utf-8")
        if collection == CONTENT:
            fields, body = self._parse_frontmatter(raw)
            if not fields:
                return None
            fields["body"] = body
            return fields
        document = yaml.safe_load(raw)
        return document if isinstance(document, dict) else None

    def _read(self, collection: str, key: Key) -> Document | None:
        path = self._get_path(collection, key)
        if not path.exists():
            return None
        return self._load_file(collection, path)

    def _write(self, collection: str, key: Key, document: Document) -> None:
        path = self._get_path(collection, key)
        if collection == CONTENT:
            fields = {k: v for k, v in document.items() if k != "body"}
            text = self._create_frontmatter(fields) + document.get("body", "")
        else:
            text = yaml.safe_dump(document, default_flow_style=False, sort_keys=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(text, encoding="utf-8")
        tmp_path.replace(path)

    def _remove(self, collection: str, key: Key) -> bool:
        path = self._get_path(collection, key)
        if path.exists():
            path.unlink()
            return True
        return False

    def _scan(self, collection: str) -> Iterator[Document]:
        suffix = self._suffix(collection)
        for path in sorted(self._collection_path(collection).glob(f"*{suffix}")):
            document = self._load_file(collection, path)
            if document is not None:
                yield document

