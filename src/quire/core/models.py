"""Data models for Quire."""

from datetime import datetime
from enum import Enum
from typing import Annotated

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    StringConstraints,
    field_validator,
    model_validator,
)

SLUG_PATTERN = r"^[a-z0-9-]+$"

Slug = Annotated[
    str, StringConstraints(min_length=3, max_length=100, pattern=SLUG_PATTERN)
]
Title = Annotated[str, StringConstraints(min_length=3, max_length=100)]
ParentSlug = Annotated[str, StringConstraints(min_length=1)]

NOTE_BODY_MIN_LENGTH = 100


class ContentType(str, Enum):
    """Discriminator for entries in the content collection."""

    ARTICLE = "article"
    NOTE = "note"
    SERIES = "series"
    LOG = "log"
    PAGE = "page"


class LikeAction(str, Enum):
    LIKE = "like"
    UNLIKE = "unlike"


class TocItem(BaseModel):
    """One entry of a table of contents."""

    id: str
    text: str
    level: int


class RenderResult(BaseModel):
    """Output of the markdown renderer."""

    html: str
    reading_time_minutes: int
    toc_html: str = ""


# ============================================================
# Stored entities
# ============================================================


class TopicMetadata(BaseModel):
    """Denormalized aggregates, written only by counter reconciliation."""

    article_count: int = Field(default=0, ge=0)
    last_updated: datetime | None = None


class Topic(BaseModel):
    """Top-level content category."""

    slug: str
    title: str
    description: str = ""
    icon: str | None = None
    cover_image: str | None = None
    order: int = 0
    published: bool = False
    featured: bool = False
    metadata: TopicMetadata = Field(default_factory=TopicMetadata)
    created_at: datetime
    updated_at: datetime


class Subtopic(BaseModel):
    """Sub-category within a topic. Slugs are unique per topic only."""

    topic_slug: str
    slug: str
    title: str
    description: str = ""
    order: int = 0
    published: bool = False
    metadata: TopicMetadata = Field(default_factory=TopicMetadata)
    created_at: datetime
    updated_at: datetime


class Content(BaseModel):
    """An article, note, series, log or page.

    ``html``, ``toc``, ``excerpt`` and ``reading_time`` are derived from
    ``body`` and regenerated whenever it changes.
    """

    type: ContentType
    slug: str
    title: str
    description: str = ""
    body: str
    html: str = ""
    toc: list[TocItem] = Field(default_factory=list)
    excerpt: str = ""
    reading_time: int = 1
    tags: list[str] = Field(default_factory=list)
    cover_image: str | None = None
    featured: bool = False
    published: bool = False
    published_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    # Article-only placement
    topic_slug: str | None = None
    subtopic_slug: str | None = None
    order: int = 0


class PageStats(BaseModel):
    """View and like counters for one content slug."""

    slug: str
    views: int = 0
    likes: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_viewed_at: datetime | None = None


class TopicTree(BaseModel):
    """A topic with its subtopics and published articles grouped beneath them."""

    topic: Topic
    subtopics: list[Subtopic] = Field(default_factory=list)
    articles_by_subtopic: dict[str, list[Content]] = Field(default_factory=dict)
    ungrouped: list[Content] = Field(default_factory=list)


class MutationResult(BaseModel):
    """Outcome of a successful admin mutation."""

    message: str
    entity: "Topic | Subtopic | Content | Project | None" = None
    topics: list[Topic] = Field(default_factory=list)
    subtopics: list[Subtopic] = Field(default_factory=list)
    revalidated: list[str] = Field(default_factory=list)


# ============================================================
# Admin input schemas
# ============================================================


class _InputModel(BaseModel):
    """Base for admin payloads. Derived and counter fields are not accepted."""

    model_config = ConfigDict(extra="forbid")

    @field_validator("cover_image", mode="before", check_fields=False)
    @classmethod
    def _empty_cover_image(cls, value):
        return value or None


class TopicInput(_InputModel):
    title: Title
    slug: Slug
    description: str = Field(default="", max_length=500)
    icon: str | None = None
    cover_image: str | None = None
    order: int = Field(default=0, ge=0)
    published: bool = False
    featured: bool = False


class TopicUpdate(_InputModel):
    title: Title | None = None
    slug: Slug | None = None
    description: str | None = Field(default=None, max_length=500)
    icon: str | None = None
    cover_image: str | None = None
    order: int | None = Field(default=None, ge=0)
    published: bool | None = None
    featured: bool | None = None


class SubtopicInput(_InputModel):
    topic_slug: ParentSlug
    title: Title
    slug: Slug
    description: str = Field(default="", max_length=500)
    order: int = Field(default=0, ge=0)
    published: bool = False


class SubtopicUpdate(_InputModel):
    title: Title | None = None
    slug: Slug | None = None
    description: str | None = Field(default=None, max_length=500)
    order: int | None = Field(default=None, ge=0)
    published: bool | None = None


class ArticleInput(_InputModel):
    title: Title
    slug: Slug
    description: str = Field(default="", max_length=160)
    body: str = Field(min_length=1)
    topic_slug: ParentSlug
    subtopic_slug: str | None = None
    tags: list[str] = Field(default_factory=list)
    cover_image: str | None = None
    order: int = Field(default=0, ge=0)
    published: bool = False
    featured: bool = False


class ArticleUpdate(_InputModel):
    title: Title | None = None
    slug: Slug | None = None
    description: str | None = Field(default=None, max_length=160)
    body: str | None = Field(default=None, min_length=1)
    topic_slug: ParentSlug | None = None
    subtopic_slug: str | None = None
    tags: list[str] | None = None
    cover_image: str | None = None
    order: int | None = Field(default=None, ge=0)


class EntryInput(_InputModel):
    """Payload for a note, series, log or page."""

    type: ContentType = ContentType.NOTE
    title: Title
    slug: Slug
    description: str = Field(default="", max_length=160)
    body: str = Field(min_length=1)
    tags: list[str] = Field(default_factory=list)
    cover_image: str | None = None
    published: bool = False
    featured: bool = False

    @model_validator(mode="after")
    def _check_type_and_body(self) -> "EntryInput":
        if self.type == ContentType.ARTICLE:
            raise ValueError("Articles are created through the taxonomy")
        if self.type == ContentType.NOTE and len(self.body) < NOTE_BODY_MIN_LENGTH:
            raise ValueError(
                f"Note body must be at least {NOTE_BODY_MIN_LENGTH} characters"
            )
        return self


class EntryUpdate(_InputModel):
    title: Title | None = None
    slug: Slug | None = None
    description: str | None = Field(default=None, max_length=160)
    body: str | None = Field(default=None, min_length=1)
    tags: list[str] | None = None
    cover_image: str | None = None


# ============================================================
# Projects
# ============================================================


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    WIP = "wip"
    ARCHIVED = "archived"


class Project(BaseModel):
    """A portfolio project. ``html`` is rendered from ``long_description``."""

    slug: str
    title: str
    description: str
    long_description: str | None = None
    html: str = ""
    cover_image: str | None = None
    tags: list[str] = Field(default_factory=list)
    tech_stack: list[str] = Field(default_factory=list)
    github_url: str | None = None
    live_url: str | None = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    featured: bool = False
    order: int = 0
    created_at: datetime
    updated_at: datetime


class ProjectInput(_InputModel):
    title: Title
    slug: Slug
    description: str = Field(min_length=1, max_length=300)
    long_description: str | None = Field(default=None, min_length=50)
    cover_image: str | None = None
    tags: list[str] = Field(default_factory=list)
    tech_stack: list[str] = Field(min_length=1)
    github_url: HttpUrl | None = None
    live_url: HttpUrl | None = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    featured: bool = False
    order: int = Field(default=0, ge=0)

    @field_validator("github_url", "live_url", "long_description", mode="before")
    @classmethod
    def _empty_to_none(cls, value):
        return value or None


class ProjectUpdate(_InputModel):
    title: Title | None = None
    slug: Slug | None = None
    description: str | None = Field(default=None, min_length=1, max_length=300)
    long_description: str | None = Field(default=None, min_length=50)
    cover_image: str | None = None
    tags: list[str] | None = None
    tech_stack: list[str] | None = Field(default=None, min_length=1)
    github_url: HttpUrl | None = None
    live_url: HttpUrl | None = None
    status: ProjectStatus | None = None
    featured: bool | None = None
    order: int | None = Field(default=None, ge=0)

    @field_validator("github_url", "live_url", "long_description", mode="before")
    @classmethod
    def _empty_to_none(cls, value):
        return value or None


MutationResult.model_rebuild()
