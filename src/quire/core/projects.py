"""Portfolio projects.

Projects live in their own collection and slug space. Their view counters
are kept under ``projects/<slug>`` in the stats collection so they never
collide with a content slug.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from quire.core.errors import ConflictError, NotFoundError
from quire.core.models import MutationResult, Project, ProjectInput, ProjectStatus, ProjectUpdate
from quire.core.parser import render_markdown
from quire.core.revalidate import Revalidator, RevalidationType
from quire.core.stats import StatsCounter
from quire.core.storage import PROJECTS, DuplicateKeyError, Storage
from quire.core.taxonomy import utcnow

logger = logging.getLogger(__name__)

NULLABLE_PROJECT_FIELDS = frozenset({"long_description", "cover_image", "github_url", "live_url"})


def stats_key(slug: str) -> str:
    return f"projects/{slug}"


def display_order(project: Project) -> tuple:
    """Ascending ``order``, newest first within the same order."""
    return (project.order, -project.created_at.timestamp(), project.slug)


class ProjectStore:
    """Admin and read operations on projects."""

    def __init__(
        self,
        storage: Storage,
        revalidator: Revalidator,
        stats: StatsCounter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.revalidator = revalidator
        self.stats = stats or StatsCounter(storage)
        self.clock = clock

    async def _revalidate(self, slug: str, old_slug: str | None = None) -> list[str]:
        extra = [f"/projects/{old_slug}"] if old_slug and old_slug != slug else []
        paths = await self.revalidator.revalidate(
            RevalidationType.PROJECT, slug, extra_paths=extra
        )
        return sorted(paths)

    @staticmethod
    def _rendered(long_description: str | None) -> str:
        return render_markdown(long_description).html if long_description else ""

    async def get_project(self, slug: str) -> Project | None:
        """Get a project by slug. Returns None if not found."""
        doc = await self.storage.get(PROJECTS, slug)
        return Project.model_validate(doc) if doc is not None else None

    async def list_projects(self, status: ProjectStatus | None = None) -> list[Project]:
        filters = {"status": ProjectStatus(status).value} if status else None
        projects = [Project.model_validate(d) for d in await self.storage.find(PROJECTS, filters)]
        return sorted(projects, key=display_order)

    async def list_featured_projects(self, limit: int = 4) -> list[Project]:
        return [p for p in await self.list_projects() if p.featured][:limit]

    async def _require_project(self, slug: str) -> Project:
        project = await self.get_project(slug)
        if project is None:
            raise NotFoundError("Project not found")
        return project

    async def create_project(self, data: ProjectInput | dict) -> MutationResult:
        data = ProjectInput.model_validate(data)
        if await self.storage.get(PROJECTS, data.slug) is not None:
            raise ConflictError("A project with this slug already exists")

        now = self.clock().isoformat()
        document = {
            **data.model_dump(mode="json"),
            "html": self._rendered(data.long_description),
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.storage.insert(PROJECTS, document)
        except DuplicateKeyError:
            raise ConflictError("A project with this slug already exists") from None
        logger.info("Created project %s", data.slug)

        return MutationResult(
            message="Project created successfully",
            entity=await self.get_project(data.slug),
            revalidated=await self._revalidate(data.slug),
        )

    async def update_project(self, slug: str, data: ProjectUpdate | dict) -> MutationResult:
        data = ProjectUpdate.model_validate(data)
        await self._require_project(slug)

        changes: dict[str, Any] = {
            k: v
            for k, v in data.model_dump(mode="json", exclude_unset=True).items()
            if v is not None or k in NULLABLE_PROJECT_FIELDS
        }
        new_slug = changes.get("slug", slug)
        if new_slug != slug and await self.storage.get(PROJECTS, new_slug) is not None:
            raise ConflictError("A project with this slug already exists")
        if "long_description" in changes:
            changes["html"] = self._rendered(changes["long_description"])
        changes["updated_at"] = self.clock().isoformat()

        try:
            await self.storage.update(PROJECTS, slug, changes)
        except DuplicateKeyError:
            raise ConflictError("A project with this slug already exists") from None
        if new_slug != slug:
            await self.stats.rename_stats(stats_key(slug), stats_key(new_slug))
        logger.info("Updated project %s", new_slug)

        return MutationResult(
            message="Project updated successfully",
            entity=await self.get_project(new_slug),
            revalidated=await self._revalidate(new_slug, slug),
        )

    async def delete_project(self, slug: str) -> MutationResult:
        """Delete a project and its view counters."""
        await self._require_project(slug)
        await self.storage.delete(PROJECTS, slug)
        await self.stats.delete_stats(stats_key(slug))
        logger.info("Deleted project %s", slug)
        return MutationResult(
            message="Project deleted successfully",
            revalidated=await self._revalidate(slug),
        )

    async def toggle_project_featured(self, slug: str) -> MutationResult:
        project = await self._require_project(slug)
        featured = not project.featured
        await self.storage.update(
            PROJECTS, slug, {"featured": featured, "updated_at": self.clock().isoformat()}
        )
        return MutationResult(
            message="Project featured" if featured else "Project unfeatured",
            entity=await self.get_project(slug),
            revalidated=await self._revalidate(slug),
        )
