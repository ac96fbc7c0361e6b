"""Quire FastAPI application."""

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field, ValidationError

from quire.config import settings
from quire.core.content import ContentStore
from quire.core.db import init_storage, shutdown_storage
from quire.core.errors import BadRequestError, QuireError, RevalidationError
from quire.core.models import (
    ArticleInput,
    ArticleUpdate,
    Content,
    ContentType,
    EntryInput,
    EntryUpdate,
    LikeAction,
    MutationResult,
    ProjectInput,
    ProjectStatus,
    ProjectUpdate,
    SubtopicInput,
    SubtopicUpdate,
    TopicInput,
    TopicUpdate,
)
from quire.core.parser import render_markdown
from quire.core.projects import ProjectStore, stats_key
from quire.core.revalidate import PageCache, Revalidator
from quire.core.stats import StatsCounter
from quire.core.taxonomy import TaxonomyStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: open and close storage."""
    init_storage(settings.data_dir, settings.storage_backend)
    yield
    page_cache.clear()
    await shutdown_storage()


# Initialize app
app = FastAPI(
    title=settings.app_title,
    debug=settings.debug,
    lifespan=lifespan,
)

# Setup templates
templates_path = Path(__file__).parent / "templates"
templates = Jinja2Templates(directory=str(templates_path))


def timeago_filter(dt: datetime | None) -> str:
    """Convert datetime to relative time string."""
    if dt is None:
        return ""
    now = datetime.now(dt.tzinfo or timezone.utc)
    diff = now - dt
    seconds = diff.total_seconds()
    if seconds < 60:
        return "just now"
    elif seconds < 3600:
        m = int(seconds // 60)
        return f"{m}m ago"
    elif seconds < 86400:
        h = int(seconds // 3600)
        return f"{h}h ago"
    elif seconds < 604800:
        d = int(seconds // 86400)
        return f"{d}d ago"
    else:
        return dt.strftime("%Y-%m-%d")


templates.env.filters["timeago"] = timeago_filter

# Initialize storage and content services
storage = init_storage(settings.data_dir, settings.storage_backend)
page_cache = PageCache(max_age=settings.revalidate_seconds)
revalidator = Revalidator([page_cache])
stats = StatsCounter(storage)
taxonomy = TaxonomyStore(
    storage,
    revalidator,
    stats,
    words_per_minute=settings.words_per_minute,
    toc_max_level=settings.toc_max_level,
)
entries = ContentStore(
    storage,
    revalidator,
    stats,
    words_per_minute=settings.words_per_minute,
    toc_max_level=settings.toc_max_level,
)
projects = ProjectStore(storage, revalidator, stats)

NOTE_TYPES = (ContentType.NOTE, ContentType.SERIES, ContentType.LOG)


# Template context helper
def get_context(**kwargs) -> dict:
    """Create base context for templates."""
    return {
        "app_title": settings.app_title,
        "site_url": settings.site_url,
        **kwargs,
    }


def render_page(path: str, template: str, media_type: str = "text/html", **kwargs) -> Response:
    """Render a template and keep the result in the page cache."""
    body = templates.get_template(template).render(get_context(**kwargs))
    page_cache.put(path, body, media_type)
    return Response(content=body, media_type=media_type)


def cached_response(path: str) -> Response | None:
    page = page_cache.get(path)
    if page is None:
        return None
    return Response(content=page.body, media_type=page.media_type)


def not_found() -> HTMLResponse:
    """Standard not-found page. Never cached."""
    body = templates.get_template("not_found.html").render(get_context())
    return HTMLResponse(body, status_code=404)


async def record_view(slug: str) -> None:
    """Background view increment for detail pages."""
    try:
        await stats.increment_view(slug)
    except Exception:
        logger.exception("Failed to record view for %s", slug)


def article_html(article: Content) -> str:
    """Stored HTML of an article, re-rendered if the cache field is empty."""
    if article.html:
        return article.html
    return render_markdown(article.body, settings.words_per_minute).html


async def visible_articles(limit: int | None = None) -> list[Content]:
    """Published articles whose topic exists and is published, newest first."""
    topics = {t.slug for t in await taxonomy.list_topics(published_only=True)}
    articles = [
        a
        for a in await taxonomy.list_articles(published_only=True)
        if a.topic_slug in topics
    ]
    articles.sort(key=lambda a: a.published_at or a.created_at, reverse=True)
    return articles[:limit] if limit else articles


# ========== Error handling ==========


@app.exception_handler(QuireError)
async def quire_error_handler(request: Request, exc: QuireError):
    content: dict[str, Any] = {"success": False, "error": exc.message}
    if isinstance(exc, RevalidationError):
        content["revalidated"] = sorted(exc.revalidated)
    return JSONResponse(content, status_code=exc.status_code)


def _field_errors(errors: list[dict]) -> list[dict]:
    return [
        {
            "field": ".".join(str(p) for p in err["loc"] if p != "body"),
            "message": err["msg"],
        }
        for err in errors
    ]


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"success": False, "error": "Invalid input", "fields": _field_errors(exc.errors())},
        status_code=400,
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        {"success": False, "error": "Invalid input", "fields": _field_errors(exc.errors())},
        status_code=400,
    )


# ========== Public pages ==========


@app.get("/", response_class=HTMLResponse)
async def home(request: Request):
    """Home page - featured topics and projects, recent writing."""
    path = request.url.path
    if cached := cached_response(path):
        return cached
    featured = await taxonomy.list_featured_topics()
    recent_articles = await visible_articles(limit=5)
    notes = [
        n for n in await entries.list_entries(published_only=True) if n.type in NOTE_TYPES
    ][:5]
    return render_page(
        path,
        "home.html",
        featured_topics=featured,
        featured_projects=await projects.list_featured_projects(),
        recent_articles=recent_articles,
        recent_notes=notes,
    )


@app.get("/articles", response_class=HTMLResponse)
async def list_topics(request: Request):
    """Topic index with article counts."""
    path = request.url.path
    if cached := cached_response(path):
        return cached
    topics = await taxonomy.list_topics(published_only=True)
    return render_page(path, "articles.html", topics=topics)


@app.get("/articles/{slug}", response_class=HTMLResponse)
async def view_topic(request: Request, slug: str):
    """Topic page, or a redirect to an article's canonical nested URL."""
    path = request.url.path
    if cached := cached_response(path):
        return cached

    tree = await taxonomy.get_topic_tree(slug)
    if tree is not None:
        return render_page(path, "topic.html", tree=tree)

    article = await taxonomy.get_article(slug, published_only=True)
    if article is not None and await taxonomy.get_topic(
        article.topic_slug, published_only=True
    ):
        return RedirectResponse(url=f"/articles/{article.topic_slug}/{slug}", status_code=307)
    return not_found()


@app.get("/articles/{topic_slug}/{slug}", response_class=HTMLResponse)
async def view_article(
    request: Request, topic_slug: str, slug: str, background_tasks: BackgroundTasks
):
    """Article detail page. Each request records a view."""
    path = request.url.path
    cached = cached_response(path)
    if cached is not None:
        background_tasks.add_task(record_view, slug)
        return cached

    article = await taxonomy.get_article(slug, published_only=True)
    if article is None or article.topic_slug != topic_slug:
        return not_found()
    topic = await taxonomy.get_topic(topic_slug, published_only=True)
    if topic is None:
        return not_found()

    subtopic = None
    if article.subtopic_slug:
        subtopic = await taxonomy.get_subtopic(topic_slug, article.subtopic_slug)

    background_tasks.add_task(record_view, slug)
    return render_page(
        path,
        "article.html",
        topic=topic,
        subtopic=subtopic,
        article=article,
        html_content=article_html(article),
        toc=article.toc,
    )


@app.get("/notes", response_class=HTMLResponse)
async def list_notes(request: Request):
    path = request.url.path
    if cached := cached_response(path):
        return cached
    notes = [
        n for n in await entries.list_entries(published_only=True) if n.type in NOTE_TYPES
    ]
    return render_page(path, "notes.html", notes=notes)


@app.get("/notes/{slug}", response_class=HTMLResponse)
async def view_note(request: Request, slug: str, background_tasks: BackgroundTasks):
    """Note detail page. Each request records a view."""
    path = request.url.path
    cached = cached_response(path)
    if cached is not None:
        background_tasks.add_task(record_view, slug)
        return cached

    note = await entries.get_entry(slug, published_only=True)
    if note is None or note.type not in NOTE_TYPES:
        return not_found()

    background_tasks.add_task(record_view, slug)
    return render_page(
        path,
        "note.html",
        note=note,
        html_content=article_html(note),
        toc=note.toc,
    )


@app.get("/projects", response_class=HTMLResponse)
async def list_projects(request: Request, status: ProjectStatus | None = None):
    if status is not None:
        # Filtered listings are not cached
        found = await projects.list_projects(status)
        body = templates.get_template("projects.html").render(
            get_context(projects=found, status=status)
        )
        return HTMLResponse(body)
    path = request.url.path
    if cached := cached_response(path):
        return cached
    return render_page(path, "projects.html", projects=await projects.list_projects())


@app.get("/projects/{slug}", response_class=HTMLResponse)
async def view_project(request: Request, slug: str, background_tasks: BackgroundTasks):
    """Project detail page. Each request records a view."""
    path = request.url.path
    cached = cached_response(path)
    if cached is not None:
        background_tasks.add_task(record_view, stats_key(slug))
        return cached

    project = await projects.get_project(slug)
    if project is None:
        return not_found()

    background_tasks.add_task(record_view, stats_key(slug))
    return render_page(path, "project.html", project=project)


@app.get("/sitemap.xml")
async def sitemap(request: Request):
    """Sitemap of every public page."""
    path = request.url.path
    if cached := cached_response(path):
        return cached

    urls: list[dict] = [
        {"loc": "/"},
        {"loc": "/articles"},
        {"loc": "/notes"},
        {"loc": "/projects"},
    ]
    for topic in await taxonomy.list_topics(published_only=True):
        urls.append({"loc": f"/articles/{topic.slug}", "lastmod": topic.updated_at})
    for article in await visible_articles():
        urls.append(
            {
                "loc": f"/articles/{article.topic_slug}/{article.slug}",
                "lastmod": article.updated_at,
            }
        )
    for entry in await entries.list_entries(published_only=True):
        loc = f"/{entry.slug}" if entry.type == ContentType.PAGE else f"/notes/{entry.slug}"
        urls.append({"loc": loc, "lastmod": entry.updated_at})
    for project in await projects.list_projects():
        urls.append({"loc": f"/projects/{project.slug}", "lastmod": project.updated_at})

    return render_page(path, "sitemap.xml", media_type="application/xml", urls=urls)


# ========== Stats API ==========


class LikeRequest(BaseModel):
    action: LikeAction = LikeAction.LIKE


@app.get("/api/views/{slug}")
async def api_get_views(slug: str):
    """Current view and like counts."""
    page_stats = await stats.get_stats(slug)
    return {"success": True, "data": {"views": page_stats.views, "likes": page_stats.likes}}


@app.post("/api/views/{slug}")
async def api_increment_views(slug: str):
    """Increment the view count and return the new value."""
    views = await stats.increment_view(slug)
    return {"success": True, "data": {"views": views}}


@app.post("/api/likes/{slug}")
async def api_toggle_like(slug: str, body: LikeRequest | None = None):
    """Like or unlike content and return the new like count."""
    action = body.action if body else LikeAction.LIKE
    likes = await stats.toggle_like(slug, action)
    return {"success": True, "data": {"likes": likes}}


# ========== Revalidation API ==========


class RevalidateRequest(BaseModel):
    path: str | None = None
    type: str | None = None
    slug: str | None = None


def bearer_matches(authorization: str | None, secret: str | None) -> bool:
    """Check an ``Authorization: Bearer`` header against a configured secret."""
    if not secret or not authorization:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return False
    return secrets.compare_digest(token.strip(), secret)


@app.post("/api/revalidate")
async def api_revalidate(request: Request):
    """On-demand revalidation of cached pages."""
    if not settings.revalidate_secret:
        logger.warning("QUIRE_REVALIDATE_SECRET is not set; rejecting revalidation")
    if not bearer_matches(request.headers.get("authorization"), settings.revalidate_secret):
        logger.warning("Rejected revalidation request from %s", request.client)
        return JSONResponse(
            {"error": "Unauthorized", "message": "Invalid or missing authorization token"},
            status_code=401,
        )

    try:
        body = RevalidateRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return JSONResponse(
            {"error": "Bad Request", "message": "Request body must be a JSON object"},
            status_code=400,
        )

    try:
        paths = await revalidator.revalidate(body.type, body.slug, path=body.path)
    except BadRequestError as exc:
        return JSONResponse({"error": "Bad Request", "message": exc.message}, status_code=400)

    return {
        "success": True,
        "revalidated": sorted(paths),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/revalidate")
async def api_revalidate_info():
    """Describe the revalidation endpoint."""
    return {
        "status": "ok",
        "endpoint": "/api/revalidate",
        "method": "POST",
        "requiredHeaders": ["Authorization: Bearer <QUIRE_REVALIDATE_SECRET>"],
        "bodyOptions": {
            "path": "Specific path to revalidate (e.g., /articles/my-slug)",
            "type": "Content type: article | note | project | page",
            "slug": "Content slug (used with type)",
        },
    }


# ========== Admin API ==========


async def require_admin(request: Request) -> None:
    """Reject admin calls without the configured bearer token."""
    if not bearer_matches(request.headers.get("authorization"), settings.admin_token):
        raise HTTPException(status_code=401, detail="Unauthorized")


admin = [Depends(require_admin)]


def mutation_response(result: MutationResult, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        {"success": True, **result.model_dump(mode="json")}, status_code=status_code
    )


class ReorderRequest(BaseModel):
    slugs: list[str] = Field(default_factory=list)


class ArticleReorderRequest(ReorderRequest):
    topic_slug: str
    subtopic_slug: str | None = None


@app.get("/api/admin/topics", dependencies=admin)
async def admin_list_topics():
    topics = await taxonomy.list_topics()
    return {"success": True, "data": [t.model_dump(mode="json") for t in topics]}


@app.post("/api/admin/topics", dependencies=admin)
async def admin_create_topic(data: TopicInput):
    return mutation_response(await taxonomy.create_topic(data), status_code=201)


@app.post("/api/admin/topics/reorder", dependencies=admin)
async def admin_reorder_topics(data: ReorderRequest):
    return mutation_response(await taxonomy.reorder_topics(data.slugs))


@app.patch("/api/admin/topics/{slug}", dependencies=admin)
async def admin_update_topic(slug: str, data: TopicUpdate):
    return mutation_response(await taxonomy.update_topic(slug, data))


@app.delete("/api/admin/topics/{slug}", dependencies=admin)
async def admin_delete_topic(slug: str):
    return mutation_response(await taxonomy.delete_topic(slug))


@app.post("/api/admin/topics/{slug}/toggle-published", dependencies=admin)
async def admin_toggle_topic_published(slug: str):
    return mutation_response(await taxonomy.toggle_topic_published(slug))


@app.post("/api/admin/topics/{slug}/toggle-featured", dependencies=admin)
async def admin_toggle_topic_featured(slug: str):
    return mutation_response(await taxonomy.toggle_topic_featured(slug))


@app.get("/api/admin/subtopics", dependencies=admin)
async def admin_list_subtopics(topic: str | None = None):
    subtopics = await taxonomy.list_subtopics(topic)
    return {"success": True, "data": [s.model_dump(mode="json") for s in subtopics]}


@app.post("/api/admin/subtopics", dependencies=admin)
async def admin_create_subtopic(data: SubtopicInput):
    return mutation_response(await taxonomy.create_subtopic(data), status_code=201)


@app.post("/api/admin/subtopics/{topic_slug}/reorder", dependencies=admin)
async def admin_reorder_subtopics(topic_slug: str, data: ReorderRequest):
    return mutation_response(await taxonomy.reorder_subtopics(topic_slug, data.slugs))


@app.patch("/api/admin/subtopics/{topic_slug}/{slug}", dependencies=admin)
async def admin_update_subtopic(topic_slug: str, slug: str, data: SubtopicUpdate):
    return mutation_response(await taxonomy.update_subtopic(topic_slug, slug, data))


@app.delete("/api/admin/subtopics/{topic_slug}/{slug}", dependencies=admin)
async def admin_delete_subtopic(topic_slug: str, slug: str):
    return mutation_response(await taxonomy.delete_subtopic(topic_slug, slug))


@app.post("/api/admin/subtopics/{topic_slug}/{slug}/toggle-published", dependencies=admin)
async def admin_toggle_subtopic_published(topic_slug: str, slug: str):
    return mutation_response(await taxonomy.toggle_subtopic_published(topic_slug, slug))


@app.get("/api/admin/articles", dependencies=admin)
async def admin_list_articles(topic: str | None = None, subtopic: str | None = None):
    articles = await taxonomy.list_articles(topic, subtopic)
    return {"success": True, "data": [a.model_dump(mode="json") for a in articles]}


@app.post("/api/admin/articles", dependencies=admin)
async def admin_create_article(data: ArticleInput):
    return mutation_response(await taxonomy.create_article(data), status_code=201)


@app.post("/api/admin/articles/reorder", dependencies=admin)
async def admin_reorder_articles(data: ArticleReorderRequest):
    return mutation_response(
        await taxonomy.reorder_articles(data.topic_slug, data.subtopic_slug, data.slugs)
    )


@app.patch("/api/admin/articles/{slug}", dependencies=admin)
async def admin_update_article(slug: str, data: ArticleUpdate):
    return mutation_response(await taxonomy.update_article(slug, data))


@app.delete("/api/admin/articles/{slug}", dependencies=admin)
async def admin_delete_article(slug: str):
    return mutation_response(await taxonomy.delete_article(slug))


@app.post("/api/admin/articles/{slug}/toggle-published", dependencies=admin)
async def admin_toggle_article_published(slug: str):
    return mutation_response(await taxonomy.toggle_article_published(slug))


@app.post("/api/admin/articles/{slug}/toggle-featured", dependencies=admin)
async def admin_toggle_article_featured(slug: str):
    return mutation_response(await taxonomy.toggle_article_featured(slug))


@app.get("/api/admin/entries", dependencies=admin)
async def admin_list_entries(type: ContentType | None = None, tag: str | None = None):
    found = await entries.list_entries(type, tag=tag)
    return {"success": True, "data": [e.model_dump(mode="json") for e in found]}


@app.post("/api/admin/entries", dependencies=admin)
async def admin_create_entry(data: EntryInput):
    return mutation_response(await entries.create_entry(data), status_code=201)


@app.patch("/api/admin/entries/{slug}", dependencies=admin)
async def admin_update_entry(slug: str, data: EntryUpdate):
    return mutation_response(await entries.update_entry(slug, data))


@app.delete("/api/admin/entries/{slug}", dependencies=admin)
async def admin_delete_entry(slug: str):
    return mutation_response(await entries.delete_entry(slug))


@app.post("/api/admin/entries/{slug}/toggle-published", dependencies=admin)
async def admin_toggle_entry_published(slug: str):
    return mutation_response(await entries.toggle_entry_published(slug))


@app.post("/api/admin/entries/{slug}/toggle-featured", dependencies=admin)
async def admin_toggle_entry_featured(slug: str):
    return mutation_response(await entries.toggle_entry_featured(slug))


@app.get("/api/admin/projects", dependencies=admin)
async def admin_list_projects(status: ProjectStatus | None = None):
    found = await projects.list_projects(status)
    return {"success": True, "data": [p.model_dump(mode="json") for p in found]}


@app.post("/api/admin/projects", dependencies=admin)
async def admin_create_project(data: ProjectInput):
    return mutation_response(await projects.create_project(data), status_code=201)


@app.patch("/api/admin/projects/{slug}", dependencies=admin)
async def admin_update_project(slug: str, data: ProjectUpdate):
    return mutation_response(await projects.update_project(slug, data))


@app.delete("/api/admin/projects/{slug}", dependencies=admin)
async def admin_delete_project(slug: str):
    return mutation_response(await projects.delete_project(slug))


@app.post("/api/admin/projects/{slug}/toggle-featured", dependencies=admin)
async def admin_toggle_project_featured(slug: str):
    return mutation_response(await projects.toggle_project_featured(slug))


@app.post("/api/admin/resync", dependencies=admin)
async def admin_resync_counters():
    return mutation_response(await taxonomy.resync_counters())


@app.post("/api/admin/revalidate-all", dependencies=admin)
async def admin_revalidate_all():
    paths = await revalidator.revalidate_all()
    return {"success": True, "revalidated": sorted(paths)}


@app.get("/api/admin/stats/most-viewed", dependencies=admin)
async def admin_most_viewed(limit: int = 5):
    top = await stats.most_viewed(limit)
    return {"success": True, "data": [s.model_dump(mode="json") for s in top]}


# ========== Standalone pages ==========


@app.get("/{slug}", response_class=HTMLResponse)
async def view_page(request: Request, slug: str, background_tasks: BackgroundTasks):
    """Standalone page (about, uses, ...) served at the site root."""
    path = request.url.path
    cached = cached_response(path)
    if cached is not None:
        background_tasks.add_task(record_view, slug)
        return cached

    page = await entries.get_entry(slug, ContentType.PAGE, published_only=True)
    if page is None:
        return not_found()

    background_tasks.add_task(record_view, slug)
    return render_page(path, "page.html", page=page, html_content=article_html(page))
