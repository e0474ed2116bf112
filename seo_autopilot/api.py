"""
SEO Autopilot API Server
========================

FastAPI server behind the dashboard: the WordPress publish proxy, the
sitemap fetch/crawl/discovery endpoints, internal-link and health-score
helpers, blog post persistence, and God Mode control.

Run directly:
    python -m seo_autopilot.api
    uvicorn seo_autopilot.api:app --host 0.0.0.0 --port 8765

Host, port and CORS origins come from API_HOST, API_PORT and
ALLOWED_ORIGINS (see seo_autopilot.config).
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from seo_autopilot import __version__
from seo_autopilot.config import Settings, get_settings
from seo_autopilot.content_generator import AIClient, ContentOrchestrator
from seo_autopilot.god_mode import GodModeConfig, GodModeEngine, GodModeError
from seo_autopilot.internal_link_engine import InternalLinkEngine, SitePage
from seo_autopilot.publisher import Publisher
from seo_autopilot.seo_health_scorer import SEOHealthScorer, analyze_html
from seo_autopilot.sitemap_crawler import (
    CrawlOptions,
    SitemapError,
    SitemapFetcher,
    crawl_sitemap_urls,
)
from seo_autopilot.supabase_store import ContentStore
from seo_autopilot.url_utils import PUBLIC_URL_REQUIRED_MESSAGE, is_public_url, normalize_url
from seo_autopilot.wordpress_client import (
    PublishRequest,
    SitemapFetchError,
    UnsafeUrlError,
    WordPressClient,
    fetch_sitemap,
)
from seo_autopilot.wp_discovery import discover_wordpress_urls

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("api")
logger.setLevel(logging.DEBUG)

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

GOD_MODE_STATE_FILE = "god_mode_state.json"

# ---------------------------------------------------------------------------
# Pydantic Models -- Requests
# ---------------------------------------------------------------------------


class FetchSitemapRequest(BaseModel):
    url: str = ""


class DiscoverRequest(BaseModel):
    siteUrl: str = ""
    perPage: int = Field(100, ge=1, le=100)
    maxPages: int = Field(250, ge=1)
    maxUrls: int = Field(100000, ge=1)
    includePages: bool = True


class CrawlRequest(BaseModel):
    sitemapUrl: str
    concurrency: int = 10
    maxSitemaps: int = 5000
    maxUrls: int = 500000
    fetchTimeout: float = 30.0


class InternalLinksRequest(BaseModel):
    html: str
    sitePages: List[Dict[str, Any]] = Field(default_factory=list)
    maxLinks: int = 12
    inject: bool = True


class HealthRequest(BaseModel):
    url: str
    html: Optional[str] = None


class BlogPostRequest(BaseModel):
    itemId: Optional[str] = None
    content: Optional[Dict[str, Any]] = None


class GodModeStartRequest(BaseModel):
    sitemapUrls: Optional[List[str]] = None
    priorityUrls: Optional[List[Any]] = None
    excludedUrls: Optional[List[str]] = None
    excludedCategories: Optional[List[str]] = None
    priorityOnlyMode: Optional[bool] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class QueueAddRequest(BaseModel):
    url: str
    priority: str = "high"


# ---------------------------------------------------------------------------
# Pydantic Models -- Responses
# ---------------------------------------------------------------------------


class StatusResponse(BaseModel):
    status: str
    timestamp: str
    subsystems: Dict[str, str] = Field(default_factory=dict)
    version: str = __version__


class ActionResponse(BaseModel):
    success: bool
    message: str = ""
    data: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Application State
# ---------------------------------------------------------------------------


class AppState:
    """Holds references to the shared subsystems."""

    def __init__(self) -> None:
        self.settings: Optional[Settings] = None
        self.store: Optional[ContentStore] = None
        self.scorer: Optional[SEOHealthScorer] = None
        self.publisher: Optional[Publisher] = None
        self.engine: Optional[GodModeEngine] = None
        self.start_time: float = 0.0


state = AppState()


def build_engine(
    settings: Settings,
    store: ContentStore,
    scorer: SEOHealthScorer,
    publisher: Publisher,
) -> GodModeEngine:
    """Wire a God Mode engine to the configured AI, publisher and store."""
    ai_client = AIClient(api_key=settings.anthropic_api_key, model=settings.model)
    return GodModeEngine(
        ai_configured=settings.ai_configured,
        scorer=scorer,
        orchestrator=ContentOrchestrator(ai_client),
        publisher=publisher,
        store=store,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize subsystems on startup, tear down on shutdown."""
    settings = get_settings()
    logger.info("Starting SEO Autopilot API (%r)", settings)
    state.start_time = time.monotonic()
    state.settings = settings
    state.store = ContentStore(settings=settings)
    state.scorer = SEOHealthScorer()
    state.publisher = Publisher(settings)
    state.engine = build_engine(settings, state.store, state.scorer, state.publisher)
    state_file = settings.data_dir / GOD_MODE_STATE_FILE
    if state_file.exists():
        state.engine.load_state(state_file)

    if settings.supabase_configured:
        await asyncio.to_thread(state.store.ensure_table)
    else:
        logger.info("Supabase not configured; blog posts will not be persisted")

    yield

    logger.info("Shutting down SEO Autopilot API")
    if state.engine:
        await state.engine.stop()
        try:
            state.engine.save_state(state_file)
        except OSError as exc:
            logger.warning("Could not save God Mode state: %s", exc)
    if state.scorer:
        await state.scorer.close()
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SEO Autopilot API",
    description="Sitemap crawling, internal linking, health scoring and WordPress publishing.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_engine() -> GodModeEngine:
    if state.engine is None:
        raise HTTPException(503, "God Mode engine not initialized")
    return state.engine


def _require_store() -> ContentStore:
    if state.store is None:
        raise HTTPException(503, "Content store not initialized")
    return state.store


# ===================================================================
# Health
# ===================================================================


@app.get("/health", response_model=StatusResponse, tags=["Health"])
async def health():
    """Server health check with subsystem readiness."""
    settings = state.settings or get_settings()
    subs: Dict[str, str] = {
        "wordpress": "configured" if settings.wordpress_configured else "not_configured",
        "ai": "configured" if settings.ai_configured else "not_configured",
        "supabase": "configured" if settings.supabase_configured else "not_configured",
        "god_mode": state.engine.state.status.value if state.engine else "unavailable",
    }
    uptime = time.monotonic() - state.start_time if state.start_time else 0
    subs["uptime_seconds"] = f"{uptime:.0f}"
    return StatusResponse(status="ok", timestamp=_now_iso(), subsystems=subs)


# ===================================================================
# WordPress Publish Proxy
# ===================================================================


@app.post("/api/wordpress-publish", tags=["WordPress"])
async def wordpress_publish(request: Request):
    """Create or update a post on the caller's WordPress site."""
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return JSONResponse({"success": False, "error": "Request body must be a JSON object"}, status_code=400)

    publish_request = PublishRequest.from_dict(body)
    async with WordPressClient(publish_request.credentials) as client:
        result = await client.publish_post(publish_request)
    return JSONResponse(result.to_dict(), status_code=result.http_status)


# ===================================================================
# Sitemaps
# ===================================================================


def _fetch_error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, SitemapFetchError):
        body: Dict[str, Any] = {"error": str(exc), "elapsed": exc.elapsed_ms}
        if exc.status_code == 408:
            body["type"] = "timeout"
        elif exc.status_code >= 500:
            body["type"] = "fetch_error"
        else:
            body["status"] = exc.status_code
        return JSONResponse(body, status_code=exc.status_code or 500)
    return JSONResponse({"error": str(exc)}, status_code=400)


@app.get("/api/fetch-sitemap", tags=["Sitemaps"])
async def fetch_sitemap_get(url: str = ""):
    """Fetch a sitemap server-side; XML bodies are returned raw."""
    try:
        result = await fetch_sitemap(url)
    except (UnsafeUrlError, SitemapFetchError) as exc:
        return _fetch_error_response(exc)

    if result["isXml"]:
        return Response(
            content=result["content"],
            media_type=result["contentType"],
            headers={"X-Fetch-Time": f"{result['elapsed']}ms"},
        )
    return result


@app.post("/api/fetch-sitemap", tags=["Sitemaps"])
async def fetch_sitemap_post(req: FetchSitemapRequest):
    """Fetch a sitemap server-side; always answers JSON."""
    try:
        return await fetch_sitemap(req.url)
    except (UnsafeUrlError, SitemapFetchError) as exc:
        return _fetch_error_response(exc)


@app.post("/api/wp-discover", tags=["Sitemaps"])
async def wp_discover(req: DiscoverRequest):
    """Enumerate post and page URLs through the WordPress REST API."""
    if not req.siteUrl.strip():
        return JSONResponse({"success": False, "error": "siteUrl is required"}, status_code=400)
    try:
        urls = await discover_wordpress_urls(
            req.siteUrl,
            per_page=req.perPage,
            max_pages=req.maxPages,
            max_urls=req.maxUrls,
            include_pages=req.includePages,
        )
    except UnsafeUrlError as exc:
        return JSONResponse({"success": False, "error": str(exc)}, status_code=400)
    except Exception as exc:
        logger.error("wp-discover failed: %s", exc)
        return JSONResponse({"success": False, "error": str(exc)}, status_code=500)
    return {"success": True, "urls": urls}


@app.post("/api/crawl-sitemap", tags=["Sitemaps"])
async def crawl_sitemap(req: CrawlRequest):
    """Run the recursive sitemap crawler server-side."""
    options = CrawlOptions(
        concurrency=req.concurrency,
        max_sitemaps=req.maxSitemaps,
        max_urls=req.maxUrls,
        fetch_timeout=req.fetchTimeout,
    )
    progress_seen: Dict[str, int] = {"processed": 0}

    def _track(progress) -> None:
        progress_seen["processed"] = progress.processed_sitemaps

    options.on_progress = _track

    try:
        async with SitemapFetcher(timeout=options.effective_timeout) as fetcher:
            urls = await crawl_sitemap_urls(req.sitemapUrl, fetcher.fetch, options)
    except SitemapError as exc:
        return JSONResponse({"success": False, "error": str(exc)}, status_code=exc.status_code or 500)

    if state.engine is not None and urls:
        state.engine.sitemap_urls = urls
    return {"success": True, "urls": urls, "processedSitemaps": progress_seen["processed"]}


# ===================================================================
# Content Helpers
# ===================================================================


@app.post("/api/internal-links", tags=["Content"])
async def internal_links(req: InternalLinksRequest):
    """Suggest (and optionally inject) contextual internal links."""
    pages = [SitePage.from_dict(p) for p in req.sitePages if p.get("url")]
    engine = InternalLinkEngine(pages)
    links = engine.generate_link_opportunities(req.html, req.maxLinks)
    html = engine.inject_contextual_links(req.html, links) if req.inject else req.html
    return {"links": [link.to_dict() for link in links], "html": html}


@app.post("/api/seo-health", tags=["Content"])
async def seo_health(req: HealthRequest):
    """Score a page, fetching it when no HTML is supplied."""
    if req.html is not None:
        return analyze_html(req.url, req.html).to_dict()
    url = normalize_url(req.url)
    if not is_public_url(url):
        return JSONResponse({"error": PUBLIC_URL_REQUIRED_MESSAGE}, status_code=400)
    scorer = state.scorer or SEOHealthScorer()
    analysis = await scorer.analyze_page(url)
    return analysis.to_dict()


# ===================================================================
# Blog Posts
# ===================================================================


@app.get("/api/blog-posts", tags=["Blog Posts"])
async def list_blog_posts():
    store = _require_store()
    data = await asyncio.to_thread(store.load_all)
    return {"success": True, "data": data}


@app.post("/api/blog-posts", tags=["Blog Posts"])
async def save_blog_post(req: BlogPostRequest):
    if not req.itemId or not req.content:
        return JSONResponse({"success": False, "error": "Missing itemId or content"}, status_code=400)
    store = _require_store()
    saved = await asyncio.to_thread(store.save, req.itemId, req.content)
    if not saved:
        return JSONResponse({"success": False, "error": "Failed to save blog post"}, status_code=500)
    return {"success": True}


@app.delete("/api/blog-posts/{item_id}", tags=["Blog Posts"])
async def delete_blog_post(item_id: str):
    store = _require_store()
    deleted = await asyncio.to_thread(store.delete, item_id)
    if not deleted:
        return JSONResponse({"success": False, "error": "Failed to delete blog post"}, status_code=500)
    return {"success": True}


# ===================================================================
# God Mode
# ===================================================================


@app.get("/api/god-mode/state", tags=["God Mode"])
async def god_mode_state():
    return _require_engine().snapshot()


@app.post("/api/god-mode/start", response_model=ActionResponse, tags=["God Mode"])
async def god_mode_start(req: GodModeStartRequest):
    engine = _require_engine()
    if req.sitemapUrls is not None:
        engine.sitemap_urls = list(req.sitemapUrls)
    if req.priorityUrls is not None:
        engine.priority_urls = list(req.priorityUrls)
    if req.excludedUrls is not None:
        engine.excluded_urls = set(req.excludedUrls)
    if req.excludedCategories is not None:
        engine.excluded_categories = [c.strip("/").lower() for c in req.excludedCategories if c.strip("/")]
    if req.priorityOnlyMode is not None:
        engine.priority_only_mode = req.priorityOnlyMode
    if req.config:
        try:
            engine.config = GodModeConfig.from_dict({**engine.config.to_dict(), **req.config})
        except TypeError as exc:
            raise HTTPException(400, f"Invalid config: {exc}")

    try:
        await engine.start()
    except GodModeError as exc:
        raise HTTPException(400, str(exc))
    return ActionResponse(success=True, message="God Mode started")


@app.post("/api/god-mode/stop", response_model=ActionResponse, tags=["God Mode"])
async def god_mode_stop():
    await _require_engine().stop()
    return ActionResponse(success=True, message="God Mode stopped")


@app.post("/api/god-mode/pause", response_model=ActionResponse, tags=["God Mode"])
async def god_mode_pause():
    engine = _require_engine()
    engine.pause()
    return ActionResponse(success=True, message=f"God Mode {engine.state.status.value}")


@app.post("/api/god-mode/resume", response_model=ActionResponse, tags=["God Mode"])
async def god_mode_resume():
    engine = _require_engine()
    engine.resume()
    return ActionResponse(success=True, message=f"God Mode {engine.state.status.value}")


@app.post("/api/god-mode/queue", response_model=ActionResponse, tags=["God Mode"])
async def god_mode_queue_add(req: QueueAddRequest):
    try:
        item = _require_engine().add_to_queue(req.url, req.priority)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return ActionResponse(success=True, message="Added to queue", data=item.to_dict())


@app.delete("/api/god-mode/queue/{item_id}", response_model=ActionResponse, tags=["God Mode"])
async def god_mode_queue_remove(item_id: str):
    if not _require_engine().remove_from_queue(item_id):
        raise HTTPException(404, f"Queue item not found: {item_id}")
    return ActionResponse(success=True, message="Removed from queue")


# ===================================================================
# Entry Point
# ===================================================================

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "seo_autopilot.api:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level="info",
    )
