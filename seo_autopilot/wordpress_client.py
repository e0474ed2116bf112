"""
WordPress REST API publish proxy.

Async client for creating or updating a single post on any WordPress site
through ``/wp-json/wp/v2/posts`` with an application password. Handles:

    - update-vs-create resolution (explicit ID, slug search, source URL slug)
    - YouTube iframe -> ``[embed]`` shortcode conversion (WP strips iframes)
    - Yoast / RankMath / AIOSEO title + description meta
    - mapping every failure to a user-facing message and HTTP status

Also hosts the server-side sitemap fetch used by the dashboard proxy.

Usage:
    from seo_autopilot.wordpress_client import PublishRequest, WordPressClient, WordPressCredentials

    creds = WordPressCredentials("example.com", "editor", "abcd efgh ijkl")
    async with WordPressClient(creds) as client:
        result = await client.publish_post(PublishRequest(
            wp_url=creds.wp_url, username=creds.username, app_password=creds.app_password,
            title="Moon Water Guide", content="<p>...</p>",
        ))

CLI:
    python -m seo_autopilot.cli publish --title "..." --content-file article.html
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from seo_autopilot.url_utils import PUBLIC_URL_REQUIRED_MESSAGE, is_public_url, last_path_segment

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("wordpress_client")
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

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

PUBLISH_TIMEOUT = 60  # seconds
SITEMAP_FETCH_TIMEOUT = 45  # seconds

USER_AGENT = "SEO-Autopilot/1.0"
GOOGLEBOT_USER_AGENT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"

MISSING_FIELDS_MESSAGE = "Missing required fields: wpUrl, username, appPassword, title, content"
UNSAFE_URL_MESSAGE = "WordPress URL must be a public HTTP/HTTPS address"
AUTH_FAILED_MESSAGE = "Authentication failed. Check your username and application password."
PERMISSION_DENIED_MESSAGE = "Permission denied. Ensure the user has publish capabilities."
REST_NOT_FOUND_MESSAGE = (
    "WordPress REST API not found. Ensure permalinks are enabled and REST API is accessible."
)
TIMEOUT_MESSAGE = (
    "Connection to WordPress timed out after 60 seconds. "
    "Check that the URL is correct and the site is reachable."
)
INVALID_RESPONSE_MESSAGE = "Invalid response from WordPress"

_YOUTUBE_IFRAME_RE = re.compile(
    r"<iframe[^>]*src=[\"']https?://(?:www\.)?(?:youtube\.com/embed|youtube-nocookie\.com/embed)/"
    r"([a-zA-Z0-9_-]+)[^\"']*[\"'][^>]*>[\s\S]*?</iframe>",
    re.IGNORECASE,
)
_YOUTUBE_FIGURE_RE = re.compile(
    r"<figure[^>]*>\s*<div[^>]*>\s*<iframe[^>]*src=[\"']https?://(?:www\.)?"
    r"(?:youtube\.com/embed|youtube-nocookie\.com/embed)/([a-zA-Z0-9_-]+)[^\"']*[\"'][^>]*>"
    r"[\s\S]*?</iframe>\s*</div>\s*<figcaption[^>]*>([\s\S]*?)</figcaption>\s*</figure>",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class WordPressError(Exception):
    """Base exception for WordPress API errors."""

    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class AuthenticationError(WordPressError):
    """Raised on 401/403 responses."""
    pass


class NotFoundError(WordPressError):
    """Raised on 404 responses."""
    pass


class RateLimitError(WordPressError):
    """Raised on 429 responses after all retries exhausted."""
    pass


class SiteNotConfiguredError(WordPressError):
    """Raised when the site lacks a URL or credentials."""
    pass


class UnsafeUrlError(WordPressError):
    """Raised when a URL points at a private, loopback, or metadata host."""
    pass


class WordPressTimeoutError(WordPressError):
    """Raised when the site does not answer within the client timeout."""
    pass


class WordPressConnectionError(WordPressError):
    """Raised when the site cannot be reached at all."""
    pass


class SitemapFetchError(WordPressError):
    """Raised by :func:`fetch_sitemap` on upstream failures."""

    def __init__(self, message: str, status_code: int = 0, elapsed_ms: int = 0):
        self.elapsed_ms = elapsed_ms
        super().__init__(message, status_code=status_code)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class WordPressCredentials:
    """Target site plus application-password credentials."""

    wp_url: str
    username: str = ""
    app_password: str = ""

    @property
    def base_url(self) -> str:
        base = (self.wp_url or "").strip().rstrip("/")
        if base and not base.startswith("http"):
            base = f"https://{base}"
        return base

    @property
    def api_url(self) -> str:
        """Posts collection endpoint."""
        return f"{self.base_url}/wp-json/wp/v2/posts"

    @property
    def auth_header(self) -> str:
        """Base64-encoded Basic auth header value."""
        if not self.username or not self.app_password:
            return ""
        credentials = f"{self.username}:{self.app_password}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"

    @property
    def is_configured(self) -> bool:
        return bool(self.wp_url and self.username and self.app_password)

    def __repr__(self) -> str:
        configured = "configured" if self.is_configured else "no-creds"
        return f"WordPressCredentials({self.base_url!r}, {configured})"


@dataclass
class PublishRequest:
    """Everything needed to create or update one post."""

    wp_url: str = ""
    username: str = ""
    app_password: str = ""
    title: str = ""
    content: str = ""
    excerpt: str = ""
    status: str = "draft"
    categories: List[int] = field(default_factory=list)
    tags: List[int] = field(default_factory=list)
    slug: str = ""
    meta_description: str = ""
    seo_title: str = ""
    source_url: str = ""
    existing_post_id: Any = None

    @property
    def credentials(self) -> WordPressCredentials:
        return WordPressCredentials(self.wp_url, self.username, self.app_password)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PublishRequest:
        """Build from the dashboard's camelCase JSON body."""
        return cls(
            wp_url=str(data.get("wpUrl") or data.get("wordpressUrl") or ""),
            username=str(data.get("username") or data.get("wpUsername") or ""),
            app_password=str(data.get("appPassword") or data.get("wpAppPassword") or ""),
            title=data.get("title") or "",
            content=data.get("content") or "",
            excerpt=data.get("excerpt") or "",
            status=data.get("status") or "draft",
            categories=list(data.get("categories") or []),
            tags=list(data.get("tags") or []),
            slug=data.get("slug") or "",
            meta_description=data.get("metaDescription") or "",
            seo_title=data.get("seoTitle") or "",
            source_url=data.get("sourceUrl") or "",
            existing_post_id=data.get("existingPostId"),
        )


@dataclass
class PublishResult:
    """
    Outcome of a publish call.

    ``http_status`` is the status the proxy endpoint should answer with;
    ``status`` is the WordPress-side status echoed in the JSON body.
    """

    success: bool
    updated: bool = False
    post: Optional[Dict[str, Any]] = None
    error: str = ""
    status: Optional[int] = None
    http_status: int = 200

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "updated": self.updated, "post": self.post}
        out: Dict[str, Any] = {"success": False, "error": self.error}
        if self.status is not None:
            out["status"] = self.status
        return out


# ---------------------------------------------------------------------------
# Content helpers
# ---------------------------------------------------------------------------


def clean_slug(slug: str) -> str:
    """Strip surrounding slashes and keep only the last path segment."""
    trimmed = (slug or "").strip("/")
    return trimmed.split("/")[-1] or slug


def convert_youtube_embeds(html: str) -> str:
    """Replace YouTube iframes with WordPress ``[embed]`` shortcodes."""

    def _embed(match: re.Match) -> str:
        return f"[embed]https://www.youtube.com/watch?v={match.group(1)}[/embed]"

    def _figure(match: re.Match) -> str:
        caption = re.sub(r"<[^>]*>", "", match.group(2)).strip()
        return (
            f"[embed]https://www.youtube.com/watch?v={match.group(1)}[/embed]\n"
            f'<p style="text-align: center; color: #6b7280; font-size: 14px;">{caption}</p>'
        )

    # Figures first so their captions survive
    html = _YOUTUBE_FIGURE_RE.sub(_figure, html or "")
    return _YOUTUBE_IFRAME_RE.sub(_embed, html)


def build_post_body(request: PublishRequest) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "title": request.title,
        "content": convert_youtube_embeds(request.content),
        "status": request.status or "draft",
    }
    if request.excerpt:
        body["excerpt"] = request.excerpt
    if request.slug:
        body["slug"] = clean_slug(request.slug)
    if request.categories:
        body["categories"] = request.categories
    if request.tags:
        body["tags"] = request.tags
    if request.meta_description or request.seo_title:
        title = request.seo_title or request.title
        desc = request.meta_description or ""
        body["meta"] = {
            "_yoast_wpseo_metadesc": desc,
            "_yoast_wpseo_title": title,
            "rank_math_description": desc,
            "rank_math_title": title,
            "_aioseo_description": desc,
            "_aioseo_title": title,
        }
    return body


def _coerce_post_id(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        post_id = int(str(value).strip())
    except ValueError:
        return None
    return post_id or None


def _error_message(body: Any, status: int) -> str:
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return str(message)
    return f"WordPress API error: {status}"


# ---------------------------------------------------------------------------
# WordPressClient
# ---------------------------------------------------------------------------


class WordPressClient:
    """
    Async WordPress REST API client for a single site.

    Parameters
    ----------
    credentials : WordPressCredentials
        Site URL and application password.
    timeout : int
        Request timeout in seconds. Default 60.
    max_retries : int
        Retries for transient status codes and network errors.
    """

    def __init__(
        self,
        credentials: WordPressCredentials,
        timeout: int = PUBLISH_TIMEOUT,
        max_retries: int = MAX_RETRIES,
    ):
        self.credentials = credentials
        self.timeout = timeout
        self.max_retries = max_retries
        self._session: Optional[aiohttp.ClientSession] = None

    # -- Session management -------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {
                "User-Agent": USER_AGENT,
                "Accept": "application/json",
            }
            if self.credentials.auth_header:
                headers["Authorization"] = self.credentials.auth_header

            connector = aiohttp.TCPConnector(limit=10, ttl_dns_cache=300)
            timeout_config = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(
                headers=headers,
                connector=connector,
                timeout=timeout_config,
            )
        return self._session

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # -- Core HTTP method with retry ----------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        retries: Optional[int] = None,
    ) -> Tuple[int, Any, Dict[str, str]]:
        """
        Make an HTTP request with exponential backoff retry on transient errors.

        *retries* overrides ``max_retries`` for this call.

        Returns
        -------
        tuple of (status_code, response_json_or_text, response_headers)

        Raises
        ------
        AuthenticationError
            On 401 or 403 responses.
        NotFoundError
            On 404 responses.
        RateLimitError
            On 429 after all retries exhausted.
        WordPressTimeoutError, WordPressConnectionError
            When the site cannot be reached after all retries.
        WordPressError
            On other non-2xx responses after retries.
        """
        if not self.credentials.is_configured:
            raise SiteNotConfiguredError(
                "WordPress not configured. Add WordPress URL, username, and application password."
            )

        max_retries = self.max_retries if retries is None else retries
        session = await self._get_session()

        for attempt in range(max_retries + 1):
            try:
                logger.debug(
                    "API %s %s (attempt %d/%d)",
                    method.upper(), url, attempt + 1, max_retries + 1,
                )

                kwargs: Dict[str, Any] = {}
                if json_data is not None:
                    kwargs["json"] = json_data
                if params is not None:
                    kwargs["params"] = {k: v for k, v in params.items() if v is not None}

                async with session.request(method, url, **kwargs) as resp:
                    status = resp.status
                    resp_headers = dict(resp.headers)

                    # Try to parse JSON, fall back to text
                    try:
                        body = await resp.json(content_type=None)
                    except (json.JSONDecodeError, ValueError):
                        body = await resp.text()

                    if status == 401 or status == 403:
                        raise AuthenticationError(
                            f"Authentication failed for {self.credentials.base_url}: HTTP {status}",
                            status_code=status,
                            response_body=str(body),
                        )

                    if status == 404:
                        raise NotFoundError(
                            f"Resource not found: {url}",
                            status_code=404,
                            response_body=str(body),
                        )

                    if status in RETRY_STATUS_CODES and attempt < max_retries:
                        delay = RETRY_BASE_DELAY * (2 ** attempt)
                        # Respect Retry-After header if present
                        retry_after = resp_headers.get("Retry-After")
                        if retry_after:
                            try:
                                delay = max(delay, float(retry_after))
                            except ValueError:
                                pass
                        logger.warning(
                            "Retryable error %d from %s, retrying in %.1fs", status, url, delay,
                        )
                        await asyncio.sleep(delay)
                        continue

                    if status == 429:
                        raise RateLimitError(
                            f"Rate limited by {self.credentials.base_url} after "
                            f"{max_retries} retries",
                            status_code=429,
                            response_body=str(body),
                        )

                    if status >= 400:
                        raise WordPressError(
                            _error_message(body, status),
                            status_code=status,
                            response_body=str(body),
                        )

                    return status, body, resp_headers

            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt < max_retries:
                    delay = RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Network error on %s (%s), retrying in %.1fs: %s",
                        url, type(exc).__name__, delay, exc,
                    )
                    await asyncio.sleep(delay)
                    continue
                if isinstance(exc, asyncio.TimeoutError):
                    raise WordPressTimeoutError(TIMEOUT_MESSAGE, status_code=504) from exc
                raise WordPressConnectionError(
                    f"Could not connect to WordPress: {exc}", status_code=502
                ) from exc

        # Loop always returns or raises
        raise WordPressError(f"Request failed after {max_retries} retries")

    # -- Post lookup ----------------------------------------------------------

    async def find_post_id_by_slug(self, slug: str) -> Optional[int]:
        """Return the ID of the first post (any status) with *slug*, or None."""
        if not slug:
            return None
        try:
            _, body, _ = await self._request(
                "GET", self.credentials.api_url, params={"slug": slug, "status": "any"}
            )
        except WordPressError as exc:
            logger.info("Could not search for existing post '%s': %s", slug, exc)
            return None
        if isinstance(body, list) and body and isinstance(body[0], dict):
            return _coerce_post_id(body[0].get("id"))
        return None

    async def resolve_target_post_id(self, request: PublishRequest) -> Optional[int]:
        """Explicit ID, then slug search, then the source URL's slug."""
        post_id = _coerce_post_id(request.existing_post_id)
        if post_id:
            return post_id

        if request.slug:
            post_id = await self.find_post_id_by_slug(clean_slug(request.slug))
            if post_id:
                logger.info("Found existing post %d by slug", post_id)
                return post_id

        if request.source_url:
            source_slug = last_path_segment(request.source_url)
            post_id = await self.find_post_id_by_slug(source_slug)
            if post_id:
                logger.info("Found existing post %d from source URL", post_id)
                return post_id

        return None

    # -- Publish --------------------------------------------------------------

    async def publish_post(self, request: PublishRequest) -> PublishResult:
        """
        Create or update a post. Never raises; every failure becomes a
        ``PublishResult(success=False, ...)`` with a user-facing message.

        Parameters
        ----------
        request : PublishRequest
            Post fields plus the target credentials.

        Returns
        -------
        PublishResult
        """
        if not (
            request.wp_url and request.username and request.app_password
            and request.title and request.content
        ):
            return PublishResult(success=False, error=MISSING_FIELDS_MESSAGE, http_status=400)

        if not is_public_url(request.credentials.base_url):
            return PublishResult(success=False, error=UNSAFE_URL_MESSAGE, http_status=400)

        target_id = await self.resolve_target_post_id(request)
        body = build_post_body(request)
        if target_id:
            method, url = "PUT", f"{self.credentials.api_url}/{target_id}"
        else:
            method, url = "POST", self.credentials.api_url

        logger.info("%s %s", method, url)
        # writes are not idempotent: one attempt only
        try:
            _, post, _ = await self._request(method, url, json_data=body, retries=0)
        except AuthenticationError as exc:
            message = PERMISSION_DENIED_MESSAGE if exc.status_code == 403 else AUTH_FAILED_MESSAGE
            return PublishResult(success=False, error=message, status=exc.status_code)
        except NotFoundError:
            return PublishResult(success=False, error=REST_NOT_FOUND_MESSAGE, status=404)
        except (WordPressTimeoutError, WordPressConnectionError) as exc:
            logger.error("Fetch failed: %s", exc)
            return PublishResult(
                success=False, error=str(exc), status=exc.status_code, http_status=exc.status_code,
            )
        except WordPressError as exc:
            return PublishResult(success=False, error=str(exc), status=exc.status_code or None)

        if not isinstance(post, dict):
            return PublishResult(success=False, error=INVALID_RESPONSE_MESSAGE)

        rendered = post.get("title")
        title = rendered.get("rendered") if isinstance(rendered, dict) else None
        result = PublishResult(
            success=True,
            updated=bool(target_id),
            post={
                "id": post.get("id"),
                "url": post.get("link"),
                "status": post.get("status"),
                "title": title or request.title,
                "slug": post.get("slug"),
            },
        )
        logger.info(
            "%s post %s (%s)",
            "Updated" if result.updated else "Created", post.get("id"), post.get("link"),
        )
        return result


async def publish_post(request: PublishRequest) -> PublishResult:
    """One-shot publish using the credentials carried by *request*."""
    async with WordPressClient(request.credentials) as client:
        return await client.publish_post(request)


# ---------------------------------------------------------------------------
# Sitemap fetch proxy
# ---------------------------------------------------------------------------


def _looks_like_xml(content: str, content_type: str) -> bool:
    return (
        "xml" in content_type
        or content.strip().startswith("<?xml")
        or "<urlset" in content
        or "<sitemapindex" in content
    )


async def fetch_sitemap(
    url: str,
    timeout: float = SITEMAP_FETCH_TIMEOUT,
    session: Optional[aiohttp.ClientSession] = None,
) -> Dict[str, Any]:
    """
    Fetch a sitemap server-side with crawler headers.

    Returns
    -------
    dict
        ``content``, ``contentType``, ``url``, ``size``, ``isXml``, ``elapsed`` (ms).

    Raises
    ------
    UnsafeUrlError
        If *url* is not a public http(s) address.
    SitemapFetchError
        On a non-OK upstream status, or 408 on timeout.
    """
    if not url:
        raise UnsafeUrlError("URL parameter is required", status_code=400)
    if not is_public_url(url):
        raise UnsafeUrlError(PUBLIC_URL_REQUIRED_MESSAGE, status_code=400)

    headers = {
        "User-Agent": GOOGLEBOT_USER_AGENT,
        "Accept": "application/xml, text/xml, text/html, */*",
        "Accept-Language": "en-US,en;q=0.9",
        "Cache-Control": "no-cache",
    }
    owns_session = session is None
    if session is None:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout))

    start = time.monotonic()
    try:
        async with session.request("GET", url, headers=headers) as resp:
            elapsed = int((time.monotonic() - start) * 1000)
            if resp.status >= 400:
                raise SitemapFetchError(
                    f"Failed to fetch: HTTP {resp.status}",
                    status_code=resp.status,
                    elapsed_ms=elapsed,
                )
            content = await resp.text()
            content_type = resp.headers.get("Content-Type") or "text/plain"
    except asyncio.TimeoutError as exc:
        elapsed = int((time.monotonic() - start) * 1000)
        raise SitemapFetchError(
            f"Request timed out after {round(elapsed / 1000)}s", status_code=408, elapsed_ms=elapsed,
        ) from exc
    except aiohttp.ClientError as exc:
        elapsed = int((time.monotonic() - start) * 1000)
        raise SitemapFetchError(str(exc), status_code=500, elapsed_ms=elapsed) from exc
    finally:
        if owns_session:
            await session.close()

    elapsed = int((time.monotonic() - start) * 1000)
    logger.debug("Fetched %s (%d bytes) in %dms", url, len(content), elapsed)
    return {
        "content": content,
        "contentType": content_type,
        "url": url,
        "size": len(content),
        "isXml": _looks_like_xml(content, content_type),
        "elapsed": elapsed,
    }
