"""
WordPress REST URL discovery.

Enumerates published post and page URLs through ``/wp-json/wp/v2`` instead
of the sitemap. Useful when the sitemap is blocked by a WAF or generated so
slowly that the crawler times out.

Usage:
    from seo_autopilot.wp_discovery import discover_wordpress_urls

    urls = await discover_wordpress_urls("example.com", max_urls=5000)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

import aiohttp

from seo_autopilot.url_utils import is_public_url, normalize_url, url_origin
from seo_autopilot.wordpress_client import UnsafeUrlError

logger = logging.getLogger("wp_discovery")
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

DISCOVERY_USER_AGENT = "Mozilla/5.0 (compatible; Googlebot/2.1)"
DISCOVERY_TIMEOUT = 12  # seconds
PAGE_BATCH_SIZE = 4

DEFAULT_PER_PAGE = 100
DEFAULT_MAX_PAGES = 250
DEFAULT_MAX_URLS = 100_000


class WordPressDiscovery:
    """Paginates the posts/pages collections of one WordPress site."""

    def __init__(self, timeout: float = DISCOVERY_TIMEOUT):
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "User-Agent": DISCOVERY_USER_AGENT,
                    "Accept": "application/json",
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _fetch_page(
        self, origin: str, endpoint: str, page: int, per_page: int
    ) -> Tuple[List[str], Optional[int]]:
        """Return ``(links, total_pages)`` for one collection page."""
        session = await self._get_session()
        url = f"{origin}/wp-json/wp/v2/{endpoint}"
        params = {"per_page": str(per_page), "page": str(page), "_fields": "link"}
        try:
            async with session.request("GET", url, params=params) as resp:
                if resp.status >= 400:
                    # WP answers 400 (rest_post_invalid_page_number) past the last page
                    logger.debug("%s page %d returned %d", endpoint, page, resp.status)
                    return [], None
                total_raw = resp.headers.get("X-WP-TotalPages")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("Discovery request failed for %s page %d: %s", endpoint, page, exc)
            return [], None

        total: Optional[int] = None
        if total_raw:
            try:
                total = int(total_raw)
            except ValueError:
                total = None

        links: List[str] = []
        if isinstance(data, list):
            for item in data:
                link = item.get("link") if isinstance(item, dict) else None
                if isinstance(link, str) and link.startswith("http"):
                    links.append(link)
        return links, total

    async def _collect_endpoint(
        self,
        origin: str,
        endpoint: str,
        per_page: int,
        max_pages: int,
        found: Dict[str, None],
        max_urls: int,
    ) -> None:
        def _add(links: List[str]) -> None:
            for link in links:
                if len(found) >= max_urls:
                    return
                found.setdefault(link, None)

        first_links, total = await self._fetch_page(origin, endpoint, 1, per_page)
        _add(first_links)

        if total is not None:
            last_page = min(total, max_pages)
            pages = list(range(2, last_page + 1))
            for i in range(0, len(pages), PAGE_BATCH_SIZE):
                if len(found) >= max_urls:
                    return
                batch = pages[i:i + PAGE_BATCH_SIZE]
                results = await asyncio.gather(
                    *(self._fetch_page(origin, endpoint, p, per_page) for p in batch)
                )
                for links, _ in results:
                    _add(links)
            return

        # No pagination header: walk until an empty page
        if not first_links:
            return
        page = 2
        while page <= max_pages and len(found) < max_urls:
            links, _ = await self._fetch_page(origin, endpoint, page, per_page)
            if not links:
                break
            _add(links)
            page += 1

    async def discover(
        self,
        site_url: str,
        per_page: int = DEFAULT_PER_PAGE,
        max_pages: int = DEFAULT_MAX_PAGES,
        max_urls: int = DEFAULT_MAX_URLS,
        include_pages: bool = True,
    ) -> List[str]:
        """
        Enumerate post (and optionally page) URLs for *site_url*.

        Raises
        ------
        UnsafeUrlError
            If the site URL is not a public http(s) address.
        """
        target = normalize_url(site_url)
        if not is_public_url(target):
            raise UnsafeUrlError("Site URL must be a public HTTP/HTTPS address", status_code=400)

        origin = url_origin(target)
        found: Dict[str, None] = {}
        endpoints = ["posts"]
        if include_pages:
            endpoints.append("pages")

        for endpoint in endpoints:
            if len(found) >= max_urls:
                break
            await self._collect_endpoint(origin, endpoint, per_page, max_pages, found, max_urls)
            logger.info("Discovered %d URLs after %s for %s", len(found), endpoint, origin)

        return list(found)[:max_urls]


async def discover_wordpress_urls(
    site_url: str,
    per_page: int = DEFAULT_PER_PAGE,
    max_pages: int = DEFAULT_MAX_PAGES,
    max_urls: int = DEFAULT_MAX_URLS,
    include_pages: bool = True,
) -> List[str]:
    """Convenience wrapper that opens and closes its own session."""
    async with WordPressDiscovery() as discovery:
        return await discovery.discover(
            site_url,
            per_page=per_page,
            max_pages=max_pages,
            max_urls=max_urls,
            include_pages=include_pages,
        )
