"""
Sitemap Crawler
===============

Breadth-first traversal of XML sitemap indexes with bounded concurrency,
per-fetch timeouts, and cooperative cancellation. Handles:

    - ``<urlset>`` sitemaps (returns page URLs)
    - ``<sitemapindex>`` sitemaps (recursively queues child sitemaps)
    - namespaced/prefixed ``<loc>`` elements
    - sitemaps served inside an HTML shell, or with bare ``&`` characters
    - non-XML "sitemaps" (reader-proxy markdown, WAF pages) via a text fallback

A single failing sitemap is logged and skipped; only cancellation aborts
the whole crawl.

Usage:
    from seo_autopilot.sitemap_crawler import CrawlOptions, SitemapFetcher, crawl_sitemap_urls

    async with SitemapFetcher() as fetcher:
        urls = await crawl_sitemap_urls(
            "example.com/sitemap_index.xml",
            fetcher.fetch,
            CrawlOptions(concurrency=8, max_urls=10_000),
        )

CLI:
    python -m seo_autopilot.cli crawl --sitemap https://example.com/sitemap.xml
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

import aiohttp

from seo_autopilot.sitemap_adapter import adapt_markdown_to_sitemap_xml, looks_like_sitemap_xml
from seo_autopilot.url_utils import (
    extract_http_urls,
    is_index_like_sitemap,
    is_public_url,
    is_xml_link,
    normalize_url,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("sitemap_crawler")
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

DEFAULT_CONCURRENCY = 10
MAX_CONCURRENCY = 25
DEFAULT_MAX_SITEMAPS = 5000
DEFAULT_MAX_URLS = 500_000
DEFAULT_FETCH_TIMEOUT = 30.0  # seconds
MIN_FETCH_TIMEOUT = 5.0
TEXT_FALLBACK_MAX_URLS = 200_000

READER_PROXY_PREFIX = "https://r.jina.ai/"
CRAWLER_USER_AGENT = "Mozilla/5.0 (compatible; SEOAutopilotBot/1.0)"

LOW_VALUE_SITEMAP_RE = re.compile(
    r"(?:^|/)(?:video|image|news|author|tag|category|attachment|media)[\w.-]*sitemap\.xml\b",
    re.IGNORECASE,
)
POST_SITEMAP_RE = re.compile(r"(?:^|/)(?:post|posts|blog)[-_]?sitemap\.xml\b", re.IGNORECASE)
BARE_AMPERSAND_RE = re.compile(r"&(?!amp;|lt;|gt;|apos;|quot;|#\d+;|#x[a-fA-F0-9]+;)")
LOC_FALLBACK_RE = re.compile(
    r"<\s*(?:[A-Za-z_][\w.-]*:)?loc\s*>([\s\S]*?)<\s*/\s*(?:[A-Za-z_][\w.-]*:)?loc\s*>",
    re.IGNORECASE,
)

_PAYLOAD_ROOTS = (
    ("<sitemapindex", "</sitemapindex>"),
    ("<urlset", "</urlset>"),
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SitemapError(Exception):
    """Base exception for sitemap fetch/parse failures."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class SitemapParseError(SitemapError):
    """Raised when a sitemap body is not usable XML."""
    pass


class CrawlCancelledError(SitemapError):
    """Raised when the crawl's cancel event is set."""

    def __init__(self, message: str = "Crawl cancelled"):
        super().__init__(message)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class CrawlProgress:
    """Snapshot emitted to ``on_progress`` callbacks."""

    processed_sitemaps: int = 0
    queued_sitemaps: int = 0
    discovered_urls: int = 0
    current_sitemap: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "processedSitemaps": self.processed_sitemaps,
            "queuedSitemaps": self.queued_sitemaps,
            "discoveredUrls": self.discovered_urls,
            "currentSitemap": self.current_sitemap,
        }


@dataclass
class CrawlOptions:
    """Tuning knobs and callbacks for a crawl."""

    concurrency: int = DEFAULT_CONCURRENCY
    max_sitemaps: int = DEFAULT_MAX_SITEMAPS
    max_urls: int = DEFAULT_MAX_URLS
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    cancel_event: Optional[asyncio.Event] = None
    on_progress: Optional[Callable[[CrawlProgress], None]] = None
    on_urls_batch: Optional[Callable[[List[str]], None]] = None

    @property
    def effective_concurrency(self) -> int:
        return max(1, min(self.concurrency or DEFAULT_CONCURRENCY, MAX_CONCURRENCY))

    @property
    def effective_timeout(self) -> float:
        return max(MIN_FETCH_TIMEOUT, self.fetch_timeout or DEFAULT_FETCH_TIMEOUT)


@dataclass
class SitemapDocument:
    """Parsed sitemap: its kind and every ``<loc>`` value found."""

    kind: str = "unknown"  # "index", "urlset", "unknown"
    locs: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def is_low_value_sitemap(url: str) -> bool:
    """Video/image/news/taxonomy sitemaps: slow to generate, rarely useful."""
    return bool(LOW_VALUE_SITEMAP_RE.search(url))


def is_post_sitemap(url: str) -> bool:
    return bool(POST_SITEMAP_RE.search(url))


def extract_sitemap_payload(raw: str) -> str:
    """Slice the real sitemap root out of an HTML wrapper, if there is one."""
    for open_tag, close_tag in _PAYLOAD_ROOTS:
        start = raw.find(open_tag)
        if start == -1:
            continue
        end = raw.find(close_tag, start)
        if end == -1:
            continue
        return raw[start:end + len(close_tag)]
    return raw


def sanitize_xml(raw: str) -> str:
    """Escape bare ``&`` characters that would break the XML parser."""
    return BARE_AMPERSAND_RE.sub("&amp;", raw)


def _local_name(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].rsplit(":", 1)[-1].lower()


def _is_http(url: str) -> bool:
    return url.startswith("http://") or url.startswith("https://")


def _regex_locs(raw: str) -> List[str]:
    out: List[str] = []
    for match in LOC_FALLBACK_RE.finditer(raw):
        url = (match.group(1) or "").strip()
        if url and _is_http(url):
            out.append(url)
    return out


def parse_sitemap(raw: str) -> SitemapDocument:
    """
    Parse a sitemap body into a :class:`SitemapDocument`.

    Raises
    ------
    SitemapParseError
        If the payload is not well-formed XML.
    """
    payload = sanitize_xml(extract_sitemap_payload(raw).strip().lstrip("﻿"))
    try:
        root = ET.fromstring(payload)
    except ET.ParseError as exc:
        raise SitemapParseError("Invalid XML format in sitemap") from exc

    root_name = _local_name(root.tag)
    if root_name == "sitemapindex":
        kind = "index"
    elif root_name == "urlset":
        kind = "urlset"
    else:
        names = {_local_name(el.tag) for el in root.iter()}
        if "sitemap" in names:
            kind = "index"
        elif "url" in names:
            kind = "urlset"
        else:
            kind = "unknown"

    locs: List[str] = []
    for el in root.iter():
        if _local_name(el.tag) != "loc":
            continue
        url = "".join(el.itertext()).strip()
        if url and _is_http(url):
            locs.append(url)

    if not locs:
        locs = _regex_locs(raw)

    return SitemapDocument(kind=kind, locs=locs)


# ---------------------------------------------------------------------------
# Crawler
# ---------------------------------------------------------------------------

FetchFunc = Callable[[str], Awaitable[str]]


class SitemapCrawler:
    """
    Stateful breadth-first sitemap crawl.

    Parameters
    ----------
    fetch : callable
        ``async fetch(url) -> str`` returning the raw sitemap body.
    options : CrawlOptions, optional
        Limits, timeout, cancel event, and callbacks.
    """

    def __init__(self, fetch: FetchFunc, options: Optional[CrawlOptions] = None):
        self.fetch = fetch
        self.options = options or CrawlOptions()
        self.pending: List[str] = []
        self.visited: Set[str] = set()
        # dict preserves discovery order
        self.discovered: Dict[str, None] = {}
        self.processed = 0

    # -- Progress -----------------------------------------------------------

    def _emit_progress(self, current: Optional[str] = None) -> None:
        if self.options.on_progress is None:
            return
        self.options.on_progress(CrawlProgress(
            processed_sitemaps=self.processed,
            queued_sitemaps=len(self.pending),
            discovered_urls=len(self.discovered),
            current_sitemap=current,
        ))

    def _cancelled(self) -> bool:
        event = self.options.cancel_event
        return event is not None and event.is_set()

    # -- Fetch with timeout + cancellation ----------------------------------

    async def _fetch_with_timeout(self, sitemap: str) -> str:
        timeout = self.options.effective_timeout
        fetch_task = asyncio.ensure_future(self.fetch(sitemap))
        waiters = {fetch_task}
        cancel_task: Optional[asyncio.Future] = None
        if self.options.cancel_event is not None:
            cancel_task = asyncio.ensure_future(self.options.cancel_event.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()

        if fetch_task in done:
            return fetch_task.result()
        # Let the cancelled fetch unwind before reporting
        await asyncio.gather(fetch_task, return_exceptions=True)
        if cancel_task is not None and cancel_task in done:
            raise CrawlCancelledError()
        raise SitemapError(f"Sitemap fetch timed out after {round(timeout)}s")

    # -- URL bookkeeping ----------------------------------------------------

    def _add_urls(self, locs: List[str]) -> List[str]:
        newly_added: List[str] = []
        for loc in locs:
            if len(self.discovered) >= self.options.max_urls:
                break
            if not _is_http(loc) or loc in self.discovered:
                continue
            self.discovered[loc] = None
            newly_added.append(loc)
        if newly_added and self.options.on_urls_batch is not None:
            self.options.on_urls_batch(newly_added)
        return newly_added

    def _queue_children(self, locs: List[str]) -> None:
        preferred = [u for u in locs if is_post_sitemap(u)] or locs
        filtered = [u for u in preferred if not is_low_value_sitemap(u)]
        for loc in filtered or preferred:
            if loc not in self.visited:
                self.pending.append(loc)

    # -- Single sitemap -----------------------------------------------------

    async def _process_text_fallback(self, sitemap: str, raw: str) -> None:
        locs = extract_http_urls(raw, TEXT_FALLBACK_MAX_URLS)
        if not locs:
            raise SitemapParseError("Invalid XML format in sitemap")

        if is_index_like_sitemap(sitemap):
            xml_links = [u for u in locs if is_xml_link(u)]
            if xml_links:
                for loc in xml_links:
                    if loc in self.visited or is_low_value_sitemap(loc):
                        continue
                    self.pending.append(loc)
                return

        self._add_urls(locs)

    async def _process_sitemap(self, sitemap: str) -> None:
        self._emit_progress(sitemap)
        try:
            if self._cancelled():
                raise CrawlCancelledError()

            if is_low_value_sitemap(sitemap):
                logger.info("Skipped low-value sitemap: %s", sitemap)
                return

            raw = await self._fetch_with_timeout(sitemap)

            try:
                doc = parse_sitemap(raw)
            except SitemapParseError:
                await self._process_text_fallback(sitemap, raw)
                return

            locs = doc.locs or extract_http_urls(raw, TEXT_FALLBACK_MAX_URLS)
            if doc.kind == "index":
                self._queue_children(locs)
            else:
                added = self._add_urls(locs)
                logger.debug("%s: %d new URLs", sitemap, len(added))

        except CrawlCancelledError:
            raise
        except Exception as exc:
            if self._cancelled():
                raise CrawlCancelledError() from exc
            logger.warning("Failed sitemap %s: %s", sitemap, exc)
        finally:
            self.processed += 1
            self._emit_progress()

    # -- Main loop ----------------------------------------------------------

    async def crawl(self, entry_url: str) -> List[str]:
        """Run the crawl from *entry_url* and return every page URL found."""
        opts = self.options
        concurrency = opts.effective_concurrency
        self.pending = [normalize_url(entry_url)]
        start = time.monotonic()

        logger.info(
            "Crawling %s (concurrency=%d, max_sitemaps=%d, max_urls=%d)",
            self.pending[0], concurrency, opts.max_sitemaps, opts.max_urls,
        )
        self._emit_progress()

        while self.pending:
            if self._cancelled():
                raise CrawlCancelledError()
            if len(self.visited) >= opts.max_sitemaps:
                logger.warning("Sitemap limit reached (%d)", opts.max_sitemaps)
                break
            if len(self.discovered) >= opts.max_urls:
                logger.info("URL limit reached (%d)", opts.max_urls)
                break

            batch: List[str] = []
            while len(batch) < concurrency and self.pending:
                nxt = self.pending.pop(0)
                if nxt in self.visited:
                    continue
                self.visited.add(nxt)
                batch.append(nxt)

            if not batch:
                continue

            await asyncio.gather(*(self._process_sitemap(s) for s in batch))

        elapsed = time.monotonic() - start
        logger.info(
            "Crawl finished: %d sitemaps, %d URLs in %.1fs",
            self.processed, len(self.discovered), elapsed,
        )
        return list(self.discovered)


async def crawl_sitemap_urls(
    entry_url: str,
    fetch: FetchFunc,
    options: Optional[CrawlOptions] = None,
) -> List[str]:
    """
    Crawl a sitemap (index or urlset) and return all discovered page URLs.

    Parameters
    ----------
    entry_url : str
        Sitemap URL; ``https://`` is assumed when no scheme is given.
    fetch : callable
        ``async fetch(url) -> str``.
    options : CrawlOptions, optional
        See :class:`CrawlOptions`.

    Returns
    -------
    list of str
        Unique page URLs in discovery order, at most ``options.max_urls``.

    Raises
    ------
    CrawlCancelledError
        When ``options.cancel_event`` is set during the crawl.
    """
    return await SitemapCrawler(fetch, options).crawl(entry_url)


# ---------------------------------------------------------------------------
# HTTP fetcher
# ---------------------------------------------------------------------------


class SitemapFetcher:
    """
    aiohttp-backed ``fetch`` for :func:`crawl_sitemap_urls`.

    Fetches directly first; when that fails and ``use_reader_fallback`` is
    set, retries through the reader proxy and converts its markdown listing
    back into sitemap XML.
    """

    def __init__(self, timeout: float = DEFAULT_FETCH_TIMEOUT, use_reader_fallback: bool = True):
        self.timeout = timeout
        self.use_reader_fallback = use_reader_fallback
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "User-Agent": CRAWLER_USER_AGENT,
                    "Accept": "application/xml, text/xml, text/html, */*",
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

    async def _get_text(self, url: str) -> str:
        session = await self._get_session()
        async with session.request("GET", url) as resp:
            body = await resp.text()
            if resp.status >= 400:
                raise SitemapError(
                    f"Upstream returned {resp.status} for {url}", status_code=resp.status
                )
            return body

    async def fetch(self, url: str) -> str:
        """Return the sitemap body for *url* (XML, or adapted to XML)."""
        if not is_public_url(url):
            raise SitemapError(f"URL must be a public HTTP/HTTPS address: {url}", status_code=400)

        try:
            body = await self._get_text(url)
        except (SitemapError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            if not self.use_reader_fallback:
                raise
            logger.info("Direct fetch failed for %s (%s), trying reader proxy", url, exc)
            body = await self._get_text(f"{READER_PROXY_PREFIX}{url}")

        if not looks_like_sitemap_xml(body):
            adapted = adapt_markdown_to_sitemap_xml(body, url)
            if adapted is not None:
                return adapted
        return body
