"""
SEO Health Scorer
=================

Analyzes a page's HTML and produces a 0-100 health score used to decide
which pages God Mode should regenerate first. Starts at 100 and deducts for
thin content, broken heading hierarchy, stale dates, missing internal or
external links, missing schema, images, and meta description.

Pages are fetched through the reader proxy first (better rendered output),
falling back to a direct request.

Usage:
    from seo_autopilot.seo_health_scorer import get_scorer

    scorer = get_scorer()
    analysis = await scorer.analyze_page("https://example.com/post/")
    print(analysis.score, analysis.issues)

CLI:
    python -m seo_autopilot.cli score https://example.com/post/
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin, urlsplit

import aiohttp

from seo_autopilot.url_utils import PUBLIC_URL_REQUIRED_MESSAGE, is_public_url

logger = logging.getLogger("seo_health_scorer")
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

READER_PROXY_PREFIX = "https://r.jina.ai/"
SCORER_USER_AGENT = "Mozilla/5.0 (compatible; SEOHealthBot/1.0)"
FETCH_TIMEOUT = 15  # seconds
BATCH_DELAY = 1.0  # seconds between batches

STALE_AFTER_DAYS = 90
UNKNOWN_AGE_DAYS = 999

_SCRIPT_RE = re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[^>]*>[\s\S]*?</style>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_H1_RE = re.compile(r"<h1[\s>]", re.IGNORECASE)
_H2_RE = re.compile(r"<h2[\s>]", re.IGNORECASE)
_H3_RE = re.compile(r"<h3[\s>]", re.IGNORECASE)
_LINK_RE = re.compile(r"<a\s+[^>]*href=[\"']([^\"']+)[\"'][^>]*>", re.IGNORECASE)
_JSON_LD_RE = re.compile(
    r"<script\s+type=[\"']application/ld\+json[\"'][^>]*>([\s\S]*?)</script>",
    re.IGNORECASE,
)
_IMG_RE = re.compile(r"<img\s", re.IGNORECASE)
_META_DESC_RE = re.compile(r"<meta\s+name=[\"']description[\"']", re.IGNORECASE)

_DATE_PATTERNS = [
    re.compile(r"dateModified[\"']\s*:\s*[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"datePublished[\"']\s*:\s*[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"article:modified_time[\"']\s*content=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"article:published_time[\"']\s*content=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"(\d{4}-\d{2}-\d{2})"),
]

_SKIPPED_HREF_PREFIXES = ("#", "mailto:", "tel:", "javascript:")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class HeadingStructure:
    h1_count: int = 0
    h2_count: int = 0
    h3_count: int = 0
    is_valid: bool = False


@dataclass
class Freshness:
    last_modified: Optional[str] = None
    days_since_update: int = UNKNOWN_AGE_DAYS
    is_stale: bool = True


@dataclass
class LinkCounts:
    internal_count: int = 0
    external_count: int = 0
    broken_count: int = 0


@dataclass
class SchemaInfo:
    has_schema: bool = False
    types: List[str] = field(default_factory=list)


@dataclass
class HealthAnalysis:
    """Result of scoring a single page."""

    url: str
    score: int = 0
    word_count: int = 0
    heading_structure: HeadingStructure = field(default_factory=HeadingStructure)
    freshness: Freshness = field(default_factory=Freshness)
    links: LinkCounts = field(default_factory=LinkCounts)
    schema: SchemaInfo = field(default_factory=SchemaInfo)
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def failed(cls, url: str, message: str) -> HealthAnalysis:
        """Score-0 result that flags the page for manual review."""
        return cls(
            url=url,
            issues=[f"Failed to analyze: {message}"],
            recommendations=["Manual review required"],
        )


# ---------------------------------------------------------------------------
# Analysis helpers
# ---------------------------------------------------------------------------


def extract_text_content(html: str) -> str:
    text = _SCRIPT_RE.sub("", html or "")
    text = _STYLE_RE.sub("", text)
    text = _TAG_RE.sub(" ", text)
    return re.sub(r"\s+", " ", text).strip()


def count_words(text: str) -> int:
    return len(text.split())


def analyze_headings(html: str) -> HeadingStructure:
    h1 = len(_H1_RE.findall(html))
    h2 = len(_H2_RE.findall(html))
    h3 = len(_H3_RE.findall(html))
    return HeadingStructure(h1_count=h1, h2_count=h2, h3_count=h3, is_valid=h1 == 1 and h2 >= 2)


def _parse_date(value: str) -> Optional[datetime]:
    value = value.strip()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def analyze_freshness(html: str, now: Optional[datetime] = None) -> Freshness:
    """Find the most specific modified/published date and compute its age."""
    now = now or datetime.now(timezone.utc)
    last_modified: Optional[datetime] = None
    for pattern in _DATE_PATTERNS:
        match = pattern.search(html)
        if not match or not match.group(1):
            continue
        parsed = _parse_date(match.group(1))
        if parsed is not None:
            last_modified = parsed
            break

    if last_modified is None:
        return Freshness(last_modified=None, days_since_update=UNKNOWN_AGE_DAYS, is_stale=True)

    days = (now - last_modified).days
    return Freshness(
        last_modified=last_modified.isoformat(),
        days_since_update=days,
        is_stale=days > STALE_AFTER_DAYS,
    )


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


def analyze_links(html: str, page_url: str) -> LinkCounts:
    counts = LinkCounts()
    try:
        page_origin = _origin(page_url)
    except ValueError:
        return counts

    for href in _LINK_RE.findall(html):
        if href.startswith(_SKIPPED_HREF_PREFIXES):
            continue
        try:
            absolute = href if href.startswith("http") else urljoin(page_url, href)
            link_origin = _origin(absolute)
        except ValueError:
            counts.internal_count += 1
            continue
        if link_origin == page_origin:
            counts.internal_count += 1
        else:
            counts.external_count += 1
    return counts


def analyze_schema(html: str) -> SchemaInfo:
    types: List[str] = []
    for block in _JSON_LD_RE.findall(html):
        try:
            parsed = json.loads(block)
        except ValueError:
            continue
        if not isinstance(parsed, dict):
            continue
        schema_type = parsed.get("@type")
        if isinstance(schema_type, list):
            types.extend(str(t) for t in schema_type)
        elif schema_type:
            types.append(str(schema_type))
    unique = list(dict.fromkeys(types))
    return SchemaInfo(has_schema=bool(unique), types=unique)


def analyze_html(url: str, html: str, now: Optional[datetime] = None) -> HealthAnalysis:
    """
    Score *html* as served at *url*.

    Parameters
    ----------
    url : str
        Page URL; its origin decides which links count as internal.
    html : str
        Raw page HTML.
    now : datetime, optional
        Reference time for freshness (defaults to the current UTC time).

    Returns
    -------
    HealthAnalysis
    """
    issues: List[str] = []
    recommendations: List[str] = []
    score = 100

    word_count = count_words(extract_text_content(html))
    if word_count < 500:
        score -= 30
        issues.append(f"Very thin content: {word_count} words (target: 2500+)")
        recommendations.append("Expand content significantly with in-depth coverage")
    elif word_count < 1000:
        score -= 20
        issues.append(f"Thin content: {word_count} words")
        recommendations.append("Add more comprehensive content sections")
    elif word_count < 1500:
        score -= 10
        issues.append(f"Below optimal word count: {word_count} words")
        recommendations.append("Consider expanding with more details and examples")
    elif word_count < 2500:
        score -= 5

    headings = analyze_headings(html)
    if headings.h1_count == 0:
        score -= 15
        issues.append("Missing H1 tag")
        recommendations.append("Add a single, descriptive H1 tag")
    elif headings.h1_count > 1:
        score -= 10
        issues.append(f"Multiple H1 tags: {headings.h1_count}")
        recommendations.append("Use only one H1 tag per page")

    if headings.h2_count == 0:
        score -= 10
        issues.append("No H2 subheadings")
        recommendations.append("Add H2 headings to structure content")
    elif headings.h2_count < 3 and word_count > 1000:
        score -= 5
        issues.append("Few H2 headings for content length")
        recommendations.append("Add more H2 subheadings for better structure")

    freshness = analyze_freshness(html, now=now)
    if freshness.days_since_update > 365:
        score -= 20
        issues.append(f"Content is {freshness.days_since_update} days old")
        recommendations.append("Update with fresh information and current year references")
    elif freshness.days_since_update > 180:
        score -= 10
        issues.append(f"Content hasn't been updated in {freshness.days_since_update} days")
        recommendations.append("Consider refreshing with recent data")
    elif freshness.days_since_update > 90:
        score -= 5

    links = analyze_links(html, url)
    if links.internal_count == 0:
        score -= 15
        issues.append("No internal links")
        recommendations.append("Add relevant internal links to related content")
    elif links.internal_count < 3:
        score -= 5
        issues.append("Few internal links")
        recommendations.append("Add more internal links for better site structure")

    if links.external_count == 0:
        score -= 5
        issues.append("No external authority links")
        recommendations.append("Add citations to authoritative sources")

    schema = analyze_schema(html)
    if not schema.has_schema:
        score -= 10
        issues.append("No structured data/schema markup")
        recommendations.append("Add JSON-LD schema (Article, FAQ, HowTo, etc.)")

    if not _IMG_RE.search(html):
        score -= 5
        issues.append("No images detected")
        recommendations.append("Add relevant images with alt text")

    if not _META_DESC_RE.search(html):
        score -= 10
        issues.append("Missing meta description")
        recommendations.append("Add a compelling meta description")

    return HealthAnalysis(
        url=url,
        score=max(0, min(100, score)),
        word_count=word_count,
        heading_structure=headings,
        freshness=freshness,
        links=links,
        schema=schema,
        issues=issues,
        recommendations=recommendations,
    )


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------


class SEOHealthScorer:
    """Fetches pages and scores them with :func:`analyze_html`."""

    def __init__(self, timeout: float = FETCH_TIMEOUT, use_reader_proxy: bool = True):
        self.timeout = timeout
        self.use_reader_proxy = use_reader_proxy
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
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

    async def fetch_page_content(self, url: str) -> str:
        """
        Reader proxy first, then a direct fetch.

        Raises
        ------
        ValueError
            If *url* is not a public http(s) address.
        """
        if not is_public_url(url):
            raise ValueError(PUBLIC_URL_REQUIRED_MESSAGE)
        session = await self._get_session()

        if self.use_reader_proxy:
            try:
                async with session.request(
                    "GET", f"{READER_PROXY_PREFIX}{url}", headers={"Accept": "text/html"}
                ) as resp:
                    if resp.status < 400:
                        return await resp.text()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.debug("Reader proxy failed for %s (%s), trying direct fetch", url, exc)

        async with session.request(
            "GET",
            url,
            headers={"User-Agent": SCORER_USER_AGENT, "Accept": "text/html"},
        ) as resp:
            if resp.status >= 400:
                raise RuntimeError(f"HTTP {resp.status}")
            return await resp.text()

    def analyze_html(self, url: str, html: str) -> HealthAnalysis:
        return analyze_html(url, html)

    async def analyze_page(self, url: str) -> HealthAnalysis:
        """Fetch and score *url*. Never raises; failures score 0."""
        start = time.monotonic()
        try:
            html = await self.fetch_page_content(url)
            analysis = analyze_html(url, html)
        except Exception as exc:
            logger.error("Error analyzing %s: %s", url, exc)
            return HealthAnalysis.failed(url, str(exc) or type(exc).__name__)

        logger.info(
            "Analyzed %s in %dms - Score: %d",
            url, int((time.monotonic() - start) * 1000), analysis.score,
        )
        return analysis

    async def batch_analyze(
        self,
        urls: List[str],
        concurrency: int = 2,
        on_progress: Optional[Callable[[int, int], None]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[HealthAnalysis]:
        """Score *urls* in small concurrent batches with a pause between them."""
        results: List[HealthAnalysis] = []
        concurrency = max(1, concurrency)
        total = len(urls)

        for i in range(0, total, concurrency):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Batch analysis cancelled after %d/%d", len(results), total)
                break
            batch = urls[i:i + concurrency]
            results.extend(await asyncio.gather(*(self.analyze_page(u) for u in batch)))
            if on_progress is not None:
                on_progress(len(results), total)
            if i + concurrency < total:
                await asyncio.sleep(BATCH_DELAY)

        return results


_scorer: Optional[SEOHealthScorer] = None


def get_scorer() -> SEOHealthScorer:
    """Get or create the singleton SEOHealthScorer instance."""
    global _scorer
    if _scorer is None:
        _scorer = SEOHealthScorer()
    return _scorer
