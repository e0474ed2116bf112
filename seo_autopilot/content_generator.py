"""
Content Generator
=================

Turns a keyword (and optionally the URL being refreshed) into a finished,
publish-ready article:

    1. Title (skipped when one is supplied)
    2. HTML body from the AI model
    3. Visual-break post-processing
    4. Contextual internal links against known site pages
    5. Meta description
    6. Slug, word count, and a structural quality score

The model itself is a black box reached through the Anthropic SDK. Every
model response is cached by (kind, keyword, title) so a retried God Mode
item does not pay for the same prompt twice.

Usage:
    from seo_autopilot.content_generator import AIClient, ContentOrchestrator

    orchestrator = ContentOrchestrator(AIClient(api_key="sk-..."))
    content = await orchestrator.generate_content("moon water ritual")
    print(content.title, content.quality_score)
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import anthropic

from seo_autopilot.config import MODEL_HAIKU, MODEL_SONNET
from seo_autopilot.content_post_processor import process as enforce_visual_breaks
from seo_autopilot.generation_cache import GenerationCache, generation_cache
from seo_autopilot.internal_link_engine import (
    MAX_LINKS_PER_ARTICLE,
    InternalLinkEngine,
    SitePage,
)
from seo_autopilot.seo_health_scorer import (
    analyze_headings,
    analyze_links,
    count_words,
    extract_text_content,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("content_generator")
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

MAX_TOKENS_TITLE = 100
MAX_TOKENS_META = 200
MAX_TOKENS_ARTICLE = 8192
TARGET_WORD_COUNT = 2500
SLUG_MAX_LENGTH = 60

_SURROUNDING_QUOTES_RE = re.compile(r"^[\"']|[\"']$")


class GenerationError(Exception):
    """Raised when the AI model cannot produce content."""
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class GeneratedContent:
    """A finished article ready for publishing or persistence."""

    title: str
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    seo_title: str = ""
    meta_description: str = ""
    slug: str = ""
    primary_keyword: str = ""
    secondary_keywords: List[str] = field(default_factory=list)
    word_count: int = 0
    quality_score: int = 0
    internal_links: List[Dict[str, Any]] = field(default_factory=list)
    generated_at: str = field(default_factory=_now_iso)
    model: str = MODEL_SONNET
    source_url: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.seo_title:
            self.seo_title = self.title

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GeneratedContent:
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def generate_slug(title: str) -> str:
    """Lowercase, drop punctuation, hyphenate whitespace, cap at 60 chars."""
    slug = re.sub(r"[^a-z0-9\s-]", "", (title or "").lower())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug[:SLUG_MAX_LENGTH]


def _strip_quotes(text: str) -> str:
    return _SURROUNDING_QUOTES_RE.sub("", (text or "").strip())


def _clean_html_response(html: str) -> str:
    """Remove markdown fences and any prose before the first HTML tag."""
    html = html.strip()
    html = re.sub(r"^```(?:html)?\s*\n?", "", html)
    html = re.sub(r"\n?```\s*$", "", html)

    first_tag = re.search(r"<(?:h[1-6]|p|div|ul|ol|blockquote|table)", html, re.IGNORECASE)
    if first_tag and first_tag.start() > 0:
        preamble = html[: first_tag.start()].strip()
        if preamble and not preamble.startswith("<"):
            logger.debug("Removing non-HTML preamble (%d chars)", len(preamble))
            html = html[first_tag.start():]
    return html.strip()


def score_generated_html(html: str, keyword: str, page_url: str = "https://example.com/") -> int:
    """
    Structural quality score (0-100) for a generated article body.

    Uses the same heading, length, and link checks as the page health
    scorer, plus keyword presence and visual elements.
    """
    text = extract_text_content(html)
    words = count_words(text)
    headings = analyze_headings(html)
    links = analyze_links(html, page_url)

    score = 100
    if words < 1000:
        score -= 30
    elif words < 1500:
        score -= 20
    elif words < TARGET_WORD_COUNT:
        score -= 10

    if headings.h2_count == 0:
        score -= 20
    elif headings.h2_count < 3:
        score -= 10

    if links.internal_count + links.external_count == 0:
        score -= 10

    if keyword and keyword.lower() not in text.lower():
        score -= 15

    if not re.search(r"<(?:table|ul|ol|blockquote)[\s>]", html, re.IGNORECASE):
        score -= 5

    return max(0, min(100, score))


# ---------------------------------------------------------------------------
# Anthropic API client wrapper
# ---------------------------------------------------------------------------


class AIClient:
    """
    Thin wrapper around ``anthropic.AsyncAnthropic``.

    The SDK client is created on first use so constructing an AIClient
    without a key is cheap; :meth:`generate` raises GenerationError then.
    """

    def __init__(self, api_key: str = "", model: str = MODEL_SONNET, client: Any = None):
        self.api_key = api_key
        self.model = model or MODEL_SONNET
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) or self._client is not None

    def _ensure_client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise GenerationError(
                    "No AI API key configured. Set ANTHROPIC_API_KEY before generating content."
                )
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
        return self._client

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = MAX_TOKENS_ARTICLE,
        temperature: float = 0.7,
        model: Optional[str] = None,
    ) -> str:
        """
        Send one message and return the text response.

        Raises
        ------
        GenerationError
            If no key is configured or the API call fails.
        """
        client = self._ensure_client()
        model = model or self.model
        logger.debug(
            "API call: model=%s max_tokens=%d temperature=%.1f user_len=%d",
            model, max_tokens, temperature, len(user_prompt),
        )
        start = time.monotonic()
        try:
            response = await client.messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic.APIError as exc:
            logger.error("API call failed after %.1fs: %s", time.monotonic() - start, exc)
            raise GenerationError(f"AI generation failed: {exc}") from exc

        text = response.content[0].text if response.content else ""
        logger.debug("API response: %d chars in %.1fs", len(text), time.monotonic() - start)
        if not text.strip():
            raise GenerationError("AI model returned an empty response")
        return text


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_WRITER_SYSTEM_PROMPT = """You are an expert SEO content writer.
Write direct, specific, genuinely useful content in short paragraphs (2-4 sentences).
Avoid filler and AI cliches ("delve", "in today's world", "it's important to note",
"comprehensive guide", "in conclusion").
Output pure HTML only (no markdown): h2/h3 hierarchy, at least one table or list,
and styled callout <div> boxes to break up long stretches of text.
Never include an <h1>; the title is rendered separately."""


def _title_prompt(keyword: str) -> str:
    return (
        f'Generate an SEO-optimized title for an article about "{keyword}".\n\n'
        "Requirements:\n"
        "- Maximum 60 characters\n"
        "- Include the primary keyword naturally\n"
        "- Compelling, no clickbait\n\n"
        "Output ONLY the title, nothing else."
    )


def _article_prompt(keyword: str, title: str, source_url: Optional[str]) -> str:
    refresh = (
        f"\nThis article replaces the existing page at {source_url}; cover the same topic "
        "better and more completely.\n"
        if source_url else ""
    )
    return (
        f'Write a {TARGET_WORD_COUNT}+ word article about "{keyword}".\n\n'
        f"TITLE: {title}\n{refresh}\n"
        "Required elements:\n"
        "1. A compelling opening hook\n"
        "2. A Key Takeaways box right after the intro\n"
        "3. At least one comparison table\n"
        "4. An FAQ section with 6-8 questions\n"
        "5. A clear call to action at the end\n"
    )


def _meta_prompt(keyword: str, title: str) -> str:
    return (
        f'Write an SEO meta description for an article titled "{title}" about "{keyword}".\n\n'
        "Requirements:\n"
        "- 150-160 characters\n"
        "- Include the primary keyword naturally\n"
        "- Include a call to action\n\n"
        "Output ONLY the meta description."
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ContentOrchestrator:
    """
    Runs the full generation pipeline for one keyword.

    Parameters
    ----------
    ai_client : AIClient
        Anything with an async ``generate(system_prompt, user_prompt, ...)``.
    link_engine : InternalLinkEngine, optional
        Reused across calls; its page set is replaced per generation.
    cache : GenerationCache, optional
        Defaults to the module-wide ``generation_cache``.
    """

    def __init__(
        self,
        ai_client: AIClient,
        link_engine: Optional[InternalLinkEngine] = None,
        cache: Optional[GenerationCache] = None,
    ):
        self.ai_client = ai_client
        self.link_engine = link_engine or InternalLinkEngine()
        self.cache = cache if cache is not None else generation_cache

    async def _cached_generate(
        self,
        kind: str,
        keyword: str,
        title: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
        model: Optional[str] = None,
    ) -> str:
        key = {"kind": kind, "keyword": keyword, "title": title}
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache hit for %s '%s'", kind, keyword)
            return cached
        text = await self.ai_client.generate(
            system_prompt,
            user_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            model=model,
        )
        self.cache.set(key, text)
        return text

    async def generate_title(self, keyword: str) -> str:
        raw = await self._cached_generate(
            "title", keyword, "", "You write concise SEO titles.",
            _title_prompt(keyword), MAX_TOKENS_TITLE, 0.7, model=MODEL_HAIKU,
        )
        return _strip_quotes(raw)

    async def generate_meta_description(self, keyword: str, title: str) -> str:
        raw = await self._cached_generate(
            "meta", keyword, title, "You write concise SEO meta descriptions.",
            _meta_prompt(keyword, title), MAX_TOKENS_META, 0.7, model=MODEL_HAIKU,
        )
        return _strip_quotes(raw)

    async def generate_content(
        self,
        keyword: str,
        title: Optional[str] = None,
        source_url: Optional[str] = None,
        site_pages: Optional[Sequence[SitePage]] = None,
        inject_links: bool = True,
    ) -> GeneratedContent:
        """
        Generate a complete article for *keyword*.

        Parameters
        ----------
        keyword : str
            Primary keyword.
        title : str, optional
            Use this title instead of generating one.
        source_url : str, optional
            Existing page being refreshed; never linked to itself.
        site_pages : sequence of SitePage, optional
            Internal-link targets.
        inject_links : bool
            Skip link injection when False.

        Returns
        -------
        GeneratedContent

        Raises
        ------
        GenerationError
            If the keyword is empty or the model fails.
        """
        keyword = (keyword or "").strip()
        if not keyword:
            raise GenerationError("A keyword is required to generate content")

        start = time.monotonic()
        logger.info("Generating content for '%s'", keyword)

        final_title = _strip_quotes(title) if title else await self.generate_title(keyword)

        raw_html = await self._cached_generate(
            "article", keyword, final_title, _WRITER_SYSTEM_PROMPT,
            _article_prompt(keyword, final_title, source_url), MAX_TOKENS_ARTICLE, 0.75,
        )
        html = _clean_html_response(raw_html)

        processed = enforce_visual_breaks(html)
        html = processed.html
        if processed.elements_injected:
            logger.info("Injected %d visual break(s)", processed.elements_injected)

        links: List[Dict[str, Any]] = []
        if inject_links and site_pages:
            targets = [p for p in site_pages if p.url != source_url]
            self.link_engine.update_site_pages(targets)
            opportunities = self.link_engine.generate_link_opportunities(html, MAX_LINKS_PER_ARTICLE)
            html = self.link_engine.inject_contextual_links(html, opportunities)
            links = [link.to_dict() for link in opportunities]
            logger.info("Added %d internal link(s)", len(links))

        meta = await self.generate_meta_description(keyword, final_title)
        word_count = count_words(extract_text_content(html))
        quality = score_generated_html(html, keyword, source_url or "https://example.com/")

        content = GeneratedContent(
            title=final_title,
            content=html,
            meta_description=meta,
            slug=generate_slug(final_title),
            primary_keyword=keyword,
            word_count=word_count,
            quality_score=quality,
            internal_links=links,
            model=getattr(self.ai_client, "model", MODEL_SONNET),
            source_url=source_url,
        )
        logger.info(
            "Generated '%s' (%d words, quality %d) in %.1fs",
            final_title, word_count, quality, time.monotonic() - start,
        )
        return content
