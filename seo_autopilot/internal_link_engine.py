"""
Internal Link Engine
====================

Finds contextual internal-link opportunities in freshly generated HTML and
injects them. Relevance is a TF-IDF style overlap between each paragraph and
each known site page; anchors are the best-matching 2-6 word phrase inside
the paragraph. Selection is greedy with density caps:

    - at most 12 links per article, one per paragraph
    - never two links to the same target
    - at least 200 words between consecutive links

No AI calls. Fast, deterministic, and safe to run on every generation.

Usage:
    from seo_autopilot.internal_link_engine import SitePage, create_internal_link_engine

    engine = create_internal_link_engine([SitePage(url=..., title=...)])
    links = engine.generate_link_opportunities(html)
    html = engine.inject_contextual_links(html, links)
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set
from urllib.parse import urlsplit

from seo_autopilot.url_utils import last_path_segment

logger = logging.getLogger("internal_link_engine")
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

STOPWORDS: Set[str] = {
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "as", "is", "was", "are", "were", "been", "be", "have",
    "has", "had", "do", "does", "did", "will", "would", "could", "should", "may",
    "might", "shall", "can", "need", "dare", "ought", "used", "this", "that",
    "these", "those", "i", "me", "my", "myself", "we", "our", "ours", "you",
    "your", "yours", "he", "him", "his", "she", "her", "hers", "it", "its",
    "they", "them", "their", "theirs", "what", "which", "who", "whom", "how",
    "when", "where", "why", "not", "no", "nor", "so", "if", "then", "than",
    "too", "very", "just", "about", "above", "after", "again", "all", "also",
    "any", "because", "before", "below", "between", "both", "each", "few",
    "more", "most", "other", "over", "same", "some", "such", "through",
    "under", "until", "up", "while", "into", "out", "only", "own", "here",
    "there", "once", "during", "now", "even", "new", "way", "many", "much",
}

MAX_LINKS_PER_ARTICLE = 12
MAX_LINKS_PER_PARAGRAPH = 1
MIN_WORDS_BETWEEN_LINKS = 200
MIN_RELEVANCE_SCORE = 25
MIN_PARAGRAPH_WORDS = 10
CONTEXT_CHARS = 150

_TAG_RE = re.compile(r"<[^>]*>")
_NON_WORD_RE = re.compile(r"[^a-z0-9\s'-]")
_PARAGRAPH_RE = re.compile(r"<p[^>]*>([\s\S]*?)</p>", re.IGNORECASE)
_EXISTING_LINK_RE = re.compile(r"<a\s", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class SitePage:
    """A linkable page on the target site."""

    url: str
    title: str = ""
    keywords: List[str] = field(default_factory=list)
    slug: str = ""
    description: str = ""
    content: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SitePage:
        return cls(
            url=data.get("url", ""),
            title=data.get("title", "") or "",
            keywords=list(data.get("keywords") or []),
            slug=data.get("slug", "") or "",
            description=data.get("description", "") or "",
            content=data.get("content", "") or "",
        )


@dataclass
class ParagraphBlock:
    html: str
    text: str
    tokens: List[str]
    word_count: int
    index: int
    cumulative_word_count: int
    has_existing_link: bool


@dataclass
class InternalLink:
    """A selected link: anchor phrase -> target page."""

    anchor: str
    target_url: str
    context: str = ""
    relevance_score: int = 0
    priority: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "anchor": self.anchor,
            "anchorText": self.anchor,
            "targetUrl": self.target_url,
            "url": self.target_url,
            "text": self.anchor,
            "context": self.context,
            "relevanceScore": self.relevance_score,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> InternalLink:
        return cls(
            anchor=data.get("anchor") or data.get("anchorText") or data.get("text") or "",
            target_url=data.get("targetUrl") or data.get("url") or data.get("target_url") or "",
            context=data.get("context", ""),
            relevance_score=int(data.get("relevanceScore", data.get("relevance_score", 0)) or 0),
            priority=int(data.get("priority", 0) or 0),
        )


@dataclass
class _LinkCandidate:
    link: InternalLink
    paragraph_index: int
    cumulative_word_count: int


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def tokenize(text: str) -> List[str]:
    """Lowercase, strip tags and punctuation, drop stopwords and short tokens."""
    cleaned = _NON_WORD_RE.sub(" ", _TAG_RE.sub(" ", (text or "").lower()))
    return [w for w in cleaned.split() if len(w) > 2 and w not in STOPWORDS]


def calculate_relevance(
    paragraph_tokens: Sequence[str],
    target_tokens: Sequence[str],
    corpus_size: int,
    document_frequency: Dict[str, int],
) -> int:
    """
    Score how related a paragraph is to a target page, 0-100.

    Each paragraph token that also appears in the target contributes its
    IDF; the sum is length-normalised and a match-ratio bonus is added.
    """
    if not paragraph_tokens or not target_tokens:
        return 0

    target_set = set(target_tokens)
    score = 0.0
    matched = 0
    for token in paragraph_tokens:
        if token in target_set:
            matched += 1
            df = document_frequency.get(token) or 1
            score += math.log(corpus_size / df) + 1

    if matched == 0:
        return 0

    normalized = (score / math.sqrt(len(paragraph_tokens))) * 10
    ratio = matched / min(len(paragraph_tokens), len(target_tokens))
    # round half up
    return min(100, int(math.floor(normalized + ratio * 20 + 0.5)))


def extract_anchor_text(
    paragraph_html: str,
    target_tokens: Set[str],
    target_title: str = "",
) -> Optional[str]:
    """
    Pick the best 2-6 word phrase in the paragraph to use as anchor text.

    Falls back to the longest leading slice of the target title that
    appears verbatim in the paragraph. Returns None when nothing fits.
    """
    text = _TAG_RE.sub("", paragraph_html or "").strip()
    words = text.split()
    if len(words) < 4:
        return None

    best_phrase = ""
    best_score = 0.0

    for length in range(2, min(6, len(words)) + 1):
        for i in range(0, len(words) - length + 1):
            phrase = " ".join(words[i:i + length])
            clean = _NON_WORD_RE.sub("", phrase.lower())
            tokens = [w for w in clean.split() if len(w) > 2]
            if not tokens:
                continue
            if tokens[0] in STOPWORDS or tokens[-1] in STOPWORDS:
                continue

            overlap = sum(1 for t in tokens if t in target_tokens)
            if overlap == 0:
                continue

            length_bonus = 5 if 3 <= length <= 5 else 0
            score = (overlap / len(tokens)) * 50 + overlap * 10 + length_bonus
            if score > best_score:
                best_score = score
                best_phrase = phrase

    if not best_phrase and target_title:
        title_words = target_title.split()[:5]
        if len(title_words) >= 2:
            text_lower = text.lower()
            for length in range(min(5, len(title_words)), 1, -1):
                snippet = " ".join(title_words[:length])
                if snippet.lower() in text_lower:
                    return snippet

    return best_phrase or None


def extract_paragraphs(html: str) -> List[ParagraphBlock]:
    """Split HTML into ``<p>`` blocks with running word counts."""
    blocks: List[ParagraphBlock] = []
    cumulative = 0
    for index, match in enumerate(_PARAGRAPH_RE.finditer(html or "")):
        p_html = match.group(0)
        text = _TAG_RE.sub("", p_html).strip()
        word_count = len(text.split())
        cumulative += word_count
        blocks.append(ParagraphBlock(
            html=p_html,
            text=text,
            tokens=tokenize(text),
            word_count=word_count,
            index=index,
            cumulative_word_count=cumulative,
            has_existing_link=bool(_EXISTING_LINK_RE.search(p_html)),
        ))
    return blocks


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class InternalLinkEngine:
    """
    Relevance index over a site's pages plus link selection/injection.

    Parameters
    ----------
    site_pages : iterable of SitePage, optional
        Pages that may be linked to. Rebuild with :meth:`update_site_pages`.
    """

    def __init__(self, site_pages: Optional[Iterable[SitePage]] = None):
        self.site_pages: List[SitePage] = []
        self._page_tokens: List[List[str]] = []
        self._document_frequency: Dict[str, int] = {}
        self.update_site_pages(site_pages)

    def update_site_pages(self, pages: Optional[Iterable[SitePage]]) -> None:
        """Replace the page set and rebuild the token/document-frequency index."""
        self.site_pages = list(pages or [])
        self._page_tokens = []
        for page in self.site_pages:
            combined = " ".join([
                page.title or "",
                page.description or "",
                re.sub(r"[-_]", " ", page.slug or ""),
                *(page.keywords or []),
                (page.content or "")[:500],
            ])
            self._page_tokens.append(tokenize(combined))

        self._document_frequency = {}
        for tokens in self._page_tokens:
            for token in set(tokens):
                self._document_frequency[token] = self._document_frequency.get(token, 0) + 1

        logger.debug(
            "Indexed %d pages (%d distinct terms)",
            len(self.site_pages), len(self._document_frequency),
        )

    def generate_link_opportunities(
        self, html: str, max_links: int = MAX_LINKS_PER_ARTICLE
    ) -> List[InternalLink]:
        """
        Score every (paragraph, page) pair and greedily select links.

        Returns
        -------
        list of InternalLink
            Ordered by relevance, highest first.
        """
        if not self.site_pages:
            return []

        corpus_size = len(self.site_pages)
        candidates: List[_LinkCandidate] = []

        for para in extract_paragraphs(html):
            if para.has_existing_link or para.word_count < MIN_PARAGRAPH_WORDS:
                continue
            for page, page_tokens in zip(self.site_pages, self._page_tokens):
                relevance = calculate_relevance(
                    para.tokens, page_tokens, corpus_size, self._document_frequency
                )
                if relevance < MIN_RELEVANCE_SCORE:
                    continue
                anchor = extract_anchor_text(para.html, set(page_tokens), page.title or "")
                if not anchor:
                    continue
                candidates.append(_LinkCandidate(
                    link=InternalLink(
                        anchor=anchor,
                        target_url=page.url,
                        context=para.text[:CONTEXT_CHARS],
                        relevance_score=relevance,
                        priority=relevance,
                    ),
                    paragraph_index=para.index,
                    cumulative_word_count=para.cumulative_word_count,
                ))

        # sorted() is stable, so earlier paragraphs win ties
        candidates = sorted(candidates, key=lambda c: c.link.relevance_score, reverse=True)

        selected: List[InternalLink] = []
        used_targets: Set[str] = set()
        links_per_paragraph: Dict[int, int] = {}
        last_cumulative = 0

        for cand in candidates:
            if len(selected) >= max_links:
                break
            if cand.link.target_url in used_targets:
                continue
            para_count = links_per_paragraph.get(cand.paragraph_index, 0)
            if para_count >= MAX_LINKS_PER_PARAGRAPH:
                continue
            if (
                last_cumulative > 0
                and cand.cumulative_word_count - last_cumulative < MIN_WORDS_BETWEEN_LINKS
            ):
                continue

            selected.append(cand.link)
            used_targets.add(cand.link.target_url)
            links_per_paragraph[cand.paragraph_index] = para_count + 1
            last_cumulative = cand.cumulative_word_count

        logger.info(
            "Selected %d/%d link candidates", len(selected), len(candidates)
        )
        return selected

    def inject_contextual_links(self, html: str, links: Sequence[InternalLink]) -> str:
        """
        Wrap the first in-paragraph occurrence of each anchor in an ``<a>``.

        Paragraphs that already contain a link are left untouched.
        """
        if not links:
            return html

        result = html
        for link in reversed(list(links)):
            if not link.anchor or not link.target_url:
                continue
            pattern = re.compile(
                r"(<p[^>]*>(?:(?!</p>)[\s\S])*?)\b("
                + re.escape(link.anchor)
                + r")\b((?:(?!</p>)[\s\S])*?</p>)",
                re.IGNORECASE,
            )
            match = pattern.search(result)
            if not match:
                continue
            before, matched, after = match.group(1), match.group(2), match.group(3)
            if _EXISTING_LINK_RE.search(before + matched + after):
                continue
            replacement = (
                f'{before}<a href="{link.target_url}" title="{matched}">{matched}</a>{after}'
            )
            result = result[:match.start()] + replacement + result[match.end():]

        return result


def create_internal_link_engine(
    site_pages: Optional[Iterable[SitePage]] = None,
) -> InternalLinkEngine:
    return InternalLinkEngine(site_pages)


def pages_from_urls(urls: Iterable[str]) -> List[SitePage]:
    """Build minimal :class:`SitePage` entries from crawled URLs."""
    pages: List[SitePage] = []
    for url in urls:
        if not urlsplit(url).path.strip("/"):
            continue
        slug = last_path_segment(url)
        if not slug:
            continue
        title = " ".join(w.capitalize() for w in re.split(r"[-_]+", slug) if w)
        pages.append(SitePage(url=url, title=title, slug=slug))
    return pages
