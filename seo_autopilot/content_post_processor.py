"""
Visual-break enforcement for generated HTML.

Long runs of consecutive ``<p>`` blocks read as a wall of text. This module
finds runs over a word limit that contain no visual element (callout box,
table, list, heading, figure, ...) and injects a styled callout or pull
quote in the middle of each one.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Tuple

logger = logging.getLogger("content_post_processor")
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
# Break elements
# ---------------------------------------------------------------------------

DEFAULT_MAX_CONSECUTIVE_WORDS = 200

BREAK_ELEMENTS: List[str] = [
    (
        '<div style="background: #ffffff; border: 1px solid #e0e7ff; border-left: 5px solid #6366f1; '
        'padding: 24px 28px; margin: 36px 0; border-radius: 0 16px 16px 0; '
        'box-shadow: 0 4px 20px rgba(99, 102, 241, 0.08); max-width: 100%; box-sizing: border-box;">\n'
        '  <p style="font-weight: 800; color: #3730a3; margin: 0 0 8px; font-size: 17px;">💡 Pro Tip</p>\n'
        '  <p style="color: #334155; font-size: 17px; margin: 0; line-height: 1.8;">'
        "Consistency beats perfection. Apply this steadily and the results compound.</p>\n"
        "</div>"
    ),
    (
        '<div style="background: linear-gradient(135deg, #f0fdf4 0%, #dcfce7 100%); '
        "border-left: 4px solid #16a34a; padding: 20px 24px; border-radius: 0 12px 12px 0; "
        'margin: 36px 0; max-width: 100%; box-sizing: border-box;">\n'
        '  <p style="font-weight: 700; color: #15803d; margin: 0 0 8px; font-size: 16px;">🔑 Key Insight</p>\n'
        '  <p style="color: #166534; margin: 0; line-height: 1.7; font-size: 16px;">'
        "Getting this concept right is what separates beginners from experienced practitioners.</p>\n"
        "</div>"
    ),
    (
        '<div style="background: linear-gradient(135deg, #fffbeb 0%, #fef3c7 100%); '
        "border-left: 4px solid #d97706; padding: 20px 24px; border-radius: 0 12px 12px 0; "
        'margin: 36px 0; max-width: 100%; box-sizing: border-box;">\n'
        '  <p style="font-weight: 700; color: #92400e; margin: 0 0 8px; font-size: 16px;">📌 Important Note</p>\n'
        '  <p style="color: #78350f; margin: 0; line-height: 1.7; font-size: 16px;">'
        "Skipping this step is one of the most common causes of disappointing results.</p>\n"
        "</div>"
    ),
    (
        '<div style="background: linear-gradient(135deg, #eff6ff 0%, #dbeafe 100%); '
        "border-left: 4px solid #2563eb; padding: 20px 24px; border-radius: 0 12px 12px 0; "
        'margin: 36px 0; max-width: 100%; box-sizing: border-box;">\n'
        '  <p style="font-weight: 700; color: #1e40af; margin: 0 0 8px; font-size: 16px;">📋 Quick Summary</p>\n'
        '  <p style="color: #1e3a5f; margin: 0; line-height: 1.7; font-size: 16px;">'
        "Nail the fundamentals first, then layer on advanced techniques once the foundation is solid.</p>\n"
        "</div>"
    ),
]

PULL_QUOTES: List[str] = [
    (
        '<blockquote style="border-left: 4px solid #8b5cf6; '
        "background: linear-gradient(135deg, #faf5ff 0%, #f5f3ff 100%); margin: 36px 0; "
        'padding: 24px 28px; border-radius: 0 16px 16px 0; max-width: 100%; box-sizing: border-box;">\n'
        '  <p style="font-size: 18px; font-style: italic; color: #4c1d95; line-height: 1.8; margin: 0;">'
        "\"The gap between good and great is usually the details most people overlook.\"</p>\n"
        "</blockquote>"
    ),
    (
        '<blockquote style="border-left: 4px solid #10b981; '
        "background: linear-gradient(135deg, #f0fdf4 0%, #ecfdf5 100%); margin: 36px 0; "
        'padding: 24px 28px; border-radius: 0 16px 16px 0; max-width: 100%; box-sizing: border-box;">\n'
        '  <p style="font-size: 18px; font-style: italic; color: #065f46; line-height: 1.8; margin: 0;">'
        "\"Data only becomes useful once it has the right context around it.\"</p>\n"
        "</blockquote>"
    ),
]

# Anything matching one of these between two paragraphs resets the run
BREAK_PATTERNS = [
    re.compile(r"<div\s[^>]*style\s*=", re.IGNORECASE),
    re.compile(r"<table[\s>]", re.IGNORECASE),
    re.compile(r"<blockquote[\s>]", re.IGNORECASE),
    re.compile(r"<details[\s>]", re.IGNORECASE),
    re.compile(r"<figure[\s>]", re.IGNORECASE),
    re.compile(r"<ul[\s>]", re.IGNORECASE),
    re.compile(r"<ol[\s>]", re.IGNORECASE),
    re.compile(r"<h[1-6][\s>]", re.IGNORECASE),
    re.compile(r"<hr[\s>/]", re.IGNORECASE),
    re.compile(r"<iframe[\s>]", re.IGNORECASE),
    re.compile(r"<!-- .* -->", re.IGNORECASE),
]

_P_BLOCK_RE = re.compile(r"<p[^>]*>[\s\S]*?</p>", re.IGNORECASE)
_P_CLOSE_RE = re.compile(r"</p>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class Violation:
    """A run of paragraphs over the word limit, as ``html[start:end]``."""

    start_index: int
    end_index: int
    word_count: int
    text_snippet: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PostProcessingResult:
    html: str
    was_modified: bool = False
    violations: List[Violation] = field(default_factory=list)
    elements_injected: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def _plain_word_count(block: str) -> int:
    return len(_TAG_RE.sub(" ", block).split())


def _make_violation(html: str, start: int, end: int, words: int) -> Violation:
    text = _TAG_RE.sub(" ", html[start:end]).strip()
    return Violation(
        start_index=start,
        end_index=end,
        word_count=words,
        text_snippet=text[:80] + "...",
    )


def find_violations(html: str, max_words: int = DEFAULT_MAX_CONSECUTIVE_WORDS) -> List[Violation]:
    """Find paragraph runs longer than *max_words* with no visual break inside."""
    violations: List[Violation] = []
    run_start = -1
    run_words = 0
    last_end = 0

    for match in _P_BLOCK_RE.finditer(html or ""):
        block_start = match.start()
        if last_end > 0 and block_start > last_end:
            between = html[last_end:block_start]
            if any(p.search(between) for p in BREAK_PATTERNS):
                if run_words > max_words and run_start != -1:
                    violations.append(_make_violation(html, run_start, last_end, run_words))
                run_start = block_start
                run_words = 0

        if run_start == -1:
            run_start = block_start
        run_words += _plain_word_count(match.group(0))
        last_end = match.end()

    if run_words > max_words and run_start != -1:
        violations.append(_make_violation(html, run_start, last_end, run_words))

    return violations


def _insertion_point(html: str, violation: Violation) -> int:
    """Offset just after paragraph ``floor(n/2)`` of the run, or -1."""
    segment = html[violation.start_index:violation.end_index]
    closes = list(_P_CLOSE_RE.finditer(segment))
    if len(closes) < 2:
        return -1
    mid = len(closes) // 2
    return violation.start_index + closes[mid].end()


def process(
    html: str,
    max_consecutive_words: int = DEFAULT_MAX_CONSECUTIVE_WORDS,
    use_pull_quotes: bool = True,
) -> PostProcessingResult:
    """
    Inject visual break elements into over-long paragraph runs.

    Parameters
    ----------
    html : str
        Generated article HTML.
    max_consecutive_words : int
        Word limit for a run of paragraphs without a visual element.
    use_pull_quotes : bool
        Include pull quotes in the rotation of injected elements.

    Returns
    -------
    PostProcessingResult
    """
    if not html or not html.strip():
        return PostProcessingResult(html=html)

    max_words = max_consecutive_words or DEFAULT_MAX_CONSECUTIVE_WORDS
    violations = find_violations(html, max_words)
    if not violations:
        return PostProcessingResult(html=html)

    pool = list(BREAK_ELEMENTS)
    if use_pull_quotes:
        pool.extend(PULL_QUOTES)

    result = html
    injected = 0
    # Back to front so earlier offsets stay valid
    for violation in sorted(violations, key=lambda v: v.start_index, reverse=True):
        point = _insertion_point(result, violation)
        if point == -1:
            continue
        element = pool[injected % len(pool)]
        result = f"{result[:point]}\n\n{element}\n\n{result[point:]}"
        injected += 1

    if injected:
        logger.debug("Injected %d visual break(s) for %d violation(s)", injected, len(violations))

    return PostProcessingResult(
        html=result,
        was_modified=injected > 0,
        violations=violations,
        elements_injected=injected,
    )


def validate(html: str, max_words: int = DEFAULT_MAX_CONSECUTIVE_WORDS) -> Tuple[bool, List[Violation]]:
    violations = find_violations(html, max_words)
    return not violations, violations
