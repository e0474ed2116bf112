"""
Tests for the SEO health scorer.

Tests cover each analysis helper, the deduction table in analyze_html, and
the fetching/batching behaviour of SEOHealthScorer with mocked sessions.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from seo_autopilot.seo_health_scorer import (
    READER_PROXY_PREFIX,
    UNKNOWN_AGE_DAYS,
    HealthAnalysis,
    SEOHealthScorer,
    analyze_freshness,
    analyze_headings,
    analyze_html,
    analyze_links,
    analyze_schema,
    extract_text_content,
)

from conftest import article_html

NOW = datetime(2026, 1, 20, tzinfo=timezone.utc)
PAGE_URL = "https://example.com/post/"


def _healthy_page():
    """A page that earns the full 100 points."""
    return (
        "<html><head>"
        '<meta name="description" content="All about gardening">'
        '<script type="application/ld+json">'
        '{"@type": "Article", "dateModified": "2026-01-10T00:00:00Z"}'
        "</script></head><body>"
        + article_html(paragraphs=42)
        + '<p><a href="/one/">one</a> <a href="/two/">two</a> <a href="https://example.com/three/">three</a>'
        + ' <a href="https://en.wikipedia.org/wiki/Tomato">source</a></p>'
        + '<img src="/tomato.jpg" alt="tomato">'
        + "</body></html>"
    )


# ===================================================================
# Helpers
# ===================================================================

class TestAnalysisHelpers:

    @pytest.mark.unit
    def test_text_content_strips_scripts_and_styles(self):
        html = "<style>p{}</style><script>var a=1;</script><p>Hello   <b>world</b></p>"
        assert extract_text_content(html) == "Hello world"

    @pytest.mark.unit
    def test_headings(self):
        valid = analyze_headings("<h1>A</h1><h2>B</h2><h2 class='x'>C</h2><h3>D</h3>")
        assert (valid.h1_count, valid.h2_count, valid.h3_count) == (1, 2, 1)
        assert valid.is_valid
        assert not analyze_headings("<h1>A</h1><h1>B</h1><h2>C</h2><h2>D</h2>").is_valid

    @pytest.mark.unit
    def test_freshness_from_json_ld(self):
        fresh = analyze_freshness('{"dateModified": "2026-01-10T00:00:00Z"}', now=NOW)
        assert fresh.days_since_update == 10
        assert fresh.is_stale is False
        assert fresh.last_modified.startswith("2026-01-10")

    @pytest.mark.unit
    def test_freshness_from_meta_tag(self):
        html = '<meta property="article:published_time" content="2025-01-01T00:00:00+00:00">'
        fresh = analyze_freshness(html, now=NOW)
        assert fresh.days_since_update == 384
        assert fresh.is_stale is True

    @pytest.mark.unit
    def test_freshness_unknown(self):
        fresh = analyze_freshness("<p>no dates</p>", now=NOW)
        assert fresh.last_modified is None
        assert fresh.days_since_update == UNKNOWN_AGE_DAYS
        assert fresh.is_stale is True

    @pytest.mark.unit
    def test_links_internal_vs_external(self):
        html = (
            '<a href="/relative/">a</a>'
            '<a href="https://example.com/abs/">b</a>'
            '<a href="https://www.example.com/">c</a>'
            '<a href="https://other.org/">d</a>'
            '<a href="#top">e</a><a href="mailto:x@y.z">f</a><a href="tel:123">g</a>'
        )
        counts = analyze_links(html, PAGE_URL)
        assert counts.internal_count == 2
        assert counts.external_count == 2

    @pytest.mark.unit
    def test_schema_types(self):
        html = (
            '<script type="application/ld+json">{"@type": ["Article", "FAQPage"]}</script>'
            '<script type="application/ld+json">{"@type": "Article"}</script>'
            '<script type="application/ld+json">{broken</script>'
            '<script type="application/ld+json">[1, 2]</script>'
        )
        schema = analyze_schema(html)
        assert schema.has_schema
        assert schema.types == ["Article", "FAQPage"]

    @pytest.mark.unit
    def test_schema_missing(self):
        assert analyze_schema("<p>plain</p>").has_schema is False


# ===================================================================
# Scoring
# ===================================================================

class TestScoring:

    @pytest.mark.unit
    def test_empty_page_bottoms_out(self):
        analysis = analyze_html(PAGE_URL, "", now=NOW)
        assert analysis.score == 0
        assert "Missing H1 tag" in analysis.issues
        assert "No internal links" in analysis.issues
        assert "Missing meta description" in analysis.issues

    @pytest.mark.unit
    def test_healthy_page_scores_100(self):
        analysis = analyze_html(PAGE_URL, _healthy_page(), now=NOW)
        assert analysis.word_count >= 2500
        assert analysis.issues == []
        assert analysis.score == 100

    @pytest.mark.unit
    def test_thin_content_deductions(self):
        html = _healthy_page().replace(article_html(paragraphs=42), article_html(paragraphs=12))
        analysis = analyze_html(PAGE_URL, html, now=NOW)
        assert any(issue.startswith("Thin content") for issue in analysis.issues)
        assert analysis.score == 80

    @pytest.mark.unit
    def test_multiple_h1_and_stale(self):
        html = _healthy_page().replace("2026-01-10", "2025-06-01").replace(
            "<h1>Complete Guide</h1>", "<h1>A</h1><h1>B</h1>"
        )
        analysis = analyze_html(PAGE_URL, html, now=NOW)
        assert "Multiple H1 tags: 2" in analysis.issues
        assert "Content hasn't been updated in 233 days" in analysis.issues
        assert analysis.score == 80

    @pytest.mark.unit
    def test_failed_result(self):
        failed = HealthAnalysis.failed(PAGE_URL, "HTTP 404")
        assert failed.score == 0
        assert failed.issues == ["Failed to analyze: HTTP 404"]
        assert failed.recommendations == ["Manual review required"]
        assert failed.to_dict()["heading_structure"]["h1_count"] == 0


# ===================================================================
# Scorer
# ===================================================================

class TestScorer:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fetch_uses_reader_proxy_first(self, mock_aiohttp_response, mock_session_factory):
        session = mock_session_factory(mock_aiohttp_response(200, text="<h1>Hi</h1>"))
        scorer = SEOHealthScorer()
        with patch.object(scorer, "_get_session", return_value=session):
            html = await scorer.fetch_page_content(PAGE_URL)
        assert html == "<h1>Hi</h1>"
        assert session.request.call_args.args[1] == f"{READER_PROXY_PREFIX}{PAGE_URL}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fetch_falls_back_to_direct(self, mock_aiohttp_response, mock_session_factory):
        session = mock_session_factory(
            mock_aiohttp_response(503, text="busy"),
            mock_aiohttp_response(200, text="<h1>Direct</h1>"),
        )
        scorer = SEOHealthScorer()
        with patch.object(scorer, "_get_session", return_value=session):
            html = await scorer.fetch_page_content(PAGE_URL)
        assert html == "<h1>Direct</h1>"
        assert session.request.call_args_list[1].args[1] == PAGE_URL

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["http://127.1/", "http://[::ffff:10.0.0.1]/admin"])
    async def test_private_url_never_fetched(self, url, mock_session_factory):
        session = mock_session_factory()
        scorer = SEOHealthScorer()
        with patch.object(scorer, "_get_session", return_value=session):
            analysis = await scorer.analyze_page(url)
        assert analysis.score == 0
        assert "public" in analysis.issues[0]
        session.request.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_analyze_page_never_raises(self, mock_aiohttp_response, mock_session_factory):
        session = mock_session_factory(mock_aiohttp_response(404, text="gone"))
        scorer = SEOHealthScorer(use_reader_proxy=False)
        with patch.object(scorer, "_get_session", return_value=session):
            analysis = await scorer.analyze_page(PAGE_URL)
        assert analysis.score == 0
        assert analysis.issues == ["Failed to analyze: HTTP 404"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_analyze_progress(self):
        scorer = SEOHealthScorer()
        scorer.analyze_page = AsyncMock(side_effect=lambda url: HealthAnalysis(url=url, score=50))
        progress = []
        urls = [f"https://example.com/p{i}/" for i in range(5)]
        with patch("seo_autopilot.seo_health_scorer.BATCH_DELAY", 0):
            results = await scorer.batch_analyze(urls, concurrency=2, on_progress=lambda d, t: progress.append((d, t)))
        assert [r.url for r in results] == urls
        assert progress == [(2, 5), (4, 5), (5, 5)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_analyze_cancelled(self):
        scorer = SEOHealthScorer()
        scorer.analyze_page = AsyncMock()
        event = asyncio.Event()
        event.set()
        results = await scorer.batch_analyze(["https://example.com/a/"], cancel_event=event)
        assert results == []
        scorer.analyze_page.assert_not_called()
