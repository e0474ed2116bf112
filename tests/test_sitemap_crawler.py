"""
Tests for the sitemap crawler.

Tests cover parsing, child-sitemap selection, limits, timeouts,
cancellation, the text fallback, and the aiohttp-backed fetcher.
"""

import asyncio
from unittest.mock import patch

import pytest

from seo_autopilot.sitemap_crawler import (
    READER_PROXY_PREFIX,
    CrawlCancelledError,
    CrawlOptions,
    SitemapCrawler,
    SitemapError,
    SitemapFetcher,
    SitemapParseError,
    crawl_sitemap_urls,
    extract_sitemap_payload,
    is_low_value_sitemap,
    is_post_sitemap,
    parse_sitemap,
    sanitize_xml,
)


# ===================================================================
# Helpers
# ===================================================================

def _urlset(*urls):
    body = "".join(f"<url><loc>{u}</loc></url>" for u in urls)
    return f'<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{body}</urlset>'


def _index(*urls):
    body = "".join(f"<sitemap><loc>{u}</loc></sitemap>" for u in urls)
    return f'<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{body}</sitemapindex>'


def _fake_fetch(pages):
    """Build an ``async fetch(url)`` over a dict; missing URLs raise."""
    calls = []

    async def fetch(url):
        calls.append(url)
        if url not in pages:
            raise SitemapError(f"404 for {url}", status_code=404)
        return pages[url]

    fetch.calls = calls
    return fetch


# ===================================================================
# Parsing
# ===================================================================

class TestSitemapParsing:

    @pytest.mark.unit
    def test_parse_urlset(self, sample_urlset):
        doc = parse_sitemap(sample_urlset)
        assert doc.kind == "urlset"
        assert doc.locs == ["https://example.com/first-post/", "https://example.com/second-post/"]

    @pytest.mark.unit
    def test_parse_index(self, sample_index):
        doc = parse_sitemap(sample_index)
        assert doc.kind == "index"
        assert len(doc.locs) == 3

    @pytest.mark.unit
    def test_parse_prefixed_namespace(self):
        raw = (
            '<ns:urlset xmlns:ns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            "<ns:url><ns:loc>https://example.com/a/</ns:loc></ns:url>"
            "</ns:urlset>"
        )
        doc = parse_sitemap(raw)
        assert doc.kind == "urlset"
        assert doc.locs == ["https://example.com/a/"]

    @pytest.mark.unit
    def test_parse_inside_html_shell(self):
        raw = f"<html><body><pre>{_urlset('https://example.com/a/')}</pre></body></html>"
        assert parse_sitemap(raw).locs == ["https://example.com/a/"]

    @pytest.mark.unit
    def test_parse_bare_ampersand(self):
        doc = parse_sitemap(_urlset("https://example.com/?a=1&b=2"))
        assert doc.locs == ["https://example.com/?a=1&b=2"]

    @pytest.mark.unit
    def test_non_http_locs_dropped(self):
        doc = parse_sitemap(_urlset("https://example.com/a/", "/relative/", "mailto:x@y.z"))
        assert doc.locs == ["https://example.com/a/"]

    @pytest.mark.unit
    def test_invalid_xml_raises(self):
        with pytest.raises(SitemapParseError, match="Invalid XML format in sitemap"):
            parse_sitemap("# Just markdown\n- https://example.com/a/")

    @pytest.mark.unit
    def test_sanitize_keeps_entities(self):
        assert sanitize_xml("a&b&amp;c&#38;d") == "a&amp;b&amp;c&#38;d"

    @pytest.mark.unit
    def test_payload_without_wrapper_unchanged(self):
        raw = "plain text"
        assert extract_sitemap_payload(raw) == raw

    @pytest.mark.unit
    @pytest.mark.parametrize("url,expected", [
        ("https://example.com/video-sitemap.xml", True),
        ("https://example.com/category-sitemap.xml", True),
        ("https://example.com/author-sitemap.xml", True),
        ("https://example.com/post-sitemap.xml", False),
        ("https://example.com/page-sitemap.xml", False),
    ])
    def test_low_value(self, url, expected):
        assert is_low_value_sitemap(url) is expected

    @pytest.mark.unit
    def test_post_sitemap(self):
        assert is_post_sitemap("https://example.com/post-sitemap.xml")
        assert is_post_sitemap("https://example.com/blog_sitemap.xml")
        assert not is_post_sitemap("https://example.com/page-sitemap.xml")


# ===================================================================
# Crawl
# ===================================================================

class TestSitemapCrawl:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_crawl_urlset(self):
        fetch = _fake_fetch({
            "https://example.com/sitemap.xml": _urlset("https://example.com/a/", "https://example.com/b/"),
        })
        urls = await crawl_sitemap_urls("example.com/sitemap.xml", fetch)
        assert urls == ["https://example.com/a/", "https://example.com/b/"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_index_prefers_post_sitemaps_and_skips_low_value(self):
        fetch = _fake_fetch({
            "https://example.com/sitemap_index.xml": _index(
                "https://example.com/post-sitemap.xml",
                "https://example.com/page-sitemap.xml",
                "https://example.com/video-sitemap.xml",
            ),
            "https://example.com/post-sitemap.xml": _urlset("https://example.com/post-1/"),
            "https://example.com/page-sitemap.xml": _urlset("https://example.com/about/"),
        })
        urls = await crawl_sitemap_urls("https://example.com/sitemap_index.xml", fetch)
        assert urls == ["https://example.com/post-1/"]
        assert "https://example.com/video-sitemap.xml" not in fetch.calls

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_index_without_post_sitemaps_follows_all_useful(self):
        fetch = _fake_fetch({
            "https://example.com/sitemap.xml": _index(
                "https://example.com/page-sitemap.xml",
                "https://example.com/product-sitemap.xml",
                "https://example.com/tag-sitemap.xml",
            ),
            "https://example.com/page-sitemap.xml": _urlset("https://example.com/about/"),
            "https://example.com/product-sitemap.xml": _urlset("https://example.com/shop/widget/"),
        })
        urls = await crawl_sitemap_urls("https://example.com/sitemap.xml", fetch)
        assert sorted(urls) == ["https://example.com/about/", "https://example.com/shop/widget/"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dedupes_urls_and_sitemaps(self):
        fetch = _fake_fetch({
            "https://example.com/sitemap.xml": _index(
                "https://example.com/a-sitemap.xml",
                "https://example.com/b-sitemap.xml",
            ),
            "https://example.com/a-sitemap.xml": _urlset("https://example.com/x/", "https://example.com/y/"),
            "https://example.com/b-sitemap.xml": _index("https://example.com/a-sitemap.xml"),
        })
        urls = await crawl_sitemap_urls("https://example.com/sitemap.xml", fetch)
        assert sorted(urls) == ["https://example.com/x/", "https://example.com/y/"]
        assert fetch.calls.count("https://example.com/a-sitemap.xml") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_child_is_skipped(self):
        fetch = _fake_fetch({
            "https://example.com/sitemap.xml": _index(
                "https://example.com/missing-sitemap.xml",
                "https://example.com/page-sitemap.xml",
            ),
            "https://example.com/page-sitemap.xml": _urlset("https://example.com/about/"),
        })
        urls = await crawl_sitemap_urls("https://example.com/sitemap.xml", fetch)
        assert urls == ["https://example.com/about/"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_max_urls_limit(self):
        many = [f"https://example.com/p{i}/" for i in range(20)]
        fetch = _fake_fetch({"https://example.com/sitemap.xml": _urlset(*many)})
        urls = await crawl_sitemap_urls(
            "https://example.com/sitemap.xml", fetch, CrawlOptions(max_urls=5),
        )
        assert urls == many[:5]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_max_sitemaps_limit(self):
        children = [f"https://example.com/s{i}-sitemap.xml" for i in range(5)]
        pages = {"https://example.com/sitemap.xml": _index(*children)}
        for i, child in enumerate(children):
            pages[child] = _urlset(f"https://example.com/page-{i}/")
        fetch = _fake_fetch(pages)
        await crawl_sitemap_urls(
            "https://example.com/sitemap.xml", fetch, CrawlOptions(max_sitemaps=2, concurrency=1),
        )
        assert len(fetch.calls) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_text_fallback_collects_urls(self):
        fetch = _fake_fetch({
            "https://example.com/post-sitemap.xml": "Links:\nhttps://example.com/a/\nhttps://example.com/b/",
        })
        urls = await crawl_sitemap_urls("https://example.com/post-sitemap.xml", fetch)
        assert urls == ["https://example.com/a/", "https://example.com/b/"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_text_fallback_on_index_queues_xml_links(self):
        fetch = _fake_fetch({
            "https://example.com/sitemap.xml": "- https://example.com/post-sitemap.xml\n- https://example.com/",
            "https://example.com/post-sitemap.xml": _urlset("https://example.com/hello/"),
        })
        urls = await crawl_sitemap_urls("https://example.com/sitemap.xml", fetch)
        assert urls == ["https://example.com/hello/"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_progress_and_batch_callbacks(self):
        progress, batches = [], []
        fetch = _fake_fetch({"https://example.com/sitemap.xml": _urlset("https://example.com/a/")})
        options = CrawlOptions(on_progress=progress.append, on_urls_batch=batches.append)
        await crawl_sitemap_urls("https://example.com/sitemap.xml", fetch, options)
        assert batches == [["https://example.com/a/"]]
        assert progress[-1].processed_sitemaps == 1
        assert progress[-1].discovered_urls == 1
        assert progress[-1].to_dict()["processedSitemaps"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        event = asyncio.Event()
        event.set()
        fetch = _fake_fetch({"https://example.com/sitemap.xml": _urlset("https://example.com/a/")})
        with pytest.raises(CrawlCancelledError, match="Crawl cancelled"):
            await crawl_sitemap_urls(
                "https://example.com/sitemap.xml", fetch, CrawlOptions(cancel_event=event),
            )
        assert fetch.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_during_fetch(self):
        event = asyncio.Event()

        async def slow_fetch(url):
            event.set()
            await asyncio.sleep(10)
            return ""

        with pytest.raises(CrawlCancelledError):
            await crawl_sitemap_urls(
                "https://example.com/sitemap.xml", slow_fetch, CrawlOptions(cancel_event=event),
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fetch_timeout_skips_sitemap(self):
        async def slow_fetch(url):
            await asyncio.sleep(10)
            return ""

        crawler = SitemapCrawler(slow_fetch, CrawlOptions())
        with patch("seo_autopilot.sitemap_crawler.MIN_FETCH_TIMEOUT", 0.01):
            crawler.options.fetch_timeout = 0.01
            with pytest.raises(SitemapError, match="timed out"):
                await crawler._fetch_with_timeout("https://example.com/sitemap.xml")

    @pytest.mark.unit
    def test_effective_limits(self):
        assert CrawlOptions(concurrency=100).effective_concurrency == 25
        assert CrawlOptions(concurrency=0).effective_concurrency == 10
        assert CrawlOptions(fetch_timeout=1).effective_timeout == 5.0


# ===================================================================
# Fetcher
# ===================================================================

class TestSitemapFetcher:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejects_private_url(self):
        fetcher = SitemapFetcher()
        with pytest.raises(SitemapError, match="public"):
            await fetcher.fetch("http://127.0.0.1/sitemap.xml")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_direct_fetch(self, mock_aiohttp_response, mock_session_factory, sample_urlset):
        session = mock_session_factory(mock_aiohttp_response(200, text=sample_urlset))
        fetcher = SitemapFetcher()
        with patch.object(fetcher, "_get_session", return_value=session):
            body = await fetcher.fetch("https://example.com/sitemap.xml")
        assert body == sample_urlset
        session.request.assert_called_once_with("GET", "https://example.com/sitemap.xml")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reader_fallback_adapts_markdown(self, mock_aiohttp_response, mock_session_factory):
        session = mock_session_factory(
            mock_aiohttp_response(403, text="Forbidden"),
            mock_aiohttp_response(200, text="- https://example.com/a/\n- https://example.com/b/"),
        )
        fetcher = SitemapFetcher()
        with patch.object(fetcher, "_get_session", return_value=session):
            body = await fetcher.fetch("https://example.com/post-sitemap.xml")
        second_url = session.request.call_args_list[1].args[1]
        assert second_url == f"{READER_PROXY_PREFIX}https://example.com/post-sitemap.xml"
        assert "<urlset" in body
        assert "https://example.com/b/" in body

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_fallback_raises(self, mock_aiohttp_response, mock_session_factory):
        session = mock_session_factory(mock_aiohttp_response(500, text="oops"))
        fetcher = SitemapFetcher(use_reader_fallback=False)
        with patch.object(fetcher, "_get_session", return_value=session):
            with pytest.raises(SitemapError) as exc_info:
                await fetcher.fetch("https://example.com/sitemap.xml")
        assert exc_info.value.status_code == 500
