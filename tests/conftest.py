"""
Shared fixtures for the SEO Autopilot test suite.

Provides mock HTTP sessions, a chainable Supabase client, a mock Anthropic
client and sample HTML so that all tests run WITHOUT any external services.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from seo_autopilot.config import Settings


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------

def make_response(status=200, json_data=None, text="", headers=None):
    """Build a mock aiohttp response usable as an async context manager.

    ``resp.json()`` raises ValueError when only *text* is given, mirroring
    aiohttp on a non-JSON body.
    """
    resp = AsyncMock()
    resp.status = status
    if json_data is None and text:
        resp.json = AsyncMock(side_effect=ValueError("not json"))
    else:
        resp.json = AsyncMock(return_value=json_data if json_data is not None else {})
    resp.text = AsyncMock(return_value=text or (json.dumps(json_data) if json_data is not None else ""))
    resp.headers = headers or {"Content-Type": "application/json"}
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


def make_mock_session(*responses):
    """Create a mock aiohttp session whose .request() yields *responses* in order.

    The source uses ``async with session.request(method, url, **kwargs) as resp``
    so ``session.request`` returns the response mock, which is its own async
    context manager. A single response is returned for every call.
    """
    session = AsyncMock()
    if len(responses) == 1:
        session.request = MagicMock(return_value=responses[0])
    else:
        session.request = MagicMock(side_effect=list(responses))
    session.close = AsyncMock()
    session.closed = False
    return session


@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""
    return make_response


@pytest.fixture
def mock_session_factory():
    """Create a mock aiohttp session factory (see make_mock_session)."""
    return make_mock_session


# ---------------------------------------------------------------------------
# Supabase mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_supabase():
    """Chainable Supabase client: every builder method returns the client."""
    client = MagicMock()
    client.table.return_value = client
    client.select.return_value = client
    client.insert.return_value = client
    client.upsert.return_value = client
    client.delete.return_value = client
    client.eq.return_value = client
    client.order.return_value = client
    client.limit.return_value = client
    client.execute.return_value = MagicMock(data=[])
    return client


# ---------------------------------------------------------------------------
# Anthropic mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_anthropic():
    """Mock AsyncAnthropic client for content generation tests."""
    client = MagicMock()
    response = MagicMock()
    response.content = [MagicMock(text="Generated content here")]
    response.usage = MagicMock(input_tokens=100, output_tokens=200)
    client.messages.create = AsyncMock(return_value=response)
    return client


# ---------------------------------------------------------------------------
# Settings fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def wp_settings(tmp_path):
    """Settings with WordPress and AI configured, Supabase off."""
    return Settings(
        wp_url="https://blog.example.com",
        wp_username="editor",
        wp_app_password="abcd efgh ijkl mnop",
        anthropic_api_key="sk-ant-test",
        data_dir=tmp_path,
    )


@pytest.fixture
def bare_settings(tmp_path):
    """Settings with nothing configured."""
    return Settings(data_dir=tmp_path)


# ---------------------------------------------------------------------------
# Content fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def wp_post_response():
    """A WordPress REST API post object."""
    return {
        "id": 321,
        "link": "https://blog.example.com/moon-water-guide/",
        "status": "draft",
        "slug": "moon-water-guide",
        "title": {"rendered": "Moon Water Guide"},
    }


@pytest.fixture
def sample_urlset():
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        "  <url><loc>https://example.com/first-post/</loc></url>\n"
        "  <url><loc>https://example.com/second-post/</loc></url>\n"
        "</urlset>"
    )


@pytest.fixture
def sample_index():
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        "  <sitemap><loc>https://example.com/post-sitemap.xml</loc></sitemap>\n"
        "  <sitemap><loc>https://example.com/page-sitemap.xml</loc></sitemap>\n"
        "  <sitemap><loc>https://example.com/video-sitemap.xml</loc></sitemap>\n"
        "</sitemapindex>"
    )


def article_html(paragraphs=12, words_per_paragraph=60, h2_every=3):
    """Generate article-like HTML with enough text for scoring and linking."""
    parts = ["<h1>Complete Guide</h1>"]
    filler = (
        "gardening tips help beginners grow healthy tomato plants with compost "
        "and regular watering while learning about soil nutrients and sunlight "
    ).split()
    for i in range(paragraphs):
        if i % h2_every == 0:
            parts.append(f"<h2>Section {i // h2_every + 1}</h2>")
        words = [filler[(i + j) % len(filler)] for j in range(words_per_paragraph)]
        parts.append(f"<p>{' '.join(words)}.</p>")
    return "\n".join(parts)


@pytest.fixture
def long_article():
    return article_html()
