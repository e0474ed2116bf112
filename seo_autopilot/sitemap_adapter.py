"""
Markdown/plain-text sitemap adapter.

Reader proxies (r.jina.ai and similar) frequently return a markdown listing
of the URLs in a sitemap instead of the XML itself. This module rebuilds a
valid sitemap document from such a listing so the crawler can parse it the
same way as a real sitemap.
"""

from __future__ import annotations

import re
from typing import List, Optional
from xml.sax.saxutils import escape

from seo_autopilot.url_utils import extract_http_urls, is_index_like_sitemap, is_xml_link

SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"

MAX_URLSET_ENTRIES = 50_000
MAX_INDEX_ENTRIES = 5_000

_SITEMAP_ROOT_RE = re.compile(
    r"<\s*(?:[A-Za-z_][\w.-]*:)?(urlset|sitemapindex)\b", re.IGNORECASE
)


def _escape_xml(value: str) -> str:
    return escape(value, {'"': "&quot;", "'": "&apos;"})


def _render(root: str, child: str, urls: List[str]) -> str:
    items = "\n".join(
        f"  <{child}><loc>{_escape_xml(u)}</loc></{child}>" for u in urls
    )
    return "\n".join([
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<{root} xmlns="{SITEMAP_NS}">',
        items,
        f"</{root}>",
    ])


def looks_like_sitemap_xml(raw: str) -> bool:
    return bool(_SITEMAP_ROOT_RE.search(raw or ""))


def adapt_markdown_to_sitemap_xml(raw: str, target_url: str) -> Optional[str]:
    """
    Convert a URL listing into sitemap XML.

    Parameters
    ----------
    raw : str
        Response body from the reader proxy.
    target_url : str
        The sitemap URL that was requested. Index-like locations
        (``/sitemap.xml``, ``/wp-sitemap.xml``, ``*sitemap_index.xml``)
        produce a ``<sitemapindex>`` when the listing contains ``.xml`` links.

    Returns
    -------
    str or None
        The rebuilt XML, or None when *raw* is already sitemap XML or
        contains no URLs at all.
    """
    if looks_like_sitemap_xml(raw):
        return None

    urls = extract_http_urls(raw, MAX_URLSET_ENTRIES)
    if not urls:
        return None

    if is_index_like_sitemap(target_url):
        xml_links = [u for u in urls if is_xml_link(u)]
        if xml_links:
            return _render("sitemapindex", "sitemap", xml_links[:MAX_INDEX_ENTRIES])

    return _render("urlset", "url", urls[:MAX_URLSET_ENTRIES])
