"""
URL helpers shared by the crawler, the WordPress proxy, and discovery.

Covers scheme normalisation, the public-URL (SSRF) guard applied before any
server-side fetch, and broad URL extraction from non-XML sitemap payloads.
"""

from __future__ import annotations

import ipaddress
import re
import socket
from typing import List, Optional, Set, Union
from urllib.parse import unquote, urlsplit, urlunsplit

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PUBLIC_URL_REQUIRED_MESSAGE = "URL must be a public HTTP/HTTPS address"

BLOCKED_HOSTNAMES: Set[str] = {
    "localhost",
    "[::1]",
    "::1",
    "metadata.google.internal",
    "metadata.internal",
    "instance-data",
}

# Hosts inet_aton may read as IPv4: dotted decimal, octal or hex parts
_NUMERIC_HOST_RE = re.compile(r"(?:0x[0-9a-f]*|[0-9]+)(?:\.(?:0x[0-9a-f]*|[0-9]+)){0,3}")

ISO_LASTMOD_SEGMENT_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:\d{2})$"
)
HTTP_URL_RE = re.compile(r"https?://[^\s<>()\[\]\"']+", re.IGNORECASE)
XML_LINK_RE = re.compile(r"(?:^|/)[^\s?#]+\.xml(?:$|[?#])", re.IGNORECASE)
_TRAILING_PUNCT_RE = re.compile(r"[),.;]+$")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def normalize_url(value: str) -> str:
    """Trim and default the scheme to https."""
    trimmed = (value or "").strip()
    if not trimmed:
        return trimmed
    if trimmed.startswith("http://") or trimmed.startswith("https://"):
        return trimmed
    return f"https://{trimmed}"


def url_origin(value: str) -> str:
    """Return ``scheme://host[:port]`` for a URL."""
    parts = urlsplit(value)
    return f"{parts.scheme}://{parts.netloc}"


# ---------------------------------------------------------------------------
# SSRF guard
# ---------------------------------------------------------------------------


def _host_ip(hostname: str) -> Optional[IPAddress]:
    """
    Canonicalise *hostname* to an IP address, or None for a DNS name.

    Shortened, octal, hex and integer IPv4 forms (``127.1``, ``0177.0.0.1``,
    ``0x7f.0.0.1``, ``2130706433``) are read the way the resolver reads them.
    IPv4-mapped IPv6 addresses are unwrapped to their IPv4 form.
    """
    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        if not _NUMERIC_HOST_RE.fullmatch(hostname):
            return None
        try:
            ip = ipaddress.IPv4Address(socket.inet_aton(hostname))
        except OSError:
            return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def is_public_url(value: str) -> bool:
    """
    Return True when *value* is an http(s) URL that does not point at a
    loopback, private, link-local, or cloud-metadata host.
    """
    try:
        parts = urlsplit(value)
        hostname = (parts.hostname or "").lower().rstrip(".")
    except ValueError:
        return False

    if parts.scheme not in ("http", "https") or not hostname:
        return False
    if hostname in BLOCKED_HOSTNAMES:
        return False
    if hostname.endswith(".local") or hostname.endswith(".internal"):
        return False

    ip = _host_ip(hostname)
    if ip is None:
        # numeric-looking hosts the resolver might still accept
        return not _NUMERIC_HOST_RE.fullmatch(hostname)
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_reserved
        or ip.is_multicast
        or not ip.is_global
    )


# ---------------------------------------------------------------------------
# Text URL extraction
# ---------------------------------------------------------------------------


def strip_flattened_lastmod(url: str) -> str:
    """
    Remove a trailing ISO-8601 path segment.

    Reader proxies sometimes flatten ``<loc>/post/</loc><lastmod>..</lastmod>``
    into ``/post/2025-01-01T12:34:56+00:00``, which 404s.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    segments = [s for s in parts.path.split("/") if s]
    if not segments:
        return url

    if not ISO_LASTMOD_SEGMENT_RE.match(unquote(segments[-1])):
        return url

    segments.pop()
    trailing = "/" if parts.path.endswith("/") else ""
    path = "/" + "/".join(segments) + trailing
    if path == "//":
        path = "/"
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


def extract_http_urls(text: str, max_urls: int) -> List[str]:
    """Pull unique http(s) URLs out of arbitrary text, in first-seen order."""
    out: List[str] = []
    seen: Set[str] = set()
    for match in HTTP_URL_RE.finditer(text or ""):
        raw = _TRAILING_PUNCT_RE.sub("", match.group(0).strip())
        url = strip_flattened_lastmod(raw)
        if not url or url in seen:
            continue
        seen.add(url)
        out.append(url)
        if len(out) >= max_urls:
            break
    return out


def is_index_like_sitemap(url: str) -> bool:
    """Whether *url* is a conventional sitemap-index location."""
    try:
        path = urlsplit(url).path.lower()
    except ValueError:
        return False
    return (
        path == "/sitemap.xml"
        or path == "/wp-sitemap.xml"
        or path.endswith("sitemap_index.xml")
    )


def is_xml_link(url: str) -> bool:
    return bool(XML_LINK_RE.search(url))


def last_path_segment(url: str) -> str:
    """Return the final non-empty path segment (used as a slug)."""
    match = re.search(r"/([^/]+)/?$", url or "")
    if not match:
        return ""
    return match.group(1).rstrip("/")
