"""
SEO Autopilot

Sitemap crawling, SEO health scoring, AI content generation, internal
linking, and WordPress publishing for a single site, with an autonomous
"God Mode" loop tying the stages together.

Usage:
    from seo_autopilot.sitemap_crawler import crawl_sitemap_urls, SitemapFetcher
    from seo_autopilot.god_mode import GodModeEngine

    urls = await crawl_sitemap_urls("example.com/sitemap.xml", SitemapFetcher().fetch)
"""

__version__ = "1.0.0"
