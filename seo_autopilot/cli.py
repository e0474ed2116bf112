"""
SEO Autopilot CLI

Command-line access to the crawler, WordPress discovery, health scorer,
internal-link engine, publisher, God Mode loop and API server.

Usage:
    python -m seo_autopilot.cli <command> [options]
    seo-autopilot <command> [options]

Examples:
    seo-autopilot crawl --sitemap https://example.com/sitemap.xml --output urls.txt
    seo-autopilot discover --site example.com
    seo-autopilot score https://example.com/some-post/
    seo-autopilot links --html draft.html --pages pages.json --inject
    seo-autopilot publish --title "Moon Water" --content-file post.html --status draft
    seo-autopilot god-mode --sitemap https://example.com/sitemap.xml --cycles 3
    seo-autopilot serve --port 8765
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import traceback
from dataclasses import replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from seo_autopilot import __version__
from seo_autopilot.config import get_settings

logger = logging.getLogger("cli")
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
# Output helpers
# ---------------------------------------------------------------------------

_NO_COLOR = bool(os.environ.get("NO_COLOR"))

_RESET = "" if _NO_COLOR else "\033[0m"
_BOLD = "" if _NO_COLOR else "\033[1m"
_DIM = "" if _NO_COLOR else "\033[2m"
_RED = "" if _NO_COLOR else "\033[31m"
_GREEN = "" if _NO_COLOR else "\033[32m"
_YELLOW = "" if _NO_COLOR else "\033[33m"

_OK = f"{_GREEN}●{_RESET}"
_WARN = f"{_YELLOW}●{_RESET}"
_FAIL = f"{_RED}●{_RESET}"


def _print(msg: str = "", **kwargs: Any) -> None:
    print(msg, **kwargs)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_header(title: str) -> None:
    _print(f"\n{_BOLD}{title}{_RESET}")
    _print(f"{_DIM}{'=' * len(title)}{_RESET}")


def _score_marker(score: int) -> str:
    if score >= 70:
        return _OK
    if score >= 50:
        return _WARN
    return _FAIL


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_crawl(args: argparse.Namespace) -> int:
    from seo_autopilot.sitemap_crawler import CrawlOptions, SitemapFetcher, crawl_sitemap_urls

    options = CrawlOptions(concurrency=args.concurrency, max_urls=args.max_urls)
    async with SitemapFetcher(timeout=options.effective_timeout) as fetcher:
        urls = await crawl_sitemap_urls(args.sitemap, fetcher.fetch, options)

    if args.output:
        Path(args.output).write_text("\n".join(urls) + "\n", encoding="utf-8")
        _print(f"{_OK} {len(urls)} URLs written to {args.output}")
    elif args.json:
        _print_json(urls)
    else:
        for url in urls:
            _print(url)
        _print(f"\n{_OK} {len(urls)} URLs", file=sys.stderr)
    return 0


async def _cmd_discover(args: argparse.Namespace) -> int:
    from seo_autopilot.wp_discovery import discover_wordpress_urls

    urls = await discover_wordpress_urls(
        args.site, max_urls=args.max_urls, include_pages=not args.posts_only,
    )
    if args.json:
        _print_json(urls)
    else:
        for url in urls:
            _print(url)
        _print(f"\n{_OK} {len(urls)} URLs", file=sys.stderr)
    return 0


async def _cmd_score(args: argparse.Namespace) -> int:
    from seo_autopilot.seo_health_scorer import SEOHealthScorer

    async with SEOHealthScorer() as scorer:
        analyses = await scorer.batch_analyze(args.urls)

    if args.json:
        _print_json([a.to_dict() for a in analyses])
        return 0

    for analysis in analyses:
        _print_header(analysis.url)
        _print(f"  {_score_marker(analysis.score)} Score: {analysis.score}/100")
        _print(f"  Words: {analysis.word_count}  "
               f"Age: {analysis.freshness.days_since_update} days")
        for issue in analysis.issues:
            _print(f"  {_FAIL} {issue}")
        for rec in analysis.recommendations:
            _print(f"  {_DIM}- {rec}{_RESET}")
    return 0


async def _cmd_links(args: argparse.Namespace) -> int:
    from seo_autopilot.internal_link_engine import InternalLinkEngine, SitePage

    html = Path(args.html).read_text(encoding="utf-8")
    raw_pages = json.loads(Path(args.pages).read_text(encoding="utf-8"))
    pages = [
        SitePage.from_dict(p) if isinstance(p, dict) else SitePage(url=str(p))
        for p in raw_pages
    ]

    engine = InternalLinkEngine(pages)
    links = engine.generate_link_opportunities(html, args.max_links)

    if args.inject:
        _print(engine.inject_contextual_links(html, links))
        _print(f"{_OK} Injected {len(links)} link(s)", file=sys.stderr)
        return 0

    if args.json:
        _print_json([link.to_dict() for link in links])
        return 0
    _print_header(f"{len(links)} link opportunities")
    for link in links:
        _print(f"  [{link.relevance_score:>3}] {link.anchor!r} -> {link.target_url}")
    return 0


async def _cmd_publish(args: argparse.Namespace) -> int:
    from seo_autopilot.publisher import Publisher

    content = Path(args.content_file).read_text(encoding="utf-8")
    result = await Publisher(get_settings()).publish(
        args.title,
        content,
        status=args.status,
        slug=args.slug,
        excerpt=args.excerpt,
        meta_description=args.meta_description,
    )
    if args.json:
        _print_json(result)
    elif result["success"]:
        _print(f"{_OK} Published post {result['post_id']}: {result['post_url']}")
    else:
        _print(f"{_FAIL} {result['error']}")
    return 0 if result["success"] else 1


async def _cmd_god_mode(args: argparse.Namespace) -> int:
    from seo_autopilot.api import build_engine
    from seo_autopilot.god_mode import GodModeError
    from seo_autopilot.publisher import Publisher
    from seo_autopilot.seo_health_scorer import SEOHealthScorer
    from seo_autopilot.sitemap_crawler import SitemapFetcher, crawl_sitemap_urls
    from seo_autopilot.supabase_store import ContentStore

    settings = get_settings()
    sitemap = args.sitemap or settings.sitemap_url
    if not sitemap:
        _print(f"{_FAIL} No sitemap given (use --sitemap or set SITEMAP_URL)")
        return 2

    async with SitemapFetcher() as fetcher:
        urls = await crawl_sitemap_urls(sitemap, fetcher.fetch)
    _print(f"{_OK} Crawled {len(urls)} URLs from {sitemap}")

    async with SEOHealthScorer() as scorer:
        engine = build_engine(settings, ContentStore(settings=settings), scorer, Publisher(settings))
        engine.sitemap_urls = urls
        state_file = settings.data_dir / "god_mode_state.json"
        if state_file.exists():
            engine.load_state(state_file)
        saved_config = replace(engine.config)
        # manual runs ignore the working-hours window
        overrides: Dict[str, Any] = {
            "active_hours_start": 0,
            "active_hours_end": 24,
            "enable_weekends": True,
            "max_per_day": engine.state.stats.published_today + args.cycles,
        }
        if args.publish is not None:
            overrides["auto_publish"] = args.publish
        engine.update_config(**overrides)

        try:
            engine.check_ready()
        except GodModeError as exc:
            _print(f"{_FAIL} {exc}")
            return 1

        for cycle in range(1, args.cycles + 1):
            history = await engine.run_cycle()
            if history is None:
                _print(f"  {_WARN} Cycle {cycle}: nothing processed")
            else:
                marker = _FAIL if history.action == "error" else _OK
                _print(f"  {marker} Cycle {cycle}: {history.action} {history.url}")

        engine.config = saved_config
        engine.save_state(state_file)

    stats = engine.state.stats
    _print_header("God Mode summary")
    _print(f"  Processed: {stats.total_processed}  Success: {stats.success_count}  "
           f"Errors: {stats.error_count}")
    _print(f"  Avg quality: {stats.avg_quality_score:.1f}  Words: {stats.total_words_generated}")
    _print(f"  Queue remaining: {len(engine.state.queue)}")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "seo_autopilot.api:app",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        reload=False,
        log_level="info",
    )
    return 0


ASYNC_COMMANDS: Dict[str, Callable[[argparse.Namespace], Awaitable[int]]] = {
    "crawl": _cmd_crawl,
    "discover": _cmd_discover,
    "score": _cmd_score,
    "links": _cmd_links,
    "publish": _cmd_publish,
    "god-mode": _cmd_god_mode,
}


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="seo-autopilot",
        description="SEO Autopilot -- sitemap crawling, health scoring, linking and publishing",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", action="store_true", help="Show tracebacks on error")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("crawl", help="Crawl a sitemap and list every page URL")
    p.add_argument("--sitemap", required=True, help="Sitemap or sitemap index URL")
    p.add_argument("--concurrency", type=int, default=10)
    p.add_argument("--max-urls", type=int, default=500_000)
    p.add_argument("--output", help="Write URLs to this file, one per line")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("discover", help="List post/page URLs through the WordPress REST API")
    p.add_argument("--site", required=True, help="Site URL or bare domain")
    p.add_argument("--max-urls", type=int, default=100_000)
    p.add_argument("--posts-only", action="store_true")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("score", help="SEO health score for one or more pages")
    p.add_argument("urls", nargs="+")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("links", help="Suggest or inject internal links into an HTML file")
    p.add_argument("--html", required=True, help="Article HTML file")
    p.add_argument("--pages", required=True, help="JSON list of site pages (objects or URLs)")
    p.add_argument("--max-links", type=int, default=12)
    p.add_argument("--inject", action="store_true", help="Print the HTML with links injected")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("publish", help="Publish an HTML file to the configured WordPress site")
    p.add_argument("--title", required=True)
    p.add_argument("--content-file", required=True)
    p.add_argument("--status", default="draft", choices=["draft", "publish", "pending", "private"])
    p.add_argument("--slug", default="")
    p.add_argument("--excerpt", default="")
    p.add_argument("--meta-description", default="")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("god-mode", help="Run God Mode cycles against a sitemap")
    p.add_argument("--sitemap", help="Defaults to SITEMAP_URL")
    p.add_argument("--cycles", type=int, default=1)
    p.add_argument("--publish", action="store_true", default=None,
                   help="Publish generated posts (default: the saved God Mode setting)")

    p = sub.add_parser("serve", help="Run the API server")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)

    return parser


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def main(argv: Optional[List[str]] = None) -> int:
    """Parse *argv* and run the command. Returns an exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    try:
        if args.command == "serve":
            return _cmd_serve(args)
        return asyncio.run(ASYNC_COMMANDS[args.command](args))
    except KeyboardInterrupt:
        _print("\nAborted.")
        return 130
    except Exception as exc:
        if args.verbose:
            traceback.print_exc()
        else:
            logger.error("%s failed: %s", args.command, exc)
        return 1


def cli() -> None:
    """Entry point for console_scripts / direct execution."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
