"""
Publish fallback chain.

Publishes with the configured WordPress credentials, first directly through
:class:`WordPressClient`, then (if that fails for a reason other than bad
credentials or a missing REST API) through the ``wordpress-publish``
Supabase edge function.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from seo_autopilot.config import Settings, get_settings
from seo_autopilot.supabase_store import get_supabase_client, invoke_function
from seo_autopilot.wordpress_client import PublishRequest, WordPressClient, clean_slug

logger = logging.getLogger("publisher")
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

NOT_CONFIGURED_MESSAGE = (
    "WordPress not configured. Add WordPress URL, username, and application password in Setup."
)
AUTH_MESSAGE = "WordPress authentication failed. Check your username and application password in Setup."
PERMISSION_MESSAGE = "Permission denied. Ensure the WordPress user has publishing capabilities."
REST_API_MESSAGE = "WordPress REST API not found. Ensure permalinks are enabled."
NO_FALLBACK_MESSAGE = (
    "Publishing failed. The direct WordPress request did not succeed and Supabase is not configured."
)

EDGE_FUNCTION_NAME = "wordpress-publish"


class FinalPublishError(Exception):
    """A failure no fallback can fix (bad credentials, missing REST API)."""
    pass


def _final_error(status: Optional[int], message: str) -> Optional[str]:
    """Map a failed response to a final user-facing message, or None if retryable."""
    if status == 401 or "authentication" in message.lower():
        return AUTH_MESSAGE
    if status == 403:
        return PERMISSION_MESSAGE
    if status == 404 and "REST API" in message:
        return REST_API_MESSAGE
    return None


def _success(post: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    post = post or {}
    return {
        "success": True,
        "post_id": post.get("id"),
        "post_url": post.get("url") or post.get("link"),
    }


class Publisher:
    """
    Publishes posts to the site configured in :class:`Settings`.

    Parameters
    ----------
    settings : Settings, optional
        Defaults to :func:`get_settings`.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _build_request(self, title: str, content: str, options: Dict[str, Any]) -> PublishRequest:
        return PublishRequest(
            wp_url=self.settings.wp_url,
            username=self.settings.wp_username,
            app_password=self.settings.wp_app_password,
            title=title,
            content=content,
            excerpt=options.get("excerpt") or "",
            status=options.get("status") or "draft",
            slug=clean_slug(options.get("slug") or ""),
            meta_description=options.get("meta_description") or "",
            seo_title=options.get("seo_title") or "",
            source_url=options.get("source_url") or "",
            existing_post_id=options.get("existing_post_id"),
            categories=list(options.get("categories") or []),
            tags=list(options.get("tags") or []),
        )

    @staticmethod
    def _edge_body(request: PublishRequest) -> Dict[str, Any]:
        return {
            "wpUrl": request.wp_url,
            "username": request.username,
            "appPassword": request.app_password,
            "title": request.title,
            "content": request.content,
            "excerpt": request.excerpt or None,
            "status": request.status,
            "slug": request.slug or None,
            "metaDescription": request.meta_description or None,
            "seoTitle": request.seo_title or None,
            "sourceUrl": request.source_url or None,
            "existingPostId": request.existing_post_id,
        }

    async def _publish_direct(self, request: PublishRequest) -> Dict[str, Any]:
        async with WordPressClient(request.credentials) as client:
            result = await client.publish_post(request)
        if result.success:
            return _success(result.post)
        final = _final_error(result.status, result.error)
        if final:
            raise FinalPublishError(final)
        return {"success": False, "error": result.error}

    async def _publish_via_edge_function(self, request: PublishRequest) -> Dict[str, Any]:
        response = await invoke_function(
            EDGE_FUNCTION_NAME, self._edge_body(request), client=get_supabase_client(self.settings),
        )
        if not response.get("success"):
            return {"success": False, "error": response.get("error") or "Supabase function error"}

        data = response.get("data") or {}
        if not isinstance(data, dict) or not data.get("success"):
            server_error = str(data.get("error") or "") if isinstance(data, dict) else ""
            status = data.get("status") if isinstance(data, dict) else None
            final = _final_error(status, server_error)
            return {
                "success": False,
                "error": final or server_error or "Failed to publish to WordPress",
            }
        return _success(data.get("post"))

    async def publish(self, title: str, content: str, **options: Any) -> Dict[str, Any]:
        """
        Publish one post, falling back to the edge function when needed.

        Parameters
        ----------
        title, content : str
            Post title and HTML body.
        **options
            ``excerpt``, ``status``, ``slug``, ``meta_description``,
            ``seo_title``, ``source_url``, ``existing_post_id``,
            ``categories``, ``tags``.

        Returns
        -------
        dict
            ``{"success": True, "post_id", "post_url"}`` or
            ``{"success": False, "error"}``.
        """
        if not self.settings.wordpress_configured:
            return {"success": False, "error": NOT_CONFIGURED_MESSAGE}

        request = self._build_request(title, content, options)

        try:
            direct = await self._publish_direct(request)
        except FinalPublishError as exc:
            logger.error("Publish failed: %s", exc)
            return {"success": False, "error": str(exc)}

        if direct["success"]:
            logger.info("Published '%s' -> %s", title, direct.get("post_url"))
            return direct

        logger.warning("Direct publish failed (%s), trying edge function", direct.get("error"))
        if get_supabase_client(self.settings) is None:
            return {"success": False, "error": f"{NO_FALLBACK_MESSAGE} ({direct.get('error')})"}

        fallback = await self._publish_via_edge_function(request)
        if fallback["success"]:
            logger.info("Published '%s' via edge function -> %s", title, fallback.get("post_url"))
        else:
            logger.error("Edge function publish failed: %s", fallback.get("error"))
        return fallback
