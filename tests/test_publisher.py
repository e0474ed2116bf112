"""
Tests for the direct-then-edge-function publish chain.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from seo_autopilot.publisher import (
    AUTH_MESSAGE,
    EDGE_FUNCTION_NAME,
    NO_FALLBACK_MESSAGE,
    NOT_CONFIGURED_MESSAGE,
    PERMISSION_MESSAGE,
    REST_API_MESSAGE,
    Publisher,
)
from seo_autopilot.wordpress_client import (
    AUTH_FAILED_MESSAGE,
    PERMISSION_DENIED_MESSAGE,
    REST_NOT_FOUND_MESSAGE,
    PublishResult,
)

POST = {"id": 321, "url": "https://blog.example.com/moon-water-guide/"}


def _wp_client(result):
    """Patchable stand-in for the WordPressClient class."""
    instance = MagicMock()
    instance.publish_post = AsyncMock(return_value=result)
    instance.__aenter__ = AsyncMock(return_value=instance)
    instance.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=instance), instance


class TestDirectPublish:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_not_configured(self, bare_settings):
        result = await Publisher(bare_settings).publish("T", "<p>x</p>")
        assert result == {"success": False, "error": NOT_CONFIGURED_MESSAGE}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success(self, wp_settings):
        cls, instance = _wp_client(PublishResult(success=True, post=POST))
        with patch("seo_autopilot.publisher.WordPressClient", cls):
            result = await Publisher(wp_settings).publish(
                "Moon Water Guide", "<p>x</p>", slug="/blog/moon-water-guide/", meta_description="D",
            )

        assert result == {"success": True, "post_id": 321, "post_url": POST["url"]}
        request = instance.publish_post.call_args.args[0]
        assert request.wp_url == "https://blog.example.com"
        assert request.username == "editor"
        assert request.slug == "moon-water-guide"
        assert request.status == "draft"
        assert request.meta_description == "D"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error,expected", [
        (401, AUTH_FAILED_MESSAGE, AUTH_MESSAGE),
        (403, PERMISSION_DENIED_MESSAGE, PERMISSION_MESSAGE),
        (404, REST_NOT_FOUND_MESSAGE, REST_API_MESSAGE),
    ])
    async def test_final_errors_skip_fallback(self, wp_settings, status, error, expected):
        cls, _ = _wp_client(PublishResult(success=False, error=error, status=status))
        invoke = AsyncMock()
        with patch("seo_autopilot.publisher.WordPressClient", cls), \
                patch("seo_autopilot.publisher.invoke_function", invoke):
            result = await Publisher(wp_settings).publish("T", "<p>x</p>")

        assert result == {"success": False, "error": expected}
        invoke.assert_not_called()


class TestEdgeFallback:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_supabase_no_fallback(self, wp_settings):
        cls, _ = _wp_client(PublishResult(success=False, error="Could not connect", status=502))
        with patch("seo_autopilot.publisher.WordPressClient", cls), \
                patch("seo_autopilot.publisher.get_supabase_client", return_value=None):
            result = await Publisher(wp_settings).publish("T", "<p>x</p>")

        assert result["success"] is False
        assert result["error"] == f"{NO_FALLBACK_MESSAGE} (Could not connect)"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fallback_success(self, wp_settings):
        cls, _ = _wp_client(PublishResult(success=False, error="Could not connect", status=502))
        supabase = MagicMock()
        invoke = AsyncMock(return_value={
            "success": True,
            "data": {"success": True, "post": {"id": 9, "link": "https://blog.example.com/p/"}},
        })
        with patch("seo_autopilot.publisher.WordPressClient", cls), \
                patch("seo_autopilot.publisher.get_supabase_client", return_value=supabase), \
                patch("seo_autopilot.publisher.invoke_function", invoke):
            result = await Publisher(wp_settings).publish("Title", "<p>x</p>", seo_title="SEO")

        assert result == {"success": True, "post_id": 9, "post_url": "https://blog.example.com/p/"}
        name, body = invoke.call_args.args
        assert name == EDGE_FUNCTION_NAME
        assert body["wpUrl"] == "https://blog.example.com"
        assert body["appPassword"] == wp_settings.wp_app_password
        assert body["seoTitle"] == "SEO"
        assert body["slug"] is None
        assert invoke.call_args.kwargs["client"] is supabase

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fallback_reports_auth_failure(self, wp_settings):
        cls, _ = _wp_client(PublishResult(success=False, error="timeout", status=504))
        invoke = AsyncMock(return_value={
            "success": True,
            "data": {"success": False, "error": "bad creds", "status": 401},
        })
        with patch("seo_autopilot.publisher.WordPressClient", cls), \
                patch("seo_autopilot.publisher.get_supabase_client", return_value=MagicMock()), \
                patch("seo_autopilot.publisher.invoke_function", invoke):
            result = await Publisher(wp_settings).publish("T", "<p>x</p>")

        assert result == {"success": False, "error": AUTH_MESSAGE}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fallback_invoke_failure(self, wp_settings):
        cls, _ = _wp_client(PublishResult(success=False, error="timeout", status=504))
        invoke = AsyncMock(return_value={"success": False, "error": "Function timed out"})
        with patch("seo_autopilot.publisher.WordPressClient", cls), \
                patch("seo_autopilot.publisher.get_supabase_client", return_value=MagicMock()), \
                patch("seo_autopilot.publisher.invoke_function", invoke):
            result = await Publisher(wp_settings).publish("T", "<p>x</p>")

        assert result == {"success": False, "error": "Function timed out"}
