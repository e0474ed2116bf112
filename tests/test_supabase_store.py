"""
Tests for Supabase persistence and edge-function invocation.

The Supabase client is always a chainable MagicMock; nothing touches the
network.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from supabase import PostgrestAPIError as APIError

from seo_autopilot.config import Settings
from seo_autopilot.supabase_store import (
    TABLE,
    ContentStore,
    classify_error,
    get_supabase_client,
    invoke_function,
    post_to_row,
    reset_supabase_client,
    row_to_post,
)


@pytest.fixture(autouse=True)
def _fresh_client():
    reset_supabase_client()
    yield
    reset_supabase_client()


# ===================================================================
# Client
# ===================================================================

class TestClientSingleton:

    @pytest.mark.unit
    def test_not_configured_returns_none(self, bare_settings):
        assert get_supabase_client(bare_settings) is None

    @pytest.mark.unit
    def test_reuses_client_until_config_changes(self):
        first = Settings(supabase_url="https://abc.supabase.co", supabase_anon_key="key-one")
        second = Settings(supabase_url="https://xyz.supabase.co", supabase_anon_key="key-one")
        with patch("seo_autopilot.supabase_store.create_client", side_effect=[MagicMock(), MagicMock()]) as create:
            a = get_supabase_client(first)
            b = get_supabase_client(first)
            c = get_supabase_client(second)
        assert a is b
        assert c is not a
        assert create.call_count == 2

    @pytest.mark.unit
    def test_creation_failure_returns_none(self):
        settings = Settings(supabase_url="https://abc.supabase.co", supabase_anon_key="key")
        with patch("seo_autopilot.supabase_store.create_client", side_effect=Exception("bad key")):
            assert get_supabase_client(settings) is None


# ===================================================================
# Row mapping
# ===================================================================

class TestRowMapping:

    @pytest.mark.unit
    def test_post_to_row_accepts_both_shapes(self):
        row = post_to_row("item-1", {"title": "T", "seoTitle": "S", "word_count": 900})
        assert row["item_id"] == "item-1"
        assert row["seo_title"] == "S"
        assert row["word_count"] == 900
        assert row["generated_at"]

    @pytest.mark.unit
    def test_row_to_post_defaults(self):
        post = row_to_post({"title": "T", "quality_score": None})
        assert post["title"] == "T"
        assert post["qualityScore"] == 0
        assert post["secondaryKeywords"] == []
        assert post["internalLinks"] == []


# ===================================================================
# Store
# ===================================================================

class TestContentStore:

    @pytest.mark.unit
    def test_unconfigured_store_is_noop(self, bare_settings):
        store = ContentStore(settings=bare_settings)
        assert store.is_configured is False
        assert store.ensure_table() is False
        assert store.load_all() == {}
        assert store.save("x", {"title": "T"}) is True
        assert store.delete("x") is True

    @pytest.mark.unit
    def test_load_all(self, mock_supabase):
        mock_supabase.execute.return_value = MagicMock(data=[
            {"item_id": "a", "title": "First", "quality_score": 80},
            {"item_id": None, "title": "orphan"},
        ])
        store = ContentStore(client=mock_supabase)
        posts = store.load_all()
        assert list(posts) == ["a"]
        assert posts["a"]["qualityScore"] == 80
        mock_supabase.table.assert_called_with(TABLE)
        mock_supabase.order.assert_called_with("generated_at", desc=True)

    @pytest.mark.unit
    def test_save_upserts_on_item_id(self, mock_supabase):
        store = ContentStore(client=mock_supabase)
        assert store.save("item-9", {"title": "T"}) is True
        row = mock_supabase.upsert.call_args.args[0]
        assert row["item_id"] == "item-9"
        assert mock_supabase.upsert.call_args.kwargs == {"on_conflict": "item_id"}

    @pytest.mark.unit
    def test_save_failure_returns_false(self, mock_supabase):
        mock_supabase.execute.side_effect = Exception("network down")
        assert ContentStore(client=mock_supabase).save("x", {}) is False

    @pytest.mark.unit
    def test_delete(self, mock_supabase):
        store = ContentStore(client=mock_supabase)
        assert store.delete("item-9") is True
        mock_supabase.eq.assert_called_with("item_id", "item-9")

    @pytest.mark.unit
    def test_ensure_table_records_error(self, mock_supabase):
        mock_supabase.execute.side_effect = APIError({
            "message": 'relation "generated_blog_posts" does not exist',
            "code": "42P01",
        })
        store = ContentStore(client=mock_supabase)
        assert store.ensure_table() is False
        assert store.last_error.kind == "missing_table"
        assert store.last_error.code == "42P01"

    @pytest.mark.unit
    def test_ensure_table_ok(self, mock_supabase):
        store = ContentStore(client=mock_supabase)
        assert store.ensure_table() is True
        assert store.last_error is None


class TestClassifyError:

    @pytest.mark.unit
    @pytest.mark.parametrize("payload,kind", [
        ({"message": "new row violates row level security policy", "code": "42501"}, "rls"),
        ({"message": "permission denied for table x", "code": "42501"}, "permission"),
        ({"message": "something odd", "code": "XX000"}, "unknown"),
    ])
    def test_postgrest_errors(self, payload, kind):
        assert classify_error(APIError(payload)).kind == kind

    @pytest.mark.unit
    def test_other_errors_are_network(self):
        error = classify_error(ConnectionError("timed out"))
        assert error.kind == "network"
        assert error.to_dict()["message"] == "timed out"


# ===================================================================
# Edge functions
# ===================================================================

class TestInvokeFunction:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_not_configured(self, bare_settings):
        with patch("seo_autopilot.supabase_store.get_settings", return_value=bare_settings):
            result = await invoke_function("wordpress-publish", {})
        assert result == {"success": False, "error": "Supabase not configured"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_decodes_bytes_payload(self, mock_supabase):
        mock_supabase.functions.invoke.return_value = json.dumps({"success": True, "post": {"id": 5}}).encode()
        result = await invoke_function("wordpress-publish", {"title": "T"}, client=mock_supabase)
        assert result == {"success": True, "data": {"success": True, "post": {"id": 5}}}
        args, kwargs = mock_supabase.functions.invoke.call_args
        assert args == ("wordpress-publish",)
        assert kwargs["invoke_options"]["body"] == {"title": "T"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, mock_supabase):
        mock_supabase.functions.invoke.side_effect = [Exception("502 bad gateway"), {"success": True}]
        with patch("seo_autopilot.supabase_store.FUNCTION_RETRY_DELAY", 0):
            result = await invoke_function("fn", {}, client=mock_supabase)
        assert result["success"] is True
        assert mock_supabase.functions.invoke.call_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_authentication_not_retried(self, mock_supabase):
        mock_supabase.functions.invoke.return_value = {"success": False, "error": "Authentication failed"}
        result = await invoke_function("fn", {}, client=mock_supabase)
        assert result == {"success": False, "error": "Authentication failed"}
        assert mock_supabase.functions.invoke.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, mock_supabase):
        mock_supabase.functions.invoke.side_effect = Exception("boom")
        with patch("seo_autopilot.supabase_store.FUNCTION_RETRY_DELAY", 0):
            result = await invoke_function("fn", {}, attempts=2, client=mock_supabase)
        assert result == {"success": False, "error": "boom"}
        assert mock_supabase.functions.invoke.call_count == 2
