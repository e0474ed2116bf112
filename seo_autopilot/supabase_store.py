"""
Optional Supabase persistence for generated posts.

Every operation degrades gracefully: when Supabase is not configured the
store behaves as a no-op (saves "succeed", loads return nothing), and when
it is configured but failing, the failure is logged and classified for the
dashboard's diagnostics instead of raised.

Table: ``generated_blog_posts`` (one row per queue item, upserted on
``item_id``).
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client, PostgrestAPIError, create_client

from seo_autopilot.config import Settings, get_settings, validate_supabase_config

logger = logging.getLogger("supabase_store")
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

TABLE = "generated_blog_posts"

FUNCTION_RETRY_DELAY = 1.5  # seconds, multiplied by attempt number
NON_RETRYABLE_MARKERS = ("not configured", "invalid wordpress url", "authentication")

# snake_case column -> camelCase post field
_COLUMN_MAP = {
    "id": "id",
    "title": "title",
    "seo_title": "seoTitle",
    "content": "content",
    "meta_description": "metaDescription",
    "slug": "slug",
    "primary_keyword": "primaryKeyword",
    "secondary_keywords": "secondaryKeywords",
    "word_count": "wordCount",
    "quality_score": "qualityScore",
    "internal_links": "internalLinks",
    "schema": "schema",
    "generated_at": "generatedAt",
    "model": "model",
}

__all__ = [
    "ContentStore",
    "DbCheckError",
    "get_supabase_client",
    "invoke_function",
    "post_to_row",
    "row_to_post",
    "validate_supabase_config",
]


# ---------------------------------------------------------------------------
# Client singleton
# ---------------------------------------------------------------------------

_client: Optional[Client] = None
_client_fingerprint: str = ""


def get_supabase_client(settings: Optional[Settings] = None) -> Optional[Client]:
    """
    Return a shared Supabase client, rebuilt whenever the URL or key changes.

    Returns None when Supabase is not configured or client creation fails.
    """
    global _client, _client_fingerprint
    settings = settings or get_settings()
    configured, issues = validate_supabase_config(settings.supabase_url, settings.supabase_anon_key)
    if not configured:
        logger.debug("Supabase not configured: %s", "; ".join(issues))
        return None

    url = settings.supabase_url.strip()
    key = settings.supabase_anon_key.strip()
    fingerprint = f"{url}::{key[:12]}"
    if _client is not None and fingerprint == _client_fingerprint:
        return _client

    try:
        _client = create_client(url, key)
    except Exception as exc:
        logger.error("Failed to create Supabase client: %s", exc)
        _client = None
        _client_fingerprint = ""
        return None

    _client_fingerprint = fingerprint
    logger.info("Supabase client initialised for %s", url)
    return _client


def reset_supabase_client() -> None:
    global _client, _client_fingerprint
    _client = None
    _client_fingerprint = ""


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def row_to_post(row: Dict[str, Any]) -> Dict[str, Any]:
    post = {field: row.get(column) for column, field in _COLUMN_MAP.items()}
    post["secondaryKeywords"] = post.get("secondaryKeywords") or []
    post["internalLinks"] = post.get("internalLinks") or []
    if post.get("qualityScore") is None:
        post["qualityScore"] = 0
    return post


def post_to_row(item_id: str, post: Dict[str, Any]) -> Dict[str, Any]:
    row: Dict[str, Any] = {"item_id": item_id, "user_id": None}
    for column, field in _COLUMN_MAP.items():
        # accept either the camelCase or the snake_case shape
        row[column] = post.get(field, post.get(column))
    row["generated_at"] = row.get("generated_at") or _now_iso()
    return row


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@dataclass
class DbCheckError:
    """Last connectivity failure, classified for the dashboard."""

    kind: str  # missing_table, rls, permission, network, unknown
    message: str
    code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def classify_error(exc: Exception) -> DbCheckError:
    if not isinstance(exc, PostgrestAPIError):
        return DbCheckError(kind="network", message=str(exc) or type(exc).__name__)

    message = getattr(exc, "message", None) or str(exc) or "Unknown error"
    code = getattr(exc, "code", None)
    lowered = message.lower()
    if code == "42P01" or "does not exist" in lowered:
        kind = "missing_table"
    elif "row level security" in lowered or "rls" in lowered:
        kind = "rls"
    elif code == "42501" or "permission" in lowered:
        kind = "permission"
    else:
        kind = "unknown"
    return DbCheckError(kind=kind, message=message, code=code)


class ContentStore:
    """
    CRUD over ``generated_blog_posts``.

    Parameters
    ----------
    client : supabase.Client, optional
        Explicit client (tests pass a mock). Defaults to
        :func:`get_supabase_client` on every call, so configuration
        changes are picked up without restarting.
    """

    def __init__(self, client: Optional[Client] = None, settings: Optional[Settings] = None):
        self._explicit_client = client
        self._settings = settings
        self.last_error: Optional[DbCheckError] = None

    @property
    def client(self) -> Optional[Client]:
        if self._explicit_client is not None:
            return self._explicit_client
        return get_supabase_client(self._settings)

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    def ensure_table(self) -> bool:
        """Probe the table; record a classified error on failure."""
        client = self.client
        if client is None:
            self.last_error = None
            logger.info("Supabase not configured, skipping table check")
            return False
        try:
            client.table(TABLE).select("id").limit(1).execute()
        except Exception as exc:
            self.last_error = classify_error(exc)
            logger.error("Table check failed (%s): %s", self.last_error.kind, self.last_error.message)
            return False
        self.last_error = None
        return True

    def load_all(self) -> Dict[str, Dict[str, Any]]:
        """Return ``{item_id: post}``, newest first."""
        client = self.client
        if client is None:
            logger.debug("Skipping Supabase load (not configured)")
            return {}
        try:
            result = (
                client.table(TABLE)
                .select("*")
                .order("generated_at", desc=True)
                .execute()
            )
        except Exception as exc:
            logger.error("Load error: %s", exc)
            return {}

        store: Dict[str, Dict[str, Any]] = {}
        for row in result.data or []:
            item_id = row.get("item_id")
            if item_id:
                store[item_id] = row_to_post(row)
        logger.info("Loaded %d blog posts from Supabase", len(store))
        return store

    def save(self, item_id: str, post: Dict[str, Any]) -> bool:
        client = self.client
        if client is None:
            return True
        try:
            client.table(TABLE).upsert(post_to_row(item_id, post), on_conflict="item_id").execute()
        except Exception as exc:
            logger.error("Save error for %s: %s", item_id, exc)
            return False
        logger.info("Saved blog post: %s", post.get("title", item_id))
        return True

    def delete(self, item_id: str) -> bool:
        client = self.client
        if client is None:
            return True
        try:
            client.table(TABLE).delete().eq("item_id", item_id).execute()
        except Exception as exc:
            logger.error("Delete error for %s: %s", item_id, exc)
            return False
        logger.info("Deleted blog post: %s", item_id)
        return True


# ---------------------------------------------------------------------------
# Edge functions
# ---------------------------------------------------------------------------


def _decode_function_payload(payload: Any) -> Any:
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        try:
            return json.loads(payload)
        except ValueError:
            return {"raw": payload}
    return payload


async def invoke_function(
    name: str,
    body: Dict[str, Any],
    attempts: int = 3,
    client: Optional[Client] = None,
) -> Dict[str, Any]:
    """
    Call a Supabase edge function with linear backoff.

    Configuration and authentication errors are not retried.

    Returns
    -------
    dict
        ``{"success": True, "data": ...}`` or ``{"success": False, "error": ...}``.
    """
    client = client or get_supabase_client()
    if client is None:
        return {"success": False, "error": "Supabase not configured"}

    last_error = ""
    for attempt in range(attempts):
        try:
            payload = await asyncio.to_thread(
                client.functions.invoke,
                name,
                invoke_options={"body": body, "responseType": "json"},
            )
            data = _decode_function_payload(payload)
            if isinstance(data, dict) and data.get("success") is False:
                raise RuntimeError(str(data.get("error") or "Edge function reported failure"))
            return {"success": True, "data": data}
        except Exception as exc:
            last_error = str(exc) or type(exc).__name__
            lowered = last_error.lower()
            if any(marker in lowered for marker in NON_RETRYABLE_MARKERS):
                logger.error("Edge function %s failed (not retrying): %s", name, last_error)
                break
            if attempt < attempts - 1:
                delay = FUNCTION_RETRY_DELAY * (attempt + 1)
                logger.warning(
                    "Edge function %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    name, attempt + 1, attempts, delay, last_error,
                )
                await asyncio.sleep(delay)

    return {"success": False, "error": last_error}
