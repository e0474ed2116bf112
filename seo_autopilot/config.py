"""
Runtime configuration for SEO Autopilot.

All settings come from environment variables. ``get_settings()`` returns a
cached, immutable snapshot; call ``reset_settings()`` after changing the
environment (tests do this via monkeypatch).

Environment:
    WP_URL, WP_USERNAME, WP_APP_PASSWORD   WordPress target + application password
    ANTHROPIC_API_KEY                      AI generation key
    SEO_AUTOPILOT_MODEL                    Model identifier (default Sonnet)
    SUPABASE_URL, SUPABASE_ANON_KEY        Optional cloud sync
    SITEMAP_URL                            Default crawl entry point
    API_HOST, API_PORT                     FastAPI bind address
    ALLOWED_ORIGINS                        Comma-separated CORS origins
    SEO_AUTOPILOT_DATA_DIR                 Where God Mode state snapshots live
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger("config")
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
# Constants
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent

MODEL_SONNET = "claude-sonnet-4-20250514"
MODEL_HAIKU = "claude-haiku-4-5-20251001"

DEFAULT_API_PORT = 8765
DEFAULT_ALLOWED_ORIGINS = "http://localhost:3000,http://localhost:5173"


# ---------------------------------------------------------------------------
# Supabase config validation
# ---------------------------------------------------------------------------


def validate_supabase_config(url: str, anon_key: str) -> Tuple[bool, List[str]]:
    """
    Check a Supabase URL/key pair and list every problem found.

    Returns
    -------
    tuple of (configured, issues)
        ``configured`` is True only when ``issues`` is empty.
    """
    url = (url or "").strip()
    anon_key = (anon_key or "").strip()
    issues: List[str] = []
    if not url:
        issues.append("Missing Supabase URL")
    if not anon_key:
        issues.append("Missing Supabase anon key")
    if url and not url.startswith("https://"):
        issues.append("Supabase URL must start with https://")
    if url and ".supabase." not in url:
        issues.append("Supabase URL does not look like a Supabase project URL")
    return len(issues) == 0, issues


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Settings:
    """Immutable snapshot of environment configuration."""

    wp_url: str = ""
    wp_username: str = ""
    wp_app_password: str = ""
    anthropic_api_key: str = ""
    model: str = MODEL_SONNET
    supabase_url: str = ""
    supabase_anon_key: str = ""
    sitemap_url: str = ""
    api_host: str = "0.0.0.0"
    api_port: int = DEFAULT_API_PORT
    allowed_origins: List[str] = field(default_factory=list)
    data_dir: Path = BASE_DIR / "data"

    @property
    def wordpress_configured(self) -> bool:
        return bool(self.wp_url and self.wp_username and self.wp_app_password)

    @property
    def ai_configured(self) -> bool:
        return bool(self.anthropic_api_key)

    @property
    def supabase_configured(self) -> bool:
        configured, _ = validate_supabase_config(self.supabase_url, self.supabase_anon_key)
        return configured

    @property
    def supabase_issues(self) -> List[str]:
        _, issues = validate_supabase_config(self.supabase_url, self.supabase_anon_key)
        return issues

    def __repr__(self) -> str:
        return (
            f"Settings(wp_url={self.wp_url!r}, wordpress={self.wordpress_configured}, "
            f"ai={self.ai_configured}, supabase={self.supabase_configured})"
        )


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def load_settings() -> Settings:
    """Read every setting from the environment."""
    port_raw = _env("API_PORT", str(DEFAULT_API_PORT))
    try:
        port = int(port_raw)
    except ValueError:
        logger.warning("Invalid API_PORT %r, falling back to %d", port_raw, DEFAULT_API_PORT)
        port = DEFAULT_API_PORT

    origins = [
        o.strip()
        for o in _env("ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS).split(",")
        if o.strip()
    ]
    data_dir_raw = _env("SEO_AUTOPILOT_DATA_DIR")

    return Settings(
        wp_url=_env("WP_URL"),
        wp_username=_env("WP_USERNAME"),
        wp_app_password=_env("WP_APP_PASSWORD"),
        anthropic_api_key=_env("ANTHROPIC_API_KEY"),
        model=_env("SEO_AUTOPILOT_MODEL", MODEL_SONNET) or MODEL_SONNET,
        supabase_url=_env("SUPABASE_URL"),
        supabase_anon_key=_env("SUPABASE_ANON_KEY"),
        sitemap_url=_env("SITEMAP_URL"),
        api_host=_env("API_HOST", "0.0.0.0") or "0.0.0.0",
        api_port=port,
        allowed_origins=origins,
        data_dir=Path(data_dir_raw) if data_dir_raw else BASE_DIR / "data",
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the cached Settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
        logger.debug("Loaded %r", _settings)
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
