"""
Tests for environment-driven settings.
"""

from pathlib import Path

import pytest

from seo_autopilot.config import (
    DEFAULT_API_PORT,
    MODEL_SONNET,
    Settings,
    get_settings,
    load_settings,
    reset_settings,
    validate_supabase_config,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "WP_URL", "WP_USERNAME", "WP_APP_PASSWORD", "ANTHROPIC_API_KEY",
        "SEO_AUTOPILOT_MODEL", "SUPABASE_URL", "SUPABASE_ANON_KEY", "SITEMAP_URL",
        "API_HOST", "API_PORT", "ALLOWED_ORIGINS", "SEO_AUTOPILOT_DATA_DIR",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield monkeypatch
    reset_settings()


class TestSupabaseValidation:

    @pytest.mark.unit
    def test_valid_pair(self):
        assert validate_supabase_config("https://abc.supabase.co", "key") == (True, [])

    @pytest.mark.unit
    def test_missing_everything(self):
        configured, issues = validate_supabase_config("", "")
        assert configured is False
        assert issues == ["Missing Supabase URL", "Missing Supabase anon key"]

    @pytest.mark.unit
    def test_bad_url(self):
        configured, issues = validate_supabase_config("http://example.com", "key")
        assert configured is False
        assert "Supabase URL must start with https://" in issues
        assert "Supabase URL does not look like a Supabase project URL" in issues


class TestSettings:

    @pytest.mark.unit
    def test_defaults(self, clean_env):
        settings = load_settings()
        assert settings.model == MODEL_SONNET
        assert settings.api_port == DEFAULT_API_PORT
        assert settings.allowed_origins == ["http://localhost:3000", "http://localhost:5173"]
        assert not settings.wordpress_configured
        assert not settings.ai_configured
        assert not settings.supabase_configured

    @pytest.mark.unit
    def test_reads_environment(self, clean_env, tmp_path):
        clean_env.setenv("WP_URL", "https://blog.example.com")
        clean_env.setenv("WP_USERNAME", "editor")
        clean_env.setenv("WP_APP_PASSWORD", "pass word")
        clean_env.setenv("ANTHROPIC_API_KEY", "sk-ant-x")
        clean_env.setenv("SUPABASE_URL", "https://abc.supabase.co")
        clean_env.setenv("SUPABASE_ANON_KEY", "anon")
        clean_env.setenv("ALLOWED_ORIGINS", "https://a.example, ,https://b.example")
        clean_env.setenv("SEO_AUTOPILOT_DATA_DIR", str(tmp_path))

        settings = load_settings()
        assert settings.wordpress_configured
        assert settings.ai_configured
        assert settings.supabase_configured
        assert settings.allowed_origins == ["https://a.example", "https://b.example"]
        assert settings.data_dir == Path(str(tmp_path))

    @pytest.mark.unit
    def test_invalid_port_falls_back(self, clean_env):
        clean_env.setenv("API_PORT", "not-a-port")
        assert load_settings().api_port == DEFAULT_API_PORT

    @pytest.mark.unit
    def test_get_settings_is_cached(self, clean_env):
        first = get_settings()
        clean_env.setenv("WP_URL", "https://changed.example.com")
        assert get_settings() is first
        reset_settings()
        assert get_settings().wp_url == "https://changed.example.com"

    @pytest.mark.unit
    def test_repr_hides_secrets(self):
        settings = Settings(wp_url="https://x.example", wp_username="u", wp_app_password="secret")
        assert "secret" not in repr(settings)
        assert "wordpress=True" in repr(settings)
