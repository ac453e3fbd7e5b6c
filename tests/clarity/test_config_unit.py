"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from src.clarity.config import ClaritySettings, get_settings
from src.clarity.coordinator import CoordinatorSettings


@pytest.fixture
def required_env(monkeypatch):
    monkeypatch.setenv("CLARITY_GITHUB_TOKEN", "ghp_test")
    monkeypatch.setenv("CLARITY_SESSION_SIGNING_SECRET", "signing-secret")


class TestClaritySettings:
    def test_defaults(self, required_env):
        settings = get_settings()

        assert settings.github_base_url == "https://api.github.com"
        assert settings.trigger_label == "clarity-ai"
        assert settings.database_url is None
        assert settings.session_ttl_days == 7
        assert settings.signed_url_ttl_seconds == 3600
        assert settings.max_attempts == 3
        assert settings.default_agent_type == "claude-code"
        assert settings.available_repositories == []
        assert settings.slack_bot_token is None

    def test_missing_required(self, monkeypatch):
        monkeypatch.delenv("CLARITY_GITHUB_TOKEN", raising=False)
        monkeypatch.delenv("CLARITY_SESSION_SIGNING_SECRET", raising=False)
        with pytest.raises(ValidationError):
            get_settings()

    def test_from_env(self, required_env, monkeypatch):
        monkeypatch.setenv("CLARITY_PUBLIC_BASE_URL", "https://clarity.example.com/")
        monkeypatch.setenv("CLARITY_AVAILABLE_REPOSITORIES", '["acme/widgets", "acme/gadgets"]')
        monkeypatch.setenv("CLARITY_DATABASE_URL", "postgresql://clarity:pw@db:5432/clarity")
        monkeypatch.setenv("CLARITY_MAX_ATTEMPTS", "5")

        settings = get_settings()

        assert settings.public_base_url == "https://clarity.example.com"
        assert settings.available_repositories == ["acme/widgets", "acme/gadgets"]
        assert settings.database_url.startswith("postgresql://")
        assert settings.max_attempts == 5

    def test_blank_database_url_disables_database(self, required_env, monkeypatch):
        monkeypatch.setenv("CLARITY_DATABASE_URL", "  ")
        assert get_settings().database_url is None

    @pytest.mark.parametrize(
        "field,value",
        [
            ("github_token", "   "),
            ("public_base_url", "ftp://example.com"),
            ("database_url", "mysql://db/clarity"),
            ("workspace_base_path", "relative/path"),
            ("max_attempts", 0),
            ("session_ttl_days", -1),
            ("default_agent_type", "copilot"),
            ("port", 70000),
        ],
    )
    def test_invalid_values(self, field, value):
        values = {"github_token": "ghp_test", "session_signing_secret": "signing-secret"}
        values[field] = value
        with pytest.raises(ValidationError):
            ClaritySettings(**values)


def test_coordinator_settings_from_settings(required_env, monkeypatch):
    monkeypatch.setenv("CLARITY_AVAILABLE_REPOSITORIES", '["acme/widgets"]')
    monkeypatch.setenv("CLARITY_DEFAULT_REPOSITORY", "widgets")

    coordinator = CoordinatorSettings.from_settings(get_settings())

    assert coordinator.session_signing_secret == "signing-secret"
    assert coordinator.available_repositories == ("acme/widgets",)
    assert coordinator.default_repository == "widgets"
    assert "signing-secret" not in repr(coordinator)
