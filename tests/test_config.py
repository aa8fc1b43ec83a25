"""Tests for environment-driven settings."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from core.config import Settings


class TestSettings:
    def test_short_secret_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(jwt_secret_key="too-short")

    def test_token_lifetimes(self, settings: Settings) -> None:
        assert settings.access_token_ttl == timedelta(minutes=15)
        assert settings.refresh_token_ttl == timedelta(days=7)

    def test_cache_defaults(self, settings: Settings) -> None:
        assert settings.cache_default_ttl == 300
        assert settings.cache_max_size == 1000
        assert settings.cache_sweep_interval == 60

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CACHE_MAX_SIZE", "50")
        monkeypatch.setenv("JWT_ACCESS_EXPIRE_MINUTES", "5")
        settings = Settings()
        assert settings.cache_max_size == 50
        assert settings.access_token_ttl == timedelta(minutes=5)

    def test_sqlite_detection(self, settings: Settings) -> None:
        assert settings.is_sqlite
