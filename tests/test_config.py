"""
Tests for environment-driven configuration.
"""

import importlib
from pathlib import Path

import pytest
from unittest.mock import patch

from formation.core import config


class TestAccessors:
    """Test configuration helper functions."""

    def test_agent_urls(self):
        """Every agent has a configured URL; unknown agents are rejected."""
        urls = config.get_agent_urls()
        assert set(urls) == {"name-check", "document-filler", "filing", "payment", "certificate"}
        assert config.get_agent_url("payment") == urls["payment"]
        with pytest.raises(ValueError):
            config.get_agent_url("tax")

    def test_health_interval_disabled_by_zero(self):
        """A zero interval disables periodic health checks."""
        with patch.object(config, "HEALTH_CHECK_INTERVAL_SEC", 0):
            assert config.get_health_check_interval() is None
        with patch.object(config, "HEALTH_CHECK_INTERVAL_SEC", 15.0):
            assert config.get_health_check_interval() == 15.0

    def test_storage_dir_expands_home(self):
        """The storage directory expands ~."""
        with patch.object(config, "SESSION_STORAGE_DIR", "~/formation-test"):
            assert config.get_storage_dir() == Path.home() / "formation-test"


class TestValidation:
    """Test validate_config."""

    def test_missing_encryption_key(self):
        """A missing key is reported unless the development key is allowed."""
        with patch.object(config, "FORMATION_ENCRYPTION_KEY", None), \
             patch.object(config, "ALLOW_DEV_ENCRYPTION_KEY", False):
            assert any("FORMATION_ENCRYPTION_KEY" in issue for issue in config.validate_config())

        with patch.object(config, "FORMATION_ENCRYPTION_KEY", None), \
             patch.object(config, "ALLOW_DEV_ENCRYPTION_KEY", True):
            assert not any("FORMATION_ENCRYPTION_KEY" in issue for issue in config.validate_config())

    def test_bad_values(self):
        """Out-of-range numbers and non-http agent URLs are reported."""
        with patch.object(config, "REVIEW_SERVER_PORT", 70000), \
             patch.object(config, "AGENT_TIMEOUT_SEC", 0), \
             patch.dict(config._AGENT_URLS, {"filing": "ftp://filing.test"}):
            issues = config.validate_config()

        assert any("REVIEW_SERVER_PORT" in issue for issue in issues)
        assert any("AGENT_TIMEOUT_SEC" in issue for issue in issues)
        assert any("filing agent URL" in issue for issue in issues)


class TestEnvironment:
    """Test values read from the environment at import."""

    def test_environment_overrides(self, monkeypatch):
        """Environment variables override defaults and booleans parse as 'true'."""
        monkeypatch.setenv("REVIEW_SERVER_PORT", "4567")
        monkeypatch.setenv("BACKUP_ENABLED", "false")
        monkeypatch.setenv("API_BASE_URL", "http://agents.test")
        monkeypatch.delenv("FILING_AGENT_API_URL", raising=False)
        try:
            reloaded = importlib.reload(config)
            assert reloaded.REVIEW_SERVER_PORT == 4567
            assert reloaded.BACKUP_ENABLED is False
            assert reloaded.get_agent_url("filing") == "http://agents.test"
        finally:
            monkeypatch.undo()
            importlib.reload(config)
