"""
Tests for Config and the shared Supabase client.
"""

import pytest
from unittest.mock import MagicMock, patch

from buildstory.core import database
from buildstory.core.config import Config


class TestConfig:
    def test_validate_reports_missing_keys(self, monkeypatch):
        monkeypatch.setattr(Config, "SUPABASE_URL", "")
        monkeypatch.setattr(Config, "SUPABASE_SERVICE_KEY", "")
        with pytest.raises(ValueError, match="SUPABASE_URL, SUPABASE_SERVICE_KEY"):
            Config.validate()

    def test_validate_passes_with_credentials(self, monkeypatch):
        monkeypatch.setattr(Config, "SUPABASE_URL", "https://example.supabase.co")
        monkeypatch.setattr(Config, "SUPABASE_SERVICE_KEY", "service-key")
        assert Config.validate() is True

    def test_defaults(self):
        assert Config.DEFAULT_TIMEOUT_MINUTES == 5
        assert Config.MAX_EVENT_BATCH == 10
        assert Config.STORAGE_TIMEOUT_SECONDS > 0

    def test_get(self):
        assert Config.get("MAX_EVENT_BATCH") == Config.MAX_EVENT_BATCH
        assert Config.get("NOPE", "fallback") == "fallback"


class TestSupabaseClient:
    def setup_method(self):
        database.reset_supabase_client()

    def teardown_method(self):
        database.reset_supabase_client()

    def test_client_is_created_once(self, monkeypatch):
        monkeypatch.setattr(Config, "SUPABASE_URL", "https://example.supabase.co")
        monkeypatch.setattr(Config, "SUPABASE_SERVICE_KEY", "service-key")

        with patch("buildstory.core.database.create_client") as mock_create:
            mock_create.return_value = MagicMock()
            first = database.get_supabase_client()
            second = database.get_supabase_client()

        assert first is second
        mock_create.assert_called_once()
        assert mock_create.call_args[0] == ("https://example.supabase.co", "service-key")

    def test_missing_credentials_raise(self, monkeypatch):
        monkeypatch.setattr(Config, "SUPABASE_URL", "")
        with patch("buildstory.core.database.create_client") as mock_create:
            with pytest.raises(ValueError):
                database.get_supabase_client()
            mock_create.assert_not_called()
