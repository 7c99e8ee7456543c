"""
Tests for the Logfire setup helpers.
"""

from unittest.mock import patch

from buildstory.core import observability


class TestObservability:
    def test_setup_skipped_without_token(self, monkeypatch):
        monkeypatch.delenv("LOGFIRE_TOKEN", raising=False)
        monkeypatch.setattr(observability, "_logfire_configured", False)
        assert observability.setup_logfire() is False

    def test_setup_configures_logfire(self, monkeypatch):
        monkeypatch.setenv("LOGFIRE_TOKEN", "token")
        monkeypatch.setattr(observability, "_logfire_configured", False)
        with patch.object(observability.logfire, "configure") as mock_configure, \
                patch.object(observability.logfire, "instrument_pydantic"):
            assert observability.setup_logfire(environment="test") is True
            assert mock_configure.call_args[1]["environment"] == "test"
            assert observability.get_logfire() is observability.logfire

    def test_setup_failure_returns_false(self, monkeypatch):
        monkeypatch.setenv("LOGFIRE_TOKEN", "token")
        monkeypatch.setattr(observability, "_logfire_configured", False)
        with patch.object(observability.logfire, "configure", side_effect=RuntimeError("bad token")):
            assert observability.setup_logfire() is False

    def test_disabled_tracer_is_usable(self, monkeypatch):
        monkeypatch.setattr(observability, "_logfire_configured", False)
        lf = observability.get_logfire()
        with lf.span("choose_optimal_variant", scope="s", slot="hero") as span:
            span.set_attribute("variant_id", "abc")
            lf.info("selected {variant}", variant="abc")
