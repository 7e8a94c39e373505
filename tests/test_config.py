# Tests for environment-driven settings

import logging

from hydrilla_client.config import DEFAULT_API_URL, DEFAULT_BACKEND_URL, Settings


def _settings(**kw) -> Settings:
    return Settings(_env_file=None, **kw)


class TestBackendUrl:
    def test_trailing_slash_stripped(self):
        s = _settings(backend_url="https://backend.example.com/")
        assert s.backend_url == "https://backend.example.com"
        assert s.backend_configured

    def test_placeholder_is_unset(self):
        """A deploy template that left the variable name in place counts as unset"""
        s = _settings(backend_url="${HYDRILLA_BACKEND_URL}")
        assert s.backend_url is None
        assert not s.backend_configured

    def test_blank_is_unset(self):
        assert _settings(backend_url="   ").backend_url is None

    def test_fallback_warns(self, caplog):
        s = _settings(backend_url=None)
        with caplog.at_level(logging.WARNING, logger="hydrilla_client.config"):
            assert s.resolved_backend_url() == DEFAULT_BACKEND_URL
        assert "HYDRILLA_BACKEND_URL" in caplog.text


class TestEnvironment:
    def test_reads_prefixed_env(self, monkeypatch):
        monkeypatch.setenv("HYDRILLA_POLL_INTERVAL_SECONDS", "2.5")
        monkeypatch.setenv("HYDRILLA_API_URL", "https://api.example.com/")
        s = _settings()
        assert s.poll_interval_seconds == 2.5
        assert s.api_url == "https://api.example.com"

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("HYDRILLA_API_URL", raising=False)
        monkeypatch.delenv("HYDRILLA_FAILURE_THRESHOLD", raising=False)
        s = _settings()
        assert s.api_url == DEFAULT_API_URL
        assert s.failure_threshold == 3
