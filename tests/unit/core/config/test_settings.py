"""Tests for environment-driven settings and the server entry point guard."""

from __future__ import annotations

import pytest

from careflow.core.config.settings import get_settings
from careflow.core.server import main


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("DEFAULT_TIMEZONE_OFFSET", raising=False)
        settings = get_settings()
        assert settings.careflow_host == "127.0.0.1"
        assert settings.default_timezone_offset == -300
        assert settings.reminder_grace_seconds == 300

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_TIMEZONE_OFFSET", "60")
        monkeypatch.setenv("CAREFLOW_PORT", "9000")
        settings = get_settings()
        assert settings.default_timezone_offset == 60
        assert settings.careflow_port == 9000


class TestLoopbackGuard:
    @pytest.mark.parametrize("host", ["127.0.0.1", "::1", "localhost"])
    def test_loopback_hosts(self, host):
        assert main._is_loopback_host(host)

    @pytest.mark.parametrize("host", ["0.0.0.0", "10.1.2.3", "example.org"])
    def test_non_loopback_hosts(self, host):
        assert not main._is_loopback_host(host)

    def test_refuses_public_bind(self, monkeypatch):
        monkeypatch.setenv("CAREFLOW_HOST", "0.0.0.0")
        monkeypatch.setattr(main, "create_app", lambda: pytest.fail("server must not start"))
        with pytest.raises(RuntimeError, match="CAREFLOW_ALLOW_INSECURE_BIND"):
            main.run()
