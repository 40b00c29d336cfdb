"""Tests for environment-driven configuration."""

import pytest
from pydantic import ValidationError

from httpstat.cli import Config


class TestConfigDefaults:
    """Defaults when nothing is set."""

    def test_empty_environment(self):
        """Every field takes its documented default."""
        config = Config.from_env({})

        assert config.show_body is False
        assert config.show_ip is True
        assert config.show_speed is False
        assert config.save_body is True
        assert config.curl_bin == "curl"
        assert config.metrics_only is False
        assert config.debug is False
        assert config.timeout_secs == 10

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("HTTPSTAT_SHOW_SPEED", "yes")
        monkeypatch.setenv("HTTPSTAT_CURL_BIN", "/opt/curl/bin/curl")

        config = Config.from_env()

        assert config.show_speed is True
        assert config.curl_bin == "/opt/curl/bin/curl"

    def test_config_is_frozen(self):
        config = Config.from_env({})
        with pytest.raises(ValidationError):
            config.show_body = True


class TestBooleanParsing:
    """Boolean variables accept a small set of spellings."""

    @pytest.mark.parametrize("value", ["true", "TRUE", "True", "1", "yes", "Yes", " yes "])
    def test_truthy_values(self, value):
        assert Config.from_env({"HTTPSTAT_SHOW_BODY": value}).show_body is True

    @pytest.mark.parametrize("value", ["false", "FALSE", "0", "no", "No"])
    def test_falsy_values(self, value):
        assert Config.from_env({"HTTPSTAT_SHOW_IP": value}).show_ip is False

    @pytest.mark.parametrize("value", ["", "maybe", "on", "2"])
    def test_ambiguous_values_keep_default(self, value):
        """Unrecognised values are not errors and leave the default in place."""
        config = Config.from_env({"HTTPSTAT_SHOW_BODY": value, "HTTPSTAT_SHOW_IP": value})

        assert config.show_body is False
        assert config.show_ip is True


class TestNumericParsing:
    """Timeout parsing."""

    def test_valid_timeout(self):
        assert Config.from_env({"HTTPSTAT_TIMEOUT": "30"}).timeout_secs == 30

    @pytest.mark.parametrize("value", ["", "abc", "1.5", "0", "-5"])
    def test_invalid_timeout_falls_back(self, value):
        assert Config.from_env({"HTTPSTAT_TIMEOUT": value}).timeout_secs == 10

    def test_blank_curl_bin_falls_back(self):
        assert Config.from_env({"HTTPSTAT_CURL_BIN": "  "}).curl_bin == "curl"
