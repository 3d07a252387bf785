"""
Configuration tests
"""

import pytest

from config import Config, ConfigError


class TestValidation:

    def test_valid_config_passes(self, config):
        assert config.collect_errors() == []
        config.validate()

    def test_every_problem_is_reported(self):
        with pytest.raises(ConfigError) as exc_info:
            Config().validate()

        errors = exc_info.value.errors
        assert "BOT_TOKEN is required" in errors
        assert "DATABASE_URL is required" in errors
        assert "ADMIN_ID must be a positive integer" in errors
        assert isinstance(exc_info.value, ValueError)

    @pytest.mark.parametrize("field,value,expected", [
        ("group_id", "1001234567890", "GROUP_ID must be a negative chat id (starting with '-')"),
        ("business_short_code", "17A379", "BUSINESS_SHORT_CODE must contain digits only"),
        ("callback_url", "ftp://example.com/cb", "CALLBACK_URL must be an http(s) URL"),
        ("daily_price", 0, "DAILY_PRICE must be positive"),
        ("port", 70000, "PORT must be between 1 and 65535"),
    ])
    def test_field_rules(self, config, field, value, expected):
        setattr(config, field, value)
        assert config.collect_errors() == [expected]


class TestEnvironment:

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("BOT_TOKEN", "123:abc")
        monkeypatch.setenv("GROUP_ID", "-100200")
        monkeypatch.setenv("ADMIN_ID", "42")
        monkeypatch.setenv("MPESA_BASE_URL", "https://api.safaricom.co.ke/")
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("WEEKLY_PRICE", "350")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        config = Config.from_env()

        assert config.bot_token == "123:abc"
        assert config.admin_id == 42
        assert config.mpesa_base_url == "https://api.safaricom.co.ke"
        assert config.port == 8080
        assert config.get_price("weekly") == 350
        assert config.log_level == "DEBUG"

    def test_defaults(self, monkeypatch):
        for name in ("MPESA_BASE_URL", "PORT", "DAILY_PRICE", "WEEKLY_PRICE", "MONTHLY_PRICE"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("ADMIN_ID", "not-a-number")

        config = Config.from_env()

        assert config.mpesa_base_url == "https://sandbox.safaricom.co.ke"
        assert config.port == 3000
        assert config.prices == {"daily": 50, "weekly": 300, "monthly": 1000}
        assert config.admin_id == 0

    def test_unknown_package_price(self, config):
        with pytest.raises(KeyError):
            config.get_price("yearly")
