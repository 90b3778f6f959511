"""
Unit tests for configuration loading and validation.

Tests strict validation, environment overrides and error handling.
"""

import os
import tempfile
from datetime import timedelta
from decimal import Decimal

import pytest
import yaml

from token_meter.config.loader import (
    ENV_DATABASE_PATH,
    ENV_MODEL,
    ENV_REDIS_URL,
    ENV_STARS_PER_USD,
    Settings,
    load_settings,
)
from token_meter.core.errors import ConfigurationError

BASE_ENV = {
    ENV_REDIS_URL: "redis://localhost:6379/0",
    ENV_DATABASE_PATH: "/tmp/token_meter.db",
}


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_env_only_uses_defaults(self):
        """Only the required settings come from the environment."""
        settings = load_settings(env=BASE_ENV)

        assert settings.redis_url == "redis://localhost:6379/0"
        assert settings.database_path == "/tmp/token_meter.db"
        assert settings.daily_token_limit == 10000
        assert settings.estimated_tokens_per_request == 500
        assert settings.counter_ttl == timedelta(hours=48)
        assert settings.rewrite_timeout_seconds == 30.0
        assert settings.preview_length == 500
        assert settings.stars_per_usd == 65.0
        assert settings.plan.duration_days == 30

    def test_valid_config_loads_correctly(self):
        config_data = {
            "redis_url": "redis://cache:6379/1",
            "database_path": "meter.db",
            "model": "gpt-4o",
            "daily_token_limit": 20000,
            "estimated_tokens_per_request": 400,
            "rewrite_timeout_seconds": 10,
            "preview_length": 200,
            "plan": {
                "price_usd": 7.5,
                "duration_days": 31,
                "stars_per_usd": 70
            }
        }

        settings = load_settings(self._write_config(config_data), env={})

        assert settings.redis_url == "redis://cache:6379/1"
        assert settings.model == "gpt-4o"
        assert settings.daily_token_limit == 20000
        assert settings.estimated_tokens_per_request == 400
        assert settings.rewrite_timeout_seconds == 10.0
        assert settings.preview_length == 200
        assert settings.plan.price_usd == Decimal("7.5")
        assert settings.plan.duration_days == 31
        assert settings.stars_per_usd == 70.0

    def test_env_overrides_file(self):
        path = self._write_config({"redis_url": "redis://file", "database_path": "file.db", "model": "a"})

        settings = load_settings(path, env={**BASE_ENV, ENV_MODEL: "b"})

        assert settings.redis_url == BASE_ENV[ENV_REDIS_URL]
        assert settings.database_path == BASE_ENV[ENV_DATABASE_PATH]
        assert settings.model == "b"

    def test_stars_env_override(self):
        settings = load_settings(env={**BASE_ENV, ENV_STARS_PER_USD: "80"})

        assert settings.stars_per_usd == 80.0

    @pytest.mark.parametrize("raw", ["abc", "-5", "0"])
    def test_unusable_stars_env_is_ignored(self, raw):
        settings = load_settings(env={**BASE_ENV, ENV_STARS_PER_USD: raw})

        assert settings.stars_per_usd == 65.0

    @pytest.mark.parametrize("missing", [ENV_REDIS_URL, ENV_DATABASE_PATH])
    def test_missing_required_setting(self, missing):
        env = {k: v for k, v in BASE_ENV.items() if k != missing}

        with pytest.raises(ConfigurationError, match="Missing required setting"):
            load_settings(env=env)

    def test_missing_file(self):
        with pytest.raises(ConfigurationError, match="not found"):
            load_settings(os.path.join(self.temp_dir, "nope.yaml"), env=BASE_ENV)

    def test_empty_file(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, 'w').close()

        with pytest.raises(ConfigurationError, match="empty"):
            load_settings(path, env=BASE_ENV)

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("daily_token_limit: [unclosed")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_settings(path, env=BASE_ENV)

    def test_unknown_top_level_key(self):
        path = self._write_config({"daily_limit": 5})

        with pytest.raises(ConfigurationError, match="Unknown configuration keys"):
            load_settings(path, env=BASE_ENV)

    def test_unknown_plan_key(self):
        path = self._write_config({"plan": {"discount": 0.5}})

        with pytest.raises(ConfigurationError, match="Unknown plan keys"):
            load_settings(path, env=BASE_ENV)

    def test_plan_must_be_mapping(self):
        path = self._write_config({"plan": 5})

        with pytest.raises(ConfigurationError, match="'plan' must be a dictionary"):
            load_settings(path, env=BASE_ENV)

    def test_non_integer_limit(self):
        path = self._write_config({"daily_token_limit": "lots"})

        with pytest.raises(ConfigurationError, match="must be an integer"):
            load_settings(path, env=BASE_ENV)

    @pytest.mark.parametrize("key, value", [
        ("daily_token_limit", 0),
        ("estimated_tokens_per_request", -1),
        ("counter_ttl_hours", 12),
        ("preview_length", 0),
        ("rewrite_timeout_seconds", 0),
    ])
    def test_out_of_range_values(self, key, value):
        path = self._write_config({key: value})

        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            load_settings(path, env=BASE_ENV)

    def test_invalid_plan_value(self):
        path = self._write_config({"plan": {"price_usd": "free"}})

        with pytest.raises(ConfigurationError):
            load_settings(path, env=BASE_ENV)


class TestSettings:
    """Test direct construction of Settings."""

    def test_requires_redis_url(self):
        with pytest.raises(ValueError, match="redis_url is required"):
            Settings(redis_url="", database_path="x.db")

    def test_settings_are_frozen(self):
        settings = Settings(redis_url="redis://x", database_path="x.db")

        with pytest.raises(Exception):
            settings.daily_token_limit = 1
