"""
Configuration management and loading.

Handles application settings from a YAML file and environment variables.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from token_meter.core.errors import ConfigurationError
from token_meter.core.plans import SubscriptionPlan

ENV_REDIS_URL = "TOKEN_METER_REDIS_URL"
ENV_DATABASE_PATH = "TOKEN_METER_DATABASE_PATH"
ENV_MODEL = "TOKEN_METER_MODEL"
ENV_STARS_PER_USD = "TOKEN_METER_STARS_PER_USD"

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_STARS_PER_USD = 65.0

_PLAN_KEYS = {
    'price_usd', 'reference_budget_usd', 'input_cost_per_million',
    'output_cost_per_million', 'duration_days', 'stars_per_usd'
}

_INT_KEYS = {
    'daily_token_limit', 'estimated_tokens_per_request', 'counter_ttl_hours',
    'preview_length'
}

_ALLOWED_TOP_KEYS = _INT_KEYS | {
    'redis_url', 'database_path', 'model', 'rewrite_timeout_seconds', 'key_prefix', 'plan'
}


@dataclass(frozen=True)
class Settings:
    """Validated runtime settings."""
    redis_url: str
    database_path: str
    model: str = DEFAULT_MODEL
    daily_token_limit: int = 10000
    estimated_tokens_per_request: int = 500
    counter_ttl_hours: int = 48
    rewrite_timeout_seconds: float = 30.0
    preview_length: int = 500
    key_prefix: str = "token_meter"
    plan: SubscriptionPlan = field(default_factory=SubscriptionPlan)
    stars_per_usd: float = DEFAULT_STARS_PER_USD

    def __post_init__(self):
        """Validate settings values."""
        if not self.redis_url:
            raise ValueError("redis_url is required")
        if not self.database_path:
            raise ValueError("database_path is required")
        if not self.model:
            raise ValueError("model is required")
        if self.daily_token_limit <= 0:
            raise ValueError("daily_token_limit must be > 0")
        if self.estimated_tokens_per_request <= 0:
            raise ValueError("estimated_tokens_per_request must be > 0")
        if self.counter_ttl_hours < 24:
            raise ValueError("counter_ttl_hours must be >= 24 to outlive the day boundary")
        if self.rewrite_timeout_seconds <= 0:
            raise ValueError("rewrite_timeout_seconds must be > 0")
        if self.preview_length <= 0:
            raise ValueError("preview_length must be > 0")
        if self.stars_per_usd <= 0:
            raise ValueError("stars_per_usd must be > 0")

    @property
    def counter_ttl(self) -> timedelta:
        return timedelta(hours=self.counter_ttl_hours)


def load_settings(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """Load and validate settings.

    Values come from the optional YAML file first; environment variables
    then override redis_url, database_path, model and stars_per_usd.

    Args:
        path: Optional path to YAML configuration file
        env: Environment mapping, defaults to os.environ

    Returns:
        Validated Settings object

    Raises:
        ConfigurationError: If the file is missing or invalid, or a
            required setting is absent
    """
    env = os.environ if env is None else env
    raw_config: Dict[str, Any] = {}

    if path is not None:
        raw_config = _read_yaml(path)

    _validate_keys(raw_config)

    values: Dict[str, Any] = {k: v for k, v in raw_config.items() if k != 'plan'}
    plan_data = dict(raw_config.get('plan') or {})
    stars_per_usd = plan_data.pop('stars_per_usd', DEFAULT_STARS_PER_USD)

    if env.get(ENV_REDIS_URL):
        values['redis_url'] = env[ENV_REDIS_URL]
    if env.get(ENV_DATABASE_PATH):
        values['database_path'] = env[ENV_DATABASE_PATH]
    if env.get(ENV_MODEL):
        values['model'] = env[ENV_MODEL]

    # An unusable rate in the environment is ignored, not fatal.
    stars_raw = env.get(ENV_STARS_PER_USD)
    if stars_raw:
        try:
            parsed = float(stars_raw)
        except ValueError:
            parsed = 0.0
        if parsed > 0:
            stars_per_usd = parsed

    for key in ('redis_url', 'database_path'):
        if not values.get(key):
            raise ConfigurationError(f"Missing required setting '{key}'")

    for key in _INT_KEYS:
        if key in values and (not isinstance(values[key], int) or isinstance(values[key], bool)):
            raise ConfigurationError(f"'{key}' must be an integer")
    if 'rewrite_timeout_seconds' in values:
        timeout = values['rewrite_timeout_seconds']
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool):
            raise ConfigurationError("'rewrite_timeout_seconds' must be a number")
        values['rewrite_timeout_seconds'] = float(timeout)

    try:
        plan = _parse_plan(plan_data)
        return Settings(plan=plan, stars_per_usd=float(stars_per_usd), **values)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def _read_yaml(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {path}: {e}") from e

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration file must contain a mapping")
    return raw_config


def _validate_keys(raw_config: Dict[str, Any]) -> None:
    unknown_keys = set(raw_config.keys()) - _ALLOWED_TOP_KEYS
    if unknown_keys:
        raise ConfigurationError(f"Unknown configuration keys: {unknown_keys}")

    plan_data = raw_config.get('plan')
    if plan_data is None:
        return
    if not isinstance(plan_data, dict):
        raise ConfigurationError("'plan' must be a dictionary")
    unknown_plan_keys = set(plan_data.keys()) - _PLAN_KEYS
    if unknown_plan_keys:
        raise ConfigurationError(f"Unknown plan keys: {unknown_plan_keys}")


def _parse_plan(data: Dict[str, Any]) -> SubscriptionPlan:
    """Parse plan pricing, keeping money values exact.

    Raises:
        ValueError: If a value is not a valid number
    """
    kwargs: Dict[str, Any] = {}
    for key in ('price_usd', 'reference_budget_usd', 'input_cost_per_million', 'output_cost_per_million'):
        if key in data:
            try:
                kwargs[key] = Decimal(str(data[key]))
            except InvalidOperation:
                raise ValueError(f"plan.{key} must be a number")
    if 'duration_days' in data:
        if not isinstance(data['duration_days'], int) or isinstance(data['duration_days'], bool):
            raise ValueError("plan.duration_days must be an integer")
        kwargs['duration_days'] = data['duration_days']
    return SubscriptionPlan(**kwargs)
