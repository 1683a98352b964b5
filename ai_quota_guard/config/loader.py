"""
Configuration management and loading.

Loads quota and gateway settings from a YAML file. Validation is strict:
unknown keys and non-positive limits are rejected rather than ignored, so a
typo cannot silently loosen the quota.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_quota_guard.core.credentials import SUPPORTED_PROVIDERS
from ai_quota_guard.core.quota import QuotaConfig
from ai_quota_guard.sdk.gateway import GatewayConfig

QUOTA_KEYS = {
    'max_requests_per_minute': int,
    'max_tokens_per_minute': int,
    'window_ms': int,
    'warning_threshold': float,
    'token_warning_threshold': int,
    'chars_per_token': int,
}


@dataclass(frozen=True)
class Settings:
    """Complete application settings."""
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)


def load_settings(path: Optional[str] = None) -> Settings:
    """Load and validate settings from a YAML file.

    Every section is optional; omitted values take their defaults. Without
    a path the defaults are returned.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return Settings()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return Settings()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'quota', 'gateway'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    return Settings(
        quota=_parse_quota(_section(raw_config, 'quota')),
        gateway=_parse_gateway(_section(raw_config, 'gateway')),
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _number(value: Any, kind: type, path: str):
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    if kind is int and value != int(value):
        raise ValueError(f"'{path}' must be a whole number")
    return kind(value)


def _parse_quota(data: Dict) -> QuotaConfig:
    """Parse and validate the quota section.

    Raises:
        ValueError: If configuration is invalid
    """
    unknown_keys = set(data.keys()) - set(QUOTA_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown keys in quota: {unknown_keys}")

    values = {key: _number(value, QUOTA_KEYS[key], f"quota.{key}") for key, value in data.items()}
    return QuotaConfig(**values)


def _parse_gateway(data: Dict) -> GatewayConfig:
    """Parse and validate the gateway section.

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'default_provider', 'timeout_seconds', 'models'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in gateway: {unknown_keys}")

    values: Dict[str, Any] = {}

    if 'default_provider' in data:
        provider = data['default_provider']
        if not isinstance(provider, str) or provider.lower() not in SUPPORTED_PROVIDERS:
            raise ValueError(f"'gateway.default_provider' must be one of: {list(SUPPORTED_PROVIDERS)}")
        values['default_provider'] = provider.lower()

    if 'timeout_seconds' in data:
        values['timeout_seconds'] = _number(data['timeout_seconds'], float, 'gateway.timeout_seconds')

    models = data.get('models') or {}
    if not isinstance(models, dict):
        raise ValueError("'gateway.models' must be a dictionary")
    for provider, model in models.items():
        if not isinstance(provider, str) or provider.lower() not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unknown provider in gateway.models: {provider}")
        if not isinstance(model, str) or not model.strip():
            raise ValueError(f"'gateway.models.{provider}' must be a non-empty string")
    values['models'] = {provider.lower(): model.strip() for provider, model in models.items()}

    return GatewayConfig(**values)
