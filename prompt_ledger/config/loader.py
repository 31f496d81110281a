"""
Configuration management and loading.

Handles storage location, pricing and retention settings.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from prompt_ledger.core.pricing import DEFAULT_RATE_TABLE, ModelPricing, RateTable
from prompt_ledger.storage.db import DEFAULT_DB_PATH
from prompt_ledger.storage.models import HISTORY_KEY, USAGE_KEY, ValidationError


@dataclass(frozen=True)
class StorageConfig:
    """Where and how the stores persist their envelopes."""
    path: str = DEFAULT_DB_PATH
    history_key: str = HISTORY_KEY
    usage_key: str = USAGE_KEY
    background_writes: bool = False

    def __post_init__(self):
        """Validate storage values are non-empty and distinct."""
        if not self.path:
            raise ValueError("storage path must not be empty")
        if not self.history_key or not self.usage_key:
            raise ValueError("storage keys must not be empty")
        if self.history_key == self.usage_key:
            raise ValueError("history_key and usage_key must differ")


@dataclass(frozen=True)
class LimitsConfig:
    """Optional retention caps; None keeps every entry."""
    history_max_entries: Optional[int] = None
    usage_max_entries: Optional[int] = None

    def __post_init__(self):
        """Validate caps are positive when set."""
        if self.history_max_entries is not None and self.history_max_entries <= 0:
            raise ValueError("history_max_entries must be > 0")
        if self.usage_max_entries is not None and self.usage_max_entries <= 0:
            raise ValueError("usage_max_entries must be > 0")


@dataclass(frozen=True)
class LedgerConfig:
    """Complete ledger configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    pricing: RateTable = DEFAULT_RATE_TABLE
    limits: LimitsConfig = field(default_factory=LimitsConfig)


def load_config(path: Optional[str] = None) -> LedgerConfig:
    """Load and validate ledger configuration from a YAML file.

    Strict validation ensures a typo in a rate or key is reported rather
    than silently billing with defaults.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return LedgerConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'storage', 'pricing', 'limits'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    storage = _parse_storage(_section(raw_config, 'storage'))
    pricing = _parse_pricing(_section(raw_config, 'pricing'))
    limits = _parse_limits(_section(raw_config, 'limits'))

    return LedgerConfig(storage=storage, pricing=pricing, limits=limits)


def _section(raw_config: Dict, name: str) -> Optional[Dict]:
    if name not in raw_config or raw_config[name] is None:
        return None
    data = raw_config[name]
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_storage(data: Optional[Dict]) -> StorageConfig:
    """Parse and validate the storage section."""
    if data is None:
        return StorageConfig()
    _check_keys(data, {'path', 'history_key', 'usage_key', 'background_writes'}, 'storage')

    values: Dict[str, Any] = {}
    for key in ('path', 'history_key', 'usage_key'):
        if key in data:
            if not isinstance(data[key], str):
                raise ValueError(f"'storage.{key}' must be a string")
            values[key] = data[key]
    if 'background_writes' in data:
        if not isinstance(data['background_writes'], bool):
            raise ValueError("'storage.background_writes' must be true or false")
        values['background_writes'] = data['background_writes']
    return StorageConfig(**values)


def _parse_pricing(data: Optional[Dict]) -> RateTable:
    """Parse and validate the pricing section.

    Rates are USD per token. Without a pricing section the built-in
    table is used.
    """
    if data is None:
        return DEFAULT_RATE_TABLE
    _check_keys(data, {'models', 'default'}, 'pricing')

    models_data = data.get('models') or {}
    if not isinstance(models_data, dict):
        raise ValueError("'pricing.models' must be a dictionary")

    prices = {}
    for model_id, rates in models_data.items():
        prices[str(model_id)] = _parse_rates(rates, f"pricing.models.{model_id}")

    default = None
    if data.get('default') is not None:
        default = _parse_rates(data['default'], "pricing.default")

    if not prices and default is None:
        raise ValueError("'pricing' must define at least one model or a default")
    return RateTable(prices=prices, default=default)


def _parse_rates(data: Any, path: str) -> ModelPricing:
    """Parse and validate one ``{input, output}`` rate pair."""
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _check_keys(data, {'input', 'output'}, path)

    for key in ('input', 'output'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ValueError(f"'{key}' in {path} must be a number")

    try:
        return ModelPricing(
            input_rate_per_token=data['input'],
            output_rate_per_token=data['output']
        )
    except ValidationError as e:
        raise ValueError(f"Invalid rate in {path}: {e}")
    except ValueError:
        raise ValueError(f"Rates in {path} must be >= 0")


def _parse_limits(data: Optional[Dict]) -> LimitsConfig:
    """Parse and validate the limits section."""
    if data is None:
        return LimitsConfig()
    _check_keys(data, {'history_max_entries', 'usage_max_entries'}, 'limits')

    values: Dict[str, Optional[int]] = {}
    for key in ('history_max_entries', 'usage_max_entries'):
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValueError(f"'limits.{key}' must be a positive integer")
        values[key] = value
    return LimitsConfig(**values)
