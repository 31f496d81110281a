"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for ledger configs.
"""

import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from prompt_ledger.config.loader import (
    LedgerConfig,
    LimitsConfig,
    StorageConfig,
    load_config,
)
from prompt_ledger.core.pricing import DEFAULT_RATE_TABLE, UnknownModelError
from prompt_ledger.storage.models import HISTORY_KEY, USAGE_KEY


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

    def test_defaults_without_file(self):
        """No path gives the built-in configuration."""
        config = load_config(None)
        assert config == LedgerConfig()
        assert config.storage.path == "prompt_ledger.db"
        assert config.storage.history_key == HISTORY_KEY
        assert config.storage.usage_key == USAGE_KEY
        assert config.pricing is DEFAULT_RATE_TABLE
        assert config.limits.history_max_entries is None

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "storage": {
                "path": "/tmp/ledger.db",
                "history_key": "h",
                "usage_key": "u",
                "background_writes": True
            },
            "pricing": {
                "models": {
                    "openai/gpt-4o": {"input": 0.0000025, "output": 0.00001}
                },
                "default": {"input": 0.000001, "output": 0.000002}
            },
            "limits": {
                "history_max_entries": 200,
                "usage_max_entries": 1000
            }
        }

        config = load_config(self._write_config(config_data))

        assert config.storage == StorageConfig("/tmp/ledger.db", "h", "u", True)
        pricing = config.pricing.get_pricing("openai/gpt-4o")
        assert pricing.input_rate_per_token == Decimal("0.0000025")
        assert pricing.output_rate_per_token == Decimal("0.00001")
        assert config.pricing.get_pricing("other").output_rate_per_token == Decimal("0.000002")
        assert config.limits == LimitsConfig(200, 1000)

    def test_partial_config_keeps_defaults(self):
        """Omitted sections fall back to defaults."""
        config = load_config(self._write_config({"storage": {"path": "x.db"}}))
        assert config.storage.path == "x.db"
        assert config.storage.history_key == HISTORY_KEY
        assert config.pricing is DEFAULT_RATE_TABLE

    def test_pricing_without_default_is_strict(self):
        """Models not listed raise when no default rate is given."""
        config = load_config(self._write_config({
            "pricing": {"models": {"m": {"input": 0.1, "output": 0.2}}}
        }))
        with pytest.raises(UnknownModelError):
            config.pricing.get_pricing("other")

    def test_string_rates_accepted(self):
        """Rates may be quoted to keep exact decimal text."""
        config = load_config(self._write_config({
            "pricing": {"models": {"m": {"input": "0.0000001", "output": "3e-7"}}}
        }))
        assert config.pricing.get_pricing("m").output_rate_per_token == Decimal("3e-7")

    def test_missing_file(self):
        """Test that missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_empty_file(self):
        """Test that empty config file raises ValueError."""
        path = os.path.join(self.temp_dir, "empty.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("")
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_config(path)

    def test_invalid_yaml(self):
        """Test that malformed YAML raises YAMLError."""
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("storage: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_config(path)

    def test_unknown_top_level_key(self):
        """Test that unknown keys are rejected."""
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(self._write_config({"budget": {"daily": 1}}))

    def test_unknown_storage_key(self):
        """Test that unknown storage keys are rejected."""
        with pytest.raises(ValueError, match="Unknown keys in storage"):
            load_config(self._write_config({"storage": {"dir": "x"}}))

    def test_section_must_be_dict(self):
        """Test that sections must be dictionaries."""
        with pytest.raises(ValueError, match="'limits' must be a dictionary"):
            load_config(self._write_config({"limits": [1, 2]}))

    def test_missing_rate(self):
        """Both rates are required."""
        with pytest.raises(ValueError, match="Missing required 'output'"):
            load_config(self._write_config({"pricing": {"models": {"m": {"input": 0.1}}}}))

    def test_negative_rate(self):
        """Negative rates are rejected."""
        with pytest.raises(ValueError, match="must be >= 0"):
            load_config(self._write_config({
                "pricing": {"models": {"m": {"input": -0.1, "output": 0.1}}}
            }))

    def test_non_numeric_rate(self):
        """Rates must be numbers."""
        with pytest.raises(ValueError, match="Invalid rate"):
            load_config(self._write_config({
                "pricing": {"models": {"m": {"input": "cheap", "output": 0.1}}}
            }))

    def test_empty_pricing(self):
        """A pricing section must price something."""
        with pytest.raises(ValueError, match="at least one model"):
            load_config(self._write_config({"pricing": {"models": {}}}))

    def test_background_writes_must_be_bool(self):
        """Flags must be booleans."""
        with pytest.raises(ValueError, match="background_writes"):
            load_config(self._write_config({"storage": {"background_writes": "yes"}}))

    def test_same_keys_rejected(self):
        """History and usage cannot share a storage key."""
        with pytest.raises(ValueError, match="must differ"):
            load_config(self._write_config({"storage": {"history_key": "k", "usage_key": "k"}}))

    @pytest.mark.parametrize("value", [0, -5, "ten", True])
    def test_invalid_limits(self, value):
        """Limits must be positive integers."""
        with pytest.raises(ValueError, match="positive integer"):
            load_config(self._write_config({"limits": {"usage_max_entries": value}}))

    def test_limits_dataclass_validation(self):
        """LimitsConfig validates values directly too."""
        with pytest.raises(ValueError):
            LimitsConfig(history_max_entries=0)
