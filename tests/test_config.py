"""Tests for configuration management."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

import updown_engine.core.config as config_module
from updown_engine.core.config import (
    CONFIG_DIR_ENV,
    ConfigError,
    ConfigLoader,
    deep_merge,
    get_config,
    reset_config,
)

EXPECTED_INTERVAL = 300
EXPECTED_MAX_RETRIES = 5
EXPECTED_BACKOFF = 30


class TestConfigLoader:
    """Test suite for ConfigLoader."""

    def test_load_default_config(self) -> None:
        """Test loading default configuration."""
        loader = ConfigLoader()
        assert loader.get("ledger.max_shares_per_side") is not None
        assert loader.get("polymarket.clob_host") is not None

    def test_get_with_dot_notation(self, tmp_path: Path) -> None:
        """Test getting config values with dot notation."""
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("""
polymarket:
  clob_host: https://clob.test
  data_api_url: https://data.test
ledger:
  max_shares_per_side: 50
""")

        loader = ConfigLoader(config_dir=tmp_path)
        assert loader.get("polymarket.clob_host") == "https://clob.test"
        assert loader.get("polymarket.data_api_url") == "https://data.test"
        assert loader.get("ledger.max_shares_per_side") == 50  # noqa: PLR2004

    def test_get_with_default(self, tmp_path: Path) -> None:
        """Test getting non-existent key returns default."""
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("ledger: {}")

        loader = ConfigLoader(config_dir=tmp_path)
        assert loader.get("nonexistent.key", "default_value") == "default_value"

    def test_env_var_substitution(self, tmp_path: Path) -> None:
        """Test environment variable substitution."""
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("""
polymarket:
  clob_host: ${TEST_CLOB_HOST}
  data_api_url: ${TEST_DATA_API_URL:https://default.com}
""")

        with patch.dict(os.environ, {"TEST_CLOB_HOST": "https://env.clob"}):
            loader = ConfigLoader(config_dir=tmp_path)
            assert loader.get("polymarket.clob_host") == "https://env.clob"
            # TEST_DATA_API_URL not set, should use default
            assert loader.get("polymarket.data_api_url") == "https://default.com"

    def test_env_var_in_list(self, tmp_path: Path) -> None:
        """Substitute environment variables inside lists."""
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("""
polymarket:
  rpc_urls:
    - ${TEST_RPC_URL:https://rpc.default}
    - https://rpc.backup
""")

        loader = ConfigLoader(config_dir=tmp_path)
        assert loader.get("polymarket.rpc_urls") == ["https://rpc.default", "https://rpc.backup"]

    def test_local_settings_override(self, tmp_path: Path) -> None:
        """Test that local settings override base settings."""
        base_config = tmp_path / "settings.yaml"
        base_config.write_text("""
ledger:
  max_shares_per_side: 100
  max_total_shares_per_market: 200
""")

        local_config = tmp_path / "settings.local.yaml"
        local_config.write_text("""
ledger:
  max_shares_per_side: 40
""")

        loader = ConfigLoader(config_dir=tmp_path)
        assert loader.get("ledger.max_shares_per_side") == 40  # noqa: PLR2004
        assert loader.get("ledger.max_total_shares_per_market") == 200  # noqa: PLR2004

    def test_get_section(self, tmp_path: Path) -> None:
        """Return a section dict, or an empty one when absent."""
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("""
redeemer:
  batch_size: 2
""")

        loader = ConfigLoader(config_dir=tmp_path)
        assert loader.get_section("redeemer") == {"batch_size": 2}
        assert loader.get_section("missing") == {}

    def test_get_section_not_a_mapping(self, tmp_path: Path) -> None:
        """Raise ConfigError when a section is not a mapping."""
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("redeemer: 5")

        loader = ConfigLoader(config_dir=tmp_path)
        with pytest.raises(ConfigError, match="must be a dict"):
            loader.get_section("redeemer")

    def test_full_string_unresolved_env_var_raises_config_error(self, tmp_path: Path) -> None:
        """Raise ConfigError when env var is unset and has no default."""
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("""
audit:
  db_url: ${NONEXISTENT_UPDOWN_ENGINE_VAR}
""")

        with pytest.raises(ConfigError, match="Required environment variable"):
            ConfigLoader(config_dir=tmp_path)

    def test_embedded_env_var_reference_is_resolved(self, tmp_path: Path) -> None:
        """Resolve references embedded in a longer string."""
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("""
audit:
  db_url: sqlite+aiosqlite:///${TEST_AUDIT_DIR:/var/lib}/audit.db
polymarket:
  clob_host: https://${TEST_CLOB_DOMAIN}/v1
""")

        with patch.dict(os.environ, {"TEST_CLOB_DOMAIN": "clob.test"}):
            loader = ConfigLoader(config_dir=tmp_path)

        assert loader.get("audit.db_url") == "sqlite+aiosqlite:////var/lib/audit.db"
        assert loader.get("polymarket.clob_host") == "https://clob.test/v1"

    def test_embedded_unset_env_var_raises_config_error(self, tmp_path: Path) -> None:
        """Raise ConfigError when an embedded reference has no value and no default."""
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("""
polymarket:
  clob_host: https://clob.example.com/${NONEXISTENT_PATH_VAR}/v1
""")

        with pytest.raises(ConfigError, match="NONEXISTENT_PATH_VAR"):
            ConfigLoader(config_dir=tmp_path)

    def test_non_mapping_settings_file(self, tmp_path: Path) -> None:
        """Raise ConfigError when the settings file is not a mapping."""
        (tmp_path / "settings.yaml").write_text("- just\n- a list\n")

        with pytest.raises(ConfigError, match="must contain a mapping"):
            ConfigLoader(config_dir=tmp_path)

    def test_config_dir_from_environment(self, tmp_path: Path) -> None:
        """Read settings from UPDOWN_CONFIG_DIR when no directory is given."""
        (tmp_path / "settings.yaml").write_text("ledger:\n  max_shares_per_side: 7\n")

        with patch.dict(os.environ, {CONFIG_DIR_ENV: str(tmp_path)}):
            loader = ConfigLoader()

        assert loader.config_dir == tmp_path
        assert loader.get("ledger.max_shares_per_side") == 7  # noqa: PLR2004

    def test_deep_merge(self, tmp_path: Path) -> None:
        """Test deep merging of nested configurations."""
        base_config = tmp_path / "settings.yaml"
        base_config.write_text("""
redeemer:
  interval_seconds: 300
  retry:
    max_retries: 3
    backoff: 30
""")

        local_config = tmp_path / "settings.local.yaml"
        local_config.write_text("""
redeemer:
  retry:
    max_retries: 5
""")

        loader = ConfigLoader(config_dir=tmp_path)
        assert loader.get("redeemer.interval_seconds") == EXPECTED_INTERVAL
        assert loader.get("redeemer.retry.max_retries") == EXPECTED_MAX_RETRIES
        assert loader.get("redeemer.retry.backoff") == EXPECTED_BACKOFF


class TestDeepMerge:
    """Test suite for deep_merge."""

    def test_scalars_and_lists_are_replaced(self) -> None:
        """Non-mapping values in the override replace the base value."""
        base = {"strategy": {"enabled_assets": ["BTC", "ETH"], "entry": {"edge_min": "0.04"}}}

        deep_merge(base, {"strategy": {"enabled_assets": ["SOL"], "entry": {"base_shares": 5}}})

        assert base == {
            "strategy": {
                "enabled_assets": ["SOL"],
                "entry": {"edge_min": "0.04", "base_shares": 5},
            }
        }

    def test_mapping_replaces_scalar(self) -> None:
        """A mapping in the override replaces a scalar in the base."""
        base: dict[str, object] = {"audit": "off"}

        deep_merge(base, {"audit": {"queue_size": 10}})

        assert base == {"audit": {"queue_size": 10}}


class TestGetConfig:
    """Test suite for the lazy singleton get_config() function."""

    def test_returns_config_loader_instance(self) -> None:
        """Return a ConfigLoader instance on first call."""
        reset_config()
        try:
            result = get_config()
            assert isinstance(result, ConfigLoader)
        finally:
            reset_config()

    def test_returns_same_instance(self) -> None:
        """Return the same ConfigLoader on subsequent calls."""
        reset_config()
        try:
            first = get_config()
            second = get_config()
            assert first is second
        finally:
            reset_config()

    def test_reset_drops_cached_loader(self) -> None:
        """reset_config() forces the next call to build a fresh loader."""
        reset_config()
        try:
            first = get_config()
            reset_config()
            assert config_module._config is None  # noqa: SLF001
            assert get_config() is not first
        finally:
            reset_config()
