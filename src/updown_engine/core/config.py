"""Configuration loading for the up/down trading engine.

Settings live in ``config/settings.yaml`` next to the package, optionally
overlaid by a git-ignored ``settings.local.yaml``.  String values may
reference environment variables as ``${VAR}`` or ``${VAR:default}``, either
as the whole value or embedded in a longer string such as a database URL.
A reference with no value and no default is a startup error: risk caps and
credentials are never silently left blank.

Set ``UPDOWN_CONFIG_DIR`` to load settings from another directory.
"""

import os
import re
from pathlib import Path
from typing import Any, cast

import yaml
from dotenv import load_dotenv

CONFIG_DIR_ENV = "UPDOWN_CONFIG_DIR"
_SETTINGS_FILE = "settings.yaml"
_LOCAL_SETTINGS_FILE = "settings.local.yaml"
_ENV_REF = re.compile(r"\$\{(?P<name>[^}:]+)(?::(?P<default>[^}]*))?\}")


class ConfigError(Exception):
    """Raise when configuration loading or validation fails."""


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open() as f:
        loaded: Any = yaml.safe_load(f)
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        msg = f"{path.name} must contain a mapping, got {type(loaded).__name__}"
        raise ConfigError(msg)
    return cast("dict[str, Any]", loaded)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    """Merge ``override`` into ``base`` in place, recursing into nested mappings.

    Args:
        base: Dictionary to merge into.
        override: Dictionary whose values win on conflict.

    """
    for key, value in override.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            deep_merge(cast("dict[str, Any]", current), cast("dict[str, Any]", value))
        else:
            base[key] = value


def _resolve_ref(match: re.Match[str]) -> str:
    name = match.group("name")
    value = os.getenv(name, match.group("default"))
    if value is None:
        msg = f"Required environment variable ${{{name}}} is not set and has no default"
        raise ConfigError(msg)
    return value


def substitute_env_vars(value: Any) -> Any:
    """Resolve ``${VAR}`` and ``${VAR:default}`` references recursively.

    Args:
        value: A mapping, list, string or scalar read from YAML.

    Returns:
        The same structure with every reference replaced by its value.

    Raises:
        ConfigError: If a referenced variable is unset and has no default.

    """
    if isinstance(value, dict):
        return {
            k: substitute_env_vars(v)
            for k, v in value.items()  # pyright: ignore[reportUnknownVariableType]
        }
    if isinstance(value, list):
        return [
            substitute_env_vars(item)
            for item in value  # pyright: ignore[reportUnknownVariableType]
        ]
    if isinstance(value, str):
        return _ENV_REF.sub(_resolve_ref, value)
    return value


class ConfigLoader:
    """Load settings from YAML with local overrides and environment substitution."""

    def __init__(self, config_dir: Path | None = None) -> None:
        """Initialize the config loader.

        Load a ``.env`` file if present, then read the settings from
        ``config_dir``, from ``$UPDOWN_CONFIG_DIR`` or from the packaged
        ``config`` directory, in that order of preference.

        Args:
            config_dir: Directory holding ``settings.yaml``.

        """
        load_dotenv()
        if config_dir is None:
            env_dir = os.getenv(CONFIG_DIR_ENV)
            config_dir = Path(env_dir) if env_dir else Path(__file__).parent.parent / "config"
        self.config_dir = Path(config_dir)
        settings = _read_yaml(self.config_dir / _SETTINGS_FILE)
        deep_merge(settings, _read_yaml(self.config_dir / _LOCAL_SETTINGS_FILE))
        self._config: dict[str, Any] = substitute_env_vars(settings)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dot-notation key.

        Args:
            key: Dotted path such as ``'ledger.max_shares_per_side'``.
            default: Value returned when any part of the path is missing.

        Returns:
            The configured value, or ``default``.

        """
        current: Any = self._config
        for part in key.split("."):
            if not isinstance(current, dict):
                return default
            current = cast("dict[str, Any]", current).get(part)
            if current is None:
                return default
        return current

    def get_section(self, name: str) -> dict[str, Any]:
        """Return a top-level configuration section as a dictionary.

        Args:
            name: Section name (e.g. ``"strategy"``).

        Returns:
            The section dictionary, or an empty dict when absent.

        Raises:
            ConfigError: If the section exists but is not a mapping.

        """
        result: Any = self.get(name, {})
        if isinstance(result, dict):
            return cast("dict[str, Any]", result)
        msg = f"{name} config must be a dict, got {type(result).__name__}"
        raise ConfigError(msg)


_config: ConfigLoader | None = None


def get_config() -> ConfigLoader:
    """Return the process-wide ``ConfigLoader``, creating it on first use.

    Returns:
        The shared ``ConfigLoader`` instance.

    """
    global _config  # noqa: PLW0603
    if _config is None:
        _config = ConfigLoader()
    return _config


def reset_config() -> None:
    """Drop the cached loader so the next ``get_config()`` re-reads settings."""
    global _config  # noqa: PLW0603
    _config = None
