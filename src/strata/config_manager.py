"""Configuration management module.

Engine settings live in a TOML file (default ~/.strata/config.toml):

    state_file = "~/.strata/state.json"
    max_workers = 4
    poll_interval_seconds = 60
    metric_window_seconds = 300
    failure_backoff_seconds = 30
    max_failure_backoff_seconds = 600
    capacity_attribute = "desired_count"

    [retry]
    max_attempts = 5
    initial_delay = 1.0
    max_delay = 30.0
    jitter_enabled = true

Missing keys fall back to defaults (retry defaults come from the
environment, see retry_config). Unknown keys are rejected.
"""

import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import tomlkit

from strata.errors import ConfigurationError
from strata.retry_config import RetryConfig, get_retry_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".strata"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"
DEFAULT_STATE_FILE = DEFAULT_CONFIG_DIR / "state.json"


@dataclass
class EngineConfig:
    """strata engine configuration."""

    state_file: str = str(DEFAULT_STATE_FILE)
    max_workers: int = 1
    poll_interval_seconds: float = 60.0
    metric_window_seconds: float = 300.0
    failure_backoff_seconds: float = 30.0
    max_failure_backoff_seconds: float = 600.0
    capacity_attribute: str = "desired_count"
    retry: RetryConfig = field(default_factory=get_retry_config)

    def __post_init__(self):
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        if self.poll_interval_seconds <= 0:
            raise ConfigurationError("poll_interval_seconds must be positive")
        if self.metric_window_seconds <= 0:
            raise ConfigurationError("metric_window_seconds must be positive")

    @property
    def state_path(self) -> Path:
        return Path(self.state_file).expanduser()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["retry"] = asdict(self.retry)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineConfig":
        """Build a config from parsed TOML.

        Raises:
            ConfigurationError: On unknown keys or ill-typed values
        """
        data = dict(data)
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {', '.join(unknown)}")

        retry_data = data.pop("retry", None)
        try:
            if retry_data is not None:
                if not isinstance(retry_data, dict):
                    raise ConfigurationError("[retry] must be a table")
                retry_known = {f.name for f in fields(RetryConfig)}
                retry_unknown = sorted(set(retry_data) - retry_known)
                if retry_unknown:
                    raise ConfigurationError(
                        f"Unknown retry config keys: {', '.join(retry_unknown)}"
                    )
                _check_types(retry_data, _RETRY_FIELD_TYPES, "retry.")
                base = asdict(get_retry_config())
                base.update(retry_data)
                data["retry"] = RetryConfig(**base)
            _check_types(data, _FIELD_TYPES)
            return cls(**data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid config: {e}") from e


_FIELD_TYPES: dict[str, tuple[type, ...]] = {
    "state_file": (str,),
    "max_workers": (int,),
    "poll_interval_seconds": (int, float),
    "metric_window_seconds": (int, float),
    "failure_backoff_seconds": (int, float),
    "max_failure_backoff_seconds": (int, float),
    "capacity_attribute": (str,),
}


_RETRY_FIELD_TYPES: dict[str, tuple[type, ...]] = {
    "max_attempts": (int,),
    "initial_delay": (int, float),
    "max_delay": (int, float),
    "jitter_enabled": (bool,),
}


def _check_types(
    data: dict[str, Any], types: dict[str, tuple[type, ...]], prefix: str = ""
) -> None:
    for key, expected in types.items():
        if key not in data:
            continue
        value = data[key]
        # bool is an int subclass; only accept it where bool is expected
        wrong_bool = isinstance(value, bool) and bool not in expected
        if wrong_bool or not isinstance(value, expected):
            raise ConfigurationError(
                f"Config key {prefix + key!r} must be {' or '.join(t.__name__ for t in expected)}, "
                f"got {type(value).__name__}"
            )


class ConfigManager:
    """Load and save the engine configuration file."""

    @staticmethod
    def load_config(custom_path: str | Path | None = None) -> EngineConfig:
        """Load configuration; a missing default file yields defaults.

        Raises:
            ConfigurationError: If a custom file is missing or the TOML is invalid
        """
        path = Path(custom_path).expanduser() if custom_path else DEFAULT_CONFIG_FILE
        if not path.exists():
            if custom_path:
                raise ConfigurationError(f"Config file not found: {path}")
            logger.debug(f"No config at {path}, using defaults")
            return EngineConfig()

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigurationError(f"Failed to load config {path}: {e}") from e

        logger.debug(f"Loaded config from {path}")
        return EngineConfig.from_dict(data)

    @staticmethod
    def save_config(config: EngineConfig, custom_path: str | Path | None = None) -> Path:
        """Write configuration with tomlkit, preserving comments in an existing file.

        Uses a temporary file and atomic rename; the file is mode 0600.

        Raises:
            ConfigurationError: If writing fails
        """
        path = Path(custom_path).expanduser() if custom_path else DEFAULT_CONFIG_FILE
        temp_path = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.exists():
                with open(path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()
                doc.add(tomlkit.comment("strata engine configuration"))

            for key, value in config.to_dict().items():
                if key == "retry":
                    if "retry" not in doc:
                        doc["retry"] = tomlkit.table()
                    for retry_key, retry_value in value.items():
                        doc["retry"][retry_key] = retry_value
                else:
                    doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)
            os.chmod(temp_path, 0o600)
            temp_path.replace(path)
        except Exception as e:
            if temp_path.exists():
                temp_path.unlink()
            raise ConfigurationError(f"Failed to save config: {e}") from e

        logger.debug(f"Saved config to: {path}")
        return path


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_STATE_FILE",
    "ConfigManager",
    "EngineConfig",
]
