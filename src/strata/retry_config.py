"""Configuration for retry logic.

Retry settings for remote control plane calls. Defaults work out of the box
and can be overridden via environment variables or the engine config file.
"""

import os
from dataclasses import dataclass

from strata.errors import ConfigurationError


@dataclass(frozen=True)
class RetryConfig:
    """Bounded exponential backoff settings for one remote operation."""

    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 30.0
    jitter_enabled: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays cannot be negative")

    @classmethod
    def from_environment(cls) -> "RetryConfig":
        """Load retry configuration from environment variables.

        Environment variables (all optional):
            STRATA_RETRY_MAX_ATTEMPTS: Attempt ceiling per change (default: 5)
            STRATA_RETRY_INITIAL_DELAY: First backoff delay in seconds (default: 1.0)
            STRATA_RETRY_MAX_DELAY: Backoff cap in seconds (default: 30.0)
            STRATA_RETRY_JITTER_ENABLED: Enable jitter (default: true)
        """
        try:
            return cls(
                max_attempts=int(os.getenv("STRATA_RETRY_MAX_ATTEMPTS", "5")),
                initial_delay=float(os.getenv("STRATA_RETRY_INITIAL_DELAY", "1.0")),
                max_delay=float(os.getenv("STRATA_RETRY_MAX_DELAY", "30.0")),
                jitter_enabled=os.getenv("STRATA_RETRY_JITTER_ENABLED", "true").lower()
                == "true",
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid retry environment setting: {e}") from e


# Global configuration instance (lazily loaded)
_config: RetryConfig | None = None


def get_retry_config() -> RetryConfig:
    """Get global retry configuration (loaded from environment on first access)."""
    global _config
    if _config is None:
        _config = RetryConfig.from_environment()
    return _config


def reset_retry_config() -> None:
    """Force reload from environment on next access."""
    global _config
    _config = None


__all__ = ["RetryConfig", "get_retry_config", "reset_retry_config"]
