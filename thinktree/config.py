"""Thinktree configuration.

Centralized configuration management with environment variable support,
Docker secrets integration, and defaults for new thinking sessions.

Usage:
    from thinktree.config import get_config
    print(get_config().server.name)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from thinktree.models.thinking_store import DEFAULT_DB_PATH, validate_db_path
from thinktree.tools.thinking_types import ThinkingConfig, ThinkingStyle
from thinktree.utils.errors import ConfigException


def _get_env(key: str, default: str = "") -> str:
    """Get environment variable, treating empty string as unset.

    Also checks Docker secrets path for sensitive values.
    """
    secrets_path = Path(f"/run/secrets/{key.lower()}")
    if secrets_path.is_file():
        try:
            value = secrets_path.read_text().strip()
            if value:
                return value
        except OSError as e:
            logger.warning(f"Could not read secret {secrets_path}: {e}")

    value = os.getenv(key, default)
    return value if value else default


def _get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value:
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid integer for {key}: {value}, using default {default}")
    return default


def _get_env_float(key: str, default: float) -> float:
    """Get environment variable as float."""
    value = os.getenv(key)
    if value:
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Invalid number for {key}: {value}, using default {default}")
    return default


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get environment variable as boolean."""
    value = _get_env(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


@dataclass(frozen=True)
class ServerConfig:
    """Server runtime configuration."""

    name: str = field(default_factory=lambda: _get_env("SERVER_NAME", "Thinktree"))
    transport: str = field(default_factory=lambda: _get_env("SERVER_TRANSPORT", "stdio"))
    host: str = field(default_factory=lambda: _get_env("SERVER_HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: _get_env_int("SERVER_PORT", 8000))


@dataclass(frozen=True)
class InferenceConfig:
    """Language-model endpoint and per-operation output budgets."""

    model: str = field(default_factory=lambda: _get_env("THINKTREE_MODEL", "gpt-4o-mini"))
    base_url: str = field(default_factory=lambda: _get_env("OPENAI_BASE_URL", ""))
    timeout: float = field(default_factory=lambda: _get_env_float("INFERENCE_TIMEOUT", 60.0))
    max_retries: int = field(default_factory=lambda: _get_env_int("INFERENCE_MAX_RETRIES", 3))
    temperature: float = field(
        default_factory=lambda: _get_env_float("INFERENCE_TEMPERATURE", 0.7)
    )
    expand_max_tokens: int = field(
        default_factory=lambda: _get_env_int("EXPAND_MAX_TOKENS", 1000)
    )
    critique_max_tokens: int = field(
        default_factory=lambda: _get_env_int("CRITIQUE_MAX_TOKENS", 1500)
    )
    alternatives_max_tokens: int = field(
        default_factory=lambda: _get_env_int("ALTERNATIVES_MAX_TOKENS", 2000)
    )
    synthesis_max_tokens: int = field(
        default_factory=lambda: _get_env_int("SYNTHESIS_MAX_TOKENS", 3000)
    )


@dataclass(frozen=True)
class ThinkingDefaults:
    """Defaults for fields a caller leaves out of a session config."""

    max_tokens: int = field(default_factory=lambda: _get_env_int("THINKING_MAX_TOKENS", 10000))
    max_depth: int = field(default_factory=lambda: _get_env_int("THINKING_MAX_DEPTH", 10))
    max_branches: int = field(default_factory=lambda: _get_env_int("THINKING_MAX_BRANCHES", 5))
    min_confidence_threshold: int = field(
        default_factory=lambda: _get_env_int("THINKING_MIN_CONFIDENCE", 60)
    )
    enable_self_critique: bool = field(
        default_factory=lambda: _get_env_bool("THINKING_SELF_CRITIQUE", True)
    )
    enable_parallel_exploration: bool = field(
        default_factory=lambda: _get_env_bool("THINKING_PARALLEL_EXPLORATION", True)
    )
    auto_expand: bool = field(default_factory=lambda: _get_env_bool("THINKING_AUTO_EXPAND", False))
    thinking_style: str = field(
        default_factory=lambda: _get_env("THINKING_STYLE", ThinkingStyle.THOROUGH.value)
    )

    def build(self, overrides: dict[str, Any] | None = None) -> ThinkingConfig:
        """Merge caller overrides onto these defaults.

        Args:
            overrides: Partial config supplied by the caller.

        Returns:
            A validated ThinkingConfig.

        Raises:
            ConfigException: If a field is unknown or out of range.

        """
        data: dict[str, Any] = {
            "max_tokens": self.max_tokens,
            "max_depth": self.max_depth,
            "max_branches": self.max_branches,
            "min_confidence_threshold": self.min_confidence_threshold,
            "enable_self_critique": self.enable_self_critique,
            "enable_parallel_exploration": self.enable_parallel_exploration,
            "auto_expand": self.auto_expand,
            "thinking_style": self.thinking_style,
        }
        data.update({k: v for k, v in (overrides or {}).items() if v is not None})
        return ThinkingConfig.from_dict(data)


@dataclass(frozen=True)
class StoreConfig:
    """Persistence configuration."""

    db_path: str = field(
        default_factory=lambda: _get_env("THINKTREE_DB_PATH", str(DEFAULT_DB_PATH))
    )

    def get_validated_db_path(self) -> str:
        """Validate and return the database path (CWE-22 mitigation)."""
        if self.db_path == ":memory:":
            return self.db_path

        try:
            return str(validate_db_path(self.db_path))
        except ValueError as e:
            raise ConfigException(f"Invalid THINKTREE_DB_PATH: {e}") from e


@dataclass(frozen=True)
class InputLimitsConfig:
    """Input size limits (CWE-400 mitigation)."""

    max_query_size: int = field(default_factory=lambda: _get_env_int("MAX_QUERY_SIZE", 50000))
    max_note_size: int = field(default_factory=lambda: _get_env_int("MAX_NOTE_SIZE", 5000))
    max_list_limit: int = field(default_factory=lambda: _get_env_int("MAX_LIST_LIMIT", 500))


@dataclass(frozen=True)
class Config:
    """Root configuration object."""

    server: ServerConfig = field(default_factory=ServerConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    thinking: ThinkingDefaults = field(default_factory=ThinkingDefaults)
    store: StoreConfig = field(default_factory=StoreConfig)
    input_limits: InputLimitsConfig = field(default_factory=InputLimitsConfig)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary (for logging/debugging)."""
        return {
            "server": {
                "name": self.server.name,
                "transport": self.server.transport,
                "host": self.server.host,
                "port": self.server.port,
            },
            "inference": {
                "model": self.inference.model,
                "base_url": self.inference.base_url or None,
                "timeout": self.inference.timeout,
                "max_retries": self.inference.max_retries,
            },
            "thinking": {
                "max_tokens": self.thinking.max_tokens,
                "max_depth": self.thinking.max_depth,
                "max_branches": self.thinking.max_branches,
                "auto_expand": self.thinking.auto_expand,
                "thinking_style": self.thinking.thinking_style,
            },
            "store": {"db_path": self.store.db_path},
        }


# Global config instance (lazy-loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config() -> Config:
    """Reload configuration (for testing)."""
    global _config
    _config = Config()
    return _config
