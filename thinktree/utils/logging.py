"""Structured logging utilities for Thinktree.

Provides a consistent logging setup on top of loguru with:
- Structured JSON logging for production
- Human-readable format for development
- Context injection of the active session and tool
- Log level configuration from environment
- Automatic redaction of sensitive data
"""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

_session_id: ContextVar[str | None] = ContextVar("session_id", default=None)
_tool_name: ContextVar[str | None] = ContextVar("tool_name", default=None)


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


SENSITIVE_KEYS = frozenset(
    {
        "apikey",
        "password",
        "secret",
        "token",
        "authorization",
        "credential",
        "privatekey",
    }
)

# Counters such as total_tokens are not secrets.
_SAFE_KEYS = frozenset({"totaltokens", "maxtokens", "inputtokens", "outputtokens", "tokens"})


def redact_sensitive(data: dict[str, Any], depth: int = 0) -> dict[str, Any]:
    """Recursively redact sensitive values from a dictionary.

    Args:
        data: Dictionary to redact.
        depth: Current recursion depth (prevents infinite recursion).

    Returns:
        Dictionary with sensitive values replaced with "[REDACTED]".

    """
    if depth > 10:
        return data

    result: dict[str, Any] = {}
    for key, value in data.items():
        key_norm = key.lower().replace("_", "").replace("-", "")
        if key_norm not in _SAFE_KEYS and any(s in key_norm for s in SENSITIVE_KEYS):
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = redact_sensitive(value, depth + 1)
        elif isinstance(value, list):
            result[key] = [
                redact_sensitive(item, depth + 1) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def _inject_context(record: Record) -> None:
    """Loguru patcher: copy context vars into ``extra`` and redact it."""
    extra = record["extra"]
    if (session_id := _session_id.get()) and "session_id" not in extra:
        extra["session_id"] = session_id
    if (tool_name := _tool_name.get()) and "tool" not in extra:
        extra["tool"] = tool_name
    redacted = redact_sensitive(dict(extra))
    extra.clear()
    extra.update(redacted)


def _text_format(record: Record) -> str:
    parts = []
    if session_id := record["extra"].get("session_id"):
        parts.append(f"sess={str(session_id)[:8]}")
    if tool_name := record["extra"].get("tool"):
        parts.append(f"tool={tool_name}")
    context = f"[{' '.join(parts)}] " if parts else ""
    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        f"{context}"
        "<level>{message}</level>\n{exception}"
    )


def configure_logging(
    level: LogLevel | str | None = None,
    log_format: LogFormat | str | None = None,
    log_file: str | Path | None = None,
) -> None:
    """Configure the global loguru logger.

    Reads configuration from environment variables if not specified:
    - LOG_LEVEL: Minimum log level (DEBUG, INFO, WARNING, ERROR)
    - LOG_FORMAT: Output format (json, text)
    - LOG_FILE: Optional file path for JSON log output

    Logs go to stderr so the stdio transport stays clean.

    Args:
        level: Minimum log level.
        log_format: Output format.
        log_file: Optional file path for log output.

    """
    lvl = LogLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    fmt = LogFormat((log_format or os.getenv("LOG_FORMAT", "text")).lower())
    log_file = log_file or os.getenv("LOG_FILE") or None

    logger.remove()
    logger.configure(patcher=_inject_context)

    if fmt == LogFormat.JSON:
        logger.add(sys.stderr, format="{message}", level=lvl.value, serialize=True)
    else:
        logger.add(sys.stderr, format=_text_format, level=lvl.value, colorize=True)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            format="{message}",
            level=lvl.value,
            serialize=True,
            rotation="100 MB",
            retention="7 days",
            compression="gz",
        )


@contextmanager
def log_context(
    session_id: str | None = None,
    tool_name: str | None = None,
) -> Iterator[None]:
    """Scope the session and tool attached to every log line in this block.

    Args:
        session_id: Thinking session being operated on.
        tool_name: Name of the tool being executed.

    Example:
        with log_context(session_id="abc123", tool_name="expand_thought"):
            logger.info("Expanding")  # carries session_id and tool

    """
    tokens = []
    if session_id:
        tokens.append(_session_id.set(session_id))
    if tool_name:
        tokens.append(_tool_name.set(tool_name))
    try:
        yield
    finally:
        for token in reversed(tokens):
            token.var.reset(token)


def get_session_id() -> str | None:
    """Get the current session ID from context.

    Returns:
        Current session ID or None if not set.

    """
    return _session_id.get()


def get_tool_name() -> str | None:
    """Get the current tool name from context."""
    return _tool_name.get()
