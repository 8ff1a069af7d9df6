"""Unit tests for thinktree/utils/logging.py."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from loguru import logger

from thinktree.utils.logging import (
    LogFormat,
    LogLevel,
    configure_logging,
    get_session_id,
    get_tool_name,
    log_context,
    redact_sensitive,
)


@pytest.fixture
def captured() -> Iterator[list[dict[str, Any]]]:
    """Capture serialized log records through the configured patcher."""
    configure_logging(level="DEBUG", log_format="text")
    records: list[dict[str, Any]] = []
    sink_id = logger.add(lambda message: records.append(json.loads(message)["record"]), serialize=True)
    yield records
    logger.remove(sink_id)


class TestEnums:
    """Test format and level enums."""

    def test_values(self) -> None:
        """Test enum values match environment strings."""
        assert LogFormat("json") == LogFormat.JSON
        assert LogLevel("WARNING") == LogLevel.WARNING


class TestRedactSensitive:
    """Test sensitive data redaction."""

    def test_redacts_api_key(self) -> None:
        """Test API key is redacted."""
        assert redact_sensitive({"api_key": "sk-secret-key-123"})["api_key"] == "[REDACTED]"

    def test_redacts_variants(self) -> None:
        """Test case and separators do not matter."""
        result = redact_sensitive({"Api-Key": "x", "PASSWORD": "y", "auth_token": "z"})
        assert set(result.values()) == {"[REDACTED]"}

    def test_keeps_token_counters(self) -> None:
        """Test usage counters stay readable."""
        data = {"total_tokens": 10, "max_tokens": 20, "tokens": 3}
        assert redact_sensitive(data) == data

    def test_nested(self) -> None:
        """Test nested dicts and lists of dicts are redacted."""
        result = redact_sensitive({"outer": {"secret": "s"}, "items": [{"password": "p"}, 1]})
        assert result == {"outer": {"secret": "[REDACTED]"}, "items": [{"password": "[REDACTED]"}, 1]}

    def test_depth_limit(self) -> None:
        """Test recursion stops past the depth limit."""
        deep: dict[str, Any] = {"secret": "s"}
        for _ in range(12):
            deep = {"child": deep}

        result = redact_sensitive(deep)
        for _ in range(12):
            result = result["child"]
        assert result == {"secret": "s"}


class TestLogContext:
    """Test context scoping."""

    def test_sets_and_resets(self) -> None:
        """Test values are visible only inside the block."""
        assert get_session_id() is None
        with log_context(session_id="abc", tool_name="expand_thought"):
            assert get_session_id() == "abc"
            assert get_tool_name() == "expand_thought"
        assert get_session_id() is None
        assert get_tool_name() is None

    def test_nested(self) -> None:
        """Test inner blocks restore the outer values."""
        with log_context(session_id="outer"):
            with log_context(session_id="inner"):
                assert get_session_id() == "inner"
            assert get_session_id() == "outer"

    def test_injected_into_records(self, captured: list[dict[str, Any]]) -> None:
        """Test records carry the session and tool."""
        with log_context(session_id="abc", tool_name="critique_thought"):
            logger.info("working")
        extra = captured[-1]["extra"]
        assert extra["session_id"] == "abc"
        assert extra["tool"] == "critique_thought"

    def test_extra_redacted(self, captured: list[dict[str, Any]]) -> None:
        """Test bound secrets never reach a sink."""
        logger.bind(api_key="sk-live").info("configured")
        assert captured[-1]["extra"]["api_key"] == "[REDACTED]"


class TestConfigureLogging:
    """Test configure_logging."""

    def test_invalid_level(self) -> None:
        """Test an unknown level is rejected."""
        with pytest.raises(ValueError):
            configure_logging(level="LOUD")

    def test_json_file_sink(self, tmp_path: Path) -> None:
        """Test a log file receives serialized records."""
        log_file = tmp_path / "logs" / "thinktree.log"
        configure_logging(level="INFO", log_format="json", log_file=log_file)
        logger.info("to file")
        lines = log_file.read_text().splitlines()
        configure_logging(level="INFO", log_format="text")

        assert json.loads(lines[-1])["record"]["message"] == "to file"

    def test_env_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test environment variables are honored."""
        monkeypatch.setenv("LOG_LEVEL", "warning")
        monkeypatch.setenv("LOG_FORMAT", "JSON")
        configure_logging()
        configure_logging(level="INFO", log_format="text")
