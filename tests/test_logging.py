"""Unit tests for src/utils/logging.py."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from loguru import logger

from src.utils.logging import (
    LogFormat,
    LogLevel,
    configure_from_env,
    configure_logging,
    get_session_id,
    get_timing_stats,
    log_context,
    measure_time,
    redact_sensitive,
    reset_timing_stats,
)


@pytest.fixture
def restore_logger():
    """Put loguru back to a plain stderr handler after reconfiguring."""
    yield
    logger.remove()
    logger.add(sys.stderr)


class TestEnums:
    """Test LogFormat and LogLevel."""

    def test_values(self) -> None:
        """Enum values match the env spellings."""
        assert LogFormat.JSON.value == "json"
        assert LogFormat.TEXT.value == "text"
        assert [level.value for level in LogLevel] == [
            "DEBUG",
            "INFO",
            "WARNING",
            "ERROR",
            "CRITICAL",
        ]


class TestRedactSensitive:
    """Test sensitive data redaction."""

    def test_redacts_keys(self) -> None:
        """Sensitive keys are masked regardless of case or separators."""
        result = redact_sensitive({"API-Key": "sk-1", "Password": "x", "user": "bob"})
        assert result == {"API-Key": "[REDACTED]", "Password": "[REDACTED]", "user": "bob"}

    def test_nested(self) -> None:
        """Nested dicts are redacted too."""
        result = redact_sensitive({"outer": {"auth_token": "t", "n": 1}})
        assert result == {"outer": {"auth_token": "[REDACTED]", "n": 1}}


class TestLogContext:
    """Test context scoping."""

    def test_sets_and_restores(self) -> None:
        """Values are visible inside the block and reset after."""
        assert get_session_id() is None
        with log_context(session_id="abc", step_number=2):
            assert get_session_id() == "abc"
            with log_context(session_id="inner"):
                assert get_session_id() == "inner"
            assert get_session_id() == "abc"
        assert get_session_id() is None


class TestConfigureLogging:
    """Test sink configuration."""

    def test_json_file_sink(self, tmp_path: Path, restore_logger: None) -> None:
        """JSON records carry the bound context and redacted extras."""
        log_file = tmp_path / "logs" / "stepwise.log"
        configure_logging(level="debug", log_format="json", log_file=log_file)
        with log_context(session_id="sess-1", step_number=4, operation="process_step"):
            logger.bind(api_key="secret").info("hello")
        logger.remove()

        lines = log_file.read_text().strip().splitlines()
        entry = json.loads(lines[-1])
        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["session_id"] == "sess-1"
        assert entry["step_number"] == 4
        assert entry["operation"] == "process_step"
        assert entry["extra"]["api_key"] == "[REDACTED]"

    def test_from_env(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, restore_logger: None
    ) -> None:
        """LOG_* variables drive configuration."""
        log_file = tmp_path / "env.log"
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("LOG_FORMAT", "json")
        monkeypatch.setenv("LOG_FILE", str(log_file))
        configure_from_env()
        logger.info("dropped")
        logger.warning("kept")
        logger.remove()

        messages = [json.loads(line)["message"] for line in log_file.read_text().splitlines()]
        assert messages == ["kept"]

    def test_invalid_level(self, restore_logger: None) -> None:
        """Unknown levels are rejected."""
        with pytest.raises(ValueError):
            configure_logging(level="verbose")


class TestMeasureTime:
    """Test operation timing."""

    @pytest.mark.asyncio
    async def test_records_count_and_errors(self) -> None:
        """Successful and failing blocks are both counted."""
        reset_timing_stats()
        async with measure_time("op"):
            pass
        with pytest.raises(RuntimeError):
            async with measure_time("op"):
                raise RuntimeError("x")

        stats = get_timing_stats()["op"]
        assert stats["count"] == 2
        assert stats["errors"] == 1
        assert stats["max_ms"] >= stats["avg_ms"] >= 0
