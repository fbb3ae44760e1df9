"""Unit tests for src/config.py."""

from __future__ import annotations

import pytest

from src.config import (
    BacktrackingConfig,
    Config,
    RuntimeConfig,
    ToolChainConfig,
    get_config,
    reload_config,
)
from src.utils.errors import ConfigurationError


class TestRuntimeConfig:
    """Test runtime switches."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Unset variables give the documented defaults."""
        for key in ("MAX_HISTORY_SIZE", "ENABLE_PERSISTENCE", "DB_PATH", "ENABLE_DAG"):
            monkeypatch.delenv(key, raising=False)
        runtime = RuntimeConfig()
        assert runtime.max_history_size == 1000
        assert runtime.enable_persistence is True
        assert runtime.db_path == "stepwise.db"
        assert runtime.enable_dag is False
        assert runtime.enable_tool_chains is True
        assert runtime.session_max_age_minutes == 60

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Variables are parsed into typed fields."""
        monkeypatch.setenv("MAX_HISTORY_SIZE", "25")
        monkeypatch.setenv("ENABLE_DAG", "yes")
        monkeypatch.setenv("ENABLE_TOOL_CHAINS", "0")
        runtime = RuntimeConfig()
        assert runtime.max_history_size == 25
        assert runtime.enable_dag is True
        assert runtime.enable_tool_chains is False

    def test_unparseable_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Garbage integers fall back to the default."""
        monkeypatch.setenv("MAX_HISTORY_SIZE", "lots")
        assert RuntimeConfig().max_history_size == 1000

    def test_env_floor(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Env-loaded history size is floored at 1."""
        monkeypatch.setenv("MAX_HISTORY_SIZE", "0")
        assert RuntimeConfig().max_history_size == 1

    def test_programmatic_validation(self) -> None:
        """Explicit out-of-range values raise."""
        with pytest.raises(ConfigurationError):
            RuntimeConfig(max_history_size=0)
        with pytest.raises(ConfigurationError):
            RuntimeConfig(session_max_age_minutes=0)


class TestBacktrackingConfig:
    """Test scoring weights."""

    def test_defaults(self) -> None:
        """Defaults match the documented weights."""
        cfg = BacktrackingConfig()
        assert cfg.min_confidence == 0.3
        assert cfg.enable_auto_backtrack is False
        assert cfg.max_backtrack_depth == 5
        assert cfg.base_confidence == 0.5
        assert cfg.tool_confidence_weight == 0.3
        assert cfg.revision_penalty == 0.1
        assert cfg.branch_bonus == 0.05
        assert cfg.progress_bonus == 0.2
        assert cfg.progress_threshold == 0.8
        assert cfg.declining_confidence_threshold == 0.5

    def test_from_env_clamps(self) -> None:
        """Out-of-range env values are clamped, not rejected."""
        cfg = BacktrackingConfig.from_env(
            {"MIN_CONFIDENCE": "1.7", "MAX_BACKTRACK_DEPTH": "-3", "BRANCH_BONUS": "-0.2"}
        )
        assert cfg.min_confidence == 1.0
        assert cfg.max_backtrack_depth == 1
        assert cfg.branch_bonus == 0.0

    def test_from_env_rejects_nan(self) -> None:
        """Non-finite numbers fall back to the default."""
        assert BacktrackingConfig.from_env({"BASE_CONFIDENCE": "nan"}).base_confidence == 0.5

    def test_from_env_flag(self) -> None:
        """ENABLE_BACKTRACKING turns auto-backtrack on."""
        assert BacktrackingConfig.from_env({"ENABLE_BACKTRACKING": "true"}).enable_auto_backtrack

    def test_weights_independent(self) -> None:
        """Changing one weight leaves the others alone."""
        cfg = BacktrackingConfig.from_env({"REVISION_PENALTY": "0.25"})
        assert cfg.revision_penalty == 0.25
        assert cfg.branch_bonus == 0.05
        assert cfg.min_confidence == 0.3

    @pytest.mark.parametrize(
        "kwargs",
        [{"min_confidence": 1.5}, {"progress_bonus": -0.1}, {"max_backtrack_depth": 0}],
    )
    def test_programmatic_validation(self, kwargs: dict[str, float]) -> None:
        """Explicit out-of-range values raise."""
        with pytest.raises(ConfigurationError):
            BacktrackingConfig(**kwargs)  # type: ignore[arg-type]


class TestToolChainConfig:
    """Test tool-chain weights."""

    def test_from_env(self) -> None:
        """TOOL_CHAIN_* variables are read and clamped."""
        cfg = ToolChainConfig.from_env(
            {
                "TOOL_CHAIN_PREFIX_MATCH_WEIGHT": "20",
                "TOOL_CHAIN_RECENT_USE_DAYS_THRESHOLD": "0",
                "TOOL_CHAIN_CONFIDENCE_WEIGHT": "2",
            }
        )
        assert cfg.prefix_match_weight == 20.0
        assert cfg.recent_use_days_threshold == 1
        assert cfg.confidence_weight == 1.0
        assert cfg.keyword_match_weight == 5.0

    def test_programmatic_validation(self) -> None:
        """Negative weights raise."""
        with pytest.raises(ConfigurationError):
            ToolChainConfig(prefix_match_weight=-1.0)
        with pytest.raises(ConfigurationError):
            ToolChainConfig(recent_use_days_threshold=0)


class TestConfig:
    """Test the root config."""

    def test_breakers_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Breaker settings are read with their own prefixes."""
        monkeypatch.setenv("PERSISTENCE_BREAKER_FAILURE_THRESHOLD", "7")
        monkeypatch.setenv("DAG_BREAKER_RESET_TIMEOUT", "9.5")
        config = Config()
        assert config.persistence_breaker.failure_threshold == 7
        assert config.persistence_breaker.call_timeout == 10.0
        assert config.dag_breaker.reset_timeout == 9.5
        assert config.dag_breaker.call_timeout is None

    def test_to_dict_hides_disabled_db(self) -> None:
        """The db path is reported as disabled when persistence is off."""
        data = Config().to_dict()
        assert data["runtime"]["db_path"] == "disabled"
        assert set(data) == {"server", "runtime", "backtracking"}

    def test_reload(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """reload_config picks up new environment values."""
        monkeypatch.setenv("MAX_HISTORY_SIZE", "11")
        reloaded = reload_config()
        assert get_config() is reloaded
        assert reloaded.runtime.max_history_size == 11
        monkeypatch.delenv("MAX_HISTORY_SIZE")
        reload_config()
