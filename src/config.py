"""Stepwise MCP Configuration.

Centralized configuration management with environment variable support.
Env-loaded scoring values are sanitized (clamped) with a warning; config
objects built directly in code are validated and raise ConfigurationError.

Usage:
    from src.config import get_config
    print(get_config().runtime.max_history_size)
"""

from __future__ import annotations

import math
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any

from loguru import logger

from src.utils.circuit_breaker import CircuitBreakerConfig
from src.utils.errors import ConfigurationError

Env = Mapping[str, str]


def _get_env(key: str, default: str = "", env: Env | None = None) -> str:
    """Get environment variable, treating empty string as unset."""
    value = (os.environ if env is None else env).get(key, default)
    return value if value else default


def _get_env_int(key: str, default: int, env: Env | None = None) -> int:
    """Get environment variable as integer."""
    value = _get_env(key, "", env)
    if value:
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid integer for {key}: {value}, using default {default}")
    return default


def _get_env_float(key: str, default: float, env: Env | None = None) -> float:
    """Get environment variable as float (rejects nan/inf)."""
    value = _get_env(key, "", env)
    if value:
        try:
            parsed = float(value)
        except ValueError:
            parsed = math.nan
        if math.isfinite(parsed):
            return parsed
        logger.warning(f"Invalid number for {key}: {value}, using default {default}")
    return default


def _get_env_bool(key: str, default: bool = False, env: Env | None = None) -> bool:
    """Get environment variable as boolean."""
    value = _get_env(key, "", env).lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


def _clamp(name: str, value: float, low: float, high: float = math.inf) -> float:
    clamped = min(max(value, low), high)
    if clamped != value:
        logger.warning(f"Config {name}={value} out of range, clamped to {clamped}")
    return clamped


def _require_unit(owner: str, name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ConfigurationError(f"{owner}.{name} must be within [0, 1], got {value}")


@dataclass(frozen=True)
class ServerConfig:
    """Server runtime configuration."""

    name: str = field(default_factory=lambda: _get_env("SERVER_NAME", "Stepwise-MCP"))
    transport: str = field(default_factory=lambda: _get_env("SERVER_TRANSPORT", "stdio"))
    host: str = field(default_factory=lambda: _get_env("SERVER_HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: _get_env_int("SERVER_PORT", 8000))


@dataclass(frozen=True)
class RuntimeConfig:
    """Feature switches and resource bounds for the reasoning pipeline."""

    max_history_size: int = field(
        default_factory=lambda: max(1, _get_env_int("MAX_HISTORY_SIZE", 1000))
    )
    enable_persistence: bool = field(
        default_factory=lambda: _get_env_bool("ENABLE_PERSISTENCE", True)
    )
    db_path: str = field(default_factory=lambda: _get_env("DB_PATH", "stepwise.db"))
    enable_dag: bool = field(default_factory=lambda: _get_env_bool("ENABLE_DAG", False))
    enable_tool_chains: bool = field(
        default_factory=lambda: _get_env_bool("ENABLE_TOOL_CHAINS", True)
    )
    session_max_age_minutes: int = field(
        default_factory=lambda: max(1, _get_env_int("SESSION_MAX_AGE_MINUTES", 60))
    )

    def __post_init__(self) -> None:
        if self.max_history_size < 1:
            raise ConfigurationError(
                f"RuntimeConfig.max_history_size must be >= 1, got {self.max_history_size}"
            )
        if self.session_max_age_minutes < 1:
            raise ConfigurationError(
                "RuntimeConfig.session_max_age_minutes must be >= 1, "
                f"got {self.session_max_age_minutes}"
            )


@dataclass(frozen=True)
class BacktrackingConfig:
    """Confidence scoring weights and backtracking thresholds.

    All weights are independent; none is derived from another.
    """

    min_confidence: float = 0.3
    enable_auto_backtrack: bool = False
    max_backtrack_depth: int = 5
    base_confidence: float = 0.5
    tool_confidence_weight: float = 0.3
    revision_penalty: float = 0.1
    branch_bonus: float = 0.05
    progress_bonus: float = 0.2
    progress_threshold: float = 0.8
    declining_confidence_threshold: float = 0.5

    def __post_init__(self) -> None:
        for f in fields(self):
            if f.name in ("enable_auto_backtrack", "max_backtrack_depth"):
                continue
            _require_unit("BacktrackingConfig", f.name, getattr(self, f.name))
        if self.max_backtrack_depth < 1:
            raise ConfigurationError(
                f"BacktrackingConfig.max_backtrack_depth must be >= 1, got {self.max_backtrack_depth}"
            )

    @classmethod
    def from_env(cls, env: Env | None = None) -> BacktrackingConfig:
        """Load from environment, clamping out-of-range values."""
        d = cls.__dataclass_fields__

        def unit(key: str, name: str) -> float:
            return _clamp(name, _get_env_float(key, d[name].default, env), 0.0, 1.0)

        return cls(
            min_confidence=unit("MIN_CONFIDENCE", "min_confidence"),
            enable_auto_backtrack=_get_env_bool(
                "ENABLE_BACKTRACKING", d["enable_auto_backtrack"].default, env
            ),
            max_backtrack_depth=int(
                _clamp(
                    "max_backtrack_depth",
                    _get_env_int("MAX_BACKTRACK_DEPTH", d["max_backtrack_depth"].default, env),
                    1,
                )
            ),
            base_confidence=unit("BASE_CONFIDENCE", "base_confidence"),
            tool_confidence_weight=unit("TOOL_CONFIDENCE_WEIGHT", "tool_confidence_weight"),
            revision_penalty=unit("REVISION_PENALTY", "revision_penalty"),
            branch_bonus=unit("BRANCH_BONUS", "branch_bonus"),
            progress_bonus=unit("PROGRESS_BONUS", "progress_bonus"),
            progress_threshold=unit("PROGRESS_THRESHOLD", "progress_threshold"),
            declining_confidence_threshold=unit(
                "DECLINING_CONFIDENCE_THRESHOLD", "declining_confidence_threshold"
            ),
        )


@dataclass(frozen=True)
class ToolChainConfig:
    """Scoring weights for tool-chain matching and learning."""

    prefix_match_weight: float = 10.0
    keyword_match_weight: float = 5.0
    high_success_bonus: float = 5.0
    recent_use_bonus: float = 3.0
    recent_use_days_threshold: int = 7
    high_success_rate_threshold: float = 0.8
    confidence_weight: float = 0.3  # weight of the newest value in the rolling average

    def __post_init__(self) -> None:
        for name in (
            "prefix_match_weight",
            "keyword_match_weight",
            "high_success_bonus",
            "recent_use_bonus",
        ):
            if getattr(self, name) < 0:
                raise ConfigurationError(
                    f"ToolChainConfig.{name} must be >= 0, got {getattr(self, name)}"
                )
        if self.recent_use_days_threshold < 1:
            raise ConfigurationError(
                "ToolChainConfig.recent_use_days_threshold must be >= 1, "
                f"got {self.recent_use_days_threshold}"
            )
        _require_unit("ToolChainConfig", "high_success_rate_threshold", self.high_success_rate_threshold)
        _require_unit("ToolChainConfig", "confidence_weight", self.confidence_weight)

    @classmethod
    def from_env(cls, env: Env | None = None) -> ToolChainConfig:
        """Load from environment, clamping out-of-range values."""
        d = cls.__dataclass_fields__

        def weight(key: str, name: str) -> float:
            return _clamp(name, _get_env_float(key, d[name].default, env), 0.0)

        def unit(key: str, name: str) -> float:
            return _clamp(name, _get_env_float(key, d[name].default, env), 0.0, 1.0)

        return cls(
            prefix_match_weight=weight("TOOL_CHAIN_PREFIX_MATCH_WEIGHT", "prefix_match_weight"),
            keyword_match_weight=weight("TOOL_CHAIN_KEYWORD_MATCH_WEIGHT", "keyword_match_weight"),
            high_success_bonus=weight("TOOL_CHAIN_HIGH_SUCCESS_BONUS", "high_success_bonus"),
            recent_use_bonus=weight("TOOL_CHAIN_RECENT_USE_BONUS", "recent_use_bonus"),
            recent_use_days_threshold=int(
                _clamp(
                    "recent_use_days_threshold",
                    _get_env_float(
                        "TOOL_CHAIN_RECENT_USE_DAYS_THRESHOLD",
                        d["recent_use_days_threshold"].default,
                        env,
                    ),
                    1,
                )
            ),
            high_success_rate_threshold=unit(
                "TOOL_CHAIN_HIGH_SUCCESS_RATE_THRESHOLD", "high_success_rate_threshold"
            ),
            confidence_weight=unit("TOOL_CHAIN_CONFIDENCE_WEIGHT", "confidence_weight"),
        )


def _breaker_from_env(
    prefix: str,
    name: str,
    *,
    failure_threshold: int,
    reset_timeout: float,
    call_timeout: float | None,
    env: Env | None = None,
) -> CircuitBreakerConfig:
    timeout = _get_env_float(f"{prefix}_CALL_TIMEOUT", call_timeout or 0.0, env)
    return CircuitBreakerConfig(
        name=name,
        failure_threshold=max(1, _get_env_int(f"{prefix}_FAILURE_THRESHOLD", failure_threshold, env)),
        reset_timeout=max(0.0, _get_env_float(f"{prefix}_RESET_TIMEOUT", reset_timeout, env)),
        half_open_success_threshold=max(1, _get_env_int(f"{prefix}_HALF_OPEN_SUCCESSES", 1, env)),
        call_timeout=timeout if timeout > 0 else None,
    )


def _persistence_breaker() -> CircuitBreakerConfig:
    return _breaker_from_env(
        "PERSISTENCE_BREAKER",
        "persistence",
        failure_threshold=3,
        reset_timeout=5.0,
        call_timeout=10.0,
    )


def _dag_breaker() -> CircuitBreakerConfig:
    return _breaker_from_env(
        "DAG_BREAKER", "dag", failure_threshold=3, reset_timeout=2.0, call_timeout=None
    )


@dataclass(frozen=True)
class Config:
    """Root configuration object."""

    server: ServerConfig = field(default_factory=ServerConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    backtracking: BacktrackingConfig = field(default_factory=BacktrackingConfig.from_env)
    tool_chains: ToolChainConfig = field(default_factory=ToolChainConfig.from_env)
    persistence_breaker: CircuitBreakerConfig = field(default_factory=_persistence_breaker)
    dag_breaker: CircuitBreakerConfig = field(default_factory=_dag_breaker)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary (for logging/status)."""
        return {
            "server": {
                "name": self.server.name,
                "transport": self.server.transport,
                "host": self.server.host,
                "port": self.server.port,
            },
            "runtime": {
                "max_history_size": self.runtime.max_history_size,
                "enable_persistence": self.runtime.enable_persistence,
                "db_path": self.runtime.db_path if self.runtime.enable_persistence else "disabled",
                "enable_dag": self.runtime.enable_dag,
                "enable_tool_chains": self.runtime.enable_tool_chains,
            },
            "backtracking": {
                "enable_auto_backtrack": self.backtracking.enable_auto_backtrack,
                "min_confidence": self.backtracking.min_confidence,
                "max_backtrack_depth": self.backtracking.max_backtrack_depth,
            },
        }


_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance (loaded on first use)."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config() -> Config:
    """Reload configuration from the current environment (for testing)."""
    global _config
    _config = Config()
    return _config
