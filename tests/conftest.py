"""pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

import pytest
from loguru import logger

from src.config import (
    BacktrackingConfig,
    Config,
    RuntimeConfig,
    ServerConfig,
    ToolChainConfig,
)
from src.tools.step_types import Step, StepRecommendation, ToolRecommendation
from src.utils.circuit_breaker import CircuitBreakerConfig
from src.utils.logging import reset_timing_stats


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep tests off the developer's database and timing counters."""
    monkeypatch.setenv("ENABLE_PERSISTENCE", "false")
    monkeypatch.setenv("DB_PATH", ":memory:")
    reset_timing_stats()
    yield
    reset_timing_stats()


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Collect loguru messages emitted during the test."""
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)


def build_config(
    *,
    backtracking: BacktrackingConfig | None = None,
    tool_chains: ToolChainConfig | None = None,
    persistence_breaker: CircuitBreakerConfig | None = None,
    dag_breaker: CircuitBreakerConfig | None = None,
    **runtime: Any,
) -> Config:
    """Config with explicit values only, independent of the process environment."""
    runtime_values: dict[str, Any] = {
        "max_history_size": 1000,
        "enable_persistence": False,
        "db_path": ":memory:",
        "enable_dag": False,
        "enable_tool_chains": True,
        "session_max_age_minutes": 60,
    }
    runtime_values.update(runtime)
    return Config(
        server=ServerConfig(name="Stepwise-Test", transport="stdio", host="127.0.0.1", port=8000),
        runtime=RuntimeConfig(**runtime_values),
        backtracking=backtracking or BacktrackingConfig(),
        tool_chains=tool_chains or ToolChainConfig(),
        persistence_breaker=persistence_breaker
        or CircuitBreakerConfig(name="persistence", failure_threshold=3, reset_timeout=5.0),
        dag_breaker=dag_breaker
        or CircuitBreakerConfig(name="dag", failure_threshold=3, reset_timeout=2.0),
    )


@pytest.fixture
def make_config() -> Callable[..., Config]:
    return build_config


def make_step(step_number: int, total_steps: int = 5, **kwargs: Any) -> Step:
    """Step with sensible defaults for tests."""
    kwargs.setdefault("content", f"Reasoning for step {step_number}")
    return Step(step_number=step_number, total_steps=total_steps, **kwargs)


def make_recommendation(*tools: str, confidence: float = 0.8) -> StepRecommendation:
    """Recommendation listing ``tools`` in order, each at ``confidence``."""
    return StepRecommendation(
        step_description=f"Use {', '.join(tools) or 'nothing'}",
        recommended_tools=[
            ToolRecommendation(tool_name=name, confidence=confidence, rationale=f"{name} helps")
            for name in tools
        ],
        expected_outcome="Progress",
    )
