"""Stepwise MCP Server.

FastMCP 2.0 implementation of a stepwise reasoning tracker. The calling
agent does the reasoning; the server records each step, scores confidence,
suggests backtracking, learns tool chains and optionally tracks a
dependency graph of steps.

Tools:
1. process_step - Submit one reasoning step
2. session_status - Session frontier or server-wide status
3. clear_session - Drop a session's in-memory and stored history

Run with: stepwise-mcp
Or: python -m src.server
"""

# Note: We intentionally do NOT use `from __future__ import annotations` here
# because it causes issues with Pydantic/FastMCP type resolution at decorator time.

import asyncio
import os
import sqlite3
import sys
from datetime import timedelta
from typing import Any

import orjson
from dotenv import load_dotenv
from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError
from loguru import logger

from src.config import Config, get_config
from src.tools.orchestrator import ReasoningOrchestrator, build_error_result
from src.tools.persistence import SqliteStepStore, StepStore
from src.tools.step_schema import validate_step_input
from src.tools.tool_capabilities import ToolCatalog, ToolInfo
from src.utils.circuit_breaker import CircuitBreaker
from src.utils.errors import (
    ConfigurationError,
    PersistenceError,
    ToolExecutionError,
    ValidationError,
)
from src.utils.logging import configure_from_env, get_timing_stats, log_metrics
from src.utils.session import AsyncSessionManager, SessionLocks

# Load environment variables from .env file (for local development)
load_dotenv()

SERVER_VERSION = "0.1.0"
DEFAULT_SESSION_ID = "default"


def _get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value:
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid integer for {key}: {value}, using default {default}")
    return default


def _json(data: dict[str, Any] | None, *, indent: bool = True) -> str:
    """Serialize data to JSON string with proper typing.

    Type-safe wrapper around orjson.dumps that returns str.
    """
    if data is None:
        data = {}
    opts = orjson.OPT_INDENT_2 if indent else 0
    result: bytes = orjson.dumps(data, option=opts, default=str)
    return result.decode("utf-8")


CLEANUP_INTERVAL_SECONDS = max(1, _get_env_int("CLEANUP_INTERVAL_SECONDS", 300))

# Always in the tool catalog, ahead of any tool a step names
SERVER_TOOLS: tuple[ToolInfo, ...] = (
    ToolInfo(
        name="process_step",
        description="Record one reasoning step, score its confidence and suggest backtracking",
    ),
    ToolInfo(
        name="session_status",
        description="Get a session's ready steps, parallel groups and stats, or server status",
    ),
    ToolInfo(
        name="clear_session",
        description="Remove a session's history and delete its stored steps",
    ),
)


# =============================================================================
# Session Registry
# =============================================================================


class OrchestratorRegistry(AsyncSessionManager[ReasoningOrchestrator]):
    """Per-session orchestrators sharing the store, breaker, lock table and tool catalog."""

    def __init__(self, config: Config, store: StepStore | None = None) -> None:
        super().__init__()
        self.config = config
        self.store = store
        self.locks = SessionLocks()
        self.persistence_breaker = CircuitBreaker(config.persistence_breaker)
        self.tool_catalog = ToolCatalog(SERVER_TOOLS)
        # Sessions being rehydrated; later callers for the same id await the future
        self._pending: dict[str, asyncio.Future[ReasoningOrchestrator]] = {}

    async def get_or_create(self, session_id: str) -> ReasoningOrchestrator:
        """Return the session's orchestrator, rehydrating it from the store on first use.

        The registry lock is only held for lookups and inserts. Rehydration runs
        outside it, so a slow store delays only the session being loaded. The
        orchestrator is published once rehydration ends, so no step for that
        session can run against a half-loaded history.
        """
        async with self.locked() as sessions:
            orchestrator = sessions.get(session_id)
            if orchestrator is not None:
                return orchestrator
            pending = self._pending.get(session_id)
            if pending is None:
                pending = asyncio.get_running_loop().create_future()
                self._pending[session_id] = pending
                owner = True
            else:
                owner = False

        if not owner:
            return await asyncio.shield(pending)

        try:
            orchestrator = ReasoningOrchestrator(
                session_id,
                config=self.config,
                store=self.store,
                persistence_breaker=self.persistence_breaker,
                locks=self.locks,
                tool_catalog=self.tool_catalog,
            )
            await orchestrator.initialize()
        except asyncio.CancelledError:
            self._pending.pop(session_id, None)
            pending.cancel()
            raise
        except Exception as e:
            self._pending.pop(session_id, None)
            pending.set_exception(e)
            # Retrieved here so a future nobody awaited does not warn on collection
            pending.exception()
            raise

        async with self.locked() as sessions:
            sessions[session_id] = orchestrator
            self._pending.pop(session_id, None)
        pending.set_result(orchestrator)
        logger.info(f"Session created: {session_id}")
        return orchestrator

    async def find(self, session_id: str) -> ReasoningOrchestrator | None:
        """Return the session's orchestrator if it is loaded or loading, never creating one."""
        async with self.locked() as sessions:
            orchestrator = sessions.get(session_id)
            pending = self._pending.get(session_id)
        if orchestrator is None and pending is not None:
            return await asyncio.shield(pending)
        return orchestrator

    async def clear_stored(self, session_id: str) -> None:
        """Delete stored steps for a session that is not loaded in memory.

        Raises:
            CircuitBreakerOpenError: If the persistence breaker is open.
            PersistenceError: If the store cannot delete the rows.

        """
        if self.store is None:
            return
        store = self.store
        async with self.locks.hold(session_id):
            await self.persistence_breaker.execute(lambda: store.clear_history(session_id))

    @property
    def pending_count(self) -> int:
        """Sessions currently rehydrating."""
        return len(self._pending)

    def close(self) -> None:
        if self.store is not None:
            self.store.close()
            self.store = None


def _create_store(config: Config) -> StepStore | None:
    """Open the configured SQLite store, or None when persistence is off or unavailable."""
    if not config.runtime.enable_persistence:
        logger.info("Persistence disabled")
        return None
    try:
        return SqliteStepStore(config.runtime.db_path)
    except (ConfigurationError, PersistenceError, sqlite3.Error) as e:
        logger.error(f"Persistence unavailable, continuing without a store: {e}")
        return None


_registry: OrchestratorRegistry | None = None


def get_registry() -> OrchestratorRegistry:
    """Get or create the global registry."""
    global _registry
    if _registry is None:
        config = get_config()
        _registry = OrchestratorRegistry(config, _create_store(config))
    return _registry


def init_registry(
    config: Config | None = None, store: StepStore | None = None
) -> OrchestratorRegistry:
    """Replace the global registry (startup and tests)."""
    global _registry
    if _registry is not None:
        _registry.close()
    _registry = OrchestratorRegistry(config or get_config(), store)
    return _registry


def reset_registry() -> None:
    """Close and forget the global registry (for testing)."""
    global _registry
    if _registry is not None:
        _registry.close()
    _registry = None


# =============================================================================
# Automatic Session Cleanup
# =============================================================================

_cleanup_task: asyncio.Task[None] | None = None


async def cleanup_stale_sessions(registry: OrchestratorRegistry) -> list[str]:
    """Remove idle sessions past the configured age, skipping ones with work queued."""
    max_age = timedelta(minutes=registry.config.runtime.session_max_age_minutes)
    return await registry.cleanup_stale(max_age, predicate=lambda o: not o.is_busy)


async def _cleanup_loop() -> None:
    """Background task to clean up stale sessions."""
    logger.info(
        f"Session cleanup task started (max_age={get_config().runtime.session_max_age_minutes}m, "
        f"interval={CLEANUP_INTERVAL_SECONDS}s)"
    )

    while True:
        try:
            await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
            removed = await cleanup_stale_sessions(get_registry())
            if removed:
                logger.info(f"Cleaned up {len(removed)} stale sessions: {removed}")
            log_metrics()
        except asyncio.CancelledError:
            logger.info("Session cleanup task cancelled")
            break
        except Exception as e:
            logger.error(f"Error in cleanup task: {e}")


def _start_cleanup_task() -> None:
    """Start the background cleanup task if not already running."""
    global _cleanup_task
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("No event loop available, cleanup task will start with first tool call")
        return
    if _cleanup_task is None or _cleanup_task.done():
        _cleanup_task = loop.create_task(_cleanup_loop())
        logger.debug("Cleanup task scheduled")


def _stop_cleanup_task() -> None:
    """Stop the background cleanup task."""
    global _cleanup_task
    if _cleanup_task is not None and not _cleanup_task.done():
        _cleanup_task.cancel()
        logger.debug("Cleanup task stopped")
    _cleanup_task = None


# =============================================================================
# Initialize FastMCP Server
# =============================================================================

mcp = FastMCP(
    name=os.getenv("SERVER_NAME") or "Stepwise-MCP",
    instructions="""Stepwise MCP Server - tracks step-by-step reasoning.

You (the agent) do the reasoning. The server records each step, scores it,
and advises.

1. process_step(step_number, total_steps, content, next_step_needed, ...)
   - Optional: confidence (0-1). If omitted, the server scores the step.
   - Revisions: is_revision=true, revises_step=N
   - Branches: branch_from_step=N, branch_id="alt-a"
   - current_step: {step_description, recommended_tools: [{tool_name,
     confidence, rationale, priority}], expected_outcome}
   Returns the structured result. With backtracking enabled, a low
   confidence step returns backtracking_suggested=true and the step to
   resume from instead of being recorded.
   Rejected or failed steps come back as errors whose text is a JSON
   payload (status "failed", is_error true).

2. session_status(session_id?) - Session frontier (ready steps, parallel
   groups, confidence and tool-chain stats) or server status.

3. clear_session(session_id) - Forget a session, including stored steps.
""",
)


# =============================================================================
# TOOL 1: PROCESS_STEP
# =============================================================================


@mcp.tool
async def process_step(
    step_number: int,
    total_steps: int,
    content: str,
    next_step_needed: bool,
    is_revision: bool = False,
    revises_step: int | None = None,
    branch_from_step: int | None = None,
    branch_id: str | None = None,
    needs_more_steps: bool = False,
    current_step: dict[str, Any] | None = None,
    previous_recommendations: list[dict[str, Any]] | None = None,
    remaining_steps: list[str] | None = None,
    available_tools: list[str] | None = None,
    confidence: float | None = None,
    session_id: str = DEFAULT_SESSION_ID,
    ctx: Context | None = None,
) -> str:
    """Record one reasoning step and get feedback on it.

    Args:
        step_number: 1-based index of this step
        total_steps: Current estimate of total steps (raised if exceeded)
        content: The reasoning for this step
        next_step_needed: False on the final step
        is_revision: True when this step revises an earlier one
        revises_step: Step being revised (required with is_revision)
        branch_from_step: Step this branch departs from
        branch_id: Name of the branch (required with branch_from_step)
        needs_more_steps: Set when the estimate turned out too small
        current_step: Recommended tools for this step
        previous_recommendations: Recommendations carried from earlier steps
        remaining_steps: Planned future steps (free text)
        available_tools: Tool names the agent can use
        confidence: Self-reported confidence in [0, 1]
        session_id: Session to record into

    Returns:
        JSON with the structured step result or a backtrack suggestion

    Raises:
        ToolError: With the JSON error payload when the step is rejected or fails

    """
    _start_cleanup_task()
    arguments: dict[str, Any] = {
        "step_number": step_number,
        "total_steps": total_steps,
        "content": content,
        "next_step_needed": next_step_needed,
        "is_revision": is_revision,
        "revises_step": revises_step,
        "branch_from_step": branch_from_step,
        "branch_id": branch_id,
        "needs_more_steps": needs_more_steps,
        "current_step": current_step,
        "previous_recommendations": previous_recommendations or [],
        "remaining_steps": remaining_steps,
        "available_tools": available_tools,
        "confidence": confidence,
    }
    try:
        step = validate_step_input(arguments)
    except ValidationError as e:
        failed = build_error_result("process_step", e, step_number=step_number, branch_id=branch_id)
        failed.structured["issues"] = e.issues
        if ctx:
            await ctx.warning(f"Step rejected: {e}")
        raise ToolError(_json(failed.structured, indent=False)) from e

    try:
        orchestrator = await get_registry().get_or_create(session_id)
    except Exception as e:
        error = ToolExecutionError("process_step", str(e), {"session_id": session_id})
        logger.error(f"Session setup failed: {e}")
        raise ToolError(_json(error.to_dict(), indent=False)) from e

    result = await orchestrator.process_step(step)

    if result.is_error:
        if ctx:
            await ctx.error(result.summary)
        # Sets the MCP isError flag; the text is still the JSON payload
        raise ToolError(_json(result.structured, indent=False))

    if ctx:
        if result.structured.get("backtracking_suggested"):
            await ctx.warning(result.summary)
        else:
            await ctx.info(f"Step {step.step_number} recorded")

    return _json(result.structured)


# =============================================================================
# TOOL 2: SESSION_STATUS
# =============================================================================


@mcp.tool
async def session_status(
    session_id: str | None = None,
    ctx: Context | None = None,
) -> str:
    """Get server status or a specific session's status.

    Args:
        session_id: Optional session ID to get specific session status

    Returns:
        JSON with server info and session counts, or the session's state

    """
    try:
        registry = get_registry()

        if session_id:
            if not await registry.session_exists(session_id):
                return _json({"error": f"Session not found: {session_id}"}, indent=False)
            orchestrator = await registry.get_session(session_id)
            return _json(orchestrator.get_status())

        sessions = registry.get_all_sessions_snapshot()
        status_result: dict[str, Any] = {
            "server": {
                "name": mcp.name,
                "version": SERVER_VERSION,
                "tools": [tool.name for tool in SERVER_TOOLS],
            },
            "config": registry.config.to_dict(),
            "sessions": {
                "total": len(sessions),
                "busy": sum(1 for o in sessions.values() if o.is_busy),
                "ids": sorted(sessions),
            },
            "persistence": {
                "enabled": registry.store is not None,
                "breaker": registry.persistence_breaker.get_stats(),
            },
            "dag_breakers": {
                sid: o.dag_breaker.get_stats()
                for sid, o in sessions.items()
                if registry.config.runtime.enable_dag
            },
            "tools": registry.tool_catalog.get_stats(),
            "timings": get_timing_stats(),
            "cleanup": {
                "max_age_minutes": registry.config.runtime.session_max_age_minutes,
                "interval_seconds": CLEANUP_INTERVAL_SECONDS,
                "task_running": _cleanup_task is not None and not _cleanup_task.done(),
            },
        }

        if ctx:
            await ctx.info(f"{len(sessions)} active session(s)")

        return _json(status_result)

    except Exception as e:
        error = ToolExecutionError("session_status", str(e))
        logger.error(f"Status check failed: {e}")
        return _json(error.to_dict(), indent=False)


# =============================================================================
# TOOL 3: CLEAR_SESSION
# =============================================================================


@mcp.tool
async def clear_session(
    session_id: str = DEFAULT_SESSION_ID,
    ctx: Context | None = None,
) -> str:
    """Clear a session's history, branches, graph and learned chains.

    Stored steps for the session are deleted too.

    Args:
        session_id: Session to clear

    Returns:
        JSON confirming the clear, or an error payload

    """
    try:
        registry = get_registry()
        orchestrator = await registry.find(session_id)
        if orchestrator is not None:
            await orchestrator.clear_history()
            await registry.remove_session(session_id)
        else:
            await registry.clear_stored(session_id)

        if ctx:
            await ctx.info(f"Session cleared: {session_id}")

        return _json({"session_id": session_id, "cleared": True}, indent=False)

    except Exception as e:
        error = ToolExecutionError("clear_session", str(e), {"session_id": session_id})
        logger.error(f"Clear session failed: {e}")
        return _json(error.to_dict(), indent=False)


# =============================================================================
# Main Entry Point
# =============================================================================


def main() -> None:
    """Run the Stepwise MCP server."""
    configure_from_env()

    try:
        config = get_config()
    except ConfigurationError as e:
        logger.critical(f"Invalid configuration: {e}")
        sys.exit(1)

    transport = config.server.transport
    logger.info(f"Starting {mcp.name} v{SERVER_VERSION} (transport: {transport})")
    logger.info(f"Configuration: {config.to_dict()}")

    init_registry(config, _create_store(config))

    try:
        if transport == "stdio":
            mcp.run(transport="stdio")
        elif transport == "http":
            mcp.run(transport="streamable-http", host=config.server.host, port=config.server.port)
        elif transport == "sse":
            mcp.run(transport="sse", host=config.server.host, port=config.server.port)
        else:
            logger.warning(f"Unknown transport '{transport}', falling back to stdio")
            mcp.run(transport="stdio")
    finally:
        _stop_cleanup_task()
        log_metrics()
        reset_registry()


if __name__ == "__main__":
    main()
