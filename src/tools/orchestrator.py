"""Per-session reasoning orchestrator.

Runs the step pipeline for one session while holding that session's lock,
so step N's side effects are complete before step N+1 starts:

    prepare -> backtrack check -> record recommendation -> catalog tools
    -> graph update -> history / branches -> persist -> render
    -> stats and suggestions -> finalize tool chain (last step only)

Graph and persistence calls go through circuit breakers; their failures are
logged and absorbed, and the step still succeeds with that output omitted.
Any other failure becomes an error payload (``is_error=True``).
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any

import orjson
from loguru import logger

from src.config import Config, get_config
from src.tools.backtracking import BacktrackingPolicy
from src.tools.dependency_graph import DependencyGraph
from src.tools.persistence import StepStore
from src.tools.step_types import Step, StepRecommendation
from src.tools.tool_capabilities import ToolCatalog
from src.tools.tool_chains import ToolChainLibrary, ToolSuggestion
from src.utils.cache import BoundedCache
from src.utils.circuit_breaker import CircuitBreaker
from src.utils.errors import (
    CircuitBreakerOpenError,
    DAGError,
    ErrorCategory,
    classify_error,
    create_error_context,
)
from src.utils.logging import log_context, measure_time
from src.utils.session import SessionLocks

FORMAT_CACHE_LIMIT = 200
CONTINUATION_WINDOW = 5
MAX_TOOL_SUGGESTIONS = 3
MAX_SIMILAR_TOOLS = 3
CHAIN_SUCCESS_THRESHOLD = 0.5


@dataclass
class StepResult:
    """Outcome of one process_step call."""

    summary: str
    structured: dict[str, Any]
    is_error: bool = False


def build_error_result(
    operation: str,
    error: BaseException,
    *,
    step_number: int | None = None,
    branch_id: str | None = None,
) -> StepResult:
    """Log ``error`` with context and wrap it as a failed StepResult.

    Unclassified failures carry their traceback, both in the log record and in
    ``context.stack_trace``.
    """
    unexpected = classify_error(error) is ErrorCategory.UNKNOWN
    ctx = create_error_context(
        operation,
        error,
        step_number=step_number,
        branch_id=branch_id,
        include_trace=unexpected,
    )
    payload = {
        "error": ctx.error,
        "error_type": ctx.error_type,
        "error_category": ctx.category.value,
        "status": "failed",
        "is_error": True,
        "context": ctx.to_dict(),
    }
    logger.bind(error_type=ctx.error_type, category=ctx.category.value).opt(
        exception=error if unexpected else None
    ).error(f"{operation} failed at step {step_number}: {ctx.error}")
    return StepResult(summary=f"Error: {ctx.error}", structured=payload, is_error=True)


def _recommendation_dict(recommendation: StepRecommendation | None) -> dict[str, Any] | None:
    return asdict(recommendation) if recommendation is not None else None


class ReasoningOrchestrator:
    """Owns the in-memory state of one session and processes its steps.

    Example:
        orchestrator = ReasoningOrchestrator("session-1", store=store)
        await orchestrator.initialize()
        result = await orchestrator.process_step(step)

    """

    def __init__(
        self,
        session_id: str,
        *,
        config: Config | None = None,
        store: StepStore | None = None,
        persistence_breaker: CircuitBreaker | None = None,
        dag_breaker: CircuitBreaker | None = None,
        locks: SessionLocks | None = None,
        tool_catalog: ToolCatalog | None = None,
    ) -> None:
        self.session_id = session_id
        self.config = config or get_config()
        self.store = store
        self.policy = BacktrackingPolicy(self.config.backtracking)
        self.graph = DependencyGraph()
        self.tool_chains = ToolChainLibrary(self.config.tool_chains)
        self.persistence_breaker = persistence_breaker or CircuitBreaker(
            self.config.persistence_breaker
        )
        self.dag_breaker = dag_breaker or CircuitBreaker(self.config.dag_breaker)
        self._locks = locks or SessionLocks()
        self.tool_catalog = tool_catalog if tool_catalog is not None else ToolCatalog()

        self._history: list[Step] = []
        self._branches: dict[str, list[Step]] = {}  # insertion order = creation order
        self._format_cache: BoundedCache[tuple[Any, ...], str] = BoundedCache(FORMAT_CACHE_LIMIT)

        self.created_at = datetime.now()
        self.updated_at = self.created_at

    @property
    def max_history_size(self) -> int:
        return self.config.runtime.max_history_size

    @property
    def history(self) -> list[Step]:
        return list(self._history)

    @property
    def branches(self) -> dict[str, list[Step]]:
        return {branch_id: list(steps) for branch_id, steps in self._branches.items()}

    @property
    def is_busy(self) -> bool:
        return self._locks.is_busy(self.session_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Rehydrate state from the store. Failures are logged, never raised."""
        if self.store is None:
            return
        store = self.store
        with log_context(session_id=self.session_id, operation="initialize"):
            try:
                steps = await self.persistence_breaker.execute(
                    lambda: store.load_steps(self.session_id)
                )
            except Exception as e:
                logger.error(f"Failed to rehydrate session history: {e}")
                return
            if steps:
                logger.info(f"Found {len(steps)} stored step(s), rehydrating")
                self.hydrate(steps)

    def hydrate(self, steps: Iterable[Step]) -> None:
        """Rebuild history, branches, graph, tool catalog and learned chains from stored steps.

        Nothing is persisted and no backtrack decision is made.
        """
        count = 0
        for stored in steps:
            step = stored.copy()
            if step.confidence is not None:
                self.policy.record_confidence(step.step_number, step.confidence)

            if self.config.runtime.enable_dag:
                try:
                    self.graph.add_step(step)
                    self.graph.mark_completed(step.step_number)
                except DAGError as e:
                    logger.warning(f"Skipping graph rehydration of step {step.step_number}: {e}")

            self._catalog_tools(step)
            if self.config.runtime.enable_tool_chains:
                if step.current_step is not None:
                    for tool_name in step.current_step.tool_names:
                        self.tool_chains.record_tool_use(tool_name)
                if not step.next_step_needed:
                    self._finalize_chain(step)

            self._append_history(step)
            self._update_branches(step)
            count += 1
        self.updated_at = datetime.now()
        logger.info(f"Rehydrated {count} step(s); history length {len(self._history)}")

    def clear(self) -> None:
        """Reset all in-memory session state."""
        self._history.clear()
        self._branches.clear()
        self._format_cache.clear()
        self.policy.clear()
        self.graph.clear()
        self.tool_chains.clear()
        self.updated_at = datetime.now()
        logger.info(f"Session state cleared: {self.session_id}")

    async def clear_history(self) -> None:
        """Clear this session's stored steps, then its in-memory state.

        Memory is left untouched when the store delete fails, so the two never
        disagree about what the session holds.

        Raises:
            CircuitBreakerOpenError: If the persistence breaker is open.
            PersistenceError: If the store cannot delete the rows.

        """
        async with self._locks.hold(self.session_id):
            if self.store is not None:
                store = self.store
                await self.persistence_breaker.execute(
                    lambda: store.clear_history(self.session_id)
                )
            self.clear()

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def process_step(self, step: Step) -> StepResult:
        """Run the full pipeline for one step under the session lock."""
        async with measure_time("process_step"):
            async with self._locks.hold(self.session_id):
                with log_context(
                    session_id=self.session_id,
                    step_number=step.step_number,
                    operation="process_step",
                ):
                    logger.debug(
                        f"Processing step {step.step_number}/{step.total_steps} "
                        f"revision={step.is_revision} branch={step.branch_id}"
                    )
                    try:
                        return await self._run_pipeline(step)
                    except Exception as e:
                        return build_error_result(
                            "process_step",
                            e,
                            step_number=step.step_number,
                            branch_id=step.branch_id,
                        )
                    finally:
                        self.updated_at = datetime.now()

    async def _run_pipeline(self, incoming: Step) -> StepResult:
        step = self._prepare(incoming)

        decision = self.policy.should_backtrack(step)
        if decision.should_backtrack:
            logger.warning(
                f"Backtracking suggested from step {step.step_number} "
                f"to {decision.backtrack_to}: {decision.reason}"
            )
            payload = {
                "step_number": step.step_number,
                "total_steps": step.total_steps,
                "confidence": step.confidence,
                "backtracking_suggested": True,
                "backtrack_reason": decision.reason,
                "backtrack_to_step": decision.backtrack_to,
                "message": "Low confidence detected. Consider revising approach from an earlier step.",
            }
            summary = (
                f"Backtrack suggested: step {step.step_number} -> step {decision.backtrack_to} "
                f"({decision.reason})"
            )
            return StepResult(summary=summary, structured=payload)

        self._record_recommendation(step)
        tool_alternatives = self._catalog_tools(step)
        dag_stats = await self._update_graph(step)
        self._append_history(step)
        self._update_branches(step)
        await self._persist(step)

        summary = self.render_step(step)
        logger.info(summary)
        logger.info(
            f"Step {step.step_number} processed: history={len(self._history)} "
            f"confidence={step.confidence:.2f}"
        )

        confidence_stats = self.policy.get_confidence_stats()
        suggestions = self._suggest_next_tools(step)
        self._finalize_chain(step)
        continuation = self.policy.suggest_continuation(self._history[-CONTINUATION_WINDOW:])

        structured: dict[str, Any] = {
            "step_number": step.step_number,
            "total_steps": step.total_steps,
            "next_step_needed": step.next_step_needed,
            "needs_more_steps": step.needs_more_steps,
            "confidence": step.confidence,
            "confidence_stats": confidence_stats.to_dict(),
            "is_revision": step.is_revision,
            "revises_step": step.revises_step,
            "branch_from_step": step.branch_from_step,
            "branch_id": step.branch_id,
            "branches": list(self._branches),
            "history_length": len(self._history),
            "available_tools": step.available_tools,
            "current_step": _recommendation_dict(step.current_step),
            "previous_recommendations": [asdict(r) for r in step.previous_recommendations],
            "remaining_steps": step.remaining_steps,
            "tool_chain_suggestions": [s.to_dict() for s in suggestions] if suggestions else None,
            "tool_alternatives": tool_alternatives,
            "dag_stats": dag_stats,
            "continuation": continuation.to_dict(),
        }
        return StepResult(summary=summary, structured=structured)

    def _prepare(self, incoming: Step) -> Step:
        step = incoming.copy()
        if step.step_number > step.total_steps:
            step = replace(step, total_steps=step.step_number)
        if step.confidence is None:
            step.confidence = self.policy.calculate_confidence(step)
        else:
            step.confidence = max(0.0, min(1.0, step.confidence))
        return step

    def _record_recommendation(self, step: Step) -> None:
        if step.current_step is None:
            return
        step.previous_recommendations.append(step.current_step)
        if self.config.runtime.enable_tool_chains:
            for tool_name in step.current_step.tool_names:
                self.tool_chains.record_tool_use(tool_name)

    def _catalog_tools(self, step: Step) -> dict[str, list[str]] | None:
        """Register the step's tools and list similar tools for each recommended one.

        When the step names its available tools, alternatives are limited to those.
        """
        names = list(step.available_tools or [])
        if step.current_step is not None:
            names.extend(step.current_step.tool_names)
        added = self.tool_catalog.register_names(names)
        if added:
            logger.debug(f"Tools catalogued: {added}")
        if step.current_step is None or not step.current_step.recommended_tools:
            return None

        matcher = self.tool_catalog.matcher
        alternatives: dict[str, list[str]] = {}
        for name in step.current_step.tool_names:
            similar = matcher.find_similar_tools(name, limit=len(self.tool_catalog))
            if step.available_tools:
                similar = [other for other in similar if other in step.available_tools]
            alternatives[name] = similar[:MAX_SIMILAR_TOOLS]
        return alternatives

    async def _update_graph(self, step: Step) -> dict[str, int] | None:
        if not self.config.runtime.enable_dag:
            return None

        async def update() -> dict[str, int]:
            self.graph.add_step(step)
            self.graph.mark_executing(step.step_number)
            self.graph.mark_completed(
                step.step_number,
                {"confidence": step.confidence, "step_number": step.step_number},
            )
            stats = self.graph.get_stats()
            stats["parallel_group_count"] = len(self.graph.get_parallel_groups())
            return stats

        try:
            dag_stats = await self.dag_breaker.execute(update)
        except CircuitBreakerOpenError:
            logger.warning(f"DAG circuit breaker open, skipping graph update for step {step.step_number}")
            return None
        except Exception as e:
            logger.error(f"Failed to update dependency graph for step {step.step_number}: {e}")
            return None
        logger.debug(f"Dependency graph updated: {dag_stats}")
        return dag_stats

    def _append_history(self, step: Step) -> None:
        self._history.append(step)
        excess = len(self._history) - self.max_history_size
        if excess > 0:
            del self._history[:excess]
            logger.warning(f"History trimmed to {self.max_history_size} step(s)")

    def _update_branches(self, step: Step) -> None:
        if step.branch_from_step is None or not step.branch_id:
            return
        self._branches.setdefault(step.branch_id, []).append(step)
        logger.debug(f"Branch {step.branch_id} now has {len(self._branches[step.branch_id])} step(s)")
        if len(self._branches) > self.max_history_size:
            oldest = next(iter(self._branches))
            del self._branches[oldest]
            logger.debug(f"Branch trimmed: {oldest}")

    async def _persist(self, step: Step) -> None:
        if self.store is None:
            return
        store = self.store
        try:
            await self.persistence_breaker.execute(lambda: store.save_step(step, self.session_id))
        except CircuitBreakerOpenError:
            logger.warning(
                f"Persistence circuit breaker open, skipping persistence of step {step.step_number}"
            )
        except Exception as e:
            logger.error(f"Failed to persist step {step.step_number}: {e}")

    def _suggest_next_tools(self, step: Step) -> list[ToolSuggestion]:
        if not self.config.runtime.enable_tool_chains or not step.previous_recommendations:
            return []
        previous_tools = [
            name for recommendation in step.previous_recommendations for name in recommendation.tool_names
        ]
        return self.tool_chains.suggest_next_tool(previous_tools)[:MAX_TOOL_SUGGESTIONS]

    def _finalize_chain(self, step: Step) -> None:
        if not self.config.runtime.enable_tool_chains or step.next_step_needed:
            return
        confidence = step.confidence if step.confidence is not None else 0.5
        success = confidence >= CHAIN_SUCCESS_THRESHOLD
        self.tool_chains.complete_chain(success, step.confidence, step.content)
        logger.debug(f"Tool chain finalized: success={success} confidence={step.confidence}")

    # =========================================================================
    # Rendering and status
    # =========================================================================

    def render_step(self, step: Step) -> str:
        """Box-drawn summary of a step, cached by its displayed fields."""
        rec = step.current_step
        key = (
            step.step_number,
            step.total_steps,
            step.content,
            rec.step_description if rec else "",
            rec.expected_outcome if rec else "",
            step.is_revision,
            step.revises_step,
            step.branch_from_step,
            step.branch_id,
        )
        cached = self._format_cache.get(key)
        if cached is not None:
            return cached

        if step.is_revision:
            header = f"Revision {step.step_number}/{step.total_steps} (revising step {step.revises_step})"
        elif step.branch_from_step is not None:
            header = (
                f"Branch {step.step_number}/{step.total_steps} "
                f"(from step {step.branch_from_step}, ID: {step.branch_id})"
            )
        else:
            header = f"Step {step.step_number}/{step.total_steps}"

        body = step.content
        if rec is not None:
            body = f"{body}\n\nRecommendation:\n{_format_recommendation(rec)}"

        body_lines = body.split("\n")
        width = max(len(line) for line in [header, *body_lines])
        border = "─" * (width + 2)
        rendered = "\n".join(
            [
                f"┌{border}┐",
                f"│ {header.ljust(width)} │",
                f"├{border}┤",
                *(f"│ {line.ljust(width)} │" for line in body_lines),
                f"└{border}┘",
            ]
        )
        self._format_cache.put(key, rendered)
        return rendered

    def get_status(self) -> dict[str, Any]:
        """Snapshot of session state for the status tool."""
        status: dict[str, Any] = {
            "session_id": self.session_id,
            "history_length": len(self._history),
            "branches": {branch_id: len(steps) for branch_id, steps in self._branches.items()},
            "confidence_stats": self.policy.get_confidence_stats().to_dict(),
            "backtrack_history": [asdict(p) for p in self.policy.get_backtrack_history()],
            "continuation": self.policy.suggest_continuation(
                self._history[-CONTINUATION_WINDOW:]
            ).to_dict(),
            "tool_chains": self.tool_chains.get_stats(),
            "top_chains": [c.to_dict() for c in self.tool_chains.get_top_chains(5)],
            "tools": self.tool_catalog.get_stats(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.config.runtime.enable_dag:
            graph: dict[str, Any] = {
                "stats": self.graph.get_stats(),
                "topological_order": self.graph.topological_sort(),
                "ready_steps": self.graph.peek_ready_steps(),
            }
            try:
                graph["parallel_groups"] = self.graph.get_parallel_groups()
            except DAGError as e:
                graph["parallel_groups"] = None
                graph["error"] = str(e)
            status["graph"] = graph
        return status


def _format_recommendation(rec: StepRecommendation) -> str:
    lines = [f"Step: {rec.step_description}", "Recommended Tools:"]
    for tool in rec.recommended_tools:
        alternatives = f" (alternatives: {', '.join(tool.alternatives)})" if tool.alternatives else ""
        lines.append(f"  - {tool.tool_name} (priority: {tool.priority}){alternatives}")
        lines.append(f"    Rationale: {tool.rationale}")
        if tool.suggested_inputs:
            lines.append(
                f"    Suggested inputs: {orjson.dumps(tool.suggested_inputs, default=str).decode()}"
            )
    lines.append(f"Expected Outcome: {rec.expected_outcome}")
    if rec.next_step_conditions:
        lines.append("Conditions for next step:")
        lines.extend(f"  - {condition}" for condition in rec.next_step_conditions)
    return "\n".join(lines)
