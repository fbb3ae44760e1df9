"""Dependency graph over reasoning steps.

Every step has at most one predecessor (revision target, branch origin or
previous step), so the graph is a forest in the normal case. Nodes carry a
level (hops from the nearest root) and an execution status; steps sharing
a level have no ordering constraint between them and form a parallel group
an external scheduler may run together.

Design Principles:
    - One node per step number, dict-based adjacency (children back-refs)
    - Level resolution is an iterative memoized DFS (no recursion limit)
    - Parallel groups are cached and invalidated on every mutation;
      callers always receive a fresh copy
    - Two cycle policies: ``get_parallel_groups`` raises CycleError,
      ``topological_sort`` logs and returns an empty order
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from src.tools.step_types import EdgeKind, Step
from src.utils.errors import CycleError, DAGError


class NodeStatus(str, Enum):
    """Execution status of a graph node."""

    PENDING = "pending"  # waiting on a dependency
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class GraphNode:
    """A step registered in the dependency graph."""

    step_number: int
    step: Step
    dependencies: list[int]
    children: list[int] = field(default_factory=list)
    level: int = 0
    status: NodeStatus = NodeStatus.PENDING
    result: Any = None
    error: str | None = None

    @property
    def edge_kind(self) -> EdgeKind | None:
        return self.step.edge.kind if self.step.edge else None


class DependencyGraph:
    """Dependency graph for one reasoning session.

    Thread-safe for concurrent read/write operations, though the orchestrator
    already serializes access per session.
    """

    def __init__(self) -> None:
        self._nodes: dict[int, GraphNode] = {}
        self._groups_cache: tuple[tuple[int, ...], ...] | None = None
        self._lock = threading.RLock()

    # =========================================================================
    # Construction
    # =========================================================================

    def add_step(self, step: Step) -> GraphNode:
        """Register ``step`` and wire it to its inferred dependency.

        A missing dependency counts as level 0 (the node still records it and
        stays pending). Re-adding an existing step number replaces the node's
        own fields, keeps its children and prunes the stale back-reference on
        a former parent.

        Returns:
            The new GraphNode.

        """
        with self._lock:
            number = step.step_number
            dependencies = [step.edge.target] if step.edge else []
            if dependencies:
                level = max(self._level_of(dep) for dep in dependencies) + 1
            else:
                level = 0

            children: list[int] = []
            existing = self._nodes.get(number)
            if existing is not None:
                logger.warning(
                    f"Step {number} re-added to dependency graph; replacing node "
                    f"(dependencies {existing.dependencies} -> {dependencies})"
                )
                children = existing.children
                for old_dep in existing.dependencies:
                    if old_dep not in dependencies:
                        self._unlink(old_dep, number)
            else:
                # Adopt steps registered before this one that already point at it
                children = [n for n, other in self._nodes.items() if number in other.dependencies]

            node = GraphNode(
                step_number=number,
                step=step,
                dependencies=dependencies,
                children=children,
                level=level,
                status=NodeStatus.READY if not dependencies else NodeStatus.PENDING,
            )
            self._nodes[number] = node

            for dep in dependencies:
                parent = self._nodes.get(dep)
                if parent is not None and number not in parent.children:
                    parent.children.append(number)

            self._invalidate()
            logger.debug(
                f"Step {number} added to graph: deps={dependencies} "
                f"level={level} status={node.status.value}"
            )
            return node

    def rewire_dependency(self, step_number: int, depends_on: int | None) -> None:
        """Replace a node's dependency.

        No cycle check is made here; cycles surface in ``get_parallel_groups``
        (CycleError) and ``topological_sort`` (empty order).

        Raises:
            DAGError: If ``step_number`` is not in the graph.

        """
        with self._lock:
            node = self._require(step_number)
            for old_dep in node.dependencies:
                self._unlink(old_dep, step_number)
            node.dependencies = [] if depends_on is None else [depends_on]
            if depends_on is not None:
                parent = self._nodes.get(depends_on)
                if parent is not None and step_number not in parent.children:
                    parent.children.append(step_number)
            self._invalidate()

    def _unlink(self, parent_number: int, child_number: int) -> None:
        parent = self._nodes.get(parent_number)
        if parent is not None and child_number in parent.children:
            parent.children.remove(child_number)

    def _level_of(self, step_number: int) -> int:
        node = self._nodes.get(step_number)
        return node.level if node is not None else 0

    def _require(self, step_number: int) -> GraphNode:
        node = self._nodes.get(step_number)
        if node is None:
            raise DAGError(f"Step {step_number} not found in dependency graph")
        return node

    def _invalidate(self) -> None:
        self._groups_cache = None

    # =========================================================================
    # Status transitions
    # =========================================================================

    def mark_executing(self, step_number: int) -> None:
        with self._lock:
            node = self._nodes.get(step_number)
            if node is not None:
                node.status = NodeStatus.EXECUTING
                self._invalidate()

    def mark_completed(self, step_number: int, result: Any = None) -> None:
        """Complete a node and promote children whose dependencies are all done."""
        with self._lock:
            node = self._nodes.get(step_number)
            if node is None:
                return
            node.status = NodeStatus.COMPLETED
            node.result = result

            for child_number in node.children:
                child = self._nodes.get(child_number)
                if child is not None and child.status == NodeStatus.PENDING:
                    if self._dependencies_completed(child):
                        child.status = NodeStatus.READY
            self._invalidate()

    def mark_failed(self, step_number: int, error: str = "") -> None:
        """Fail a node and every transitive child that has not completed."""
        with self._lock:
            node = self._nodes.get(step_number)
            if node is None:
                return
            node.status = NodeStatus.FAILED
            node.error = error
            logger.error(f"Step {step_number} failed: {error}")

            stack = [step_number]
            seen = {step_number}
            while stack:
                parent_number = stack.pop()
                for child_number in self._nodes[parent_number].children:
                    child = self._nodes.get(child_number)
                    if child is None or child.status == NodeStatus.COMPLETED:
                        continue
                    child.status = NodeStatus.FAILED
                    child.error = f"Dependency step {parent_number} failed"
                    if child_number not in seen:
                        seen.add(child_number)
                        stack.append(child_number)
            self._invalidate()

    def _dependencies_completed(self, node: GraphNode) -> bool:
        return all(
            (dep_node := self._nodes.get(dep)) is not None
            and dep_node.status == NodeStatus.COMPLETED
            for dep in node.dependencies
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_ready_steps(self) -> list[GraphNode]:
        """Promote pending nodes whose dependencies completed; return all ready nodes."""
        with self._lock:
            ready: list[GraphNode] = []
            for node in self._nodes.values():
                if node.status == NodeStatus.PENDING and self._dependencies_completed(node):
                    node.status = NodeStatus.READY
                if node.status == NodeStatus.READY:
                    ready.append(node)
            return ready

    def peek_ready_steps(self) -> list[int]:
        """Step numbers ``get_ready_steps`` would return, without promoting any node."""
        with self._lock:
            return [
                node.step_number
                for node in self._nodes.values()
                if node.status == NodeStatus.READY
                or (node.status == NodeStatus.PENDING and self._dependencies_completed(node))
            ]

    def get_parallel_groups(self) -> list[list[int]]:
        """Step numbers bucketed by level, level-ascending.

        Within a bucket steps keep insertion order. The returned lists are a
        fresh copy on every call.

        Raises:
            CycleError: If level resolution finds a cycle.

        """
        with self._lock:
            if self._groups_cache is None:
                levels = self._resolve_levels()
                buckets: dict[int, list[int]] = {}
                for number, node in self._nodes.items():
                    node.level = levels[number]
                    buckets.setdefault(node.level, []).append(number)
                self._groups_cache = tuple(tuple(buckets[lvl]) for lvl in sorted(buckets))
                logger.debug(f"Parallel groups computed: {len(self._groups_cache)} level(s)")
            return [list(group) for group in self._groups_cache]

    def _resolve_levels(self) -> dict[int, int]:
        levels: dict[int, int] = {}
        visiting: set[int] = set()

        for root in self._nodes:
            if root in levels:
                continue
            stack = [root]
            while stack:
                number = stack[-1]
                if number in levels:
                    stack.pop()
                    continue
                node = self._nodes[number]
                unresolved = [
                    dep for dep in node.dependencies if dep in self._nodes and dep not in levels
                ]
                if not unresolved:
                    if node.dependencies:
                        levels[number] = max(levels.get(dep, 0) for dep in node.dependencies) + 1
                    else:
                        levels[number] = 0
                    visiting.discard(number)
                    stack.pop()
                    continue
                if number in visiting:
                    raise CycleError(number)
                visiting.add(number)
                for dep in unresolved:
                    if dep in visiting:
                        raise CycleError(dep)
                    stack.append(dep)
        return levels

    def topological_sort(self) -> list[int]:
        """Dependencies-first ordering of all steps.

        Returns an empty list (and logs) when the graph has a cycle, unlike
        ``get_parallel_groups`` which raises.
        """
        with self._lock:
            order: list[int] = []
            done: set[int] = set()
            visiting: set[int] = set()

            for root in self._nodes:
                if root in done:
                    continue
                stack: list[tuple[int, Iterator[int]]] = [(root, iter(self._deps_in_graph(root)))]
                visiting.add(root)
                while stack:
                    number, deps = stack[-1]
                    dep = next(deps, None)
                    if dep is None:
                        stack.pop()
                        visiting.discard(number)
                        done.add(number)
                        order.append(number)
                    elif dep in visiting:
                        logger.warning(f"Cycle detected in dependency graph at step {dep}")
                        logger.error("Topological sort failed due to cycles")
                        return []
                    elif dep not in done:
                        visiting.add(dep)
                        stack.append((dep, iter(self._deps_in_graph(dep))))

            logger.debug(f"Topological sort completed: {len(order)} step(s)")
            return order

    def _deps_in_graph(self, step_number: int) -> list[int]:
        return [dep for dep in self._nodes[step_number].dependencies if dep in self._nodes]

    def get_stats(self) -> dict[str, int]:
        """Counts per status plus total."""
        with self._lock:
            stats = {"total": len(self._nodes)}
            stats.update({status.value: 0 for status in NodeStatus})
            for node in self._nodes.values():
                stats[node.status.value] += 1
            return stats

    def is_complete(self) -> bool:
        """True when every node is completed or failed."""
        with self._lock:
            return all(
                node.status in (NodeStatus.COMPLETED, NodeStatus.FAILED)
                for node in self._nodes.values()
            )

    def get_node(self, step_number: int) -> GraphNode | None:
        return self._nodes.get(step_number)

    def __contains__(self, step_number: object) -> bool:
        return step_number in self._nodes

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    def nodes(self) -> Iterator[GraphNode]:
        """Iterate over all nodes in insertion order."""
        return iter(list(self._nodes.values()))

    # =========================================================================
    # Export
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        """Export graph to dictionary format."""
        with self._lock:
            return {
                "nodes": [
                    {
                        "step": node.step_number,
                        "dependencies": list(node.dependencies),
                        "children": list(node.children),
                        "level": node.level,
                        "status": node.status.value,
                        "edge": node.edge_kind.value if node.edge_kind else None,
                        "error": node.error,
                    }
                    for node in self._nodes.values()
                ],
                "stats": self.get_stats(),
            }

    def to_mermaid(self, title: str = "Step Dependencies") -> str:
        """Export graph to Mermaid format for documentation."""
        with self._lock:
            lines = ["```mermaid", "graph TD", f"    %% {title}"]

            for node in self._nodes.values():
                label = node.step.content[:40].replace('"', "'")
                if len(node.step.content) > 40:
                    label += "..."
                lines.append(f'    S{node.step_number}["{node.step_number}: {label}"]')

            arrow_styles = {
                EdgeKind.SEQUENTIAL: "-->",
                EdgeKind.BRANCH: "-.->|branch|",
                EdgeKind.REVISION: "-->|revises|",
            }
            for node in self._nodes.values():
                arrow = arrow_styles.get(node.edge_kind, "-->") if node.edge_kind else "-->"
                for dep in node.dependencies:
                    if dep in self._nodes:
                        lines.append(f"    S{dep} {arrow} S{node.step_number}")

            failed = [f"S{n.step_number}" for n in self._nodes.values() if n.status == NodeStatus.FAILED]
            if failed:
                lines.append("    classDef failed fill:#fdd,stroke:#c33")
                lines.append(f"    class {','.join(failed)} failed")

            lines.append("```")
            return "\n".join(lines)

    def clear(self) -> None:
        """Remove all nodes."""
        with self._lock:
            self._nodes.clear()
            self._invalidate()
            logger.info("Dependency graph cleared")
