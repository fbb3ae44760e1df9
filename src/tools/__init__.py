"""Stepwise reasoning tools - step model, graph, scoring, learning, tool catalog and persistence."""

from .backtracking import BacktrackDecision, BacktrackingPolicy, BacktrackReason
from .dependency_graph import DependencyGraph, GraphNode, NodeStatus
from .orchestrator import ReasoningOrchestrator, StepResult
from .persistence import SqliteStepStore, StepStore
from .step_schema import StepInput, validate_step_input
from .step_types import (
    DependencyEdge,
    EdgeKind,
    Step,
    StepRecommendation,
    ToolRecommendation,
)
from .tool_capabilities import (
    Complexity,
    ToolCapability,
    ToolCapabilityMatcher,
    ToolCatalog,
    ToolInfo,
    ToolMatch,
    enrich_tools_with_capabilities,
    infer_capabilities,
)
from .tool_chains import ToolChain, ToolChainLibrary, ToolSuggestion

__all__ = [
    # Step model
    "DependencyEdge",
    "EdgeKind",
    "Step",
    "StepInput",
    "StepRecommendation",
    "ToolRecommendation",
    "validate_step_input",
    # Graph
    "DependencyGraph",
    "GraphNode",
    "NodeStatus",
    # Confidence
    "BacktrackDecision",
    "BacktrackReason",
    "BacktrackingPolicy",
    # Tool chains
    "ToolChain",
    "ToolChainLibrary",
    "ToolSuggestion",
    # Tool capabilities
    "Complexity",
    "ToolCapability",
    "ToolCapabilityMatcher",
    "ToolCatalog",
    "ToolInfo",
    "ToolMatch",
    "enrich_tools_with_capabilities",
    "infer_capabilities",
    # Persistence
    "SqliteStepStore",
    "StepStore",
    # Orchestration
    "ReasoningOrchestrator",
    "StepResult",
]
