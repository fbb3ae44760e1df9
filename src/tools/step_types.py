"""Step records and dependency-edge inference.

A Step is one unit of recorded reasoning progress. Its single predecessor
is decided once, at ingestion, as a tagged ``DependencyEdge``:

    revision target  >  branch origin  >  previous step number

Downstream components (graph, confidence policy, persistence) read the
edge instead of re-deriving it from the optional fields.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any


class EdgeKind(str, Enum):
    """Why a step depends on its predecessor."""

    REVISION = "revision"
    BRANCH = "branch"
    SEQUENTIAL = "sequential"


@dataclass(frozen=True)
class DependencyEdge:
    """The one inferred dependency of a step."""

    kind: EdgeKind
    target: int


@dataclass
class ToolRecommendation:
    """A tool the agent might call next, with the reason for it."""

    tool_name: str
    confidence: float
    rationale: str
    priority: int = 1
    suggested_inputs: dict[str, Any] | None = None
    alternatives: list[str] | None = None


@dataclass
class StepRecommendation:
    """Recommended tools for one step of the plan."""

    step_description: str
    recommended_tools: list[ToolRecommendation] = field(default_factory=list)
    expected_outcome: str = ""
    next_step_conditions: list[str] | None = None

    @property
    def tool_names(self) -> list[str]:
        return [tool.tool_name for tool in self.recommended_tools]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepRecommendation:
        tools = [
            tool if isinstance(tool, ToolRecommendation) else ToolRecommendation(**tool)
            for tool in data.get("recommended_tools") or []
        ]
        return cls(
            step_description=data.get("step_description", ""),
            recommended_tools=tools,
            expected_outcome=data.get("expected_outcome", ""),
            next_step_conditions=data.get("next_step_conditions"),
        )


@dataclass
class Step:
    """One reasoning step submitted by the caller.

    Attributes:
        step_number: Position in the session (>= 1, not necessarily contiguous).
        total_steps: Current estimate of the session length.
        content: Free-text reasoning for this step.
        next_step_needed: False once the caller considers the session done.
        needs_more_steps: Caller realised more steps are needed than estimated.
        confidence: Caller-supplied confidence in [0, 1], or None to compute it.

    """

    step_number: int
    total_steps: int
    content: str
    next_step_needed: bool = True
    is_revision: bool = False
    revises_step: int | None = None
    branch_from_step: int | None = None
    branch_id: str | None = None
    needs_more_steps: bool = False
    current_step: StepRecommendation | None = None
    previous_recommendations: list[StepRecommendation] = field(default_factory=list)
    remaining_steps: list[str] | None = None
    available_tools: list[str] | None = None
    confidence: float | None = None
    edge: DependencyEdge | None = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.edge = infer_dependency(self)

    @property
    def is_branch(self) -> bool:
        return self.branch_from_step is not None

    def copy(self) -> Step:
        """Shallow copy with its own previous-recommendations list."""
        return replace(self, previous_recommendations=list(self.previous_recommendations))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("edge", None)
        return data


def infer_dependency(step: Step) -> DependencyEdge | None:
    """Pick the single predecessor of ``step``.

    Returns None for a first step that neither revises nor branches.
    """
    if step.revises_step is not None:
        return DependencyEdge(EdgeKind.REVISION, step.revises_step)
    if step.branch_from_step is not None:
        return DependencyEdge(EdgeKind.BRANCH, step.branch_from_step)
    if step.step_number > 1:
        return DependencyEdge(EdgeKind.SEQUENTIAL, step.step_number - 1)
    return None
