"""Request models for the process_step tool.

Pydantic models validate raw tool arguments at the boundary; a valid
``StepInput`` converts into the internal ``Step`` dataclass. Validation
failures surface as ``src.utils.errors.ValidationError`` so the caller
gets one error type regardless of which check failed.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from src.tools.step_types import Step, StepRecommendation, ToolRecommendation
from src.utils.errors import ValidationError


class ToolRecommendationInput(BaseModel):
    """A recommended tool with confidence and rationale."""

    model_config = ConfigDict(extra="ignore")

    tool_name: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str
    priority: int = Field(default=1, ge=1, description="Lower runs first")
    suggested_inputs: dict[str, Any] | None = None
    alternatives: list[str] | None = None

    def to_recommendation(self) -> ToolRecommendation:
        return ToolRecommendation(
            tool_name=self.tool_name,
            confidence=self.confidence,
            rationale=self.rationale,
            priority=self.priority,
            suggested_inputs=self.suggested_inputs,
            alternatives=self.alternatives,
        )


class StepRecommendationInput(BaseModel):
    """Recommended tools for the current step."""

    model_config = ConfigDict(extra="ignore")

    step_description: str
    recommended_tools: list[ToolRecommendationInput] = Field(default_factory=list)
    expected_outcome: str = ""
    next_step_conditions: list[str] | None = None

    def to_recommendation(self) -> StepRecommendation:
        return StepRecommendation(
            step_description=self.step_description,
            recommended_tools=[t.to_recommendation() for t in self.recommended_tools],
            expected_outcome=self.expected_outcome,
            next_step_conditions=self.next_step_conditions,
        )


class StepInput(BaseModel):
    """Arguments of one process_step call."""

    model_config = ConfigDict(extra="ignore")

    step_number: int = Field(ge=1)
    total_steps: int = Field(ge=1)
    content: str = Field(min_length=1, description="Reasoning for this step")
    next_step_needed: bool = True
    is_revision: bool = False
    revises_step: int | None = Field(default=None, ge=1)
    branch_from_step: int | None = Field(default=None, ge=1)
    branch_id: str | None = Field(default=None, min_length=1)
    needs_more_steps: bool = False
    current_step: StepRecommendationInput | None = None
    previous_recommendations: list[StepRecommendationInput] = Field(default_factory=list)
    remaining_steps: list[str] | None = None
    available_tools: list[str] | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_markers(self) -> StepInput:
        if self.is_revision and self.revises_step is None:
            raise ValueError("is_revision requires revises_step")
        if (self.branch_from_step is None) != (self.branch_id is None):
            raise ValueError("branch_from_step and branch_id must be given together")
        if self.step_number in (self.revises_step, self.branch_from_step):
            raise ValueError("a step cannot revise or branch from itself")
        return self

    def to_step(self) -> Step:
        return Step(
            step_number=self.step_number,
            total_steps=self.total_steps,
            content=self.content,
            next_step_needed=self.next_step_needed,
            is_revision=self.is_revision,
            revises_step=self.revises_step,
            branch_from_step=self.branch_from_step,
            branch_id=self.branch_id,
            needs_more_steps=self.needs_more_steps,
            current_step=self.current_step.to_recommendation() if self.current_step else None,
            previous_recommendations=[r.to_recommendation() for r in self.previous_recommendations],
            remaining_steps=self.remaining_steps,
            available_tools=self.available_tools,
            confidence=self.confidence,
        )


def validate_step_input(data: dict[str, Any]) -> Step:
    """Validate raw arguments and build a Step.

    Raises:
        ValidationError: With one issue string per failed check.

    """
    try:
        return StepInput.model_validate(data).to_step()
    except PydanticValidationError as e:
        issues = [
            f"{'.'.join(str(part) for part in err['loc']) or 'step'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError(f"Invalid step: {'; '.join(issues)}", issues) from e
