"""Confidence scoring and backtracking policy.

Scores each step's confidence from its shape (tool confidences, revision,
branch, progress) and decides whether the caller should roll back to an
earlier step that still met the confidence bar.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from loguru import logger

from src.config import BacktrackingConfig
from src.tools.step_types import Step


class BacktrackReason(str, Enum):
    """Machine-readable outcome of a backtrack evaluation."""

    NOT_SCORED = "not_scored"
    CONFIDENCE_ACCEPTABLE = "confidence_acceptable"
    AUTO_BACKTRACK_DISABLED = "auto_backtrack_disabled"
    LOW_CONFIDENCE = "low_confidence"


@dataclass(frozen=True)
class BacktrackDecision:
    """Result of ``BacktrackingPolicy.should_backtrack``."""

    should_backtrack: bool
    code: BacktrackReason
    reason: str | None = None
    backtrack_to: int | None = None


@dataclass(frozen=True)
class BacktrackPoint:
    """A step that triggered a backtrack suggestion."""

    step_number: int
    confidence: float
    reason: str


@dataclass(frozen=True)
class ContinuationSuggestion:
    """Advisory on whether the current line of reasoning should continue."""

    should_continue: bool
    reason: str
    average_confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_continue": self.should_continue,
            "reason": self.reason,
            "average_confidence": round(self.average_confidence, 3),
        }


@dataclass(frozen=True)
class ConfidenceStats:
    """Aggregate confidence over all scored steps of a session."""

    average_confidence: float = 0.0
    min_confidence: float = 0.0
    max_confidence: float = 0.0
    backtrack_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class BacktrackingPolicy:
    """Per-session confidence bookkeeping and backtrack decisions.

    The confidence map keeps the first score recorded for each step number
    for the life of the session (until ``clear``).
    """

    def __init__(self, config: BacktrackingConfig | None = None) -> None:
        self.config = config or BacktrackingConfig()
        self._confidences: dict[int, float] = {}
        self._backtrack_history: list[BacktrackPoint] = []
        logger.debug(
            f"Backtracking policy initialized: min_confidence={self.config.min_confidence} "
            f"auto={self.config.enable_auto_backtrack} depth={self.config.max_backtrack_depth}"
        )

    def calculate_confidence(self, step: Step) -> float:
        """Score a step in [0, 1].

        baseline
          + mean(recommended tool confidences) * tool weight   (if any tools)
          - revision penalty                                    (if revision)
          + branch bonus                                        (if branch)
          + progress bonus      (if finished and step/total > threshold)
        """
        cfg = self.config
        confidence = cfg.base_confidence

        if step.current_step and step.current_step.recommended_tools:
            tools = step.current_step.recommended_tools
            confidence += sum(t.confidence for t in tools) / len(tools) * cfg.tool_confidence_weight

        if step.is_revision:
            confidence -= cfg.revision_penalty

        if step.branch_from_step is not None:
            confidence += cfg.branch_bonus

        if step.total_steps > 0:
            progress = step.step_number / step.total_steps
            if not step.next_step_needed and progress > cfg.progress_threshold:
                confidence += cfg.progress_bonus

        return max(0.0, min(1.0, confidence))

    def should_backtrack(self, step: Step) -> BacktrackDecision:
        """Decide whether ``step``'s confidence warrants rolling back."""
        if step.confidence is None:
            return BacktrackDecision(False, BacktrackReason.NOT_SCORED)

        cfg = self.config
        self._confidences.setdefault(step.step_number, step.confidence)

        if step.confidence >= cfg.min_confidence:
            return BacktrackDecision(
                False, BacktrackReason.CONFIDENCE_ACCEPTABLE, "Confidence acceptable"
            )

        target = self._find_backtrack_point(step.step_number)
        logger.warning(
            f"Low confidence {step.confidence:.2f} at step {step.step_number} "
            f"(threshold {cfg.min_confidence}, candidate target {target})"
        )

        if cfg.enable_auto_backtrack:
            reason = f"Confidence {step.confidence:.2f} below threshold {cfg.min_confidence}"
            self._backtrack_history.append(
                BacktrackPoint(step.step_number, step.confidence, reason)
            )
            return BacktrackDecision(True, BacktrackReason.LOW_CONFIDENCE, reason, target)

        return BacktrackDecision(
            False,
            BacktrackReason.AUTO_BACKTRACK_DISABLED,
            "Low confidence detected but auto-backtrack disabled",
        )

    def _find_backtrack_point(self, step_number: int) -> int:
        """Nearest earlier step meeting the minimum, else the search floor."""
        floor = max(1, step_number - self.config.max_backtrack_depth)
        for candidate in range(step_number - 1, floor - 1, -1):
            recorded = self._confidences.get(candidate)
            if recorded is not None and recorded >= self.config.min_confidence:
                logger.debug(f"Backtrack point found at step {candidate} ({recorded:.2f})")
                return candidate
        return floor

    def suggest_continuation(self, recent_steps: Sequence[Step]) -> ContinuationSuggestion:
        """Advise whether to keep going, from the scored steps in ``recent_steps``."""
        if not recent_steps:
            return ContinuationSuggestion(True, "No steps to evaluate", 1.0)

        scores = [s.confidence for s in recent_steps if s.confidence is not None]
        if not scores:
            return ContinuationSuggestion(True, "No confidence scores available", 1.0)

        average = sum(scores) / len(scores)
        if average < self.config.min_confidence:
            return ContinuationSuggestion(
                False, f"Recent average confidence ({average:.2f}) below threshold", average
            )

        if len(scores) >= 3:
            a, b, c = scores[-3:]
            if a > b > c and c < self.config.declining_confidence_threshold:
                return ContinuationSuggestion(False, "Declining confidence trend detected", average)

        return ContinuationSuggestion(True, "Confidence levels acceptable", average)

    def get_confidence_stats(self) -> ConfidenceStats:
        scores = list(self._confidences.values())
        if not scores:
            return ConfidenceStats(backtrack_count=len(self._backtrack_history))
        return ConfidenceStats(
            average_confidence=sum(scores) / len(scores),
            min_confidence=min(scores),
            max_confidence=max(scores),
            backtrack_count=len(self._backtrack_history),
        )

    def get_backtrack_history(self) -> list[BacktrackPoint]:
        return list(self._backtrack_history)

    def record_confidence(self, step_number: int, confidence: float) -> None:
        """Seed a score without evaluating it (used when rehydrating a session)."""
        self._confidences.setdefault(step_number, confidence)

    def recorded_confidence(self, step_number: int) -> float | None:
        return self._confidences.get(step_number)

    def clear(self) -> None:
        self._confidences.clear()
        self._backtrack_history.clear()
        logger.info("Backtracking state cleared")
