"""Tool-chain pattern learner.

Records the sequence of recommended tools as a session progresses and,
when the session finishes, stores that sequence as a chain with its
outcome. Chains are keyed by their exact sequence. Stored chains drive
two queries: ranked matches for a partial sequence and keywords, and
suggestions for the next tool after a known prefix.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from src.config import ToolChainConfig

_DEFAULT_CONFIDENCE = 0.5


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ToolChain:
    """A learned sequence of two or more tools."""

    id: str
    sequence: tuple[str, ...]
    context: str
    success_count: int
    total_uses: int
    average_confidence: float
    last_used: datetime

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total_uses if self.total_uses else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sequence": list(self.sequence),
            "context": self.context,
            "success_count": self.success_count,
            "total_uses": self.total_uses,
            "success_rate": round(self.success_rate, 3),
            "average_confidence": round(self.average_confidence, 3),
            "last_used": self.last_used.isoformat(),
        }


@dataclass(frozen=True)
class ChainMatch:
    """A stored chain scored against the current context."""

    chain: ToolChain
    match_score: float
    reason: str


@dataclass(frozen=True)
class ToolSuggestion:
    """A candidate next tool."""

    tool_name: str
    confidence: float
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "confidence": round(self.confidence, 3),
            "reason": self.reason,
        }


def _common_prefix_length(a: Sequence[str], b: Sequence[str]) -> int:
    length = 0
    for x, y in zip(a, b, strict=False):
        if x != y:
            break
        length += 1
    return length


class ToolChainLibrary:
    """Library of completed tool chains plus the chain being accumulated."""

    def __init__(
        self,
        config: ToolChainConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or ToolChainConfig()
        self._clock = clock
        self._chains: dict[tuple[str, ...], ToolChain] = {}
        self._current: list[str] = []
        self._id_counter = 0

    def record_tool_use(self, tool_name: str) -> None:
        """Append a tool to the chain being accumulated."""
        self._current.append(tool_name)
        logger.debug(f"Tool use recorded: {tool_name} (chain length {len(self._current)})")

    @property
    def current_chain(self) -> list[str]:
        return list(self._current)

    def complete_chain(
        self,
        success: bool,
        confidence: float | None = None,
        context: str | None = None,
    ) -> ToolChain | None:
        """Store the accumulated sequence and reset the accumulator.

        Sequences shorter than two tools are discarded.

        Returns:
            The created or updated chain, or None if nothing was stored.

        """
        sequence = tuple(self._current)
        self._current = []
        if len(sequence) < 2:
            return None

        now = self._clock()
        chain = self._chains.get(sequence)
        if chain is None:
            self._id_counter += 1
            chain = ToolChain(
                id=f"chain-{self._id_counter}",
                sequence=sequence,
                context=context or "",
                success_count=1 if success else 0,
                total_uses=1,
                # A zero seed counts as unreported; later updates take zero as given
                average_confidence=confidence or _DEFAULT_CONFIDENCE,
                last_used=now,
            )
            self._chains[sequence] = chain
            logger.info(f"New tool chain {chain.id}: {' -> '.join(sequence)} (success={success})")
            return chain

        chain.total_uses += 1
        if success:
            chain.success_count += 1
        if confidence is not None:
            weight = self.config.confidence_weight
            chain.average_confidence = chain.average_confidence * (1 - weight) + confidence * weight
        chain.last_used = now
        if context and context not in chain.context:
            chain.context = f"{chain.context}; {context}" if chain.context else context
        logger.debug(
            f"Tool chain {chain.id} updated: uses={chain.total_uses} "
            f"success_rate={chain.success_rate:.2f}"
        )
        return chain

    def find_matching_chains(
        self,
        previous_tools: Sequence[str],
        keywords: Sequence[str] | None = None,
        min_success_rate: float = 0.5,
    ) -> list[ChainMatch]:
        """Rank stored chains by prefix overlap, keyword hits, success and recency.

        Chains below ``min_success_rate`` or scoring zero are left out. Equal
        scores keep insertion order.
        """
        cfg = self.config
        now = self._clock()
        matches: list[ChainMatch] = []

        for chain in self._chains.values():
            success_rate = chain.success_rate
            if success_rate < min_success_rate:
                continue

            score = 0.0
            reasons: list[str] = []

            if previous_tools:
                prefix = _common_prefix_length(previous_tools, chain.sequence)
                if prefix > 0:
                    score += prefix * cfg.prefix_match_weight
                    reasons.append(f"Matches {prefix} previous tools")

            if keywords:
                context_lower = chain.context.lower()
                hits = [kw for kw in keywords if kw.lower() in context_lower]
                if hits:
                    score += len(hits) * cfg.keyword_match_weight
                    reasons.append(f"Context matches: {', '.join(hits)}")

            if success_rate > cfg.high_success_rate_threshold:
                score += cfg.high_success_bonus
                reasons.append("High success rate")

            days_since_use = (now - chain.last_used).total_seconds() / 86400
            if days_since_use < cfg.recent_use_days_threshold:
                score += cfg.recent_use_bonus
                reasons.append("Recently used")

            if score > 0:
                matches.append(ChainMatch(chain, score, "; ".join(reasons)))

        matches.sort(key=lambda m: m.match_score, reverse=True)
        logger.debug(
            f"Found {len(matches)} matching chain(s)"
            + (f", top {matches[0].chain.id}" if matches else "")
        )
        return matches

    def suggest_next_tool(self, previous_tools: Sequence[str]) -> list[ToolSuggestion]:
        """Suggest tools that followed ``previous_tools`` in stored chains.

        Only chains having ``previous_tools`` as an exact, shorter prefix
        count. A tool's score is the best success_rate * average_confidence
        over those chains.
        """
        previous = tuple(previous_tools)
        scores: dict[str, float] = {}
        reasons: dict[str, list[str]] = {}

        for chain in self._chains.values():
            if len(chain.sequence) <= len(previous) or chain.sequence[: len(previous)] != previous:
                continue
            next_tool = chain.sequence[len(previous)]
            rate = chain.success_rate
            scores[next_tool] = max(scores.get(next_tool, 0.0), rate * chain.average_confidence)
            reasons.setdefault(next_tool, []).append(
                f"Found in {chain.id} (success rate: {rate * 100:.0f}%)"
            )

        suggestions = [
            ToolSuggestion(tool, score, "; ".join(reasons[tool])) for tool, score in scores.items()
        ]
        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        if suggestions:
            logger.debug(f"Next tool suggestions: {[s.tool_name for s in suggestions]}")
        return suggestions

    def get_top_chains(self, limit: int = 10) -> list[ToolChain]:
        """Chains ordered by success rate, highest first."""
        ranked = sorted(self._chains.values(), key=lambda c: c.success_rate, reverse=True)
        return ranked[:limit]

    def get_stats(self) -> dict[str, Any]:
        chains = list(self._chains.values())
        if not chains:
            return {
                "total_chains": 0,
                "average_chain_length": 0.0,
                "total_uses": 0,
                "overall_success_rate": 0.0,
            }
        total_uses = sum(c.total_uses for c in chains)
        return {
            "total_chains": len(chains),
            "average_chain_length": sum(len(c.sequence) for c in chains) / len(chains),
            "total_uses": total_uses,
            "overall_success_rate": sum(c.success_count for c in chains) / total_uses,
        }

    def __len__(self) -> int:
        return len(self._chains)

    def clear(self) -> None:
        self._chains.clear()
        self._current = []
        logger.info("Tool chain library cleared")
