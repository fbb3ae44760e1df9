"""Unit tests for src/tools/tool_chains.py."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from src.config import ToolChainConfig
from src.tools.tool_chains import ToolChain, ToolChainLibrary


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def complete(
    library: ToolChainLibrary,
    tools: list[str],
    success: bool = True,
    confidence: float | None = 0.9,
    context: str | None = None,
) -> ToolChain | None:
    for tool in tools:
        library.record_tool_use(tool)
    return library.complete_chain(success, confidence, context)


class TestCompleteChain:
    """Test chain creation and updates."""

    def test_short_sequences_discarded(self) -> None:
        """Fewer than two tools are not stored, and the accumulator resets."""
        library = ToolChainLibrary()
        assert complete(library, ["only"]) is None
        assert len(library) == 0
        assert library.current_chain == []

    def test_creates_chain(self) -> None:
        """A new sequence creates a chain with stable id."""
        clock = FakeClock()
        library = ToolChainLibrary(clock=clock)
        chain = complete(library, ["a", "b"], confidence=0.8, context="parsing")
        assert chain is not None
        assert chain.id == "chain-1"
        assert chain.sequence == ("a", "b")
        assert chain.success_rate == 1.0
        assert chain.average_confidence == 0.8
        assert chain.last_used == clock.now
        assert chain.context == "parsing"

    def test_missing_confidence_defaults(self) -> None:
        """A chain created without confidence starts at 0.5."""
        chain = complete(ToolChainLibrary(), ["a", "b"], confidence=None)
        assert chain.average_confidence == 0.5

    def test_zero_confidence_seed_defaults(self) -> None:
        """A new chain seeded with zero confidence starts at 0.5 too."""
        chain = complete(ToolChainLibrary(), ["a", "b"], confidence=0.0)
        assert chain.average_confidence == 0.5

    def test_updates_existing(self) -> None:
        """Repeating a sequence updates counts, rolling average and context."""
        clock = FakeClock()
        library = ToolChainLibrary(ToolChainConfig(confidence_weight=0.3), clock=clock)
        complete(library, ["a", "b"], confidence=1.0, context="first")
        clock.now += timedelta(hours=1)
        chain = complete(library, ["a", "b"], success=False, confidence=0.0, context="second")

        assert len(library) == 1
        assert chain.id == "chain-1"
        assert chain.total_uses == 2
        assert chain.success_count == 1
        assert chain.average_confidence == pytest.approx(0.7)
        assert chain.context == "first; second"
        assert chain.last_used == clock.now

        complete(library, ["a", "b"], context="first")
        assert chain.context == "first; second"

    def test_distinct_sequences_distinct_chains(self) -> None:
        """Sequences differing by one tool are separate chains."""
        library = ToolChainLibrary()
        complete(library, ["a", "b", "c"])
        chain = complete(library, ["a", "b", "d"])
        assert len(library) == 2
        assert chain.id == "chain-2"


class TestFindMatchingChains:
    """Test ranked matching."""

    def test_scores_prefix_keywords_success_recency(self) -> None:
        """Each component adds its configured weight."""
        clock = FakeClock()
        library = ToolChainLibrary(clock=clock)
        complete(library, ["search", "read", "edit"], context="Refactor parser")

        matches = library.find_matching_chains(["search", "read"], ["parser", "lexer"])
        assert len(matches) == 1
        match = matches[0]
        assert match.match_score == pytest.approx(2 * 10 + 1 * 5 + 5 + 3)
        assert match.reason == (
            "Matches 2 previous tools; Context matches: parser; High success rate; Recently used"
        )

    def test_filters_low_success(self) -> None:
        """Chains below min_success_rate are dropped."""
        library = ToolChainLibrary()
        complete(library, ["a", "b"], success=False)
        assert library.find_matching_chains(["a"]) == []
        assert len(library.find_matching_chains(["a"], min_success_rate=0.0)) == 1

    def test_stale_unmatched_chain_scores_zero(self) -> None:
        """A chain with no matching signal at all is left out."""
        clock = FakeClock()
        library = ToolChainLibrary(ToolChainConfig(high_success_rate_threshold=1.0), clock=clock)
        complete(library, ["a", "b"])
        clock.now += timedelta(days=30)
        assert library.find_matching_chains(["z"], min_success_rate=0.0) == []

    def test_ties_keep_insertion_order(self) -> None:
        """Equal scores keep the order chains were created."""
        library = ToolChainLibrary()
        complete(library, ["x", "b"])
        complete(library, ["y", "b"])
        matches = library.find_matching_chains([])
        assert [m.chain.id for m in matches] == ["chain-1", "chain-2"]

    def test_higher_prefix_ranks_first(self) -> None:
        """Longer prefix overlap wins."""
        library = ToolChainLibrary()
        complete(library, ["a", "x"])
        complete(library, ["a", "b", "c"])
        matches = library.find_matching_chains(["a", "b"])
        assert matches[0].chain.sequence == ("a", "b", "c")


class TestSuggestNextTool:
    """Test next-tool suggestions."""

    def test_round_trip(self) -> None:
        """After learning a,b,c the tool after a,b is c."""
        library = ToolChainLibrary()
        complete(library, ["a", "b", "c"], success=True, confidence=0.9)
        suggestions = library.suggest_next_tool(["a", "b"])
        assert suggestions[0].tool_name == "c"
        assert suggestions[0].confidence == pytest.approx(0.9)
        assert suggestions[0].reason == "Found in chain-1 (success rate: 100%)"

    def test_full_sequence_not_a_prefix(self) -> None:
        """A chain equal to the previous tools suggests nothing."""
        library = ToolChainLibrary()
        complete(library, ["a", "b"])
        assert library.suggest_next_tool(["a", "b"]) == []

    def test_max_over_chains_and_reasons_joined(self) -> None:
        """The best chain's score wins and every contributing chain is cited."""
        library = ToolChainLibrary()
        complete(library, ["a", "b", "c"], confidence=0.4)
        complete(library, ["a", "b", "d"], confidence=0.8)
        complete(library, ["a", "b", "c", "e"], confidence=0.6)
        suggestions = library.suggest_next_tool(["a", "b"])
        assert [s.tool_name for s in suggestions] == ["d", "c"]
        assert suggestions[1].confidence == pytest.approx(0.6)
        assert suggestions[1].reason.count("Found in") == 2

    def test_empty_prefix_suggests_first_tools(self) -> None:
        """With no history every chain's first tool is a candidate."""
        library = ToolChainLibrary()
        complete(library, ["a", "b"])
        assert [s.tool_name for s in library.suggest_next_tool([])] == ["a"]

    @given(tools=st.lists(st.sampled_from(["a", "b", "c", "d"]), min_size=2, max_size=6))
    @settings(max_examples=30, deadline=None)
    def test_learned_continuation_is_suggested(self, tools: list[str]) -> None:
        """Any learned sequence suggests its next tool after each proper prefix."""
        library = ToolChainLibrary()
        complete(library, tools, success=True, confidence=0.9)
        for cut in range(len(tools)):
            names = [s.tool_name for s in library.suggest_next_tool(tools[:cut])]
            assert tools[cut] in names


class TestStats:
    """Test reporting helpers."""

    def test_top_chains_and_stats(self) -> None:
        """Top chains sort by success rate; stats aggregate all chains."""
        library = ToolChainLibrary()
        complete(library, ["a", "b"], success=False)
        complete(library, ["c", "d", "e"], success=True)
        assert [c.id for c in library.get_top_chains(1)] == ["chain-2"]

        stats = library.get_stats()
        assert stats["total_chains"] == 2
        assert stats["average_chain_length"] == 2.5
        assert stats["total_uses"] == 2
        assert stats["overall_success_rate"] == 0.5

    def test_empty_stats_and_clear(self) -> None:
        """An empty library reports zeros; clear() resets everything."""
        library = ToolChainLibrary()
        complete(library, ["a", "b"])
        library.record_tool_use("pending")
        library.clear()
        assert library.current_chain == []
        assert library.get_stats()["total_chains"] == 0

    def test_to_dict(self) -> None:
        """Serialized chains are JSON friendly."""
        chain = complete(ToolChainLibrary(clock=FakeClock()), ["a", "b"])
        data = chain.to_dict()
        assert data["sequence"] == ["a", "b"]
        assert data["last_used"] == "2025-01-01T00:00:00+00:00"
