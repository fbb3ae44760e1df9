"""Unit tests for src/tools/tool_capabilities.py."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from src.tools.tool_capabilities import (
    Complexity,
    ToolCapability,
    ToolCapabilityMatcher,
    ToolCatalog,
    ToolInfo,
    enrich_tools_with_capabilities,
    infer_capabilities,
)


def sample_tools() -> dict[str, ToolInfo]:
    return {
        "grep": ToolInfo("grep", capabilities=ToolCapability("search", ["read"], Complexity.LOW)),
        "ripgrep": ToolInfo(
            "ripgrep", capabilities=ToolCapability("search", ["read", "list"], Complexity.HIGH)
        ),
        "writer": ToolInfo("writer", capabilities=ToolCapability("data", ["write"], Complexity.LOW)),
        "plain": ToolInfo("plain", "Parse regex patterns"),
    }


class TestInferCapabilities:
    """Test capability inference from names and descriptions."""

    def test_search_tool(self) -> None:
        """Search wording yields the search category."""
        cap = infer_capabilities(ToolInfo("web_search", "Search the web for pages"))
        assert cap.category == "search"
        assert cap.tags == []
        assert cap.complexity == Complexity.LOW

    def test_data_tool_with_write_tag(self) -> None:
        """Database wording yields data; write and update yield the write tag."""
        cap = infer_capabilities(
            ToolInfo("db_writer", "Write rows to the database and update indexes")
        )
        assert cap.category == "data"
        assert cap.tags == ["write"]

    def test_first_category_wins(self) -> None:
        """Categories are checked in a fixed order."""
        cap = infer_capabilities(ToolInfo("finder", "Create a data report"))
        assert cap.category == "search"
        assert cap.tags == ["write"]

    def test_general_fallback(self) -> None:
        """Tools matching no category are general."""
        cap = infer_capabilities(ToolInfo("echo", "Repeat input"))
        assert cap.category == "general"
        assert cap.tags == []

    def test_complexity_levels(self) -> None:
        """Technical terms mean high; short descriptions low; long ones medium."""
        assert infer_capabilities(ToolInfo("t", "Uses an advanced model")).complexity == (
            Complexity.HIGH
        )
        assert infer_capabilities(ToolInfo("t", "Short")).complexity == Complexity.LOW
        assert infer_capabilities(ToolInfo("t", "word " * 25)).complexity == Complexity.MEDIUM

    def test_enrich_only_fills_missing(self, log_messages: list[str]) -> None:
        """Tools with capabilities keep them; the rest are inferred."""
        preset = ToolCapability("analysis", ["read"], Complexity.MEDIUM)
        tools = {
            "known": ToolInfo("known", capabilities=preset),
            "bare": ToolInfo("bare", "Send a notification"),
        }
        assert enrich_tools_with_capabilities(tools) == 1
        assert tools["known"].capabilities is preset
        assert tools["bare"].capabilities is not None
        assert tools["bare"].capabilities.category == "communication"
        assert any("Enriched 1 of 2" in m for m in log_messages)

    @given(
        name=st.text(max_size=20),
        description=st.text(max_size=150),
    )
    @settings(max_examples=50, deadline=None)
    def test_inference_is_total(self, name: str, description: str) -> None:
        """Any name and description produce a known category and complexity."""
        cap = infer_capabilities(ToolInfo(name, description))
        known = {"search", "data", "analysis", "generation", "transformation", "communication"}
        assert cap.category in known | {"general"}
        assert isinstance(cap.complexity, Complexity)
        assert len(cap.tags) == len(set(cap.tags))


class TestMatcher:
    """Test scoring and grouping."""

    def test_category_and_tags(self) -> None:
        """Category scores 10 and each shared tag 5; best first."""
        matches = ToolCapabilityMatcher(sample_tools()).match_tools(
            categories=["search"], tags=["read", "list"]
        )
        assert [(m.tool_name, m.score) for m in matches] == [("ripgrep", 20.0), ("grep", 15.0)]
        assert matches[1].reasons == ["Matches category: search", "Matches tags: read"]

    def test_keywords_without_capabilities(self) -> None:
        """Tools without metadata are matched on keywords at full weight."""
        matches = ToolCapabilityMatcher(sample_tools()).match_tools(keywords=["regex"])
        assert [(m.tool_name, m.score) for m in matches] == [("plain", 2.0)]
        assert matches[0].reasons == ["Matches keyword: regex"]

    def test_keywords_halved_with_capabilities(self) -> None:
        """Keyword hits count half for tools that have metadata."""
        tools = {
            "regex_tool": ToolInfo(
                "regex_tool", capabilities=ToolCapability("search", [], Complexity.LOW)
            )
        }
        matches = ToolCapabilityMatcher(tools).match_tools(keywords=["REGEX"])
        assert matches[0].score == pytest.approx(1.0)

    def test_complexity_ties_keep_order(self) -> None:
        """Exact complexity scores 2 and ties keep registration order."""
        matches = ToolCapabilityMatcher(sample_tools()).match_tools(complexity="low")
        assert [(m.tool_name, m.score) for m in matches] == [("grep", 2.0), ("writer", 2.0)]
        assert matches[0].reasons == ["Matches complexity level: low"]

    def test_no_requirements_match_nothing(self) -> None:
        """An empty query scores every tool zero."""
        assert ToolCapabilityMatcher(sample_tools()).match_tools() == []

    def test_grouping(self) -> None:
        """Categories, tags and per-category lists follow registration order."""
        matcher = ToolCapabilityMatcher(sample_tools())
        assert matcher.get_categories() == ["search", "data"]
        assert matcher.get_tags() == ["read", "list", "write"]
        assert [t.name for t in matcher.get_tools_by_category("search")] == ["grep", "ripgrep"]
        assert matcher.get_tools_by_category("missing") == []

    def test_find_similar_tools(self) -> None:
        """Similar tools exclude the tool itself and honor the limit."""
        matcher = ToolCapabilityMatcher(sample_tools())
        assert matcher.find_similar_tools("grep") == ["ripgrep", "writer"]
        assert matcher.find_similar_tools("grep", limit=1) == ["ripgrep"]
        assert matcher.find_similar_tools("plain") == []
        assert matcher.find_similar_tools("unknown") == []


class TestToolCatalog:
    """Test the registry that keeps the matcher current."""

    def test_duplicate_names_keep_first(self, log_messages: list[str]) -> None:
        """The first registration of a name wins."""
        catalog = ToolCatalog([ToolInfo("a", "first"), ToolInfo("a", "second")])
        assert len(catalog) == 1
        assert catalog.get("a").description == "first"  # type: ignore[union-attr]
        assert any("using first occurrence" in m for m in log_messages)

    def test_add_tool(self, log_messages: list[str]) -> None:
        """New tools are enriched and matchable; existing names are refused."""
        catalog = ToolCatalog([ToolInfo("grep", "Search files")])
        assert catalog.add_tool(ToolInfo("find", "Find files by name"))
        assert not catalog.add_tool(ToolInfo("find", "Other"))

        assert catalog.get("find").capabilities is not None  # type: ignore[union-attr]
        assert catalog.matcher.find_similar_tools("grep") == ["find"]
        assert any("Tool added: find" in m for m in log_messages)
        assert any("already registered" in m for m in log_messages)

    def test_register_names(self) -> None:
        """Bare names are added once; blanks and known names are skipped."""
        catalog = ToolCatalog([ToolInfo("grep")])
        assert catalog.register_names(["grep", "sed", "", "sed", "awk"]) == ["sed", "awk"]
        assert catalog.names() == ["grep", "sed", "awk"]
        assert "awk" in catalog
        assert catalog.register_names(["sed"]) == []

    def test_stats(self) -> None:
        """Stats list tools, categories and tags."""
        catalog = ToolCatalog([ToolInfo("web_search", "Search the web"), ToolInfo("fetch_url")])
        stats = catalog.get_stats()
        assert stats["tool_count"] == 2
        assert stats["tools"] == ["web_search", "fetch_url"]
        assert stats["categories"] == ["search", "general"]
        assert stats["tags"] == ["read"]
