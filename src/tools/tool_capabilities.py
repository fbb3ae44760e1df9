"""Tool capability catalog.

Tools are described by a category, a set of tags and a complexity level.
Tools registered without that metadata get it inferred from their name and
description. The matcher ranks tools against required capabilities and
finds tools similar to a given one, which the orchestrator reports as
alternatives for recommended tools.

Scoring weights:
    category match      +10
    each matching tag    +5
    exact complexity     +2
    each keyword hit     +2 (halved when the tool has capability metadata)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

CATEGORY_WEIGHT = 10.0
TAG_WEIGHT = 5.0
COMPLEXITY_WEIGHT = 2.0
KEYWORD_WEIGHT = 2.0
KEYWORD_FACTOR_WITH_CAPABILITIES = 0.5
DEFAULT_SIMILAR_LIMIT = 3
SHORT_DESCRIPTION_LENGTH = 100

GENERAL_CATEGORY = "general"


class Complexity(str, Enum):
    """How involved a tool is to use."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# First matching category wins, so order matters
CATEGORY_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("search", ("search", "find", "query")),
    ("data", ("data", "database", "storage")),
    ("analysis", ("analysis", "analyze", "evaluate")),
    ("generation", ("create", "generate", "build")),
    ("transformation", ("transform", "convert", "format")),
    ("communication", ("communicate", "send", "notify")),
)

TAG_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("read", ("read", "get", "fetch")),
    ("write", ("write", "create", "update")),
    ("delete", ("delete", "remove")),
    ("list", ("list", "browse")),
    ("transform", ("transform", "convert")),
)

TECHNICAL_TERMS: frozenset[str] = frozenset(
    ["api", "advanced", "complex", "sophisticated", "ml", "ai"]
)


@dataclass
class ToolCapability:
    """Structured description of what a tool does."""

    category: str
    tags: list[str] = field(default_factory=list)
    complexity: Complexity | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "tags": list(self.tags),
            "complexity": self.complexity.value if self.complexity else None,
        }


@dataclass
class ToolInfo:
    """A tool known to the catalog."""

    name: str
    description: str = ""
    capabilities: ToolCapability | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "capabilities": self.capabilities.to_dict() if self.capabilities else None,
        }


@dataclass
class ToolMatch:
    """Score of one tool against a set of requirements."""

    tool_name: str
    score: float
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"tool_name": self.tool_name, "score": self.score, "reasons": list(self.reasons)}


class ToolCapabilityMatcher:
    """Rank and group tools by their capabilities.

    The matcher reads the mapping it is given and never copies it, so
    tools enriched in place are seen immediately.

    Example:
        matcher = ToolCapabilityMatcher({"grep": grep_info, "find": find_info})
        matches = matcher.match_tools(categories=["search"], keywords=["regex"])

    """

    def __init__(self, tools: Mapping[str, ToolInfo]) -> None:
        self._tools = tools

    def match_tools(
        self,
        *,
        categories: Sequence[str] | None = None,
        tags: Sequence[str] | None = None,
        complexity: Complexity | str | None = None,
        keywords: Sequence[str] | None = None,
    ) -> list[ToolMatch]:
        """Tools scoring above zero, best first. Equal scores keep registration order."""
        wanted = Complexity(complexity) if complexity is not None else None
        matches: list[ToolMatch] = []
        for name, tool in self._tools.items():
            score, reasons = self._score(tool, categories, tags, wanted, keywords)
            if score > 0:
                matches.append(ToolMatch(tool_name=name, score=score, reasons=reasons))
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches

    def _score(
        self,
        tool: ToolInfo,
        categories: Sequence[str] | None,
        tags: Sequence[str] | None,
        complexity: Complexity | None,
        keywords: Sequence[str] | None,
    ) -> tuple[float, list[str]]:
        cap = tool.capabilities
        if cap is None:
            if keywords:
                return _match_keywords(tool, keywords)
            return 0.0, []

        score = 0.0
        reasons: list[str] = []

        if categories and cap.category in categories:
            score += CATEGORY_WEIGHT
            reasons.append(f"Matches category: {cap.category}")

        if tags:
            shared = [tag for tag in tags if tag in cap.tags]
            if shared:
                score += TAG_WEIGHT * len(shared)
                reasons.append(f"Matches tags: {', '.join(shared)}")

        if complexity is not None and cap.complexity == complexity:
            score += COMPLEXITY_WEIGHT
            reasons.append(f"Matches complexity level: {complexity.value}")

        if keywords:
            keyword_score, keyword_reasons = _match_keywords(tool, keywords)
            score += keyword_score * KEYWORD_FACTOR_WITH_CAPABILITIES
            reasons.extend(keyword_reasons)

        return score, reasons

    def get_tools_by_category(self, category: str) -> list[ToolInfo]:
        return [
            tool
            for tool in self._tools.values()
            if tool.capabilities is not None and tool.capabilities.category == category
        ]

    def get_categories(self) -> list[str]:
        """Distinct categories in registration order."""
        seen: dict[str, None] = {}
        for tool in self._tools.values():
            if tool.capabilities is not None and tool.capabilities.category:
                seen.setdefault(tool.capabilities.category, None)
        return list(seen)

    def get_tags(self) -> list[str]:
        """Distinct tags in first-seen order."""
        seen: dict[str, None] = {}
        for tool in self._tools.values():
            if tool.capabilities is not None:
                for tag in tool.capabilities.tags:
                    seen.setdefault(tag, None)
        return list(seen)

    def find_similar_tools(self, tool_name: str, limit: int = DEFAULT_SIMILAR_LIMIT) -> list[str]:
        """Names of the tools closest to ``tool_name`` by category, tags and complexity.

        Unknown tools and tools without capabilities have no similar tools.
        """
        tool = self._tools.get(tool_name)
        if tool is None or tool.capabilities is None:
            return []
        cap = tool.capabilities
        matches = self.match_tools(
            categories=[cap.category] if cap.category else None,
            tags=cap.tags,
            complexity=cap.complexity,
        )
        return [m.tool_name for m in matches if m.tool_name != tool_name][: max(0, limit)]


def _match_keywords(tool: ToolInfo, keywords: Iterable[str]) -> tuple[float, list[str]]:
    text = f"{tool.name} {tool.description}".lower()
    score = 0.0
    reasons: list[str] = []
    for keyword in keywords:
        if keyword.lower() in text:
            score += KEYWORD_WEIGHT
            reasons.append(f"Matches keyword: {keyword}")
    return score, reasons


def infer_capabilities(tool: ToolInfo) -> ToolCapability:
    """Guess a tool's capabilities from substrings of its name and description."""
    text = f"{tool.name} {tool.description}".lower()

    category = GENERAL_CATEGORY
    for candidate, markers in CATEGORY_MARKERS:
        if any(marker in text for marker in markers):
            category = candidate
            break

    tags = [tag for tag, markers in TAG_MARKERS if any(marker in text for marker in markers)]

    if any(term in text for term in TECHNICAL_TERMS):
        complexity = Complexity.HIGH
    elif len(tool.description) < SHORT_DESCRIPTION_LENGTH:
        complexity = Complexity.LOW
    else:
        complexity = Complexity.MEDIUM

    return ToolCapability(category=category, tags=tags, complexity=complexity)


def enrich_tools_with_capabilities(tools: MutableMapping[str, ToolInfo]) -> int:
    """Fill in inferred capabilities for tools that have none.

    Returns:
        Number of tools enriched.

    """
    enriched = 0
    for name, tool in tools.items():
        if tool.capabilities is not None:
            continue
        tool.capabilities = infer_capabilities(tool)
        enriched += 1
        logger.debug(
            f"Inferred capabilities for {name}: category={tool.capabilities.category} "
            f"tags={tool.capabilities.tags}"
        )
    if enriched:
        logger.info(f"Enriched {enriched} of {len(tools)} tool(s) with inferred capabilities")
    return enriched


class ToolCatalog:
    """Registry of known tools with a matcher kept in sync.

    The first registration of a name wins. Later ``add_tool`` calls for the
    same name are refused with a warning, while ``register_names`` skips
    known names quietly because steps repeat their tool lists.
    """

    def __init__(self, tools: Iterable[ToolInfo] = ()) -> None:
        self._tools: dict[str, ToolInfo] = {}
        for tool in tools:
            if tool.name in self._tools:
                logger.warning(f"Duplicate tool name {tool.name!r}, using first occurrence")
                continue
            self._tools[tool.name] = tool
        enrich_tools_with_capabilities(self._tools)
        self._matcher = ToolCapabilityMatcher(self._tools)
        logger.debug(
            f"Tool catalog initialized: {len(self._tools)} tool(s), "
            f"categories={self._matcher.get_categories()}"
        )

    @property
    def matcher(self) -> ToolCapabilityMatcher:
        return self._matcher

    def add_tool(self, tool: ToolInfo) -> bool:
        """Register a tool. Returns False if the name is already taken."""
        if tool.name in self._tools:
            logger.warning(f"Tool {tool.name!r} already registered")
            return False
        self._tools[tool.name] = tool
        enrich_tools_with_capabilities(self._tools)
        self._matcher = ToolCapabilityMatcher(self._tools)
        logger.info(f"Tool added: {tool.name}")
        return True

    def register_names(self, names: Iterable[str]) -> list[str]:
        """Register bare tool names not seen before. Returns the names added."""
        added: list[str] = []
        for name in names:
            if name and name not in self._tools:
                self._tools[name] = ToolInfo(name=name)
                added.append(name)
        if added:
            enrich_tools_with_capabilities(self._tools)
            self._matcher = ToolCapabilityMatcher(self._tools)
        return added

    def get(self, name: str) -> ToolInfo | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def get_stats(self) -> dict[str, Any]:
        return {
            "tool_count": len(self._tools),
            "tools": list(self._tools),
            "categories": self._matcher.get_categories(),
            "tags": self._matcher.get_tags(),
        }
