from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from pydantic import Field

from ..schemas.base import BaseSchema
from ..schemas.domain import PermissionPolicy, ToolCategory

logger = logging.getLogger(__name__)


DEFAULT_CATEGORY_POLICIES: Dict[ToolCategory, PermissionPolicy] = {
    ToolCategory.read: PermissionPolicy.allow,
    ToolCategory.edit: PermissionPolicy.ask,
    ToolCategory.execute: PermissionPolicy.ask,
    ToolCategory.mcp: PermissionPolicy.ask,
    ToolCategory.other: PermissionPolicy.ask,
}


class PermissionRules(BaseSchema):
    """
    Persistent allow/ask/deny rules.

    ``tools`` entries override ``categories`` for the named tool. A category with
    no entry resolves to ``ask``.
    """

    categories: Dict[ToolCategory, PermissionPolicy] = Field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_POLICIES),
        description="Policy per tool category.",
    )
    tools: Dict[str, PermissionPolicy] = Field(
        default_factory=dict,
        description="Policy per tool name; wins over the tool's category policy.",
    )


@dataclass(frozen=True)
class PermissionResolution:
    """Resolved policy for one tool plus the rule that produced it."""

    policy: PermissionPolicy
    source: str  # yolo | tool | session_tool | session_category | category | default


class PermissionState:
    """Rules plus the run's ephemeral session grants.

    Resolution order:

    1) ``yolo`` (auto-approve everything) once set
    2) explicit per-tool rule
    3) session grant for the tool
    4) session grant for the tool's category
    5) category rule
    6) ``ask``

    Session grants and ``yolo`` survive suspend/resume of the same run through
    ``dump()``/``load()`` and are dropped by ``reset_session()``.
    """

    def __init__(
        self,
        rules: Optional[PermissionRules] = None,
        *,
        yolo: bool = False,
        granted_categories: Optional[Set[ToolCategory]] = None,
        granted_tools: Optional[Set[str]] = None,
    ) -> None:
        self.rules = rules or PermissionRules()
        self.yolo = yolo
        self.granted_categories: Set[ToolCategory] = set(granted_categories or ())
        self.granted_tools: Set[str] = set(granted_tools or ())

    def resolve(self, tool_name: str, category: Optional[ToolCategory] = None) -> PermissionResolution:
        if self.yolo:
            return PermissionResolution(PermissionPolicy.allow, "yolo")
        tool_policy = self.rules.tools.get(tool_name)
        if tool_policy is not None:
            return PermissionResolution(tool_policy, "tool")
        if tool_name in self.granted_tools:
            return PermissionResolution(PermissionPolicy.allow, "session_tool")
        if category is not None:
            if category in self.granted_categories:
                return PermissionResolution(PermissionPolicy.allow, "session_category")
            category_policy = self.rules.categories.get(category)
            if category_policy is not None:
                return PermissionResolution(category_policy, "category")
        return PermissionResolution(PermissionPolicy.ask, "default")

    def policy_for(self, tool_name: str, category: Optional[ToolCategory] = None) -> PermissionPolicy:
        return self.resolve(tool_name, category).policy

    def set_tool_policy(self, tool_name: str, policy: PermissionPolicy) -> None:
        self.rules.tools[tool_name] = policy

    def set_category_policy(self, category: ToolCategory, policy: PermissionPolicy) -> None:
        self.rules.categories[category] = policy

    def grant_category(self, category: ToolCategory) -> None:
        logger.debug(f"Session grant for category {category.value}")
        self.granted_categories.add(category)

    def grant_tool(self, tool_name: str) -> None:
        logger.debug(f"Session grant for tool {tool_name}")
        self.granted_tools.add(tool_name)

    def set_yolo(self, enabled: bool = True) -> None:
        if enabled and not self.yolo:
            logger.info("Auto-approve (yolo) enabled for the rest of the run")
        self.yolo = enabled

    def reset_session(self) -> None:
        self.yolo = False
        self.granted_categories.clear()
        self.granted_tools.clear()

    def dump(self) -> Dict[str, Any]:
        return {
            "rules": self.rules.model_dump(mode="json"),
            "yolo": self.yolo,
            "grantedCategories": sorted(c.value for c in self.granted_categories),
            "grantedTools": sorted(self.granted_tools),
        }

    @classmethod
    def load(cls, raw: Dict[str, Any]) -> "PermissionState":
        return cls(
            PermissionRules.model_validate(raw.get("rules") or {}),
            yolo=bool(raw.get("yolo", False)),
            granted_categories={ToolCategory(c) for c in raw.get("grantedCategories", [])},
            granted_tools=set(raw.get("grantedTools", [])),
        )
