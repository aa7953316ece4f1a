from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from approval_agent_loop.tool import Tool


@dataclass(frozen=True)
class ToolGroup:
    enabled: Callable[[dict], bool]
    build: Callable[[dict], list[Tool]]


def _always(_: dict) -> bool:
    return True


def _web_search_tools(ctx: dict) -> list[Tool]:
    from approval_agent_loop.tools.web.brave_search_provider import BraveSearchProvider
    from approval_agent_loop.tools.web.web_search_tool import WebSearchTool

    # Without a key the tool is still offered; it reports that search is unavailable.
    brave_api_key = ctx.get("brave_api_key")
    return [WebSearchTool(BraveSearchProvider(brave_api_key) if brave_api_key else None)]


def _session_tools_enabled(ctx: dict) -> bool:
    return ctx.get("session_manager") is not None


def _session_tools(ctx: dict) -> list[Tool]:
    from approval_agent_loop.tools.session_info_tool import SessionInfoTool

    return [SessionInfoTool(ctx["session_manager"])]


_GROUPS = [
    ToolGroup(enabled=_always, build=_web_search_tools),
    ToolGroup(enabled=_session_tools_enabled, build=_session_tools),
]


def get_all(
    brave_api_key: str | None = None,
    session_manager=None,
) -> list[Tool]:
    ctx = {
        "brave_api_key": brave_api_key,
        "session_manager": session_manager,
    }

    tools: list[Tool] = []
    for group in _GROUPS:
        if group.enabled(ctx):
            tools.extend(group.build(ctx))
    return tools
