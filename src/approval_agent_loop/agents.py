"""Agent variants and the routing table between them.

The set of agents is closed: ``AgentName`` enumerates every variant and
``TRANSITIONS`` lists the only delegations the triage agent may perform.
Descriptors are built once at process start and shared by every request.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from approval_agent_loop.system_prompt import (
    approved_search_instructions,
    data_instructions,
    triage_instructions,
    web_search_instructions,
)
from approval_agent_loop.tool import Tool


class AgentName(str, Enum):
    TRIAGE = "AI Assistant"
    WEB_SEARCH = "Web Search Specialist"
    DATA = "Database Specialist"


TRANSITIONS: dict[AgentName, tuple[AgentName, ...]] = {
    AgentName.TRIAGE: (AgentName.WEB_SEARCH, AgentName.DATA),
    AgentName.WEB_SEARCH: (),
    AgentName.DATA: (),
}


@dataclass(frozen=True)
class AgentDescriptor:
    name: str
    instructions: str
    tools: tuple[Tool, ...] = ()
    handoff_description: str = ""
    handoffs: tuple[str, ...] = ()


def handoff_tool_name(agent_name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", agent_name.lower()).strip("_")
    return f"transfer_to_{slug}"


class HandoffTool:
    """Model-facing tool that delegates the request to a specialist."""

    def __init__(self, target: AgentDescriptor) -> None:
        self._target = target

    @property
    def target(self) -> str:
        return self._target.name

    @property
    def name(self) -> str:
        return handoff_tool_name(self._target.name)

    @property
    def description(self) -> str:
        return f"Hand off to the {self._target.name}. {self._target.handoff_description}".strip()

    @property
    def input_schema(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}}

    @property
    def needs_approval(self) -> bool:
        return False

    async def execute(self, tool_input: dict[str, Any]) -> str:
        return f"Transferred to {self._target.name}."


class PreApprovedTool:
    """Stands in for a gated tool the user approved for exactly one invocation.

    The approved call has already run; repeating it with the same arguments
    returns that output, and any other arguments are refused without touching
    the wrapped tool.
    """

    def __init__(self, tool: Tool, arguments: dict[str, Any], output: str) -> None:
        self._tool = tool
        self._arguments = dict(arguments)
        self._output = output

    @property
    def name(self) -> str:
        return self._tool.name

    @property
    def description(self) -> str:
        return self._tool.description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._tool.input_schema

    @property
    def needs_approval(self) -> bool:
        return False

    async def execute(self, tool_input: dict[str, Any]) -> str:
        if tool_input != self._arguments:
            raise PermissionError(
                f"{self.name} was approved only for {self._arguments}; new calls need the user's approval"
            )
        return self._output


class AgentRegistry:
    def __init__(self, agents: dict[AgentName, AgentDescriptor]):
        missing = [name.value for name in AgentName if name not in agents]
        if missing:
            raise ValueError(f"Agent registry is missing: {', '.join(missing)}")
        for source, descriptor in agents.items():
            allowed = {target.value for target in TRANSITIONS[source]}
            illegal = [h for h in descriptor.handoffs if h not in allowed]
            if illegal:
                raise ValueError(f"{source.value} may not hand off to: {', '.join(illegal)}")
        self._agents = dict(agents)
        self._by_name = {descriptor.name: descriptor for descriptor in agents.values()}

    def get(self, name: AgentName | str) -> AgentDescriptor:
        if isinstance(name, AgentName):
            return self._agents[name]
        return self._by_name[name]

    def entry(self, premium: bool) -> AgentDescriptor:
        """Triage for every turn; only premium turns may delegate."""
        triage = self._agents[AgentName.TRIAGE]
        if premium:
            return triage
        return replace(triage, instructions=triage_instructions(handoffs_enabled=False), handoffs=())

    def handoff_tools(self, agent: AgentDescriptor) -> list[HandoffTool]:
        return [HandoffTool(self._by_name[name]) for name in agent.handoffs]

    def approved_agent(
        self, agent_name: str, tool: Tool, arguments: dict[str, Any], output: str, query: str
    ) -> AgentDescriptor:
        """Single-tool agent that finishes a turn after the user approved one call of ``tool``."""
        return AgentDescriptor(
            name=agent_name,
            instructions=approved_search_instructions(query),
            tools=(PreApprovedTool(tool, arguments, output),),
        )


def build_registry(tools: list[Tool]) -> AgentRegistry:
    by_name = {t.name: t for t in tools}
    web_tools = tuple(t for name, t in by_name.items() if name == "web_search")
    data_tools = tuple(t for name, t in by_name.items() if name == "get_session_info")

    web = AgentDescriptor(
        name=AgentName.WEB_SEARCH.value,
        instructions=web_search_instructions(),
        tools=web_tools,
        handoff_description="Handles requests requiring current information, recent news, or real-time data",
    )
    data = AgentDescriptor(
        name=AgentName.DATA.value,
        instructions=data_instructions(),
        tools=data_tools,
        handoff_description="Handles session management, user accounts, and platform features",
    )
    triage = AgentDescriptor(
        name=AgentName.TRIAGE.value,
        instructions=triage_instructions(),
        handoffs=tuple(target.value for target in TRANSITIONS[AgentName.TRIAGE]),
    )
    return AgentRegistry({
        AgentName.TRIAGE: triage,
        AgentName.WEB_SEARCH: web,
        AgentName.DATA: data,
    })
