from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolApprovalRequested:
    """The model asked for a gated tool; nothing has been executed."""

    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    agent: str = ""


@dataclass(frozen=True)
class AgentHandoff:
    from_agent: str
    to_agent: str


@dataclass(frozen=True)
class ToolCompleted:
    tool_name: str
    agent: str
    is_error: bool = False


@dataclass(frozen=True)
class StreamEnd:
    agent: str


RunEvent = TextDelta | ToolApprovalRequested | AgentHandoff | ToolCompleted | StreamEnd
