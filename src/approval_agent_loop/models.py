from __future__ import annotations

import time
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any
from uuid import uuid4


def new_approval_id() -> str:
    return f"approval_{uuid4().hex}"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Identity:
    user_id: str
    organization_id: str


@dataclass(frozen=True)
class HistoryMessage:
    role: str
    content: str
    timestamp: int | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        return data


@dataclass(frozen=True)
class ApprovalRequest:
    id: str
    tool_name: str
    arguments: dict[str, Any]
    agent: str
    timestamp: int
    justification: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "toolName": self.tool_name,
            "arguments": self.arguments,
            "agent": self.agent,
            "timestamp": self.timestamp,
            "justification": self.justification,
        }


@dataclass(frozen=True)
class PendingContext:
    """Everything a later resume call needs to finish a suspended turn."""

    id: str
    session_id: str
    organization_id: str
    user_id: str
    turn_id: str
    message: str
    history: tuple[HistoryMessage, ...]
    agent_mode: bool
    requests: tuple[ApprovalRequest, ...]
    status: str = "pending"
    created_at: str = ""
    expires_at: str = ""

    @property
    def request_ids(self) -> frozenset[str]:
        return frozenset(r.id for r in self.requests)


@dataclass(frozen=True)
class TurnScope:
    """Who a running turn belongs to. Tools read it instead of trusting model arguments."""

    identity: Identity
    session_id: str


current_turn: ContextVar[TurnScope | None] = ContextVar("current_turn", default=None)


@dataclass(frozen=True)
class CompletedTurn:
    message: str
    session_id: str
    active_agent: str
    tools_used: tuple[str, ...] = ()
    credits_used: int = 0
    agent_mode: bool = False
    approval_rejected: bool = False
    errored: bool = False
    unlogged: bool = False


@dataclass(frozen=True)
class PendingApprovalTurn:
    message: str
    session_id: str
    approval_requests: tuple[ApprovalRequest, ...]
    conversation_history: tuple[HistoryMessage, ...] = ()
