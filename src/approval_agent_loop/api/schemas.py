"""Request/response models for the HTTP surface. Wire format is camelCase."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class ChatMessage(CamelModel):
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: Optional[int] = None


class ConversationRequest(CamelModel):
    """Body of POST /conversation.

    ``message`` may be blank only when ``approvals`` resumes a pending turn.
    """
    message: str = ""
    session_id: Optional[str] = None
    conversation_history: list[ChatMessage] = Field(default_factory=list)
    agent_mode: bool = False
    approvals: Any = None


class SessionUpdateRequest(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    starred: Optional[bool] = None


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class Usage(CamelModel):
    active_agent: str
    tools_used: list[str]
    credits_used: int


class ConversationResponse(CamelModel):
    message: str
    session_id: str
    agent_mode: bool
    usage: Usage
    approval_rejected: bool = False


class ApprovalRequestModel(CamelModel):
    id: str
    tool_name: str
    arguments: dict[str, Any]
    agent: str
    timestamp: int
    justification: str = ""


class PendingApprovalResponse(CamelModel):
    message: str
    status: Literal["pending_approval"] = "pending_approval"
    approval_requests: list[ApprovalRequestModel]
    session_id: str
    conversation_history: list[ChatMessage]


class ErrorResponse(BaseModel):
    error: str
