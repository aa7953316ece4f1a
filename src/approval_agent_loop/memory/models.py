from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class SessionRecord:
    id: str
    organization_id: str
    user_id: str
    type: str
    title: str | None
    metadata: dict
    starred: bool
    archived: bool
    created_at: str
    updated_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "userId": self.user_id,
            "type": self.type,
            "title": self.title,
            "metadata": self.metadata,
            "starred": self.starred,
            "archived": self.archived,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class InteractionRecord:
    id: str
    session_id: str
    sequence: int
    type: str
    content: str
    metadata: dict = field(default_factory=dict)
    cost_credits: int = 0
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "sequence": self.sequence,
            "type": self.type,
            "content": self.content,
            "metadata": self.metadata,
            "costCredits": self.cost_credits,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class ChargeResult:
    ok: bool
    new_balance: int
    already_charged: bool = False
