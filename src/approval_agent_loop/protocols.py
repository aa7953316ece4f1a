"""Narrow interfaces the orchestrator depends on.

The SQLite classes in ``approval_agent_loop.memory`` satisfy these, but a
hosted identity/billing backend can be dropped in instead.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from approval_agent_loop.agents import AgentDescriptor
    from approval_agent_loop.memory.models import ChargeResult, InteractionRecord, SessionRecord
    from approval_agent_loop.stream_events import RunEvent


@runtime_checkable
class SessionStore(Protocol):
    def create_session(
        self,
        organization_id: str,
        user_id: str,
        *,
        title: str | None = None,
        session_type: str = "chat",
        metadata: dict | None = None,
        session_id: str | None = None,
    ) -> str: ...

    def get_session(self, session_id: str) -> SessionRecord | None: ...

    def append_interaction(
        self,
        session_id: str,
        interaction_type: str,
        content: str,
        metadata: dict | None = None,
        cost_credits: int = 0,
    ) -> int:
        """Append and return the assigned sequence number (strictly increasing per session)."""
        ...

    def get_highest_sequence(self, session_id: str) -> int: ...

    def list_interactions(self, session_id: str) -> list[InteractionRecord]: ...


@runtime_checkable
class CreditLedger(Protocol):
    def get_balance(self, organization_id: str) -> int: ...

    def check_and_charge(
        self,
        organization_id: str,
        amount: int,
        description: str,
        *,
        turn_id: str | None = None,
    ) -> ChargeResult:
        """Deduct ``amount`` only if the balance covers it. Idempotent per ``turn_id``."""
        ...


@runtime_checkable
class CapabilityProvider(Protocol):
    def run(self, agent: AgentDescriptor, prompt: str, *, stream: bool = True) -> AsyncIterator[RunEvent]: ...
