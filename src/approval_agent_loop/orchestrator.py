"""Turn lifecycle: validation, routing, streaming, approval and persistence.

Every call to ``Orchestrator.handle_message`` ends in exactly one of
``CompletedTurn``, ``PendingApprovalTurn`` or a raised ``OrchestratorError``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from uuid import uuid4

from loguru import logger

from approval_agent_loop.agents import AgentRegistry
from approval_agent_loop.approval_gateway import ApprovalGateway
from approval_agent_loop.credit_gate import CreditGate
from approval_agent_loop.errors import (
    OrchestratorError,
    PersistenceError,
    ProviderError,
    ProviderTimeoutError,
    ValidationError,
)
from approval_agent_loop.memory.events import EventEmitter
from approval_agent_loop.memory.session_manager import title_from_message
from approval_agent_loop.models import (
    CompletedTurn,
    HistoryMessage,
    Identity,
    PendingApprovalTurn,
    TurnScope,
    current_turn,
)
from approval_agent_loop.protocols import CapabilityProvider, SessionStore
from approval_agent_loop.stream_aggregator import ApprovalResult, StreamAggregator
from approval_agent_loop.system_prompt import build_turn_prompt

EMPTY_RESPONSE_FALLBACK = (
    "I apologize, but I wasn't able to process your request properly. Could you please try again?"
)
PROVIDER_ERROR_MESSAGE = (
    "I'm sorry, but I ran into a problem while generating a response. Please try again in a moment."
)
PROVIDER_TIMEOUT_MESSAGE = (
    "I'm sorry, but the response took too long to generate. Please try again, or ask a shorter question."
)

_HISTORY_ROLES = {"user", "assistant", "system"}


class TurnState(Enum):
    ROUTING = "routing"
    STREAMING = "streaming"
    AWAITING_APPROVAL = "awaiting_approval"
    PERSISTING = "persisting"
    DONE = "done"
    ERRORED = "errored"


_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.ROUTING: frozenset({TurnState.STREAMING, TurnState.AWAITING_APPROVAL, TurnState.ERRORED}),
    TurnState.STREAMING: frozenset({TurnState.AWAITING_APPROVAL, TurnState.PERSISTING, TurnState.ERRORED}),
    TurnState.AWAITING_APPROVAL: frozenset({TurnState.STREAMING, TurnState.DONE, TurnState.ERRORED}),
    TurnState.PERSISTING: frozenset({TurnState.DONE, TurnState.ERRORED}),
    TurnState.DONE: frozenset(),
    TurnState.ERRORED: frozenset(),
}


class _Turn:
    def __init__(self) -> None:
        self.id = str(uuid4())
        self.state = TurnState.ROUTING

    def advance(self, new_state: TurnState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal turn transition {self.state.name} -> {new_state.name} (turn={self.id})")
        logger.debug(f"Turn {self.id}: {self.state.name} -> {new_state.name}")
        self.state = new_state


@dataclass(frozen=True)
class OrchestratorSettings:
    stream_timeout_seconds: float = 120.0
    max_history_messages: int = 10
    provider_errors_as_messages: bool = True


def validate_approvals(approvals: object) -> dict[str, bool]:
    if approvals is None:
        return {}
    if not isinstance(approvals, Mapping):
        raise ValidationError("malformed approval map")
    decisions: dict[str, bool] = {}
    for key, value in approvals.items():
        if not isinstance(key, str) or not key.strip() or not isinstance(value, bool):
            raise ValidationError("malformed approval map")
        decisions[key] = value
    return decisions


def bound_history(history: Iterable[HistoryMessage], limit: int) -> tuple[HistoryMessage, ...]:
    messages = tuple(history)
    for m in messages:
        if m.role not in _HISTORY_ROLES:
            raise ValidationError(f"Unsupported history role: {m.role!r}")
    if limit <= 0:
        return ()
    return messages[-limit:]


class Orchestrator:
    def __init__(
        self,
        *,
        sessions: SessionStore,
        credit_gate: CreditGate,
        gateway: ApprovalGateway,
        registry: AgentRegistry,
        runner: CapabilityProvider,
        aggregator: StreamAggregator,
        events: EventEmitter,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        self._sessions = sessions
        self._credit_gate = credit_gate
        self._gateway = gateway
        self._registry = registry
        self._runner = runner
        self._aggregator = aggregator
        self._events = events
        self._settings = settings or OrchestratorSettings()

    async def handle_message(
        self,
        identity: Identity,
        message: str,
        history: Iterable[HistoryMessage] = (),
        *,
        session_id: str | None = None,
        agent_mode: bool = False,
        approvals: Mapping[str, bool] | None = None,
    ) -> CompletedTurn | PendingApprovalTurn:
        # Nothing below this block runs for an invalid request.
        text = (message or "").strip() if isinstance(message, str) else ""
        decisions = validate_approvals(approvals)
        if not text and not decisions:
            raise ValidationError("Message is required")
        bounded = bound_history(history, self._settings.max_history_messages)

        turn = _Turn()
        try:
            if decisions:
                return await self._resume(turn, identity, decisions, session_id)
            return await self._fresh_turn(turn, identity, text, bounded, session_id, agent_mode)
        except Exception as ex:
            if turn.state not in (TurnState.DONE, TurnState.ERRORED):
                turn.advance(TurnState.ERRORED)
            if isinstance(ex, OrchestratorError):
                logger.warning(f"Turn {turn.id} failed: {type(ex).__name__}: {ex}")
            raise

    async def _fresh_turn(
        self,
        turn: _Turn,
        identity: Identity,
        text: str,
        history: tuple[HistoryMessage, ...],
        session_id: str | None,
        agent_mode: bool,
    ) -> CompletedTurn | PendingApprovalTurn:
        self._credit_gate.ensure_can_start(identity.organization_id, agent_mode)
        sid = self._resolve_session(identity, session_id, text, agent_mode)
        self._sessions.append_interaction(sid, "user_message", text, {"agentMode": agent_mode}, 0)

        agent = self._registry.entry(agent_mode)
        prompt = build_turn_prompt([(m.role, m.content) for m in history], text)
        logger.info(f"Turn {turn.id} routed to {agent.name} (session={sid}, agent_mode={agent_mode})")

        turn.advance(TurnState.STREAMING)
        token = current_turn.set(TurnScope(identity=identity, session_id=sid))
        try:
            result = await self._aggregator.collect(
                self._runner.run(agent, prompt, stream=True),
                timeout_seconds=self._settings.stream_timeout_seconds,
                initial_agent=agent.name,
            )
        except ProviderError as ex:
            return self._provider_failure(turn, sid, agent.name, agent_mode, ex)
        finally:
            current_turn.reset(token)

        if isinstance(result, ApprovalResult):
            turn.advance(TurnState.AWAITING_APPROVAL)
            pending = self._gateway.suspend(
                result.requests,
                identity=identity,
                session_id=sid,
                turn_id=turn.id,
                message=text,
                history=history,
                agent_mode=agent_mode,
            )
            turn.advance(TurnState.DONE)
            return pending

        return self._complete(
            turn,
            identity,
            sid,
            text=result.text,
            active_agent=result.active_agent,
            tools_used=result.tools_used,
            agent_mode=agent_mode,
            approval_rejected=False,
        )

    async def _resume(
        self,
        turn: _Turn,
        identity: Identity,
        decisions: dict[str, bool],
        session_id: str | None,
    ) -> CompletedTurn:
        context = self._gateway.lookup(identity, decisions, session_id=session_id)
        turn.id = context.turn_id
        turn.advance(TurnState.AWAITING_APPROVAL)
        self._credit_gate.ensure_can_start(identity.organization_id, context.agent_mode)

        turn.advance(TurnState.STREAMING)
        token = current_turn.set(TurnScope(identity=identity, session_id=context.session_id))
        try:
            outcome = await self._gateway.consume(context, decisions)
        except ProviderError as ex:
            return self._provider_failure(turn, context.session_id, context.requests[0].agent, context.agent_mode, ex)
        finally:
            current_turn.reset(token)

        return self._complete(
            turn,
            identity,
            context.session_id,
            text=outcome.text,
            active_agent=outcome.active_agent,
            tools_used=outcome.tools_used,
            agent_mode=context.agent_mode,
            approval_rejected=outcome.approval_rejected,
        )

    def _resolve_session(self, identity: Identity, session_id: str | None, text: str, agent_mode: bool) -> str:
        if session_id:
            session = self._sessions.get_session(session_id)
            if session is None or session.organization_id != identity.organization_id:
                raise ValidationError(f"Unknown session: {session_id}", public_message="Session not found")
            return session.id
        return self._sessions.create_session(
            identity.organization_id,
            identity.user_id,
            title=title_from_message(text),
            session_type="chat",
            metadata={"agentMode": agent_mode, "webSearchEnabled": agent_mode},
        )

    def _complete(
        self,
        turn: _Turn,
        identity: Identity,
        session_id: str,
        *,
        text: str,
        active_agent: str,
        tools_used: tuple[str, ...],
        agent_mode: bool,
        approval_rejected: bool,
    ) -> CompletedTurn:
        turn.advance(TurnState.PERSISTING)
        final_text = text if text.strip() else EMPTY_RESPONSE_FALLBACK
        credits = self._credit_gate.charge_turn(
            identity.organization_id,
            turn.id,
            premium=agent_mode,
            session_id=session_id,
        )
        metadata = {
            "agentMode": agent_mode,
            "activeAgent": active_agent,
            "toolsUsed": list(tools_used),
            "approvalRejected": approval_rejected,
        }
        unlogged = not self._append_assistant(turn, session_id, final_text, metadata, credits)
        turn.advance(TurnState.DONE)
        logger.info(
            f"Turn {turn.id} completed by {active_agent} (tools={list(tools_used)}, credits={credits}, "
            f"rejected={approval_rejected})"
        )
        return CompletedTurn(
            message=final_text,
            session_id=session_id,
            active_agent=active_agent,
            tools_used=tools_used,
            credits_used=credits,
            agent_mode=agent_mode,
            approval_rejected=approval_rejected,
            unlogged=unlogged,
        )

    def _provider_failure(
        self,
        turn: _Turn,
        session_id: str,
        active_agent: str,
        agent_mode: bool,
        ex: ProviderError,
    ) -> CompletedTurn:
        if not self._settings.provider_errors_as_messages:
            raise ex

        is_timeout = isinstance(ex, ProviderTimeoutError)
        logger.opt(exception=ex).error(f"Turn {turn.id} aborted by capability provider: {ex}")
        turn.advance(TurnState.PERSISTING)
        apology = PROVIDER_TIMEOUT_MESSAGE if is_timeout else PROVIDER_ERROR_MESSAGE
        metadata = {
            "agentMode": agent_mode,
            "activeAgent": active_agent,
            "toolsUsed": [],
            "error": "timeout" if is_timeout else "provider",
        }
        unlogged = not self._append_assistant(turn, session_id, apology, metadata, 0)
        turn.advance(TurnState.DONE)
        return CompletedTurn(
            message=apology,
            session_id=session_id,
            active_agent=active_agent,
            agent_mode=agent_mode,
            errored=True,
            unlogged=unlogged,
        )

    def _append_assistant(self, turn: _Turn, session_id: str, content: str, metadata: dict, credits: int) -> bool:
        try:
            self._sessions.append_interaction(session_id, "assistant_message", content, metadata, credits)
            return True
        except PersistenceError as ex:
            logger.error(f"Turn {turn.id}: reply generated but not logged: {ex}")
            self._events.emit(
                session_id,
                "turn.unlogged",
                {"turn_id": turn.id, "session_id": session_id, "credits": credits, "error": str(ex)},
            )
            return False
