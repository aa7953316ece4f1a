from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace

from loguru import logger

from approval_agent_loop.errors import OrchestratorError, ProviderError, ProviderTimeoutError
from approval_agent_loop.models import ApprovalRequest, new_approval_id, now_ms
from approval_agent_loop.stream_events import (
    AgentHandoff,
    RunEvent,
    StreamEnd,
    TextDelta,
    ToolApprovalRequested,
    ToolCompleted,
)


@dataclass(frozen=True)
class TextResult:
    text: str
    active_agent: str
    tools_used: tuple[str, ...] = ()


@dataclass(frozen=True)
class ApprovalResult:
    requests: tuple[ApprovalRequest, ...]
    active_agent: str
    tools_used: tuple[str, ...] = ()


@dataclass(frozen=True)
class _Fold:
    active_agent: str
    text: str = ""
    requests: tuple[ApprovalRequest, ...] = ()
    tools_used: tuple[str, ...] = ()
    ended: bool = False


def justification_for(event: ToolApprovalRequested) -> str:
    reason = event.arguments.get("reason")
    if isinstance(reason, str) and reason.strip():
        return reason.strip()
    query = event.arguments.get("query")
    if isinstance(query, str) and query.strip():
        return f"{event.agent} wants to use {event.tool_name} for: {query.strip()}"
    return f"{event.agent} wants to use {event.tool_name}"


def _fold(state: _Fold, event: RunEvent) -> _Fold:
    if state.ended:
        return state
    if isinstance(event, TextDelta):
        return replace(state, text=state.text + event.text)
    if isinstance(event, ToolApprovalRequested):
        request = ApprovalRequest(
            id=new_approval_id(),
            tool_name=event.tool_name,
            arguments=dict(event.arguments),
            agent=event.agent or state.active_agent,
            timestamp=now_ms(),
            justification=justification_for(event),
        )
        return replace(state, requests=(*state.requests, request))
    if isinstance(event, AgentHandoff):
        # The specialist's answer replaces whatever the delegating agent said.
        return replace(state, active_agent=event.to_agent, text="")
    if isinstance(event, ToolCompleted):
        if event.tool_name in state.tools_used:
            return state
        return replace(state, tools_used=(*state.tools_used, event.tool_name))
    if isinstance(event, StreamEnd):
        return replace(state, active_agent=event.agent or state.active_agent, ended=True)
    logger.warning(f"Ignoring unknown stream event: {type(event).__name__}")
    return state


class StreamAggregator:
    """Folds a capability event stream into exactly one turn outcome."""

    async def collect(
        self,
        events: AsyncIterator[RunEvent],
        *,
        timeout_seconds: float,
        initial_agent: str,
    ) -> TextResult | ApprovalResult:
        state = _Fold(active_agent=initial_agent)
        try:
            async with contextlib.aclosing(events) as stream:
                async with asyncio.timeout(timeout_seconds):
                    async for event in stream:
                        state = _fold(state, event)
        except TimeoutError as ex:
            raise ProviderTimeoutError(timeout_seconds) from ex
        except OrchestratorError:
            raise
        except Exception as ex:
            raise ProviderError(f"Capability stream failed: {type(ex).__name__}: {ex}") from ex

        if not state.ended:
            raise ProviderError("Capability stream ended without a completion event")

        if state.requests:
            if state.text:
                logger.debug(f"Discarding {len(state.text)} chars of text; turn is awaiting approval")
            return ApprovalResult(
                requests=state.requests,
                active_agent=state.active_agent,
                tools_used=state.tools_used,
            )
        return TextResult(text=state.text, active_agent=state.active_agent, tools_used=state.tools_used)
