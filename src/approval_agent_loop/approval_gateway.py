from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

from loguru import logger

from approval_agent_loop.agents import AgentName, AgentRegistry
from approval_agent_loop.errors import ApprovalAlreadyResolvedError, PartialApprovalError, ValidationError
from approval_agent_loop.models import (
    ApprovalRequest,
    HistoryMessage,
    Identity,
    PendingApprovalTurn,
    PendingContext,
    now_ms,
)
from approval_agent_loop.memory.pending_contexts import PendingContextStore
from approval_agent_loop.protocols import CapabilityProvider
from approval_agent_loop.stream_aggregator import StreamAggregator, TextResult
from approval_agent_loop.system_prompt import build_resume_prompt, build_turn_prompt
from approval_agent_loop.tool import Tool

WEB_SEARCH_APPROVAL_PROMPT = (
    "I need to search the web to provide you with current information. Would you like me to proceed?"
)
GENERIC_APPROVAL_PROMPT = "I need your permission to use some tools for this request. Would you like me to proceed?"
REJECTION_ACKNOWLEDGMENT = (
    "I understand you've rejected some actions. I'll proceed without those capabilities "
    "and provide the best response I can with the available information."
)

_UNKNOWN_REQUEST = "Unknown or expired approval request"


@dataclass(frozen=True)
class ResumeOutcome:
    text: str
    active_agent: str
    tools_used: tuple[str, ...]
    approval_rejected: bool
    context: PendingContext


def requires_approval(tool: Tool) -> bool:
    return bool(getattr(tool, "needs_approval", False))


class ApprovalGateway:
    """Suspends turns that need a human decision and finishes them on resume.

    Suspension only writes a PendingContext; nothing stays running between the
    two calls. Resolution is claimed atomically before any tool runs, so a
    repeated resume can neither execute the tool twice nor be charged twice.
    """

    def __init__(
        self,
        *,
        contexts: PendingContextStore,
        registry: AgentRegistry,
        runner: CapabilityProvider,
        aggregator: StreamAggregator,
        tools: list[Tool],
        stream_timeout_seconds: float = 120.0,
    ) -> None:
        self._contexts = contexts
        self._registry = registry
        self._runner = runner
        self._aggregator = aggregator
        self._tools = {t.name: t for t in tools}
        self._stream_timeout_seconds = stream_timeout_seconds

    def suspend(
        self,
        requests: tuple[ApprovalRequest, ...],
        *,
        identity: Identity,
        session_id: str,
        turn_id: str,
        message: str,
        history: tuple[HistoryMessage, ...],
        agent_mode: bool,
    ) -> PendingApprovalTurn:
        context = self._contexts.save(
            PendingContext(
                id=str(uuid4()),
                session_id=session_id,
                organization_id=identity.organization_id,
                user_id=identity.user_id,
                turn_id=turn_id,
                message=message,
                history=history,
                agent_mode=agent_mode,
                requests=requests,
            )
        )
        logger.info(f"Turn {turn_id} awaiting approval of {len(requests)} request(s) (context={context.id})")

        if all(r.tool_name == "web_search" for r in requests):
            prompt = WEB_SEARCH_APPROVAL_PROMPT
        else:
            prompt = GENERIC_APPROVAL_PROMPT
        return PendingApprovalTurn(
            message=prompt,
            session_id=session_id,
            approval_requests=requests,
            conversation_history=(*history, HistoryMessage(role="user", content=message, timestamp=now_ms())),
        )

    def lookup(self, identity: Identity, decisions: dict[str, bool], *, session_id: str | None) -> PendingContext:
        """Find the single pending turn these decisions answer. Has no side effects."""
        ids = list(decisions)
        mapping = self._contexts.context_ids_for_requests(ids)
        unknown = [i for i in ids if i not in mapping]
        if unknown:
            raise ValidationError(f"Unknown approval request id(s): {', '.join(unknown)}", public_message=_UNKNOWN_REQUEST)

        context_ids = set(mapping.values())
        if len(context_ids) != 1:
            raise ValidationError(
                f"Approval decisions span {len(context_ids)} pending turns",
                public_message="Approval decisions must belong to a single pending request",
            )

        context = self._contexts.get(context_ids.pop())
        if context is None or context.organization_id != identity.organization_id:
            raise ValidationError(f"Approval context not visible to {identity.organization_id}", public_message=_UNKNOWN_REQUEST)
        if session_id is not None and session_id != context.session_id:
            raise ValidationError(
                f"Approval context {context.id} belongs to session {context.session_id}, not {session_id}",
                public_message="Approval requests do not belong to this session",
            )
        if context.status != "pending":
            raise ApprovalAlreadyResolvedError(context.id)
        if self._contexts.is_expired(context):
            raise ValidationError(f"Approval context {context.id} expired at {context.expires_at}", public_message=_UNKNOWN_REQUEST)

        missing = context.request_ids - set(ids)
        if missing:
            raise PartialApprovalError(list(missing))
        return context

    async def consume(self, context: PendingContext, decisions: dict[str, bool]) -> ResumeOutcome:
        if not self._contexts.mark_resolved(context.id):
            raise ApprovalAlreadyResolvedError(context.id)

        parts: list[str] = []
        tools_used: list[str] = []
        active_agent = AgentName.TRIAGE.value
        rejected = [r for r in context.requests if not decisions[r.id]]

        for request in context.requests:
            if not decisions[request.id]:
                logger.info(f"Approval {request.id} rejected; {request.tool_name} will not run")
                continue
            parts.append(await self._run_approved(request, context))
            if request.tool_name not in tools_used:
                tools_used.append(request.tool_name)
            active_agent = request.agent

        if rejected:
            parts.append(REJECTION_ACKNOWLEDGMENT)

        return ResumeOutcome(
            text="\n\n".join(p for p in parts if p),
            active_agent=active_agent,
            tools_used=tuple(tools_used),
            approval_rejected=bool(rejected),
            context=context,
        )

    async def resume(
        self,
        identity: Identity,
        decisions: dict[str, bool],
        *,
        session_id: str | None = None,
    ) -> ResumeOutcome:
        context = self.lookup(identity, decisions, session_id=session_id)
        return await self.consume(context, decisions)

    async def _run_approved(self, request: ApprovalRequest, context: PendingContext) -> str:
        tool = self._tools.get(request.tool_name)
        if tool is None:
            logger.error(f"Approved tool {request.tool_name!r} is no longer registered")
            return f'Error: unknown tool "{request.tool_name}"'

        logger.info(f"Executing approved {request.tool_name} ({request.id})")
        try:
            output = await tool.execute(request.arguments)
        except Exception as ex:
            logger.warning(f'Approved tool "{request.tool_name}" failed: {ex}')
            output = f'Error executing tool "{request.tool_name}": {ex}'

        query = str(request.arguments.get("query") or context.message)
        agent = self._registry.approved_agent(request.agent, tool, request.arguments, output, query)
        prompt = build_resume_prompt(
            build_turn_prompt([(m.role, m.content) for m in context.history], context.message),
            request.tool_name,
            output,
        )
        result = await self._aggregator.collect(
            self._runner.run(agent, prompt, stream=True),
            timeout_seconds=self._stream_timeout_seconds,
            initial_agent=agent.name,
        )
        if isinstance(result, TextResult) and result.text.strip():
            return result.text
        return output
