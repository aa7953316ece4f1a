import asyncio
import unittest

from approval_agent_loop.agent_runner import AgentRunner
from approval_agent_loop.agents import AgentName, build_registry
from approval_agent_loop.approval_gateway import REJECTION_ACKNOWLEDGMENT, ApprovalGateway
from approval_agent_loop.credit_gate import CreditGate
from approval_agent_loop.errors import (
    ApprovalAlreadyResolvedError,
    InsufficientCredits,
    PersistenceError,
    ProviderError,
    ProviderTimeoutError,
    ValidationError,
)
from approval_agent_loop.memory.session_manager import SessionManager
from approval_agent_loop.models import CompletedTurn, HistoryMessage, Identity, PendingApprovalTurn
from approval_agent_loop.orchestrator import (
    EMPTY_RESPONSE_FALLBACK,
    PROVIDER_ERROR_MESSAGE,
    PROVIDER_TIMEOUT_MESSAGE,
    Orchestrator,
    OrchestratorSettings,
    TurnState,
    _Turn,
    bound_history,
    validate_approvals,
)
from approval_agent_loop.protocols import CapabilityProvider, SessionStore
from approval_agent_loop.protocols import CreditLedger as CreditLedgerProtocol
from approval_agent_loop.stream_aggregator import StreamAggregator
from approval_agent_loop.tools.session_info_tool import SessionInfoTool
from tests.fakes import FakeTool, Hang, ScriptedProvider, text_step, tool_step
from tests.memory.base import MemoryStoreTestCase

WEB = "transfer_to_web_search_specialist"
DATA = "transfer_to_database_specialist"


class _Tripwire:
    """Records any use; an invalid request must not reach a collaborator."""

    def __init__(self, touched: list[str]):
        self._touched = touched

    def __getattr__(self, name: str):
        self._touched.append(name)
        raise AssertionError(f"collaborator touched: {name}")


class _UnloggedSessions(SessionManager):
    def append_interaction(self, session_id, interaction_type, content, metadata=None, cost_credits=0):
        if interaction_type == "assistant_message":
            raise PersistenceError("disk full")
        return super().append_interaction(session_id, interaction_type, content, metadata, cost_credits)


class OrchestratorTests(MemoryStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.org_id = self._make_org(credits=10)
        self.identity = Identity(user_id="user-1", organization_id=self.org_id)
        self.web_search = FakeTool("web_search", "1. ITER milestone\n   https://example.com/iter", needs_approval=True)

    def _orchestrator(self, steps: list, *, sessions: SessionManager | None = None, **settings) -> Orchestrator:
        sessions = sessions or self._sessions
        self.provider = ScriptedProvider(steps)
        tools = [self.web_search, SessionInfoTool(sessions)]
        registry = build_registry(tools)
        runner = AgentRunner(provider=self.provider, registry=registry, model="m", max_tokens=100, temperature=0.0)
        aggregator = StreamAggregator()
        settings.setdefault("stream_timeout_seconds", 5.0)
        timeout = settings["stream_timeout_seconds"]
        return Orchestrator(
            sessions=sessions,
            credit_gate=CreditGate(self._ledger, self._events),
            gateway=ApprovalGateway(
                contexts=self._contexts,
                registry=registry,
                runner=runner,
                aggregator=aggregator,
                tools=tools,
                stream_timeout_seconds=timeout,
            ),
            registry=registry,
            runner=runner,
            aggregator=aggregator,
            events=self._events,
            settings=OrchestratorSettings(**settings),
        )

    def _handle(self, orchestrator: Orchestrator, message: str = "", **kwargs):
        return asyncio.run(orchestrator.handle_message(self.identity, message, **kwargs))

    def _balance(self) -> int:
        return self._ledger.get_balance(self.org_id)

    def _suspended_search(self) -> tuple[Orchestrator, PendingApprovalTurn]:
        orchestrator = self._orchestrator([
            tool_step((WEB, {})),
            tool_step(("web_search", {"query": "ITER news", "reason": "needs current events"})),
            text_step("## ITER\nThe project reached a milestone."),
        ])
        pending = self._handle(orchestrator, "What's new with ITER?", agent_mode=True)
        self.assertIsInstance(pending, PendingApprovalTurn)
        return orchestrator, pending

    def test_collaborators_satisfy_protocols(self) -> None:
        orchestrator = self._orchestrator([])
        self.assertIsInstance(self._sessions, SessionStore)
        self.assertIsInstance(self._ledger, CreditLedgerProtocol)
        self.assertIsInstance(orchestrator._runner, CapabilityProvider)

    def test_direct_answer_creates_session_and_logs_both_messages(self) -> None:
        orchestrator = self._orchestrator([text_step("Paris is the capital of France.")])

        turn = self._handle(orchestrator, "  What is the capital of France?  ")

        self.assertIsInstance(turn, CompletedTurn)
        self.assertEqual("Paris is the capital of France.", turn.message)
        self.assertEqual(AgentName.TRIAGE.value, turn.active_agent)
        self.assertEqual(0, turn.credits_used)
        self.assertFalse(turn.errored)
        self.assertEqual(10, self._balance())

        session = self._sessions.get_session(turn.session_id)
        self.assertEqual("What is the capital of France?", session.title)
        self.assertEqual({"agentMode": False, "webSearchEnabled": False}, session.metadata)
        interactions = self._sessions.list_interactions(turn.session_id)
        self.assertEqual([(1, "user_message"), (2, "assistant_message")], [(i.sequence, i.type) for i in interactions])
        self.assertEqual("What is the capital of France?", interactions[0].content)
        self.assertEqual([], self.provider.calls[0]["tools"])

    def test_premium_turn_is_charged_once(self) -> None:
        orchestrator = self._orchestrator([text_step("Hello!")])

        turn = self._handle(orchestrator, "hi", agent_mode=True)

        self.assertEqual(1, turn.credits_used)
        self.assertTrue(turn.agent_mode)
        self.assertEqual(9, self._balance())
        assistant = self._sessions.list_interactions(turn.session_id)[-1]
        self.assertEqual(1, assistant.cost_credits)
        self.assertEqual(AgentName.TRIAGE.value, assistant.metadata["activeAgent"])

    def test_history_is_folded_into_prompt_and_bounded(self) -> None:
        orchestrator = self._orchestrator([text_step("ok")], max_history_messages=2)
        history = [
            HistoryMessage("user", "first"),
            HistoryMessage("assistant", "second"),
            HistoryMessage("user", "third"),
            HistoryMessage("assistant", "fourth"),
        ]

        self._handle(orchestrator, "fifth", history=history)

        prompt = self.provider.calls[0]["messages"][0]["content"]
        self.assertEqual("Previous conversation:\nuser: third\nassistant: fourth\n\nCurrent message: fifth", prompt)

    def test_message_without_history_is_sent_verbatim(self) -> None:
        orchestrator = self._orchestrator([text_step("ok")])
        self._handle(orchestrator, "just this")
        self.assertEqual("just this", self.provider.calls[0]["messages"][0]["content"])

    def test_existing_session_is_reused(self) -> None:
        sid = self._sessions.create_session(self.org_id, "user-1", title="Ongoing")
        orchestrator = self._orchestrator([text_step("one"), text_step("two")])

        self._handle(orchestrator, "a", session_id=sid)
        turn = self._handle(orchestrator, "b", session_id=sid)

        self.assertEqual(sid, turn.session_id)
        self.assertEqual(4, self._sessions.get_highest_sequence(sid))
        self.assertEqual(1, len(self._sessions.list_sessions(self.org_id)))

    def test_unknown_or_foreign_session_is_rejected(self) -> None:
        other_org = self._organizations.create_organization("Other", credits_balance=5)
        foreign = self._sessions.create_session(other_org, "user-2")
        orchestrator = self._orchestrator([text_step("never")])

        for sid in ("missing", foreign):
            with self.assertRaises(ValidationError):
                self._handle(orchestrator, "hi", session_id=sid)

        self.assertEqual([], self.provider.calls)
        self.assertEqual(0, self._sessions.get_highest_sequence(foreign))

    def test_whitespace_message_touches_no_collaborator(self) -> None:
        touched: list[str] = []
        wire = _Tripwire(touched)
        orchestrator = Orchestrator(
            sessions=wire,
            credit_gate=wire,
            gateway=wire,
            registry=wire,
            runner=wire,
            aggregator=wire,
            events=wire,
        )

        for message in ("", "   \n\t"):
            with self.assertRaises(ValidationError) as ctx:
                asyncio.run(orchestrator.handle_message(self.identity, message))
            self.assertEqual(400, ctx.exception.status_code)

        with self.assertRaises(ValidationError):
            asyncio.run(orchestrator.handle_message(self.identity, "hi", approvals={"a": "yes"}))
        self.assertEqual([], touched)

    def test_insufficient_credits_creates_nothing(self) -> None:
        broke_org = self._make_org(credits=0, user_id="user-9")
        orchestrator = self._orchestrator([text_step("never")])

        with self.assertRaises(InsufficientCredits) as ctx:
            asyncio.run(orchestrator.handle_message(Identity("user-9", broke_org), "hi", agent_mode=True))

        self.assertEqual(402, ctx.exception.status_code)
        self.assertEqual([], self._sessions.list_sessions(broke_org))
        self.assertEqual([], self.provider.calls)

    def test_empty_answer_is_replaced_with_fallback(self) -> None:
        orchestrator = self._orchestrator([text_step("")])
        turn = self._handle(orchestrator, "hi")
        self.assertEqual(EMPTY_RESPONSE_FALLBACK, turn.message)

    def test_data_specialist_reads_the_current_session(self) -> None:
        orchestrator = self._orchestrator([
            tool_step((DATA, {})),
            tool_step(("get_session_info", {})),
            text_step("This session has 1 message so far."),
        ])

        turn = self._handle(orchestrator, "How many messages are in this session?", agent_mode=True)

        self.assertEqual(AgentName.DATA.value, turn.active_agent)
        self.assertEqual(("get_session_info",), turn.tools_used)
        tool_output = self.provider.calls[2]["messages"][-1]["content"][0]["content"]
        self.assertIn('Session "How many messages are in this session?"', tool_output)
        self.assertIn("Messages: 1", tool_output)

    def test_session_tool_cannot_read_other_organizations(self) -> None:
        other_org = self._organizations.create_organization("Other", credits_balance=5)
        foreign = self._sessions.create_session(other_org, "user-2", title="Secret")
        orchestrator = self._orchestrator([
            tool_step((DATA, {})),
            tool_step(("get_session_info", {"sessionId": foreign})),
            text_step("I couldn't find that session."),
        ])

        self._handle(orchestrator, "show session", agent_mode=True)

        tool_output = self.provider.calls[2]["messages"][-1]["content"][0]["content"]
        self.assertEqual("Session not found", tool_output)

    def test_gated_tool_suspends_without_charge_or_assistant_message(self) -> None:
        _, pending = self._suspended_search()

        request = pending.approval_requests[0]
        self.assertEqual("web_search", request.tool_name)
        self.assertEqual({"query": "ITER news", "reason": "needs current events"}, request.arguments)
        self.assertEqual(AgentName.WEB_SEARCH.value, request.agent)
        self.assertEqual("needs current events", request.justification)
        self.assertEqual(10, self._balance())
        self.assertEqual([], self.web_search.calls)
        interactions = self._sessions.list_interactions(pending.session_id)
        self.assertEqual(["user_message"], [i.type for i in interactions])
        self.assertEqual("What's new with ITER?", pending.conversation_history[-1].content)

    def test_approval_path_executes_tool_and_charges_once(self) -> None:
        orchestrator, pending = self._suspended_search()
        decisions = {pending.approval_requests[0].id: True}

        turn = self._handle(orchestrator, "", approvals=decisions, session_id=pending.session_id)

        self.assertIsInstance(turn, CompletedTurn)
        self.assertIn("web_search", turn.tools_used)
        self.assertTrue(turn.message.strip())
        self.assertFalse(turn.approval_rejected)
        self.assertEqual(1, turn.credits_used)
        self.assertEqual(9, self._balance())
        self.assertEqual(1, len(self.web_search.calls))
        interactions = self._sessions.list_interactions(pending.session_id)
        self.assertEqual(["user_message", "assistant_message"], [i.type for i in interactions])
        self.assertEqual(["web_search"], interactions[1].metadata["toolsUsed"])

        with self.assertRaises(ApprovalAlreadyResolvedError):
            self._handle(orchestrator, "", approvals=decisions)
        self.assertEqual(9, self._balance())
        self.assertEqual(1, len(self.web_search.calls))
        self.assertEqual(2, self._sessions.get_highest_sequence(pending.session_id))

    def test_rejection_path_skips_tool_and_charges_once(self) -> None:
        orchestrator, pending = self._suspended_search()

        turn = self._handle(orchestrator, "", approvals={pending.approval_requests[0].id: False})

        self.assertTrue(turn.approval_rejected)
        self.assertEqual(REJECTION_ACKNOWLEDGMENT, turn.message)
        self.assertEqual((), turn.tools_used)
        self.assertEqual([], self.web_search.calls)
        self.assertEqual(1, turn.credits_used)
        self.assertEqual(9, self._balance())

    def test_resume_rechecks_credits_before_resolving(self) -> None:
        orchestrator, pending = self._suspended_search()
        self._store.execute("UPDATE organizations SET credits_balance = 0 WHERE id = ?", (self.org_id,))
        self._store.commit()
        decisions = {pending.approval_requests[0].id: True}

        with self.assertRaises(InsufficientCredits):
            self._handle(orchestrator, "", approvals=decisions)

        self.assertEqual([], self.web_search.calls)
        context_id = self._contexts.context_ids_for_requests(list(decisions))[pending.approval_requests[0].id]
        self.assertEqual("pending", self._contexts.get(context_id).status)

    def test_provider_failure_becomes_errored_apology(self) -> None:
        orchestrator = self._orchestrator([RuntimeError("upstream 500")])

        turn = self._handle(orchestrator, "hi", agent_mode=True)

        self.assertTrue(turn.errored)
        self.assertEqual(PROVIDER_ERROR_MESSAGE, turn.message)
        self.assertEqual(0, turn.credits_used)
        self.assertEqual(10, self._balance())
        assistant = self._sessions.list_interactions(turn.session_id)[-1]
        self.assertEqual("provider", assistant.metadata["error"])
        self.assertEqual(0, assistant.cost_credits)

    def test_timeout_uses_a_different_apology(self) -> None:
        orchestrator = self._orchestrator([Hang()], stream_timeout_seconds=0.05)

        turn = self._handle(orchestrator, "hi")

        self.assertTrue(turn.errored)
        self.assertEqual(PROVIDER_TIMEOUT_MESSAGE, turn.message)
        self.assertNotEqual(PROVIDER_ERROR_MESSAGE, turn.message)
        assistant = self._sessions.list_interactions(turn.session_id)[-1]
        self.assertEqual("timeout", assistant.metadata["error"])

    def test_provider_errors_propagate_when_configured(self) -> None:
        orchestrator = self._orchestrator([RuntimeError("boom")], provider_errors_as_messages=False)
        with self.assertRaises(ProviderError):
            self._handle(orchestrator, "hi")

        orchestrator = self._orchestrator([Hang()], provider_errors_as_messages=False, stream_timeout_seconds=0.05)
        with self.assertRaises(ProviderTimeoutError) as ctx:
            self._handle(orchestrator, "hi")
        self.assertEqual(504, ctx.exception.status_code)

    def test_reply_survives_when_assistant_message_cannot_be_logged(self) -> None:
        sessions = _UnloggedSessions(self._store, self._events)
        orchestrator = self._orchestrator([text_step("Here you go.")], sessions=sessions)

        turn = self._handle(orchestrator, "hi", agent_mode=True)

        self.assertEqual("Here you go.", turn.message)
        self.assertTrue(turn.unlogged)
        self.assertEqual(1, turn.credits_used)
        unlogged = self._events.list_events(event_type="turn.unlogged")
        self.assertEqual(1, len(unlogged))
        self.assertEqual(1, unlogged[0]["payload"]["credits"])

    def test_parallel_turns_on_one_session_get_distinct_sequences(self) -> None:
        sid = self._sessions.create_session(self.org_id, "user-1")
        orchestrator = self._orchestrator([text_step(f"answer {i}") for i in range(12)])

        async def run_all():
            return await asyncio.gather(
                *(orchestrator.handle_message(self.identity, f"question {i}", session_id=sid) for i in range(12))
            )

        turns = asyncio.run(run_all())

        self.assertTrue(all(isinstance(t, CompletedTurn) for t in turns))
        interactions = self._sessions.list_interactions(sid)
        self.assertEqual(list(range(1, 25)), [i.sequence for i in interactions])
        self.assertEqual(12, sum(1 for i in interactions if i.type == "user_message"))
        self.assertEqual(12, sum(1 for i in interactions if i.type == "assistant_message"))

    def test_each_call_has_exactly_one_outcome(self) -> None:
        orchestrator = self._orchestrator([
            text_step("direct"),
            tool_step((WEB, {})),
            tool_step(("web_search", {"query": "q"})),
            RuntimeError("boom"),
        ])
        outcomes = [
            self._handle(orchestrator, message, agent_mode=agent_mode)
            for message, agent_mode in (("a", False), ("b", True), ("c", False))
        ]

        self.assertEqual(
            [CompletedTurn, PendingApprovalTurn, CompletedTurn],
            [type(o) for o in outcomes],
        )
        self.assertFalse(outcomes[0].errored)
        self.assertTrue(outcomes[2].errored)


class TurnStateTests(unittest.TestCase):
    def test_legal_path_through_approval(self) -> None:
        turn = _Turn()
        for state in (
            TurnState.STREAMING,
            TurnState.AWAITING_APPROVAL,
            TurnState.STREAMING,
            TurnState.PERSISTING,
            TurnState.DONE,
        ):
            turn.advance(state)
        self.assertEqual(TurnState.DONE, turn.state)

    def test_illegal_transition_raises(self) -> None:
        turn = _Turn()
        with self.assertRaises(RuntimeError):
            turn.advance(TurnState.DONE)
        turn.advance(TurnState.ERRORED)
        with self.assertRaises(RuntimeError):
            turn.advance(TurnState.STREAMING)


class InputValidationTests(unittest.TestCase):
    def test_validate_approvals(self) -> None:
        self.assertEqual({}, validate_approvals(None))
        self.assertEqual({"a": True, "b": False}, validate_approvals({"a": True, "b": False}))
        for bad in (["a"], {"a": 1}, {"": True}, {"  ": False}):
            with self.assertRaises(ValidationError):
                validate_approvals(bad)

    def test_bound_history_rejects_unknown_roles(self) -> None:
        with self.assertRaises(ValidationError):
            bound_history([HistoryMessage("tool", "x")], 10)
        self.assertEqual((), bound_history([HistoryMessage("user", "x")], 0))
