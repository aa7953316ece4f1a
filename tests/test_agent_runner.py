import asyncio
import gc
import unittest

from approval_agent_loop.agent_runner import AgentRunner
from approval_agent_loop.agents import AgentName, build_registry
from approval_agent_loop.stream_events import (
    AgentHandoff,
    StreamEnd,
    TextDelta,
    ToolApprovalRequested,
    ToolCompleted,
)
from tests.fakes import FakeTool, ScriptedProvider, text_step, tool_step

WEB = "transfer_to_web_search_specialist"
DATA = "transfer_to_database_specialist"


async def _drain(gen) -> list:
    return [event async for event in gen]


class _FailsAfterFirstDelta(ScriptedProvider):
    def __init__(self) -> None:
        super().__init__([])

    async def stream_chat(self, *args, on_text_delta=None, **kwargs):
        on_text_delta("partial ")
        await asyncio.sleep(0)
        raise RuntimeError("connection reset")


class AgentRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.web_search = FakeTool("web_search", "search results", needs_approval=True)
        self.session_info = FakeTool("get_session_info", 'Session "Demo" created on 2026-01-01. Messages: 2')
        self.registry = build_registry([self.web_search, self.session_info])

    def _runner(self, provider: ScriptedProvider, **kwargs) -> AgentRunner:
        return AgentRunner(
            provider=provider,
            registry=self.registry,
            model="m",
            max_tokens=100,
            temperature=0.0,
            **kwargs,
        )

    def _run(self, provider: ScriptedProvider, *, premium: bool = True, stream: bool = True, **kwargs) -> list:
        runner = self._runner(provider, **kwargs)
        return asyncio.run(_drain(runner.run(self.registry.entry(premium), "hello", stream=stream)))

    def test_direct_answer_streams_text_then_ends(self) -> None:
        provider = ScriptedProvider([text_step("Hi there friend")])

        events = self._run(provider)

        deltas = [e.text for e in events if isinstance(e, TextDelta)]
        self.assertEqual("Hi there friend", "".join(deltas))
        self.assertGreater(len(deltas), 1)
        self.assertEqual(StreamEnd(AgentName.TRIAGE.value), events[-1])

    def test_premium_triage_is_offered_handoff_tools_only(self) -> None:
        provider = ScriptedProvider([text_step("ok")])
        self._run(provider)
        self.assertEqual([WEB, DATA], provider.calls[0]["tools"])

    def test_non_premium_triage_has_no_handoffs(self) -> None:
        provider = ScriptedProvider([text_step("ok")])
        self._run(provider, premium=False)
        self.assertEqual([], provider.calls[0]["tools"])
        self.assertIn("Specialist agents are not available", provider.calls[0]["system_prompt"])

    def test_handoff_then_gated_tool_pauses_without_executing(self) -> None:
        provider = ScriptedProvider([
            tool_step((WEB, {})),
            tool_step(("web_search", {"query": "fusion news", "reason": "needs current data"}), text="Searching..."),
        ])

        events = self._run(provider)

        self.assertEqual(AgentHandoff(AgentName.TRIAGE.value, AgentName.WEB_SEARCH.value), events[0])
        approvals = [e for e in events if isinstance(e, ToolApprovalRequested)]
        self.assertEqual(1, len(approvals))
        self.assertEqual("web_search", approvals[0].tool_name)
        self.assertEqual({"query": "fusion news", "reason": "needs current data"}, approvals[0].arguments)
        self.assertEqual(AgentName.WEB_SEARCH.value, approvals[0].agent)
        self.assertEqual(StreamEnd(AgentName.WEB_SEARCH.value), events[-1])
        self.assertEqual([], self.web_search.calls)
        self.assertEqual(["web_search"], provider.calls[1]["tools"])
        self.assertIn("web search specialist", provider.calls[1]["system_prompt"])

    def test_every_gated_call_in_a_step_is_reported(self) -> None:
        provider = ScriptedProvider([
            tool_step((WEB, {})),
            tool_step(("web_search", {"query": "a"}), ("web_search", {"query": "b"})),
        ])

        events = self._run(provider)

        queries = [e.arguments["query"] for e in events if isinstance(e, ToolApprovalRequested)]
        self.assertEqual(["a", "b"], queries)

    def test_data_specialist_runs_ungated_tool_and_answers(self) -> None:
        provider = ScriptedProvider([
            tool_step((DATA, {})),
            tool_step(("get_session_info", {})),
            text_step("Your session has 2 messages."),
        ])

        events = self._run(provider)

        self.assertIn(ToolCompleted("get_session_info", AgentName.DATA.value, False), events)
        self.assertEqual(StreamEnd(AgentName.DATA.value), events[-1])
        self.assertEqual(1, len(self.session_info.calls))
        tool_result = provider.calls[2]["messages"][-1]["content"][0]
        self.assertEqual("tool_result", tool_result["type"])
        self.assertIn("Messages: 2", tool_result["content"])

    def test_ambiguous_handoff_answers_directly(self) -> None:
        provider = ScriptedProvider([
            tool_step((WEB, {}), (DATA, {})),
            text_step("Here is a direct answer."),
        ])

        events = self._run(provider)

        self.assertFalse(any(isinstance(e, AgentHandoff) for e in events))
        self.assertEqual([], provider.calls[1]["tools"])
        self.assertIn("no handoff was made", provider.calls[1]["messages"][0]["content"])
        self.assertEqual(StreamEnd(AgentName.TRIAGE.value), events[-1])

    def test_repeated_handoff_to_same_specialist_is_not_ambiguous(self) -> None:
        provider = ScriptedProvider([tool_step((DATA, {}), (DATA, {})), text_step("done")])

        events = self._run(provider)

        self.assertEqual(AgentHandoff(AgentName.TRIAGE.value, AgentName.DATA.value), events[0])

    def test_tool_failure_is_reported_and_loop_continues(self) -> None:
        failing = FakeTool("get_session_info", error=RuntimeError("db down"))
        self.registry = build_registry([self.web_search, failing])
        provider = ScriptedProvider([tool_step((DATA, {})), tool_step(("get_session_info", {})), text_step("Sorry.")])

        events = self._run(provider)

        self.assertIn(ToolCompleted("get_session_info", AgentName.DATA.value, True), events)
        tool_result = provider.calls[2]["messages"][-1]["content"][0]
        self.assertTrue(tool_result["is_error"])
        self.assertIn("db down", tool_result["content"])

    def test_step_limit_ends_the_stream(self) -> None:
        provider = ScriptedProvider([
            tool_step((DATA, {})),
            tool_step(("get_session_info", {})),
            tool_step(("get_session_info", {})),
            tool_step(("get_session_info", {})),
        ])

        events = self._run(provider, max_agent_steps=3)

        self.assertEqual(3, len(provider.calls))
        self.assertIsInstance(events[-1], StreamEnd)

    def test_long_tool_output_is_truncated(self) -> None:
        self.session_info = FakeTool("get_session_info", "x" * 500)
        self.registry = build_registry([self.web_search, self.session_info])
        provider = ScriptedProvider([tool_step((DATA, {})), tool_step(("get_session_info", {})), text_step("ok")])

        self._run(provider, max_tool_result_chars=100)

        content = provider.calls[2]["messages"][-1]["content"][0]["content"]
        self.assertTrue(content.startswith("x" * 100))
        self.assertIn("[OUTPUT TRUNCATED", content)

    def test_non_streaming_yields_single_text_event(self) -> None:
        provider = ScriptedProvider([text_step("one two three")])

        events = self._run(provider, stream=False)

        self.assertEqual([TextDelta("one two three"), StreamEnd(AgentName.TRIAGE.value)], events)

    def test_early_close_leaves_no_unretrieved_step_failure(self) -> None:
        runner = self._runner(_FailsAfterFirstDelta())

        async def scenario() -> tuple:
            reported: list[dict] = []
            asyncio.get_running_loop().set_exception_handler(lambda _loop, context: reported.append(context))
            events = runner.run(self.registry.entry(True), "hello")
            first = await anext(events)
            for _ in range(3):
                await asyncio.sleep(0)
            await events.aclose()
            await asyncio.sleep(0)
            gc.collect()
            return first, reported

        first, reported = asyncio.run(scenario())

        self.assertEqual(TextDelta("partial "), first)
        self.assertEqual([], reported)

    def test_provider_failure_propagates(self) -> None:
        provider = ScriptedProvider([RuntimeError("boom")])
        with self.assertRaises(RuntimeError):
            self._run(provider)


if __name__ == "__main__":
    unittest.main()
