from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from loguru import logger

from approval_agent_loop.agents import AgentDescriptor, AgentRegistry, HandoffTool
from approval_agent_loop.approval_gateway import requires_approval
from approval_agent_loop.provider import LLMProvider
from approval_agent_loop.stream_events import (
    AgentHandoff,
    RunEvent,
    StreamEnd,
    TextDelta,
    ToolApprovalRequested,
    ToolCompleted,
)
from approval_agent_loop.tool import Tool

_AMBIGUOUS_HANDOFF = (
    "Several specialists were requested at once, so no handoff was made. "
    "Answer the user directly."
)


def _retrieve_outcome(task: asyncio.Task) -> None:
    # A step abandoned by an early close may still have failed; mark it seen.
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Abandoned agent step failed: {task.exception()!r}")


class AgentRunner:
    """Runs one agent (plus at most one delegated specialist) as an event stream.

    Gated tools are never executed here: the stream reports each request and
    ends, leaving the decision to the caller.
    """

    def __init__(
        self,
        *,
        provider: LLMProvider,
        registry: AgentRegistry,
        model: str,
        max_tokens: int,
        temperature: float,
        max_agent_steps: int = 8,
        max_tool_result_chars: int = 40_000,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._max_agent_steps = max(1, max_agent_steps)
        self._max_tool_result_chars = max_tool_result_chars

    async def run(self, agent: AgentDescriptor, prompt: str, *, stream: bool = True) -> AsyncIterator[RunEvent]:
        current = agent
        handoffs_allowed = True
        messages: list[dict] = [{"role": "user", "content": prompt}]

        for _ in range(self._max_agent_steps):
            handoff_tools = self._registry.handoff_tools(current) if handoffs_allowed else []
            tools: list[Tool] = [*current.tools, *handoff_tools]
            tool_map = {t.name: t for t in tools}

            if stream:
                queue: asyncio.Queue[str | None] = asyncio.Queue()
                task = asyncio.create_task(self._step(current, messages, tools, on_text_delta=queue.put_nowait))
                task.add_done_callback(lambda _: queue.put_nowait(None))
                try:
                    while (text := await queue.get()) is not None:
                        yield TextDelta(text)
                    message, tool_use_blocks, stop_reason = task.result()
                finally:
                    if not task.done():
                        task.cancel()
                    task.add_done_callback(_retrieve_outcome)
            else:
                message, tool_use_blocks, stop_reason = await self._step(current, messages, tools)
                text = "".join(b["text"] for b in message["content"] if b.get("type") == "text")
                if text:
                    yield TextDelta(text)

            if not tool_use_blocks:
                logger.debug(f"{current.name} finished (stop_reason={stop_reason})")
                yield StreamEnd(current.name)
                return

            handoff_blocks = [b for b in tool_use_blocks if isinstance(tool_map.get(b["name"]), HandoffTool)]
            targets = {tool_map[b["name"]].target for b in handoff_blocks}
            if len(targets) == 1:
                target = self._registry.get(targets.pop())
                logger.info(f"Handoff: {current.name} -> {target.name}")
                yield AgentHandoff(current.name, target.name)
                current = target
                messages = [{"role": "user", "content": prompt}]
                continue

            gated = [b for b in tool_use_blocks if b["name"] in tool_map and requires_approval(tool_map[b["name"]])]
            if gated:
                for block in gated:
                    yield ToolApprovalRequested(block["name"], dict(block["input"]), current.name)
                logger.info(f"{current.name} paused for approval of {len(gated)} tool call(s)")
                yield StreamEnd(current.name)
                return

            if targets:
                # The retry runs without handoff tools, so it restarts from the prompt.
                logger.warning(f"{current.name} requested {len(targets)} handoffs in one step; answering directly")
                handoffs_allowed = False
                messages = [{"role": "user", "content": f"{prompt}\n\n{_AMBIGUOUS_HANDOFF}"}]
                continue

            messages.append({"role": "assistant", "content": message["content"]})
            tool_results = await self.execute_tools(tool_use_blocks, tool_map)
            for block, result in zip(tool_use_blocks, tool_results):
                yield ToolCompleted(block["name"], current.name, bool(result.get("is_error")))
            messages.append({"role": "user", "content": tool_results})

        logger.warning(f"{current.name} stopped after {self._max_agent_steps} steps")
        yield StreamEnd(current.name)

    async def _step(
        self,
        agent: AgentDescriptor,
        messages: list[dict],
        tools: list[Tool],
        *,
        on_text_delta=None,
    ) -> tuple[dict, list[dict], str]:
        return await self._provider.stream_chat(
            self._model,
            self._max_tokens,
            self._temperature,
            agent.instructions,
            messages,
            self._provider.convert_tools(tools),
            on_text_delta=on_text_delta,
        )

    async def execute_tools(self, tool_use_blocks: list[dict], tool_map: dict[str, Tool]) -> list[dict]:
        async def run_one(block: dict) -> dict[str, Any]:
            tool_name = block["name"]
            tool_use_id = block["id"]
            tool = tool_map.get(tool_name)

            if tool is None:
                return {
                    "type": "tool_result",
                    "tool_use_id": tool_use_id,
                    "content": f'Error: unknown tool "{tool_name}"',
                    "is_error": True,
                }

            try:
                result = await tool.execute(block["input"])
                return {
                    "type": "tool_result",
                    "tool_use_id": tool_use_id,
                    "content": self._truncate_tool_result(result, tool_name),
                }
            except Exception as ex:
                logger.warning(f'Tool "{tool_name}" failed: {ex}')
                return {
                    "type": "tool_result",
                    "tool_use_id": tool_use_id,
                    "content": f'Error executing tool "{tool_name}": {ex}',
                    "is_error": True,
                }

        return list(await asyncio.gather(*(run_one(b) for b in tool_use_blocks)))

    def _truncate_tool_result(self, result: str, tool_name: str) -> str:
        if self._max_tool_result_chars <= 0 or len(result) <= self._max_tool_result_chars:
            return result

        original_length = len(result)
        logger.warning(
            f"{tool_name} output truncated from {original_length:,} "
            f"to {self._max_tool_result_chars:,} chars"
        )
        return (
            result[: self._max_tool_result_chars]
            + f"\n\n[OUTPUT TRUNCATED: Showing {self._max_tool_result_chars:,} "
            f"of {original_length:,} characters from {tool_name}]"
        )
