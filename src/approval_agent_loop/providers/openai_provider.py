import json
from collections.abc import Callable

import openai
from loguru import logger
from tenacity import retry

from approval_agent_loop.providers.common import default_retry_kwargs, emit_text
from approval_agent_loop.tool import Tool

# Map OpenAI finish reasons to Anthropic-style stop reasons.
_STOP_REASON_MAP = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "length": "max_tokens",
}


def _assistant_to_openai(content: str | list[dict]) -> dict:
    if isinstance(content, str):
        return {"role": "assistant", "content": content}

    text_parts = [block["text"] for block in content if block.get("type") == "text"]
    tool_calls = [
        {
            "id": block["id"],
            "type": "function",
            "function": {"name": block["name"], "arguments": json.dumps(block["input"])},
        }
        for block in content
        if block.get("type") == "tool_use"
    ]
    oai_msg: dict = {"role": "assistant", "content": "\n".join(text_parts) if text_parts else None}
    if tool_calls:
        oai_msg["tool_calls"] = tool_calls
    return oai_msg


def _tool_result_text(content: object) -> str:
    if isinstance(content, list):
        return "\n".join(b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text")
    return str(content)


def _to_openai_messages(system_prompt: str, messages: list[dict]) -> list[dict]:
    """Convert internal (Anthropic-style) messages to OpenAI chat format."""
    out: list[dict] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        role = msg["role"]
        content = msg.get("content", "")

        if role == "assistant":
            out.append(_assistant_to_openai(content))
        elif role == "user" and isinstance(content, list):
            # tool_result blocks become role=tool messages
            text_parts: list[str] = []
            for block in content:
                if block.get("type") == "tool_result":
                    out.append({
                        "role": "tool",
                        "tool_call_id": block["tool_use_id"],
                        "content": _tool_result_text(block.get("content", "")),
                    })
                elif block.get("type") == "text":
                    text_parts.append(block["text"])
            if text_parts:
                out.append({"role": "user", "content": "\n".join(text_parts)})
        else:
            out.append({"role": role, "content": content if isinstance(content, str) else str(content)})

    return out


class OpenAIProvider:
    def __init__(self, api_key: str):
        self._client = openai.AsyncOpenAI(api_key=api_key)

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.input_schema,
                },
            }
            for t in tools
        ]

    @retry(**default_retry_kwargs((
        openai.RateLimitError,
        openai.APIConnectionError,
        openai.APITimeoutError,
    )))
    async def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
        *,
        on_text_delta: Callable[[str], None] | None = None,
    ) -> tuple[dict, list[dict], str]:
        """Stream a chat response from OpenAI, forwarding text deltas as they arrive.

        Returns (message_dict, tool_use_blocks, stop_reason) in internal
        (Anthropic-style) format.
        """
        oai_messages = _to_openai_messages(system_prompt, messages)

        text_content = ""
        # index -> {"id", "name", "arguments_parts"}
        tool_calls_acc: dict[int, dict] = {}
        finish_reason: str | None = None

        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(oai_messages)}, tools={len(tools)}"
        )
        kwargs: dict = dict(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=oai_messages,
            stream=True,
        )
        if tools:
            kwargs["tools"] = tools

        stream = await self._client.chat.completions.create(**kwargs)
        async for chunk in stream:
            choice = chunk.choices[0] if chunk.choices else None
            if choice is None:
                continue
            if choice.finish_reason:
                finish_reason = choice.finish_reason

            delta = choice.delta
            if delta is None:
                continue

            if delta.content:
                emit_text(on_text_delta, delta.content)
                text_content += delta.content

            # Tool calls arrive incrementally by index
            for tc_delta in delta.tool_calls or []:
                acc = tool_calls_acc.setdefault(tc_delta.index, {"id": "", "name": "", "arguments_parts": []})
                if tc_delta.id:
                    acc["id"] = tc_delta.id
                if tc_delta.function:
                    if tc_delta.function.name:
                        acc["name"] = tc_delta.function.name
                    if tc_delta.function.arguments:
                        acc["arguments_parts"].append(tc_delta.function.arguments)

        stop_reason = _STOP_REASON_MAP.get(finish_reason or "stop", "end_turn")

        assistant_content: list[dict] = []
        tool_use_blocks: list[dict] = []
        if text_content:
            assistant_content.append({"type": "text", "text": text_content})

        for idx in sorted(tool_calls_acc):
            acc = tool_calls_acc[idx]
            raw_args = "".join(acc["arguments_parts"])
            try:
                parsed_input = json.loads(raw_args) if raw_args else {}
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse tool call arguments: {raw_args[:200]}")
                parsed_input = {}
            tool_block = {
                "type": "tool_use",
                "id": acc["id"],
                "name": acc["name"],
                "input": parsed_input,
            }
            assistant_content.append(tool_block)
            tool_use_blocks.append(tool_block)

        logger.debug(
            f"API response: stop_reason={stop_reason}, "
            f"text_len={len(text_content)}, tool_calls={len(tool_use_blocks)}"
        )

        message = {"role": "assistant", "content": assistant_content}
        return message, tool_use_blocks, stop_reason
