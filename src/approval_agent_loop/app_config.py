from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str
    brave_api_key: str | None


@dataclass
class AppConfig:
    provider_name: str
    model: str
    max_tokens: int
    temperature: float
    max_tool_result_chars: int
    max_agent_steps: int
    max_history_messages: int
    stream_timeout_seconds: float
    approval_ttl_seconds: int
    turn_credit_cost: int
    provider_errors_as_messages: bool
    memory_db_path: str
    event_retention_days: int
    max_events: int
    host: str
    port: int
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        provider_name=config.get("Provider", "anthropic").strip().lower(),
        model=config.get("Model", "claude-sonnet-4-5-20250929"),
        max_tokens=int(config.get("MaxTokens", 4096)),
        temperature=float(config.get("Temperature", 0.7)),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        max_agent_steps=int(config.get("MaxAgentSteps", 8)),
        max_history_messages=int(config.get("MaxHistoryMessages", 10)),
        stream_timeout_seconds=float(config.get("StreamTimeoutSeconds", 120)),
        approval_ttl_seconds=int(config.get("ApprovalTtlSeconds", 3600)),
        turn_credit_cost=int(config.get("TurnCreditCost", 1)),
        provider_errors_as_messages=_to_bool(config.get("ProviderErrorsAsMessages", True), default=True),
        memory_db_path=str(config.get("MemoryDbPath", ".approval_agent/memory.db")),
        event_retention_days=int(config.get("EventRetentionDays", 30)),
        max_events=int(config.get("MaxEvents", 100_000)),
        host=str(config.get("Host", "127.0.0.1")),
        port=int(config.get("Port", 8000)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    if provider_name == "openai":
        provider_api_key = os.environ.get("OPENAI_API_KEY", "")
        provider_env_var = "OPENAI_API_KEY"
    else:
        provider_api_key = os.environ.get("ANTHROPIC_API_KEY", "")
        provider_env_var = "ANTHROPIC_API_KEY"

    return RuntimeEnv(
        provider_api_key=provider_api_key,
        provider_env_var=provider_env_var,
        brave_api_key=os.environ.get("BRAVE_API_KEY"),
    )
