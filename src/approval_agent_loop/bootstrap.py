from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from approval_agent_loop.agent_runner import AgentRunner
from approval_agent_loop.agents import AgentRegistry, build_registry
from approval_agent_loop.app_config import AppConfig, RuntimeEnv
from approval_agent_loop.approval_gateway import ApprovalGateway
from approval_agent_loop.credit_gate import CreditGate
from approval_agent_loop.memory import (
    CreditLedger,
    EventEmitter,
    MemoryStore,
    OrganizationDirectory,
    PendingContextStore,
    SessionManager,
    prune_memory,
)
from approval_agent_loop.orchestrator import Orchestrator, OrchestratorSettings
from approval_agent_loop.provider import LLMProvider, create_provider
from approval_agent_loop.stream_aggregator import StreamAggregator
from approval_agent_loop.tool_registry import get_all


@dataclass
class AppRuntime:
    orchestrator: Orchestrator
    sessions: SessionManager
    organizations: OrganizationDirectory
    ledger: CreditLedger
    events: EventEmitter
    registry: AgentRegistry
    memory_store: MemoryStore
    tools: list


def resolve_db_path(db_path: str) -> str:
    if db_path == ":memory:":
        return db_path
    path = Path(db_path)
    if not path.is_absolute():
        path = Path.cwd() / path
    return str(path)


def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    provider: LLMProvider | None = None,
    memory_store: MemoryStore | None = None,
) -> AppRuntime:
    """Wire every collaborator once per process. Agents and tools are shared by all requests."""
    store = memory_store or MemoryStore(resolve_db_path(app.memory_db_path))
    events = EventEmitter(store)
    sessions = SessionManager(store, events)
    ledger = CreditLedger(store, events)
    contexts = PendingContextStore(store, events, ttl_seconds=app.approval_ttl_seconds)

    prune_memory(store, event_retention_days=app.event_retention_days, max_events=app.max_events)

    tools = get_all(env.brave_api_key, sessions)
    registry = build_registry(tools)
    if provider is None:
        provider = create_provider(app.provider_name, env.provider_api_key)
    runner = AgentRunner(
        provider=provider,
        registry=registry,
        model=app.model,
        max_tokens=app.max_tokens,
        temperature=app.temperature,
        max_agent_steps=app.max_agent_steps,
        max_tool_result_chars=app.max_tool_result_chars,
    )
    aggregator = StreamAggregator()
    gateway = ApprovalGateway(
        contexts=contexts,
        registry=registry,
        runner=runner,
        aggregator=aggregator,
        tools=tools,
        stream_timeout_seconds=app.stream_timeout_seconds,
    )
    orchestrator = Orchestrator(
        sessions=sessions,
        credit_gate=CreditGate(ledger, events, turn_credit_cost=app.turn_credit_cost),
        gateway=gateway,
        registry=registry,
        runner=runner,
        aggregator=aggregator,
        events=events,
        settings=OrchestratorSettings(
            stream_timeout_seconds=app.stream_timeout_seconds,
            max_history_messages=app.max_history_messages,
            provider_errors_as_messages=app.provider_errors_as_messages,
        ),
    )
    logger.info(f"Runtime ready: provider={app.provider_name}, model={app.model}, tools={[t.name for t in tools]}")

    return AppRuntime(
        orchestrator=orchestrator,
        sessions=sessions,
        organizations=OrganizationDirectory(store),
        ledger=ledger,
        events=events,
        registry=registry,
        memory_store=store,
        tools=tools,
    )
