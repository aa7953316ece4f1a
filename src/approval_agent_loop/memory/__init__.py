from approval_agent_loop.memory.credit_ledger import CreditLedger
from approval_agent_loop.memory.events import EventEmitter
from approval_agent_loop.memory.organizations import OrganizationDirectory
from approval_agent_loop.memory.pending_contexts import PendingContextStore
from approval_agent_loop.memory.pruning import prune_memory
from approval_agent_loop.memory.session_manager import SessionManager
from approval_agent_loop.memory.store import MemoryStore

__all__ = [
    "CreditLedger",
    "EventEmitter",
    "MemoryStore",
    "OrganizationDirectory",
    "PendingContextStore",
    "SessionManager",
    "prune_memory",
]
