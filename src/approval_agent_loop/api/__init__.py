"""HTTP surface.

    POST  /conversation
    GET   /sessions
    GET   /sessions/{session_id}
    PATCH /sessions/{session_id}
    GET   /health
"""

from approval_agent_loop.api.server import create_app

__all__ = ["create_app"]
