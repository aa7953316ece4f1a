from typing import Any

from loguru import logger

from approval_agent_loop.memory.session_manager import SessionManager
from approval_agent_loop.models import current_turn


class SessionInfoTool:
    def __init__(self, sessions: SessionManager) -> None:
        self._sessions = sessions

    @property
    def name(self) -> str:
        return "get_session_info"

    @property
    def description(self) -> str:
        return "Get information about the current chat session"

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "sessionId": {
                    "type": "string",
                    "description": "The session ID to look up (defaults to the current session)",
                },
            },
        }

    @property
    def needs_approval(self) -> bool:
        return False

    async def execute(self, tool_input: dict[str, Any]) -> str:
        scope = current_turn.get()
        session_id = str(tool_input.get("sessionId") or "").strip()
        if not session_id and scope is not None:
            session_id = scope.session_id
        if not session_id:
            return "Session not found"

        session = self._sessions.get_session(session_id)
        # Sessions of other organizations are reported as missing.
        if session is None or scope is None or session.organization_id != scope.identity.organization_id:
            return "Session not found"

        try:
            summary = self._sessions.build_session_summary(session_id)
        except ValueError as ex:
            logger.warning(f"Session lookup failed for {session_id}: {ex}")
            return "Unable to retrieve session information"

        lines = [
            f'Session "{summary["title"]}" created on {summary["created_at"][:10]}. '
            f'Messages: {summary["message_count"]}',
            f'User messages: {summary["user_message_count"]}, '
            f'assistant messages: {summary["assistant_message_count"]}',
            f'Credits used: {summary["credits_used"]}',
        ]
        if summary["starred"]:
            lines.append("Starred: yes")
        if summary["last_user_preview"]:
            lines.append(f'Last user message: {summary["last_user_preview"]}')
        return "\n".join(lines)
