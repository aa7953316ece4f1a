from __future__ import annotations

import json
import sqlite3
from uuid import uuid4

from approval_agent_loop.errors import PersistenceError
from approval_agent_loop.memory.events import EventEmitter, utc_now
from approval_agent_loop.memory.models import InteractionRecord, SessionRecord
from approval_agent_loop.memory.store import MemoryStore

_TITLE_MAX_CHARS = 50


def title_from_message(message: str) -> str:
    message = message.strip()
    if len(message) <= _TITLE_MAX_CHARS:
        return message
    return message[:_TITLE_MAX_CHARS] + "..."


class SessionManager:
    def __init__(self, store: MemoryStore, events: EventEmitter):
        self._store = store
        self._events = events

    def get_session(self, session_id: str) -> SessionRecord | None:
        row = self._store.execute(
            "SELECT * FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        return self._to_session(row)

    def list_sessions(self, organization_id: str, *, limit: int = 50) -> list[SessionRecord]:
        rows = self._store.execute(
            """
            SELECT *
            FROM sessions
            WHERE organization_id = ? AND archived = 0
            ORDER BY updated_at DESC, created_at DESC
            LIMIT ?
            """,
            (organization_id, max(1, limit)),
        ).fetchall()
        return [self._to_session(row) for row in rows]

    def create_session(
        self,
        organization_id: str,
        user_id: str,
        *,
        title: str | None = None,
        session_type: str = "chat",
        metadata: dict | None = None,
        session_id: str | None = None,
    ) -> str:
        sid = session_id or str(uuid4())
        now = utc_now()
        try:
            with self._store.transaction():
                self._store.execute(
                    """
                    INSERT INTO sessions (id, organization_id, user_id, type, title, metadata_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        sid,
                        organization_id,
                        user_id,
                        session_type,
                        title,
                        json.dumps(metadata or {}, ensure_ascii=True),
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as ex:
            raise PersistenceError(f"Failed to create session for organization {organization_id}: {ex}") from ex
        self._events.emit(sid, "session.started", {"session_id": sid, "organization_id": organization_id})
        return sid

    def update_session(
        self,
        session_id: str,
        *,
        title: str | None = None,
        starred: bool | None = None,
    ) -> SessionRecord:
        session = self.get_session(session_id)
        if session is None:
            raise ValueError(f"Session does not exist: {session_id}")

        new_title = title.strip() if title is not None else session.title
        new_starred = session.starred if starred is None else starred
        with self._store.transaction():
            self._store.execute(
                "UPDATE sessions SET title = ?, starred = ?, updated_at = ? WHERE id = ?",
                (new_title, 1 if new_starred else 0, utc_now(), session_id),
            )
        updated = self.get_session(session_id)
        assert updated is not None
        return updated

    def append_interaction(
        self,
        session_id: str,
        interaction_type: str,
        content: str,
        metadata: dict | None = None,
        cost_credits: int = 0,
    ) -> int:
        """Append to the session log and return the assigned sequence number.

        The next sequence is computed inside the INSERT itself, so two writers
        can never observe the same maximum.
        """
        interaction_id = str(uuid4())
        now = utc_now()
        try:
            with self._store.transaction():
                self._store.execute(
                    """
                    INSERT INTO interactions
                        (id, session_id, sequence, type, content, metadata_json, cost_credits, created_at)
                    SELECT ?, ?, COALESCE(MAX(sequence), 0) + 1, ?, ?, ?, ?, ?
                    FROM interactions
                    WHERE session_id = ?
                    """,
                    (
                        interaction_id,
                        session_id,
                        interaction_type,
                        content,
                        json.dumps(metadata or {}, ensure_ascii=True),
                        int(cost_credits),
                        now,
                        session_id,
                    ),
                )
                row = self._store.execute(
                    "SELECT sequence FROM interactions WHERE id = ?",
                    (interaction_id,),
                ).fetchone()
                self._store.execute(
                    "UPDATE sessions SET updated_at = ? WHERE id = ?",
                    (now, session_id),
                )
        except sqlite3.Error as ex:
            raise PersistenceError(f"Failed to append {interaction_type} to session {session_id}: {ex}") from ex

        sequence = int(row["sequence"])
        self._events.emit(
            session_id,
            "interaction.appended",
            {"session_id": session_id, "interaction_id": interaction_id, "sequence": sequence, "type": interaction_type},
        )
        return sequence

    def get_highest_sequence(self, session_id: str) -> int:
        row = self._store.execute(
            "SELECT COALESCE(MAX(sequence), 0) AS max_seq FROM interactions WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return int(row["max_seq"])

    def list_interactions(self, session_id: str) -> list[InteractionRecord]:
        rows = self._store.execute(
            """
            SELECT *
            FROM interactions
            WHERE session_id = ?
            ORDER BY sequence ASC
            """,
            (session_id,),
        ).fetchall()
        return [
            InteractionRecord(
                id=row["id"],
                session_id=row["session_id"],
                sequence=int(row["sequence"]),
                type=row["type"],
                content=row["content"],
                metadata=self._parse_metadata(row["metadata_json"]),
                cost_credits=int(row["cost_credits"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def build_session_summary(self, session_id: str) -> dict:
        session = self.get_session(session_id)
        if session is None:
            raise ValueError(f"Session does not exist: {session_id}")

        interactions = self.list_interactions(session_id)
        user_count = 0
        assistant_count = 0
        last_user_preview = ""
        credits = 0
        for interaction in interactions:
            credits += interaction.cost_credits
            if interaction.type == "user_message":
                user_count += 1
                last_user_preview = self._preview(interaction.content)
            elif interaction.type == "assistant_message":
                assistant_count += 1

        return {
            "session_id": session_id,
            "title": session.title or "Chat Session",
            "created_at": session.created_at,
            "updated_at": session.updated_at,
            "message_count": len(interactions),
            "user_message_count": user_count,
            "assistant_message_count": assistant_count,
            "credits_used": credits,
            "starred": session.starred,
            "last_user_preview": last_user_preview,
        }

    def _to_session(self, row: sqlite3.Row) -> SessionRecord:
        return SessionRecord(
            id=row["id"],
            organization_id=row["organization_id"],
            user_id=row["user_id"],
            type=row["type"],
            title=row["title"],
            metadata=self._parse_metadata(row["metadata_json"]),
            starred=bool(row["starred"]),
            archived=bool(row["archived"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _parse_metadata(self, metadata_json: str) -> dict:
        try:
            parsed = json.loads(metadata_json)
            if isinstance(parsed, dict):
                return parsed
        except (TypeError, ValueError):
            pass
        return {}

    def _preview(self, text: str, max_chars: int = 140) -> str:
        text = " ".join(text.split())
        if len(text) <= max_chars:
            return text
        return text[: max_chars - 3] + "..."
