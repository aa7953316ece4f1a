from __future__ import annotations

import json
import sqlite3
from dataclasses import replace

from approval_agent_loop.errors import PersistenceError
from approval_agent_loop.memory.events import EventEmitter, utc_after, utc_now
from approval_agent_loop.memory.store import MemoryStore
from approval_agent_loop.models import ApprovalRequest, HistoryMessage, PendingContext


class PendingContextStore:
    """Correlates outstanding approval requests with the turn they paused.

    Lives in the shared database rather than process memory so the resume call
    may be served by a different worker than the one that suspended the turn.
    """

    def __init__(self, store: MemoryStore, events: EventEmitter, *, ttl_seconds: int = 3600):
        self._store = store
        self._events = events
        self._ttl_seconds = max(1, ttl_seconds)

    def save(self, context: PendingContext) -> PendingContext:
        saved = replace(context, status="pending", created_at=utc_now(), expires_at=utc_after(self._ttl_seconds))
        history_json = json.dumps([m.to_dict() for m in saved.history], ensure_ascii=True)
        try:
            with self._store.transaction():
                self._store.execute(
                    """
                    INSERT INTO pending_contexts
                        (id, session_id, organization_id, user_id, turn_id, message, history_json,
                         agent_mode, status, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
                    """,
                    (
                        saved.id,
                        saved.session_id,
                        saved.organization_id,
                        saved.user_id,
                        saved.turn_id,
                        saved.message,
                        history_json,
                        1 if saved.agent_mode else 0,
                        saved.created_at,
                        saved.expires_at,
                    ),
                )
                self._store.executemany(
                    """
                    INSERT INTO pending_approval_requests
                        (id, context_id, tool_name, arguments_json, agent, justification, timestamp_ms)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            r.id,
                            saved.id,
                            r.tool_name,
                            json.dumps(r.arguments, ensure_ascii=True),
                            r.agent,
                            r.justification,
                            r.timestamp,
                        )
                        for r in saved.requests
                    ],
                )
        except sqlite3.Error as ex:
            raise PersistenceError(f"Failed to save pending context {saved.id}: {ex}") from ex

        self._events.emit(
            saved.session_id,
            "approval.suspended",
            {"context_id": saved.id, "request_ids": sorted(saved.request_ids), "expires_at": saved.expires_at},
        )
        return saved

    def get(self, context_id: str) -> PendingContext | None:
        row = self._store.execute(
            "SELECT * FROM pending_contexts WHERE id = ? LIMIT 1",
            (context_id,),
        ).fetchone()
        if row is None:
            return None
        request_rows = self._store.execute(
            "SELECT * FROM pending_approval_requests WHERE context_id = ? ORDER BY timestamp_ms ASC, id ASC",
            (context_id,),
        ).fetchall()
        return PendingContext(
            id=row["id"],
            session_id=row["session_id"],
            organization_id=row["organization_id"],
            user_id=row["user_id"],
            turn_id=row["turn_id"],
            message=row["message"],
            history=tuple(
                HistoryMessage(role=m["role"], content=m["content"], timestamp=m.get("timestamp"))
                for m in json.loads(row["history_json"])
            ),
            agent_mode=bool(row["agent_mode"]),
            requests=tuple(
                ApprovalRequest(
                    id=r["id"],
                    tool_name=r["tool_name"],
                    arguments=json.loads(r["arguments_json"]),
                    agent=r["agent"],
                    timestamp=int(r["timestamp_ms"]),
                    justification=r["justification"],
                )
                for r in request_rows
            ),
            status=row["status"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def context_ids_for_requests(self, request_ids: list[str]) -> dict[str, str]:
        """Map each known request id to its context id; unknown ids are omitted."""
        if not request_ids:
            return {}
        placeholders = ", ".join("?" for _ in request_ids)
        rows = self._store.execute(
            f"SELECT id, context_id FROM pending_approval_requests WHERE id IN ({placeholders})",
            tuple(request_ids),
        ).fetchall()
        return {str(row["id"]): str(row["context_id"]) for row in rows}

    def is_expired(self, context: PendingContext) -> bool:
        return context.expires_at <= utc_now()

    def mark_resolved(self, context_id: str) -> bool:
        """Flip pending -> resolved. Returns False when another caller got there first."""
        now = utc_now()
        with self._store.transaction():
            cur = self._store.execute(
                """
                UPDATE pending_contexts
                SET status = 'resolved', resolved_at = ?
                WHERE id = ? AND status = 'pending' AND expires_at > ?
                """,
                (now, context_id, now),
            )
        return cur.rowcount == 1

    def delete_expired(self) -> int:
        with self._store.transaction():
            cur = self._store.execute(
                "DELETE FROM pending_contexts WHERE expires_at <= ?",
                (utc_now(),),
            )
        return int(cur.rowcount)
