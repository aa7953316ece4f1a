from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any


class MemoryStore:
    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._lock = threading.RLock()
        self._initialize_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executemany(query, seq_of_params)

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    def rollback(self) -> None:
        with self._lock:
            self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Serialise a group of writes; commit on success, roll back on error."""
        with self._lock:
            try:
                yield
            except BaseException:
                self._conn.rollback()
                raise
            self._conn.commit()

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS organizations (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                credits_balance INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS organization_members (
                organization_id TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (organization_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS credit_transactions (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
                amount INTEGER NOT NULL,
                description TEXT NOT NULL,
                turn_id TEXT NULL UNIQUE,
                balance_after INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL CHECK (type IN ('chat', 'sandbox', 'agent')),
                title TEXT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                starred INTEGER NOT NULL DEFAULT 0 CHECK (starred IN (0, 1)),
                archived INTEGER NOT NULL DEFAULT 0 CHECK (archived IN (0, 1)),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS interactions (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                sequence INTEGER NOT NULL,
                type TEXT NOT NULL CHECK (type IN ('user_message', 'assistant_message')),
                content TEXT NOT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                cost_credits INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                UNIQUE(session_id, sequence)
            );

            CREATE TABLE IF NOT EXISTS pending_contexts (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                organization_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                turn_id TEXT NOT NULL,
                message TEXT NOT NULL,
                history_json TEXT NOT NULL,
                agent_mode INTEGER NOT NULL CHECK (agent_mode IN (0, 1)),
                status TEXT NOT NULL CHECK (status IN ('pending', 'resolved')),
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                resolved_at TEXT NULL
            );

            CREATE TABLE IF NOT EXISTS pending_approval_requests (
                id TEXT PRIMARY KEY,
                context_id TEXT NOT NULL REFERENCES pending_contexts(id) ON DELETE CASCADE,
                tool_name TEXT NOT NULL,
                arguments_json TEXT NOT NULL,
                agent TEXT NOT NULL,
                justification TEXT NOT NULL,
                timestamp_ms INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                session_id TEXT NULL,
                type TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_org_updated
                ON sessions(organization_id, updated_at DESC);
            CREATE INDEX IF NOT EXISTS idx_interactions_session_sequence
                ON interactions(session_id, sequence);
            CREATE INDEX IF NOT EXISTS idx_pending_requests_context
                ON pending_approval_requests(context_id);
            CREATE INDEX IF NOT EXISTS idx_pending_contexts_expires
                ON pending_contexts(expires_at);
            CREATE INDEX IF NOT EXISTS idx_events_created
                ON events(created_at);
            """
        )
        self._conn.commit()
