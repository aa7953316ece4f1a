from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from loguru import logger

from approval_agent_loop.memory.store import MemoryStore


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def utc_after(seconds: float) -> str:
    return (datetime.now(UTC) + timedelta(seconds=seconds)).isoformat(timespec="milliseconds")


class EventEmitter:
    """Telemetry log. Emission never raises into the turn that produced the event."""

    def __init__(self, store: MemoryStore):
        self._store = store

    def emit(self, session_id: str | None, event_type: str, payload: dict) -> None:
        try:
            with self._store.transaction():
                self._store.execute(
                    """
                    INSERT INTO events (id, session_id, type, payload_json, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        str(uuid4()),
                        session_id,
                        event_type,
                        json.dumps(payload, ensure_ascii=True),
                        utc_now(),
                    ),
                )
        except Exception as ex:
            logger.warning(f"Failed to record telemetry event {event_type!r} (session={session_id}): {ex}")

    def list_events(self, *, event_type: str | None = None, limit: int = 100) -> list[dict]:
        if event_type is None:
            rows = self._store.execute(
                "SELECT * FROM events ORDER BY created_at DESC LIMIT ?",
                (max(1, limit),),
            ).fetchall()
        else:
            rows = self._store.execute(
                "SELECT * FROM events WHERE type = ? ORDER BY created_at DESC LIMIT ?",
                (event_type, max(1, limit)),
            ).fetchall()
        return [{**dict(row), "payload": json.loads(row["payload_json"])} for row in rows]
