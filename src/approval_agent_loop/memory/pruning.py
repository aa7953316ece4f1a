from __future__ import annotations

from datetime import UTC, datetime, timedelta

from loguru import logger

from approval_agent_loop.memory.store import MemoryStore


def prune_memory(
    store: MemoryStore,
    *,
    event_retention_days: int,
    max_events: int,
) -> None:
    """Housekeeping for data this subsystem owns.

    Sessions and interactions are never touched here; only expired pending
    approval contexts and old telemetry events are removed.
    """
    now = datetime.now(UTC)
    now_iso = now.isoformat(timespec="milliseconds")
    cutoff = (now - timedelta(days=max(1, event_retention_days))).isoformat(timespec="milliseconds")

    with store.transaction():
        expired = store.execute(
            "DELETE FROM pending_contexts WHERE expires_at <= ?",
            (now_iso,),
        ).rowcount
        old_events = store.execute(
            "DELETE FROM events WHERE created_at < ?",
            (cutoff,),
        ).rowcount

        overflow = 0
        if max_events > 0:
            overflow_rows = store.execute(
                """
                SELECT id
                FROM events
                ORDER BY created_at DESC
                LIMIT -1 OFFSET ?
                """,
                (max_events,),
            ).fetchall()
            if overflow_rows:
                store.executemany(
                    "DELETE FROM events WHERE id = ?",
                    [(str(row["id"]),) for row in overflow_rows],
                )
                overflow = len(overflow_rows)

    if expired or old_events or overflow:
        logger.info(
            f"Pruned {expired} expired pending context(s) and {old_events + overflow} telemetry event(s)"
        )
