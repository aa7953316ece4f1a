from __future__ import annotations

from uuid import uuid4

from approval_agent_loop.memory.events import utc_now
from approval_agent_loop.memory.store import MemoryStore


class OrganizationDirectory:
    def __init__(self, store: MemoryStore):
        self._store = store

    def create_organization(
        self,
        name: str,
        *,
        organization_id: str | None = None,
        credits_balance: int = 0,
    ) -> str:
        org_id = organization_id or str(uuid4())
        with self._store.transaction():
            self._store.execute(
                "INSERT INTO organizations (id, name, credits_balance, created_at) VALUES (?, ?, ?, ?)",
                (org_id, name, int(credits_balance), utc_now()),
            )
        return org_id

    def add_member(self, organization_id: str, user_id: str) -> None:
        with self._store.transaction():
            self._store.execute(
                """
                INSERT OR IGNORE INTO organization_members (organization_id, user_id, created_at)
                VALUES (?, ?, ?)
                """,
                (organization_id, user_id, utc_now()),
            )

    def is_member(self, organization_id: str, user_id: str) -> bool:
        row = self._store.execute(
            "SELECT 1 FROM organization_members WHERE organization_id = ? AND user_id = ? LIMIT 1",
            (organization_id, user_id),
        ).fetchone()
        return row is not None

    def default_organization(self, user_id: str) -> str | None:
        row = self._store.execute(
            """
            SELECT organization_id
            FROM organization_members
            WHERE user_id = ?
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (user_id,),
        ).fetchone()
        return str(row["organization_id"]) if row is not None else None
