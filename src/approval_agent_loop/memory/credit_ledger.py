from __future__ import annotations

from uuid import uuid4

from loguru import logger

from approval_agent_loop.memory.events import EventEmitter, utc_now
from approval_agent_loop.memory.models import ChargeResult
from approval_agent_loop.memory.store import MemoryStore


class CreditLedger:
    """Per-organization prepaid balance.

    Deduction is a single conditional UPDATE, so concurrent turns can never
    spend the balance below zero. A charge tagged with a turn id is recorded at
    most once.
    """

    def __init__(self, store: MemoryStore, events: EventEmitter):
        self._store = store
        self._events = events

    def get_balance(self, organization_id: str) -> int:
        row = self._store.execute(
            "SELECT credits_balance FROM organizations WHERE id = ?",
            (organization_id,),
        ).fetchone()
        return int(row["credits_balance"]) if row is not None else 0

    def add_credits(self, organization_id: str, amount: int, description: str) -> int:
        if amount <= 0:
            raise ValueError("amount must be positive")
        with self._store.transaction():
            cur = self._store.execute(
                "UPDATE organizations SET credits_balance = credits_balance + ? WHERE id = ?",
                (amount, organization_id),
            )
            if cur.rowcount == 0:
                raise ValueError(f"Organization does not exist: {organization_id}")
            balance = self.get_balance(organization_id)
            self._record(organization_id, amount, description, None, balance)
        return balance

    def check_and_charge(
        self,
        organization_id: str,
        amount: int,
        description: str,
        *,
        turn_id: str | None = None,
    ) -> ChargeResult:
        if amount < 0:
            raise ValueError("amount must not be negative")

        with self._store.transaction():
            if turn_id is not None:
                existing = self._store.execute(
                    "SELECT id FROM credit_transactions WHERE turn_id = ?",
                    (turn_id,),
                ).fetchone()
                if existing is not None:
                    logger.warning(f"Turn {turn_id} was already charged; skipping duplicate charge")
                    return ChargeResult(ok=True, new_balance=self.get_balance(organization_id), already_charged=True)

            cur = self._store.execute(
                """
                UPDATE organizations
                SET credits_balance = credits_balance - ?
                WHERE id = ? AND credits_balance >= ?
                """,
                (amount, organization_id, amount),
            )
            balance = self.get_balance(organization_id)
            if cur.rowcount == 0:
                return ChargeResult(ok=False, new_balance=balance)
            self._record(organization_id, -amount, description, turn_id, balance)

        self._events.emit(
            None,
            "credit.charged",
            {"organization_id": organization_id, "amount": amount, "turn_id": turn_id, "balance": balance},
        )
        return ChargeResult(ok=True, new_balance=balance)

    def list_transactions(self, organization_id: str, *, limit: int = 50) -> list[dict]:
        rows = self._store.execute(
            """
            SELECT id, amount, description, turn_id, balance_after, created_at
            FROM credit_transactions
            WHERE organization_id = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (organization_id, max(1, limit)),
        ).fetchall()
        return [dict(row) for row in rows]

    def _record(
        self,
        organization_id: str,
        amount: int,
        description: str,
        turn_id: str | None,
        balance_after: int,
    ) -> None:
        self._store.execute(
            """
            INSERT INTO credit_transactions (id, organization_id, amount, description, turn_id, balance_after, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (str(uuid4()), organization_id, amount, description, turn_id, balance_after, utc_now()),
        )
