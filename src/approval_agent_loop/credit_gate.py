from __future__ import annotations

import sqlite3

from loguru import logger

from approval_agent_loop.errors import InsufficientCredits, PersistenceError
from approval_agent_loop.memory.events import EventEmitter
from approval_agent_loop.protocols import CreditLedger


class CreditGate:
    """Premium (agent mode) turns need a balance covering their fixed cost.

    The balance is checked before anything is written and charged only once a
    turn completes. Pending and errored turns are never charged.
    """

    def __init__(self, ledger: CreditLedger, events: EventEmitter, *, turn_credit_cost: int = 1):
        self._ledger = ledger
        self._events = events
        self._turn_credit_cost = max(0, turn_credit_cost)

    def turn_cost(self, premium: bool) -> int:
        return self._turn_credit_cost if premium else 0

    def ensure_can_start(self, organization_id: str, premium: bool) -> None:
        if not premium:
            return
        balance = self._ledger.get_balance(organization_id)
        if balance <= 0 or balance < self.turn_cost(premium):
            logger.info(f"Rejecting agent mode turn for {organization_id}: balance={balance}")
            raise InsufficientCredits(organization_id, balance)

    def charge_turn(
        self,
        organization_id: str,
        turn_id: str,
        *,
        premium: bool,
        session_id: str | None = None,
        description: str = "Agent mode conversation",
    ) -> int:
        """Charge a completed turn. Returns the credits actually deducted."""
        amount = self.turn_cost(premium)
        if amount == 0:
            return 0

        try:
            result = self._ledger.check_and_charge(organization_id, amount, description, turn_id=turn_id)
        except (sqlite3.Error, PersistenceError) as ex:
            logger.error(f"Charging turn {turn_id} failed: {ex}")
            self._charge_failed(organization_id, turn_id, session_id, amount, str(ex))
            return 0

        if result.already_charged:
            return 0
        if not result.ok:
            logger.warning(
                f"Turn {turn_id} completed but {organization_id} could not cover {amount} credit(s) "
                f"(balance={result.new_balance})"
            )
            self._charge_failed(organization_id, turn_id, session_id, amount, "insufficient balance")
            return 0

        logger.info(f"Charged {amount} credit(s) to {organization_id} for turn {turn_id} (balance={result.new_balance})")
        return amount

    def _charge_failed(
        self,
        organization_id: str,
        turn_id: str,
        session_id: str | None,
        amount: int,
        reason: str,
    ) -> None:
        self._events.emit(
            session_id,
            "credit.charge_failed",
            {"organization_id": organization_id, "turn_id": turn_id, "amount": amount, "reason": reason},
        )
