"""
In-memory balance ledger.

Reference implementation of the BalanceLedger protocol with an existential
deposit and per-account frozen (locked) funds. Used by the CLI and tests;
production hosts plug in their own currency.
"""

from __future__ import annotations

import logging
from threading import RLock
from typing import Dict, Optional

from metatx.core.account_binding import AccountId
from metatx.core.exceptions import ExistentialDepositError, InsufficientBalanceError, LedgerError
from metatx.core.interfaces import ExistenceRequirement, Fortitude, Preservation, WithdrawReason

logger = logging.getLogger(__name__)


class InMemoryBalanceLedger:
    """Free/frozen balances per account with keep-alive semantics."""

    def __init__(
        self,
        existential_deposit: int = 1,
        balances: Optional[Dict[AccountId, int]] = None,
    ) -> None:
        if existential_deposit < 0:
            raise ValueError("existential_deposit must be >= 0")
        self.existential_deposit = existential_deposit
        self.balances: Dict[AccountId, int] = dict(balances or {})
        self.frozen: Dict[AccountId, int] = {}
        self.total_issuance = sum(self.balances.values())
        self.lock = RLock()

    def set_balance(self, who: AccountId, amount: int) -> None:
        if amount < 0:
            raise ValueError("Balance cannot be negative")
        with self.lock:
            self.total_issuance += amount - self.balances.get(who, 0)
            self.balances[who] = amount

    def freeze(self, who: AccountId, amount: int) -> None:
        """Lock ``amount`` of the free balance so polite withdrawals cannot spend it."""
        if amount < 0:
            raise ValueError("Frozen amount cannot be negative")
        with self.lock:
            self.frozen[who] = amount

    def free_balance(self, who: AccountId) -> int:
        with self.lock:
            return self.balances.get(who, 0)

    def reducible_balance(
        self,
        who: AccountId,
        preservation: Preservation,
        fortitude: Fortitude,
    ) -> int:
        with self.lock:
            free = self.balances.get(who, 0)
            untouchable = self.frozen.get(who, 0) if fortitude is Fortitude.POLITE else 0
            if preservation is not Preservation.EXPENDABLE:
                untouchable = max(untouchable, self.existential_deposit)
            return max(0, free - untouchable)

    def withdraw(
        self,
        who: AccountId,
        amount: int,
        reason: WithdrawReason,
        existence: ExistenceRequirement,
    ) -> int:
        if amount < 0:
            raise LedgerError("Cannot withdraw a negative amount", account=who.hex())
        with self.lock:
            free = self.balances.get(who, 0)
            if amount > free:
                raise InsufficientBalanceError(
                    f"Insufficient balance: need {amount}, have {free}",
                    account=who.hex(),
                )
            remaining = free - amount
            if remaining < self.frozen.get(who, 0):
                raise InsufficientBalanceError(
                    "Withdrawal would spend frozen funds",
                    account=who.hex(),
                )
            if existence is ExistenceRequirement.KEEP_ALIVE and remaining < self.existential_deposit:
                raise ExistentialDepositError(
                    "Withdrawal would reap a keep-alive account",
                    account=who.hex(),
                )
            if remaining < self.existential_deposit:
                # Dust below the existential deposit is dropped with the account
                self.total_issuance -= remaining
                self.balances.pop(who, None)
            else:
                self.balances[who] = remaining
            self.total_issuance -= amount

        logger.debug(
            "Withdrew %d from %s (%s)",
            amount,
            who.hex(),
            reason.value,
            extra={"event": "ledger.withdraw", "account": who.hex(), "amount": amount},
        )
        return amount

    def deposit(self, who: AccountId, amount: int) -> int:
        if amount < 0:
            raise LedgerError("Cannot deposit a negative amount", account=who.hex())
        with self.lock:
            self.balances[who] = self.balances.get(who, 0) + amount
            self.total_issuance += amount
        return amount
