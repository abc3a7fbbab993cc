"""
Fee coordination for meta-transactions.

Charges the flat service fee at admission, checks the caller can cover the
estimated transaction fee, and at execution withdraws the estimate and
corrects it to the actual post-dispatch cost.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from metatx.core.account_binding import AccountId
from metatx.core.events import ServiceFeePaid, TransactionFeePaid
from metatx.core.exceptions import LedgerError, PaymentError
from metatx.core.interfaces import (
    BalanceLedger,
    EventSink,
    ExistenceRequirement,
    FeePolicy,
    Fortitude,
    Preservation,
    WithdrawReason,
)
from metatx.core.weights import U128_MAX, DispatchInfo, PostDispatchInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeQuote:
    estimated_fee: int
    tip: int
    actual_fee: int = 0

    def to_dict(self) -> dict:
        return {"estimated_fee": self.estimated_fee, "actual_fee": self.actual_fee, "tip": self.tip}


class FeeCoordinator:
    """Service fee and transaction fee handling on top of a ledger and fee policy."""

    def __init__(
        self,
        ledger: BalanceLedger,
        fee_policy: FeePolicy,
        events: EventSink,
        service_fee: int,
    ) -> None:
        if service_fee < 0:
            raise ValueError("service_fee must be >= 0")
        self.ledger = ledger
        self.fee_policy = fee_policy
        self.events = events
        self.service_fee = service_fee

    def charge_service_fee(self, who: AccountId) -> int:
        """
        Withdraw the flat service fee and emit ServiceFeePaid.

        Raises:
            PaymentError: If the ledger refuses the withdrawal
        """
        try:
            self.ledger.withdraw(
                who,
                self.service_fee,
                WithdrawReason.TRANSACTION_PAYMENT,
                ExistenceRequirement.KEEP_ALIVE,
            )
        except LedgerError as exc:
            raise PaymentError(
                "Unable to pay service fee",
                details={"account": who.hex(), "fee": self.service_fee, "reason": exc.message},
            ) from exc

        self.events.deposit_event(ServiceFeePaid(who=who, fee=self.service_fee))
        logger.info(
            "Service fee %d paid by %s",
            self.service_fee,
            who.hex(),
            extra={"event": "fees.service_fee_paid", "account": who.hex(), "fee": self.service_fee},
        )
        return self.service_fee

    def estimate(self, length: int, info: DispatchInfo, tip: int) -> int:
        """
        Estimate the transaction fee.

        Raises:
            PaymentError: If the estimate does not fit in a u128
        """
        fee = self.fee_policy.compute_fee(length, info, tip)
        if fee < 0 or fee > U128_MAX:
            raise PaymentError("Estimated fee out of range", details={"fee": fee})
        return fee

    def ensure_affordable(self, who: AccountId, estimated_fee: int) -> None:
        """
        Check the caller's spendable balance covers the estimated fee.

        Raises:
            PaymentError: If it does not
        """
        usable = self.ledger.reducible_balance(who, Preservation.PROTECT, Fortitude.POLITE)
        if usable > U128_MAX:
            raise PaymentError("Reducible balance out of range", details={"account": who.hex()})
        if usable < estimated_fee:
            logger.info(
                "Account %s cannot cover estimated fee %d (usable %d)",
                who.hex(),
                estimated_fee,
                usable,
                extra={"event": "fees.insufficient", "account": who.hex()},
            )
            raise PaymentError(
                "Insufficient balance for transaction fee",
                details={"account": who.hex(), "estimated_fee": estimated_fee, "usable": usable},
            )

    def withdraw(self, who: AccountId, info: DispatchInfo, estimated_fee: int, tip: int) -> Any:
        """
        Withdraw the estimated fee ahead of dispatch.

        Returns:
            Liquidity info to hand back to ``settle``
        """
        try:
            return self.fee_policy.withdraw_fee(who, info, estimated_fee, tip)
        except LedgerError as exc:
            raise PaymentError(
                "Unable to withdraw transaction fee",
                details={"account": who.hex(), "fee": estimated_fee, "reason": exc.message},
            ) from exc

    def actual_fee(self, length: int, info: DispatchInfo, post_info: PostDispatchInfo, tip: int) -> int:
        return self.fee_policy.compute_actual_fee(length, info, post_info, tip)

    def settle(
        self,
        who: AccountId,
        info: DispatchInfo,
        post_info: PostDispatchInfo,
        actual_fee: int,
        tip: int,
        already_withdrawn: Any,
    ) -> None:
        """
        Correct the withdrawn fee to ``actual_fee`` and emit TransactionFeePaid.

        Raises:
            PaymentError: If the correction cannot be applied
        """
        try:
            self.fee_policy.correct_and_deposit_fee(
                who, info, post_info, actual_fee, tip, already_withdrawn
            )
        except LedgerError as exc:
            raise PaymentError(
                "Unable to correct transaction fee",
                details={"account": who.hex(), "actual_fee": actual_fee, "reason": exc.message},
            ) from exc

        self.events.deposit_event(TransactionFeePaid(who=who, actual_fee=actual_fee, tip=tip))
        logger.info(
            "Transaction fee %d (tip %d) paid by %s",
            actual_fee,
            tip,
            who.hex(),
            extra={"event": "fees.corrected", "account": who.hex(), "actual_fee": actual_fee},
        )
