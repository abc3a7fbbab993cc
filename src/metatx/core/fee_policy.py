"""
Linear transaction-fee policy.

fee = base_fee + length * length_fee + ref_time * weight_fee + proof_size * proof_fee + tip

Fees are withdrawn up front and corrected after dispatch: over-collection is
refunded and any shortfall is collected. The net fee is credited to an
optional collector account, otherwise it is burned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from metatx.core.account_binding import AccountId
from metatx.core.interfaces import BalanceLedger, ExistenceRequirement, WithdrawReason
from metatx.core.weights import DispatchInfo, Pays, PostDispatchInfo, Weight, saturating_add, saturating_mul

logger = logging.getLogger(__name__)


@dataclass
class LinearFeePolicy:
    ledger: BalanceLedger
    base_fee: int = 0
    length_fee: int = 1
    weight_fee: int = 0
    proof_fee: int = 0
    fee_collector: Optional[AccountId] = None
    collected: int = 0

    def _weight_to_fee(self, weight: Weight) -> int:
        return saturating_add(
            saturating_mul(weight.ref_time, self.weight_fee),
            saturating_mul(weight.proof_size, self.proof_fee),
        )

    def _compute_fee_raw(self, length: int, weight: Weight, tip: int, pays_fee: Pays) -> int:
        if pays_fee is Pays.NO:
            return tip
        fee = saturating_add(self.base_fee, saturating_mul(length, self.length_fee))
        fee = saturating_add(fee, self._weight_to_fee(weight))
        return saturating_add(fee, tip)

    def compute_fee(self, length: int, info: DispatchInfo, tip: int) -> int:
        return self._compute_fee_raw(length, info.weight, tip, info.pays_fee)

    def compute_actual_fee(
        self,
        length: int,
        info: DispatchInfo,
        post_info: PostDispatchInfo,
        tip: int,
    ) -> int:
        pays_fee = Pays.NO if Pays.NO in (info.pays_fee, post_info.pays_fee) else Pays.YES
        return self._compute_fee_raw(length, post_info.calc_actual_weight(info), tip, pays_fee)

    def withdraw_fee(self, who: AccountId, info: DispatchInfo, fee: int, tip: int) -> int:
        """Withdraw ``fee`` and return the amount actually taken."""
        if fee == 0:
            return 0
        reason = WithdrawReason.TIP if tip and fee == tip else WithdrawReason.TRANSACTION_PAYMENT
        return self.ledger.withdraw(who, fee, reason, ExistenceRequirement.KEEP_ALIVE)

    def correct_and_deposit_fee(
        self,
        who: AccountId,
        info: DispatchInfo,
        post_info: PostDispatchInfo,
        corrected_fee: int,
        tip: int,
        already_withdrawn: int,
    ) -> None:
        paid = already_withdrawn or 0
        if corrected_fee < paid:
            refund = paid - corrected_fee
            self.ledger.deposit(who, refund)
            logger.debug(
                "Refunded %d over-collected fee to %s",
                refund,
                who.hex(),
                extra={"event": "fees.refunded", "account": who.hex(), "amount": refund},
            )
        elif corrected_fee > paid:
            shortfall = corrected_fee - paid
            self.ledger.withdraw(
                who,
                shortfall,
                WithdrawReason.TRANSACTION_PAYMENT,
                ExistenceRequirement.KEEP_ALIVE,
            )
            logger.debug(
                "Collected %d under-collected fee from %s",
                shortfall,
                who.hex(),
                extra={"event": "fees.collected", "account": who.hex(), "amount": shortfall},
            )

        if self.fee_collector is not None and corrected_fee:
            self.ledger.deposit(self.fee_collector, corrected_fee)
        self.collected += corrected_fee
