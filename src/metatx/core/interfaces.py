"""
Collaborator Protocol Interfaces - Decoupling the gateway from its host ledger.

The gateway never touches balances, block limits, action execution or
durable storage directly. It depends on the protocols below, which a host
ledger (or the in-memory reference implementations shipped with this
package) provides.

Usage:
    gateway = MetaTransactionGateway(
        config=config,
        ledger=ledger,            # BalanceLedger
        fee_policy=fee_policy,    # FeePolicy
        registry=registry,        # ActionRegistry
        capacity=capacity,        # BlockCapacity
        nonce_store=store,        # NonceStore
        events=recorder,          # EventSink
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Protocol, runtime_checkable

from metatx.core.weights import DispatchClass, DispatchInfo, PostDispatchInfo, Weight

if TYPE_CHECKING:
    from metatx.core.account_binding import AccountId
    from metatx.core.codec import TrailingZeroInput


class WithdrawReason(Enum):
    TRANSACTION_PAYMENT = "transaction_payment"
    TRANSFER = "transfer"
    FEE = "fee"
    TIP = "tip"


class ExistenceRequirement(Enum):
    """Whether a withdrawal may reap the account."""
    KEEP_ALIVE = "keep_alive"
    ALLOW_DEATH = "allow_death"


class Preservation(Enum):
    """How much of the balance must be preserved when computing what is spendable."""
    EXPENDABLE = "expendable"
    PROTECT = "protect"
    PRESERVE = "preserve"


class Fortitude(Enum):
    """Whether frozen/locked funds may be counted as spendable."""
    POLITE = "polite"
    FORCE = "force"


@dataclass(frozen=True)
class CallerOrigin:
    """
    Signed-caller authority an action is dispatched under.

    ``call_filter`` is the allow-list predicate; an action it rejects must not
    be executed by the registry.
    """

    who: "AccountId"
    call_filter: Callable[[Any], bool] = lambda action: True

    def allows(self, action: Any) -> bool:
        return bool(self.call_filter(action))


@dataclass
class DispatchOutcome:
    """Result of dispatching a decoded action."""

    success: bool
    post_info: PostDispatchInfo = field(default_factory=PostDispatchInfo)
    events: List[Any] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def actual_weight(self) -> Optional[Weight]:
        return self.post_info.actual_weight

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "actual_weight": self.actual_weight.to_dict() if self.actual_weight else None,
            "error": self.error,
            "events": [repr(event) for event in self.events],
        }


@runtime_checkable
class BalanceLedger(Protocol):
    """Debit/credit primitives of the host currency."""

    def withdraw(
        self,
        who: "AccountId",
        amount: int,
        reason: WithdrawReason,
        existence: ExistenceRequirement,
    ) -> int:
        """Debit ``amount`` and return it. Raises LedgerError on failure."""
        ...

    def deposit(self, who: "AccountId", amount: int) -> int:
        """Credit ``amount`` and return it."""
        ...

    def reducible_balance(
        self,
        who: "AccountId",
        preservation: Preservation,
        fortitude: Fortitude,
    ) -> int:
        """Amount that can be withdrawn under the given policies."""
        ...

    def free_balance(self, who: "AccountId") -> int:
        ...


@runtime_checkable
class FeePolicy(Protocol):
    """Pluggable transaction-fee computation and charging."""

    def compute_fee(self, length: int, info: DispatchInfo, tip: int) -> int:
        ...

    def compute_actual_fee(
        self,
        length: int,
        info: DispatchInfo,
        post_info: PostDispatchInfo,
        tip: int,
    ) -> int:
        ...

    def withdraw_fee(self, who: "AccountId", info: DispatchInfo, fee: int, tip: int) -> Any:
        """Withdraw ``fee`` and return the liquidity info needed for correction."""
        ...

    def correct_and_deposit_fee(
        self,
        who: "AccountId",
        info: DispatchInfo,
        post_info: PostDispatchInfo,
        corrected_fee: int,
        tip: int,
        already_withdrawn: Any,
    ) -> None:
        """Refund over-collection or collect under-collection."""
        ...


@runtime_checkable
class ActionRegistry(Protocol):
    """Decodes and executes the open set of embedded actions."""

    def decode(self, reader: "TrailingZeroInput") -> Any:
        """Decode one action. Raises ValueError/KeyError when the bytes are not an action."""
        ...

    def dispatch(self, action: Any, origin: CallerOrigin) -> DispatchOutcome:
        ...

    def dispatch_info(self, action: Any) -> DispatchInfo:
        ...

    def encoded_size(self, action: Any) -> int:
        ...


@runtime_checkable
class BlockCapacity(Protocol):
    """Per-block resource limits used for priority scoring."""

    def max_block_weight(self) -> Weight:
        ...

    def max_block_length(self, dispatch_class: DispatchClass) -> int:
        ...


@runtime_checkable
class NonceStore(Protocol):
    """Thread-safe account -> next-expected-nonce map."""

    def get(self, account: "AccountId") -> int:
        ...

    def compare_and_set(self, account: "AccountId", expected: int, new: int) -> bool:
        """Set ``new`` only if the stored value is ``expected``. Returns whether it did."""
        ...

    def set(self, account: "AccountId", value: int) -> None:
        ...


@runtime_checkable
class EventSink(Protocol):
    def deposit_event(self, event: Any) -> None:
        ...


@dataclass(frozen=True)
class StaticBlockCapacity:
    """Fixed block limits, the same for every dispatch class unless overridden."""

    max_weight: Weight
    max_length: int
    class_lengths: Optional[dict] = None

    def max_block_weight(self) -> Weight:
        return self.max_weight

    def max_block_length(self, dispatch_class: DispatchClass) -> int:
        if self.class_lengths and dispatch_class in self.class_lengths:
            return int(self.class_lengths[dispatch_class])
        return self.max_length
