"""
Reference action registry.

Decodes and dispatches a small set of ledger actions so the gateway can be
exercised end to end. Each action is encoded as a one-byte call index
followed by its SCALE-encoded arguments.

Call indices:
- 0x00 noop                  no arguments
- 0x01 remark(bytes)         compact-length-prefixed payload
- 0x02 transfer(dest, u128)  32-byte account id, little-endian amount
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from metatx.core.account_binding import AccountId
from metatx.core.codec import TrailingZeroInput, encode_bytes, encode_u8, encode_u128
from metatx.core.exceptions import DecodeError, LedgerError
from metatx.core.interfaces import (
    BalanceLedger,
    CallerOrigin,
    DispatchOutcome,
    ExistenceRequirement,
    WithdrawReason,
)
from metatx.core.weights import DispatchClass, DispatchInfo, PostDispatchInfo, Weight

logger = logging.getLogger(__name__)

NOOP_WEIGHT = Weight.from_parts(10_000, 0)
REMARK_BASE_WEIGHT = Weight.from_parts(20_000, 0)
REMARK_PER_BYTE_REF_TIME = 100
TRANSFER_WEIGHT = Weight.from_parts(300_000, 3_600)
# Charged instead of TRANSFER_WEIGHT when the destination already exists
TRANSFER_KEEP_ALIVE_WEIGHT = Weight.from_parts(200_000, 2_600)

CALL_FILTERED = "CallFiltered"
# Most recent remarks kept by the reference registry
REMARK_HISTORY_LIMIT = 1_000


@dataclass(frozen=True)
class Noop:
    name = "noop"
    index = 0x00

    def encode(self) -> bytes:
        return encode_u8(self.index)


@dataclass(frozen=True)
class Remark:
    data: bytes
    name = "remark"
    index = 0x01

    def encode(self) -> bytes:
        return encode_u8(self.index) + encode_bytes(self.data)


@dataclass(frozen=True)
class Transfer:
    dest: AccountId
    amount: int
    name = "transfer"
    index = 0x02

    def encode(self) -> bytes:
        return encode_u8(self.index) + self.dest.raw + encode_u128(self.amount)


def allow_list(names) -> Callable[[object], bool]:
    """Build a call filter admitting only the named actions (``*`` admits all)."""
    allowed = frozenset(names)
    if "*" in allowed:
        return lambda action: True
    return lambda action: getattr(action, "name", None) in allowed


class ReferenceActionRegistry:
    """Decode/dispatch for the reference actions, backed by a balance ledger."""

    def __init__(self, ledger: Optional[BalanceLedger] = None) -> None:
        self.ledger = ledger
        self.remarks: deque = deque(maxlen=REMARK_HISTORY_LIMIT)
        self._decoders: Dict[int, Callable[[TrailingZeroInput], object]] = {
            Noop.index: lambda reader: Noop(),
            Remark.index: lambda reader: Remark(reader.read_vec()),
            Transfer.index: lambda reader: Transfer(AccountId(reader.read(32)), reader.read_u128()),
        }

    def decode(self, reader: TrailingZeroInput) -> object:
        index = reader.read_u8()
        decoder = self._decoders.get(index)
        if decoder is None:
            raise DecodeError(f"Unknown call index {index:#04x}", details={"index": index})
        return decoder(reader)

    def encoded_size(self, action) -> int:
        return len(action.encode())

    def dispatch_info(self, action) -> DispatchInfo:
        if isinstance(action, Noop):
            return DispatchInfo(weight=NOOP_WEIGHT)
        if isinstance(action, Remark):
            return DispatchInfo(
                weight=REMARK_BASE_WEIGHT.saturating_add(
                    Weight.from_parts(REMARK_PER_BYTE_REF_TIME * len(action.data), 0)
                )
            )
        if isinstance(action, Transfer):
            return DispatchInfo(weight=TRANSFER_WEIGHT, dispatch_class=DispatchClass.NORMAL)
        raise DecodeError(f"Unsupported action {type(action).__name__}")

    def dispatch(self, action, origin: CallerOrigin) -> DispatchOutcome:
        if not origin.allows(action):
            logger.info(
                "Action %s filtered for %s",
                getattr(action, "name", type(action).__name__),
                origin.who.hex(),
                extra={"event": "registry.call_filtered", "account": origin.who.hex()},
            )
            return DispatchOutcome(success=False, error=CALL_FILTERED)

        if isinstance(action, Noop):
            return DispatchOutcome(success=True)
        if isinstance(action, Remark):
            self.remarks.append((origin.who, action.data))
            return DispatchOutcome(success=True, events=[("Remarked", origin.who.hex(), len(action.data))])
        if isinstance(action, Transfer):
            return self._transfer(action, origin)
        return DispatchOutcome(success=False, error="UnsupportedAction")

    def _transfer(self, action: Transfer, origin: CallerOrigin) -> DispatchOutcome:
        if self.ledger is None:
            return DispatchOutcome(success=False, error="NoLedger")
        dest_exists = self.ledger.free_balance(action.dest) > 0
        actual = TRANSFER_KEEP_ALIVE_WEIGHT if dest_exists else TRANSFER_WEIGHT
        try:
            self.ledger.withdraw(
                origin.who,
                action.amount,
                WithdrawReason.TRANSFER,
                ExistenceRequirement.KEEP_ALIVE,
            )
        except LedgerError as exc:
            return DispatchOutcome(
                success=False,
                post_info=PostDispatchInfo(actual_weight=actual),
                error=type(exc).__name__,
            )
        self.ledger.deposit(action.dest, action.amount)
        return DispatchOutcome(
            success=True,
            post_info=PostDispatchInfo(actual_weight=actual),
            events=[("Transfer", origin.who.hex(), action.dest.hex(), action.amount)],
        )
