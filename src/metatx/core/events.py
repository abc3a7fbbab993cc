"""Notifications emitted by the gateway."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Dict, List, Optional, Type, TypeVar

from metatx.core.account_binding import AccountId
from metatx.core.interfaces import DispatchOutcome

logger = logging.getLogger(__name__)

E = TypeVar("E")


@dataclass(frozen=True)
class ServiceFeePaid:
    who: AccountId
    fee: int

    def to_dict(self) -> Dict[str, Any]:
        return {"event": "ServiceFeePaid", "who": self.who.hex(), "fee": self.fee}


@dataclass(frozen=True)
class TransactionFeePaid:
    who: AccountId
    actual_fee: int
    tip: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "TransactionFeePaid",
            "who": self.who.hex(),
            "actual_fee": self.actual_fee,
            "tip": self.tip,
        }


@dataclass(frozen=True)
class ActionOutcome:
    """Result of the embedded action (CallDone)."""

    who: AccountId
    result: DispatchOutcome

    def to_dict(self) -> Dict[str, Any]:
        return {"event": "ActionOutcome", "who": self.who.hex(), "result": self.result.to_dict()}


@dataclass
class EventRecorder:
    """
    In-memory event sink.

    Keeps every deposited event in order and can optionally forward each
    one to another sink.
    """

    forward_to: Optional[Any] = None
    events: List[Any] = field(default_factory=list)
    lock: RLock = field(default_factory=RLock, repr=False)

    def deposit_event(self, event: Any) -> None:
        with self.lock:
            self.events.append(event)
        logger.debug(
            "Event deposited: %s",
            type(event).__name__,
            extra={"event": "events.deposited", "kind": type(event).__name__},
        )
        if self.forward_to is not None:
            self.forward_to.deposit_event(event)

    def of_type(self, event_type: Type[E]) -> List[E]:
        with self.lock:
            return [event for event in self.events if isinstance(event, event_type)]

    def clear(self) -> None:
        with self.lock:
            self.events.clear()

    def __len__(self) -> int:
        return len(self.events)
