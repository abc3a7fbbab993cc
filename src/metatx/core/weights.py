"""
Resource weights and dispatch metadata.

Weights are two-dimensional (execution time and proof size) and all
arithmetic saturates at the bounds of the underlying unsigned integers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

U64_MAX = (1 << 64) - 1
U128_MAX = (1 << 128) - 1


def saturate(value: int, upper: int) -> int:
    """Clamp ``value`` into ``[0, upper]``."""
    if value < 0:
        return 0
    if value > upper:
        return upper
    return value


def saturating_add(a: int, b: int, upper: int = U128_MAX) -> int:
    return saturate(a + b, upper)


def saturating_mul(a: int, b: int, upper: int = U128_MAX) -> int:
    return saturate(a * b, upper)


class DispatchClass(Enum):
    """Block space class an action is accounted against."""
    NORMAL = "normal"
    OPERATIONAL = "operational"
    MANDATORY = "mandatory"


class Pays(Enum):
    YES = "yes"
    NO = "no"


@dataclass(frozen=True)
class Weight:
    """Two-dimensional resource weight (ref_time, proof_size), both u64."""

    ref_time: int = 0
    proof_size: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "ref_time", saturate(int(self.ref_time), U64_MAX))
        object.__setattr__(self, "proof_size", saturate(int(self.proof_size), U64_MAX))

    @classmethod
    def zero(cls) -> "Weight":
        return cls(0, 0)

    @classmethod
    def from_parts(cls, ref_time: int, proof_size: int) -> "Weight":
        return cls(ref_time, proof_size)

    def saturating_add(self, other: "Weight") -> "Weight":
        return Weight(
            saturating_add(self.ref_time, other.ref_time, U64_MAX),
            saturating_add(self.proof_size, other.proof_size, U64_MAX),
        )

    def saturating_sub(self, other: "Weight") -> "Weight":
        return Weight(self.ref_time - other.ref_time, self.proof_size - other.proof_size)

    def max(self, other: "Weight") -> "Weight":
        """Componentwise maximum."""
        return Weight(max(self.ref_time, other.ref_time), max(self.proof_size, other.proof_size))

    def min(self, other: "Weight") -> "Weight":
        """Componentwise minimum."""
        return Weight(min(self.ref_time, other.ref_time), min(self.proof_size, other.proof_size))

    def checked_div_per_component(self, other: "Weight") -> Optional[int]:
        """
        How many times ``other`` fits into ``self``, limited by the scarcer component.

        Components where ``other`` is zero are ignored; returns None when both are.
        """
        ratios = []
        if other.ref_time:
            ratios.append(self.ref_time // other.ref_time)
        if other.proof_size:
            ratios.append(self.proof_size // other.proof_size)
        if not ratios:
            return None
        return min(ratios)

    def to_dict(self) -> dict:
        return {"ref_time": self.ref_time, "proof_size": self.proof_size}


@dataclass(frozen=True)
class DispatchInfo:
    """Declared weight, class and payment flag of an action before dispatch."""

    weight: Weight = Weight()
    dispatch_class: DispatchClass = DispatchClass.NORMAL
    pays_fee: Pays = Pays.YES


@dataclass(frozen=True)
class PostDispatchInfo:
    """Weight actually consumed by a dispatched action, when it reports one."""

    actual_weight: Optional[Weight] = None
    pays_fee: Pays = Pays.YES

    def calc_actual_weight(self, info: DispatchInfo) -> Weight:
        """Actual weight, never exceeding the declared weight."""
        if self.actual_weight is None:
            return info.weight
        return self.actual_weight.min(info.weight)

    def calc_unspent(self, info: DispatchInfo) -> Weight:
        return info.weight.saturating_sub(self.calc_actual_weight(info))
