"""
Transaction priority scoring.

Scales the tip by how many copies of the request would fit into an empty
block, so requests consuming the scarcer resource rank lower for the same tip.
"""

from __future__ import annotations

from metatx.core.interfaces import BlockCapacity
from metatx.core.weights import (
    U64_MAX,
    U128_MAX,
    DispatchClass,
    Weight,
    saturate,
    saturating_add,
    saturating_mul,
)

_MIN_WEIGHT = Weight.from_parts(1, 1)


def max_transactions_per_block(
    weight: Weight,
    length: int,
    capacity: BlockCapacity,
    dispatch_class: DispatchClass = DispatchClass.NORMAL,
) -> int:
    """Number of such transactions fitting an empty block, by the limiting resource."""
    max_block_weight = capacity.max_block_weight()
    max_block_length = max(1, capacity.max_block_length(dispatch_class))

    # bounded_weight is a divisor so it stays non-zero
    bounded_weight = weight.max(_MIN_WEIGHT).min(max_block_weight)
    bounded_length = min(max(length, 1), max_block_length)

    per_weight = max_block_weight.checked_div_per_component(bounded_weight)
    if per_weight is None:
        per_weight = 1
    per_length = max_block_length // bounded_length
    return min(per_weight, per_length)


def compute_priority(
    weight: Weight,
    length: int,
    tip: int,
    capacity: BlockCapacity,
    dispatch_class: DispatchClass = DispatchClass.NORMAL,
) -> int:
    """
    Compute the u64 priority of a request.

    Args:
        weight: Declared resource weight of the embedded action
        length: Encoded byte length of the embedded action
        tip: Optional tip (0 when absent)
        capacity: Block limits
        dispatch_class: Class whose length limit applies

    Returns:
        (tip + 1) * max transactions per block, saturated to u64
    """
    max_tx = saturate(max_transactions_per_block(weight, length, capacity, dispatch_class), U128_MAX)
    # +1 spreads zero-tip requests so smaller ones still rank higher
    scaled_tip = saturating_mul(saturating_add(tip, 1, U128_MAX), max_tx, U128_MAX)
    return saturate(scaled_tip, U64_MAX)
