"""
fees.py - Fee distribution allocator

Splits an accrued fee amount between liquidity providers, the rebalancing
treasury and the protocol treasury according to the health of the vault pair.

    health > 0.70   rebalancer 15%  protocol 15%
    health > 0.50   rebalancer 20%  protocol 10%
    health > 0.30   rebalancer 25%  protocol  5%
    otherwise       rebalancer 30%  protocol  0%

Percentages are of the total fee; LPs always receive the remaining 70%.
The treasury shares are rounded down to the amount quantum and the LP share
absorbs the remainder, so the three shares always sum exactly to the input.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Tuple

from .core import InvalidInput, ZERO
from .fixed_point import quantize_amount, to_amount


# (health strictly above, rebalancer %, protocol %), tested top to bottom.
FEE_ALLOCATION_BANDS: Tuple[Tuple[Decimal, int, int], ...] = (
    (Decimal("0.70"), 15, 15),
    (Decimal("0.50"), 20, 10),
    (Decimal("0.30"), 25, 5),
)
DEFAULT_FEE_ALLOCATION: Tuple[int, int] = (30, 0)


@dataclass(frozen=True, slots=True)
class FeeSplit:
    """Three-way split of one fee amount. Ephemeral."""
    lp_share: Decimal
    rebalancer_share: Decimal
    protocol_share: Decimal

    @property
    def total(self) -> Decimal:
        return self.lp_share + self.rebalancer_share + self.protocol_share


def fee_allocation_percentages(health: Decimal) -> Tuple[int, int]:
    """
    Return (rebalancer_pct, protocol_pct) for a pair health.

    The first band whose lower bound the health exceeds wins.
    """
    if health < 0 or health > 1:
        raise InvalidInput(f"health must be in [0, 1], got {health}")
    for lower_bound, rebalancer_pct, protocol_pct in FEE_ALLOCATION_BANDS:
        if health > lower_bound:
            return rebalancer_pct, protocol_pct
    return DEFAULT_FEE_ALLOCATION


def allocate_fees(total_fee: Decimal, health: Decimal) -> FeeSplit:
    """
    Split total_fee between LPs, the rebalancing treasury and the protocol.

    Args:
        total_fee: Accrued fees to distribute (>= 0)
        health: Health of the vault pair at distribution time

    Returns:
        FeeSplit whose shares sum exactly to total_fee

    Raises:
        InvalidInput: negative fee, or health outside [0, 1]

    Example:
        split = allocate_fees(Decimal("100"), Decimal("0.65"))
        # FeeSplit(lp_share=70, rebalancer_share=20, protocol_share=10)
    """
    total_fee = to_amount(total_fee, "total_fee")
    if total_fee < 0:
        raise InvalidInput(f"total_fee cannot be negative, got {total_fee}")

    rebalancer_pct, protocol_pct = fee_allocation_percentages(health)

    if total_fee == 0:
        return FeeSplit(ZERO, ZERO, ZERO)

    rebalancer_share = quantize_amount(total_fee * rebalancer_pct / 100, 'SHARE')
    protocol_share = quantize_amount(total_fee * protocol_pct / 100, 'SHARE')
    lp_share = total_fee - rebalancer_share - protocol_share

    return FeeSplit(
        lp_share=lp_share,
        rebalancer_share=rebalancer_share,
        protocol_share=protocol_share,
    )
