"""
penalties.py - Time-decayed withdrawal penalty

Liquidity withdrawn shortly after it was deposited pays a penalty that steps
down with the time elapsed since the (weighted-average) deposit timestamp:

    elapsed < 60h   2.00%
    elapsed < 120h  1.50%
    elapsed < 180h  1.00%
    elapsed < 240h  0.50%
    otherwise       0.00%

Bands are left-closed: exactly 60h already pays 1.50%. The whole penalty is
routed to the rebalancing treasury.
"""

from decimal import Decimal
from typing import Tuple

from .core import InvalidInput, ZERO
from .fixed_point import quantize_amount
from .config import BPS_DENOMINATOR


SECONDS_PER_HOUR = 3600

# (elapsed hours strictly below, penalty bps)
WITHDRAWAL_PENALTY_SCHEDULE: Tuple[Tuple[int, int], ...] = (
    (60, 200),
    (120, 150),
    (180, 100),
    (240, 50),
)


def _check_timestamp(value: int, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{name} must be integer unix seconds, got {type(value).__name__}")


def withdrawal_penalty_bps(deposit_timestamp: int, current_timestamp: int) -> int:
    """
    Penalty in basis points for withdrawing at current_timestamp.

    Both timestamps are supplied by the caller; nothing here reads a clock.

    Raises:
        InvalidInput: current_timestamp earlier than deposit_timestamp
    """
    _check_timestamp(deposit_timestamp, "deposit_timestamp")
    _check_timestamp(current_timestamp, "current_timestamp")
    elapsed = current_timestamp - deposit_timestamp
    if elapsed < 0:
        raise InvalidInput(
            f"current_timestamp {current_timestamp} precedes deposit_timestamp {deposit_timestamp}"
        )
    # Integer comparison in seconds keeps the band edges exact.
    for hours, bps in WITHDRAWAL_PENALTY_SCHEDULE:
        if elapsed < hours * SECONDS_PER_HOUR:
            return bps
    return 0


def withdrawal_penalty_percentage(deposit_timestamp: int, current_timestamp: int) -> Decimal:
    """Penalty as a percentage (200 bps -> Decimal('2.00'))."""
    bps = withdrawal_penalty_bps(deposit_timestamp, current_timestamp)
    return (Decimal(bps) / 100).quantize(Decimal("0.01"))


def withdrawal_penalty_amount(amount: Decimal, penalty_bps: int) -> Decimal:
    """Penalty charged on a withdrawn amount, rounded up to the amount quantum."""
    if amount < 0:
        raise InvalidInput(f"amount cannot be negative, got {amount}")
    if not 0 <= penalty_bps <= BPS_DENOMINATOR:
        raise InvalidInput(f"penalty_bps must be in [0, {BPS_DENOMINATOR}], got {penalty_bps}")
    if penalty_bps == 0 or amount == 0:
        return ZERO
    return min(amount, quantize_amount(amount * penalty_bps / BPS_DENOMINATOR, 'PENALTY'))
