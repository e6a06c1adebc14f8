"""
health.py - Vault health evaluation

Health is the ratio of the smaller to the larger of two vault balances:
1 for a perfectly balanced pair, 0 when either side holds nothing.
"""

from decimal import Decimal

from .core import InvalidInput, ZERO


def vault_health(balance_a: Decimal, balance_b: Decimal) -> Decimal:
    """
    Health of a vault pair, in [0, 1].

    Returns 0 if either balance is 0: the uniform guard against division by
    zero, and the "no liquidity" signal. Pure and symmetric.

    Raises:
        InvalidInput: If either balance is negative
    """
    if balance_a < 0 or balance_b < 0:
        raise InvalidInput(f"vault balances cannot be negative, got {balance_a}, {balance_b}")
    if balance_a == 0 or balance_b == 0:
        return ZERO
    smaller = min(balance_a, balance_b)
    larger = max(balance_a, balance_b)
    return Decimal(smaller) / Decimal(larger)
