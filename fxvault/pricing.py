"""
pricing.py - Spread, drift and swap-quote computation

Formulas (health h of the source/target vault pair, threshold 0.9):

    spread% = floor%                                     if h > 0.9
            = max(floor%, floor% - slope% * (h - 0.9))   otherwise
    spread_bps = min(ceiling, round_half_up(spread% * 100))

    drift   = 0                                          if h >= 0.9
            = max(0, -(drift_slope% / 100) * (h - 0.9))  otherwise

    source -> target:  adjusted = floor(oracle * (1 - drift))
                       gross    = amount_in * adjusted / SCALE
    target -> source:  adjusted = ceil(oracle * (1 + drift))
                       gross    = amount_in * SCALE / adjusted

    fee = gross * spread_bps / 10000,   net = gross - fee

Drift moves the rate against the trader in the direction that worsens the
imbalance and spread is charged on the output, so a swap followed by the
reverse swap at the same oracle price never returns more than it started with.

All prices are integers scaled by SCALE; all amounts are Decimal with the
engine quantum. Nothing here reads time, global state or the oracle.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR, ROUND_CEILING

from .config import EngineConfig, DEFAULT_CONFIG, BPS_DENOMINATOR
from .core import InvalidInput, ArithmeticOverflow, ZERO
from .fixed_point import quantize_amount, check_scaled_price, to_amount, MAX_RAW_VALUE
from .health import vault_health


# Price impact and drift percentages are reported with 8 decimal places.
PERCENT_QUANTUM = Decimal("1e-8")
HUNDRED = Decimal("100")


@dataclass(frozen=True, slots=True)
class SwapQuote:
    """
    Result of pricing one swap. Computed per call, never persisted.

    Attributes:
        amount_in: Amount delivered by the trader
        amount_out: Net amount the trader receives
        amount_out_without_fees: Gross output at the drifted price
        spread_bps: Spread charged on the gross output
        drift_percentage: Drift applied to the oracle price, in percent
        fee_amount: gross - net, accrued to the payout vault
        adjusted_price: Drifted scaled price
        price_impact_percentage: Net output shortfall against the undrifted oracle output, in percent
        oracle_price: Scaled oracle price the quote was computed from
        vault_health: Health of the pair at quote time
        source_to_target: Direction of the swap
    """
    amount_in: Decimal
    amount_out: Decimal
    amount_out_without_fees: Decimal
    spread_bps: int
    drift_percentage: Decimal
    fee_amount: Decimal
    adjusted_price: int
    price_impact_percentage: Decimal
    oracle_price: int
    vault_health: Decimal
    source_to_target: bool


def spread_bps_for_health(health: Decimal, config: EngineConfig = DEFAULT_CONFIG) -> int:
    """
    Spread in basis points for a given pair health.

    Non-increasing in health, and always within [floor, ceiling].
    """
    floor_pct = Decimal(config.spread_floor_bps) / HUNDRED
    if health > config.health_threshold:
        spread_pct = floor_pct
    else:
        adjustment = config.spread_slope_pct * (health - config.health_threshold)
        spread_pct = max(floor_pct, floor_pct - adjustment)

    spread_bps = int((spread_pct * HUNDRED).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return min(spread_bps, config.spread_ceiling_bps)


def drift_for_health(health: Decimal, config: EngineConfig = DEFAULT_CONFIG) -> Decimal:
    """
    Drift magnitude (a fraction, not percent) for a given pair health.

    Zero at or above the threshold, non-decreasing as health falls.
    """
    if health >= config.health_threshold:
        return ZERO
    adjustment = (config.drift_slope_pct / HUNDRED) * (health - config.health_threshold)
    return max(ZERO, -adjustment)


def calculate_spread_bps(
    source_balance: Decimal,
    target_balance: Decimal,
    config: EngineConfig = DEFAULT_CONFIG,
) -> int:
    """Spread in basis points for a vault pair."""
    return spread_bps_for_health(vault_health(source_balance, target_balance), config)


def calculate_drift(
    source_balance: Decimal,
    target_balance: Decimal,
    config: EngineConfig = DEFAULT_CONFIG,
) -> Decimal:
    """Drift fraction for a vault pair."""
    return drift_for_health(vault_health(source_balance, target_balance), config)


def apply_drift(oracle_price: int, drift: Decimal, source_to_target: bool) -> int:
    """
    Apply drift to a scaled oracle price.

    When the trader delivers source and receives target the rate drops;
    in the other direction it rises. Rounding always goes against the trader.
    """
    check_scaled_price(oracle_price)
    if drift < 0:
        raise InvalidInput(f"drift cannot be negative, got {drift}")
    price = Decimal(oracle_price)
    if source_to_target:
        adjusted = int((price * (1 - drift)).to_integral_value(rounding=ROUND_FLOOR))
    else:
        adjusted = int((price * (1 + drift)).to_integral_value(rounding=ROUND_CEILING))
    if adjusted <= 0:
        raise InvalidInput(f"drift {drift} leaves no positive price from {oracle_price}")
    if adjusted > MAX_RAW_VALUE:
        raise ArithmeticOverflow(f"adjusted price {adjusted} exceeds maximum {MAX_RAW_VALUE}")
    return adjusted


def convert_amount(amount_in: Decimal, price: int, source_to_target: bool, scale: int) -> Decimal:
    """Convert an amount across the pair at a scaled price, rounding down."""
    if source_to_target:
        raw = amount_in * Decimal(price) / Decimal(scale)
    else:
        raw = amount_in * Decimal(scale) / Decimal(price)
    return quantize_amount(raw, 'OUTPUT')


def quote_swap(
    amount_in: Decimal,
    oracle_price: int,
    source_balance: Decimal,
    target_balance: Decimal,
    source_to_target: bool = True,
    config: EngineConfig = DEFAULT_CONFIG,
) -> SwapQuote:
    """
    Price a swap against a snapshot of the pair's balances.

    Args:
        amount_in: Amount the trader delivers (source currency when
                   source_to_target, target currency otherwise)
        oracle_price: Scaled price of one unit of source in target
        source_balance: Source vault balance at pricing time
        target_balance: Target vault balance at pricing time
        source_to_target: Direction of the swap
        config: Engine parameters

    Returns:
        SwapQuote

    Raises:
        InvalidInput: amount_in or oracle_price not positive, negative
                      balances, or an amount too small to produce output.
                      No partial result is returned.

    Example:
        quote = quote_swap(Decimal("1000"), 1_000_000_000,
                           Decimal("1000000"), Decimal("1000000"))
        # spread_bps=3, drift 0, amount_out=999.7, fee_amount=0.3
    """
    amount_in = to_amount(amount_in, "amount_in")
    if amount_in <= 0:
        raise InvalidInput(f"amount_in must be positive, got {amount_in}")
    check_scaled_price(oracle_price)
    health = vault_health(source_balance, target_balance)

    spread_bps = spread_bps_for_health(health, config)
    drift = drift_for_health(health, config)
    adjusted_price = apply_drift(oracle_price, drift, source_to_target)

    gross = convert_amount(amount_in, adjusted_price, source_to_target, config.scale)
    if gross <= 0:
        raise InvalidInput(f"amount_in {amount_in} is too small to produce any output")

    fee = quantize_amount(gross * spread_bps / BPS_DENOMINATOR, 'FEE')
    net = gross - fee
    if net <= 0:
        raise InvalidInput(f"amount_in {amount_in} is too small to produce any output after fees")

    undrifted = convert_amount(amount_in, oracle_price, source_to_target, config.scale)
    if undrifted > 0:
        impact = ((undrifted - net) / undrifted * HUNDRED).quantize(PERCENT_QUANTUM)
    else:
        impact = ZERO

    return SwapQuote(
        amount_in=amount_in,
        amount_out=net,
        amount_out_without_fees=gross,
        spread_bps=spread_bps,
        drift_percentage=(drift * HUNDRED).quantize(PERCENT_QUANTUM),
        fee_amount=fee,
        adjusted_price=adjusted_price,
        price_impact_percentage=impact,
        oracle_price=oracle_price,
        vault_health=health,
        source_to_target=source_to_target,
    )
