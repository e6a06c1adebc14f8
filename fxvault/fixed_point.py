"""
fixed_point.py - Fixed-point conversion and rounding for value-bearing amounts

Amounts are Decimals with at most AMOUNT_DECIMALS fractional digits.
Prices are integers scaled by SCALE (1.1 EUR/USD -> 1_100_000_000).

Every conversion into the engine is exact or rejected: a value carrying more
precision than the quantum raises PrecisionLoss, a value beyond the
representable range raises ArithmeticOverflow. Computed results are
quantized explicitly, with the rounding mode chosen per kind of value
(see AMOUNT_ROUNDING).
"""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN, ROUND_UP, ROUND_CEILING, InvalidOperation
from typing import Union

from .core import InvalidInput, ArithmeticOverflow, PrecisionLoss


# Price scaling constant, shared by every multiplication/division on prices.
SCALE = 10 ** 9

# Amount precision: 9 fractional digits, i.e. amounts are integers of 1e-9 units.
AMOUNT_DECIMALS = 9
AMOUNT_QUANTUM = Decimal(1).scaleb(-AMOUNT_DECIMALS)

# Largest raw integer (base units or scaled price) the engine represents.
MAX_RAW_VALUE = 2 ** 128 - 1
MAX_AMOUNT = Decimal(MAX_RAW_VALUE).scaleb(-AMOUNT_DECIMALS)

# Rounding per kind of computed value. Outputs paid to users and shares of a
# split round down; fees and penalties charged to users round up.
AMOUNT_ROUNDING = {
    'OUTPUT': ROUND_DOWN,
    'SHARE': ROUND_DOWN,
    'INJECTION': ROUND_DOWN,
    'FEE': ROUND_UP,
    'PENALTY': ROUND_UP,
}

Numeric = Union[Decimal, int, str]


def to_amount(value: Numeric, name: str = "amount") -> Decimal:
    """
    Convert an externally supplied amount to an engine Decimal, exactly.

    Accepts Decimal, int or str. Floats are rejected: they cannot be
    converted without guessing at the intended digits.

    Raises:
        InvalidInput: non-numeric, float, NaN or infinite value
        PrecisionLoss: more than AMOUNT_DECIMALS fractional digits
        ArithmeticOverflow: magnitude above MAX_AMOUNT
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidInput(f"{name} must be Decimal, int or str, got {type(value).__name__}")
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, (int, str)):
        try:
            d = Decimal(value)
        except InvalidOperation:
            raise InvalidInput(f"{name} is not a number: {value!r}") from None
    else:
        raise InvalidInput(f"{name} must be Decimal, int or str, got {type(value).__name__}")

    if d.is_nan() or d.is_infinite():
        raise InvalidInput(f"{name} must be finite, got {d}")
    if abs(d) > MAX_AMOUNT:
        raise ArithmeticOverflow(f"{name} {d} exceeds maximum {MAX_AMOUNT}")
    quantized = d.quantize(AMOUNT_QUANTUM)
    if quantized != d:
        raise PrecisionLoss(
            f"{name} {d} has more than {AMOUNT_DECIMALS} decimal places"
        )
    return quantized


def quantize_amount(value: Decimal, kind: str = 'OUTPUT') -> Decimal:
    """
    Quantize a computed Decimal to the amount quantum.

    Args:
        value: Result of an engine computation
        kind: Key into AMOUNT_ROUNDING selecting the rounding direction

    Raises:
        ArithmeticOverflow: magnitude above MAX_AMOUNT
    """
    # Checked first: quantizing a value this large would exceed the context precision
    if abs(value) > MAX_AMOUNT:
        raise ArithmeticOverflow(f"computed {kind.lower()} {value} exceeds maximum {MAX_AMOUNT}")
    return value.quantize(AMOUNT_QUANTUM, rounding=AMOUNT_ROUNDING[kind])


def check_scaled_price(price: int, name: str = "oracle_price") -> int:
    """Validate an integer SCALE-d price: positive and in range."""
    if isinstance(price, bool) or not isinstance(price, int):
        raise InvalidInput(f"{name} must be an integer scaled by {SCALE}, got {type(price).__name__}")
    if price <= 0:
        raise InvalidInput(f"{name} must be positive, got {price}")
    if price > MAX_RAW_VALUE:
        raise ArithmeticOverflow(f"{name} {price} exceeds maximum {MAX_RAW_VALUE}")
    return price


def to_scaled_price(mantissa: int, exponent: int, scale: int = SCALE) -> int:
    """
    Convert an oracle price mantissa * 10**exponent to an integer scaled price.

    Example:
        to_scaled_price(108_512, -5)  # 1.08512 -> 1_085_120_000

    Raises:
        InvalidInput: non-positive mantissa
        PrecisionLoss: the price has more digits than the scale can hold
        ArithmeticOverflow: result above MAX_RAW_VALUE
    """
    if isinstance(mantissa, bool) or not isinstance(mantissa, int):
        raise InvalidInput(f"mantissa must be an integer, got {type(mantissa).__name__}")
    if mantissa <= 0:
        raise InvalidInput(f"oracle price must be positive, got mantissa {mantissa}")

    scaled = Decimal(mantissa).scaleb(exponent) * scale
    if scaled != scaled.to_integral_value():
        raise PrecisionLoss(
            f"price {mantissa}e{exponent} cannot be represented at scale {scale}"
        )
    result = int(scaled)
    if result > MAX_RAW_VALUE:
        raise ArithmeticOverflow(f"scaled price {result} exceeds maximum {MAX_RAW_VALUE}")
    return result


def scaled_price_to_decimal(price: int, scale: int = SCALE) -> Decimal:
    """Human-readable rate for a scaled price (1_100_000_000 -> 1.1)."""
    return Decimal(price) / Decimal(scale)


def ceil_to_int(value: Decimal) -> int:
    """Smallest integer >= value."""
    return int(value.to_integral_value(rounding=ROUND_CEILING))
