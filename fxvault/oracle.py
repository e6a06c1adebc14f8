"""
oracle.py - Oracle price sources for swap pricing

The engine never retrieves prices itself. A PriceSource supplies raw oracle
observations (mantissa * 10**exponent with a publish time); fetch_oracle_price
validates freshness and converts to the engine's integer scaled price.

Classes:
- OraclePrice: One raw oracle observation
- PriceSource: Protocol defining the retrieval interface
- StaticPriceSource: Time-independent prices
- TimeSeriesPriceSource: Time-varying prices with historical data

Pairs are named "BASE/QUOTE": the price of one BASE in QUOTE, so "EUR/USD"
at 1.085 means one EUR buys 1.085 USD.
"""

from __future__ import annotations
from bisect import bisect_right
from dataclasses import dataclass
import logging
from typing import Dict, List, Optional, Protocol, Iterable, runtime_checkable

from .config import ORACLE_MAX_STALENESS_SECONDS
from .core import StaleOrMissingOracle, VaultError
from .fixed_point import SCALE, to_scaled_price

logger = logging.getLogger(__name__)


def pair_name(base: str, quote: str) -> str:
    """Canonical pair name for pricing base in quote."""
    return f"{base}/{quote}"


@dataclass(frozen=True, slots=True)
class OraclePrice:
    """
    A raw oracle observation: price = mantissa * 10**exponent.

    Attributes:
        mantissa: Integer price digits
        exponent: Power of ten applied to the mantissa (typically negative)
        publish_time: Unix seconds at which the oracle published the price
    """
    mantissa: int
    exponent: int
    publish_time: int

    def scaled(self, scale: int = SCALE) -> int:
        """Integer price scaled by `scale` (1.08512 -> 1_085_120_000)."""
        return to_scaled_price(self.mantissa, self.exponent, scale)

    def age(self, now: int) -> int:
        return now - self.publish_time


@runtime_checkable
class PriceSource(Protocol):
    """
    Protocol for oracle price sources.

    get_price returns the most recent observation for a pair at or before the
    given time, or None if the source has none. Implementations may raise on
    transport failures; fetch_oracle_price converts those to
    StaleOrMissingOracle.
    """

    def get_price(self, pair: str, timestamp: int) -> Optional[OraclePrice]:
        ...


class StaticPriceSource:
    """
    Price source with static prices (time-independent).

    Each observation keeps its own publish_time, so staleness checks still
    apply to prices that are never updated.
    """

    def __init__(self, prices: Optional[Dict[str, OraclePrice]] = None):
        self.prices: Dict[str, OraclePrice] = dict(prices or {})

    def get_price(self, pair: str, timestamp: int) -> Optional[OraclePrice]:
        """Get static price (timestamp is ignored)."""
        return self.prices.get(pair)

    def update_price(self, pair: str, price: OraclePrice) -> None:
        self.prices[pair] = price

    def update_prices(self, prices: Dict[str, OraclePrice]) -> None:
        self.prices.update(prices)

    def __repr__(self):
        return f"StaticPriceSource({len(self.prices)} pairs)"


class TimeSeriesPriceSource:
    """
    Price source with time-varying prices.

    Stores historical observations per pair and returns the most recent one
    published at or before the requested timestamp.

    Examples:
        source = TimeSeriesPriceSource({
            'EUR/USD': [OraclePrice(108_500, -5, 0), OraclePrice(108_620, -5, 60)],
        })
        source.get_price('EUR/USD', 59).mantissa   # 108_500
    """

    def __init__(self, price_paths: Optional[Dict[str, Iterable[OraclePrice]]] = None):
        self.price_history: Dict[str, List[OraclePrice]] = {}
        if price_paths:
            for pair, path in price_paths.items():
                path = list(path)
                if not path:
                    continue
                self.price_history[pair] = sorted(path, key=lambda p: p.publish_time)

    def add_price(self, pair: str, price: OraclePrice) -> None:
        """Add an observation for a pair, keeping the history ordered by publish time."""
        history = self.price_history.setdefault(pair, [])
        history.append(price)
        history.sort(key=lambda p: p.publish_time)

    def get_price(self, pair: str, timestamp: int) -> Optional[OraclePrice]:
        """
        Get the latest observation published at or before timestamp.

        Uses binary search for O(log n) lookup.
        """
        history = self.price_history.get(pair)
        if not history:
            return None
        times = [p.publish_time for p in history]
        idx = bisect_right(times, timestamp)
        if idx == 0:
            return None
        return history[idx - 1]

    def pairs(self) -> List[str]:
        return sorted(self.price_history)

    def __repr__(self):
        total = sum(len(h) for h in self.price_history.values())
        return f"TimeSeriesPriceSource({len(self.price_history)} pairs, {total} observations)"


def fetch_oracle_price(
    source: PriceSource,
    pair: str,
    now: int,
    max_staleness: int = ORACLE_MAX_STALENESS_SECONDS,
) -> OraclePrice:
    """
    Retrieve and validate the current oracle observation for a pair.

    Must be called before entering any ledger commit: a source may block.

    Raises:
        StaleOrMissingOracle: source failure, no price, non-positive price,
                              a publish time after `now`, or an observation
                              older than max_staleness seconds
    """
    try:
        price = source.get_price(pair, now)
    except VaultError:
        raise
    except Exception as exc:
        logger.warning("oracle source failed for %s: %s", pair, exc)
        raise StaleOrMissingOracle(f"oracle source failed for {pair}: {exc}") from exc

    if price is None:
        raise StaleOrMissingOracle(f"no oracle price for {pair} at {now}")
    if price.mantissa <= 0:
        raise StaleOrMissingOracle(f"oracle returned a non-positive price for {pair}: {price.mantissa}")
    age = price.age(now)
    if age < 0:
        raise StaleOrMissingOracle(
            f"oracle price for {pair} published at {price.publish_time}, after {now}"
        )
    if age > max_staleness:
        raise StaleOrMissingOracle(
            f"oracle price for {pair} is {age}s old (max {max_staleness}s)"
        )
    return price


def fetch_scaled_price(
    source: PriceSource,
    pair: str,
    now: int,
    max_staleness: int = ORACLE_MAX_STALENESS_SECONDS,
    scale: int = SCALE,
) -> int:
    """fetch_oracle_price, converted to an integer scaled price."""
    return fetch_oracle_price(source, pair, now, max_staleness).scaled(scale)
