"""
price_history.py - Cached historical price view per currency pair

PriceHistoryCache is an explicit, injectable capability with a defined
lifecycle: it loads on the first request, fully refreshes once its data is
older than the TTL, and otherwise only updates the current price of each
pair. Nothing in the pricing path reads it; it serves display consumers
(rates pages, dashboards) only, so its summary statistics use floats.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from decimal import Decimal
import logging
import threading
from typing import Dict, List, Optional, Sequence

import numpy as np

from .config import PRICE_HISTORY_TTL_SECONDS
from .core import VaultError
from .oracle import OraclePrice, PriceSource

logger = logging.getLogger(__name__)

HOUR = 3600
DAY = 24 * HOUR
DAILY_POINTS = 8            # today and the previous seven days


@dataclass(frozen=True, slots=True)
class PricePoint:
    price: Decimal
    timestamp: int


def _to_point(observation: Optional[OraclePrice], timestamp: int) -> Optional[PricePoint]:
    if observation is None or observation.mantissa <= 0:
        return None
    price = Decimal(observation.mantissa).scaleb(observation.exponent)
    return PricePoint(price=price, timestamp=timestamp)


@dataclass(frozen=True, slots=True)
class PriceHistory:
    """
    Current, 1h-ago, 24h-ago and daily prices for one pair.

    error is set (and the points left empty) when the source had no usable
    current price for the pair at refresh time.
    """
    pair: str
    current: Optional[PricePoint]
    hour1: Optional[PricePoint] = None
    hour24: Optional[PricePoint] = None
    day7: Sequence[PricePoint] = field(default_factory=tuple)
    error: Optional[str] = None

    def summary(self) -> Dict[str, Optional[float]]:
        """
        Display statistics: 1h and 24h change (percent) and 7-day
        min / max / mean / volatility of daily returns (percent).
        """
        result: Dict[str, Optional[float]] = {
            'current': None, 'change_1h_pct': None, 'change_24h_pct': None,
            'min_7d': None, 'max_7d': None, 'mean_7d': None, 'volatility_7d_pct': None,
        }
        if self.current is None:
            return result
        current = float(self.current.price)
        result['current'] = current
        if self.hour1 is not None:
            result['change_1h_pct'] = (current / float(self.hour1.price) - 1.0) * 100.0
        if self.hour24 is not None:
            result['change_24h_pct'] = (current / float(self.hour24.price) - 1.0) * 100.0

        if self.day7:
            prices = np.array([float(p.price) for p in self.day7], dtype=np.float64)
            result['min_7d'] = float(prices.min())
            result['max_7d'] = float(prices.max())
            result['mean_7d'] = float(prices.mean())
            if len(prices) > 1:
                returns = np.diff(prices) / prices[:-1]
                result['volatility_7d_pct'] = float(np.std(returns, ddof=1) * 100.0) if len(returns) > 1 else 0.0
        return result


class PriceHistoryCache:
    """
    Process-wide price history with TTL-driven refresh.

    Example:
        cache = PriceHistoryCache(source, ["EUR/USD", "GBP/USD"])
        history = cache.get(now)          # loads on first call
        history["EUR/USD"].summary()
    """

    def __init__(
        self,
        source: PriceSource,
        pairs: Sequence[str],
        ttl: int = PRICE_HISTORY_TTL_SECONDS,
    ):
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        if not pairs:
            raise ValueError("at least one pair is required")
        self.source = source
        self.pairs: List[str] = list(pairs)
        self.ttl = ttl
        self._data: Optional[Dict[str, PriceHistory]] = None
        self._last_full_update: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def last_full_update(self) -> Optional[int]:
        return self._last_full_update

    def is_stale(self, now: int) -> bool:
        """True when never loaded or the last full refresh is older than the TTL."""
        return self._data is None or now - self._last_full_update > self.ttl

    def invalidate(self) -> None:
        """Drop cached data; the next get() performs a full refresh."""
        with self._lock:
            self._data = None
            self._last_full_update = None

    def get(self, now: int) -> Dict[str, PriceHistory]:
        """
        Return price history for every configured pair.

        Fully refreshes when stale, otherwise updates current prices only.
        """
        with self._lock:
            if self.is_stale(now):
                self._data = self._load_all(now)
                self._last_full_update = now
            else:
                self._data = {
                    pair: self._update_current(history, now)
                    for pair, history in self._data.items()
                }
            return dict(self._data)

    def refresh(self, now: int) -> Dict[str, PriceHistory]:
        """Force a full refresh regardless of age (e.g. from a timer)."""
        with self._lock:
            self._data = self._load_all(now)
            self._last_full_update = now
            return dict(self._data)

    # ------------------------------------------------------------------

    def _observe(self, pair: str, timestamp: int) -> Optional[OraclePrice]:
        try:
            return self.source.get_price(pair, timestamp)
        except VaultError:
            raise
        except Exception as exc:
            logger.warning("price history: source failed for %s at %s: %s", pair, timestamp, exc)
            return None

    def _load_all(self, now: int) -> Dict[str, PriceHistory]:
        logger.debug("price history: full refresh of %d pairs at %s", len(self.pairs), now)
        return {pair: self._load_pair(pair, now) for pair in self.pairs}

    def _load_pair(self, pair: str, now: int) -> PriceHistory:
        current_obs = self._observe(pair, now)
        current = _to_point(current_obs, current_obs.publish_time if current_obs else now)
        if current is None:
            return PriceHistory(pair=pair, current=None, error=f"no current price data for {pair}")

        day7 = []
        for days_ago in range(DAILY_POINTS - 1, -1, -1):
            ts = now - days_ago * DAY
            point = _to_point(self._observe(pair, ts), ts)
            if point is not None:
                day7.append(point)

        return PriceHistory(
            pair=pair,
            current=current,
            hour1=_to_point(self._observe(pair, now - HOUR), now - HOUR),
            hour24=_to_point(self._observe(pair, now - DAY), now - DAY),
            day7=tuple(day7),
        )

    def _update_current(self, history: PriceHistory, now: int) -> PriceHistory:
        observation = self._observe(history.pair, now)
        current = _to_point(observation, observation.publish_time if observation else now)
        if current is None:
            # Keep the last known price rather than blanking the pair.
            return history
        if history.error is not None:
            return self._load_pair(history.pair, now)
        return replace(history, current=current)
