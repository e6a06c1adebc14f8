"""
test_price_history.py - Unit tests for the cached price history view

Tests:
- Full load: current, 1h, 24h and daily points
- Lifecycle: first load, current-only updates, TTL refresh, invalidation
- Missing and failing sources
- Display summary statistics
"""

import logging
import pytest
from decimal import Decimal

from fxvault import (
    OraclePrice, StaticPriceSource, TimeSeriesPriceSource, PriceHistoryCache, PriceHistory, PricePoint,
)

T = 1_700_000_000
HOUR = 3600
DAY = 24 * HOUR


def hourly_source(hours: int = 7 * 24) -> TimeSeriesPriceSource:
    """EUR/USD with mantissa 100000 + k published k hours before T."""
    return TimeSeriesPriceSource({
        "EUR/USD": [OraclePrice(100_000 + k, -5, T - k * HOUR) for k in range(hours + 1)],
    })


class CountingSource:
    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    def get_price(self, pair, timestamp):
        self.calls += 1
        return self.inner.get_price(pair, timestamp)


class BrokenSource:
    def get_price(self, pair, timestamp):
        raise TimeoutError("feed timeout")


class TestFullLoad:

    def test_points(self):
        cache = PriceHistoryCache(hourly_source(), ["EUR/USD"])
        history = cache.get(T)["EUR/USD"]
        assert history.error is None
        assert history.current == PricePoint(Decimal("1.00000"), T)
        assert history.hour1.price == Decimal("1.00001")
        assert history.hour24.price == Decimal("1.00024")
        assert len(history.day7) == 8
        assert [p.timestamp for p in history.day7] == [T - d * DAY for d in range(7, -1, -1)]
        assert history.day7[0].price == Decimal("1.00168")
        assert history.day7[-1].price == Decimal("1.00000")

    def test_partial_history(self):
        # Only three hours of data: older points are omitted
        cache = PriceHistoryCache(hourly_source(hours=3), ["EUR/USD"])
        history = cache.get(T)["EUR/USD"]
        assert history.hour1 is not None
        assert history.hour24 is None
        assert len(history.day7) == 1

    def test_missing_pair(self):
        cache = PriceHistoryCache(hourly_source(), ["EUR/USD", "GBP/USD"])
        data = cache.get(T)
        assert data["EUR/USD"].error is None
        assert data["GBP/USD"].current is None
        assert "GBP/USD" in data["GBP/USD"].error

    def test_failing_source_is_logged(self, caplog):
        cache = PriceHistoryCache(BrokenSource(), ["EUR/USD"])
        with caplog.at_level(logging.WARNING, logger="fxvault.price_history"):
            history = cache.get(T)["EUR/USD"]
        assert history.error is not None
        assert "feed timeout" in caplog.text


class TestLifecycle:

    def test_first_get_loads(self):
        source = CountingSource(hourly_source())
        cache = PriceHistoryCache(source, ["EUR/USD"], ttl=60)
        assert cache.is_stale(T)
        assert cache.last_full_update is None
        cache.get(T)
        # current + 8 daily points + 1h + 24h
        assert source.calls == 11
        assert cache.last_full_update == T

    def test_within_ttl_updates_current_only(self):
        source = CountingSource(hourly_source())
        cache = PriceHistoryCache(source, ["EUR/USD"], ttl=60)
        cache.get(T)
        cache.get(T + 60)
        assert source.calls == 12
        assert cache.last_full_update == T

    def test_expired_ttl_reloads(self):
        source = CountingSource(hourly_source())
        cache = PriceHistoryCache(source, ["EUR/USD"], ttl=60)
        cache.get(T)
        cache.get(T + 61)
        assert source.calls == 22
        assert cache.last_full_update == T + 61

    def test_invalidate_and_refresh(self):
        source = CountingSource(hourly_source())
        cache = PriceHistoryCache(source, ["EUR/USD"], ttl=60)
        cache.get(T)
        cache.invalidate()
        assert cache.is_stale(T)
        cache.get(T + 1)
        assert source.calls == 22
        cache.refresh(T + 2)
        assert source.calls == 33
        assert cache.last_full_update == T + 2

    def test_update_picks_up_new_current_price(self):
        source = hourly_source()
        cache = PriceHistoryCache(source, ["EUR/USD"])
        cache.get(T)
        source.add_price("EUR/USD", OraclePrice(99_000, -5, T + 10))
        history = cache.get(T + 20)["EUR/USD"]
        assert history.current == PricePoint(Decimal("0.99000"), T + 10)
        assert history.hour1.price == Decimal("1.00001")

    def test_update_keeps_last_known_price(self):
        source = StaticPriceSource({"EUR/USD": OraclePrice(108_500, -5, T)})
        cache = PriceHistoryCache(source, ["EUR/USD"])
        before = cache.get(T)["EUR/USD"]
        del source.prices["EUR/USD"]
        assert cache.get(T + 10)["EUR/USD"] == before

    def test_errored_pair_reloads_when_price_appears(self):
        source = hourly_source()
        cache = PriceHistoryCache(source, ["EUR/USD", "GBP/USD"])
        assert cache.get(T)["GBP/USD"].error is not None
        source.add_price("GBP/USD", OraclePrice(127_000, -5, T + 5))
        history = cache.get(T + 10)["GBP/USD"]
        assert history.error is None
        assert history.current.price == Decimal("1.27000")

    def test_returned_mapping_is_a_copy(self):
        cache = PriceHistoryCache(hourly_source(), ["EUR/USD"])
        data = cache.get(T)
        data.clear()
        assert "EUR/USD" in cache.get(T)

    def test_validation(self):
        with pytest.raises(ValueError):
            PriceHistoryCache(hourly_source(), ["EUR/USD"], ttl=0)
        with pytest.raises(ValueError):
            PriceHistoryCache(hourly_source(), [])


class TestSummary:

    def test_statistics(self):
        history = PriceHistoryCache(hourly_source(), ["EUR/USD"]).get(T)["EUR/USD"]
        summary = history.summary()
        assert summary['current'] == pytest.approx(1.0)
        assert summary['change_1h_pct'] == pytest.approx((1.0 / 1.00001 - 1.0) * 100.0)
        assert summary['change_24h_pct'] == pytest.approx((1.0 / 1.00024 - 1.0) * 100.0)
        assert summary['min_7d'] == pytest.approx(1.0)
        assert summary['max_7d'] == pytest.approx(1.00168)
        assert summary['mean_7d'] == pytest.approx(1.00084)
        assert summary['volatility_7d_pct'] > 0

    def test_error_summary_is_empty(self):
        summary = PriceHistory(pair="GBP/USD", current=None, error="no data").summary()
        assert all(value is None for value in summary.values())

    def test_flat_prices_have_no_volatility(self):
        points = tuple(PricePoint(Decimal("1.1"), T - d * DAY) for d in range(3))
        history = PriceHistory(pair="EUR/USD", current=points[0], day7=points)
        assert history.summary()['volatility_7d_pct'] == pytest.approx(0.0)
        assert history.summary()['change_1h_pct'] is None
