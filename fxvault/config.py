"""
config.py - Engine parameters and logging setup

EngineConfig gathers the numeric policy of the engine. DEFAULT_CONFIG holds
the contractual constants; alternative configurations are passed explicitly
to the functions and ledger that use them.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
import logging
import sys

from .fixed_point import SCALE


# Contractual constants
SPREAD_FLOOR_BPS = 3                    # 0.03% minimum spread
SPREAD_CEILING_BPS = 50                 # 0.50% maximum spread
SPREAD_SLOPE_PCT = Decimal("0.2833")    # percent per unit of health below threshold
DRIFT_SLOPE_PCT = Decimal("0.8333")     # percent per unit of health below threshold
HEALTH_THRESHOLD = Decimal("0.9")
LP_FEE_PERCENT = 70
BPS_DENOMINATOR = 10_000

ORACLE_MAX_STALENESS_SECONDS = 3600
PRICE_HISTORY_TTL_SECONDS = 60


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """
    Numeric policy for pricing, fee allocation and rebalancing.

    Attributes:
        scale: Integer price scaling constant
        spread_floor_bps: Minimum spread, also the spread of a healthy pair
        spread_ceiling_bps: Spread clamp
        spread_slope_pct: Spread growth (percent) per unit of health below threshold
        drift_slope_pct: Drift growth (percent) per unit of health below threshold
        health_threshold: Health above which a pair is considered balanced
        emergency_injection_pct: Percent of the deficit injected when health <= 0.20
        allow_empty_vault_swaps: Permit swaps while either vault holds no liquidity
        oracle_max_staleness: Maximum age (seconds) of an accepted oracle price
        price_history_ttl: Seconds before the price-history cache fully refreshes
    """
    scale: int = SCALE
    spread_floor_bps: int = SPREAD_FLOOR_BPS
    spread_ceiling_bps: int = SPREAD_CEILING_BPS
    spread_slope_pct: Decimal = SPREAD_SLOPE_PCT
    drift_slope_pct: Decimal = DRIFT_SLOPE_PCT
    health_threshold: Decimal = HEALTH_THRESHOLD
    emergency_injection_pct: Decimal = Decimal("100")
    allow_empty_vault_swaps: bool = False
    oracle_max_staleness: int = ORACLE_MAX_STALENESS_SECONDS
    price_history_ttl: int = PRICE_HISTORY_TTL_SECONDS

    def __post_init__(self):
        if self.scale <= 0:
            raise ValueError(f"scale must be positive, got {self.scale}")
        if self.spread_floor_bps < 0:
            raise ValueError(f"spread_floor_bps cannot be negative, got {self.spread_floor_bps}")
        if self.spread_ceiling_bps < self.spread_floor_bps:
            raise ValueError(
                f"spread_ceiling_bps ({self.spread_ceiling_bps}) must be >= "
                f"spread_floor_bps ({self.spread_floor_bps})"
            )
        if self.spread_ceiling_bps > BPS_DENOMINATOR:
            raise ValueError(f"spread_ceiling_bps cannot exceed {BPS_DENOMINATOR}")
        for name in ('spread_slope_pct', 'drift_slope_pct', 'health_threshold', 'emergency_injection_pct'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                raise ValueError(f"{name} must be Decimal, got {type(value).__name__}")
            if value < 0:
                raise ValueError(f"{name} cannot be negative, got {value}")
        if not Decimal("0") < self.health_threshold <= Decimal("1"):
            raise ValueError(f"health_threshold must be in (0, 1], got {self.health_threshold}")
        # Maximum drift must leave the adjusted price positive
        if self.drift_slope_pct * self.health_threshold >= 100:
            raise ValueError("drift_slope_pct too large: adjusted price could reach zero")
        if self.emergency_injection_pct > 100:
            raise ValueError(f"emergency_injection_pct cannot exceed 100, got {self.emergency_injection_pct}")
        if self.oracle_max_staleness <= 0:
            raise ValueError("oracle_max_staleness must be positive")
        if self.price_history_ttl <= 0:
            raise ValueError("price_history_ttl must be positive")


DEFAULT_CONFIG = EngineConfig()


def setup_logging(level: str = "INFO") -> None:
    """Configure engine logging to stdout."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
