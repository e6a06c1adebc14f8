"""
rebalancing.py - Health-banded liquidity injection policy

When one vault of a pair falls behind the other, the rebalancing treasury
injects a fraction of the deficit into the weaker vault. The fraction grows
as the pair's health falls:

    EMPTY      health == 0         no directive (logged)
    EMERGENCY  (0.00, 0.20]        emergency_injection_pct (default 100%)
    CRITICAL   (0.20, 0.30]        75%
    MODERATE   (0.30, 0.40]        50%
    MILD       (0.40, 0.50]        30%
    HEALTHY    > 0.50              no directive

A directive carries the balances it was computed from. The ledger applies it
only while those balances are still current, and at most once.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
import hashlib
import logging
from typing import Dict, Optional

from .config import EngineConfig, DEFAULT_CONFIG
from .core import InvalidInput, ZERO, _normalize_decimal
from .fixed_point import quantize_amount
from .health import vault_health

logger = logging.getLogger(__name__)


class HealthBand(Enum):
    EMPTY = "empty"
    EMERGENCY = "emergency"
    CRITICAL = "critical"
    MODERATE = "moderate"
    MILD = "mild"
    HEALTHY = "healthy"


INJECTION_RATES: Dict[HealthBand, Decimal] = {
    HealthBand.MILD: Decimal("30"),
    HealthBand.MODERATE: Decimal("50"),
    HealthBand.CRITICAL: Decimal("75"),
}


def classify_health(health: Decimal) -> HealthBand:
    """Map a pair health to its rebalancing band (upper bounds inclusive)."""
    if health < 0 or health > 1:
        raise InvalidInput(f"health must be in [0, 1], got {health}")
    if health == 0:
        return HealthBand.EMPTY
    if health <= Decimal("0.20"):
        return HealthBand.EMERGENCY
    if health <= Decimal("0.30"):
        return HealthBand.CRITICAL
    if health <= Decimal("0.40"):
        return HealthBand.MODERATE
    if health <= Decimal("0.50"):
        return HealthBand.MILD
    return HealthBand.HEALTHY


def injection_rate(band: HealthBand, config: EngineConfig = DEFAULT_CONFIG) -> Decimal:
    """Percent of the deficit injected for a band (0 when the band never injects)."""
    if band == HealthBand.EMERGENCY:
        return config.emergency_injection_pct
    return INJECTION_RATES.get(band, ZERO)


def compute_deficit(vault_balance: Decimal, counterpart_balance: Decimal) -> Decimal:
    """Amount the vault is short of its counterpart: max(0, other - this)."""
    if vault_balance < 0 or counterpart_balance < 0:
        raise InvalidInput("vault balances cannot be negative")
    return max(ZERO, counterpart_balance - vault_balance)


def _directive_id(
    vault_id: str,
    counterpart_vault_id: str,
    vault_balance: Decimal,
    counterpart_balance: Decimal,
    injection_amount: Decimal,
) -> str:
    content = "|".join([
        vault_id,
        counterpart_vault_id,
        _normalize_decimal(vault_balance),
        _normalize_decimal(counterpart_balance),
        _normalize_decimal(injection_amount),
    ])
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class RebalanceDirective:
    """
    Instruction to inject treasury liquidity into one vault.

    Attributes:
        vault_id: Vault receiving the injection
        counterpart_vault_id: Vault the deficit is measured against
        injection_amount: Amount moved from the rebalancing treasury
        band: Health band that triggered the directive
        health: Pair health at evaluation time
        deficit: max(0, counterpart_balance - vault_balance)
        vault_balance: Snapshot of the receiving vault's balance
        counterpart_balance: Snapshot of the counterpart's balance
        directive_id: Content hash identifying the triggering snapshot
    """
    vault_id: str
    counterpart_vault_id: str
    injection_amount: Decimal
    band: HealthBand
    health: Decimal
    deficit: Decimal
    vault_balance: Decimal
    counterpart_balance: Decimal
    directive_id: str = field(default="")

    def __post_init__(self):
        if self.injection_amount <= 0:
            raise InvalidInput(f"injection_amount must be positive, got {self.injection_amount}")
        if self.vault_id == self.counterpart_vault_id:
            raise InvalidInput("a vault cannot be rebalanced against itself")
        if not self.directive_id:
            object.__setattr__(self, 'directive_id', _directive_id(
                self.vault_id, self.counterpart_vault_id,
                self.vault_balance, self.counterpart_balance, self.injection_amount,
            ))


def evaluate_rebalance(
    vault_id: str,
    counterpart_vault_id: str,
    vault_balance: Decimal,
    counterpart_balance: Decimal,
    config: EngineConfig = DEFAULT_CONFIG,
) -> Optional[RebalanceDirective]:
    """
    Decide whether vault_id should receive a treasury injection.

    Returns None when the pair is healthy, when vault_id is not the weaker
    side, when the pair has no liquidity on one side, or when the injection
    rounds to zero.

    Example:
        d = evaluate_rebalance("EUR", "USD", Decimal("350"), Decimal("1000"))
        # band=MODERATE, deficit=650, injection_amount=325
    """
    health = vault_health(vault_balance, counterpart_balance)
    band = classify_health(health)

    if band == HealthBand.EMPTY:
        # Treasury capital is not used to seed a vault nobody has funded.
        logger.info(
            "rebalance %s/%s skipped: pair has no liquidity on one side (%s, %s)",
            vault_id, counterpart_vault_id, vault_balance, counterpart_balance,
        )
        return None
    if band == HealthBand.HEALTHY:
        return None

    deficit = compute_deficit(vault_balance, counterpart_balance)
    if deficit == 0:
        return None

    rate = injection_rate(band, config)
    injection = quantize_amount(deficit * rate / 100, 'INJECTION')
    if injection <= 0:
        return None

    directive = RebalanceDirective(
        vault_id=vault_id,
        counterpart_vault_id=counterpart_vault_id,
        injection_amount=injection,
        band=band,
        health=health,
        deficit=deficit,
        vault_balance=vault_balance,
        counterpart_balance=counterpart_balance,
    )
    logger.debug("rebalance directive %s: %s band, inject %s into %s",
                 directive.directive_id, band.value, injection, vault_id)
    return directive
