"""
conftest.py - Shared pytest fixtures for fxvault tests

Provides common fixtures used across unit, conformance and functional tests:
- Ledgers (empty, balanced EUR/USD pair, imbalanced pair)
- Oracle price sources
"""

import pytest
from decimal import Decimal

from fxvault import VaultLedger, OraclePrice, StaticPriceSource

from tests.builders import T0, make_pair_ledger


@pytest.fixture
def empty_ledger():
    """Fresh ledger with no vaults."""
    return VaultLedger("test", initial_time=T0)


@pytest.fixture
def pair_ledger():
    """Balanced EUR/USD pair, 1,000,000 on each side."""
    return make_pair_ledger()


@pytest.fixture
def imbalanced_ledger():
    """EUR vault at 35% of the USD vault (MODERATE band)."""
    return make_pair_ledger(usd=Decimal("1000"), eur=Decimal("350"))


@pytest.fixture
def eur_usd_source():
    """Static oracle quoting EUR/USD 1.08500 published at T0."""
    return StaticPriceSource({"EUR/USD": OraclePrice(108_500, -5, T0)})
