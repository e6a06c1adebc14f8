"""
fxvault - Multi-vault FX stablecoin exchange engine

Pricing, accounting and rebalancing for per-currency liquidity vaults.

Usage:
    from decimal import Decimal
    from fxvault import VaultLedger

    ledger = VaultLedger("main")
    ledger.initialize_vault("USD", "US Dollar")
    ledger.initialize_vault("EUR", "Euro")

    ledger.deposit("alice", "USD", Decimal("1000000"))
    ledger.deposit("bob", "EUR", Decimal("1000000"))

    # Sell 1000 EUR for USD at 1.085 (prices are integers scaled by 10**9)
    quote = ledger.swap("EUR", "USD", Decimal("1000"), 1_085_000_000)

    ledger.distribute_fees("USD", "EUR")
"""

# Core types
from .core import (
    VaultView,
    Move,
    PositionChange,
    BalanceSnapshot,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    Vault,
    VaultStatus,
    LPPosition,
    ExecuteResult,
    VaultError,
    InvalidInput,
    VaultNotInitialized,
    InsufficientLiquidity,
    InsufficientPosition,
    SlippageExceeded,
    StaleSnapshot,
    StaleOrMissingOracle,
    ArithmeticOverflow,
    PrecisionLoss,
    EXTERNAL_ACCOUNT,
    REBALANCING_TREASURY,
    PROTOCOL_TREASURY,
    vault_account,
    fee_account,
    reward_account,
)

# Fixed-point arithmetic
from .fixed_point import (
    SCALE,
    AMOUNT_QUANTUM,
    MAX_RAW_VALUE,
    to_amount,
    quantize_amount,
    to_scaled_price,
    scaled_price_to_decimal,
)

# Configuration
from .config import EngineConfig, DEFAULT_CONFIG, setup_logging

# Pricing policy
from .health import vault_health
from .pricing import (
    SwapQuote,
    calculate_spread_bps,
    calculate_drift,
    apply_drift,
    quote_swap,
)
from .fees import FeeSplit, allocate_fees, fee_allocation_percentages
from .penalties import (
    withdrawal_penalty_bps,
    withdrawal_penalty_percentage,
    withdrawal_penalty_amount,
)
from .rebalancing import (
    HealthBand,
    RebalanceDirective,
    classify_health,
    compute_deficit,
    injection_rate,
    evaluate_rebalance,
)

# Oracle and price history
from .oracle import (
    OraclePrice,
    PriceSource,
    StaticPriceSource,
    TimeSeriesPriceSource,
    fetch_oracle_price,
    fetch_scaled_price,
    pair_name,
)
from .price_history import PricePoint, PriceHistory, PriceHistoryCache

# Operations
from .operations import (
    WithdrawalReceipt,
    FeeDistribution,
    compute_deposit,
    compute_withdrawal,
    compute_swap,
    compute_fee_distribution,
    compute_reward_claim,
    compute_rebalance,
    compute_treasury_funding,
    compute_protocol_sweep,
)

# Ledger
from .ledger import VaultLedger

__version__ = "0.1.0"
