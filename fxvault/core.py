"""
Core types and pure functions for the FX vault engine.

This module provides the foundational data structures and protocols for the engine:
1. Protocols: VaultView for read-only access to vault and position state
2. Immutable data structures: Move, PositionChange, PendingTransaction, Transaction,
   Vault, LPPosition
3. Exceptions: VaultError and the domain-specific error kinds
4. Account naming: the double-entry accounts every value transfer moves between

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
from enum import Enum
import hashlib
from typing import (
    Dict, List, Optional, Any, Protocol, Tuple, FrozenSet, runtime_checkable
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All value-bearing arithmetic uses Decimal under one process-wide context.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
#   - prec=50: enough headroom for amount * price * SCALE products
#   - rounding=ROUND_HALF_EVEN: only used for inexact intermediates; every
#     stored amount is quantized explicitly with its own rounding mode
#
_ENGINE_DECIMAL_CONTEXT = getcontext()
_ENGINE_DECIMAL_CONTEXT.prec = 50
_ENGINE_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# The outside world: user wallets, external capital and payouts.
# Exempt from balance validation, so its balance is the negated net inflow.
EXTERNAL_ACCOUNT = "external"

# Treasury accounts. Balances are held per currency.
REBALANCING_TREASURY = "treasury:rebalancing"
PROTOCOL_TREASURY = "treasury:protocol"

ZERO = Decimal("0")


def vault_account(currency: str) -> str:
    """Account holding a vault's pool balance."""
    return f"vault:{currency}"


def fee_account(currency: str) -> str:
    """Account holding a vault's accrued, undistributed fees."""
    return f"fees:{currency}"


def reward_account(currency: str) -> str:
    """Account backing LP rewards that were credited but not yet claimed."""
    return f"rewards:{currency}"


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from currency to quantity held in a single account.
BalanceMap = Dict[str, Decimal]

# (owner, vault_id) key of an LP position.
PositionKey = Tuple[str, str]


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was validated and applied to the ledger.
    ALREADY_APPLIED: Transaction intent was previously processed (idempotent behavior).
    REJECTED: Transaction failed validation; nothing was mutated.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Which ledger operation produced a transaction. Used for the audit trail."""
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    SWAP = "swap"
    FEE_DISTRIBUTION = "fee_distribution"
    REWARD_CLAIM = "reward_claim"
    REBALANCE = "rebalance"
    TREASURY = "treasury"
    EXTERNAL = "external"


class VaultStatus(Enum):
    """Vault lifecycle. ACTIVE is terminal: vaults are never closed."""
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class VaultError(Exception):
    """Base exception for all engine errors."""
    retryable = False


class InvalidInput(VaultError, ValueError):
    """Non-positive amounts or prices, negative balances, malformed arguments."""
    pass


class VaultNotInitialized(InvalidInput):
    """Raised when operating on a currency whose vault was never initialized."""
    pass


class InsufficientLiquidity(VaultError):
    """Raised when a vault or treasury account cannot cover an outgoing amount."""
    pass


class InsufficientPosition(VaultError):
    """Raised when a withdrawal exceeds the owner's recorded deposit."""
    pass


class SlippageExceeded(VaultError):
    """Raised when a swap's net output is below the caller's minimum."""
    pass


class StaleSnapshot(VaultError):
    """Raised when state changed between pricing/measurement and commit."""
    retryable = True


class StaleOrMissingOracle(VaultError):
    """Raised when the price collaborator fails or returns no usable price."""
    retryable = True


class ArithmeticOverflow(VaultError):
    """Raised when a fixed-point value exceeds the representable range."""
    pass


class PrecisionLoss(VaultError):
    """Raised when a conversion would silently drop significant digits."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Which ledger operation produced the transaction
        source_id: Who initiated it (LP owner, trader, "treasury", ...)
        vault_id: Currency of the vault primarily affected (if applicable)
        reference: Free-form detail (pair, directive id, ...)
        request_seq: Ledger request number, stamped by the VaultLedger
            operation methods so repeated identical requests stay distinct
    """
    origin_type: OriginType
    source_id: str
    vault_id: Optional[str] = None
    reference: Optional[str] = None
    request_seq: Optional[int] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.vault_id:
            parts.append(f"vault={self.vault_id}")
        if self.reference:
            parts.append(f"ref={self.reference}")
        if self.request_seq is not None:
            parts.append(f"seq={self.request_seq}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# PERSISTED ENTITIES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Vault:
    """
    Read model of a per-currency vault.

    balance and accrued_fees are the balances of the vault's pool and fee
    accounts; they are never negative.
    """
    currency: str
    name: str
    balance: Decimal
    accrued_fees: Decimal
    status: VaultStatus = VaultStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == VaultStatus.ACTIVE


@dataclass(frozen=True, slots=True)
class LPPosition:
    """
    A liquidity provider's recorded deposit into one vault.

    Attributes:
        owner: LP identity
        vault_id: Currency of the vault
        deposited_amount: Principal currently attributed to the owner
        deposit_timestamp: Unix seconds; weighted average over merged deposits
        accrued_rewards: Fee rewards credited but not yet claimed
        rewards_claimed: Lifetime claimed rewards
    """
    owner: str
    vault_id: str
    deposited_amount: Decimal
    deposit_timestamp: int
    accrued_rewards: Decimal = ZERO
    rewards_claimed: Decimal = ZERO

    def __post_init__(self):
        if not self.owner or not self.owner.strip():
            raise InvalidInput("LPPosition owner cannot be empty")
        if self.deposited_amount < 0:
            raise InvalidInput(f"deposited_amount cannot be negative, got {self.deposited_amount}")
        if self.accrued_rewards < 0:
            raise InvalidInput(f"accrued_rewards cannot be negative, got {self.accrued_rewards}")

    @property
    def key(self) -> PositionKey:
        return (self.owner, self.vault_id)

    @property
    def is_empty(self) -> bool:
        return self.deposited_amount == 0 and self.accrued_rewards == 0


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class VaultView(Protocol):
    """
    Read-only interface to ledger state.

    Pure operation builders accept a VaultView to declare their read-only
    intent. VaultLedger implements it; tests use FakeView.
    """

    @property
    def current_time(self) -> int:
        """Return the current logical time (unix seconds)."""
        ...

    def get_balance(self, account: str, currency: str) -> Decimal:
        """Return the balance of a currency in an account (0 if none)."""
        ...

    def get_vault(self, currency: str) -> Vault:
        """Return the vault read model; raises VaultNotInitialized if unknown."""
        ...

    def get_position(self, owner: str, vault_id: str) -> Optional[LPPosition]:
        """Return the owner's position in a vault, or None."""
        ...

    def get_positions(self, vault_id: str) -> List[LPPosition]:
        """Return all live positions in a vault, ordered by owner."""
        ...


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two accounts.

    Attributes:
        quantity: The amount to transfer (must be a finite, positive Decimal).
        currency: The currency being transferred (e.g., "USD", "EUR").
        source: The account debited.
        dest: The account credited.
        reference: What this leg represents ("amount_in", "fee", "penalty", ...).
    """
    quantity: Decimal
    currency: str
    source: str
    dest: str
    reference: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.currency or not self.currency.strip():
            raise ValueError("Move currency cannot be empty")
        if not self.reference or not self.reference.strip():
            raise ValueError("Move reference cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.currency}: {self.source}→{self.dest})"


@dataclass(frozen=True, slots=True)
class PositionChange:
    """
    Record of an LP position change with before/after snapshots.

    old is None when the position is created; new is None when it is removed.
    At commit time old must equal the ledger's current position.
    """
    owner: str
    vault_id: str
    old: Optional[LPPosition]
    new: Optional[LPPosition]

    @property
    def key(self) -> PositionKey:
        return (self.owner, self.vault_id)


@dataclass(frozen=True, slots=True)
class BalanceSnapshot:
    """An account balance a transaction was computed against."""
    account: str
    currency: str
    balance: Decimal


def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string representation.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Deterministic regardless of dict insertion order or Decimal representation.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, int):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, LPPosition):
        return _canonicalize({
            'owner': value.owner,
            'vault_id': value.vault_id,
            'deposited_amount': value.deposited_amount,
            'deposit_timestamp': value.deposit_timestamp,
            'accrued_rewards': value.accrued_rewards,
            'rewards_claimed': value.rewards_claimed,
        })
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    return f"R:{repr(value)}"


def _compute_intent_id(
    moves: Tuple[Move, ...],
    position_changes: Tuple[PositionChange, ...],
    expected_balances: Tuple[BalanceSnapshot, ...],
    origin: TransactionOrigin,
) -> str:
    """
    Compute a deterministic content hash for a transaction's intent.

    Based solely on semantic content, never on execution metadata, so the
    same intent always hashes the same. Used for idempotency: a transaction
    built from a given snapshot can only ever be applied once. An origin
    stamped with a request_seq makes each ledger request its own intent.
    """
    sorted_moves = sorted(
        moves,
        key=lambda m: (_normalize_decimal(m.quantity), m.currency, m.source, m.dest, m.reference)
    )

    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.vault_id:
        content_parts.append(f"vault:{origin.vault_id}")
    if origin.reference:
        content_parts.append(f"ref:{origin.reference}")
    if origin.request_seq is not None:
        content_parts.append(f"seq:{origin.request_seq}")

    for m in sorted_moves:
        qty = _normalize_decimal(m.quantity)
        content_parts.append(f"move:{qty}|{m.currency}|{m.source}|{m.dest}|{m.reference}")

    for pc in sorted(position_changes, key=lambda p: p.key):
        content_parts.append(
            f"position:{pc.owner}|{pc.vault_id}|{_canonicalize(pc.old)}|{_canonicalize(pc.new)}"
        )

    for snap in sorted(expected_balances, key=lambda s: (s.account, s.currency)):
        content_parts.append(f"expect:{snap.account}|{snap.currency}|{_normalize_decimal(snap.balance)}")

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction description before execution - represents INTENT.

    Built by the pure functions in operations.py and submitted to the
    VaultLedger. Carries the snapshot it was computed from so the ledger can
    reject it if state moved on in between.

    Attributes:
        moves: Value transfers between accounts
        position_changes: LP position changes (old/new snapshots)
        expected_balances: Account balances the transaction was priced against
        origin: Who/what created this transaction and why
        timestamp: Logical time at which it was built
        intent_id: Content-addressable hash of the intent (auto-computed)
    """
    moves: Tuple[Move, ...]
    position_changes: Tuple[PositionChange, ...]
    origin: TransactionOrigin
    timestamp: int
    expected_balances: Tuple[BalanceSnapshot, ...] = ()
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            computed_id = _compute_intent_id(
                self.moves, self.position_changes, self.expected_balances, self.origin
            )
            object.__setattr__(self, 'intent_id', computed_id)

    def is_empty(self) -> bool:
        """Return True if this pending transaction changes nothing."""
        return not self.moves and not self.position_changes

    def __repr__(self) -> str:
        return (f"PendingTransaction({len(self.moves)} moves, "
                f"{len(self.position_changes)} position changes, {self.origin})")


def build_transaction(
    view: VaultView,
    moves: List[Move],
    position_changes: Optional[List[PositionChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    expected_balances: Optional[List[BalanceSnapshot]] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction stamped with the view's logical time.

    Example:
        moves = [Move(Decimal("100"), "USD", EXTERNAL_ACCOUNT, vault_account("USD"), "deposit")]
        pending = build_transaction(ledger, moves, origin=TransactionOrigin(OriginType.DEPOSIT, "alice"))
    """
    if origin is None:
        origin = TransactionOrigin(origin_type=OriginType.EXTERNAL, source_id="external")

    return PendingTransaction(
        moves=tuple(moves),
        position_changes=tuple(position_changes or ()),
        origin=origin,
        timestamp=view.current_time,
        expected_balances=tuple(expected_balances or ()),
    )


def empty_pending_transaction(view: VaultView, origin: Optional[TransactionOrigin] = None) -> PendingTransaction:
    """Create an empty PendingTransaction for operations with nothing to do."""
    return PendingTransaction(
        moves=(),
        position_changes=(),
        origin=origin or TransactionOrigin(OriginType.EXTERNAL, "noop"),
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Value transfers between accounts
        position_changes: LP position changes
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was built
        intent_id: Content hash from PendingTransaction (for idempotency)
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: Logical time at execution
        sequence_number: Monotonic sequence within the ledger
        expected_balances: Balance snapshot the transaction was computed against
        currencies: Currencies touched by the moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    position_changes: Tuple[PositionChange, ...]
    origin: TransactionOrigin
    timestamp: int
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: int
    sequence_number: int
    expected_balances: Tuple[BalanceSnapshot, ...] = ()
    currencies: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.position_changes:
            raise ValueError("Transaction must have moves or position_changes")
        if self.currencies is None:
            object.__setattr__(self, 'currencies', frozenset(m.currency for m in self.moves))

    def __repr__(self) -> str:
        w = 96
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   intent_id      : ' + self.intent_id)}│",
            f"│{pad('   timestamp      : ' + str(self.timestamp))}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
            f"│{pad('   origin         : ' + str(self.origin))}│",
            f"├{bar}┤",
            f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│",
        ]
        for i, move in enumerate(self.moves):
            lines.append(f"│{pad(f'   [{i}] {move.quantity} {move.currency}: {move.source} → {move.dest} ({move.reference})')}│")
        if self.position_changes:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' Position Changes (' + str(len(self.position_changes)) + '):')}│")
            for pc in self.position_changes:
                old_amt = pc.old.deposited_amount if pc.old else None
                new_amt = pc.new.deposited_amount if pc.new else None
                lines.append(f"│{pad(f'   [{pc.owner}@{pc.vault_id}] deposited: {old_amt} → {new_amt}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)
