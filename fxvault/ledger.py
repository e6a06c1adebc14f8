"""
ledger.py - Stateful double-entry vault ledger

VaultLedger is the only component that mutates engine state. It holds the
account balances (vaults, accrued fees, reward reserves, treasuries), the LP
positions and the audit trail.

Key responsibilities:
    - Implements the VaultView protocol for the pure builders in operations.py
    - Commits transactions atomically: every move and position change is
      validated before anything is mutated
    - Rejects transactions computed against a snapshot that is no longer current
    - Serialises all commits under one re-entrant lock; oracle retrieval and
      any other external call happen before the lock is taken
    - Always logs: every applied transaction is recorded, enabling replay()
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from decimal import Decimal
import logging
import threading
from typing import Dict, List, Optional, Set, Tuple, Any

from .config import EngineConfig, DEFAULT_CONFIG
from .core import (
    # Types
    Transaction, PendingTransaction, LPPosition, Vault,
    ExecuteResult, VaultStatus, PositionKey,
    # Constants
    EXTERNAL_ACCOUNT, REBALANCING_TREASURY, PROTOCOL_TREASURY, ZERO,
    vault_account, fee_account, reward_account,
    # Exceptions
    VaultError, InvalidInput, VaultNotInitialized, InsufficientLiquidity, StaleSnapshot,
)
from .operations import (
    WithdrawalReceipt, FeeDistribution,
    compute_deposit, compute_withdrawal, compute_swap, compute_fee_distribution,
    compute_reward_claim, compute_rebalance, compute_treasury_funding, compute_protocol_sweep,
)
from .oracle import PriceSource, fetch_scaled_price, pair_name
from .pricing import SwapQuote
from .rebalancing import RebalanceDirective, evaluate_rebalance

logger = logging.getLogger(__name__)


class VaultLedger:
    """
    Multi-vault ledger with full validation and audit trail.

    Implements the VaultView protocol, allowing the ledger to be passed to the
    pure builders that only read from it.

    Design Principles:
        - Always validates: balances of every account except `external` stay
          non-negative, snapshots and positions must match current state.
        - Always logs: every applied transaction is appended to
          transaction_log and its intent_id remembered, so a transaction is
          never applied twice.

    Thread Safety:
        Commits are serialised by an internal RLock. The high-level operation
        methods build and commit under that lock, so pricing always sees the
        balances it mutates.

    Example:
        ledger = VaultLedger("main")
        ledger.initialize_vault("USD", "US Dollar")
        ledger.initialize_vault("EUR", "Euro")
        ledger.deposit("alice", "USD", Decimal("1000000"))
        ledger.deposit("bob", "EUR", Decimal("1000000"))
        quote = ledger.swap("EUR", "USD", Decimal("1000"), 1_085_000_000)
    """

    def __init__(self, name: str, initial_time: int = 0, config: EngineConfig = DEFAULT_CONFIG):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting logical time, unix seconds
            config: Engine parameters used by every operation
        """
        self.name = name
        self.config = config
        self.balances: Dict[str, Dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
        self.vault_names: Dict[str, str] = {}
        self.positions: Dict[PositionKey, LPPosition] = {}
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: int = initial_time
        self._next_sequence: int = 0
        self._lock = threading.RLock()

    # ========================================================================
    # VaultView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> int:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, account: str, currency: str) -> Decimal:
        """Balance of `currency` held in `account` (0 if none)."""
        if account not in self.balances:
            return ZERO
        return self.balances[account].get(currency, ZERO)

    def get_vault(self, currency: str) -> Vault:
        """
        Read model of a vault.

        Raises:
            VaultNotInitialized: If the vault was never initialized
        """
        if currency not in self.vault_names:
            raise VaultNotInitialized(f"vault {currency} not initialized")
        return Vault(
            currency=currency,
            name=self.vault_names[currency],
            balance=self.get_balance(vault_account(currency), currency),
            accrued_fees=self.get_balance(fee_account(currency), currency),
        )

    def get_position(self, owner: str, vault_id: str) -> Optional[LPPosition]:
        return self.positions.get((owner, vault_id))

    def get_positions(self, vault_id: str) -> List[LPPosition]:
        """All live positions in a vault, ordered by owner."""
        return sorted(
            (p for (_, vid), p in self.positions.items() if vid == vault_id),
            key=lambda p: p.owner,
        )

    def vault_status(self, currency: str) -> VaultStatus:
        if currency in self.vault_names:
            return VaultStatus.ACTIVE
        return VaultStatus.UNINITIALIZED

    def list_vaults(self) -> List[str]:
        """List all initialized vault currencies."""
        return sorted(self.vault_names)

    def total_supply(self, currency: str) -> Decimal:
        """
        Sum of a currency over every account, external included.

        Always zero: every move debits one account and credits another.
        Accounts are summed in sorted order for deterministic accumulation.
        """
        return sum(
            (self.balances[account].get(currency, ZERO) for account in sorted(self.balances)),
            ZERO,
        )

    def verify_conservation(self) -> Dict[str, Any]:
        """
        Verify the accounting invariants for every vault currency.

        Checks:
        - total supply over all accounts is exactly zero
        - no account other than `external` holds a negative balance
        - the reward reserve equals the sum of credited, unclaimed rewards

        Returns:
            Dict with keys:
            - 'valid': bool - True if every invariant holds
            - 'supplies': Dict[str, Decimal] - total supply per currency
            - 'discrepancies': List[Dict] - details of each violation

        Example:
            result = ledger.verify_conservation()
            assert result['valid'], result['discrepancies']
        """
        supplies: Dict[str, Decimal] = {}
        discrepancies: List[Dict[str, Any]] = []

        for currency in self.list_vaults():
            supply = self.total_supply(currency)
            supplies[currency] = supply
            if supply != 0:
                discrepancies.append({'currency': currency, 'check': 'supply', 'actual': supply})

            for account in sorted(self.balances):
                if account == EXTERNAL_ACCOUNT:
                    continue
                balance = self.balances[account].get(currency, ZERO)
                if balance < 0:
                    discrepancies.append({
                        'currency': currency, 'check': 'negative_balance',
                        'account': account, 'actual': balance,
                    })

            reserve = self.get_balance(reward_account(currency), currency)
            owed = sum((p.accrued_rewards for p in self.get_positions(currency)), ZERO)
            if reserve != owed:
                discrepancies.append({
                    'currency': currency, 'check': 'reward_reserve',
                    'expected': owed, 'actual': reserve,
                })

        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: int) -> None:
        """
        Advance the ledger's logical clock. Time can only move forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        with self._lock:
            if new_time < self._current_time:
                raise ValueError(f"Cannot move time backwards: {new_time} < {self._current_time}")
            self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def initialize_vault(self, currency: str, name: Optional[str] = None) -> Vault:
        """
        Move a vault from Uninitialized to Active.

        Raises:
            ValueError: If the vault is already initialized
        """
        if not currency or not currency.strip():
            raise InvalidInput("currency cannot be empty")
        with self._lock:
            if currency in self.vault_names:
                raise ValueError(f"Vault {currency} already initialized")
            self.vault_names[currency] = name or currency
            logger.info("%s: initialized vault %s (%s)", self.name, currency, self.vault_names[currency])
            return self.get_vault(currency)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{ledger_name}:{sequence:012d}:{time}
        """
        return f"exec:{self.name}:{sequence:012d}:{self._current_time}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        Execution is idempotent: a pending transaction with the same
        intent_id will not be applied twice.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.ALREADY_APPLIED if the intent was already executed
            ExecuteResult.REJECTED if validation failed (nothing mutated)
        """
        try:
            return self._commit(pending)
        except VaultError as e:
            logger.warning("%s: REJECTED %s: %s", self.name, pending.intent_id, e)
            return ExecuteResult.REJECTED

    def _commit(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Validate and apply a pending transaction, raising on rejection.

        Raises:
            StaleSnapshot: expected balances or old positions no longer current
            InsufficientLiquidity: a non-external account would go negative
            VaultNotInitialized: a move in an unknown currency
            InvalidInput: transaction timestamp in the future
        """
        with self._lock:
            if pending.is_empty():
                return ExecuteResult.APPLIED

            if pending.intent_id in self.seen_intent_ids:
                logger.info("%s: ALREADY_APPLIED intent_id=%s", self.name, pending.intent_id)
                return ExecuteResult.ALREADY_APPLIED

            self._validate_pending(pending)

            sequence = self._next_sequence
            self._next_sequence += 1
            tx = Transaction(
                moves=pending.moves,
                position_changes=pending.position_changes,
                origin=pending.origin,
                timestamp=pending.timestamp,
                intent_id=pending.intent_id,
                exec_id=self._generate_exec_id(sequence),
                ledger_name=self.name,
                execution_time=self._current_time,
                sequence_number=sequence,
                expected_balances=pending.expected_balances,
            )

            self._execute_moves(tx.moves)
            self._apply_position_changes(tx.position_changes)

            # Log transaction (always - audit trail is mandatory)
            self.transaction_log.append(tx)
            self.seen_intent_ids.add(pending.intent_id)

            logger.info("%s: APPLIED %s %r", self.name, tx.exec_id, tx.origin)
            logger.debug("%r", tx)
            return ExecuteResult.APPLIED

    def _validate_pending(self, pending: PendingTransaction) -> None:
        """
        Validate a pending transaction against current state.

        Checks performed:
        1. Timestamp (transaction must not be from the future)
        2. Every moved currency belongs to an initialized vault
        3. Expected balances still match (optimistic concurrency)
        4. Position changes: old snapshots match, new positions are keyed consistently
        5. No account other than `external` ends up negative
        """
        if pending.timestamp > self._current_time:
            raise InvalidInput(f"transaction timestamp {pending.timestamp} is in the future")

        for move in pending.moves:
            if move.currency not in self.vault_names:
                raise VaultNotInitialized(f"vault {move.currency} not initialized")

        for snap in pending.expected_balances:
            current = self.get_balance(snap.account, snap.currency)
            if current != snap.balance:
                raise StaleSnapshot(
                    f"{snap.account} {snap.currency} is {current}, transaction was computed against {snap.balance}"
                )

        seen_keys: Set[PositionKey] = set()
        for pc in pending.position_changes:
            if pc.key in seen_keys:
                raise InvalidInput(f"duplicate position change for {pc.key}")
            seen_keys.add(pc.key)
            if pc.vault_id not in self.vault_names:
                raise VaultNotInitialized(f"vault {pc.vault_id} not initialized")
            if self.positions.get(pc.key) != pc.old:
                raise StaleSnapshot(f"position {pc.owner}@{pc.vault_id} changed since the transaction was built")
            if pc.new is not None and pc.new.key != pc.key:
                raise InvalidInput(f"position change for {pc.key} carries a position for {pc.new.key}")

        net: Dict[Tuple[str, str], Decimal] = defaultdict(lambda: ZERO)
        for move in pending.moves:
            net[(move.source, move.currency)] -= move.quantity
            net[(move.dest, move.currency)] += move.quantity

        # EXTERNAL_ACCOUNT is exempt: it stands for the world outside the engine
        for (account, currency), delta in sorted(net.items()):
            if account == EXTERNAL_ACCOUNT:
                continue
            proposed = self.get_balance(account, currency) + delta
            if proposed < 0:
                raise InsufficientLiquidity(
                    f"{account} {currency}: {proposed} < 0 after transaction"
                )

    def _execute_moves(self, moves) -> None:
        """Apply all moves to account balances."""
        for move in moves:
            self.balances[move.source][move.currency] -= move.quantity
            self.balances[move.dest][move.currency] += move.quantity

    def _apply_position_changes(self, changes) -> None:
        for pc in changes:
            if pc.new is None:
                self.positions.pop(pc.key, None)
            else:
                self.positions[pc.key] = pc.new

    # ========================================================================
    # VAULT OPERATIONS
    # ========================================================================

    def _apply(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Commit a request made through an operation method.

        Each call is a new request: the origin is stamped with the next
        sequence number, so an operation that repeats an earlier one move for
        move (same amounts, same snapshot) still commits. execute() keeps the
        pure content intent_id for retries of a prebuilt transaction.
        """
        stamped = replace(pending.origin, request_seq=self._next_sequence)
        return self._commit(replace(pending, origin=stamped, intent_id=""))

    def deposit(self, owner: str, currency: str, amount) -> LPPosition:
        """
        Deposit liquidity into a vault and credit the owner's position.

        Returns:
            The owner's position after the deposit
        """
        with self._lock:
            pending, position = compute_deposit(self, owner, currency, amount)
            self._apply(pending)
            return position

    def withdraw(self, owner: str, currency: str, amount) -> WithdrawalReceipt:
        """
        Withdraw principal, paying the time-based penalty to the rebalancing treasury.

        Raises:
            InsufficientPosition: amount above the owner's deposited principal
            InsufficientLiquidity: vault balance below amount
        """
        with self._lock:
            pending, receipt = compute_withdrawal(self, owner, currency, amount)
            self._apply(pending)
            logger.info("%s: %s withdrew %s %s (penalty %s bps)",
                        self.name, owner, receipt.amount, currency, receipt.penalty_bps)
            return receipt

    def swap(
        self,
        source: str,
        target: str,
        amount_in,
        oracle_price: int,
        source_to_target: bool = True,
        min_amount_out=ZERO,
        trader: str = EXTERNAL_ACCOUNT,
    ) -> SwapQuote:
        """
        Price and execute a swap against the current balances.

        Pricing and commit happen under the same lock, so the quote always
        reflects the balances the swap mutates.

        Returns:
            The SwapQuote the swap was executed at
        """
        with self._lock:
            pending, quote = compute_swap(
                self, source, target, amount_in, oracle_price,
                source_to_target=source_to_target, min_amount_out=min_amount_out,
                trader=trader, config=self.config,
            )
            self._apply(pending)
            return quote

    def swap_with_oracle(
        self,
        source: str,
        target: str,
        amount_in,
        price_source: PriceSource,
        source_to_target: bool = True,
        min_amount_out=ZERO,
        trader: str = EXTERNAL_ACCOUNT,
    ) -> SwapQuote:
        """
        swap() at the price of `source` in `target` from an oracle source.

        The oracle is queried before the ledger lock is taken.

        Raises:
            StaleOrMissingOracle: no fresh, usable price (retryable)
        """
        oracle_price = fetch_scaled_price(
            price_source, pair_name(source, target), self._current_time,
            max_staleness=self.config.oracle_max_staleness, scale=self.config.scale,
        )
        return self.swap(source, target, amount_in, oracle_price,
                         source_to_target=source_to_target,
                         min_amount_out=min_amount_out, trader=trader)

    def distribute_fees(self, currency: str, counterpart: str) -> Optional[FeeDistribution]:
        """
        Distribute a vault's accrued fees among LPs and the treasuries.

        Returns None when the vault has no accrued fees.
        """
        with self._lock:
            pending, distribution = compute_fee_distribution(self, currency, counterpart)
            if distribution is None:
                return None
            self._apply(pending)
            logger.info("%s: distributed %s %s fees (lp %s, rebalancer %s, protocol %s)",
                        self.name, distribution.total_fees, currency, distribution.split.lp_share,
                        distribution.split.rebalancer_share, distribution.split.protocol_share)
            return distribution

    def claim_rewards(self, owner: str, currency: str) -> Decimal:
        """Pay out an owner's credited rewards. Returns the amount paid."""
        with self._lock:
            pending, reward = compute_reward_claim(self, owner, currency)
            self._apply(pending)
            return reward

    def plan_rebalance(self, currency: str, counterpart: str) -> Optional[RebalanceDirective]:
        """Evaluate the rebalancing policy for `currency` against `counterpart`."""
        with self._lock:
            vault = self.get_vault(currency)
            other = self.get_vault(counterpart)
            return evaluate_rebalance(currency, counterpart, vault.balance, other.balance, self.config)

    def rebalance(self, directive: RebalanceDirective) -> ExecuteResult:
        """
        Apply a rebalance directive from the rebalancing treasury.

        Returns:
            APPLIED, or ALREADY_APPLIED when this directive was applied before

        Raises:
            StaleSnapshot: vault balances differ from the directive's snapshot
            InsufficientLiquidity: treasury cannot cover the injection
        """
        with self._lock:
            result = self._commit(compute_rebalance(self, directive))
            if result == ExecuteResult.APPLIED:
                logger.info("%s: rebalanced %s with %s (%s band)", self.name,
                            directive.vault_id, directive.injection_amount, directive.band.value)
            return result

    def fund_treasury(self, currency: str, amount) -> ExecuteResult:
        """Add external capital to the rebalancing treasury."""
        with self._lock:
            return self._apply(compute_treasury_funding(self, currency, amount))

    def sweep_protocol_fees(self, currency: str) -> Decimal:
        """Pay out the protocol treasury's balance in `currency`. Returns the amount."""
        with self._lock:
            pending, amount = compute_protocol_sweep(self, currency)
            if amount > 0:
                self._apply(pending)
            return amount

    def treasury_balances(self, currency: str) -> Dict[str, Decimal]:
        return {
            REBALANCING_TREASURY: self.get_balance(REBALANCING_TREASURY, currency),
            PROTOCOL_TREASURY: self.get_balance(PROTOCOL_TREASURY, currency),
        }

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> VaultLedger:
        """
        Create an independent copy of this ledger.

        Balances, positions, vaults, idempotency set, transaction log and
        time are copied; the clone gets its own lock.
        """
        with self._lock:
            cloned = VaultLedger(self.name, self._current_time, self.config)
            for account, bals in self.balances.items():
                cloned.balances[account] = defaultdict(lambda: ZERO, bals)
            cloned.vault_names = dict(self.vault_names)
            cloned.positions = dict(self.positions)
            cloned.seen_intent_ids = set(self.seen_intent_ids)
            cloned.transaction_log = list(self.transaction_log)
            cloned._next_sequence = self._next_sequence
            return cloned

    def replay(self, from_tx: int = 0) -> VaultLedger:
        """
        Create a new ledger by replaying the transaction log.

        Vault registrations are copied; balances and positions are rebuilt
        only from logged transactions.

        Raises:
            VaultError: If a logged transaction is rejected on replay
        """
        new_ledger = VaultLedger(f"{self.name}_replayed", 0, self.config)
        new_ledger.vault_names = dict(self.vault_names)

        for tx in self.transaction_log[from_tx:]:
            if tx.execution_time > new_ledger.current_time:
                new_ledger.advance_time(tx.execution_time)
            pending = PendingTransaction(
                moves=tx.moves,
                position_changes=tx.position_changes,
                origin=tx.origin,
                timestamp=tx.timestamp,
                expected_balances=tx.expected_balances,
            )
            result = new_ledger.execute(pending)
            if result != ExecuteResult.APPLIED:
                raise VaultError(f"Replay failed at tx {tx.exec_id}")

        if self._current_time > new_ledger.current_time:
            new_ledger.advance_time(self._current_time)
        return new_ledger

    def __repr__(self) -> str:
        return (f"VaultLedger({self.name!r}, t={self._current_time}, "
                f"vaults={self.list_vaults()}, {len(self.transaction_log)} transactions)")
