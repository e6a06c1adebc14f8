"""
operations.py - Pure transaction builders for vault operations

Each compute_* function reads a VaultView, applies the pricing / fee /
penalty / rebalancing policy, and returns a PendingTransaction describing
the change, together with a result record for the caller. Nothing here
mutates state; VaultLedger validates and applies the returned transaction.

Every builder records the snapshot its decision depended on (account
balances in expected_balances, LP positions as old/new PositionChanges), so a
transaction computed against state that has since moved is rejected at
commit instead of being applied at a stale price.

Account flows:

    deposit         external -> vault:C
    withdraw        vault:C -> external (net), vault:C -> treasury:rebalancing (penalty)
    swap            external -> vault:PAY (amount_in)
                    vault:OUT -> external (net), vault:OUT -> fees:OUT (fee)
    distribute      fees:C -> treasury:rebalancing, fees:C -> treasury:protocol,
                    fees:C -> rewards:C (credited LP share), fees:C -> vault:C (retained)
    claim           rewards:C -> external
    rebalance       treasury:rebalancing -> vault:C
    fund treasury   external -> treasury:rebalancing
    sweep           treasury:protocol -> external
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from .config import EngineConfig, DEFAULT_CONFIG
from .core import (
    VaultView, Move, PositionChange, BalanceSnapshot, PendingTransaction,
    LPPosition, TransactionOrigin, OriginType,
    EXTERNAL_ACCOUNT, REBALANCING_TREASURY, PROTOCOL_TREASURY, ZERO,
    vault_account, fee_account, reward_account,
    build_transaction, empty_pending_transaction,
    InvalidInput, InsufficientLiquidity, InsufficientPosition, SlippageExceeded,
)
from .fees import FeeSplit, allocate_fees
from .fixed_point import to_amount, quantize_amount, ceil_to_int
from .health import vault_health
from .oracle import pair_name
from .penalties import withdrawal_penalty_bps, withdrawal_penalty_amount
from .pricing import SwapQuote, quote_swap
from .rebalancing import RebalanceDirective


# ============================================================================
# RESULT RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class WithdrawalReceipt:
    """What a withdrawal paid out and what it cost."""
    owner: str
    currency: str
    amount: Decimal
    penalty_bps: int
    penalty_amount: Decimal
    amount_paid: Decimal


@dataclass(frozen=True, slots=True)
class FeeDistribution:
    """
    Outcome of distributing one vault's accrued fees.

    lp_credited went to positions as accrued rewards; lp_retained stayed in
    the vault balance (no positions to attribute it to, or rounding dust).
    """
    currency: str
    total_fees: Decimal
    health: Decimal
    split: FeeSplit
    lp_credited: Decimal
    lp_retained: Decimal
    credits: Dict[str, Decimal] = field(default_factory=dict)


# ============================================================================
# HELPERS
# ============================================================================

def _positive_amount(amount, name: str = "amount") -> Decimal:
    amount = to_amount(amount, name)
    if amount <= 0:
        raise InvalidInput(f"{name} must be positive, got {amount}")
    return amount


def _snapshot(view: VaultView, account: str, currency: str) -> BalanceSnapshot:
    return BalanceSnapshot(account, currency, view.get_balance(account, currency))


def merge_deposit_timestamp(position: Optional[LPPosition], amount: Decimal, now: int) -> int:
    """
    Deposit timestamp after adding `amount` at `now` to an existing position.

    Weighted average of the existing principal's timestamp and `now`, rounded
    up to the next whole second, so topping up a position never makes its
    principal look older than it is.
    """
    if position is None or position.deposited_amount == 0:
        return now
    total = position.deposited_amount + amount
    weighted = (position.deposited_amount * position.deposit_timestamp + amount * now) / total
    return min(now, ceil_to_int(weighted))


# ============================================================================
# LIQUIDITY
# ============================================================================

def compute_deposit(
    view: VaultView,
    owner: str,
    currency: str,
    amount,
) -> Tuple[PendingTransaction, LPPosition]:
    """
    Build a deposit of `amount` into the `currency` vault on behalf of `owner`.

    Repeated deposits merge into one position with a weighted-average
    deposit timestamp (see merge_deposit_timestamp).

    Returns:
        (pending transaction, the owner's position after the deposit)

    Raises:
        VaultNotInitialized: unknown currency
        InvalidInput: empty owner, non-positive amount
    """
    view.get_vault(currency)
    amount = _positive_amount(amount)
    now = view.current_time

    old = view.get_position(owner, currency)
    if old is None:
        new = LPPosition(owner=owner, vault_id=currency, deposited_amount=amount, deposit_timestamp=now)
    else:
        new = replace(
            old,
            deposited_amount=old.deposited_amount + amount,
            deposit_timestamp=merge_deposit_timestamp(old, amount, now),
        )

    moves = [Move(amount, currency, EXTERNAL_ACCOUNT, vault_account(currency), "deposit")]
    changes = [PositionChange(owner, currency, old, new)]
    origin = TransactionOrigin(OriginType.DEPOSIT, owner, vault_id=currency)
    return build_transaction(view, moves, changes, origin), new


def compute_withdrawal(
    view: VaultView,
    owner: str,
    currency: str,
    amount,
) -> Tuple[PendingTransaction, WithdrawalReceipt]:
    """
    Build a withdrawal of `amount` of principal.

    The time-based penalty is charged on the withdrawn amount and routed in
    full to the rebalancing treasury; the owner receives the rest.

    Raises:
        VaultNotInitialized: unknown currency
        InvalidInput: non-positive amount
        InsufficientPosition: no position, or amount above deposited principal
        InsufficientLiquidity: vault balance below amount
    """
    vault = view.get_vault(currency)
    amount = _positive_amount(amount)

    position = view.get_position(owner, currency)
    if position is None:
        raise InsufficientPosition(f"{owner} has no position in {currency}")
    if amount > position.deposited_amount:
        raise InsufficientPosition(
            f"{owner} cannot withdraw {amount} {currency}: deposited {position.deposited_amount}"
        )
    if amount > vault.balance:
        raise InsufficientLiquidity(
            f"{currency} vault holds {vault.balance}, cannot pay out {amount}"
        )

    penalty_bps = withdrawal_penalty_bps(position.deposit_timestamp, view.current_time)
    penalty = withdrawal_penalty_amount(amount, penalty_bps)
    paid = amount - penalty

    moves = []
    if paid > 0:
        moves.append(Move(paid, currency, vault_account(currency), EXTERNAL_ACCOUNT, "withdrawal"))
    if penalty > 0:
        moves.append(Move(penalty, currency, vault_account(currency), REBALANCING_TREASURY, "withdrawal_penalty"))

    new = replace(position, deposited_amount=position.deposited_amount - amount)
    if new.is_empty:
        new = None

    pending = build_transaction(
        view,
        moves,
        [PositionChange(owner, currency, position, new)],
        TransactionOrigin(OriginType.WITHDRAW, owner, vault_id=currency),
        [_snapshot(view, vault_account(currency), currency)],
    )
    receipt = WithdrawalReceipt(
        owner=owner,
        currency=currency,
        amount=amount,
        penalty_bps=penalty_bps,
        penalty_amount=penalty,
        amount_paid=paid,
    )
    return pending, receipt


# ============================================================================
# SWAPS
# ============================================================================

def compute_swap(
    view: VaultView,
    source: str,
    target: str,
    amount_in,
    oracle_price: int,
    source_to_target: bool = True,
    min_amount_out=ZERO,
    trader: str = EXTERNAL_ACCOUNT,
    config: EngineConfig = DEFAULT_CONFIG,
) -> Tuple[PendingTransaction, SwapQuote]:
    """
    Price and build a swap between the `source` and `target` vaults.

    oracle_price is the scaled price of one `source` unit in `target`. With
    source_to_target the trader delivers `source` and receives `target`;
    otherwise the trader delivers `target` and receives `source`.

    The quote is computed from the same balances recorded in the
    transaction's expected_balances, so it can only commit against them.

    Raises:
        VaultNotInitialized: unknown currency
        InvalidInput: bad amount or price, source == target
        InsufficientLiquidity: payout vault cannot cover the gross output,
                               or a vault is empty and empty-vault swaps
                               are disabled
        SlippageExceeded: net output below min_amount_out
    """
    if source == target:
        raise InvalidInput(f"cannot swap {source} against itself")
    source_vault = view.get_vault(source)
    target_vault = view.get_vault(target)
    min_amount_out = to_amount(min_amount_out, "min_amount_out")

    if not config.allow_empty_vault_swaps and (source_vault.balance == 0 or target_vault.balance == 0):
        raise InsufficientLiquidity(
            f"{pair_name(source, target)} has an empty vault "
            f"({source_vault.balance} {source}, {target_vault.balance} {target})"
        )

    quote = quote_swap(
        amount_in, oracle_price, source_vault.balance, target_vault.balance,
        source_to_target, config,
    )

    paying, payout = (source, target) if source_to_target else (target, source)
    payout_balance = source_vault.balance if payout == source else target_vault.balance
    if quote.amount_out_without_fees > payout_balance:
        raise InsufficientLiquidity(
            f"{payout} vault holds {payout_balance}, swap needs {quote.amount_out_without_fees}"
        )
    if quote.amount_out < min_amount_out:
        raise SlippageExceeded(
            f"swap output {quote.amount_out} {payout} below minimum {min_amount_out}"
        )

    moves = [
        Move(quote.amount_in, paying, EXTERNAL_ACCOUNT, vault_account(paying), "swap_in"),
        Move(quote.amount_out, payout, vault_account(payout), EXTERNAL_ACCOUNT, "swap_out"),
    ]
    if quote.fee_amount > 0:
        moves.append(Move(quote.fee_amount, payout, vault_account(payout), fee_account(payout), "swap_fee"))

    expected = [
        _snapshot(view, vault_account(source), source),
        _snapshot(view, vault_account(target), target),
    ]
    origin = TransactionOrigin(
        OriginType.SWAP, trader, vault_id=payout,
        reference=f"{pair_name(source, target)}@{oracle_price}",
    )
    return build_transaction(view, moves, None, origin, expected), quote


# ============================================================================
# FEES AND REWARDS
# ============================================================================

def compute_fee_distribution(
    view: VaultView,
    currency: str,
    counterpart: str,
) -> Tuple[PendingTransaction, Optional[FeeDistribution]]:
    """
    Distribute the `currency` vault's accrued fees.

    The split follows the health of the (currency, counterpart) pair. The LP
    share is credited to positions pro rata to deposited_amount over the
    vault balance, all from one snapshot; when principal exceeds the vault
    balance the total principal is used as denominator instead, so credits
    never exceed the LP share. Anything not credited stays in the vault.

    Returns (empty transaction, None) when there is nothing to distribute.
    """
    if currency == counterpart:
        raise InvalidInput("fee distribution needs two distinct vaults")
    vault = view.get_vault(currency)
    other = view.get_vault(counterpart)
    origin = TransactionOrigin(OriginType.FEE_DISTRIBUTION, "protocol", vault_id=currency,
                               reference=pair_name(currency, counterpart))

    total_fees = vault.accrued_fees
    if total_fees == 0:
        return empty_pending_transaction(view, origin), None

    health = vault_health(vault.balance, other.balance)
    split = allocate_fees(total_fees, health)

    positions = [p for p in view.get_positions(currency) if p.deposited_amount > 0]
    total_principal = sum((p.deposited_amount for p in positions), ZERO)
    denominator = max(vault.balance, total_principal)

    credits: Dict[str, Decimal] = {}
    changes: List[PositionChange] = []
    if split.lp_share > 0 and denominator > 0:
        for position in positions:
            credit = quantize_amount(split.lp_share * position.deposited_amount / denominator, 'SHARE')
            if credit <= 0:
                continue
            credits[position.owner] = credit
            changes.append(PositionChange(
                position.owner, currency, position,
                replace(position, accrued_rewards=position.accrued_rewards + credit),
            ))
    lp_credited = sum(credits.values(), ZERO)
    lp_retained = split.lp_share - lp_credited

    source = fee_account(currency)
    moves = []
    if split.rebalancer_share > 0:
        moves.append(Move(split.rebalancer_share, currency, source, REBALANCING_TREASURY, "fee_rebalancer"))
    if split.protocol_share > 0:
        moves.append(Move(split.protocol_share, currency, source, PROTOCOL_TREASURY, "fee_protocol"))
    if lp_credited > 0:
        moves.append(Move(lp_credited, currency, source, reward_account(currency), "fee_lp_credited"))
    if lp_retained > 0:
        moves.append(Move(lp_retained, currency, source, vault_account(currency), "fee_lp_retained"))

    expected = [
        _snapshot(view, source, currency),
        _snapshot(view, vault_account(currency), currency),
        _snapshot(view, vault_account(counterpart), counterpart),
    ]
    distribution = FeeDistribution(
        currency=currency,
        total_fees=total_fees,
        health=health,
        split=split,
        lp_credited=lp_credited,
        lp_retained=lp_retained,
        credits=credits,
    )
    return build_transaction(view, moves, changes, origin, expected), distribution


def compute_reward_claim(
    view: VaultView,
    owner: str,
    currency: str,
) -> Tuple[PendingTransaction, Decimal]:
    """
    Pay out the owner's credited rewards.

    Raises:
        InsufficientPosition: no position
        InvalidInput: nothing to claim
    """
    view.get_vault(currency)
    position = view.get_position(owner, currency)
    if position is None:
        raise InsufficientPosition(f"{owner} has no position in {currency}")
    reward = position.accrued_rewards
    if reward <= 0:
        raise InvalidInput(f"{owner} has no rewards to claim in {currency}")

    new = replace(
        position,
        accrued_rewards=ZERO,
        rewards_claimed=position.rewards_claimed + reward,
    )
    if new.is_empty:
        new = None

    moves = [Move(reward, currency, reward_account(currency), EXTERNAL_ACCOUNT, "reward_claim")]
    origin = TransactionOrigin(OriginType.REWARD_CLAIM, owner, vault_id=currency)
    pending = build_transaction(view, moves, [PositionChange(owner, currency, position, new)], origin)
    return pending, reward


# ============================================================================
# REBALANCING AND TREASURY
# ============================================================================

def compute_rebalance(view: VaultView, directive: RebalanceDirective) -> PendingTransaction:
    """
    Build the treasury injection described by a directive.

    The directive's balance snapshot becomes the transaction's
    expected_balances: the ledger applies it only while both vault balances
    are unchanged, and the content-derived intent makes it apply once.
    """
    view.get_vault(directive.vault_id)
    view.get_vault(directive.counterpart_vault_id)
    moves = [Move(
        directive.injection_amount, directive.vault_id,
        REBALANCING_TREASURY, vault_account(directive.vault_id), "rebalance_injection",
    )]
    expected = [
        BalanceSnapshot(vault_account(directive.vault_id), directive.vault_id, directive.vault_balance),
        BalanceSnapshot(vault_account(directive.counterpart_vault_id), directive.counterpart_vault_id,
                        directive.counterpart_balance),
    ]
    origin = TransactionOrigin(
        OriginType.REBALANCE, REBALANCING_TREASURY, vault_id=directive.vault_id,
        reference=directive.directive_id,
    )
    return build_transaction(view, moves, None, origin, expected)


def compute_treasury_funding(view: VaultView, currency: str, amount) -> PendingTransaction:
    """Bring external capital into the rebalancing treasury."""
    view.get_vault(currency)
    amount = _positive_amount(amount)
    moves = [Move(amount, currency, EXTERNAL_ACCOUNT, REBALANCING_TREASURY, "treasury_funding")]
    origin = TransactionOrigin(OriginType.TREASURY, REBALANCING_TREASURY, vault_id=currency)
    return build_transaction(view, moves, None, origin,
                             [_snapshot(view, REBALANCING_TREASURY, currency)])


def compute_protocol_sweep(view: VaultView, currency: str) -> Tuple[PendingTransaction, Decimal]:
    """Pay the protocol treasury's whole balance in `currency` out of the engine."""
    view.get_vault(currency)
    origin = TransactionOrigin(OriginType.TREASURY, PROTOCOL_TREASURY, vault_id=currency)
    balance = view.get_balance(PROTOCOL_TREASURY, currency)
    if balance <= 0:
        return empty_pending_transaction(view, origin), ZERO
    moves = [Move(balance, currency, PROTOCOL_TREASURY, EXTERNAL_ACCOUNT, "protocol_fee_sweep")]
    pending = build_transaction(view, moves, None, origin,
                                [BalanceSnapshot(PROTOCOL_TREASURY, currency, balance)])
    return pending, balance
