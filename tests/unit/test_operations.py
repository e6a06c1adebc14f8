"""
test_operations.py - Unit tests for the pure transaction builders

Builders are exercised against FakeView; nothing here touches a ledger.
"""

import pytest
from decimal import Decimal

from fxvault import (
    LPPosition, OriginType, EngineConfig, BalanceSnapshot,
    compute_deposit, compute_withdrawal, compute_swap, compute_fee_distribution,
    compute_reward_claim, compute_rebalance, compute_treasury_funding, compute_protocol_sweep,
    evaluate_rebalance,
    EXTERNAL_ACCOUNT, REBALANCING_TREASURY, PROTOCOL_TREASURY,
    InvalidInput, VaultNotInitialized, InsufficientLiquidity, InsufficientPosition, SlippageExceeded,
)
from fxvault.operations import merge_deposit_timestamp

from tests.fake_view import FakeView

T = 1_700_000_000
HOUR = 3600
MILLION = Decimal("1000000")


def pair_view(usd=MILLION, eur=MILLION, positions=None, extra=None, time=T):
    balances = {
        'vault:USD': {'USD': Decimal(usd)},
        'vault:EUR': {'EUR': Decimal(eur)},
    }
    for account, bals in (extra or {}).items():
        balances.setdefault(account, {}).update(bals)
    return FakeView(balances, ['USD', 'EUR'], positions=positions, time=time)


def moves_by_reference(pending):
    return {m.reference: m for m in pending.moves}


class TestMergeDepositTimestamp:

    def test_first_deposit(self):
        assert merge_deposit_timestamp(None, Decimal("100"), T) == T

    def test_weighted_average(self):
        position = LPPosition("alice", "USD", Decimal("100"), T - 1000)
        assert merge_deposit_timestamp(position, Decimal("100"), T) == T - 500

    def test_rounds_up(self):
        position = LPPosition("alice", "USD", Decimal("1"), T - 10)
        # (T - 10 + 2T) / 3 = T - 3.33 -> T - 3
        assert merge_deposit_timestamp(position, Decimal("2"), T) == T - 3

    def test_empty_principal_restarts_clock(self):
        position = LPPosition("alice", "USD", Decimal("0"), T - 1000, accrued_rewards=Decimal("1"))
        assert merge_deposit_timestamp(position, Decimal("5"), T) == T


class TestComputeDeposit:

    def test_new_position(self):
        pending, position = compute_deposit(pair_view(), "alice", "USD", Decimal("100"))
        assert position == LPPosition("alice", "USD", Decimal("100"), T)
        (move,) = pending.moves
        assert (move.source, move.dest, move.quantity) == (EXTERNAL_ACCOUNT, "vault:USD", Decimal("100"))
        (change,) = pending.position_changes
        assert change.old is None and change.new == position
        assert pending.origin.origin_type == OriginType.DEPOSIT
        assert pending.timestamp == T

    def test_top_up_merges(self):
        existing = LPPosition("alice", "USD", Decimal("100"), T - 1000, accrued_rewards=Decimal("3"))
        _, position = compute_deposit(pair_view(positions=[existing]), "alice", "USD", 100)
        assert position.deposited_amount == Decimal("200")
        assert position.deposit_timestamp == T - 500
        assert position.accrued_rewards == Decimal("3")

    def test_rejections(self):
        with pytest.raises(VaultNotInitialized):
            compute_deposit(pair_view(), "alice", "GBP", Decimal("1"))
        with pytest.raises(InvalidInput):
            compute_deposit(pair_view(), "alice", "USD", Decimal("0"))
        with pytest.raises(InvalidInput):
            compute_deposit(pair_view(), "", "USD", Decimal("1"))


class TestComputeWithdrawal:

    def _view(self, deposited_at, usd=Decimal("1000")):
        position = LPPosition("alice", "USD", Decimal("1000"), deposited_at)
        return pair_view(usd=usd, positions=[position])

    def test_early_withdrawal_pays_penalty(self):
        pending, receipt = compute_withdrawal(self._view(T - 30 * HOUR), "alice", "USD", Decimal("100"))
        assert receipt.penalty_bps == 200
        assert receipt.penalty_amount == Decimal("2")
        assert receipt.amount_paid == Decimal("98")
        moves = moves_by_reference(pending)
        assert moves["withdrawal"].dest == EXTERNAL_ACCOUNT
        assert moves["withdrawal"].quantity == Decimal("98")
        assert moves["withdrawal_penalty"].dest == REBALANCING_TREASURY
        assert moves["withdrawal_penalty"].quantity == Decimal("2")
        (change,) = pending.position_changes
        assert change.new.deposited_amount == Decimal("900")
        assert pending.expected_balances == (BalanceSnapshot("vault:USD", "USD", Decimal("1000")),)

    def test_full_withdrawal_after_penalty_window(self):
        pending, receipt = compute_withdrawal(self._view(T - 250 * HOUR), "alice", "USD", Decimal("1000"))
        assert receipt.penalty_bps == 0
        assert receipt.amount_paid == Decimal("1000")
        assert [m.reference for m in pending.moves] == ["withdrawal"]
        assert pending.position_changes[0].new is None

    def test_more_than_deposited(self):
        with pytest.raises(InsufficientPosition):
            compute_withdrawal(self._view(T), "alice", "USD", Decimal("1000.000000001"))

    def test_no_position(self):
        with pytest.raises(InsufficientPosition):
            compute_withdrawal(self._view(T), "bob", "USD", Decimal("1"))

    def test_vault_cannot_cover(self):
        with pytest.raises(InsufficientLiquidity):
            compute_withdrawal(self._view(T, usd=Decimal("50")), "alice", "USD", Decimal("100"))


class TestComputeSwap:

    def test_moves_and_snapshot(self):
        pending, quote = compute_swap(pair_view(), "EUR", "USD", Decimal("1000"), 1_085_000_000)
        assert quote.amount_out == Decimal("1084.6745")
        moves = moves_by_reference(pending)
        assert (moves["swap_in"].currency, moves["swap_in"].dest) == ("EUR", "vault:EUR")
        assert moves["swap_in"].quantity == Decimal("1000")
        assert (moves["swap_out"].currency, moves["swap_out"].source) == ("USD", "vault:USD")
        assert moves["swap_out"].quantity == Decimal("1084.6745")
        assert (moves["swap_fee"].source, moves["swap_fee"].dest) == ("vault:USD", "fees:USD")
        assert moves["swap_fee"].quantity == Decimal("0.3255")
        assert pending.expected_balances == (
            BalanceSnapshot("vault:EUR", "EUR", MILLION),
            BalanceSnapshot("vault:USD", "USD", MILLION),
        )
        assert pending.origin.reference == "EUR/USD@1085000000"
        assert pending.origin.vault_id == "USD"

    def test_reverse_direction(self):
        pending, quote = compute_swap(pair_view(), "EUR", "USD", Decimal("1085"), 1_085_000_000,
                                      source_to_target=False)
        moves = moves_by_reference(pending)
        assert moves["swap_in"].currency == "USD"
        assert moves["swap_out"].currency == "EUR"
        assert moves["swap_out"].quantity == Decimal("999.7")
        assert moves["swap_fee"].dest == "fees:EUR"

    def test_same_currency(self):
        with pytest.raises(InvalidInput):
            compute_swap(pair_view(), "USD", "USD", Decimal("1"), 1_000_000_000)

    def test_unknown_currency(self):
        with pytest.raises(VaultNotInitialized):
            compute_swap(pair_view(), "GBP", "USD", Decimal("1"), 1_000_000_000)

    def test_empty_vault_disabled_by_default(self):
        with pytest.raises(InsufficientLiquidity):
            compute_swap(pair_view(eur=0), "EUR", "USD", Decimal("1000"), 1_000_000_000)

    def test_empty_paying_vault_when_allowed(self):
        config = EngineConfig(allow_empty_vault_swaps=True)
        _, quote = compute_swap(pair_view(eur=0), "EUR", "USD", Decimal("1000"), 1_000_000_000,
                                config=config)
        assert quote.spread_bps == 28

    def test_payout_vault_too_small(self):
        with pytest.raises(InsufficientLiquidity):
            compute_swap(pair_view(usd=Decimal("500")), "EUR", "USD", Decimal("1000"), 1_000_000_000)

    def test_slippage(self):
        with pytest.raises(SlippageExceeded):
            compute_swap(pair_view(), "EUR", "USD", Decimal("1000"), 1_000_000_000,
                         min_amount_out=Decimal("1000"))
        _, quote = compute_swap(pair_view(), "EUR", "USD", Decimal("1000"), 1_000_000_000,
                                min_amount_out=Decimal("999.7"))
        assert quote.amount_out == Decimal("999.7")


class TestComputeFeeDistribution:

    def _positions(self):
        return [
            LPPosition("alice", "USD", Decimal("600"), T),
            LPPosition("carol", "USD", Decimal("400"), T),
        ]

    def test_healthy_pair_full_credit(self):
        view = pair_view(usd=Decimal("1000"), eur=Decimal("1000"), positions=self._positions(),
                         extra={'fees:USD': {'USD': Decimal("10")}})
        pending, dist = compute_fee_distribution(view, "USD", "EUR")
        assert dist.split.rebalancer_share == Decimal("1.5")
        assert dist.split.protocol_share == Decimal("1.5")
        assert dist.credits == {"alice": Decimal("4.2"), "carol": Decimal("2.8")}
        assert dist.lp_credited == Decimal("7")
        assert dist.lp_retained == 0
        moves = moves_by_reference(pending)
        assert moves["fee_rebalancer"].dest == REBALANCING_TREASURY
        assert moves["fee_protocol"].dest == PROTOCOL_TREASURY
        assert moves["fee_lp_credited"].dest == "rewards:USD"
        assert "fee_lp_retained" not in moves
        assert sum(m.quantity for m in pending.moves) == Decimal("10")
        new_rewards = {pc.owner: pc.new.accrued_rewards for pc in pending.position_changes}
        assert new_rewards == {"alice": Decimal("4.2"), "carol": Decimal("2.8")}

    def test_vault_above_principal_retains_remainder(self):
        view = pair_view(usd=Decimal("2000"), eur=Decimal("1000"), positions=self._positions(),
                         extra={'fees:USD': {'USD': Decimal("10")}})
        pending, dist = compute_fee_distribution(view, "USD", "EUR")
        # health 0.5 -> 25% / 5%
        assert dist.split.rebalancer_share == Decimal("2.5")
        assert dist.split.protocol_share == Decimal("0.5")
        assert dist.credits == {"alice": Decimal("2.1"), "carol": Decimal("1.4")}
        assert dist.lp_retained == Decimal("3.5")
        assert moves_by_reference(pending)["fee_lp_retained"].dest == "vault:USD"

    def test_no_positions_retains_lp_share(self):
        view = pair_view(usd=Decimal("1000"), eur=Decimal("1000"),
                         extra={'fees:USD': {'USD': Decimal("10")}})
        pending, dist = compute_fee_distribution(view, "USD", "EUR")
        assert dist.credits == {}
        assert dist.lp_retained == Decimal("7")
        assert pending.position_changes == ()

    def test_nothing_to_distribute(self):
        pending, dist = compute_fee_distribution(pair_view(), "USD", "EUR")
        assert dist is None
        assert pending.is_empty()

    def test_same_currency(self):
        with pytest.raises(InvalidInput):
            compute_fee_distribution(pair_view(), "USD", "USD")


class TestComputeRewardClaim:

    def test_claim(self):
        position = LPPosition("alice", "USD", Decimal("100"), T, accrued_rewards=Decimal("5"))
        pending, reward = compute_reward_claim(pair_view(positions=[position]), "alice", "USD")
        assert reward == Decimal("5")
        (move,) = pending.moves
        assert (move.source, move.dest) == ("rewards:USD", EXTERNAL_ACCOUNT)
        new = pending.position_changes[0].new
        assert new.accrued_rewards == 0
        assert new.rewards_claimed == Decimal("5")

    def test_claim_closes_withdrawn_position(self):
        position = LPPosition("alice", "USD", Decimal("0"), T, accrued_rewards=Decimal("5"))
        pending, _ = compute_reward_claim(pair_view(positions=[position]), "alice", "USD")
        assert pending.position_changes[0].new is None

    def test_nothing_to_claim(self):
        position = LPPosition("alice", "USD", Decimal("100"), T)
        with pytest.raises(InvalidInput):
            compute_reward_claim(pair_view(positions=[position]), "alice", "USD")
        with pytest.raises(InsufficientPosition):
            compute_reward_claim(pair_view(), "alice", "USD")


class TestTreasuryBuilders:

    def test_rebalance(self):
        directive = evaluate_rebalance("EUR", "USD", Decimal("350"), Decimal("1000"))
        pending = compute_rebalance(pair_view(usd=Decimal("1000"), eur=Decimal("350")), directive)
        (move,) = pending.moves
        assert (move.source, move.dest, move.quantity) == (REBALANCING_TREASURY, "vault:EUR", Decimal("325"))
        assert pending.expected_balances == (
            BalanceSnapshot("vault:EUR", "EUR", Decimal("350")),
            BalanceSnapshot("vault:USD", "USD", Decimal("1000")),
        )
        assert pending.origin.reference == directive.directive_id

    def test_funding(self):
        pending = compute_treasury_funding(pair_view(), "USD", Decimal("500"))
        (move,) = pending.moves
        assert (move.source, move.dest) == (EXTERNAL_ACCOUNT, REBALANCING_TREASURY)
        assert pending.expected_balances == (BalanceSnapshot(REBALANCING_TREASURY, "USD", Decimal("0")),)

    def test_sweep(self):
        view = pair_view(extra={PROTOCOL_TREASURY: {'USD': Decimal("3")}})
        pending, amount = compute_protocol_sweep(view, "USD")
        assert amount == Decimal("3")
        assert pending.moves[0].dest == EXTERNAL_ACCOUNT
        pending, amount = compute_protocol_sweep(view, "EUR")
        assert amount == 0
        assert pending.is_empty()
