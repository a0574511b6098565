"""
test_pool_operations.py - Unit tests for the pure pool transaction builders

Tests:
- calculate_accrual / calculate_liquidation_split
- compute_* functions: validation errors, projected state, emitted moves,
  origins, and that nothing is mutated before execution
"""

import pytest
from dataclasses import replace
from datetime import timedelta

from lendpool import (
    ExecuteResult, OriginType, UserPosition,
    create_lending_pool, load_pool, to_state_dict,
    non_fungible_asset, fungible_asset, wad, WAD, SECONDS_PER_YEAR,
    InterestRateModel,
    calculate_accrual, calculate_liquidation_split,
    compute_accrue_interest,
    compute_supply_collateral, compute_withdraw_collateral,
    compute_supply_liquidity, compute_withdraw_liquidity,
    compute_borrow, compute_repay, compute_liquidation,
    compute_set_loan_to_value, compute_set_min_supply_amount,
    ZeroAmount, NotFound, InsufficientShares, BelowMinimum,
    InsufficientLiquidity, MaxUtilizationExceeded, PositionUnhealthy,
    NotLiquidatable, ConfigurationError, TransferFailed,
)
from tests.fake_view import FakeView
from tests.pool_setup import (
    T0, POOL, CUSTODIAN, PUNK, USDC, ONE_USDC, default_rate_model,
    fund, mint, advance,
)


def _view_with(positions=None, **totals):
    """FakeView of a pool whose totals and positions are set directly."""
    unit = create_lending_pool(
        POOL, "Punks / USDC", non_fungible_asset(PUNK), fungible_asset(USDC, 6),
        created_at=T0, min_supply_amount=1,
    )
    base = FakeView(unit, time=T0)
    terms, state = load_pool(base, POOL)
    state = replace(state, positions=dict(positions or {}), **totals)
    return base.with_state(POOL, to_state_dict(terms, state))


class TestCalculateAccrual:

    def _state(self, view):
        return load_pool(view, POOL)[1]

    def test_interest_added_to_both_sides(self):
        state = self._state(_view_with(
            total_supply_assets=2_000_000, total_supply_shares=2_000_000,
            total_borrow_assets=1_000_000, total_borrow_shares=1_000_000,
        ))
        model = InterestRateModel.fixed(wad("0.10"))
        new, interest = calculate_accrual(state, model, T0 + timedelta(seconds=SECONDS_PER_YEAR))
        assert interest == 100_000
        assert new.total_borrow_assets == 1_100_000
        assert new.total_supply_assets == 2_100_000
        assert new.total_borrow_shares == 1_000_000
        assert new.last_accrued_at == T0 + timedelta(seconds=SECONDS_PER_YEAR)

    def test_idle_period_advances_timestamp(self):
        state = self._state(_view_with(total_supply_assets=10, total_supply_shares=10))
        later = T0 + timedelta(days=30)
        new, interest = calculate_accrual(state, default_rate_model(), later)
        assert interest == 0
        assert new.last_accrued_at == later

    def test_no_elapsed_time(self):
        state = self._state(_view_with())
        new, interest = calculate_accrual(state, default_rate_model(), T0)
        assert new is state
        assert interest == 0


class TestLiquidationSplit:

    def test_ten_items_ten_percent_bonus(self):
        assert calculate_liquidation_split(10, 100 * WAD, 1_000 * WAD) == (1, 9)

    def test_zero_collateral_value(self):
        assert calculate_liquidation_split(3, 0, 0) == (0, 3)

    def test_allocation_capped_at_item_count(self):
        assert calculate_liquidation_split(2, 5_000 * WAD, 1_000 * WAD) == (2, 0)

    def test_floors(self):
        assert calculate_liquidation_split(3, 999, 1_000) == (2, 1)


class TestAccrueInterest:

    def test_empty_when_no_time_passed(self, world):
        pending = compute_accrue_interest(world.ledger, POOL, world.pool.rate_model)
        assert pending.is_empty()

    def test_timestamp_only_change(self, world):
        advance(world.ledger, days=1)
        pending = compute_accrue_interest(world.ledger, POOL, world.pool.rate_model)
        (change,) = pending.state_changes
        assert set(change.changed_fields()) == {'last_accrued_at'}
        assert pending.origin.origin_type == OriginType.SYSTEM
        assert pending.moves == ()


class TestSupplyLiquidity:

    def test_first_deposit(self, world):
        fund(world.ledger, "lender", 5 * ONE_USDC)
        pending = compute_supply_liquidity(world.ledger, POOL, "lender", 5 * ONE_USDC, world.pool.rate_model)

        (move,) = pending.moves
        assert (move.quantity, move.unit_symbol, move.source, move.dest) == (5 * ONE_USDC, USDC, "lender", CUSTODIAN)
        new_state = pending.state_changes[0].new_state
        assert new_state['total_supply_assets'] == 5 * ONE_USDC
        assert new_state['positions']['lender']['supply_shares'] == 5 * ONE_USDC
        assert pending.origin.event_type == "SUPPLY_LIQUIDITY"
        assert pending.origin.origin_type == OriginType.USER_ACTION

        # Nothing happens until the ledger executes it
        assert world.ledger.get_balance("lender", USDC) == 5 * ONE_USDC
        assert load_pool(world.ledger, POOL)[1].total_supply_assets == 0
        assert world.ledger.execute(pending) == ExecuteResult.APPLIED
        assert world.ledger.get_balance(CUSTODIAN, USDC) == 5 * ONE_USDC

    def test_zero_amount(self, world):
        with pytest.raises(ZeroAmount):
            compute_supply_liquidity(world.ledger, POOL, "lender", 0, world.pool.rate_model)

    def test_first_deposit_below_minimum(self, world):
        with pytest.raises(BelowMinimum):
            compute_supply_liquidity(world.ledger, POOL, "lender", ONE_USDC - 1, world.pool.rate_model)

    def test_minimum_only_applies_to_first_deposit(self, seeded):
        pending = compute_supply_liquidity(seeded.ledger, POOL, "alice", 1, seeded.pool.rate_model)
        assert pending.state_changes[0].new_state['positions']['alice']['supply_shares'] == 1

    def test_zero_shares_rejected(self):
        view = _view_with(total_supply_assets=1_000, total_supply_shares=1,
                          positions={"lender": UserPosition(supply_shares=1)})
        with pytest.raises(ZeroAmount, match="zero shares"):
            compute_supply_liquidity(view, POOL, "alice", 999, default_rate_model())

    def test_proportional_shares(self):
        view = _view_with(total_supply_assets=2_000, total_supply_shares=1_000,
                          positions={"lender": UserPosition(supply_shares=1_000)})
        pending = compute_supply_liquidity(view, POOL, "alice", 500, default_rate_model())
        assert pending.state_changes[0].new_state['positions']['alice']['supply_shares'] == 250


class TestWithdrawLiquidity:

    def test_withdraw(self, seeded):
        pending = compute_withdraw_liquidity(seeded.ledger, POOL, "lender", 4_000 * ONE_USDC, seeded.pool.rate_model)
        (move,) = pending.moves
        assert (move.quantity, move.source, move.dest) == (4_000 * ONE_USDC, CUSTODIAN, "lender")

    def test_zero_shares(self, seeded):
        with pytest.raises(ZeroAmount):
            compute_withdraw_liquidity(seeded.ledger, POOL, "lender", 0, seeded.pool.rate_model)

    def test_more_than_held(self, seeded):
        with pytest.raises(InsufficientShares):
            compute_withdraw_liquidity(seeded.ledger, POOL, "alice", 1, seeded.pool.rate_model)

    def test_redeems_zero_assets(self):
        view = _view_with(total_supply_assets=1, total_supply_shares=1_000,
                          positions={"lender": UserPosition(supply_shares=1_000)})
        with pytest.raises(ZeroAmount, match="zero assets"):
            compute_withdraw_liquidity(view, POOL, "lender", 1, default_rate_model())

    def test_cannot_withdraw_borrowed_liquidity(self, seeded):
        seeded.pool.supply_collateral("alice", 1)
        seeded.pool.supply_collateral("alice", 2)
        seeded.pool.borrow("alice", 1_500 * ONE_USDC)
        with pytest.raises(InsufficientLiquidity):
            compute_withdraw_liquidity(seeded.ledger, POOL, "lender", 9_000 * ONE_USDC, seeded.pool.rate_model)


class TestCollateral:

    def test_supply_collateral(self, seeded):
        pending = compute_supply_collateral(seeded.ledger, POOL, "alice", 2, seeded.pool.rate_model)
        (move,) = pending.moves
        assert (move.quantity, move.unit_symbol, move.source, move.dest) == (1, "PUNK#2", "alice", CUSTODIAN)
        new_state = pending.state_changes[0].new_state
        assert new_state['positions']['alice']['collateral_ids'] == [2]
        assert new_state['total_collateral'] == 1

    def test_supply_item_not_owned(self, seeded):
        with pytest.raises(TransferFailed, match="does not own"):
            compute_supply_collateral(seeded.ledger, POOL, "alice", 4, seeded.pool.rate_model)

    def test_withdraw_not_in_set(self, seeded):
        with pytest.raises(NotFound):
            compute_withdraw_collateral(seeded.ledger, POOL, "alice", 1, seeded.pool.rate_model, seeded.risk)

    def test_withdraw_swap_and_pop(self, seeded):
        for item_id in (1, 2, 3):
            seeded.pool.supply_collateral("alice", item_id)
        pending = compute_withdraw_collateral(seeded.ledger, POOL, "alice", 1, seeded.pool.rate_model, seeded.risk)
        assert pending.state_changes[0].new_state['positions']['alice']['collateral_ids'] == [3, 2]
        (move,) = pending.moves
        assert (move.unit_symbol, move.source, move.dest) == ("PUNK#1", CUSTODIAN, "alice")

    def test_withdraw_checks_post_withdrawal_position(self, seeded):
        seeded.pool.supply_collateral("alice", 1)
        seeded.pool.supply_collateral("alice", 2)
        seeded.pool.borrow("alice", 1_500 * ONE_USDC)
        with pytest.raises(PositionUnhealthy):
            compute_withdraw_collateral(seeded.ledger, POOL, "alice", 2, seeded.pool.rate_model, seeded.risk)

    def test_withdraw_requires_configured_risk(self, unconfigured_world):
        w = unconfigured_world
        mint(w.ledger, "alice", 1)
        w.pool.supply_collateral("alice", 1)
        with pytest.raises(ConfigurationError):
            compute_withdraw_collateral(w.ledger, POOL, "alice", 1, w.pool.rate_model, w.risk)


class TestBorrow:

    @pytest.fixture
    def small_pool(self, world):
        """1,000 USDC of liquidity, alice has three items (2,400 USDC at LTV)."""
        fund(world.ledger, "lender", 1_000 * ONE_USDC)
        mint(world.ledger, "alice", 1, 2, 3)
        world.pool.supply_liquidity("lender", 1_000 * ONE_USDC)
        for item_id in (1, 2, 3):
            world.pool.supply_collateral("alice", item_id)
        return world

    def test_borrow(self, small_pool):
        pending = compute_borrow(small_pool.ledger, POOL, "alice", 500 * ONE_USDC,
                                 small_pool.pool.rate_model, small_pool.risk)
        (move,) = pending.moves
        assert (move.quantity, move.source, move.dest) == (500 * ONE_USDC, CUSTODIAN, "alice")
        new_state = pending.state_changes[0].new_state
        assert new_state['positions']['alice']['borrow_shares'] == 500 * ONE_USDC
        assert new_state['total_borrow_assets'] == 500 * ONE_USDC

    def test_zero_amount(self, small_pool):
        with pytest.raises(ZeroAmount):
            compute_borrow(small_pool.ledger, POOL, "alice", 0, small_pool.pool.rate_model, small_pool.risk)

    def test_more_than_supplied(self, small_pool):
        with pytest.raises(InsufficientLiquidity):
            compute_borrow(small_pool.ledger, POOL, "alice", 1_000 * ONE_USDC + 1,
                           small_pool.pool.rate_model, small_pool.risk)

    def test_utilization_ceiling_is_exclusive(self, small_pool):
        with pytest.raises(MaxUtilizationExceeded):
            compute_borrow(small_pool.ledger, POOL, "alice", 950 * ONE_USDC,
                           small_pool.pool.rate_model, small_pool.risk)
        compute_borrow(small_pool.ledger, POOL, "alice", 949 * ONE_USDC,
                       small_pool.pool.rate_model, small_pool.risk)

    def test_without_collateral(self, small_pool):
        with pytest.raises(PositionUnhealthy):
            compute_borrow(small_pool.ledger, POOL, "bob", 1, small_pool.pool.rate_model, small_pool.risk)

    def test_zero_shares_rejected(self):
        view = _view_with(
            total_supply_assets=10_000, total_supply_shares=10_000,
            total_borrow_assets=1_000, total_borrow_shares=1,
            positions={"bob": UserPosition(borrow_shares=1)},
        )
        with pytest.raises(ZeroAmount, match="zero shares"):
            compute_borrow(view, POOL, "alice", 999, default_rate_model(), None)


class TestRepay:

    def test_repay_from_payer(self, seeded):
        seeded.pool.supply_collateral("alice", 1)
        seeded.pool.borrow("alice", 100 * ONE_USDC)
        pending = compute_repay(seeded.ledger, POOL, "alice", 40 * ONE_USDC, seeded.pool.rate_model, payer="bob")
        (move,) = pending.moves
        assert (move.quantity, move.source, move.dest) == (40 * ONE_USDC, "bob", CUSTODIAN)
        assert pending.state_changes[0].new_state['positions']['alice']['borrow_shares'] == 60 * ONE_USDC
        assert pending.origin.source_id == "bob"

    def test_more_than_owed(self, seeded):
        with pytest.raises(InsufficientShares):
            compute_repay(seeded.ledger, POOL, "alice", 1, seeded.pool.rate_model)

    def test_zero_shares(self, seeded):
        with pytest.raises(ZeroAmount):
            compute_repay(seeded.ledger, POOL, "alice", 0, seeded.pool.rate_model)

    def test_converts_to_zero_assets(self):
        view = _view_with(
            total_supply_assets=10, total_supply_shares=10,
            total_borrow_assets=1, total_borrow_shares=1_000,
            positions={"alice": UserPosition(borrow_shares=1_000)},
        )
        with pytest.raises(ZeroAmount, match="zero assets"):
            compute_repay(view, POOL, "alice", 1, default_rate_model())


class TestLiquidation:

    def test_healthy_position_not_liquidatable(self, seeded):
        seeded.pool.supply_collateral("alice", 1)
        seeded.pool.borrow("alice", 800 * ONE_USDC)
        with pytest.raises(NotLiquidatable):
            compute_liquidation(seeded.ledger, POOL, "liquidator", "alice", seeded.pool.rate_model, seeded.risk)

    def test_zero_debt_not_liquidatable(self, seeded):
        seeded.pool.supply_collateral("alice", 1)
        with pytest.raises(NotLiquidatable):
            compute_liquidation(seeded.ledger, POOL, "liquidator", "alice", seeded.pool.rate_model, seeded.risk)

    def test_moves(self, seeded):
        for item_id in (1, 2, 3):
            seeded.pool.supply_collateral("alice", item_id)
        seeded.pool.borrow("alice", 2_400 * ONE_USDC)
        seeded.oracle.update_price(PUNK, 800 * 10 ** 8)

        pending = compute_liquidation(seeded.ledger, POOL, "liquidator", "alice",
                                      seeded.pool.rate_model, seeded.risk)
        debt_move, *item_moves = pending.moves
        assert (debt_move.quantity, debt_move.source, debt_move.dest) == (2_400 * ONE_USDC, "liquidator", CUSTODIAN)
        # 10% of 2,400 of collateral value returns 0 of 3 items
        assert [(m.unit_symbol, m.dest) for m in item_moves] == [
            ("PUNK#1", "liquidator"), ("PUNK#2", "liquidator"), ("PUNK#3", "liquidator"),
        ]
        new_state = pending.state_changes[0].new_state
        assert new_state['positions']['alice'] == {'supply_shares': 0, 'borrow_shares': 0, 'collateral_ids': []}
        assert new_state['total_borrow_assets'] == 0
        assert new_state['total_collateral'] == 0
        assert pending.origin.origin_type == OriginType.LIQUIDATION


class TestAdministration:

    def test_set_loan_to_value(self, world):
        pending = compute_set_loan_to_value(world.ledger, POOL, wad("0.7"), "governance", world.risk)
        assert pending.state_changes[0].changed_fields() == {'loan_to_value': (wad("0.8"), wad("0.7"))}
        assert pending.origin.origin_type == OriginType.ADMIN

    @pytest.mark.parametrize("value", [0, WAD, WAD + 1])
    def test_loan_to_value_range(self, world, value):
        with pytest.raises(ConfigurationError, match="loan_to_value"):
            compute_set_loan_to_value(world.ledger, POOL, value, "governance", world.risk)

    def test_loan_to_value_must_be_below_threshold(self, world):
        with pytest.raises(ConfigurationError, match="liquidation threshold"):
            compute_set_loan_to_value(world.ledger, POOL, wad("0.9"), "governance", world.risk)

    def test_loan_to_value_without_threshold(self, unconfigured_world):
        w = unconfigured_world
        pending = compute_set_loan_to_value(w.ledger, POOL, wad("0.95"), "governance", w.risk)
        assert pending.state_changes[0].new_state['loan_to_value'] == wad("0.95")

    def test_set_min_supply_amount(self, world):
        pending = compute_set_min_supply_amount(world.ledger, POOL, 5, "governance")
        assert pending.state_changes[0].new_state['min_supply_amount'] == 5

    def test_min_supply_amount_zero(self, world):
        with pytest.raises(ConfigurationError):
            compute_set_min_supply_amount(world.ledger, POOL, 0, "governance")
