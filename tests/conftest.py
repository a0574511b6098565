"""
conftest.py - Shared pytest fixtures for lending pool tests

Provides common fixtures used across unit, conformance and functional tests:
- A bare ledger with USDC and PUNK items registered
- A configured PUNK-USDC pool ("world") with oracle, risk engine and access
- A seeded pool: liquidity supplied, collateral minted to borrowers
"""

import pytest

from lendpool import Ledger, fungible_token, collateral_item

from tests.pool_setup import (
    T0, USDC, PUNK, ONE_USDC, USERS,
    make_world, fund, mint,
)


@pytest.fixture
def ledger():
    """Test-mode ledger with USDC, PUNK#1..#10 and the standard users."""
    ledger = Ledger("test", initial_time=T0, verbose=False, test_mode=True)
    ledger.register_unit(fungible_token(USDC, "USD Coin", decimals=6))
    for item_id in range(1, 11):
        ledger.register_unit(collateral_item(PUNK, item_id))
    for user in USERS:
        ledger.register_wallet(user)
    return ledger


@pytest.fixture
def world():
    """Configured pool with no balances."""
    return make_world()


@pytest.fixture
def unconfigured_world():
    """Pool whose risk parameters were never set."""
    return make_world(configure_risk=False)


@pytest.fixture
def seeded(world):
    """
    Pool with 10,000 USDC of liquidity from `lender`.

    alice owns PUNK#1..#3, bob owns PUNK#4..#5; both hold 5,000 USDC for
    repayments, and `liquidator` holds 100,000 USDC.
    """
    ledger = world.ledger
    fund(ledger, "lender", 10_000 * ONE_USDC)
    fund(ledger, "alice", 5_000 * ONE_USDC)
    fund(ledger, "bob", 5_000 * ONE_USDC)
    fund(ledger, "liquidator", 100_000 * ONE_USDC)
    mint(ledger, "alice", 1, 2, 3)
    mint(ledger, "bob", 4, 5)
    world.pool.supply_liquidity("lender", 10_000 * ONE_USDC)
    return world
