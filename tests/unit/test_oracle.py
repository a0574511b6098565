"""
test_oracle.py - Unit tests for price oracle gateways

Tests:
- StaticPriceOracle: prices, decimals, updates, missing and bad prices
- TimeSeriesPriceOracle: lookup at or before the ledger clock
"""

import pytest
from datetime import datetime, timedelta

from lendpool import (
    Ledger, OracleGateway, StaticPriceOracle, TimeSeriesPriceOracle, OracleError,
)


T0 = datetime(2025, 1, 1)


class TestStaticPriceOracle:

    def test_price_and_timestamp(self):
        oracle = StaticPriceOracle({"PUNK": 1000 * 10 ** 8}, updated_at=T0)
        assert oracle.price("PUNK") == (1000 * 10 ** 8, T0)

    def test_implements_protocol(self):
        assert isinstance(StaticPriceOracle({}), OracleGateway)

    def test_default_and_custom_decimals(self):
        oracle = StaticPriceOracle({"A": 1, "B": 1}, decimals={"B": 18})
        assert oracle.decimals("A") == 8
        assert oracle.decimals("B") == 18

    def test_missing_price_raises(self):
        with pytest.raises(OracleError, match="No price"):
            StaticPriceOracle({}).price("PUNK")

    def test_zero_price_raises(self):
        """An oracle never reports a zero price."""
        with pytest.raises(OracleError, match="Non-positive"):
            StaticPriceOracle({"PUNK": 0}).price("PUNK")

    def test_update_price(self):
        oracle = StaticPriceOracle({"PUNK": 100}, updated_at=T0)
        later = T0 + timedelta(hours=1)
        oracle.update_price("PUNK", 80, updated_at=later)
        assert oracle.price("PUNK") == (80, later)

    def test_update_prices(self):
        oracle = StaticPriceOracle({})
        oracle.update_prices({"A": 1, "B": 2}, updated_at=T0)
        assert oracle.price("B") == (2, T0)


class TestTimeSeriesPriceOracle:

    @pytest.fixture
    def clock(self):
        return Ledger("clock", initial_time=T0, verbose=False)

    def test_price_follows_ledger_time(self, clock):
        oracle = TimeSeriesPriceOracle(clock, {
            "PUNK": [(T0 + timedelta(days=1), 800), (T0, 1000)],
        })
        assert oracle.price("PUNK") == (1000, T0)
        clock.advance_time(T0 + timedelta(days=2))
        assert oracle.price("PUNK") == (800, T0 + timedelta(days=1))

    def test_no_observation_before_time(self, clock):
        oracle = TimeSeriesPriceOracle(clock)
        oracle.add_price("PUNK", T0 + timedelta(days=1), 900)
        with pytest.raises(OracleError, match="at or before"):
            oracle.price("PUNK")

    def test_unknown_asset(self, clock):
        with pytest.raises(OracleError):
            TimeSeriesPriceOracle(clock).price("PUNK")

    def test_price_at_exact_timestamp(self, clock):
        oracle = TimeSeriesPriceOracle(clock)
        oracle.add_prices({"PUNK": 5, "USDC": 1}, T0)
        assert oracle.price_at("USDC", T0) == (1, T0)

    def test_non_positive_observation_raises(self, clock):
        oracle = TimeSeriesPriceOracle(clock, {"PUNK": [(T0, -1)]})
        with pytest.raises(OracleError, match="Non-positive"):
            oracle.price("PUNK")
