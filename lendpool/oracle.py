"""
oracle.py - Price oracle gateway for risk valuation

Provides the price feed consumed by the risk engine.

Classes:
- OracleGateway: Protocol defining the oracle interface
- StaticPriceOracle: Time-independent prices
- TimeSeriesPriceOracle: Time-varying prices read at the ledger's current time

Prices are integers with a per-asset decimal precision, e.g. a price of
1850.25 USD with 8 decimals is 185025000000. An oracle never returns a
missing or non-positive price; it raises OracleError instead.
"""

from bisect import bisect_right
from datetime import datetime
from typing import Dict, Optional, List, Tuple, Protocol, runtime_checkable

from .core import LedgerView, OracleError


DEFAULT_PRICE_DECIMALS = 8


@runtime_checkable
class OracleGateway(Protocol):
    """
    Protocol for price oracles.

    price() returns the latest (value, updated_at) for an asset;
    decimals() returns the precision of that asset's price.
    """

    def price(self, asset: str) -> Tuple[int, datetime]:
        """Return (price, updated_at) for an asset."""
        ...

    def decimals(self, asset: str) -> int:
        """Return the decimal precision of the asset's price."""
        ...


def _check_price(asset: str, value: Optional[int]) -> int:
    if value is None:
        raise OracleError(f"No price available for {asset}")
    if value <= 0:
        raise OracleError(f"Non-positive price {value} for {asset}")
    return value


class StaticPriceOracle:
    """
    Oracle with static prices (time-independent).

    Prices remain constant until updated. updated_at records the time passed
    to update_price (or the construction time for initial prices).
    """

    def __init__(
        self,
        prices: Dict[str, int],
        decimals: Optional[Dict[str, int]] = None,
        default_decimals: int = DEFAULT_PRICE_DECIMALS,
        updated_at: Optional[datetime] = None,
    ):
        """
        Initialize with a static price map.

        Args:
            prices: Dictionary mapping asset symbols to integer prices
            decimals: Optional per-asset price decimals
            default_decimals: Decimals for assets not listed in `decimals`
            updated_at: Timestamp reported for the initial prices
        """
        self.prices = dict(prices)
        self.price_decimals = dict(decimals or {})
        self.default_decimals = default_decimals
        stamp = updated_at or datetime(1970, 1, 1)
        self.updated_at = {asset: stamp for asset in self.prices}

    def price(self, asset: str) -> Tuple[int, datetime]:
        value = _check_price(asset, self.prices.get(asset))
        return value, self.updated_at[asset]

    def decimals(self, asset: str) -> int:
        return self.price_decimals.get(asset, self.default_decimals)

    def update_price(self, asset: str, price: int, updated_at: Optional[datetime] = None):
        """Update the price of an asset."""
        self.prices[asset] = price
        self.updated_at[asset] = updated_at or self.updated_at.get(asset, datetime(1970, 1, 1))

    def update_prices(self, prices: Dict[str, int], updated_at: Optional[datetime] = None):
        """Update multiple prices at once."""
        for asset, price in prices.items():
            self.update_price(asset, price, updated_at)

    def __repr__(self):
        return f"StaticPriceOracle({len(self.prices)} prices)"


class TimeSeriesPriceOracle:
    """
    Oracle with time-varying prices.

    Stores historical observations and answers with the most recent price at
    or before the clock's current time. The clock is a LedgerView, so prices
    move with the ledger's logical time.
    """

    def __init__(
        self,
        clock: LedgerView,
        price_paths: Optional[Dict[str, List[Tuple[datetime, int]]]] = None,
        decimals: Optional[Dict[str, int]] = None,
        default_decimals: int = DEFAULT_PRICE_DECIMALS,
    ):
        """
        Initialize the oracle.

        Args:
            clock: View providing current_time
            price_paths: Optional dict mapping assets to (timestamp, price) lists
            decimals: Optional per-asset price decimals
            default_decimals: Decimals for assets not listed in `decimals`

        Examples:
            oracle = TimeSeriesPriceOracle(ledger)
            oracle.add_price('PUNK', datetime(2025, 1, 15), 1000 * 10**8)

            oracle = TimeSeriesPriceOracle(ledger, {
                'PUNK': [(t0, 1000 * 10**8), (t1, 800 * 10**8)],
            })
        """
        self.clock = clock
        self.price_decimals = dict(decimals or {})
        self.default_decimals = default_decimals
        self.price_history: Dict[str, List[Tuple[datetime, int]]] = {}

        if price_paths:
            for asset, path in price_paths.items():
                if not path:
                    continue
                self.price_history[asset] = sorted(path, key=lambda x: x[0])

    def add_price(self, asset: str, timestamp: datetime, price: int):
        """Add a price observation for an asset at a specific time."""
        history = self.price_history.setdefault(asset, [])
        history.append((timestamp, price))
        history.sort(key=lambda x: x[0])

    def add_prices(self, prices: Dict[str, int], timestamp: datetime):
        """Add multiple price observations at the same timestamp."""
        for asset, price in prices.items():
            self.add_price(asset, timestamp, price)

    def price_at(self, asset: str, timestamp: datetime) -> Tuple[int, datetime]:
        """
        Get the price at or before a timestamp.

        Uses binary search for O(log n) lookup.

        Raises:
            OracleError: If no observation exists at or before the timestamp
        """
        history = self.price_history.get(asset)
        if not history:
            raise OracleError(f"No price available for {asset}")

        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, timestamp)
        if idx == 0:
            raise OracleError(f"No price for {asset} at or before {timestamp}")

        observed_at, value = history[idx - 1]
        return _check_price(asset, value), observed_at

    def price(self, asset: str) -> Tuple[int, datetime]:
        return self.price_at(asset, self.clock.current_time)

    def decimals(self, asset: str) -> int:
        return self.price_decimals.get(asset, self.default_decimals)

    def __repr__(self):
        total_observations = sum(len(history) for history in self.price_history.values())
        return f"TimeSeriesPriceOracle({len(self.price_history)} assets, {total_observations} observations)"
