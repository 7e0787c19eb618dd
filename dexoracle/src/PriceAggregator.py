"""PriceAggregator: Volume-weighted prices from DEX trades.

Algorithm:
    1. For every trade of a tracked asset, add ``price * amount`` and
       ``amount`` to that asset's accumulator
    2. On merge, each asset with volume gets ``price_volume / volume``
       rounded half-up to ``decimals`` fractional digits
    3. Assets without volume keep their previous on-chain price
    4. Previous entries for assets that are no longer tracked are kept

Accumulation uses exact rationals, so the merged prices do not depend on the
order in which trades arrive. Memory is one accumulator per tracked asset.

After ``aggregate_prices`` the aggregator is closed; feeding it more trades
raises ``AggregatorClosed``.

.. code-block:: python

    >>> aggregator = PriceAggregator(NATIVE, [usdc])
    >>> aggregator.process_trade(TradeEvent(usdc, NATIVE, Fraction(2), Fraction(10), 1000))
    >>> aggregator.process_trade(TradeEvent(usdc, NATIVE, Fraction(3), Fraction(5), 1001))
    >>> aggregator.aggregate_prices({}, decimals=2)
    {IssuedAsset(code='USDC', issuer='G...'): 233}
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction

from .AssetResolver import AssetId
from .errors import AggregatorClosed
from .TradeExtractor import AggregationWindow, TradeEvent, TradeExtractor, TxResultRecord

logger = logging.getLogger(__name__)


class AggregatorState(Enum):
    """Lifecycle of a PriceAggregator."""

    ACCUMULATING = "accumulating"
    MERGED = "merged"


@dataclass
class VolumeAccumulator:
    """Running sums for one tracked asset.

    :ivar price_volume: Sum of ``price * amount``.
    :ivar volume: Sum of ``amount``.
    :ivar trades: Number of trades added.
    """

    price_volume: Fraction = Fraction(0)
    volume: Fraction = Fraction(0)
    trades: int = 0

    def add(self, price: Fraction, amount: Fraction) -> None:
        self.price_volume += price * amount
        self.volume += amount
        self.trades += 1

    def combine(self, other: VolumeAccumulator) -> None:
        self.price_volume += other.price_volume
        self.volume += other.volume
        self.trades += other.trades

    @property
    def price(self) -> Fraction | None:
        """Volume-weighted average price, or None without volume."""
        if self.volume == 0:
            return None
        return self.price_volume / self.volume


def round_half_up(value: Fraction, decimals: int) -> int:
    """Round a non-negative rational to a fixed-point mantissa.

    :param value: Exact value to round.
    :param decimals: Number of fractional digits kept.
    :returns: ``value * 10**decimals`` rounded half-up to an integer.

    .. code-block:: python

        >>> round_half_up(Fraction(7, 3), 2)
        233
        >>> round_half_up(Fraction(1, 8), 2)
        13
    """
    return math.floor(value * 10**decimals + Fraction(1, 2))


class PriceAggregator:
    """Accumulates DEX trades into per-asset prices.

    One instance serves one aggregation request and is never shared.

    :ivar base_asset: Asset prices are quoted in.
    :ivar tracked_assets: Assets that receive a fresh price.
    :ivar state: Current lifecycle state.
    """

    def __init__(
        self,
        base_asset: AssetId,
        tracked_assets: Iterable[AssetId],
        window: AggregationWindow | None = None,
    ) -> None:
        """Initialize the aggregator.

        :param base_asset: Resolved base asset.
        :param tracked_assets: Resolved tracked assets. A listed base asset
            gets no fresh price but keeps its entry in the merged table.
        :param window: Optional window applied by :meth:`process_tx_result`.
        """
        tracked_assets = list(tracked_assets)
        self.base_asset = base_asset
        self.extractor = TradeExtractor(base_asset, tracked_assets, window)
        self.tracked_assets = self.extractor.tracked_assets
        # The base never trades against itself but still appears in the output
        self.base_listed = base_asset in tracked_assets
        self.state = AggregatorState.ACCUMULATING
        self._accumulators: dict[AssetId, VolumeAccumulator] = {
            asset: VolumeAccumulator() for asset in self.tracked_assets
        }

    def _ensure_open(self) -> None:
        if self.state is AggregatorState.MERGED:
            raise AggregatorClosed("Aggregator prices were already merged")

    def process_trade(self, event: TradeEvent) -> None:
        """Add one trade to its asset's accumulator.

        :param event: Trade between the base asset and a tracked asset.
        :raises AggregatorClosed: If prices were already merged.
        :raises ValueError: If the trade is for an untracked pair or has a
            non-positive price or amount.
        """
        self._ensure_open()

        accumulator = self._accumulators.get(event.asset)
        if accumulator is None or event.counter_asset != self.base_asset:
            raise ValueError(f"Trade {event.asset}/{event.counter_asset} is not tracked")
        if event.price <= 0 or event.amount <= 0:
            raise ValueError(
                f"Trade for {event.asset} has non-positive price or amount"
            )

        accumulator.add(Fraction(event.price), Fraction(event.amount))

    def process_trades(self, events: Iterable[TradeEvent]) -> None:
        """Add a sequence of trades.

        :param events: Trades to add.
        """
        for event in events:
            self.process_trade(event)

    def process_tx_result(self, record: TxResultRecord) -> int:
        """Extract trades from one transaction result and add them.

        :param record: Raw transaction result.
        :returns: Number of trades added.
        :raises AggregatorClosed: If prices were already merged.
        """
        self._ensure_open()
        trades = self.extractor.extract_record(record)
        self.process_trades(trades)
        return len(trades)

    def absorb(self, other: PriceAggregator) -> None:
        """Fold another aggregator's sums into this one.

        Lets parallel workers each keep an aggregator and reduce them at the
        end. Both must still be accumulating and track the same pairs.

        :param other: Aggregator to fold in.
        :raises AggregatorClosed: If either aggregator was merged.
        :raises ValueError: If the aggregators track different pairs.
        """
        self._ensure_open()
        other._ensure_open()
        if other.base_asset != self.base_asset or other.tracked_assets != self.tracked_assets:
            raise ValueError("Cannot absorb an aggregator tracking different assets")
        for asset, accumulator in other._accumulators.items():
            self._accumulators[asset].combine(accumulator)

    def trade_counts(self) -> dict[AssetId, int]:
        """Get the number of trades seen per tracked asset.

        :returns: Dict mapping asset to trade count.
        """
        return {asset: acc.trades for asset, acc in self._accumulators.items()}

    def aggregate_prices(
        self,
        previous_prices: Mapping[AssetId, int | None],
        decimals: int,
    ) -> dict[AssetId, int | None]:
        """Compute new prices and merge them with the previous price table.

        Closes the aggregator.

        :param previous_prices: Price mantissas from the contract snapshot.
        :param decimals: Fractional digits of the output mantissas.
        :returns: Union of tracked and previously priced assets. Tracked
            assets without trades, and a listed base asset, keep their
            previous price, or None if they never had one.
        :raises AggregatorClosed: If prices were already merged.
        :raises ValueError: If decimals is not a non-negative integer.
        """
        self._ensure_open()
        if isinstance(decimals, bool) or not isinstance(decimals, int) or decimals < 0:
            raise ValueError("decimals must be a non-negative integer")

        self.state = AggregatorState.MERGED

        prices: dict[AssetId, int | None] = dict(previous_prices)
        for asset, accumulator in self._accumulators.items():
            average = accumulator.price
            if average is None:
                prices.setdefault(asset, None)
                logger.debug(f"{asset}: no trades, keeping previous price {prices[asset]}")
                continue
            prices[asset] = round_half_up(average, decimals)
            logger.debug(
                f"{asset}: {accumulator.trades} trades, "
                f"volume={accumulator.volume}, price={prices[asset]}"
            )

        if self.base_listed:
            prices.setdefault(self.base_asset, None)

        return prices
