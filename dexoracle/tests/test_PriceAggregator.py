"""Unit tests for PriceAggregator."""

import itertools
from fractions import Fraction

import pytest

from dexoracle.src.AssetResolver import NATIVE
from dexoracle.src.errors import AggregatorClosed
from dexoracle.src.PriceAggregator import (
    AggregatorState,
    PriceAggregator,
    VolumeAccumulator,
    round_half_up,
)
from dexoracle.src.TradeExtractor import AggregationWindow, TradeEvent, TxResultRecord
from ledger_fixtures import BTC, EURC, USDC, trade_xdr


def trade(asset, price, amount, counter=NATIVE, timestamp: int = 1000) -> TradeEvent:
    return TradeEvent(asset, counter, Fraction(price), Fraction(amount), timestamp)


class TestRoundHalfUp:
    """Test fixed-point rounding."""

    def test_rounds_down_below_half(self) -> None:
        """7/3 at 2 decimals is 233."""
        assert round_half_up(Fraction(7, 3), 2) == 233

    def test_rounds_half_up(self) -> None:
        """Exact halves round away from zero."""
        assert round_half_up(Fraction(1, 8), 2) == 13
        assert round_half_up(Fraction(5, 2), 0) == 3

    def test_zero_decimals(self) -> None:
        """Zero decimals gives whole units."""
        assert round_half_up(Fraction(149, 100), 0) == 1

    def test_large_decimals(self) -> None:
        """Mantissas are exact at high precision."""
        assert round_half_up(Fraction(1, 3), 18) == 333_333_333_333_333_333


class TestVolumeAccumulator:
    """Test per-asset running sums."""

    def test_empty_has_no_price(self) -> None:
        """No volume means no price."""
        assert VolumeAccumulator().price is None

    def test_weighted_average(self) -> None:
        """Price is sum(price * amount) / sum(amount)."""
        acc = VolumeAccumulator()
        acc.add(Fraction(2), Fraction(10))
        acc.add(Fraction(3), Fraction(5))
        assert acc.price == Fraction(35, 15)
        assert acc.trades == 2

    def test_combine(self) -> None:
        """Combined sums equal sums over all trades."""
        a, b = VolumeAccumulator(), VolumeAccumulator()
        a.add(Fraction(2), Fraction(10))
        b.add(Fraction(3), Fraction(5))
        a.combine(b)
        assert a.price == Fraction(7, 3)
        assert a.trades == 2


class TestAggregatePrices:
    """Test computing and merging prices."""

    def test_volume_weighted_price(self) -> None:
        """Two trades average by volume."""
        agg = PriceAggregator(NATIVE, [USDC])
        agg.process_trades([trade(USDC, 2, 10), trade(USDC, 3, 5)])

        assert agg.aggregate_prices({}, decimals=2) == {USDC: 233}

    def test_preserves_previous_when_no_trades(self) -> None:
        """Assets without trades keep their previous price."""
        agg = PriceAggregator(NATIVE, [USDC, EURC])
        agg.process_trade(trade(EURC, Fraction(3, 2), 4))

        prices = agg.aggregate_prices({USDC: 150}, decimals=2)
        assert prices == {USDC: 150, EURC: 150}

    def test_untracked_previous_entries_kept(self) -> None:
        """Previous entries for untracked assets pass through."""
        agg = PriceAggregator(NATIVE, [USDC])
        agg.process_trade(trade(USDC, 1, 1))

        prices = agg.aggregate_prices({BTC: 99, USDC: 5}, decimals=0)
        assert prices == {BTC: 99, USDC: 1}

    def test_never_priced_asset_is_none(self) -> None:
        """A tracked asset with no trades and no history has no price."""
        agg = PriceAggregator(NATIVE, [USDC])
        assert agg.aggregate_prices({}, decimals=14) == {USDC: None}

    def test_listed_base_asset_kept(self) -> None:
        """A base asset listed as tracked stays in the table without a fresh price."""
        agg = PriceAggregator(NATIVE, [NATIVE, USDC])
        agg.process_trade(trade(USDC, 2, 1))

        assert agg.aggregate_prices({}, decimals=0) == {NATIVE: None, USDC: 2}
        assert agg.trade_counts() == {USDC: 1}

    def test_listed_base_asset_keeps_previous(self) -> None:
        """A listed base asset carries its previous price forward."""
        agg = PriceAggregator(NATIVE, iter([USDC, NATIVE]))
        assert agg.aggregate_prices({NATIVE: 10**14}, decimals=14) == {
            NATIVE: 10**14,
            USDC: None,
        }

    def test_previous_table_not_mutated(self) -> None:
        """The caller's previous prices are left unchanged."""
        previous = {USDC: 1}
        agg = PriceAggregator(NATIVE, [USDC])
        agg.process_trade(trade(USDC, 5, 1))
        agg.aggregate_prices(previous, decimals=0)
        assert previous == {USDC: 1}

    def test_order_independent(self) -> None:
        """Every arrival order gives the same prices."""
        trades = [
            trade(USDC, Fraction(1, 3), 7),
            trade(USDC, 2, 11),
            trade(EURC, Fraction(9, 7), 2),
            trade(USDC, Fraction(5, 4), 3),
        ]
        results = set()
        for ordering in itertools.permutations(trades):
            agg = PriceAggregator(NATIVE, [USDC, EURC])
            agg.process_trades(ordering)
            results.add(tuple(sorted((str(a), p) for a, p in agg.aggregate_prices({}, 14).items())))
        assert len(results) == 1

    @pytest.mark.parametrize("decimals", [-1, 1.5, "2", True, None])
    def test_invalid_decimals(self, decimals: object) -> None:
        """Decimals must be a non-negative integer."""
        agg = PriceAggregator(NATIVE, [USDC])
        with pytest.raises(ValueError, match="decimals must be a non-negative integer"):
            agg.aggregate_prices({}, decimals)
        # A rejected merge leaves the aggregator open
        assert agg.state is AggregatorState.ACCUMULATING


class TestProcessTrade:
    """Test trade validation."""

    def test_untracked_asset(self) -> None:
        """Trades for untracked assets are rejected."""
        agg = PriceAggregator(NATIVE, [USDC])
        with pytest.raises(ValueError, match="is not tracked"):
            agg.process_trade(trade(EURC, 1, 1))

    def test_wrong_counter_asset(self) -> None:
        """Trades must be quoted in the base asset."""
        agg = PriceAggregator(NATIVE, [USDC])
        with pytest.raises(ValueError, match="is not tracked"):
            agg.process_trade(trade(USDC, 1, 1, counter=EURC))

    @pytest.mark.parametrize("price,amount", [(0, 1), (1, 0), (-1, 1)])
    def test_non_positive(self, price: int, amount: int) -> None:
        """Price and amount must be positive."""
        agg = PriceAggregator(NATIVE, [USDC])
        with pytest.raises(ValueError, match="non-positive"):
            agg.process_trade(trade(USDC, price, amount))

    def test_trade_counts(self) -> None:
        """Trades are counted per asset."""
        agg = PriceAggregator(NATIVE, [USDC, EURC])
        agg.process_trades([trade(USDC, 1, 1), trade(USDC, 2, 1)])
        assert agg.trade_counts() == {USDC: 2, EURC: 0}


class TestLifecycle:
    """Test the accumulate-then-merge lifecycle."""

    def test_closed_after_merge(self) -> None:
        """No trades are accepted after merging."""
        agg = PriceAggregator(NATIVE, [USDC])
        agg.aggregate_prices({}, decimals=2)
        assert agg.state is AggregatorState.MERGED

        with pytest.raises(AggregatorClosed):
            agg.process_trade(trade(USDC, 1, 1))
        with pytest.raises(AggregatorClosed):
            agg.aggregate_prices({}, decimals=2)

    def test_process_tx_result(self) -> None:
        """Raw results are extracted and added."""
        agg = PriceAggregator(NATIVE, [USDC], AggregationWindow(1000, 300))
        added = agg.process_tx_result(
            TxResultRecord(ledger=1, timestamp=1000, result_xdr=trade_xdr(USDC, 4, 2))
        )
        skipped = agg.process_tx_result(
            TxResultRecord(ledger=2, timestamp=2000, result_xdr=trade_xdr(USDC, 9, 2))
        )

        assert (added, skipped) == (1, 0)
        assert agg.aggregate_prices({}, decimals=0) == {USDC: 4}

    def test_process_tx_result_after_merge(self) -> None:
        """Raw results are rejected once merged."""
        agg = PriceAggregator(NATIVE, [USDC])
        agg.aggregate_prices({}, decimals=0)
        with pytest.raises(AggregatorClosed):
            agg.process_tx_result(
                TxResultRecord(ledger=1, timestamp=1000, result_xdr=trade_xdr(USDC, 1, 1))
            )


class TestAbsorb:
    """Test folding partial aggregators together."""

    def test_absorb_equals_single(self) -> None:
        """Split accumulation gives the same result as one aggregator."""
        trades = [trade(USDC, 2, 10), trade(USDC, 3, 5), trade(EURC, 7, 1)]

        single = PriceAggregator(NATIVE, [USDC, EURC])
        single.process_trades(trades)

        left = PriceAggregator(NATIVE, [USDC, EURC])
        right = PriceAggregator(NATIVE, [USDC, EURC])
        left.process_trades(trades[:1])
        right.process_trades(trades[1:])
        left.absorb(right)

        assert left.aggregate_prices({}, 6) == single.aggregate_prices({}, 6)

    def test_absorb_mismatched_assets(self) -> None:
        """Aggregators must track the same pairs."""
        left = PriceAggregator(NATIVE, [USDC])
        right = PriceAggregator(NATIVE, [EURC])
        with pytest.raises(ValueError, match="different assets"):
            left.absorb(right)

    def test_absorb_merged(self) -> None:
        """A merged aggregator cannot be absorbed."""
        left = PriceAggregator(NATIVE, [USDC])
        right = PriceAggregator(NATIVE, [USDC])
        right.aggregate_prices({}, 0)
        with pytest.raises(AggregatorClosed):
            left.absorb(right)
