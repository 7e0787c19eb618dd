"""Unit tests for TradeExtractor."""

from fractions import Fraction

import pytest
from stellar_sdk import xdr as stellar_xdr

from dexoracle.src.AssetResolver import NATIVE
from dexoracle.src.TradeExtractor import (
    AggregationWindow,
    TradeEvent,
    TradeExtractor,
    TxResultRecord,
)
from ledger_fixtures import (
    BTC,
    EURC,
    USDC,
    create_passive_sell_offer,
    failed_tx_result,
    fee_bump_result,
    manage_buy_offer,
    manage_sell_offer,
    offer_atom,
    path_payment_strict_receive,
    path_payment_strict_send,
    pool_atom,
    trade_xdr,
    tx_result,
    v0_atom,
)


def record(result_xdr, timestamp: int = 1000, **kwargs) -> TxResultRecord:
    return TxResultRecord(ledger=1, timestamp=timestamp, result_xdr=result_xdr, **kwargs)


class TestAggregationWindow:
    """Test the half-open window."""

    def test_bounds(self) -> None:
        """Start is inside, end is outside."""
        window = AggregationWindow(1000, 300)
        assert window.end == 1300
        assert 1000 in window
        assert 1299 in window
        assert 1300 not in window
        assert 999 not in window

    @pytest.mark.parametrize("period", [0, -1])
    def test_invalid_period(self, period: int) -> None:
        """Period must be positive."""
        with pytest.raises(ValueError, match="period must be positive"):
            AggregationWindow(1000, period)


class TestTradeDirection:
    """Test that trades are normalized to base units per tracked unit."""

    def test_tracked_sold_for_base(self) -> None:
        """Selling USDC for XLM gives XLM per USDC."""
        extractor = TradeExtractor(NATIVE, [USDC])
        [event] = extractor.extract_record(record(trade_xdr(USDC, price=2, amount=10)))

        assert event == TradeEvent(
            asset=USDC,
            counter_asset=NATIVE,
            price=Fraction(2),
            amount=Fraction(10),
            timestamp=1000,
        )

    def test_base_sold_for_tracked(self) -> None:
        """Selling XLM for USDC gives the same orientation."""
        extractor = TradeExtractor(NATIVE, [USDC])
        xdr = tx_result([manage_sell_offer([pool_atom(NATIVE, 30, USDC, 10)])]).to_xdr()
        [event] = extractor.extract_record(record(xdr))

        assert event.asset == USDC
        assert event.price == Fraction(3)
        assert event.amount == Fraction(10)

    def test_exact_fraction_price(self) -> None:
        """Prices are exact rationals."""
        extractor = TradeExtractor(NATIVE, [USDC])
        xdr = tx_result([manage_sell_offer([pool_atom(USDC, 3, NATIVE, 1)])]).to_xdr()
        [event] = extractor.extract_record(record(xdr))
        assert event.price == Fraction(1, 3)

    def test_non_native_base(self) -> None:
        """Any asset can be the base."""
        extractor = TradeExtractor(USDC, [EURC])
        xdr = tx_result([manage_sell_offer([pool_atom(EURC, 4, USDC, 5)])]).to_xdr()
        [event] = extractor.extract_record(record(xdr))
        assert event.asset == EURC
        assert event.counter_asset == USDC
        assert event.price == Fraction(5, 4)


class TestFiltering:
    """Test which atoms and records produce trades."""

    def test_untracked_pair_ignored(self) -> None:
        """Trades not involving base and a tracked asset are dropped."""
        extractor = TradeExtractor(NATIVE, [USDC])
        xdr = tx_result(
            [manage_sell_offer([pool_atom(EURC, 1, NATIVE, 1), pool_atom(USDC, 1, BTC, 1)])]
        ).to_xdr()
        assert extractor.extract_record(record(xdr)) == []
        assert extractor.skipped == 0

    def test_base_in_tracked_list_not_extracted(self) -> None:
        """The base asset is never extracted as a trade against itself."""
        extractor = TradeExtractor(NATIVE, [NATIVE, USDC])
        assert extractor.tracked_assets == frozenset({USDC})

    def test_zero_amount_dropped(self) -> None:
        """Zero-volume atoms carry no price."""
        extractor = TradeExtractor(NATIVE, [USDC])
        xdr = tx_result([manage_sell_offer([pool_atom(USDC, 0, NATIVE, 5)])]).to_xdr()
        assert extractor.extract_record(record(xdr)) == []

    def test_failed_transaction(self) -> None:
        """Failed transactions contribute nothing."""
        extractor = TradeExtractor(NATIVE, [USDC])
        assert extractor.extract_record(record(failed_tx_result().to_xdr())) == []
        assert extractor.failed == 1

    def test_store_reported_failure(self) -> None:
        """A store-reported failure is trusted without decoding."""
        extractor = TradeExtractor(NATIVE, [USDC])
        events = extractor.extract_record(
            record(trade_xdr(USDC, 2, 10), successful=False)
        )
        assert events == []
        assert extractor.failed == 1

    def test_outside_window(self) -> None:
        """Records outside the window are dropped."""
        extractor = TradeExtractor(NATIVE, [USDC], AggregationWindow(1000, 300))
        assert extractor.extract_record(record(trade_xdr(USDC, 2, 10), timestamp=1300)) == []
        assert extractor.out_of_window == 1
        assert len(extractor.extract_record(record(trade_xdr(USDC, 2, 10), timestamp=1299))) == 1


class TestOperationKinds:
    """Test the operation kinds that carry claim atoms."""

    def test_multiple_atoms_and_operations(self) -> None:
        """Every atom of every operation is inspected."""
        extractor = TradeExtractor(NATIVE, [USDC, EURC])
        xdr = tx_result(
            [
                manage_sell_offer([pool_atom(USDC, 10, NATIVE, 20), offer_atom(EURC, 1, NATIVE, 3)]),
                path_payment_strict_send([offer_atom(NATIVE, 7, USDC, 7)]),
            ]
        ).to_xdr()
        events = extractor.extract_record(record(xdr))

        assert [(e.asset, e.price) for e in events] == [
            (USDC, Fraction(2)),
            (EURC, Fraction(3)),
            (USDC, Fraction(1)),
        ]
        assert extractor.events == 3

    def test_fee_bump(self) -> None:
        """Inner results of fee bump transactions are unwrapped."""
        extractor = TradeExtractor(NATIVE, [USDC])
        xdr = fee_bump_result([manage_sell_offer([pool_atom(USDC, 10, NATIVE, 15)])]).to_xdr()
        [event] = extractor.extract_record(record(xdr))
        assert event.price == Fraction(3, 2)

    def test_fee_bump_inner_failed(self) -> None:
        """A fee bump whose inner transaction failed contributes nothing."""
        extractor = TradeExtractor(NATIVE, [USDC])
        xdr = fee_bump_result(
            [manage_sell_offer([pool_atom(USDC, 10, NATIVE, 15)])], inner_failed=True
        ).to_xdr()
        assert extractor.extract_record(record(xdr)) == []
        assert extractor.failed == 1
        assert extractor.skipped == 0

    def test_manage_buy_offer(self) -> None:
        """Buy offers report their claimed offers."""
        extractor = TradeExtractor(NATIVE, [USDC])
        xdr = tx_result([manage_buy_offer([offer_atom(USDC, 5, NATIVE, 10)])]).to_xdr()
        [event] = extractor.extract_record(record(xdr))
        assert (event.asset, event.price, event.amount) == (USDC, Fraction(2), Fraction(5))

    def test_create_passive_sell_offer(self) -> None:
        """Passive sell offers report their claimed offers."""
        extractor = TradeExtractor(NATIVE, [USDC])
        xdr = tx_result([create_passive_sell_offer([pool_atom(NATIVE, 8, USDC, 4)])]).to_xdr()
        [event] = extractor.extract_record(record(xdr))
        assert (event.asset, event.price, event.amount) == (USDC, Fraction(2), Fraction(4))

    def test_path_payment_strict_receive(self) -> None:
        """Strict receive path payments report the offers they crossed."""
        extractor = TradeExtractor(NATIVE, [USDC])
        xdr = tx_result(
            [path_payment_strict_receive([offer_atom(USDC, 3, NATIVE, 6)], last_asset=USDC)]
        ).to_xdr()
        [event] = extractor.extract_record(record(xdr))
        assert (event.asset, event.price, event.amount) == (USDC, Fraction(2), Fraction(3))

    def test_v0_claim_atom(self) -> None:
        """Legacy claim atoms are read like order book atoms."""
        extractor = TradeExtractor(NATIVE, [USDC])
        xdr = tx_result([manage_sell_offer([v0_atom(NATIVE, 14, USDC, 7)])]).to_xdr()
        [event] = extractor.extract_record(record(xdr))
        assert (event.asset, event.price, event.amount) == (USDC, Fraction(2), Fraction(7))

    def test_non_trade_operation(self) -> None:
        """Operations without claim atoms are ignored."""
        extractor = TradeExtractor(NATIVE, [USDC])
        op = stellar_xdr.OperationResult(
            code=stellar_xdr.OperationResultCode.opINNER,
            tr=stellar_xdr.OperationResultTr(
                type=stellar_xdr.OperationType.BUMP_SEQUENCE,
                bump_seq_result=stellar_xdr.BumpSequenceResult(
                    code=stellar_xdr.BumpSequenceResultCode.BUMP_SEQUENCE_SUCCESS
                ),
            ),
        )
        assert extractor.extract_record(record(tx_result([op]).to_xdr())) == []
        assert extractor.skipped == 0

    def test_bytes_input(self) -> None:
        """Raw XDR bytes are accepted."""
        extractor = TradeExtractor(NATIVE, [USDC])
        xdr = tx_result([manage_sell_offer([pool_atom(USDC, 1, NATIVE, 1)])]).to_xdr_bytes()
        assert len(extractor.extract_record(record(xdr))) == 1


class TestMalformedRecords:
    """Test that malformed records are skipped and counted."""

    def test_garbage_skipped(self) -> None:
        """Undecodable XDR is skipped, not raised."""
        extractor = TradeExtractor(NATIVE, [USDC])
        assert extractor.extract_record(record("bm90IHhkcg==")) == []
        assert extractor.skipped == 1

    def test_negative_amount_skipped(self) -> None:
        """Negative claim amounts make the whole record malformed."""
        extractor = TradeExtractor(NATIVE, [USDC])
        xdr = tx_result(
            [manage_sell_offer([pool_atom(USDC, 10, NATIVE, 20), pool_atom(USDC, -1, NATIVE, 5)])]
        ).to_xdr()
        assert extractor.extract_record(record(xdr)) == []
        assert extractor.skipped == 1
        assert extractor.events == 0

    def test_scan_continues(self) -> None:
        """A bad record does not stop the stream."""
        extractor = TradeExtractor(NATIVE, [USDC])
        records = [
            record(trade_xdr(USDC, 2, 10)),
            record("AAAA"),
            record(trade_xdr(USDC, 4, 5)),
        ]
        events = list(extractor.extract(records))

        assert [e.price for e in events] == [Fraction(2), Fraction(4)]
        assert extractor.stats() == {
            "records": 3,
            "failed": 0,
            "skipped": 1,
            "out_of_window": 0,
            "events": 2,
        }
