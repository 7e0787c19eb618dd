"""Unit tests for the command line helpers."""

from dexoracle.main import (
    find_missing_prices,
    last_complete_window,
    normalize_timestamp,
    parse_assets,
)
from dexoracle.src.PriceOracle import AggregatedTradeResult
from ledger_fixtures import EURC, USDC


class TestParseAssets:
    """Test asset list parsing."""

    def test_empty(self) -> None:
        """Missing or empty lists parse to nothing."""
        assert parse_assets(None) == []
        assert parse_assets("") == []
        assert parse_assets(" , ") == []

    def test_descriptors(self) -> None:
        """Each entry becomes a type 1 descriptor."""
        assert parse_assets(f"XLM, {USDC}") == [
            {"type": 1, "code": "XLM"},
            {"type": 1, "code": str(USDC)},
        ]


class TestWindows:
    """Test timeframe arithmetic."""

    def test_normalize(self) -> None:
        """Timestamps round down to their timeframe start."""
        assert normalize_timestamp(1_717_000_123, 300) == 1_716_999_900
        assert normalize_timestamp(1_717_000_200.9, 300) == 1_717_000_200

    def test_last_complete_window(self) -> None:
        """The last complete window ends where the current one starts."""
        assert last_complete_window(1_717_000_123, 300) == 1_716_999_600
        assert last_complete_window(600, 300) == 300


class TestFindMissingPrices:
    """Test the zero price check."""

    def test_none_and_zero_flagged(self) -> None:
        """None and 0 prices are reported, others are not."""
        result = AggregatedTradeResult(
            prices={USDC: None, EURC: 0},
            admin=None,
            last_timestamp=0,
        )
        assert sorted(find_missing_prices(result)) == sorted([str(USDC), str(EURC)])

    def test_all_priced(self) -> None:
        """Nothing is reported when every price is set."""
        result = AggregatedTradeResult(prices={USDC: 1}, admin=None, last_timestamp=0)
        assert find_missing_prices(result) == []
