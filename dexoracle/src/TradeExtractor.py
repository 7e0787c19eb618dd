"""TradeExtractor: DEX trades from raw transaction results.

Trades on the ledger's exchange are recorded as claim atoms inside the results
of offer and path payment operations. Each claim atom says which asset the
maker sold, how much, and what was received in exchange. The extractor keeps
only atoms that swap the base asset against a tracked asset and normalizes
them so that the price is always "base units per tracked unit".

Algorithm per record:
    1. Drop records outside the aggregation window
    2. Decode the XDR ``TransactionResult`` (unwrapping fee bumps)
    3. Drop transactions that failed at ledger level
    4. Collect claim atoms from every successful trade-producing operation
    5. Emit a ``TradeEvent`` for each atom between base and a tracked asset

Malformed records are skipped and counted; a bad record never aborts a scan.

.. code-block:: python

    >>> extractor = TradeExtractor(NATIVE, [usdc])
    >>> for event in extractor.extract(records):
    ...     aggregator.process_trade(event)
    >>> extractor.stats()
    {'records': 3, 'failed': 1, 'skipped': 0, 'out_of_window': 0, 'events': 2}
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from fractions import Fraction

from stellar_sdk import xdr as stellar_xdr

from .AssetResolver import AssetId, asset_from_xdr

logger = logging.getLogger(__name__)

_SUCCESS_CODES = (
    stellar_xdr.TransactionResultCode.txSUCCESS,
    stellar_xdr.TransactionResultCode.txFEE_BUMP_INNER_SUCCESS,
)


class MalformedRecord(Exception):
    """Raised internally when a record cannot be interpreted."""

    pass


@dataclass(frozen=True)
class AggregationWindow:
    """Half-open interval ``[start, start + period)`` of ledger close time.

    :ivar start: Window start, unix seconds.
    :ivar period: Window length in seconds.
    """

    start: int
    period: int

    def __post_init__(self) -> None:
        if self.period <= 0:
            raise ValueError("period must be positive")

    @property
    def end(self) -> int:
        """Exclusive window end."""
        return self.start + self.period

    def __contains__(self, timestamp: int) -> bool:
        return self.start <= timestamp < self.end


@dataclass(frozen=True)
class TxResultRecord:
    """One raw transaction result delivered by the ledger store.

    :ivar ledger: Ledger sequence the transaction was applied in.
    :ivar timestamp: Ledger close time, unix seconds.
    :ivar result_xdr: XDR ``TransactionResult`` as base64 text or bytes.
    :ivar tx_hash: Transaction hash, if the store provides it.
    :ivar successful: Store-reported status, if the store provides it.
    """

    ledger: int
    timestamp: int
    result_xdr: str | bytes
    tx_hash: str | None = None
    successful: bool | None = None


@dataclass(frozen=True)
class TradeEvent:
    """A single trade between the base asset and a tracked asset.

    :ivar asset: Tracked asset.
    :ivar counter_asset: Base asset.
    :ivar price: Base units paid per tracked unit.
    :ivar amount: Tracked asset volume in stroops.
    :ivar timestamp: Ledger close time of the trade.
    """

    asset: AssetId
    counter_asset: AssetId
    price: Fraction
    amount: Fraction
    timestamp: int


def _decode_result(result_xdr: str | bytes) -> stellar_xdr.TransactionResult:
    if isinstance(result_xdr, str):
        return stellar_xdr.TransactionResult.from_xdr(result_xdr)
    return stellar_xdr.TransactionResult.from_xdr_bytes(bytes(result_xdr))


def _operation_results(
    tx_result: stellar_xdr.TransactionResult,
) -> list[stellar_xdr.OperationResult] | None:
    """Return the operation results of an applied transaction, or None if it failed."""
    result = tx_result.result
    if result.code not in _SUCCESS_CODES:
        return None
    if result.code == stellar_xdr.TransactionResultCode.txFEE_BUMP_INNER_SUCCESS:
        inner = result.inner_result_pair.result.result
        if inner.code != stellar_xdr.TransactionResultCode.txSUCCESS:
            return None
        return inner.results or []
    return result.results or []


def _claim_atoms(op_result: stellar_xdr.OperationResult) -> list[stellar_xdr.ClaimAtom]:
    """Claim atoms of a trade-producing operation, empty for anything else."""
    if op_result.code != stellar_xdr.OperationResultCode.opINNER:
        return []

    tr = op_result.tr
    op_type = tr.type
    OperationType = stellar_xdr.OperationType

    if op_type in (OperationType.MANAGE_SELL_OFFER, OperationType.CREATE_PASSIVE_SELL_OFFER):
        res = (
            tr.manage_sell_offer_result
            if op_type == OperationType.MANAGE_SELL_OFFER
            else tr.create_passive_sell_offer_result
        )
        if res.code != stellar_xdr.ManageSellOfferResultCode.MANAGE_SELL_OFFER_SUCCESS:
            return []
        return res.success.offers_claimed

    if op_type == OperationType.MANAGE_BUY_OFFER:
        res = tr.manage_buy_offer_result
        if res.code != stellar_xdr.ManageBuyOfferResultCode.MANAGE_BUY_OFFER_SUCCESS:
            return []
        return res.success.offers_claimed

    if op_type == OperationType.PATH_PAYMENT_STRICT_RECEIVE:
        res = tr.path_payment_strict_receive_result
        if (
            res.code
            != stellar_xdr.PathPaymentStrictReceiveResultCode.PATH_PAYMENT_STRICT_RECEIVE_SUCCESS
        ):
            return []
        return res.success.offers

    if op_type == OperationType.PATH_PAYMENT_STRICT_SEND:
        res = tr.path_payment_strict_send_result
        if (
            res.code
            != stellar_xdr.PathPaymentStrictSendResultCode.PATH_PAYMENT_STRICT_SEND_SUCCESS
        ):
            return []
        return res.success.offers

    return []


def _atom_body(atom: stellar_xdr.ClaimAtom):
    ClaimAtomType = stellar_xdr.ClaimAtomType
    if atom.type == ClaimAtomType.CLAIM_ATOM_TYPE_ORDER_BOOK:
        return atom.order_book
    if atom.type == ClaimAtomType.CLAIM_ATOM_TYPE_LIQUIDITY_POOL:
        return atom.liquidity_pool
    if atom.type == ClaimAtomType.CLAIM_ATOM_TYPE_V0:
        return atom.v0
    raise MalformedRecord(f"Unknown claim atom type {atom.type}")


class TradeExtractor:
    """Extracts base/tracked trades from a stream of transaction results.

    :ivar base_asset: Asset prices are quoted in.
    :ivar tracked_assets: Assets to collect trades for.
    :ivar window: Optional window; records outside it are dropped.
    :ivar records: Records seen.
    :ivar failed: Records of transactions that failed at ledger level.
    :ivar skipped: Malformed records skipped.
    :ivar out_of_window: Records dropped because of their timestamp.
    :ivar events: Trade events emitted.
    """

    def __init__(
        self,
        base_asset: AssetId,
        tracked_assets: Iterable[AssetId],
        window: AggregationWindow | None = None,
    ) -> None:
        """Initialize the extractor.

        :param base_asset: Resolved base asset.
        :param tracked_assets: Resolved tracked assets. The base asset is
            ignored if listed.
        :param window: Optional aggregation window.
        """
        self.base_asset = base_asset
        self.tracked_assets = frozenset(a for a in tracked_assets if a != base_asset)
        self.window = window

        self.records = 0
        self.failed = 0
        self.skipped = 0
        self.out_of_window = 0
        self.events = 0

    def stats(self) -> dict[str, int]:
        """Get the extraction counters.

        :returns: Dict of counter name to value.
        """
        return {
            "records": self.records,
            "failed": self.failed,
            "skipped": self.skipped,
            "out_of_window": self.out_of_window,
            "events": self.events,
        }

    def _trade_from_atom(self, atom: stellar_xdr.ClaimAtom, timestamp: int) -> TradeEvent | None:
        body = _atom_body(atom)
        sold = asset_from_xdr(body.asset_sold)
        bought = asset_from_xdr(body.asset_bought)
        amount_sold = body.amount_sold.int64
        amount_bought = body.amount_bought.int64

        if amount_sold < 0 or amount_bought < 0:
            raise MalformedRecord(f"Negative claim amount ({amount_sold}, {amount_bought})")

        if sold == self.base_asset and bought in self.tracked_assets:
            asset, base_amount, tracked_amount = bought, amount_sold, amount_bought
        elif bought == self.base_asset and sold in self.tracked_assets:
            asset, base_amount, tracked_amount = sold, amount_bought, amount_sold
        else:
            return None

        # A zero on either side carries no price information
        if base_amount == 0 or tracked_amount == 0:
            return None

        return TradeEvent(
            asset=asset,
            counter_asset=self.base_asset,
            price=Fraction(base_amount, tracked_amount),
            amount=Fraction(tracked_amount),
            timestamp=timestamp,
        )

    def extract_record(self, record: TxResultRecord) -> list[TradeEvent]:
        """Extract all relevant trades from one record.

        Never raises for bad record content; malformed records are counted in
        ``skipped`` and yield nothing.

        :param record: Raw transaction result.
        :returns: Trade events of the record, possibly empty.
        """
        self.records += 1

        if self.window is not None and record.timestamp not in self.window:
            self.out_of_window += 1
            return []

        if record.successful is False:
            self.failed += 1
            return []

        try:
            tx_result = _decode_result(record.result_xdr)
            op_results = _operation_results(tx_result)
            if op_results is None:
                self.failed += 1
                return []

            trades: list[TradeEvent] = []
            for op_result in op_results:
                for atom in _claim_atoms(op_result):
                    trade = self._trade_from_atom(atom, record.timestamp)
                    if trade is not None:
                        trades.append(trade)
        except Exception as e:
            self.skipped += 1
            logger.debug(
                f"Skipping malformed tx result (ledger={record.ledger}, "
                f"hash={record.tx_hash}): {e}"
            )
            return []

        self.events += len(trades)
        return trades

    def extract(self, records: Iterable[TxResultRecord]) -> Iterator[TradeEvent]:
        """Lazily extract trades from a stream of records.

        The source is consumed once; the extractor does not restart it.

        :param records: Iterable of raw transaction results.
        :returns: Iterator of trade events.
        """
        for record in records:
            yield from self.extract_record(record)
