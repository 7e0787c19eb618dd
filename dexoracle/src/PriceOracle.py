"""PriceOracle: Orchestrates one DEX price aggregation per request.

Pipeline for ``aggregate_trades``:
    1. Resolve the base and tracked assets and the contract id (no I/O yet)
    2. Fetch and decode the contract's previous price snapshot
    3. Stream the window's transaction results into a fresh PriceAggregator
    4. Merge the new prices with the snapshot at the requested precision
    5. Return the merged prices with the snapshot's admin and timestamp

The ledger store is shared between concurrent requests; everything else is
created per request. ``retrieve_account_props`` is an independent lookup.

.. code-block:: python

    >>> oracle = create_oracle("https://soroban-testnet.stellar.org")
    >>> result = await oracle.aggregate_trades(TradeAggregationParams(
    ...     contract="CC...",
    ...     base_asset={"type": 1, "code": "XLM"},
    ...     assets=[{"type": 1, "code": "USDC:GA5Z..."}],
    ...     decimals=14,
    ...     from_timestamp=1717000000,
    ...     period=300,
    ... ))
    >>> await oracle.close()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Union

from stellar_sdk import StrKey

from .AssetResolver import AssetDescriptor, AssetId, resolve
from .errors import AccountNotFound, InvalidAccountId, TransientFetchError
from .LedgerStore import LedgerStore
from .LedgerStoreRpc import RpcLedgerStore
from .PriceAggregator import PriceAggregator
from .SignerDecoder import Signer, decode_signers
from .StateDecoder import decode_contract_state, encode_contract_id
from .TradeExtractor import AggregationWindow

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://soroban-testnet.stellar.org"

# Seconds a window scan may take before it is abandoned.
DEFAULT_SCAN_TIMEOUT = 120.0

DescriptorLike = Union[AssetDescriptor, Mapping[str, Any]]


@dataclass(frozen=True)
class TradeAggregationParams:
    """Parameters of one aggregation request.

    :ivar contract: Oracle contract id (``C...`` strkey or hex hash).
    :ivar base_asset: Descriptor of the quote asset.
    :ivar assets: Descriptors of the tracked assets.
    :ivar decimals: Fractional digits of the returned price mantissas.
    :ivar from_timestamp: Window start, unix seconds.
    :ivar period: Window length in seconds.
    """

    contract: str
    base_asset: DescriptorLike
    assets: Sequence[DescriptorLike]
    decimals: int
    from_timestamp: int
    period: int


@dataclass
class AggregatedTradeResult:
    """Result of one aggregation request.

    :ivar prices: Merged price mantissas; None where no price is known.
    :ivar admin: Contract admin from the previous snapshot.
    :ivar last_timestamp: Last update timestamp from the previous snapshot.
    :ivar trades: Trades observed per tracked asset.
    :ivar stats: Extraction counters of the window scan.
    """

    prices: dict[AssetId, int | None]
    admin: str | None
    last_timestamp: int
    trades: dict[AssetId, int] = field(default_factory=dict)
    stats: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with canonical asset strings as keys."""
        return {
            "prices": {str(asset): price for asset, price in self.prices.items()},
            "admin": self.admin,
            "lastTimestamp": self.last_timestamp,
            "trades": {str(asset): count for asset, count in self.trades.items()},
            "stats": dict(self.stats),
        }


@dataclass
class AccountProps:
    """Account properties relevant to multisig checks.

    :ivar sequence: Account sequence number.
    :ivar thresholds: Master weight and low/medium/high thresholds.
    :ivar signers: Decoded signers, or None if the store returned none.
    """

    sequence: int
    thresholds: list[int]
    signers: list[Signer] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to plain JSON-compatible types."""
        return {
            "sequence": self.sequence,
            "thresholds": list(self.thresholds),
            "signers": (
                [{"address": s.address, "weight": s.weight} for s in self.signers]
                if self.signers is not None
                else None
            ),
        }


class PriceOracle:
    """Entry point for price aggregation and account lookups.

    :ivar store: Shared ledger store.
    :ivar scan_timeout: Deadline for one window scan in seconds, or None.
    """

    def __init__(
        self,
        store: LedgerStore,
        scan_timeout: float | None = DEFAULT_SCAN_TIMEOUT,
    ) -> None:
        """Initialize the oracle.

        :param store: Ledger store to read from.
        :param scan_timeout: Window scan deadline in seconds (default: 120,
            None to disable).
        """
        self.store = store
        self.scan_timeout = scan_timeout

    async def __aenter__(self) -> PriceOracle:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _consume_window(
        self, aggregator: PriceAggregator, window: AggregationWindow
    ) -> None:
        async with aclosing(self.store.fetch_tx_results(window.start, window.end)) as results:
            async for record in results:
                aggregator.process_tx_result(record)

    async def _scan_window(
        self, aggregator: PriceAggregator, window: AggregationWindow
    ) -> None:
        """Feed the window's transaction results to the aggregator.

        :raises TransientFetchError: If the scan exceeds ``scan_timeout``.
        """
        try:
            await asyncio.wait_for(
                self._consume_window(aggregator, window),
                timeout=self.scan_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientFetchError(
                f"Window scan [{window.start}, {window.end}) exceeded "
                f"{self.scan_timeout}s"
            ) from e

    async def aggregate_trades(self, params: TradeAggregationParams) -> AggregatedTradeResult:
        """Compute fresh prices for the tracked assets over one window.

        :param params: Aggregation request.
        :returns: Merged prices plus the previous snapshot's admin and timestamp.
        :raises InvalidAssetDescriptor: If a descriptor code is malformed.
        :raises UnsupportedAssetType: If a descriptor type is unsupported.
        :raises InvalidContractId: If the contract id is invalid.
        :raises ValueError: If decimals or period are out of range.
        :raises MalformedContractState: If the snapshot cannot be decoded.
        :raises LedgerStoreError: If the store fails (``TransientFetchError``
            when retrying may help).
        """
        # Validate everything before touching the store
        base_asset = resolve(params.base_asset)
        assets = [resolve(a) for a in params.assets]
        contract_id = encode_contract_id(params.contract)
        if (
            isinstance(params.decimals, bool)
            or not isinstance(params.decimals, int)
            or params.decimals < 0
        ):
            raise ValueError("decimals must be a non-negative integer")
        window = AggregationWindow(params.from_timestamp, params.period)

        raw_state = await self.store.fetch_contract_state(contract_id)
        snapshot = decode_contract_state(raw_state)

        aggregator = PriceAggregator(base_asset, assets, window)
        await self._scan_window(aggregator, window)

        prices = aggregator.aggregate_prices(snapshot.prices, params.decimals)
        stats = aggregator.extractor.stats()
        trades = aggregator.trade_counts()

        logger.info(
            f"{contract_id}: window [{window.start}, {window.end}) "
            f"records={stats['records']}, failed={stats['failed']}, "
            f"skipped={stats['skipped']}, trades="
            f"{', '.join(f'{a}={n}' for a, n in trades.items()) or 'none'}"
        )
        if stats["skipped"]:
            logger.warning(
                f"{contract_id}: skipped {stats['skipped']} malformed tx results"
            )

        return AggregatedTradeResult(
            prices=prices,
            admin=snapshot.admin,
            last_timestamp=snapshot.last_timestamp,
            trades=trades,
            stats=stats,
        )

    async def retrieve_account_props(self, account: str) -> AccountProps:
        """Look up an account's sequence, thresholds and signers.

        :param account: Account strkey (``G...``).
        :returns: Account properties with decoded signers.
        :raises InvalidAccountId: If the account id is invalid.
        :raises AccountNotFound: If the account does not exist.
        :raises MalformedSignerEntry: If the signer list cannot be decoded.
        """
        if not isinstance(account, str) or not StrKey.is_valid_ed25519_public_key(account):
            raise InvalidAccountId(f"Invalid account id: {account!r}")

        raw = await self.store.fetch_account_props(account)
        if raw is None:
            raise AccountNotFound(account)

        signers = None
        if raw.get("signers"):
            signers = decode_signers(raw["signers"])

        return AccountProps(
            sequence=int(raw["sequence"]),
            thresholds=list(raw["thresholds"]),
            signers=signers,
        )

    async def close(self) -> None:
        """Close the underlying store. Idempotent."""
        await self.store.close()


def create_oracle(
    rpc_url: str = DEFAULT_RPC_URL,
    *,
    scan_timeout: float | None = DEFAULT_SCAN_TIMEOUT,
    request_timeout: float = 30.0,
) -> PriceOracle:
    """Create an oracle reading from a Stellar RPC node.

    :param rpc_url: JSON-RPC endpoint of the node.
    :param scan_timeout: Window scan deadline in seconds.
    :param request_timeout: Per-request HTTP timeout in seconds.
    :returns: Configured PriceOracle.
    """
    return PriceOracle(
        RpcLedgerStore(rpc_url, timeout=request_timeout),
        scan_timeout=scan_timeout,
    )
