"""
Stellar DEX Price Oracle - Trade Aggregation Module

This module computes fresh asset prices from on-ledger DEX trades:
- AssetResolver: Canonical asset identifiers from caller descriptors
- StateDecoder: Previous price snapshot from oracle contract storage
- SignerDecoder: Weighted signer lists of ledger accounts
- TradeExtractor: Base/tracked trades from raw transaction results
- PriceAggregator: Volume-weighted averaging and merge with previous prices
- PriceOracle: Facade for aggregation requests and account lookups
- LedgerStore: Ledger store interface (RPC and replay implementations)
"""

from .AssetResolver import (
    NATIVE,
    AssetDescriptor,
    AssetId,
    AssetType,
    IssuedAsset,
    NativeAsset,
    resolve,
)
from .errors import (
    AccountNotFound,
    AggregatorClosed,
    InvalidAccountId,
    InvalidAssetDescriptor,
    InvalidContractId,
    LedgerStoreError,
    MalformedContractState,
    MalformedSignerEntry,
    OracleError,
    TransientFetchError,
    UnsupportedAssetType,
)
from .LedgerStore import LedgerStore
from .LedgerStoreReplay import ReplayLedgerStore
from .LedgerStoreRpc import RpcLedgerStore
from .PriceAggregator import PriceAggregator
from .PriceOracle import (
    AccountProps,
    AggregatedTradeResult,
    PriceOracle,
    TradeAggregationParams,
    create_oracle,
)
from .SignerDecoder import Signer, decode_signers
from .StateDecoder import ContractSnapshot, decode_contract_state
from .TradeExtractor import AggregationWindow, TradeEvent, TradeExtractor, TxResultRecord

__all__ = [
    "AccountNotFound",
    "AccountProps",
    "AggregatedTradeResult",
    "AggregationWindow",
    "AggregatorClosed",
    "AssetDescriptor",
    "AssetId",
    "AssetType",
    "ContractSnapshot",
    "InvalidAccountId",
    "InvalidAssetDescriptor",
    "InvalidContractId",
    "IssuedAsset",
    "LedgerStore",
    "LedgerStoreError",
    "MalformedContractState",
    "MalformedSignerEntry",
    "NATIVE",
    "NativeAsset",
    "OracleError",
    "PriceAggregator",
    "PriceOracle",
    "ReplayLedgerStore",
    "RpcLedgerStore",
    "Signer",
    "TradeAggregationParams",
    "TradeEvent",
    "TradeExtractor",
    "TransientFetchError",
    "TxResultRecord",
    "UnsupportedAssetType",
    "create_oracle",
    "decode_contract_state",
    "decode_signers",
    "resolve",
]
