"""LedgerStore: Abstract interface to the ledger's backing store."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from typing import TypedDict

from .TradeExtractor import TxResultRecord


class RawAccountProps(TypedDict, total=False):
    """Account row as returned by a store.

    :ivar sequence: Account sequence number.
    :ivar thresholds: Master weight and low/medium/high thresholds.
    :ivar signers: Encoded signer list, absent if the account has none.
    """

    sequence: int
    thresholds: list[int]
    signers: str | bytes | None


class LedgerStore(ABC):
    """Abstract base class for ledger store implementations.

    Implementations are shared by concurrent requests and must allow several
    outstanding calls at once.
    """

    @abstractmethod
    async def fetch_contract_state(self, contract_id: str) -> bytes | str | None:
        """Fetch a contract's persistent instance entry.

        :param contract_id: Contract strkey (``C...``).
        :returns: XDR ``LedgerEntryData`` (bytes or base64), or None if the
            contract has no instance entry.
        :raises TransientFetchError: On retryable failures.
        :raises LedgerStoreError: On fatal failures.
        """
        pass

    @abstractmethod
    def fetch_tx_results(self, start: int, end: int) -> AsyncGenerator[TxResultRecord, None]:
        """Stream transaction results closed in ``[start, end)``.

        Each result is delivered exactly once. The stream is pulled by the
        consumer, so nothing is fetched ahead of demand beyond one page.

        :param start: Window start, unix seconds (inclusive).
        :param end: Window end, unix seconds (exclusive).
        :returns: Async generator of raw results. The consumer closes it
            with ``aclose`` when it stops early.
        """
        pass

    @abstractmethod
    async def fetch_account_props(self, account: str) -> RawAccountProps | None:
        """Fetch an account's sequence, thresholds and raw signers.

        :param account: Account strkey (``G...``).
        :returns: Raw account properties, or None if the account does not exist.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections. Safe to call more than once."""
        pass
