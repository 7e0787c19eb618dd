"""ReplayLedgerStore: In-memory ledger store for offline investigation.

A capture file mirrors what the RPC node returns, so pages copied from
``getTransactions`` and entries from ``getLedgerEntries`` can be replayed
as-is:

.. code-block:: json

    {
        "contracts": {"C...": "<base64 LedgerEntryData>"},
        "transactions": [
            {"ledger": 51000, "createdAt": 1717000000, "status": "SUCCESS",
             "txHash": "ab12...", "resultXdr": "<base64 TransactionResult>"}
        ],
        "accounts": {
            "G...": {"sequence": 123, "thresholds": [1, 0, 0, 0], "signers": "<base64>"}
        }
    }
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Iterable, Mapping
from pathlib import Path
from typing import Any

from .errors import LedgerStoreError
from .LedgerStore import LedgerStore, RawAccountProps
from .TradeExtractor import TxResultRecord


class ReplayLedgerStore(LedgerStore):
    """Ledger store implementation serving recorded data from memory.

    :ivar contracts: Contract strkey to instance entry XDR.
    :ivar transactions: Recorded transaction results.
    :ivar accounts: Account strkey to raw account properties.
    """

    def __init__(
        self,
        contracts: Mapping[str, bytes | str | None] | None = None,
        transactions: Iterable[TxResultRecord] | None = None,
        accounts: Mapping[str, RawAccountProps] | None = None,
    ) -> None:
        """Initialize the replay store.

        :param contracts: Contract strkey to instance entry XDR.
        :param transactions: Recorded transaction results, in any order.
        :param accounts: Account strkey to raw account properties.
        """
        self.contracts = dict(contracts or {})
        self.transactions = list(transactions or [])
        self.accounts = dict(accounts or {})
        self._closed = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ReplayLedgerStore:
        """Build a store from a decoded capture.

        :param data: Capture with ``contracts``, ``transactions`` and ``accounts``.
        :returns: New ReplayLedgerStore instance.
        :raises LedgerStoreError: If a transaction entry lacks required fields.
        """
        transactions = []
        for i, tx in enumerate(data.get("transactions", [])):
            try:
                status = tx.get("status")
                transactions.append(
                    TxResultRecord(
                        ledger=int(tx["ledger"]),
                        timestamp=int(tx["createdAt"]),
                        result_xdr=tx["resultXdr"],
                        tx_hash=tx.get("txHash"),
                        successful=None if status is None else status == "SUCCESS",
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                raise LedgerStoreError(f"Invalid transaction #{i} in capture: {e}") from e

        return cls(
            contracts=data.get("contracts", {}),
            transactions=transactions,
            accounts=data.get("accounts", {}),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> ReplayLedgerStore:
        """Load a capture file.

        :param path: Path to a JSON capture.
        :returns: New ReplayLedgerStore instance.
        """
        with open(path, "r") as file:
            return cls.from_dict(json.load(file))

    def _check_open(self) -> None:
        if self._closed:
            raise LedgerStoreError("Ledger store is closed")

    async def fetch_contract_state(self, contract_id: str) -> bytes | str | None:
        self._check_open()
        return self.contracts.get(contract_id)

    async def fetch_tx_results(self, start: int, end: int) -> AsyncGenerator[TxResultRecord, None]:
        self._check_open()
        for record in self.transactions:
            if start <= record.timestamp < end:
                yield record
            # Let other requests run between records
            await asyncio.sleep(0)

    async def fetch_account_props(self, account: str) -> RawAccountProps | None:
        self._check_open()
        props = self.accounts.get(account)
        return dict(props) if props is not None else None

    async def close(self) -> None:
        self._closed = True
