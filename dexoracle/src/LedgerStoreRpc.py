"""RpcLedgerStore: Ledger store backed by a Stellar RPC node."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from typing import Any

import httpx
from stellar_sdk import Keypair
from stellar_sdk import xdr as stellar_xdr

from .errors import LedgerStoreError, TransientFetchError
from .LedgerStore import LedgerStore, RawAccountProps
from .SignerDecoder import encode_signers
from .StateDecoder import contract_instance_key
from .TradeExtractor import TxResultRecord

logger = logging.getLogger(__name__)

# Retry configuration for RPC requests
MAX_RETRIES = 5
BACKOFF_BASE = 1.0
BACKOFF_MAX = 5.0

# Transactions per getTransactions page
PAGE_LIMIT = 200

# Ledgers stepped back from the interpolated window start; doubles per attempt
LEDGER_LOOKBACK = 20
MAX_LOCATE_ATTEMPTS = 8


def _created_at(tx: dict[str, Any]) -> int:
    try:
        return int(tx["createdAt"])
    except (KeyError, TypeError, ValueError) as e:
        raise LedgerStoreError(f"Malformed transaction in getTransactions response: {e!r}") from e


def _tx_record(tx: dict[str, Any]) -> TxResultRecord:
    """Convert one ``getTransactions`` item to a record.

    :raises LedgerStoreError: If a required field is missing or not a number.
    """
    created_at = _created_at(tx)
    try:
        status = tx.get("status")
        return TxResultRecord(
            ledger=int(tx["ledger"]),
            timestamp=created_at,
            result_xdr=tx["resultXdr"],
            tx_hash=tx.get("txHash"),
            successful=None if status is None else status == "SUCCESS",
        )
    except (KeyError, TypeError, ValueError) as e:
        raise LedgerStoreError(f"Malformed transaction in getTransactions response: {e!r}") from e


class RpcLedgerStore(LedgerStore):
    """Ledger store implementation for the Stellar RPC JSON-RPC API.

    Uses ``getLedgerEntries`` for contract and account state and
    ``getTransactions`` for the window scan. One ``httpx.AsyncClient`` is
    shared by all concurrent requests.

    :ivar rpc_url: JSON-RPC endpoint URL.
    :ivar max_retries: Attempts per request before giving up.
    :ivar backoff_base: Delay before the first retry, in seconds.
    :ivar page_limit: Transactions requested per page.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE,
        page_limit: int = PAGE_LIMIT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the RPC store.

        :param rpc_url: JSON-RPC endpoint (e.g., "https://soroban-testnet.stellar.org").
        :param timeout: Per-request timeout in seconds (default: 30).
        :param max_retries: Attempts per request (default: 5).
        :param backoff_base: Initial retry delay in seconds (default: 1.0).
        :param page_limit: Transactions per page (default: 200).
        :param transport: Optional httpx transport override.
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.rpc_url = rpc_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.page_limit = page_limit
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._closed = False
        self._request_id = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._closed:
            raise LedgerStoreError("Ledger store is closed")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                transport=self._transport,
            )
        return self._client

    async def _rpc(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """Call a JSON-RPC method with retry and backoff.

        :param method: RPC method name.
        :param params: Method parameters.
        :returns: The ``result`` member of the response.
        :raises TransientFetchError: If every attempt failed with a retryable error.
        :raises LedgerStoreError: On RPC errors or non-retryable HTTP statuses.
        """
        client = self._get_client()
        last_error = "no attempts made"

        for attempt in range(self.max_retries):
            self._request_id += 1
            payload = {
                "jsonrpc": "2.0",
                "id": self._request_id,
                "method": method,
                "params": params,
            }
            try:
                logger.debug(
                    "RPC %s params=%s (attempt %d)", method, params, attempt + 1
                )
                response = await client.post(self.rpc_url, json=payload)
            except httpx.RequestError as exc:
                last_error = str(exc) or type(exc).__name__
                logger.warning(
                    "RPC %s error: %s (attempt %d/%d)",
                    method,
                    last_error,
                    attempt + 1,
                    self.max_retries,
                )
            else:
                if response.is_success:
                    try:
                        body = response.json()
                    except ValueError as exc:
                        raise LedgerStoreError(f"RPC {method} returned invalid JSON") from exc
                    if not isinstance(body, dict):
                        raise LedgerStoreError(f"RPC {method} returned a non-object body")
                    if body.get("error"):
                        error = body["error"]
                        if not isinstance(error, dict):
                            raise LedgerStoreError(f"RPC {method} error: {error}")
                        raise LedgerStoreError(
                            f"RPC {method} error {error.get('code')}: {error.get('message')}"
                        )
                    result = body.get("result") or {}
                    if not isinstance(result, dict):
                        raise LedgerStoreError(f"RPC {method} returned a non-object result")
                    return result

                if response.status_code != 429 and response.status_code < 500:
                    raise LedgerStoreError(
                        f"RPC {method} failed: {response.status_code} {response.reason_phrase}"
                    )
                last_error = f"{response.status_code} {response.reason_phrase}"
                logger.warning(
                    "RPC %s failed: %s (attempt %d/%d)",
                    method,
                    last_error,
                    attempt + 1,
                    self.max_retries,
                )

            if attempt + 1 < self.max_retries:
                delay = min(self.backoff_base * (1.5**attempt), BACKOFF_MAX)
                await asyncio.sleep(delay)

        raise TransientFetchError(
            f"RPC {method} failed after {self.max_retries} attempts: {last_error}"
        )

    async def _get_ledger_entry(self, key: stellar_xdr.LedgerKey) -> str | None:
        result = await self._rpc("getLedgerEntries", {"keys": [key.to_xdr()]})
        entries = result.get("entries") or []
        if not entries:
            return None
        try:
            return entries[0]["xdr"]
        except (KeyError, TypeError) as e:
            raise LedgerStoreError(f"Malformed getLedgerEntries response: {e!r}") from e

    async def fetch_contract_state(self, contract_id: str) -> str | None:
        """Fetch a contract's instance entry via ``getLedgerEntries``.

        :param contract_id: Contract strkey.
        :returns: Base64 XDR ``LedgerEntryData``, or None if absent.
        """
        return await self._get_ledger_entry(contract_instance_key(contract_id))

    async def fetch_account_props(self, account: str) -> RawAccountProps | None:
        """Fetch an account entry and split out sequence, thresholds and signers.

        :param account: Account strkey.
        :returns: Raw account properties, or None if the account does not exist.
        :raises LedgerStoreError: If the returned entry is not an account.
        """
        key = stellar_xdr.LedgerKey(
            type=stellar_xdr.LedgerEntryType.ACCOUNT,
            account=stellar_xdr.LedgerKeyAccount(
                account_id=Keypair.from_public_key(account).xdr_account_id()
            ),
        )
        entry_xdr = await self._get_ledger_entry(key)
        if entry_xdr is None:
            return None

        try:
            entry = stellar_xdr.LedgerEntryData.from_xdr(entry_xdr)
            account_entry = entry.account
            props: RawAccountProps = {
                "sequence": account_entry.seq_num.sequence_number.int64,
                "thresholds": list(account_entry.thresholds.thresholds),
            }
        except Exception as e:
            raise LedgerStoreError(f"Unexpected ledger entry for {account}: {e}") from e

        if account_entry.signers:
            props["signers"] = encode_signers(account_entry.signers)
        return props

    async def _locate_start_ledger(self, start: int) -> int:
        """Find a ledger that closed before ``start`` to begin the window scan.

        :param start: Window start, unix seconds.
        :returns: Ledger sequence to pass as ``startLedger``.
        """
        health = await self._rpc("getHealth", {})
        try:
            oldest = int(health["oldestLedger"])
            latest = int(health["latestLedger"])
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerStoreError(f"Malformed getHealth response: {e!r}") from e

        first_page = await self._rpc(
            "getTransactions", {"startLedger": oldest, "pagination": {"limit": 1}}
        )
        try:
            oldest_ts = int(first_page["oldestLedgerCloseTimestamp"])
            latest_ts = int(first_page["latestLedgerCloseTimestamp"])
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerStoreError(f"Malformed getTransactions response: {e!r}") from e

        if start <= oldest_ts:
            if start < oldest_ts:
                logger.warning(
                    f"Window start {start} precedes retained history "
                    f"(oldest ledger {oldest} closed at {oldest_ts})"
                )
            return oldest

        span = max(latest_ts - oldest_ts, 1)
        estimate = oldest + (min(start, latest_ts) - oldest_ts) * (latest - oldest) // span

        lookback = LEDGER_LOOKBACK
        for _ in range(MAX_LOCATE_ATTEMPTS):
            candidate = max(oldest, estimate - lookback)
            if candidate == oldest:
                return oldest
            page = await self._rpc(
                "getTransactions", {"startLedger": candidate, "pagination": {"limit": 1}}
            )
            transactions = page.get("transactions") or []
            if transactions and _created_at(transactions[0]) < start:
                logger.debug(f"Window start {start} located after ledger {candidate}")
                return candidate
            lookback *= 2

        logger.warning(f"Could not locate window start {start}, scanning from ledger {oldest}")
        return oldest

    async def fetch_tx_results(self, start: int, end: int) -> AsyncGenerator[TxResultRecord, None]:
        """Stream transaction results closed in ``[start, end)``.

        Pages are fetched only as the consumer advances.

        :param start: Window start, unix seconds (inclusive).
        :param end: Window end, unix seconds (exclusive).
        :returns: Async generator of raw results in ledger order.
        :raises LedgerStoreError: If the node returns a malformed page.
        """
        if end <= start:
            return

        ledger = await self._locate_start_ledger(start)
        params: dict[str, Any] = {
            "startLedger": ledger,
            "pagination": {"limit": self.page_limit},
        }

        while True:
            result = await self._rpc("getTransactions", params)
            transactions = result.get("transactions") or []

            for tx in transactions:
                record = _tx_record(tx)
                if record.timestamp < start:
                    continue
                if record.timestamp >= end:
                    return
                yield record

            cursor = result.get("cursor")
            # A short page means the node has nothing newer yet
            if len(transactions) < self.page_limit or not cursor:
                return
            params = {"pagination": {"cursor": cursor, "limit": self.page_limit}}

    async def close(self) -> None:
        """Close the HTTP client. Idempotent."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
        self._closed = True
