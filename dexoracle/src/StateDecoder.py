"""StateDecoder: Previous price snapshot from oracle contract storage.

The oracle contract keeps its state in instance storage, a map keyed by
symbols:

    prices          map of canonical asset string -> i128 price mantissa
    admin           address of the contract administrator
    last_timestamp  u64 timestamp of the last committed update

A contract that has never been initialized has no instance entry at all, or
an instance with empty storage. Both decode to an empty snapshot. Anything
else that does not match the layout fails with ``MalformedContractState``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from stellar_sdk import Address, StrKey, scval
from stellar_sdk import xdr as stellar_xdr

from .AssetResolver import AssetId, asset_from_canonical
from .errors import InvalidAssetDescriptor, InvalidContractId, MalformedContractState

logger = logging.getLogger(__name__)

PRICES_KEY = "prices"
ADMIN_KEY = "admin"
LAST_TIMESTAMP_KEY = "last_timestamp"

_CONTRACT_HASH_RE = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class ContractSnapshot:
    """Decoded oracle contract state.

    :ivar prices: Read-only mapping of asset to stored price mantissa.
    :ivar admin: Administrator address, or None if never initialized.
    :ivar last_timestamp: Timestamp of the last committed update (0 if never).
    """

    prices: Mapping[AssetId, int] = field(default_factory=lambda: MappingProxyType({}))
    admin: str | None = None
    last_timestamp: int = 0

    @property
    def initialized(self) -> bool:
        """Whether the contract storage held any oracle state."""
        return self.admin is not None


def encode_contract_id(contract: str) -> str:
    """Normalize a contract identifier to its ``C...`` strkey.

    :param contract: ``C...`` strkey or 64-character hex contract hash.
    :returns: Contract strkey.
    :raises InvalidContractId: If the identifier is neither.
    """
    if isinstance(contract, str):
        if StrKey.is_valid_contract(contract):
            return contract
        if _CONTRACT_HASH_RE.match(contract):
            return StrKey.encode_contract(bytes.fromhex(contract))
    raise InvalidContractId(f"Invalid contract id: {contract!r}")


def contract_instance_key(contract: str) -> stellar_xdr.LedgerKey:
    """Build the ledger key of a contract's persistent instance entry.

    :param contract: Contract identifier accepted by :func:`encode_contract_id`.
    :returns: XDR ``LedgerKey`` for the instance entry.
    """
    return stellar_xdr.LedgerKey(
        type=stellar_xdr.LedgerEntryType.CONTRACT_DATA,
        contract_data=stellar_xdr.LedgerKeyContractData(
            contract=Address(encode_contract_id(contract)).to_xdr_sc_address(),
            key=stellar_xdr.SCVal(
                type=stellar_xdr.SCValType.SCV_LEDGER_KEY_CONTRACT_INSTANCE
            ),
            durability=stellar_xdr.ContractDataDurability.PERSISTENT,
        ),
    )


def _parse_entry(raw: bytes | str) -> stellar_xdr.LedgerEntryData:
    try:
        if isinstance(raw, str):
            return stellar_xdr.LedgerEntryData.from_xdr(raw)
        return stellar_xdr.LedgerEntryData.from_xdr_bytes(bytes(raw))
    except Exception as e:
        raise MalformedContractState(f"Undecodable contract entry: {e}") from e


def _expect(value: stellar_xdr.SCVal, sc_type: stellar_xdr.SCValType, name: str) -> None:
    if value.type != sc_type:
        raise MalformedContractState(
            f"'{name}' has type {value.type.name}, expected {sc_type.name}"
        )


def _decode_prices(value: stellar_xdr.SCVal) -> dict[AssetId, int]:
    _expect(value, stellar_xdr.SCValType.SCV_MAP, PRICES_KEY)

    prices: dict[AssetId, int] = {}
    entries = value.map.sc_map if value.map is not None else []
    for entry in entries:
        _expect(entry.key, stellar_xdr.SCValType.SCV_STRING, f"{PRICES_KEY} key")
        _expect(entry.val, stellar_xdr.SCValType.SCV_I128, f"{PRICES_KEY} value")

        text = scval.from_string(entry.key)
        try:
            if isinstance(text, bytes):
                text = text.decode("utf-8")
            asset = asset_from_canonical(text)
        except (UnicodeDecodeError, InvalidAssetDescriptor) as e:
            raise MalformedContractState(f"Invalid price key '{text}': {e}") from e

        price = scval.from_int128(entry.val)
        if price < 0:
            raise MalformedContractState(f"Negative price {price} for {asset}")
        if asset in prices:
            raise MalformedContractState(f"Duplicate price entry for {asset}")
        prices[asset] = price
    return prices


def decode_contract_state(raw: bytes | str | None) -> ContractSnapshot:
    """Decode an oracle contract's instance entry into a snapshot.

    :param raw: XDR ``LedgerEntryData`` as bytes or base64 text, or None when
        the contract has no instance entry.
    :returns: Decoded snapshot; empty if the contract was never initialized.
    :raises MalformedContractState: If the entry does not match the expected
        layout.
    """
    if raw is None:
        logger.debug("No contract entry, treating contract as uninitialized")
        return ContractSnapshot()

    entry = _parse_entry(raw)
    if entry.type != stellar_xdr.LedgerEntryType.CONTRACT_DATA:
        raise MalformedContractState(
            f"Expected CONTRACT_DATA entry, got {entry.type.name}"
        )

    value = entry.contract_data.val
    _expect(value, stellar_xdr.SCValType.SCV_CONTRACT_INSTANCE, "instance")

    storage = value.instance.storage
    if storage is None or not storage.sc_map:
        logger.debug("Contract instance has empty storage")
        return ContractSnapshot()

    fields: dict[str, stellar_xdr.SCVal] = {}
    for item in storage.sc_map:
        # Non-symbol keys are not part of the oracle layout
        if item.key.type != stellar_xdr.SCValType.SCV_SYMBOL:
            continue
        name = scval.from_symbol(item.key)
        if name in fields:
            raise MalformedContractState(f"Duplicate storage key '{name}'")
        fields[name] = item.val

    missing = [k for k in (PRICES_KEY, ADMIN_KEY, LAST_TIMESTAMP_KEY) if k not in fields]
    if missing:
        raise MalformedContractState(f"Contract storage is missing {missing}")

    prices = _decode_prices(fields[PRICES_KEY])

    _expect(fields[ADMIN_KEY], stellar_xdr.SCValType.SCV_ADDRESS, ADMIN_KEY)
    try:
        admin = scval.from_address(fields[ADMIN_KEY]).address
    except ValueError as e:
        raise MalformedContractState(f"Unsupported admin address: {e}") from e

    _expect(fields[LAST_TIMESTAMP_KEY], stellar_xdr.SCValType.SCV_U64, LAST_TIMESTAMP_KEY)
    last_timestamp = scval.from_uint64(fields[LAST_TIMESTAMP_KEY])

    logger.debug(
        f"Decoded contract state: {len(prices)} prices, admin={admin}, "
        f"last_timestamp={last_timestamp}"
    )
    return ContractSnapshot(
        prices=MappingProxyType(prices),
        admin=admin,
        last_timestamp=last_timestamp,
    )
