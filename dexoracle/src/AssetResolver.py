"""AssetResolver: Canonical asset identifiers for tracked and base assets.

Caller-supplied descriptors have the shape ``{type, code}`` where ``code`` is
either ``"XLM"`` for the ledger's native asset or ``"CODE:ISSUER"`` for an
issued asset. Resolution turns them into an ``AssetId``, a closed union of
``NativeAsset`` and ``IssuedAsset``. Only resolved identifiers flow into the
trade extractor and the price aggregator.

.. code-block:: python

    >>> resolve({"type": 1, "code": "XLM"})
    NativeAsset()
    >>> asset = resolve({"type": 1, "code": "USDC:GA5ZSEJYB37JRC5AVCIA5MOP4RHTM335X2KGX3IHOJAPP5RE34K4KZVN"})
    >>> str(asset)
    'USDC:GA5ZSEJYB37JRC5AVCIA5MOP4RHTM335X2KGX3IHOJAPP5RE34K4KZVN'
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Union

from stellar_sdk import Asset, StrKey
from stellar_sdk import xdr as stellar_xdr

from .errors import InvalidAssetDescriptor, UnsupportedAssetType

NATIVE_CODE = "XLM"

_ASSET_CODE_RE = re.compile(r"^[A-Za-z0-9]{1,12}$")


class AssetType(IntEnum):
    """Asset classifications accepted in descriptors."""

    STELLAR = 1


@dataclass(frozen=True)
class AssetDescriptor:
    """Caller-facing asset description.

    :ivar type: Asset classification (see :class:`AssetType`).
    :ivar code: ``"XLM"`` or ``"CODE:ISSUER"``.
    """

    type: int
    code: str | None


@dataclass(frozen=True)
class NativeAsset:
    """The ledger's native asset (lumens). Carries no issuer."""

    def __str__(self) -> str:
        return NATIVE_CODE

    def to_sdk_asset(self) -> Asset:
        """Return the ``stellar_sdk`` representation."""
        return Asset.native()


@dataclass(frozen=True)
class IssuedAsset:
    """A credit asset identified by its code and issuing account.

    :ivar code: Asset code, 1 to 12 alphanumeric characters.
    :ivar issuer: Issuer account strkey (``G...``).
    """

    code: str
    issuer: str

    def __str__(self) -> str:
        return f"{self.code}:{self.issuer}"

    def to_sdk_asset(self) -> Asset:
        """Return the ``stellar_sdk`` representation."""
        return Asset(self.code, self.issuer)


AssetId = Union[NativeAsset, IssuedAsset]

NATIVE = NativeAsset()


def _issued(code: str, issuer: str, source: str) -> IssuedAsset:
    if not _ASSET_CODE_RE.match(code):
        raise InvalidAssetDescriptor(f"Invalid asset code in '{source}'")
    if not StrKey.is_valid_ed25519_public_key(issuer):
        raise InvalidAssetDescriptor(f"Invalid asset issuer in '{source}'")
    return IssuedAsset(code, issuer)


def asset_from_canonical(text: str) -> AssetId:
    """Parse the canonical text form of an asset.

    :param text: ``"XLM"`` or ``"CODE:ISSUER"``.
    :returns: The resolved asset identifier.
    :raises InvalidAssetDescriptor: If the text is empty or malformed, if the
        native code carries an issuer, or if a credit code lacks one.
    """
    if not text:
        raise InvalidAssetDescriptor("Asset code is required")

    parts = text.split(":")
    if len(parts) > 2:
        raise InvalidAssetDescriptor(
            f"Invalid asset '{text}'. Expected 'XLM' or 'CODE:ISSUER'"
        )

    code = parts[0]
    issuer = parts[1] if len(parts) == 2 else None

    if code == NATIVE_CODE:
        if issuer is not None:
            raise InvalidAssetDescriptor(
                f"Native asset must not carry an issuer: '{text}'"
            )
        return NATIVE

    if not issuer:
        raise InvalidAssetDescriptor(f"Unsupported asset: '{text}' has no issuer")

    return _issued(code, issuer, text)


def resolve(descriptor: AssetDescriptor | Mapping[str, Any]) -> AssetId:
    """Resolve a caller-supplied descriptor into an asset identifier.

    :param descriptor: ``AssetDescriptor`` or a mapping with ``type`` and
        ``code`` keys.
    :returns: ``NativeAsset`` or ``IssuedAsset``.
    :raises UnsupportedAssetType: If ``type`` is not ``AssetType.STELLAR``.
    :raises InvalidAssetDescriptor: If ``code`` is missing or malformed.

    .. code-block:: python

        >>> resolve(AssetDescriptor(type=1, code="USD"))
        Traceback (most recent call last):
        ...
        InvalidAssetDescriptor: Unsupported asset: 'USD' has no issuer
    """
    if isinstance(descriptor, Mapping):
        asset_type = descriptor.get("type")
        code = descriptor.get("code")
    else:
        asset_type = descriptor.type
        code = descriptor.code

    # Only a true int matches; True and 1.0 compare equal to 1 but are rejected
    if (
        isinstance(asset_type, bool)
        or not isinstance(asset_type, int)
        or asset_type != AssetType.STELLAR
    ):
        raise UnsupportedAssetType(asset_type)

    if not isinstance(code, str):
        raise InvalidAssetDescriptor("Asset code is required")

    return asset_from_canonical(code)


def asset_from_xdr(xdr_asset: stellar_xdr.Asset) -> AssetId:
    """Convert a ledger XDR asset into an asset identifier.

    :param xdr_asset: XDR ``Asset`` taken from a transaction result.
    :returns: The resolved asset identifier.
    :raises ValueError: If the XDR asset type is not a classic asset.
    """
    asset = Asset.from_xdr_object(xdr_asset)
    if asset.is_native():
        return NATIVE
    return IssuedAsset(asset.code, asset.issuer)
