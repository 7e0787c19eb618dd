"""SignerDecoder: Weighted signer lists of ledger accounts.

The ledger stores an account's additional signers as an XDR ``Signer<20>``
array. Signer lists feed multisig threshold checks, so a list either decodes
completely or not at all.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

from stellar_sdk import StrKey
from stellar_sdk import xdr as stellar_xdr
from xdrlib3 import Packer, Unpacker

from .errors import MalformedSignerEntry

MAX_SIGNERS = 20
MAX_SIGNER_WEIGHT = 255


@dataclass(frozen=True)
class Signer:
    """A weighted signer of an account.

    :ivar address: Strkey of the signer key (G..., T..., X... or P...).
    :ivar weight: Signing weight, 0 to 255.
    """

    address: str
    weight: int


def _encode_key(key: stellar_xdr.SignerKey) -> str:
    key_type = key.type
    if key_type == stellar_xdr.SignerKeyType.SIGNER_KEY_TYPE_ED25519:
        return StrKey.encode_ed25519_public_key(key.ed25519.uint256)
    if key_type == stellar_xdr.SignerKeyType.SIGNER_KEY_TYPE_PRE_AUTH_TX:
        return StrKey.encode_pre_auth_tx(key.pre_auth_tx.uint256)
    if key_type == stellar_xdr.SignerKeyType.SIGNER_KEY_TYPE_HASH_X:
        return StrKey.encode_sha256_hash(key.hash_x.uint256)
    if key_type == stellar_xdr.SignerKeyType.SIGNER_KEY_TYPE_ED25519_SIGNED_PAYLOAD:
        return StrKey.encode_ed25519_signed_payload(
            key.ed25519_signed_payload.to_xdr_bytes()
        )
    raise MalformedSignerEntry(f"Unsupported signer key type: {key_type}")


def _decode_entry(unpacker: Unpacker, index: int) -> Signer:
    try:
        signer = stellar_xdr.Signer.unpack(unpacker)
        address = _encode_key(signer.key)
    except MalformedSignerEntry:
        raise
    except Exception as e:
        raise MalformedSignerEntry(f"Signer entry {index} is malformed: {e}") from e

    weight = signer.weight.uint32
    if weight > MAX_SIGNER_WEIGHT:
        raise MalformedSignerEntry(f"Signer entry {index} has weight {weight}")
    return Signer(address=address, weight=weight)


def decode_signers(raw: bytes | str) -> list[Signer]:
    """Decode an encoded signer list.

    :param raw: XDR ``Signer<20>`` array as bytes or base64 text.
    :returns: Signers in stored order.
    :raises MalformedSignerEntry: If any entry, the count or the framing is
        invalid.

    .. code-block:: python

        >>> decode_signers("AAAAAA==")
        []
    """
    if isinstance(raw, str):
        try:
            raw = base64.b64decode(raw, validate=True)
        except binascii.Error as e:
            raise MalformedSignerEntry(f"Signer list is not valid base64: {e}") from e

    unpacker = Unpacker(bytes(raw))
    try:
        count = unpacker.unpack_uint()
    except Exception as e:
        raise MalformedSignerEntry(f"Signer list has no length prefix: {e}") from e
    if count > MAX_SIGNERS:
        raise MalformedSignerEntry(f"Signer list has {count} entries (max {MAX_SIGNERS})")

    signers = [_decode_entry(unpacker, i) for i in range(count)]

    try:
        unpacker.done()
    except Exception as e:
        raise MalformedSignerEntry(f"Trailing data after signer list: {e}") from e
    return signers


def encode_signers(signers: list[stellar_xdr.Signer]) -> str:
    """Encode XDR signers into the stored list form.

    :param signers: XDR ``Signer`` objects, e.g. from an ``AccountEntry``.
    :returns: Base64 XDR ``Signer<20>`` array.
    """
    packer = Packer()
    packer.pack_uint(len(signers))
    for signer in signers:
        signer.pack(packer)
    return base64.b64encode(packer.get_buffer()).decode("ascii")
