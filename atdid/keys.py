"""
secp256k1 key codec.

atproto rotation keys are "k256" keys written as did:key strings:

    did:key:z<base58btc(0xe7 0x01 || compressed point)>

This module generates and imports keypairs and re-encodes them as hex,
multibase, did:key and JWK. Nothing is ever written to disk.
"""

import base64
import json
import re
from dataclasses import dataclass
from enum import Enum

import base58
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import InvalidKeyFormat, InvalidPublicKey

# Group order of secp256k1; valid private scalars are 1 .. N-1
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

SECP256K1_MULTICODEC = b"\xe7\x01"  # varint of 0xe7, secp256k1-pub
MULTIBASE_BASE58BTC = "z"
DID_KEY_PREFIX = "did:key:"

_HEX_KEY = re.compile(r"[0-9a-fA-F]{64}")


class KeyFormat(str, Enum):
    HEX = "hex"
    JSON = "json"
    JWK = "jwk"


def to_hex(data: bytes) -> str:
    return data.hex()


def from_hex(value: str) -> bytes:
    """Decode hex to bytes, raising InvalidKeyFormat instead of ValueError."""
    try:
        return bytes.fromhex(value)
    except (TypeError, ValueError) as e:
        raise InvalidKeyFormat(f"Not valid hex: {e}") from e


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class Keypair:
    """A secp256k1 private scalar. The public point is always derived from it."""

    private_key: bytes

    def __post_init__(self):
        if len(self.private_key) != 32:
            raise InvalidKeyFormat(
                f"Private key must be 32 bytes, got {len(self.private_key)}"
            )
        scalar = int.from_bytes(self.private_key, "big")
        if not 0 < scalar < SECP256K1_ORDER:
            raise InvalidKeyFormat("Private key is not a valid secp256k1 scalar")

    @property
    def private_hex(self) -> str:
        return to_hex(self.private_key)

    @property
    def public_key(self) -> bytes:
        """33-byte compressed public point."""
        scalar = int.from_bytes(self.private_key, "big")
        private = ec.derive_private_key(scalar, ec.SECP256K1())
        return private.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.CompressedPoint,
        )

    @property
    def multibase(self) -> str:
        return multibase_public_key(self.public_key)

    @property
    def did(self) -> str:
        return did_key(self.public_key)


def generate() -> Keypair:
    """Create a keypair from a fresh random scalar."""
    private = ec.generate_private_key(ec.SECP256K1())
    scalar = private.private_numbers().private_value
    return Keypair(scalar.to_bytes(32, "big"))


def import_key(private_hex: str) -> Keypair:
    """Import a 64 character hex private key (either case)."""
    value = private_hex.strip()
    if not _HEX_KEY.fullmatch(value):
        raise InvalidKeyFormat(
            "Private key must be exactly 64 hex characters (32 bytes)"
        )
    return Keypair(from_hex(value))


def multibase_public_key(public_key: bytes) -> str:
    encoded = base58.b58encode(SECP256K1_MULTICODEC + public_key).decode("ascii")
    return MULTIBASE_BASE58BTC + encoded


def did_key(public_key: bytes) -> str:
    return DID_KEY_PREFIX + multibase_public_key(public_key)


def bare_key(key: str) -> str:
    """Strip the did:key: scheme so keys compare equal in either spelling."""
    key = key.strip()
    if key.startswith(DID_KEY_PREFIX):
        return key[len(DID_KEY_PREFIX):]
    return key


def normalize_did_key(key: str) -> str:
    return DID_KEY_PREFIX + bare_key(key)


def parse_did_key(key: str) -> bytes:
    """
    Decode a secp256k1 did:key (or its bare z... form) to the compressed point.

    Raises InvalidKeyFormat for anything that is not base58btc multibase with
    the secp256k1-pub multicodec, and InvalidPublicKey if the point is not on
    the curve.
    """
    bare = bare_key(key)
    if not bare.startswith(MULTIBASE_BASE58BTC):
        raise InvalidKeyFormat(f"Not a base58btc multibase key: {key}")
    try:
        decoded = base58.b58decode(bare[len(MULTIBASE_BASE58BTC):])
    except ValueError as e:
        raise InvalidKeyFormat(f"Invalid base58btc encoding: {key}") from e

    if not decoded.startswith(SECP256K1_MULTICODEC):
        raise InvalidKeyFormat(f"Not a secp256k1 key: {key}")
    public_key = decoded[len(SECP256K1_MULTICODEC):]
    if len(public_key) != 33:
        raise InvalidKeyFormat(
            f"Compressed public key must be 33 bytes, got {len(public_key)}"
        )

    try:
        ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
    except ValueError as e:
        raise InvalidPublicKey(f"Not a valid secp256k1 point: {key}") from e
    return public_key


def to_jwk(private_key: bytes, public_key: bytes) -> dict:
    """Build an EC JWK for the pair.

    The compressed point is decompressed to recover y. secp256k1 is not an
    IANA registered JWK curve, but the structure follows RFC 7517.
    """
    try:
        point = ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256K1(), bytes(public_key)
        )
    except ValueError as e:
        raise InvalidPublicKey(f"Not a valid secp256k1 point: {e}") from e

    numbers = point.public_numbers()
    return {
        "kty": "EC",
        "crv": "secp256k1",
        "x": _b64url(numbers.x.to_bytes(32, "big")),
        "y": _b64url(numbers.y.to_bytes(32, "big")),
        "d": _b64url(private_key),
        "key_ops": ["sign"],
    }


def _export_hex(keypair: Keypair) -> str:
    return keypair.private_hex


def _export_json(keypair: Keypair) -> str:
    return json.dumps(
        {
            "publicKey": keypair.multibase,
            "did": keypair.did,
            "privateKey": keypair.private_hex,
        },
        indent=2,
    )


def _export_jwk(keypair: Keypair) -> str:
    return json.dumps(to_jwk(keypair.private_key, keypair.public_key), indent=2)


_EXPORTERS = {
    KeyFormat.HEX: _export_hex,
    KeyFormat.JSON: _export_json,
    KeyFormat.JWK: _export_jwk,
}


def export_keypair(keypair: Keypair, fmt: KeyFormat = KeyFormat.HEX) -> str:
    """Render a keypair for the terminal in the requested format."""
    return _EXPORTERS[KeyFormat(fmt)](keypair)
