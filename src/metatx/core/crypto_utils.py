"""Utility helpers for secp256k1 keys and recoverable signatures."""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature
from ecdsa import SECP256k1, VerifyingKey
from ecdsa.errors import MalformedPointError
from ecdsa.ecdsa import InvalidPointError
from ecdsa.numbertheory import Error as NumberTheoryError
from ecdsa.util import MalformedSignature, sigdecode_string

logger = logging.getLogger(__name__)

_CURVE = ec.SECP256K1()
_CURVE_ORDER = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

SIGNATURE_LENGTH = 65
DIGEST_LENGTH = 32
# EVM wallets offset the recovery id by 27
RECOVERY_ID_OFFSET = 27


def _normalize_private_value(value: int) -> int:
    normalized = value % _CURVE_ORDER
    if normalized == 0:
        normalized = 1
    return normalized


def _private_key_to_hex(private_key: ec.EllipticCurvePrivateKey) -> str:
    return private_key.private_numbers().private_value.to_bytes(32, "big").hex()


def load_private_key_from_hex(private_hex: str) -> ec.EllipticCurvePrivateKey:
    private_hex = private_hex[2:] if private_hex.startswith("0x") else private_hex
    return ec.derive_private_key(_normalize_private_value(int(private_hex, 16)), _CURVE)


def generate_secp256k1_keypair_hex() -> tuple[str, str]:
    """Generate a private key and its compressed public key, both hex encoded."""
    private_key = ec.generate_private_key(_CURVE)
    private_hex = _private_key_to_hex(private_key)
    return private_hex, compressed_public_key_from_private(private_hex)


def compressed_public_key_from_private(private_hex: str) -> str:
    private_key = load_private_key_from_hex(private_hex)
    compressed = private_key.public_key().public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.CompressedPoint,
    )
    return compressed.hex()


def _validate_signature_range(r: int, s: int) -> None:
    """
    Ensure signature components fall within the curve order.

    Raises:
        ValueError: If either component is out of range.
    """
    if not (1 <= r < _CURVE_ORDER):
        raise ValueError("Signature r component out of range.")
    if not (1 <= s < _CURVE_ORDER):
        raise ValueError("Signature s component out of range.")


def canonicalize_signature_components(r: int, s: int) -> tuple[int, int]:
    """
    Normalize signature components to canonical low-S form.

    Args:
        r: Signature r component
        s: Signature s component

    Returns:
        Tuple of canonical (r, s)
    """
    _validate_signature_range(r, s)
    if s > _CURVE_ORDER // 2:
        s = _CURVE_ORDER - s
    return r, s


def is_canonical_signature(r: int, s: int) -> bool:
    """
    Check whether signature components are already canonical.

    Args:
        r: Signature r component
        s: Signature s component

    Returns:
        True if components fall within range and have low-S form.
    """
    try:
        _validate_signature_range(r, s)
    except ValueError:
        return False
    return s <= _CURVE_ORDER // 2


def normalize_recovery_id(v: int) -> Optional[int]:
    """Map a recovery byte in either the raw {0,1} or EVM {27,28} convention to 0/1."""
    recovery_id = v - RECOVERY_ID_OFFSET if v > 26 else v
    if recovery_id not in (0, 1):
        return None
    return recovery_id


def recover_public_key(signature: bytes, digest: bytes) -> Optional[VerifyingKey]:
    """
    Recover the signer's public key from a 65-byte r||s||v signature.

    Never raises: malformed signatures, out-of-range or high-S components,
    bad recovery ids and non-recoverable points all yield None.

    Args:
        signature: 65-byte recoverable signature
        digest: 32-byte prehashed message

    Returns:
        The recovered verifying key, or None
    """
    if len(signature) != SIGNATURE_LENGTH or len(digest) != DIGEST_LENGTH:
        return None

    recovery_id = normalize_recovery_id(signature[64])
    if recovery_id is None:
        logger.debug(
            "Rejecting signature with recovery byte %d",
            signature[64],
            extra={"event": "signature.bad_recovery_id"},
        )
        return None

    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    if not is_canonical_signature(r, s):
        return None

    try:
        # Candidates are ordered even-y R first, matching recovery ids 0 and 1
        candidates = VerifyingKey.from_public_key_recovery_with_digest(
            bytes(signature[:64]),
            bytes(digest),
            curve=SECP256k1,
            sigdecode=sigdecode_string,
            allow_truncate=False,
        )
    except (
        NumberTheoryError,
        InvalidPointError,
        MalformedPointError,
        MalformedSignature,
        ValueError,
        ZeroDivisionError,
    ) as exc:
        logger.debug(
            "Public key recovery failed: %s",
            type(exc).__name__,
            extra={"event": "signature.recovery_failed"},
        )
        return None

    if len(candidates) <= recovery_id:
        return None
    return candidates[recovery_id]


def sign_digest(private_hex: str, digest: bytes) -> bytes:
    """
    Sign a 32-byte digest and return a 65-byte r||s||v signature.

    The signature is low-S and ``v`` uses the EVM {27, 28} convention.
    """
    if len(digest) != DIGEST_LENGTH:
        raise ValueError(f"Digest must be {DIGEST_LENGTH} bytes, got {len(digest)}")
    private_key = load_private_key_from_hex(private_hex)
    der_signature = private_key.sign(bytes(digest), ec.ECDSA(Prehashed(hashes.SHA256())))
    r, s = decode_dss_signature(der_signature)
    r, s = canonicalize_signature_components(r, s)
    compact = r.to_bytes(32, "big") + s.to_bytes(32, "big")

    expected = bytes.fromhex(compressed_public_key_from_private(private_hex))
    for recovery_id in (0, 1):
        signature = compact + bytes([recovery_id + RECOVERY_ID_OFFSET])
        recovered = recover_public_key(signature, digest)
        if recovered is not None and recovered.to_string("compressed") == expected:
            return signature
    raise ValueError("Unable to determine recovery id for signature")
