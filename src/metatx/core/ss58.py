"""
SS58 address codec.

Renders 32-byte account identifiers as base58 strings carrying a network
prefix and a blake2b checksum, the format Substrate wallets display.

Address Format:
- payload:  prefix (1 or 2 bytes) + account id (32 bytes)
- checksum: blake2b-512(b"SS58PRE" + payload)[:2]
- encoded:  base58(payload + checksum)
"""

from __future__ import annotations

import hashlib

import base58

SS58_CHECKSUM_PREFIX = b"SS58PRE"
CHECKSUM_LENGTH = 2
ACCOUNT_ID_LENGTH = 32
MAX_SS58_PREFIX = 16383
# Generic Substrate address format
DEFAULT_SS58_PREFIX = 42


def _checksum(payload: bytes) -> bytes:
    return hashlib.blake2b(SS58_CHECKSUM_PREFIX + payload, digest_size=64).digest()[:CHECKSUM_LENGTH]


def _encode_prefix(prefix: int) -> bytes:
    if prefix < 0 or prefix > MAX_SS58_PREFIX:
        raise ValueError(f"SS58 prefix out of range: {prefix}")
    if prefix < 64:
        return bytes([prefix])
    first = ((prefix & 0b1111_1100) >> 2) | 0b0100_0000
    second = (prefix >> 8) | ((prefix & 0b0000_0011) << 6)
    return bytes([first, second])


def ss58_encode(account_id: bytes, prefix: int = DEFAULT_SS58_PREFIX) -> str:
    """
    Encode a 32-byte account id as an SS58 address.

    Args:
        account_id: Raw account identifier
        prefix: Network address-format prefix (0-16383)

    Returns:
        SS58 address string

    Raises:
        ValueError: If the account id length or prefix is invalid
    """
    if len(account_id) != ACCOUNT_ID_LENGTH:
        raise ValueError(f"Account id must be {ACCOUNT_ID_LENGTH} bytes, got {len(account_id)}")
    payload = _encode_prefix(prefix) + bytes(account_id)
    return base58.b58encode(payload + _checksum(payload)).decode("ascii")


def ss58_decode(address: str) -> tuple[bytes, int]:
    """
    Decode an SS58 address.

    Args:
        address: SS58 address string

    Returns:
        Tuple of (account id bytes, network prefix)

    Raises:
        ValueError: If the address is not valid base58, has a bad checksum,
            or does not carry a 32-byte account id
    """
    try:
        raw = base58.b58decode(address)
    except ValueError as exc:
        raise ValueError(f"Invalid base58 in SS58 address: {address}") from exc

    if not raw:
        raise ValueError("Empty SS58 address")

    first = raw[0]
    if first < 64:
        prefix_length = 1
        prefix = first
    elif first < 128:
        if len(raw) < 2:
            raise ValueError("Truncated SS58 prefix")
        second = raw[1]
        lower = ((first << 2) | (second >> 6)) & 0xFF
        upper = second & 0b0011_1111
        prefix = lower | (upper << 8)
        prefix_length = 2
    else:
        raise ValueError(f"Reserved SS58 prefix byte: {first}")

    if len(raw) != prefix_length + ACCOUNT_ID_LENGTH + CHECKSUM_LENGTH:
        raise ValueError(f"Unexpected SS58 address length: {len(raw)}")

    payload = raw[:-CHECKSUM_LENGTH]
    if _checksum(payload) != raw[-CHECKSUM_LENGTH:]:
        raise ValueError("SS58 checksum mismatch")

    return payload[prefix_length:], prefix


def is_valid_ss58(address: str) -> bool:
    try:
        ss58_decode(address)
    except ValueError:
        return False
    return True
