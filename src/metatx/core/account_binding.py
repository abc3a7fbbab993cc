"""
Account identity binding.

Maps a recovered secp256k1 public key to the local 32-byte account id
(blake2b-256 of the compressed SEC1 point) and checks it against the caller
a request claims to act for.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Union

from ecdsa import SECP256k1, VerifyingKey

from metatx.core.exceptions import AccountMismatchError, UnexpectedError
from metatx.core.ss58 import ACCOUNT_ID_LENGTH, DEFAULT_SS58_PREFIX, ss58_decode, ss58_encode

logger = logging.getLogger(__name__)

PublicKeyLike = Union[VerifyingKey, bytes]


@dataclass(frozen=True)
class AccountId:
    """32-byte local account identifier (AccountId32)."""

    raw: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.raw, (bytes, bytearray)):
            raise TypeError("AccountId must wrap bytes")
        if len(self.raw) != ACCOUNT_ID_LENGTH:
            raise ValueError(f"AccountId must be {ACCOUNT_ID_LENGTH} bytes, got {len(self.raw)}")
        object.__setattr__(self, "raw", bytes(self.raw))

    @classmethod
    def from_hex(cls, value: str) -> "AccountId":
        return cls(bytes.fromhex(value[2:] if value.startswith("0x") else value))

    @classmethod
    def from_ss58(cls, address: str) -> "AccountId":
        account, _prefix = ss58_decode(address)
        return cls(account)

    @classmethod
    def parse(cls, value: str) -> "AccountId":
        """Parse either a 0x-prefixed/plain hex account id or an SS58 address."""
        candidate = value[2:] if value.startswith("0x") else value
        if len(candidate) == ACCOUNT_ID_LENGTH * 2:
            try:
                return cls(bytes.fromhex(candidate))
            except ValueError:
                pass
        return cls.from_ss58(value)

    def to_ss58(self, prefix: int = DEFAULT_SS58_PREFIX) -> str:
        return ss58_encode(self.raw, prefix)

    def hex(self) -> str:
        return "0x" + self.raw.hex()

    def __bytes__(self) -> bytes:
        return self.raw

    def __str__(self) -> str:
        return self.hex()


def compressed_public_key(public_key: PublicKeyLike) -> bytes:
    """Return the 33-byte compressed SEC1 encoding of a public key."""
    if isinstance(public_key, VerifyingKey):
        return public_key.to_string("compressed")
    raw = bytes(public_key)
    if len(raw) == 33 and raw[0] in (2, 3):
        return raw
    # Uncompressed 64-byte x||y or 65-byte 0x04||x||y
    return VerifyingKey.from_string(raw, curve=SECP256k1).to_string("compressed")


def account_from_public_key(public_key: PublicKeyLike) -> AccountId:
    """
    Derive the local account id for a public key.

    Args:
        public_key: Recovered verifying key or its SEC1 encoding

    Returns:
        AccountId (blake2b-256 of the compressed public key)

    Raises:
        UnexpectedError: If the derived digest is not a valid account id
    """
    digest = hashlib.blake2b(compressed_public_key(public_key), digest_size=32).digest()
    try:
        return AccountId(digest)
    except (TypeError, ValueError) as exc:
        raise UnexpectedError(
            "Public key hash does not decode to an account id",
            details={"length": len(digest)},
        ) from exc


def verify_claim(claimed: AccountId, public_key: PublicKeyLike) -> bool:
    """Check that a public key binds to the claimed account id."""
    return account_from_public_key(public_key) == claimed


def bind_claimed_account(claimed: AccountId, public_key: PublicKeyLike) -> AccountId:
    """
    Bind a public key to the claimed account.

    Raises:
        AccountMismatchError: If the key derives to a different account
    """
    derived = account_from_public_key(public_key)
    if derived != claimed:
        logger.warning(
            "Recovered signer %s does not match claimed caller %s",
            derived.hex(),
            claimed.hex(),
            extra={"event": "binding.account_mismatch"},
        )
        raise AccountMismatchError(
            "Recovered identity does not match claimed caller",
            details={"claimed": claimed.hex(), "recovered": derived.hex()},
        )
    return derived
