"""
MetaTx Typed Data Signing - EIP-712

Rebuilds the digest an EVM wallet signs via eth_signTypedData_v4 for a
SubstrateCall meta-transaction, so that signatures produced off-chain can be
recovered and checked by the gateway.

Digest layout:
- domainSeparator = keccak256(encodeData(EIP712Domain))
- structHash      = keccak256(typeHash || keccak256(ss58(who)) || keccak256(callData) || uint256(nonce))
- digest          = keccak256("\\x19\\x01" || domainSeparator || structHash)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from Crypto.Hash import keccak

from metatx.core.ss58 import DEFAULT_SS58_PREFIX, ss58_encode

EIP712_PREFIX = b"\x19\x01"

SUBSTRATE_CALL_TYPE = "SubstrateCall(string who,bytes callData,uint64 nonce)"
PRIMARY_TYPE = "SubstrateCall"

SUBSTRATE_CALL_TYPES = {
    "SubstrateCall": [
        {"name": "who", "type": "string"},
        {"name": "callData", "type": "bytes"},
        {"name": "nonce", "type": "uint64"},
    ]
}

_UINT256_MAX = (1 << 256) - 1


def keccak256(data: bytes) -> bytes:
    """Compute keccak256 hash (same as Ethereum)."""
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def _encode_uint256(value: int) -> bytes:
    if value < 0 or value > _UINT256_MAX:
        raise ValueError(f"uint256 out of range: {value}")
    return value.to_bytes(32, "big")


def _parse_address(value: Union[str, bytes]) -> bytes:
    if isinstance(value, str):
        value = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    if len(value) != 20:
        raise ValueError(f"verifying contract must be 20 bytes, got {len(value)}")
    return bytes(value)


def _parse_salt(value: Union[str, bytes]) -> bytes:
    if isinstance(value, str):
        value = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    if len(value) != 32:
        raise ValueError(f"salt must be 32 bytes, got {len(value)}")
    return bytes(value)


@dataclass(frozen=True)
class TypedDataDomain:
    """
    EIP-712 domain separator fields.

    Prevents signature replay across different:
    - Applications (name, verifyingContract)
    - Chains (chainId)
    - Versions (version)
    """
    name: str
    version: str
    chain_id: int
    verifying_contract: bytes
    salt: Optional[bytes] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "verifying_contract", _parse_address(self.verifying_contract))
        if self.salt is not None:
            object.__setattr__(self, "salt", _parse_salt(self.salt))
        if self.chain_id < 0 or self.chain_id > _UINT256_MAX:
            raise ValueError(f"chain id out of range: {self.chain_id}")

    @property
    def type_string(self) -> str:
        fields = "string name,string version,uint256 chainId,address verifyingContract"
        if self.salt is not None:
            fields += ",bytes32 salt"
        return f"EIP712Domain({fields})"

    def type_fields(self) -> List[Dict[str, str]]:
        fields = [
            {"name": "name", "type": "string"},
            {"name": "version", "type": "string"},
            {"name": "chainId", "type": "uint256"},
            {"name": "verifyingContract", "type": "address"},
        ]
        if self.salt is not None:
            fields.append({"name": "salt", "type": "bytes32"})
        return fields

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON shape wallets expect."""
        d: Dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": "0x" + self.verifying_contract.hex(),
        }
        if self.salt is not None:
            d["salt"] = "0x" + self.salt.hex()
        return d


def domain_separator(domain: TypedDataDomain) -> bytes:
    """
    Compute the EIP-712 domain separator.

    Args:
        domain: Typed data domain

    Returns:
        32-byte keccak256 hash
    """
    encoded = keccak256(domain.type_string.encode("utf-8"))
    encoded += keccak256(domain.name.encode("utf-8"))
    encoded += keccak256(domain.version.encode("utf-8"))
    encoded += _encode_uint256(domain.chain_id)
    # address is left-padded to a 32-byte word
    encoded += domain.verifying_contract.rjust(32, b"\x00")
    if domain.salt is not None:
        encoded += domain.salt
    return keccak256(encoded)


def _caller_string(who: Union[bytes, str, Any], ss58_prefix: int) -> str:
    if isinstance(who, str):
        return who
    return ss58_encode(bytes(who), ss58_prefix)


def message_hash(
    who: Union[bytes, str, Any],
    call_data: bytes,
    nonce: int,
    ss58_prefix: int = DEFAULT_SS58_PREFIX,
) -> bytes:
    """
    Compute the SubstrateCall struct hash.

    Args:
        who: Caller account id (32 bytes) or its SS58 string
        call_data: Opaque encoded action
        nonce: Request nonce
        ss58_prefix: Address format used to render ``who``

    Returns:
        32-byte keccak256 hash
    """
    encoded = keccak256(SUBSTRATE_CALL_TYPE.encode("utf-8"))
    encoded += keccak256(_caller_string(who, ss58_prefix).encode("utf-8"))
    encoded += keccak256(bytes(call_data))
    encoded += _encode_uint256(nonce)
    return keccak256(encoded)


def signing_digest(
    domain: TypedDataDomain,
    who: Union[bytes, str, Any],
    call_data: bytes,
    nonce: int,
    ss58_prefix: int = DEFAULT_SS58_PREFIX,
) -> bytes:
    """
    Compute the final digest a wallet signs.

    The prefix and both hashes are packed without padding.
    """
    return keccak256(
        EIP712_PREFIX + domain_separator(domain) + message_hash(who, call_data, nonce, ss58_prefix)
    )


def typed_data_payload(
    domain: TypedDataDomain,
    who: Union[bytes, str, Any],
    call_data: bytes,
    nonce: int,
    ss58_prefix: int = DEFAULT_SS58_PREFIX,
) -> Dict[str, Any]:
    """
    Create an eth_signTypedData_v4 request object.

    Args:
        domain: Domain separator fields
        who: Caller account id
        call_data: Opaque encoded action
        nonce: Request nonce
        ss58_prefix: Address format used to render ``who``

    Returns:
        Request object with full typed data and the digest to be signed
    """
    typed_data = {
        "types": {"EIP712Domain": domain.type_fields(), **SUBSTRATE_CALL_TYPES},
        "primaryType": PRIMARY_TYPE,
        "domain": domain.to_dict(),
        "message": {
            "who": _caller_string(who, ss58_prefix),
            "callData": "0x" + bytes(call_data).hex(),
            "nonce": nonce,
        },
    }

    return {
        "method": "eth_signTypedData_v4",
        "params": {
            "typedData": typed_data,
            "hash": signing_digest(domain, who, call_data, nonce, ss58_prefix).hex(),
        },
    }
