"""
Minimal SCALE helpers used by the gateway.

Covers the pieces the gateway itself needs: a zero-padding input reader for
decoding action payloads, compact length prefixes, and little-endian
fixed-width integers for transaction-pool tags.
"""

from __future__ import annotations

from metatx.core.exceptions import DecodeError
from metatx.core.weights import U64_MAX


class TrailingZeroInput:
    """
    Byte reader that yields zeros once the underlying data is exhausted.

    Reads never fail for lack of input. Bytes left unread after decoding are
    simply ignored by callers.
    """

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._offset = 0

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def remaining(self) -> int:
        return max(0, len(self._data) - self._offset)

    def read(self, length: int) -> bytes:
        if length < 0:
            raise ValueError("Cannot read a negative number of bytes")
        chunk = self._data[self._offset:self._offset + length]
        self._offset += length
        return chunk + b"\x00" * (length - len(chunk))

    def read_byte(self) -> int:
        return self.read(1)[0]

    def read_u8(self) -> int:
        return self.read_byte()

    def read_u64(self) -> int:
        return int.from_bytes(self.read(8), "little")

    def read_u128(self) -> int:
        return int.from_bytes(self.read(16), "little")

    def read_compact(self) -> int:
        first = self.read_byte()
        mode = first & 0b11
        if mode == 0b00:
            return first >> 2
        if mode == 0b01:
            return (first | (self.read_byte() << 8)) >> 2
        if mode == 0b10:
            return (first | (int.from_bytes(self.read(3), "little") << 8)) >> 2
        length = (first >> 2) + 4
        return int.from_bytes(self.read(length), "little")

    def read_vec(self) -> bytes:
        """
        Read a compact-length-prefixed byte vector.

        Unlike fixed-width reads, the declared length must fit in the unread
        input; a vector is never zero-padded.

        Raises:
            DecodeError: If the length prefix exceeds the remaining bytes
        """
        length = self.read_compact()
        if length > self.remaining:
            raise DecodeError(
                "Vector length exceeds remaining input",
                details={"length": length, "remaining": self.remaining},
            )
        return self.read(length)


def encode_compact(value: int) -> bytes:
    """SCALE compact encoding of a non-negative integer."""
    if value < 0:
        raise ValueError("Compact encoding requires a non-negative integer")
    if value < 1 << 6:
        return bytes([value << 2])
    if value < 1 << 14:
        return ((value << 2) | 0b01).to_bytes(2, "little")
    if value < 1 << 30:
        return ((value << 2) | 0b10).to_bytes(4, "little")
    raw = value.to_bytes((value.bit_length() + 7) // 8, "little")
    return bytes([((len(raw) - 4) << 2) | 0b11]) + raw


def encode_bytes(value: bytes) -> bytes:
    """Length-prefixed byte vector."""
    return encode_compact(len(value)) + bytes(value)


def encode_str(value: str) -> bytes:
    return encode_bytes(value.encode("utf-8"))


def encode_u8(value: int) -> bytes:
    return value.to_bytes(1, "little")


def encode_u64(value: int) -> bytes:
    if value < 0 or value > U64_MAX:
        raise ValueError(f"u64 out of range: {value}")
    return value.to_bytes(8, "little")


def encode_u128(value: int) -> bytes:
    return value.to_bytes(16, "little")
