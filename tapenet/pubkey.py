"""32-byte public keys with base58 text encoding."""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from typing import ClassVar

PUBKEY_BYTES = 32
MAX_BASE58_LEN = 44

_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_INDEX = {char: value for value, char in enumerate(_ALPHABET)}


def b58encode(data: bytes) -> str:
    """Encode bytes as base58 text, one '1' per leading zero byte."""
    data = bytes(data)
    stripped = data.lstrip(b"\x00")
    leading = len(data) - len(stripped)
    number = int.from_bytes(stripped, "big")
    digits = []
    while number:
        number, rem = divmod(number, 58)
        digits.append(_ALPHABET[rem])
    return "1" * leading + "".join(reversed(digits))


def b58decode(text: str) -> bytes:
    """Decode base58 text into bytes; raise ValueError on a bad character."""
    stripped = text.lstrip("1")
    leading = len(text) - len(stripped)
    number = 0
    for char in stripped:
        try:
            number = number * 58 + _INDEX[char]
        except KeyError:
            raise ValueError(f"invalid base58 character: {char!r}") from None
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    return b"\x00" * leading + body


@dataclass(frozen=True, order=True)
class Pubkey:
    """An account address: exactly 32 raw bytes."""

    raw: bytes

    _counter: ClassVar = itertools.count(1)
    _lock: ClassVar = threading.Lock()

    def __post_init__(self) -> None:
        raw = bytes(self.raw)
        if len(raw) != PUBKEY_BYTES:
            raise ValueError(
                f"pubkey must be {PUBKEY_BYTES} bytes, got {len(raw)}"
            )
        object.__setattr__(self, "raw", raw)

    @classmethod
    def from_string(cls, text: str) -> "Pubkey":
        """Parse a base58 address."""
        if len(text) > MAX_BASE58_LEN:
            raise ValueError("string decoded to wrong size for pubkey")
        decoded = b58decode(text)
        if len(decoded) != PUBKEY_BYTES:
            raise ValueError("string decoded to wrong size for pubkey")
        return cls(decoded)

    @classmethod
    def new_unique(cls) -> "Pubkey":
        """Return a key distinct from every other key made this way in the process."""
        with cls._lock:
            value = next(cls._counter)
        return cls(value.to_bytes(8, "big") + bytes(PUBKEY_BYTES - 8))

    def to_bytes(self) -> bytes:
        return self.raw

    def __bytes__(self) -> bytes:
        return self.raw

    def __str__(self) -> str:
        return b58encode(self.raw)

    def __repr__(self) -> str:
        return f"Pubkey({self})"