"""
Fixed-layout binary helpers shared by the program codecs.

All integers are little-endian, addresses are raw 32-byte keys. Reading past
the end raises DecodeError; nothing is ever returned half-parsed.
"""

from ..core.accounts import PUBKEY_LENGTH, Pubkey
from ..errors import DecodeError

U64_MAX = 2**64 - 1
I64_MIN = -(2**63)
I64_MAX = 2**63 - 1


class LayoutWriter:
    """Append-only builder for instruction and account bytes."""

    def __init__(self):
        self._parts = []

    def raw(self, data: bytes, length: int = None) -> 'LayoutWriter':
        if length is not None and len(data) != length:
            raise ValueError(f"Expected {length} bytes, got {len(data)}")
        self._parts.append(bytes(data))
        return self

    def u8(self, value: int) -> 'LayoutWriter':
        self._parts.append(int(value).to_bytes(1, 'little'))
        return self

    def u32(self, value: int) -> 'LayoutWriter':
        self._parts.append(int(value).to_bytes(4, 'little'))
        return self

    def u64(self, value: int) -> 'LayoutWriter':
        if not 0 <= value <= U64_MAX:
            raise ValueError(f"u64 out of range: {value}")
        self._parts.append(int(value).to_bytes(8, 'little'))
        return self

    def i64(self, value: int) -> 'LayoutWriter':
        if not I64_MIN <= value <= I64_MAX:
            raise ValueError(f"i64 out of range: {value}")
        self._parts.append(int(value).to_bytes(8, 'little', signed=True))
        return self

    def pubkey(self, key: Pubkey) -> 'LayoutWriter':
        self._parts.append(key.to_bytes())
        return self

    def to_bytes(self) -> bytes:
        return b''.join(self._parts)


class LayoutReader:
    """Cursor over account or instruction bytes."""

    def __init__(self, data: bytes, what: str = "data"):
        self.data = bytes(data)
        self.offset = 0
        self.what = what

    def take(self, length: int) -> bytes:
        end = self.offset + length
        if end > len(self.data):
            raise DecodeError(
                f"{self.what}: need {length} bytes at offset {self.offset}, "
                f"only {len(self.data) - self.offset} left"
            )
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u32(self) -> int:
        return int.from_bytes(self.take(4), 'little')

    def u64(self) -> int:
        return int.from_bytes(self.take(8), 'little')

    def i64(self) -> int:
        return int.from_bytes(self.take(8), 'little', signed=True)

    def pubkey(self) -> Pubkey:
        return Pubkey(self.take(PUBKEY_LENGTH))

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset
