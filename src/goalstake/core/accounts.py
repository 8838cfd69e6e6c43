"""
Account Primitives

Everything on the ledger lives in an account addressed by a 32-byte key:
- Public keys are shown base58-encoded, exactly like the Solana tooling
- Programs declare upfront which accounts an instruction reads, writes,
  and needs signatures from (``AccountMeta``)
- The ledger returns raw account bytes plus owner metadata (``AccountInfo``);
  interpreting the bytes is the codec's job, not ours

Based on: https://solana.com/docs/core/accounts
"""

from dataclasses import dataclass
from typing import Union

import base58

PUBKEY_LENGTH = 32


class Pubkey:
    """
    A 32-byte ledger address.

    Immutable, hashable and comparable, so it can key dictionaries and be
    used in sets of accounts while building transactions.
    """

    __slots__ = ("_bytes",)

    def __init__(self, value: Union[bytes, bytearray, "Pubkey"]):
        if isinstance(value, Pubkey):
            raw = value.to_bytes()
        else:
            raw = bytes(value)
        if len(raw) != PUBKEY_LENGTH:
            raise ValueError(f"Pubkey must be {PUBKEY_LENGTH} bytes, got {len(raw)}")
        object.__setattr__(self, "_bytes", raw)

    def __setattr__(self, name, value):
        raise AttributeError("Pubkey is immutable")

    @classmethod
    def from_string(cls, address: str) -> "Pubkey":
        """Parse a base58 address."""
        try:
            raw = base58.b58decode(address.strip())
        except ValueError as e:
            raise ValueError(f"Invalid base58 address {address!r}: {e}") from e
        return cls(raw)

    @classmethod
    def default(cls) -> "Pubkey":
        """The all-zero key (also the System Program id)."""
        return cls(bytes(PUBKEY_LENGTH))

    def to_bytes(self) -> bytes:
        return self._bytes

    def __bytes__(self) -> bytes:
        return self._bytes

    def __str__(self) -> str:
        return base58.b58encode(self._bytes).decode("ascii")

    def __repr__(self) -> str:
        return f"Pubkey({self})"

    def __eq__(self, other) -> bool:
        if isinstance(other, Pubkey):
            return self._bytes == other._bytes
        return NotImplemented

    def __lt__(self, other: "Pubkey") -> bool:
        return self._bytes < other._bytes

    def __hash__(self) -> int:
        return hash(self._bytes)

    def short(self) -> str:
        """Abbreviated form for logs and terminal output."""
        text = str(self)
        return f"{text[:4]}...{text[-4:]}"


@dataclass(frozen=True)
class AccountMeta:
    """
    Account metadata for instruction building.

    This tells the runtime how an instruction wants to access each account.
    The signer/writable flags are part of each instruction's public contract.
    """
    pubkey: Pubkey       # Account address
    is_signer: bool      # Must sign transaction
    is_writable: bool    # Can be modified

    def __str__(self) -> str:
        flags = []
        if self.is_signer:
            flags.append("signer")
        if self.is_writable:
            flags.append("writable")
        flag_str = f"({', '.join(flags)})" if flags else "(readonly)"
        return f"{self.pubkey.short()}{flag_str}"


@dataclass(frozen=True)
class AccountInfo:
    """
    An account as reported by the ledger.

    ``data`` is opaque here; the codec decides whether it is a Goal, a Stake
    or a token account.
    """
    lamports: int           # Balance in lamports (1 SOL = 1_000_000_000 lamports)
    data: bytes             # Raw account data
    owner: Pubkey           # Program that owns this account
    executable: bool        # Whether this account contains executable code
    rent_epoch: int = 0     # Legacy field

    def __post_init__(self):
        if self.lamports < 0:
            raise ValueError("Lamports cannot be negative")


SYSTEM_PROGRAM_ID = Pubkey.default()
