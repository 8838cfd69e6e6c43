"""
Transaction and Instruction Model

This implements the ledger's transaction structure where:
- Transactions contain multiple instructions that execute atomically,
  in the order given (all or nothing)
- All account access is declared upfront in a single ordered key table
- Instructions reference accounts and their program by index
- A recent blockhash acts as a short-lived freshness token

Serialization follows the legacy wire format byte for byte, so the
result can be handed straight to ``sendTransaction``.

Based on: https://solana.com/docs/core/transactions
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import base58
from ecdsa import BadSignatureError, Ed25519, MalformedPointError, SigningKey, VerifyingKey

from .accounts import AccountMeta, Pubkey

SIGNATURE_LENGTH = 64
BLOCKHASH_LENGTH = 32
PACKET_DATA_SIZE = 1232  # Max serialized transaction size accepted by the network

EMPTY_SIGNATURE = bytes(SIGNATURE_LENGTH)


def encode_length(length: int) -> bytes:
    """
    Encode a length as compact-u16 ("shortvec").

    Seven bits per byte, low bits first, high bit set while more bytes follow.
    """
    if length < 0 or length > 0xFFFF:
        raise ValueError(f"compact-u16 out of range: {length}")
    out = bytearray()
    remaining = length
    while True:
        byte = remaining & 0x7F
        remaining >>= 7
        if remaining:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_length(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode a compact-u16 at ``offset``; returns (value, bytes consumed)."""
    value = 0
    for i in range(3):
        if offset + i >= len(data):
            raise ValueError("Truncated compact-u16")
        byte = data[offset + i]
        value |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            return value, i + 1
    raise ValueError("compact-u16 longer than 3 bytes")


@dataclass
class MessageHeader:
    """
    Transaction message header with account access metadata.

    This tells the runtime how many accounts need to sign and
    which accounts are read-only vs writable.
    """
    num_required_signatures: int      # Number of signatures required
    num_readonly_signed_accounts: int # Read-only accounts that must sign
    num_readonly_unsigned_accounts: int # Read-only accounts (no signature)


@dataclass
class CompiledInstruction:
    """
    Instruction compiled to reference accounts by index.

    Instead of embedding full account keys, we reference them by their
    position in the transaction's account array.
    """
    program_id_index: int           # Index into account_keys for program
    accounts: List[int]            # Indices into account_keys
    data: bytes                    # Program-specific instruction data

    def __str__(self) -> str:
        return f"Instruction(program_id_index={self.program_id_index}, accounts={self.accounts}, data_len={len(self.data)})"


@dataclass
class TransactionMessage:
    """
    The signed part of a transaction.

    Account keys are ordered: writable signers (fee payer first), read-only
    signers, writable non-signers, read-only non-signers. The header counts
    let the runtime recover each key's access mode from its position.
    """
    header: MessageHeader
    account_keys: List[Pubkey]     # All account public keys referenced
    recent_blockhash: str          # Base58 blockhash for replay protection
    instructions: List[CompiledInstruction]

    def serialize(self) -> bytes:
        """Serialize message for signing and transmission."""
        parts = [
            bytes([
                self.header.num_required_signatures,
                self.header.num_readonly_signed_accounts,
                self.header.num_readonly_unsigned_accounts,
            ]),
            encode_length(len(self.account_keys)),
        ]
        parts.extend(key.to_bytes() for key in self.account_keys)

        blockhash = base58.b58decode(self.recent_blockhash)
        if len(blockhash) != BLOCKHASH_LENGTH:
            raise ValueError(f"Blockhash must decode to {BLOCKHASH_LENGTH} bytes")
        parts.append(blockhash)

        parts.append(encode_length(len(self.instructions)))
        for instruction in self.instructions:
            parts.append(bytes([instruction.program_id_index]))
            parts.append(encode_length(len(instruction.accounts)))
            parts.append(bytes(instruction.accounts))
            parts.append(encode_length(len(instruction.data)))
            parts.append(instruction.data)

        return b''.join(parts)

    @property
    def fee_payer(self) -> Pubkey:
        """The fee payer is always the first account key."""
        if not self.account_keys:
            raise ValueError("Message has no accounts")
        return self.account_keys[0]

    def signer_keys(self) -> List[Pubkey]:
        """Keys that must sign, in signature order."""
        return self.account_keys[:self.header.num_required_signatures]

    def is_writable(self, index: int) -> bool:
        """Recover an account's writability from its position."""
        header = self.header
        num_signed = header.num_required_signatures
        if index < num_signed:
            return index < num_signed - header.num_readonly_signed_accounts
        return index < len(self.account_keys) - header.num_readonly_unsigned_accounts

    def is_signer(self, index: int) -> bool:
        return index < self.header.num_required_signatures

    def decompile(self) -> List["Instruction"]:
        """Expand compiled instructions back to explicit account metas."""
        result = []
        for compiled in self.instructions:
            metas = [
                AccountMeta(self.account_keys[i], self.is_signer(i), self.is_writable(i))
                for i in compiled.accounts
            ]
            result.append(Instruction(
                program_id=self.account_keys[compiled.program_id_index],
                accounts=metas,
                data=compiled.data,
            ))
        return result


@dataclass
class Transaction:
    """
    Complete transaction: one signature slot per required signer plus the message.

    Unsigned slots hold 64 zero bytes until the matching key signs.
    """
    message: TransactionMessage
    signatures: List[bytes] = field(default_factory=list)

    def __post_init__(self):
        required = self.message.header.num_required_signatures
        if not self.signatures:
            self.signatures = [EMPTY_SIGNATURE] * required
        if len(self.signatures) != required:
            raise ValueError(f"Expected {required} signatures, got {len(self.signatures)}")

    @property
    def signature(self) -> Optional[str]:
        """
        The transaction id: the fee payer's signature, base58-encoded.

        None until the fee payer has signed.
        """
        first = self.signatures[0] if self.signatures else EMPTY_SIGNATURE
        if first == EMPTY_SIGNATURE:
            return None
        return base58.b58encode(first).decode("ascii")

    def sign(self, signing_key: SigningKey) -> "Transaction":
        """Add a signature from ``signing_key`` into its slot (partial signing)."""
        signer = Pubkey(signing_key.verifying_key.to_string())
        signer_keys = self.message.signer_keys()
        if signer not in signer_keys:
            raise ValueError(f"{signer} is not a required signer of this transaction")
        signature = bytes(signing_key.sign(self.message.serialize()))
        self.signatures[signer_keys.index(signer)] = signature
        return self

    def missing_signers(self) -> List[Pubkey]:
        """Required signers whose slot is still empty."""
        return [
            key for key, sig in zip(self.message.signer_keys(), self.signatures)
            if sig == EMPTY_SIGNATURE
        ]

    def is_fully_signed(self) -> bool:
        return not self.missing_signers()

    def verify_signatures(self) -> bool:
        """
        Verify all transaction signatures.

        Each required signer must provide a valid Ed25519 signature
        over the serialized message.
        """
        message_data = self.message.serialize()
        for key, signature in zip(self.message.signer_keys(), self.signatures):
            if signature == EMPTY_SIGNATURE:
                return False
            try:
                verifying_key = VerifyingKey.from_string(key.to_bytes(), curve=Ed25519)
                if not verifying_key.verify(signature, message_data):
                    return False
            except (BadSignatureError, MalformedPointError, ValueError):
                return False
        return True

    def serialize(self) -> bytes:
        """Wire format: compact-u16 signature count, signatures, message."""
        data = b''.join([
            encode_length(len(self.signatures)),
            *self.signatures,
            self.message.serialize(),
        ])
        if len(data) > PACKET_DATA_SIZE:
            raise ValueError(f"Transaction too large: {len(data)} > {PACKET_DATA_SIZE} bytes")
        return data


@dataclass
class Instruction:
    """
    High-level instruction before compilation to indices.

    This is the developer-friendly format for building transactions.
    It gets compiled down to CompiledInstruction by TransactionBuilder.
    """
    program_id: Pubkey             # Program to invoke
    accounts: List[AccountMeta]    # Accounts with access metadata
    data: bytes                    # Instruction data

    def __str__(self) -> str:
        return f"Instruction({self.program_id.short()}, {len(self.accounts)} accounts, {len(self.data)} bytes)"


class TransactionBuilder:
    """
    Builder for constructing transactions.

    This handles ordering accounts correctly and compiling instructions to
    their binary format. Instructions keep exactly the order they were added.
    """

    def __init__(self, fee_payer: Pubkey, recent_blockhash: str):
        """
        Initialize transaction builder.

        Args:
            fee_payer: Account that pays transaction fees (must be signer)
            recent_blockhash: Recent blockhash for replay protection
        """
        self.fee_payer = fee_payer
        self.recent_blockhash = recent_blockhash
        self.instructions: List[Instruction] = []

    def add_instruction(self, instruction: Instruction) -> 'TransactionBuilder':
        """Add an instruction to the transaction (fluent interface)."""
        self.instructions.append(instruction)
        return self

    def add_instructions(self, instructions: List[Instruction]) -> 'TransactionBuilder':
        """Add multiple instructions at once."""
        self.instructions.extend(instructions)
        return self

    def build(self) -> TransactionMessage:
        """
        Build the final transaction message.

        1. Collect all unique accounts, merging access flags
        2. Order them by access class, fee payer first
        3. Compile instructions to use indices
        4. Create the message header
        """
        if not self.instructions:
            raise ValueError("Transaction has no instructions")

        signers: Set[Pubkey] = {self.fee_payer}
        writable: Set[Pubkey] = {self.fee_payer}
        all_accounts: Set[Pubkey] = {self.fee_payer}

        for instruction in self.instructions:
            all_accounts.add(instruction.program_id)
            for account in instruction.accounts:
                all_accounts.add(account.pubkey)
                if account.is_signer:
                    signers.add(account.pubkey)
                if account.is_writable:
                    writable.add(account.pubkey)

        others = all_accounts - {self.fee_payer}
        writable_signers = [self.fee_payer] + sorted(signers & writable & others)
        readonly_signers = sorted((signers - writable) & others)
        writable_non_signers = sorted((writable - signers) & others)
        readonly_non_signers = sorted(others - signers - writable)

        account_keys = writable_signers + readonly_signers + writable_non_signers + readonly_non_signers
        account_index: Dict[Pubkey, int] = {key: i for i, key in enumerate(account_keys)}

        compiled_instructions = [
            CompiledInstruction(
                program_id_index=account_index[instruction.program_id],
                accounts=[account_index[acc.pubkey] for acc in instruction.accounts],
                data=instruction.data,
            )
            for instruction in self.instructions
        ]

        header = MessageHeader(
            num_required_signatures=len(writable_signers) + len(readonly_signers),
            num_readonly_signed_accounts=len(readonly_signers),
            num_readonly_unsigned_accounts=len(readonly_non_signers),
        )

        return TransactionMessage(
            header=header,
            account_keys=account_keys,
            recent_blockhash=self.recent_blockhash,
            instructions=compiled_instructions,
        )


def sign_transaction(message: TransactionMessage, signers: List[SigningKey]) -> Transaction:
    """
    Sign a transaction message with the provided private keys.

    Args:
        message: Transaction message to sign
        signers: Private keys of (some of) the required signers

    Returns:
        Transaction carrying every provided signature
    """
    transaction = Transaction(message=message)
    for signer in signers:
        transaction.sign(signer)
    return transaction


def generate_keypair() -> Tuple[SigningKey, Pubkey]:
    """
    Generate a new Ed25519 keypair.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = SigningKey.generate(curve=Ed25519)
    return private_key, Pubkey(private_key.verifying_key.to_string())


def keypair_from_secret(secret: bytes) -> Tuple[SigningKey, Pubkey]:
    """
    Load a keypair from a 32-byte seed or a 64-byte seed+pubkey secret.

    The 64-byte form is what Solana CLI keypair files contain.
    """
    if len(secret) not in (32, 64):
        raise ValueError(f"Secret key must be 32 or 64 bytes, got {len(secret)}")
    private_key = SigningKey.from_string(bytes(secret[:32]), curve=Ed25519)
    public_key = Pubkey(private_key.verifying_key.to_string())
    if len(secret) == 64 and bytes(secret[32:]) != public_key.to_bytes():
        raise ValueError("Secret key does not match its embedded public key")
    return private_key, public_key
