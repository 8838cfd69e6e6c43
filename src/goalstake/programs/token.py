"""
SPL Token and Associated Token Account Support

Stakes move through token accounts, never through the escrow program's own
accounts. Every (owner, mint) pair has one canonical "associated" token
account at a derived address; it may not exist yet and then has to be
created (by anyone willing to pay rent) before funds can land in it.

Only what the escrow client needs is implemented here:
- Program ids
- Associated token address derivation
- The associated-token "create" instruction
- Decoding the 165-byte token account layout for balance checks
"""

from dataclasses import dataclass
from typing import Optional

from ..core.accounts import AccountMeta, Pubkey, SYSTEM_PROGRAM_ID
from ..core.transactions import Instruction
from ..errors import DecodeError
from .layout import LayoutReader, LayoutWriter
from .pda import find_program_address

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

# Stake token used on devnet (6 decimals)
DEVNET_USDC_MINT = Pubkey.from_string("EPjFWaJPuPj1j4q7W4R8Pg8XKk1mVjCTWC5qjLxvPeq")
USDC_DECIMALS = 6

TOKEN_ACCOUNT_SIZE = 165

ACCOUNT_STATE_UNINITIALIZED = 0
ACCOUNT_STATE_INITIALIZED = 1
ACCOUNT_STATE_FROZEN = 2


def derive_associated_token_address(owner: Pubkey, mint: Pubkey,
                                    token_program_id: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    """
    Canonical token account for ``owner`` holding ``mint``.

    The owner may itself be a program address (the goal vault is owned by
    the goal PDA); the derivation does not care.
    """
    address, _ = find_program_address(
        [owner.to_bytes(), token_program_id.to_bytes(), mint.to_bytes()],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def create_associated_token_account_instruction(payer: Pubkey, owner: Pubkey, mint: Pubkey,
                                                 token_program_id: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    """
    Create the associated token account for (owner, mint), paid by ``payer``.

    Uses the strict "Create" variant (empty data): it fails if the account
    already exists, so callers must check existence first.
    """
    ata = derive_associated_token_address(owner, mint, token_program_id)
    return Instruction(
        program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
        accounts=[
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(ata, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=False, is_writable=False),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(token_program_id, is_signer=False, is_writable=False),
        ],
        data=b'',
    )


@dataclass
class TokenAccount:
    """Decoded SPL token account."""
    mint: Pubkey
    owner: Pubkey
    amount: int                          # Minor units
    delegate: Optional[Pubkey] = None
    state: int = ACCOUNT_STATE_INITIALIZED
    is_native: Optional[int] = None
    delegated_amount: int = 0
    close_authority: Optional[Pubkey] = None


def _write_optional_key(writer: LayoutWriter, key: Optional[Pubkey]) -> None:
    if key is None:
        writer.u32(0).raw(bytes(32))
    else:
        writer.u32(1).pubkey(key)


def _read_optional_key(reader: LayoutReader) -> Optional[Pubkey]:
    tag = reader.u32()
    key = reader.pubkey()
    if tag not in (0, 1):
        raise DecodeError(f"token account: invalid option tag {tag}")
    return key if tag == 1 else None


def encode_token_account(account: TokenAccount) -> bytes:
    """Pack a token account into its 165-byte layout."""
    writer = LayoutWriter()
    writer.pubkey(account.mint).pubkey(account.owner).u64(account.amount)
    _write_optional_key(writer, account.delegate)
    writer.u8(account.state)
    if account.is_native is None:
        writer.u32(0).u64(0)
    else:
        writer.u32(1).u64(account.is_native)
    writer.u64(account.delegated_amount)
    _write_optional_key(writer, account.close_authority)
    return writer.to_bytes()


def decode_token_account(data: bytes) -> TokenAccount:
    """
    Unpack a token account.

    Raises:
        DecodeError: wrong size, bad option tags, or an uninitialized account
    """
    if len(data) != TOKEN_ACCOUNT_SIZE:
        raise DecodeError(f"token account: expected {TOKEN_ACCOUNT_SIZE} bytes, got {len(data)}")

    reader = LayoutReader(data, "token account")
    mint = reader.pubkey()
    owner = reader.pubkey()
    amount = reader.u64()
    delegate = _read_optional_key(reader)
    state = reader.u8()
    native_tag = reader.u32()
    native_amount = reader.u64()
    delegated_amount = reader.u64()
    close_authority = _read_optional_key(reader)

    if state not in (ACCOUNT_STATE_INITIALIZED, ACCOUNT_STATE_FROZEN):
        raise DecodeError(f"token account: not initialized (state={state})")
    if native_tag not in (0, 1):
        raise DecodeError(f"token account: invalid option tag {native_tag}")

    return TokenAccount(
        mint=mint,
        owner=owner,
        amount=amount,
        delegate=delegate,
        state=state,
        is_native=native_amount if native_tag == 1 else None,
        delegated_amount=delegated_amount,
        close_authority=close_authority,
    )
