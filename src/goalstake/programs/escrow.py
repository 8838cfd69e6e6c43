"""
Escrow Program Codec

The escrow program speaks the Anchor binary conventions:
- Instruction data = sha256("global:<instruction_name>")[:8] followed by the
  arguments, in declaration order
- Account data = sha256("account:<TypeName>")[:8] followed by the fields,
  in declaration order
- Integers little-endian, addresses raw 32 bytes

Field order is a binary contract with an external program: reordering
anything here breaks interoperability silently, so every layout lives in
exactly one encoder/decoder pair below.

Instruction layouts:
    init_goal            goal_hash[32] starts_on:i64 ends_on:i64 resolver:pubkey
    open_stake           amount:u64
    deposit_stake        -
    cancel_before_start  -
    resolve_success      -
    resolve_failure      -

Account layouts:
    Goal   goal_hash[32] authority resolver group_vault token_mint starts_on:i64 ends_on:i64
    Stake  goal staker amount:u64 status:u8 created_at:i64
"""

import hashlib
import re
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import IntEnum
from typing import Callable, Dict, Tuple, Union

from ..core.accounts import AccountMeta, Pubkey, SYSTEM_PROGRAM_ID
from ..core.transactions import Instruction
from ..errors import DecodeError, ValidationError
from .layout import U64_MAX, LayoutReader, LayoutWriter
from .pda import GOAL_HASH_LENGTH
from .token import TOKEN_PROGRAM_ID

ESCROW_PROGRAM_ID = Pubkey.from_string("9CD9sjrZXwLjBRy7v6MacPrcyVHntxd5EPY2a6BvMaQG")

DISCRIMINATOR_LENGTH = 8


class StakeStatus(IntEnum):
    """On-chain stake status byte."""
    PENDING = 0
    FUNDED = 1
    SUCCESS = 2
    FAILURE = 3
    CANCELED = 4

    @property
    def is_terminal(self) -> bool:
        return self in (StakeStatus.SUCCESS, StakeStatus.FAILURE, StakeStatus.CANCELED)

    @property
    def label(self) -> str:
        return self.name.capitalize()


@dataclass(frozen=True)
class GoalAccount:
    """Decoded Goal account."""
    goal_hash: bytes        # 32-byte content hash of the off-chain goal
    authority: Pubkey       # Creator
    resolver: Pubkey        # Party allowed to settle stakes
    group_vault: Pubkey     # Token account receiving forfeited stakes
    token_mint: Pubkey      # Stake token
    starts_on: int          # Unix seconds
    ends_on: int            # Unix seconds

    @property
    def duration(self) -> int:
        return self.ends_on - self.starts_on


@dataclass(frozen=True)
class StakeAccount:
    """Decoded Stake account."""
    goal: Pubkey
    staker: Pubkey
    amount: int             # Minor units
    status: StakeStatus
    created_at: int         # Unix seconds


@dataclass(frozen=True)
class InitGoalParams:
    goal_hash: bytes
    starts_on: int
    ends_on: int
    resolver: Pubkey


@dataclass(frozen=True)
class OpenStakeParams:
    amount: int


InstructionParams = Union[InitGoalParams, OpenStakeParams, None]
AccountRecord = Union[GoalAccount, StakeAccount]


def instruction_discriminator(name: str) -> bytes:
    """Anchor instruction discriminator for ``name``."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:DISCRIMINATOR_LENGTH]


def account_discriminator(type_name: str) -> bytes:
    """Anchor account discriminator for ``type_name``."""
    return hashlib.sha256(f"account:{type_name}".encode()).digest()[:DISCRIMINATOR_LENGTH]


# Instruction codecs

def _require_goal_hash(goal_hash: bytes) -> bytes:
    if not isinstance(goal_hash, (bytes, bytearray)) or len(goal_hash) != GOAL_HASH_LENGTH:
        size = len(goal_hash) if isinstance(goal_hash, (bytes, bytearray)) else type(goal_hash).__name__
        raise ValidationError(f"goal hash must be {GOAL_HASH_LENGTH} bytes, got {size}")
    return bytes(goal_hash)


def _encode_init_goal(writer: LayoutWriter, params: InitGoalParams) -> None:
    writer.raw(_require_goal_hash(params.goal_hash))
    writer.i64(params.starts_on).i64(params.ends_on)
    writer.pubkey(params.resolver)


def _decode_init_goal(reader: LayoutReader) -> InitGoalParams:
    return InitGoalParams(
        goal_hash=reader.take(GOAL_HASH_LENGTH),
        starts_on=reader.i64(),
        ends_on=reader.i64(),
        resolver=reader.pubkey(),
    )


def _encode_open_stake(writer: LayoutWriter, params: OpenStakeParams) -> None:
    if not 0 <= params.amount <= U64_MAX:
        raise ValidationError(f"amount does not fit in u64: {params.amount}")
    writer.u64(params.amount)


def _decode_open_stake(reader: LayoutReader) -> OpenStakeParams:
    return OpenStakeParams(amount=reader.u64())


def _encode_nothing(writer: LayoutWriter, params: None) -> None:
    if params is not None:
        raise ValidationError(f"instruction takes no arguments, got {params!r}")


def _decode_nothing(reader: LayoutReader) -> None:
    return None


_INSTRUCTION_CODECS: Dict[str, Tuple[Callable, Callable, type]] = {
    "init_goal": (_encode_init_goal, _decode_init_goal, InitGoalParams),
    "open_stake": (_encode_open_stake, _decode_open_stake, OpenStakeParams),
    "deposit_stake": (_encode_nothing, _decode_nothing, type(None)),
    "cancel_before_start": (_encode_nothing, _decode_nothing, type(None)),
    "resolve_success": (_encode_nothing, _decode_nothing, type(None)),
    "resolve_failure": (_encode_nothing, _decode_nothing, type(None)),
}

_NAME_BY_DISCRIMINATOR = {instruction_discriminator(name): name for name in _INSTRUCTION_CODECS}


def encode_instruction(name: str, params: InstructionParams = None) -> bytes:
    """Instruction data for ``name`` with ``params`` (None for argument-less calls)."""
    if name not in _INSTRUCTION_CODECS:
        raise DecodeError(f"Unknown instruction: {name}")
    encoder, _, params_type = _INSTRUCTION_CODECS[name]
    if not isinstance(params, params_type):
        raise ValidationError(f"{name} expects {params_type.__name__}, got {type(params).__name__}")
    writer = LayoutWriter().raw(instruction_discriminator(name))
    encoder(writer, params)
    return writer.to_bytes()


def decode_instruction(data: bytes) -> Tuple[str, InstructionParams]:
    """
    Reverse of encode_instruction.

    Raises:
        DecodeError: unknown discriminator, truncated or trailing bytes
    """
    reader = LayoutReader(data, "instruction")
    name = _NAME_BY_DISCRIMINATOR.get(reader.take(DISCRIMINATOR_LENGTH))
    if name is None:
        raise DecodeError(f"Unknown instruction discriminator: {bytes(data[:8]).hex()}")
    _, decoder, _ = _INSTRUCTION_CODECS[name]
    params = decoder(reader)
    if reader.remaining:
        raise DecodeError(f"{name}: {reader.remaining} unexpected trailing bytes")
    return name, params


# Account codecs

def _encode_goal(writer: LayoutWriter, goal: GoalAccount) -> None:
    writer.raw(_require_goal_hash(goal.goal_hash))
    writer.pubkey(goal.authority).pubkey(goal.resolver)
    writer.pubkey(goal.group_vault).pubkey(goal.token_mint)
    writer.i64(goal.starts_on).i64(goal.ends_on)


def _decode_goal(reader: LayoutReader) -> GoalAccount:
    return GoalAccount(
        goal_hash=reader.take(GOAL_HASH_LENGTH),
        authority=reader.pubkey(),
        resolver=reader.pubkey(),
        group_vault=reader.pubkey(),
        token_mint=reader.pubkey(),
        starts_on=reader.i64(),
        ends_on=reader.i64(),
    )


def _encode_stake(writer: LayoutWriter, stake: StakeAccount) -> None:
    writer.pubkey(stake.goal).pubkey(stake.staker)
    writer.u64(stake.amount).u8(int(stake.status)).i64(stake.created_at)


def _decode_stake(reader: LayoutReader) -> StakeAccount:
    goal = reader.pubkey()
    staker = reader.pubkey()
    amount = reader.u64()
    status_byte = reader.u8()
    created_at = reader.i64()
    try:
        status = StakeStatus(status_byte)
    except ValueError:
        raise DecodeError(f"Stake: unknown status byte {status_byte}") from None
    return StakeAccount(goal=goal, staker=staker, amount=amount, status=status, created_at=created_at)


_ACCOUNT_CODECS: Dict[str, Tuple[type, Callable, Callable]] = {
    "Goal": (GoalAccount, _encode_goal, _decode_goal),
    "Stake": (StakeAccount, _encode_stake, _decode_stake),
}

GOAL_ACCOUNT_SIZE = DISCRIMINATOR_LENGTH + GOAL_HASH_LENGTH + 4 * 32 + 8 + 8
STAKE_ACCOUNT_SIZE = DISCRIMINATOR_LENGTH + 32 + 32 + 8 + 1 + 8


def encode_account(record: AccountRecord) -> bytes:
    """Account bytes for a Goal or Stake record, discriminator included."""
    for type_name, (record_type, encoder, _) in _ACCOUNT_CODECS.items():
        if isinstance(record, record_type):
            writer = LayoutWriter().raw(account_discriminator(type_name))
            encoder(writer, record)
            return writer.to_bytes()
    raise ValidationError(f"Not an escrow account record: {type(record).__name__}")


def decode_account(data: bytes, type_name: str) -> AccountRecord:
    """
    Decode raw account bytes as ``type_name`` ("Goal" or "Stake").

    Bytes past the layout are ignored (accounts may be over-allocated).

    Raises:
        DecodeError: unknown type, wrong discriminator, truncated layout,
            or an out-of-range enum value
    """
    if type_name not in _ACCOUNT_CODECS:
        raise DecodeError(f"Unknown account type: {type_name}")
    _, _, decoder = _ACCOUNT_CODECS[type_name]

    reader = LayoutReader(data, type_name)
    discriminator = reader.take(DISCRIMINATOR_LENGTH)
    if discriminator != account_discriminator(type_name):
        raise DecodeError(
            f"{type_name}: discriminator mismatch "
            f"(got {discriminator.hex()}, expected {account_discriminator(type_name).hex()})"
        )
    return decoder(reader)


def decode_goal(data: bytes) -> GoalAccount:
    return decode_account(data, "Goal")


def decode_stake(data: bytes) -> StakeAccount:
    return decode_account(data, "Stake")


# Instruction builders (account order and signer/writable flags are part of the contract)

def _meta(pubkey: Pubkey, signer: bool = False, writable: bool = False) -> AccountMeta:
    return AccountMeta(pubkey, is_signer=signer, is_writable=writable)


def init_goal_instruction(goal: Pubkey, authority: Pubkey, group_vault: Pubkey, token_mint: Pubkey,
                          params: InitGoalParams,
                          program_id: Pubkey = ESCROW_PROGRAM_ID) -> Instruction:
    """Create the Goal account; the authority signs and pays rent."""
    return Instruction(
        program_id=program_id,
        accounts=[
            _meta(goal, writable=True),
            _meta(authority, signer=True, writable=True),
            _meta(group_vault),
            _meta(token_mint),
            _meta(SYSTEM_PROGRAM_ID),
        ],
        data=encode_instruction("init_goal", params),
    )


def open_stake_instruction(goal: Pubkey, stake: Pubkey, staker: Pubkey, amount: int,
                           program_id: Pubkey = ESCROW_PROGRAM_ID) -> Instruction:
    """Create a Pending stake for ``staker`` on ``goal``."""
    return Instruction(
        program_id=program_id,
        accounts=[
            _meta(goal),
            _meta(stake, writable=True),
            _meta(staker, signer=True, writable=True),
            _meta(SYSTEM_PROGRAM_ID),
        ],
        data=encode_instruction("open_stake", OpenStakeParams(amount)),
    )


def _staker_transfer_instruction(name: str, goal: Pubkey, stake: Pubkey, staker: Pubkey,
                                 staker_token_account: Pubkey, goal_vault: Pubkey,
                                 program_id: Pubkey) -> Instruction:
    return Instruction(
        program_id=program_id,
        accounts=[
            _meta(goal),
            _meta(stake, writable=True),
            _meta(staker, signer=True, writable=True),
            _meta(staker_token_account, writable=True),
            _meta(goal_vault, writable=True),
            _meta(TOKEN_PROGRAM_ID),
            _meta(SYSTEM_PROGRAM_ID),
        ],
        data=encode_instruction(name),
    )


def deposit_stake_instruction(goal: Pubkey, stake: Pubkey, staker: Pubkey,
                              staker_token_account: Pubkey, goal_vault: Pubkey,
                              program_id: Pubkey = ESCROW_PROGRAM_ID) -> Instruction:
    """Move the staked amount from the staker's token account into the goal vault."""
    return _staker_transfer_instruction("deposit_stake", goal, stake, staker,
                                        staker_token_account, goal_vault, program_id)


def cancel_before_start_instruction(goal: Pubkey, stake: Pubkey, staker: Pubkey,
                                    staker_token_account: Pubkey, goal_vault: Pubkey,
                                    program_id: Pubkey = ESCROW_PROGRAM_ID) -> Instruction:
    """Cancel the stake, refunding any deposit from the goal vault."""
    return _staker_transfer_instruction("cancel_before_start", goal, stake, staker,
                                        staker_token_account, goal_vault, program_id)


def _resolve_instruction(name: str, goal: Pubkey, resolver: Pubkey, stake: Pubkey,
                         goal_vault: Pubkey, destination: Pubkey, program_id: Pubkey) -> Instruction:
    return Instruction(
        program_id=program_id,
        accounts=[
            _meta(goal),
            _meta(resolver, signer=True),
            _meta(stake, writable=True),
            _meta(goal_vault, writable=True),
            _meta(destination, writable=True),
            _meta(TOKEN_PROGRAM_ID),
            _meta(SYSTEM_PROGRAM_ID),
        ],
        data=encode_instruction(name),
    )


def resolve_success_instruction(goal: Pubkey, resolver: Pubkey, stake: Pubkey,
                                goal_vault: Pubkey, staker_token_account: Pubkey,
                                program_id: Pubkey = ESCROW_PROGRAM_ID) -> Instruction:
    """Settle as success: the vault pays the stake back to the staker."""
    return _resolve_instruction("resolve_success", goal, resolver, stake,
                                goal_vault, staker_token_account, program_id)


def resolve_failure_instruction(goal: Pubkey, resolver: Pubkey, stake: Pubkey,
                                goal_vault: Pubkey, group_vault: Pubkey,
                                program_id: Pubkey = ESCROW_PROGRAM_ID) -> Instruction:
    """Settle as failure: the vault pays the stake to the group vault."""
    return _resolve_instruction("resolve_failure", goal, resolver, stake,
                                goal_vault, group_vault, program_id)


# Helpers

_HEX_HASH = re.compile(r"^[0-9a-fA-F]{64}$")


def goal_hash_from_identifier(identifier: str) -> bytes:
    """
    32-byte goal hash for an off-chain goal identifier.

    A 64-character hex string is taken as the hash itself; anything else is
    SHA-256 hashed.
    """
    text = identifier.strip()
    if not text:
        raise ValidationError("Goal identifier is empty")
    if _HEX_HASH.match(text):
        return bytes.fromhex(text)
    return hashlib.sha256(text.encode("utf-8")).digest()


def to_minor_units(amount: Union[str, int, Decimal], decimals: int = 6) -> int:
    """Whole-token amount (e.g. "1.5") to integer minor units, truncating extra precision."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationError(f"Not a number: {amount!r}") from None
    if not value.is_finite():
        raise ValidationError(f"Not a finite amount: {amount!r}")
    minor = int((value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))
    if minor <= 0:
        raise ValidationError("Stake amount must be greater than 0")
    if minor > U64_MAX:
        raise ValidationError(f"Stake amount too large: {amount}")
    return minor


def from_minor_units(amount: int, decimals: int = 6) -> Decimal:
    """Integer minor units to a whole-token Decimal."""
    return Decimal(amount) / (Decimal(10) ** decimals)
