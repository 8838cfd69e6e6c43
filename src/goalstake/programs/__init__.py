"""
On-chain Program Support

Client-side knowledge of the programs the escrow touches:
- Escrow program: instruction/account codecs and instruction builders
- SPL Token / Associated Token programs: ids, ATA creation, token accounts
- Program Derived Address (PDA) derivation shared by both

Programs are stateless and act on accounts they own; everything here is
pure and performs no network access.
"""

from .escrow import (
    ESCROW_PROGRAM_ID,
    GoalAccount,
    StakeAccount,
    StakeStatus,
    decode_account,
    decode_instruction,
    encode_account,
    encode_instruction,
    from_minor_units,
    goal_hash_from_identifier,
    to_minor_units,
)
from .pda import InvalidSeeds, derive_goal_address, derive_stake_address, find_program_address
from .token import TOKEN_PROGRAM_ID, TokenAccount, derive_associated_token_address

__all__ = [
    'ESCROW_PROGRAM_ID',
    'GoalAccount',
    'StakeAccount',
    'StakeStatus',
    'encode_instruction',
    'decode_instruction',
    'encode_account',
    'decode_account',
    'goal_hash_from_identifier',
    'to_minor_units',
    'from_minor_units',
    'InvalidSeeds',
    'find_program_address',
    'derive_goal_address',
    'derive_stake_address',
    'TOKEN_PROGRAM_ID',
    'TokenAccount',
    'derive_associated_token_address',
]
