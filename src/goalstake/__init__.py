"""
Goal Stake Escrow Client

Client side of an on-chain escrow where group members stake tokens against
shared goals. The program holds the funds; this package talks to it.

Key Features:
- ✅ Program derived addresses for goals, stakes and token vaults
- ✅ Byte-exact instruction and account codecs for the escrow program
- ✅ Typed account reads that keep "absent", "undecodable" and "unreachable" apart
- ✅ Atomic transactions with idempotent token account setup
- ✅ Build, sign, broadcast and bounded confirmation with progress updates
- ✅ Client-side mirror of the stake lifecycle rules
- ✅ Complete CLI interface

Based on: https://solana.com/docs/core/pda and https://solana.com/docs/rpc/http
"""

__version__ = "0.1.0"

from .client import (
    ActionOrchestrator,
    ActionRun,
    ActionStatus,
    EscrowActions,
    KeypairSigner,
    Phase,
    StakeStateMachine,
    TransactionComposer,
)
from .config import Config, load_config, save_config
from .core import Pubkey, Transaction, TransactionBuilder
from .errors import EscrowError
from .networking import AccountReader, LedgerRPC
from .programs import GoalAccount, StakeAccount, StakeStatus, goal_hash_from_identifier

__all__ = [
    'EscrowActions',
    'ActionOrchestrator',
    'ActionRun',
    'ActionStatus',
    'Phase',
    'KeypairSigner',
    'StakeStateMachine',
    'TransactionComposer',
    'Config', 'load_config', 'save_config',
    'Pubkey', 'Transaction', 'TransactionBuilder',
    'EscrowError',
    'AccountReader', 'LedgerRPC',
    'GoalAccount', 'StakeAccount', 'StakeStatus', 'goal_hash_from_identifier',
]
