"""
Ledger Core Primitives

Addresses, account metadata and the legacy transaction wire format.
"""

from .accounts import AccountInfo, AccountMeta, Pubkey, SYSTEM_PROGRAM_ID
from .transactions import (
    CompiledInstruction,
    Instruction,
    MessageHeader,
    Transaction,
    TransactionBuilder,
    TransactionMessage,
    generate_keypair,
    keypair_from_secret,
    sign_transaction,
)

__all__ = [
    'Pubkey', 'AccountInfo', 'AccountMeta', 'SYSTEM_PROGRAM_ID',
    'Transaction', 'TransactionMessage', 'MessageHeader',
    'CompiledInstruction', 'Instruction', 'TransactionBuilder',
    'sign_transaction', 'generate_keypair', 'keypair_from_secret',
]
