"""
Ledger Networking

- RPC client: JSON-RPC over HTTP to a ledger node
- Account reader: typed, classified reads of escrow and token accounts
"""

from .reader import AccountReader
from .rpc import Ledger, LedgerRPC, SignatureStatus

__all__ = [
    'Ledger',
    'LedgerRPC',
    'SignatureStatus',
    'AccountReader',
]
