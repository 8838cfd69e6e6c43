"""
Account Reader

Fetches and decodes escrow state from the ledger. Four outcomes are kept
apart, because callers react to each differently:
- Present and decodable  -> the typed record
- Absent                 -> None (or AccountNotFound from the require_* variants)
- Present but undecodable, or owned by an unexpected program -> DecodeError
- Ledger unreachable     -> TransportError (raised by the ledger client)

Reads never mutate anything and are safe to repeat.
"""

from typing import Optional

from ..core.accounts import AccountInfo, Pubkey
from ..errors import AccountNotFound, DecodeError
from ..logging import get_logger
from ..programs.escrow import (
    ESCROW_PROGRAM_ID,
    GoalAccount,
    StakeAccount,
    decode_account,
)
from ..programs.pda import derive_goal_address, derive_stake_address
from ..programs.token import (
    TOKEN_PROGRAM_ID,
    TokenAccount,
    decode_token_account,
    derive_associated_token_address,
)
from .rpc import Ledger

logger = get_logger("reader")


class AccountReader:
    """Typed reads of Goal, Stake and token accounts."""

    def __init__(self, ledger: Ledger, program_id: Pubkey = ESCROW_PROGRAM_ID):
        self.ledger = ledger
        self.program_id = program_id

    async def _fetch(self, address: Pubkey, type_name: str, owner: Pubkey) -> Optional[AccountInfo]:
        info = await self.ledger.get_account_info(address)
        if info is None:
            logger.debug("%s account %s not found", type_name, address)
            return None
        if info.owner != owner:
            logger.error("%s account %s is owned by %s, expected %s", type_name, address, info.owner, owner)
            raise DecodeError(f"{type_name} account {address} has unexpected owner {info.owner}")
        return info

    async def _fetch_escrow(self, address: Pubkey, type_name: str):
        info = await self._fetch(address, type_name, self.program_id)
        if info is None:
            return None
        try:
            return decode_account(info.data, type_name)
        except DecodeError as e:
            logger.error("Failed to decode %s account %s: %s", type_name, address, e)
            raise

    async def fetch_goal_at(self, address: Pubkey) -> Optional[GoalAccount]:
        return await self._fetch_escrow(address, "Goal")

    async def fetch_goal(self, goal_hash: bytes) -> Optional[GoalAccount]:
        """Goal record for ``goal_hash``, or None if it was never initialized."""
        address, _ = derive_goal_address(goal_hash, self.program_id)
        return await self.fetch_goal_at(address)

    async def fetch_stake_at(self, address: Pubkey) -> Optional[StakeAccount]:
        return await self._fetch_escrow(address, "Stake")

    async def fetch_stake(self, goal_hash: bytes, staker: Pubkey) -> Optional[StakeAccount]:
        """Stake record for (goal, staker), or None if it was never opened."""
        goal_address, _ = derive_goal_address(goal_hash, self.program_id)
        stake_address, _ = derive_stake_address(goal_address, staker, self.program_id)
        return await self.fetch_stake_at(stake_address)

    async def require_goal(self, goal_hash: bytes) -> GoalAccount:
        goal = await self.fetch_goal(goal_hash)
        if goal is None:
            address, _ = derive_goal_address(goal_hash, self.program_id)
            raise AccountNotFound(f"Goal {goal_hash.hex()} has not been initialized on-chain",
                                  address=str(address))
        return goal

    async def require_stake(self, goal_hash: bytes, staker: Pubkey) -> StakeAccount:
        stake = await self.fetch_stake(goal_hash, staker)
        if stake is None:
            goal_address, _ = derive_goal_address(goal_hash, self.program_id)
            address, _ = derive_stake_address(goal_address, staker, self.program_id)
            raise AccountNotFound(f"No stake for {staker} on goal {goal_hash.hex()}",
                                  address=str(address))
        return stake

    async def fetch_token_account(self, address: Pubkey) -> Optional[TokenAccount]:
        info = await self._fetch(address, "Token", TOKEN_PROGRAM_ID)
        if info is None:
            return None
        try:
            return decode_token_account(info.data)
        except DecodeError as e:
            logger.error("Failed to decode token account %s: %s", address, e)
            raise

    async def token_balance(self, owner: Pubkey, mint: Pubkey) -> int:
        """Balance of ``owner``'s associated token account; 0 if it does not exist."""
        account = await self.fetch_token_account(derive_associated_token_address(owner, mint))
        return account.amount if account is not None else 0

    async def account_exists(self, address: Pubkey) -> bool:
        return await self.ledger.get_account_info(address) is not None
