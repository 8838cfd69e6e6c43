"""In-memory ledger for tests.

Runs the escrow, SPL token and associated-token programs closely enough to
exercise the client end to end: signatures are verified, instructions run
in order, and a failing instruction rolls the whole transaction back.
"""

import asyncio
import hashlib
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

import base58

from goalstake.core.accounts import AccountInfo, Pubkey
from goalstake.core.transactions import Instruction, Transaction
from goalstake.errors import OnChainRejection, TransportError
from goalstake.networking.rpc import SignatureStatus
from goalstake.programs.escrow import (
    ESCROW_PROGRAM_ID,
    GoalAccount,
    StakeAccount,
    StakeStatus,
    decode_account,
    decode_instruction,
    encode_account,
)
from goalstake.programs.pda import derive_goal_address, derive_stake_address
from goalstake.programs.token import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    TokenAccount,
    decode_token_account,
    derive_associated_token_address,
    encode_token_account,
)

RENT = 2_039_280
NOW = 1_700_000_000

ACCOUNT_ALREADY_IN_USE = 0
INVALID_TIME_WINDOW = 6000
GOAL_ALREADY_STARTED = 6001
GOAL_NOT_ENDED = 6002
INVALID_STATUS = 6003
UNAUTHORIZED = 6004
INSUFFICIENT_FUNDS = 6005
INVALID_ACCOUNT = 6006


def run(coro):
    """Run a coroutine to completion in a fresh event loop."""
    return asyncio.run(coro)


class Clock:
    """Settable stand-in for time.time."""

    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> float:
        return float(self.now)

    def advance(self, seconds: int) -> None:
        self.now += seconds


class ProgramFailure(Exception):
    def __init__(self, code: int, log: str):
        super().__init__(log)
        self.code = code
        self.log = log


class FakeLedger:
    """
    Ledger double implementing the ``Ledger`` protocol.

    Knobs:
        preflight: reject failing transactions at send time (like a node's
            simulation); when False they land with an error instead
        confirm_after: status polls answered with "processed" before the
            commitment is reached
        never_confirm: signature statuses are never reported
        recent_cache_evicted: statuses are only found by a full history search,
            like a node whose recent status cache has moved on
        unreachable: every call raises TransportError
    """

    def __init__(self, clock: Clock, program_id: Pubkey = ESCROW_PROGRAM_ID):
        self.clock = clock
        self.program_id = program_id
        self.accounts: Dict[Pubkey, AccountInfo] = {}
        self.blockhash = base58.b58encode(hashlib.sha256(b"genesis").digest()).decode()
        self.slot = 1
        self.statuses: Dict[str, Optional[dict]] = {}
        self.polls: Dict[str, int] = defaultdict(int)
        self.sent: List[Transaction] = []
        self.account_reads = 0
        self.preflight = True
        self.confirm_after = 0
        self.never_confirm = False
        self.recent_cache_evicted = False
        self.unreachable = False
        self.history_searches = 0

    # Ledger protocol

    def _check_reachable(self):
        if self.unreachable:
            raise TransportError("Ledger unreachable: connection refused")

    async def get_account_info(self, address: Pubkey) -> Optional[AccountInfo]:
        self._check_reachable()
        self.account_reads += 1
        return self.accounts.get(address)

    async def get_latest_blockhash(self) -> str:
        self._check_reachable()
        return self.blockhash

    async def get_balance(self, address: Pubkey) -> int:
        self._check_reachable()
        info = self.accounts.get(address)
        return info.lamports if info else 0

    async def send_transaction(self, transaction: Transaction) -> str:
        self._check_reachable()
        self.sent.append(transaction)
        signature = transaction.signature

        if transaction.message.recent_blockhash != self.blockhash:
            raise OnChainRejection("Blockhash not found", signature=signature)
        if not transaction.verify_signatures():
            raise OnChainRejection("Transaction signature verification failure", signature=signature)

        err, logs = self._execute(transaction)
        if err is not None and self.preflight:
            raise OnChainRejection.from_transaction_error(err, signature=signature, logs=logs)

        self.slot += 1
        self.statuses[signature] = {"slot": self.slot, "err": err}
        return signature

    async def get_signature_statuses(self, signatures: Sequence[str],
                                     search_history: bool = False) -> List[Optional[SignatureStatus]]:
        self._check_reachable()
        if search_history:
            self.history_searches += 1
        result = []
        for signature in signatures:
            record = self.statuses.get(signature)
            self.polls[signature] += 1
            if record is None or self.never_confirm or (self.recent_cache_evicted and not search_history):
                result.append(None)
            elif self.polls[signature] <= self.confirm_after:
                result.append(SignatureStatus(record["slot"], 0, record["err"], "processed"))
            else:
                result.append(SignatureStatus(record["slot"], None, record["err"], "finalized"))
        return result

    # Test helpers

    def fund(self, owner: Pubkey, mint: Pubkey, amount: int) -> Pubkey:
        """Create (or top up) ``owner``'s token account for ``mint``."""
        address = derive_associated_token_address(owner, mint)
        current = self.token_amount(address)
        self._put_token(self.accounts, address, TokenAccount(mint=mint, owner=owner, amount=current + amount))
        return address

    def token_amount(self, address: Pubkey) -> int:
        info = self.accounts.get(address)
        return decode_token_account(info.data).amount if info else 0

    def balance_of(self, owner: Pubkey, mint: Pubkey) -> int:
        return self.token_amount(derive_associated_token_address(owner, mint))

    def goal(self, address: Pubkey) -> GoalAccount:
        return decode_account(self.accounts[address].data, "Goal")

    def stake(self, address: Pubkey) -> StakeAccount:
        return decode_account(self.accounts[address].data, "Stake")

    def put_goal(self, goal: GoalAccount) -> Pubkey:
        address, _ = derive_goal_address(goal.goal_hash, self.program_id)
        self.accounts[address] = AccountInfo(RENT, encode_account(goal), self.program_id, False)
        return address

    def put_stake(self, stake: StakeAccount) -> Pubkey:
        address, _ = derive_stake_address(stake.goal, stake.staker, self.program_id)
        self.accounts[address] = AccountInfo(RENT, encode_account(stake), self.program_id, False)
        return address

    # Execution

    def _execute(self, transaction: Transaction):
        state = dict(self.accounts)
        logs = []
        for index, instruction in enumerate(transaction.message.decompile()):
            logs.append(f"Program {instruction.program_id} invoke [1]")
            try:
                self._run(state, instruction)
            except ProgramFailure as failure:
                logs.append(f"Program log: {failure.log}")
                logs.append(f"Program {instruction.program_id} failed: custom program error: {failure.code}")
                return {"InstructionError": [index, {"Custom": failure.code}]}, logs
            logs.append(f"Program {instruction.program_id} success")
        self.accounts = state
        return None, logs

    def _run(self, state, instruction: Instruction):
        if instruction.program_id == ASSOCIATED_TOKEN_PROGRAM_ID:
            self._create_associated_token_account(state, instruction)
        elif instruction.program_id == self.program_id:
            name, params = decode_instruction(instruction.data)
            getattr(self, f"_{name}")(state, instruction.accounts, params)
        else:
            raise ProgramFailure(INVALID_ACCOUNT, f"Unknown program {instruction.program_id}")

    @staticmethod
    def _require_signer(meta, what: str):
        if not meta.is_signer:
            raise ProgramFailure(UNAUTHORIZED, f"{what} must sign")

    @staticmethod
    def _token(state, address: Pubkey) -> TokenAccount:
        info = state.get(address)
        if info is None or info.owner != TOKEN_PROGRAM_ID:
            raise ProgramFailure(INVALID_ACCOUNT, f"Token account {address} does not exist")
        return decode_token_account(info.data)

    @staticmethod
    def _put_token(state, address: Pubkey, account: TokenAccount):
        state[address] = AccountInfo(RENT, encode_token_account(account), TOKEN_PROGRAM_ID, False)

    def _transfer(self, state, source: Pubkey, destination: Pubkey, amount: int):
        src = self._token(state, source)
        dst = self._token(state, destination)
        if src.mint != dst.mint:
            raise ProgramFailure(INVALID_ACCOUNT, "Mint mismatch")
        if src.amount < amount:
            raise ProgramFailure(INSUFFICIENT_FUNDS, "Insufficient funds")
        self._put_token(state, source, TokenAccount(src.mint, src.owner, src.amount - amount))
        self._put_token(state, destination, TokenAccount(dst.mint, dst.owner, dst.amount + amount))

    def _create_associated_token_account(self, state, instruction: Instruction):
        payer, ata, owner, mint = (meta for meta in instruction.accounts[:4])
        self._require_signer(payer, "payer")
        if ata.pubkey != derive_associated_token_address(owner.pubkey, mint.pubkey):
            raise ProgramFailure(INVALID_ACCOUNT, "Associated address does not match seed derivation")
        if ata.pubkey in state:
            raise ProgramFailure(ACCOUNT_ALREADY_IN_USE, f"Account {ata.pubkey} already in use")
        self._put_token(state, ata.pubkey, TokenAccount(mint=mint.pubkey, owner=owner.pubkey, amount=0))

    def _load(self, state, address: Pubkey, type_name: str):
        info = state.get(address)
        if info is None or info.owner != self.program_id:
            raise ProgramFailure(INVALID_ACCOUNT, f"{type_name} {address} not initialized")
        return decode_account(info.data, type_name)

    def _store(self, state, address: Pubkey, record):
        state[address] = AccountInfo(RENT, encode_account(record), self.program_id, False)

    def _init_goal(self, state, metas, params):
        goal, authority, group_vault, mint = (meta for meta in metas[:4])
        self._require_signer(authority, "authority")
        if goal.pubkey != derive_goal_address(params.goal_hash, self.program_id)[0]:
            raise ProgramFailure(INVALID_ACCOUNT, "Goal address mismatch")
        if goal.pubkey in state:
            raise ProgramFailure(ACCOUNT_ALREADY_IN_USE, "Goal already initialized")
        if params.starts_on >= params.ends_on:
            raise ProgramFailure(INVALID_TIME_WINDOW, "Goal must end after it starts")
        self._store(state, goal.pubkey, GoalAccount(
            goal_hash=params.goal_hash,
            authority=authority.pubkey,
            resolver=params.resolver,
            group_vault=group_vault.pubkey,
            token_mint=mint.pubkey,
            starts_on=params.starts_on,
            ends_on=params.ends_on,
        ))

    def _open_stake(self, state, metas, params):
        goal, stake, staker = (meta for meta in metas[:3])
        self._require_signer(staker, "staker")
        self._load(state, goal.pubkey, "Goal")
        if stake.pubkey != derive_stake_address(goal.pubkey, staker.pubkey, self.program_id)[0]:
            raise ProgramFailure(INVALID_ACCOUNT, "Stake address mismatch")
        if stake.pubkey in state:
            raise ProgramFailure(ACCOUNT_ALREADY_IN_USE, "Stake already opened")
        self._store(state, stake.pubkey, StakeAccount(
            goal=goal.pubkey, staker=staker.pubkey, amount=params.amount,
            status=StakeStatus.PENDING, created_at=int(self.clock()),
        ))

    def _staker_accounts(self, state, metas):
        goal_meta, stake_meta, staker, staker_ata, goal_vault = (meta for meta in metas[:5])
        self._require_signer(staker, "staker")
        goal = self._load(state, goal_meta.pubkey, "Goal")
        stake = self._load(state, stake_meta.pubkey, "Stake")
        if stake.staker != staker.pubkey or stake.goal != goal_meta.pubkey:
            raise ProgramFailure(UNAUTHORIZED, "Stake belongs to someone else")
        if goal_vault.pubkey != derive_associated_token_address(goal_meta.pubkey, goal.token_mint):
            raise ProgramFailure(INVALID_ACCOUNT, "Wrong goal vault")
        return goal, stake, stake_meta.pubkey, staker_ata.pubkey, goal_vault.pubkey

    def _deposit_stake(self, state, metas, params):
        goal, stake, stake_address, staker_ata, goal_vault = self._staker_accounts(state, metas)
        if stake.status != StakeStatus.PENDING:
            raise ProgramFailure(INVALID_STATUS, f"Stake is {stake.status.label}")
        self._transfer(state, staker_ata, goal_vault, stake.amount)
        self._store(state, stake_address, StakeAccount(stake.goal, stake.staker, stake.amount,
                                                       StakeStatus.FUNDED, stake.created_at))

    def _cancel_before_start(self, state, metas, params):
        goal, stake, stake_address, staker_ata, goal_vault = self._staker_accounts(state, metas)
        if self.clock() >= goal.starts_on:
            raise ProgramFailure(GOAL_ALREADY_STARTED, "Goal already started")
        if stake.status not in (StakeStatus.PENDING, StakeStatus.FUNDED):
            raise ProgramFailure(INVALID_STATUS, f"Stake is {stake.status.label}")
        if stake.status == StakeStatus.FUNDED:
            self._transfer(state, goal_vault, staker_ata, stake.amount)
        self._store(state, stake_address, StakeAccount(stake.goal, stake.staker, stake.amount,
                                                       StakeStatus.CANCELED, stake.created_at))

    def _resolve(self, state, metas, success: bool):
        goal_meta, resolver, stake_meta, goal_vault, destination = (meta for meta in metas[:5])
        self._require_signer(resolver, "resolver")
        goal = self._load(state, goal_meta.pubkey, "Goal")
        stake = self._load(state, stake_meta.pubkey, "Stake")
        if resolver.pubkey != goal.resolver:
            raise ProgramFailure(UNAUTHORIZED, "Only the resolver can settle")
        if self.clock() < goal.ends_on:
            raise ProgramFailure(GOAL_NOT_ENDED, "Goal has not ended")
        if stake.status != StakeStatus.FUNDED:
            raise ProgramFailure(INVALID_STATUS, f"Stake is {stake.status.label}")
        if goal_vault.pubkey != derive_associated_token_address(goal_meta.pubkey, goal.token_mint):
            raise ProgramFailure(INVALID_ACCOUNT, "Wrong goal vault")
        if success:
            expected = derive_associated_token_address(stake.staker, goal.token_mint)
        else:
            expected = goal.group_vault
        if destination.pubkey != expected:
            raise ProgramFailure(INVALID_ACCOUNT, "Wrong destination")
        self._transfer(state, goal_vault.pubkey, destination.pubkey, stake.amount)
        status = StakeStatus.SUCCESS if success else StakeStatus.FAILURE
        self._store(state, stake_meta.pubkey, StakeAccount(stake.goal, stake.staker, stake.amount,
                                                           status, stake.created_at))

    def _resolve_success(self, state, metas, params):
        self._resolve(state, metas, success=True)

    def _resolve_failure(self, state, metas, params):
        self._resolve(state, metas, success=False)
