"""
Transaction Composer

Turns one user action into one ordered, atomic list of instructions:

1. Setup: every token account the action touches is checked for existence
   and, only if absent, an associated-token "create" is queued for it.
   Accounts this client cannot create (a goal's group vault) must already
   exist, or the action fails with AccountNotFound before anything is sent
2. Business: the escrow instruction(s) for the action
3. Finalize: fee payer plus a fresh blockhash, fetched right before signing

Setup always precedes business instructions, and nothing is reordered once
queued. The ledger applies the whole list or none of it.

Input validation happens before the first network call.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set, Tuple

from ..core.accounts import Pubkey
from ..core.transactions import Instruction, TransactionBuilder, TransactionMessage
from ..errors import AccountNotFound, ValidationError
from ..logging import get_logger
from ..networking.reader import AccountReader
from ..programs import escrow
from ..programs.escrow import GoalAccount, InitGoalParams
from ..programs.layout import I64_MAX, U64_MAX
from ..programs.pda import GOAL_HASH_LENGTH, derive_goal_address, derive_stake_address
from ..programs.token import (
    create_associated_token_account_instruction,
    derive_associated_token_address,
)

logger = get_logger("composer")


def validate_goal_hash(goal_hash: bytes) -> bytes:
    if not isinstance(goal_hash, (bytes, bytearray)):
        raise ValidationError(f"Goal hash must be bytes, got {type(goal_hash).__name__}")
    if len(goal_hash) != GOAL_HASH_LENGTH:
        raise ValidationError(f"Goal hash must be {GOAL_HASH_LENGTH} bytes, got {len(goal_hash)}")
    return bytes(goal_hash)


def validate_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"Stake amount must be an integer number of minor units, got {amount!r}")
    if amount <= 0:
        raise ValidationError("Stake amount must be greater than 0")
    if amount > U64_MAX:
        raise ValidationError(f"Stake amount exceeds u64: {amount}")
    return amount


def validate_window(starts_on: int, ends_on: int, now: float) -> None:
    """A goal must start in the future and end after it starts."""
    for name, value in (("starts_on", starts_on), ("ends_on", ends_on)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{name} must be integer Unix seconds, got {value!r}")
        if not 0 <= value <= I64_MAX:
            raise ValidationError(f"{name} out of range: {value}")
    if starts_on >= ends_on:
        raise ValidationError(f"Goal must end after it starts (starts_on={starts_on}, ends_on={ends_on})")
    if starts_on <= now:
        raise ValidationError(f"Goal start {starts_on} is not in the future")


@dataclass
class ActionPlan:
    """A composed action, ready to be finalized and signed."""
    action: str                          # e.g. "deposit_stake"
    instructions: List[Instruction]      # Setup first, then business
    goal: Pubkey                         # Goal address
    stake: Optional[Pubkey] = None       # Stake address, when the action has one
    key: Tuple[str, str] = ("", "")      # (goal, party) serialization key
    signers: List[Pubkey] = field(default_factory=list)
    setup_count: int = 0                 # Leading token-account creates


class InstructionPipeline:
    """
    Ordered instruction accumulator shared by every action.

    ``ensure_token_account`` asks the ledger once per address and queues a
    create only when the account is missing; asking again for the same
    address, even within this pipeline, is a no-op.
    """

    def __init__(self, reader: AccountReader):
        self.reader = reader
        self._setup: List[Instruction] = []
        self._business: List[Instruction] = []
        self._known: Set[Pubkey] = set()

    async def ensure_token_account(self, owner: Pubkey, mint: Pubkey, payer: Pubkey) -> Pubkey:
        """Associated token address for (owner, mint), created first if needed."""
        address = derive_associated_token_address(owner, mint)
        if address in self._known:
            return address

        exists = await self.reader.account_exists(address)
        self._known.add(address)
        if not exists:
            logger.debug("Token account %s missing, queueing create (payer %s)", address, payer)
            self._setup.append(create_associated_token_account_instruction(payer, owner, mint))
        return address

    async def require_account(self, address: Pubkey, description: str) -> Pubkey:
        """``address`` must already exist on the ledger; nothing is queued for it."""
        if address in self._known:
            return address
        if not await self.reader.account_exists(address):
            raise AccountNotFound(f"{description} {address} does not exist", address=str(address))
        self._known.add(address)
        return address

    def add(self, instruction: Instruction) -> "InstructionPipeline":
        self._business.append(instruction)
        return self

    def instructions(self) -> List[Instruction]:
        return list(self._setup) + list(self._business)

    @property
    def setup_count(self) -> int:
        return len(self._setup)


class TransactionComposer:
    """
    Builds an ActionPlan per escrow action.

    Args:
        reader: Account reader used for existence checks
        program_id: Escrow program id
        token_mint: Default stake token for new goals
        clock: Returns the current Unix time (injected for tests)
    """

    def __init__(self, reader: AccountReader, program_id: Pubkey = escrow.ESCROW_PROGRAM_ID,
                 token_mint: Optional[Pubkey] = None, clock: Callable[[], float] = time.time):
        self.reader = reader
        self.program_id = program_id
        self.token_mint = token_mint
        self.clock = clock

    def pipeline(self) -> InstructionPipeline:
        return InstructionPipeline(self.reader)

    def _addresses(self, goal_hash: bytes, staker: Pubkey) -> Tuple[Pubkey, Pubkey]:
        goal, _ = derive_goal_address(goal_hash, self.program_id)
        stake, _ = derive_stake_address(goal, staker, self.program_id)
        return goal, stake

    def _plan(self, action: str, pipeline: InstructionPipeline, goal: Pubkey,
              party: Pubkey, stake: Optional[Pubkey] = None) -> ActionPlan:
        instructions = pipeline.instructions()
        logger.info("Composed %s: %d setup + %d business instructions",
                    action, pipeline.setup_count, len(instructions) - pipeline.setup_count)
        return ActionPlan(
            action=action,
            instructions=instructions,
            goal=goal,
            stake=stake,
            key=(str(goal), str(party)),
            signers=[party],
            setup_count=pipeline.setup_count,
        )

    def _mint(self, token_mint: Optional[Pubkey]) -> Pubkey:
        mint = token_mint or self.token_mint
        if mint is None:
            raise ValidationError("No token mint configured")
        return mint

    # Steps shared by the combined actions

    async def _queue_init_goal(self, pipeline: InstructionPipeline, authority: Pubkey,
                               goal_hash: bytes, starts_on: int, ends_on: int,
                               resolver: Optional[Pubkey], mint: Pubkey) -> Pubkey:
        goal, _ = derive_goal_address(goal_hash, self.program_id)
        group_vault = await pipeline.ensure_token_account(authority, mint, authority)
        params = InitGoalParams(goal_hash=goal_hash, starts_on=starts_on, ends_on=ends_on,
                                resolver=resolver or authority)
        pipeline.add(escrow.init_goal_instruction(goal, authority, group_vault, mint, params,
                                                  program_id=self.program_id))
        return goal

    async def _queue_deposit(self, pipeline: InstructionPipeline, goal: Pubkey, stake: Pubkey,
                             staker: Pubkey, mint: Pubkey) -> None:
        staker_ata = await pipeline.ensure_token_account(staker, mint, staker)
        goal_vault = await pipeline.ensure_token_account(goal, mint, staker)
        pipeline.add(escrow.deposit_stake_instruction(goal, stake, staker, staker_ata, goal_vault,
                                                      program_id=self.program_id))

    # Actions

    async def init_goal(self, authority: Pubkey, goal_hash: bytes, starts_on: int, ends_on: int,
                        resolver: Optional[Pubkey] = None,
                        token_mint: Optional[Pubkey] = None) -> ActionPlan:
        goal_hash = validate_goal_hash(goal_hash)
        validate_window(starts_on, ends_on, self.clock())
        mint = self._mint(token_mint)

        pipeline = self.pipeline()
        goal = await self._queue_init_goal(pipeline, authority, goal_hash, starts_on, ends_on,
                                           resolver, mint)
        return self._plan("init_goal", pipeline, goal, authority)

    async def open_stake(self, goal_hash: bytes, staker: Pubkey, amount: int) -> ActionPlan:
        goal_hash = validate_goal_hash(goal_hash)
        validate_amount(amount)

        goal, stake = self._addresses(goal_hash, staker)
        pipeline = self.pipeline()
        pipeline.add(escrow.open_stake_instruction(goal, stake, staker, amount,
                                                   program_id=self.program_id))
        return self._plan("open_stake", pipeline, goal, staker, stake)

    async def deposit_stake(self, goal: GoalAccount, staker: Pubkey) -> ActionPlan:
        goal_address, stake = self._addresses(goal.goal_hash, staker)
        pipeline = self.pipeline()
        await self._queue_deposit(pipeline, goal_address, stake, staker, goal.token_mint)
        return self._plan("deposit_stake", pipeline, goal_address, staker, stake)

    async def one_click_stake(self, goal: GoalAccount, staker: Pubkey, amount: int) -> ActionPlan:
        """Open and fund a stake in a single submission."""
        validate_amount(amount)

        goal_address, stake = self._addresses(goal.goal_hash, staker)
        pipeline = self.pipeline()
        pipeline.add(escrow.open_stake_instruction(goal_address, stake, staker, amount,
                                                   program_id=self.program_id))
        await self._queue_deposit(pipeline, goal_address, stake, staker, goal.token_mint)
        return self._plan("one_click_stake", pipeline, goal_address, staker, stake)

    async def create_goal_and_stake(self, authority: Pubkey, goal_hash: bytes, starts_on: int,
                                    ends_on: int, amount: int, resolver: Optional[Pubkey] = None,
                                    token_mint: Optional[Pubkey] = None) -> ActionPlan:
        """Initialize a goal and stake on it as its creator, atomically."""
        goal_hash = validate_goal_hash(goal_hash)
        validate_window(starts_on, ends_on, self.clock())
        validate_amount(amount)
        mint = self._mint(token_mint)

        pipeline = self.pipeline()
        goal, stake = self._addresses(goal_hash, authority)
        await self._queue_init_goal(pipeline, authority, goal_hash, starts_on, ends_on, resolver, mint)
        pipeline.add(escrow.open_stake_instruction(goal, stake, authority, amount,
                                                   program_id=self.program_id))
        await self._queue_deposit(pipeline, goal, stake, authority, mint)
        return self._plan("create_goal_and_stake", pipeline, goal, authority, stake)

    async def cancel_before_start(self, goal: GoalAccount, staker: Pubkey) -> ActionPlan:
        goal_address, stake = self._addresses(goal.goal_hash, staker)
        pipeline = self.pipeline()
        staker_ata = await pipeline.ensure_token_account(staker, goal.token_mint, staker)
        goal_vault = await pipeline.ensure_token_account(goal_address, goal.token_mint, staker)
        pipeline.add(escrow.cancel_before_start_instruction(goal_address, stake, staker, staker_ata,
                                                            goal_vault, program_id=self.program_id))
        return self._plan("cancel_before_start", pipeline, goal_address, staker, stake)

    async def resolve_success(self, goal: GoalAccount, resolver: Pubkey, staker: Pubkey) -> ActionPlan:
        goal_address, stake = self._addresses(goal.goal_hash, staker)
        pipeline = self.pipeline()
        staker_ata = await pipeline.ensure_token_account(staker, goal.token_mint, resolver)
        goal_vault = await pipeline.ensure_token_account(goal_address, goal.token_mint, resolver)
        pipeline.add(escrow.resolve_success_instruction(goal_address, resolver, stake, goal_vault,
                                                        staker_ata, program_id=self.program_id))
        plan = self._plan("resolve_success", pipeline, goal_address, resolver, stake)
        plan.key = (str(goal_address), str(staker))
        return plan

    async def resolve_failure(self, goal: GoalAccount, resolver: Pubkey, staker: Pubkey) -> ActionPlan:
        goal_address, stake = self._addresses(goal.goal_hash, staker)
        pipeline = self.pipeline()
        goal_vault = await pipeline.ensure_token_account(goal_address, goal.token_mint, resolver)
        await pipeline.require_account(goal.group_vault, "Group vault")
        pipeline.add(escrow.resolve_failure_instruction(goal_address, resolver, stake, goal_vault,
                                                        goal.group_vault, program_id=self.program_id))
        plan = self._plan("resolve_failure", pipeline, goal_address, resolver, stake)
        plan.key = (str(goal_address), str(staker))
        return plan

    async def finalize(self, plan: ActionPlan, fee_payer: Pubkey) -> TransactionMessage:
        """Attach the fee payer and a fresh blockhash; call right before signing."""
        blockhash = await self.reader.ledger.get_latest_blockhash()
        return TransactionBuilder(fee_payer, blockhash).add_instructions(plan.instructions).build()
