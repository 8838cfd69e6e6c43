"""
Escrow Actions

One coroutine per user action, wiring the pieces together:

    read goal/stake -> gate (StakeStateMachine) -> compose -> orchestrate

Input validation runs before anything suspends and raises ValidationError
directly. Everything after that ends up on the returned ActionRun: check
``run.succeeded`` or call ``run.raise_for_error()``.

Example:
    async with LedgerRPC(config.rpc_url) as rpc:
        actions = EscrowActions(rpc, signer, token_mint=config.token_mint)
        run = await actions.one_click_stake(goal_hash, 1_000_000)
"""

import time
from typing import Callable, List, Optional

from ..core.accounts import Pubkey
from ..errors import SignerUnavailable, ValidationError
from ..networking.reader import AccountReader
from ..networking.rpc import Ledger
from ..programs.escrow import ESCROW_PROGRAM_ID, GoalAccount, StakeAccount
from ..programs.pda import derive_goal_address, derive_stake_address
from ..programs.token import derive_associated_token_address
from .composer import TransactionComposer, validate_amount, validate_goal_hash, validate_window
from .orchestrator import (
    ActionOrchestrator,
    ActionRun,
    ConfirmationPolicy,
    PendingSignatures,
    Reconciliation,
    StatusObserver,
)
from .signer import Signer
from .state_machine import StakeStateMachine


def resolve_window(now: float, starts_on: Optional[int] = None, ends_on: Optional[int] = None,
                   start_delay: Optional[int] = None, duration: Optional[int] = None):
    """
    Goal window as absolute (starts_on, ends_on) Unix seconds.

    Either both absolute times are given, or a start delay and a duration
    (both in seconds, both positive) relative to ``now``. The result is
    validated here, so a bad window never reaches the orchestrator.
    """
    if starts_on is not None or ends_on is not None:
        if starts_on is None or ends_on is None:
            raise ValidationError("Give both starts_on and ends_on, or neither")
        validate_window(starts_on, ends_on, now)
        return starts_on, ends_on
    if start_delay is None or duration is None:
        raise ValidationError("Give either starts_on/ends_on or start_delay/duration")
    if start_delay <= 0:
        raise ValidationError("Start delay must be greater than 0")
    if duration <= 0:
        raise ValidationError("Duration must be greater than 0")
    starts_on = int(now) + start_delay
    ends_on = starts_on + duration
    validate_window(starts_on, ends_on, now)
    return starts_on, ends_on


class EscrowActions:
    """
    The escrow client, as a host application uses it.

    Args:
        ledger: Ledger client (LedgerRPC or a test double)
        signer: The user's signer; None for read-only use
        program_id: Escrow program id
        token_mint: Stake token for new goals
        policy: Confirmation budget
        pending: Store for timed-out signatures (persisted by the CLI)
        clock: Current Unix time
    """

    def __init__(self, ledger: Ledger, signer: Optional[Signer] = None,
                 program_id: Pubkey = ESCROW_PROGRAM_ID, token_mint: Optional[Pubkey] = None,
                 policy: Optional[ConfirmationPolicy] = None,
                 pending: Optional[PendingSignatures] = None,
                 clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.signer = signer
        self.program_id = program_id
        self.token_mint = token_mint
        self.clock = clock
        self.rules = StakeStateMachine()
        self.reader = AccountReader(ledger, program_id)
        self.composer = TransactionComposer(self.reader, program_id, token_mint, clock)
        self.orchestrator = ActionOrchestrator(ledger, self.composer, signer, policy, pending)

    def subscribe(self, observer: StatusObserver) -> Callable[[], None]:
        return self.orchestrator.subscribe(observer)

    def now(self) -> int:
        return int(self.clock())

    # Addresses

    def goal_address(self, goal_hash: bytes) -> Pubkey:
        return derive_goal_address(validate_goal_hash(goal_hash), self.program_id)[0]

    def stake_address(self, goal_hash: bytes, staker: Pubkey) -> Pubkey:
        return derive_stake_address(self.goal_address(goal_hash), staker, self.program_id)[0]

    def goal_vault_address(self, goal_hash: bytes, mint: Pubkey) -> Pubkey:
        return derive_associated_token_address(self.goal_address(goal_hash), mint)

    # Reads

    async def fetch_goal(self, goal_hash: bytes) -> Optional[GoalAccount]:
        return await self.reader.fetch_goal(validate_goal_hash(goal_hash))

    async def fetch_stake(self, goal_hash: bytes, staker: Optional[Pubkey] = None) -> Optional[StakeAccount]:
        return await self.reader.fetch_stake(validate_goal_hash(goal_hash), staker or self._address())

    async def token_balance(self, owner: Optional[Pubkey] = None, mint: Optional[Pubkey] = None) -> int:
        mint = mint or self.token_mint
        if mint is None:
            raise ValidationError("No token mint configured")
        return await self.reader.token_balance(owner or self._address(), mint)

    async def available_actions(self, goal_hash: bytes, staker: Optional[Pubkey] = None) -> List[str]:
        goal = await self.reader.require_goal(validate_goal_hash(goal_hash))
        staker = staker or self._address()
        stake = await self.reader.fetch_stake(goal_hash, staker)
        signer = self.signer.address if self.signer else None
        return self.rules.available_actions(goal, stake, self.now(), signer)

    async def reconcile(self) -> List[Reconciliation]:
        return await self.orchestrator.reconcile()

    # Writes

    def _address(self) -> Pubkey:
        if self.signer is None:
            raise SignerUnavailable("No signer is available; connect a wallet first")
        return self.signer.address

    def _unsigned_run(self, action: str) -> Optional[ActionRun]:
        """A run that already failed with SignerUnavailable, if there is no signer."""
        if self.signer is not None:
            return None
        run = self.orchestrator.new_run(action)
        run.fail(SignerUnavailable("No signer is available; connect a wallet first"))
        return run

    def _key(self, goal_hash: bytes, party: Pubkey):
        return (str(self.goal_address(goal_hash)), str(party))

    async def init_goal(self, goal_hash: bytes, starts_on: Optional[int] = None,
                        ends_on: Optional[int] = None, *, start_delay: Optional[int] = None,
                        duration: Optional[int] = None, resolver: Optional[Pubkey] = None) -> ActionRun:
        """Create the goal; the signer becomes its authority (and resolver unless given)."""
        goal_hash = validate_goal_hash(goal_hash)
        starts_on, ends_on = resolve_window(self.clock(), starts_on, ends_on, start_delay, duration)
        failed = self._unsigned_run("init_goal")
        if failed:
            return failed

        authority = self.signer.address
        return await self.orchestrator.execute(
            "init_goal", self._key(goal_hash, authority),
            lambda: self.composer.init_goal(authority, goal_hash, starts_on, ends_on, resolver))

    async def open_stake(self, goal_hash: bytes, amount: int) -> ActionRun:
        goal_hash = validate_goal_hash(goal_hash)
        validate_amount(amount)
        failed = self._unsigned_run("open_stake")
        if failed:
            return failed

        staker = self.signer.address
        return await self.orchestrator.execute(
            "open_stake", self._key(goal_hash, staker),
            lambda: self.composer.open_stake(goal_hash, staker, amount))

    async def deposit_stake(self, goal_hash: bytes) -> ActionRun:
        goal_hash = validate_goal_hash(goal_hash)
        failed = self._unsigned_run("deposit_stake")
        if failed:
            return failed

        staker = self.signer.address

        async def build():
            goal = await self.reader.require_goal(goal_hash)
            return await self.composer.deposit_stake(goal, staker)

        return await self.orchestrator.execute("deposit_stake", self._key(goal_hash, staker), build)

    async def one_click_stake(self, goal_hash: bytes, amount: int) -> ActionRun:
        """Open and fund a stake on an existing goal in one transaction."""
        goal_hash = validate_goal_hash(goal_hash)
        validate_amount(amount)
        failed = self._unsigned_run("one_click_stake")
        if failed:
            return failed

        staker = self.signer.address

        async def build():
            goal = await self.reader.require_goal(goal_hash)
            return await self.composer.one_click_stake(goal, staker, amount)

        return await self.orchestrator.execute("one_click_stake", self._key(goal_hash, staker), build)

    async def create_goal_and_stake(self, goal_hash: bytes, amount: int,
                                    starts_on: Optional[int] = None, ends_on: Optional[int] = None,
                                    *, start_delay: Optional[int] = None,
                                    duration: Optional[int] = None,
                                    resolver: Optional[Pubkey] = None) -> ActionRun:
        """Create a goal and stake on it as its creator, atomically."""
        goal_hash = validate_goal_hash(goal_hash)
        validate_amount(amount)
        starts_on, ends_on = resolve_window(self.clock(), starts_on, ends_on, start_delay, duration)
        failed = self._unsigned_run("create_goal_and_stake")
        if failed:
            return failed

        authority = self.signer.address
        return await self.orchestrator.execute(
            "create_goal_and_stake", self._key(goal_hash, authority),
            lambda: self.composer.create_goal_and_stake(authority, goal_hash, starts_on, ends_on,
                                                        amount, resolver))

    async def cancel_stake(self, goal_hash: bytes) -> ActionRun:
        """Cancel the signer's stake before the goal starts, refunding any deposit."""
        goal_hash = validate_goal_hash(goal_hash)
        failed = self._unsigned_run("cancel_before_start")
        if failed:
            return failed

        staker = self.signer.address

        async def build():
            goal = await self.reader.require_goal(goal_hash)
            stake = await self.reader.fetch_stake(goal_hash, staker)
            self.rules.check_cancel(goal, stake, self.now())
            return await self.composer.cancel_before_start(goal, staker)

        return await self.orchestrator.execute("cancel_before_start", self._key(goal_hash, staker), build)

    async def _resolve(self, goal_hash: bytes, staker: Pubkey, success: bool) -> ActionRun:
        action = "resolve_success" if success else "resolve_failure"
        goal_hash = validate_goal_hash(goal_hash)
        failed = self._unsigned_run(action)
        if failed:
            return failed

        resolver = self.signer.address

        async def build():
            goal = await self.reader.require_goal(goal_hash)
            stake = await self.reader.fetch_stake(goal_hash, staker)
            self.rules.check_resolve(goal, stake, self.now(), success, signer=resolver)
            if success:
                return await self.composer.resolve_success(goal, resolver, staker)
            return await self.composer.resolve_failure(goal, resolver, staker)

        return await self.orchestrator.execute(action, self._key(goal_hash, staker), build)

    async def resolve_success(self, goal_hash: bytes, staker: Pubkey) -> ActionRun:
        """Settle ``staker``'s stake as achieved: funds go back to the staker."""
        return await self._resolve(goal_hash, staker, success=True)

    async def resolve_failure(self, goal_hash: bytes, staker: Pubkey) -> ActionRun:
        """Settle ``staker``'s stake as missed: funds go to the group vault."""
        return await self._resolve(goal_hash, staker, success=False)
