"""
Stake State Machine

Client-side mirror of the escrow program's lifecycle rules:

    Pending --deposit--> Funded --resolve--> Success | Failure
    Pending | Funded --cancel (before start)--> Canceled

Success, Failure and Canceled are terminal.

Cancel and resolve are gated here so a doomed transaction is never built.
Open and deposit are only advised: the program is the judge there, and an
out-of-order attempt comes back as an on-chain rejection.

Everything is pure; ``now`` is always passed in.
"""

from typing import List, Optional

from ..core.accounts import Pubkey
from ..errors import ActionNotAllowed
from ..programs.escrow import GoalAccount, StakeAccount, StakeStatus

OPEN = "open_stake"
DEPOSIT = "deposit_stake"
CANCEL = "cancel_before_start"
RESOLVE_SUCCESS = "resolve_success"
RESOLVE_FAILURE = "resolve_failure"

TRANSITIONS = {
    (StakeStatus.PENDING, DEPOSIT): StakeStatus.FUNDED,
    (StakeStatus.PENDING, CANCEL): StakeStatus.CANCELED,
    (StakeStatus.FUNDED, CANCEL): StakeStatus.CANCELED,
    (StakeStatus.FUNDED, RESOLVE_SUCCESS): StakeStatus.SUCCESS,
    (StakeStatus.FUNDED, RESOLVE_FAILURE): StakeStatus.FAILURE,
}


class StakeStateMachine:
    """Which stake actions are legal, given goal timing and current status."""

    @staticmethod
    def next_status(status: StakeStatus, action: str) -> StakeStatus:
        """Status after ``action`` succeeds on-chain."""
        try:
            return TRANSITIONS[(status, action)]
        except KeyError:
            raise ActionNotAllowed(f"Cannot {action} a stake that is {status.label}") from None

    @staticmethod
    def can_cancel(goal: GoalAccount, stake: Optional[StakeAccount], now: int) -> bool:
        return (stake is not None
                and now < goal.starts_on
                and stake.status in (StakeStatus.PENDING, StakeStatus.FUNDED))

    @staticmethod
    def can_resolve(goal: GoalAccount, stake: Optional[StakeAccount], now: int) -> bool:
        return stake is not None and now >= goal.ends_on and stake.status == StakeStatus.FUNDED

    def check_cancel(self, goal: GoalAccount, stake: Optional[StakeAccount], now: int) -> StakeStatus:
        """
        Gate a cancel before anything is built.

        Returns:
            The status the stake will have afterwards (Canceled)

        Raises:
            ActionNotAllowed: goal already started, no stake, or wrong status
        """
        if stake is None:
            raise ActionNotAllowed("No stake to cancel")
        if now >= goal.starts_on:
            raise ActionNotAllowed(f"Goal started at {goal.starts_on}; stakes can no longer be canceled")
        return self.next_status(stake.status, CANCEL)

    def check_resolve(self, goal: GoalAccount, stake: Optional[StakeAccount], now: int,
                      success: bool, signer: Optional[Pubkey] = None) -> StakeStatus:
        """
        Gate a resolve before anything is built.

        When ``signer`` is given it must be the goal's resolver: only that key
        can settle stakes, so a transaction signed by anyone else is doomed.

        Raises:
            ActionNotAllowed: goal not over, stake not Funded, or wrong signer
        """
        if stake is None:
            raise ActionNotAllowed("No stake to resolve")
        if signer is not None and signer != goal.resolver:
            raise ActionNotAllowed(f"{signer} is not the resolver of this goal ({goal.resolver})")
        if now < goal.ends_on:
            raise ActionNotAllowed(f"Goal ends at {goal.ends_on}; stakes cannot be resolved yet")
        return self.next_status(stake.status, RESOLVE_SUCCESS if success else RESOLVE_FAILURE)

    def available_actions(self, goal: GoalAccount, stake: Optional[StakeAccount], now: int,
                          signer: Optional[Pubkey] = None) -> List[str]:
        """
        Actions worth offering right now (advisory; used to drive UIs).

        Resolve actions are only listed for the goal's resolver when
        ``signer`` is given.
        """
        actions = []
        if stake is None:
            actions.append(OPEN)
        elif stake.status == StakeStatus.PENDING:
            actions.append(DEPOSIT)

        if self.can_cancel(goal, stake, now):
            actions.append(CANCEL)
        if self.can_resolve(goal, stake, now) and (signer is None or signer == goal.resolver):
            actions.extend([RESOLVE_SUCCESS, RESOLVE_FAILURE])
        return actions
