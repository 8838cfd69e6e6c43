"""Tests for the stake lifecycle rules."""

import pytest

from fake_ledger import NOW
from goalstake.client.state_machine import (
    CANCEL,
    DEPOSIT,
    OPEN,
    RESOLVE_FAILURE,
    RESOLVE_SUCCESS,
    StakeStateMachine,
)
from goalstake.core.accounts import Pubkey
from goalstake.errors import ActionNotAllowed
from goalstake.programs.escrow import GoalAccount, StakeAccount, StakeStatus

RESOLVER = Pubkey(bytes([2]) * 32)
STAKER = Pubkey(bytes([6]) * 32)
STARTS_ON = NOW + 100
ENDS_ON = NOW + 200


@pytest.fixture
def rules() -> StakeStateMachine:
    return StakeStateMachine()


@pytest.fixture
def goal() -> GoalAccount:
    return GoalAccount(bytes(32), RESOLVER, RESOLVER, RESOLVER, RESOLVER, STARTS_ON, ENDS_ON)


def stake(status: StakeStatus) -> StakeAccount:
    return StakeAccount(goal=RESOLVER, staker=STAKER, amount=10, status=status, created_at=NOW)


class TestTransitions:
    """Tests for the status transition table."""

    @pytest.mark.parametrize("status,action,expected", [
        (StakeStatus.PENDING, DEPOSIT, StakeStatus.FUNDED),
        (StakeStatus.PENDING, CANCEL, StakeStatus.CANCELED),
        (StakeStatus.FUNDED, CANCEL, StakeStatus.CANCELED),
        (StakeStatus.FUNDED, RESOLVE_SUCCESS, StakeStatus.SUCCESS),
        (StakeStatus.FUNDED, RESOLVE_FAILURE, StakeStatus.FAILURE),
    ])
    def test_allowed(self, rules, status, action, expected):
        """Should move to the next status."""
        assert rules.next_status(status, action) == expected

    @pytest.mark.parametrize("status", [StakeStatus.SUCCESS, StakeStatus.FAILURE, StakeStatus.CANCELED])
    @pytest.mark.parametrize("action", [DEPOSIT, CANCEL, RESOLVE_SUCCESS, RESOLVE_FAILURE])
    def test_terminal_statuses_are_final(self, rules, status, action):
        """Should never leave a terminal status."""
        with pytest.raises(ActionNotAllowed):
            rules.next_status(status, action)

    def test_pending_cannot_resolve(self, rules):
        """Should require a deposit before resolving."""
        with pytest.raises(ActionNotAllowed, match="Pending"):
            rules.next_status(StakeStatus.PENDING, RESOLVE_SUCCESS)


class TestCancelGate:
    """Tests for cancel_before_start gating."""

    def test_before_start(self, rules, goal):
        """Should allow cancelling Pending and Funded stakes before the start."""
        for status in (StakeStatus.PENDING, StakeStatus.FUNDED):
            assert rules.check_cancel(goal, stake(status), STARTS_ON - 1) == StakeStatus.CANCELED

    def test_at_start(self, rules, goal):
        """Should refuse once the goal has started."""
        with pytest.raises(ActionNotAllowed, match="started"):
            rules.check_cancel(goal, stake(StakeStatus.FUNDED), STARTS_ON)

    def test_no_stake(self, rules, goal):
        """Should refuse when there is nothing to cancel."""
        with pytest.raises(ActionNotAllowed):
            rules.check_cancel(goal, None, NOW)


class TestResolveGate:
    """Tests for resolve gating."""

    def test_after_end(self, rules, goal):
        """Should allow resolving a Funded stake once the goal ended."""
        assert rules.check_resolve(goal, stake(StakeStatus.FUNDED), ENDS_ON, True) == StakeStatus.SUCCESS
        assert rules.check_resolve(goal, stake(StakeStatus.FUNDED), ENDS_ON, False) == StakeStatus.FAILURE

    def test_before_end(self, rules, goal):
        """Should refuse while the goal is still running."""
        with pytest.raises(ActionNotAllowed, match="cannot be resolved yet"):
            rules.check_resolve(goal, stake(StakeStatus.FUNDED), ENDS_ON - 1, True)

    def test_pending_stake(self, rules, goal):
        """Should refuse stakes that were never funded."""
        with pytest.raises(ActionNotAllowed):
            rules.check_resolve(goal, stake(StakeStatus.PENDING), ENDS_ON, True)

    def test_wrong_signer(self, rules, goal):
        """Should refuse signers other than the goal's resolver."""
        with pytest.raises(ActionNotAllowed, match="not the resolver"):
            rules.check_resolve(goal, stake(StakeStatus.FUNDED), ENDS_ON, True, signer=STAKER)
        assert rules.check_resolve(goal, stake(StakeStatus.FUNDED), ENDS_ON, True, signer=RESOLVER)


class TestAvailableActions:
    """Tests for the advisory action list."""

    def test_no_stake(self, rules, goal):
        """Should offer opening a stake."""
        assert rules.available_actions(goal, None, NOW) == [OPEN]

    def test_pending_before_start(self, rules, goal):
        """Should offer deposit and cancel."""
        assert rules.available_actions(goal, stake(StakeStatus.PENDING), NOW) == [DEPOSIT, CANCEL]

    def test_funded_while_running(self, rules, goal):
        """Should offer nothing between start and end."""
        assert rules.available_actions(goal, stake(StakeStatus.FUNDED), STARTS_ON + 1) == []

    def test_funded_after_end(self, rules, goal):
        """Should offer resolution to the resolver only."""
        funded = stake(StakeStatus.FUNDED)
        assert rules.available_actions(goal, funded, ENDS_ON, RESOLVER) == [RESOLVE_SUCCESS, RESOLVE_FAILURE]
        assert rules.available_actions(goal, funded, ENDS_ON, STAKER) == []

    def test_terminal(self, rules, goal):
        """Should offer nothing for settled stakes."""
        assert rules.available_actions(goal, stake(StakeStatus.SUCCESS), ENDS_ON) == []
