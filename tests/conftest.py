"""Pytest configuration and fixtures for goalstake tests."""

import pytest

from fake_ledger import NOW, Clock, FakeLedger
from goalstake.client.actions import EscrowActions
from goalstake.client.orchestrator import ConfirmationPolicy
from goalstake.client.signer import KeypairSigner
from goalstake.programs.escrow import goal_hash_from_identifier
from goalstake.programs.token import DEVNET_USDC_MINT



@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def ledger(clock: Clock) -> FakeLedger:
    return FakeLedger(clock)


@pytest.fixture
def mint():
    return DEVNET_USDC_MINT


@pytest.fixture
def alice() -> KeypairSigner:
    """Deterministic signer: goal creator and resolver in most tests."""
    return KeypairSigner.from_secret(bytes([1] * 32))


@pytest.fixture
def bob() -> KeypairSigner:
    return KeypairSigner.from_secret(bytes([2] * 32))


@pytest.fixture
def goal_hash() -> bytes:
    return goal_hash_from_identifier("run-10k-every-week")


@pytest.fixture
def policy() -> ConfirmationPolicy:
    """Small confirmation budget so timeout tests finish quickly."""
    return ConfirmationPolicy(attempts=3, interval=0.01)


@pytest.fixture
def make_actions(ledger, clock, mint, policy):
    """Factory for EscrowActions bound to the fake ledger."""

    def factory(signer=None, **kwargs) -> EscrowActions:
        kwargs.setdefault("policy", policy)
        return EscrowActions(ledger, signer, token_mint=mint, clock=clock, **kwargs)

    return factory
