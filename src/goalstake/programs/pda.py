"""
Program Derived Addresses (PDA)

A derived address is a 32-byte key that provably has no private key: it is
a SHA-256 digest of seeds, the owning program id and a fixed marker, chosen
so that it is *not* a valid Ed25519 point. Programs sign for these
addresses themselves.

Finding one is a small search: start with bump 255 and walk down until the
digest falls off the curve. The on-chain program runs the exact same rule,
so any disagreement here silently points at the wrong account instead of
raising an error.

Seed tables used by the escrow program:
- Goal:   ("goal", goal_hash)
- Stake:  ("stake", goal_address, staker_address)
- Token account (ATA): (owner, token_program_id, mint) under the
  associated-token program
"""

import hashlib
from functools import lru_cache
from typing import Sequence, Tuple

from ecdsa.eddsa import curve_ed25519
from ecdsa.ellipticcurve import PointEdwards
from ecdsa.errors import MalformedPointError

from ..core.accounts import Pubkey

MAX_SEEDS = 16
MAX_SEED_LENGTH = 32
PDA_MARKER = b"ProgramDerivedAddress"

GOAL_SEED = b"goal"
STAKE_SEED = b"stake"
GOAL_HASH_LENGTH = 32


class InvalidSeeds(ValueError):
    """Seeds are too long/too many, or they hash onto the curve."""


def _check_seeds(seeds: Sequence[bytes], limit: int) -> None:
    if len(seeds) > limit:
        raise InvalidSeeds(f"At most {limit} seeds allowed, got {len(seeds)}")
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise InvalidSeeds(f"Seed longer than {MAX_SEED_LENGTH} bytes: {len(seed)}")


def is_on_curve(candidate: bytes) -> bool:
    """
    True if ``candidate`` decompresses to a point on Edwards25519.

    Such a key could have a private key, so it can never be a PDA.
    """
    try:
        PointEdwards.from_bytes(curve_ed25519, bytes(candidate))
    except MalformedPointError:
        return False
    return True


def create_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Pubkey:
    """
    Hash seeds into a program address, without any bump search.

    Raises:
        InvalidSeeds: seed limits exceeded, or the result lies on the curve
    """
    _check_seeds(seeds, MAX_SEEDS)

    hasher = hashlib.sha256()
    for seed in seeds:
        hasher.update(seed)
    hasher.update(program_id.to_bytes())
    hasher.update(PDA_MARKER)

    digest = hasher.digest()
    if is_on_curve(digest):
        raise InvalidSeeds("Derived address lies on the ed25519 curve")
    return Pubkey(digest)


@lru_cache(maxsize=1024)
def _find_program_address(seeds: Tuple[bytes, ...], program_id: Pubkey) -> Tuple[Pubkey, int]:
    _check_seeds(seeds, MAX_SEEDS - 1)  # the bump is the last seed
    for bump in range(255, -1, -1):
        try:
            address = create_program_address(seeds + (bytes([bump]),), program_id)
        except InvalidSeeds:
            continue
        return address, bump
    raise InvalidSeeds("Unable to find a viable program address bump seed")


def find_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Tuple[Pubkey, int]:
    """
    Find the canonical (highest-bump) program address for ``seeds``.

    Returns:
        (address, bump)
    """
    return _find_program_address(tuple(bytes(seed) for seed in seeds), program_id)


def derive_goal_address(goal_hash: bytes, program_id: Pubkey) -> Tuple[Pubkey, int]:
    """Goal PDA from ("goal", goal_hash)."""
    if len(goal_hash) != GOAL_HASH_LENGTH:
        raise ValueError(f"goal hash must be {GOAL_HASH_LENGTH} bytes, got {len(goal_hash)}")
    return find_program_address([GOAL_SEED, goal_hash], program_id)


def derive_stake_address(goal: Pubkey, staker: Pubkey, program_id: Pubkey) -> Tuple[Pubkey, int]:
    """Stake PDA from ("stake", goal, staker)."""
    return find_program_address([STAKE_SEED, goal.to_bytes(), staker.to_bytes()], program_id)
