"""
Signers

A signer is anything with an address that can be asked to sign a
transaction and may refuse. The orchestrator only ever sees this interface:

    address: Pubkey
    async sign_transaction(transaction) -> Transaction   (raises SignerRejected)

Implementations here:
- KeypairSigner: signs with a local Ed25519 key
- ApprovalSigner: asks an approval callback first (the CLI prompts the user)

Keypair files use the Solana CLI format: a JSON array of the 64 secret key
bytes (32-byte seed followed by the public key).
"""

import asyncio
import inspect
import json
from pathlib import Path
from typing import Awaitable, Callable, Protocol, Union

from ecdsa import SigningKey

from ..core.accounts import Pubkey
from ..core.transactions import Transaction, generate_keypair, keypair_from_secret
from ..errors import EscrowError, SignerRejected, SignerUnavailable
from ..logging import get_logger

logger = get_logger("signer")

ApprovalCallback = Callable[[Transaction], Union[bool, Awaitable[bool]]]


class Signer(Protocol):
    @property
    def address(self) -> Pubkey:
        ...

    async def sign_transaction(self, transaction: Transaction) -> Transaction:
        ...


class KeypairSigner:
    """Signs with an in-memory Ed25519 key."""

    def __init__(self, signing_key: SigningKey):
        self.signing_key = signing_key
        self._address = Pubkey(signing_key.verifying_key.to_string())

    @classmethod
    def generate(cls) -> "KeypairSigner":
        signing_key, _ = generate_keypair()
        return cls(signing_key)

    @classmethod
    def from_secret(cls, secret: bytes) -> "KeypairSigner":
        signing_key, _ = keypair_from_secret(secret)
        return cls(signing_key)

    @property
    def address(self) -> Pubkey:
        return self._address

    def secret_bytes(self) -> bytes:
        """64-byte secret (seed + public key), as stored in keypair files."""
        return self.signing_key.to_string() + self._address.to_bytes()

    async def sign_transaction(self, transaction: Transaction) -> Transaction:
        try:
            return transaction.sign(self.signing_key)
        except ValueError as e:
            raise SignerRejected(f"Cannot sign: {e}") from e

    def __repr__(self) -> str:
        return f"KeypairSigner({self._address})"


class ApprovalSigner:
    """
    Wraps a signer behind an approval step.

    ``approve`` receives the unsigned transaction and returns (or resolves
    to) True to sign; False means the user declined.
    """

    def __init__(self, inner: Signer, approve: ApprovalCallback):
        self.inner = inner
        self.approve = approve

    @property
    def address(self) -> Pubkey:
        return self.inner.address

    async def sign_transaction(self, transaction: Transaction) -> Transaction:
        try:
            decision = self.approve(transaction)
            if inspect.isawaitable(decision):
                decision = await decision
        except EscrowError:
            raise
        except Exception as e:
            logger.warning("Approval step failed for %s: %r", self.address, e)
            raise SignerRejected(f"Approval failed: {e!r}") from e
        if not decision:
            logger.info("Signature declined for %s", self.address)
            raise SignerRejected("Transaction was declined by the signer")
        return await self.inner.sign_transaction(transaction)


def load_keypair_file(path: Union[str, Path]) -> KeypairSigner:
    """
    Load a Solana CLI keypair file.

    Raises:
        SignerUnavailable: file missing or not a valid keypair
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise SignerUnavailable(f"No keypair file at {path}")
    try:
        with open(path) as f:
            secret = bytes(json.load(f))
        return KeypairSigner.from_secret(secret)
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        raise SignerUnavailable(f"Invalid keypair file {path}: {e}") from e


def save_keypair_file(signer: KeypairSigner, path: Union[str, Path]) -> Path:
    """Write ``signer``'s secret in Solana CLI format (owner-readable only)."""
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(list(signer.secret_bytes()), f)
    path.chmod(0o600)
    return path


async def prompt_approval(transaction: Transaction) -> bool:
    """Terminal approval prompt, run off the event loop."""
    message = transaction.message
    print(f"📝 Transaction with {len(message.instructions)} instruction(s), "
          f"fee payer {message.fee_payer.short()}")
    answer = await asyncio.to_thread(input, "   Sign and send? [y/N] ")
    return answer.strip().lower() in ("y", "yes")
