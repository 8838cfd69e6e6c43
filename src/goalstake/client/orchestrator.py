"""
Action Orchestrator

Drives one escrow action through its phases:

    Idle -> Building -> Signing -> Broadcasting -> Confirming -> Success
                                                              \\-> Error (from any phase)

Rules:
- Phases only move forward; a run that reached Error is finished and the
  caller starts a fresh run (nothing is retried implicitly)
- The only bounded retry is the confirmation poll: ``confirm_attempts``
  status checks, ``confirm_interval`` seconds apart
- A poll that runs out is a ConfirmationTimeout, neither success nor
  failure; its signature is remembered and ``reconcile()`` checks it later
- Actions on the same (goal, staker) key never interleave; different keys
  run concurrently
- Aborting (``ActionRun.abort()`` or task cancellation) stops the poll at
  once and commits nothing

Observers get an ``ActionStatus`` snapshot on every phase change.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, Hashable, List, Optional

from ..core.transactions import Transaction
from ..errors import (
    ConfirmationAborted,
    ConfirmationTimeout,
    EscrowError,
    OnChainRejection,
    SignerRejected,
    SignerUnavailable,
    TransportError,
)
from ..logging import get_logger
from ..networking.rpc import Ledger, SignatureStatus
from .composer import ActionPlan, TransactionComposer
from .signer import Signer

logger = get_logger("orchestrator")

DEFAULT_CONFIRM_ATTEMPTS = 30
DEFAULT_CONFIRM_INTERVAL = 1.0

# Reconcile passes a signature may stay unknown before it is given up on
DEFAULT_RECONCILE_CHECKS = 5


class Phase(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    SIGNING = "signing"
    BROADCASTING = "broadcasting"
    CONFIRMING = "confirming"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.SUCCESS, Phase.ERROR)


ALLOWED_TRANSITIONS = {
    Phase.IDLE: {Phase.BUILDING, Phase.ERROR},
    Phase.BUILDING: {Phase.SIGNING, Phase.ERROR},
    Phase.SIGNING: {Phase.BROADCASTING, Phase.ERROR},
    Phase.BROADCASTING: {Phase.CONFIRMING, Phase.ERROR},
    Phase.CONFIRMING: {Phase.SUCCESS, Phase.ERROR},
    Phase.SUCCESS: set(),
    Phase.ERROR: set(),
}


class InvalidTransition(RuntimeError):
    """A phase change that would move a run backwards or out of a terminal phase."""


@dataclass(frozen=True)
class ActionStatus:
    """Snapshot of a run, as delivered to observers."""
    action: str
    phase: Phase
    message: str
    signature: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "phase": self.phase.value,
            "message": self.message,
            "signature": self.signature,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
        }


StatusObserver = Callable[[ActionStatus], None]


class ActionRun:
    """One attempt at one action. Never reused after it finishes."""

    def __init__(self, action: str, observers: Optional[List[StatusObserver]] = None):
        self.action = action
        self.phase = Phase.IDLE
        self.message = "Idle"
        self.signature: Optional[str] = None
        self.error: Optional[EscrowError] = None
        self.history: List[Phase] = [Phase.IDLE]
        self._observers = list(observers or [])
        self._abort = asyncio.Event()

    @property
    def status(self) -> ActionStatus:
        return ActionStatus(
            action=self.action,
            phase=self.phase,
            message=self.message,
            signature=self.signature,
            error_kind=self.error.kind if self.error else None,
            error_message=self.error.message if self.error else None,
        )

    @property
    def succeeded(self) -> bool:
        return self.phase == Phase.SUCCESS

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self) -> None:
        """Ask an in-flight confirmation poll to stop."""
        self._abort.set()

    async def wait_aborted(self) -> None:
        await self._abort.wait()

    def transition(self, phase: Phase, message: str) -> None:
        if phase not in ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidTransition(f"{self.action}: cannot go from {self.phase.value} to {phase.value}")
        self.phase = phase
        self.message = message
        self.history.append(phase)
        logger.info("%s: %s (%s)", self.action, phase.value, message,
                    extra={"fields": {"action": self.action, "phase": phase.value,
                                      "signature": self.signature}})
        self._notify()

    def fail(self, error: EscrowError) -> None:
        if error.signature is None and self.signature is not None:
            error.signature = self.signature
        self.error = error
        self.transition(Phase.ERROR, error.message)

    def raise_for_error(self) -> "ActionRun":
        """Re-raise the terminal error, if there is one."""
        if self.error is not None:
            raise self.error
        return self

    def _notify(self) -> None:
        status = self.status
        for observer in self._observers:
            try:
                observer(status)
            except Exception:
                logger.exception("Status observer failed for %s", self.action)


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits for it."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


@dataclass
class PendingSignature:
    signature: str
    action: str
    checks: int = 0                       # Reconcile passes that found nothing


@dataclass
class Reconciliation:
    """Outcome of re-checking a signature whose confirmation timed out."""
    signature: str
    action: str
    outcome: str                          # "confirmed", "failed", "pending" or "expired"
    error: Optional[EscrowError] = None


class PendingSignatures:
    """
    Signatures whose confirmation poll timed out.

    Kept in memory, and in a JSON file when ``path`` is given so the next
    session can reconcile them. A signature the ledger still knows nothing
    about after ``max_checks`` reconcile passes is dropped.
    """

    def __init__(self, path: Optional[Path] = None, max_checks: int = DEFAULT_RECONCILE_CHECKS):
        if max_checks < 1:
            raise ValueError("max_checks must be at least 1")
        self.path = path
        self.max_checks = max_checks
        self._pending: Dict[str, PendingSignature] = {}
        if path is not None and path.exists():
            self._load()

    def _load(self) -> None:
        try:
            with open(self.path) as f:
                entries = json.load(f)
            for entry in entries:
                pending = PendingSignature(entry["signature"], entry["action"], int(entry.get("checks", 0)))
                self._pending[pending.signature] = pending
        except (json.JSONDecodeError, IOError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Ignoring unreadable pending signature file %s: %s", self.path, e)
            self._pending.clear()

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump([vars(p) for p in self._pending.values()], f, indent=2)

    def add(self, signature: str, action: str) -> None:
        self._pending[signature] = PendingSignature(signature, action)
        self._save()

    def discard(self, signature: str) -> None:
        if self._pending.pop(signature, None) is not None:
            self._save()

    def record_miss(self, signature: str) -> bool:
        """
        Count one reconcile pass that found nothing for ``signature``.

        Returns True once the signature has used up its checks; it is then
        dropped from the store.
        """
        entry = self._pending[signature]
        entry.checks += 1
        if entry.checks >= self.max_checks:
            del self._pending[signature]
            expired = True
        else:
            expired = False
        self._save()
        return expired

    def __contains__(self, signature: str) -> bool:
        return signature in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def entries(self) -> List[PendingSignature]:
        return list(self._pending.values())


@dataclass
class ConfirmationPolicy:
    attempts: int = DEFAULT_CONFIRM_ATTEMPTS
    interval: float = DEFAULT_CONFIRM_INTERVAL
    commitment: str = "confirmed"

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("confirm attempts must be at least 1")
        if self.interval < 0:
            raise ValueError("confirm interval cannot be negative")


class ActionOrchestrator:
    """
    Runs composed actions: build -> sign -> broadcast -> confirm.

    Args:
        ledger: Ledger client used to broadcast and poll
        composer: Composer that finalizes plans (fee payer + blockhash)
        signer: Injected signer; None means no signing capability
        policy: Confirmation budget and commitment level
        pending: Store for timed-out signatures
    """

    def __init__(self, ledger: Ledger, composer: TransactionComposer, signer: Optional[Signer] = None,
                 policy: Optional[ConfirmationPolicy] = None,
                 pending: Optional[PendingSignatures] = None):
        self.ledger = ledger
        self.composer = composer
        self.signer = signer
        self.policy = policy or ConfirmationPolicy()
        self.pending = pending if pending is not None else PendingSignatures()
        self.locks = KeyedLocks()
        self._observers: List[StatusObserver] = []

    def subscribe(self, observer: StatusObserver) -> Callable[[], None]:
        """Receive every status update of every run; returns an unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)
        return unsubscribe

    def new_run(self, action: str) -> ActionRun:
        return ActionRun(action, self._observers)

    async def execute(self, action: str, key: Hashable, build: Callable[[], Awaitable[ActionPlan]],
                      run: Optional[ActionRun] = None) -> ActionRun:
        """
        Run ``build`` and submit its plan, serialized on ``key``.

        ``build`` runs inside the lock, so the reads it gates on cannot go
        stale because of another action on the same key. Escrow errors end
        the run in Error and are kept on ``run.error``; they are not raised.
        Anything else also ends the run in Error, then propagates.
        """
        run = run or self.new_run(action)
        if run.phase != Phase.IDLE:
            raise InvalidTransition(f"{action}: a run can only be executed once")

        async with self.locks.hold(key):
            try:
                run.transition(Phase.BUILDING, f"Building {action}")
                plan = await build()
                signer = self._require_signer(plan)
                message = await self.composer.finalize(plan, signer.address)

                run.transition(Phase.SIGNING, "Waiting for signature approval")
                transaction = await self._sign(signer, Transaction(message=message))
                run.signature = transaction.signature

                run.transition(Phase.BROADCASTING, "Sending transaction")
                run.signature = await self.ledger.send_transaction(transaction)

                run.transition(Phase.CONFIRMING, "Waiting for confirmation")
                await self.confirm(run.signature, run)
                run.transition(Phase.SUCCESS, f"{action} confirmed")
            except ConfirmationTimeout as error:
                self.pending.add(error.signature or run.signature, action)
                run.fail(error)
            except EscrowError as error:
                run.fail(error)
            except asyncio.CancelledError:
                if not run.phase.is_terminal:
                    run.fail(ConfirmationAborted(f"{action} was cancelled", run.signature))
                raise
            except Exception as error:
                if not run.phase.is_terminal:
                    run.fail(EscrowError(f"{action} failed unexpectedly: {error!r}", run.signature))
                raise
        return run

    def _require_signer(self, plan: ActionPlan) -> Signer:
        if self.signer is None:
            raise SignerUnavailable("No signer is available; connect a wallet first")
        if plan.signers and self.signer.address not in plan.signers:
            required = ", ".join(str(key) for key in plan.signers)
            raise SignerUnavailable(f"{plan.action} must be signed by {required}, "
                                    f"but the signer is {self.signer.address}")
        return self.signer

    async def _sign(self, signer: Signer, transaction: Transaction) -> Transaction:
        signed = await signer.sign_transaction(transaction)
        missing = signed.missing_signers()
        if missing:
            raise SignerRejected(f"Transaction is missing signatures from {', '.join(map(str, missing))}")
        return signed

    async def confirm(self, signature: str, run: Optional[ActionRun] = None) -> SignatureStatus:
        """
        Poll until ``signature`` reaches the policy's commitment.

        Raises:
            OnChainRejection: the transaction landed with an error
            ConfirmationTimeout: the attempt budget ran out
            ConfirmationAborted: ``run.abort()`` was called
        """
        policy = self.policy
        for attempt in range(1, policy.attempts + 1):
            if run is not None and run.aborted:
                raise ConfirmationAborted("Confirmation aborted", signature)
            try:
                status = (await self.ledger.get_signature_statuses([signature]))[0]
            except TransportError as e:
                logger.warning("Status check %d/%d for %s failed: %s",
                               attempt, policy.attempts, signature, e)
                status = None

            if status is not None:
                if status.err is not None:
                    raise OnChainRejection.from_transaction_error(status.err, signature=signature)
                if status.reached(policy.commitment):
                    return status

            if attempt < policy.attempts:
                await self._wait(run, signature)

        raise ConfirmationTimeout(
            f"Not confirmed after {policy.attempts} checks; it may still land later", signature)

    async def _wait(self, run: Optional[ActionRun], signature: str) -> None:
        if run is None:
            await asyncio.sleep(self.policy.interval)
            return
        try:
            await asyncio.wait_for(run.wait_aborted(), timeout=self.policy.interval)
        except asyncio.TimeoutError:
            return
        raise ConfirmationAborted("Confirmation aborted", signature)

    async def reconcile(self) -> List[Reconciliation]:
        """
        Check every remembered timed-out signature once.

        The lookup searches the full transaction history, since these
        signatures usually come from an earlier session. Definitive answers
        (confirmed or failed) are forgotten; the rest stay pending for the
        next call until they run out of checks and expire.
        """
        entries = self.pending.entries()
        if not entries:
            return []

        statuses = await self.ledger.get_signature_statuses(
            [entry.signature for entry in entries], search_history=True)
        results = []
        for entry, status in zip(entries, statuses):
            if status is not None and status.err is not None:
                error = OnChainRejection.from_transaction_error(status.err, signature=entry.signature)
                results.append(Reconciliation(entry.signature, entry.action, "failed", error))
                self.pending.discard(entry.signature)
            elif status is not None and status.reached(self.policy.commitment):
                results.append(Reconciliation(entry.signature, entry.action, "confirmed"))
                self.pending.discard(entry.signature)
            elif status is None and self.pending.record_miss(entry.signature):
                logger.warning("Giving up on %s (%s): not found after %d checks",
                               entry.signature, entry.action, self.pending.max_checks)
                results.append(Reconciliation(entry.signature, entry.action, "expired"))
            else:
                results.append(Reconciliation(entry.signature, entry.action, "pending"))
            logger.info("Reconciled %s (%s): %s", entry.signature, entry.action, results[-1].outcome)
        return results
