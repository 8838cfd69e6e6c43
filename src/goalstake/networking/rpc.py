"""
Ledger JSON-RPC Client

Thin async wrapper over the ledger's HTTP JSON-RPC API, covering exactly
the calls the escrow client makes:
- getAccountInfo (base64 account data)
- getLatestBlockhash (the transaction freshness token)
- sendTransaction (base64 wire format, with preflight simulation)
- getSignatureStatuses (confirmation polling)
- getBalance

Failures are classified, never retried here:
- Endpoint unreachable / HTTP failure        -> TransportError
- Preflight simulation or signature failure  -> OnChainRejection (with logs)
- Any other JSON-RPC error object            -> RpcResponseError
- A result that does not have the documented shape -> RpcResponseError

Based on: https://solana.com/docs/rpc/http
"""

import base64
import itertools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from ..core.accounts import AccountInfo, Pubkey
from ..core.transactions import Transaction
from ..errors import OnChainRejection, RpcResponseError, TransportError
from ..logging import get_logger

logger = get_logger("rpc")

DEVNET_URL = "https://api.devnet.solana.com"

# Ordered from weakest to strongest
COMMITMENT_LEVELS = ("processed", "confirmed", "finalized")

# JSON-RPC server error codes that mean "the transaction itself was rejected"
SEND_TRANSACTION_PREFLIGHT_FAILURE = -32002
TRANSACTION_SIGNATURE_VERIFICATION_FAILURE = -32003
REJECTION_CODES = (SEND_TRANSACTION_PREFLIGHT_FAILURE, TRANSACTION_SIGNATURE_VERIFICATION_FAILURE)


def commitment_reached(status: Optional[str], required: str) -> bool:
    """True if ``status`` is at least as strong as ``required``."""
    if status not in COMMITMENT_LEVELS:
        return False
    return COMMITMENT_LEVELS.index(status) >= COMMITMENT_LEVELS.index(required)


@dataclass
class SignatureStatus:
    """One entry of a getSignatureStatuses response."""
    slot: int
    confirmations: Optional[int]     # None once finalized
    err: Any                         # TransactionError value, None on success
    confirmation_status: Optional[str]

    @classmethod
    def from_json(cls, value: Dict[str, Any]) -> "SignatureStatus":
        return cls(
            slot=value.get("slot", 0),
            confirmations=value.get("confirmations"),
            err=value.get("err"),
            confirmation_status=value.get("confirmationStatus"),
        )

    def reached(self, commitment: str) -> bool:
        return commitment_reached(self.confirmation_status, commitment)


class Ledger(Protocol):
    """
    What the client needs from a ledger.

    ``LedgerRPC`` talks to a real node; tests substitute an in-memory ledger.
    """

    async def get_account_info(self, address: Pubkey) -> Optional[AccountInfo]:
        ...

    async def get_latest_blockhash(self) -> str:
        ...

    async def send_transaction(self, transaction: Transaction) -> str:
        ...

    async def get_signature_statuses(self, signatures: Sequence[str],
                                     search_history: bool = False) -> List[Optional[SignatureStatus]]:
        ...

    async def get_balance(self, address: Pubkey) -> int:
        ...


class LedgerRPC:
    """
    JSON-RPC client for a ledger node.

    Use as an async context manager, or call ``close()`` when done::

        async with LedgerRPC(DEVNET_URL) as rpc:
            blockhash = await rpc.get_latest_blockhash()
    """

    def __init__(self, url: str = DEVNET_URL, commitment: str = "confirmed",
                 timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        if commitment not in COMMITMENT_LEVELS:
            raise ValueError(f"Unknown commitment level: {commitment}")
        self.url = url
        self.commitment = commitment
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "LedgerRPC":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Issue one JSON-RPC call and return its ``result``.

        Raises:
            TransportError: endpoint unreachable, timed out, or non-2xx response
            OnChainRejection: the node rejected a transaction during preflight
            RpcResponseError: any other JSON-RPC error object
        """
        client = self._ensure_client()
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        logger.debug("RPC request -> method=%s id=%s", method, payload["id"])

        try:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("HTTP error on %s via %s: %s", method, self.url, exc)
            raise TransportError(f"HTTP {exc.response.status_code} from ledger on {method}") from exc
        except httpx.RequestError as exc:
            logger.warning("Request error on %s via %s: %s", method, self.url, exc)
            raise TransportError(f"Ledger unreachable on {method}: {exc}") from exc
        except ValueError as exc:
            logger.warning("Malformed JSON from %s on %s", self.url, method)
            raise TransportError(f"Malformed response from ledger on {method}") from exc

        if "error" in data:
            raise self._classify_error(method, data["error"])
        if "result" not in data:
            raise RpcResponseError(f"Response to {method} has neither result nor error")
        return data["result"]

    @staticmethod
    def _classify_error(method: str, error: Dict[str, Any]) -> Exception:
        code = error.get("code")
        message = error.get("message", "Unknown RPC error")
        logger.warning("RPC error on %s: code=%s message=%s", method, code, message)

        if code in REJECTION_CODES:
            detail = error.get("data") or {}
            err = detail.get("err") if isinstance(detail, dict) else None
            logs = detail.get("logs") if isinstance(detail, dict) else None
            if err is not None:
                return OnChainRejection.from_transaction_error(err, logs=logs)
            return OnChainRejection(message, logs=logs)
        return RpcResponseError(f"{method}: {message}", code=code)

    @staticmethod
    def _value(result: Any, method: str) -> Any:
        """The ``value`` inside a context envelope; a malformed reply is an RpcResponseError."""
        try:
            return result["value"]
        except (KeyError, TypeError) as exc:
            logger.warning("Malformed %s result: %r", method, result)
            raise RpcResponseError(f"Unexpected {method} response: missing value") from exc

    # Typed calls

    async def get_account_info(self, address: Pubkey) -> Optional[AccountInfo]:
        """Raw account at ``address``, or None if no account exists there."""
        result = await self.request("getAccountInfo", [
            str(address),
            {"encoding": "base64", "commitment": self.commitment},
        ])
        value = self._value(result, "getAccountInfo")
        if value is None:
            return None

        try:
            encoded, encoding = value["data"]
            if encoding != "base64":
                raise RpcResponseError(f"getAccountInfo returned {encoding} data, expected base64")
            return AccountInfo(
                lamports=value["lamports"],
                data=base64.b64decode(encoded, validate=True),
                owner=Pubkey.from_string(value["owner"]),
                executable=value.get("executable", False),
                rent_epoch=value.get("rentEpoch", 0),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed getAccountInfo value for %s: %s", address, exc)
            raise RpcResponseError(f"Unexpected getAccountInfo response for {address}: {exc}") from exc

    async def get_latest_blockhash(self) -> str:
        result = await self.request("getLatestBlockhash", [{"commitment": self.commitment}])
        value = self._value(result, "getLatestBlockhash")
        if not isinstance(value, dict) or not isinstance(value.get("blockhash"), str):
            raise RpcResponseError("Unexpected getLatestBlockhash response: missing blockhash")
        return value["blockhash"]

    async def send_transaction(self, transaction: Transaction) -> str:
        """Broadcast a fully signed transaction; returns its signature."""
        wire = base64.b64encode(transaction.serialize()).decode("ascii")
        try:
            signature = await self.request("sendTransaction", [
                wire,
                {"encoding": "base64", "preflightCommitment": self.commitment},
            ])
        except OnChainRejection as rejection:
            rejection.signature = transaction.signature
            raise
        if not isinstance(signature, str):
            raise RpcResponseError(f"Unexpected sendTransaction response: {signature!r}",
                                   signature=transaction.signature)
        logger.info("Transaction sent: %s", signature)
        return signature

    async def get_signature_statuses(self, signatures: Sequence[str],
                                     search_history: bool = False) -> List[Optional[SignatureStatus]]:
        """
        Statuses for ``signatures``, None where the node knows nothing.

        Without ``search_history`` only the node's recent status cache is
        consulted, which is what a live confirmation poll wants. Checking a
        signature from an earlier session needs the full history.
        """
        result = await self.request("getSignatureStatuses", [
            list(signatures),
            {"searchTransactionHistory": search_history},
        ])
        values = self._value(result, "getSignatureStatuses")
        if not isinstance(values, list) or len(values) != len(signatures):
            raise RpcResponseError("Unexpected getSignatureStatuses response: wrong number of entries")
        try:
            return [
                SignatureStatus.from_json(value) if value is not None else None
                for value in values
            ]
        except AttributeError as exc:
            raise RpcResponseError(f"Unexpected getSignatureStatuses entry: {exc}") from exc

    async def get_balance(self, address: Pubkey) -> int:
        """Native balance in lamports."""
        result = await self.request("getBalance", [str(address), {"commitment": self.commitment}])
        value = self._value(result, "getBalance")
        if isinstance(value, bool) or not isinstance(value, int):
            raise RpcResponseError(f"Unexpected getBalance response: {value!r}")
        return value
