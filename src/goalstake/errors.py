"""
Error Taxonomy for the Escrow Client

Every failure the client can report carries:
- A human-readable message
- A machine-checkable ``kind`` string (stable, safe to switch on)
- The transaction signature when one exists, so the submission can be
  looked up on an explorer after the fact

Validation errors are raised synchronously before any network call.
Everything else surfaces from the suspending steps (read, sign,
broadcast, confirm) and is never retried automatically, except for the
bounded confirmation poll.
"""

from typing import List, Optional


class EscrowError(Exception):
    """Base class for all escrow client errors."""

    kind = "escrow"

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.signature = signature

    def to_dict(self) -> dict:
        """Serializable form for status reporting."""
        data = {"kind": self.kind, "message": self.message}
        if self.signature:
            data["signature"] = self.signature
        return data


class ValidationError(EscrowError):
    """Malformed input caught before any network call."""

    kind = "validation"


class ActionNotAllowed(ValidationError):
    """The stake lifecycle rules forbid this action right now."""

    kind = "not_allowed"


class ConfigError(EscrowError):
    """Invalid or unreadable configuration."""

    kind = "config"


class AccountNotFound(EscrowError):
    """A derived address has no account on the ledger (yet)."""

    kind = "not_found"

    def __init__(self, message: str, address: Optional[str] = None):
        super().__init__(message)
        self.address = address


class DecodeError(EscrowError):
    """
    Account or instruction bytes do not match the expected layout.

    This signals a version skew between this client and the on-chain
    program, never a missing account.
    """

    kind = "decode"


class SignerUnavailable(EscrowError):
    """No signing capability is present."""

    kind = "signer_unavailable"


class SignerRejected(EscrowError):
    """The signer declined (or failed) to approve the transaction."""

    kind = "signer_rejected"


class TransportError(EscrowError):
    """The ledger endpoint could not be reached."""

    kind = "transport"


class RpcResponseError(EscrowError):
    """The ledger answered with a JSON-RPC error we cannot classify further."""

    kind = "rpc"

    def __init__(self, message: str, code: Optional[int] = None,
                 signature: Optional[str] = None):
        super().__init__(message, signature)
        self.code = code


class OnChainRejection(EscrowError):
    """The program (or runtime) explicitly rejected the submitted instructions."""

    kind = "on_chain_rejection"

    def __init__(self, message: str, signature: Optional[str] = None,
                 logs: Optional[List[str]] = None,
                 instruction_index: Optional[int] = None,
                 error_code: Optional[int] = None,
                 raw_error: object = None):
        super().__init__(message, signature)
        self.logs = list(logs or [])
        self.instruction_index = instruction_index
        self.error_code = error_code
        self.raw_error = raw_error

    @classmethod
    def from_transaction_error(cls, err: object, signature: Optional[str] = None,
                               logs: Optional[List[str]] = None) -> "OnChainRejection":
        """
        Build a rejection from a ledger ``TransactionError`` value.

        The common shape is ``{"InstructionError": [index, {"Custom": code}]}``;
        anything else is kept verbatim in the message.
        """
        instruction_index = None
        error_code = None
        detail = err

        if isinstance(err, dict) and "InstructionError" in err:
            index, inner = err["InstructionError"]
            instruction_index = index
            detail = inner
            if isinstance(inner, dict) and "Custom" in inner:
                error_code = inner["Custom"]

        if error_code is not None:
            message = f"Instruction {instruction_index} failed with program error {error_code}"
        elif instruction_index is not None:
            message = f"Instruction {instruction_index} failed: {detail}"
        else:
            message = f"Transaction rejected: {detail}"

        return cls(message, signature=signature, logs=logs,
                   instruction_index=instruction_index,
                   error_code=error_code, raw_error=err)


class ConfirmationTimeout(EscrowError):
    """
    The bounded confirmation poll ran out without a definitive answer.

    The submission may still land later; this is neither success nor failure.
    """

    kind = "confirmation_timeout"


class ConfirmationAborted(EscrowError):
    """The caller abandoned the confirmation poll before it finished."""

    kind = "confirmation_aborted"
