"""
Custom exception classes for the reward distributor.

Ledger failures are raised as a typed taxonomy so callers dispatch on the
exception class instead of inspecting messages:

- transient:   TransientLedgerError (retry, back off, rotate endpoint)
- structural:  OversizeTransactionError (shrink the batch, requeue)
- recipient:   RecipientError (drop one row, continue)
- fatal:       any other LedgerError (give up on the unit)
"""

from enum import Enum
from typing import Any, Optional, Dict


class ErrorKind(Enum):
    """Retry classification of a failure."""
    TRANSIENT = "transient"
    STRUCTURAL = "structural"
    RECIPIENT = "recipient"
    FATAL = "fatal"


class RewardDistributorException(Exception):
    """Base exception class for the reward distributor."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(RewardDistributorException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class LedgerError(RewardDistributorException):
    """Raised when a Solana RPC call fails and must not be retried."""

    kind = ErrorKind.FATAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: str = "LEDGER_ERROR"):
        super().__init__(message, code, details)


class TransientLedgerError(LedgerError):
    """Rate limit, timeout, connection reset or stale blockhash."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "LEDGER_TRANSIENT")


class OversizeTransactionError(LedgerError):
    """Raised when a transaction exceeds the packet size or instruction limits."""

    kind = ErrorKind.STRUCTURAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "TRANSACTION_TOO_LARGE")


class RecipientError(LedgerError):
    """Raised when a single recipient cannot be paid (e.g. malformed address)."""

    kind = ErrorKind.RECIPIENT

    def __init__(self, wallet: str, reason: str):
        self.wallet = wallet
        super().__init__(
            f"Invalid recipient {wallet}: {reason}",
            {"wallet": wallet, "reason": reason},
            "INVALID_RECIPIENT"
        )


class TransactionFailedError(LedgerError):
    """
    Raised when a transaction landed (or failed preflight) with a program error.

    ``instruction_index`` is set when the cluster attributed the failure to
    one instruction of the message.
    """

    def __init__(self, signature: Optional[str], error: str, instruction_index: Optional[int] = None):
        self.signature = signature
        self.instruction_index = instruction_index
        super().__init__(
            f"Transaction {signature or '(preflight)'} failed: {error}",
            {"signature": signature, "error": error, "instruction_index": instruction_index},
            "TRANSACTION_FAILED"
        )


class UnconfirmedTransactionError(LedgerError):
    """Raised when a sent transaction's outcome is still unknown at the deadline."""

    def __init__(self, signature: str, waited_seconds: float):
        self.signature = signature
        super().__init__(
            f"Transaction {signature} unconfirmed after {waited_seconds:.1f}s",
            {"signature": signature, "waited_seconds": waited_seconds},
            "TRANSACTION_UNCONFIRMED"
        )


class ExternalServiceError(RewardDistributorException):
    """Raised when an external HTTP service (claim, swap, ops) fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: str = "EXTERNAL_SERVICE_ERROR"):
        super().__init__(message, code, details)


class TransientServiceError(ExternalServiceError):
    """HTTP 429 / 5xx / timeout from an external service."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "EXTERNAL_SERVICE_TRANSIENT")


class StageTimeoutError(RewardDistributorException):
    """Raised when a scheduler stage exceeds its time budget."""

    def __init__(self, stage: str, timeout: float):
        super().__init__(
            f"Stage {stage} exceeded {timeout:.1f}s",
            "STAGE_TIMEOUT",
            {"stage": stage, "timeout": timeout}
        )
