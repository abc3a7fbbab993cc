"""
Gateway exception hierarchy for MetaTx.

Every rejection raised by the admission/execution pipeline is a typed
exception carrying a stable ``code`` and the transaction-pool validity
reason a host scheduler would report for it.
"""

from __future__ import annotations
from typing import Optional, Any, Dict


class GatewayError(Exception):
    """Base exception for all gateway errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the operation can be retried
        stage: Pipeline stage at which the error was raised, when known
    """

    code = "GatewayError"
    pool_reason = "Custom"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        self.stage = stage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "reason": self.pool_reason,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "stage": self.stage,
        }


# ==================== Request Errors ====================


class InvalidSignatureError(GatewayError):
    """Raised when a signature is malformed or does not recover to a key."""

    code = "InvalidSignature"
    pool_reason = "BadProof"


class AccountMismatchError(GatewayError):
    """Raised when the recovered identity differs from the claimed caller."""

    code = "AccountMismatch"
    pool_reason = "BadSigner"


class DecodeError(GatewayError):
    """Raised when action bytes do not decode to a known action."""

    code = "DecodeError"
    pool_reason = "Call"


class NonceError(GatewayError):
    """Raised when a nonce is stale, malformed or out of sequence."""

    code = "NonceError"
    pool_reason = "Stale"

    def __init__(
        self,
        message: str,
        account: Optional[str] = None,
        nonce: Optional[int] = None,
        expected: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.account = account
        self.nonce = nonce
        self.expected = expected
        if account is not None:
            self.details.setdefault("account", account)
        if nonce is not None:
            self.details.setdefault("nonce", nonce)
        if expected is not None:
            self.details.setdefault("expected", expected)


class StaleNonceError(NonceError):
    """Raised when a nonce has already been consumed (replay)."""
    pass


class MalformedNonceError(NonceError):
    """Raised when a nonce does not fit in an unsigned 64-bit integer."""
    pass


class FutureNonceError(NonceError):
    """Raised on strict commit when a nonce is ahead of the account counter."""

    pool_reason = "Future"


class PaymentError(GatewayError):
    """Raised on insufficient balance, failed withdrawal or failed fee correction."""

    code = "PaymentError"
    pool_reason = "Payment"


class UnexpectedError(GatewayError):
    """Raised when an internal invariant is violated."""

    code = "Unexpected"
    pool_reason = "Custom"


# ==================== Ledger Errors ====================


class LedgerError(Exception):
    """Raised by balance ledgers when a debit or credit cannot be applied."""

    def __init__(self, message: str, account: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.account = account


class InsufficientBalanceError(LedgerError):
    """Raised when an account lacks sufficient balance for a withdrawal."""
    pass


class ExistentialDepositError(LedgerError):
    """Raised when a keep-alive withdrawal would reap the account."""
    pass


# ==================== Configuration Errors ====================


class ConfigurationError(Exception):
    """Raised when gateway configuration is invalid."""
    pass
