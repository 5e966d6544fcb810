"""
Exceptions for the SecureTx SDK.

Every failure surfaced by the SDK is a ``SecureTxError`` carrying an
``ErrorKind`` plus a human-readable hint, so a presentation layer can decide
between offering a retry and showing a terminal message.
"""
from enum import Enum
from typing import Any, Dict, Optional, Type


class ErrorKind(str, Enum):
    """
    Error kinds reported by the SDK.

    Values are stable strings and are safe to serialize to clients.
    """
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    USER_REJECTED = "UserRejected"
    NETWORK_SWITCH_REJECTED = "NetworkSwitchRejected"
    NETWORK_SWITCH_FAILED = "NetworkSwitchFailed"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    REGISTRATION_FAILED = "RegistrationFailed"
    INVALID_RECIPIENT = "InvalidRecipient"
    INVALID_AMOUNT = "InvalidAmount"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    TIMEOUT = "Timeout"
    RECONCILIATION_CONFLICT = "ReconciliationConflict"
    SESSION_EXPIRED = "SessionExpired"
    LEDGER_UNAVAILABLE = "LedgerUnavailable"
    UNKNOWN = "Unknown"


class SecureTxError(Exception):
    """Base exception for all SecureTx errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    retriable: bool = False
    default_hint: str = "An unexpected error occurred."

    def __init__(
        self,
        message: str,
        hint: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.hint = hint or self.default_hint
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Render the error for a presentation layer.

        Returns:
            Dictionary with kind, message, hint, retriable and details
        """
        return {
            "kind": self.kind.value,
            "message": str(self),
            "hint": self.hint,
            "retriable": self.retriable,
            "details": self.details,
        }


class ProviderUnavailableError(SecureTxError):
    """Raised when no wallet provider is present."""
    kind = ErrorKind.PROVIDER_UNAVAILABLE
    default_hint = "Install a wallet extension such as MetaMask to continue."


class UserRejectedError(SecureTxError):
    """Raised when the user declines a wallet prompt."""
    kind = ErrorKind.USER_REJECTED
    retriable = True
    default_hint = "The request was declined in the wallet. Approve it to continue."


class NetworkSwitchRejectedError(SecureTxError):
    """Raised when the user declines switching to the expected network."""
    kind = ErrorKind.NETWORK_SWITCH_REJECTED
    retriable = True
    default_hint = "Switch to the expected network in your wallet to continue."


class NetworkSwitchFailedError(SecureTxError):
    """Raised when the wallet could not switch to or add the expected network."""
    kind = ErrorKind.NETWORK_SWITCH_FAILED
    retriable = True
    default_hint = "Switch networks manually in your wallet using the details provided."


class InsufficientFundsError(SecureTxError):
    """Raised when the account cannot pay for gas and value."""
    kind = ErrorKind.INSUFFICIENT_FUNDS
    default_hint = "Add funds to your account to cover the transaction and gas."


class RegistrationFailedError(SecureTxError):
    """Raised when on-chain registration reverts or fails for another reason."""
    kind = ErrorKind.REGISTRATION_FAILED
    retriable = True
    default_hint = "Registration did not complete. Retry registration."


class ValidationError(SecureTxError):
    """Base class for input validation errors raised before any network call."""


class InvalidRecipientError(ValidationError):
    """Raised when a recipient is not a valid account address."""
    kind = ErrorKind.INVALID_RECIPIENT
    default_hint = "Enter a valid 0x-prefixed account address."


class InvalidAmountError(ValidationError):
    """Raised when an amount is not a positive, representable value."""
    kind = ErrorKind.INVALID_AMOUNT
    default_hint = "Enter a positive amount."


class InsufficientBalanceError(ValidationError):
    """Raised when an amount exceeds the known balance."""
    kind = ErrorKind.INSUFFICIENT_BALANCE
    default_hint = "The amount exceeds your available balance."


class OperationTimeoutError(SecureTxError):
    """
    Raised when an operation exceeds its caller-supplied timeout.

    The underlying chain operation is not cancelled and is reconciled later.
    """
    kind = ErrorKind.TIMEOUT
    retriable = True
    default_hint = "The operation is taking longer than expected. It may still complete."


class ReconciliationConflictError(SecureTxError):
    """Raised (or reported) when equally authoritative sources disagree."""
    kind = ErrorKind.RECONCILIATION_CONFLICT
    default_hint = "Transaction status sources disagree. Check the block explorer."

    def __init__(self, message: str, tx_key: Any = None, statuses: Optional[Dict[str, str]] = None):
        self.tx_key = tx_key
        super().__init__(message, details={"key": str(tx_key), "statuses": statuses or {}})


class SessionExpiredError(SecureTxError):
    """Raised when the backend rejects the bearer token or the session has expired."""
    kind = ErrorKind.SESSION_EXPIRED
    default_hint = "Your session has expired. Log in again."


class LedgerError(SecureTxError):
    """Raised when the backend ledger cannot be reached or returns an error."""
    kind = ErrorKind.LEDGER_UNAVAILABLE
    retriable = True
    default_hint = "Transaction history is temporarily unavailable."

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class UnknownError(SecureTxError):
    """Wraps an unrecognized underlying failure, preserving its message."""
    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, original: Optional[BaseException] = None, **kwargs):
        self.original = original
        super().__init__(message, **kwargs)


_USER_REJECTED_CODE = 4001
_REJECTION_MARKERS = ("user denied", "user rejected", "rejected by user")
_INSUFFICIENT_FUNDS_MARKERS = ("insufficient funds",)


def _error_code(exc: BaseException) -> Optional[int]:
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    # web3.py raises ValueError({'code': ..., 'message': ...}) for RPC errors
    if exc.args and isinstance(exc.args[0], dict):
        code = exc.args[0].get("code")
        if isinstance(code, int):
            return code
    return None


def _error_message(exc: BaseException) -> str:
    if exc.args and isinstance(exc.args[0], dict):
        return str(exc.args[0].get("message", exc))
    return str(getattr(exc, "message", None) or exc)


def classify_error(
    exc: BaseException,
    fallback: Type[SecureTxError] = UnknownError,
    context: str = ""
) -> SecureTxError:
    """
    Map a provider or chain failure onto the SDK error taxonomy.

    Args:
        exc: The exception raised by the provider, web3 or the node
        fallback: Error class used when no specific kind matches
        context: Optional prefix for the resulting message

    Returns:
        A SecureTxError instance with ``__cause__`` set to ``exc``
    """
    if isinstance(exc, SecureTxError):
        return exc

    message = _error_message(exc)
    lowered = message.lower()
    prefix = f"{context}: " if context else ""

    if _error_code(exc) == _USER_REJECTED_CODE or any(m in lowered for m in _REJECTION_MARKERS):
        error: SecureTxError = UserRejectedError(f"{prefix}{message}")
    elif any(m in lowered for m in _INSUFFICIENT_FUNDS_MARKERS):
        error = InsufficientFundsError(f"{prefix}{message}")
    elif fallback is UnknownError:
        error = UnknownError(f"{prefix}{message}", original=exc)
    else:
        error = fallback(f"{prefix}{message}")

    error.__cause__ = exc
    return error
