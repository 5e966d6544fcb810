"""
SecureTx SDK - wallet connection and transaction reconciliation.
"""
from .chain import ChainGateway, ContractChainGateway, TxHandle
from .client import SecureTxClient
from .config import NetworkConfig, NetworkDescriptor, ReconcileSettings
from .exceptions import (
    ErrorKind, SecureTxError, ProviderUnavailableError, UserRejectedError,
    NetworkSwitchRejectedError, NetworkSwitchFailedError, InsufficientFundsError,
    RegistrationFailedError, ValidationError, InvalidRecipientError, InvalidAmountError,
    InsufficientBalanceError, OperationTimeoutError, ReconciliationConflictError,
    SessionExpiredError, LedgerError, UnknownError, classify_error
)
from .models import (
    ConnectionState, TxStatus, RecordSource, Session, WalletConnection,
    TransactionIntent, TransactionRecord, ChainTxRecord, ChainReceipt, LedgerEntry
)
from .provider import LocalAccountProvider, ProviderRpcError, WalletProvider
from .reconcile import MergeResult, TransactionReconciler, merge_records
from .relay import InMemoryRelay, NotificationRelay, RelayEvent
from .version import __version__
from .wallet import InvalidTransitionError, WalletConnectionManager

__all__ = [
    "SecureTxClient",
    "WalletConnectionManager",
    "InvalidTransitionError",
    "TransactionReconciler",
    "MergeResult",
    "merge_records",
    "ChainGateway",
    "ContractChainGateway",
    "TxHandle",
    "WalletProvider",
    "LocalAccountProvider",
    "ProviderRpcError",
    "NotificationRelay",
    "InMemoryRelay",
    "RelayEvent",
    "NetworkConfig",
    "NetworkDescriptor",
    "ReconcileSettings",
    "ConnectionState",
    "TxStatus",
    "RecordSource",
    "Session",
    "WalletConnection",
    "TransactionIntent",
    "TransactionRecord",
    "ChainTxRecord",
    "ChainReceipt",
    "LedgerEntry",
    "ErrorKind",
    "SecureTxError",
    "ProviderUnavailableError",
    "UserRejectedError",
    "NetworkSwitchRejectedError",
    "NetworkSwitchFailedError",
    "InsufficientFundsError",
    "RegistrationFailedError",
    "ValidationError",
    "InvalidRecipientError",
    "InvalidAmountError",
    "InsufficientBalanceError",
    "OperationTimeoutError",
    "ReconciliationConflictError",
    "SessionExpiredError",
    "LedgerError",
    "UnknownError",
    "classify_error",
    "__version__",
]
