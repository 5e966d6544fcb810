"""
Wallet providers for the SecureTx SDK.
"""
from .base import (
    ACCOUNTS_CHANGED, CHAIN_CHANGED, CHAIN_NOT_ADDED, CONNECT, DISCONNECT,
    PROVIDER_EVENTS, UNAUTHORIZED, USER_REJECTED, ProviderRpcError, WalletProvider
)
from .local import LocalAccountProvider

__all__ = [
    "WalletProvider",
    "LocalAccountProvider",
    "ProviderRpcError",
    "PROVIDER_EVENTS",
    "ACCOUNTS_CHANGED",
    "CHAIN_CHANGED",
    "CONNECT",
    "DISCONNECT",
    "USER_REJECTED",
    "UNAUTHORIZED",
    "CHAIN_NOT_ADDED",
]
