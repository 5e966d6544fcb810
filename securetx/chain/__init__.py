"""
Chain gateway for the SecureTx SDK.
"""
from .base import CHAIN_EVENTS, TRANSACTION_EXECUTED, USER_REGISTERED, ChainGateway, TxHandle
from .gateway import ContractChainGateway

__all__ = [
    "ChainGateway",
    "ContractChainGateway",
    "TxHandle",
    "CHAIN_EVENTS",
    "TRANSACTION_EXECUTED",
    "USER_REGISTERED",
]
