"""
Chain gateway interface.

The chain gateway is the authoritative source for balances, registration
status and transaction outcomes.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import OperationTimeoutError
from ..models import ChainReceipt, ChainTxRecord

logger = logging.getLogger(__name__)

TRANSACTION_EXECUTED = "TransactionExecuted"
USER_REGISTERED = "UserRegistered"
CHAIN_EVENTS = (TRANSACTION_EXECUTED, USER_REGISTERED)

EventListener = Callable[[Dict[str, Any]], Any]


@dataclass(frozen=True)
class TxHandle:
    """A submitted transaction, identified by its hash."""
    hash: str
    sender: str
    kind: str = "transfer"


class ChainGateway(ABC):
    """
    Abstract base class for chain gateways.

    All methods are coroutines; implementations backed by blocking clients
    run them in a worker thread.
    """

    def __init__(self):
        self._event_listeners: Dict[str, List[EventListener]] = {}

    @abstractmethod
    async def is_registered(self, address: str) -> bool:
        """Whether ``address`` is registered with the contract."""

    @abstractmethod
    async def register(self, sender: str) -> TxHandle:
        """Submit a registration transaction for ``sender``."""

    @abstractmethod
    async def transfer(self, sender: str, to: str, amount_wei: int) -> TxHandle:
        """Submit a transfer of ``amount_wei`` from ``sender`` to ``to``."""

    @abstractmethod
    async def balance_of(self, address: str) -> int:
        """Balance of ``address`` in wei."""

    @abstractmethod
    async def get_user_transactions(self, address: str) -> List[ChainTxRecord]:
        """Transactions the contract recorded for ``address``."""

    @abstractmethod
    async def get_gas_price(self) -> int:
        """Current gas price in wei."""

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[ChainReceipt]:
        """Receipt for ``tx_hash``, or None if it is not mined yet."""

    @abstractmethod
    async def is_known(self, tx_hash: str) -> bool:
        """Whether the node still knows ``tx_hash``, mined or in its mempool."""

    async def wait_for_receipt(
        self,
        tx_hash: str,
        timeout: Optional[float] = None,
        poll_interval: float = 1.0
    ) -> ChainReceipt:
        """
        Poll until a receipt for ``tx_hash`` is available.

        Raises:
            OperationTimeoutError: If no receipt arrives within ``timeout``
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt is not None:
                return receipt
            if deadline is not None and time.monotonic() >= deadline:
                raise OperationTimeoutError(f"No receipt for {tx_hash} after {timeout}s")
            await asyncio.sleep(poll_interval)

    async def poll_events(self) -> int:
        """
        Fetch new contract events and dispatch them to subscribers.

        Returns:
            Number of events dispatched
        """
        return 0

    def subscribe(self, event: str, listener: EventListener) -> Callable[[], None]:
        """
        Subscribe to a contract event.

        Returns:
            A callable that removes the listener
        """
        if event not in CHAIN_EVENTS:
            raise ValueError(f"Unknown chain event: {event}. Valid events: {', '.join(CHAIN_EVENTS)}")
        self._event_listeners.setdefault(event, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._event_listeners.get(event, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def _dispatch_event(self, event: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._event_listeners.get(event, [])):
            try:
                listener(payload)
            except Exception:
                logger.exception(f"Chain event listener for '{event}' failed")
