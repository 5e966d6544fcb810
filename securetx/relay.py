"""
Notification relay contract.

The relay is a push channel keyed by account. The SDK subscribes to one
room per account and treats every event as a hint to reconcile, never as
the source of truth. Transport, reconnection and room persistence belong
to the relay implementation.
"""
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

RelayListener = Callable[[str, Any], Any]


class RelayEvent(str, Enum):
    TRANSACTION_UPDATE = "transactionUpdate"
    WALLET_UPDATE = "walletUpdate"


def room_name(account: str) -> str:
    """Room an account's updates are published to."""
    return f"wallet_{account.lower()}"


class NotificationRelay(ABC):
    """Abstract base class for notification relays."""

    @abstractmethod
    def subscribe(self, account: str, listener: RelayListener) -> Callable[[], None]:
        """
        Receive events published to ``account``'s room.

        The listener is called as ``listener(event_name, payload)``.

        Returns:
            A callable that removes the subscription
        """

    @abstractmethod
    def publish(self, account: str, event: RelayEvent, payload: Any) -> None:
        """Publish an event to ``account``'s room."""


class InMemoryRelay(NotificationRelay):
    """In-process relay that fans out events to subscribers synchronously."""

    def __init__(self):
        self._rooms: Dict[str, List[RelayListener]] = {}

    def subscribe(self, account: str, listener: RelayListener) -> Callable[[], None]:
        room = room_name(account)
        self._rooms.setdefault(room, []).append(listener)
        logger.debug(f"Subscribed to {room}")

        def unsubscribe() -> None:
            listeners = self._rooms.get(room, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._rooms.pop(room, None)

        return unsubscribe

    def publish(self, account: str, event: RelayEvent, payload: Any) -> None:
        room = room_name(account)
        event_name = RelayEvent(event).value
        for listener in list(self._rooms.get(room, [])):
            try:
                listener(event_name, payload)
            except Exception:
                logger.exception(f"Relay listener in {room} failed on {event_name}")

    def subscriber_count(self, account: str) -> int:
        return len(self._rooms.get(room_name(account), []))
