"""
Wallet provider interface.

A wallet provider is the SDK's view of an EIP-1193 provider such as the one
MetaMask injects into a page: a single ``request`` entry point for JSON-RPC
and wallet methods, plus push events the wallet emits on its own.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

USER_REJECTED = 4001
UNAUTHORIZED = 4100
UNSUPPORTED_METHOD = 4200
DISCONNECTED = 4900
CHAIN_NOT_ADDED = 4902
INTERNAL_ERROR = -32603

ACCOUNTS_CHANGED = "accountsChanged"
CHAIN_CHANGED = "chainChanged"
CONNECT = "connect"
DISCONNECT = "disconnect"

PROVIDER_EVENTS = (ACCOUNTS_CHANGED, CHAIN_CHANGED, CONNECT, DISCONNECT)

Listener = Callable[[Any], Any]
Unsubscribe = Callable[[], None]


class ProviderRpcError(Exception):
    """Error returned by a wallet provider request."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"[{code}] {message}")


class WalletProvider(ABC):
    """
    Abstract base class for wallet providers.

    Subclasses implement ``request``; listener bookkeeping is shared.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    @abstractmethod
    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Perform a provider request.

        Args:
            method: JSON-RPC or wallet method name
            params: Positional parameters

        Returns:
            The method result

        Raises:
            ProviderRpcError: If the provider or the user rejects the request
        """

    def on(self, event: str, listener: Listener) -> Unsubscribe:
        """
        Register a listener for a provider event.

        Returns:
            A callable that removes the listener; calling it twice is harmless
        """
        if event not in PROVIDER_EVENTS:
            raise ValueError(f"Unknown provider event: {event}. Valid events: {', '.join(PROVIDER_EVENTS)}")
        self._listeners.setdefault(event, []).append(listener)

        def unsubscribe() -> None:
            self.remove_listener(event, listener)

        return unsubscribe

    def remove_listener(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(listeners) for listeners in self._listeners.values())

    def emit(self, event: str, payload: Any = None) -> None:
        """Deliver an event to every registered listener."""
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(payload)
            except Exception:
                logger.exception(f"Provider listener for '{event}' failed")
