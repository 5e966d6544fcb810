"""
SecureTxClient - session-owned facade over wallet, chain, ledger and relay.
"""
import asyncio
import logging
from typing import Any, Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .chain.base import ChainGateway
from .chain.gateway import ContractChainGateway
from .config import NetworkConfig, NetworkDescriptor, ReconcileSettings
from .exceptions import InvalidRecipientError, ProviderUnavailableError, SecureTxError, SessionExpiredError, classify_error
from .journal import Blockchain
from .ledger import LedgerClient
from .models import ConnectionState, Session, TransactionRecord, WalletConnection, WalletUpdate
from .provider.base import WalletProvider
from .reconcile import TransactionReconciler
from .relay import NotificationRelay, RelayEvent
from .units import AmountLike, is_valid_address, parse_amount, parse_balance
from .wallet import WalletConnectionManager

logger = logging.getLogger(__name__)


class SecureTxClient:
    """
    Client for sending and tracking transfers through a browser-style wallet.

    One instance belongs to one UI session. Use it as an async context
    manager so provider listeners, relay rooms and the polling loop are torn
    down when the session ends::

        async with SecureTxClient.from_network("sepolia", provider) as client:
            await client.connect()
            local_id = await client.send(recipient, "0.5")
            record = await client.wait_for_confirmation(local_id, timeout=120)
    """

    def __init__(
        self,
        provider: Optional[WalletProvider],
        chain: ChainGateway,
        network: NetworkDescriptor,
        ledger: Optional[LedgerClient] = None,
        relay: Optional[NotificationRelay] = None,
        settings: Optional[ReconcileSettings] = None,
        session: Optional[Session] = None,
        journal: Optional[Blockchain] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the client

        Args:
            provider: Wallet provider (None when no wallet is installed)
            chain: Chain gateway for the network
            network: Network descriptor the wallet must be on
            ledger: Optional backend ledger client
            relay: Optional notification relay
            settings: Reconciliation timing settings
            session: Authenticated backend session for the ledger
            journal: Optional local journal of settled transactions
            logger: Optional logger instance
        """
        self.network = network
        self.chain = chain
        self.ledger = ledger
        self.relay = relay
        self.settings = settings or ReconcileSettings()
        self.logger = logger or logging.getLogger(__name__)

        if ledger is not None and session is not None:
            ledger.set_session(session)

        self.wallet = WalletConnectionManager(
            provider,
            chain,
            network,
            registration_timeout=self.settings.receipt_timeout,
            receipt_poll_interval=self.settings.receipt_poll_interval,
            logger=logger,
        )
        self.reconciler = TransactionReconciler(
            chain,
            ledger=ledger,
            relay=relay,
            settings=self.settings,
            journal=journal,
            on_session_expired=self._on_session_expired,
            logger=logger,
        )

        self._account: Optional[str] = None
        self._relay_unsubscribe: Optional[Callable[[], None]] = None
        self._wallet_unsubscribe: Optional[Callable[[], None]] = None

    @classmethod
    def from_network(
        cls,
        network: str,
        provider: Optional[WalletProvider],
        backend_url: Optional[str] = None,
        session: Optional[Session] = None,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        relay: Optional[NotificationRelay] = None,
        **kwargs: Any
    ) -> "SecureTxClient":
        """
        Create a client for a network defined in networks.json.

        Args:
            network: Network name (e.g. "sepolia", "localhost")
            provider: Wallet provider
            backend_url: Backend API root; the ledger is disabled without it
            session: Authenticated backend session
            rpc_url: Optional RPC URL override
            contract_address: Optional SecureToken address override
            relay: Optional notification relay
            **kwargs: Passed to the constructor

        Raises:
            ValueError: If the network is unknown or has no contract address
        """
        descriptor = NetworkConfig.get_descriptor(network, rpc_url=rpc_url, contract_address=contract_address)
        chain = ContractChainGateway(descriptor, provider=provider)
        ledger = LedgerClient(backend_url, session=session) if backend_url else None
        kwargs.setdefault("settings", ReconcileSettings.from_env())
        return cls(provider, chain, descriptor, ledger=ledger, relay=relay, session=session, **kwargs)

    # ------------------------------------------------------------------
    # Session lifetime
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "SecureTxClient":
        await self.wallet.__aenter__()
        if self._wallet_unsubscribe is None:
            self._wallet_unsubscribe = self.wallet.subscribe(self._on_wallet_state)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Detach every listener, stop background work and disconnect the wallet."""
        if self._wallet_unsubscribe is not None:
            self._wallet_unsubscribe()
            self._wallet_unsubscribe = None
        self._leave_room()
        self._account = None
        await self.reconciler.aclose()
        self.wallet.disconnect()

    def set_session(self, session: Optional[Session]) -> None:
        """Attach a new backend session to the ledger client."""
        if self.ledger is not None:
            self.ledger.set_session(session)

    @property
    def account(self) -> Optional[str]:
        return self._account

    @property
    def state(self) -> WalletConnection:
        return self.wallet.state

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _on_wallet_state(self, state: WalletConnection) -> None:
        if state.connection_state is ConnectionState.CONNECTED:
            if state.account_address != self._account:
                self._follow(state.account_address)
        elif state.connection_state is ConnectionState.DISCONNECTED and self._account is not None:
            self.logger.info(f"Stopped tracking {self._account}")
            self._leave_room()
            self.reconciler.cancel_polling()
            self._account = None

    def _follow(self, account: str) -> None:
        self._leave_room()
        self._account = account
        if self.relay is not None:
            self._relay_unsubscribe = self.relay.subscribe(account, self._on_relay_event)
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.logger.warning(f"No running event loop; polling for {account} not started")
            return
        self.reconciler.start(account)
        self.reconciler.request_reconcile(account)
        self.logger.info(f"Tracking transactions for {account}")

    def _leave_room(self) -> None:
        if self._relay_unsubscribe is not None:
            self._relay_unsubscribe()
            self._relay_unsubscribe = None

    def _on_relay_event(self, event_name: str, payload: Any) -> None:
        account = self._account
        if account is None:
            return
        if event_name == RelayEvent.WALLET_UPDATE.value:
            try:
                update = WalletUpdate.model_validate(payload)
                self.reconciler.update_balance(update.address, parse_balance(update.balance))
            except (PydanticValidationError, SecureTxError) as e:
                self.logger.warning(f"Ignoring malformed walletUpdate: {e}")
                return
        elif event_name != RelayEvent.TRANSACTION_UPDATE.value:
            self.logger.debug(f"Ignoring relay event {event_name}")
            return
        self.reconciler.request_reconcile(account)

    def _on_session_expired(self, error: SessionExpiredError) -> None:
        self.logger.warning("Session expired; resetting wallet state")
        self.set_session(None)
        self._leave_room()
        self.reconciler.cancel_polling()
        self._account = None
        self.wallet.reset(error)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def connect(self, timeout: Optional[float] = None) -> WalletConnection:
        """
        Connect the wallet, switch network and register if needed.

        See WalletConnectionManager.connect for the errors raised.
        """
        if self._wallet_unsubscribe is None:
            self._wallet_unsubscribe = self.wallet.subscribe(self._on_wallet_state)
        state = await self.wallet.connect(timeout=timeout)
        if state.is_connected and state.account_address != self._account:
            self._follow(state.account_address)
        return state

    async def send(self, to: str, amount: AmountLike, unit: str = "ether", timeout: Optional[float] = None) -> str:
        """
        Send ``amount`` to ``to`` from the connected account.

        Connects first when needed. Returns the local id once the transaction
        hash is known; use wait_for_confirmation to follow it.

        Raises:
            InvalidRecipientError, InvalidAmountError: Before any network call
            InsufficientBalanceError: If the amount exceeds the balance
            OperationTimeoutError: If ``timeout`` elapses first
        """
        if not is_valid_address(to):
            raise InvalidRecipientError(f"{to!r} is not a valid address")
        parse_amount(amount, unit)

        if not self.wallet.state.is_connected:
            await self.connect(timeout=timeout)
        account = self.wallet.get_account()
        if account is None:
            raise ProviderUnavailableError("No wallet account is connected")
        return await self.reconciler.submit(account, to, amount, unit=unit, timeout=timeout)

    def history(self, limit: Optional[int] = None) -> List[TransactionRecord]:
        """Merged transaction history of the connected account, newest first."""
        account = self.wallet.get_account()
        if account is None:
            return []
        return self.reconciler.get_history(account, limit=limit)

    async def balance(self) -> int:
        """
        Balance of the connected account in wei.

        Uses the last pushed balance when one is known.
        """
        account = self.wallet.get_account()
        if account is None:
            raise ProviderUnavailableError("No wallet account is connected")
        known = self.reconciler.known_balance(account)
        if known is not None:
            return known
        try:
            wei = await self.chain.balance_of(account)
        except Exception as e:
            raise classify_error(e, context="Balance lookup")
        self.reconciler.update_balance(account, wei)
        return wei

    async def wait_for_confirmation(self, local_id: str, timeout: Optional[float] = None) -> TransactionRecord:
        return await self.reconciler.wait_for_confirmation(local_id, timeout=timeout)

    def tx_url(self, tx_hash: str) -> Optional[str]:
        return self.network.tx_url(tx_hash)
