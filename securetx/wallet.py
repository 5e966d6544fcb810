"""
Wallet connection state machine.

``WalletConnectionManager`` owns the lifecycle of one wallet connection:
account access, network selection and on-chain registration. It is created
per UI session and passed to whatever needs it; there is no module-level
instance.

States::

    DISCONNECTED -> CONNECTING -> NETWORK_CHECK -> REGISTERING -> CONNECTED
    any state -> ERROR (reason retained), ERROR -> CONNECTING (retry)
    any state -> DISCONNECTED (logout, account removal, chain change)

Provider events can arrive at any point, including while an operation is
suspended on a provider or RPC call. Every mutating operation captures the
current epoch when it starts; events that invalidate state bump the epoch,
and an operation that finds the epoch moved discards its own result.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .chain.base import ChainGateway
from .config import NetworkDescriptor, format_chain_id, parse_chain_id
from .exceptions import (
    NetworkSwitchFailedError, NetworkSwitchRejectedError, OperationTimeoutError,
    ProviderUnavailableError, RegistrationFailedError, SecureTxError, UnknownError,
    UserRejectedError, classify_error
)
from .models import ConnectionState, WalletConnection
from .provider.base import (
    ACCOUNTS_CHANGED, CHAIN_CHANGED, CHAIN_NOT_ADDED, CONNECT, DISCONNECT,
    USER_REJECTED, ProviderRpcError, WalletProvider
)
from .units import normalize_address

logger = logging.getLogger(__name__)

StateListener = Callable[[WalletConnection], Any]

_S = ConnectionState

_TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
    _S.DISCONNECTED: {_S.CONNECTING, _S.ERROR, _S.DISCONNECTED},
    _S.CONNECTING: {_S.NETWORK_CHECK, _S.ERROR, _S.DISCONNECTED},
    _S.NETWORK_CHECK: {_S.NETWORK_CHECK, _S.REGISTERING, _S.ERROR, _S.DISCONNECTED},
    _S.REGISTERING: {_S.CONNECTED, _S.ERROR, _S.DISCONNECTED},
    _S.CONNECTED: {_S.NETWORK_CHECK, _S.REGISTERING, _S.ERROR, _S.DISCONNECTED},
    _S.ERROR: {_S.CONNECTING, _S.ERROR, _S.DISCONNECTED},
}


class InvalidTransitionError(RuntimeError):
    """Raised when an operation would move the state machine along an undefined edge."""


class _StaleOperation(Exception):
    """Internal signal: the epoch moved while an operation was suspended."""


def _consume_result(task: "asyncio.Future[Any]") -> None:
    # failures are already recorded in state
    if not task.cancelled():
        task.exception()


class WalletConnectionManager:
    """
    State machine for a browser-style wallet connection.

    Args:
        provider: Wallet provider, or None when no wallet is installed
        chain: Chain gateway used for registration checks and registration
        network: The network the application expects
        registration_timeout: Seconds to wait for a registration receipt
        receipt_poll_interval: Seconds between receipt polls
        logger: Optional logger instance
    """

    def __init__(
        self,
        provider: Optional[WalletProvider],
        chain: ChainGateway,
        network: NetworkDescriptor,
        registration_timeout: Optional[float] = 120.0,
        receipt_poll_interval: float = 1.0,
        logger: Optional[logging.Logger] = None
    ):
        self.provider = provider
        self.chain = chain
        self.network = network
        self.registration_timeout = registration_timeout
        self.receipt_poll_interval = receipt_poll_interval
        self.logger = logger or logging.getLogger(__name__)
        self.last_error: Optional[SecureTxError] = None

        self._state = WalletConnection()
        self._epoch = 0
        self._inflight: Optional["asyncio.Future[WalletConnection]"] = None
        self._pending_switch: Optional[int] = None
        self._reported_account: Optional[str] = None
        self._provider_unsubscribers: List[Callable[[], None]] = []
        self._listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def state(self) -> WalletConnection:
        return self._state

    @property
    def epoch(self) -> int:
        return self._epoch

    def get_account(self) -> Optional[str]:
        return self._state.account_address

    def get_chain_id(self) -> Optional[int]:
        return self._state.chain_id

    # ------------------------------------------------------------------
    # Observers and scoped use
    # ------------------------------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Receive every new state snapshot.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def __aenter__(self) -> "WalletConnectionManager":
        self._attach_listeners()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.disconnect()

    def _attach_listeners(self) -> None:
        if self.provider is None or self._provider_unsubscribers:
            return
        self._provider_unsubscribers = [
            self.provider.on(ACCOUNTS_CHANGED, self._on_accounts_changed),
            self.provider.on(CHAIN_CHANGED, self._on_chain_changed),
            self.provider.on(CONNECT, self._on_connect),
            self.provider.on(DISCONNECT, self._on_disconnect),
        ]

    def _detach_listeners(self) -> None:
        for unsubscribe in self._provider_unsubscribers:
            unsubscribe()
        self._provider_unsubscribers = []

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    def _set_state(self, **changes: Any) -> WalletConnection:
        data = self._state.model_dump()
        data.update(changes)
        data["epoch"] = self._epoch
        self._state = WalletConnection(**data)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                self.logger.exception("Wallet state listener failed")
        return self._state

    def _check_epoch(self, token: int) -> None:
        if token != self._epoch:
            raise _StaleOperation()

    def _transition(self, token: int, new_state: ConnectionState, **changes: Any) -> WalletConnection:
        self._check_epoch(token)
        current = self._state.connection_state
        if new_state not in _TRANSITIONS[current]:
            raise InvalidTransitionError(f"Cannot move from {current.value} to {new_state.value}")
        self.logger.debug(f"Wallet state {current.value} -> {new_state.value}")
        return self._set_state(connection_state=new_state, **changes)

    def _fail(self, token: int, error: SecureTxError) -> None:
        """Record ``error`` in state unless the operation went stale, then raise it."""
        if token != self._epoch:
            self.logger.debug(f"Discarding stale wallet error: {error}")
            raise _StaleOperation() from error
        self.last_error = error
        self.logger.error(f"Wallet {error.kind.value}: {error}")
        self._transition(token, _S.ERROR, error_kind=error.kind.value, error_hint=error.hint)
        raise error

    async def _current_result(self) -> WalletConnection:
        """Result handed to callers of an operation that went stale."""
        inflight = self._inflight
        if inflight is not None and not inflight.done() and inflight is not asyncio.current_task():
            return await asyncio.shield(inflight)
        return self._state

    async def _guarded(self, token: int, step: Callable[[], Awaitable[WalletConnection]]) -> WalletConnection:
        try:
            return await step()
        except _StaleOperation:
            return await self._current_result()
        except SecureTxError as e:
            try:
                self._fail(token, e)
            except _StaleOperation:
                return await self._current_result()
            raise
        except InvalidTransitionError:
            raise
        except Exception as e:
            error = UnknownError(f"Unexpected wallet failure: {e}", original=e)
            error.__cause__ = e
            try:
                self._fail(token, error)
            except _StaleOperation:
                return await self._current_result()
            raise

    def _start(self, operation: Awaitable[WalletConnection]) -> "asyncio.Future[WalletConnection]":
        task = asyncio.ensure_future(operation)
        task.add_done_callback(_consume_result)
        self._inflight = task
        return task

    async def _await(self, task: "asyncio.Future[WalletConnection]", timeout: Optional[float], what: str) -> WalletConnection:
        if timeout is None:
            return await asyncio.shield(task)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(f"{what} did not finish within {timeout}s")

    async def _wait_for_inflight(self) -> None:
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            try:
                await asyncio.shield(inflight)
            except SecureTxError:
                pass  # already recorded in state by the operation itself

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def connect(self, timeout: Optional[float] = None) -> WalletConnection:
        """
        Connect the wallet and bring it to CONNECTED.

        Requests account access, ensures the expected network and ensures the
        account is registered on chain. Calls made while a connection is in
        flight share its result.

        Args:
            timeout: Seconds to wait; the connection keeps going after a timeout

        Raises:
            ProviderUnavailableError: If no wallet provider is present
            UserRejectedError: If the user declines account access
            NetworkSwitchRejectedError, NetworkSwitchFailedError: See ensure_network
            InsufficientFundsError, RegistrationFailedError: See ensure_registered
            OperationTimeoutError: If ``timeout`` elapses first
        """
        if self._inflight is not None and not self._inflight.done():
            return await self._await(self._inflight, timeout, "Wallet connection")

        if self.provider is None:
            error = ProviderUnavailableError("No wallet provider is available")
            try:
                self._fail(self._epoch, error)
            except _StaleOperation:
                pass
            raise error

        if self._state.connection_state is _S.CONNECTED:
            return self._state

        self._attach_listeners()
        token = self._epoch
        if self._state.connection_state is _S.NETWORK_CHECK:
            # account already known; re-evaluation was never started
            task = self._start(self._guarded(token, lambda: self._network_then_registration(token, self.network.chain_id)))
        else:
            task = self._start(self._connect_pipeline(token))
        return await self._await(task, timeout, "Wallet connection")

    async def _connect_pipeline(self, token: int) -> WalletConnection:
        async def run() -> WalletConnection:
            self._transition(
                token, _S.CONNECTING,
                error_kind=None, error_hint=None, is_registered_on_chain=False
            )
            self._reported_account = None
            try:
                accounts = await self.provider.request("eth_requestAccounts")
            except ProviderRpcError as e:
                raise classify_error(e, context="Account access")
            self._check_epoch(token)
            if not accounts:
                raise UserRejectedError("The wallet did not expose any account")

            chain_id = parse_chain_id(await self.provider.request("eth_chainId"))
            self._transition(
                token, _S.NETWORK_CHECK,
                account_address=self._reported_account or normalize_address(accounts[0]),
                chain_id=chain_id
            )
            self.logger.info(f"Wallet account {self._state.account_address} connected on chain {chain_id}")
            return await self._network_then_registration(token, self.network.chain_id)

        return await self._guarded(token, run)

    async def _network_then_registration(self, token: int, expected_chain_id: int) -> WalletConnection:
        await self._network_step(token, expected_chain_id)
        self._transition(token, _S.REGISTERING)
        await self._registration_step(token, self.registration_timeout)
        self._transition(token, _S.CONNECTED, error_kind=None, error_hint=None)
        self.logger.info(f"Wallet {self._state.account_address} ready on chain {self._state.chain_id}")
        return self._state

    def _require_account(self) -> str:
        account = self._state.account_address
        if account is None or self._state.connection_state in (_S.DISCONNECTED, _S.CONNECTING, _S.ERROR):
            raise InvalidTransitionError(
                f"Operation requires a connected account (state: {self._state.connection_state.value})"
            )
        return account

    async def ensure_network(self, expected_chain_id: Optional[int] = None) -> WalletConnection:
        """
        Make sure the wallet is on ``expected_chain_id``.

        Requests a switch when the chain differs and, if the wallet does not
        know the network, asks it to add the configured network descriptor.
        When called on a CONNECTED wallet the registration check is repeated
        afterwards, since registration is chain specific.

        Raises:
            NetworkSwitchRejectedError: If the user declines the switch or addition
            NetworkSwitchFailedError: If the wallet cannot switch; ``details``
                carries ``manual_switch`` instructions
        """
        await self._wait_for_inflight()
        self._require_account()
        expected = expected_chain_id if expected_chain_id is not None else self.network.chain_id
        token = self._epoch

        async def run() -> WalletConnection:
            if self._state.connection_state is _S.NETWORK_CHECK:
                await self._network_step(token, expected)
                return self._state
            self._transition(token, _S.NETWORK_CHECK)
            return await self._network_then_registration(token, expected)

        return await self._await(self._start(self._guarded(token, run)), None, "Network check")

    async def ensure_registered(self, timeout: Optional[float] = None) -> WalletConnection:
        """
        Make sure the current account is registered with the contract.

        Submits a registration transaction when needed and waits for it to be
        confirmed. On timeout the transaction is left to complete on its own.

        Raises:
            InsufficientFundsError: If the account cannot pay for registration
            UserRejectedError: If the user declines the transaction
            RegistrationFailedError: If the transaction reverts or fails otherwise
            OperationTimeoutError: If no receipt arrives within ``timeout``
        """
        await self._wait_for_inflight()
        self._require_account()
        token = self._epoch
        wait = timeout if timeout is not None else self.registration_timeout

        async def run() -> WalletConnection:
            if self._state.connection_state is not _S.REGISTERING:
                self._transition(token, _S.REGISTERING)
            await self._registration_step(token, wait)
            self._transition(token, _S.CONNECTED, error_kind=None, error_hint=None)
            return self._state

        return await self._await(self._start(self._guarded(token, run)), None, "Registration")

    async def _network_step(self, token: int, expected: int) -> None:
        current = parse_chain_id(await self.provider.request("eth_chainId"))
        self._check_epoch(token)
        if current == expected:
            self._set_state(chain_id=current)
            return

        self.logger.info(f"Wallet is on chain {current}, requesting switch to {expected}")
        self._pending_switch = expected
        try:
            try:
                await self.provider.request("wallet_switchEthereumChain", [{"chainId": format_chain_id(expected)}])
            except ProviderRpcError as e:
                if e.code == CHAIN_NOT_ADDED:
                    await self._add_network(token, expected)
                elif e.code == USER_REJECTED:
                    raise self._switch_error(NetworkSwitchRejectedError, expected, f"Network switch to {expected} was rejected") from e
                else:
                    raise self._switch_error(NetworkSwitchFailedError, expected, f"Network switch to {expected} failed: {e.message}") from e
            self._check_epoch(token)

            current = parse_chain_id(await self.provider.request("eth_chainId"))
            self._check_epoch(token)
            if current != expected:
                raise self._switch_error(NetworkSwitchFailedError, expected, f"Wallet is still on chain {current} after switching")
            self._set_state(chain_id=current, is_registered_on_chain=False)
        finally:
            self._pending_switch = None

    async def _add_network(self, token: int, expected: int) -> None:
        if expected != self.network.chain_id:
            raise self._switch_error(NetworkSwitchFailedError, expected, f"Chain {expected} is unknown to the wallet")
        self.logger.info(f"Wallet does not know chain {expected}; requesting to add {self.network.name}")
        try:
            await self.provider.request("wallet_addEthereumChain", [self.network.to_add_chain_params()])
            self._check_epoch(token)
            current = parse_chain_id(await self.provider.request("eth_chainId"))
            if current != expected:
                await self.provider.request("wallet_switchEthereumChain", [{"chainId": format_chain_id(expected)}])
        except ProviderRpcError as e:
            if e.code == USER_REJECTED:
                raise self._switch_error(NetworkSwitchRejectedError, expected, f"Adding {self.network.name} was rejected") from e
            raise self._switch_error(NetworkSwitchFailedError, expected, f"Failed to add {self.network.name}: {e.message}") from e

    def _switch_error(self, error_cls, expected: int, message: str) -> SecureTxError:
        details: Dict[str, Any] = {"expected_chain_id": expected}
        if expected == self.network.chain_id:
            details["manual_switch"] = self.network.manual_switch_instructions()
        return error_cls(message, details=details)

    async def _registration_step(self, token: int, timeout: Optional[float]) -> None:
        account = self._state.account_address
        try:
            registered = await self.chain.is_registered(account)
        except Exception as e:
            raise classify_error(e, RegistrationFailedError, "Registration status check")
        self._check_epoch(token)
        if registered:
            self._set_state(is_registered_on_chain=True)
            return

        self.logger.info(f"Account {account} is not registered; submitting registration")
        try:
            handle = await self.chain.register(account)
        except Exception as e:
            raise classify_error(e, RegistrationFailedError, "Registration")
        self._check_epoch(token)

        try:
            receipt = await self.chain.wait_for_receipt(handle.hash, timeout=timeout, poll_interval=self.receipt_poll_interval)
        except OperationTimeoutError as e:
            raise OperationTimeoutError(
                f"Registration {handle.hash} was not confirmed within {timeout}s",
                details={"tx_hash": handle.hash}
            ) from e
        except Exception as e:
            raise classify_error(e, RegistrationFailedError, "Registration")
        self._check_epoch(token)

        if not receipt.succeeded:
            raise RegistrationFailedError(
                f"Registration transaction {handle.hash} reverted",
                details={"tx_hash": handle.hash}
            )
        self.logger.info(f"Registration confirmed in block {receipt.block_number}")
        self._set_state(is_registered_on_chain=True)

    def reset(self, error: Optional[SecureTxError] = None) -> WalletConnection:
        """
        Drop all connection state and invalidate in-flight operations.

        Provider listeners stay attached. ``error`` is recorded as the reason
        (e.g. an expired session).
        """
        self._epoch += 1
        self._pending_switch = None
        self._inflight = None
        if error is not None:
            self.last_error = error
        return self._set_state(
            connection_state=_S.DISCONNECTED,
            account_address=None,
            chain_id=None,
            is_registered_on_chain=False,
            error_kind=error.kind.value if error else None,
            error_hint=error.hint if error else None,
        )

    def disconnect(self) -> WalletConnection:
        """Clear connection state and detach provider listeners. Idempotent."""
        self._detach_listeners()
        if self._state.connection_state is _S.DISCONNECTED and self._state.account_address is None and self._inflight is None:
            return self._state
        self.logger.info("Wallet disconnected")
        return self.reset()

    # ------------------------------------------------------------------
    # Provider events
    # ------------------------------------------------------------------

    def _on_accounts_changed(self, accounts: List[str]) -> None:
        if not accounts:
            self.logger.info("Wallet reported no accounts; disconnecting")
            self.reset()
            return

        state = self._state.connection_state
        new_account = normalize_address(accounts[0])
        if state is _S.CONNECTING:
            # picked up by the connect pipeline before it leaves CONNECTING
            self._reported_account = new_account
            return
        if state in (_S.DISCONNECTED, _S.ERROR):
            return
        if new_account == self._state.account_address:
            return

        self.logger.info(f"Wallet account changed to {new_account}; re-checking network and registration")
        self._epoch += 1
        token = self._epoch
        self._set_state(
            connection_state=_S.NETWORK_CHECK,
            account_address=new_account,
            is_registered_on_chain=False,
            error_kind=None,
            error_hint=None,
        )
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.logger.warning("No running event loop; account re-evaluation deferred to the next connect()")
            return
        self._start(self._guarded(token, lambda: self._network_then_registration(token, self.network.chain_id)))

    def _on_chain_changed(self, chain_id: Any) -> None:
        chain_id = parse_chain_id(chain_id)
        if self._pending_switch is not None and chain_id == self._pending_switch:
            self._set_state(chain_id=chain_id)
            return
        if chain_id == self._state.chain_id:
            return
        if self._state.connection_state is _S.DISCONNECTED:
            return
        self.logger.info(f"Wallet chain changed to {chain_id}; resetting connection state")
        self.reset()

    def _on_connect(self, info: Any) -> None:
        chain_id = info.get("chainId") if isinstance(info, dict) else None
        self.logger.debug(f"Wallet provider connected (chain {chain_id})")
        if chain_id is not None and self._state.connection_state is _S.DISCONNECTED:
            self._set_state(chain_id=parse_chain_id(chain_id))

    def _on_disconnect(self, error: Any) -> None:
        self.logger.info(f"Wallet provider disconnected: {error}")
        self.reset()
