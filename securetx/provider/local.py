"""
Key-backed wallet provider.

``LocalAccountProvider`` plays the role a browser wallet plays for a web page:
it holds the account key, asks for approval before privileged actions and
signs transactions locally before handing them to a node. It is meant for
scripts, bots and integration tests against a development node.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from ..config import NetworkDescriptor, format_chain_id, parse_chain_id
from .base import (
    ACCOUNTS_CHANGED, CHAIN_CHANGED, CHAIN_NOT_ADDED, CONNECT, INTERNAL_ERROR,
    UNAUTHORIZED, USER_REJECTED, ProviderRpcError, WalletProvider
)

logger = logging.getLogger(__name__)

Approval = Callable[[str, List[Any]], bool]

# Methods that require user approval, as a browser wallet would prompt for them
PRIVILEGED_METHODS = frozenset({
    "eth_requestAccounts",
    "wallet_switchEthereumChain",
    "wallet_addEthereumChain",
    "eth_sendTransaction",
})

_QUANTITY_FIELDS = ("gas", "gasPrice", "value", "nonce", "chainId", "maxFeePerGas", "maxPriorityFeePerGas")


def _always_approve(method: str, params: List[Any]) -> bool:
    return True


class LocalAccountProvider(WalletProvider):
    """
    Wallet provider backed by a local private key.

    Args:
        private_key: Hex private key of the account
        networks: Networks the wallet knows about, keyed by chain ID
        chain_id: Chain the wallet starts on (defaults to the first network)
        approve: Callback standing in for the user prompt; returning False
            rejects the request with code 4001
    """

    def __init__(
        self,
        private_key: str,
        networks: List[NetworkDescriptor],
        chain_id: Optional[int] = None,
        approve: Optional[Approval] = None
    ):
        super().__init__()
        if not networks:
            raise ValueError("At least one network must be provided")
        self.account: LocalAccount = Account.from_key(private_key)
        self._rpc_urls: Dict[int, str] = {n.chain_id: n.rpc_url for n in networks}
        self._web3: Dict[int, Web3] = {}
        self.chain_id = chain_id if chain_id is not None else networks[0].chain_id
        if self.chain_id not in self._rpc_urls:
            raise ValueError(f"Chain {self.chain_id} is not one of the configured networks")
        self.approve = approve or _always_approve
        self.authorized = False

    @property
    def address(self) -> str:
        return self.account.address

    def _w3(self) -> Web3:
        w3 = self._web3.get(self.chain_id)
        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(self._rpc_urls[self.chain_id]))
            self._web3[self.chain_id] = w3
        return w3

    def _require_approval(self, method: str, params: List[Any]) -> None:
        if method in PRIVILEGED_METHODS and not self.approve(method, params):
            raise ProviderRpcError(USER_REJECTED, "User rejected the request.")

    def _require_authorized(self) -> None:
        if not self.authorized:
            raise ProviderRpcError(UNAUTHORIZED, "The requested account has not been authorized by the user.")

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        params = list(params or [])
        logger.debug(f"Provider request: {method}")

        if method == "eth_requestAccounts":
            self._require_approval(method, params)
            newly_authorized = not self.authorized
            self.authorized = True
            if newly_authorized:
                self.emit(CONNECT, {"chainId": format_chain_id(self.chain_id)})
            return [self.address]
        if method == "eth_accounts":
            return [self.address] if self.authorized else []
        if method == "eth_chainId":
            return format_chain_id(self.chain_id)
        if method == "wallet_switchEthereumChain":
            target = parse_chain_id(params[0]["chainId"])
            if target not in self._rpc_urls:
                raise ProviderRpcError(CHAIN_NOT_ADDED, f"Unrecognized chain ID {format_chain_id(target)}.")
            self._require_approval(method, params)
            self._switch(target)
            return None
        if method == "wallet_addEthereumChain":
            self._require_approval(method, params)
            chain_params = params[0]
            target = parse_chain_id(chain_params["chainId"])
            self._rpc_urls[target] = chain_params["rpcUrls"][0]
            self._switch(target)
            return None
        if method == "eth_sendTransaction":
            self._require_authorized()
            self._require_approval(method, params)
            return await self._send_transaction(dict(params[0]))

        return await self._forward(method, params)

    def _switch(self, target: int) -> None:
        if target == self.chain_id:
            return
        self.chain_id = target
        logger.info(f"Wallet switched to chain {target}")
        self.emit(CHAIN_CHANGED, format_chain_id(target))

    async def _send_transaction(self, tx: Dict[str, Any]) -> str:
        for field in _QUANTITY_FIELDS:
            if isinstance(tx.get(field), str):
                tx[field] = int(tx[field], 16)
        sender = tx.pop("from", self.address)
        if sender.lower() != self.address.lower():
            raise ProviderRpcError(UNAUTHORIZED, f"Account {sender} is not managed by this wallet.")

        def send() -> str:
            w3 = self._w3()
            tx.setdefault("chainId", self.chain_id)
            tx.setdefault("nonce", w3.eth.get_transaction_count(self.address, "pending"))
            if "gasPrice" not in tx and "maxFeePerGas" not in tx:
                tx["gasPrice"] = w3.eth.gas_price
            if "gas" not in tx:
                tx["gas"] = w3.eth.estimate_gas({**tx, "from": self.address})
            signed = self.account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            return Web3.to_hex(tx_hash)

        try:
            tx_hash = await asyncio.to_thread(send)
        except ProviderRpcError:
            raise
        except Exception as e:
            logger.error(f"Failed to send transaction: {e}")
            raise ProviderRpcError(INTERNAL_ERROR, str(e)) from e
        logger.info(f"Transaction sent: {tx_hash}")
        return tx_hash

    async def _forward(self, method: str, params: List[Any]) -> Any:
        response = await asyncio.to_thread(self._w3().provider.make_request, method, params)
        if "error" in response:
            error = response["error"]
            raise ProviderRpcError(error.get("code", INTERNAL_ERROR), error.get("message", "RPC error"), error.get("data"))
        return response.get("result")

    def revoke(self) -> None:
        """Revoke the page's access, as a user disconnecting the site would."""
        if self.authorized:
            self.authorized = False
            self.emit(ACCOUNTS_CHANGED, [])

    def switch_account(self, private_key: str) -> None:
        """Switch the active account and notify listeners."""
        self.account = Account.from_key(private_key)
        if self.authorized:
            self.emit(ACCOUNTS_CHANGED, [self.address])
