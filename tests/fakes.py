"""
In-memory stand-ins for the wallet provider and the chain gateway.
"""
import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from securetx.chain.base import ChainGateway, TxHandle
from securetx.models import ChainReceipt, ChainTxRecord
from securetx.provider.base import CHAIN_CHANGED, ProviderRpcError, WalletProvider


class FakeWalletProvider(WalletProvider):
    """
    Scriptable wallet provider.

    ``errors`` maps a method name to the ProviderRpcError it raises;
    ``hooks`` maps a method name to a callable run before it answers.
    """

    def __init__(self, accounts: Optional[List[str]] = None, chain_id: int = 11155111,
                 known_chains: Optional[Iterable[int]] = None, delay: float = 0.0):
        super().__init__()
        self.accounts = list(accounts or [])
        self.chain_id = chain_id
        self.known_chains: Set[int] = set(known_chains) if known_chains is not None else {chain_id, 11155111}
        self.delay = delay
        self.errors: Dict[str, ProviderRpcError] = {}
        self.hooks: Dict[str, Callable[[List[Any]], Any]] = {}
        self.calls: List[Tuple[str, List[Any]]] = []
        self.added: List[Dict[str, Any]] = []

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        params = params or []
        self.calls.append((method, params))
        if method == "eth_requestAccounts" and self.delay:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)
        hook = self.hooks.get(method)
        if hook is not None:
            hook(params)
        if method in self.errors:
            raise self.errors[method]

        if method in ("eth_requestAccounts", "eth_accounts"):
            return list(self.accounts)
        if method == "eth_chainId":
            return hex(self.chain_id)
        if method == "wallet_switchEthereumChain":
            target = int(params[0]["chainId"], 16)
            if target not in self.known_chains:
                raise ProviderRpcError(4902, f"Unrecognized chain ID {params[0]['chainId']}")
            self._switch(target)
            return None
        if method == "wallet_addEthereumChain":
            chain_params = params[0]
            target = int(chain_params["chainId"], 16)
            self.added.append(chain_params)
            self.known_chains.add(target)
            self._switch(target)
            return None
        raise ProviderRpcError(4200, f"Unsupported method {method}")

    def _switch(self, target: int) -> None:
        if target != self.chain_id:
            self.chain_id = target
            self.emit(CHAIN_CHANGED, hex(target))


class FakeChainGateway(ChainGateway):
    """
    Chain gateway keeping balances, registrations and receipts in memory.

    With ``auto_mine`` every submitted transaction gets a receipt at once;
    otherwise call ``mine`` to produce one.
    """

    def __init__(self, registered: Iterable[str] = (), balances: Optional[Dict[str, int]] = None,
                 auto_mine: bool = True):
        super().__init__()
        self.registered = {a.lower() for a in registered}
        self.balances = {a.lower(): v for a, v in (balances or {}).items()}
        self.auto_mine = auto_mine
        self.receipts: Dict[str, ChainReceipt] = {}
        self.dropped: Set[str] = set()
        self.user_transactions: Dict[str, List[ChainTxRecord]] = {}
        self.sent: List[TxHandle] = []
        self.calls: List[str] = []
        self.revert: Set[str] = set()
        self.revert_next = False
        self.register_error: Optional[Exception] = None
        self.transfer_error: Optional[Exception] = None
        self.transfer_delay = 0.0
        self.before_is_registered: Optional[Callable[[], Any]] = None
        self._pending_registrations: Dict[str, str] = {}
        self._block = 100

    def _next_hash(self) -> str:
        return "0x" + format(len(self.sent) + 1, "064x")

    def mine(self, tx_hash: str, status: Optional[int] = None) -> ChainReceipt:
        """Produce a receipt for ``tx_hash``."""
        if status is None:
            status = 0 if tx_hash in self.revert else 1
        self._block += 1
        receipt = ChainReceipt(transactionHash=tx_hash, blockNumber=self._block, status=status, gasUsed=21000)
        self.receipts[tx_hash] = receipt
        sender = self._pending_registrations.pop(tx_hash, None)
        if sender is not None and status == 1:
            self.registered.add(sender.lower())
        return receipt

    def _submit(self, sender: str, kind: str) -> TxHandle:
        handle = TxHandle(hash=self._next_hash(), sender=sender, kind=kind)
        self.sent.append(handle)
        if self.revert_next:
            self.revert.add(handle.hash)
            self.revert_next = False
        return handle

    async def is_registered(self, address: str) -> bool:
        self.calls.append("is_registered")
        await asyncio.sleep(0)
        if self.before_is_registered is not None:
            self.before_is_registered()
        return address.lower() in self.registered

    async def register(self, sender: str) -> TxHandle:
        self.calls.append("register")
        await asyncio.sleep(0)
        if self.register_error is not None:
            raise self.register_error
        handle = self._submit(sender, "registration")
        self._pending_registrations[handle.hash] = sender
        if self.auto_mine:
            self.mine(handle.hash)
        return handle

    async def transfer(self, sender: str, to: str, amount_wei: int) -> TxHandle:
        self.calls.append("transfer")
        await asyncio.sleep(self.transfer_delay)
        if self.transfer_error is not None:
            raise self.transfer_error
        handle = self._submit(sender, "transfer")
        if self.auto_mine:
            self.mine(handle.hash)
        return handle

    async def balance_of(self, address: str) -> int:
        self.calls.append("balance_of")
        return self.balances.get(address.lower(), 0)

    async def get_user_transactions(self, address: str) -> List[ChainTxRecord]:
        self.calls.append("get_user_transactions")
        return list(self.user_transactions.get(address.lower(), []))

    async def get_gas_price(self) -> int:
        return 10**9

    async def get_receipt(self, tx_hash: str) -> Optional[ChainReceipt]:
        self.calls.append("get_receipt")
        return self.receipts.get(tx_hash)

    async def is_known(self, tx_hash: str) -> bool:
        self.calls.append("is_known")
        if tx_hash in self.dropped:
            return False
        return tx_hash in self.receipts or any(h.hash == tx_hash for h in self.sent)
