"""
Contract-backed chain gateway.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.types import TxReceipt as Web3TxReceipt

from ..config import NetworkDescriptor
from ..exceptions import ProviderUnavailableError, classify_error
from ..models import ChainReceipt, ChainTxRecord
from ..provider.base import WalletProvider
from .base import TRANSACTION_EXECUTED, USER_REGISTERED, ChainGateway, TxHandle

logger = logging.getLogger(__name__)


class ContractChainGateway(ChainGateway):
    """
    Chain gateway for the SecureToken contract.

    Reads go straight to the node through web3.py. Writes are built here and
    handed to the wallet provider for signing, the way a page hands a
    transaction to MetaMask.
    """

    # ABI for the SecureToken contract (the subset the SDK uses)
    SECURE_TOKEN_ABI = [
        {
            "inputs": [],
            "name": "register",
            "outputs": [],
            "stateMutability": "nonpayable",
            "type": "function"
        },
        {
            "inputs": [{"internalType": "address", "name": "user", "type": "address"}],
            "name": "isRegistered",
            "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
            "stateMutability": "view",
            "type": "function"
        },
        {
            "inputs": [{"internalType": "address", "name": "to", "type": "address"}],
            "name": "transfer",
            "outputs": [],
            "stateMutability": "payable",
            "type": "function"
        },
        {
            "inputs": [{"internalType": "address", "name": "userAddress", "type": "address"}],
            "name": "getUserTransactions",
            "outputs": [{
                "components": [
                    {"internalType": "address", "name": "from", "type": "address"},
                    {"internalType": "address", "name": "to", "type": "address"},
                    {"internalType": "uint256", "name": "amount", "type": "uint256"},
                    {"internalType": "uint256", "name": "timestamp", "type": "uint256"},
                    {"internalType": "string", "name": "transactionType", "type": "string"},
                    {"internalType": "bool", "name": "completed", "type": "bool"},
                    {"internalType": "uint256", "name": "status", "type": "uint256"},
                    {"internalType": "uint256", "name": "gasUsed", "type": "uint256"}
                ],
                "internalType": "struct SecureToken.Transaction[]",
                "name": "",
                "type": "tuple[]"
            }],
            "stateMutability": "view",
            "type": "function"
        },
        {
            "inputs": [{"internalType": "address", "name": "user", "type": "address"}],
            "name": "getDailyLimit",
            "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
            "stateMutability": "view",
            "type": "function"
        },
        {
            "anonymous": False,
            "inputs": [
                {"indexed": True, "internalType": "address", "name": "from", "type": "address"},
                {"indexed": True, "internalType": "address", "name": "to", "type": "address"},
                {"indexed": False, "internalType": "uint256", "name": "amount", "type": "uint256"},
                {"indexed": False, "internalType": "uint256", "name": "timestamp", "type": "uint256"},
                {"indexed": False, "internalType": "string", "name": "transactionType", "type": "string"}
            ],
            "name": "TransactionExecuted",
            "type": "event"
        },
        {
            "anonymous": False,
            "inputs": [
                {"indexed": True, "internalType": "address", "name": "userAddress", "type": "address"},
                {"indexed": False, "internalType": "string", "name": "username", "type": "string"},
                {"indexed": False, "internalType": "uint256", "name": "timestamp", "type": "uint256"}
            ],
            "name": "UserRegistered",
            "type": "event"
        }
    ]

    def __init__(
        self,
        network: NetworkDescriptor,
        provider: Optional[WalletProvider] = None,
        contract_address: Optional[str] = None,
        w3: Optional[Web3] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the gateway

        Args:
            network: Network descriptor (RPC URL, gas defaults)
            provider: Wallet provider used to sign writes (optional for read-only use)
            contract_address: SecureToken address (defaults to the network's)
            w3: Pre-built Web3 instance (defaults to an HTTPProvider on the network RPC)
            logger: Optional logger instance

        Raises:
            ValueError: If no contract address is configured
        """
        super().__init__()
        address = contract_address or network.contract_address
        if not address:
            raise ValueError(f"No SecureToken contract address configured for {network.name}")

        self.network = network
        self.provider = provider
        self.logger = logger or logging.getLogger(__name__)
        self.w3 = w3 or Web3(Web3.HTTPProvider(network.rpc_url))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(address),
            abi=self.SECURE_TOKEN_ABI
        )
        self._last_event_block: Optional[int] = None

    async def is_registered(self, address: str) -> bool:
        fn = self.contract.functions.isRegistered(Web3.to_checksum_address(address))
        return bool(await asyncio.to_thread(fn.call))

    async def balance_of(self, address: str) -> int:
        return int(await asyncio.to_thread(self.w3.eth.get_balance, Web3.to_checksum_address(address)))

    async def get_gas_price(self) -> int:
        return int(await asyncio.to_thread(lambda: self.w3.eth.gas_price))

    async def get_daily_limit(self, address: str) -> int:
        fn = self.contract.functions.getDailyLimit(Web3.to_checksum_address(address))
        return int(await asyncio.to_thread(fn.call))

    async def get_user_transactions(self, address: str) -> List[ChainTxRecord]:
        fn = self.contract.functions.getUserTransactions(Web3.to_checksum_address(address))
        raw = await asyncio.to_thread(fn.call)
        return [self._convert_chain_tx(entry) for entry in raw]

    @staticmethod
    def _convert_chain_tx(entry: Any) -> ChainTxRecord:
        """
        Convert one decoded struct from getUserTransactions.

        web3.py decodes tuple[] outputs as plain tuples in ABI order.
        """
        if isinstance(entry, dict):
            return ChainTxRecord.model_validate(entry)
        from_address, to_address, amount, timestamp, tx_type, completed, status, gas_used = entry
        return ChainTxRecord(
            from_address=from_address,
            to_address=to_address,
            amount=int(amount),
            timestamp=int(timestamp),
            transaction_type=tx_type,
            completed=bool(completed),
            status=int(status),
            gas_used=int(gas_used),
        )

    async def get_receipt(self, tx_hash: str) -> Optional[ChainReceipt]:
        try:
            receipt = await asyncio.to_thread(self.w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return self._convert_receipt(receipt)

    async def is_known(self, tx_hash: str) -> bool:
        try:
            await asyncio.to_thread(self.w3.eth.get_transaction, tx_hash)
        except TransactionNotFound:
            return False
        return True

    def _convert_receipt(self, web3_receipt: Web3TxReceipt) -> ChainReceipt:
        """
        Convert Web3 receipt to our ChainReceipt model

        Args:
            web3_receipt: The Web3 transaction receipt

        Returns:
            Our ChainReceipt model
        """
        receipt_dict = dict(web3_receipt)

        # Convert bytes to hex strings
        for key, value in list(receipt_dict.items()):
            if isinstance(value, (bytes, bytearray)):
                receipt_dict[key] = Web3.to_hex(value)

        receipt_dict["logs"] = [dict(log) for log in receipt_dict.get("logs", [])]
        return ChainReceipt.model_validate(receipt_dict)

    def _estimate_gas(self, fn: Any, tx_params: Dict[str, Any]) -> int:
        try:
            estimate = fn.estimate_gas(tx_params)
            gas = int(estimate * self.network.gas_limit_multiplier)
            self.logger.debug(f"Estimated gas: {gas}")
            return gas
        except Exception as e:
            # Fallback to default gas if estimation fails
            gas = self.network.default_gas_limit
            self.logger.warning(f"Gas estimation failed, using default: {gas}. Error: {e}")
            return gas

    async def _send(self, fn: Any, sender: str, value: int, kind: str) -> TxHandle:
        if self.provider is None:
            raise ProviderUnavailableError("A wallet provider is required to send transactions")

        sender = Web3.to_checksum_address(sender)

        def build() -> Dict[str, Any]:
            tx_params: Dict[str, Any] = {"from": sender, "value": value}
            tx_params["gas"] = self._estimate_gas(fn, dict(tx_params))
            tx_params["gasPrice"] = self.w3.eth.gas_price
            return fn.build_transaction(tx_params)

        try:
            tx = await asyncio.to_thread(build)
            tx_hash = await self.provider.request("eth_sendTransaction", [tx])
        except Exception as e:
            self.logger.error(f"Failed to send {kind} transaction: {e}")
            raise classify_error(e, context=f"{kind} failed")

        tx_hash = Web3.to_hex(tx_hash) if isinstance(tx_hash, (bytes, bytearray)) else str(tx_hash)
        self.logger.info(f"{kind.capitalize()} transaction sent: {tx_hash}")
        return TxHandle(hash=tx_hash.lower(), sender=sender, kind=kind)

    async def register(self, sender: str) -> TxHandle:
        return await self._send(self.contract.functions.register(), sender, 0, "registration")

    async def transfer(self, sender: str, to: str, amount_wei: int) -> TxHandle:
        fn = self.contract.functions.transfer(Web3.to_checksum_address(to))
        return await self._send(fn, sender, amount_wei, "transfer")

    async def poll_events(self) -> int:
        """
        Fetch TransactionExecuted and UserRegistered logs mined since the last poll.

        The first poll only records the current block.
        """
        latest = int(await asyncio.to_thread(lambda: self.w3.eth.block_number))
        if self._last_event_block is None:
            self._last_event_block = latest
            return 0
        if latest <= self._last_event_block:
            return 0

        from_block = self._last_event_block + 1
        dispatched = 0
        for event_name in (TRANSACTION_EXECUTED, USER_REGISTERED):
            if not self._event_listeners.get(event_name):
                continue
            event = getattr(self.contract.events, event_name)()
            logs = await asyncio.to_thread(event.get_logs, from_block=from_block, to_block=latest)
            for log in logs:
                payload = dict(log["args"])
                payload["transactionHash"] = Web3.to_hex(log["transactionHash"]).lower()
                payload["blockNumber"] = log["blockNumber"]
                self._dispatch_event(event_name, payload)
                dispatched += 1

        self._last_event_block = latest
        return dispatched
