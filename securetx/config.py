"""
Network and runtime configuration for the SecureTx SDK.
"""
import importlib.resources
import json
import logging
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ENV_PREFIX = "SECURETX_"


def format_chain_id(chain_id: Any) -> str:
    """
    Format a chain ID as the 0x-prefixed hex string wallets expect.

    Args:
        chain_id: Chain ID as int, decimal string or hex string

    Returns:
        Hex chain ID, e.g. "0xaa36a7" for 11155111
    """
    if isinstance(chain_id, str):
        if chain_id.startswith("0x"):
            return chain_id.lower()
        return hex(int(chain_id))
    return hex(chain_id)


def parse_chain_id(value: Any) -> int:
    """Parse a chain ID reported by a provider (hex string or int)."""
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class NativeCurrency(BaseModel):
    name: str = "Ether"
    symbol: str = "ETH"
    decimals: int = 18


class NetworkDescriptor(BaseModel):
    """Everything the SDK needs to know about one network"""
    name: str
    chain_id: int
    rpc_url: str
    explorer_url: str = ""
    currency: NativeCurrency = Field(default_factory=NativeCurrency)
    contract_address: Optional[str] = None
    default_gas_limit: int = 500000
    gas_limit_multiplier: float = 1.2
    required_confirmations: int = 2

    @property
    def chain_id_hex(self) -> str:
        return format_chain_id(self.chain_id)

    def to_add_chain_params(self) -> Dict[str, Any]:
        """Parameters for ``wallet_addEthereumChain``."""
        params: Dict[str, Any] = {
            "chainId": self.chain_id_hex,
            "chainName": self.name,
            "nativeCurrency": self.currency.model_dump(),
            "rpcUrls": [self.rpc_url],
        }
        if self.explorer_url:
            params["blockExplorerUrls"] = [self.explorer_url]
        return params

    def manual_switch_instructions(self) -> Dict[str, Any]:
        """Network details a user needs to add or select the network by hand."""
        return {
            "network_name": self.name,
            "rpc_url": self.rpc_url,
            "chain_id": self.chain_id,
            "currency_symbol": self.currency.symbol,
            "block_explorer_url": self.explorer_url,
        }

    def tx_url(self, tx_hash: str) -> Optional[str]:
        if not self.explorer_url:
            return None
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"

    def address_url(self, address: str) -> Optional[str]:
        if not self.explorer_url:
            return None
        return f"{self.explorer_url.rstrip('/')}/address/{address}"


class NetworkConfig:
    """Access to the packaged network definitions."""

    _networks_cache: Optional[Dict[str, Dict[str, Any]]] = None

    @classmethod
    def load_networks(cls) -> Dict[str, Dict[str, Any]]:
        """
        Load network definitions from the packaged networks.json.

        Returns:
            Mapping of network name to raw definition
        """
        if cls._networks_cache is None:
            resource = importlib.resources.files("securetx").joinpath("networks.json")
            with resource.open("r", encoding="utf-8") as f:
                cls._networks_cache = json.load(f)
            logger.debug(f"Loaded {len(cls._networks_cache)} network definitions")
        return cls._networks_cache

    @classmethod
    def get_network(cls, network: str) -> Dict[str, Any]:
        """
        Get the raw definition of a network.

        Raises:
            ValueError: If the network is not defined
        """
        networks = cls.load_networks()
        if network not in networks:
            available = ", ".join(sorted(networks))
            raise ValueError(f"Network '{network}' not found. Available networks: {available}")
        return networks[network]

    @staticmethod
    def _env_name(network: str, suffix: str) -> str:
        return f"{ENV_PREFIX}{network.upper().replace('-', '_')}_{suffix}"

    @classmethod
    def get_rpc_url(cls, network: str, override: Optional[str] = None) -> str:
        """
        RPC URL for a network.

        Resolution order: ``override``, ``SECURETX_<NETWORK>_RPC_URL``,
        the packaged definition.
        """
        if override:
            return override
        env_url = os.environ.get(cls._env_name(network, "RPC_URL"))
        if env_url:
            return env_url
        return cls.get_network(network)["rpc"]

    @classmethod
    def get_chain_id(cls, network: str) -> int:
        return int(cls.get_network(network)["chainId"])

    @classmethod
    def get_contract_address(cls, network: str, override: Optional[str] = None) -> Optional[str]:
        """
        SecureToken contract address for a network.

        Resolution order: ``override``, ``SECURETX_CONTRACT_ADDRESS``,
        the packaged definition. Returns None if none is configured.
        """
        if override:
            return override
        env_address = os.environ.get(f"{ENV_PREFIX}CONTRACT_ADDRESS")
        if env_address:
            return env_address
        return cls.get_network(network).get("secureToken") or None

    @classmethod
    def get_descriptor(
        cls,
        network: str,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None
    ) -> NetworkDescriptor:
        """Build a NetworkDescriptor with overrides applied."""
        raw = cls.get_network(network)
        return NetworkDescriptor(
            name=raw.get("name", network),
            chain_id=int(raw["chainId"]),
            rpc_url=cls.get_rpc_url(network, rpc_url),
            explorer_url=raw.get("explorer", ""),
            currency=NativeCurrency(**raw.get("currency", {})),
            contract_address=cls.get_contract_address(network, contract_address),
            default_gas_limit=raw.get("defaultGasLimit", 500000),
            gas_limit_multiplier=raw.get("gasLimitMultiplier", 1.2),
            required_confirmations=raw.get("requiredConfirmations", 2),
        )


class ReconcileSettings(BaseModel):
    """Timing knobs for transaction reconciliation (seconds)"""
    poll_interval: float = Field(15.0, gt=0)
    jitter: float = Field(5.0, ge=0)
    receipt_timeout: float = Field(120.0, gt=0)
    receipt_poll_interval: float = Field(1.0, gt=0)
    correlation_window: int = Field(300, ge=0)
    drop_timeout: float = Field(600.0, gt=0)

    @classmethod
    def from_env(cls) -> "ReconcileSettings":
        """Read overrides from SECURETX_* environment variables."""
        env_map = {
            "poll_interval": "POLL_INTERVAL",
            "jitter": "POLL_JITTER",
            "receipt_timeout": "RECEIPT_TIMEOUT",
            "receipt_poll_interval": "RECEIPT_POLL_INTERVAL",
            "correlation_window": "CORRELATION_WINDOW",
            "drop_timeout": "DROP_TIMEOUT",
        }
        values = {}
        for field, suffix in env_map.items():
            raw = os.environ.get(f"{ENV_PREFIX}{suffix}")
            if raw is not None:
                values[field] = raw
        return cls(**values)
