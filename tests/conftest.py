"""
Pytest fixtures for the SecureTx SDK tests.
"""
import pytest
from web3.providers.rpc import HTTPProvider

from securetx._rate_limited_log import reset_rate_limits
from securetx.config import NetworkConfig, NetworkDescriptor, ReconcileSettings

from fakes import FakeChainGateway, FakeWalletProvider

# Constants for testing
TEST_RPC_URL = "https://rpc.example.com"
TEST_BACKEND_URL = "https://api.example.com/api"
TEST_CONTRACT = "0x1234567890123456789012345678901234567890"
TEST_PRIV_KEY = "0x0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef"
SEPOLIA_CHAIN_ID = 11155111

ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
CAROL = "0x3333333333333333333333333333333333333333"


@pytest.fixture(autouse=True)
def _patch_http_provider(monkeypatch):
    """
    Stub every Web3 HTTP call so no DNS / network traffic is triggered.
    Works for all tests because it is autouse.
    """
    def _dummy(self, method, params=None, _=None):
        if method == "eth_chainId":
            return {"jsonrpc": "2.0", "id": 1, "result": hex(SEPOLIA_CHAIN_ID)}
        if method == "eth_gasPrice":
            return {"jsonrpc": "2.0", "id": 1, "result": "0x3b9aca00"}  # 1 gwei
        return {"jsonrpc": "2.0", "id": 1, "result": "0x0"}

    monkeypatch.setattr(HTTPProvider, "make_request", _dummy, raising=True)


@pytest.fixture(autouse=True)
def _clean_state():
    """Forget rate-limited messages and cached network definitions between tests."""
    reset_rate_limits()
    NetworkConfig._networks_cache = None
    yield
    reset_rate_limits()
    NetworkConfig._networks_cache = None


@pytest.fixture
def sepolia():
    return NetworkDescriptor(
        name="Sepolia",
        chain_id=SEPOLIA_CHAIN_ID,
        rpc_url=TEST_RPC_URL,
        explorer_url="https://sepolia.etherscan.io",
        contract_address=TEST_CONTRACT,
    )


@pytest.fixture
def fast_settings():
    return ReconcileSettings(
        poll_interval=0.01,
        jitter=0,
        receipt_timeout=0.2,
        receipt_poll_interval=0.01,
        correlation_window=300,
    )


@pytest.fixture
def provider():
    return FakeWalletProvider(accounts=[ALICE], chain_id=SEPOLIA_CHAIN_ID)


@pytest.fixture
def chain():
    return FakeChainGateway(registered=[ALICE], balances={ALICE: 10 * 10**18})
