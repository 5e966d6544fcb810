"""
Tests for the SecureTxClient facade.
"""
import asyncio
from unittest.mock import MagicMock

import pytest

from securetx import SecureTxClient
from securetx.exceptions import (
    ErrorKind, InvalidAmountError, InvalidRecipientError, ProviderUnavailableError, SessionExpiredError
)
from securetx.ledger import LedgerClient
from securetx.models import ConnectionState, TxStatus
from securetx.provider.base import ACCOUNTS_CHANGED
from securetx.relay import InMemoryRelay, RelayEvent

from conftest import ALICE, BOB, SEPOLIA_CHAIN_ID, TEST_BACKEND_URL, TEST_CONTRACT


@pytest.fixture
def relay():
    return InMemoryRelay()


@pytest.fixture
def client(provider, chain, sepolia, relay, fast_settings):
    return SecureTxClient(provider, chain, sepolia, relay=relay, settings=fast_settings)


class TestLifetime:
    def test_connect_starts_tracking(self, client, provider, relay):
        async def scenario():
            async with client:
                state = await client.connect()
                tracked = (client.account, client.reconciler.polling_account, relay.subscriber_count(ALICE))
            return state, tracked

        state, tracked = asyncio.run(scenario())

        assert state.connection_state is ConnectionState.CONNECTED
        assert tracked == (ALICE, ALICE, 1)
        assert relay.subscriber_count(ALICE) == 0
        assert client.reconciler.polling_account is None
        assert client.state.connection_state is ConnectionState.DISCONNECTED
        assert provider.listener_count() == 0

    def test_account_switch_moves_tracking(self, client, provider, chain, relay):
        chain.registered.add(BOB.lower())

        async def scenario():
            async with client:
                await client.connect()
                provider.accounts = [BOB]
                provider.emit(ACCOUNTS_CHANGED, [BOB])
                await asyncio.sleep(0.05)
                return client.account, client.reconciler.polling_account

        account, polling = asyncio.run(scenario())

        assert account == BOB
        assert polling == BOB
        assert relay.subscriber_count(ALICE) == 0

    def test_wallet_disconnect_stops_tracking(self, client, relay):
        async def scenario():
            async with client:
                await client.connect()
                client.wallet.disconnect()
                return client.account, client.reconciler.polling_account, relay.subscriber_count(ALICE)

        assert asyncio.run(scenario()) == (None, None, 0)


class TestSend:
    def test_send_connects_and_confirms(self, client, chain, sepolia):
        async def scenario():
            async with client:
                local_id = await client.send(BOB, "0.5")
                record = await client.wait_for_confirmation(local_id, timeout=1)
                return record, client.history()

        record, history = asyncio.run(scenario())

        assert record.status is TxStatus.COMPLETED
        assert record.amount == 5 * 10**17
        assert history[0].hash == record.hash
        assert client.tx_url(record.hash) == f"https://sepolia.etherscan.io/tx/{record.hash}"
        assert chain.calls.count("transfer") == 1

    @pytest.mark.parametrize("to,amount,error", [
        ("0x123", 1, InvalidRecipientError),
        (BOB, 0, InvalidAmountError),
        (BOB, "-0.5", InvalidAmountError),
    ])
    def test_invalid_input_is_rejected_before_connecting(self, client, provider, chain, to, amount, error):
        with pytest.raises(error):
            asyncio.run(client.send(to, amount))

        assert provider.calls == []
        assert chain.calls == []

    def test_history_without_account(self, client):
        assert client.history() == []


class TestNotifications:
    def test_wallet_update_sets_known_balance(self, client, chain, relay):
        async def scenario():
            async with client:
                await client.connect()
                relay.publish(ALICE, RelayEvent.WALLET_UPDATE, {"address": ALICE, "balance": "2.5"})
                return await client.balance()

        assert asyncio.run(scenario()) == 25 * 10**17
        assert "balance_of" not in chain.calls

    def test_malformed_wallet_update_is_ignored(self, client, chain, relay):
        async def scenario():
            async with client:
                await client.connect()
                relay.publish(ALICE, RelayEvent.WALLET_UPDATE, {"address": ALICE, "balance": "lots"})
                relay.publish(ALICE, RelayEvent.WALLET_UPDATE, {"balance": "1"})
                return await client.balance()

        assert asyncio.run(scenario()) == 10 * 10**18
        assert "balance_of" in chain.calls

    def test_transaction_update_requests_reconcile(self, client, chain, relay):
        async def scenario():
            async with client:
                await client.connect()
                await client.reconciler.stop()
                await asyncio.sleep(0.02)
                before = chain.calls.count("get_user_transactions")
                relay.publish(ALICE, RelayEvent.TRANSACTION_UPDATE, {"status": "COMPLETED"})
                await asyncio.sleep(0.02)
                return before, chain.calls.count("get_user_transactions")

        before, after = asyncio.run(scenario())

        assert after == before + 1

    def test_expired_session_resets_wallet(self, provider, chain, sepolia, relay, fast_settings):
        ledger = MagicMock()
        ledger.list_transactions.side_effect = SessionExpiredError("Backend rejected the session token")
        client = SecureTxClient(provider, chain, sepolia, ledger=ledger, relay=relay, settings=fast_settings)

        async def scenario():
            async with client:
                await client.connect()
                await asyncio.sleep(0.05)
                return client.state, client.account

        state, account = asyncio.run(scenario())

        assert state.connection_state is ConnectionState.DISCONNECTED
        assert state.error_kind == ErrorKind.SESSION_EXPIRED.value
        assert account is None
        assert isinstance(client.wallet.last_error, SessionExpiredError)
        ledger.set_session.assert_called_with(None)
        assert relay.subscriber_count(ALICE) == 0


class TestFromNetwork:
    def test_builds_components(self, monkeypatch):
        monkeypatch.setenv("SECURETX_POLL_INTERVAL", "3")

        client = SecureTxClient.from_network(
            "sepolia", provider=None, backend_url=TEST_BACKEND_URL, contract_address=TEST_CONTRACT
        )

        assert client.network.chain_id == SEPOLIA_CHAIN_ID
        assert isinstance(client.ledger, LedgerClient)
        assert client.ledger.base_url == TEST_BACKEND_URL
        assert client.settings.poll_interval == 3.0
        assert client.chain.contract.address == TEST_CONTRACT

    def test_missing_contract_address(self, monkeypatch):
        monkeypatch.delenv("SECURETX_CONTRACT_ADDRESS", raising=False)

        with pytest.raises(ValueError, match="No SecureToken contract address"):
            SecureTxClient.from_network("sepolia", provider=None)

    def test_connect_without_provider(self):
        client = SecureTxClient.from_network("localhost", provider=None)

        with pytest.raises(ProviderUnavailableError):
            asyncio.run(client.connect())

        assert client.state.connection_state is ConnectionState.ERROR
        assert client.state.error_kind == ErrorKind.PROVIDER_UNAVAILABLE.value
