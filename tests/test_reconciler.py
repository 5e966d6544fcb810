"""
Tests for TransactionReconciler: submission, confirmation and reconciliation passes.
"""
import asyncio
from unittest.mock import MagicMock

import pytest

from securetx.chain.base import TRANSACTION_EXECUTED
from securetx.config import ReconcileSettings
from securetx.exceptions import (
    InsufficientBalanceError, InsufficientFundsError, InvalidAmountError, InvalidRecipientError,
    LedgerError, OperationTimeoutError, SessionExpiredError, UserRejectedError
)
from securetx.journal import Blockchain
from securetx.models import ChainTxRecord, LedgerEntry, RecordSource, TxStatus
from securetx.reconcile import TransactionReconciler
from securetx.relay import InMemoryRelay, RelayEvent

from conftest import ALICE, BOB, CAROL
from fakes import FakeChainGateway

NOW = 1_700_000_000.0
ONE_ETH = 10**18
LEDGER_HASH = "0x" + "c" * 64


def make_reconciler(chain, settings, **kwargs):
    kwargs.setdefault("clock", lambda: NOW)
    return TransactionReconciler(chain, settings=settings, **kwargs)


class TestSubmit:
    def test_submit_and_confirm(self, chain, fast_settings):
        relay = InMemoryRelay()
        events = []
        relay.subscribe(ALICE, lambda name, payload: events.append((name, payload)))
        reconciler = make_reconciler(chain, fast_settings, relay=relay)

        async def scenario():
            local_id = await reconciler.submit(ALICE, BOB, "1.5")
            record = await reconciler.wait_for_confirmation(local_id, timeout=1)
            await reconciler.aclose()
            return local_id, record

        local_id, record = asyncio.run(scenario())

        assert record.status is TxStatus.COMPLETED
        assert record.local_id == local_id
        assert record.hash == chain.sent[0].hash
        assert record.amount == 1_500_000_000_000_000_000
        assert record.block_number == 101
        assert record.gas_used == 21000
        assert reconciler.get_history(ALICE) == [record]
        assert reconciler.get_intent(local_id).chain_tx_hash == record.hash

        statuses = [p["status"] for name, p in events if name == RelayEvent.TRANSACTION_UPDATE.value]
        assert statuses[0] == "PENDING"
        assert statuses[-1] == "COMPLETED"
        assert events[-1][1]["localId"] == local_id
        assert events[-1][1]["transactionHash"] == record.hash

    @pytest.mark.parametrize("amount", [0, "-1", "abc", "0.0000000000000000001"])
    def test_invalid_amount_makes_no_chain_call(self, chain, fast_settings, amount):
        reconciler = make_reconciler(chain, fast_settings)

        with pytest.raises(InvalidAmountError):
            asyncio.run(reconciler.submit(ALICE, BOB, amount))

        assert chain.calls == []
        assert reconciler.get_history(ALICE) == []

    @pytest.mark.parametrize("recipient", ["0x123", "", "not-an-address", "0x5FBDB2315678afecb367f032d93F642f64180aa3"])
    def test_invalid_recipient_makes_no_chain_call(self, chain, fast_settings, recipient):
        reconciler = make_reconciler(chain, fast_settings)

        with pytest.raises(InvalidRecipientError):
            asyncio.run(reconciler.submit(ALICE, recipient, 1))

        assert chain.calls == []

    def test_amount_above_fetched_balance(self, chain, fast_settings):
        reconciler = make_reconciler(chain, fast_settings)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            asyncio.run(reconciler.submit(ALICE, BOB, 11))

        assert chain.calls == ["balance_of"]
        assert exc_info.value.details == {"amount": str(11 * ONE_ETH), "balance": str(10 * ONE_ETH)}
        assert reconciler.known_balance(ALICE) == 10 * ONE_ETH
        assert reconciler.get_history(ALICE) == []

    def test_known_balance_is_used(self, chain, fast_settings):
        reconciler = make_reconciler(chain, fast_settings)
        reconciler.update_balance(ALICE, ONE_ETH)

        with pytest.raises(InsufficientBalanceError):
            asyncio.run(reconciler.submit(ALICE, BOB, 2))

        assert "balance_of" not in chain.calls

    def test_user_rejection_marks_record_failed(self, chain, fast_settings):
        chain.transfer_error = ValueError({"code": 4001, "message": "User denied transaction signature"})
        reconciler = make_reconciler(chain, fast_settings)

        with pytest.raises(UserRejectedError):
            asyncio.run(reconciler.submit(ALICE, BOB, 1))

        history = reconciler.get_history(ALICE)
        assert len(history) == 1
        assert history[0].status is TxStatus.FAILED
        assert history[0].hash is None

    def test_insufficient_funds_for_gas(self, chain, fast_settings):
        chain.transfer_error = Exception("insufficient funds for gas * price + value")
        reconciler = make_reconciler(chain, fast_settings)

        with pytest.raises(InsufficientFundsError):
            asyncio.run(reconciler.submit(ALICE, BOB, 1))

    def test_reverted_transfer_is_failed(self, chain, fast_settings):
        chain.revert_next = True
        relay = InMemoryRelay()
        events = []
        relay.subscribe(ALICE, lambda name, payload: events.append(payload))
        reconciler = make_reconciler(chain, fast_settings, relay=relay)

        async def scenario():
            local_id = await reconciler.submit(ALICE, BOB, 1)
            record = await reconciler.wait_for_confirmation(local_id, timeout=1)
            await reconciler.aclose()
            return record

        record = asyncio.run(scenario())

        assert record.status is TxStatus.FAILED
        assert events[-1]["status"] == "FAILED"

    def test_dispatch_timeout_keeps_going(self, chain, fast_settings):
        chain.transfer_delay = 0.1
        reconciler = make_reconciler(chain, fast_settings)

        async def scenario():
            with pytest.raises(OperationTimeoutError) as exc_info:
                await reconciler.submit(ALICE, BOB, 1, timeout=0.01)
            local_id = exc_info.value.details["local_id"]
            assert reconciler.get_record(local_id).hash is None
            record = await reconciler.wait_for_confirmation(local_id, timeout=1)
            await reconciler.aclose()
            return record

        record = asyncio.run(scenario())

        assert record.status is TxStatus.COMPLETED
        assert record.hash == chain.sent[0].hash

    def test_submit_records_in_ledger(self, chain, fast_settings):
        ledger = MagicMock()
        reconciler = make_reconciler(chain, fast_settings, ledger=ledger)

        async def scenario():
            local_id = await reconciler.submit(ALICE, BOB, 1)
            await reconciler.wait_for_confirmation(local_id, timeout=1)
            await asyncio.sleep(0.05)
            await reconciler.aclose()

        asyncio.run(scenario())

        ledger.create_transaction.assert_called_once_with(BOB, ONE_ETH, chain.sent[0].hash)

    def test_ledger_rejection_during_follow_up(self, chain, fast_settings):
        ledger = MagicMock()
        ledger.create_transaction.side_effect = SessionExpiredError("Session expired")
        expired = []
        reconciler = make_reconciler(chain, fast_settings, ledger=ledger, on_session_expired=expired.append)

        async def scenario():
            local_id = await reconciler.submit(ALICE, BOB, 1)
            record = await reconciler.wait_for_confirmation(local_id, timeout=1)
            await asyncio.sleep(0.05)
            await reconciler.aclose()
            return record

        record = asyncio.run(scenario())

        assert record.status is TxStatus.COMPLETED
        assert len(expired) == 1
        assert isinstance(expired[0], SessionExpiredError)


class TestWaitForConfirmation:
    def test_unknown_local_id(self, chain, fast_settings):
        reconciler = make_reconciler(chain, fast_settings)

        with pytest.raises(KeyError):
            asyncio.run(reconciler.wait_for_confirmation("missing", timeout=0.1))

    def test_times_out_then_settles(self, fast_settings):
        chain = FakeChainGateway(registered=[ALICE], balances={ALICE: 10 * ONE_ETH}, auto_mine=False)
        reconciler = make_reconciler(chain, fast_settings)

        async def scenario():
            local_id = await reconciler.submit(ALICE, BOB, 1)
            with pytest.raises(OperationTimeoutError):
                await reconciler.wait_for_confirmation(local_id, timeout=0.05)
            chain.mine(chain.sent[0].hash)
            record = await reconciler.wait_for_confirmation(local_id, timeout=1)
            await reconciler.aclose()
            return record

        record = asyncio.run(scenario())

        assert record.status is TxStatus.COMPLETED

    def test_receipt_stays_with_sender_after_switching_accounts(self, fast_settings):
        chain = FakeChainGateway(registered=[ALICE], balances={ALICE: 10 * ONE_ETH}, auto_mine=False)
        reconciler = make_reconciler(chain, fast_settings)

        async def scenario():
            local_id = await reconciler.submit(ALICE, BOB, 1)
            reconciler.start(CAROL)
            await asyncio.sleep(0.02)
            chain.mine(chain.sent[0].hash)
            record = await reconciler.wait_for_confirmation(local_id, timeout=1)
            await reconciler.aclose()
            return record

        record = asyncio.run(scenario())

        assert record.status is TxStatus.COMPLETED
        assert reconciler.get_history(ALICE)[0].status is TxStatus.COMPLETED
        assert reconciler.get_history(CAROL) == []


class TestReconcile:
    def _seed(self, chain):
        chain.user_transactions[ALICE.lower()] = [
            ChainTxRecord(**{"from": ALICE, "to": BOB, "amount": ONE_ETH, "timestamp": 1_699_999_000,
                             "transactionType": "transfer", "completed": True, "gasUsed": 21000}),
        ]

    def test_pass_merges_chain_and_ledger(self, chain, fast_settings):
        self._seed(chain)
        ledger = MagicMock()
        ledger.list_transactions.return_value = [
            LedgerEntry(transactionHash=LEDGER_HASH, to=CAROL, amount="5", status="pending", timestamp=1_699_999_500),
            LedgerEntry(transactionHash="0x" + "d" * 64, **{"from": BOB}, to=CAROL, amount="7", timestamp=1),
        ]
        journal = Blockchain()
        reconciler = make_reconciler(chain, fast_settings, ledger=ledger, journal=journal)

        result = asyncio.run(reconciler.reconcile(ALICE))

        assert [r.status for r in result.records] == [TxStatus.PENDING, TxStatus.COMPLETED]
        pending, completed = result.records
        assert pending.hash == LEDGER_HASH
        assert pending.from_address == ALICE
        assert pending.source is RecordSource.LEDGER
        assert completed.source is RecordSource.CHAIN
        assert reconciler.get_history(ALICE, limit=1) == [pending]
        assert len(journal) == 2
        assert journal.latest_block.transactions[0]["status"] == "COMPLETED"

        chain.mine(LEDGER_HASH)
        result = asyncio.run(reconciler.reconcile(ALICE))

        assert result.records[0].status is TxStatus.COMPLETED
        assert result.records[0].block_number == chain.receipts[LEDGER_HASH].block_number
        assert len(journal) == 3
        assert journal.is_valid()

    def test_unchanged_pass_publishes_nothing(self, chain, fast_settings):
        self._seed(chain)
        relay = InMemoryRelay()
        events = []
        relay.subscribe(ALICE, lambda name, payload: events.append(payload))
        reconciler = make_reconciler(chain, fast_settings, relay=relay)

        asyncio.run(reconciler.reconcile(ALICE))
        published = len(events)
        asyncio.run(reconciler.reconcile(ALICE))

        assert published == 1
        assert len(events) == published

    def test_expired_session_is_reported(self, chain, fast_settings):
        self._seed(chain)
        ledger = MagicMock()
        ledger.list_transactions.side_effect = SessionExpiredError("Session expired")
        expired = []
        reconciler = make_reconciler(chain, fast_settings, ledger=ledger, on_session_expired=expired.append)

        result = asyncio.run(reconciler.reconcile(ALICE))

        assert len(result.records) == 1
        assert len(expired) == 1

    def test_failing_sources_are_skipped(self, chain, fast_settings):
        ledger = MagicMock()
        ledger.list_transactions.side_effect = LedgerError("Ledger request failed: 503", status_code=503)
        chain.get_user_transactions = MagicMock(side_effect=ConnectionError("node down"))
        reconciler = make_reconciler(chain, fast_settings, ledger=ledger)

        result = asyncio.run(reconciler.reconcile(ALICE))

        assert result.records == []

    def test_conflicting_chain_reports_are_recorded(self, chain, fast_settings):
        chain.revert_next = True
        reconciler = make_reconciler(chain, fast_settings)

        async def scenario():
            local_id = await reconciler.submit(ALICE, BOB, 1)
            await reconciler.wait_for_confirmation(local_id, timeout=1)
            await reconciler.aclose()
            return local_id

        local_id = asyncio.run(scenario())
        tx_hash = chain.sent[0].hash
        reconciler._on_transaction_executed({
            "transactionHash": tx_hash, "from": ALICE, "to": BOB, "amount": ONE_ETH,
            "timestamp": int(NOW), "blockNumber": 101,
        })

        assert reconciler.get_record(local_id).status is TxStatus.FAILED
        assert len(reconciler.last_conflicts) == 1
        assert reconciler.last_conflicts[0].tx_key == ("hash", tx_hash)


    def test_settled_transfer_is_journaled_once(self, chain, fast_settings):
        journal = Blockchain()
        reconciler = make_reconciler(chain, fast_settings, journal=journal)

        async def scenario():
            local_id = await reconciler.submit(ALICE, BOB, 1)
            await reconciler.wait_for_confirmation(local_id, timeout=1)
            await reconciler.reconcile(ALICE)
            sealed = len(journal)
            await reconciler.reconcile(ALICE)
            await reconciler.aclose()
            return local_id, sealed

        local_id, sealed = asyncio.run(scenario())

        assert sealed == 2
        assert len(journal) == 2
        entries = journal.latest_block.transactions
        assert len(entries) == 1
        assert entries[0]["localId"] == local_id
        assert entries[0]["status"] == "COMPLETED"
        assert journal.pending_transactions == []
        assert journal.is_valid()


class TestDroppedTransfers:
    def _reconciler(self, chain, clock, **kwargs):
        settings = ReconcileSettings(poll_interval=0.01, jitter=0, receipt_timeout=0.05,
                                     receipt_poll_interval=0.01, drop_timeout=60)
        return TransactionReconciler(chain, settings=settings, clock=lambda: clock[0], **kwargs)

    def test_dropped_transfer_becomes_failed(self):
        chain = FakeChainGateway(registered=[ALICE], balances={ALICE: 10 * ONE_ETH}, auto_mine=False)
        clock = [NOW]
        relay = InMemoryRelay()
        events = []
        relay.subscribe(ALICE, lambda name, payload: events.append(payload))
        reconciler = self._reconciler(chain, clock, relay=relay)

        async def scenario():
            local_id = await reconciler.submit(ALICE, BOB, 1)
            chain.dropped.add(chain.sent[0].hash)
            await reconciler.reconcile(ALICE)
            early = reconciler.get_record(local_id).status
            clock[0] += 61
            await reconciler.reconcile(ALICE)
            await reconciler.aclose()
            return local_id, early

        local_id, early = asyncio.run(scenario())

        assert early is TxStatus.PENDING
        record = reconciler.get_record(local_id)
        assert record.status is TxStatus.FAILED
        assert record.hash == chain.sent[0].hash
        assert events[-1]["status"] == "FAILED"
        assert events[-1]["localId"] == local_id
        assert chain.calls.count("is_known") == 1

    def test_transfer_still_in_mempool_stays_pending(self):
        chain = FakeChainGateway(registered=[ALICE], balances={ALICE: 10 * ONE_ETH}, auto_mine=False)
        clock = [NOW]
        reconciler = self._reconciler(chain, clock)

        async def scenario():
            local_id = await reconciler.submit(ALICE, BOB, 1)
            clock[0] += 61
            await reconciler.reconcile(ALICE)
            await reconciler.aclose()
            return local_id

        local_id = asyncio.run(scenario())

        assert reconciler.get_record(local_id).status is TxStatus.PENDING
        assert "is_known" in chain.calls


class TestBackgroundWork:
    def test_polling_runs_until_stopped(self, chain, fast_settings):
        reconciler = make_reconciler(chain, fast_settings)

        async def scenario():
            reconciler.start(ALICE)
            await asyncio.sleep(0.05)
            assert reconciler.polling_account == ALICE
            await reconciler.stop()
            passes = chain.calls.count("get_user_transactions")
            await asyncio.sleep(0.03)
            return passes

        passes = asyncio.run(scenario())

        assert passes >= 2
        assert chain.calls.count("get_user_transactions") == passes
        assert reconciler.polling_account is None

    def test_transaction_executed_event_updates_view(self, chain, fast_settings):
        reconciler = make_reconciler(chain, fast_settings)
        tx_hash = "0x" + "e" * 64

        async def scenario():
            reconciler.start(ALICE)
            await asyncio.sleep(0.02)
            chain._dispatch_event(TRANSACTION_EXECUTED, {
                "transactionHash": tx_hash, "from": BOB, "to": ALICE, "amount": 3,
                "timestamp": 1_700_000_100, "blockNumber": 150, "transactionType": "transfer",
            })
            history = reconciler.get_history(ALICE)
            await reconciler.stop()
            return history

        history = asyncio.run(scenario())

        assert history[0].hash == tx_hash
        assert history[0].status is TxStatus.COMPLETED
        assert chain._event_listeners[TRANSACTION_EXECUTED] == []

    def test_malformed_event_is_ignored(self, chain, fast_settings):
        reconciler = make_reconciler(chain, fast_settings)

        reconciler._on_transaction_executed({"from": ALICE})

        assert reconciler.get_history(ALICE) == []

    def test_hints_are_coalesced(self, chain, fast_settings):
        reconciler = make_reconciler(chain, fast_settings)

        async def scenario():
            tasks = [reconciler.request_reconcile(ALICE) for _ in range(5)]
            await tasks[0]
            return tasks

        tasks = asyncio.run(scenario())

        assert all(task is tasks[0] for task in tasks)
        assert chain.calls.count("get_user_transactions") == 1

    def test_restart_for_another_account(self, chain, fast_settings):
        reconciler = make_reconciler(chain, fast_settings)

        async def scenario():
            reconciler.start(ALICE)
            first = reconciler._poll_task
            reconciler.start(ALICE)
            assert reconciler._poll_task is first
            reconciler.start(BOB)
            await asyncio.sleep(0)
            assert first.cancelled() or first.done()
            assert reconciler.polling_account == BOB
            await reconciler.aclose()

        asyncio.run(scenario())
