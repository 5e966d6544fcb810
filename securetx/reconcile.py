"""
Transaction reconciliation.

Three sources describe the same transactions: intents submitted by this
session, the chain (contract records, receipts and events) and the backend
ledger. ``merge_records`` folds any number of observations into a single
deduplicated view; ``TransactionReconciler`` collects the observations,
runs the merge on a polling interval and on push hints, and reports
changes through the notification relay.
"""
import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ._rate_limited_log import rate_limited_log
from .chain.base import TRANSACTION_EXECUTED, ChainGateway
from .config import ReconcileSettings
from .exceptions import (
    InsufficientBalanceError, InvalidRecipientError, LedgerError, OperationTimeoutError,
    ReconciliationConflictError, SecureTxError, SessionExpiredError, classify_error
)
from .journal import Blockchain
from .ledger import LedgerClient
from .models import ChainReceipt, RecordSource, TransactionIntent, TransactionRecord, TxStatus
from .relay import NotificationRelay, RelayEvent
from .units import AmountLike, format_amount, is_valid_address, normalize_address, parse_amount

logger = logging.getLogger(__name__)

Key = Tuple[Any, ...]

# Fixed preference among equally authoritative sources for the merged record's source
_SOURCE_ORDER = {
    RecordSource.INTENT: 0,
    RecordSource.LEDGER: 1,
    RecordSource.RECEIPT: 2,
    RecordSource.CHAIN: 3,
}

_FOLDED_FIELDS = ("hash", "local_id", "from_address", "to_address", "amount", "block_number", "gas_used")


@dataclass
class MergeResult:
    records: List[TransactionRecord] = field(default_factory=list)
    conflicts: List[ReconciliationConflictError] = field(default_factory=list)


def _key_text(key: Key) -> str:
    return "|".join(str(part) for part in key)


def _observation_order(record: TransactionRecord) -> Tuple[Any, ...]:
    """Total order used to decide which observation is 'later'."""
    return (
        record.observed_at,
        record.source.authority,
        _SOURCE_ORDER[record.source],
        record.status.value,
        record.hash or "",
        record.local_id or "",
        record.timestamp,
        record.block_number if record.block_number is not None else -1,
        record.gas_used if record.gas_used is not None else -1,
        record.from_address,
        record.to_address,
        record.amount,
    )


def _resolve_status(key: Key, members: List[TransactionRecord]) -> Tuple[TxStatus, Optional[ReconciliationConflictError]]:
    terminal = [r for r in members if r.status.is_terminal]
    if not terminal:
        return TxStatus.PENDING, None

    top = max(r.source.authority for r in terminal)
    contenders = [r for r in terminal if r.source.authority == top]
    statuses = {r.status for r in contenders}
    if len(statuses) == 1:
        return contenders[0].status, None

    latest = max(r.observed_at for r in contenders)
    latest_statuses = {r.status for r in contenders if r.observed_at == latest}
    winner = TxStatus.FAILED if TxStatus.FAILED in latest_statuses else latest_statuses.pop()
    conflict = ReconciliationConflictError(
        f"Sources disagree on the status of {_key_text(key)}; using {winner.value}",
        tx_key=key,
        statuses={f"{r.source.value}@{r.observed_at}": r.status.value for r in sorted(contenders, key=_observation_order)},
    )
    return winner, conflict


def _fold(key: Key, members: List[TransactionRecord]) -> Tuple[TransactionRecord, Optional[ReconciliationConflictError]]:
    ordered = sorted(members, key=_observation_order)
    values: Dict[str, Any] = {}
    for record in ordered:
        for name in _FOLDED_FIELDS:
            value = getattr(record, name)
            if value is not None:
                values[name] = value

    chain_members = [r for r in ordered if r.source is RecordSource.CHAIN]
    if chain_members:
        # block time reported by the contract
        timestamp = min(r.timestamp for r in chain_members)
    else:
        timestamp = ordered[-1].timestamp

    source = max((r.source for r in ordered), key=lambda s: (s.authority, _SOURCE_ORDER[s]))
    status, conflict = _resolve_status(key, ordered)
    merged = TransactionRecord(
        timestamp=timestamp,
        status=status,
        source=source,
        observed_at=ordered[-1].observed_at,
        **values,
    )
    return merged, conflict


def _claimable(members: List[TransactionRecord], composite: Key) -> bool:
    return all(r.composite_key() == composite for r in members if r.source is RecordSource.CHAIN)


def merge_records(*sources: Iterable[TransactionRecord], correlation_window: int = 300) -> MergeResult:
    """
    Merge observations of transactions into one deduplicated view.

    Observations are grouped by chain hash, then by local id (a local id
    that any observation ties to a hash joins that hash's group). Contract
    records carrying neither are matched to the group with the same sender,
    recipient and amount whose timestamp is closest within
    ``correlation_window`` seconds. Anything else without hash or local id
    is keyed by ``(from, to, amount, timestamp)``.

    Within a group a terminal status beats PENDING; differing terminal
    statuses are settled by source authority (chain over ledger over local
    intent). Equally authoritative sources that disagree produce a conflict
    and the later observation wins, FAILED on a tie. Other fields take the
    latest observed non-empty value.

    The function is pure: it is idempotent, insensitive to the order of its
    inputs, and feeding its own output back in never moves a terminal record
    back to PENDING.

    Args:
        *sources: Iterables of TransactionRecord
        correlation_window: Maximum timestamp distance for matching records
            without hash or local id

    Returns:
        MergeResult with records sorted newest first and any conflicts
    """
    records = [record for source in sources for record in source]

    hash_for_local: Dict[str, str] = {}
    for record in records:
        if record.hash and record.local_id:
            current = hash_for_local.get(record.local_id)
            if current is None or record.hash < current:
                hash_for_local[record.local_id] = record.hash

    groups: Dict[Key, List[TransactionRecord]] = {}
    loose: Dict[Key, List[TransactionRecord]] = {}
    for record in records:
        if record.hash:
            key: Key = ("hash", record.hash)
        elif record.local_id and record.local_id in hash_for_local:
            key = ("hash", hash_for_local[record.local_id])
        elif record.local_id:
            key = ("local", record.local_id)
        elif record.source is RecordSource.CHAIN:
            loose.setdefault(record.composite_key(), []).append(record)
            continue
        else:
            key = record.composite_key()
        groups.setdefault(key, []).append(record)

    # closest pairs first; each group absorbs at most one loose composite
    references = {
        key: _fold(key, members)[0] for key, members in groups.items() if key[0] != "composite"
    }
    candidates = []
    for composite in loose:
        _, sender, recipient, amount, timestamp = composite
        for key, reference in references.items():
            if (reference.from_address, reference.to_address, reference.amount) != (sender, recipient, amount):
                continue
            distance = abs(reference.timestamp - timestamp)
            if distance <= correlation_window and _claimable(groups[key], composite):
                candidates.append((distance, _key_text(composite), _key_text(key), composite, key))
    candidates.sort(key=lambda c: c[:3])

    claimed: Set[Key] = set()
    placed: Set[Key] = set()
    for _, _, _, composite, key in candidates:
        if composite in placed or key in claimed:
            continue
        claimed.add(key)
        placed.add(composite)
        groups[key].extend(loose[composite])
    for composite, members in loose.items():
        if composite not in placed:
            groups.setdefault(composite, []).extend(members)

    merged: List[TransactionRecord] = []
    conflicts: List[ReconciliationConflictError] = []
    for key, members in groups.items():
        record, conflict = _fold(key, members)
        merged.append(record)
        if conflict is not None:
            conflicts.append(conflict)

    merged.sort(key=lambda r: (-r.timestamp, _key_text(r.identity_key())))
    conflicts.sort(key=lambda c: _key_text(c.tx_key))
    return MergeResult(records=merged, conflicts=conflicts)


def _lookup_keys(record: TransactionRecord) -> List[Key]:
    keys: List[Key] = []
    if record.hash:
        keys.append(("hash", record.hash))
    if record.local_id:
        keys.append(("local", record.local_id))
    if not keys:
        keys.append(record.composite_key())
    return keys


def _comparable(record: TransactionRecord) -> Dict[str, Any]:
    return record.model_dump(exclude={"observed_at", "source"})


def _consume_result(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled():
        task.exception()


class TransactionReconciler:
    """
    Keeps the merged transaction view for the accounts used in a session.

    Args:
        chain: Chain gateway, the authoritative source
        ledger: Optional backend ledger client
        relay: Optional notification relay that changes are published to
        settings: Polling and timeout settings
        clock: Callable returning the current UNIX time
        journal: Optional local journal that settled records are appended to
        on_session_expired: Called with the SessionExpiredError when the
            backend rejects the session
        logger: Optional logger instance
    """

    def __init__(
        self,
        chain: ChainGateway,
        ledger: Optional[LedgerClient] = None,
        relay: Optional[NotificationRelay] = None,
        settings: Optional[ReconcileSettings] = None,
        clock: Callable[[], float] = time.time,
        journal: Optional[Blockchain] = None,
        on_session_expired: Optional[Callable[[SessionExpiredError], Any]] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.chain = chain
        self.ledger = ledger
        self.relay = relay
        self.settings = settings or ReconcileSettings()
        self.clock = clock
        self.journal = journal
        self.on_session_expired = on_session_expired
        self.logger = logger or logging.getLogger(__name__)
        self.last_conflicts: List[ReconciliationConflictError] = []

        self._intents: Dict[str, TransactionIntent] = {}
        self._local_records: Dict[str, TransactionRecord] = {}
        self._chain_observations: Dict[str, TransactionRecord] = {}
        self._views: Dict[str, List[TransactionRecord]] = {}
        self._balances: Dict[str, int] = {}
        self._dispatched_at: Dict[str, float] = {}

        self._lock: Optional[asyncio.Lock] = None
        self._tasks: Set["asyncio.Future[Any]"] = set()
        self._poll_task: Optional["asyncio.Future[None]"] = None
        self._poll_account: Optional[str] = None
        self._unsubscribe_events: Optional[Callable[[], None]] = None
        self._hinted: Dict[str, "asyncio.Future[None]"] = {}
        self._hint_again: Set[str] = set()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_history(self, account: str, limit: Optional[int] = None) -> List[TransactionRecord]:
        """
        Merged view for ``account``, newest first. No network access.
        """
        records = [r for r in self._views.get(account.lower(), []) if r.involves(account)]
        return records if limit is None else records[:limit]

    def get_intent(self, local_id: str) -> Optional[TransactionIntent]:
        return self._intents.get(local_id)

    def get_record(self, local_id: str) -> Optional[TransactionRecord]:
        intent = self._intents.get(local_id)
        if intent is None:
            return None
        for record in self._views.get(intent.from_address.lower(), []):
            if record.local_id == local_id:
                return record
        return self._local_records.get(local_id)

    def known_balance(self, account: str) -> Optional[int]:
        return self._balances.get(account.lower())

    def update_balance(self, account: str, wei: int) -> None:
        self._balances[account.lower()] = wei
        self.logger.debug(f"Balance of {account} is {format_amount(wei)} ETH")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        sender: str,
        to: str,
        amount: AmountLike,
        unit: str = "ether",
        timeout: Optional[float] = None
    ) -> str:
        """
        Submit a transfer and return its local id once the chain hash is known.

        Recipient and amount are validated before any network call. The
        balance check uses the known balance, fetched from the chain when
        none is cached. Confirmation happens in the background and is
        reported through the relay.

        Args:
            sender: Account sending the transfer
            to: Recipient address
            amount: Amount in ``unit``
            unit: ether, gwei or wei
            timeout: Seconds to wait for the dispatch; it keeps going afterwards

        Returns:
            The intent's local id

        Raises:
            InvalidRecipientError: If ``to`` is not a valid address
            InvalidAmountError: If the amount is not strictly positive
            InsufficientBalanceError: If the amount exceeds the known balance
            UserRejectedError, InsufficientFundsError, UnknownError: If dispatch fails
            OperationTimeoutError: If ``timeout`` elapses before the hash is known
        """
        if not is_valid_address(to):
            raise InvalidRecipientError(f"{to!r} is not a valid address")
        amount_wei = parse_amount(amount, unit)
        sender = normalize_address(sender)

        balance = self.known_balance(sender)
        if balance is None:
            try:
                balance = await self.chain.balance_of(sender)
            except Exception as e:
                raise classify_error(e, context="Balance lookup")
            self.update_balance(sender, balance)
        if amount_wei > balance:
            raise InsufficientBalanceError(
                f"Amount {format_amount(amount_wei)} ETH exceeds balance {format_amount(balance)} ETH",
                details={"amount": str(amount_wei), "balance": str(balance)}
            )

        now = self.clock()
        intent = TransactionIntent(
            local_id=uuid.uuid4().hex,
            from_address=sender,
            to_address=normalize_address(to),
            amount=amount_wei,
            submitted_at=int(now),
        )
        self._intents[intent.local_id] = intent
        self._local_records[intent.local_id] = intent.to_record(observed_at=now)
        self._refresh(sender)
        self.logger.info(f"Submitting transfer {intent.local_id} of {format_amount(amount_wei)} ETH to {intent.to_address}")

        task = self._spawn(self._dispatch(intent))
        try:
            if timeout is None:
                await asyncio.shield(task)
            else:
                await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(
                f"Transfer {intent.local_id} was not dispatched within {timeout}s",
                details={"local_id": intent.local_id}
            )
        return intent.local_id

    async def _dispatch(self, intent: TransactionIntent) -> str:
        try:
            handle = await self.chain.transfer(intent.from_address, intent.to_address, intent.amount)
        except Exception as e:
            error = classify_error(e, context="Transfer")
            self._mark_failed(intent, error)
            raise error

        intent = intent.with_hash(handle.hash)
        self._dispatched_at[handle.hash] = self.clock()
        self._intents[intent.local_id] = intent
        self._local_records[intent.local_id] = intent.to_record(observed_at=self.clock())
        self._balances.pop(intent.from_address.lower(), None)
        self._refresh(intent.from_address)
        self.logger.info(f"Transfer {intent.local_id} sent as {handle.hash}")

        self._spawn(self._follow_up(intent))
        return handle.hash

    def _mark_failed(self, intent: TransactionIntent, error: SecureTxError) -> None:
        self.logger.error(f"Transfer {intent.local_id} failed: {error}")
        self._local_records[intent.local_id] = intent.to_record(observed_at=self.clock(), status=TxStatus.FAILED)
        self._refresh(intent.from_address)

    async def _follow_up(self, intent: TransactionIntent) -> None:
        tx_hash = intent.chain_tx_hash
        if self.ledger is not None:
            try:
                await asyncio.to_thread(self.ledger.create_transaction, intent.to_address, intent.amount, tx_hash)
            except SessionExpiredError as e:
                self._session_expired(e)
            except LedgerError as e:
                self.logger.warning(f"Could not record {tx_hash} in the ledger: {e}")

        try:
            receipt = await self.chain.wait_for_receipt(
                tx_hash,
                timeout=self.settings.receipt_timeout,
                poll_interval=self.settings.receipt_poll_interval
            )
        except OperationTimeoutError:
            self.logger.info(f"No receipt for {tx_hash} yet; leaving it to the next reconciliation pass")
            return
        except Exception as e:
            rate_limited_log(f"Receipt lookup for {tx_hash} failed: {e}", "warning", 60, self.logger)
            return
        self._apply_receipt(intent.from_address, receipt)

    def _apply_receipt(self, account: str, receipt: ChainReceipt) -> TransactionRecord:
        base = self._find_by_hash(account, receipt.tx_hash)
        record = receipt.apply_to(base, observed_at=self.clock())
        self._chain_observations[receipt.tx_hash] = record
        if receipt.succeeded:
            self.logger.info(f"Transaction {receipt.tx_hash} confirmed in block {receipt.block_number}")
        else:
            self.logger.warning(f"Transaction {receipt.tx_hash} reverted in block {receipt.block_number}")
        self._refresh(account)
        return record

    def _find_by_hash(self, account: str, tx_hash: str) -> TransactionRecord:
        for record in self._views.get(account.lower(), []):
            if record.hash == tx_hash:
                return record
        for record in self._local_records.values():
            if record.hash == tx_hash:
                return record
        raise KeyError(tx_hash)

    async def wait_for_confirmation(self, local_id: str, timeout: Optional[float] = None) -> TransactionRecord:
        """
        Wait until the transfer ``local_id`` is COMPLETED or FAILED.

        Raises:
            KeyError: If ``local_id`` is unknown
            OperationTimeoutError: If it is still pending after ``timeout`` seconds
        """
        intent = self._intents.get(local_id)
        if intent is None:
            raise KeyError(local_id)

        async def settled() -> TransactionRecord:
            while True:
                record = self.get_record(local_id)
                if record is not None and record.status.is_terminal:
                    return record
                if record is not None and record.hash:
                    try:
                        receipt = await self.chain.get_receipt(record.hash)
                    except Exception as e:
                        rate_limited_log(f"Receipt lookup for {record.hash} failed: {e}", "warning", 60, self.logger)
                        receipt = None
                    if receipt is not None:
                        applied = self._apply_receipt(intent.from_address, receipt)
                        if applied.status.is_terminal:
                            return self.get_record(local_id) or applied
                await asyncio.sleep(self.settings.receipt_poll_interval)

        try:
            return await asyncio.wait_for(settled(), timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(
                f"Transfer {local_id} is still pending after {timeout}s",
                details={"local_id": local_id}
            )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _local_sources(self, account: str) -> List[TransactionRecord]:
        local = [r for r in self._local_records.values() if r.involves(account)]
        observed = [r for r in self._chain_observations.values() if r.involves(account)]
        return local + observed

    def _refresh(self, account: str, extra: Iterable[TransactionRecord] = ()) -> MergeResult:
        key = account.lower()
        result = merge_records(
            self._views.get(key, []),
            self._local_sources(account),
            extra,
            correlation_window=self.settings.correlation_window,
        )
        self._store(account, result)
        return result

    def _store(self, account: str, result: MergeResult) -> None:
        key = account.lower()
        index: Dict[Key, TransactionRecord] = {}
        for record in self._views.get(key, []):
            for lookup in _lookup_keys(record):
                index[lookup] = record

        changed = []
        for record in result.records:
            previous = next((index[k] for k in _lookup_keys(record) if k in index), None)
            if previous is None or _comparable(previous) != _comparable(record):
                changed.append((previous, record))
        self._views[key] = result.records

        conflicts = {c.tx_key: c for c in result.conflicts}
        for conflict in result.conflicts:
            rate_limited_log(
                f"Reconciliation conflict: {conflict} {conflict.details['statuses']}",
                "warning", 300, self.logger, key=f"conflict:{_key_text(conflict.tx_key)}"
            )
        if result.conflicts:
            self.last_conflicts = result.conflicts

        for previous, record in changed:
            newly_settled = record.status.is_terminal and (previous is None or not previous.status.is_terminal)
            if newly_settled and self.journal is not None:
                self.journal.create_transaction(record.model_dump(mode="json", by_alias=True))
            self._publish(account, record, conflicts.get(record.identity_key()))

    def _publish(self, account: str, record: TransactionRecord, conflict: Optional[ReconciliationConflictError]) -> None:
        if self.relay is None:
            return
        payload = record.model_dump(mode="json", by_alias=True)
        if conflict is not None:
            payload["conflict"] = conflict.to_dict()
        self.relay.publish(account, RelayEvent.TRANSACTION_UPDATE, payload)

    def _session_expired(self, error: SessionExpiredError) -> None:
        self.logger.warning(f"Backend session expired: {error}")
        if self.on_session_expired is not None:
            try:
                self.on_session_expired(error)
            except Exception:
                self.logger.exception("Session expiry handler failed")

    async def reconcile(self, account: str) -> MergeResult:
        """
        Run one reconciliation pass for ``account``.

        Collects contract records, receipts for pending hashes and the
        backend ledger. A transfer sent by this session that has no receipt
        and that the node no longer knows once ``drop_timeout`` has passed
        is recorded as FAILED. Everything is merged with the current view
        and the local intents, the result is stored and changed records are
        published. A failing source is skipped for this pass. Passes are
        serialised.
        """
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            observed_at = self.clock()
            fetched: List[TransactionRecord] = []

            try:
                entries = await self.chain.get_user_transactions(account)
                fetched.extend(entry.to_record(observed_at) for entry in entries)
            except Exception as e:
                rate_limited_log(f"Chain history unavailable for {account}: {e}", "warning", 60, self.logger)

            pending = {
                r.hash: r
                for r in self._views.get(account.lower(), []) + self._local_sources(account)
                if r.hash and not r.status.is_terminal
            }
            for tx_hash in sorted(pending):
                try:
                    receipt = await self.chain.get_receipt(tx_hash)
                except Exception as e:
                    rate_limited_log(f"Receipt lookup for {tx_hash} failed: {e}", "warning", 60, self.logger)
                    continue
                if receipt is not None:
                    record = receipt.apply_to(pending[tx_hash], observed_at)
                    self._chain_observations[tx_hash] = record
                elif await self._was_dropped(tx_hash, observed_at):
                    self.logger.warning(f"Transaction {tx_hash} was dropped by the node; marking it FAILED")
                    self._chain_observations[tx_hash] = pending[tx_hash].model_copy(update={
                        "status": TxStatus.FAILED,
                        "source": RecordSource.RECEIPT,
                        "observed_at": observed_at,
                    })

            if self.ledger is not None:
                try:
                    ledger_entries = await asyncio.to_thread(self.ledger.list_transactions)
                except SessionExpiredError as e:
                    self._session_expired(e)
                except LedgerError as e:
                    rate_limited_log(f"Ledger unavailable: {e}", "warning", 60, self.logger)
                else:
                    for entry in ledger_entries:
                        record = entry.to_record(observed_at, account=account)
                        if record is not None and record.involves(account):
                            fetched.append(record)

            result = self._refresh(account, fetched)
            if self.journal is not None:
                block = self.journal.mine_block()
                if block is not None:
                    self.logger.debug(f"Journal sealed {block}")
            self.logger.debug(f"Reconciled {len(result.records)} transactions for {account}")
            return result

    async def _was_dropped(self, tx_hash: str, now: float) -> bool:
        """True once a transfer sent by this session has no receipt and is unknown to the node past ``drop_timeout``."""
        dispatched = self._dispatched_at.get(tx_hash)
        if dispatched is None or now - dispatched < self.settings.drop_timeout:
            return False
        try:
            return not await self.chain.is_known(tx_hash)
        except Exception as e:
            rate_limited_log(f"Transaction lookup for {tx_hash} failed: {e}", "warning", 60, self.logger)
            return False

    def _on_transaction_executed(self, payload: Dict[str, Any]) -> None:
        try:
            record = TransactionRecord(
                hash=payload["transactionHash"],
                from_address=payload["from"],
                to_address=payload["to"],
                amount=int(payload["amount"]),
                timestamp=int(payload["timestamp"]),
                status=TxStatus.COMPLETED,
                block_number=payload.get("blockNumber"),
                source=RecordSource.CHAIN,
                observed_at=self.clock(),
            )
        except (KeyError, ValueError) as e:
            self.logger.warning(f"Ignoring malformed TransactionExecuted event: {e}")
            return
        self._chain_observations[record.hash] = record
        for account in {record.from_address, record.to_address}:
            if account.lower() in self._views:
                self._refresh(account)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> "asyncio.Future[Any]":
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_consume_result)
        return task

    def start(self, account: str) -> None:
        """
        Start the polling loop for ``account``. Must be called from a running event loop.

        Starting for another account replaces the current loop.
        """
        if self._poll_task is not None and not self._poll_task.done():
            if self._poll_account == account:
                return
            self._poll_task.cancel()
        if self._unsubscribe_events is None:
            self._unsubscribe_events = self.chain.subscribe(TRANSACTION_EXECUTED, self._on_transaction_executed)
        self._poll_account = account
        self._poll_task = asyncio.ensure_future(self._poll_loop(account))
        self.logger.info(f"Polling transactions for {account} every {self.settings.poll_interval}s")

    async def _poll_loop(self, account: str) -> None:
        while True:
            try:
                await self.chain.poll_events()
            except Exception as e:
                rate_limited_log(f"Event polling failed: {e}", "warning", 60, self.logger)
            try:
                await self.reconcile(account)
            except Exception as e:
                rate_limited_log(f"Reconciliation pass for {account} failed: {e}", "warning", 60, self.logger)
            await asyncio.sleep(self.settings.poll_interval + random.uniform(0, self.settings.jitter))

    @property
    def polling_account(self) -> Optional[str]:
        return self._poll_account

    def cancel_polling(self) -> Optional["asyncio.Future[None]"]:
        """
        Cancel the polling loop without waiting for it.

        Returns:
            The cancelled task, or None if nothing was running
        """
        task, self._poll_task = self._poll_task, None
        self._poll_account = None
        if self._unsubscribe_events is not None:
            self._unsubscribe_events()
            self._unsubscribe_events = None
        if task is None or task.done():
            return None
        task.cancel()
        return task

    async def stop(self) -> None:
        """Stop the polling loop."""
        task = self.cancel_polling()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def request_reconcile(self, account: str) -> "asyncio.Future[None]":
        """
        Ask for a reconciliation pass soon, e.g. after a relay hint.

        Hints arriving while a hinted pass is running are coalesced into one
        follow-up pass.
        """
        key = account.lower()
        task = self._hinted.get(key)
        if task is not None and not task.done():
            self._hint_again.add(key)
            return task
        task = self._spawn(self._hinted_pass(account))
        self._hinted[key] = task
        return task

    async def _hinted_pass(self, account: str) -> None:
        key = account.lower()
        while True:
            self._hint_again.discard(key)
            try:
                await self.reconcile(account)
            except Exception as e:
                rate_limited_log(f"Reconciliation pass for {account} failed: {e}", "warning", 60, self.logger)
            if key not in self._hint_again:
                return

    async def aclose(self) -> None:
        """Stop polling and cancel background work."""
        await self.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
