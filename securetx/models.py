"""
Data models for the SecureTx SDK.
"""
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from web3 import Web3

from .units import is_valid_address


def _checksum(value: Any) -> Any:
    if isinstance(value, str) and is_valid_address(value):
        return Web3.to_checksum_address(value)
    return value


def _hex(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    return value


class ConnectionState(str, Enum):
    """Lifecycle states of a wallet connection"""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    NETWORK_CHECK = "NETWORK_CHECK"
    REGISTERING = "REGISTERING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


class TxStatus(str, Enum):
    """Status of a reconciled transaction"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not TxStatus.PENDING


class RecordSource(str, Enum):
    """Where an observation of a transaction came from"""
    INTENT = "intent"
    LEDGER = "ledger"
    CHAIN = "chain"
    RECEIPT = "receipt"

    @property
    def authority(self) -> int:
        """Higher values win status disagreements between terminal states."""
        return _AUTHORITY[self]


_AUTHORITY = {
    RecordSource.INTENT: 0,
    RecordSource.LEDGER: 1,
    RecordSource.CHAIN: 2,
    RecordSource.RECEIPT: 2,
}


class Session(BaseModel):
    """Authenticated backend session"""
    model_config = ConfigDict(frozen=True)

    user_id: str
    bearer_token: str = Field(..., repr=False)
    expiry: Optional[int] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expiry is None:
            return False
        return (time.time() if now is None else now) >= self.expiry

    def authorization_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.bearer_token}"}

    @classmethod
    def from_token(cls, token: str, env_tier: Optional[str] = None, jwt_secret: Optional[str] = None) -> "Session":
        """
        Build a session from a bearer token issued by the backend.

        Raises:
            ValueError: If the token fails verification or has no ``id`` claim
        """
        from .auth.jwt_util import verify_jwt_token

        claims = verify_jwt_token(token, env_tier=env_tier, jwt_secret=jwt_secret)
        if not claims or not claims.get("id"):
            raise ValueError("Token is invalid or missing the 'id' claim")
        expiry = claims.get("exp")
        return cls(user_id=str(claims["id"]), bearer_token=token, expiry=int(expiry) if expiry else None)


class WalletConnection(BaseModel):
    """Immutable snapshot of the wallet connection state"""
    model_config = ConfigDict(frozen=True)

    account_address: Optional[str] = None
    chain_id: Optional[int] = None
    is_registered_on_chain: bool = False
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    error_kind: Optional[str] = None
    error_hint: Optional[str] = None
    epoch: int = 0

    @field_validator("account_address", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        return _checksum(value)

    @model_validator(mode="after")
    def _connected_has_account(self) -> "WalletConnection":
        if self.connection_state is ConnectionState.CONNECTED and self.account_address is None:
            raise ValueError("CONNECTED state requires an account address")
        return self

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED


class TransactionIntent(BaseModel):
    """A transfer submitted by this session"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    local_id: str
    from_address: str = Field(..., alias="from")
    to_address: str = Field(..., alias="to")
    amount: int
    submitted_at: int
    chain_tx_hash: Optional[str] = None

    @field_validator("from_address", "to_address", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        return _checksum(value)

    def with_hash(self, tx_hash: str) -> "TransactionIntent":
        """
        Return a copy carrying the chain hash.

        Raises:
            ValueError: If a different hash was already assigned
        """
        if self.chain_tx_hash is not None and self.chain_tx_hash.lower() != tx_hash.lower():
            raise ValueError(f"Intent {self.local_id} already has hash {self.chain_tx_hash}")
        return self.model_copy(update={"chain_tx_hash": tx_hash})

    def to_record(self, observed_at: float, status: TxStatus = TxStatus.PENDING) -> "TransactionRecord":
        return TransactionRecord(
            hash=self.chain_tx_hash,
            local_id=self.local_id,
            from_address=self.from_address,
            to_address=self.to_address,
            amount=self.amount,
            timestamp=self.submitted_at,
            status=status,
            source=RecordSource.INTENT,
            observed_at=observed_at,
        )


class TransactionRecord(BaseModel):
    """Reconciled view of a single transaction"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    hash: Optional[str] = Field(None, alias="transactionHash")
    local_id: Optional[str] = Field(None, alias="localId")
    from_address: str = Field(..., alias="from")
    to_address: str = Field(..., alias="to")
    amount: int
    timestamp: int
    status: TxStatus = TxStatus.PENDING
    block_number: Optional[int] = Field(None, alias="blockNumber")
    gas_used: Optional[int] = Field(None, alias="gasUsed")
    source: RecordSource = RecordSource.INTENT
    observed_at: float = 0.0

    @field_validator("from_address", "to_address", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        return _checksum(value)

    @field_validator("hash", mode="before")
    @classmethod
    def _normalize_hash(cls, value: Any) -> Any:
        value = _hex(value)
        return value.lower() if isinstance(value, str) else value

    def identity_key(self) -> Tuple[Any, ...]:
        if self.hash:
            return ("hash", self.hash)
        if self.local_id:
            return ("local", self.local_id)
        return self.composite_key()

    def composite_key(self) -> Tuple[Any, ...]:
        return ("composite", self.from_address, self.to_address, self.amount, self.timestamp)

    def involves(self, account: str) -> bool:
        account = account.lower()
        return self.from_address.lower() == account or self.to_address.lower() == account


class ChainTxRecord(BaseModel):
    """An entry returned by the contract's getUserTransactions"""
    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(..., alias="from")
    to_address: str = Field(..., alias="to")
    amount: int
    timestamp: int
    transaction_type: str = Field("", alias="transactionType")
    completed: bool = False
    status: int = 0
    gas_used: int = Field(0, alias="gasUsed")

    @field_validator("from_address", "to_address", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        return _checksum(value)

    @property
    def tx_status(self) -> TxStatus:
        if self.completed:
            return TxStatus.COMPLETED
        if self.status == 2:
            return TxStatus.FAILED
        return TxStatus.PENDING

    def to_record(self, observed_at: float) -> TransactionRecord:
        return TransactionRecord(
            from_address=self.from_address,
            to_address=self.to_address,
            amount=self.amount,
            timestamp=self.timestamp,
            status=self.tx_status,
            gas_used=self.gas_used or None,
            source=RecordSource.CHAIN,
            observed_at=observed_at,
        )


class ChainReceipt(BaseModel):
    """Transaction receipt from the blockchain"""
    model_config = ConfigDict(populate_by_name=True)

    tx_hash: str = Field(..., alias="transactionHash")
    block_number: int = Field(..., alias="blockNumber")
    block_hash: Optional[str] = Field(None, alias="blockHash")
    status: int
    gas_used: int = Field(..., alias="gasUsed")
    from_address: Optional[str] = Field(None, alias="from")
    to_address: Optional[str] = Field(None, alias="to")
    logs: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("tx_hash", "block_hash", mode="before")
    @classmethod
    def _to_hex(cls, value: Any) -> Any:
        value = _hex(value)
        return value.lower() if isinstance(value, str) else value

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    def apply_to(self, record: TransactionRecord, observed_at: float) -> TransactionRecord:
        """Return ``record`` updated with the outcome of this receipt."""
        return record.model_copy(update={
            "hash": self.tx_hash,
            "status": TxStatus.COMPLETED if self.succeeded else TxStatus.FAILED,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "source": RecordSource.RECEIPT,
            "observed_at": observed_at,
        })


class LedgerEntry(BaseModel):
    """A transaction row as stored by the backend ledger"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tx_hash: Optional[str] = Field(None, alias="transactionHash")
    from_address: Optional[str] = Field(None, alias="from")
    to_address: str = Field(..., alias="to")
    amount: int
    status: TxStatus = TxStatus.PENDING
    timestamp: int = 0
    block_number: Optional[int] = Field(None, alias="blockNumber")
    gas_used: Optional[int] = Field(None, alias="gasUsed")

    @field_validator("from_address", "to_address", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        return _checksum(value)

    @field_validator("tx_hash", mode="before")
    @classmethod
    def _normalize_hash(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) and value else None

    @field_validator("status", mode="before")
    @classmethod
    def _upper_status(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> Any:
        # the ledger stores wei as a decimal string
        return int(value) if isinstance(value, str) else value

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.isdigit():
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return int(parsed.timestamp())
        if isinstance(value, float):
            return int(value)
        return value

    def to_record(self, observed_at: float, account: Optional[str] = None) -> Optional[TransactionRecord]:
        """
        Convert to a TransactionRecord.

        Ledger rows created by another client may omit ``from``; ``account``
        is used as the sender in that case. Returns None if no sender is known.
        """
        sender = self.from_address or account
        if sender is None:
            return None
        return TransactionRecord(
            hash=self.tx_hash,
            from_address=sender,
            to_address=self.to_address,
            amount=self.amount,
            timestamp=self.timestamp,
            status=self.status,
            block_number=self.block_number,
            gas_used=self.gas_used,
            source=RecordSource.LEDGER,
            observed_at=observed_at,
        )


class WalletUpdate(BaseModel):
    """Payload of a walletUpdate notification"""
    address: str
    balance: Any

    @field_validator("address", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        return _checksum(value)
