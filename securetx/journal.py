"""
Local hash-chained journal of settled transactions.

A minimal append-only chain of blocks kept in memory. It gives a session a
tamper-evident trail of the records it saw settle; it is not a consensus
mechanism and nothing else depends on it.
"""
import hashlib
import json
import time
from typing import Any, Dict, List, Optional


class Block:
    """A block of journal entries linked to its predecessor by hash."""

    def __init__(self, previous_hash: str, transactions: List[Dict[str, Any]], timestamp: Optional[int] = None):
        self.previous_hash = previous_hash
        self.transactions = list(transactions)
        self.timestamp = int(time.time() * 1000) if timestamp is None else timestamp
        self.hash = self.calculate_hash()

    def calculate_hash(self) -> str:
        payload = json.dumps(
            {
                "previous_hash": self.previous_hash,
                "transactions": self.transactions,
                "timestamp": self.timestamp,
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(payload.encode()).hexdigest()

    def __repr__(self) -> str:
        return f"Block(hash={self.hash[:10]}, txs={len(self.transactions)})"


class Blockchain:
    """In-memory chain of journal blocks."""

    def __init__(self):
        self.chain: List[Block] = [self.create_genesis_block()]
        self.pending_transactions: List[Dict[str, Any]] = []

    @staticmethod
    def create_genesis_block() -> Block:
        return Block("0", [], timestamp=0)

    @property
    def latest_block(self) -> Block:
        return self.chain[-1]

    def create_transaction(self, transaction: Dict[str, Any]) -> None:
        self.pending_transactions.append(transaction)

    def mine_block(self) -> Optional[Block]:
        """
        Seal pending entries into a new block.

        Returns:
            The new block, or None if nothing was pending
        """
        if not self.pending_transactions:
            return None
        block = Block(self.latest_block.hash, self.pending_transactions)
        self.chain.append(block)
        self.pending_transactions = []
        return block

    def is_valid(self) -> bool:
        """Check every block's hash and link."""
        for previous, current in zip(self.chain, self.chain[1:]):
            if current.hash != current.calculate_hash():
                return False
            if current.previous_hash != previous.hash:
                return False
        return True

    def __len__(self) -> int:
        return len(self.chain)
