"""Supply counter and contiguous id reservation."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

from .errors import MintZeroError, SupplyExceededError
from .ledger import CollectionLedger


@dataclass(frozen=True)
class TokenRange:
    """Half-open range ``[first_id, first_id + count)`` of 1-indexed token ids."""

    first_id: int
    count: int

    @property
    def last_id(self) -> int:
        return self.first_id + self.count - 1

    def __iter__(self):
        return iter(range(self.first_id, self.first_id + self.count))

    def __len__(self) -> int:
        return self.count


class SupplyAllocator:
    """
    Owns ``total_minted`` for a collection.

    The cap check and the counter update run on the caller's open ledger
    transaction with nothing in between, so a second reservation can never
    observe a stale counter.
    """

    def __init__(self, ledger: CollectionLedger):
        self.ledger = ledger

    def check(self, total_minted: int, max_supply: int, count: int) -> None:
        if count <= 0:
            raise MintZeroError(f"Mint count must be positive, got {count}")
        remaining = max_supply - total_minted
        if count > remaining:
            raise SupplyExceededError(count, remaining)

    def reserve(self, conn: sqlite3.Connection, count: int) -> TokenRange:
        state = self.ledger.load_state(conn)
        self.check(state.total_minted, state.max_supply, count)
        self.ledger.set_total_minted(conn, state.total_minted + count)
        return TokenRange(first_id=state.total_minted + 1, count=count)

    def release(self, conn: sqlite3.Connection, token_range: TokenRange) -> None:
        """Give back the most recent reservation."""
        state = self.ledger.load_state(conn)
        if state.total_minted != token_range.last_id:
            raise RuntimeError(
                f"Cannot release ids {token_range.first_id}-{token_range.last_id}: "
                f"counter is at {state.total_minted}"
            )
        self.ledger.set_total_minted(conn, token_range.first_id - 1)
