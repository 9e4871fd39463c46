"""
Persistent state for one collection.

A SQLite database holds the collection row (supply counter, proceeds) plus
mint and withdrawal records. Every mutation runs inside a BEGIN IMMEDIATE
transaction, and the database files are sealed with an HMAC so local edits
outside nestmint are detected on the next access.

Wei amounts are stored as decimal TEXT because uint256 does not fit in a
SQLite INTEGER.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import secrets
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

from .config import CollectionConfig
from .storage import ensure_private_dir, ensure_private_file


class CollectionStatus(str, Enum):
    ACTIVE = "active"
    SOLD_OUT = "sold_out"


@dataclass
class CollectionState:
    """Snapshot of a collection's persisted counters."""

    name: str
    symbol: str
    max_supply: int
    price_per_mint_wei: int
    principal: str
    total_minted: int
    proceeds_wei: int
    created_at: int
    last_updated: int

    @property
    def remaining_supply(self) -> int:
        return self.max_supply - self.total_minted

    @property
    def status(self) -> CollectionStatus:
        if self.total_minted >= self.max_supply:
            return CollectionStatus.SOLD_OUT
        return CollectionStatus.ACTIVE


@dataclass
class MintRecord:
    """One mint attempt that got past payment and supply checks."""

    mint_id: str
    first_id: int
    count: int
    recipient: str
    destination_parent: Optional[str]
    amount_wei: int
    timestamp: int
    status: str = "pending"  # pending, completed, reverted
    reason: Optional[str] = None

    @property
    def token_ids(self) -> range:
        return range(self.first_id, self.first_id + self.count)

    def to_dict(self) -> dict:
        return {
            "mint_id": self.mint_id,
            "first_id": self.first_id,
            "count": self.count,
            "recipient": self.recipient,
            "destination_parent": self.destination_parent,
            "amount_wei": str(self.amount_wei),
            "timestamp": self.timestamp,
            "status": self.status,
            "reason": self.reason,
        }


@dataclass
class WithdrawalRecord:
    """One withdrawal whose debit was committed."""

    withdrawal_id: str
    recipient: str
    amount_wei: int
    timestamp: int
    status: str = "pending"  # pending, completed, failed
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "withdrawal_id": self.withdrawal_id,
            "recipient": self.recipient,
            "amount_wei": str(self.amount_wei),
            "timestamp": self.timestamp,
            "status": self.status,
            "reason": self.reason,
        }


def new_record_id(prefix: str) -> str:
    return f"{prefix}-{secrets.token_hex(8)}"


class CollectionLedger:
    """
    SQLite-backed ledger for a single collection.

    The ledger only stores and seals state. Supply and proceeds rules live in
    SupplyAllocator and Treasury, which mutate rows through transaction().
    """

    def __init__(
        self,
        directory: Path,
        config: CollectionConfig,
        secrets_dir: Optional[Path] = None,
    ):
        self.directory = directory
        ensure_private_dir(self.directory)
        self.config = config
        self.db_path = self.directory / "ledger.sqlite3"
        self._secret_dir = secrets_dir or self.directory.parent / ".nestmint-secrets"
        ensure_private_dir(self._secret_dir)
        self._key_path = self._secret_dir / "ledger_hmac.key"
        self._sig_path = self._secret_dir / f"{config.name}.ledger.sig"
        self._lock_path = self._secret_dir / f"{config.name}.ledger.lock"
        self._hmac_key = self._load_or_create_key()
        ensure_private_file(self._lock_path)
        with self._integrity_guard():
            self._verify_integrity()
            try:
                self._init_db()
            finally:
                self._seal_integrity()

    @contextmanager
    def _integrity_guard(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _load_or_create_key(self) -> bytes:
        if self._key_path.exists() and self._key_path.stat().st_size > 0:
            return self._key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self._key_path.write_bytes(key)
        ensure_private_file(self._key_path)
        return key

    def _compute_integrity_hash(self) -> str:
        digest = hmac.new(self._hmac_key, digestmod=hashlib.sha256)
        for path in (
            self.db_path,
            Path(str(self.db_path) + "-wal"),
            Path(str(self.db_path) + "-shm"),
        ):
            if path.exists():
                digest.update(path.name.encode())
                digest.update(b":")
                digest.update(path.read_bytes())
                digest.update(b";")
        return digest.hexdigest()

    def _verify_integrity(self) -> None:
        if not self.db_path.exists():
            return
        if not self._sig_path.exists():
            self._seal_integrity()
            return
        expected = self._sig_path.read_text().strip()
        actual = self._compute_integrity_hash()
        if expected and not hmac.compare_digest(expected, actual):
            raise RuntimeError("Collection ledger integrity check failed: local state was modified")

    def _seal_integrity(self) -> None:
        if not self.db_path.exists():
            return
        sig = self._compute_integrity_hash()
        self._sig_path.write_text(sig)
        ensure_private_file(self._sig_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        # Closed before sealing so the WAL is checkpointed into the main file.
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS collection (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    name TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    max_supply INTEGER NOT NULL,
                    price_per_mint_wei TEXT NOT NULL,
                    principal TEXT NOT NULL,
                    total_minted INTEGER NOT NULL DEFAULT 0,
                    proceeds_wei TEXT NOT NULL DEFAULT '0',
                    created_at INTEGER NOT NULL,
                    last_updated INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS mints (
                    mint_id TEXT PRIMARY KEY,
                    first_id INTEGER NOT NULL,
                    count INTEGER NOT NULL,
                    recipient TEXT NOT NULL,
                    destination_parent TEXT,
                    amount_wei TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    reason TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS withdrawals (
                    withdrawal_id TEXT PRIMARY KEY,
                    recipient TEXT NOT NULL,
                    amount_wei TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    reason TEXT
                )
                """
            )
            now = int(time.time())
            conn.execute(
                """
                INSERT OR IGNORE INTO collection (
                    id, name, symbol, max_supply, price_per_mint_wei, principal,
                    total_minted, proceeds_wei, created_at, last_updated
                ) VALUES (1, ?, ?, ?, ?, ?, 0, '0', ?, ?)
                """,
                (
                    self.config.name,
                    self.config.symbol,
                    self.config.max_supply,
                    str(self.config.price_per_mint_wei),
                    self.config.owner,
                    now,
                    now,
                ),
            )
            state = self.load_state(conn)
        stored = (state.name, state.max_supply, state.price_per_mint_wei, state.principal)
        wanted = (
            self.config.name,
            self.config.max_supply,
            self.config.price_per_mint_wei,
            self.config.owner,
        )
        if stored != wanted:
            raise ValueError(
                f"Ledger at {self.db_path} was created with different collection parameters"
            )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one BEGIN IMMEDIATE transaction, then reseal."""
        with self._integrity_guard():
            self._verify_integrity()
            try:
                with self._connect() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        yield conn
                    except BaseException:
                        conn.execute("ROLLBACK")
                        raise
                    conn.execute("COMMIT")
            finally:
                self._seal_integrity()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        with self._integrity_guard():
            self._verify_integrity()
            with self._connect() as conn:
                yield conn

    # ── Rows ──────────────────────────────────────────────────────

    def load_state(self, conn: sqlite3.Connection) -> CollectionState:
        row = conn.execute("SELECT * FROM collection WHERE id = 1").fetchone()
        assert row is not None
        return CollectionState(
            name=row["name"],
            symbol=row["symbol"],
            max_supply=row["max_supply"],
            price_per_mint_wei=int(row["price_per_mint_wei"]),
            principal=row["principal"],
            total_minted=row["total_minted"],
            proceeds_wei=int(row["proceeds_wei"]),
            created_at=row["created_at"],
            last_updated=row["last_updated"],
        )

    def set_total_minted(self, conn: sqlite3.Connection, total_minted: int) -> None:
        conn.execute(
            "UPDATE collection SET total_minted = ?, last_updated = ? WHERE id = 1",
            (total_minted, int(time.time())),
        )

    def set_proceeds(self, conn: sqlite3.Connection, proceeds_wei: int) -> None:
        conn.execute(
            "UPDATE collection SET proceeds_wei = ?, last_updated = ? WHERE id = 1",
            (str(proceeds_wei), int(time.time())),
        )

    def _row_to_mint(self, row: sqlite3.Row) -> MintRecord:
        return MintRecord(
            mint_id=row["mint_id"],
            first_id=row["first_id"],
            count=row["count"],
            recipient=row["recipient"],
            destination_parent=row["destination_parent"],
            amount_wei=int(row["amount_wei"]),
            timestamp=row["timestamp"],
            status=row["status"],
            reason=row["reason"],
        )

    def _row_to_withdrawal(self, row: sqlite3.Row) -> WithdrawalRecord:
        return WithdrawalRecord(
            withdrawal_id=row["withdrawal_id"],
            recipient=row["recipient"],
            amount_wei=int(row["amount_wei"]),
            timestamp=row["timestamp"],
            status=row["status"],
            reason=row["reason"],
        )

    def insert_mint(self, conn: sqlite3.Connection, record: MintRecord) -> None:
        conn.execute(
            """
            INSERT INTO mints (
                mint_id, first_id, count, recipient, destination_parent,
                amount_wei, timestamp, status, reason
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.mint_id,
                record.first_id,
                record.count,
                record.recipient,
                record.destination_parent,
                str(record.amount_wei),
                record.timestamp,
                record.status,
                record.reason,
            ),
        )

    def get_mint(self, conn: sqlite3.Connection, mint_id: str) -> MintRecord:
        row = conn.execute("SELECT * FROM mints WHERE mint_id = ?", (mint_id,)).fetchone()
        if row is None:
            raise ValueError(f"Mint record not found: {mint_id}")
        return self._row_to_mint(row)

    def set_mint_status(
        self,
        conn: sqlite3.Connection,
        mint_id: str,
        status: str,
        reason: Optional[str] = None,
    ) -> None:
        conn.execute(
            "UPDATE mints SET status = ?, reason = COALESCE(?, reason) WHERE mint_id = ?",
            (status, reason, mint_id),
        )

    def insert_withdrawal(self, conn: sqlite3.Connection, record: WithdrawalRecord) -> None:
        conn.execute(
            """
            INSERT INTO withdrawals (
                withdrawal_id, recipient, amount_wei, timestamp, status, reason
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.withdrawal_id,
                record.recipient,
                str(record.amount_wei),
                record.timestamp,
                record.status,
                record.reason,
            ),
        )

    def get_withdrawal(self, conn: sqlite3.Connection, withdrawal_id: str) -> WithdrawalRecord:
        row = conn.execute(
            "SELECT * FROM withdrawals WHERE withdrawal_id = ?",
            (withdrawal_id,),
        ).fetchone()
        if row is None:
            raise ValueError(f"Withdrawal record not found: {withdrawal_id}")
        return self._row_to_withdrawal(row)

    def set_withdrawal_status(
        self,
        conn: sqlite3.Connection,
        withdrawal_id: str,
        status: str,
        reason: Optional[str] = None,
    ) -> None:
        conn.execute(
            "UPDATE withdrawals SET status = ?, reason = COALESCE(?, reason) WHERE withdrawal_id = ?",
            (status, reason, withdrawal_id),
        )

    # ── Reads ─────────────────────────────────────────────────────

    def get_state(self) -> CollectionState:
        with self._reader() as conn:
            return self.load_state(conn)

    def find_mint(self, mint_id: str) -> MintRecord:
        with self._reader() as conn:
            return self.get_mint(conn, mint_id)

    def list_mints(self, status: Optional[str] = None) -> list[MintRecord]:
        with self._reader() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM mints ORDER BY first_id ASC, timestamp ASC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM mints WHERE status = ? ORDER BY first_id ASC, timestamp ASC",
                    (status,),
                ).fetchall()
        return [self._row_to_mint(r) for r in rows]

    def list_withdrawals(self, status: Optional[str] = None) -> list[WithdrawalRecord]:
        with self._reader() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM withdrawals ORDER BY timestamp ASC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM withdrawals WHERE status = ? ORDER BY timestamp ASC",
                    (status,),
                ).fetchall()
        return [self._row_to_withdrawal(r) for r in rows]
