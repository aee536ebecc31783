"""Shared SQLite storage for the escrow marketplace.

One connection, one re-entrant lock. Every read-modify-write runs inside
`transaction()` (BEGIN IMMEDIATE ... COMMIT), which serializes writers in
this process via the lock and across processes via SQLite's write lock.
Nested documents (timelines, jurors, badges, history) are JSON in TEXT
columns; fields used for filtering and sorting get their own columns.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager

from server.errors import StorageError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS escrows (
    escrow_id INTEGER PRIMARY KEY,
    buyer TEXT NOT NULL,
    seller TEXT NOT NULL,
    arbitrator TEXT,
    amount TEXT NOT NULL,
    token_address TEXT,
    terms_hash TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'Active',
    buyer_confirmed INTEGER NOT NULL DEFAULT 0,
    seller_confirmed INTEGER NOT NULL DEFAULT 0,
    evidence_hash TEXT,
    evidence_description TEXT,
    timeline TEXT NOT NULL DEFAULT '[]',
    version INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    completed_at REAL
);
CREATE INDEX IF NOT EXISTS idx_escrows_status ON escrows(status);
CREATE INDEX IF NOT EXISTS idx_escrows_buyer ON escrows(buyer);
CREATE INDEX IF NOT EXISTS idx_escrows_seller ON escrows(seller);

CREATE TABLE IF NOT EXISTS disputes (
    dispute_id INTEGER PRIMARY KEY,
    escrow_id INTEGER NOT NULL UNIQUE,
    buyer TEXT NOT NULL,
    seller TEXT NOT NULL,
    evidence TEXT NOT NULL DEFAULT '{}',
    jurors TEXT NOT NULL DEFAULT '[]',
    buyer_votes INTEGER NOT NULL DEFAULT 0,
    seller_votes INTEGER NOT NULL DEFAULT 0,
    total_stake TEXT NOT NULL DEFAULT '0',
    status TEXT NOT NULL DEFAULT 'Pending',
    resolution TEXT,
    timeline TEXT NOT NULL DEFAULT '[]',
    version INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_disputes_status ON disputes(status);
CREATE INDEX IF NOT EXISTS idx_disputes_buyer ON disputes(buyer);
CREATE INDEX IF NOT EXISTS idx_disputes_seller ON disputes(seller);

CREATE TABLE IF NOT EXISTS reputations (
    user TEXT PRIMARY KEY,
    score INTEGER NOT NULL DEFAULT 0,
    tier TEXT NOT NULL DEFAULT 'Newcomer',
    transactions TEXT NOT NULL DEFAULT '{}',
    arbitrations TEXT NOT NULL DEFAULT '{}',
    badges TEXT NOT NULL DEFAULT '[]',
    history TEXT NOT NULL DEFAULT '[]',
    created_at REAL NOT NULL,
    last_updated REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_reputations_score ON reputations(score DESC);
CREATE INDEX IF NOT EXISTS idx_reputations_tier ON reputations(tier);

CREATE TABLE IF NOT EXISTS jurors (
    address TEXT PRIMARY KEY,
    stake TEXT NOT NULL,
    reputation INTEGER NOT NULL DEFAULT 100,
    is_active INTEGER NOT NULL DEFAULT 1,
    disputes_participated INTEGER NOT NULL DEFAULT 0,
    disputes_resolved INTEGER NOT NULL DEFAULT 0,
    total_rewards TEXT NOT NULL DEFAULT '0',
    total_penalties TEXT NOT NULL DEFAULT '0',
    accuracy REAL NOT NULL DEFAULT 0,
    last_active REAL NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jurors_active ON jurors(is_active);
CREATE INDEX IF NOT EXISTS idx_jurors_reputation ON jurors(reputation DESC);
"""


def dumps(value) -> str:
    return json.dumps(value, separators=(",", ":"))


def loads(text: str | None, default=None):
    if text is None or text == "":
        return default
    return json.loads(text)


class Database:
    """SQLite connection shared by all managers."""

    def __init__(self, db_path: str = ":memory:"):
        self.path = db_path
        try:
            # Autocommit mode: transactions are opened explicitly below
            self.db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
            self.db.row_factory = sqlite3.Row
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database: {e}") from e
        self._lock = threading.RLock()
        self._depth = 0
        self._init_db()

    def _init_db(self):
        with self._lock:
            try:
                self.db.execute("PRAGMA journal_mode=WAL")
                self.db.execute("PRAGMA busy_timeout=5000")
                self.db.executescript(SCHEMA)
            except sqlite3.Error as e:
                raise StorageError(f"Cannot initialize schema: {e}") from e

    @contextmanager
    def transaction(self):
        """Atomic unit of work. Nested calls join the outer transaction.

        Any exception rolls back every write made inside the block;
        sqlite3 errors surface as StorageError.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.db
                finally:
                    self._depth -= 1
                return

            try:
                self.db.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Cannot begin transaction: {e}") from e
            self._depth = 1
            try:
                yield self.db
            except sqlite3.Error as e:
                self._rollback()
                raise StorageError(f"Database error: {e}") from e
            except BaseException:
                self._rollback()
                raise
            else:
                try:
                    self.db.execute("COMMIT")
                except sqlite3.Error as e:
                    self._rollback()
                    raise StorageError(f"Commit failed: {e}") from e
            finally:
                self._depth = 0

    def _rollback(self):
        try:
            self.db.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed")

    def fetch_one(self, sql: str, params=()) -> sqlite3.Row | None:
        with self._lock:
            try:
                return self.db.execute(sql, params).fetchone()
            except sqlite3.Error as e:
                raise StorageError(f"Database error: {e}") from e

    def fetch_all(self, sql: str, params=()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.db.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"Database error: {e}") from e

    def count(self, table: str, where: str = "", params=()) -> int:
        sql = f"SELECT COUNT(*) AS n FROM {table}"
        if where:
            sql += f" WHERE {where}"
        row = self.fetch_one(sql, params)
        return int(row["n"]) if row else 0

    @staticmethod
    def next_id(conn: sqlite3.Connection, table: str, column: str) -> int:
        """Next sequential id (max + 1, starting at 1). Call inside a transaction."""
        row = conn.execute(f"SELECT COALESCE(MAX({column}), 0) + 1 AS next_id FROM {table}").fetchone()
        return int(row["next_id"])

    def close(self):
        with self._lock:
            self.db.close()
