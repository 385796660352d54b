from __future__ import annotations

# signstore/db.py
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Sequence, TypeVar

from .config import get_config, get_db_path
from .errors import DatabaseNotInitializedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TABLES = ("transfers", "documents", "recipients")

SCHEMA = """
CREATE TABLE IF NOT EXISTS transfers (
  id TEXT PRIMARY KEY,
  type TEXT NOT NULL CHECK (type IN ('incoming', 'outgoing')),
  status TEXT NOT NULL DEFAULT 'pending'
    CHECK (status IN ('pending', 'ready', 'partially-signed', 'completed', 'cancelled')),
  sender_id TEXT,
  sender_name TEXT,
  sender_email TEXT,
  sender_public_key TEXT,
  transport_type TEXT NOT NULL,
  transport_config TEXT,
  metadata TEXT,
  created_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s','now') AS INTEGER)),
  updated_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s','now') AS INTEGER))
);
CREATE TABLE IF NOT EXISTS documents (
  id TEXT PRIMARY KEY,
  transfer_id TEXT NOT NULL,
  file_name TEXT NOT NULL,
  file_size INTEGER NOT NULL CHECK (file_size >= 0),
  file_hash TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'signed', 'rejected')),
  signed_at INTEGER,
  signed_by TEXT,
  blockchain_tx_original TEXT,
  blockchain_tx_signed TEXT,
  created_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s','now') AS INTEGER)),
  FOREIGN KEY (transfer_id) REFERENCES transfers(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS recipients (
  id TEXT PRIMARY KEY,
  transfer_id TEXT NOT NULL,
  identifier TEXT NOT NULL,
  transport TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending'
    CHECK (status IN ('pending', 'notified', 'viewed', 'signing', 'signed', 'rejected')),
  preferences TEXT,
  notified_at INTEGER,
  viewed_at INTEGER,
  signed_at INTEGER,
  created_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s','now') AS INTEGER)),
  FOREIGN KEY (transfer_id) REFERENCES transfers(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_transfers_type ON transfers(type);
CREATE INDEX IF NOT EXISTS idx_transfers_status ON transfers(status);
CREATE INDEX IF NOT EXISTS idx_transfers_created_at ON transfers(created_at);
CREATE INDEX IF NOT EXISTS idx_documents_transfer_id ON documents(transfer_id);
CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status);
CREATE INDEX IF NOT EXISTS idx_recipients_transfer_id ON recipients(transfer_id);
CREATE INDEX IF NOT EXISTS idx_recipients_status ON recipients(status);
"""


class Database:
    """
    One SQLite handle plus the schema it serves.

    The connection runs in autocommit mode; multi-statement writes must go
    through `atomic()` / `run_atomic()`. Every statement takes the handle's
    re-entrant lock, so an open transaction belongs to exactly one thread.
    """

    def __init__(self, path: str, journal_mode: str = "WAL", busy_timeout_ms: int = 5000):
        self.path = path
        if path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

        self._lock = threading.RLock()
        self._depth = 0
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            path,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        try:
            self.journal_mode = self._conn.execute(f"PRAGMA journal_mode = {journal_mode}").fetchone()[0]
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
            self._init_schema()
        except Exception:
            self._conn.close()
            self._conn = None
            raise

    @classmethod
    def from_config(cls, cfg: Optional[dict] = None, path: Optional[str] = None,
                    config_path: Optional[str] = None) -> "Database":
        """
        Build a handle from settings. Without an explicit `path` the location
        follows `get_db_path` (SIGNSTORE_DB_PATH, then the test path, then
        `db_path`), falling back to `cfg["db_path"]` for a hand-built cfg.
        """
        cfg = cfg or get_config(config_path)
        db_path = path or get_db_path(config_path) or cfg.get("db_path")
        if not db_path:
            raise DatabaseNotInitializedError("no database initialized")
        return cls(db_path, journal_mode=cfg["journal_mode"], busy_timeout_ms=cfg["busy_timeout_ms"])

    def _init_schema(self) -> None:
        try:
            self._conn.executescript(SCHEMA)
        except sqlite3.Error:
            logger.error("Failed to initialize database tables at %s", self.path, exc_info=True)
            raise
        logger.info("Database tables initialized at %s (journal_mode=%s)", self.path, self.journal_mode)

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseNotInitializedError("database is closed")
        return self._conn

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # ---------------- statements ----------------

    def execute(self, sql: str, params: Sequence[Any] | dict = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._require().execute(sql, params)

    def executescript(self, script: str) -> None:
        """Run DDL; never inside an atomic unit since sqlite commits first."""
        with self._lock:
            if self._depth:
                raise RuntimeError("executescript is not allowed inside an atomic unit")
            self._require().executescript(script)

    def query(self, sql: str, params: Sequence[Any] | dict = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._require().execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] | dict = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._require().execute(sql, params).fetchone()

    # ---------------- atomic units ----------------

    @contextmanager
    def atomic(self) -> Iterator["Database"]:
        """
        Run the enclosed block as one unit of work.

        Commits on normal exit, rolls back and re-raises on any exception.
        A nested block becomes a savepoint of the enclosing transaction.
        """
        with self._lock:
            conn = self._require()
            savepoint = f"sp_{self._depth}" if self._depth else None
            if savepoint:
                conn.execute(f"SAVEPOINT {savepoint}")
            else:
                conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if savepoint:
                    conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                elif conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if savepoint:
                    conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                else:
                    conn.execute("COMMIT")

    def run_atomic(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self.atomic():
            return fn(*args, **kwargs)

    # ---------------- lifecycle ----------------

    def status(self) -> dict:
        if self._conn is None:
            return {"connected": False, "path": self.path, "tables": {}}
        with self._lock:
            counts = {
                t: int(self._conn.execute(f"SELECT COUNT(1) AS c FROM {t}").fetchone()["c"])
                for t in TABLES
            }
            fk = bool(self._conn.execute("PRAGMA foreign_keys").fetchone()[0])
            mode = self._conn.execute("PRAGMA journal_mode").fetchone()[0]
        return {
            "connected": True,
            "path": self.path,
            "journal_mode": mode,
            "foreign_keys": fk,
            "tables": counts,
        }

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
            self._depth = 0
        logger.info("Database closed: %s", self.path)


# ---------------- process default handle ----------------

_default: Optional[Database] = None
_default_lock = threading.Lock()


def open_database(path: Optional[str] = None, **opts: Any) -> Database:
    """
    Open (once) the process default handle.

    Later calls return the existing handle; a call without a path before
    any handle exists raises DatabaseNotInitializedError.
    """
    global _default
    with _default_lock:
        if _default is not None:
            if path and os.path.abspath(path) != os.path.abspath(_default.path):
                logger.warning("open_database(%s) ignored, already open at %s", path, _default.path)
            return _default
        if not path:
            raise DatabaseNotInitializedError("no database initialized")
        _default = Database(path, **opts)
        return _default


def get_database() -> Database:
    if _default is None:
        raise DatabaseNotInitializedError("no database initialized")
    return _default


def close_database() -> None:
    global _default
    with _default_lock:
        if _default is not None:
            _default.close()
        _default = None
