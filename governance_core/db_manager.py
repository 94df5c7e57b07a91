"""
Governance Core - Database Manager

SQLite storage for the audit trail with:
- Connection pooling (thread-safe)
- WAL journal mode for concurrent reads/writes
- One IMMEDIATE transaction per write, bounded by a caller timeout
- Schema migration system
- Append-only enforcement through triggers
"""

import sqlite3
import threading
import time
import logging
from queue import Queue, Empty, Full
from typing import Optional, Dict, Any, List
from contextlib import contextmanager
from pathlib import Path

from governance_core.config import DatabaseConfig
from governance_core.exceptions import (
    StorageError, StorageConnectionError, StorageTimeoutError
)

logger = logging.getLogger("governance.db")


# ══════════════════════════════════════════════════════════════════════════════
# SCHEMA MIGRATIONS
# ══════════════════════════════════════════════════════════════════════════════

SCHEMA_VERSION = 3

MIGRATIONS: Dict[int, List[str]] = {
    1: [
        """CREATE TABLE IF NOT EXISTS audit_events (
            id TEXT PRIMARY KEY,
            timestamp TEXT NOT NULL,
            principal_id TEXT NOT NULL,
            action TEXT NOT NULL,
            resource TEXT NOT NULL,
            result TEXT NOT NULL,
            ip_address TEXT,
            user_agent TEXT,
            metadata_json TEXT NOT NULL DEFAULT '{}',
            integrity_tag TEXT NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS security_events (
            id TEXT PRIMARY KEY,
            timestamp TEXT NOT NULL,
            category TEXT NOT NULL,
            severity TEXT NOT NULL,
            description TEXT NOT NULL,
            principal_id TEXT NOT NULL,
            ip_address TEXT,
            metadata_json TEXT NOT NULL DEFAULT '{}'
        )""",
        """CREATE TABLE IF NOT EXISTS agent_actions (
            id TEXT PRIMARY KEY,
            timestamp TEXT NOT NULL,
            principal_id TEXT NOT NULL,
            action TEXT NOT NULL,
            metadata_json TEXT NOT NULL DEFAULT '{}',
            integrity_tag TEXT NOT NULL,
            approval_state TEXT NOT NULL DEFAULT 'pending',
            approver_id TEXT,
            decided_at TEXT,
            decision_reason TEXT,
            version INTEGER NOT NULL DEFAULT 0
        )""",
    ],
    2: [
        "CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_events(timestamp)",
        "CREATE INDEX IF NOT EXISTS idx_audit_principal ON audit_events(principal_id)",
        "CREATE INDEX IF NOT EXISTS idx_security_timestamp ON security_events(timestamp)",
        "CREATE INDEX IF NOT EXISTS idx_security_severity ON security_events(severity)",
        "CREATE INDEX IF NOT EXISTS idx_security_category ON security_events(category)",
        "CREATE INDEX IF NOT EXISTS idx_agent_state ON agent_actions(approval_state)",
    ],
    3: [
        # Append-only: audit and security rows never change once written
        """CREATE TRIGGER IF NOT EXISTS audit_events_no_update
           BEFORE UPDATE ON audit_events
           BEGIN SELECT RAISE(ABORT, 'audit_events is append-only'); END""",
        """CREATE TRIGGER IF NOT EXISTS audit_events_no_delete
           BEFORE DELETE ON audit_events
           BEGIN SELECT RAISE(ABORT, 'audit_events is append-only'); END""",
        """CREATE TRIGGER IF NOT EXISTS security_events_no_update
           BEFORE UPDATE ON security_events
           BEGIN SELECT RAISE(ABORT, 'security_events is append-only'); END""",
        """CREATE TRIGGER IF NOT EXISTS security_events_no_delete
           BEFORE DELETE ON security_events
           BEGIN SELECT RAISE(ABORT, 'security_events is append-only'); END""",
        # Agent actions: one decision per row, never deleted
        """CREATE TRIGGER IF NOT EXISTS agent_actions_no_delete
           BEFORE DELETE ON agent_actions
           BEGIN SELECT RAISE(ABORT, 'agent_actions is append-only'); END""",
        """CREATE TRIGGER IF NOT EXISTS agent_actions_decided_immutable
           BEFORE UPDATE ON agent_actions
           WHEN OLD.approval_state != 'pending'
           BEGIN SELECT RAISE(ABORT, 'decided agent action is immutable'); END""",
    ],
}


def _is_lock_error(error: sqlite3.Error) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


# ══════════════════════════════════════════════════════════════════════════════
# CONNECTION POOL
# ══════════════════════════════════════════════════════════════════════════════

class ConnectionPool:
    """
    Bounded pool of autocommit SQLite connections shared across threads.

    `pool_size` connections are opened eagerly; up to `max_overflow` more
    are opened on demand when callers would otherwise wait.
    """

    def __init__(self, db_path: str, config: DatabaseConfig):
        self.db_path = db_path
        self.config = config
        self.capacity = config.pool_size + config.max_overflow
        self._idle: Queue = Queue(maxsize=self.capacity)
        self._open = 0
        self._lock = threading.Lock()
        self._stats = {"acquired": 0, "released": 0, "opened": 0, "errors": 0}

        for _ in range(config.pool_size):
            self._idle.put(self._open_connection())

    def _bump(self, key: str, delta: int = 1):
        with self._lock:
            self._stats[key] += delta

    def _open_connection(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.config.connect_timeout,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            for pragma in (
                f"journal_mode={self.config.journal_mode}",
                f"synchronous={self.config.synchronous}",
                f"busy_timeout={int(self.config.write_timeout * 1000)}",
            ):
                conn.execute(f"PRAGMA {pragma}")
        except sqlite3.Error as e:
            self._bump("errors")
            raise StorageConnectionError(self.db_path, cause=e)

        with self._lock:
            self._open += 1
            self._stats["opened"] += 1
        return conn

    def _try_grow(self) -> Optional[sqlite3.Connection]:
        with self._lock:
            if self._open >= self.capacity:
                return None
        return self._open_connection()

    def acquire(self, timeout: Optional[float] = None) -> sqlite3.Connection:
        """Take an idle connection, opening an overflow one if none is free."""
        try:
            conn = self._idle.get_nowait()
        except Empty:
            conn = self._try_grow()
            if conn is None:
                wait = self.config.acquire_timeout if timeout is None else timeout
                try:
                    conn = self._idle.get(timeout=wait)
                except Empty:
                    self._bump("errors")
                    raise StorageConnectionError(
                        self.db_path, cause=RuntimeError("connection pool exhausted")
                    )
        self._bump("acquired")
        return conn

    def release(self, conn: sqlite3.Connection):
        try:
            self._idle.put_nowait(conn)
        except Full:
            conn.close()
            with self._lock:
                self._open -= 1
        self._bump("released")

    def close_all(self):
        while True:
            try:
                conn = self._idle.get_nowait()
            except Empty:
                break
            conn.close()
            with self._lock:
                self._open -= 1

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {**self._stats, "idle": self._idle.qsize(), "open": self._open}


# ══════════════════════════════════════════════════════════════════════════════
# DATABASE MANAGER
# ══════════════════════════════════════════════════════════════════════════════

class DatabaseManager:
    """
    Audit store access: migrations, one IMMEDIATE transaction per write,
    pooled reads and per-statement timing.
    """

    TABLES = ("audit_events", "security_events", "agent_actions")

    def __init__(self, db_path: Optional[str] = None, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self.db_path = db_path or self.config.db_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.pool = ConnectionPool(self.db_path, self.config)
        self._query_stats: Dict[str, Dict[str, Any]] = {}
        self._stats_lock = threading.Lock()
        self._initialized = False

    def initialize(self):
        if self._initialized:
            return
        self._migrate()
        self._initialized = True
        logger.info("Audit store ready at %s (schema v%d)", self.db_path, SCHEMA_VERSION)

    @contextmanager
    def connection(self):
        """Pooled connection for reads; sqlite errors surface as StorageError."""
        conn = self.pool.acquire()
        try:
            yield conn
        except sqlite3.Error as e:
            logger.error("Audit store read failed: %s", e)
            raise StorageError(f"Read failed: {e}", cause=e)
        finally:
            self.pool.release(conn)

    @contextmanager
    def transaction(self, timeout: Optional[float] = None):
        """
        One write transaction. `timeout` bounds pool acquisition and the wait
        for SQLite's write lock; past it the transaction is rolled back and
        StorageTimeoutError raised.
        """
        wait = self.config.write_timeout if timeout is None else timeout
        conn = self.pool.acquire(timeout=wait)
        try:
            conn.execute(f"PRAGMA busy_timeout={max(0, int(wait * 1000))}")
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            if _is_lock_error(e):
                raise StorageTimeoutError(wait, cause=e)
            raise StorageError(f"Write failed: {e}", cause=e)
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            self.pool.release(conn)

    def execute(self, query: str, params: tuple = (), timeout: Optional[float] = None) -> int:
        """Run one write statement in its own transaction; returns rowcount."""
        start = time.monotonic()
        ok = False
        try:
            with self.transaction(timeout) as conn:
                rowcount = conn.execute(query, params).rowcount
            ok = True
            return rowcount
        finally:
            self._track_query(query, (time.monotonic() - start) * 1000, ok)

    def insert(self, table: str, row: Dict[str, Any], timeout: Optional[float] = None) -> int:
        columns = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        return self.execute(f"INSERT INTO {table} ({columns}) VALUES ({marks})",
                            tuple(row.values()), timeout)

    def fetch_one(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(query, params).fetchone()
        return dict(row) if row is not None else None

    def fetch_all(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(query, params)]

    def fetch_count(self, table: str, where: str = "", params: tuple = ()) -> int:
        clause = f" WHERE {where}" if where else ""
        row = self.fetch_one(f"SELECT COUNT(*) AS n FROM {table}{clause}", params)
        return row["n"] if row else 0

    def integrity_check(self) -> bool:
        """SQLite's own page-level check, complementing the row tags."""
        row = self.fetch_one("PRAGMA integrity_check")
        if row and row.get("integrity_check") == "ok":
            return True
        logger.error("SQLite integrity check failed: %s", row)
        return False

    def get_db_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            query_stats = {k: dict(v) for k, v in self._query_stats.items()}
        return {
            "db_path": self.db_path,
            "schema_version": SCHEMA_VERSION,
            "tables": {name: self.fetch_count(name) for name in self.TABLES},
            "pool_stats": self.pool.get_stats(),
            "query_stats": query_stats,
        }

    def _migrate(self):
        with self.transaction() as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version ("
                " version INTEGER PRIMARY KEY,"
                " applied_at TEXT NOT NULL DEFAULT (datetime('now')))"
            )
            applied = conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_version").fetchone()[0]
            for version in sorted(v for v in MIGRATIONS if v > applied):
                logger.info("Applying audit store migration v%d", version)
                for statement in MIGRATIONS[version]:
                    conn.execute(statement)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))

    def _track_query(self, query: str, elapsed_ms: float, ok: bool):
        words = query.split()
        key = words[0].upper() if words else "UNKNOWN"
        with self._stats_lock:
            stats = self._query_stats.setdefault(
                key, {"count": 0, "errors": 0, "total_ms": 0.0, "max_ms": 0.0}
            )
            stats["count"] += 1
            stats["total_ms"] += elapsed_ms
            stats["max_ms"] = max(stats["max_ms"], elapsed_ms)
            if not ok:
                stats["errors"] += 1

    def close(self):
        self.pool.close_all()
        logger.info("Audit store closed")
