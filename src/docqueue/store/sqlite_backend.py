"""SQLite implementation of KeyValueStore.

This module provides the local-first, crash-safe shared store using:
- sqlite-utils for schema management and simple row access
- WAL mode so readers never block the writer
- BEGIN IMMEDIATE transactions for atomic list pops and claims
- Exponential backoff retry for database lock handling
- One connection per thread (sqlite3 connections are not shared)

Every process that opens the same database file sees the same keys, lists,
sets and message log, which is what gives jobs cross-process visibility.
"""

import functools
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from sqlite_utils import Database

from ..errors import StoreUnavailableError
from .backends import KeyValueStore, MessageCallback

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
-- Plain string keys
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Lists: lpush appends a higher seq, rpop takes the lowest seq
CREATE TABLE IF NOT EXISTS list_items (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_list_items_key ON list_items(key, seq);

-- Sets (id keeps insertion order)
CREATE TABLE IF NOT EXISTS set_members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL,
    member TEXT NOT NULL,
    UNIQUE(key, member)
);

-- Absolute expiry (unix seconds) for keys of any kind
CREATE TABLE IF NOT EXISTS expiry (
    key TEXT PRIMARY KEY,
    expires_at REAL NOT NULL
);

-- Publish log, readable by other processes
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel TEXT NOT NULL,
    payload TEXT NOT NULL,
    published_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_channel ON messages(channel, id);
"""

# Joined into read queries so expired keys are invisible without a write
LIVE = "(e.expires_at IS NULL OR e.expires_at > ?)"


def _store_errors(fn):
    """Translate sqlite3 failures into StoreUnavailableError."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"{fn.__name__} failed: {e}") from e

    return wrapper


class SQLiteStore(KeyValueStore):
    """SQLite-backed key-value store shared through a database file.

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so two
      workers can never pop the same list element
    - busy_timeout plus exponential backoff absorbs lock contention
    - each thread gets its own connection
    """

    def __init__(
        self,
        db_path: str,
        busy_timeout_s: float = 5.0,
        lock_retries: int = 3,
        message_retention_s: float = 24 * 60 * 60,
    ):
        """Open (and create if needed) the store database.

        Args:
            db_path: Path to SQLite database file (":memory:" is not supported,
                every thread opens its own connection)
            busy_timeout_s: How long a connection waits on a locked database
            lock_retries: Attempts to begin a write transaction on contention
            message_retention_s: Age after which published messages are purged
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_s = busy_timeout_s
        self.lock_retries = lock_retries
        self.message_retention_s = message_retention_s

        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._subscribers: Dict[str, List[MessageCallback]] = {}
        self._subscribers_lock = threading.Lock()

        try:
            db = self.db
            # WAL persists in the database file; readers no longer block writers
            db.conn.execute("PRAGMA journal_mode=WAL")
            db.executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open store at {self.db_path}: {e}") from e

    @property
    def db(self) -> Database:
        """sqlite-utils Database bound to the calling thread."""
        db = getattr(self._local, "db", None)
        if db is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_s,
                isolation_level=None,  # explicit transactions only
                check_same_thread=False,
            )
            conn.execute("PRAGMA synchronous=NORMAL")
            with self._connections_lock:
                self._connections.append(conn)
            db = Database(conn)
            self._local.db = db
        return db

    @contextmanager
    def _transaction(self):
        """BEGIN IMMEDIATE ... COMMIT with backoff on SQLITE_BUSY.

        Exponential backoff: 100ms, 200ms, 400ms delays
        """
        conn = self.db.conn
        for attempt in range(self.lock_retries):
            try:
                conn.execute("BEGIN IMMEDIATE")
                break
            except sqlite3.OperationalError as e:
                if "locked" in str(e).lower() and attempt < self.lock_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise

        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def _drop_if_expired(self, conn: sqlite3.Connection, key: str, now: float) -> None:
        """Remove every trace of key if its expiry has passed (inside a transaction)."""
        row = conn.execute(
            "SELECT expires_at FROM expiry WHERE key = ?", (key,)
        ).fetchone()
        if row and row[0] <= now:
            self._delete_key(conn, key)

    @staticmethod
    def _delete_key(conn: sqlite3.Connection, key: str) -> int:
        removed = 0
        for table in ("kv", "list_items", "set_members"):
            removed += conn.execute(f"DELETE FROM {table} WHERE key = ?", (key,)).rowcount
        conn.execute("DELETE FROM expiry WHERE key = ?", (key,))
        return removed

    # Strings

    @_store_errors
    def get(self, key: str) -> Optional[str]:
        row = self.db.execute(
            f"""
            SELECT kv.value FROM kv
            LEFT JOIN expiry e ON e.key = kv.key
            WHERE kv.key = ? AND {LIVE}
            """,
            (key, time.time()),
        ).fetchone()
        return row[0] if row else None

    @_store_errors
    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        with self._transaction() as conn:
            self._write_value(conn, key, value, ttl)

    def _write_value(
        self, conn: sqlite3.Connection, key: str, value: str, ttl: Optional[float]
    ) -> None:
        conn.execute(
            """
            INSERT INTO kv (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )
        if ttl is None:
            conn.execute("DELETE FROM expiry WHERE key = ?", (key,))
        else:
            self._set_expiry(conn, key, time.time() + ttl)

    @staticmethod
    def _set_expiry(conn: sqlite3.Connection, key: str, expires_at: float) -> None:
        conn.execute(
            """
            INSERT INTO expiry (key, expires_at) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET expires_at = excluded.expires_at
            """,
            (key, expires_at),
        )

    @_store_errors
    def delete(self, key: str) -> bool:
        with self._transaction() as conn:
            return self._delete_key(conn, key) > 0

    @_store_errors
    def expire(self, key: str, ttl: float) -> None:
        now = time.time()
        with self._transaction() as conn:
            self._drop_if_expired(conn, key, now)
            exists = any(
                conn.execute(f"SELECT 1 FROM {table} WHERE key = ? LIMIT 1", (key,)).fetchone()
                for table in ("kv", "list_items", "set_members")
            )
            if exists:
                self._set_expiry(conn, key, now + ttl)

    # Lists

    @_store_errors
    def lpush(self, key: str, value: str) -> int:
        with self._transaction() as conn:
            self._drop_if_expired(conn, key, time.time())
            conn.execute("INSERT INTO list_items (key, value) VALUES (?, ?)", (key, value))
            return conn.execute(
                "SELECT COUNT(*) FROM list_items WHERE key = ?", (key,)
            ).fetchone()[0]

    @_store_errors
    def rpop(self, key: str) -> Optional[str]:
        with self._transaction() as conn:
            return self._pop_oldest(conn, key)

    def _pop_oldest(self, conn: sqlite3.Connection, key: str) -> Optional[str]:
        # CRITICAL: the caller holds the write lock from BEGIN IMMEDIATE, so the
        # select-and-delete below cannot interleave with another popper
        self._drop_if_expired(conn, key, time.time())
        rows = conn.execute(
            """
            DELETE FROM list_items
            WHERE seq = (
                SELECT seq FROM list_items
                WHERE key = ?
                ORDER BY seq ASC
                LIMIT 1
            )
            RETURNING value
            """,
            (key,),
        ).fetchall()
        return rows[0][0] if rows else None

    @_store_errors
    def claim(
        self,
        list_key: str,
        marker_prefix: str,
        index_key: str,
        marker_value: str,
        marker_ttl: float,
    ) -> Optional[str]:
        with self._transaction() as conn:
            value = self._pop_oldest(conn, list_key)
            if value is None:
                return None
            self._write_value(conn, f"{marker_prefix}{value}", marker_value, marker_ttl)
            self._add_member(conn, index_key, value)
            return value

    @_store_errors
    def llen(self, key: str) -> int:
        return self.db.execute(
            f"""
            SELECT COUNT(*) FROM list_items l
            LEFT JOIN expiry e ON e.key = l.key
            WHERE l.key = ? AND {LIVE}
            """,
            (key, time.time()),
        ).fetchone()[0]

    # Sets

    @_store_errors
    def sadd(self, key: str, member: str) -> bool:
        with self._transaction() as conn:
            return self._add_member(conn, key, member)

    def _add_member(self, conn: sqlite3.Connection, key: str, member: str) -> bool:
        self._drop_if_expired(conn, key, time.time())
        cursor = conn.execute(
            "INSERT OR IGNORE INTO set_members (key, member) VALUES (?, ?)", (key, member)
        )
        return cursor.rowcount > 0

    @_store_errors
    def srem(self, key: str, member: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM set_members WHERE key = ? AND member = ?", (key, member)
            )
            return cursor.rowcount > 0

    @_store_errors
    def smembers(self, key: str) -> List[str]:
        rows = self.db.execute(
            f"""
            SELECT s.member FROM set_members s
            LEFT JOIN expiry e ON e.key = s.key
            WHERE s.key = ? AND {LIVE}
            ORDER BY s.id ASC
            """,
            (key, time.time()),
        ).fetchall()
        return [row[0] for row in rows]

    # Pub/sub

    @_store_errors
    def publish(self, channel: str, message: str) -> int:
        self.db["messages"].insert(
            {"channel": channel, "payload": message, "published_at": time.time()}
        )

        with self._subscribers_lock:
            callbacks = list(self._subscribers.get(channel, []))

        for callback in callbacks:
            try:
                callback(channel, message)
            except Exception:
                # One broken listener must not stop delivery to the others
                logger.exception("Subscriber on %s raised", channel)

        return len(callbacks)

    def subscribe(self, channel: str, callback: MessageCallback) -> Callable[[], None]:
        with self._subscribers_lock:
            self._subscribers.setdefault(channel, []).append(callback)

        def unsubscribe():
            with self._subscribers_lock:
                callbacks = self._subscribers.get(channel, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    @_store_errors
    def messages(self, channel: str, after_id: int = 0) -> List[Tuple[int, str]]:
        rows = self.db["messages"].rows_where(
            "channel = ? AND id > ?", [channel, after_id], order_by="id"
        )
        return [(row["id"], row["payload"]) for row in rows]

    # Maintenance

    @_store_errors
    def purge_expired(self) -> int:
        now = time.time()
        removed = 0
        with self._transaction() as conn:
            expired = [
                row[0]
                for row in conn.execute(
                    "SELECT key FROM expiry WHERE expires_at <= ?", (now,)
                ).fetchall()
            ]
            for key in expired:
                removed += 1 if self._delete_key(conn, key) else 0
            conn.execute(
                "DELETE FROM messages WHERE published_at <= ?",
                (now - self.message_retention_s,),
            )
        if removed:
            logger.info("Purged %d expired keys", removed)
        return removed

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error:
                logger.warning("Failed to close connection to %s", self.db_path)
        self._local = threading.local()
