"""Ordered, transactional key-value buckets on top of a single SQLite file.

Each bucket is a ``WITHOUT ROWID`` table keyed by a BLOB, so iteration order
is SQLite's memcmp order of the raw key bytes. A ``buckets`` catalog table
records which buckets exist and holds their sequence counters.

All access goes through :meth:`Database.update` (read-write) or
:meth:`Database.view` (read-only). Both run the callback inside one
transaction that commits when it returns and rolls back when it raises.
"""

import logging
import os
import sqlite3
import threading
from typing import Any, Callable, Iterator, List, Optional, Tuple, TypeVar

from .errors import BucketNotFoundError, StorageError


logger = logging.getLogger(__name__)

T = TypeVar("T")
Item = Tuple[Optional[bytes], Optional[bytes]]

_CATALOG_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS buckets ("
    " name TEXT PRIMARY KEY,"
    " sequence INTEGER NOT NULL DEFAULT 0)"
)


def _table(name: str) -> str:
    return '"bucket_' + name.replace('"', '""') + '"'


def _create_file(path: str, mode: int) -> None:
    if path == ":memory:":
        return
    try:
        fd = os.open(path, os.O_RDWR | os.O_CREAT | os.O_EXCL, mode)
    except FileExistsError:
        return
    os.close(fd)


class Database:
    def __init__(
        self,
        path: str,
        timeout: Optional[float] = None,
        mode: int = 0o666,
        journal_mode: str = "WAL",
        synchronous: str = "FULL",
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.path = path
        self._log = log or logger
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        # Visited filter shared by every Storage wrapping this handle; only
        # replaced or updated while a transaction holds _lock.
        self.visited_filter: Optional[Any] = None
        kwargs = {} if timeout is None else {"timeout": timeout}
        try:
            _create_file(path, mode)
            # Transactions are issued explicitly, so the module must not open its own.
            conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False, **kwargs)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"cannot open {path}: {exc}") from exc
        try:
            conn.execute(f"PRAGMA journal_mode={journal_mode};")
            conn.execute(f"PRAGMA synchronous={synchronous};")
            conn.execute(_CATALOG_SCHEMA)
        except sqlite3.Error as exc:
            conn.close()
            raise StorageError(f"cannot initialise {path}: {exc}") from exc
        self._conn = conn
        self._log.debug("crawlstore: opened %s (journal=%s, synchronous=%s)", path, journal_mode, synchronous)

    @property
    def closed(self) -> bool:
        return self._conn is None

    def update(self, fn: Callable[["Tx"], T]) -> T:
        """Run fn in a read-write transaction and return its result."""
        return self._run(fn, writable=True)

    def view(self, fn: Callable[["Tx"], T]) -> T:
        """Run fn in a read-only transaction and return its result."""
        return self._run(fn, writable=False)

    def _run(self, fn: Callable[["Tx"], T], writable: bool) -> T:
        with self._lock:
            conn = self._conn
            if conn is None:
                raise StorageError("database is closed")
            try:
                # IMMEDIATE takes the write lock up front; the busy timeout applies here.
                conn.execute("BEGIN IMMEDIATE" if writable else "BEGIN")
            except sqlite3.Error as exc:
                raise StorageError(f"begin transaction: {exc}") from exc
            tx = Tx(conn, writable)
            try:
                result = fn(tx)
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback(conn)
                raise StorageError(str(exc)) from exc
            except BaseException:
                self._rollback(conn)
                raise
            finally:
                tx.done = True
            return result

    def _rollback(self, conn: sqlite3.Connection) -> None:
        if not conn.in_transaction:
            return
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            self._log.warning("crawlstore: rollback failed on %s: %s", self.path, exc)

    def close(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
            self.visited_filter = None
            if conn is None:
                return
            try:
                conn.close()
            except sqlite3.Error as exc:
                raise StorageError(f"close {self.path}: {exc}") from exc
        self._log.debug("crawlstore: closed %s", self.path)


class Tx:
    """A single transaction. Only valid inside the callback that received it."""

    def __init__(self, conn: sqlite3.Connection, writable: bool) -> None:
        self._conn = conn
        self.writable = writable
        self.done = False

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self.done:
            raise StorageError("transaction is closed")
        return self._conn.execute(sql, params)

    def check_writable(self) -> None:
        if not self.writable:
            raise StorageError("transaction is not writable")

    def bucket(self, name: str) -> "Bucket":
        row = self.execute("SELECT 1 FROM buckets WHERE name = ?", (name,)).fetchone()
        if row is None:
            raise BucketNotFoundError(name)
        return Bucket(self, name)

    def create_bucket_if_not_exists(self, name: str) -> "Bucket":
        if not name:
            raise ValueError("bucket name required")
        self.check_writable()
        self.execute(
            f"CREATE TABLE IF NOT EXISTS {_table(name)} ("
            " key BLOB PRIMARY KEY,"
            " value BLOB NOT NULL) WITHOUT ROWID"
        )
        self.execute("INSERT OR IGNORE INTO buckets(name, sequence) VALUES (?, 0)", (name,))
        return Bucket(self, name)

    def bucket_names(self) -> List[str]:
        cur = self.execute("SELECT name FROM buckets ORDER BY name")
        return [row[0] for row in cur.fetchall()]


class Bucket:
    def __init__(self, tx: Tx, name: str) -> None:
        self.tx = tx
        self.name = name
        self.table = _table(name)

    def get(self, key: bytes) -> Optional[bytes]:
        cur = self.tx.execute(f"SELECT value FROM {self.table} WHERE key = ?", (bytes(key),))
        row = cur.fetchone()
        return None if row is None else bytes(row[0])

    def put(self, key: bytes, value: bytes) -> None:
        self.tx.check_writable()
        if not key:
            raise ValueError("key required")
        self.tx.execute(
            f"INSERT OR REPLACE INTO {self.table}(key, value) VALUES (?, ?)",
            (bytes(key), bytes(value)),
        )

    def delete(self, key: bytes) -> None:
        self.tx.check_writable()
        self.tx.execute(f"DELETE FROM {self.table} WHERE key = ?", (bytes(key),))

    def count(self) -> int:
        return self.tx.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0]

    def sequence(self) -> int:
        """Last sequence number handed out by next_sequence (0 if none)."""
        row = self.tx.execute("SELECT sequence FROM buckets WHERE name = ?", (self.name,)).fetchone()
        return row[0]

    def next_sequence(self) -> int:
        """Return a new sequence number, strictly greater than every earlier one."""
        self.tx.check_writable()
        self.tx.execute("UPDATE buckets SET sequence = sequence + 1 WHERE name = ?", (self.name,))
        return self.sequence()

    def cursor(self) -> "Cursor":
        return Cursor(self)

    def keys(self, batch_size: int = 10000) -> Iterator[bytes]:
        """Yield every key in ascending order, fetched in batches."""
        cur = self.tx.execute(f"SELECT key FROM {self.table} ORDER BY key")
        try:
            while True:
                rows = cur.fetchmany(batch_size)
                if not rows:
                    break
                for row in rows:
                    yield bytes(row[0])
        finally:
            cur.close()


class Cursor:
    """Ordered cursor over one bucket.

    first() and next() return ``(key, value)``, or ``(None, None)`` once
    the bucket is exhausted. delete() removes the entry last returned;
    next() still continues after the deleted key.
    """

    def __init__(self, bucket: Bucket) -> None:
        self.bucket = bucket
        self._key: Optional[bytes] = None

    def _position(self, row) -> Item:
        if row is None:
            self._key = None
            return None, None
        self._key = bytes(row[0])
        return self._key, bytes(row[1])

    def first(self) -> Item:
        cur = self.bucket.tx.execute(f"SELECT key, value FROM {self.bucket.table} ORDER BY key LIMIT 1")
        return self._position(cur.fetchone())

    def next(self) -> Item:
        if self._key is None:
            return None, None
        cur = self.bucket.tx.execute(
            f"SELECT key, value FROM {self.bucket.table} WHERE key > ? ORDER BY key LIMIT 1",
            (self._key,),
        )
        return self._position(cur.fetchone())

    def delete(self) -> None:
        if self._key is None:
            raise StorageError("cursor is not positioned on an entry")
        self.bucket.delete(self._key)
