"""Visited set, cookie cache and FIFO request queue sharing one store.

Every public method runs exactly one transaction against the shared
:class:`~crawlstore.db.Database` and finishes it before returning.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, TypeVar, Union

from urllib3.util import Url

from .bloom_filter import BloomFilter, create_visited_filter
from .config import BUCKET_COOKIES, BUCKET_QUEUE, BUCKET_REQUESTS, StoreConfig
from .db import Database, Tx
from .errors import EmptyQueueError, StorageError
from .keys import u64_to_bytes
from .metrics import Metrics


logger = logging.getLogger(__name__)

T = TypeVar("T")
Origin = Union[str, Url]

BUCKETS = (BUCKET_REQUESTS, BUCKET_COOKIES, BUCKET_QUEUE)


def origin_key(origin: Origin) -> bytes:
    """Cookie bucket key: the origin's exact string form, UTF-8 encoded.

    Lone surrogates are passed through so any str is a usable key.
    """
    if isinstance(origin, Url):
        origin = origin.url
    return origin.encode("utf-8", errors="surrogatepass")


class Storage:
    def __init__(self, db: Database, config: Optional[StoreConfig] = None, metrics: Optional[Metrics] = None):
        self.db = db
        self.config = config or StoreConfig(path=db.path)
        self.metrics = metrics or Metrics()
        self.log = self.config.logger or logger

    @classmethod
    def open(cls, config: StoreConfig, metrics: Optional[Metrics] = None) -> "Storage":
        """Open (creating if needed) the store file described by config."""
        log = config.logger or logger
        log.debug("crawlstore: using file %s mode %o", config.path, config.mode)
        db = Database(
            config.path,
            timeout=config.timeout,
            mode=config.mode,
            journal_mode=config.journal_mode,
            synchronous=config.synchronous,
            log=log,
        )
        return cls(db, config, metrics)

    def __enter__(self) -> "Storage":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.db.close()

    def _run(self, run: Callable[[Callable[[Tx], T]], T], fn: Callable[[Tx], T]) -> T:
        t0 = time.perf_counter()
        try:
            return run(fn)
        except StorageError:
            self.metrics.record_error()
            raise
        finally:
            self.metrics.record_transaction((time.perf_counter() - t0) * 1000.0)

    def _update(self, fn: Callable[[Tx], T]) -> T:
        return self._run(self.db.update, fn)

    def _view(self, fn: Callable[[Tx], T]) -> T:
        return self._run(self.db.view, fn)

    def init(self) -> None:
        """Create the requests, cookies and queue buckets if they are missing.

        Safe to call on every startup. Also loads the visited filter when
        one is configured.
        """
        def create(tx: Tx) -> None:
            self.log.debug("crawlstore: creating buckets")
            for name in BUCKETS:
                tx.create_bucket_if_not_exists(name)

        self._update(create)
        if self.config.visited_filter_size > 0:
            self._load_visited_filter()

    def _load_visited_filter(self, chunk_size: int = 10_000) -> None:
        def load(tx: Tx) -> BloomFilter:
            if self.db.visited_filter is not None:
                return self.db.visited_filter
            bucket = tx.bucket(BUCKET_REQUESTS)
            expected = max(self.config.visited_filter_size, bucket.count(), 1)
            bloom = create_visited_filter(expected, self.config.visited_filter_fpr)
            chunk: List[bytes] = []
            for key in bucket.keys(batch_size=chunk_size):
                chunk.append(key)
                if len(chunk) >= chunk_size:
                    bloom.add_batch(chunk)
                    chunk.clear()
            if chunk:
                bloom.add_batch(chunk)
            # Installed under the transaction lock, so no mark can slip between load and install.
            self.db.visited_filter = bloom
            return bloom

        bloom = self._view(load)
        self.log.debug("crawlstore: visited filter loaded with %d keys (%d bits)", len(bloom), bloom.m)

    def mark_visited(self, request_id: int) -> None:
        """Record request_id as processed. Marking twice is a no-op."""
        key = u64_to_bytes(request_id)

        def mark(tx: Tx) -> None:
            bloom = self.db.visited_filter
            if bloom is not None:
                # Added before commit: a rolled-back mark only costs a false positive.
                bloom.add(key)
            tx.bucket(BUCKET_REQUESTS).put(key, b"")

        self._update(mark)
        self.metrics.record_visited_mark()

    def is_visited(self, request_id: int) -> bool:
        key = u64_to_bytes(request_id)
        if self.db.closed:
            self.metrics.record_error()
            raise StorageError("database is closed")
        bloom = self.db.visited_filter
        if bloom is not None and not bloom.contains(key):
            self.metrics.record_visited_check(filter_skip=True)
            return False
        visited = self._view(lambda tx: tx.bucket(BUCKET_REQUESTS).get(key) is not None)
        self.metrics.record_visited_check()
        return visited

    def get_cookies(self, origin: Origin) -> str:
        """Return the stored cookies for origin, or "" if there are none.

        Unless strict_cookies is set, a storage failure is logged and
        reported as "no cookies" instead of raised.
        """
        key = origin_key(origin)
        try:
            value = self._view(lambda tx: tx.bucket(BUCKET_COOKIES).get(key))
        except StorageError as exc:
            self.metrics.record_cookies(write=False, ok=False)
            if self.config.strict_cookies:
                raise
            self.log.warning("crawlstore: reading cookies for %s failed: %s", key.decode("utf-8", errors="replace"), exc)
            return ""
        self.metrics.record_cookies(write=False)
        if value is None:
            return ""
        return value.decode("utf-8", errors="replace")

    def set_cookies(self, origin: Origin, cookies: str) -> None:
        """Replace the stored cookies for origin.

        Unless strict_cookies is set, a storage failure drops the write
        after logging it.
        """
        key = origin_key(origin)
        value = cookies.encode("utf-8", errors="surrogatepass")
        try:
            self._update(lambda tx: tx.bucket(BUCKET_COOKIES).put(key, value))
        except StorageError as exc:
            self.metrics.record_cookies(write=True, ok=False)
            if self.config.strict_cookies:
                raise
            self.log.warning("crawlstore: storing cookies for %s failed: %s", key.decode("utf-8", errors="replace"), exc)
            return
        self.metrics.record_cookies(write=True)

    def enqueue(self, item: bytes) -> None:
        """Append item to the queue under the bucket's next sequence number."""
        value = bytes(item)

        def push(tx: Tx) -> None:
            bucket = tx.bucket(BUCKET_QUEUE)
            bucket.put(u64_to_bytes(bucket.next_sequence()), value)

        self._update(push)
        self.metrics.record_enqueue()

    def dequeue(self) -> bytes:
        """Remove and return the oldest item.

        Raises EmptyQueueError when nothing is pending; the transaction is
        rolled back and nothing changes.
        """
        def pop(tx: Tx) -> bytes:
            cursor = tx.bucket(BUCKET_QUEUE).cursor()
            _, value = cursor.first()
            if value is None:
                raise EmptyQueueError()
            cursor.delete()
            return value

        try:
            item = self._update(pop)
        except EmptyQueueError:
            self.metrics.record_dequeue(empty=True)
            raise
        self.metrics.record_dequeue()
        return item

    def size(self) -> int:
        return self._view(lambda tx: tx.bucket(BUCKET_QUEUE).count())

    def stats(self) -> Dict[str, int]:
        """Entry counts of every bucket plus the queue's last sequence number."""
        def collect(tx: Tx) -> Dict[str, int]:
            counts = {name: tx.bucket(name).count() for name in BUCKETS}
            counts["queue_sequence"] = tx.bucket(BUCKET_QUEUE).sequence()
            return counts

        return self._view(collect)
