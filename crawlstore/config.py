import logging
from dataclasses import dataclass
from typing import Optional


DEFAULT_MODE = 0o666
DEFAULT_FILTER_FPR = 0.001

BUCKET_REQUESTS = "requests"
BUCKET_COOKIES = "cookies"
BUCKET_QUEUE = "queue"


@dataclass(frozen=True)
class StoreConfig:
    path: str
    # SQLite busy timeout in seconds; None keeps the sqlite3 default.
    timeout: Optional[float] = None
    mode: int = DEFAULT_MODE
    logger: Optional[logging.Logger] = None
    journal_mode: str = "WAL"
    # FULL syncs the WAL on every commit, so a returned write survives a crash.
    synchronous: str = "FULL"
    strict_cookies: bool = False
    visited_filter_size: int = 0
    visited_filter_fpr: float = DEFAULT_FILTER_FPR
