class CrawlStoreError(Exception):
    """Base class for everything raised by crawlstore."""


class StorageError(CrawlStoreError):
    """The underlying store failed (I/O, lock timeout, corruption, closed handle)."""


class BucketNotFoundError(StorageError):
    def __init__(self, name: str) -> None:
        super().__init__(f"bucket not found: {name}")
        self.name = name


class EmptyQueueError(CrawlStoreError):
    """Raised by dequeue when the queue has no pending items.

    Not a storage failure: polling loops catch it and try again later.
    """

    def __init__(self) -> None:
        super().__init__("queue is empty")
