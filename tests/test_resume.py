from crawlstore.config import StoreConfig
from crawlstore.storage import Storage


def open_store(path) -> Storage:
    s = Storage.open(StoreConfig(path=str(path)))
    s.init()
    return s


def test_state_survives_reopen(tmp_path):
    db = tmp_path / "crawl.db"

    # First run: queue some work, process part of it, then stop.
    s1 = open_store(db)
    for i in range(5):
        s1.enqueue(f"https://example.com/page/{i}".encode())
    first = s1.dequeue()
    s1.mark_visited(1)
    s1.set_cookies("https://example.com/", "session=1")
    s1.close()
    assert first == b"https://example.com/page/0"

    # Second run picks up where the first left off.
    s2 = open_store(db)
    assert s2.size() == 4
    assert s2.is_visited(1)
    assert s2.get_cookies("https://example.com/") == "session=1"
    assert [s2.dequeue() for _ in range(4)] == [f"https://example.com/page/{i}".encode() for i in range(1, 5)]
    s2.close()


def test_sequence_numbers_are_not_reused(tmp_path):
    db = tmp_path / "seq.db"

    s1 = open_store(db)
    s1.enqueue(b"a")
    s1.enqueue(b"b")
    s1.dequeue()
    s1.dequeue()
    s1.close()

    s2 = open_store(db)
    s2.enqueue(b"c")
    stats = s2.stats()
    assert stats["queue"] == 1
    assert stats["queue_sequence"] == 3
    s2.close()


def test_items_enqueued_after_restart_stay_behind_older_ones(tmp_path):
    db = tmp_path / "order.db"

    s1 = open_store(db)
    s1.enqueue(b"old-1")
    s1.enqueue(b"old-2")
    s1.close()

    s2 = open_store(db)
    s2.enqueue(b"new-1")
    assert s2.dequeue() == b"old-1"
    s2.enqueue(b"new-2")
    assert [s2.dequeue() for _ in range(3)] == [b"old-2", b"new-1", b"new-2"]
    s2.close()


def test_uncommitted_write_is_not_persisted(tmp_path):
    db = tmp_path / "abort.db"
    s1 = open_store(db)

    def enqueue_then_fail(tx):
        bucket = tx.bucket("queue")
        bucket.put(b"\x00" * 8, b"half-done")
        raise KeyboardInterrupt

    try:
        s1.db.update(enqueue_then_fail)
    except KeyboardInterrupt:
        pass
    s1.close()

    s2 = open_store(db)
    assert s2.size() == 0
    s2.close()
