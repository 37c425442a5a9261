import random

import pytest

from crawlstore.db import Database
from crawlstore.errors import BucketNotFoundError, StorageError
from crawlstore.keys import u64_to_bytes


@pytest.fixture
def db(tmp_path):
    d = Database(str(tmp_path / "store.db"))
    d.update(lambda tx: tx.create_bucket_if_not_exists("items"))
    yield d
    d.close()


def test_put_get_delete(db):
    db.update(lambda tx: tx.bucket("items").put(b"k", b"v"))
    assert db.view(lambda tx: tx.bucket("items").get(b"k")) == b"v"
    db.update(lambda tx: tx.bucket("items").delete(b"k"))
    assert db.view(lambda tx: tx.bucket("items").get(b"k")) is None


def test_empty_value_is_not_missing(db):
    db.update(lambda tx: tx.bucket("items").put(b"k", b""))
    assert db.view(lambda tx: tx.bucket("items").get(b"k")) == b""


def test_cursor_walks_keys_in_numeric_order(db):
    values = [0, 1, 255, 256, 65536, 2**32, 2**40, 2**63]
    shuffled = values[:]
    random.Random(7).shuffle(shuffled)

    def fill(tx):
        bucket = tx.bucket("items")
        for v in shuffled:
            bucket.put(u64_to_bytes(v), str(v).encode())

    db.update(fill)

    def walk(tx):
        cursor = tx.bucket("items").cursor()
        seen = []
        key, value = cursor.first()
        while key is not None:
            seen.append(int(value))
            key, value = cursor.next()
        return seen

    assert db.view(walk) == values


def test_cursor_delete_then_next(db):
    def fill(tx):
        bucket = tx.bucket("items")
        for v in range(3):
            bucket.put(u64_to_bytes(v), b"x")

    db.update(fill)

    def delete_first(tx):
        cursor = tx.bucket("items").cursor()
        first, _ = cursor.first()
        cursor.delete()
        nxt, _ = cursor.next()
        return first, nxt

    assert db.update(delete_first) == (u64_to_bytes(0), u64_to_bytes(1))
    assert db.view(lambda tx: tx.bucket("items").count()) == 2


def test_cursor_on_empty_bucket(db):
    assert db.view(lambda tx: tx.bucket("items").cursor().first()) == (None, None)


def test_next_sequence_is_monotonic_and_persisted(tmp_path):
    path = str(tmp_path / "seq.db")
    d = Database(path)
    d.update(lambda tx: tx.create_bucket_if_not_exists("q"))
    assert [d.update(lambda tx: tx.bucket("q").next_sequence()) for _ in range(3)] == [1, 2, 3]
    d.close()

    d = Database(path)
    assert d.update(lambda tx: tx.bucket("q").next_sequence()) == 4
    d.close()


def test_error_rolls_back_everything(db):
    def failing(tx):
        bucket = tx.bucket("items")
        bucket.put(b"a", b"1")
        bucket.next_sequence()
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        db.update(failing)
    assert db.view(lambda tx: tx.bucket("items").get(b"a")) is None
    assert db.view(lambda tx: tx.bucket("items").sequence()) == 0


def test_view_is_read_only(db):
    with pytest.raises(StorageError):
        db.view(lambda tx: tx.bucket("items").put(b"k", b"v"))
    with pytest.raises(StorageError):
        db.view(lambda tx: tx.bucket("items").next_sequence())


def test_missing_bucket(db):
    with pytest.raises(BucketNotFoundError):
        db.view(lambda tx: tx.bucket("nope"))


def test_create_bucket_is_idempotent(db):
    db.update(lambda tx: tx.bucket("items").put(b"k", b"v"))
    db.update(lambda tx: tx.create_bucket_if_not_exists("items"))
    assert db.view(lambda tx: tx.bucket("items").get(b"k")) == b"v"
    assert db.view(lambda tx: tx.bucket_names()) == ["items"]


def test_transaction_handle_expires(db):
    leaked = db.view(lambda tx: tx)
    with pytest.raises(StorageError):
        leaked.bucket("items")


def test_closed_database(tmp_path):
    d = Database(str(tmp_path / "closed.db"))
    d.close()
    d.close()
    assert d.closed
    with pytest.raises(StorageError):
        d.view(lambda tx: None)


def test_open_failure_is_storage_error(tmp_path):
    with pytest.raises(StorageError):
        Database(str(tmp_path / "missing-dir" / "store.db"))


def test_keys_are_batched_in_order(db):
    def fill(tx):
        bucket = tx.bucket("items")
        for v in range(25):
            bucket.put(u64_to_bytes(v), b"")

    db.update(fill)
    keys = db.view(lambda tx: list(tx.bucket("items").keys(batch_size=4)))
    assert keys == [u64_to_bytes(v) for v in range(25)]
