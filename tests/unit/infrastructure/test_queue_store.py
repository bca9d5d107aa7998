from datetime import datetime, timedelta, timezone

import pytest

from edgectl.domain.exceptions import StorageError
from edgectl.domain.readings import SensorReading
from infrastructure.database.queue_store import PersistentQueue

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class MutableClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_drain_returns_oldest_unsent_first(queue):
    ids = [queue.enqueue(f"t/{i}", f'{{"n": {i}}}') for i in range(5)]

    entries = queue.drain(limit=3)

    assert ids == sorted(ids)
    assert [entry.id for entry in entries] == ids[:3]
    assert [entry.topic for entry in entries] == ["t/0", "t/1", "t/2"]
    assert all(not entry.sent for entry in entries)


def test_drain_pages_with_after_id(queue):
    ids = [queue.enqueue("t", "{}") for _ in range(4)]

    entries = queue.drain(limit=10, after_id=ids[1])

    assert [entry.id for entry in entries] == ids[2:]


def test_drain_with_non_positive_limit_is_empty(queue):
    queue.enqueue("t", "{}")

    assert queue.drain(limit=0) == []


def test_mark_sent_is_idempotent(queue):
    first = queue.enqueue("t", "1")
    second = queue.enqueue("t", "2")

    queue.mark_sent(first)
    queue.mark_sent(first)

    assert [entry.id for entry in queue.drain()] == [second]
    assert queue.stats()["sent"] == 1


def test_prune_only_removes_old_sent_entries():
    clock = MutableClock(T0)
    store = PersistentQueue(":memory:", clock=clock)
    store.initialize()
    try:
        old_sent = store.enqueue("t", "old-sent")
        old_unsent = store.enqueue("t", "old-unsent")
        clock.now = T0 + timedelta(days=6)
        recent_sent = store.enqueue("t", "recent-sent")
        store.mark_sent(old_sent)
        store.mark_sent(recent_sent)

        deleted = store.prune(timedelta(days=7), now=T0 + timedelta(days=8))

        assert deleted == 1
        assert [entry.id for entry in store.drain()] == [old_unsent]
        assert store.stats() == {
            "pending": 1,
            "sent": 1,
            "oldest_pending": "2024-03-01 12:00:00",
            "audit_readings": 0,
        }
    finally:
        store.close()


def test_audit_readings_are_appended_and_pruned():
    clock = MutableClock(T0)
    store = PersistentQueue(":memory:", clock=clock)
    store.initialize()
    try:
        store.append_reading(SensorReading("temp_1", 21.5, "2024-03-01T12:00:00Z", "pi-test"))
        clock.now = T0 + timedelta(days=40)
        store.append_reading(SensorReading("temp_1", 22.0, "2024-04-10T12:00:00Z", "pi-test"))

        deleted = store.prune_readings(timedelta(days=30))

        assert deleted == 1
        assert store.stats()["audit_readings"] == 1
    finally:
        store.close()


def test_entries_survive_reopen(tmp_path):
    path = tmp_path / "data" / "queue.db"
    store = PersistentQueue(str(path))
    store.initialize()
    entry_id = store.enqueue("growloc/pi/status", '{"status": "ONLINE"}')
    store.close()

    reopened = PersistentQueue(str(path))
    reopened.initialize()
    try:
        entries = reopened.drain()
    finally:
        reopened.close()

    assert [(entry.id, entry.payload) for entry in entries] == [(entry_id, '{"status": "ONLINE"}')]


def test_corrupt_database_is_quarantined(tmp_path):
    path = tmp_path / "queue.db"
    path.write_bytes(b"this is definitely not sqlite " * 64)

    store = PersistentQueue(str(path))
    store.initialize()
    try:
        assert store.enqueue("t", "{}") is not None
    finally:
        store.close()

    assert list((tmp_path / "corrupt").glob("queue_corrupt_*.db"))


def test_uninitialized_queue_degrades_gracefully():
    store = PersistentQueue(":memory:")

    assert store.enqueue("t", "{}") is None
    assert store.drain() == []
    store.mark_sent(1)
    assert store.prune(timedelta(days=1)) == 0
    with pytest.raises(StorageError):
        store.stats()
