import threading

import pytest

from models.errors import (
    ConflictDetected,
    InvalidTransition,
    PermissionDenied,
    UnknownDevice,
    UnknownEntry,
    UnknownItem,
)
from models.records import EntryStatus, FailureKind, ItemStatus
from roles.config import Role
from sync.listeners import SyncListener
from sync.queue import SyncQueue


class RecordingListener(SyncListener):

    def __init__(self):
        self.completed = []
        self.failed = []
        self.events = []

    def on_entry_completed(self, entry, item):
        self.completed.append((entry.entry_id, item.version))

    def on_entry_failed(self, entry, item):
        self.failed.append(entry.entry_id)

    def on_completion_event(self, event):
        self.events.append(event)


class BrokenListener(SyncListener):

    def on_entry_completed(self, entry, item):
        raise RuntimeError("listener down")


class LockStateListener(SyncListener):
    """Records whether the queue lock was free when a failure was announced."""

    def __init__(self, store):
        self.store = store
        self.lock_free = []

    def on_entry_failed(self, entry, item):
        lock = self.store.lock("queue")
        acquired = lock.acquire(blocking=False)
        if acquired:
            lock.release()
        self.lock_free.append(acquired)


@pytest.fixture
def owned(service, admin, make_device):
    """An ADMIN's item together with one of their devices."""
    device = make_device(admin)
    item = service.add_item(admin.user_id, "roads", mission_id="m1")
    return item, device


def test_round_trip(service, queue, owned):
    item, device = owned
    entry = queue.enqueue(item.item_id, device.device_id)
    assert entry.status == EntryStatus.PENDING
    assert entry.base_version == 1

    started = queue.dequeue_next()
    assert started.entry_id == entry.entry_id
    assert started.status == EntryStatus.IN_PROGRESS
    assert started.started_at is not None
    assert queue.get_item(item.item_id).status == ItemStatus.SYNCING

    done = queue.mark_completed(entry.entry_id)
    assert done.status == EntryStatus.COMPLETED
    assert done.completed_at is not None

    stored = queue.get_item(item.item_id)
    assert stored.version == 2
    assert stored.status == ItemStatus.SYNCED
    assert stored.last_author_device_id == device.device_id
    assert stored.last_author_role == Role.ADMIN

    events = service.tracker.get_feature_history(item.item_id)
    assert len(events) == 1
    assert events[0].metadata["entryId"] == entry.entry_id
    assert events[0].metadata["version"] == 2


def test_audit_log(queue, owned):
    item, device = owned
    entry = queue.enqueue(item.item_id, device.device_id)
    queue.dequeue_next()
    queue.mark_completed(entry.entry_id)

    actions = [a.action for a in queue.get_audit(item.item_id)]
    assert actions == ["created", "queued", "completed"]
    assert queue.get_audit(item.item_id)[-1].message == "File synchronized (version 2)"


def test_enqueue_requires_sync_permission(service, queue, plain_user, make_device):
    device = make_device(plain_user)
    item = service.add_item(plain_user.user_id)
    with pytest.raises(PermissionDenied):
        queue.enqueue(item.item_id, device.device_id)


def test_enqueue_on_foreign_item(service, queue, admin, make_user, super_admin, make_device):
    other_admin = make_user(Role.ADMIN)
    item = service.add_item(admin.user_id)

    with pytest.raises(PermissionDenied):
        queue.enqueue(item.item_id, make_device(other_admin).device_id)

    entry = queue.enqueue(item.item_id, make_device(super_admin).device_id)
    assert entry.status == EntryStatus.PENDING


def test_enqueue_unknown_references(queue, owned):
    item, device = owned
    with pytest.raises(UnknownDevice):
        queue.enqueue(item.item_id, "d_missing")
    with pytest.raises(UnknownDevice):
        queue.enqueue(item.item_id, device.device_id, target_device_id="d_missing")
    with pytest.raises(UnknownItem):
        queue.enqueue("i_missing", device.device_id)
    with pytest.raises(UnknownEntry):
        queue.get_entry("q_missing")


def test_dequeue_by_priority_then_creation(service, queue, admin, super_admin, make_device):
    admin_device = make_device(admin)
    super_device = make_device(super_admin)
    first = service.add_item(admin.user_id)
    second = service.add_item(admin.user_id)
    third = service.add_item(admin.user_id)

    low_a = queue.enqueue(first.item_id, admin_device.device_id)
    low_b = queue.enqueue(second.item_id, admin_device.device_id)
    high = queue.enqueue(third.item_id, super_device.device_id)

    assert queue.dequeue_next().entry_id == high.entry_id
    assert queue.dequeue_next().entry_id == low_a.entry_id
    assert queue.dequeue_next().entry_id == low_b.entry_id
    assert queue.dequeue_next() is None


def test_busy_item_is_skipped(queue, owned):
    item, device = owned
    first = queue.enqueue(item.item_id, device.device_id)
    second = queue.enqueue(item.item_id, device.device_id)

    assert queue.dequeue_next().entry_id == first.entry_id
    assert queue.dequeue_next() is None
    assert queue.claim(second.entry_id) is None

    queue.mark_completed(first.entry_id)
    assert queue.dequeue_next().entry_id == second.entry_id


def test_one_in_progress_per_item_under_threads(queue, owned):
    item, device = owned
    for _ in range(20):
        queue.enqueue(item.item_id, device.device_id)

    barrier = threading.Barrier(8)
    started = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        entry = queue.dequeue_next()
        if entry is not None:
            with lock:
                started.append(entry.entry_id)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(started) == 1
    assert len(queue.entries(EntryStatus.IN_PROGRESS)) == 1


def test_transitions_cannot_skip(queue, owned):
    item, device = owned
    entry = queue.enqueue(item.item_id, device.device_id)

    with pytest.raises(InvalidTransition):
        queue.mark_completed(entry.entry_id)
    with pytest.raises(InvalidTransition):
        queue.mark_failed(entry.entry_id)

    queue.dequeue_next()
    queue.mark_completed(entry.entry_id)
    with pytest.raises(InvalidTransition):
        queue.mark_completed(entry.entry_id)
    with pytest.raises(InvalidTransition):
        queue.mark_failed(entry.entry_id)


def test_mark_failed_and_retry(queue, owned):
    item, device = owned
    entry = queue.enqueue(item.item_id, device.device_id)
    queue.dequeue_next()

    failed = queue.mark_failed(entry.entry_id, FailureKind.TRANSFER, "connection reset")
    assert failed.status == EntryStatus.FAILED
    assert failed.error_kind == FailureKind.TRANSFER
    assert failed.error == "connection reset"
    assert queue.get_item(item.item_id).status == ItemStatus.ERROR

    retried = queue.retry(entry.entry_id)
    assert retried.entry_id != entry.entry_id
    assert retried.status == EntryStatus.PENDING
    assert retried.base_version == entry.base_version
    assert queue.get_item(item.item_id).status == ItemStatus.PENDING


def test_withdraw(queue, owned):
    item, device = owned
    entry = queue.enqueue(item.item_id, device.device_id)
    queue.withdraw(entry.entry_id)
    with pytest.raises(UnknownEntry):
        queue.get_entry(entry.entry_id)
    assert queue.get_item(item.item_id).version == 1

    entry = queue.enqueue(item.item_id, device.device_id)
    queue.dequeue_next()
    with pytest.raises(InvalidTransition):
        queue.withdraw(entry.entry_id)


def test_vanished_item_fails_entry(service, queue, owned):
    item, device = owned
    entry = queue.enqueue(item.item_id, device.device_id)
    service.remove_item(item.item_id)

    assert queue.dequeue_next() is None
    failed = queue.get_entry(entry.entry_id)
    assert failed.status == EntryStatus.FAILED
    assert failed.error_kind == FailureKind.NOT_FOUND


def test_item_vanishing_mid_flight(service, queue, owned):
    item, device = owned
    entry = queue.enqueue(item.item_id, device.device_id)
    queue.dequeue_next()
    service.remove_item(item.item_id)

    with pytest.raises(UnknownItem):
        queue.mark_completed(entry.entry_id)
    assert queue.get_entry(entry.entry_id).error_kind == FailureKind.NOT_FOUND


def test_detect_conflict_and_stale_completion(queue, owned):
    item, device = owned
    first = queue.enqueue(item.item_id, device.device_id)
    second = queue.enqueue(item.item_id, device.device_id)

    queue.dequeue_next()
    assert not queue.detect_conflict(first.entry_id)
    queue.mark_completed(first.entry_id)

    assert queue.detect_conflict(second.entry_id)
    queue.dequeue_next()
    with pytest.raises(ConflictDetected) as info:
        queue.mark_completed(second.entry_id)
    assert info.value.base_version == 1
    assert info.value.current_version == 2
    assert queue.get_entry(second.entry_id).status == EntryStatus.IN_PROGRESS


def test_listeners_are_notified(service, owned):
    item, device = owned
    listener = RecordingListener()
    service.queue.listeners.add(BrokenListener())
    service.queue.listeners.add(listener)

    entry = service.queue.enqueue(item.item_id, device.device_id)
    service.queue.dequeue_next()
    service.queue.mark_completed(entry.entry_id)

    assert listener.completed == [(entry.entry_id, 2)]
    assert [e.item_id for e in listener.events] == [item.item_id]

    entry = service.queue.enqueue(item.item_id, device.device_id)
    service.queue.dequeue_next()
    service.queue.mark_failed(entry.entry_id)
    assert listener.failed == [entry.entry_id]


def test_queues_over_one_store_start_one_entry_per_item(service, owned):
    item, device = owned
    queues = [service.queue, SyncQueue(service.store)]
    for _ in range(10):
        service.queue.enqueue(item.item_id, device.device_id)

    barrier = threading.Barrier(8)
    started = []

    def worker(queue):
        barrier.wait()
        entry = queue.dequeue_next()
        if entry is not None:
            started.append(entry.entry_id)

    threads = [threading.Thread(target=worker, args=(queues[i % 2],)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(started) == 1
    assert len(service.store.get_entries(EntryStatus.IN_PROGRESS)) == 1


def test_store_lock_holds_off_other_queues(service, owned):
    item, device = owned
    entry = service.queue.enqueue(item.item_id, device.device_id)
    other = SyncQueue(service.store)
    started = []

    with service.store.lock("queue"):
        thread = threading.Thread(target=lambda: started.append(other.dequeue_next()))
        thread.start()
        thread.join(timeout=0.2)
        assert thread.is_alive()
        assert started == []

    thread.join()
    assert started[0].entry_id == entry.entry_id


def test_vanished_item_is_announced_after_unlock(service, owned):
    item, device = owned
    listener = LockStateListener(service.store)
    service.queue.listeners.add(listener)

    entry = service.queue.enqueue(item.item_id, device.device_id)
    service.queue.dequeue_next()
    service.remove_item(item.item_id)
    with pytest.raises(UnknownItem):
        service.queue.mark_completed(entry.entry_id)

    entry = service.queue.get_entry(entry.entry_id)
    assert entry.status == EntryStatus.FAILED
    assert listener.lock_free == [True]


def test_withdraw_restores_previous_status(queue, owned):
    item, device = owned
    entry = queue.enqueue(item.item_id, device.device_id)
    queue.dequeue_next()
    queue.mark_completed(entry.entry_id)
    assert queue.get_item(item.item_id).status == ItemStatus.SYNCED

    first = queue.enqueue(item.item_id, device.device_id)
    second = queue.enqueue(item.item_id, device.device_id)
    assert queue.get_item(item.item_id).status == ItemStatus.PENDING

    queue.withdraw(first.entry_id)
    assert queue.get_item(item.item_id).status == ItemStatus.PENDING
    queue.withdraw(second.entry_id)
    stored = queue.get_item(item.item_id)
    assert stored.status == ItemStatus.SYNCED
    assert stored.queued_from is None
    assert stored.audit[-1].action == "withdrawn"


def test_withdraw_after_failure_returns_to_error(queue, owned):
    item, device = owned
    entry = queue.enqueue(item.item_id, device.device_id)
    queue.dequeue_next()
    queue.mark_failed(entry.entry_id, FailureKind.TRANSFER, "timeout")

    retried = queue.retry(entry.entry_id)
    queue.withdraw(retried.entry_id)
    assert queue.get_item(item.item_id).status == ItemStatus.ERROR


def test_enqueue_and_claim(queue, owned):
    item, device = owned
    started = queue.enqueue_and_claim(item.item_id, device.device_id)
    assert started.status == EntryStatus.IN_PROGRESS
    assert queue.get_item(item.item_id).status == ItemStatus.SYNCING

    # Busy: nothing is left behind.
    assert queue.enqueue_and_claim(item.item_id, device.device_id) is None
    assert queue.entries(EntryStatus.PENDING) == []
    assert queue.get_item(item.item_id).status == ItemStatus.SYNCING
