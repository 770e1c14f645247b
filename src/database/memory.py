import itertools
import threading
from typing import ContextManager, Dict, List, Optional, Set, Tuple

from database.base import StorageBackend
from models.records import (
    CompletionEvent,
    Device,
    EntryStatus,
    SyncableItem,
    SyncQueueEntry,
    User,
)


class MemoryManager(StorageBackend):
    """Process-local storage, used for tests and single-node deployments."""

    def __init__(self):
        self._lock = threading.Lock()
        self._named_locks: Dict[str, threading.Lock] = {}
        self._sequence = itertools.count(1)
        self._users: Dict[str, User] = {}
        self._devices: Dict[str, Device] = {}
        self._items: Dict[str, SyncableItem] = {}
        self._entries: Dict[str, SyncQueueEntry] = {}
        self._events: List[CompletionEvent] = []
        self._event_keys: Set[Tuple[str, str, str]] = set()

    def save_user(self, user: User) -> str:
        self._users[user.user_id] = user.model_copy(deep=True)
        return user.user_id

    def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    def save_device(self, device: Device) -> str:
        self._devices[device.device_id] = device.model_copy(deep=True)
        return device.device_id

    def get_device(self, device_id: str) -> Optional[Device]:
        device = self._devices.get(device_id)
        return device.model_copy(deep=True) if device else None

    def delete_device(self, device_id: str) -> bool:
        return self._devices.pop(device_id, None) is not None

    def get_user_devices(self, user_id: str) -> List[Device]:
        return [d.model_copy(deep=True) for d in self._devices.values() if d.user_id == user_id]

    def save_item(self, item: SyncableItem) -> str:
        self._items[item.item_id] = item.model_copy(deep=True)
        return item.item_id

    def get_item(self, item_id: str) -> Optional[SyncableItem]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    def delete_item(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None

    def next_sequence(self) -> int:
        with self._lock:
            return next(self._sequence)

    def save_entry(self, entry: SyncQueueEntry) -> str:
        with self._lock:
            self._entries[entry.entry_id] = entry.model_copy(deep=True)
        return entry.entry_id

    def get_entry(self, entry_id: str) -> Optional[SyncQueueEntry]:
        entry = self._entries.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    def delete_entry(self, entry_id: str) -> bool:
        with self._lock:
            return self._entries.pop(entry_id, None) is not None

    def get_entries(self, status: Optional[EntryStatus] = None) -> List[SyncQueueEntry]:
        with self._lock:
            entries = list(self._entries.values())
        if status is not None:
            entries = [e for e in entries if e.status == status]
        return [e.model_copy(deep=True) for e in sorted(entries, key=lambda e: e.sequence)]

    def append_event(self, event: CompletionEvent) -> bool:
        with self._lock:
            if event.identity in self._event_keys:
                return False
            self._event_keys.add(event.identity)
            self._events.append(event)
            return True

    def get_events(self, mission_id: Optional[str] = None) -> List[CompletionEvent]:
        with self._lock:
            events = list(self._events)
        if mission_id is not None:
            events = [e for e in events if e.mission_id == mission_id]
        return sorted(events, key=lambda e: e.timestamp)

    def lock(self, name: str = "queue") -> ContextManager:
        with self._lock:
            return self._named_locks.setdefault(name, threading.Lock())
