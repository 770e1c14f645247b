from abc import ABC, abstractmethod
from typing import ContextManager, List, Optional

from models.records import (
    CompletionEvent,
    Device,
    EntryStatus,
    SyncableItem,
    SyncQueueEntry,
    User,
)


class StorageBackend(ABC):
    """Persisted state consumed by the sync core.

    Getters return detached copies; callers mutate them and write them back
    with the matching ``save_*`` method.
    """

    # ---- users ----

    @abstractmethod
    def save_user(self, user: User) -> str:
        pass

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]:
        pass

    # ---- devices ----

    @abstractmethod
    def save_device(self, device: Device) -> str:
        pass

    @abstractmethod
    def get_device(self, device_id: str) -> Optional[Device]:
        pass

    @abstractmethod
    def delete_device(self, device_id: str) -> bool:
        pass

    @abstractmethod
    def get_user_devices(self, user_id: str) -> List[Device]:
        pass

    # ---- items ----

    @abstractmethod
    def save_item(self, item: SyncableItem) -> str:
        pass

    @abstractmethod
    def get_item(self, item_id: str) -> Optional[SyncableItem]:
        pass

    @abstractmethod
    def delete_item(self, item_id: str) -> bool:
        pass

    # ---- queue entries ----

    @abstractmethod
    def next_sequence(self) -> int:
        pass

    @abstractmethod
    def save_entry(self, entry: SyncQueueEntry) -> str:
        pass

    @abstractmethod
    def get_entry(self, entry_id: str) -> Optional[SyncQueueEntry]:
        pass

    @abstractmethod
    def delete_entry(self, entry_id: str) -> bool:
        pass

    @abstractmethod
    def get_entries(self, status: Optional[EntryStatus] = None) -> List[SyncQueueEntry]:
        """Entries in creation order, optionally filtered by status."""

    # ---- completion events ----

    @abstractmethod
    def append_event(self, event: CompletionEvent) -> bool:
        """Append an event; return False when its identity is already stored."""

    @abstractmethod
    def get_events(self, mission_id: Optional[str] = None) -> List[CompletionEvent]:
        """Events in timestamp order, optionally restricted to one mission."""

    # ---- coordination ----

    @abstractmethod
    def lock(self, name: str = "queue") -> ContextManager:
        """Mutual exclusion shared by every process using this store.

        Non-reentrant: holders must not acquire the same lock again.
        """

    def close(self) -> None:
        pass

    def __enter__(self) -> "StorageBackend":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
