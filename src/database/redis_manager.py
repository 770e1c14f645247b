"""
Redis storage for LayerSync.

Data Structure:
- user:<userId>              -> User record (hash)
- user:<userId>:devices      -> Device IDs owned by the user (set)
- device:<deviceId>          -> Device record (hash)
- item:<itemId>              -> Syncable item record (hash)
- entry:<entryId>            -> Sync queue entry (hash)
- queue:entries              -> Entry IDs in creation order (list)
- queue:sequence             -> Entry creation counter (string)
- event:<eventId>            -> Completion event (hash)
- events                     -> Event IDs in arrival order (list)
- events:keys                -> Event identities already recorded (set)
- lock:<name>                -> Cross-process lock token (string, expiring)
"""

import json
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

import redis
from pydantic import BaseModel

from database.base import StorageBackend
from models.records import (
    CompletionEvent,
    Device,
    EntryStatus,
    SyncableItem,
    SyncQueueEntry,
    User,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _to_mapping(model: BaseModel) -> Dict[str, str]:
    data = model.model_dump(mode="json", by_alias=True)
    return {key: json.dumps(value) for key, value in data.items()}


def _from_mapping(model_cls: Type[M], data: Dict[str, Any]) -> Optional[M]:
    if not data:
        return None
    return model_cls.model_validate({key: json.loads(value) for key, value in data.items()})


class RedisManager(StorageBackend):

    def __init__(self, host: str = 'localhost', port: int = 6379, db: int = 0,
                 password: Optional[str] = None, lock_timeout: float = 30.0,
                 client: Optional[redis.Redis] = None):
        # Keys and ids are read back as str.
        self.client = client or redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            decode_responses=True
        )
        self.lock_timeout = lock_timeout
        self._locks: Dict[str, Any] = {}
        self._test_connection()

    def _test_connection(self):
        try:
            self.client.ping()
            logger.info("Redis connection established")
        except redis.ConnectionError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    # ==================== USERS ====================

    def save_user(self, user: User) -> str:
        self.client.hset(f"user:{user.user_id}", mapping=_to_mapping(user))
        return user.user_id

    def get_user(self, user_id: str) -> Optional[User]:
        return _from_mapping(User, self.client.hgetall(f"user:{user_id}"))

    # ==================== DEVICES ====================

    def save_device(self, device: Device) -> str:
        self.client.hset(f"device:{device.device_id}", mapping=_to_mapping(device))
        self.client.sadd(f"user:{device.user_id}:devices", device.device_id)
        return device.device_id

    def get_device(self, device_id: str) -> Optional[Device]:
        return _from_mapping(Device, self.client.hgetall(f"device:{device_id}"))

    def delete_device(self, device_id: str) -> bool:
        device = self.get_device(device_id)
        if not device:
            return False
        self.client.srem(f"user:{device.user_id}:devices", device_id)
        return bool(self.client.delete(f"device:{device_id}"))

    def get_user_devices(self, user_id: str) -> List[Device]:
        devices = []
        for device_id in sorted(self.client.smembers(f"user:{user_id}:devices")):
            device = self.get_device(device_id)
            if device:
                devices.append(device)
        return devices

    # ==================== ITEMS ====================

    def save_item(self, item: SyncableItem) -> str:
        self.client.hset(f"item:{item.item_id}", mapping=_to_mapping(item))
        return item.item_id

    def get_item(self, item_id: str) -> Optional[SyncableItem]:
        return _from_mapping(SyncableItem, self.client.hgetall(f"item:{item_id}"))

    def delete_item(self, item_id: str) -> bool:
        return bool(self.client.delete(f"item:{item_id}"))

    # ==================== QUEUE ====================

    def next_sequence(self) -> int:
        return int(self.client.incr("queue:sequence"))

    def save_entry(self, entry: SyncQueueEntry) -> str:
        key = f"entry:{entry.entry_id}"
        is_new = not self.client.exists(key)
        self.client.hset(key, mapping=_to_mapping(entry))
        if is_new:
            self.client.rpush("queue:entries", entry.entry_id)
        return entry.entry_id

    def get_entry(self, entry_id: str) -> Optional[SyncQueueEntry]:
        return _from_mapping(SyncQueueEntry, self.client.hgetall(f"entry:{entry_id}"))

    def delete_entry(self, entry_id: str) -> bool:
        self.client.lrem("queue:entries", 0, entry_id)
        return bool(self.client.delete(f"entry:{entry_id}"))

    def get_entries(self, status: Optional[EntryStatus] = None) -> List[SyncQueueEntry]:
        entries = []
        for entry_id in self.client.lrange("queue:entries", 0, -1):
            entry = self.get_entry(entry_id)
            if entry and (status is None or entry.status == status):
                entries.append(entry)
        return sorted(entries, key=lambda e: e.sequence)

    # ==================== EVENTS ====================

    def append_event(self, event: CompletionEvent) -> bool:
        identity = "|".join(event.identity)
        if not self.client.sadd("events:keys", identity):
            return False
        self.client.hset(f"event:{event.event_id}", mapping=_to_mapping(event))
        self.client.rpush("events", event.event_id)
        return True

    def get_events(self, mission_id: Optional[str] = None) -> List[CompletionEvent]:
        events = []
        for event_id in self.client.lrange("events", 0, -1):
            event = _from_mapping(CompletionEvent, self.client.hgetall(f"event:{event_id}"))
            if event and (mission_id is None or event.mission_id == mission_id):
                events.append(event)
        return sorted(events, key=lambda e: e.timestamp)

    # ==================== LOCKS ====================

    def lock(self, name: str = "queue"):
        """Redis-held lock; expires after ``lock_timeout`` if its holder dies."""
        if name not in self._locks:
            self._locks[name] = self.client.lock(f"lock:{name}", timeout=self.lock_timeout)
        return self._locks[name]

    def health_check(self) -> Dict[str, Any]:
        info = self.client.info()
        return {
            "status": "healthy",
            "connected_clients": info.get('connected_clients', 0),
            "used_memory": info.get('used_memory_human', 'unknown'),
            "total_keys": self.client.dbsize(),
            "queued_entries": self.client.llen("queue:entries"),
            "events": self.client.llen("events"),
        }

    def flush_all(self) -> bool:
        self.client.flushdb()
        return True

    def close(self):
        self.client.close()
