"""Sync service for LayerSync.

Owns the storage backend and wires the device registry, the sync queue and
the completion tracker together. One instance is constructed per process and
passed to whoever needs it; nothing here is a global.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Union

from completion.tracker import CompletionTracker
from config.settings import MySQLConfig, SyncSettings
from database.base import StorageBackend
from database.factory import get_storage_backend
from database.memory import MemoryManager
from devices.registry import DeviceRegistry, RegistrationResult
from models.errors import UnknownUser
from models.records import (
    CompletionAction,
    Identity,
    SyncableItem,
    SyncQueueEntry,
    User,
)
from roles.config import DeviceType, Role, parse_role
from sync.conflicts import Resolution
from sync.listeners import SyncListener
from sync.queue import SyncQueue

logger = logging.getLogger(__name__)

Transfer = Callable[[SyncQueueEntry], None]


def loopback_transfer(entry: SyncQueueEntry) -> None:
    """Transfer that moves no bytes; the transport layer plugs in its own."""


@dataclass(frozen=True)
class SyncRequest:
    item_id: str
    source_device_id: str
    target_device_id: Optional[str] = None
    base_version: Optional[int] = None
    action: CompletionAction = CompletionAction.MODIFIED


@dataclass(frozen=True)
class SyncFailure:
    item_id: str
    error: str


@dataclass(frozen=True)
class SyncSummary:
    success: int = 0
    failed: int = 0
    errors: List[SyncFailure] = field(default_factory=list)


class SyncService:

    def __init__(
        self,
        store: Optional[StorageBackend] = None,
        settings: Optional[SyncSettings] = None,
        listeners: Iterable[SyncListener] = (),
    ) -> None:
        self.settings = settings or SyncSettings()
        self.store = store or MemoryManager()
        self.registry = DeviceRegistry(self.store)
        self.tracker = CompletionTracker(self.store)
        self._listeners = list(listeners)
        self.queue = SyncQueue(self.store, [self.tracker, *self._listeners])

    @classmethod
    def from_env(cls) -> "SyncService":
        settings = SyncSettings.from_env()
        listeners: List[SyncListener] = []
        mysql_config = MySQLConfig.from_env()
        if mysql_config:
            listeners.append(mysql_config.create_ops())
        return cls(store=get_storage_backend(settings), settings=settings, listeners=listeners)

    # ---- users & items ----

    def create_user(self, role: Union[Role, str] = Role.USER, user_id: Optional[str] = None) -> User:
        user = User(role=parse_role(role)) if user_id is None else User(user_id=user_id, role=parse_role(role))
        self.store.save_user(user)
        logger.info(f"User provisioned: {user.user_id} ({user.role.value})")
        return user

    def get_identity(self, user_id: str) -> Identity:
        user = self.store.get_user(user_id)
        if user is None:
            raise UnknownUser(user_id)
        return user.identity()

    def add_item(self, owner_id: str, name: str = "", mission_id: Optional[str] = None) -> SyncableItem:
        if self.store.get_user(owner_id) is None:
            raise UnknownUser(owner_id)
        item = SyncableItem(owner_id=owner_id, name=name, mission_id=mission_id)
        item.add_audit("created", "File registered")
        self.store.save_item(item)
        return item

    def remove_item(self, item_id: str) -> bool:
        return self.store.delete_item(item_id)

    # ---- devices ----

    def register_device(self, user_id: str, device_type: Union[DeviceType, str],
                        device_name: str = "") -> RegistrationResult:
        return self.registry.register_device(user_id, device_type, device_name)

    # ---- sync ----

    def request_sync(
        self,
        item_id: str,
        source_device_id: str,
        target_device_id: Optional[str] = None,
        base_version: Optional[int] = None,
        action: Union[CompletionAction, str] = CompletionAction.MODIFIED,
    ) -> SyncQueueEntry:
        """Enqueue a write, defaulting the target to the owner's preferred device."""
        if target_device_id is None:
            item = self.queue.get_item(item_id)
            target = self.registry.preferred_sync_target(item.owner_id, exclude_device_id=source_device_id)
            target_device_id = target.device_id if target else None
        return self.queue.enqueue(item_id, source_device_id, target_device_id, base_version, action)

    def _sync_one(self, request: SyncRequest, transfer: Transfer) -> Resolution:
        claimed = self.queue.enqueue_and_claim(
            request.item_id,
            request.source_device_id,
            request.target_device_id,
            request.base_version,
            request.action,
        )
        if claimed is None:
            raise RuntimeError(f"item {request.item_id} is busy")

        try:
            transfer(claimed)
        except Exception as e:
            self.queue.mark_failed(claimed.entry_id, error=str(e))
            raise

        resolution = self.queue.process(claimed.entry_id)
        if not resolution.accepted:
            raise RuntimeError(f"conflict {resolution.outcome.value}: {resolution.reason}")
        return resolution

    def sync_all(self, requests: Iterable[SyncRequest],
                 transfer: Optional[Transfer] = None) -> SyncSummary:
        """Run every request independently; one failure never aborts another."""
        requests = list(requests)
        transfer = transfer or loopback_transfer
        if not requests:
            return SyncSummary()

        with ThreadPoolExecutor(max_workers=self.settings.workers) as pool:
            futures = [pool.submit(self._sync_one, request, transfer) for request in requests]

        success = 0
        errors: List[SyncFailure] = []
        for request, future in zip(requests, futures):
            exc = future.exception()
            if exc is None:
                success += 1
            else:
                logger.warning(f"Sync failed for item {request.item_id}: {exc}")
                errors.append(SyncFailure(item_id=request.item_id, error=str(exc)))

        return SyncSummary(success=success, failed=len(errors), errors=errors)

    def close(self) -> None:
        for listener in self._listeners:
            close = getattr(listener, "close", None)
            if close:
                close()
        self.store.close()

    def __enter__(self) -> "SyncService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
